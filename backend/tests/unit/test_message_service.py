import asyncio

import pytest

from app.core.errors import (
    ActionAlreadyTriggeredError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models.message import MessageCreate

CONV = "conv-1"
MS = "ms-1"

TRADITIONAL_BLIND = {
    "author": {"seesReviews": "on_release", "seesReviewerIdentity": "never", "canParticipate": "anytime"},
    "reviewers": {"seeEachOther": "never", "seeAuthorIdentity": "always", "seeAuthorResponses": "realtime"},
    "phases": {"enabled": True, "authorResponseStartsNewCycle": True},
}


def _confirm_action(decision: str = "accept") -> dict:
    return {
        "id": f"confirm-{decision}",
        "label": f"Confirm {decision}",
        "handler": {"botId": "editorial-bot", "action": "confirm_decision", "params": {"decision": decision}},
        "targetRoles": ["editor", "admin"],
        "triggered": False,
    }


@pytest.mark.asyncio
async def test_post_user_message_persists_and_broadcasts(runtime, repo) -> None:
    sent: list = []

    async def capture(conversation_id, event, *, manuscript_id=None) -> None:
        sent.append((conversation_id, event["type"]))

    runtime.broadcaster.broadcast = capture

    message = await runtime.messages.post_user_message(
        CONV, user_id="rev1", global_role="USER", payload=MessageCreate(content="Minor comments attached")
    )

    assert repo.messages[message["id"]]["content"] == "Minor comments attached"
    assert message["privacy"] == "AUTHOR_VISIBLE"
    assert sent == [(CONV, "new-message")]


@pytest.mark.asyncio
async def test_outsider_and_over_privileged_posts_are_rejected(runtime) -> None:
    with pytest.raises(PermissionDeniedError):
        await runtime.messages.post_user_message(
            CONV, user_id="outsider", global_role="USER", payload=MessageCreate(content="hi")
        )
    with pytest.raises(PermissionDeniedError):
        await runtime.messages.post_user_message(
            CONV,
            user_id="author",
            global_role="USER",
            payload=MessageCreate(content="psst", privacy="EDITOR_ONLY"),
        )
    with pytest.raises(NotFoundError):
        await runtime.messages.post_user_message(
            "conv-missing", user_id="author", global_role="USER", payload=MessageCreate(content="hi")
        )


@pytest.mark.asyncio
async def test_author_invitation_flag_stripped_for_non_editors(runtime, repo) -> None:
    message = await runtime.messages.post_user_message(
        CONV,
        user_id="rev1",
        global_role="USER",
        payload=MessageCreate(content="come join", metadata={"authorInvitation": True}),
    )
    assert "authorInvitation" not in repo.messages[message["id"]]["metadata"]


@pytest.mark.asyncio
async def test_author_response_after_release_starts_new_round(runtime, repo) -> None:
    repo.settings["workflowConfig"] = TRADITIONAL_BLIND
    repo.manuscripts[MS]["workflow_phase"] = "RELEASED"

    await runtime.messages.post_user_message(
        CONV, user_id="author", global_role="USER", payload=MessageCreate(content="Thanks, revising now")
    )

    assert repo.manuscripts[MS]["workflow_phase"] == "AUTHOR_RESPONDING"
    assert repo.manuscripts[MS]["workflow_round"] == 2


@pytest.mark.asyncio
async def test_list_visible_filters_masks_and_annotates(runtime, repo) -> None:
    repo.settings["workflowConfig"] = TRADITIONAL_BLIND
    repo.add_message(CONV, "rev1", "Review: accept with minor changes", id="m-review")
    repo.add_message(CONV, "editor", "Internal note", id="m-internal", privacy="EDITOR_ONLY")

    before = await runtime.messages.list_visible(CONV, user_id="author", global_role="USER")
    assert before == []

    repo.manuscripts[MS]["workflow_phase"] = "RELEASED"
    after = await runtime.messages.list_visible(CONV, user_id="author", global_role="USER")
    assert [m["id"] for m in after] == ["m-review"]
    assert after[0]["author"]["name"] == "Reviewer A"
    assert after[0]["effectiveVisibility"]["label"] == "Authors & Editors"

    for_editor = await runtime.messages.list_visible(CONV, user_id="editor", global_role="EDITOR_IN_CHIEF")
    assert {m["id"] for m in for_editor} == {"m-review", "m-internal"}


@pytest.mark.asyncio
async def test_invisible_message_reads_as_not_found(runtime, repo) -> None:
    repo.add_message(CONV, "editor", "Internal note", id="m-internal", privacy="EDITOR_ONLY")

    with pytest.raises(NotFoundError):
        await runtime.messages.get_visibility("m-internal", user_id="rev1", global_role="USER")
    payload = await runtime.messages.get_visibility("m-internal", user_id="editor", global_role="EDITOR_IN_CHIEF")
    assert payload["label"] == "Editors Only"


@pytest.mark.asyncio
async def test_action_triggers_exactly_once(runtime, repo) -> None:
    repo.add_message(
        CONV,
        "editorial-bot-user",
        "Proposed decision: accept",
        id="m-proposal",
        privacy="EDITOR_ONLY",
        is_bot=True,
        metadata={"botId": "editorial-bot", "actions": [_confirm_action()]},
    )

    result = await runtime.messages.trigger_action(
        "m-proposal", "confirm-accept", user_id="editor", global_role="EDITOR_IN_CHIEF"
    )

    assert result["errors"] == []
    action = result["message"]["metadata"]["actions"][0]
    assert action["triggered"] is True
    assert action["triggeredBy"] == "editor"
    assert action["resultLabel"] == "Confirmed: accept"
    assert result["message"]["content"] == "Decision confirmed: **accept**."
    assert repo.manuscripts[MS]["status"] == "ACCEPTED"

    with pytest.raises(ActionAlreadyTriggeredError):
        await runtime.messages.trigger_action(
            "m-proposal", "confirm-accept", user_id="admin", global_role="ADMIN"
        )
    assert len([log for log in repo.status_logs if log["to_status"] == "ACCEPTED"]) == 1


@pytest.mark.asyncio
async def test_concurrent_action_triggers_apply_side_effect_once(runtime, repo) -> None:
    repo.add_message(
        CONV,
        "editorial-bot-user",
        "Proposed decision: reject",
        id="m-proposal",
        privacy="EDITOR_ONLY",
        is_bot=True,
        metadata={"botId": "editorial-bot", "actions": [_confirm_action("reject")]},
    )

    results = await asyncio.gather(
        runtime.messages.trigger_action("m-proposal", "confirm-reject", user_id="editor", global_role="EDITOR_IN_CHIEF"),
        runtime.messages.trigger_action("m-proposal", "confirm-reject", user_id="admin", global_role="ADMIN"),
        return_exceptions=True,
    )

    assert len([r for r in results if isinstance(r, dict)]) == 1
    assert len([r for r in results if isinstance(r, ActionAlreadyTriggeredError)]) == 1
    assert len([log for log in repo.status_logs if log["to_status"] == "REJECTED"]) == 1


@pytest.mark.asyncio
async def test_action_restricted_to_target_roles(runtime, repo) -> None:
    repo.add_message(
        CONV,
        "editorial-bot-user",
        "Proposed decision: accept",
        id="m-proposal",
        is_bot=True,
        metadata={"botId": "editorial-bot", "actions": [_confirm_action()]},
    )

    with pytest.raises(PermissionDeniedError):
        await runtime.messages.trigger_action("m-proposal", "confirm-accept", user_id="rev1", global_role="USER")
    assert repo.messages["m-proposal"]["metadata"]["actions"][0]["triggered"] is False
    assert repo.manuscripts[MS]["status"] == "UNDER_REVIEW"


@pytest.mark.asyncio
async def test_failed_handler_leaves_action_untriggered(runtime, repo) -> None:
    bad = _confirm_action()
    bad["handler"]["params"] = {"decision": "maybe"}
    repo.add_message(
        CONV,
        "editorial-bot-user",
        "Proposed decision",
        id="m-proposal",
        privacy="EDITOR_ONLY",
        is_bot=True,
        metadata={"botId": "editorial-bot", "actions": [bad]},
    )

    with pytest.raises(ValidationError):
        await runtime.messages.trigger_action(
            "m-proposal", "confirm-accept", user_id="editor", global_role="EDITOR_IN_CHIEF"
        )
    assert repo.messages["m-proposal"]["metadata"]["actions"][0]["triggered"] is False
    assert "triggeredBy" not in repo.messages["m-proposal"]["metadata"]["actions"][0]
    assert runtime.messages._action_locks == {}


def _spy_handler(runtime, repo, seen: list) -> None:
    original = runtime.executor.execute_action_handler

    async def spy(bot_id, action, ctx, params):
        row = repo.messages["m-proposal"]["metadata"]["actions"][0]
        seen.append(row.get("triggered"))
        return await original(bot_id, action, ctx, params)

    runtime.executor.execute_action_handler = spy


@pytest.mark.asyncio
async def test_action_is_claimed_before_handler_runs(runtime, repo) -> None:
    repo.add_message(
        CONV,
        "editorial-bot-user",
        "Proposed decision: accept",
        id="m-proposal",
        privacy="EDITOR_ONLY",
        is_bot=True,
        metadata={"botId": "editorial-bot", "actions": [_confirm_action()]},
    )
    seen: list = []
    _spy_handler(runtime, repo, seen)

    await runtime.messages.trigger_action(
        "m-proposal", "confirm-accept", user_id="editor", global_role="EDITOR_IN_CHIEF"
    )

    assert seen == [True]
    assert runtime.messages._action_locks == {}


@pytest.mark.asyncio
async def test_triggers_without_shared_lock_run_handler_once(runtime, repo) -> None:
    # 绕过进程内锁，模拟两个 API 进程同时触发
    repo.add_message(
        CONV,
        "editorial-bot-user",
        "Proposed decision: reject",
        id="m-proposal",
        privacy="EDITOR_ONLY",
        is_bot=True,
        metadata={"botId": "editorial-bot", "actions": [_confirm_action("reject")]},
    )
    seen: list = []
    _spy_handler(runtime, repo, seen)

    results = await asyncio.gather(
        runtime.messages._trigger_locked(
            "m-proposal", "confirm-reject", user_id="editor", global_role="EDITOR_IN_CHIEF"
        ),
        runtime.messages._trigger_locked("m-proposal", "confirm-reject", user_id="admin", global_role="ADMIN"),
        return_exceptions=True,
    )

    assert len(seen) == 1
    assert len([r for r in results if isinstance(r, dict)]) == 1
    assert len([r for r in results if isinstance(r, ActionAlreadyTriggeredError)]) == 1
    assert repo.messages["m-proposal"]["metadata"]["actions"][0]["resultLabel"] == "Confirmed: reject"
