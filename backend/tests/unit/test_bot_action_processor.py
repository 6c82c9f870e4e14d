import pytest

from app.core.errors import MissingPermission
from app.models.bots import BotAction, BotActionType

MS = "ms-1"
CONV = "conv-1"


def _ctx(runtime, bot_id: str = "editorial-bot", *, triggered_by: str = "editor"):
    bot = runtime.registry.get(bot_id)
    return bot, runtime.executor.build_context(bot, manuscript_id=MS, conversation_id=CONV, triggered_by=triggered_by)


@pytest.mark.asyncio
async def test_decision_action_transitions_manuscript(runtime, repo) -> None:
    bot, ctx = _ctx(runtime)

    errors = await runtime.action_processor.process(
        bot,
        [BotAction(type=BotActionType.MAKE_EDITORIAL_DECISION, data={"decision": "accept", "reason": "solid"})],
        ctx,
        conversation_id=CONV,
    )

    assert errors == []
    assert repo.manuscripts[MS]["status"] == "ACCEPTED"
    assert repo.status_logs[-1]["changed_by"] == "editor"
    assert repo.status_logs[-1]["comment"] == "solid"


@pytest.mark.asyncio
async def test_missing_capability_blocks_whole_batch(runtime, repo) -> None:
    # reviewer-checklist 没有声明任何写能力
    bot, ctx = _ctx(runtime, "reviewer-checklist")

    with pytest.raises(MissingPermission):
        await runtime.action_processor.process(
            bot,
            [
                BotAction(type=BotActionType.UPDATE_WORKFLOW_PHASE, data={"phase": "DELIBERATION"}),
                BotAction(type=BotActionType.MAKE_EDITORIAL_DECISION, data={"decision": "reject"}),
            ],
            ctx,
        )
    assert repo.manuscripts[MS]["status"] == "UNDER_REVIEW"
    assert repo.manuscripts[MS]["workflow_phase"] == "REVIEW"


@pytest.mark.asyncio
async def test_invalid_transition_is_explained_to_editors(runtime, repo) -> None:
    bot, ctx = _ctx(runtime)

    errors = await runtime.action_processor.process(
        bot,
        [BotAction(type=BotActionType.UPDATE_MANUSCRIPT_STATUS, data={"status": "PUBLISHED"})],
        ctx,
        conversation_id=CONV,
    )

    assert len(errors) == 1
    assert errors[0].startswith("UPDATE_MANUSCRIPT_STATUS:")
    assert repo.manuscripts[MS]["status"] == "UNDER_REVIEW"
    notes = [m for m in repo.messages.values() if m["is_bot"]]
    assert len(notes) == 1
    assert notes[0]["privacy"] == "EDITOR_ONLY"
    assert "Could not apply" in notes[0]["content"]


@pytest.mark.asyncio
async def test_phase_action_and_manual_reminder(runtime, repo) -> None:
    bot, ctx = _ctx(runtime)

    errors = await runtime.action_processor.process(
        bot,
        [
            BotAction(type=BotActionType.UPDATE_WORKFLOW_PHASE, data={"phase": "DELIBERATION"}),
            BotAction(type=BotActionType.SEND_MANUAL_REMINDER, data={"assignmentId": "ra-1"}),
        ],
        ctx,
    )

    assert errors == []
    assert repo.manuscripts[MS]["workflow_phase"] == "DELIBERATION"
    reminder = repo.jobs_for("deadline-reminder")[0]
    assert reminder["payload"]["isManual"] is True


@pytest.mark.asyncio
async def test_missing_action_data_is_reported(runtime) -> None:
    bot, ctx = _ctx(runtime)
    errors = await runtime.action_processor.process(
        bot, [BotAction(type=BotActionType.MAKE_EDITORIAL_DECISION, data={})], ctx
    )
    assert errors == ["MAKE_EDITORIAL_DECISION: decision is required"]
