import asyncio

import pytest

from app.core.errors import NotFoundError, StateTransitionError, ValidationError
from app.services.editorial_service import ManuscriptStateMachine

MS = "ms-1"


@pytest.mark.asyncio
async def test_accept_moves_under_review_to_accepted_and_writes_log(repo) -> None:
    svc = ManuscriptStateMachine(repo)

    change = await svc.apply_decision(MS, "accept", changed_by="editor")

    assert change.from_status == "UNDER_REVIEW"
    assert change.to_status == "ACCEPTED"
    assert repo.manuscripts[MS]["status"] == "ACCEPTED"
    assert repo.manuscripts[MS]["accepted_at"]
    assert repo.status_logs[-1]["to_status"] == "ACCEPTED"
    assert repo.status_logs[-1]["comment"] == "accept"


@pytest.mark.asyncio
async def test_publish_requires_accepted(repo) -> None:
    svc = ManuscriptStateMachine(repo)

    with pytest.raises(StateTransitionError) as exc:
        await svc.transition(MS, "PUBLISHED", changed_by="editor")

    assert "must be ACCEPTED" in exc.value.detail
    assert repo.manuscripts[MS]["status"] == "UNDER_REVIEW"
    assert repo.status_logs == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "start,decision,expected",
    [
        ("SUBMITTED", "accept", "ACCEPTED"),
        ("REVISION_REQUESTED", "accept", "ACCEPTED"),
        ("PUBLISHED", "reject", "REJECTED"),
        ("REJECTED", "revise", "REVISION_REQUESTED"),
    ],
)
async def test_ungated_decisions_apply_from_any_status(repo, start, decision, expected) -> None:
    repo.manuscripts[MS]["status"] = start
    svc = ManuscriptStateMachine(repo)

    change = await svc.apply_decision(MS, decision, changed_by="editor")

    assert change.from_status == start
    assert repo.manuscripts[MS]["status"] == expected


@pytest.mark.asyncio
async def test_retract_requires_published(repo) -> None:
    repo.manuscripts[MS]["status"] = "ACCEPTED"
    svc = ManuscriptStateMachine(repo)

    with pytest.raises(StateTransitionError) as exc:
        await svc.apply_decision(MS, "retract", changed_by="editor")

    assert "must be PUBLISHED" in exc.value.detail
    assert repo.manuscripts[MS]["status"] == "ACCEPTED"


@pytest.mark.asyncio
async def test_same_status_is_rejected(repo) -> None:
    svc = ManuscriptStateMachine(repo)
    with pytest.raises(StateTransitionError):
        await svc.transition(MS, "under_review", changed_by="editor")


@pytest.mark.asyncio
async def test_invalid_inputs(repo) -> None:
    svc = ManuscriptStateMachine(repo)
    with pytest.raises(ValidationError):
        await svc.transition(MS, "not-a-status", changed_by="editor")
    with pytest.raises(ValidationError):
        await svc.apply_decision(MS, "maybe", changed_by="editor")
    with pytest.raises(NotFoundError):
        await svc.transition("missing", "ACCEPTED", changed_by="editor")


@pytest.mark.asyncio
async def test_concurrent_publish_succeeds_exactly_once(repo) -> None:
    repo.manuscripts[MS]["status"] = "ACCEPTED"
    calls: list[str] = []

    async def hook(change) -> None:
        calls.append(change.to_status)

    svc = ManuscriptStateMachine(repo, hooks=[hook])

    results = await asyncio.gather(
        svc.apply_decision(MS, "publish", changed_by="editor"),
        svc.apply_decision(MS, "publish", changed_by="editor"),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, StateTransitionError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert calls == ["PUBLISHED"]
    assert repo.manuscripts[MS]["status"] == "PUBLISHED"
    assert len([log for log in repo.status_logs if log["to_status"] == "PUBLISHED"]) == 1


@pytest.mark.asyncio
async def test_hook_failure_does_not_roll_back(repo) -> None:
    seen: list[str] = []

    async def broken(change) -> None:
        raise RuntimeError("storage down")

    async def recorder(change) -> None:
        seen.append(change.manuscript_id)

    svc = ManuscriptStateMachine(repo, hooks=[broken, recorder])
    await svc.apply_decision(MS, "reject", changed_by="editor")

    assert repo.manuscripts[MS]["status"] == "REJECTED"
    assert seen == [MS]
