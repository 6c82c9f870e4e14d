import asyncio
import json

import pytest

from app.core.config import BroadcastConfig
from app.models.workflow import ViewerRole
from app.services.broadcast import HEARTBEAT_FRAME, Broadcaster, format_sse

CONV = "conv-1"
MS = "ms-1"

TRADITIONAL_BLIND = {
    "author": {"seesReviews": "on_release", "seesReviewerIdentity": "never"},
    "reviewers": {"seeEachOther": "never"},
    "phases": {"enabled": True},
}


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _broadcaster(runtime, *, queue_size: int = 10, clock=None) -> Broadcaster:
    return Broadcaster(
        engine=runtime.engine,
        workflow_config=runtime.workflow_config,
        config=BroadcastConfig(heartbeat_sec=30.0, sweep_sec=60.0, stale_sec=120.0, queue_size=queue_size),
        clock=clock or _Clock(),
    )


def _drain(subscriber) -> list:
    frames = []
    while not subscriber.queue.empty():
        frames.append(subscriber.queue.get_nowait())
    return frames


def _events(subscriber) -> list[dict]:
    return [json.loads(f[len("data: "):]) for f in _drain(subscriber) if f and f.startswith("data: ")]


@pytest.mark.asyncio
async def test_subscribe_resolves_role_and_sends_connected(runtime) -> None:
    broadcaster = _broadcaster(runtime)
    sub = await broadcaster.subscribe(CONV, user_id="rev1", user_role="USER")

    assert sub.manuscript_id == MS
    assert sub.viewer_role == ViewerRole.REVIEWER
    assert _events(sub) == [{"type": "connected", "conversationId": CONV}]
    assert broadcaster.registry.count(CONV) == 1


@pytest.mark.asyncio
async def test_new_message_filtered_per_subscriber(runtime, repo) -> None:
    repo.settings["workflowConfig"] = TRADITIONAL_BLIND
    broadcaster = _broadcaster(runtime)
    editor = await broadcaster.subscribe(CONV, user_id="editor", user_role="EDITOR_IN_CHIEF")
    author = await broadcaster.subscribe(CONV, user_id="author", user_role="USER")
    reviewer2 = await broadcaster.subscribe(CONV, user_id="rev2", user_role="USER")
    anonymous = await broadcaster.subscribe(CONV, user_id=None, user_role=None)
    for sub in (editor, author, reviewer2, anonymous):
        _drain(sub)

    message = repo.add_message(CONV, "rev1", "My review", privacy="AUTHOR_VISIBLE")
    delivered = await broadcaster.broadcast(CONV, {"type": "new-message", "message": message}, manuscript_id=MS)

    assert delivered == 1
    [event] = _events(editor)
    assert event["message"]["author"]["id"] == "rev1"
    assert _drain(author) == []
    assert _drain(reviewer2) == []
    assert _drain(anonymous) == []


@pytest.mark.asyncio
async def test_released_review_is_masked_for_author(runtime, repo) -> None:
    repo.settings["workflowConfig"] = TRADITIONAL_BLIND
    repo.manuscripts[MS]["workflow_phase"] = "RELEASED"
    broadcaster = _broadcaster(runtime)
    author = await broadcaster.subscribe(CONV, user_id="author", user_role="USER")
    _drain(author)

    message = repo.add_message(CONV, "rev2", "Second review", privacy="AUTHOR_VISIBLE")
    await broadcaster.broadcast(CONV, {"type": "new-message", "message": message})

    [event] = _events(author)
    assert event["message"]["author"]["name"] == "Reviewer B"
    assert "rev2" not in json.dumps(event["message"]["author"])
    assert event["message"]["author_id"] != "rev2"


@pytest.mark.asyncio
async def test_non_message_events_are_sent_unfiltered(runtime) -> None:
    broadcaster = _broadcaster(runtime)
    anonymous = await broadcaster.subscribe(CONV, user_id=None, user_role=None)
    _drain(anonymous)

    await broadcaster.broadcast(CONV, {"type": "workflow-phase-changed", "phase": "RELEASED"})

    assert _events(anonymous) == [{"type": "workflow-phase-changed", "phase": "RELEASED"}]


@pytest.mark.asyncio
async def test_full_queue_drops_only_that_subscriber(runtime, repo) -> None:
    broadcaster = _broadcaster(runtime, queue_size=1)
    # connected 帧占满队列
    stuck = await broadcaster.subscribe(CONV, user_id="editor", user_role="EDITOR_IN_CHIEF")
    healthy = await broadcaster.subscribe(CONV, user_id="admin", user_role="ADMIN")
    _drain(healthy)

    message = repo.add_message(CONV, "editor", "Note", privacy="EDITOR_ONLY")
    delivered = await broadcaster.broadcast(CONV, {"type": "new-message", "message": message})

    assert delivered == 1
    assert stuck.closed is True
    assert broadcaster.registry.count(CONV) == 1
    assert len(_events(healthy)) == 1


@pytest.mark.asyncio
async def test_heartbeat_and_stale_sweep(runtime) -> None:
    clock = _Clock()
    broadcaster = _broadcaster(runtime, clock=clock)
    old = await broadcaster.subscribe(CONV, user_id="editor", user_role="EDITOR_IN_CHIEF")
    clock.now += 100
    fresh = await broadcaster.subscribe(CONV, user_id="admin", user_role="ADMIN")
    _drain(old)
    _drain(fresh)

    assert broadcaster.heartbeat() == 2
    assert _drain(fresh) == [HEARTBEAT_FRAME]

    clock.now += 50
    assert broadcaster.sweep_stale() == 1
    assert _drain(old)[-1] is None
    assert broadcaster.registry.count() == 1


@pytest.mark.asyncio
async def test_stream_yields_until_closed_and_unsubscribes(runtime) -> None:
    broadcaster = _broadcaster(runtime)
    sub = await broadcaster.subscribe(CONV, user_id="editor", user_role="EDITOR_IN_CHIEF")
    await broadcaster.broadcast(CONV, {"type": "typing", "userId": "editor"})
    broadcaster.close_all()

    frames = [frame async for frame in broadcaster.stream(sub)]

    assert frames[0] == format_sse({"type": "connected", "conversationId": CONV})
    assert frames[1] == format_sse({"type": "typing", "userId": "editor"})
    assert broadcaster.registry.conversation_ids() == []


@pytest.mark.asyncio
async def test_start_and_stop_background_loops(runtime) -> None:
    broadcaster = _broadcaster(runtime)
    await broadcaster.subscribe(CONV, user_id="editor", user_role="EDITOR_IN_CHIEF")
    broadcaster.start()
    await asyncio.sleep(0)
    await broadcaster.stop()
    assert broadcaster.registry.count() == 0
