from datetime import datetime, timedelta, timezone

import pytest

from app.core.errors import TransientJobError
from app.core.job_worker import JobWorker, backoff_delay, scanner_job_key
from app.models.jobs import JobTask
from app.services.job_queue import JobQueue


def _worker(repo, worker_config, handlers) -> JobWorker:
    return JobWorker(
        repo,
        handlers,
        config=worker_config,
        queue=JobQueue(repo, config=worker_config),
        worker_id="worker-test",
    )


def test_backoff_is_exponential_and_capped(worker_config) -> None:
    assert backoff_delay(1, worker_config) == 30
    assert backoff_delay(2, worker_config) == 60
    assert backoff_delay(3, worker_config) == 120
    assert backoff_delay(20, worker_config) == 3600


def test_scanner_job_key_is_per_day() -> None:
    assert scanner_job_key(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc)) == "deadline-scanner-2026-03-01"


@pytest.mark.asyncio
async def test_successful_job_completes(repo, worker_config) -> None:
    seen: list[dict] = []

    async def handler(payload, job) -> None:
        seen.append(payload)

    worker = _worker(repo, worker_config, {"deadline-scanner": handler})
    job = await worker.queue.enqueue(JobTask.DEADLINE_SCANNER, {"n": 1})

    claimed = await worker.claim()
    assert claimed["status"] == "processing"
    assert claimed["attempts"] == 1
    assert claimed["locked_by"] == "worker-test"

    await worker.process(claimed)

    stored = repo.jobs[job["id"]]
    assert stored["status"] == "completed"
    assert stored["completed_at"]
    assert seen == [{"n": 1}]


@pytest.mark.asyncio
async def test_claim_skips_jobs_not_yet_due(repo, worker_config) -> None:
    worker = _worker(repo, worker_config, {})
    await worker.queue.enqueue(
        JobTask.DEADLINE_SCANNER, {}, run_at=datetime.now(timezone.utc) + timedelta(hours=1)
    )
    assert await worker.claim() is None


@pytest.mark.asyncio
async def test_failure_retries_with_backoff_then_fails_permanently(repo, worker_config) -> None:
    async def flaky(payload, job) -> None:
        raise TransientJobError("upstream unavailable")

    worker = _worker(repo, worker_config, {"deadline-scanner": flaky})
    job = await worker.queue.enqueue(JobTask.DEADLINE_SCANNER, {})

    before = datetime.now(timezone.utc)
    await worker.process(await worker.claim())

    stored = repo.jobs[job["id"]]
    assert stored["status"] == "pending"
    assert stored["last_error"] == "upstream unavailable"
    next_run = datetime.fromisoformat(stored["run_at"])
    assert next_run >= before + timedelta(seconds=29)

    # 剩余两次尝试直接在“未来”认领
    future = datetime.now(timezone.utc) + timedelta(days=1)
    await worker.process(await worker.claim(future))
    assert repo.jobs[job["id"]]["status"] == "pending"
    assert repo.jobs[job["id"]]["attempts"] == 2

    await worker.process(await worker.claim(future + timedelta(days=1)))
    stored = repo.jobs[job["id"]]
    assert stored["status"] == "failed"
    assert stored["attempts"] == 3
    assert stored["last_error"] == "upstream unavailable"


@pytest.mark.asyncio
async def test_unknown_task_fails_immediately(repo, worker_config) -> None:
    worker = _worker(repo, worker_config, {})
    job = await worker.queue.enqueue("mystery-task", {})

    await worker.process(await worker.claim())

    assert repo.jobs[job["id"]]["status"] == "failed"
    assert "No handler" in repo.jobs[job["id"]]["last_error"]


@pytest.mark.asyncio
async def test_reclaim_stale_processing_jobs(repo, worker_config) -> None:
    worker = _worker(repo, worker_config, {})
    lost = await worker.queue.enqueue(JobTask.DEADLINE_SCANNER, {})
    exhausted = await worker.queue.enqueue(JobTask.DEADLINE_SCANNER, {})
    old = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()
    repo.jobs[lost["id"]].update({"status": "processing", "attempts": 1, "locked_at": old})
    repo.jobs[exhausted["id"]].update({"status": "processing", "attempts": 3, "locked_at": old})

    assert await worker.reclaim_stale() == 2
    assert repo.jobs[lost["id"]]["status"] == "pending"
    assert repo.jobs[exhausted["id"]]["status"] == "failed"


@pytest.mark.asyncio
async def test_daily_scan_enqueued_once_after_configured_hour(repo, worker_config) -> None:
    worker = _worker(repo, worker_config, {})
    early = datetime(2026, 3, 1, 7, tzinfo=timezone.utc)
    late = datetime(2026, 3, 1, 9, tzinfo=timezone.utc)

    assert await worker.ensure_daily_scan(early) is None
    assert await worker.ensure_daily_scan(late) is not None
    assert await worker.ensure_daily_scan(late + timedelta(hours=2)) is None

    jobs = repo.jobs_for("deadline-scanner")
    assert [j["job_key"] for j in jobs] == ["deadline-scanner-2026-03-01"]
