import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from app.core.config import WorkerConfig
from app.core.errors import EditorialError
from app.core.sentry_init import report_job_failure
from app.models.jobs import JobStatus, JobTask

logger = logging.getLogger("marginalia.jobs")

JobHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[None]]

# processing 状态超过该时长视为 worker 崩溃遗留，重新放回 pending
RECLAIM_AFTER = timedelta(minutes=15)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def backoff_delay(attempts: int, config: WorkerConfig) -> float:
    """第 n 次失败后的等待秒数：base * 2^(n-1)，封顶 backoff_max_sec。"""
    exponent = max(0, int(attempts) - 1)
    return min(config.backoff_base_sec * (2 ** exponent), config.backoff_max_sec)


def scanner_job_key(day: datetime) -> str:
    return f"deadline-scanner-{day.astimezone(timezone.utc).strftime('%Y-%m-%d')}"


class JobWorker:
    """
    jobs 表的消费者。

    中文注释:
    1) 认领：先查 run_at 已到期的 pending 任务，再用 status=pending 条件更新抢占
       （supabase REST 没有 SKIP LOCKED，条件更新失败说明被其他 worker 抢走）；
    2) 失败：attempts 未耗尽时按指数退避放回 pending；耗尽后置为 failed 并保留 last_error；
    3) 每天 deadline_scan_hour_utc 点入队一次 deadline-scanner（job_key 按日期去重，多实例安全）。
    """

    def __init__(
        self,
        repo: Any,
        handlers: dict[str, JobHandler],
        *,
        config: Optional[WorkerConfig] = None,
        queue: Any = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.repo = repo
        self.handlers = handlers
        self.config = config or WorkerConfig.from_env()
        self.queue = queue
        self.worker_id = worker_id or f"worker-{datetime.now(timezone.utc).timestamp()}"
        self.running = False
        self._tasks: list[asyncio.Task] = []

    # === Lifecycle ===

    async def start(self) -> None:
        if self.running:
            return
        self.running = True
        logger.info("[JobWorker] %s started (concurrency=%s)", self.worker_id, self.config.concurrency)
        self._tasks = [asyncio.create_task(self._loop(i)) for i in range(self.config.concurrency)]
        self._tasks.append(asyncio.create_task(self._maintenance_loop()))

    async def stop(self) -> None:
        self.running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[JobWorker] %s stopped", self.worker_id)

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()

    async def _loop(self, slot: int) -> None:
        while self.running:
            try:
                job = await self.claim()
                if job:
                    await self.process(job)
                else:
                    await asyncio.sleep(self.config.poll_interval_sec)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("[JobWorker] loop %s error: %s", slot, e)
                await asyncio.sleep(self.config.poll_interval_sec)

    async def _maintenance_loop(self) -> None:
        while self.running:
            try:
                await self.reclaim_stale()
                await self.ensure_daily_scan()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("[JobWorker] maintenance failed (ignored): %s", e)
            await asyncio.sleep(60)

    # === Claim / process ===

    async def claim(self, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        candidates = await self.repo.list_due_jobs(_iso(now), limit=self.config.concurrency)
        for job in candidates:
            claimed = await self.repo.update_job_if(
                str(job["id"]),
                expected_status=JobStatus.PENDING.value,
                changes={
                    "status": JobStatus.PROCESSING.value,
                    "attempts": int(job.get("attempts") or 0) + 1,
                    "locked_at": _iso(now),
                    "locked_by": self.worker_id,
                },
            )
            if claimed:
                return claimed
        return None

    async def process(self, job: dict[str, Any]) -> None:
        task_name = str(job.get("task"))
        logger.info("[JobWorker] processing %s id=%s attempt=%s", task_name, job.get("id"), job.get("attempts"))
        handler = self.handlers.get(task_name)
        if handler is None:
            await self._fail(job, f"No handler registered for task {task_name}")
            return
        try:
            await handler(dict(job.get("payload") or {}), job)
        except Exception as e:
            detail = e.detail if isinstance(e, EditorialError) else str(e)
            logger.error("[JobWorker] %s id=%s failed: %s", task_name, job.get("id"), detail)
            await self.handle_failure(job, detail or e.__class__.__name__)
            return
        await self.repo.update_job_if(
            str(job["id"]),
            expected_status=JobStatus.PROCESSING.value,
            changes={
                "status": JobStatus.COMPLETED.value,
                "completed_at": _iso(datetime.now(timezone.utc)),
                "locked_by": None,
                "last_error": None,
            },
        )

    async def handle_failure(self, job: dict[str, Any], error_msg: str) -> None:
        attempts = int(job.get("attempts") or 0)
        max_attempts = int(job.get("max_attempts") or self.config.max_attempts)
        if attempts >= max_attempts:
            await self._fail(job, error_msg)
            return

        next_run = datetime.now(timezone.utc) + timedelta(seconds=backoff_delay(attempts, self.config))
        await self.repo.update_job_if(
            str(job["id"]),
            expected_status=JobStatus.PROCESSING.value,
            changes={
                "status": JobStatus.PENDING.value,
                "run_at": _iso(next_run),
                "last_error": error_msg,
                "locked_by": None,
                "locked_at": None,
            },
        )

    async def _fail(self, job: dict[str, Any], error_msg: str) -> None:
        logger.error("[JobWorker] job %s permanently failed: %s", job.get("id"), error_msg)
        report_job_failure(job, error_msg)
        await self.repo.update_job_if(
            str(job["id"]),
            expected_status=JobStatus.PROCESSING.value,
            changes={
                "status": JobStatus.FAILED.value,
                "last_error": error_msg,
                "locked_by": None,
            },
        )

    # === Maintenance ===

    async def reclaim_stale(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        stale = await self.repo.list_stale_processing_jobs(_iso(now - RECLAIM_AFTER))
        reclaimed = 0
        for job in stale:
            exhausted = int(job.get("attempts") or 0) >= int(job.get("max_attempts") or self.config.max_attempts)
            changes: dict[str, Any] = {"locked_by": None, "locked_at": None}
            if exhausted:
                changes.update({"status": JobStatus.FAILED.value, "last_error": "Worker lost while processing"})
            else:
                changes.update({"status": JobStatus.PENDING.value, "run_at": _iso(now)})
            if await self.repo.update_job_if(
                str(job["id"]), expected_status=JobStatus.PROCESSING.value, changes=changes
            ):
                reclaimed += 1
        if reclaimed:
            logger.warning("[JobWorker] reclaimed %s stale processing job(s)", reclaimed)
        return reclaimed

    async def ensure_daily_scan(self, now: Optional[datetime] = None) -> Optional[dict[str, Any]]:
        if self.queue is None:
            return None
        now = now or datetime.now(timezone.utc)
        if now.astimezone(timezone.utc).hour < self.config.deadline_scan_hour_utc:
            return None
        return await self.queue.enqueue(JobTask.DEADLINE_SCANNER, {}, job_key=scanner_job_key(now))


if __name__ == "__main__":
    from dotenv import load_dotenv

    from app.core.sentry_init import init_sentry
    from app.services.runtime import get_runtime

    load_dotenv()
    logging.basicConfig(level=logging.INFO)
    init_sentry("worker")

    async def _main() -> None:
        runtime = get_runtime()
        await runtime.load()
        await runtime.build_worker().run_forever()

    asyncio.run(_main())
