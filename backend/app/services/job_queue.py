from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Union

from pydantic import BaseModel

from app.core.config import WorkerConfig
from app.core.errors import NotFoundError, ValidationError
from app.models.jobs import (
    BotEventJobPayload,
    BotJobPayload,
    DeadlineReminderPayload,
    JobStatus,
    JobTask,
    PipelineJobPayload,
    PipelineStep,
)

logger = logging.getLogger("marginalia.jobs")

# processing 超过该时长仍未结束，视为 worker 崩溃遗留
STALE_PROCESSING_AFTER = timedelta(minutes=15)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _dump(payload: Union[BaseModel, dict[str, Any]]) -> dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json")
    return dict(payload)


class JobQueue:
    """
    持久化任务队列（jobs 表）的生产者一侧 + 运维接口。

    中文注释:
    - job_key 唯一：重复入队（例如同一条提醒）直接返回 None，不报错；
    - 失败任务保留 last_error，供 list_failed / retry_failed 排查与手动重试；
    - 消费者见 app/core/job_worker.py。
    """

    def __init__(self, repo: Any, *, config: Optional[WorkerConfig] = None) -> None:
        self.repo = repo
        self.config = config or WorkerConfig.from_env()

    async def enqueue(
        self,
        task: Union[JobTask, str],
        payload: Union[BaseModel, dict[str, Any]],
        *,
        job_key: Optional[str] = None,
        run_at: Optional[datetime] = None,
        max_attempts: Optional[int] = None,
    ) -> Optional[dict[str, Any]]:
        task_name = getattr(task, "value", task)
        now = datetime.now(timezone.utc)
        row = {
            "task": task_name,
            "payload": _dump(payload),
            "status": JobStatus.PENDING.value,
            "attempts": 0,
            "max_attempts": int(max_attempts or self.config.max_attempts),
            "run_at": _iso(run_at or now),
            "job_key": job_key,
            "created_at": _iso(now),
        }
        job = await self.repo.insert_job(row)
        if job is None:
            logger.info("[JobQueue] duplicate job_key skipped: %s", job_key)
            return None
        logger.info("[JobQueue] enqueued %s id=%s key=%s", task_name, job.get("id"), job_key)
        return job

    async def enqueue_bot_job(self, payload: Union[BotJobPayload, dict[str, Any]]) -> Optional[dict[str, Any]]:
        model = payload if isinstance(payload, BotJobPayload) else BotJobPayload.model_validate(payload)
        return await self.enqueue(JobTask.BOT_PROCESSING, model)

    async def enqueue_bot_event_job(
        self, payload: Union[BotEventJobPayload, dict[str, Any]], *, job_key: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        model = payload if isinstance(payload, BotEventJobPayload) else BotEventJobPayload.model_validate(payload)
        return await self.enqueue(JobTask.BOT_EVENT_PROCESSING, model, job_key=job_key)

    async def enqueue_pipeline(
        self,
        steps: Iterable[Union[PipelineStep, dict[str, Any]]],
        manuscript_id: str,
        *,
        step_index: int = 0,
        triggered_by: Optional[str] = None,
        job_key: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        model = PipelineJobPayload(
            manuscriptId=str(manuscript_id),
            steps=[s if isinstance(s, PipelineStep) else PipelineStep.model_validate(s) for s in steps],
            stepIndex=step_index,
            triggeredBy=triggered_by,
        )
        if not model.steps:
            return None
        return await self.enqueue(JobTask.PIPELINE_STEP, model, job_key=job_key)

    async def schedule_reminder(
        self,
        payload: Union[DeadlineReminderPayload, dict[str, Any]],
        *,
        run_at: datetime,
        job_key: Optional[str] = None,
    ) -> Optional[dict[str, Any]]:
        model = (
            payload if isinstance(payload, DeadlineReminderPayload) else DeadlineReminderPayload.model_validate(payload)
        )
        return await self.enqueue(JobTask.DEADLINE_REMINDER, model, job_key=job_key, run_at=run_at)

    # === Operations ===

    async def list_failed(self, *, limit: int = 50) -> list[dict[str, Any]]:
        return await self.repo.list_jobs(status=JobStatus.FAILED.value, limit=limit)

    async def retry_failed(self, job_id: str) -> dict[str, Any]:
        job = await self.repo.get_job(job_id)
        if not job:
            raise NotFoundError("Job not found")
        if job.get("status") != JobStatus.FAILED.value:
            raise ValidationError(f"Only failed jobs can be retried (status: {job.get('status')})")
        updated = await self.repo.update_job_if(
            job_id,
            expected_status=JobStatus.FAILED.value,
            changes={
                "status": JobStatus.PENDING.value,
                "attempts": 0,
                "run_at": _iso(datetime.now(timezone.utc)),
                "locked_at": None,
                "locked_by": None,
            },
        )
        if updated is None:
            raise ValidationError("Job was modified concurrently, reload and retry")
        logger.info("[JobQueue] failed job %s re-queued", job_id)
        return updated

    async def health(self) -> dict[str, Any]:
        """
        队列健康度：各状态计数 + 卡住的 processing 任务数。
        """
        counts = {s.value: await self.repo.count_jobs(status=s.value) for s in JobStatus}
        cutoff = datetime.now(timezone.utc) - STALE_PROCESSING_AFTER
        stale = await self.repo.list_stale_processing_jobs(_iso(cutoff))
        return {
            "ok": counts[JobStatus.FAILED.value] == 0 and not stale,
            "counts": counts,
            "staleProcessing": len(stale),
        }
