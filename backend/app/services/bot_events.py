from __future__ import annotations

import logging
from typing import Any, Optional

from app.bots.registry import BotRegistry
from app.models.jobs import BotEventJobPayload
from app.services.editorial_service import StatusChange
from app.services.job_queue import JobQueue
from app.services.pipeline_executor import PipelineExecutor

logger = logging.getLogger("marginalia.bots")

BOT_EVENTS = (
    "manuscript.submitted",
    "manuscript.statusChanged",
    "file.uploaded",
    "reviewer.assigned",
    "reviewer.statusChanged",
    "workflow.phaseChanged",
    "decision.released",
)


class BotEventDispatcher:
    """
    领域事件扇出：每个处理该事件的已启用 bot 一条 bot-event-processing 任务，外加配置的流水线。

    事件处理函数只经由任务队列执行，从不在请求内调用。
    """

    def __init__(self, registry: BotRegistry, queue: JobQueue, pipelines: Optional[PipelineExecutor] = None) -> None:
        self.registry = registry
        self.queue = queue
        self.pipelines = pipelines

    async def emit(self, event_name: str, manuscript_id: str, payload: Optional[dict[str, Any]] = None) -> int:
        if event_name not in BOT_EVENTS:
            logger.warning("[BotEvents] unknown event %s (ignored)", event_name)
            return 0

        queued = 0
        for bot in self.registry.with_event(event_name):
            job = await self.queue.enqueue_bot_event_job(
                BotEventJobPayload(
                    eventName=event_name,
                    botId=bot.id,
                    manuscriptId=str(manuscript_id),
                    payload=dict(payload or {}),
                )
            )
            if job is not None:
                queued += 1

        if self.pipelines is not None:
            try:
                await self.pipelines.dispatch(event_name, str(manuscript_id))
            except Exception as e:
                logger.warning("[BotEvents] pipeline dispatch for %s failed (ignored): %s", event_name, e)
        return queued

    async def on_status_change(self, change: StatusChange) -> None:
        await self.emit(
            "manuscript.statusChanged",
            change.manuscript_id,
            {"previousStatus": change.from_status, "newStatus": change.to_status, "changedBy": change.changed_by},
        )
