from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from app.models.jobs import PipelineStep
from app.services.job_queue import JobQueue
from app.services.workflow_config import WorkflowConfigProvider

logger = logging.getLogger("marginalia.jobs")

EVENT_PIPELINE_KEYS: dict[str, str] = {
    "manuscript.submitted": "on-submission",
    "manuscript.statusChanged": "on-status-changed",
    "file.uploaded": "on-file-uploaded",
    "reviewer.assigned": "on-reviewer-assigned",
    "reviewer.statusChanged": "on-reviewer-status-changed",
    "workflow.phaseChanged": "on-phase-changed",
    "decision.released": "on-decision-released",
}


def event_name_to_pipeline_key(event_name: str) -> Optional[str]:
    return EVENT_PIPELINE_KEYS.get(event_name)


class PipelineExecutor:
    """
    journal_settings.settings.pipelines：领域事件 -> 依次执行的 bot 命令序列。

    中文注释:
    - 只负责把第 0 步入队；后续步骤由 pipeline-step 任务在上一步无错误时继续入队；
    - 配置缺失 / 未映射的事件 / 步骤不合法都只记日志，不抛异常。
    """

    def __init__(self, workflow_config: WorkflowConfigProvider, queue: JobQueue) -> None:
        self.workflow_config = workflow_config
        self.queue = queue

    async def steps_for(self, event_name: str) -> list[PipelineStep]:
        key = event_name_to_pipeline_key(event_name)
        if key is None:
            return []
        pipelines = await self.workflow_config.pipelines()
        raw = pipelines.get(key) or []
        try:
            return [PipelineStep.model_validate(s) for s in raw]
        except PydanticValidationError as e:
            logger.warning("[Pipeline] invalid steps for %s (ignored): %s", key, e)
            return []

    async def dispatch(
        self, event_name: str, manuscript_id: str, *, triggered_by: Optional[str] = None
    ) -> Optional[dict[str, Any]]:
        steps = await self.steps_for(event_name)
        if not steps:
            return None
        logger.info("[Pipeline] %s -> %s step(s) for manuscript=%s", event_name, len(steps), manuscript_id)
        return await self.queue.enqueue_pipeline(steps, manuscript_id, step_index=0, triggered_by=triggered_by)
