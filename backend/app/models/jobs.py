from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobTask(str, Enum):
    BOT_PROCESSING = "bot-processing"
    BOT_EVENT_PROCESSING = "bot-event-processing"
    PIPELINE_STEP = "pipeline-step"
    DEADLINE_REMINDER = "deadline-reminder"
    DEADLINE_SCANNER = "deadline-scanner"


class BotJobPayload(BaseModel):
    """Mention-triggered bot work."""

    messageId: str
    conversationId: str
    userId: str
    manuscriptId: str
    botId: Optional[str] = None
    command: Optional[str] = None
    parameters: dict[str, Any] = Field(default_factory=dict)


class BotEventJobPayload(BaseModel):
    eventName: str
    botId: str
    manuscriptId: str
    payload: dict[str, Any] = Field(default_factory=dict)


class PipelineStep(BaseModel):
    bot: str
    command: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class PipelineJobPayload(BaseModel):
    manuscriptId: str
    steps: list[PipelineStep]
    stepIndex: int = 0
    triggeredBy: Optional[str] = None


class DeadlineReminderPayload(BaseModel):
    reminderId: Optional[str] = None
    assignmentId: str
    daysBefore: int
    isManual: bool = False
    triggeredBy: Optional[str] = None


class Job(BaseModel):
    id: UUID
    task: JobTask
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    run_at: datetime
    job_key: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    last_error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    JobTask.BOT_PROCESSING.value: BotJobPayload,
    JobTask.BOT_EVENT_PROCESSING.value: BotEventJobPayload,
    JobTask.PIPELINE_STEP.value: PipelineJobPayload,
    JobTask.DEADLINE_REMINDER.value: DeadlineReminderPayload,
}
