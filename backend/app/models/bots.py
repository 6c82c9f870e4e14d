from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class BotPermission(str, Enum):
    READ_MANUSCRIPT = "read_manuscript"
    READ_MANUSCRIPT_FILES = "read_manuscript_files"
    UPLOAD_FILES = "upload_files"
    BOT_STORAGE = "bot_storage"
    POST_MESSAGES = "post_messages"
    UPDATE_MANUSCRIPT = "update_manuscript"
    MAKE_EDITORIAL_DECISION = "make_editorial_decision"
    UPDATE_WORKFLOW = "update_workflow"
    SEND_REMINDERS = "send_reminders"


class BotActionType(str, Enum):
    """
    Bot 返回给平台执行的“副作用指令”。
    """

    UPDATE_MANUSCRIPT_STATUS = "UPDATE_MANUSCRIPT_STATUS"
    MAKE_EDITORIAL_DECISION = "MAKE_EDITORIAL_DECISION"
    UPDATE_WORKFLOW_PHASE = "UPDATE_WORKFLOW_PHASE"
    SEND_MANUAL_REMINDER = "SEND_MANUAL_REMINDER"


class BotAction(BaseModel):
    type: BotActionType
    data: dict[str, Any] = Field(default_factory=dict)


class BotOutboundMessage(BaseModel):
    content: str
    privacy: Optional[str] = None
    replyTo: Optional[str] = None
    actions: Optional[list[dict[str, Any]]] = None


class BotResponse(BaseModel):
    """
    Bot 命令 / 事件处理器的统一返回结构。

    中文注释:
    - errors 非空即视为失败：流水线在此停止。
    - messages 由平台以 bot 身份写入对话并广播；actions 交由 BotActionProcessor。
    """

    messages: list[BotOutboundMessage] = Field(default_factory=list)
    actions: list[BotAction] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class ActionHandlerResult(BaseModel):
    success: bool
    error: Optional[str] = None
    updatedContent: Optional[str] = None
    updatedLabel: Optional[str] = None
    actions: list[BotAction] = Field(default_factory=list)
