from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.models.workflow import MessagePrivacy


class ActionHandler(BaseModel):
    botId: str
    action: str
    params: dict[str, Any] = Field(default_factory=dict)


class MessageAction(BaseModel):
    """
    消息上的一次性操作按钮（metadata.actions[]）。

    中文注释:
    - triggered 只能 false -> true 一次；并发触发由 MessageService 串行化。
    - targetUserId / targetRoles 为空表示任何能看到该消息的用户都可触发。
    """

    model_config = ConfigDict(extra="allow")

    id: str
    label: str
    handler: ActionHandler
    style: Optional[str] = None
    confirmText: Optional[str] = None
    targetUserId: Optional[str] = None
    targetRoles: Optional[list[str]] = None
    triggered: bool = False
    triggeredBy: Optional[str] = None
    triggeredAt: Optional[str] = None
    resultLabel: Optional[str] = None


class MessageAuthor(BaseModel):
    id: str
    username: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    is_masked: bool = False


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1, max_length=20000)
    privacy: MessagePrivacy = MessagePrivacy.AUTHOR_VISIBLE
    parent_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


def actions_of(message: dict[str, Any]) -> list[MessageAction]:
    metadata = message.get("metadata") or {}
    raw = metadata.get("actions") or []
    return [MessageAction.model_validate(a) for a in raw if isinstance(a, dict)]
