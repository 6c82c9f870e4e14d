from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from app.core.errors import MissingPermission, NotFoundError
from app.core.security import BotServiceClaims
from app.models.bots import BotPermission


@dataclass(frozen=True)
class ScopedCredential:
    """
    一次 bot 调用的短期凭证（bot + 稿件 + 能力集合）。

    中文注释:
    - require() 必须在任何副作用之前调用：缺能力直接抛 MissingPermission，fail closed；
    - 访问其它稿件同样抛 MissingPermission，bot 不存在“全局”访问权。
    """

    token: str
    claims: BotServiceClaims

    @property
    def bot_id(self) -> str:
        return self.claims.bot_id

    @property
    def manuscript_id(self) -> str:
        return self.claims.manuscript_id

    @property
    def permissions(self) -> frozenset[str]:
        return self.claims.permissions

    def allows(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions

    def require(self, permission: str) -> None:
        if not self.allows(permission):
            raise MissingPermission(permission, bot_id=self.bot_id)

    def require_manuscript(self, manuscript_id: str) -> None:
        if str(manuscript_id) != self.manuscript_id:
            raise MissingPermission(f"manuscript:{manuscript_id}", bot_id=self.bot_id)


@dataclass
class BotContext:
    """
    传给 bot 处理函数的调用上下文。所有数据访问都经由这里，以便统一做能力校验。
    """

    bot_id: str
    manuscript_id: str
    credential: ScopedCredential
    repo: Any
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    triggered_by: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)
    prefetched: dict[str, Any] = field(default_factory=dict)

    def require(self, permission: str) -> None:
        self.credential.require(permission)

    async def get_manuscript(self, manuscript_id: Optional[str] = None) -> dict[str, Any]:
        target = manuscript_id or self.manuscript_id
        self.credential.require_manuscript(target)
        self.require(BotPermission.READ_MANUSCRIPT.value)
        if "manuscript" in self.prefetched:
            return self.prefetched["manuscript"]
        manuscript = await self.repo.get_manuscript(target)
        if not manuscript:
            raise NotFoundError("Manuscript not found")
        self.prefetched["manuscript"] = manuscript
        return manuscript

    async def list_files(self, manuscript_id: Optional[str] = None) -> list[dict[str, Any]]:
        target = manuscript_id or self.manuscript_id
        self.credential.require_manuscript(target)
        self.require(BotPermission.READ_MANUSCRIPT_FILES.value)
        if "files" in self.prefetched:
            return self.prefetched["files"]
        files = await self.repo.list_manuscript_files(target)
        self.prefetched["files"] = files
        return files

    async def list_review_assignments(self) -> list[dict[str, Any]]:
        self.require(BotPermission.READ_MANUSCRIPT.value)
        return await self.repo.list_review_assignments(self.manuscript_id)
