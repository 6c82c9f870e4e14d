from __future__ import annotations

import asyncio
from typing import Any, Iterable, Optional

from app.models.workflow import GlobalRole, ViewerRole


def _global_short_circuit(global_role: Optional[str], *, bot_is_editor: bool) -> Optional[ViewerRole]:
    role = (global_role or "").strip().upper()
    if role == GlobalRole.ADMIN.value:
        return ViewerRole.ADMIN
    if role in GlobalRole.editor_roles():
        return ViewerRole.EDITOR
    if bot_is_editor and role == GlobalRole.BOT.value:
        return ViewerRole.EDITOR
    return None


class RoleResolver:
    """
    解析用户与稿件之间的关系（public/author/reviewer/editor/admin）。

    中文注释:
    1) 全局 ADMIN / 编辑角色直接短路，不查关联表。
    2) 否则依次查作者关联、审稿分配，都没有则为 public。
    3) 消息作者的解析额外把 BOT 账号视为 editor（bot 输出代表编辑部）。
    4) 纯读，无副作用；列表页用 prefetch_author_roles 一次性批量解析，避免 N+1。
    """

    def __init__(self, repo: Any) -> None:
        self.repo = repo

    async def resolve_viewer_role(
        self,
        user_id: Optional[str],
        global_role: Optional[str],
        manuscript_id: str,
    ) -> ViewerRole:
        if not user_id:
            return ViewerRole.PUBLIC
        short = _global_short_circuit(global_role, bot_is_editor=False)
        if short is not None:
            return short
        return await self._relationship(user_id, manuscript_id)

    async def resolve_author_role(self, author_id: str, manuscript_id: str) -> ViewerRole:
        user = await self.repo.get_user(author_id)
        short = _global_short_circuit((user or {}).get("role"), bot_is_editor=True)
        if short is not None:
            return short
        return await self._relationship(author_id, manuscript_id)

    async def _relationship(self, user_id: str, manuscript_id: str) -> ViewerRole:
        if await self.repo.is_author(manuscript_id, user_id):
            return ViewerRole.AUTHOR
        if await self.repo.is_reviewer(manuscript_id, user_id):
            return ViewerRole.REVIEWER
        return ViewerRole.PUBLIC

    async def prefetch_author_roles(
        self, author_ids: Iterable[str], manuscript_id: str
    ) -> dict[str, ViewerRole]:
        """
        批量解析一页消息的作者角色：users / manuscript_authors / review_assignments 各一次查询。
        """
        ids = {str(a) for a in author_ids if a}
        if not ids:
            return {}

        users, author_ids_on_ms, assignments = await asyncio.gather(
            self.repo.get_users(ids),
            self.repo.list_author_ids(manuscript_id),
            self.repo.list_review_assignments(manuscript_id),
        )
        global_roles = {str(u.get("id")): u.get("role") for u in users}
        authors = set(author_ids_on_ms)
        reviewers = {str(a.get("reviewer_id")) for a in assignments if a.get("reviewer_id")}

        out: dict[str, ViewerRole] = {}
        for uid in ids:
            short = _global_short_circuit(global_roles.get(uid), bot_is_editor=True)
            if short is not None:
                out[uid] = short
            elif uid in authors:
                out[uid] = ViewerRole.AUTHOR
            elif uid in reviewers:
                out[uid] = ViewerRole.REVIEWER
            else:
                out[uid] = ViewerRole.PUBLIC
        return out
