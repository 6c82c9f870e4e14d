from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from app.core.errors import NotFoundError, StateTransitionError, ValidationError
from app.models.manuscript import ManuscriptStatus, normalize_status

logger = logging.getLogger("marginalia.workflow")


@dataclass(frozen=True)
class StatusChange:
    manuscript_id: str
    from_status: str
    to_status: str
    changed_by: str | None
    comment: str | None
    created_at: str
    manuscript: dict[str, Any] = field(default_factory=dict)


PostCommitHook = Callable[[StatusChange], Awaitable[None]]

# bot 决策 -> 目标状态
DECISION_STATUS: dict[str, str] = {
    "accept": ManuscriptStatus.ACCEPTED.value,
    "reject": ManuscriptStatus.REJECTED.value,
    "minor_revision": ManuscriptStatus.REVISION_REQUESTED.value,
    "major_revision": ManuscriptStatus.REVISION_REQUESTED.value,
    "revise": ManuscriptStatus.REVISION_REQUESTED.value,
    "publish": ManuscriptStatus.PUBLISHED.value,
    "retract": ManuscriptStatus.RETRACTED.value,
}


class ManuscriptStateMachine:
    """
    统一的稿件状态机与审计日志写入服务。

    中文注释:
    - 核心状态流转逻辑必须显性可见（见 ManuscriptStatus.allowed_next），不得散落在 API 层/bot。
    - 写入采用条件 update（status = 读取时的旧值）：并发的两次 publish 只有一次能成功，
      另一次得到 StateTransitionError，下游副作用不会执行两次。
    - 提交成功后依次执行 post-commit hooks（静态资源发布、作者通知、bot 事件），
      每个 hook 的失败单独记录日志，不回滚状态。
    """

    def __init__(self, repo: Any, *, hooks: Optional[list[PostCommitHook]] = None) -> None:
        self.repo = repo
        self.hooks: list[PostCommitHook] = list(hooks or [])

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def add_hook(self, hook: PostCommitHook) -> None:
        self.hooks.append(hook)

    async def get_manuscript(self, manuscript_id: str) -> dict[str, Any]:
        manuscript = await self.repo.get_manuscript(manuscript_id)
        if not manuscript:
            raise NotFoundError("Manuscript not found")
        return manuscript

    async def _insert_transition_log(self, change: StatusChange) -> None:
        """
        写入 status_transition_logs（失败则降级忽略）。
        """
        try:
            await self.repo.insert_status_log(
                {
                    "manuscript_id": change.manuscript_id,
                    "from_status": change.from_status,
                    "to_status": change.to_status,
                    "comment": change.comment,
                    "changed_by": change.changed_by,
                    "created_at": change.created_at,
                }
            )
        except Exception as e:
            logger.warning("[Workflow] transition log insert failed (ignored): %s", e)

    async def transition(
        self,
        manuscript_id: str,
        to_status: str,
        *,
        changed_by: str | None,
        comment: str | None = None,
    ) -> StatusChange:
        to_norm = normalize_status(to_status)
        if to_norm is None:
            raise ValidationError(f"Invalid status: {to_status}")

        ms = await self.get_manuscript(manuscript_id)
        from_norm = normalize_status(ms.get("status"))
        if from_norm is None:
            raise StateTransitionError(
                f"Manuscript has unknown status: {ms.get('status')}", to_status=to_norm
            )

        if from_norm == to_norm:
            raise StateTransitionError(
                f"Manuscript is already {to_norm}", from_status=from_norm, to_status=to_norm
            )

        allowed = ManuscriptStatus.allowed_next(from_norm)
        if to_norm not in allowed:
            required = ManuscriptStatus.required_previous(to_norm)
            if required:
                detail = f"Cannot move to {to_norm}: manuscript must be {required} (current: {from_norm})"
            else:
                detail = f"Invalid transition: {from_norm} -> {to_norm}. Allowed: {sorted(allowed)}"
            raise StateTransitionError(detail, from_status=from_norm, to_status=to_norm)

        now = self._now()
        changes: dict[str, Any] = {"status": to_norm, "updated_at": now}
        if to_norm == ManuscriptStatus.PUBLISHED.value:
            changes["published_at"] = now
        elif to_norm == ManuscriptStatus.ACCEPTED.value:
            changes["accepted_at"] = now

        updated = await self.repo.update_manuscript_if(
            manuscript_id, expected={"status": from_norm}, changes=changes
        )
        if updated is None:
            # 读取之后状态已被其它请求/任务修改
            current = await self.repo.get_manuscript(manuscript_id)
            current_status = normalize_status((current or {}).get("status"))
            raise StateTransitionError(
                f"Manuscript status changed concurrently: expected {from_norm}, now {current_status}",
                from_status=current_status,
                to_status=to_norm,
            )

        change = StatusChange(
            manuscript_id=manuscript_id,
            from_status=from_norm,
            to_status=to_norm,
            changed_by=changed_by,
            comment=comment,
            created_at=now,
            manuscript=updated,
        )
        await self._insert_transition_log(change)
        logger.info("[Workflow] %s: %s -> %s by %s", manuscript_id, from_norm, to_norm, changed_by)
        await self._run_hooks(change)
        return change

    async def apply_decision(
        self,
        manuscript_id: str,
        decision: str,
        *,
        changed_by: str | None,
        comment: str | None = None,
    ) -> StatusChange:
        key = (decision or "").strip().lower()
        target = DECISION_STATUS.get(key)
        if target is None:
            raise ValidationError(f"Unknown decision: {decision}. Valid: {sorted(DECISION_STATUS)}")
        return await self.transition(manuscript_id, target, changed_by=changed_by, comment=comment or key)

    async def _run_hooks(self, change: StatusChange) -> None:
        for hook in self.hooks:
            try:
                await hook(change)
            except Exception as e:
                name = getattr(hook, "__qualname__", None) or type(hook).__name__
                logger.warning("[Workflow] post-commit hook %s failed (ignored): %s", name, e)
