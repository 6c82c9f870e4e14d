from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.config import AccessConfig
from app.models.manuscript import ManuscriptStatus, WorkflowPhase, is_released_phase
from app.models.workflow import ViewerRole, WorkflowConfig
from app.services.role_resolver import RoleResolver

logger = logging.getLogger("marginalia.workflow")


@dataclass(frozen=True)
class ParticipationResult:
    allowed: bool
    reason: Optional[str] = None


class WorkflowParticipationService:
    """
    作者能否在审稿对话中发言（author.canParticipate），以及作者回复是否开启新一轮。

    中文注释:
    - anytime: 随时可发言；
    - on_release: 仅在 RELEASED / AUTHOR_RESPONDING 阶段；
    - invited: 需要编辑在最近一次 release 之后发出带 metadata.authorInvitation 的邀请消息。
    """

    def __init__(self, roles: RoleResolver) -> None:
        self.roles = roles

    @property
    def repo(self) -> Any:
        return self.roles.repo

    async def can_user_participate(
        self,
        user_id: Optional[str],
        global_role: Optional[str],
        manuscript: dict[str, Any],
        config: Optional[WorkflowConfig],
    ) -> ParticipationResult:
        if not user_id:
            return ParticipationResult(False, "Authentication required to participate in this conversation")
        if config is None:
            return ParticipationResult(True)

        manuscript_id = str(manuscript["id"])
        role = await self.roles.resolve_viewer_role(user_id, global_role, manuscript_id)
        if role in {ViewerRole.ADMIN, ViewerRole.EDITOR, ViewerRole.REVIEWER}:
            return ParticipationResult(True)
        if role != ViewerRole.AUTHOR:
            return ParticipationResult(False, "You are not a participant in this manuscript")

        policy = config.author.canParticipate
        if policy == "anytime":
            return ParticipationResult(True)
        if policy == "on_release":
            if is_released_phase(manuscript.get("workflow_phase")):
                return ParticipationResult(True)
            return ParticipationResult(False, "Authors can participate once reviews are released")
        if await self._has_invitation(manuscript_id):
            return ParticipationResult(True)
        return ParticipationResult(False, "Authors can participate only when invited by an editor")

    async def _has_invitation(self, manuscript_id: str) -> bool:
        latest = await self.repo.get_latest_release(manuscript_id)
        since = (latest or {}).get("released_at")
        messages = await self.repo.list_manuscript_messages_since(manuscript_id, since)
        return any(bool((m.get("metadata") or {}).get("authorInvitation")) for m in messages)

    async def handle_author_response(
        self,
        manuscript: dict[str, Any],
        author_id: str,
        config: Optional[WorkflowConfig],
    ) -> Optional[dict[str, Any]]:
        """
        RELEASED 阶段作者发言且配置 authorResponseStartsNewCycle 时：
        phase -> AUTHOR_RESPONDING，workflow_round + 1（只增不减）。
        返回更新后的稿件；不满足条件或被并发修改时返回 None。
        """
        if config is None or not config.phases.authorResponseStartsNewCycle:
            return None
        if manuscript.get("workflow_phase") != WorkflowPhase.RELEASED.value:
            return None

        manuscript_id = str(manuscript["id"])
        role = await self.roles.resolve_viewer_role(author_id, None, manuscript_id)
        if role != ViewerRole.AUTHOR:
            return None

        current_round = int(manuscript.get("workflow_round") or 1)
        updated = await self.repo.update_manuscript_if(
            manuscript_id,
            expected={"workflow_phase": WorkflowPhase.RELEASED.value, "workflow_round": current_round},
            changes={
                "workflow_phase": WorkflowPhase.AUTHOR_RESPONDING.value,
                "workflow_round": current_round + 1,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        if updated is None:
            logger.info("[Workflow] author response cycle already started: manuscript=%s", manuscript_id)
        return updated


def can_public_view_manuscript_files(status: Optional[str], access: Optional[AccessConfig] = None) -> bool:
    """
    匿名用户能否查看稿件文件：PUBLISHED 恒可；ACCEPTED 取决于期刊配置。
    """
    cfg = access or AccessConfig.from_env()
    s = (status or "").strip().upper()
    if s == ManuscriptStatus.PUBLISHED.value:
        return True
    if s == ManuscriptStatus.ACCEPTED.value:
        return cfg.public_can_view_accepted_files
    return False
