from __future__ import annotations

import hashlib
import logging
from typing import Any, Iterable, Optional

from app.models.manuscript import WorkflowPhase, is_released_phase
from app.models.workflow import (
    MaskDecision,
    MessagePrivacy,
    ReviewAssignmentStatus,
    ViewerRole,
    WorkflowConfig,
)
from app.services.reviewer_index import ReviewerAnonymizationIndex, reviewer_label
from app.services.role_resolver import RoleResolver

logger = logging.getLogger("marginalia.visibility")

_PRIVILEGED = {ViewerRole.ADMIN, ViewerRole.EDITOR}

_PRIVACY_AUDIENCE: dict[str, set[ViewerRole]] = {
    MessagePrivacy.AUTHOR_VISIBLE.value: {
        ViewerRole.ADMIN,
        ViewerRole.EDITOR,
        ViewerRole.AUTHOR,
        ViewerRole.REVIEWER,
    },
    MessagePrivacy.REVIEWER_ONLY.value: {ViewerRole.ADMIN, ViewerRole.EDITOR, ViewerRole.REVIEWER},
    MessagePrivacy.EDITOR_ONLY.value: {ViewerRole.ADMIN, ViewerRole.EDITOR},
    MessagePrivacy.ADMIN_ONLY.value: {ViewerRole.ADMIN},
}


def _privacy_value(privacy: Any) -> str:
    return str(getattr(privacy, "value", privacy) or "").strip().upper()


def can_see_by_privacy(viewer_role: ViewerRole, privacy: Any) -> bool:
    """
    静态 privacy 门槛（与工作流阶段无关）。未知 privacy 一律不可见。
    """
    p = _privacy_value(privacy)
    if p == MessagePrivacy.PUBLIC.value:
        return True
    audience = _PRIVACY_AUDIENCE.get(p)
    if audience is None:
        return False
    return ViewerRole(viewer_role) in audience


def can_author_see_review(config: WorkflowConfig, phase: Optional[str], privacy: Any) -> bool:
    # REVIEWER_ONLY 及更严格的消息永远不对作者展示，与工作流无关。
    if _privacy_value(privacy) not in {MessagePrivacy.PUBLIC.value, MessagePrivacy.AUTHOR_VISIBLE.value}:
        return False
    policy = config.author.seesReviews
    if policy == "realtime":
        return True
    if policy == "on_release":
        return is_released_phase(phase)
    return False


def masked_author_id(author_id: str, manuscript_id: str) -> str:
    digest = hashlib.sha256(f"{manuscript_id}:{author_id}".encode("utf-8")).hexdigest()
    return f"masked-{digest[:12]}"


PUBLIC_AUTHOR_FIELDS = ("id", "username", "name", "affiliation")


def public_author(author: dict[str, Any]) -> dict[str, Any]:
    # 未遮蔽的作者也只暴露公开资料，email 等字段不下发
    out = {k: author.get(k) for k in PUBLIC_AUTHOR_FIELDS if k in author}
    out["name"] = author.get("name") or author.get("username")
    out["is_masked"] = False
    return out


class VisibilityEngine:
    """
    工作流感知的消息可见性与身份遮蔽引擎。

    中文注释:
    1) 最终可见性 = 静态 privacy 门槛 AND 工作流门槛；
    2) WorkflowConfig 缺失时工作流门槛恒为 True（显式的 fail-open，只看 privacy），任何函数不得因此抛异常；
    3) 遮蔽后的作者永远不携带真实 user id，使用稿件内稳定的合成 id；
    4) 角色解析、匿名编号都来自注入的 RoleResolver / ReviewerAnonymizationIndex，测试可各自实例化。
    """

    def __init__(self, roles: RoleResolver, reviewer_index: ReviewerAnonymizationIndex) -> None:
        self.roles = roles
        self.reviewer_index = reviewer_index

    @property
    def repo(self) -> Any:
        return self.roles.repo

    # === Static gate ===

    async def can_user_see_message(
        self,
        user_id: Optional[str],
        global_role: Optional[str],
        privacy: Any,
        manuscript_id: str,
    ) -> bool:
        viewer_role = await self.roles.resolve_viewer_role(user_id, global_role, manuscript_id)
        return can_see_by_privacy(viewer_role, privacy)

    # === Workflow gate ===

    async def all_reviews_complete(self, manuscript_id: str) -> bool:
        assignments = await self.repo.list_review_assignments(manuscript_id)
        active = [a for a in assignments if str(a.get("status") or "").upper() in ReviewAssignmentStatus.active()]
        if not active:
            return False
        return all(str(a.get("status")).upper() == ReviewAssignmentStatus.COMPLETED.value for a in active)

    async def can_reviewer_see_other_reviews(
        self, config: WorkflowConfig, phase: Optional[str], manuscript_id: str
    ) -> bool:
        policy = config.reviewers.seeEachOther
        if policy == "realtime":
            return True
        if policy == "after_all_submit":
            if phase in {
                WorkflowPhase.DELIBERATION.value,
                WorkflowPhase.RELEASED.value,
                WorkflowPhase.AUTHOR_RESPONDING.value,
            }:
                return True
            return await self.all_reviews_complete(manuscript_id)
        return False

    @staticmethod
    def can_reviewer_see_author_responses(config: WorkflowConfig, phase: Optional[str]) -> bool:
        if config.reviewers.seeAuthorResponses == "realtime":
            return True
        return is_released_phase(phase)

    async def can_see_by_workflow(
        self,
        viewer_role: ViewerRole,
        author_role: ViewerRole,
        privacy: Any,
        phase: Optional[str],
        config: Optional[WorkflowConfig],
        *,
        viewer_id: Optional[str],
        author_id: str,
        manuscript_id: str,
    ) -> bool:
        if config is None:
            return True
        if viewer_role in _PRIVILEGED:
            return True

        if viewer_role == ViewerRole.AUTHOR and author_role == ViewerRole.REVIEWER:
            return can_author_see_review(config, phase, privacy)

        if viewer_role == ViewerRole.REVIEWER:
            if author_role == ViewerRole.REVIEWER and author_id != viewer_id:
                return await self.can_reviewer_see_other_reviews(config, phase, manuscript_id)
            if author_role == ViewerRole.AUTHOR:
                return self.can_reviewer_see_author_responses(config, phase)

        return can_see_by_privacy(viewer_role, privacy)

    async def can_user_see_message_with_workflow(
        self,
        user_id: Optional[str],
        global_role: Optional[str],
        author_id: str,
        privacy: Any,
        manuscript: dict[str, Any],
        config: Optional[WorkflowConfig],
        *,
        viewer_role: Optional[ViewerRole] = None,
        author_role: Optional[ViewerRole] = None,
    ) -> bool:
        manuscript_id = str(manuscript["id"])
        if viewer_role is None:
            viewer_role = await self.roles.resolve_viewer_role(user_id, global_role, manuscript_id)
        if not can_see_by_privacy(viewer_role, privacy):
            return False
        if config is None:
            return True
        if author_role is None:
            author_role = await self.roles.resolve_author_role(author_id, manuscript_id)
        return await self.can_see_by_workflow(
            viewer_role,
            author_role,
            privacy,
            manuscript.get("workflow_phase"),
            config,
            viewer_id=user_id,
            author_id=author_id,
            manuscript_id=manuscript_id,
        )

    # === Identity masking ===

    async def should_mask(
        self,
        viewer_role: ViewerRole,
        author_role: ViewerRole,
        author_id: str,
        viewer_id: Optional[str],
        config: Optional[WorkflowConfig],
        phase: Optional[str],
        manuscript_id: str,
    ) -> MaskDecision:
        if config is None or viewer_role in _PRIVILEGED:
            return MaskDecision(mask=False)
        if viewer_id and author_id == viewer_id:
            return MaskDecision(mask=False)

        if viewer_role == ViewerRole.AUTHOR and author_role == ViewerRole.REVIEWER:
            policy = config.author.seesReviewerIdentity
            reveal = policy == "always" or (policy == "on_release" and is_released_phase(phase))
            if not reveal:
                index = await self.reviewer_index.index_of(author_id, manuscript_id)
                return MaskDecision(mask=True, label=reviewer_label(index))

        if viewer_role == ViewerRole.REVIEWER and author_role == ViewerRole.AUTHOR:
            if config.reviewers.seeAuthorIdentity == "never":
                return MaskDecision(mask=True, label="Author")

        if viewer_role == ViewerRole.REVIEWER and author_role == ViewerRole.REVIEWER:
            if not await self.can_reviewer_see_other_reviews(config, phase, manuscript_id):
                index = await self.reviewer_index.index_of(author_id, manuscript_id)
                return MaskDecision(mask=True, label=reviewer_label(index))

        return MaskDecision(mask=False)

    async def mask_message_author(
        self,
        author: dict[str, Any],
        viewer_id: Optional[str],
        viewer_global_role: Optional[str],
        manuscript_id: str,
        config: Optional[WorkflowConfig],
        phase: Optional[str],
        *,
        viewer_role: Optional[ViewerRole] = None,
        author_role: Optional[ViewerRole] = None,
    ) -> dict[str, Any]:
        author_id = str(author.get("id") or "")
        plain = public_author(author)
        if config is None or not author_id:
            return plain

        if viewer_role is None:
            viewer_role = await self.roles.resolve_viewer_role(viewer_id, viewer_global_role, manuscript_id)
        if author_role is None:
            author_role = await self.roles.resolve_author_role(author_id, manuscript_id)

        decision = await self.should_mask(
            viewer_role, author_role, author_id, viewer_id, config, phase, manuscript_id
        )
        if not decision.mask or not decision.label:
            return plain

        return {
            "id": masked_author_id(author_id, manuscript_id),
            "username": "-".join(decision.label.lower().split()),
            "name": decision.label,
            "is_masked": True,
        }

    # === Message presentation ===

    async def present_message(
        self,
        message: dict[str, Any],
        *,
        manuscript: dict[str, Any],
        config: Optional[WorkflowConfig],
        viewer_id: Optional[str],
        viewer_global_role: Optional[str],
        viewer_role: ViewerRole,
        author: Optional[dict[str, Any]] = None,
        author_role: Optional[ViewerRole] = None,
    ) -> Optional[dict[str, Any]]:
        """
        针对单个查看者：不可见返回 None；可见则返回作者已按规则遮蔽的消息副本。
        """
        author_id = str(message.get("author_id") or "")
        manuscript_id = str(manuscript["id"])
        privacy = message.get("privacy")

        if not can_see_by_privacy(viewer_role, privacy):
            return None
        if config is not None:
            if author_role is None:
                author_role = await self.roles.resolve_author_role(author_id, manuscript_id)
            visible = await self.can_see_by_workflow(
                viewer_role,
                author_role,
                privacy,
                manuscript.get("workflow_phase"),
                config,
                viewer_id=viewer_id,
                author_id=author_id,
                manuscript_id=manuscript_id,
            )
            if not visible:
                return None

        author_info = author or message.get("author") or {"id": author_id}
        masked = await self.mask_message_author(
            author_info,
            viewer_id,
            viewer_global_role,
            manuscript_id,
            config,
            manuscript.get("workflow_phase"),
            viewer_role=viewer_role,
            author_role=author_role,
        )
        out = {**message, "author": masked}
        if masked.get("is_masked"):
            out["author_id"] = masked["id"]
        return out

    async def filter_visible_messages(
        self,
        messages: Iterable[dict[str, Any]],
        *,
        manuscript: dict[str, Any],
        config: Optional[WorkflowConfig],
        viewer_id: Optional[str],
        viewer_global_role: Optional[str],
    ) -> list[dict[str, Any]]:
        """
        列表接口：一次解析查看者角色 + 批量预取作者角色/资料，再逐条过滤与遮蔽。
        """
        rows = list(messages)
        manuscript_id = str(manuscript["id"])
        viewer_role = await self.roles.resolve_viewer_role(viewer_id, viewer_global_role, manuscript_id)
        author_ids = {str(m.get("author_id")) for m in rows if m.get("author_id")}
        author_roles = await self.roles.prefetch_author_roles(author_ids, manuscript_id)
        authors = {str(u.get("id")): u for u in await self.repo.get_users(author_ids)}

        out: list[dict[str, Any]] = []
        for message in rows:
            author_id = str(message.get("author_id") or "")
            presented = await self.present_message(
                message,
                manuscript=manuscript,
                config=config,
                viewer_id=viewer_id,
                viewer_global_role=viewer_global_role,
                viewer_role=viewer_role,
                author=authors.get(author_id) or {"id": author_id},
                author_role=author_roles.get(author_id, ViewerRole.PUBLIC),
            )
            if presented is not None:
                out.append(presented)
        return out
