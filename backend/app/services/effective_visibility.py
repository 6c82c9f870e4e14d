from __future__ import annotations

from typing import Any, Optional

from app.models.workflow import (
    EffectiveVisibility,
    MessagePrivacy,
    PendingChange,
    ViewerRole,
    WorkflowConfig,
)
from app.services.workflow_visibility import VisibilityEngine, can_author_see_review

# privacy -> (level, label, description)
_STATIC: dict[str, tuple[str, str, str]] = {
    MessagePrivacy.PUBLIC.value: ("everyone", "Public", "Visible to everyone, including the public."),
    MessagePrivacy.AUTHOR_VISIBLE.value: (
        "participants",
        "All Participants",
        "Visible to authors, reviewers and editors of this manuscript.",
    ),
    MessagePrivacy.REVIEWER_ONLY.value: (
        "reviewers_editors",
        "Reviewers & Editors",
        "Visible to reviewers and editors. Authors cannot see this message.",
    ),
    MessagePrivacy.EDITOR_ONLY.value: ("editors_only", "Editors Only", "Visible to editors only."),
    MessagePrivacy.ADMIN_ONLY.value: ("admins_only", "Admins Only", "Visible to administrators only."),
}

_WHEN_RELEASED = "when reviews are released"
_WHEN_ALL_SUBMITTED = "when all reviews are submitted"


def static_visibility(privacy: Any) -> EffectiveVisibility:
    key = str(getattr(privacy, "value", privacy) or "").strip().upper()
    level, label, description = _STATIC.get(key, _STATIC[MessagePrivacy.ADMIN_ONLY.value])
    return EffectiveVisibility(level=level, label=label, description=description)  # type: ignore[arg-type]


class EffectiveVisibilityProjector:
    """
    计算面向 UI/审计的“有效可见性”：现在谁能看到，以及之后是否会变化。

    中文注释:
    - 无配置时严格退化为 5 个静态标签；
    - EDITOR_ONLY / ADMIN_ONLY / PUBLIC 不受工作流影响；
    - 永久性限制（never）不报告 pendingChange，只有随阶段推进会解除的限制才报告。
    """

    def __init__(self, engine: VisibilityEngine) -> None:
        self.engine = engine

    async def compute(
        self,
        privacy: Any,
        author_id: str,
        manuscript_id: str,
        config: Optional[WorkflowConfig],
        phase: Optional[str],
        *,
        author_role: Optional[ViewerRole] = None,
    ) -> EffectiveVisibility:
        base = static_visibility(privacy)
        p = str(getattr(privacy, "value", privacy) or "").strip().upper()
        if config is None or p not in {MessagePrivacy.AUTHOR_VISIBLE.value, MessagePrivacy.REVIEWER_ONLY.value}:
            return base

        if author_role is None:
            author_role = await self.engine.roles.resolve_author_role(author_id, manuscript_id)

        if author_role == ViewerRole.REVIEWER:
            if p == MessagePrivacy.REVIEWER_ONLY.value:
                return await self._reviewer_only_from_reviewer(base, config, phase, manuscript_id)
            return await self._author_visible_from_reviewer(base, config, phase, manuscript_id)

        if author_role == ViewerRole.AUTHOR and p == MessagePrivacy.AUTHOR_VISIBLE.value:
            if self.engine.can_reviewer_see_author_responses(config, phase):
                return base
            return EffectiveVisibility(
                level="editors_only",
                label="Editors Only",
                description="Reviewers will see this response when reviews are released.",
                phaseRestricted=True,
                pendingChange=PendingChange(willBeVisibleTo="reviewers", when=_WHEN_RELEASED),
            )

        return base

    async def _reviewer_only_from_reviewer(
        self,
        base: EffectiveVisibility,
        config: WorkflowConfig,
        phase: Optional[str],
        manuscript_id: str,
    ) -> EffectiveVisibility:
        policy = config.reviewers.seeEachOther
        if await self.engine.can_reviewer_see_other_reviews(config, phase, manuscript_id):
            return base
        if policy == "never":
            return EffectiveVisibility(
                level="reviewers_editors",
                label="Reviewers & Editors",
                description="Visible to editors. Other reviewers cannot see reviewer messages in this workflow.",
            )
        return EffectiveVisibility(
            level="reviewers_editors",
            label="Reviewers & Editors",
            description="Visible to editors. Other reviewers will see it once all reviews are submitted.",
            phaseRestricted=True,
            pendingChange=PendingChange(willBeVisibleTo="other reviewers", when=_WHEN_ALL_SUBMITTED),
        )

    async def _author_visible_from_reviewer(
        self,
        base: EffectiveVisibility,
        config: WorkflowConfig,
        phase: Optional[str],
        manuscript_id: str,
    ) -> EffectiveVisibility:
        authors_can = can_author_see_review(config, phase, MessagePrivacy.AUTHOR_VISIBLE)
        released_to_authors = True if config.author.seesReviews == "on_release" and authors_can else None

        if not authors_can:
            if config.author.seesReviews == "on_release":
                return EffectiveVisibility(
                    level="reviewers_editors",
                    label="Reviewers & Editors",
                    description="Authors will see this message when reviews are released.",
                    phaseRestricted=True,
                    pendingChange=PendingChange(willBeVisibleTo="authors", when=_WHEN_RELEASED),
                )
            return EffectiveVisibility(
                level="reviewers_editors",
                label="Reviewers & Editors",
                description="Authors cannot see reviewer messages in this workflow.",
            )

        if await self.engine.can_reviewer_see_other_reviews(config, phase, manuscript_id):
            return base.model_copy(update={"releasedToAuthors": released_to_authors})

        if config.reviewers.seeEachOther == "never":
            return EffectiveVisibility(
                level="participants",
                label="Authors & Editors",
                description="Visible to authors and editors. Other reviewers cannot see reviewer messages in this workflow.",
                releasedToAuthors=released_to_authors,
            )
        return EffectiveVisibility(
            level="participants",
            label="Authors & Editors",
            description="Visible to authors and editors. Other reviewers will see it once all reviews are submitted.",
            phaseRestricted=True,
            pendingChange=PendingChange(willBeVisibleTo="other reviewers", when=_WHEN_ALL_SUBMITTED),
            releasedToAuthors=released_to_authors,
        )
