from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessagePrivacy(str, Enum):
    PUBLIC = "PUBLIC"
    AUTHOR_VISIBLE = "AUTHOR_VISIBLE"
    REVIEWER_ONLY = "REVIEWER_ONLY"
    EDITOR_ONLY = "EDITOR_ONLY"
    ADMIN_ONLY = "ADMIN_ONLY"


class ViewerRole(str, Enum):
    """
    用户相对于某篇稿件的关系（不是全局角色）。
    """

    PUBLIC = "public"
    AUTHOR = "author"
    REVIEWER = "reviewer"
    EDITOR = "editor"
    ADMIN = "admin"


class GlobalRole(str, Enum):
    ADMIN = "ADMIN"
    EDITOR_IN_CHIEF = "EDITOR_IN_CHIEF"
    ACTION_EDITOR = "ACTION_EDITOR"
    MANAGING_EDITOR = "MANAGING_EDITOR"
    USER = "USER"
    BOT = "BOT"

    @classmethod
    def editor_roles(cls) -> set[str]:
        return {cls.EDITOR_IN_CHIEF.value, cls.ACTION_EDITOR.value, cls.MANAGING_EDITOR.value}


class ReviewAssignmentStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"

    @classmethod
    def active(cls) -> set[str]:
        return {cls.ACCEPTED.value, cls.IN_PROGRESS.value, cls.COMPLETED.value}


class AuthorPolicy(BaseModel):
    seesReviews: Literal["realtime", "on_release", "never"] = "on_release"
    seesReviewerIdentity: Literal["always", "on_release", "never"] = "never"
    canParticipate: Literal["anytime", "on_release", "invited"] = "anytime"


class ReviewerPolicy(BaseModel):
    seeEachOther: Literal["realtime", "after_all_submit", "never"] = "never"
    seeAuthorIdentity: Literal["always", "never"] = "always"
    seeAuthorResponses: Literal["realtime", "on_release"] = "realtime"


class PhasePolicy(BaseModel):
    enabled: bool = False
    authorResponseStartsNewCycle: bool = False
    requireAllReviewsBeforeRelease: bool = False


class WorkflowConfig(BaseModel):
    """
    期刊级工作流配置（journal_settings.settings.workflowConfig）。

    中文注释:
    - 字段名保持与前端/数据库 JSON 一致（camelCase），避免双向映射。
    - 配置缺失时调用方传 None，可见性规则退化为只看消息 privacy。
    """

    model_config = ConfigDict(extra="ignore")

    author: AuthorPolicy = Field(default_factory=AuthorPolicy)
    reviewers: ReviewerPolicy = Field(default_factory=ReviewerPolicy)
    phases: PhasePolicy = Field(default_factory=PhasePolicy)


VisibilityLevel = Literal[
    "everyone",
    "participants",
    "reviewers_editors",
    "editors_only",
    "admins_only",
]


class PendingChange(BaseModel):
    willBeVisibleTo: str
    when: str


class EffectiveVisibility(BaseModel):
    """
    面向 UI/审计的“当前谁能看到、之后会不会变”摘要。
    """

    level: VisibilityLevel
    label: str
    description: str
    phaseRestricted: Optional[bool] = None
    pendingChange: Optional[PendingChange] = None
    releasedToAuthors: Optional[bool] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class MaskDecision(BaseModel):
    mask: bool = False
    label: Optional[str] = None


class ManuscriptContext(BaseModel):
    """Subset of a manuscript row the visibility rules need."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: Optional[str] = None
    workflow_phase: Optional[str] = None
    workflow_round: int = 1
