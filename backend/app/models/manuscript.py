from __future__ import annotations

from enum import Enum


class ManuscriptStatus(str, Enum):
    """
    稿件生命周期状态枚举。

    中文注释:
    - 数据库存储为大写字符串；服务层会 normalize 后再写入。
    - 状态流转只能经由 ManuscriptStateMachine（app/services/editorial_service.py），
      API 层/Bot 不直接写 manuscripts.status。
    """

    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    REVISION_REQUESTED = "REVISION_REQUESTED"
    REVISED = "REVISED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    PUBLISHED = "PUBLISHED"
    RETRACTED = "RETRACTED"

    @classmethod
    def allowed_next(cls, current: str) -> set[str]:
        """
        状态机规则必须显性可见。

        只有两个前置条件：
        - PUBLISHED 只能从 ACCEPTED 进入；
        - RETRACTED 只能从 PUBLISHED 进入。
        其余任意两个合法状态之间都可以直接流转（编辑可以跳过审稿直接录用、撤回拒稿等）。
        同状态不算流转。
        """
        c = (current or "").strip().upper()
        if c not in {s.value for s in cls}:
            return set()
        allowed: set[str] = set()
        for target in cls:
            t = target.value
            if t == c:
                continue
            required = cls.required_previous(t)
            if required is not None and required != c:
                continue
            allowed.add(t)
        return allowed

    @classmethod
    def required_previous(cls, target: str) -> str | None:
        """
        某些目标状态只有一个合法前驱（用于给出更准确的错误信息）。
        """
        t = (target or "").strip().upper()
        if t == cls.PUBLISHED.value:
            return cls.ACCEPTED.value
        if t == cls.RETRACTED.value:
            return cls.PUBLISHED.value
        return None


class WorkflowPhase(str, Enum):
    """
    审稿轮次内的讨论阶段（与 ManuscriptStatus 相互独立）。
    """

    REVIEW = "REVIEW"
    DELIBERATION = "DELIBERATION"
    RELEASED = "RELEASED"
    AUTHOR_RESPONDING = "AUTHOR_RESPONDING"

    @classmethod
    def released_equivalent(cls) -> set[str]:
        return {cls.RELEASED.value, cls.AUTHOR_RESPONDING.value}


def normalize_status(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().upper()
    if not v:
        return None
    try:
        return ManuscriptStatus(v).value
    except ValueError:
        return None


def normalize_phase(value: str | None) -> str | None:
    if value is None:
        return None
    v = str(value).strip().upper()
    try:
        return WorkflowPhase(v).value
    except ValueError:
        return None


def is_released_phase(phase: str | None) -> bool:
    return normalize_phase(phase) in WorkflowPhase.released_equivalent()
