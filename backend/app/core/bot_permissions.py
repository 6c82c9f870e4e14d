from __future__ import annotations

from typing import Iterable

from app.models.bots import BotActionType, BotPermission

# 中文注释：
# - 这里集中定义“bot 动作 -> 所需能力”矩阵，BotActionProcessor / BotContext 都以此为准。
# - 安装记录（bot_installations.permissions）是唯一授权来源；"*" 仅限平台内置的系统 bot。

WILDCARD = "*"

ACTION_PERMISSIONS: dict[str, str] = {
    BotActionType.UPDATE_MANUSCRIPT_STATUS.value: BotPermission.UPDATE_MANUSCRIPT.value,
    BotActionType.MAKE_EDITORIAL_DECISION.value: BotPermission.MAKE_EDITORIAL_DECISION.value,
    BotActionType.UPDATE_WORKFLOW_PHASE.value: BotPermission.UPDATE_WORKFLOW.value,
    BotActionType.SEND_MANUAL_REMINDER.value: BotPermission.SEND_REMINDERS.value,
}

KNOWN_PERMISSIONS: set[str] = {p.value for p in BotPermission}


def normalize_permissions(permissions: Iterable[str] | None) -> frozenset[str]:
    """
    归一化能力集合（小写、去空、丢弃未知项）。
    """
    out: set[str] = set()
    for raw in permissions or []:
        perm = str(raw or "").strip().lower()
        if not perm:
            continue
        if perm == WILDCARD or perm in KNOWN_PERMISSIONS:
            out.add(perm)
    return frozenset(out)


def has_permission(permissions: Iterable[str] | None, permission: str) -> bool:
    normalized = normalize_permissions(permissions)
    return WILDCARD in normalized or permission in normalized


def required_permission(action_type: str) -> str | None:
    return ACTION_PERMISSIONS.get(str(action_type or "").strip().upper())


def can_perform_action(*, action_type: str, permissions: Iterable[str] | None) -> bool:
    """
    判定 bot 能否执行某类副作用动作；未登记的动作一律拒绝。
    """
    needed = required_permission(action_type)
    if needed is None:
        return False
    return has_permission(permissions, needed)


def list_allowed_actions(permissions: Iterable[str] | None) -> set[str]:
    normalized = normalize_permissions(permissions)
    if WILDCARD in normalized:
        return set(ACTION_PERMISSIONS)
    return {action for action, perm in ACTION_PERMISSIONS.items() if perm in normalized}
