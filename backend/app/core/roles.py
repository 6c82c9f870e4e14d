import logging
import os
from typing import Optional, Set

from fastapi import Depends

from app.core.auth_utils import get_current_user, optional_user
from app.lib.repository import SupabaseEditorialRepository
from app.models.workflow import GlobalRole

logger = logging.getLogger("marginalia.auth")

GLOBAL_ROLES = {r.value for r in GlobalRole}

_repo: Optional[SupabaseEditorialRepository] = None


def _get_repo() -> SupabaseEditorialRepository:
    global _repo
    if _repo is None:
        _repo = SupabaseEditorialRepository()
    return _repo


def _parse_admin_emails() -> Set[str]:
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}


def _is_admin_email(email: Optional[str]) -> bool:
    if not email:
        return False
    return email.strip().lower() in _parse_admin_emails()


async def load_account(current_user: dict) -> dict:
    """
    身份 + 全局角色（users.role）。

    中文注释:
    1) 全局角色取自 GlobalRole（ADMIN / 各类编辑 / USER / BOT）；稿件内的 author / reviewer 由 RoleResolver 按稿件判定。
    2) ADMIN_EMAILS 中的邮箱视为 admin，便于本地/演示环境。
    3) users 表读取失败时降级为 USER，而不是 500。
    """
    user_id = str(current_user["id"])
    email = current_user.get("email")
    role = GlobalRole.USER.value
    try:
        row = await _get_repo().get_user(user_id)
        candidate = str((row or {}).get("role") or "").strip().upper()
        if candidate in GLOBAL_ROLES:
            role = candidate
    except Exception as e:
        logger.warning("[Auth] role lookup for user=%s failed (ignored): %s", user_id, e)
    if _is_admin_email(email):
        role = GlobalRole.ADMIN.value
    return {"id": user_id, "email": email, "role": role}


async def get_current_account(current_user: dict = Depends(get_current_user)) -> dict:
    return await load_account(current_user)


async def get_optional_account(current_user: Optional[dict] = Depends(optional_user)) -> Optional[dict]:
    if current_user is None:
        return None
    return await load_account(current_user)

