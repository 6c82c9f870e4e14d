from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt
from fastapi import Header, HTTPException

from app.core.config import BotConfig, get_admin_api_key
from app.core.errors import PermissionDeniedError

BOT_TOKEN_TYPE = "bot_service"


async def require_admin_key(x_admin_key: str | None = Header(default=None, alias="X-Admin-Key")) -> None:
    """
    内部 Cron / 运维接口鉴权依赖

    中文注释:
    - 该 Key 不属于用户体系（不是 JWT），仅用于内部任务触发器与失败任务排查。
    - 若未配置 ADMIN_API_KEY，则直接拒绝，避免误开放“内部接口”。
    """

    expected = get_admin_api_key()
    if not expected:
        raise HTTPException(status_code=401, detail="Admin key not configured")
    if not x_admin_key or x_admin_key != expected:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _get_bot_token_secret(config: Optional[BotConfig] = None) -> str:
    """
    Bot service token 签名密钥。

    中文注释:
    - 严禁复用 `SUPABASE_SERVICE_ROLE_KEY`。
    - 生产必须显式配置 `BOT_SERVICE_TOKEN_SECRET`；本地可使用 `SECRET_KEY` 兜底。
    """

    cfg = config or BotConfig.from_env()
    if cfg.service_token_secret:
        return cfg.service_token_secret
    raise RuntimeError("BOT_SERVICE_TOKEN_SECRET/SECRET_KEY not configured")


@dataclass(frozen=True)
class BotServiceClaims:
    bot_id: str
    manuscript_id: str
    permissions: frozenset[str]
    exp: int


def create_bot_service_token(
    *,
    bot_id: str,
    manuscript_id: str,
    permissions: Iterable[str],
    config: Optional[BotConfig] = None,
) -> str:
    """
    为一次 bot 调用签发短期凭证：只绑定一个 bot、一篇稿件与安装时声明的能力。
    """
    cfg = config or BotConfig.from_env()
    secret = _get_bot_token_secret(cfg)
    now = datetime.now(timezone.utc)
    payload = {
        "type": BOT_TOKEN_TYPE,
        "bot_id": bot_id,
        "manuscript_id": manuscript_id,
        "permissions": sorted(set(permissions)),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=cfg.service_token_ttl_sec)).timestamp()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_bot_service_token(token: str, *, config: Optional[BotConfig] = None) -> BotServiceClaims:
    """
    抛出:
    - PermissionDeniedError: token 无效/过期/类型不符
    """

    secret = _get_bot_token_secret(config)
    try:
        raw = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise PermissionDeniedError("Bot service token expired")
    except jwt.InvalidTokenError:
        raise PermissionDeniedError("Invalid bot service token")

    if raw.get("type") != BOT_TOKEN_TYPE or not raw.get("bot_id") or not raw.get("manuscript_id"):
        raise PermissionDeniedError("Invalid bot service token payload")
    return BotServiceClaims(
        bot_id=str(raw["bot_id"]),
        manuscript_id=str(raw["manuscript_id"]),
        permissions=frozenset(str(p) for p in raw.get("permissions") or []),
        exp=int(raw.get("exp") or 0),
    )
