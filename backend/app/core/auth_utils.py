import logging
import os
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.lib.api_client import supabase

logger = logging.getLogger("marginalia.auth")

# === Auth 核心配置 ===
# 中文注释:
# 1. 密钥来源于 Supabase Project Settings 中的 JWT Secret。
# 2. 浏览器的 EventSource 不能设置 Authorization 头，SSE 接口额外接受 ?access_token=。
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
ALGORITHM = "HS256"

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


def verify_token(token: str) -> dict:
    """
    解码并验证 Supabase JWT Token，返回 {"id", "email"}。
    """
    try:
        header = jwt.get_unverified_header(token)
        if header.get("alg") == ALGORITHM and SUPABASE_JWT_SECRET:
            payload = jwt.decode(token, SUPABASE_JWT_SECRET, algorithms=[ALGORITHM], audience="authenticated")
            user_id = payload.get("sub")
            if user_id is None:
                raise HTTPException(status_code=401, detail="Invalid token payload")
            return {"id": user_id, "email": payload.get("email")}

        # 非 HS256（JWT Signing Keys）：通过 Supabase Auth API 校验
        try:
            response = supabase.auth.get_user(token)
            user = response.user if response else None
        except Exception as e:
            logger.warning("[Auth] token verification via auth API failed: %s", e)
            raise HTTPException(status_code=401, detail="Token invalid or expired")

        if not user:
            raise HTTPException(status_code=401, detail="Invalid token payload")
        return {"id": user.id, "email": user.email}
    except JWTError as e:
        logger.info("[Auth] JWT rejected: %s", e)
        raise HTTPException(status_code=401, detail="Token invalid or expired")


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    return verify_token(credentials.credentials)


async def optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[dict]:
    """
    可选的 Auth 注入：无凭证时返回 None（匿名 / public 视角），凭证无效仍返回 401。
    """
    token = credentials.credentials if credentials else request.query_params.get("access_token")
    if not token:
        return None
    return verify_token(token)
