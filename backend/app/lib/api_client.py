import os
from typing import Any, Callable, Optional

from supabase import Client, create_client

from app.core.config import app_config

# === Supabase 连接参数 ===
# 中文注释:
# - URL 以 AppConfig 为准（staging 覆盖在那里处理），启动后才注入的环境变量也会被读到。
# - 匿名 key 兼容 SUPABASE_ANON_KEY / SUPABASE_KEY 两种写法，优先前者。


def _supabase_url() -> str:
    return app_config.supabase_url or (os.environ.get("SUPABASE_URL") or "").strip()


def _anon_key() -> str:
    return (os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("SUPABASE_KEY") or "").strip()


def _service_role_key() -> str:
    return app_config.supabase_key or (os.environ.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip()


class LazyClient:
    """
    首次访问属性时才创建真实 Client 的代理。

    中文注释:
    - 仓储、邮件日志、Storage 都在 import 时引用这里的全局实例；缺少环境变量不应导致导入失败。
    - 单元测试走内存仓储，永远不会触发 factory。
    """

    def __init__(self, factory: Callable[[], Client], *, name: str):
        self._factory = factory
        self._name = name
        self._client: Optional[Client] = None

    @property
    def initialized(self) -> bool:
        return self._client is not None

    def reset(self) -> None:
        self._client = None

    def _get(self) -> Client:
        if self._client is None:
            self._client = self._factory()
        return self._client

    def __getattr__(self, item: str) -> Any:
        return getattr(self._get(), item)

    def __repr__(self) -> str:
        state = "ready" if self.initialized else "lazy"
        return f"<LazyClient {self._name} ({state})>"


def _require(value: str, message: str) -> str:
    if not value:
        raise RuntimeError(message)
    return value


def _create_supabase() -> Client:
    url = _require(_supabase_url(), "SUPABASE_URL is required")
    return create_client(url, _require(_anon_key(), "SUPABASE_ANON_KEY or SUPABASE_KEY is required"))


def _create_supabase_admin() -> Client:
    url = _require(_supabase_url(), "SUPABASE_URL is required")
    admin_key = _require(
        _service_role_key() or _anon_key(),
        "SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_KEY) is required",
    )
    return create_client(url, admin_key)


# 用户态：仅用于 Auth API 校验非 HS256 token
supabase: Client = LazyClient(_create_supabase, name="supabase")  # type: ignore[assignment]

# service_role：编辑流程、任务队列、邮件日志、Storage
supabase_admin: Client = LazyClient(_create_supabase_admin, name="supabase_admin")  # type: ignore[assignment]
