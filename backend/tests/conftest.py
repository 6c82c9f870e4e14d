from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from unittest.mock import MagicMock

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.config import AccessConfig, BotConfig, BroadcastConfig, WorkerConfig
from app.services.runtime import EditorialRuntime
from tests.utils.fake_repository import FakeEditorialRepository

# === 全局测试配置 ===
# 中文注释:
# 1. 单元测试一律使用内存仓储，不触碰真实 Supabase。
# 2. 默认场景：一篇 UNDER_REVIEW 稿件 + 一个作者 + 两位审稿人 + 一位编辑 + 一个 REVIEW 会话。
# 3. JWT 使用与 auth_utils 相同的默认密钥签名。

JWT_SECRET = "mock-secret-replace-later"

MANUSCRIPT_ID = "ms-1"
CONVERSATION_ID = "conv-1"


def generate_test_token(user_id: str, *, email: str | None = None, expires_in: timedelta = timedelta(hours=1)) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "email": email or f"{user_id}@example.com",
        "aud": "authenticated",
        "exp": now + expires_in,
        "iat": now,
        "role": "authenticated",
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {generate_test_token(user_id)}"}


@pytest.fixture
def repo() -> FakeEditorialRepository:
    r = FakeEditorialRepository()
    r.add_user("admin", role="ADMIN")
    r.add_user("editor", role="EDITOR_IN_CHIEF")
    r.add_user("author", role="USER", name="Ada Author")
    r.add_user("rev1", role="USER", name="Rita Reviewer")
    r.add_user("rev2", role="USER", name="Rob Reviewer")
    r.add_user("outsider", role="USER")
    r.add_user("editorial-bot-user", role="BOT", name="Editorial Bot")
    r.add_manuscript(MANUSCRIPT_ID, status="UNDER_REVIEW", workflow_phase="REVIEW")
    r.add_author(MANUSCRIPT_ID, "author")
    r.add_assignment(MANUSCRIPT_ID, "rev1", assigned_at="2026-01-01T00:00:00+00:00", assignment_id="ra-1")
    r.add_assignment(MANUSCRIPT_ID, "rev2", assigned_at="2026-01-02T00:00:00+00:00", assignment_id="ra-2")
    r.add_conversation(CONVERSATION_ID, MANUSCRIPT_ID)
    return r


@pytest.fixture
def email() -> MagicMock:
    svc = MagicMock()
    svc.send_template_email.return_value = "sent"
    return svc


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        concurrency=1,
        max_attempts=3,
        poll_interval_sec=0.01,
        backoff_base_sec=30.0,
        backoff_max_sec=3600.0,
        deadline_scan_hour_utc=8,
        run_in_process=False,
    )


@pytest.fixture
def runtime(repo: FakeEditorialRepository, email: MagicMock, worker_config: WorkerConfig) -> EditorialRuntime:
    rt = EditorialRuntime(
        repo,
        email=email,
        storage_client=MagicMock(),
        access_config=AccessConfig(public_can_view_accepted_files=False, workflow_config_ttl_sec=0.0),
        bot_config=BotConfig(execution_timeout_sec=5.0, service_token_secret="test-secret", service_token_ttl_sec=300),
        broadcast_config=BroadcastConfig(heartbeat_sec=30.0, sweep_sec=60.0, stale_sec=120.0, queue_size=10),
        worker_config=worker_config,
    )
    rt.registry.install("editorial-bot", user_id="editorial-bot-user")
    rt.registry.install("reviewer-checklist")
    rt.registry.install("submission-check")
    return rt


@pytest_asyncio.fixture
async def client(runtime: EditorialRuntime, monkeypatch: pytest.MonkeyPatch) -> AsyncGenerator[AsyncClient, None]:
    """
    挂载内存运行时的 HTTP 客户端；身份角色从同一个内存仓储读取。
    """
    import main
    from app.core import auth_utils, roles
    from app.services.runtime import get_runtime

    monkeypatch.setattr(auth_utils, "SUPABASE_JWT_SECRET", JWT_SECRET)
    monkeypatch.setattr(roles, "_repo", runtime.repo)
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)
    main.app.dependency_overrides[get_runtime] = lambda: runtime
    try:
        async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://testserver") as ac:
            yield ac
    finally:
        main.app.dependency_overrides.clear()
