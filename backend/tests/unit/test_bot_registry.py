import asyncio

import pytest

from app.bots.builtin import build_registry
from app.bots.executor import BotExecutor
from app.bots.registry import BotCommand, BotDefinition
from app.core.config import BotConfig
from app.core.errors import MissingPermission, NotFoundError, PermissionDeniedError
from app.core.security import create_bot_service_token, decode_bot_service_token
from app.models.bots import BotOutboundMessage, BotResponse

MS = "ms-1"


def _config(timeout: float = 5.0) -> BotConfig:
    return BotConfig(execution_timeout_sec=timeout, service_token_secret="test-secret", service_token_ttl_sec=300)


@pytest.fixture
def registry():
    r = build_registry()
    r.install("editorial-bot", user_id="editorial-bot-user")
    r.install("reviewer-checklist")
    return r


def test_resolve_mention_by_id_name_and_prefix(registry) -> None:
    assert registry.resolve_mention("editorial-bot").id == "editorial-bot"
    assert registry.resolve_mention("Editorial-Bot").id == "editorial-bot"
    assert registry.resolve_mention("editorial").id == "editorial-bot"
    assert registry.resolve_mention("reviewer").id == "reviewer-checklist"
    assert registry.resolve_mention("nobody") is None


def test_disabled_bot_is_not_resolved(registry) -> None:
    registry.install("submission-check", is_enabled=False)
    assert registry.resolve_mention("submission-check") is None
    assert registry.get("submission-check") is None
    assert registry.get("submission-check", enabled_only=False) is not None


def test_install_cannot_grant_undeclared_permissions(registry) -> None:
    installed = registry.install("reviewer-checklist", permissions=["read_manuscript", "make_editorial_decision"])
    assert "make_editorial_decision" not in installed.permissions
    assert "read_manuscript" in installed.permissions


def test_install_unknown_bot_raises(registry) -> None:
    with pytest.raises(KeyError):
        registry.install("ghost-bot")


@pytest.mark.asyncio
async def test_load_installations_replaces_state(repo, registry) -> None:
    repo.bot_installations.append({"bot_id": "submission-check", "is_enabled": True, "permissions": ["*"]})
    repo.bot_installations.append({"bot_id": "unknown-bot", "is_enabled": True})

    count = await registry.load_installations(repo)

    assert count == 1
    assert registry.get("editorial-bot") is None
    assert registry.get("submission-check") is not None


def test_service_token_is_scoped_to_bot_and_manuscript() -> None:
    token = create_bot_service_token(
        bot_id="editorial-bot", manuscript_id=MS, permissions=["read_manuscript"], config=_config()
    )
    claims = decode_bot_service_token(token, config=_config())
    assert claims.bot_id == "editorial-bot"
    assert claims.manuscript_id == MS
    assert claims.permissions == frozenset({"read_manuscript"})

    other = BotConfig(execution_timeout_sec=5.0, service_token_secret="other-secret", service_token_ttl_sec=300)
    with pytest.raises(PermissionDeniedError):
        decode_bot_service_token(token, config=other)


@pytest.mark.asyncio
async def test_context_rejects_missing_permission_and_other_manuscripts(repo, registry) -> None:
    installed = registry.install("editorial-bot", permissions=["post_messages"])
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(installed, manuscript_id=MS)

    with pytest.raises(MissingPermission) as exc:
        await ctx.get_manuscript()
    assert exc.value.permission == "read_manuscript"

    full = executor.build_context(registry.install("editorial-bot"), manuscript_id=MS)
    with pytest.raises(MissingPermission):
        await full.get_manuscript("ms-other")


@pytest.mark.asyncio
async def test_decision_command_without_capability_raises_before_any_action(repo, registry) -> None:
    registry.install("editorial-bot", permissions=["read_manuscript", "post_messages"])
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(registry.get("editorial-bot"), manuscript_id=MS)

    with pytest.raises(MissingPermission):
        await executor.execute_command("editorial-bot", "accept", ctx, positional=["looks", "good"])
    assert repo.manuscripts[MS]["status"] == "UNDER_REVIEW"


@pytest.mark.asyncio
async def test_accept_command_returns_decision_action_with_reason(repo, registry) -> None:
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(registry.get("editorial-bot"), manuscript_id=MS)

    response = await executor.execute_command("editorial-bot", "accept", ctx, positional=["Sound", "methods"])

    assert response.ok
    assert response.actions[0].data == {"decision": "accept", "reason": "Sound methods"}
    assert response.messages[0].privacy == "EDITOR_ONLY"


@pytest.mark.asyncio
async def test_unknown_command_returns_help_and_error(repo, registry) -> None:
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(registry.get("editorial-bot"), manuscript_id=MS)

    help_response = await executor.execute_command("editorial-bot", "help", ctx)
    assert help_response.ok
    assert "@editorial-bot accept" in help_response.messages[0].content

    unknown = await executor.execute_command("editorial-bot", "dance", ctx)
    assert unknown.errors == ["Unknown command: dance"]
    assert "Commands:" in unknown.messages[0].content


@pytest.mark.asyncio
async def test_invalid_parameters_are_reported(repo, registry) -> None:
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(registry.get("editorial-bot"), manuscript_id=MS)

    response = await executor.execute_command("editorial-bot", "phase", ctx, params={"phase": "LIMBO"})

    assert not response.ok
    assert "Usage:" in response.messages[0].content


@pytest.mark.asyncio
async def test_command_timeout_is_an_error_not_an_exception(repo) -> None:
    async def slow(ctx, params) -> BotResponse:
        await asyncio.sleep(1)
        return BotResponse(messages=[BotOutboundMessage(content="late")])

    registry = build_registry()
    registry.register(
        BotDefinition(
            id="slow-bot",
            name="Slow Bot",
            description="sleeps",
            permissions=frozenset({"read_manuscript"}),
            commands={"wait": BotCommand("wait", "sleep", slow)},
        )
    )
    registry.install("slow-bot")
    executor = BotExecutor(registry, repo, config=_config(timeout=0.01))
    ctx = executor.build_context(registry.get("slow-bot"), manuscript_id=MS)

    response = await executor.execute_command("slow-bot", "wait", ctx)

    assert not response.ok
    assert "timed out" in response.errors[0]


@pytest.mark.asyncio
async def test_status_command_summarizes_reviews(repo, registry) -> None:
    repo.review_assignments[0]["status"] = "COMPLETED"
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(registry.get("editorial-bot"), manuscript_id=MS)

    response = await executor.execute_command("editorial-bot", "status", ctx)

    assert "Reviews completed: 1/2" in response.messages[0].content


@pytest.mark.asyncio
async def test_uninstalled_bot_raises_not_found(repo, registry) -> None:
    executor = BotExecutor(registry, repo, config=_config())
    ctx = executor.build_context(registry.get("editorial-bot"), manuscript_id=MS)
    with pytest.raises(NotFoundError):
        await executor.execute_command("submission-check", "check", ctx)
