from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from app.bots.commands import HELP_COMMAND, bind_parameters
from app.bots.context import BotContext, ScopedCredential
from app.bots.registry import BotRegistry, InstalledBot
from app.core.config import BotConfig
from app.core.errors import NotFoundError
from app.core.security import create_bot_service_token, decode_bot_service_token
from app.models.bots import ActionHandlerResult, BotOutboundMessage, BotResponse

logger = logging.getLogger("marginalia.bots")


def help_text(bot: InstalledBot) -> str:
    definition = bot.definition
    lines = [f"**{definition.name}**: {definition.description}", "", "Commands:"]
    for command in definition.commands.values():
        lines.append(f"- `{command.usage(bot.id)}`: {command.description}")
    if definition.events:
        lines.append("")
        lines.append("Also runs automatically on: " + ", ".join(sorted(definition.events)))
    return "\n".join(lines)


class BotExecutor:
    """
    执行 bot 命令 / 事件 / 消息动作处理函数。

    中文注释:
    1) 每次调用都签发只绑定一个 bot + 一篇稿件的 service token，并以其 claims 构造 BotContext；
    2) 命令执行有超时（BOT_EXECUTION_TIMEOUT_SEC，默认 30 秒），超时记为错误而不是异常；
    3) 未知命令返回帮助信息（同时在 errors 中记录，流水线据此停止）；
    4) MissingPermission 等领域异常向上抛，由调用方决定记录或重试。
    """

    def __init__(self, registry: BotRegistry, repo: Any, *, config: Optional[BotConfig] = None) -> None:
        self.registry = registry
        self.repo = repo
        self.config = config or BotConfig.from_env()

    def build_context(
        self,
        bot: InstalledBot,
        *,
        manuscript_id: str,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
        triggered_by: Optional[str] = None,
        prefetched: Optional[dict[str, Any]] = None,
    ) -> BotContext:
        token = create_bot_service_token(
            bot_id=bot.id,
            manuscript_id=str(manuscript_id),
            permissions=bot.permissions,
            config=self.config,
        )
        credential = ScopedCredential(token=token, claims=decode_bot_service_token(token, config=self.config))
        return BotContext(
            bot_id=bot.id,
            manuscript_id=str(manuscript_id),
            credential=credential,
            repo=self.repo,
            conversation_id=conversation_id,
            message_id=message_id,
            triggered_by=triggered_by,
            config=dict(bot.config),
            prefetched=dict(prefetched or {}),
        )

    def _require_bot(self, bot_id: str) -> InstalledBot:
        bot = self.registry.get(bot_id)
        if bot is None:
            raise NotFoundError(f"Bot not installed or disabled: {bot_id}")
        return bot

    async def _with_timeout(self, coro: Any, *, label: str) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.config.execution_timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("[BotExecutor] %s timed out after %ss", label, self.config.execution_timeout_sec)
            return None

    async def execute_command(
        self,
        bot_id: str,
        command_name: str,
        ctx: BotContext,
        *,
        params: Optional[dict[str, Any]] = None,
        positional: Optional[list[str]] = None,
    ) -> BotResponse:
        bot = self._require_bot(bot_id)
        name = (command_name or HELP_COMMAND).strip().lower()
        command = bot.definition.commands.get(name)

        if command is None:
            if name == HELP_COMMAND:
                return BotResponse(messages=[BotOutboundMessage(content=help_text(bot))])
            return BotResponse(
                messages=[BotOutboundMessage(content=f"Unknown command `{name}`.\n\n{help_text(bot)}")],
                errors=[f"Unknown command: {name}"],
            )

        values, errors = bind_parameters(command.parameters, dict(params or {}), list(positional or []))
        if errors:
            usage = command.usage(bot.id)
            body = "\n".join(f"- {e}" for e in errors)
            return BotResponse(
                messages=[BotOutboundMessage(content=f"Invalid parameters for `{name}`:\n{body}\n\nUsage: `{usage}`")],
                errors=errors,
            )

        logger.info("[BotExecutor] %s %s manuscript=%s", bot_id, name, ctx.manuscript_id)
        result = await self._with_timeout(command.handler(ctx, values), label=f"{bot_id}.{name}")
        if result is None:
            return BotResponse(
                messages=[BotOutboundMessage(content=f"Command `{name}` timed out.")],
                errors=[f"Command {name} timed out after {self.config.execution_timeout_sec:g}s"],
            )
        return result

    async def execute_event(self, bot_id: str, event_name: str, ctx: BotContext, payload: dict[str, Any]) -> BotResponse:
        bot = self._require_bot(bot_id)
        handler = bot.definition.events.get(event_name)
        if handler is None:
            return BotResponse()
        result = await self._with_timeout(handler(ctx, payload), label=f"{bot_id}@{event_name}")
        if result is None:
            return BotResponse(errors=[f"Event handler {event_name} timed out"])
        return result

    async def execute_action_handler(
        self,
        bot_id: str,
        action: str,
        ctx: BotContext,
        params: dict[str, Any],
    ) -> ActionHandlerResult:
        bot = self.registry.get(bot_id)
        if bot is None:
            return ActionHandlerResult(success=False, error=f"Bot not installed or disabled: {bot_id}")
        handler = bot.definition.action_handlers.get(action)
        if handler is None:
            return ActionHandlerResult(success=False, error=f"Unknown action handler: {action}")
        result = await self._with_timeout(handler(ctx, params), label=f"{bot_id}#{action}")
        if result is None:
            return ActionHandlerResult(success=False, error="Action handler timed out")
        return result
