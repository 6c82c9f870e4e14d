from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from app.bots.commands import ParsedMention, parse_mentions
from app.bots.executor import BotExecutor
from app.bots.registry import BotRegistry, InstalledBot
from app.models.bots import BotOutboundMessage
from app.models.jobs import BotJobPayload
from app.models.workflow import MessagePrivacy
from app.services.bot_action_processor import BotActionProcessor
from app.services.job_queue import JobQueue
from app.services.message_service import MessageService
from app.services.role_resolver import RoleResolver

logger = logging.getLogger("marginalia.bots")


@dataclass(frozen=True)
class MentionContext:
    message_id: str
    conversation_id: str
    manuscript_id: str
    user_id: str
    global_role: Optional[str] = None
    privacy: str = MessagePrivacy.AUTHOR_VISIBLE.value


@dataclass(frozen=True)
class DispatchResult:
    bot_id: str
    command: str
    queued: bool
    ok: bool
    job_id: Optional[str] = None


class CommandDispatcher:
    """
    解析消息中的 @bot 提及并分派命令。

    中文注释:
    1) 未匹配到已安装（且启用）bot 的提及直接忽略；
    2) queued=True 的命令写入 bot-processing 任务，由 worker 异步执行；其余命令在请求内执行；
    3) 内联执行的任何异常只记日志，不影响消息创建（dispatch_mention 永不抛异常）；
    4) 命令声明了 roles 时，调用者在该稿件内的角色必须匹配。
    """

    def __init__(
        self,
        *,
        registry: BotRegistry,
        executor: BotExecutor,
        queue: JobQueue,
        messages: MessageService,
        action_processor: BotActionProcessor,
        roles: RoleResolver,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.queue = queue
        self.messages = messages
        self.action_processor = action_processor
        self.roles = roles

    async def dispatch_mention(self, message_content: str, context: MentionContext) -> list[DispatchResult]:
        results: list[DispatchResult] = []
        for mention in parse_mentions(message_content):
            bot = self.registry.resolve_mention(mention.bot_token)
            if bot is None:
                continue
            try:
                results.append(await self._dispatch_one(bot, mention, context))
            except Exception:
                logger.exception(
                    "[Dispatch] @%s %s failed for message=%s (ignored)",
                    bot.id,
                    mention.command,
                    context.message_id,
                )
                results.append(DispatchResult(bot_id=bot.id, command=mention.command, queued=False, ok=False))
        return results

    async def _reply(self, bot: InstalledBot, context: MentionContext, content: str) -> None:
        await self.messages.post_bot_messages(
            bot,
            [BotOutboundMessage(content=content)],
            conversation_id=context.conversation_id,
            reply_to=context.message_id,
            default_privacy=context.privacy,
        )

    async def _dispatch_one(self, bot: InstalledBot, mention: ParsedMention, context: MentionContext) -> DispatchResult:
        command = bot.definition.commands.get(mention.command)

        if command is not None and command.roles:
            role = await self.roles.resolve_viewer_role(context.user_id, context.global_role, context.manuscript_id)
            if not command.allows_role(role.value):
                await self._reply(bot, context, f"You are not allowed to run `{command.name}` on this manuscript.")
                return DispatchResult(bot_id=bot.id, command=mention.command, queued=False, ok=False)

        if command is not None and command.queued:
            job = await self.queue.enqueue_bot_job(
                BotJobPayload(
                    messageId=context.message_id,
                    conversationId=context.conversation_id,
                    userId=context.user_id,
                    manuscriptId=context.manuscript_id,
                    botId=bot.id,
                    command=command.name,
                    parameters={**mention.params, "_positional": mention.positional},
                )
            )
            return DispatchResult(
                bot_id=bot.id,
                command=command.name,
                queued=True,
                ok=job is not None,
                job_id=str(job.get("id")) if job else None,
            )

        ctx = self.executor.build_context(
            bot,
            manuscript_id=context.manuscript_id,
            conversation_id=context.conversation_id,
            message_id=context.message_id,
            triggered_by=context.user_id,
        )
        response = await self.executor.execute_command(
            bot.id, mention.command, ctx, params=mention.params, positional=mention.positional
        )
        await self.messages.post_bot_messages(
            bot,
            response.messages,
            conversation_id=context.conversation_id,
            reply_to=context.message_id,
            default_privacy=context.privacy,
        )
        errors = list(response.errors)
        errors += await self.action_processor.process(
            bot, response.actions, ctx, conversation_id=context.conversation_id
        )
        return DispatchResult(bot_id=bot.id, command=mention.command, queued=False, ok=not errors)


def mention_context_from_message(message: dict[str, Any], *, manuscript_id: str, global_role: Optional[str]) -> MentionContext:
    return MentionContext(
        message_id=str(message.get("id")),
        conversation_id=str(message.get("conversation_id")),
        manuscript_id=str(manuscript_id),
        user_id=str(message.get("author_id")),
        global_role=global_role,
        privacy=str(message.get("privacy") or MessagePrivacy.AUTHOR_VISIBLE.value),
    )
