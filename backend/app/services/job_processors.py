from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from app.bots.context import BotContext
from app.bots.executor import BotExecutor
from app.bots.registry import BotRegistry, InstalledBot
from app.core.errors import EditorialError, TransientJobError
from app.core.scheduler import DeadlineScanner
from app.models.bots import BotOutboundMessage, BotResponse
from app.models.jobs import (
    BotEventJobPayload,
    BotJobPayload,
    DeadlineReminderPayload,
    JobTask,
    PipelineJobPayload,
)
from app.models.workflow import MessagePrivacy
from app.services.bot_action_processor import BotActionProcessor
from app.services.deadline_reminders import DeadlineReminderService
from app.services.job_queue import JobQueue
from app.services.message_service import MessageService

logger = logging.getLogger("marginalia.jobs")

REVIEW_CONVERSATION = "REVIEW"

JobHandler = Callable[[dict[str, Any], dict[str, Any]], Awaitable[None]]


def _job_id(job: dict[str, Any]) -> Optional[str]:
    # 重投递复用同一 id，作为 bot 回复的幂等键
    value = job.get("id")
    return str(value) if value else None


class JobProcessors:
    """
    各类任务的处理函数（由 JobWorker 按 task 名分派）。

    中文注释:
    1) 业务性错误（权限不足、非法状态、对象不存在）不会重试：在会话里留一条解释消息后任务即完成；
    2) 其它异常原样抛出，由 JobWorker 计入 attempts 并按指数退避重试；
    3) 处理函数都按“至少一次”编写：状态写入依赖 compare-and-set，重复执行不会产生重复的状态变化。
    """

    def __init__(
        self,
        repo: Any,
        *,
        registry: BotRegistry,
        executor: BotExecutor,
        messages: MessageService,
        action_processor: BotActionProcessor,
        queue: JobQueue,
        reminders: DeadlineReminderService,
        scanner: DeadlineScanner,
    ) -> None:
        self.repo = repo
        self.registry = registry
        self.executor = executor
        self.messages = messages
        self.action_processor = action_processor
        self.queue = queue
        self.reminders = reminders
        self.scanner = scanner

    def handlers(self) -> dict[str, JobHandler]:
        return {
            JobTask.BOT_PROCESSING.value: self.process_bot_job,
            JobTask.BOT_EVENT_PROCESSING.value: self.process_bot_event_job,
            JobTask.PIPELINE_STEP.value: self.process_pipeline_step,
            JobTask.DEADLINE_REMINDER.value: self.process_deadline_reminder,
            JobTask.DEADLINE_SCANNER.value: self.process_deadline_scanner,
        }

    async def _review_conversation(self, manuscript_id: str) -> Optional[dict[str, Any]]:
        return await self.repo.find_conversation(manuscript_id, REVIEW_CONVERSATION)

    async def _prefetch(self, manuscript_id: str) -> dict[str, Any]:
        prefetched: dict[str, Any] = {}
        try:
            manuscript = await self.repo.get_manuscript(manuscript_id)
            if manuscript:
                prefetched["manuscript"] = manuscript
            prefetched["files"] = await self.repo.list_manuscript_files(manuscript_id)
        except Exception as e:
            logger.warning("[Jobs] prefetch for manuscript=%s failed (ignored): %s", manuscript_id, e)
        return prefetched

    async def _deliver(
        self,
        bot: InstalledBot,
        response: BotResponse,
        ctx: BotContext,
        *,
        conversation_id: Optional[str],
        reply_to: Optional[str] = None,
        default_privacy: str = MessagePrivacy.AUTHOR_VISIBLE.value,
        job_id: Optional[str] = None,
    ) -> list[str]:
        """写入 bot 消息并执行动作，返回 bot 报告的错误 + 动作执行错误。"""
        if conversation_id:
            await self.messages.post_bot_messages(
                bot,
                response.messages,
                conversation_id=conversation_id,
                reply_to=reply_to,
                default_privacy=default_privacy,
                job_id=job_id,
            )
        errors = list(response.errors)
        errors += await self.action_processor.process(bot, response.actions, ctx, conversation_id=conversation_id)
        return errors

    async def _explain(
        self,
        bot: InstalledBot,
        conversation_id: str,
        reply_to: Optional[str],
        detail: str,
        job_id: Optional[str] = None,
    ) -> None:
        await self.messages.post_bot_messages(
            bot,
            [BotOutboundMessage(content=f"Bot command failed: {detail}")],
            conversation_id=conversation_id,
            reply_to=reply_to,
            default_privacy=MessagePrivacy.EDITOR_ONLY.value,
            job_id=f"{job_id}:error" if job_id else None,
        )

    # === bot-processing ===

    async def process_bot_job(self, payload: dict[str, Any], job: dict[str, Any]) -> None:
        data = BotJobPayload.model_validate(payload)
        bot = self.registry.get(data.botId or "")
        if bot is None:
            logger.info("[Jobs] bot %s not installed or disabled, dropping job=%s", data.botId, job.get("id"))
            return

        message = await self.repo.get_message(data.messageId)
        if not message:
            # 可能是复制延迟，交给重试
            raise TransientJobError(f"Message {data.messageId} not found")
        privacy = str(message.get("privacy") or MessagePrivacy.AUTHOR_VISIBLE.value)

        params = dict(data.parameters)
        positional = list(params.pop("_positional", None) or [])
        ctx = self.executor.build_context(
            bot,
            manuscript_id=data.manuscriptId,
            conversation_id=data.conversationId,
            message_id=data.messageId,
            triggered_by=data.userId,
        )
        try:
            response = await self.executor.execute_command(
                bot.id, data.command or "help", ctx, params=params, positional=positional
            )
            errors = await self._deliver(
                bot,
                response,
                ctx,
                conversation_id=data.conversationId,
                reply_to=data.messageId,
                default_privacy=privacy,
                job_id=_job_id(job),
            )
        except EditorialError as e:
            if isinstance(e, TransientJobError):
                raise
            logger.info("[Jobs] bot %s %s rejected: %s", bot.id, data.command, e.detail)
            await self._explain(bot, data.conversationId, data.messageId, e.detail, job_id=_job_id(job))
            return
        if errors:
            logger.info("[Jobs] bot %s %s reported errors: %s", bot.id, data.command, errors)

    # === bot-event-processing ===

    async def process_bot_event_job(self, payload: dict[str, Any], job: dict[str, Any]) -> None:
        data = BotEventJobPayload.model_validate(payload)
        bot = self.registry.get(data.botId)
        if bot is None:
            logger.info("[Jobs] bot %s not installed or disabled, skipping %s", data.botId, data.eventName)
            return

        prefetched = await self._prefetch(data.manuscriptId)
        conversation = await self._review_conversation(data.manuscriptId)
        conversation_id = str(conversation["id"]) if conversation else None
        if conversation:
            prefetched["conversation"] = conversation

        ctx = self.executor.build_context(
            bot,
            manuscript_id=data.manuscriptId,
            conversation_id=conversation_id,
            prefetched=prefetched,
        )
        try:
            response = await self.executor.execute_event(bot.id, data.eventName, ctx, data.payload)
            errors = await self._deliver(bot, response, ctx, conversation_id=conversation_id, job_id=_job_id(job))
        except EditorialError as e:
            if isinstance(e, TransientJobError):
                raise
            logger.warning("[Jobs] event %s for bot %s rejected: %s", data.eventName, bot.id, e.detail)
            return
        if errors:
            logger.info("[Jobs] event %s for bot %s reported errors: %s", data.eventName, bot.id, errors)

    # === pipeline-step ===

    async def process_pipeline_step(self, payload: dict[str, Any], job: dict[str, Any]) -> None:
        data = PipelineJobPayload.model_validate(payload)
        index = data.stepIndex
        if index < 0 or index >= len(data.steps):
            return

        step = data.steps[index]
        bot = self.registry.get(step.bot)
        if bot is None:
            logger.info("[Pipeline] step %s: bot %s not installed or enabled, halting", index, step.bot)
            return

        conversation = await self._review_conversation(data.manuscriptId)
        conversation_id = str(conversation["id"]) if conversation else None
        ctx = self.executor.build_context(
            bot,
            manuscript_id=data.manuscriptId,
            conversation_id=conversation_id,
            triggered_by=data.triggeredBy,
            prefetched=await self._prefetch(data.manuscriptId),
        )
        try:
            response = await self.executor.execute_command(bot.id, step.command, ctx, params=dict(step.parameters))
            errors = await self._deliver(bot, response, ctx, conversation_id=conversation_id, job_id=_job_id(job))
        except EditorialError as e:
            if isinstance(e, TransientJobError):
                raise
            errors = [e.detail]

        if errors:
            logger.info("[Pipeline] step %s (%s/%s) errors, halting: %s", index, step.bot, step.command, errors)
            return

        if index + 1 < len(data.steps):
            await self.queue.enqueue_pipeline(
                data.steps,
                data.manuscriptId,
                step_index=index + 1,
                triggered_by=data.triggeredBy,
                job_key=f"pipeline-{job.get('id')}-step-{index + 1}",
            )

    # === deadline-reminder / deadline-scanner ===

    async def process_deadline_reminder(self, payload: dict[str, Any], job: dict[str, Any]) -> None:
        await self.reminders.send(DeadlineReminderPayload.model_validate(payload))

    async def process_deadline_scanner(self, payload: dict[str, Any], job: dict[str, Any]) -> None:
        await self.scanner.run()
