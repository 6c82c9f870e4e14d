from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from app.bots.context import BotContext
from app.bots.registry import InstalledBot
from app.core.bot_permissions import required_permission
from app.core.errors import MissingPermission, NotFoundError, StateTransitionError, ValidationError
from app.models.bots import BotAction, BotActionType, BotOutboundMessage
from app.models.workflow import MessagePrivacy
from app.services.deadline_reminders import DeadlineReminderService
from app.services.editorial_service import ManuscriptStateMachine
from app.services.workflow_phase import WorkflowPhaseService

if TYPE_CHECKING:
    from app.services.message_service import MessageService

logger = logging.getLogger("marginalia.bots")


class BotActionProcessor:
    """
    执行 bot 返回的副作用指令（BotAction）。

    中文注释:
    1) 先整体校验能力：任一指令缺能力即抛 MissingPermission，整批不执行（fail closed）；
    2) 状态非法、参数不合法等业务错误不抛出：状态保持不变，错误以 EDITOR_ONLY 消息解释给编辑，
       同时返回错误列表（流水线据此停止）；
    3) 其它异常（存储故障等）向上抛，交由 job worker 重试。
    """

    def __init__(
        self,
        *,
        state_machine: ManuscriptStateMachine,
        phases: WorkflowPhaseService,
        reminders: DeadlineReminderService,
        messages: Optional["MessageService"] = None,
    ) -> None:
        self.state_machine = state_machine
        self.phases = phases
        self.reminders = reminders
        self.messages = messages

    def check_permissions(self, actions: list[BotAction], ctx: BotContext) -> None:
        for action in actions:
            needed = required_permission(action.type.value)
            if needed is None:
                raise MissingPermission(f"action:{action.type.value}", bot_id=ctx.bot_id)
            ctx.require(needed)

    async def process(
        self,
        bot: InstalledBot,
        actions: list[BotAction],
        ctx: BotContext,
        *,
        conversation_id: Optional[str] = None,
    ) -> list[str]:
        if not actions:
            return []
        self.check_permissions(actions, ctx)

        errors: list[str] = []
        for action in actions:
            try:
                await self._apply(bot, action, ctx)
            except (StateTransitionError, ValidationError, NotFoundError) as e:
                logger.info("[BotActions] %s %s rejected: %s", bot.id, action.type.value, e.detail)
                errors.append(f"{action.type.value}: {e.detail}")

        if errors and conversation_id and self.messages is not None:
            body = "\n".join(f"- {e}" for e in errors)
            await self.messages.post_bot_messages(
                bot,
                [
                    BotOutboundMessage(
                        content=f"Could not apply the requested change:\n{body}",
                        privacy=MessagePrivacy.EDITOR_ONLY.value,
                    )
                ],
                conversation_id=conversation_id,
                reply_to=ctx.message_id,
            )
        return errors

    def _actor(self, bot: InstalledBot, ctx: BotContext) -> Optional[str]:
        return ctx.triggered_by or bot.user_id

    async def _apply(self, bot: InstalledBot, action: BotAction, ctx: BotContext) -> Any:
        data = action.data or {}
        actor = self._actor(bot, ctx)

        if action.type == BotActionType.UPDATE_MANUSCRIPT_STATUS:
            status = data.get("status")
            if not status:
                raise ValidationError("status is required")
            return await self.state_machine.transition(
                ctx.manuscript_id, str(status), changed_by=actor, comment=data.get("reason")
            )

        if action.type == BotActionType.MAKE_EDITORIAL_DECISION:
            decision = data.get("decision")
            if not decision:
                raise ValidationError("decision is required")
            return await self.state_machine.apply_decision(
                ctx.manuscript_id, str(decision), changed_by=actor, comment=data.get("reason")
            )

        if action.type == BotActionType.UPDATE_WORKFLOW_PHASE:
            phase = data.get("phase")
            if not phase:
                raise ValidationError("phase is required")
            return await self.phases.update_phase(
                ctx.manuscript_id,
                str(phase),
                changed_by=actor,
                decision_type=data.get("decisionType"),
                notes=data.get("notes"),
            )

        if action.type == BotActionType.SEND_MANUAL_REMINDER:
            assignment_id = data.get("assignmentId")
            if not assignment_id:
                raise ValidationError("assignmentId is required")
            return await self.reminders.send_manual(
                str(assignment_id), manuscript_id=ctx.manuscript_id, triggered_by=actor
            )

        raise ValidationError(f"Unsupported action: {action.type.value}")
