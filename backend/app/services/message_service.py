from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Optional

from app.bots.executor import BotExecutor
from app.bots.registry import BotRegistry, InstalledBot
from app.core.errors import (
    ActionAlreadyTriggeredError,
    EditorialError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.models.bots import BotOutboundMessage
from app.models.message import MessageCreate, actions_of
from app.models.workflow import MessagePrivacy, ViewerRole
from app.services.broadcast import Broadcaster
from app.services.effective_visibility import EffectiveVisibilityProjector
from app.services.workflow_config import WorkflowConfigProvider
from app.services.workflow_participation import WorkflowParticipationService
from app.services.workflow_visibility import VisibilityEngine, can_see_by_privacy

if TYPE_CHECKING:
    from app.services.bot_action_processor import BotActionProcessor

logger = logging.getLogger("marginalia.messages")

_PATCH_ATTEMPTS = 3


@dataclass
class _ActionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _privacy_value(privacy: Any) -> str:
    return str(getattr(privacy, "value", privacy) or "").strip().upper()


class MessageService:
    """
    会话消息：创建、按查看者过滤列表、bot 回复写入、一次性消息动作触发。

    中文注释:
    1) 创建先写库再广播（new-message），广播失败不影响创建结果；
    2) 列表接口返回的每条消息都经过 VisibilityEngine 过滤与遮蔽，并附带 effectiveVisibility；
    3) 消息动作 triggered 只能 false -> true 一次：进程内按 message_id 加 asyncio.Lock 串行；
       执行 handler 之前先用 updated_at 条件写占位（跨进程只有一个能占到），handler 失败则撤销占位。
    """

    def __init__(
        self,
        repo: Any,
        *,
        engine: VisibilityEngine,
        projector: EffectiveVisibilityProjector,
        participation: WorkflowParticipationService,
        workflow_config: WorkflowConfigProvider,
        broadcaster: Broadcaster,
        registry: BotRegistry,
        executor: BotExecutor,
        action_processor: Optional["BotActionProcessor"] = None,
    ) -> None:
        self.repo = repo
        self.engine = engine
        self.projector = projector
        self.participation = participation
        self.workflow_config = workflow_config
        self.broadcaster = broadcaster
        self.registry = registry
        self.executor = executor
        self.action_processor = action_processor
        self._action_locks: dict[str, _ActionLock] = {}

    # === Loading helpers ===

    async def _conversation_and_manuscript(self, conversation_id: str) -> tuple[dict[str, Any], dict[str, Any]]:
        conversation = await self.repo.get_conversation(conversation_id)
        if not conversation:
            raise NotFoundError("Conversation not found")
        manuscript = await self.repo.get_manuscript(str(conversation.get("manuscript_id")))
        if not manuscript:
            raise NotFoundError("Manuscript not found")
        return conversation, manuscript

    async def _broadcast(self, conversation_id: str, event: dict[str, Any], manuscript_id: Optional[str]) -> None:
        try:
            await self.broadcaster.broadcast(conversation_id, event, manuscript_id=manuscript_id)
        except Exception as e:
            logger.warning("[Messages] broadcast %s failed (ignored): %s", event.get("type"), e)

    # === Create ===

    async def create_message(
        self,
        *,
        conversation: dict[str, Any],
        author_id: str,
        content: str,
        privacy: Any = MessagePrivacy.AUTHOR_VISIBLE,
        is_bot: bool = False,
        parent_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        now = _now()
        row = await self.repo.insert_message(
            {
                "conversation_id": conversation["id"],
                "author_id": author_id,
                "content": content,
                "privacy": _privacy_value(privacy) or MessagePrivacy.AUTHOR_VISIBLE.value,
                "is_bot": bool(is_bot),
                "parent_id": parent_id,
                "metadata": metadata or {},
                "created_at": now,
                "updated_at": now,
            }
        )
        await self._broadcast(
            str(conversation["id"]),
            {"type": "new-message", "message": row},
            str(conversation.get("manuscript_id") or "") or None,
        )
        return row

    async def post_user_message(
        self,
        conversation_id: str,
        *,
        user_id: str,
        global_role: Optional[str],
        payload: MessageCreate,
    ) -> dict[str, Any]:
        conversation, manuscript = await self._conversation_and_manuscript(conversation_id)
        manuscript_id = str(manuscript["id"])
        config = await self.workflow_config.get()

        viewer_role = await self.engine.roles.resolve_viewer_role(user_id, global_role, manuscript_id)
        if viewer_role == ViewerRole.PUBLIC:
            raise PermissionDeniedError("You are not a participant in this manuscript")
        if not can_see_by_privacy(viewer_role, payload.privacy):
            raise PermissionDeniedError(f"You cannot post {payload.privacy.value} messages")

        gate = await self.participation.can_user_participate(user_id, global_role, manuscript, config)
        if not gate.allowed:
            raise PermissionDeniedError(gate.reason or "You cannot participate in this conversation")

        metadata = dict(payload.metadata or {})
        # 邀请标记只允许编辑写入
        if metadata.get("authorInvitation") and viewer_role not in {ViewerRole.EDITOR, ViewerRole.ADMIN}:
            metadata.pop("authorInvitation", None)

        message = await self.create_message(
            conversation=conversation,
            author_id=user_id,
            content=payload.content,
            privacy=payload.privacy,
            parent_id=payload.parent_id,
            metadata=metadata,
        )

        if viewer_role == ViewerRole.AUTHOR:
            updated = await self.participation.handle_author_response(manuscript, user_id, config)
            if updated is not None:
                self.workflow_config.invalidate()
                await self._broadcast(
                    conversation_id,
                    {
                        "type": "workflow-phase-changed",
                        "manuscriptId": manuscript_id,
                        "phase": updated.get("workflow_phase"),
                        "round": updated.get("workflow_round"),
                    },
                    manuscript_id,
                )
        return message

    async def post_bot_messages(
        self,
        bot: InstalledBot,
        messages: list[BotOutboundMessage],
        *,
        conversation_id: str,
        reply_to: Optional[str] = None,
        default_privacy: Any = MessagePrivacy.AUTHOR_VISIBLE,
        job_id: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """
        写入 bot 回复。

        中文注释:
        - job_id 非空时每条回复带 metadata.jobId / jobSeq；重投递的任务跳过已写入的序号，不会重复发帖。
        """
        if not messages:
            return []
        conversation = await self.repo.get_conversation(conversation_id)
        if not conversation:
            logger.warning("[Messages] bot %s reply dropped: conversation %s missing", bot.id, conversation_id)
            return []

        already: set[int] = set()
        if job_id:
            for row in await self.repo.list_job_replies(conversation_id, job_id):
                seq = (row.get("metadata") or {}).get("jobSeq")
                if isinstance(seq, int):
                    already.add(seq)

        posted: list[dict[str, Any]] = []
        for seq, out in enumerate(messages):
            if seq in already:
                logger.info("[Messages] job %s reply #%s already posted, skipping", job_id, seq)
                continue
            metadata: dict[str, Any] = {"botId": bot.id}
            if job_id:
                metadata["jobId"] = job_id
                metadata["jobSeq"] = seq
            if out.actions:
                metadata["actions"] = [{"triggered": False, **a} for a in out.actions]
            posted.append(
                await self.create_message(
                    conversation=conversation,
                    author_id=bot.user_id or bot.id,
                    content=out.content,
                    privacy=out.privacy or default_privacy,
                    is_bot=True,
                    parent_id=out.replyTo or reply_to,
                    metadata=metadata,
                )
            )
        return posted

    # === Read ===

    async def list_visible(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str],
        global_role: Optional[str],
    ) -> list[dict[str, Any]]:
        _, manuscript = await self._conversation_and_manuscript(conversation_id)
        manuscript_id = str(manuscript["id"])
        config = await self.workflow_config.get()
        phase = manuscript.get("workflow_phase")

        raw = await self.repo.list_messages(conversation_id)
        by_id = {str(m.get("id")): m for m in raw}
        visible = await self.engine.filter_visible_messages(
            raw,
            manuscript=manuscript,
            config=config,
            viewer_id=user_id,
            viewer_global_role=global_role,
        )

        author_roles = await self.engine.roles.prefetch_author_roles(
            {str(m.get("author_id")) for m in raw if m.get("author_id")}, manuscript_id
        )
        out: list[dict[str, Any]] = []
        for message in visible:
            original = by_id.get(str(message.get("id"))) or message
            author_id = str(original.get("author_id") or "")
            effective = await self.projector.compute(
                original.get("privacy"),
                author_id,
                manuscript_id,
                config,
                phase,
                author_role=author_roles.get(author_id),
            )
            out.append({**message, "effectiveVisibility": effective.to_payload()})
        return out

    async def _load_visible_message(
        self, message_id: str, *, user_id: Optional[str], global_role: Optional[str]
    ) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any], ViewerRole]:
        message = await self.repo.get_message(message_id)
        if not message:
            raise NotFoundError("Message not found")
        conversation, manuscript = await self._conversation_and_manuscript(str(message["conversation_id"]))
        config = await self.workflow_config.get()
        viewer_role = await self.engine.roles.resolve_viewer_role(user_id, global_role, str(manuscript["id"]))
        visible = await self.engine.can_user_see_message_with_workflow(
            user_id,
            global_role,
            str(message.get("author_id") or ""),
            message.get("privacy"),
            manuscript,
            config,
            viewer_role=viewer_role,
        )
        if not visible:
            # 不可见与不存在不做区分
            raise NotFoundError("Message not found")
        return message, conversation, manuscript, viewer_role

    async def get_visibility(
        self, message_id: str, *, user_id: Optional[str], global_role: Optional[str]
    ) -> dict[str, Any]:
        message, _, manuscript, _ = await self._load_visible_message(
            message_id, user_id=user_id, global_role=global_role
        )
        config = await self.workflow_config.get()
        effective = await self.projector.compute(
            message.get("privacy"),
            str(message.get("author_id") or ""),
            str(manuscript["id"]),
            config,
            manuscript.get("workflow_phase"),
        )
        return effective.to_payload()

    # === Message actions ===

    @asynccontextmanager
    async def _action_lock(self, message_id: str) -> AsyncIterator[None]:
        # 最后一个持有/等待者离开时删除条目，避免按 message_id 无限增长
        entry = self._action_locks.get(message_id)
        if entry is None:
            entry = _ActionLock()
            self._action_locks[message_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._action_locks.get(message_id) is entry:
                del self._action_locks[message_id]

    async def trigger_action(
        self,
        message_id: str,
        action_id: str,
        *,
        user_id: str,
        global_role: Optional[str],
    ) -> dict[str, Any]:
        async with self._action_lock(message_id):
            return await self._trigger_locked(message_id, action_id, user_id=user_id, global_role=global_role)

    async def _patch_action(
        self,
        message_id: str,
        action_id: str,
        mutate: Callable[[dict[str, Any], str], Optional[dict[str, Any]]],
    ) -> dict[str, Any]:
        """
        读取消息 -> 修改单个动作 -> 按 updated_at 条件写回。

        中文注释:
        - mutate(action, now) 就地修改动作，可返回额外的列变更（如 content），也可抛错中止；
        - 条件写失败说明消息被别的请求改过：重读后再试，最多 _PATCH_ATTEMPTS 次。
        """
        for _ in range(_PATCH_ATTEMPTS):
            message = await self.repo.get_message(message_id)
            if not message:
                raise NotFoundError("Message not found")
            actions = [a.model_dump(exclude_none=True) for a in actions_of(message)]
            target = next((a for a in actions if a.get("id") == action_id), None)
            if target is None:
                raise NotFoundError("Action not found")
            now = _now()
            extra = mutate(target, now) or {}
            metadata = {**(message.get("metadata") or {}), "actions": actions}
            updated = await self.repo.update_message_if(
                message_id,
                expected_updated_at=message.get("updated_at"),
                changes={"metadata": metadata, "updated_at": now, **extra},
            )
            if updated is not None:
                return updated
        raise ActionAlreadyTriggeredError("This message was modified by another request")

    async def _claim_action(self, message_id: str, action_id: str, user_id: str) -> dict[str, Any]:
        def claim(action: dict[str, Any], now: str) -> None:
            if action.get("triggered"):
                raise ActionAlreadyTriggeredError(
                    "This action has already been triggered",
                    extra={"triggeredBy": action.get("triggeredBy"), "triggeredAt": action.get("triggeredAt")},
                )
            action.update({"triggered": True, "triggeredBy": user_id, "triggeredAt": now})

        return await self._patch_action(message_id, action_id, claim)

    async def _release_claim(self, message_id: str, action_id: str, user_id: str) -> None:
        def release(action: dict[str, Any], now: str) -> None:
            if action.get("triggeredBy") != user_id:
                return
            action["triggered"] = False
            action.pop("triggeredBy", None)
            action.pop("triggeredAt", None)

        try:
            await self._patch_action(message_id, action_id, release)
        except Exception as e:
            logger.error("[Messages] could not release action %s on message=%s: %s", action_id, message_id, e)

    async def _trigger_locked(
        self,
        message_id: str,
        action_id: str,
        *,
        user_id: str,
        global_role: Optional[str],
    ) -> dict[str, Any]:
        # 锁内重新读取，保证看到前一个触发者的写入
        message, conversation, manuscript, viewer_role = await self._load_visible_message(
            message_id, user_id=user_id, global_role=global_role
        )
        actions = actions_of(message)
        action = next((a for a in actions if a.id == action_id), None)
        if action is None:
            raise NotFoundError("Action not found")
        if action.triggered:
            raise ActionAlreadyTriggeredError(
                "This action has already been triggered",
                extra={"triggeredBy": action.triggeredBy, "triggeredAt": action.triggeredAt},
            )

        if action.targetUserId and action.targetUserId != user_id:
            raise PermissionDeniedError("This action is not available to you")
        if action.targetRoles:
            allowed = {str(r).strip().lower() for r in action.targetRoles}
            if viewer_role.value not in allowed and (global_role or "").strip().lower() not in allowed:
                raise PermissionDeniedError("This action is not available to your role")

        bot = self.registry.get(action.handler.botId)
        if bot is None:
            raise ValidationError(f"Bot not installed or disabled: {action.handler.botId}")
        manuscript_id = str(manuscript["id"])
        ctx = self.executor.build_context(
            bot,
            manuscript_id=manuscript_id,
            conversation_id=str(conversation["id"]),
            message_id=message_id,
            triggered_by=user_id,
            prefetched={"manuscript": manuscript},
        )

        # 先占位（triggered=true）再执行 handler：另一个进程的并发触发在条件写上失败
        await self._claim_action(message_id, action_id, user_id)
        try:
            result = await self.executor.execute_action_handler(
                bot.id, action.handler.action, ctx, dict(action.handler.params)
            )
            if not result.success:
                raise ValidationError(result.error or "Action failed")
        except EditorialError:
            await self._release_claim(message_id, action_id, user_id)
            raise
        except Exception as e:
            logger.warning("[Messages] action handler %s#%s failed: %s", bot.id, action.handler.action, e)
            await self._release_claim(message_id, action_id, user_id)
            raise ValidationError(f"Action failed: {e}")

        def finish(data: dict[str, Any], now: str) -> Optional[dict[str, Any]]:
            data["resultLabel"] = result.updatedLabel or action.label
            if result.updatedContent is not None:
                return {"content": result.updatedContent}
            return None

        updated = await self._patch_action(message_id, action_id, finish)

        errors: list[str] = []
        if result.actions and self.action_processor is not None:
            errors = await self.action_processor.process(
                bot, result.actions, ctx, conversation_id=str(conversation["id"])
            )

        await self._broadcast(
            str(conversation["id"]),
            {"type": "message-updated", "message": updated},
            manuscript_id,
        )
        logger.info("[Messages] action %s on message=%s triggered by %s", action_id, message_id, user_id)
        return {"message": updated, "errors": errors}
