from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from app.core.errors import NotFoundError, StateTransitionError, ValidationError
from app.models.manuscript import WorkflowPhase, normalize_phase
from app.models.workflow import MessagePrivacy
from app.services.notification_service import ParticipantNotifier
from app.services.workflow_config import WorkflowConfigProvider
from app.services.workflow_visibility import VisibilityEngine

if TYPE_CHECKING:
    from app.services.bot_events import BotEventDispatcher
    from app.services.message_service import MessageService

logger = logging.getLogger("marginalia.workflow")

REVIEW_CONVERSATION = "REVIEW"


class WorkflowPhaseService:
    """
    审稿讨论阶段（REVIEW / DELIBERATION / RELEASED / AUTHOR_RESPONDING）的切换。

    中文注释:
    1) 切换到 RELEASED：写 released_at + workflow_releases 记录；若配置 requireAllReviewsBeforeRelease，
       仍有未完成的审稿则拒绝（ValidationError）；
    2) 每次切换在 REVIEW 会话中留一条 EDITOR_ONLY 记录，并广播 workflow-phase-changed；
    3) RELEASED 通知作者，DELIBERATION 通知审稿人（邮件失败只记日志）；
    4) 阶段写入用 compare-and-set（workflow_phase = 旧值），并发切换只有一个成功。
    """

    def __init__(
        self,
        repo: Any,
        *,
        engine: VisibilityEngine,
        workflow_config: WorkflowConfigProvider,
        messages: "MessageService",
        notifier: ParticipantNotifier,
        events: Optional["BotEventDispatcher"] = None,
    ) -> None:
        self.repo = repo
        self.engine = engine
        self.workflow_config = workflow_config
        self.messages = messages
        self.notifier = notifier
        self.events = events

    async def update_phase(
        self,
        manuscript_id: str,
        phase: str,
        *,
        changed_by: Optional[str],
        decision_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> dict[str, Any]:
        target = normalize_phase(phase)
        if target is None:
            raise ValidationError(
                f"Invalid workflow phase: {phase}. Valid: {[p.value for p in WorkflowPhase]}"
            )

        manuscript = await self.repo.get_manuscript(manuscript_id)
        if not manuscript:
            raise NotFoundError("Manuscript not found")
        current = normalize_phase(manuscript.get("workflow_phase"))
        if current == target:
            raise ValidationError(f"Workflow is already in phase {target}")

        config = await self.workflow_config.get()
        if (
            target == WorkflowPhase.RELEASED.value
            and config is not None
            and config.phases.requireAllReviewsBeforeRelease
            and not await self.engine.all_reviews_complete(manuscript_id)
        ):
            raise ValidationError("All reviews must be completed before release")

        now = datetime.now(timezone.utc).isoformat()
        changes: dict[str, Any] = {"workflow_phase": target, "updated_at": now}
        if target == WorkflowPhase.RELEASED.value:
            changes["released_at"] = now

        updated = await self.repo.update_manuscript_if(
            manuscript_id,
            expected={"workflow_phase": manuscript.get("workflow_phase")},
            changes=changes,
        )
        if updated is None:
            raise StateTransitionError("Workflow phase changed concurrently, reload and retry")

        round_number = int(updated.get("workflow_round") or 1)
        if target == WorkflowPhase.RELEASED.value:
            await self.repo.insert_workflow_release(
                {
                    "manuscript_id": manuscript_id,
                    "round": round_number,
                    "released_by": changed_by,
                    "decision_type": decision_type,
                    "notes": notes,
                    "released_at": now,
                }
            )
        logger.info("[Workflow] phase %s -> %s manuscript=%s by %s", current, target, manuscript_id, changed_by)

        await self._record_and_broadcast(updated, previous=current, changed_by=changed_by)
        await self._notify(updated, target, round_number=round_number, decision_type=decision_type, notes=notes)
        await self._emit(updated, previous=current, decision_type=decision_type)
        return updated

    async def _record_and_broadcast(
        self, manuscript: dict[str, Any], *, previous: Optional[str], changed_by: Optional[str]
    ) -> None:
        manuscript_id = str(manuscript["id"])
        conversation = await self.repo.find_conversation(manuscript_id, REVIEW_CONVERSATION)
        if not conversation:
            return
        phase = manuscript.get("workflow_phase")
        if changed_by:
            await self.messages.create_message(
                conversation=conversation,
                author_id=changed_by,
                content=f"Workflow phase changed from {previous or 'none'} to {phase}.",
                privacy=MessagePrivacy.EDITOR_ONLY,
                metadata={"type": "workflow-phase-change", "from": previous, "to": phase},
            )
        await self.messages.broadcaster.broadcast(
            str(conversation["id"]),
            {
                "type": "workflow-phase-changed",
                "manuscriptId": manuscript_id,
                "phase": phase,
                "previousPhase": previous,
                "round": manuscript.get("workflow_round"),
            },
            manuscript_id=manuscript_id,
        )

    async def _notify(
        self,
        manuscript: dict[str, Any],
        target: str,
        *,
        round_number: int,
        decision_type: Optional[str],
        notes: Optional[str],
    ) -> None:
        try:
            if target == WorkflowPhase.RELEASED.value:
                await self.notifier.notify_reviews_released(
                    manuscript, round_number=round_number, decision_type=decision_type, notes=notes
                )
            elif target == WorkflowPhase.DELIBERATION.value:
                await self.notifier.notify_deliberation_started(manuscript)
        except Exception as e:
            logger.warning("[Workflow] phase notification failed (ignored): %s", e)

    async def _emit(self, manuscript: dict[str, Any], *, previous: Optional[str], decision_type: Optional[str]) -> None:
        if self.events is None:
            return
        manuscript_id = str(manuscript["id"])
        phase = manuscript.get("workflow_phase")
        try:
            await self.events.emit(
                "workflow.phaseChanged",
                manuscript_id,
                {"from": previous, "to": phase, "round": manuscript.get("workflow_round")},
            )
            if phase == WorkflowPhase.RELEASED.value:
                await self.events.emit(
                    "decision.released",
                    manuscript_id,
                    {"round": manuscript.get("workflow_round"), "decisionType": decision_type},
                )
        except Exception as e:
            logger.warning("[Workflow] bot event emit failed (ignored): %s", e)
