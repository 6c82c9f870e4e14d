from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.errors import NotFoundError, ValidationError
from app.core.scheduler import parse_due_date
from app.models.jobs import DeadlineReminderPayload
from app.models.workflow import ReviewAssignmentStatus
from app.services.job_queue import JobQueue
from app.services.notification_service import ParticipantNotifier

logger = logging.getLogger("marginalia.jobs")

_OPEN = {ReviewAssignmentStatus.ACCEPTED.value, ReviewAssignmentStatus.IN_PROGRESS.value}


class DeadlineReminderService:
    """
    审稿截止提醒的发送（deadline-reminder 任务）与编辑手动催办。
    """

    def __init__(self, repo: Any, queue: JobQueue, notifier: ParticipantNotifier) -> None:
        self.repo = repo
        self.queue = queue
        self.notifier = notifier

    async def _mark(self, reminder_id: Optional[str], status: str) -> None:
        if not reminder_id:
            return
        changes: dict[str, Any] = {"status": status}
        if status == "SENT":
            changes["sent_at"] = datetime.now(timezone.utc).isoformat()
        try:
            await self.repo.update_deadline_reminder(reminder_id, changes)
        except Exception as e:
            logger.warning("[Reminder] status update failed for reminder=%s (ignored): %s", reminder_id, e)

    async def send(self, payload: DeadlineReminderPayload) -> bool:
        assignment = await self.repo.get_review_assignment(payload.assignmentId)
        if not assignment:
            logger.info("[Reminder] assignment %s gone, cancelling", payload.assignmentId)
            await self._mark(payload.reminderId, "CANCELLED")
            return False

        status = str(assignment.get("status") or "").upper()
        if status not in _OPEN and not payload.isManual:
            logger.info("[Reminder] assignment %s is %s, cancelling", payload.assignmentId, status)
            await self._mark(payload.reminderId, "CANCELLED")
            return False

        reviewer = await self.repo.get_user(str(assignment.get("reviewer_id") or ""))
        manuscript = await self.repo.get_manuscript(str(assignment.get("manuscript_id") or ""))
        if not reviewer or not manuscript:
            await self._mark(payload.reminderId, "FAILED")
            return False

        ok = await self.notifier.send_review_reminder(
            reviewer,
            manuscript=manuscript,
            due_date=str(assignment.get("due_date") or ""),
            days_before=payload.daysBefore,
        )
        await self._mark(payload.reminderId, "SENT" if ok else "FAILED")
        return ok

    async def send_manual(
        self, assignment_id: str, *, manuscript_id: str, triggered_by: Optional[str]
    ) -> Optional[dict[str, Any]]:
        assignment = await self.repo.get_review_assignment(assignment_id)
        if not assignment:
            raise NotFoundError("Review assignment not found")
        if str(assignment.get("manuscript_id")) != str(manuscript_id):
            raise ValidationError("Review assignment belongs to another manuscript")
        status = str(assignment.get("status") or "").upper()
        if status not in _OPEN:
            raise ValidationError(f"Cannot remind a reviewer whose assignment is {status or 'unknown'}")

        due = parse_due_date(assignment.get("due_date"))
        now = datetime.now(timezone.utc)
        days = max(0, (due.date() - now.date()).days) if due else 0
        return await self.queue.schedule_reminder(
            DeadlineReminderPayload(
                assignmentId=assignment_id,
                daysBefore=days,
                isManual=True,
                triggeredBy=triggered_by,
            ),
            run_at=now,
        )
