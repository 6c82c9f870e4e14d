from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Sequence

from app.models.jobs import DeadlineReminderPayload
from app.services.job_queue import JobQueue

logger = logging.getLogger("marginalia.jobs")

DEFAULT_REMINDER_DAYS: tuple[int, ...] = (7, 3, 1, 0)
SEND_AT = time(hour=9, tzinfo=timezone.utc)
# 计划时间早于 now - 1h 的提醒不再补发
LATE_GRACE = timedelta(hours=1)


def parse_due_date(value: Any) -> Optional[datetime]:
    if not value:
        return None
    raw = str(value).strip()
    try:
        if len(raw) == 10:
            return datetime.fromisoformat(raw).replace(tzinfo=timezone.utc)
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def reminder_job_key(assignment_id: str, days_before: int) -> str:
    return f"reminder-{assignment_id}-{days_before}"


class DeadlineScanner:
    """
    审稿截止提醒排期（deadline-scanner 任务，每天 08:00 UTC 由 worker 入队）。

    中文注释:
    1) 扫描 ACCEPTED / IN_PROGRESS 且截止日期落在最大提醒窗口内的审稿分配；
    2) 每个 daysBefore 在“截止日 - N 天 09:00 UTC”排一条 deadline-reminder 任务；
    3) 幂等性：deadline_reminders.job_key 与 jobs.job_key 都唯一（reminder-<assignment>-<days>），
       重复扫描不会重复排期；
    4) 已经过去超过 1 小时的提醒直接跳过，不补发。
    """

    def __init__(self, repo: Any, queue: JobQueue, *, days_before: Sequence[int] = DEFAULT_REMINDER_DAYS) -> None:
        self.repo = repo
        self.queue = queue
        self.days_before = tuple(sorted({int(d) for d in days_before if int(d) >= 0}, reverse=True))

    async def schedule_for_assignment(self, assignment: Dict[str, Any], *, now: datetime) -> int:
        due = parse_due_date(assignment.get("due_date"))
        assignment_id = str(assignment.get("id") or "")
        if due is None or not assignment_id:
            return 0

        scheduled = 0
        for days in self.days_before:
            send_at = datetime.combine((due - timedelta(days=days)).date(), SEND_AT)
            if send_at < now - LATE_GRACE:
                continue
            job_key = reminder_job_key(assignment_id, days)
            reminder = await self.repo.insert_deadline_reminder(
                {
                    "assignment_id": assignment_id,
                    "days_before": days,
                    "scheduled_for": send_at.isoformat(),
                    "status": "QUEUED",
                    "job_key": job_key,
                }
            )
            if reminder is None:
                continue
            job = await self.queue.schedule_reminder(
                DeadlineReminderPayload(
                    reminderId=str(reminder.get("id")) if reminder.get("id") else None,
                    assignmentId=assignment_id,
                    daysBefore=days,
                ),
                run_at=max(send_at, now),
                job_key=job_key,
            )
            if job is not None:
                scheduled += 1
        return scheduled

    async def run(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now(timezone.utc)
        horizon = now + timedelta(days=(max(self.days_before) if self.days_before else 0) + 1)
        assignments = await self.repo.list_open_assignments_due_before(horizon.isoformat())

        scheduled = 0
        for assignment in assignments:
            try:
                scheduled += await self.schedule_for_assignment(assignment, now=now)
            except Exception as e:
                # 中文注释: 单条分配失败不影响其它分配；任务整体仍算成功
                logger.warning("[DeadlineScanner] scheduling failed for assignment=%s (ignored): %s", assignment.get("id"), e)
        logger.info("[DeadlineScanner] scanned=%s scheduled=%s", len(assignments), scheduled)
        return {"processed_count": len(assignments), "scheduled": scheduled}
