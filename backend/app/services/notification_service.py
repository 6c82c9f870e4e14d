from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, Optional

from app.core.config import public_base_url
from app.core.mail import EmailService
from app.services.editorial_service import StatusChange

logger = logging.getLogger("marginalia.notifications")


def manuscript_url(manuscript_id: str) -> str:
    return f"{public_base_url()}/manuscripts/{manuscript_id}"


class ParticipantNotifier:
    """
    面向作者 / 审稿人的邮件通知。

    中文注释:
    1) EmailService 是同步实现（SMTP / Resend），这里统一 asyncio.to_thread 调用；
    2) 单个收件人失败只记日志，不影响其他收件人，也不向调用方抛异常；
    3) 审稿人身份对作者保密：发给作者的邮件模板不包含任何审稿人信息。
    """

    def __init__(self, repo: Any, email: EmailService) -> None:
        self.repo = repo
        self.email = email

    async def _send(self, users: Iterable[Dict[str, Any]], *, subject: str, template_name: str, context: Dict[str, Any]) -> int:
        sent = 0
        for user in users:
            to_email = str(user.get("email") or "").strip()
            if not to_email:
                continue
            ok = await asyncio.to_thread(
                self.email.send_template_email,
                to_email=to_email,
                subject=subject,
                template_name=template_name,
                context={**context, "recipient_name": user.get("name") or user.get("username")},
            )
            if ok:
                sent += 1
            else:
                logger.warning("[Notify] '%s' not delivered to user=%s", subject, user.get("id"))
        return sent

    async def _authors(self, manuscript_id: str) -> list[Dict[str, Any]]:
        return await self.repo.get_users(await self.repo.list_author_ids(manuscript_id))

    async def _active_reviewers(self, manuscript_id: str) -> list[Dict[str, Any]]:
        assignments = await self.repo.list_review_assignments(manuscript_id)
        ids = [
            a["reviewer_id"]
            for a in assignments
            if a.get("reviewer_id") and str(a.get("status") or "").upper() != "DECLINED"
        ]
        return await self.repo.get_users(ids)

    async def on_status_change(self, change: StatusChange) -> None:
        title = change.manuscript.get("title") or "your manuscript"
        await self._send(
            await self._authors(change.manuscript_id),
            subject=f"Manuscript status update: {change.to_status.replace('_', ' ').title()}",
            template_name="status_changed.html",
            context={
                "manuscript_title": title,
                "from_status": change.from_status,
                "to_status": change.to_status,
                "comment": change.comment,
                "manuscript_url": manuscript_url(change.manuscript_id),
            },
        )

    async def notify_reviews_released(
        self,
        manuscript: Dict[str, Any],
        *,
        round_number: int,
        decision_type: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> int:
        manuscript_id = str(manuscript["id"])
        return await self._send(
            await self._authors(manuscript_id),
            subject="Reviews are available for your manuscript",
            template_name="reviews_released.html",
            context={
                "manuscript_title": manuscript.get("title") or "your manuscript",
                "round": round_number,
                "decision_type": decision_type,
                "notes": notes,
                "manuscript_url": manuscript_url(manuscript_id),
            },
        )

    async def notify_deliberation_started(self, manuscript: Dict[str, Any]) -> int:
        manuscript_id = str(manuscript["id"])
        return await self._send(
            await self._active_reviewers(manuscript_id),
            subject="Deliberation has started",
            template_name="deliberation_started.html",
            context={
                "manuscript_title": manuscript.get("title") or "the manuscript",
                "manuscript_url": manuscript_url(manuscript_id),
            },
        )

    async def send_review_reminder(
        self,
        reviewer: Dict[str, Any],
        *,
        manuscript: Dict[str, Any],
        due_date: str,
        days_before: int,
    ) -> bool:
        sent = await self._send(
            [reviewer],
            subject=f"Review reminder: {manuscript.get('title') or 'manuscript'}",
            template_name="review_reminder.html",
            context={
                "manuscript_title": manuscript.get("title") or "the manuscript",
                "due_date": str(due_date)[:10],
                "days_before": days_before,
                "manuscript_url": manuscript_url(str(manuscript["id"])),
            },
        )
        return sent > 0
