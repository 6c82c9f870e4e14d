from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional, TypeVar

from postgrest.exceptions import APIError
from supabase import Client

from app.lib.api_client import supabase_admin

logger = logging.getLogger("marginalia.repository")

T = TypeVar("T")

# 中文注释: PostgreSQL unique_violation，用于 job_key 去重。
_UNIQUE_VIOLATION = "23505"


def _rows(resp: Any) -> list[dict[str, Any]]:
    return getattr(resp, "data", None) or []


def _first(resp: Any) -> Optional[dict[str, Any]]:
    rows = _rows(resp)
    return rows[0] if rows else None


class SupabaseEditorialRepository:
    """
    编辑流程的数据访问层（service_role）。

    中文注释:
    1) supabase-py 是同步 client；所有查询经 asyncio.to_thread 执行，事件循环不被阻塞。
    2) “比较后写入”（compare-and-set）统一用条件 update：`.eq(<列>, <旧值>)`，
       返回行为空即表示被并发修改，由调用方决定报错或放弃。
    3) 单元测试使用 tests/utils/fake_repository.py 的内存实现，方法签名必须保持一致。
    """

    def __init__(self, client: Client | None = None) -> None:
        self.client = client or supabase_admin

    async def _run(self, fn: Callable[[], T]) -> T:
        return await asyncio.to_thread(fn)

    # === Users / roles ===

    async def get_user(self, user_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("users")
                .select("id,name,username,email,role")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
        )

    async def get_users(self, user_ids: Iterable[str]) -> list[dict[str, Any]]:
        ids = sorted({str(u) for u in user_ids if u})
        if not ids:
            return []
        return await self._run(
            lambda: _rows(
                self.client.table("users")
                .select("id,name,username,email,role")
                .in_("id", ids)
                .execute()
            )
        )

    async def is_author(self, manuscript_id: str, user_id: str) -> bool:
        row = await self._run(
            lambda: _first(
                self.client.table("manuscript_authors")
                .select("id")
                .eq("manuscript_id", manuscript_id)
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )
        )
        return row is not None

    async def is_reviewer(self, manuscript_id: str, user_id: str) -> bool:
        row = await self._run(
            lambda: _first(
                self.client.table("review_assignments")
                .select("id")
                .eq("manuscript_id", manuscript_id)
                .eq("reviewer_id", user_id)
                .limit(1)
                .execute()
            )
        )
        return row is not None

    async def list_author_ids(self, manuscript_id: str) -> list[str]:
        rows = await self._run(
            lambda: _rows(
                self.client.table("manuscript_authors")
                .select("user_id")
                .eq("manuscript_id", manuscript_id)
                .execute()
            )
        )
        return [str(r["user_id"]) for r in rows if r.get("user_id")]

    async def list_review_assignments(self, manuscript_id: str) -> list[dict[str, Any]]:
        """按 assigned_at 升序返回（匿名编号依赖该顺序）。"""
        return await self._run(
            lambda: _rows(
                self.client.table("review_assignments")
                .select("id,manuscript_id,reviewer_id,status,assigned_at,due_date")
                .eq("manuscript_id", manuscript_id)
                .order("assigned_at", desc=False)
                .execute()
            )
        )

    async def get_review_assignment(self, assignment_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("review_assignments")
                .select("id,manuscript_id,reviewer_id,status,assigned_at,due_date")
                .eq("id", assignment_id)
                .limit(1)
                .execute()
            )
        )

    async def list_open_assignments_due_before(self, until_iso: str) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("review_assignments")
                .select("id,manuscript_id,reviewer_id,status,assigned_at,due_date")
                .in_("status", ["ACCEPTED", "IN_PROGRESS"])
                .lte("due_date", until_iso)
                .execute()
            )
        )

    # === Manuscripts ===

    async def get_manuscript(self, manuscript_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("manuscripts")
                .select("*")
                .eq("id", manuscript_id)
                .limit(1)
                .execute()
            )
        )

    async def update_manuscript_if(
        self,
        manuscript_id: str,
        *,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        def _update() -> Optional[dict[str, Any]]:
            q = self.client.table("manuscripts").update(changes).eq("id", manuscript_id)
            for column, value in expected.items():
                q = q.is_(column, "null") if value is None else q.eq(column, value)
            return _first(q.execute())

        return await self._run(_update)

    async def insert_status_log(self, row: dict[str, Any]) -> None:
        await self._run(lambda: self.client.table("status_transition_logs").insert(row).execute())

    async def list_manuscript_files(self, manuscript_id: str) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("manuscript_files")
                .select("id,filename,original_name,mime_type,size,file_type,path")
                .eq("manuscript_id", manuscript_id)
                .execute()
            )
        )

    # === Conversations / messages ===

    async def get_conversation(self, conversation_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("conversations")
                .select("id,manuscript_id,type,title,created_at")
                .eq("id", conversation_id)
                .limit(1)
                .execute()
            )
        )

    async def find_conversation(self, manuscript_id: str, conversation_type: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("conversations")
                .select("id,manuscript_id,type,title,created_at")
                .eq("manuscript_id", manuscript_id)
                .eq("type", conversation_type)
                .order("created_at", desc=False)
                .limit(1)
                .execute()
            )
        )

    async def list_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("messages")
                .select("*")
                .eq("conversation_id", conversation_id)
                .order("created_at", desc=False)
                .execute()
            )
        )

    async def list_job_replies(self, conversation_id: str, job_id: str) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("messages")
                .select("id,metadata")
                .eq("conversation_id", conversation_id)
                .eq("metadata->>jobId", job_id)
                .execute()
            )
        )

    async def list_manuscript_messages_since(
        self, manuscript_id: str, since_iso: Optional[str]
    ) -> list[dict[str, Any]]:
        def _select() -> list[dict[str, Any]]:
            convs = _rows(
                self.client.table("conversations")
                .select("id")
                .eq("manuscript_id", manuscript_id)
                .execute()
            )
            conv_ids = [c["id"] for c in convs if c.get("id")]
            if not conv_ids:
                return []
            q = self.client.table("messages").select("*").in_("conversation_id", conv_ids)
            if since_iso:
                q = q.gte("created_at", since_iso)
            return _rows(q.order("created_at", desc=False).execute())

        return await self._run(_select)

    async def get_message(self, message_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("messages").select("*").eq("id", message_id).limit(1).execute()
            )
        )

    async def insert_message(self, row: dict[str, Any]) -> dict[str, Any]:
        inserted = await self._run(lambda: _first(self.client.table("messages").insert(row).execute()))
        return inserted or row

    async def update_message_if(
        self,
        message_id: str,
        *,
        expected_updated_at: Optional[str],
        changes: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        def _update() -> Optional[dict[str, Any]]:
            q = self.client.table("messages").update(changes).eq("id", message_id)
            q = q.is_("updated_at", "null") if expected_updated_at is None else q.eq("updated_at", expected_updated_at)
            return _first(q.execute())

        return await self._run(_update)

    # === Settings / bots ===

    async def get_journal_settings(self) -> dict[str, Any]:
        row = await self._run(
            lambda: _first(
                self.client.table("journal_settings")
                .select("settings")
                .eq("id", "singleton")
                .limit(1)
                .execute()
            )
        )
        return (row or {}).get("settings") or {}

    async def list_bot_installations(self) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("bot_installations")
                .select("bot_id,user_id,permissions,is_enabled,config")
                .execute()
            )
        )

    # === Jobs ===

    async def insert_job(self, row: dict[str, Any]) -> Optional[dict[str, Any]]:
        """插入任务；job_key 冲突（已排队）时返回 None。"""

        def _insert() -> Optional[dict[str, Any]]:
            try:
                return _first(self.client.table("jobs").insert(row).execute())
            except APIError as e:
                if getattr(e, "code", None) == _UNIQUE_VIOLATION:
                    return None
                raise

        return await self._run(_insert)

    async def get_job(self, job_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(self.client.table("jobs").select("*").eq("id", job_id).limit(1).execute())
        )

    async def list_due_jobs(self, now_iso: str, *, limit: int) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("jobs")
                .select("*")
                .eq("status", "pending")
                .lte("run_at", now_iso)
                .order("run_at", desc=False)
                .limit(limit)
                .execute()
            )
        )

    async def update_job_if(
        self, job_id: str, *, expected_status: str, changes: dict[str, Any]
    ) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("jobs")
                .update(changes)
                .eq("id", job_id)
                .eq("status", expected_status)
                .execute()
            )
        )

    async def list_jobs(self, *, status: str, limit: int = 50) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("jobs")
                .select("*")
                .eq("status", status)
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
        )

    async def count_jobs(self, *, status: str) -> int:
        resp = await self._run(
            lambda: self.client.table("jobs").select("id", count="exact").eq("status", status).limit(1).execute()
        )
        return int(getattr(resp, "count", None) or 0)

    async def list_stale_processing_jobs(self, locked_before_iso: str) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("jobs")
                .select("*")
                .eq("status", "processing")
                .lte("locked_at", locked_before_iso)
                .execute()
            )
        )

    # === Workflow releases / reminders ===

    async def insert_workflow_release(self, row: dict[str, Any]) -> dict[str, Any]:
        inserted = await self._run(lambda: _first(self.client.table("workflow_releases").insert(row).execute()))
        return inserted or row

    async def get_latest_release(self, manuscript_id: str) -> Optional[dict[str, Any]]:
        return await self._run(
            lambda: _first(
                self.client.table("workflow_releases")
                .select("*")
                .eq("manuscript_id", manuscript_id)
                .order("released_at", desc=True)
                .limit(1)
                .execute()
            )
        )

    async def insert_deadline_reminder(self, row: dict[str, Any]) -> Optional[dict[str, Any]]:
        """插入提醒记录；job_key 已存在（已排期）时返回 None。"""

        def _insert() -> Optional[dict[str, Any]]:
            try:
                return _first(self.client.table("deadline_reminders").insert(row).execute())
            except APIError as e:
                if getattr(e, "code", None) == _UNIQUE_VIOLATION:
                    return None
                raise

        return await self._run(_insert)

    async def update_deadline_reminder(self, reminder_id: str, changes: dict[str, Any]) -> None:
        await self._run(
            lambda: self.client.table("deadline_reminders").update(changes).eq("id", reminder_id).execute()
        )

    # === Realtime relay (跨进程 SSE 事件) ===

    async def insert_realtime_event(self, row: dict[str, Any]) -> dict[str, Any]:
        inserted = await self._run(lambda: _first(self.client.table("realtime_events").insert(row).execute()))
        return inserted or row

    async def latest_realtime_event_id(self) -> int:
        row = await self._run(
            lambda: _first(
                self.client.table("realtime_events").select("id").order("id", desc=True).limit(1).execute()
            )
        )
        return int(row["id"]) if row else 0

    async def list_realtime_events_after(self, after_id: int, *, limit: int) -> list[dict[str, Any]]:
        return await self._run(
            lambda: _rows(
                self.client.table("realtime_events")
                .select("*")
                .gt("id", after_id)
                .order("id", desc=False)
                .limit(limit)
                .execute()
            )
        )

    async def delete_realtime_events_before(self, before_iso: str) -> None:
        await self._run(
            lambda: self.client.table("realtime_events").delete().lt("created_at", before_iso).execute()
        )
