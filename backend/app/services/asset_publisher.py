from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from supabase import Client

from app.lib.api_client import supabase_admin
from app.models.manuscript import ManuscriptStatus
from app.services.editorial_service import StatusChange

logger = logging.getLogger("marginalia.assets")

SOURCE_BUCKET = "manuscripts"
PUBLIC_BUCKET = "published-assets"


def ensure_bucket_exists(client: Client, *, bucket: str, public: bool = False) -> None:
    """
    确保 Storage bucket 存在（开发/演示环境兜底）。

    中文注释:
    - 正式环境建议用 migration / Dashboard 创建 bucket。
    - 已存在（含并发创建）视为成功，其它错误向上抛。
    """
    storage = getattr(client, "storage", None)
    if storage is None or not hasattr(storage, "get_bucket") or not hasattr(storage, "create_bucket"):
        return

    try:
        storage.get_bucket(bucket)
        return
    except Exception:
        pass

    try:
        storage.create_bucket(bucket, options={"public": bool(public)})
    except Exception as e:
        text = str(e).lower()
        if "already" in text or "exists" in text or "duplicate" in text:
            return
        raise


def _public_path(manuscript_id: str, file_row: dict[str, Any]) -> str:
    name = file_row.get("filename") or file_row.get("original_name") or str(file_row.get("id"))
    return f"{manuscript_id}/{name}"


class AssetPublisher:
    """
    稿件静态资源发布：PUBLISHED 时把文件复制到公开 bucket，RETRACTED 时移除。

    作为 ManuscriptStateMachine 的 post-commit hook 运行，失败由状态机记录并忽略。
    """

    def __init__(self, repo: Any, *, client: Optional[Client] = None) -> None:
        self.repo = repo
        self.client = client or supabase_admin

    def _publish_sync(self, manuscript_id: str, files: list[dict[str, Any]]) -> int:
        ensure_bucket_exists(self.client, bucket=PUBLIC_BUCKET, public=True)
        source = self.client.storage.from_(SOURCE_BUCKET)
        target = self.client.storage.from_(PUBLIC_BUCKET)
        published = 0
        for f in files:
            path = f.get("path")
            if not path:
                continue
            content = source.download(path)
            # storage3 期望 header value 为字符串
            opts = {"content-type": f.get("mime_type") or "application/octet-stream", "upsert": "true"}
            target.upload(_public_path(manuscript_id, f), content, opts)
            published += 1
        return published

    def _unpublish_sync(self, manuscript_id: str, files: list[dict[str, Any]]) -> int:
        paths = [_public_path(manuscript_id, f) for f in files if f.get("path")]
        if not paths:
            return 0
        self.client.storage.from_(PUBLIC_BUCKET).remove(paths)
        return len(paths)

    async def publish(self, manuscript_id: str) -> int:
        files = await self.repo.list_manuscript_files(manuscript_id)
        count = await asyncio.to_thread(self._publish_sync, manuscript_id, files)
        logger.info("[Assets] published %s file(s) for manuscript=%s", count, manuscript_id)
        return count

    async def unpublish(self, manuscript_id: str) -> int:
        files = await self.repo.list_manuscript_files(manuscript_id)
        count = await asyncio.to_thread(self._unpublish_sync, manuscript_id, files)
        logger.info("[Assets] removed %s public file(s) for manuscript=%s", count, manuscript_id)
        return count

    async def on_status_change(self, change: StatusChange) -> None:
        if change.to_status == ManuscriptStatus.PUBLISHED.value:
            await self.publish(change.manuscript_id)
        elif change.to_status == ManuscriptStatus.RETRACTED.value:
            await self.unpublish(change.manuscript_id)
