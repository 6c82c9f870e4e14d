from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

logger = logging.getLogger("marginalia.visibility")


def reviewer_letter(index: int) -> str:
    """
    1 -> A, 26 -> Z, 27 -> AA, 28 -> AB ...（与电子表格列名一致）
    """
    n = max(1, int(index))
    letters = ""
    while n > 0:
        n, rem = divmod(n - 1, 26)
        letters = chr(ord("A") + rem) + letters
    return letters


def reviewer_label(index: int) -> str:
    return f"Reviewer {reviewer_letter(index)}"


class ReviewerAnonymizationIndex:
    """
    每篇稿件内审稿人的稳定匿名编号（从 1 开始，按 assigned_at 升序）。

    中文注释:
    - 首次未命中时查询一次该稿件的全部分配并写入缓存；之后只追加、不重排。
    - 新增审稿人（缓存之后才分配）追加在末尾：编号 = 当前缓存大小 + 1。
    - 同一稿件的填充由 asyncio.Lock 串行化，避免并发首查交错写入。
    - 数据迁移等场景需显式 invalidate(manuscript_id) 或 clear()。
    """

    def __init__(self, repo: Any) -> None:
        self.repo = repo
        self._cache: dict[str, dict[str, int]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, manuscript_id: str) -> asyncio.Lock:
        lock = self._locks.get(manuscript_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[manuscript_id] = lock
        return lock

    async def index_of(self, reviewer_id: str, manuscript_id: str) -> int:
        cached = self._cache.get(manuscript_id)
        if cached is not None and reviewer_id in cached:
            return cached[reviewer_id]

        async with self._lock_for(manuscript_id):
            mapping = self._cache.get(manuscript_id)
            if mapping is None:
                assignments = await self.repo.list_review_assignments(manuscript_id)
                mapping = {}
                for row in assignments:
                    rid = str(row.get("reviewer_id") or "")
                    if rid and rid not in mapping:
                        mapping[rid] = len(mapping) + 1
                self._cache[manuscript_id] = mapping

            if reviewer_id not in mapping:
                mapping[reviewer_id] = len(mapping) + 1
            return mapping[reviewer_id]

    async def label_for(self, reviewer_id: str, manuscript_id: str) -> str:
        return reviewer_label(await self.index_of(reviewer_id, manuscript_id))

    def invalidate(self, manuscript_id: Optional[str] = None) -> None:
        if manuscript_id:
            self._cache.pop(manuscript_id, None)
            self._locks.pop(manuscript_id, None)
            return
        self.clear()

    def clear(self) -> None:
        self._cache.clear()
        self._locks.clear()
        logger.info("[ReviewerIndex] cache cleared")
