from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from app.core.short_ttl_cache import ShortTTLCache
from app.models.workflow import WorkflowConfig

logger = logging.getLogger("marginalia.workflow")

_CACHE_KEY = "workflow_config"


class WorkflowConfigProvider:
    """
    读取期刊级 WorkflowConfig（journal_settings.settings.workflowConfig），带 TTL 缓存。

    中文注释:
    - 未配置 / 解析失败都返回 None：可见性规则据此退化为 privacy-only，不抛异常。
    - 设置页保存后调用 invalidate()。
    """

    def __init__(self, repo: Any, *, ttl_sec: float = 60.0) -> None:
        self.repo = repo
        self._cache: ShortTTLCache[WorkflowConfig] = ShortTTLCache(ttl_sec=ttl_sec, max_entries=4)

    async def get(self) -> Optional[WorkflowConfig]:
        hit, value = self._cache.lookup(_CACHE_KEY)
        if hit:
            return value

        config: Optional[WorkflowConfig] = None
        try:
            settings = await self.repo.get_journal_settings()
        except Exception as e:
            logger.warning("[WorkflowConfig] load failed, falling back to privacy-only (ignored): %s", e)
            return None

        raw = (settings or {}).get("workflowConfig")
        if isinstance(raw, dict):
            try:
                config = WorkflowConfig.model_validate(raw)
            except PydanticValidationError as e:
                logger.warning("[WorkflowConfig] invalid workflowConfig (ignored): %s", e)
                config = None

        self._cache.set(_CACHE_KEY, config)
        return config

    async def pipelines(self) -> dict[str, list[dict[str, Any]]]:
        settings = await self.repo.get_journal_settings()
        raw = (settings or {}).get("pipelines") or {}
        return raw if isinstance(raw, dict) else {}

    def invalidate(self) -> None:
        self._cache.invalidate()
