from __future__ import annotations

from threading import Lock
from time import monotonic
from typing import Callable, Generic, TypeVar

T = TypeVar("T")

_MISSING = object()


class ShortTTLCache(Generic[T]):
    """
    进程内短缓存（工作流配置等低频变更、高频读取的数据）。

    中文注释:
    - 值可以是 None（例如“期刊未配置工作流”），因此用哨兵区分“未命中”与“缓存了 None”；
    - 线程锁保护字典，任务 worker 的 to_thread 回调也可安全访问；
    - 不跨进程：配置更新后由写入方调用 invalidate()，其它进程最多滞后一个 TTL。
    """

    def __init__(self, *, ttl_sec: float, max_entries: int = 256, clock: Callable[[], float] = monotonic) -> None:
        self._ttl = float(ttl_sec)
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._store: dict[str, tuple[float, object]] = {}
        self._lock = Lock()

    def lookup(self, key: str) -> tuple[bool, T | None]:
        """返回 (命中, 值)。"""
        now = self._clock()
        with self._lock:
            row = self._store.get(key)
            if row is None:
                return False, None
            expires_at, value = row
            if expires_at <= now:
                del self._store[key]
                return False, None
            return True, value  # type: ignore[return-value]

    def get(self, key: str) -> T | None:
        return self.lookup(key)[1]

    def set(self, key: str, value: T | None) -> None:
        if self._ttl <= 0:
            return
        with self._lock:
            if key not in self._store and len(self._store) >= self._max_entries:
                self._store.pop(next(iter(self._store)))
            self._store[key] = (self._clock() + self._ttl, value)

    def invalidate(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._store.clear()
            else:
                self._store.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)
