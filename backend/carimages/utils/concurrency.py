"""进程内并发辅助：按 key 的互斥锁 + single-flight 去重。

说明：
- 两者都只在当前进程内生效；多进程/多实例部署时不提供跨进程保证。
- 锁只包住“写同一 VIN”的临界区，读路径（ResolutionChain）不持锁访问远端。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

logger = logging.getLogger(__name__)


class KeyedLocks:
    """按 key（通常是 VIN）分配的 asyncio.Lock；空闲后自动回收。"""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._waiters.get(key, 1) - 1
            if remaining <= 0:
                self._waiters.pop(key, None)
                if self._locks.get(key) is lock:
                    self._locks.pop(key, None)
            else:
                self._waiters[key] = remaining

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class SingleFlight:
    """同一 key 的并发调用只执行一次，其余调用方共享结果。

    - 第一个调用方创建独立 task；后续调用方 `shield` 等待同一个 task。
    - 某个调用方被取消，不会取消共享的 task（其他调用方仍能拿到结果）。
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task[Any]] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(fn())
            self._inflight[key] = task

            def _on_done(t: asyncio.Task[Any]) -> None:
                # 仅清理当前这次 task，避免覆盖后误删
                if self._inflight.get(key) is t:
                    self._inflight.pop(key, None)
                if not t.cancelled() and t.exception() is not None:
                    logger.debug("[FLIGHT] key=%s failed", key, exc_info=t.exception())

            task.add_done_callback(_on_done)
        return await asyncio.shield(task)

    def inflight(self) -> int:
        return len(self._inflight)
