from __future__ import annotations

import asyncio
import logging

from ..schemas import LegacyRecord
from ..utils.errors import safe_str
from .migration import MigrationEngine, MigrationOutcome

logger = logging.getLogger(__name__)


class MigrationTaskRunner:
    """按需迁移的后台执行器

    - 每个 VIN 同时最多一个任务（进程内防重）。注意：进程重启后不会保留。
    - 任务与触发它的请求解耦：请求被取消不会取消迁移。
    """

    def __init__(self, engine: MigrationEngine):
        self.engine = engine
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    def is_running(self, vin: str) -> bool:
        task = self._tasks.get(vin)
        return task is not None and not task.done()

    def pending(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def schedule(self, record: LegacyRecord) -> bool:
        """调度一次按需迁移；已有同 VIN 任务在跑或已关闭时返回 False。"""
        if self._closed:
            return False
        vin = record.vin
        if self.is_running(vin):
            return False

        task = asyncio.create_task(self.engine.migrate_one(record, repair_links=True))
        self._tasks[vin] = task

        def _cleanup(t: asyncio.Task) -> None:
            if self._tasks.get(vin) is t:
                self._tasks.pop(vin, None)
            if t.cancelled():
                logger.info("[MIGRATE] on-demand migration cancelled vin=%s", vin)
                return
            exc = t.exception()
            if exc is not None:
                logger.error("[MIGRATE] on-demand migration crashed vin=%s: %s", vin, safe_str(exc))
                return
            outcome = t.result()
            if outcome is MigrationOutcome.FAILED:
                logger.warning("[MIGRATE] on-demand migration failed vin=%s", vin)
            else:
                logger.info("[MIGRATE] on-demand migration %s vin=%s", outcome.value, vin)

        task.add_done_callback(_cleanup)
        return True

    async def wait_idle(self) -> None:
        """等待当前所有任务结束（测试 / 关闭时使用）。"""
        while True:
            running = [t for t in self._tasks.values() if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    async def aclose(self, timeout_seconds: float = 10.0) -> None:
        self._closed = True
        running = [t for t in self._tasks.values() if not t.done()]
        if not running:
            return
        _done, not_done = await asyncio.wait(running, timeout=max(0.0, float(timeout_seconds)))
        for t in not_done:
            t.cancel()
        if not_done:
            logger.warning("[MIGRATE] cancelled %s unfinished on-demand migrations at shutdown", len(not_done))
            await asyncio.gather(*not_done, return_exceptions=True)
