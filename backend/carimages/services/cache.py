"""两级缓存：进程内本地层 + 共享层（数据库表）

约定：
- 本地层先查；命中即返回，在其（很短的）生命周期内不回源共享层。
- 共享层命中会回填本地层。
- 共享层任何异常/超时都只记日志并当作 miss；缓存不可用时退化为“每次重算”，而不是故障。
- key 结构由 CacheKeys 统一生成，多实现共享同一缓存时必须保持一致。
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import CacheEntryRow
from ..utils.errors import exception_summary
from ..utils.identifiers import to_utc, utcnow

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_LIKE_ESCAPE = "\\"

# changed_since 结果的失效范围
CHANGES_SCOPE = "changes"


class CacheKeys:
    """缓存 key 结构"""

    @staticmethod
    def status(vin: str) -> str:
        return f"status:{vin}"

    @staticmethod
    def image(vin: str, position: int, shrink: int | None = None, brand: str | None = None) -> str:
        return f"img:{vin}:{position}:{shrink or 'original'}:{brand or 'none'}"

    @staticmethod
    def changes(window_seconds: int) -> str:
        return f"changes:{window_seconds}"

    @staticmethod
    def vin_patterns(vin: str) -> list[str]:
        return [f"status:{vin}", f"img:{vin}:*"]

    CHANGES_PATTERN = "changes:*"


@dataclass(frozen=True)
class CacheTTL:
    image: int = 30 * 60
    status: int = 5 * 60
    changes: int = 60


def glob_to_like(pattern: str) -> str:
    """把 glob（* / ?）转换为 SQL LIKE 模式，先转义 LIKE 自身的通配符。"""
    escaped = (
        pattern.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", _LIKE_ESCAPE + "%")
        .replace("_", _LIKE_ESCAPE + "_")
    )
    return escaped.replace("*", "%").replace("?", "_")


class LocalCacheTier:
    """进程内缓存层：非权威，生命周期短。

    过期条目除了读到时顺手删掉，set 时也会按 max_ttl 的节奏整体扫一遍，
    不再被读取的 key（例如各种缩放/品牌变体）不会一直占着内存。
    """

    def __init__(self, *, max_ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self._max_ttl = max(0.0, float(max_ttl_seconds))
        self._clock = clock
        self._entries: dict[str, tuple[float, bytes]] = {}
        self._next_sweep = self._clock() + self._max_ttl

    def get(self, key: str) -> bytes | None:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    def set(self, key: str, value: bytes, ttl: float) -> None:
        lifetime = min(float(ttl), self._max_ttl)
        if lifetime <= 0:
            return
        now = self._clock()
        if now >= self._next_sweep:
            self.purge_expired(now)
        self._entries[key] = (now + lifetime, value)

    def purge_expired(self, now: float | None = None) -> int:
        """删掉所有已过期条目；任何条目寿命都不超过 max_ttl，所以每隔 max_ttl 扫一次就够。"""
        if now is None:
            now = self._clock()
        doomed = [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]
        for k in doomed:
            self._entries.pop(k, None)
        self._next_sweep = now + self._max_ttl
        return len(doomed)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for k in doomed:
            self._entries.pop(k, None)
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SqlCacheTier:
    """共享缓存层：`cache_entries` 表，按绝对过期时间读取。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, key: str) -> tuple[bytes, float] | None:
        """返回 (value, 剩余秒数)；过期或不存在返回 None。"""
        async with self._session_factory() as session:
            row = await session.scalar(select(CacheEntryRow).where(CacheEntryRow.key == key))
            if row is None:
                return None
            expires_at = to_utc(row.expires_at)
            now = utcnow()
            if expires_at is None or expires_at <= now:
                return None
            return bytes(row.value), (expires_at - now).total_seconds()

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        expires_at = utcnow() + timedelta(seconds=float(ttl))
        async with self._session_factory() as session:
            await session.merge(CacheEntryRow(key=key, value=value, expires_at=expires_at))
            await session.commit()

    async def delete(self, key: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(delete(CacheEntryRow).where(CacheEntryRow.key == key))
            await session.commit()
            return int(result.rowcount or 0)

    async def delete_pattern(self, pattern: str) -> int:
        like = glob_to_like(pattern)
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CacheEntryRow).where(CacheEntryRow.key.like(like, escape=_LIKE_ESCAPE))
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(CacheEntryRow).where(CacheEntryRow.expires_at <= utcnow())
            )
            await session.commit()
            return int(result.rowcount or 0)


class _ScopeGenerations:
    """按 VIN（或 changes）记录失效代数，只为正在“读上游 -> 写缓存”的调用方保留。

    没有读者在途时不占内存；失效只对已登记的 scope 计数。
    """

    def __init__(self) -> None:
        # scope -> [generation, readers]
        self._slots: dict[str, list[int]] = {}

    def enter(self, scope: str) -> int:
        slot = self._slots.setdefault(scope, [0, 0])
        slot[1] += 1
        return slot[0]

    def leave(self, scope: str) -> None:
        slot = self._slots.get(scope)
        if slot is None:
            return
        slot[1] -= 1
        if slot[1] <= 0:
            self._slots.pop(scope, None)

    def bump(self, scope: str) -> None:
        slot = self._slots.get(scope)
        if slot is not None:
            slot[0] += 1

    def current(self, scope: str) -> int | None:
        slot = self._slots.get(scope)
        return slot[0] if slot is not None else None


class CacheFacade:
    """统一的 get/set/invalidate 入口"""

    def __init__(
        self,
        local: LocalCacheTier,
        shared: SqlCacheTier | None = None,
        *,
        ttl: CacheTTL | None = None,
        timeout_seconds: float = 1.0,
    ):
        self.local = local
        self.shared = shared
        self.ttl = ttl or CacheTTL()
        self._timeout = max(0.01, float(timeout_seconds))
        self._generations = _ScopeGenerations()

    async def _shared_call(self, op: str, key: str, call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except Exception as e:
            logger.warning("[CACHE] shared %s failed key=%s: %s", op, key, exception_summary(e))
            return None

    async def get(self, key: str) -> bytes | None:
        value = self.local.get(key)
        if value is not None:
            return value
        if self.shared is None:
            return None

        shared = self.shared
        hit = await self._shared_call("get", key, lambda: shared.get(key))
        if hit is None:
            return None
        value, remaining = hit
        # 回填本地层：不超过共享层剩余寿命
        self.local.set(key, value, remaining)
        return value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        self.local.set(key, value, ttl)
        if self.shared is None:
            return
        shared = self.shared
        await self._shared_call("set", key, lambda: shared.set(key, value, ttl))

    async def invalidate(self, pattern: str) -> None:
        self.local.delete_pattern(pattern)
        if self.shared is None:
            return
        shared = self.shared
        await self._shared_call("invalidate", pattern, lambda: shared.delete_pattern(pattern))

    async def invalidate_exact(self, key: str) -> None:
        self.local.delete(key)
        if self.shared is None:
            return
        shared = self.shared
        await self._shared_call("invalidate_exact", key, lambda: shared.delete(key))

    async def invalidate_vin(self, vin: str) -> None:
        self._generations.bump(vin)
        await self.invalidate_exact(CacheKeys.status(vin))
        await self.invalidate(f"img:{vin}:*")

    async def invalidate_changes(self) -> None:
        self._generations.bump(CHANGES_SCOPE)
        await self.invalidate(CacheKeys.CHANGES_PATTERN)

    async def get_json(self, key: str, model: type[ModelT]) -> ModelT | None:
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return model.model_validate_json(raw)
        except ValidationError:
            # 结构不兼容（例如版本升级）当作 miss，并顺手清掉
            logger.warning("[CACHE] dropping undecodable entry key=%s", key)
            await self.invalidate_exact(key)
            return None

    async def set_json(self, key: str, value: BaseModel, ttl: float) -> None:
        await self.set(key, value.model_dump_json().encode("utf-8"), ttl)

    @contextmanager
    def track(self, scope: str) -> Iterator[Callable[[], bool]]:
        """登记一次“读上游 -> 写缓存”。

        scope 为 VIN（或 CHANGES_SCOPE）。期间该 scope 被失效过，返回的检查函数变为 False，
        调用方就不能再把读到的旧数据写进缓存。
        """
        generation = self._generations.enter(scope)
        try:
            yield lambda: self._generations.current(scope) == generation
        finally:
            self._generations.leave(scope)

    async def set_if_current(self, key: str, value: bytes, ttl: float, is_current: Callable[[], bool]) -> bool:
        if not is_current():
            logger.debug("[CACHE] skip stale write key=%s", key)
            return False
        await self.set(key, value, ttl)
        # 写共享层期间可能刚好发生失效：写完再确认一次，必要时自己删掉
        if not is_current():
            logger.debug("[CACHE] dropping write raced by invalidation key=%s", key)
            await self.invalidate_exact(key)
            return False
        return True

    async def set_json_if_current(
        self, key: str, value: BaseModel, ttl: float, is_current: Callable[[], bool]
    ) -> bool:
        return await self.set_if_current(key, value.model_dump_json().encode("utf-8"), ttl, is_current)
