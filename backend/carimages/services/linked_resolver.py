"""链接记录解析：把 linked=True 的记录翻译成原始记录持有的定位符

查找顺序（每个位置）：
1. 本次迁移运行构建的交叉引用（旧库图片 id -> 规范定位符）
2. 记录自身保存的 origin_vin
3. 旧库里按图片 id 反查持有该图片的原始文档（前两步都解析不了才查；旧库故障视为没有候选）

候选原始 VIN 最终都要在规范库里确认仍然存在且为原始记录；否则视为断链，
绝不回退到旧数据（原始记录被删除后，链接记录对外表现为“找不到”）。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from ..schemas import ImageEntry, VehicleRecord
from ..utils.errors import BrokenLinkError, exception_summary
from .legacy_store import LegacyStore
from .vehicle_store import VehicleRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrossReferenceEntry:
    locator: str
    vin: str
    position: int


class MigrationCrossReference:
    """旧库图片 id -> (规范定位符, vin, position)

    只在一次迁移运行内有效：进程内存、不落盘、每次运行重建。
    跨运行 / 乱序迁移的链接记录依赖按需修复路径兜底。
    """

    def __init__(self) -> None:
        self._entries: dict[str, CrossReferenceEntry] = {}

    def record(self, legacy_image_id: str, entry: CrossReferenceEntry) -> None:
        self._entries[str(legacy_image_id)] = entry

    def get(self, legacy_image_id: str | None) -> CrossReferenceEntry | None:
        if not legacy_image_id:
            return None
        return self._entries.get(str(legacy_image_id))

    def forget_vin(self, vin: str) -> int:
        """删除原图后丢掉指向它的映射，避免链接记录再指向已删除的定位符。"""
        doomed = [k for k, v in self._entries.items() if v.vin == vin]
        for k in doomed:
            self._entries.pop(k, None)
        return len(doomed)

    def __contains__(self, legacy_image_id: object) -> bool:
        return str(legacy_image_id) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


def _match_origin_entry(origin: VehicleRecord, entry: ImageEntry) -> ImageEntry | None:
    # 优先按旧图片 id 对齐（迁移来的链接记录位置可能与原始记录不同），其次定位符，最后位置
    if entry.legacy_image_id:
        for candidate in origin.images:
            if candidate.legacy_image_id == entry.legacy_image_id:
                return candidate
    for candidate in origin.images:
        if candidate.locator == entry.locator:
            return candidate
    if entry.legacy_image_id:
        return None
    return origin.entry_for(entry.position)


class LinkedEntityResolver:
    def __init__(
        self,
        vehicle_store: VehicleRecordStore,
        legacy_store: LegacyStore | None = None,
        *,
        cross_reference: Callable[[], MigrationCrossReference | None] | None = None,
        lookup_timeout_seconds: float = 5.0,
    ):
        self.vehicle_store = vehicle_store
        self.legacy_store = legacy_store
        self._cross_reference = cross_reference
        self._lookup_timeout = max(0.01, float(lookup_timeout_seconds))

    def _current_cross_reference(self) -> MigrationCrossReference | None:
        if self._cross_reference is None:
            return None
        return self._cross_reference()

    def _local_candidates(self, entry: ImageEntry) -> list[str]:
        """不需要访问旧库的候选：交叉引用 + origin_vin"""
        candidates: list[str] = []
        xref = self._current_cross_reference()
        hit = xref.get(entry.legacy_image_id) if xref is not None else None
        if hit is not None:
            candidates.append(hit.vin)
        if entry.origin_vin:
            candidates.append(entry.origin_vin)
        return candidates

    async def _legacy_candidate(self, entry: ImageEntry, *, self_vin: str) -> str | None:
        """旧库反查；旧库不可用只算没有候选，不影响已经能从规范库解析的链接。"""
        if self.legacy_store is None or not entry.legacy_image_id:
            return None
        legacy_store = self.legacy_store
        image_id = entry.legacy_image_id
        try:
            legacy_origin = await asyncio.wait_for(
                legacy_store.find_origin_by_image_id(image_id), timeout=self._lookup_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("[RESOLVE] legacy origin lookup timed out vin=%s image_id=%s", self_vin, image_id)
            return None
        except Exception as e:
            logger.warning(
                "[RESOLVE] legacy origin lookup failed vin=%s image_id=%s: %s",
                self_vin,
                image_id,
                exception_summary(e),
            )
            return None
        return legacy_origin.vin if legacy_origin is not None else None

    async def _match_in_origin(
        self,
        origin_vin: str,
        entry: ImageEntry,
        origins: dict[str, VehicleRecord | None],
    ) -> ImageEntry | None:
        if origin_vin not in origins:
            origins[origin_vin] = await self.vehicle_store.find_by_vin(origin_vin)
        origin = origins[origin_vin]
        if origin is None or origin.linked:
            return None
        origin_entry = _match_origin_entry(origin, entry)
        if origin_entry is None:
            return None
        return ImageEntry(
            position=entry.position,
            locator=origin_entry.locator,
            legacy_image_id=origin_entry.legacy_image_id or entry.legacy_image_id,
            origin_vin=origin.vin,
        )

    async def _resolve_entry(
        self,
        entry: ImageEntry,
        *,
        self_vin: str,
        origins: dict[str, VehicleRecord | None],
    ) -> ImageEntry | None:
        tried: set[str] = {self_vin}
        for origin_vin in self._local_candidates(entry):
            if origin_vin in tried:
                continue
            tried.add(origin_vin)
            resolved = await self._match_in_origin(origin_vin, entry, origins)
            if resolved is not None:
                return resolved

        # 前两种来源都解析不了，才去旧库反查
        origin_vin = await self._legacy_candidate(entry, self_vin=self_vin)
        if origin_vin is None or origin_vin in tried:
            return None
        return await self._match_in_origin(origin_vin, entry, origins)

    async def resolve_origin(
        self,
        record: VehicleRecord,
        *,
        positions: Iterable[int] | None = None,
    ) -> VehicleRecord:
        """返回定位符已全部落到原始记录上的副本；任一请求位置无法解析则抛 BrokenLinkError。"""
        if not record.linked:
            return record

        wanted = set(positions) if positions is not None else None
        origins: dict[str, VehicleRecord | None] = {}
        materialized: list[ImageEntry] = []

        for entry in record.images:
            if wanted is not None and entry.position not in wanted:
                continue
            resolved = await self._resolve_entry(entry, self_vin=record.vin, origins=origins)
            if resolved is None:
                logger.info("[RESOLVE] broken link vin=%s position=%s", record.vin, entry.position)
                raise BrokenLinkError(record.vin, entry.position)
            materialized.append(resolved)

        return record.model_copy(update={"images": materialized})
