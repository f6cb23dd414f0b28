"""会改动规范库的操作：创建链接 / 删除链接 / 删除原图

写同一 VIN 时与迁移共用 KeyedLocks；每个操作完成后清掉该 VIN（以及受影响的链接 VIN）的缓存，
并清掉所有 changes:* 缓存。
"""

from __future__ import annotations

import logging
from typing import Any

from ..schemas import DeleteResponse, ImageEntry, VehicleRecord
from ..utils.concurrency import KeyedLocks
from ..utils.errors import (
    AlreadyExistsError,
    BrokenLinkError,
    InvalidIdentifierError,
    NotFoundError,
    OriginalProtectedError,
    exception_summary,
)
from ..utils.identifiers import normalize_vin, utcnow
from .cache import CacheFacade
from .legacy_store import LegacyStore
from .linked_resolver import LinkedEntityResolver
from .migration import MigrationEngine
from .object_storage import ObjectStorage
from .vehicle_store import VehicleRecordStore

logger = logging.getLogger(__name__)


class VehicleLinkService:
    def __init__(
        self,
        *,
        vehicle_store: VehicleRecordStore,
        object_storage: ObjectStorage,
        cache: CacheFacade,
        locks: KeyedLocks,
        resolver: LinkedEntityResolver,
        legacy_store: LegacyStore | None = None,
        engine: MigrationEngine | None = None,
    ):
        self.vehicle_store = vehicle_store
        self.object_storage = object_storage
        self.cache = cache
        self.locks = locks
        self.resolver = resolver
        self.legacy_store = legacy_store
        self.engine = engine

    async def _invalidate(self, vins: list[str]) -> None:
        for vin in vins:
            await self.cache.invalidate_vin(vin)
        await self.cache.invalidate_changes()

    async def _load_origin(self, vin: str) -> VehicleRecord | None:
        record = await self.vehicle_store.find_by_vin(vin)
        if record is not None or self.legacy_store is None or self.engine is None:
            return record

        # 规范库没有但旧库有：先按需迁移过来
        legacy = await self.legacy_store.find_by_vin(vin)
        if legacy is None:
            return None
        logger.info("[LINK] origin %s only in legacy store, migrating first", vin)
        await self.engine.migrate_one(legacy, repair_links=True)
        return await self.vehicle_store.find_by_vin(vin)

    async def create_link(self, from_vin: Any, to_vin: Any) -> VehicleRecord:
        """让 to_vin 复用 from_vin 的图片（不复制二进制）。"""
        source = normalize_vin(from_vin)
        target = normalize_vin(to_vin)
        if source == target:
            raise InvalidIdentifierError(f"{target} cannot be linked to itself.")

        # 先快速失败，避免为一个注定失败的请求去迁移
        if await self.vehicle_store.find_by_vin(target) is not None:
            raise AlreadyExistsError(target)

        # 迁移会锁 source；这里还没拿 target 的锁，避免两个方向相反的请求互相等待
        origin = await self._load_origin(source)
        if origin is None:
            raise NotFoundError("Car to link from not found.")

        try:
            # 源本身也是链接记录时，展开到真正的原始记录
            resolved = await self.resolver.resolve_origin(origin)
        except BrokenLinkError:
            raise NotFoundError("Car to link from not found.") from None

        entries = [
            ImageEntry(
                position=entry.position,
                locator=entry.locator,
                legacy_image_id=entry.legacy_image_id,
                origin_vin=entry.origin_vin or resolved.vin,
            )
            for entry in resolved.images
        ]

        async with self.locks.hold(target):
            if await self.vehicle_store.find_by_vin(target) is not None:
                raise AlreadyExistsError(target)
            now = utcnow()
            created = await self.vehicle_store.create(
                VehicleRecord(vin=target, images=entries, linked=True, created_at=now, updated_at=now)
            )
            await self._invalidate([target])

        logger.info("[LINK] linked %s -> %s (%s images)", target, source, len(entries))
        return created

    async def delete_link(self, vin: Any) -> VehicleRecord:
        """删除一条链接记录；原始记录受保护。"""
        vin = normalize_vin(vin)
        async with self.locks.hold(vin):
            record = await self.vehicle_store.find_by_vin(vin)
            if record is None:
                raise NotFoundError(f"No cardata found for {vin}")
            if not record.linked:
                raise OriginalProtectedError(vin)
            await self.vehicle_store.delete(vin)
            await self._invalidate([vin])

        logger.info("[LINK] deleted link %s", vin)
        return record

    async def delete_original(self, vin: Any) -> DeleteResponse:
        """删除记录及 `<vin>/` 下的所有二进制，并写墓碑；依赖它的链接记录随后表现为“找不到”。

        旧库只读，同一 VIN 仍留在旧库里；墓碑让解析链和迁移都不再从旧库把它带回来。
        """
        vin = normalize_vin(vin)
        async with self.locks.hold(vin):
            record = await self.vehicle_store.find_by_vin(vin)
            if record is None:
                raise NotFoundError(f"No cardata found for {vin}")

            await self.vehicle_store.delete(vin, tombstone=True)
            if self.engine is not None:
                self.engine.cross_reference.forget_vin(vin)
            try:
                dependents = await self.vehicle_store.find_linked_to(vin)
            except Exception as e:
                logger.warning("[LINK] Could not list linked dependents of %s: %s", vin, exception_summary(e))
                dependents = []

            try:
                deleted_objects = await self.object_storage.delete_prefix(f"{vin}/")
            finally:
                await self._invalidate([vin, *dependents])

        logger.info(
            "[LINK] deleted original %s (objects=%s, dependents=%s)",
            vin,
            deleted_objects,
            len(dependents),
        )
        return DeleteResponse(success=True, vin=vin, deleted_objects=deleted_objects)
