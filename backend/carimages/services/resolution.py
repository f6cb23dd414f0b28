"""图片 / 状态解析链：缓存 -> 规范库 -> 旧库（触发按需迁移）-> 本地目录

约定：
- 标识符先校验，非法时在访问任何存储之前抛 InvalidIdentifierError。
- 每一层调用都有超时；超时/异常记日志后视为该层 miss，继续下一层。
- 链接记录断链（原始记录已删除）直接返回“找不到”，不回退到旧数据。
- 原图被显式删除（有墓碑）的 VIN 不再回退到旧库和本地目录。
- 本地目录的结果没有时间戳，不写缓存。
- 读上游期间该 VIN 被失效过，读到的结果不写缓存（CacheFacade.track）。
- 同一个缓存 key 的并发 miss 通过 SingleFlight 合并成一次上游请求。
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, TypeVar

from starlette.concurrency import run_in_threadpool

from ..schemas import ChangesResponse, LegacyRecord, Provenance, ResolvedImage, StatusResponse, VehicleRecord
from ..utils.concurrency import SingleFlight
from ..utils.errors import BrokenLinkError, InvalidIdentifierError, UpstreamUnavailableError, exception_summary
from ..utils.identifiers import (
    normalize_position,
    normalize_shrink,
    normalize_vin,
    normalize_window_seconds,
    utcnow,
)
from .background import MigrationTaskRunner
from .cache import CHANGES_SCOPE, CacheFacade, CacheKeys
from .image_transform import Brand, BrandRegistry, ImageTransformer
from .legacy_store import LegacyStore
from .linked_resolver import LinkedEntityResolver
from .local_fallback import LocalFallbackStore
from .object_storage import ObjectStorage
from .vehicle_store import VehicleRecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _image_paths(vin: str, positions: list[int]) -> list[str]:
    return [f"/{vin}/{p}" for p in sorted(set(positions))]


class ResolutionChain:
    def __init__(
        self,
        *,
        cache: CacheFacade,
        vehicle_store: VehicleRecordStore,
        resolver: LinkedEntityResolver,
        object_storage: ObjectStorage,
        transformer: ImageTransformer,
        brands: BrandRegistry,
        legacy_store: LegacyStore | None = None,
        local_fallback: LocalFallbackStore | None = None,
        runner: MigrationTaskRunner | None = None,
        store_timeout_seconds: float = 5.0,
    ):
        self.cache = cache
        self.vehicle_store = vehicle_store
        self.resolver = resolver
        self.object_storage = object_storage
        self.transformer = transformer
        self.brands = brands
        self.legacy_store = legacy_store
        self.local_fallback = local_fallback
        self.runner = runner
        self._store_timeout = max(0.01, float(store_timeout_seconds))
        self._flight = SingleFlight()

    async def _guarded(self, tier: str, call: Callable[[], Awaitable[T]]) -> T:
        """给单层调用加超时，并把各种失败统一成 UpstreamUnavailableError。"""
        try:
            return await asyncio.wait_for(call(), timeout=self._store_timeout)
        except (BrokenLinkError, InvalidIdentifierError):
            raise
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailableError(tier, "timeout") from e
        except Exception as e:
            raise UpstreamUnavailableError(tier, exception_summary(e)) from e

    def _schedule_migration(self, legacy: LegacyRecord) -> None:
        if self.runner is None:
            return
        if self.runner.schedule(legacy):
            logger.info("[RESOLVE] scheduled on-demand migration vin=%s", legacy.vin)

    async def _is_tombstoned(self, vin: str) -> bool:
        try:
            return await self._guarded("canonical", lambda: self.vehicle_store.is_deleted(vin))
        except UpstreamUnavailableError as e:
            # 查询失败按“未删除”处理
            logger.warning("[RESOLVE] %s (tombstone vin=%s)", e, vin)
            return False

    # ------------------------------------------------------------------ images

    async def resolve_image(
        self,
        vin: Any,
        position: Any,
        *,
        shrink: Any = None,
        brand: Brand | str | None = None,
    ) -> ResolvedImage | None:
        """返回图片字节及来源；所有层都没有时返回 None。"""
        vin = normalize_vin(vin)
        position = normalize_position(position)
        width = normalize_shrink(shrink)
        brand_tag = brand if isinstance(brand, Brand) or brand is None else Brand.parse(brand)
        # 品牌页脚只作用于 1 号位，其他位置与原图共用缓存 key
        if position != 1:
            brand_tag = None

        key = CacheKeys.image(vin, position, width, brand_tag.value if brand_tag else None)
        cached = await self.cache.get(key)
        if cached is not None:
            return ResolvedImage(data=cached, provenance=Provenance.CACHE)

        return await self._flight.do(
            key,
            lambda: self._resolve_image_uncached(key, vin, position, width, brand_tag),
        )

    async def _resolve_image_uncached(
        self,
        key: str,
        vin: str,
        position: int,
        width: int | None,
        brand: Brand | None,
    ) -> ResolvedImage | None:
        with self.cache.track(vin) as is_current:
            fetched = await self._fetch_image(vin, position)
            if fetched is None:
                return None
            data, provenance, legacy = fetched

            if provenance is not Provenance.LOCAL and (width or brand):
                # 顺手缓存原图变体
                await self.cache.set_if_current(
                    CacheKeys.image(vin, position), data, self.cache.ttl.image, is_current
                )

            data = await self._post_process(data, vin=vin, position=position, width=width, brand=brand)
            if provenance is not Provenance.LOCAL:
                await self.cache.set_if_current(key, data, self.cache.ttl.image, is_current)
        if legacy is not None:
            # 写完缓存再触发迁移：迁移完成时的失效一定晚于这次写入
            self._schedule_migration(legacy)
        return ResolvedImage(data=data, provenance=provenance)

    async def _fetch_image(
        self, vin: str, position: int
    ) -> tuple[bytes, Provenance, LegacyRecord | None] | None:
        try:
            record = await self._guarded("canonical", lambda: self.vehicle_store.find_by_vin(vin))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (vin=%s)", e, vin)
            record = None

        if record is not None:
            try:
                data = await self._canonical_image(record, position)
            except BrokenLinkError:
                return None
            if data is not None:
                return data, Provenance.CANONICAL, None

        if await self._is_tombstoned(vin):
            logger.info("[RESOLVE] image not found vin=%s position=%s (deleted original)", vin, position)
            return None

        legacy, data = await self._legacy_image(vin, position)
        if legacy is not None:
            if data is not None:
                return data, Provenance.LEGACY, legacy
            self._schedule_migration(legacy)

        data = await self._local_image(vin, position)
        if data is not None:
            return data, Provenance.LOCAL, None

        logger.info("[RESOLVE] image not found vin=%s position=%s", vin, position)
        return None

    async def _canonical_image(self, record: VehicleRecord, position: int) -> bytes | None:
        if record.linked:
            try:
                record = await self._guarded(
                    "canonical",
                    lambda: self.resolver.resolve_origin(record, positions=[position]),
                )
            except UpstreamUnavailableError as e:
                logger.warning("[RESOLVE] %s (linked vin=%s)", e, record.vin)
                return None

        entry = record.entry_for(position)
        if entry is None:
            return None
        try:
            data = await self._guarded("object_storage", lambda: self.object_storage.get(entry.locator))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (locator=%s)", e, entry.locator)
            return None
        if data is None:
            logger.warning("[RESOLVE] blob missing locator=%s (vin=%s)", entry.locator, record.vin)
        return data

    async def _legacy_image(self, vin: str, position: int) -> tuple[LegacyRecord | None, bytes | None]:
        """返回 (旧库文档, 规范编码后的字节)；文档存在即应触发按需迁移。"""
        if self.legacy_store is None:
            return None, None
        legacy_store = self.legacy_store
        try:
            legacy = await self._guarded("legacy", lambda: legacy_store.find_by_vin(vin))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (vin=%s)", e, vin)
            return None, None
        if legacy is None:
            return None, None

        ref = legacy.image_for(position)
        if ref is None:
            return legacy, None
        try:
            raw = await self._guarded("legacy", lambda: legacy_store.get_image_binary(ref.image_id))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (image_id=%s)", e, ref.image_id)
            return legacy, None
        if raw is None:
            return legacy, None

        # 与迁移使用同一套规范编码，保证迁移完成后从规范库读到的字节一致
        try:
            return legacy, await run_in_threadpool(self.transformer.encode, raw)
        except Exception as e:
            logger.warning("[RESOLVE] encoding legacy image failed vin=%s: %s", vin, exception_summary(e))
            return legacy, raw

    async def _local_image(self, vin: str, position: int) -> bytes | None:
        if self.local_fallback is None:
            return None
        local_fallback = self.local_fallback
        try:
            return await self._guarded("local", lambda: local_fallback.read(vin, position))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (vin=%s)", e, vin)
            return None

    async def _post_process(
        self,
        data: bytes,
        *,
        vin: str,
        position: int,
        width: int | None,
        brand: Brand | None,
    ) -> bytes:
        """缩放 + 品牌页脚；任何一步失败都返回处理前的字节。"""
        out = data
        if width:
            try:
                out = await run_in_threadpool(self.transformer.encode, out, width)
            except Exception as e:
                logger.warning("[RESOLVE] resize failed vin=%s position=%s: %s", vin, position, exception_summary(e))
        if brand is not None and position == 1:
            asset = self.brands.asset(brand)
            if asset is not None:
                try:
                    out = await run_in_threadpool(self.transformer.composite_brand, out, asset)
                except Exception as e:
                    logger.warning("[RESOLVE] branding failed vin=%s brand=%s: %s", vin, brand.value, exception_summary(e))
        return out

    # ------------------------------------------------------------------ status

    async def resolve_status(self, vin: Any) -> StatusResponse:
        vin = normalize_vin(vin)
        key = CacheKeys.status(vin)
        cached = await self.cache.get_json(key, StatusResponse)
        if cached is not None:
            return cached
        return await self._flight.do(key, lambda: self._resolve_status_uncached(key, vin))

    async def _resolve_status_uncached(self, key: str, vin: str) -> StatusResponse:
        with self.cache.track(vin) as is_current:
            response, cacheable, legacy = await self._lookup_status(vin)
            if cacheable:
                await self.cache.set_json_if_current(key, response, self.cache.ttl.status, is_current)
        if legacy is not None:
            self._schedule_migration(legacy)
        return response

    async def _lookup_status(self, vin: str) -> tuple[StatusResponse, bool, LegacyRecord | None]:
        """返回 (状态, 是否可缓存, 需要按需迁移的旧库文档)"""
        degraded = False

        try:
            record = await self._guarded("canonical", lambda: self.vehicle_store.find_by_vin(vin))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (status vin=%s)", e, vin)
            record = None
            degraded = True

        if record is not None:
            response = await self._canonical_status(record)
            if response is not None:
                return response, True, None
            degraded = True

        if await self._is_tombstoned(vin):
            logger.info("[RESOLVE] status not found vin=%s (deleted original)", vin)
            return StatusResponse(success=True, found=False), not degraded, None

        if self.legacy_store is not None:
            legacy_store = self.legacy_store
            try:
                legacy = await self._guarded("legacy", lambda: legacy_store.find_by_vin(vin))
            except UpstreamUnavailableError as e:
                logger.warning("[RESOLVE] %s (status vin=%s)", e, vin)
                legacy = None
                degraded = True
            if legacy is not None:
                response = StatusResponse(
                    found=True,
                    images=_image_paths(vin, await self._legacy_positions(legacy)),
                    linked=bool(legacy.linked),
                    created_at=legacy.created_at,
                    updated_at=legacy.updated_at,
                    provenance=Provenance.LEGACY,
                )
                return response, True, legacy

        if self.local_fallback is not None:
            local_fallback = self.local_fallback
            try:
                local_images = await self._guarded("local", lambda: local_fallback.list_images(vin))
            except UpstreamUnavailableError as e:
                logger.warning("[RESOLVE] %s (status vin=%s)", e, vin)
                local_images = []
                degraded = True
            if local_images:
                # 本地目录没有时间戳：用发现时刻近似，且不缓存
                now = utcnow()
                response = StatusResponse(
                    found=True,
                    images=_image_paths(vin, [img.position for img in local_images]),
                    created_at=now,
                    updated_at=now,
                    provenance=Provenance.LOCAL,
                    unmanaged=True,
                )
                return response, False, None

        # 有层不可用时不缓存否定结果，避免把故障期的 miss 固化 5 分钟
        return StatusResponse(success=True, found=False), not degraded, None

    async def _legacy_positions(self, legacy: LegacyRecord) -> list[int]:
        """只列出旧库里真有图片数据的位置；查询失败时退回文档里的全部位置。"""
        positions = [ref.position for ref in legacy.images]
        if self.legacy_store is None or not legacy.images:
            return positions
        legacy_store = self.legacy_store
        image_ids = [ref.image_id for ref in legacy.images]
        try:
            existing = await self._guarded("legacy", lambda: legacy_store.existing_image_ids(image_ids))
        except UpstreamUnavailableError as e:
            logger.warning("[RESOLVE] %s (status vin=%s)", e, legacy.vin)
            return positions
        missing = [ref.position for ref in legacy.images if ref.image_id not in existing]
        if missing:
            logger.info("[RESOLVE] legacy positions without image data vin=%s positions=%s", legacy.vin, missing)
        return [ref.position for ref in legacy.images if ref.image_id in existing]

    async def _canonical_status(self, record: VehicleRecord) -> StatusResponse | None:
        """规范库记录 -> 状态；断链返回 found=False，规范层不可用返回 None。"""
        if record.linked:
            try:
                await self._guarded("canonical", lambda: self.resolver.resolve_origin(record))
            except BrokenLinkError:
                return StatusResponse(success=True, found=False, linked=True)
            except UpstreamUnavailableError as e:
                logger.warning("[RESOLVE] %s (linked vin=%s)", e, record.vin)
                return None

        return StatusResponse(
            found=True,
            images=_image_paths(record.vin, record.positions()),
            linked=record.linked,
            created_at=record.created_at,
            updated_at=record.updated_at,
            provenance=Provenance.CANONICAL,
        )

    # ------------------------------------------------------------------ changes

    async def changed_since(self, seconds: Any) -> ChangesResponse:
        """最近 N 秒内创建或更新过的 VIN（两者任一落在窗口内即算）。"""
        window = normalize_window_seconds(seconds)
        key = CacheKeys.changes(window)
        cached = await self.cache.get_json(key, ChangesResponse)
        if cached is not None:
            return cached

        cutoff = utcnow() - timedelta(seconds=window)
        with self.cache.track(CHANGES_SCOPE) as is_current:
            # 只有规范库一层：不可用时直接抛 UpstreamUnavailableError
            vins = await self._guarded("canonical", lambda: self.vehicle_store.find_updated_since(cutoff))
            response = ChangesResponse(success=True, data=list(vins))
            await self.cache.set_json_if_current(key, response, self.cache.ttl.changes, is_current)
        return response
