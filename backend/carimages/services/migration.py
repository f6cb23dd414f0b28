"""旧库 -> 规范库迁移

单条记录状态机：Pending →（比较时间戳）→ Skip | Upsert →（Upsert 后）清缓存 → Done；
任何一步失败都只记为 Failed，不影响同批次其他记录。

幂等保证：
- 规范库时间戳（created/updated 取大）>= 旧库时间戳时直接跳过：不上传、不写库。
- 上传路径是确定的 `<vin>/<position>.jpg`，重复上传只会覆盖同一对象。

同一 VIN 的写入通过 KeyedLocks 串行（与链接创建/删除共用同一组锁）。
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field

from starlette.concurrency import run_in_threadpool

from ..schemas import ImageEntry, LegacyRecord, VehicleRecord, VehicleRecordPatch
from ..utils.concurrency import KeyedLocks
from ..utils.errors import AlreadyExistsError, MigrationFailure, exception_summary
from ..utils.identifiers import latest_of, utcnow
from .cache import CacheFacade
from .image_transform import ImageTransformer
from .legacy_store import LegacyStore
from .linked_resolver import CrossReferenceEntry, MigrationCrossReference
from .object_storage import ObjectStorage, canonical_key
from .vehicle_store import VehicleRecordStore

logger = logging.getLogger(__name__)


class MigrationOutcome(str, enum.Enum):
    MIGRATED = "migrated"
    SKIPPED = "skipped"
    # 链接记录的交叉引用缺失：本次跳过，留给按需修复
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class MigrationReport:
    total: int = 0
    migrated: int = 0
    skipped: int = 0
    deferred: int = 0
    failed: int = 0
    failed_vins: list[str] = field(default_factory=list)

    def add(self, vin: str, outcome: MigrationOutcome) -> None:
        self.total += 1
        if outcome is MigrationOutcome.MIGRATED:
            self.migrated += 1
        elif outcome is MigrationOutcome.SKIPPED:
            self.skipped += 1
        elif outcome is MigrationOutcome.DEFERRED:
            self.deferred += 1
        else:
            self.failed += 1
            self.failed_vins.append(vin)

    def merge(self, other: "MigrationReport") -> None:
        self.total += other.total
        self.migrated += other.migrated
        self.skipped += other.skipped
        self.deferred += other.deferred
        self.failed += other.failed
        self.failed_vins.extend(other.failed_vins)

    def as_dict(self) -> dict[str, object]:
        return {
            "total": self.total,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "failed": self.failed,
        }


@dataclass
class MigrationRunResult:
    originals: MigrationReport
    linked: MigrationReport


class MigrationEngine:
    def __init__(
        self,
        *,
        vehicle_store: VehicleRecordStore,
        legacy_store: LegacyStore,
        object_storage: ObjectStorage,
        transformer: ImageTransformer,
        cache: CacheFacade,
        locks: KeyedLocks,
        page_size: int = 50,
        workers: int = 1,
    ):
        self.vehicle_store = vehicle_store
        self.legacy_store = legacy_store
        self.object_storage = object_storage
        self.transformer = transformer
        self.cache = cache
        self.locks = locks
        self.page_size = max(1, int(page_size))
        self.workers = max(1, int(workers))
        self.cross_reference = MigrationCrossReference()

    def start_run(self) -> MigrationCrossReference:
        """每次运行重建交叉引用（不跨运行保留）。"""
        self.cross_reference = MigrationCrossReference()
        return self.cross_reference

    # ------------------------------------------------------------------ single record

    async def migrate_one(self, legacy: LegacyRecord, *, repair_links: bool = True) -> MigrationOutcome:
        """迁移一条旧库记录；批量和按需两条路径共用。

        repair_links=True（按需路径）时，链接记录缺少交叉引用会先把它的原始记录迁过来。
        """
        vin = legacy.vin
        try:
            async with self.locks.hold(vin):
                return await self._migrate_locked(legacy, repair_links=repair_links)
        except MigrationFailure as e:
            logger.warning("[MIGRATE] %s", e)
            return MigrationOutcome.FAILED
        except Exception as e:
            logger.exception("[MIGRATE] Error migrating car %s: %s", vin, exception_summary(e))
            return MigrationOutcome.FAILED

    def _is_up_to_date(self, legacy: LegacyRecord, canonical: VehicleRecord) -> bool:
        canonical_ts = latest_of(canonical.created_at, canonical.updated_at)
        if canonical_ts is None:
            return False
        legacy_ts = latest_of(legacy.created_at, legacy.updated_at)
        if legacy_ts is None:
            return True
        return canonical_ts >= legacy_ts

    def _remember_existing(self, canonical: VehicleRecord) -> None:
        # 跳过时也把已迁移原始记录的映射放进交叉引用，方便后续链接记录
        if canonical.linked:
            return
        for entry in canonical.images:
            if entry.legacy_image_id:
                self.cross_reference.record(
                    entry.legacy_image_id,
                    CrossReferenceEntry(locator=entry.locator, vin=canonical.vin, position=entry.position),
                )

    async def _migrate_locked(self, legacy: LegacyRecord, *, repair_links: bool) -> MigrationOutcome:
        vin = legacy.vin
        if await self.vehicle_store.is_deleted(vin):
            # 原图已被显式删除：旧库里还留着也不再搬回来
            logger.info("[MIGRATE] Skip %s (deleted original)", vin)
            return MigrationOutcome.SKIPPED

        existing = await self.vehicle_store.find_by_vin(vin)
        if existing is not None and self._is_up_to_date(legacy, existing):
            self._remember_existing(existing)
            logger.debug("[MIGRATE] Skip %s (canonical is newer or equal)", vin)
            return MigrationOutcome.SKIPPED

        if legacy.linked:
            entries = await self._linked_entries(legacy, repair=repair_links)
            if entries is None:
                return MigrationOutcome.DEFERRED
        else:
            entries = await self._upload_origin_images(legacy)

        await self._upsert(legacy, existing, entries)
        await self._invalidate(vin)
        logger.info(
            "[MIGRATE] Successfully migrated car %s with %s images (linked=%s)",
            vin,
            len(entries),
            legacy.linked,
        )
        return MigrationOutcome.MIGRATED

    async def _upload_origin_images(self, legacy: LegacyRecord) -> list[ImageEntry]:
        vin = legacy.vin
        entries: list[ImageEntry] = []
        for ref in legacy.images:
            data = await self.legacy_store.get_image_binary(ref.image_id)
            if data is None:
                logger.warning("[MIGRATE] Image not found for ID %s (vin=%s)", ref.image_id, vin)
                continue

            key = canonical_key(vin, ref.position)
            try:
                encoded = await run_in_threadpool(self.transformer.encode, data)
                await self.object_storage.put(key, encoded, content_type="image/jpeg")
            except Exception as e:
                # 部分成功也不落库：否则时间戳会让缺失的位置永远被跳过
                raise MigrationFailure(vin, f"position {ref.position}: {exception_summary(e)}") from e

            self.cross_reference.record(
                ref.image_id,
                CrossReferenceEntry(locator=key, vin=vin, position=ref.position),
            )
            entries.append(ImageEntry(position=ref.position, locator=key, legacy_image_id=ref.image_id))

        if legacy.images and not entries:
            raise MigrationFailure(vin, "no image binary could be fetched")
        return entries

    async def _linked_entries(self, legacy: LegacyRecord, *, repair: bool) -> list[ImageEntry] | None:
        entries: list[ImageEntry] = []
        for ref in legacy.images:
            hit = self.cross_reference.get(ref.image_id)
            if hit is None and repair:
                hit = await self._repair_origin(ref.image_id, linked_vin=legacy.vin)
            if hit is None:
                logger.warning(
                    "[MIGRATE] Mapping not found for linked image ID %s (vin=%s); deferred",
                    ref.image_id,
                    legacy.vin,
                )
                return None
            entries.append(
                ImageEntry(
                    position=ref.position,
                    locator=hit.locator,
                    legacy_image_id=ref.image_id,
                    origin_vin=hit.vin,
                )
            )
        return entries

    async def _repair_origin(self, image_id: str, *, linked_vin: str) -> CrossReferenceEntry | None:
        """按需修复：先把持有该图片的原始记录迁过来（代为上传），再记录链接。"""
        origin = await self.legacy_store.find_origin_by_image_id(image_id)
        if origin is None or origin.vin == linked_vin:
            return None

        logger.info("[MIGRATE] Materializing origin %s for linked car %s", origin.vin, linked_vin)
        outcome = await self.migrate_one(origin, repair_links=False)
        if outcome is MigrationOutcome.FAILED:
            return None
        return self.cross_reference.get(image_id)

    async def _upsert(self, legacy: LegacyRecord, existing: VehicleRecord | None, entries: list[ImageEntry]) -> None:
        vin = legacy.vin
        if existing is None:
            now = utcnow()
            record = VehicleRecord(
                vin=vin,
                images=entries,
                linked=bool(legacy.linked),
                created_at=legacy.created_at or now,
                updated_at=now,
            )
            try:
                await self.vehicle_store.create(record)
                return
            except AlreadyExistsError:
                # 其他进程刚插入：退化为按位置更新
                pass
        await self.vehicle_store.update(vin, VehicleRecordPatch(images=entries, linked=bool(legacy.linked)))

    async def _invalidate(self, vin: str) -> None:
        await self.cache.invalidate_vin(vin)
        try:
            dependents = await self.vehicle_store.find_linked_to(vin)
        except Exception as e:
            logger.warning("[MIGRATE] Could not list linked dependents of %s: %s", vin, exception_summary(e))
            dependents = []
        for dep in dependents:
            await self.cache.invalidate_vin(dep)
        await self.cache.invalidate_changes()

    # ------------------------------------------------------------------ batches

    async def _process_page(self, page: list[LegacyRecord], report: MigrationReport, *, repair_links: bool) -> None:
        # 页内顺序处理
        for record in page:
            outcome = await self.migrate_one(record, repair_links=repair_links)
            report.add(record.vin, outcome)

    async def migrate_batch(self, page_size: int | None = None) -> MigrationReport:
        """迁移所有原始（非链接）记录；页之间可并发（workers），同一 VIN 始终串行。"""
        size = max(1, int(page_size or self.page_size))
        report = MigrationReport()
        total = await self.legacy_store.count(linked=False)
        logger.info("[MIGRATE] Found %s original cars to migrate", total)

        queue: asyncio.Queue[list[LegacyRecord] | None] = asyncio.Queue(maxsize=self.workers * 2)

        async def _producer() -> None:
            batch_no = 0
            try:
                async for page in self.legacy_store.iter_pages(linked=False, page_size=size):
                    batch_no += 1
                    logger.info("[MIGRATE] Processing batch %s with %s cars", batch_no, len(page))
                    await queue.put(page)
            except Exception as e:
                logger.exception("[MIGRATE] Reading legacy pages failed: %s", exception_summary(e))
            finally:
                for _ in range(self.workers):
                    await queue.put(None)

        async def _worker() -> None:
            while True:
                page = await queue.get()
                if page is None:
                    return
                await self._process_page(page, report, repair_links=False)
                if total:
                    logger.info(
                        "[MIGRATE] Progress: %s/%s (%s%%)",
                        report.total,
                        total,
                        round(report.total / total * 100),
                    )

        await asyncio.gather(_producer(), *[_worker() for _ in range(self.workers)])
        logger.info(
            "[MIGRATE] Completed original cars migration. Success: %s/%s (skipped=%s failed=%s)",
            report.migrated,
            report.total,
            report.skipped,
            report.failed,
        )
        return report

    async def migrate_linked(self, page_size: int | None = None) -> MigrationReport:
        """迁移链接记录：只依赖本次运行的交叉引用，缺失映射的记录本次跳过。"""
        size = max(1, int(page_size or self.page_size))
        report = MigrationReport()
        logger.info("[MIGRATE] Migrating linked cars...")
        try:
            async for page in self.legacy_store.iter_pages(linked=True, page_size=size):
                await self._process_page(page, report, repair_links=False)
        except Exception as e:
            logger.exception("[MIGRATE] Reading linked pages failed: %s", exception_summary(e))
        logger.info(
            "[MIGRATE] Successfully migrated %s of %s linked cars (deferred=%s)",
            report.migrated,
            report.total,
            report.deferred,
        )
        return report

    async def run(self, page_size: int | None = None) -> MigrationRunResult:
        """一次完整运行：重建交叉引用 -> 原始记录 -> 链接记录。"""
        self.start_run()
        originals = await self.migrate_batch(page_size)
        linked = await self.migrate_linked(page_size)
        logger.info(
            "[MIGRATE] Migration complete: originals=%s linked=%s",
            originals.as_dict(),
            linked.as_dict(),
        )
        return MigrationRunResult(originals=originals, linked=linked)
