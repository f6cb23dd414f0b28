"""进程级依赖装配

所有存储客户端 / 缓存 / 引擎都在这里显式构造，通过 Services 传给 API 层和调度器；
启动时 build_services()，关闭时 aclose()。没有模块级的全局客户端。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import Settings
from .database import build_engine, build_session_factory
from .services import (
    BrandRegistry,
    CacheFacade,
    CacheTTL,
    FileSystemObjectStorage,
    ImageTransformer,
    LegacyStore,
    LinkedEntityResolver,
    LocalCacheTier,
    LocalFallbackStore,
    MigrationEngine,
    MigrationTaskRunner,
    ObjectStorage,
    ResolutionChain,
    S3ObjectStorage,
    SqlCacheTier,
    VehicleLinkService,
    VehicleRecordStore,
)
from .utils.concurrency import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    legacy_engine: AsyncEngine | None
    cache: CacheFacade
    vehicle_store: VehicleRecordStore
    legacy_store: LegacyStore | None
    object_storage: ObjectStorage
    transformer: ImageTransformer
    brands: BrandRegistry
    resolver: LinkedEntityResolver
    migration: MigrationEngine | None
    runner: MigrationTaskRunner | None
    chain: ResolutionChain
    links: VehicleLinkService

    async def aclose(self) -> None:
        if self.runner is not None:
            await self.runner.aclose()
        await self.object_storage.aclose()
        if self.legacy_engine is not None:
            await self.legacy_engine.dispose()
        await self.engine.dispose()


def build_object_storage(settings: Settings) -> ObjectStorage:
    if settings.object_storage_backend == "s3":
        return S3ObjectStorage(
            bucket=settings.s3_bucket,
            prefix=settings.s3_prefix,
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
        )
    return FileSystemObjectStorage(settings.object_storage_path())


def build_services(
    settings: Settings,
    *,
    engine: AsyncEngine | None = None,
    legacy_engine: AsyncEngine | None = None,
    object_storage: ObjectStorage | None = None,
    brands: BrandRegistry | None = None,
) -> Services:
    """按配置装配全部组件；测试可以注入 engine / object_storage / brands。"""
    if engine is None:
        engine = build_engine(str(settings.database_url), echo=settings.sql_echo)
    session_factory = build_session_factory(engine)

    if legacy_engine is None and settings.legacy_database_url:
        legacy_engine = build_engine(settings.legacy_database_url, echo=settings.sql_echo)
    legacy_store = LegacyStore(build_session_factory(legacy_engine)) if legacy_engine is not None else None
    if legacy_store is None:
        logger.info("[STARTUP] LEGACY_DATABASE_URL not set, legacy tier disabled")

    cache = CacheFacade(
        LocalCacheTier(max_ttl_seconds=settings.cache_local_ttl_seconds),
        SqlCacheTier(session_factory) if settings.cache_shared_enabled else None,
        ttl=CacheTTL(
            image=settings.cache_image_ttl_seconds,
            status=settings.cache_status_ttl_seconds,
            changes=settings.cache_changes_ttl_seconds,
        ),
        timeout_seconds=settings.cache_timeout_seconds,
    )

    vehicle_store = VehicleRecordStore(session_factory)
    storage = object_storage or build_object_storage(settings)
    transformer = ImageTransformer()
    brand_registry = brands or BrandRegistry.from_file(settings.brand_asset_path())
    locks = KeyedLocks()

    migration: MigrationEngine | None = None
    runner: MigrationTaskRunner | None = None
    if legacy_store is not None:
        migration = MigrationEngine(
            vehicle_store=vehicle_store,
            legacy_store=legacy_store,
            object_storage=storage,
            transformer=transformer,
            cache=cache,
            locks=locks,
            page_size=settings.migration_batch_size,
            workers=settings.migration_workers,
        )
        runner = MigrationTaskRunner(migration)

    engine_ref = migration
    resolver = LinkedEntityResolver(
        vehicle_store,
        legacy_store,
        cross_reference=(lambda: engine_ref.cross_reference) if engine_ref is not None else None,
        lookup_timeout_seconds=settings.store_timeout_seconds,
    )

    chain = ResolutionChain(
        cache=cache,
        vehicle_store=vehicle_store,
        resolver=resolver,
        object_storage=storage,
        transformer=transformer,
        brands=brand_registry,
        legacy_store=legacy_store,
        local_fallback=LocalFallbackStore(settings.local_fallback_path()),
        runner=runner,
        store_timeout_seconds=settings.store_timeout_seconds,
    )

    links = VehicleLinkService(
        vehicle_store=vehicle_store,
        object_storage=storage,
        cache=cache,
        locks=locks,
        resolver=resolver,
        legacy_store=legacy_store,
        engine=migration,
    )

    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        legacy_engine=legacy_engine,
        cache=cache,
        vehicle_store=vehicle_store,
        legacy_store=legacy_store,
        object_storage=storage,
        transformer=transformer,
        brands=brand_registry,
        resolver=resolver,
        migration=migration,
        runner=runner,
        chain=chain,
        links=links,
    )
