"""测试公共工具：内存数据库、旧库造数、内存对象存储、生成 JPEG"""

from __future__ import annotations

import io
import sys
from datetime import datetime
from pathlib import Path
from typing import cast

from PIL import Image
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeMeta
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).resolve().parents[2]))

from backend.carimages import models  # noqa: F401
from backend.carimages.config import Settings
from backend.carimages.database import Base as _Base  # pyright: ignore[reportAny]
from backend.carimages.database import LegacyBase as _LegacyBase  # pyright: ignore[reportAny]
from backend.carimages.models import LegacyCar, LegacyCarImage, LegacyImage
from backend.carimages.services.object_storage import ObjectStorage, _clean_key

Base = cast(DeclarativeMeta, _Base)
LegacyBase = cast(DeclarativeMeta, _LegacyBase)


def memory_engine() -> AsyncEngine:
    return create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


async def create_canonical_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def create_legacy_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(LegacyBase.metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def jpeg_bytes(width: int = 64, height: int = 48, color: tuple[int, int, int] = (200, 30, 30)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format="JPEG", quality=95)
    return out.getvalue()


def png_bytes(width: int = 32, height: int = 8, color: tuple[int, int, int, int] = (0, 0, 255, 255)) -> bytes:
    out = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(out, format="PNG")
    return out.getvalue()


def image_size(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def legacy_id(n: int) -> str:
    """24 位十六进制的旧库文档 id"""
    return f"{n:024x}"


async def seed_legacy_car(
    factory: async_sessionmaker[AsyncSession],
    vin: str,
    images: list[tuple[int, str, bytes | None]],
    *,
    linked: bool = False,
    created_at: datetime | None = None,
    updated_at: datetime | None = None,
) -> int:
    """写入一条旧库车辆文档；images 为 (position, image_id, bytes)，bytes=None 表示只引用不写二进制。"""
    async with factory() as session:
        car = LegacyCar(vin=vin, linked=linked)
        if created_at is not None:
            car.created_at = created_at
        if updated_at is not None:
            car.updated_at = updated_at
        session.add(car)
        await session.flush()

        for position, image_id, data in images:
            session.add(LegacyCarImage(car_id=car.id, position_identifier=position, image_id=image_id))
            if data is not None and await session.get(LegacyImage, image_id) is None:
                session.add(LegacyImage(id=image_id, image=data, position_identifier=position))
        await session.commit()
        return int(car.id)


async def touch_legacy_car(factory: async_sessionmaker[AsyncSession], car_id: int, updated_at: datetime) -> None:
    async with factory() as session:
        car = await session.get(LegacyCar, car_id)
        assert car is not None
        car.updated_at = updated_at
        await session.commit()


class MemoryObjectStorage(ObjectStorage):
    """内存对象存储，记录调用次数；可注入失败。"""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.puts = 0
        self.gets = 0
        self.fail_put: Exception | None = None
        self.fail_get: Exception | None = None

    async def get(self, key: str) -> bytes | None:
        self.gets += 1
        if self.fail_get is not None:
            raise self.fail_get
        return self.blobs.get(_clean_key(key))

    async def put(self, key: str, data: bytes, *, content_type: str = "image/jpeg") -> None:
        if self.fail_put is not None:
            raise self.fail_put
        self.puts += 1
        self.blobs[_clean_key(key)] = bytes(data)

    async def delete(self, key: str) -> bool:
        return self.blobs.pop(_clean_key(key), None) is not None

    async def list_prefix(self, prefix: str) -> list[str]:
        base = _clean_key(prefix.rstrip("/")) + "/"
        return sorted(k for k in self.blobs if k.startswith(base))


def make_settings(tmp_dir: Path, **overrides) -> Settings:
    values = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "legacy_database_url": None,
        "object_storage_backend": "filesystem",
        "object_storage_dir": str(tmp_dir / "storage"),
        "local_fallback_dir": str(tmp_dir / "own"),
        "brand_assets_dir": str(tmp_dir / "assets"),
        "cache_shared_enabled": True,
        "store_timeout_seconds": 2.0,
        "migration_interval_minutes": 0,
        "migrate_on_startup": False,
        "auth_user": "admin",
        "auth_password": "secret",
    }
    values.update(overrides)
    return Settings(**values)


async def build_test_services(tmp_dir: Path, *, with_legacy: bool = True, brand_asset: bytes | None = None, **overrides):
    """内存规范库 + 内存旧库 + 内存对象存储装配出完整的 Services。"""
    from backend.carimages.container import build_services
    from backend.carimages.services import Brand, BrandRegistry

    engine = memory_engine()
    await create_canonical_schema(engine)
    legacy_engine = None
    if with_legacy:
        legacy_engine = memory_engine()
        await create_legacy_schema(legacy_engine)

    storage = MemoryObjectStorage()
    brands = BrandRegistry({brand: brand_asset for brand in Brand})
    services = build_services(
        make_settings(tmp_dir, **overrides),
        engine=engine,
        legacy_engine=legacy_engine,
        object_storage=storage,
        brands=brands,
    )
    return services, storage
