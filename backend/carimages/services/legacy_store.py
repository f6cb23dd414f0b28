"""旧库只读适配器

说明：
- 只作为兜底读取与迁移来源；解析链路和迁移逻辑都不会写旧库。
- 旧库里 linked 字段可能为 NULL（老数据），按“非链接”处理。
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import LegacyCar, LegacyCarImage, LegacyImage
from ..schemas import LegacyImageRef, LegacyRecord
from ..utils.identifiers import to_utc

logger = logging.getLogger(__name__)


def _linked_filter(linked: bool) -> Any:
    if linked:
        return LegacyCar.linked.is_(True)
    return or_(LegacyCar.linked.is_(False), LegacyCar.linked.is_(None))


class LegacyStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _load_images(self, session: AsyncSession, car_ids: list[int]) -> dict[int, list[LegacyImageRef]]:
        if not car_ids:
            return {}
        result = await session.execute(
            select(LegacyCarImage)
            .where(LegacyCarImage.car_id.in_(car_ids))
            .order_by(LegacyCarImage.car_id, LegacyCarImage.position_identifier, LegacyCarImage.id)
        )
        by_car: dict[int, list[LegacyImageRef]] = {}
        for item in result.scalars().all():
            by_car.setdefault(int(item.car_id), []).append(
                LegacyImageRef(position=int(item.position_identifier), image_id=str(item.image_id))
            )
        return by_car

    def _to_record(self, car: LegacyCar, images: list[LegacyImageRef]) -> LegacyRecord:
        return LegacyRecord(
            vin=car.vin,
            images=images,
            linked=bool(car.linked),
            created_at=to_utc(car.created_at),
            updated_at=to_utc(car.updated_at),
        )

    async def find_by_vin(self, vin: str) -> LegacyRecord | None:
        async with self._session_factory() as session:
            car = await session.scalar(
                select(LegacyCar).where(LegacyCar.vin == vin).order_by(LegacyCar.id).limit(1)
            )
            if car is None:
                return None
            images = await self._load_images(session, [int(car.id)])
            return self._to_record(car, images.get(int(car.id), []))

    async def get_image_binary(self, image_id: str) -> bytes | None:
        async with self._session_factory() as session:
            data = await session.scalar(select(LegacyImage.image).where(LegacyImage.id == image_id))
            if data is None:
                return None
            return bytes(data)

    async def existing_image_ids(self, image_ids: list[str]) -> set[str]:
        """只查 id：哪些图片文档真的带二进制（不加载图片内容）。"""
        if not image_ids:
            return set()
        async with self._session_factory() as session:
            result = await session.execute(
                select(LegacyImage.id).where(LegacyImage.id.in_(image_ids), LegacyImage.image.is_not(None))
            )
            return {str(i) for i in result.scalars().all()}

    async def find_origin_by_image_id(self, image_id: str) -> LegacyRecord | None:
        """按图片 id 反查持有该图片的原始（非链接）车辆文档。"""
        async with self._session_factory() as session:
            car = await session.scalar(
                select(LegacyCar)
                .join(LegacyCarImage, LegacyCarImage.car_id == LegacyCar.id)
                .where(LegacyCarImage.image_id == image_id, _linked_filter(False))
                .order_by(LegacyCar.id)
                .limit(1)
            )
            if car is None:
                return None
            images = await self._load_images(session, [int(car.id)])
            return self._to_record(car, images.get(int(car.id), []))

    async def count(self, *, linked: bool) -> int:
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count(LegacyCar.id)).where(_linked_filter(linked)))
            return int(total or 0)

    async def iter_pages(self, *, linked: bool, page_size: int) -> AsyncIterator[list[LegacyRecord]]:
        """skip/limit 分页读取（按主键稳定排序）。"""
        size = max(1, int(page_size))
        offset = 0
        while True:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(LegacyCar)
                    .where(_linked_filter(linked))
                    .order_by(LegacyCar.id)
                    .offset(offset)
                    .limit(size)
                )
                cars = result.scalars().all()
                if not cars:
                    return
                images = await self._load_images(session, [int(c.id) for c in cars])
                page = [self._to_record(c, images.get(int(c.id), [])) for c in cars]

            yield page
            if len(cars) < size:
                return
            offset += size

    async def list_originals(self, *, page_size: int = 50) -> AsyncIterator[LegacyRecord]:
        async for page in self.iter_pages(linked=False, page_size=page_size):
            for record in page:
                yield record

    async def list_linked(self, *, page_size: int = 50) -> AsyncIterator[LegacyRecord]:
        async for page in self.iter_pages(linked=True, page_size=page_size):
            for record in page:
                yield record
