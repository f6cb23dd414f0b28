"""规范库车辆记录仓储（VIN -> 图片定位符、链接标记、时间戳）"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import DeletedVinRow, VehicleRecordRow
from ..schemas import ImageEntry, VehicleRecord, VehicleRecordPatch
from ..utils.errors import AlreadyExistsError, NotFoundError
from ..utils.identifiers import to_utc, utcnow

logger = logging.getLogger(__name__)


def _dump_images(entries: list[ImageEntry]) -> list[dict[str, Any]]:
    ordered = sorted(entries, key=lambda e: e.position)
    return [e.model_dump() for e in ordered]


def _origin_of(entries: list[ImageEntry], linked: bool) -> str | None:
    if not linked:
        return None
    for entry in entries:
        if entry.origin_vin:
            return entry.origin_vin
    return None


def _to_record(row: VehicleRecordRow) -> VehicleRecord:
    raw_images = row.images if isinstance(row.images, list) else []
    images = [ImageEntry.model_validate(item) for item in raw_images if isinstance(item, dict)]
    images.sort(key=lambda e: e.position)
    return VehicleRecord(
        vin=row.vin,
        images=images,
        linked=bool(row.linked),
        created_at=to_utc(row.created_at),
        updated_at=to_utc(row.updated_at),
    )


class VehicleRecordStore:
    """基于 SQLAlchemy 的规范库仓储；每个操作独立会话、独立提交。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_by_vin(self, vin: str) -> VehicleRecord | None:
        async with self._session_factory() as session:
            row = await session.get(VehicleRecordRow, vin)
            return _to_record(row) if row is not None else None

    async def create(self, record: VehicleRecord) -> VehicleRecord:
        """新建记录；VIN 已存在时抛 AlreadyExistsError（包括并发插入撞主键）。"""
        now = utcnow()
        created_at = to_utc(record.created_at) or now
        updated_at = to_utc(record.updated_at) or now
        if updated_at < created_at:
            updated_at = created_at

        async with self._session_factory() as session:
            existing = await session.get(VehicleRecordRow, record.vin)
            if existing is not None:
                raise AlreadyExistsError(record.vin)

            row = VehicleRecordRow(
                vin=record.vin,
                images=_dump_images(record.images),
                linked=bool(record.linked),
                origin_vin=_origin_of(record.images, bool(record.linked)),
                created_at=created_at,
                updated_at=updated_at,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise AlreadyExistsError(record.vin) from e
            return _to_record(row)

    async def update(self, vin: str, patch: VehicleRecordPatch) -> VehicleRecord:
        """按位置合并更新；updated_at 无条件刷新（且保证不回退）。"""
        async with self._session_factory() as session:
            row = await session.get(VehicleRecordRow, vin)
            if row is None:
                raise NotFoundError(f"No cardata found for {vin}")

            current = _to_record(row)
            by_position = {e.position: e for e in current.images}
            for entry in patch.images:
                by_position[entry.position] = entry
            for position in patch.remove_positions:
                by_position.pop(position, None)

            linked = current.linked if patch.linked is None else bool(patch.linked)
            entries = list(by_position.values())

            now = utcnow()
            previous = current.updated_at
            updated_at = now if previous is None or now >= previous else previous

            # JSON 列需要整体赋新值才会被识别为变更
            row.images = _dump_images(entries)
            row.linked = linked
            row.origin_vin = _origin_of(entries, linked)
            row.updated_at = updated_at
            await session.commit()
            return _to_record(row)

    async def delete(self, vin: str, *, tombstone: bool = False) -> bool:
        """删除记录；tombstone=True 时在同一事务里写墓碑（删除原图用）。"""
        async with self._session_factory() as session:
            result = await session.execute(delete(VehicleRecordRow).where(VehicleRecordRow.vin == vin))
            if tombstone and await session.get(DeletedVinRow, vin) is None:
                session.add(DeletedVinRow(vin=vin, deleted_at=utcnow()))
            await session.commit()
            return bool(result.rowcount)

    async def is_deleted(self, vin: str) -> bool:
        async with self._session_factory() as session:
            return await session.get(DeletedVinRow, vin) is not None

    async def find_updated_since(self, timestamp: datetime) -> list[str]:
        """created_at 或 updated_at 任一落在 cutoff 及之后即视为“有变化”，按 VIN 去重。"""
        cutoff = to_utc(timestamp)
        async with self._session_factory() as session:
            result = await session.execute(
                select(VehicleRecordRow.vin)
                .where(
                    or_(
                        VehicleRecordRow.created_at >= cutoff,
                        VehicleRecordRow.updated_at >= cutoff,
                    )
                )
                .distinct()
                .order_by(VehicleRecordRow.vin)
            )
            return [vin for vin in result.scalars().all()]

    async def find_linked_to(self, origin_vin: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(VehicleRecordRow.vin)
                .where(
                    VehicleRecordRow.linked.is_(True),
                    VehicleRecordRow.origin_vin == origin_vin,
                )
                .order_by(VehicleRecordRow.vin)
            )
            return list(result.scalars().all())
