from sqlalchemy import Column, DateTime, String
from sqlalchemy.sql import func

from ..database import Base


class DeletedVinRow(Base):
    """被“删除原图”删掉的 VIN（墓碑）。

    旧库只读，记录删掉后旧库里仍有同一 VIN；有墓碑的 VIN 不再从旧库 / 本地目录兜底，
    迁移也不会把它搬回来。
    """

    __tablename__ = "deleted_vins"

    vin = Column(String(17), primary_key=True)
    deleted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
