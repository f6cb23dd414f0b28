from sqlalchemy import JSON, Boolean, Column, DateTime, String
from sqlalchemy.sql import func

from ..database import Base


class VehicleRecordRow(Base):
    """规范库车辆记录表（VIN -> 图片定位符）

    说明：
    - images 为 JSON 列表：[{position, locator, legacy_image_id, origin_vin}]，按 position 升序。
    - linked=True 的记录不持有二进制；origin_vin 冗余一份原始 VIN，便于按原始记录反查所有链接。
    - updated_at 由应用层写入（保证单调不减），不依赖 onupdate。
    """

    __tablename__ = "vehicle_records"

    vin = Column(String(17), primary_key=True)
    images = Column(JSON, nullable=False, default=list)
    linked = Column(Boolean, nullable=False, default=False, index=True)
    origin_vin = Column(String(17), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
