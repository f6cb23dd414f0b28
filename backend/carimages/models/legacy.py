from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, LargeBinary, String, Text
from sqlalchemy.sql import func

from ..database import LegacyBase


class LegacyCar(LegacyBase):
    """旧库车辆文档（对应旧文档库的 cars 集合）。

    说明：旧库里同一 VIN 可能出现多条，读取时取最早写入的一条。
    """

    __tablename__ = "cars"

    id = Column(Integer, primary_key=True, index=True)
    vin = Column(String(17), nullable=False, index=True)
    linked = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())


class LegacyCarImage(LegacyBase):
    """车辆文档内嵌的 images 数组（positionIdentifier + imageId）。"""

    __tablename__ = "car_images"

    id = Column(Integer, primary_key=True, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False, index=True)
    position_identifier = Column(Integer, nullable=False)
    image_id = Column(String(24), nullable=False, index=True)


class LegacyImage(LegacyBase):
    """旧库图片文档（对应 images 集合，id 为 24 位十六进制文档 id）。"""

    __tablename__ = "images"

    id = Column(String(24), primary_key=True)
    image = Column(LargeBinary)
    tags = Column(Text)
    position_identifier = Column(Integer)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())
