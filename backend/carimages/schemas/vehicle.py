from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ImageEntry(BaseModel):
    """单个位置的图片定位信息。

    - locator：对象存储 key（`<vin>/<position>.jpg`），由存储适配器解析
    - legacy_image_id：迁移来源的旧库图片 id（用于链接记录的交叉引用）
    - origin_vin：链接记录专用，指向真正持有二进制的原始 VIN
    """

    position: int
    locator: str
    legacy_image_id: str | None = None
    origin_vin: str | None = None


class VehicleRecord(BaseModel):
    """规范库中的一条车辆记录"""

    vin: str
    images: list[ImageEntry] = Field(default_factory=list)
    linked: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def entry_for(self, position: int) -> ImageEntry | None:
        for entry in self.images:
            if entry.position == position:
                return entry
        return None

    def positions(self) -> list[int]:
        return sorted(e.position for e in self.images)

    def origin_vin(self) -> str | None:
        if not self.linked:
            return None
        for entry in self.images:
            if entry.origin_vin:
                return entry.origin_vin
        return None


class VehicleRecordPatch(BaseModel):
    """部分更新：只替换/新增 images 中列出的位置，其余位置保持不变。"""

    images: list[ImageEntry] = Field(default_factory=list)
    remove_positions: list[int] = Field(default_factory=list)
    linked: bool | None = None


class LegacyImageRef(BaseModel):
    position: int
    image_id: str


class LegacyRecord(BaseModel):
    """旧库车辆文档（只读）"""

    vin: str
    images: list[LegacyImageRef] = Field(default_factory=list)
    linked: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def image_for(self, position: int) -> LegacyImageRef | None:
        for ref in self.images:
            if ref.position == position:
                return ref
        return None
