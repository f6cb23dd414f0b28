from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, Field


class Provenance(str, enum.Enum):
    """结果来自哪一层"""

    CACHE = "cache"
    CANONICAL = "canonical"
    LEGACY = "legacy"
    LOCAL = "local"


class StatusResponse(BaseModel):
    """VIN 状态查询结果

    说明：
    - images 形如 `/<vin>/<position>`，按 position 升序
    - unmanaged=True 表示只在本地目录里找到（没有权威时间戳，created_at/updated_at 为发现时刻的近似值）
    """

    success: bool = True
    found: bool = False
    images: list[str] = Field(default_factory=list)
    linked: bool | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    provenance: Provenance | None = None
    unmanaged: bool = False


class ChangesResponse(BaseModel):
    success: bool = True
    data: list[str] = Field(default_factory=list)


class ResolvedImage(BaseModel):
    data: bytes
    provenance: Provenance


class LinkResponse(BaseModel):
    success: bool = True
    vin: str
    origin_vin: str
    images: list[str] = Field(default_factory=list)


class DeleteResponse(BaseModel):
    success: bool = True
    vin: str
    deleted_objects: int = 0
