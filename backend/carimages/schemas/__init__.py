from .vehicle import ImageEntry, LegacyImageRef, LegacyRecord, VehicleRecord, VehicleRecordPatch
from .status import (
    ChangesResponse,
    DeleteResponse,
    LinkResponse,
    Provenance,
    ResolvedImage,
    StatusResponse,
)

__all__ = [
    "ImageEntry",
    "LegacyImageRef",
    "LegacyRecord",
    "VehicleRecord",
    "VehicleRecordPatch",
    "ChangesResponse",
    "DeleteResponse",
    "LinkResponse",
    "Provenance",
    "ResolvedImage",
    "StatusResponse",
]
