from .vehicle_record import VehicleRecordRow
from .cache_entry import CacheEntryRow
from .deleted_vin import DeletedVinRow
from .legacy import LegacyCar, LegacyCarImage, LegacyImage

__all__ = [
    "VehicleRecordRow",
    "CacheEntryRow",
    "DeletedVinRow",
    "LegacyCar",
    "LegacyCarImage",
    "LegacyImage",
]
