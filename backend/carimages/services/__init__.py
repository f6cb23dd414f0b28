from .cache import CacheFacade, CacheKeys, CacheTTL, LocalCacheTier, SqlCacheTier
from .vehicle_store import VehicleRecordStore
from .legacy_store import LegacyStore
from .object_storage import FileSystemObjectStorage, ObjectStorage, S3ObjectStorage, canonical_key
from .local_fallback import LocalFallbackStore
from .image_transform import Brand, BrandRegistry, ImageTransformer
from .linked_resolver import LinkedEntityResolver, MigrationCrossReference
from .migration import MigrationEngine, MigrationOutcome, MigrationReport
from .background import MigrationTaskRunner
from .resolution import ResolutionChain
from .links import VehicleLinkService

__all__ = [
    "CacheFacade",
    "CacheKeys",
    "CacheTTL",
    "LocalCacheTier",
    "SqlCacheTier",
    "VehicleRecordStore",
    "LegacyStore",
    "ObjectStorage",
    "FileSystemObjectStorage",
    "S3ObjectStorage",
    "canonical_key",
    "LocalFallbackStore",
    "Brand",
    "BrandRegistry",
    "ImageTransformer",
    "LinkedEntityResolver",
    "MigrationCrossReference",
    "MigrationEngine",
    "MigrationOutcome",
    "MigrationReport",
    "MigrationTaskRunner",
    "ResolutionChain",
    "VehicleLinkService",
]
