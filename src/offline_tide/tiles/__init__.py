"""
Tiles Subpackage

Provides functionality for:
- Manifest models, signature policy and whole-object replacement
- Coordinate to tile selection (bbox containment, nearest centroid)
- Payload codec and tile/manifest packaging
- Checksum-verified persistent cache with LRU eviction
"""

from offline_tide.tiles.cache import CacheStats, TileCache, verify_record
from offline_tide.tiles.manifest import (
    ManifestRegistry,
    ManifestValidator,
    canonical_body,
    is_expired,
    parse_manifest,
    sign_manifest,
    verify_manifest_signature,
)
from offline_tide.tiles.models import (
    CachedTileRecord,
    Centroid,
    DatumTransform,
    EphemeridesRef,
    LocalCalibration,
    MinorRule,
    ModelStats,
    TileManifest,
    TileMeta,
    TilePayload,
)
from offline_tide.tiles.packaging import (
    TilePackage,
    build_manifest,
    compress_payload,
    create_tile_package,
    decode_payload,
    decompress_payload,
    diff_tile_constituents,
    payload_checksum,
)
from offline_tide.tiles.selector import haversine_km, select_tile
from offline_tide.tiles.storage import MemoryTileStore, SQLiteTileStore, TileStore

__all__ = [
    # Models
    'CachedTileRecord',
    'Centroid',
    'DatumTransform',
    'EphemeridesRef',
    'LocalCalibration',
    'MinorRule',
    'ModelStats',
    'TileManifest',
    'TileMeta',
    'TilePayload',
    # Manifest
    'ManifestRegistry',
    'ManifestValidator',
    'canonical_body',
    'is_expired',
    'parse_manifest',
    'sign_manifest',
    'verify_manifest_signature',
    # Selector
    'haversine_km',
    'select_tile',
    # Packaging
    'TilePackage',
    'build_manifest',
    'compress_payload',
    'create_tile_package',
    'decode_payload',
    'decompress_payload',
    'diff_tile_constituents',
    'payload_checksum',
    # Storage and cache
    'CacheStats',
    'MemoryTileStore',
    'SQLiteTileStore',
    'TileCache',
    'TileStore',
    'verify_record',
]
