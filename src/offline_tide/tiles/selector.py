"""Resolve a coordinate to the tile that covers it."""
from __future__ import annotations

import logging
import math

from .models import TileManifest, TileMeta

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    return 2.0 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def select_tile(
    manifest: TileManifest,
    lat: float,
    lon: float,
    logger: logging.Logger | None = None,
) -> TileMeta | None:
    """
    Pick the tile for a coordinate.

    The first tile whose bbox contains the coordinate wins.  Otherwise the
    tile with the nearest centroid is returned.  ``None`` only when the
    manifest lists no tiles.
    """
    _log = logger or logging.getLogger(__name__)

    if not manifest.tiles:
        return None

    for meta in manifest.tiles:
        if meta.contains(lat, lon):
            _log.debug('(%.4f, %.4f) inside tile %s.', lat, lon, meta.tile_id)
            return meta

    nearest = min(
        manifest.tiles,
        key=lambda m: haversine_km(lat, lon, m.centroid.lat, m.centroid.lon),
    )
    _log.debug('(%.4f, %.4f) outside all tiles; nearest is %s.', lat, lon, nearest.tile_id)
    return nearest
