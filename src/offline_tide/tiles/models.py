"""
Tile data model: manifest entries, decoded payloads and cache records.

Manifest and payload models are frozen pydantic models validated from the
camelCase JSON documents shipped to clients.  A few fields accept a legacy
name as well (``tzHint``, ``sizeCompressed``, ``ephemerides``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from offline_tide.harmonics.constituents import (
    Constituent,
    ConstituentCatalog,
    normalize_constituent_name,
)

logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel,
    )


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

class Centroid(WireModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class EphemeridesRef(WireModel):
    """Ephemerides release the tiles were generated against."""

    id: str = Field(min_length=1)
    delta_t_source: str | None = None
    leap_seconds_version: str | None = None


class TileMeta(WireModel):
    """One geographic tile listed in a manifest."""

    tile_id: str = Field(min_length=1)
    model: str = Field(min_length=1)
    datum: str = Field(min_length=1)
    bbox: tuple[float, float, float, float]
    centroid: Centroid
    timezone_hint: str = Field(
        min_length=1,
        validation_alias=AliasChoices('timezoneHint', 'tzHint', 'timezone_hint'),
        serialization_alias='timezoneHint',
    )
    updated_at: datetime
    version: str = Field(min_length=1)
    checksum: str = Field(pattern=r'^[a-fA-F0-9]{32,}$')
    compressed_size_bytes: int = Field(
        ge=0,
        validation_alias=AliasChoices(
            'compressedSizeBytes', 'sizeCompressed', 'compressed_size_bytes'),
        serialization_alias='compressedSizeBytes',
    )
    delta_available: bool | None = None

    @field_validator('bbox')
    @classmethod
    def _check_bbox(cls, bbox: tuple[float, float, float, float]):
        min_lon, min_lat, max_lon, max_lat = bbox
        for lon in (min_lon, max_lon):
            if not -180.0 <= lon <= 180.0:
                raise ValueError(f"bbox longitude {lon} out of range [-180, 180].")
        for lat in (min_lat, max_lat):
            if not -90.0 <= lat <= 90.0:
                raise ValueError(f"bbox latitude {lat} out of range [-90, 90].")
        if not (min_lon < max_lon and min_lat < max_lat):
            raise ValueError(f"bbox {list(bbox)} is degenerate or inverted.")
        return bbox

    def contains(self, lat: float, lon: float) -> bool:
        """True if the coordinate lies inside (or on the edge of) the bbox."""
        min_lon, min_lat, max_lon, max_lat = self.bbox
        return min_lat <= lat <= max_lat and min_lon <= lon <= max_lon


class TileManifest(WireModel):
    """Signed index of available tiles; replaced as a whole on update."""

    version: str = Field(min_length=1)
    issued_at: datetime
    valid_until: datetime | None = None
    ephemerides_ref: EphemeridesRef = Field(
        validation_alias=AliasChoices('ephemeridesRef', 'ephemerides', 'ephemerides_ref'),
        serialization_alias='ephemeridesRef',
    )
    tiles: tuple[TileMeta, ...]
    signature: str = Field(min_length=1)

    @field_validator('ephemerides_ref', mode='before')
    @classmethod
    def _ephemerides_from_string(cls, value):
        if isinstance(value, str):
            return {'id': value}
        return value

    def tile(self, tile_id: str) -> TileMeta | None:
        for meta in self.tiles:
            if meta.tile_id == tile_id:
                return meta
        return None


# ---------------------------------------------------------------------------
# Tile payload (decompressed blob)
# ---------------------------------------------------------------------------

class PayloadConstituent(WireModel):
    name: str = Field(min_length=1)
    amplitude: float
    phase: float
    speed_deg_hr: float | None = None


class MinorRule(WireModel):
    """Infer a minor constituent from one or more major references."""

    target: str = Field(min_length=1)
    formula: Literal['inference', 'ratio']
    coefficients: tuple[float, ...]
    references: tuple[str, ...]
    phase_offset_deg: float = 0.0


class LocalCalibration(WireModel):
    """Location-specific offsets merged into the base constituents."""

    location_id: str | None = None
    constituent: str | None = None
    height_offset_m: float | None = None
    phase_offset_deg: float | None = None
    amplitude_scale: float | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    source: str = 'unknown'


class DatumTransform(WireModel):
    from_datum: str = Field(validation_alias=AliasChoices('from', 'from_datum'),
                            serialization_alias='from')
    to_datum: str = Field(validation_alias=AliasChoices('to', 'to_datum'),
                          serialization_alias='to')
    offset_m: float
    uncertainty_m: float = 0.0


class ModelStats(WireModel):
    rmse_high: float | None = None
    rmse_low: float | None = None
    mae_high: float | None = None
    mae_low: float | None = None
    skill_score: float | None = None
    sample_span_days: float | None = None


class TilePayload(WireModel):
    """Decoded contents of one tile blob."""

    tile_id: str = Field(min_length=1)
    constituents: tuple[PayloadConstituent, ...] = ()
    minor_rules: tuple[MinorRule, ...] | None = None
    local_calibration: tuple[LocalCalibration, ...] | None = None
    datum_transforms: tuple[DatumTransform, ...] | None = None
    stats: ModelStats | None = None

    def resolve_constituents(
        self,
        catalog: ConstituentCatalog,
        logger: logging.Logger | None = None,
    ) -> list[Constituent]:
        """
        Convert payload entries into :class:`Constituent` objects.

        A missing ``speedDegHr`` is resolved from *catalog* by name; entries
        whose speed cannot be resolved are dropped with a warning.
        """
        _log = logger or logging.getLogger(__name__)

        resolved = []
        for entry in self.constituents:
            code = normalize_constituent_name(entry.name)
            speed = entry.speed_deg_hr
            if speed is None:
                speed = catalog.speed_for(code)
            if speed is None:
                _log.warning(
                    'Tile %s: constituent %s has no speed and is not in the '
                    'catalog; skipped.', self.tile_id, entry.name,
                )
                continue
            resolved.append(Constituent(
                code=code,
                amplitude_m=entry.amplitude,
                phase_deg=entry.phase,
                speed_deg_hr=speed,
            ))
        return resolved


# ---------------------------------------------------------------------------
# Cache record
# ---------------------------------------------------------------------------

@dataclass
class CachedTileRecord:
    """
    Persisted cache entry.

    ``checksum`` is the SHA-256 hex digest of the decompressed payload;
    ``last_accessed_at`` and ``access_count`` change on every read.
    """

    tile_id: str
    compressed_payload: bytes
    size_bytes: int
    checksum: str
    version: str
    downloaded_at: datetime
    last_accessed_at: datetime
    access_count: int = 0

    def __post_init__(self):
        self.downloaded_at = as_utc(self.downloaded_at)
        self.last_accessed_at = as_utc(self.last_accessed_at)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
