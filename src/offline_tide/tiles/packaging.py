"""
Tile payload codec and packaging.

A tile blob is the zlib-compressed (level 9) UTF-8 JSON form of a
:class:`TilePayload`.  The checksum advertised in the manifest is the
SHA-256 hex digest of the *decompressed* JSON bytes, so it is independent
of the compressor version.

Packaging is the producer side: constituents (for example from
:func:`offline_tide.harmonics.calibration.fit_constituents`) are rendered
into canonical payload JSON (sorted keys, rounded values), compressed, and
listed in a manifest signed with the shared key.
"""
from __future__ import annotations

import hashlib
import json
import logging
import zlib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone

import numpy as np
from pydantic import ValidationError

from offline_tide.exceptions import MalformedPayload
from offline_tide.harmonics.calibration import compare_constituents
from offline_tide.harmonics.constituents import Constituent, ConstituentCatalog

from .manifest import UNSIGNED, canonical_body, parse_manifest, sign_manifest
from .models import TileMeta, TilePayload

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 9
AMPLITUDE_DECIMALS = 6
PHASE_DECIMALS = 4
SPEED_DECIMALS = 7
DEFAULT_EPHEMERIDES = 'de440'
MAX_PAYLOAD_BYTES = 32 * 1024 * 1024


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

def payload_checksum(raw: bytes) -> str:
    """SHA-256 hex digest of decompressed payload bytes."""
    return hashlib.sha256(raw).hexdigest()


def compress_payload(raw: bytes) -> bytes:
    return zlib.compress(raw, COMPRESSION_LEVEL)


def decompress_payload(blob: bytes, max_bytes: int = MAX_PAYLOAD_BYTES) -> bytes:
    """
    Inflate a tile blob, producing at most *max_bytes* of output.

    Raises
    ------
    MalformedPayload
        If *blob* is not a complete zlib stream or inflates past *max_bytes*.
    """
    inflater = zlib.decompressobj()
    try:
        raw = inflater.decompress(blob, max_bytes)
    except zlib.error as exc:
        raise MalformedPayload(f"Tile blob cannot be decompressed: {exc}") from exc
    if inflater.unconsumed_tail:
        raise MalformedPayload(f"Tile blob inflates past the {max_bytes} byte limit.")
    if not inflater.eof:
        raise MalformedPayload("Tile blob cannot be decompressed: truncated stream.")
    return raw


def decode_payload(blob: bytes) -> TilePayload:
    """Decompress and validate a tile blob into a :class:`TilePayload`."""
    raw = decompress_payload(blob)
    try:
        return TilePayload.model_validate_json(raw)
    except ValidationError as exc:
        raise MalformedPayload(f"Invalid tile payload: {exc}") from exc


def encode_payload(payload: TilePayload) -> bytes:
    """Canonical JSON bytes (sorted keys, no whitespace) of a payload."""
    body = payload.model_dump(mode='json', by_alias=True, exclude_none=True)
    return json.dumps(body, sort_keys=True, separators=(',', ':')).encode('utf-8')


# ---------------------------------------------------------------------------
# Packaging
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TilePackage:
    """A manifest entry together with the blob it describes."""

    meta: TileMeta
    compressed_payload: bytes


def create_tile_package(
    tile_id: str,
    bbox: Sequence[float],
    constituents: Sequence[Constituent],
    centroid: tuple[float, float] | None = None,
    model: str = 'harmonic',
    datum: str = 'MSL',
    timezone_hint: str = 'UTC',
    version: str = '1',
    updated_at: datetime | None = None,
    minor_rules: Iterable[dict] | None = None,
    local_calibration: Iterable[dict] | None = None,
    datum_transforms: Iterable[dict] | None = None,
    stats: dict | None = None,
    logger: logging.Logger | None = None,
) -> TilePackage:
    """
    Build the compressed blob and manifest entry for one tile.

    Parameters
    ----------
    tile_id : str
        Tile identifier.
    bbox : sequence of float
        ``[minLon, minLat, maxLon, maxLat]``.
    constituents : sequence of Constituent
        Harmonic constants for the tile.
    centroid : tuple of float, optional
        ``(lat, lon)``; defaults to the bbox centre.
    model, datum, timezone_hint, version : str, optional
        Manifest metadata.
    updated_at : datetime, optional
        Defaults to now (UTC).
    minor_rules, local_calibration, datum_transforms, stats : optional
        Extra payload blocks in their camelCase wire form.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.

    Returns
    -------
    TilePackage

    Raises
    ------
    MalformedPayload
        If the payload blocks do not validate.
    """
    _log = logger or logging.getLogger(__name__)

    document: dict = {
        'tileId': tile_id,
        'constituents': [
            {
                'name': c.code,
                'amplitude': round(float(c.amplitude_m), AMPLITUDE_DECIMALS),
                'phase': round(float(np.mod(c.phase_deg, 360.0)), PHASE_DECIMALS),
                'speedDegHr': round(float(c.speed_deg_hr), SPEED_DECIMALS),
            }
            for c in sorted(constituents, key=lambda c: c.code)
        ],
    }
    if minor_rules is not None:
        document['minorRules'] = list(minor_rules)
    if local_calibration is not None:
        document['localCalibration'] = list(local_calibration)
    if datum_transforms is not None:
        document['datumTransforms'] = list(datum_transforms)
    if stats is not None:
        document['stats'] = stats

    try:
        payload = TilePayload.model_validate(document)
    except ValidationError as exc:
        raise MalformedPayload(f"Invalid payload for tile {tile_id}: {exc}") from exc

    raw = encode_payload(payload)
    blob = compress_payload(raw)

    min_lon, min_lat, max_lon, max_lat = (float(v) for v in bbox)
    if centroid is None:
        centroid = ((min_lat + max_lat) / 2.0, (min_lon + max_lon) / 2.0)

    meta = TileMeta.model_validate({
        'tileId': tile_id,
        'model': model,
        'datum': datum,
        'bbox': [min_lon, min_lat, max_lon, max_lat],
        'centroid': {'lat': centroid[0], 'lon': centroid[1]},
        'timezoneHint': timezone_hint,
        'updatedAt': updated_at or datetime.now(timezone.utc),
        'version': version,
        'checksum': payload_checksum(raw),
        'compressedSizeBytes': len(blob),
    })

    _log.info(
        'Packaged tile %s: %d constituents, %d -> %d bytes.',
        tile_id, len(payload.constituents), len(raw), len(blob),
    )
    return TilePackage(meta=meta, compressed_payload=blob)


def build_manifest(
    packages: Sequence[TilePackage],
    version: str,
    key: bytes | str | None = None,
    issued_at: datetime | None = None,
    valid_until: datetime | None = None,
    ephemerides_ref: str = DEFAULT_EPHEMERIDES,
    logger: logging.Logger | None = None,
) -> dict:
    """
    Assemble a manifest document for *packages*.

    The manifest is signed with *key* when one is given; otherwise its
    signature is the ``"unsigned"`` placeholder, which only development and
    test environments accept.

    Returns
    -------
    dict
        JSON-ready manifest with camelCase keys.
    """
    _log = logger or logging.getLogger(__name__)

    document = {
        'version': version,
        'issuedAt': issued_at or datetime.now(timezone.utc),
        'ephemeridesRef': {'id': ephemerides_ref},
        'tiles': [p.meta.model_dump(mode='json', by_alias=True, exclude_none=True)
                  for p in packages],
        'signature': UNSIGNED,
    }
    if valid_until is not None:
        document['validUntil'] = valid_until

    manifest = parse_manifest(document)
    signature = sign_manifest(canonical_body(manifest), key) if key else UNSIGNED
    manifest = manifest.model_copy(update={'signature': signature})

    _log.info(
        'Built manifest %s with %d tiles (signed=%s).',
        version, len(packages), bool(key),
    )
    return manifest.model_dump(mode='json', by_alias=True, exclude_none=True)


def diff_tile_constituents(
    old: TilePayload,
    new: TilePayload,
    catalog: ConstituentCatalog | None = None,
    tolerance_m: float = 1e-4,
    logger: logging.Logger | None = None,
) -> dict:
    """
    Describe how constituents changed between two versions of a tile.

    Informational only; manifests and payloads are still replaced whole.

    Returns
    -------
    dict
        ``"added"``, ``"removed"``, ``"replaced"`` : lists of codes, and
        ``"table"`` : the :func:`compare_constituents` frame.  A code is
        replaced when its vector difference exceeds *tolerance_m*.
    """
    _log = logger or logging.getLogger(__name__)
    catalog = catalog or ConstituentCatalog()

    table = compare_constituents(
        old.resolve_constituents(catalog, _log),
        new.resolve_constituents(catalog, _log),
        logger=_log,
    )
    added = table.loc[table['Ref_Amp'].isna(), 'Constituent'].tolist()
    removed = table.loc[table['New_Amp'].isna(), 'Constituent'].tolist()
    replaced = table.loc[table['Vector_Diff'] > tolerance_m, 'Constituent'].tolist()

    _log.info(
        'Tile %s diff: %d added, %d removed, %d replaced.',
        new.tile_id, len(added), len(removed), len(replaced),
    )
    return {'added': added, 'removed': removed, 'replaced': replaced, 'table': table}
