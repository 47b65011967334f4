"""
Error taxonomy for the offline tide core.

Structural and integrity failures are raised as typed errors so callers can
decide whether to retry a download, keep a previous manifest, or abort.
Degraded numeric results are never errors; they are reported through the
``flags`` and ``source`` fields of a prediction result.
"""
from __future__ import annotations


class OfflineTideError(Exception):
    """Base class for all errors raised by :mod:`offline_tide`."""


class MalformedManifest(OfflineTideError, ValueError):
    """A manifest failed schema or signature validation."""


class MalformedPayload(OfflineTideError, ValueError):
    """A tile blob could not be decompressed or parsed."""


class TileNotCached(OfflineTideError, LookupError):
    """The requested tile is absent from the local cache."""

    def __init__(self, tile_id: str):
        super().__init__(f"Tile {tile_id} not found in offline cache.")
        self.tile_id = tile_id


class ChecksumMismatch(OfflineTideError, ValueError):
    """Payload bytes do not hash to the advertised checksum."""

    def __init__(self, tile_id: str, expected: str, actual: str | None):
        super().__init__(
            f"Checksum mismatch for tile {tile_id}: expected {expected}, "
            f"got {actual}."
        )
        self.tile_id = tile_id
        self.expected = expected
        self.actual = actual


class InvalidRequestRange(OfflineTideError, ValueError):
    """Non-finite or inverted time range, or a non-positive step."""


class EngineUnavailable(OfflineTideError, RuntimeError):
    """A prediction engine cannot serve the current request."""
