"""
Checksum-verified tile cache with least-used / least-recently-used eviction.

Eviction runs after every ``put``: when the cache holds more than
``max_tiles`` records or more than ``max_bytes`` of compressed payload,
records are sorted ascending by ``(access_count, last_accessed_at)`` and
removed from the front until both limits hold.  The full sort on each write
is fine for a few hundred tiles.

Every read re-verifies the stored payload.  A record that no longer
decompresses, or whose decompressed bytes do not hash to its checksum, is
deleted and reported as a miss.

All operations run under one re-entrant lock, so the quota check and the
eviction it triggers are atomic with respect to other callers.
"""
from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from offline_tide.exceptions import ChecksumMismatch, MalformedPayload

from .models import CachedTileRecord, TileMeta, as_utc
from .packaging import decompress_payload, payload_checksum
from .storage import TileStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TILES = 200
DEFAULT_MAX_BYTES = 100 * 1024 * 1024


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheStats:
    count: int
    total_bytes: int
    oldest: datetime | None
    newest: datetime | None


def verify_record(record: CachedTileRecord) -> None:
    """
    Check a record's payload against its checksum.

    Raises
    ------
    ChecksumMismatch
        If the payload cannot be decompressed or hashes differently.
    """
    try:
        raw = decompress_payload(record.compressed_payload)
    except MalformedPayload:
        raise ChecksumMismatch(record.tile_id, record.checksum, None) from None
    actual = payload_checksum(raw)
    if actual.lower() != record.checksum.lower():
        raise ChecksumMismatch(record.tile_id, record.checksum, actual)


class TileCache:
    """
    Persistent tile cache.

    Parameters
    ----------
    store : TileStore
        Storage backend.
    max_tiles : int, optional
        Maximum number of records (default 200).
    max_bytes : int, optional
        Maximum total compressed size (default 100 MiB).
    clock : callable, optional
        Returns the current UTC time; injectable for tests.
    max_age_days : float, optional
        Age after which :meth:`purge_expired` drops a record.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.
    """

    def __init__(
        self,
        store: TileStore,
        max_tiles: int = DEFAULT_MAX_TILES,
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Callable[[], datetime] | None = None,
        max_age_days: float | None = None,
        logger: logging.Logger | None = None,
    ):
        if max_tiles < 0 or max_bytes < 0:
            raise ValueError('max_tiles and max_bytes must be non-negative.')
        self._store = store
        self.max_tiles = max_tiles
        self.max_bytes = max_bytes
        self.max_age_days = max_age_days
        self._clock = clock or _utc_now
        self._lock = threading.RLock()
        self._log = logger or logging.getLogger(__name__)

    @classmethod
    def from_settings(
        cls,
        settings,
        store: TileStore | None = None,
        logger: logging.Logger | None = None,
    ) -> TileCache:
        """Construct from :class:`offline_tide.utils.CacheSettings`."""
        from .storage import SQLiteTileStore

        return cls(
            store or SQLiteTileStore(settings.db_path, logger=logger),
            max_tiles=settings.max_tiles,
            max_bytes=settings.max_bytes,
            max_age_days=settings.max_age_days,
            logger=logger,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, record: CachedTileRecord) -> list[str]:
        """
        Store a verified record, then evict down to quota.

        Returns
        -------
        list of str
            Tile ids evicted by this call (may include the new record).

        Raises
        ------
        ChecksumMismatch
            If the record's payload does not match its checksum; nothing is
            written.
        """
        verify_record(record)
        with self._lock:
            self._store.save(record)
            self._log.info(
                'Cached tile %s v%s (%d bytes).',
                record.tile_id, record.version, record.size_bytes,
            )
            return self._evict()

    def put_package(self, meta: TileMeta, blob: bytes) -> list[str]:
        """Cache a downloaded blob described by a manifest entry."""
        if meta.compressed_size_bytes != len(blob):
            self._log.warning(
                'Tile %s: manifest size %d differs from blob size %d.',
                meta.tile_id, meta.compressed_size_bytes, len(blob),
            )
        now = self._clock()
        return self.put(CachedTileRecord(
            tile_id=meta.tile_id,
            compressed_payload=bytes(blob),
            size_bytes=len(blob),
            checksum=meta.checksum,
            version=meta.version,
            downloaded_at=now,
            last_accessed_at=now,
            access_count=0,
        ))

    def _evict(self) -> list[str]:
        records = self._store.records()
        count = len(records)
        total = sum(r.size_bytes for r in records)
        if count <= self.max_tiles and total <= self.max_bytes:
            return []

        records.sort(key=lambda r: (r.access_count, r.last_accessed_at))
        evicted = []
        for record in records:
            if count <= self.max_tiles and total <= self.max_bytes:
                break
            self._store.remove(record.tile_id)
            count -= 1
            total -= record.size_bytes
            evicted.append(record.tile_id)

        self._log.info(
            'Evicted %d tiles (%s); %d tiles, %d bytes remain.',
            len(evicted), ', '.join(evicted), count, total,
        )
        return evicted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, tile_id: str) -> CachedTileRecord | None:
        """
        Return a verified record and bump its access statistics.

        A corrupt record is deleted and ``None`` returned.
        """
        with self._lock:
            record = self._store.load(tile_id)
            if record is None:
                return None
            try:
                verify_record(record)
            except ChecksumMismatch as exc:
                self._log.warning('%s Deleting cached copy.', exc)
                self._store.remove(tile_id)
                return None

            record = dataclasses.replace(
                record,
                last_accessed_at=self._clock(),
                access_count=record.access_count + 1,
            )
            self._store.save(record)
            return record

    def __contains__(self, tile_id: str) -> bool:
        with self._lock:
            return self._store.load(tile_id) is not None

    def stats(self) -> CacheStats:
        with self._lock:
            records = self._store.records()
        if not records:
            return CacheStats(count=0, total_bytes=0, oldest=None, newest=None)
        downloaded = [r.downloaded_at for r in records]
        return CacheStats(
            count=len(records),
            total_bytes=sum(r.size_bytes for r in records),
            oldest=min(downloaded),
            newest=max(downloaded),
        )

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def delete(self, tile_id: str) -> bool:
        with self._lock:
            removed = self._store.remove(tile_id)
        if removed:
            self._log.info('Deleted tile %s from cache.', tile_id)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
        self._log.info('Tile cache cleared.')

    def purge_expired(self) -> list[str]:
        """Delete records downloaded more than ``max_age_days`` ago."""
        if self.max_age_days is None:
            return []
        cutoff = as_utc(self._clock()) - timedelta(days=self.max_age_days)
        with self._lock:
            expired = [r.tile_id for r in self._store.records() if r.downloaded_at < cutoff]
            for tile_id in expired:
                self._store.remove(tile_id)
        if expired:
            self._log.info('Purged %d expired tiles: %s.', len(expired), ', '.join(expired))
        return expired
