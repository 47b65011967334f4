"""
Key-value backends for the tile cache.

Backends only persist :class:`CachedTileRecord` objects keyed by tile id;
quota, eviction and checksum policy live in :class:`TileCache`.
"""
from __future__ import annotations

import abc
import logging
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from .models import CachedTileRecord

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tiles (
    tile_id           TEXT    PRIMARY KEY,
    payload           BLOB    NOT NULL,
    size_bytes        INTEGER NOT NULL,
    checksum          TEXT    NOT NULL,
    version           TEXT    NOT NULL,
    downloaded_at     TEXT    NOT NULL,
    last_accessed_at  TEXT    NOT NULL,
    access_count      INTEGER NOT NULL DEFAULT 0
);
"""

_COLUMNS = (
    'tile_id, payload, size_bytes, checksum, version, '
    'downloaded_at, last_accessed_at, access_count'
)


class TileStore(abc.ABC):
    """Persistence contract used by :class:`TileCache`."""

    @abc.abstractmethod
    def load(self, tile_id: str) -> CachedTileRecord | None:
        """Return the record for *tile_id*, or ``None``."""

    @abc.abstractmethod
    def save(self, record: CachedTileRecord) -> None:
        """Insert or replace a record."""

    @abc.abstractmethod
    def remove(self, tile_id: str) -> bool:
        """Delete a record; ``True`` if one existed."""

    @abc.abstractmethod
    def records(self) -> list[CachedTileRecord]:
        """All records, in no particular order."""

    @abc.abstractmethod
    def clear(self) -> None:
        """Delete every record."""

    def close(self) -> None:
        pass


class MemoryTileStore(TileStore):
    """In-process store, mainly for tests and short-lived tools."""

    def __init__(self):
        self._records: dict[str, CachedTileRecord] = {}
        self._lock = threading.Lock()

    def load(self, tile_id):
        with self._lock:
            return self._records.get(tile_id)

    def save(self, record):
        with self._lock:
            self._records[record.tile_id] = record

    def remove(self, tile_id):
        with self._lock:
            return self._records.pop(tile_id, None) is not None

    def records(self):
        with self._lock:
            return list(self._records.values())

    def clear(self):
        with self._lock:
            self._records.clear()


class SQLiteTileStore(TileStore):
    """
    Single-table SQLite store.

    Parameters
    ----------
    db_path : str or Path
        Database file, or ``":memory:"``.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.
    """

    def __init__(self, db_path: str | Path = ':memory:', logger: logging.Logger | None = None):
        self._log = logger or logging.getLogger(__name__)
        self.db_path = str(db_path)
        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # one connection shared across threads; every statement runs under _lock
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._lock = threading.Lock()
        with self._lock:
            if self.db_path != ':memory:':
                self._conn.execute('PRAGMA journal_mode=WAL')
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        self._log.debug('Opened tile store %s.', self.db_path)

    @staticmethod
    def _to_record(row: tuple) -> CachedTileRecord:
        return CachedTileRecord(
            tile_id=row[0],
            compressed_payload=bytes(row[1]),
            size_bytes=int(row[2]),
            checksum=row[3],
            version=row[4],
            downloaded_at=datetime.fromisoformat(row[5]),
            last_accessed_at=datetime.fromisoformat(row[6]),
            access_count=int(row[7]),
        )

    def load(self, tile_id):
        with self._lock:
            row = self._conn.execute(
                f'SELECT {_COLUMNS} FROM tiles WHERE tile_id = ?', (tile_id,),
            ).fetchone()
        return self._to_record(row) if row else None

    def save(self, record):
        with self._lock:
            self._conn.execute(
                f'INSERT OR REPLACE INTO tiles ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)',
                (
                    record.tile_id,
                    sqlite3.Binary(record.compressed_payload),
                    record.size_bytes,
                    record.checksum,
                    record.version,
                    record.downloaded_at.isoformat(),
                    record.last_accessed_at.isoformat(),
                    record.access_count,
                ),
            )
            self._conn.commit()

    def remove(self, tile_id):
        with self._lock:
            cursor = self._conn.execute('DELETE FROM tiles WHERE tile_id = ?', (tile_id,))
            self._conn.commit()
            return cursor.rowcount > 0

    def records(self):
        with self._lock:
            rows = self._conn.execute(f'SELECT {_COLUMNS} FROM tiles').fetchall()
        return [self._to_record(row) for row in rows]

    def clear(self):
        with self._lock:
            self._conn.execute('DELETE FROM tiles')
            self._conn.commit()

    def close(self):
        with self._lock:
            self._conn.close()
