"""
Unit tests for the tiles subpackage.

Tests cover:
- Manifest schema validation, signing and environment policy
- Manifest registry whole-object replacement
- Tile selection by bbox containment and nearest centroid
- Payload codec and tile/manifest packaging
- Storage backends and the checksum-verified LRU cache
"""
import dataclasses
import json
import threading
import zlib
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

KEY = b'test-signing-key'
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)

# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


class FakeClock:
    """Deterministic UTC clock advanced by the test."""

    def __init__(self, start=T0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def _constituents(scale=1.0):
    from offline_tide.harmonics.constituents import ConstituentCatalog
    return [
        dataclasses.replace(c, amplitude_m=c.amplitude_m * scale)
        for c in ConstituentCatalog().default_constituents('gulf_of_thailand')
    ]


def _package(tile_id='gulf-01', bbox=(100.0, 12.0, 101.5, 13.5), **kwargs):
    from offline_tide.tiles.packaging import create_tile_package
    kwargs.setdefault('updated_at', T0)
    return create_tile_package(tile_id, bbox, kwargs.pop('constituents', _constituents()),
                               **kwargs)


def _two_tile_manifest(key=KEY):
    from offline_tide.tiles.packaging import build_manifest
    packages = [
        _package('gulf-01', (100.0, 12.0, 101.5, 13.5)),
        _package('andaman-01', (97.5, 7.0, 98.5, 8.5)),
    ]
    return build_manifest(packages, '2024.01', key=key, issued_at=T0)


def _record(tile_id, size_hint=100, access_count=0, accessed=T0, downloaded=T0, raw=None):
    from offline_tide.tiles.models import CachedTileRecord
    from offline_tide.tiles.packaging import compress_payload, payload_checksum
    raw = raw if raw is not None else json.dumps({'tileId': tile_id, 'pad': 'x' * size_hint}).encode()
    blob = compress_payload(raw)
    return CachedTileRecord(
        tile_id=tile_id,
        compressed_payload=blob,
        size_bytes=len(blob),
        checksum=payload_checksum(raw),
        version='1',
        downloaded_at=downloaded,
        last_accessed_at=accessed,
        access_count=access_count,
    )


# -----------------------------------------------------------------------
# Manifest tests
# -----------------------------------------------------------------------

class TestManifest:
    """Tests for models.py and manifest.py."""

    def test_parse_built_manifest(self):
        """A packaged manifest parses into a frozen model."""
        from offline_tide.tiles.manifest import parse_manifest
        manifest = parse_manifest(_two_tile_manifest())
        assert manifest.version == '2024.01'
        assert [t.tile_id for t in manifest.tiles] == ['gulf-01', 'andaman-01']
        assert manifest.ephemerides_ref.id == 'de440'
        with pytest.raises(Exception):
            manifest.version = 'other'

    def test_parse_json_text(self):
        """JSON text and bytes are accepted."""
        from offline_tide.tiles.manifest import parse_manifest
        text = json.dumps(_two_tile_manifest())
        assert parse_manifest(text) == parse_manifest(text.encode())

    def test_legacy_aliases(self):
        """tzHint, sizeCompressed and a string ephemerides are accepted."""
        from offline_tide.tiles.manifest import parse_manifest
        raw = _two_tile_manifest()
        tile = raw['tiles'][0]
        tile['tzHint'] = tile.pop('timezoneHint')
        tile['sizeCompressed'] = tile.pop('compressedSizeBytes')
        raw['ephemerides'] = raw.pop('ephemeridesRef')['id']
        manifest = parse_manifest(raw)
        assert manifest.tiles[0].timezone_hint == 'UTC'
        assert manifest.ephemerides_ref.id == 'de440'

    @pytest.mark.parametrize('mutate', [
        lambda m: m.pop('version'),
        lambda m: m['tiles'][0].pop('checksum'),
        lambda m: m['tiles'][0]['centroid'].update(lat=95.0),
        lambda m: m['tiles'][0]['centroid'].update(lon=-181.0),
        lambda m: m['tiles'][0].update(bbox=[101.0, 12.0, 100.0, 13.0]),
        lambda m: m['tiles'][0].update(bbox=[100.0, 12.0, 200.0, 13.0]),
        lambda m: m['tiles'][0].update(checksum='abc123'),
        lambda m: m['tiles'][0].update(checksum='z' * 64),
        lambda m: m['tiles'][0].update(checksum=''),
        lambda m: m.update(signature=''),
    ])
    def test_malformed(self, mutate):
        """Missing or out-of-range fields raise MalformedManifest."""
        from offline_tide.exceptions import MalformedManifest
        from offline_tide.tiles.manifest import parse_manifest
        raw = _two_tile_manifest()
        mutate(raw)
        with pytest.raises(MalformedManifest):
            parse_manifest(raw)

    def test_invalid_json(self):
        """Text that is not JSON is malformed."""
        from offline_tide.exceptions import MalformedManifest
        from offline_tide.tiles.manifest import parse_manifest
        with pytest.raises(MalformedManifest):
            parse_manifest('{not json')

    def test_signature_round_trip(self):
        """A manifest signed with a key verifies with that key only."""
        from offline_tide.tiles.manifest import parse_manifest, verify_manifest_signature
        manifest = parse_manifest(_two_tile_manifest())
        assert verify_manifest_signature(manifest, KEY)
        assert not verify_manifest_signature(manifest, b'other-key')
        assert not verify_manifest_signature(manifest, None)

    def test_tampered_manifest_fails(self):
        """Changing any signed field invalidates the signature."""
        from offline_tide.tiles.manifest import parse_manifest, verify_manifest_signature
        raw = _two_tile_manifest()
        raw['tiles'][1]['version'] = '2'
        assert not verify_manifest_signature(parse_manifest(raw), KEY)

    def test_canonical_body_ignores_key_order(self):
        """The signed body is independent of the input key order."""
        from offline_tide.tiles.manifest import canonical_body, parse_manifest
        raw = _two_tile_manifest()
        reordered = dict(reversed(list(raw.items())))
        assert canonical_body(parse_manifest(raw)) == canonical_body(parse_manifest(reordered))
        assert b'signature' not in canonical_body(parse_manifest(raw))

    def test_production_rejects_unsigned(self):
        """Production refuses unsigned manifests."""
        from offline_tide.exceptions import MalformedManifest
        from offline_tide.tiles.manifest import ManifestValidator
        validator = ManifestValidator(KEY, 'production')
        with pytest.raises(MalformedManifest, match='signature'):
            validator.load(_two_tile_manifest(key=None))

    def test_production_accepts_signed(self):
        """Production accepts a correctly signed manifest."""
        from offline_tide.tiles.manifest import ManifestValidator
        loaded = ManifestValidator(KEY, 'production').load(_two_tile_manifest())
        assert loaded.verified

    def test_development_accepts_unverified(self, caplog):
        """Development accepts unsigned manifests, flagged and logged."""
        from offline_tide.tiles.manifest import ManifestValidator
        loaded = ManifestValidator(None, 'development').load(_two_tile_manifest(key=None))
        assert not loaded.verified
        assert 'unverified' in caplog.text

    def test_unknown_environment(self):
        """Only known environments are accepted."""
        from offline_tide.tiles.manifest import ManifestValidator
        with pytest.raises(ValueError, match='Unknown environment'):
            ManifestValidator(KEY, 'staging')

    def test_registry_keeps_previous(self):
        """A rejected replacement leaves the previous manifest active."""
        from offline_tide.exceptions import MalformedManifest
        from offline_tide.tiles.manifest import ManifestRegistry, ManifestValidator
        registry = ManifestRegistry(ManifestValidator(KEY, 'production'))
        assert registry.active is None
        first = registry.replace(_two_tile_manifest())
        with pytest.raises(MalformedManifest):
            registry.replace(_two_tile_manifest(key=None))
        assert registry.active == first
        assert registry.verified

    def test_is_expired(self):
        """validUntil in the past marks the manifest expired."""
        from offline_tide.tiles.manifest import is_expired, parse_manifest
        raw = _two_tile_manifest()
        assert not is_expired(parse_manifest(raw))
        raw['validUntil'] = '2024-02-01T00:00:00Z'
        manifest = parse_manifest(raw)
        assert not is_expired(manifest, T0)
        assert is_expired(manifest, datetime(2024, 3, 1, tzinfo=timezone.utc))


# -----------------------------------------------------------------------
# Selector tests
# -----------------------------------------------------------------------

class TestSelector:
    """Tests for selector.py."""

    def test_haversine_one_degree(self):
        """One degree of latitude is about 111.2 km."""
        from offline_tide.tiles.selector import haversine_km
        assert haversine_km(0.0, 100.0, 1.0, 100.0) == pytest.approx(111.19, abs=0.01)
        assert haversine_km(10.0, 100.0, 10.0, 100.0) == 0.0

    def test_containment_beats_centroid(self):
        """A coordinate inside a bbox resolves to that tile even if another centroid is closer."""
        from offline_tide.tiles.manifest import parse_manifest
        from offline_tide.tiles.packaging import build_manifest
        from offline_tide.tiles.selector import select_tile
        packages = [
            _package('near-centroid', (99.0, 9.0, 99.5, 9.5)),
            _package('big', (99.6, 9.0, 104.0, 14.0), centroid=(13.9, 103.9)),
        ]
        manifest = parse_manifest(build_manifest(packages, '1', key=KEY, issued_at=T0))
        assert select_tile(manifest, 9.3, 99.7).tile_id == 'big'

    def test_edge_counts_as_inside(self):
        """Points on the bbox edge are inside."""
        from offline_tide.tiles.manifest import parse_manifest
        from offline_tide.tiles.selector import select_tile
        manifest = parse_manifest(_two_tile_manifest())
        assert select_tile(manifest, 12.0, 100.0).tile_id == 'gulf-01'

    def test_nearest_centroid_outside_all(self):
        """Outside every bbox the nearest centroid wins."""
        from offline_tide.tiles.manifest import parse_manifest
        from offline_tide.tiles.selector import select_tile
        manifest = parse_manifest(_two_tile_manifest())
        assert select_tile(manifest, 11.0, 101.0).tile_id == 'gulf-01'
        assert select_tile(manifest, 6.0, 97.0).tile_id == 'andaman-01'

    def test_empty_manifest(self):
        """A manifest with no tiles selects nothing."""
        from offline_tide.tiles.manifest import parse_manifest
        from offline_tide.tiles.packaging import build_manifest
        from offline_tide.tiles.selector import select_tile
        manifest = parse_manifest(build_manifest([], '1', key=KEY, issued_at=T0))
        assert select_tile(manifest, 10.0, 100.0) is None


# -----------------------------------------------------------------------
# Packaging tests
# -----------------------------------------------------------------------

class TestPackaging:
    """Tests for packaging.py and TilePayload."""

    def test_checksum_is_over_decompressed_bytes(self):
        """The manifest checksum hashes the decompressed payload."""
        from offline_tide.tiles.packaging import decompress_payload, payload_checksum
        package = _package()
        raw = decompress_payload(package.compressed_payload)
        assert package.meta.checksum == payload_checksum(raw)
        assert package.meta.compressed_size_bytes == len(package.compressed_payload)

    def test_decode_payload(self):
        """A packaged blob decodes back into its constituents."""
        from offline_tide.harmonics.constituents import ConstituentCatalog
        from offline_tide.tiles.packaging import decode_payload
        payload = decode_payload(_package().compressed_payload)
        assert payload.tile_id == 'gulf-01'
        resolved = {c.code: c for c in payload.resolve_constituents(ConstituentCatalog())}
        assert resolved['M2'].amplitude_m == pytest.approx(0.42)
        assert resolved['K1'].phase_deg == pytest.approx(118.0)

    def test_deterministic_payload(self):
        """Identical inputs produce identical blobs and checksums."""
        first = _package(updated_at=T0)
        second = _package(updated_at=T0 + timedelta(days=3))
        assert first.compressed_payload == second.compressed_payload
        assert first.meta.checksum == second.meta.checksum

    def test_default_centroid(self):
        """The centroid defaults to the bbox centre."""
        meta = _package(bbox=(100.0, 12.0, 102.0, 14.0)).meta
        assert (meta.centroid.lat, meta.centroid.lon) == (13.0, 101.0)

    def test_corrupt_blob(self):
        """Bytes that are not zlib raise MalformedPayload."""
        from offline_tide.exceptions import MalformedPayload
        from offline_tide.tiles.packaging import decode_payload
        with pytest.raises(MalformedPayload):
            decode_payload(b'not a zlib stream')

    def test_decompression_is_bounded(self):
        """Blobs inflating past the limit raise MalformedPayload."""
        from offline_tide.exceptions import MalformedPayload
        from offline_tide.tiles.packaging import decompress_payload
        raw = b'\x00' * (1 << 20)
        blob = zlib.compress(raw, 9)
        with pytest.raises(MalformedPayload):
            decompress_payload(blob, max_bytes=1000)
        assert decompress_payload(blob, max_bytes=len(raw)) == raw

    def test_truncated_blob(self):
        """A cut-off zlib stream raises MalformedPayload."""
        from offline_tide.exceptions import MalformedPayload
        from offline_tide.tiles.packaging import compress_payload, decompress_payload
        blob = compress_payload(b'{"tileId": "a"}' * 50)
        with pytest.raises(MalformedPayload):
            decompress_payload(blob[:len(blob) // 2])

    def test_invalid_payload_json(self):
        """A payload without tileId raises MalformedPayload."""
        from offline_tide.exceptions import MalformedPayload
        from offline_tide.tiles.packaging import decode_payload
        with pytest.raises(MalformedPayload):
            decode_payload(zlib.compress(b'{"constituents": []}'))

    def test_missing_speed_resolved_from_catalog(self):
        """speedDegHr is optional and resolved by name."""
        from offline_tide.harmonics.constituents import ConstituentCatalog
        from offline_tide.tiles.models import TilePayload
        payload = TilePayload.model_validate({
            'tileId': 't',
            'constituents': [
                {'name': 'm2', 'amplitude': 0.3, 'phase': 10.0},
                {'name': 'K1', 'amplitude': 0.2, 'phase': 20.0, 'speedDegHr': 15.0},
                {'name': 'XYZ9', 'amplitude': 0.1, 'phase': 0.0},
            ],
        })
        resolved = payload.resolve_constituents(ConstituentCatalog())
        assert [c.code for c in resolved] == ['M2', 'K1']
        assert resolved[0].speed_deg_hr == pytest.approx(28.9841042)
        assert resolved[1].speed_deg_hr == 15.0

    def test_optional_blocks(self):
        """Minor rules, calibration, transforms and stats survive packaging."""
        from offline_tide.tiles.packaging import decode_payload
        package = _package(
            minor_rules=[{'target': 'K2', 'formula': 'ratio', 'coefficients': [0.27],
                          'references': ['S2']}],
            local_calibration=[{'locationId': 'pier', 'heightOffsetM': 0.05}],
            datum_transforms=[{'from': 'MSL', 'to': 'LAT', 'offsetM': 1.1, 'uncertaintyM': 0.02}],
            stats={'rmseHigh': 0.08, 'rmseLow': 0.06},
        )
        payload = decode_payload(package.compressed_payload)
        assert payload.minor_rules[0].target == 'K2'
        assert payload.local_calibration[0].height_offset_m == 0.05
        assert payload.datum_transforms[0].from_datum == 'MSL'
        assert payload.stats.rmse_high == 0.08

    def test_invalid_block_rejected(self):
        """An unknown minor-rule formula is rejected at packaging time."""
        from offline_tide.exceptions import MalformedPayload
        with pytest.raises(MalformedPayload):
            _package(minor_rules=[{'target': 'K2', 'formula': 'magic',
                                   'coefficients': [1.0], 'references': ['S2']}])

    def test_diff_tile_constituents(self):
        """Version diffs report added, removed and replaced codes."""
        from offline_tide.harmonics.constituents import ConstituentCatalog
        from offline_tide.tiles.packaging import decode_payload, diff_tile_constituents
        catalog = ConstituentCatalog()
        old = _constituents()
        new = [c for c in old if c.code != 'Q1']
        new = [dataclasses.replace(c, amplitude_m=0.5) if c.code == 'M2' else c for c in new]
        new.append(dataclasses.replace(old[0], code='L2', speed_deg_hr=catalog.speed_for('L2')))
        diff = diff_tile_constituents(
            decode_payload(_package(constituents=old).compressed_payload),
            decode_payload(_package(constituents=new).compressed_payload),
        )
        assert diff['added'] == ['L2']
        assert diff['removed'] == ['Q1']
        assert diff['replaced'] == ['M2']


# -----------------------------------------------------------------------
# Storage tests
# -----------------------------------------------------------------------

@pytest.fixture(params=['memory', 'sqlite'])
def store(request, tmp_path):
    from offline_tide.tiles.storage import MemoryTileStore, SQLiteTileStore
    if request.param == 'memory':
        backend = MemoryTileStore()
    else:
        backend = SQLiteTileStore(tmp_path / 'cache' / 'tiles.sqlite')
    yield backend
    backend.close()


class TestStorage:
    """Tests for storage.py."""

    def test_round_trip(self, store):
        """Saved records load back unchanged."""
        record = _record('a', access_count=3)
        store.save(record)
        assert store.load('a') == record
        assert store.load('missing') is None

    def test_replace_and_remove(self, store):
        """Saving the same id replaces it; remove reports existence."""
        store.save(_record('a'))
        store.save(_record('a', access_count=7))
        assert len(store.records()) == 1
        assert store.load('a').access_count == 7
        assert store.remove('a')
        assert not store.remove('a')

    def test_clear(self, store):
        """clear() empties the store."""
        for tile_id in 'abc':
            store.save(_record(tile_id))
        store.clear()
        assert store.records() == []

    def test_sqlite_persists(self, tmp_path):
        """Records survive reopening the database file."""
        from offline_tide.tiles.storage import SQLiteTileStore
        path = tmp_path / 'tiles.sqlite'
        first = SQLiteTileStore(path)
        first.save(_record('a'))
        first.close()
        second = SQLiteTileStore(path)
        assert second.load('a').tile_id == 'a'
        second.close()


# -----------------------------------------------------------------------
# Cache tests
# -----------------------------------------------------------------------

class TestTileCache:
    """Tests for cache.py."""

    def test_get_updates_access(self, store):
        """Reads bump access_count and last_accessed_at."""
        from offline_tide.tiles.cache import TileCache
        clock = FakeClock()
        cache = TileCache(store, clock=clock)
        cache.put(_record('a'))
        clock.advance(minutes=5)
        record = cache.get('a')
        assert record.access_count == 1
        assert record.last_accessed_at == clock.now
        assert cache.get('a').access_count == 2
        assert cache.get('missing') is None

    def test_put_rejects_bad_checksum(self, store):
        """An unverifiable record is never stored."""
        from offline_tide.exceptions import ChecksumMismatch
        from offline_tide.tiles.cache import TileCache
        cache = TileCache(store)
        bad = dataclasses.replace(_record('a'), checksum='0' * 64)
        with pytest.raises(ChecksumMismatch) as excinfo:
            cache.put(bad)
        assert excinfo.value.tile_id == 'a'
        assert 'a' not in cache

    def test_put_package(self, store):
        """A downloaded blob is cached with its manifest metadata."""
        from offline_tide.tiles.cache import TileCache
        clock = FakeClock()
        cache = TileCache(store, clock=clock)
        package = _package()
        cache.put_package(package.meta, package.compressed_payload)
        record = cache.get('gulf-01')
        assert record.checksum == package.meta.checksum
        assert record.downloaded_at == T0

    def test_quota_invariant(self, store):
        """After every put, count and bytes are within limits."""
        import random
        from offline_tide.tiles.cache import TileCache
        rng = random.Random(42)
        clock = FakeClock()
        cache = TileCache(store, max_tiles=5, max_bytes=2000, clock=clock)
        for i in range(40):
            clock.advance(seconds=1)
            raw = bytes(rng.getrandbits(8) for _ in range(rng.randint(10, 700)))
            cache.put(_record(f't{i}', raw=raw, access_count=rng.randint(0, 5),
                              accessed=clock.now))
            if rng.random() < 0.3:
                cache.get(f't{rng.randint(0, i)}')
            stats = cache.stats()
            assert stats.count <= 5
            assert stats.total_bytes <= 2000

    def test_lru_prefers_evicting_less_used(self, store):
        """B (1 access, older) is evicted before A (5 accesses)."""
        from offline_tide.tiles.cache import TileCache
        cache = TileCache(store, max_tiles=2, clock=FakeClock(T0 + timedelta(hours=1)))
        cache.put(_record('A', access_count=5, accessed=T0 + timedelta(minutes=30)))
        cache.put(_record('B', access_count=1, accessed=T0))
        evicted = cache.put(_record('C', access_count=3, accessed=T0 + timedelta(minutes=45)))
        assert evicted == ['B']
        assert 'A' in cache and 'C' in cache and 'B' not in cache

    def test_lru_ties_broken_by_recency(self, store):
        """With equal counts the least recently accessed goes first."""
        from offline_tide.tiles.cache import TileCache
        cache = TileCache(store, max_tiles=2)
        cache.put(_record('old', access_count=2, accessed=T0))
        cache.put(_record('new', access_count=2, accessed=T0 + timedelta(days=1)))
        cache.put(_record('newest', access_count=2, accessed=T0 + timedelta(days=2)))
        assert 'old' not in cache
        assert 'new' in cache and 'newest' in cache

    def test_byte_quota(self, store):
        """Byte limits evict even when the count is fine."""
        from offline_tide.tiles.cache import TileCache
        first = _record('a', access_count=1, raw=bytes(range(256)) * 4)
        cache = TileCache(store, max_tiles=100, max_bytes=first.size_bytes + 10)
        cache.put(first)
        cache.put(_record('b', access_count=2, raw=bytes(range(256)) * 4))
        assert cache.stats().total_bytes <= first.size_bytes + 10
        assert 'a' not in cache

    def test_checksum_self_heal(self, store):
        """A corrupted payload reads as a miss and is deleted."""
        from offline_tide.tiles.cache import TileCache
        cache = TileCache(store)
        cache.put(_record('a'))
        cache.put(_record('b'))
        before = cache.stats().count
        store.save(dataclasses.replace(store.load('a'), compressed_payload=b'\x00garbage'))
        assert cache.get('a') is None
        assert cache.stats().count == before - 1
        assert cache.get('b') is not None

    def test_self_heal_on_valid_zlib_wrong_content(self, store):
        """Well-formed but altered payloads are caught by the hash."""
        from offline_tide.tiles.cache import TileCache
        from offline_tide.tiles.packaging import compress_payload
        cache = TileCache(store)
        cache.put(_record('a'))
        store.save(dataclasses.replace(store.load('a'),
                                       compressed_payload=compress_payload(b'{"tileId":"a"}')))
        assert cache.get('a') is None
        assert 'a' not in cache

    def test_stats(self, store):
        """Stats report count, bytes and download time range."""
        from offline_tide.tiles.cache import TileCache
        cache = TileCache(store)
        assert cache.stats().count == 0
        assert cache.stats().oldest is None
        a = _record('a', downloaded=T0)
        b = _record('b', downloaded=T0 + timedelta(days=2))
        cache.put(a)
        cache.put(b)
        stats = cache.stats()
        assert stats.count == 2
        assert stats.total_bytes == a.size_bytes + b.size_bytes
        assert stats.oldest == T0
        assert stats.newest == T0 + timedelta(days=2)

    def test_naive_record_times_mix_with_clock_times(self, store):
        """Naive record times are read as UTC next to clock-stamped entries."""
        from offline_tide.tiles.cache import TileCache
        naive = datetime(2024, 1, 1)
        record = _record('naive', downloaded=naive, accessed=naive)
        assert record.downloaded_at == T0
        cache = TileCache(store, max_tiles=1, clock=FakeClock(T0 + timedelta(days=1)))
        cache.put(record)
        package = _package()
        assert cache.put_package(package.meta, package.compressed_payload) == ['naive']
        stats = cache.stats()
        assert stats.count == 1
        assert stats.oldest == T0 + timedelta(days=1)
        assert store.load('gulf-01').last_accessed_at.tzinfo is not None

    def test_delete_and_clear(self, store):
        """delete() and clear() remove records."""
        from offline_tide.tiles.cache import TileCache
        cache = TileCache(store)
        for tile_id in 'abc':
            cache.put(_record(tile_id))
        assert cache.delete('a')
        assert not cache.delete('a')
        cache.clear()
        assert cache.stats().count == 0

    def test_purge_expired(self, store):
        """Records older than max_age_days are purged."""
        from offline_tide.tiles.cache import TileCache
        clock = FakeClock(T0 + timedelta(days=40))
        cache = TileCache(store, clock=clock, max_age_days=30)
        cache.put(_record('stale', downloaded=T0))
        cache.put(_record('fresh', downloaded=T0 + timedelta(days=35)))
        assert cache.purge_expired() == ['stale']
        assert 'fresh' in cache

    def test_concurrent_puts(self, tmp_path):
        """Concurrent writers never leave the cache over quota."""
        from offline_tide.tiles.cache import TileCache
        from offline_tide.tiles.storage import SQLiteTileStore
        store = SQLiteTileStore(tmp_path / 'tiles.sqlite')
        cache = TileCache(store, max_tiles=10)
        errors = []
        lock = threading.Lock()

        def worker(i):
            try:
                cache.put(_record(f't{i}', size_hint=i))
                cache.get(f't{i // 2}')
            except Exception as exc:
                with lock:
                    errors.append(exc)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(worker, range(60)))

        assert errors == []
        stats = cache.stats()
        assert stats.count <= 10
        assert stats.total_bytes == sum(r.size_bytes for r in store.records())
        store.close()
