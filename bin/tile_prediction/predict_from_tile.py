"""
Predict tides for a coordinate from the offline tile cache.

Loads the manifest (signature policy from the ``[manifest]`` config
section), imports any tile blobs found in ``--Tiles`` that are not cached
yet, selects the tile for the coordinate and prints the prediction (or the
high/low events with ``--Extremes``) as JSON.
"""
from __future__ import annotations

import argparse
import json
from pathlib import Path

from offline_tide.exceptions import ChecksumMismatch, MalformedManifest
from offline_tide.prediction.models import PredictionRequest
from offline_tide.prediction.orchestrator import PredictionOrchestrator
from offline_tide.tiles.cache import TileCache
from offline_tide.tiles.manifest import ManifestRegistry, ManifestValidator, is_expired
from offline_tide.tiles.selector import select_tile
from offline_tide.utils import CacheSettings, ManifestSettings, PredictionSettings, Utils


def _setup_logger(logger):
    """Initialize logger if not provided."""
    return Utils().setup_logger(logger)


def _import_tiles(cache, manifest, tiles_dir, logger):
    """Cache blobs from *tiles_dir* for manifest tiles not cached yet."""
    imported = 0
    for meta in manifest.tiles:
        blob_path = Path(tiles_dir) / f'{meta.tile_id}.bin'
        if meta.tile_id in cache or not blob_path.is_file():
            continue
        try:
            cache.put_package(meta, blob_path.read_bytes())
            imported += 1
        except ChecksumMismatch as exc:
            logger.error('Skipping %s: %s', blob_path, exc)
    logger.info('Imported %d tiles from %s', imported, tiles_dir)


def predict_from_tile(args, logger=None):
    logger = _setup_logger(logger)
    logger.info('--- Starting offline tide prediction ---')

    registry = ManifestRegistry(
        ManifestValidator.from_settings(ManifestSettings.from_config(logger=logger), logger),
        logger=logger,
    )
    with open(args.Manifest, 'rb') as f:
        manifest = registry.replace(f.read())
    if is_expired(manifest):
        logger.warning('Manifest %s is past its validUntil date', manifest.version)

    cache = TileCache.from_settings(CacheSettings.from_config(logger=logger), logger=logger)
    cache.purge_expired()
    if args.Tiles:
        _import_tiles(cache, manifest, args.Tiles, logger)

    orchestrator = PredictionOrchestrator(
        cache, settings=PredictionSettings.from_config(logger=logger), logger=logger,
    )

    if args.Extremes:
        meta = select_tile(manifest, args.Lat, args.Lon, logger=logger)
        if meta is None:
            raise SystemExit('Manifest lists no tiles')
        result = orchestrator.predict_extremes(
            meta.tile_id, args.StartDate, args.EndDate,
            sample_interval_minutes=args.Step or 15.0, meta=meta,
        )
    else:
        request = PredictionRequest(
            start_time_utc=args.StartDate,
            end_time_utc=args.EndDate,
            step_minutes=args.Step,
            datum=args.Datum,
            unit=args.Unit,
            include_confidence=args.Confidence,
            include_slope=args.Slope,
        )
        result = orchestrator.predict_for_location(manifest, args.Lat, args.Lon, request)

    print(json.dumps(result.model_dump(mode='json', by_alias=True), indent=2))
    return result


if __name__ == '__main__':
    parser = argparse.ArgumentParser(
        prog='python predict_from_tile.py',
        description='Predict tides for a coordinate from offline tiles',
    )
    parser.add_argument('-m', '--Manifest', required=True, help='Manifest JSON file')
    parser.add_argument('-t', '--Tiles', required=False, help='Directory of tile blobs to import')
    parser.add_argument('--Lat', required=True, type=float, help='Latitude')
    parser.add_argument('--Lon', required=True, type=float, help='Longitude')
    parser.add_argument('-s', '--StartDate', required=True, help='Start Date YYYY-MM-DDThh:mm:ssZ')
    parser.add_argument('-e', '--EndDate', required=True, help='End Date YYYY-MM-DDThh:mm:ssZ')
    parser.add_argument('--Step', required=False, type=float, help='Step in minutes')
    parser.add_argument('--Datum', required=False, help='Requested datum')
    parser.add_argument('--Unit', required=False, default='m', choices=['m', 'ft'])
    parser.add_argument('--Confidence', action='store_true', help='Include confidence band')
    parser.add_argument('--Slope', action='store_true', help='Include slope')
    parser.add_argument('--Extremes', action='store_true', help='Print high/low events')

    args = parser.parse_args()
    try:
        predict_from_tile(args, None)
    except MalformedManifest as exc:
        raise SystemExit(f'Manifest rejected: {exc}') from exc
