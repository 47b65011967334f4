"""
Package tidal constituents into compressed tiles and a signed manifest.

The input is a JSON document::

    {
      "version": "2026.10",
      "validUntil": "2027-01-01T00:00:00Z",
      "tiles": [
        {
          "tileId": "gulf-01",
          "bbox": [99.0, 9.0, 101.0, 11.0],
          "datum": "MSL",
          "timezoneHint": "Asia/Bangkok",
          "constituents": [{"name": "M2", "amplitude": 0.42, "phase": 110.0}],
          "observations": "obs/gulf-01.csv",
          "minorRules": [...], "localCalibration": [...],
          "datumTransforms": [...], "stats": {...}
        }
      ]
    }

A tile with ``observations`` (CSV with ``time`` and ``value`` columns) has
its constituents fitted from the record instead.  Blobs are written as
``<tileId>.bin`` next to ``manifest.json`` in the output directory.  The
manifest is signed with the key named in the ``[manifest]`` config section.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import pandas as pd

from offline_tide.harmonics.calibration import fit_constituents
from offline_tide.harmonics.constituents import ConstituentCatalog
from offline_tide.tiles.models import TilePayload
from offline_tide.tiles.packaging import build_manifest, create_tile_package
from offline_tide.utils import ManifestSettings, Utils


def _setup_logger(logger):
    """Initialize logger if not provided."""
    return Utils().setup_logger(logger)


def _tile_constituents(entry, base_dir, catalog, logger):
    """Constituents for one tile entry, fitted from observations if given."""
    observations = entry.get('observations')
    if observations:
        obs_path = (base_dir / observations).resolve()
        logger.info('Fitting constituents for %s from %s', entry['tileId'], obs_path)
        df = pd.read_csv(obs_path, parse_dates=['time'])
        fit = fit_constituents(
            df['time'], df['value'].to_numpy(), catalog=catalog, logger=logger,
        )
        stats = dict(entry.get('stats') or {})
        stats.setdefault('rmseHigh', fit['rmse'])
        stats.setdefault('rmseLow', fit['rmse'])
        stats.setdefault(
            'sampleSpanDays',
            (df['time'].max() - df['time'].min()).total_seconds() / 86400.0,
        )
        return fit['constituents'], stats

    payload = TilePayload.model_validate({
        'tileId': entry['tileId'],
        'constituents': entry.get('constituents', []),
    })
    return payload.resolve_constituents(catalog, logger), entry.get('stats')


def package_tiles(source, output_dir, logger=None):
    """Write tile blobs and the manifest for the tiles described in *source*."""
    logger = _setup_logger(logger)
    logger.info('--- Starting tile packaging ---')

    source = Path(source)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    with open(source, encoding='utf-8') as f:
        description = json.load(f)

    catalog = ConstituentCatalog()
    packages = []
    for entry in description['tiles']:
        constituents, stats = _tile_constituents(entry, source.parent, catalog, logger)
        package = create_tile_package(
            entry['tileId'],
            entry['bbox'],
            constituents,
            centroid=tuple(entry['centroid']) if entry.get('centroid') else None,
            model=entry.get('model', 'harmonic'),
            datum=entry.get('datum', 'MSL'),
            timezone_hint=entry.get('timezoneHint', 'UTC'),
            version=str(entry.get('version', description['version'])),
            minor_rules=entry.get('minorRules'),
            local_calibration=entry.get('localCalibration'),
            datum_transforms=entry.get('datumTransforms'),
            stats=stats,
            logger=logger,
        )
        (output_dir / f'{package.meta.tile_id}.bin').write_bytes(package.compressed_payload)
        packages.append(package)

    settings = ManifestSettings.from_config(logger=logger)
    key = settings.signing_key
    if key is None:
        logger.warning(
            '%s is not set; manifest will be unsigned and rejected in production.',
            settings.signing_key_env,
        )
    manifest = build_manifest(
        packages,
        str(description['version']),
        key=key,
        valid_until=description.get('validUntil'),
        ephemerides_ref=description.get('ephemeridesRef', 'de440'),
        logger=logger,
    )
    manifest_path = output_dir / 'manifest.json'
    with open(manifest_path, 'w', encoding='utf-8') as f:
        json.dump(manifest, f, indent=2)

    logger.info('Wrote %d tiles and %s', len(packages), manifest_path)
    return manifest


if __name__ == '__main__':
    parser = argparse.ArgumentParser(
        prog='python package_tiles.py',
        description='Package tidal constituents into offline tiles and a signed manifest',
    )
    parser.add_argument('-i', '--Input', required=True, help='Tile description JSON')
    parser.add_argument('-o', '--Output', required=True, help='Output directory')

    args = parser.parse_args()
    if not Path(args.Input).is_file():
        print(f'Input file {args.Input} not found', file=sys.stderr)
        sys.exit(-1)

    package_tiles(args.Input, args.Output, None)
