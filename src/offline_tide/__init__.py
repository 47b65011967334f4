"""
offline_tide

Offline harmonic tide prediction from signed, checksum-verified tiles.

Subpackages
-----------
harmonics
    Constituent catalog, nodal corrections, synthesis, extrema, calibration.
tiles
    Manifest validation, tile selection, packaging, storage and cache.
prediction
    Engine chain and the prediction orchestrator.
"""

__version__ = '0.1.0'
