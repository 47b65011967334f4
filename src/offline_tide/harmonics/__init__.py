"""
Harmonics Subpackage

Provides functionality for:
- Tidal constituent catalog (speeds, aliases, regional defaults)
- Nodal correction factors from lunar node/perigee/inclination cycles
- Harmonic synthesis of water levels (single instant and series)
- High/low water extraction with confidence scoring
- Constituent calibration from observed records and set comparison
"""

from offline_tide.harmonics.calibration import (
    compare_constituents,
    fit_constituents,
)
from offline_tide.harmonics.constituents import (
    CONSTITUENT_SPEEDS,
    NODAL_GROUPS,
    REGIONS,
    Constituent,
    ConstituentCatalog,
    normalize_constituent_name,
)
from offline_tide.harmonics.extremes import (
    TideEvent,
    TideEventKind,
    canned_semidiurnal_events,
    find_extremes,
)
from offline_tide.harmonics.nodal import (
    NodalCorrection,
    astronomical_arguments,
    factors_for,
)
from offline_tide.harmonics.synthesis import predict, predict_series
from offline_tide.harmonics.timebase import EPOCH, hours_since_epoch

__all__ = [
    # Catalog
    'CONSTITUENT_SPEEDS',
    'NODAL_GROUPS',
    'REGIONS',
    'Constituent',
    'ConstituentCatalog',
    'normalize_constituent_name',
    # Time base
    'EPOCH',
    'hours_since_epoch',
    # Nodal corrections
    'NodalCorrection',
    'astronomical_arguments',
    'factors_for',
    # Synthesis
    'predict',
    'predict_series',
    # Extrema
    'TideEvent',
    'TideEventKind',
    'find_extremes',
    'canned_semidiurnal_events',
    # Calibration
    'fit_constituents',
    'compare_constituents',
]
