"""
Prediction Subpackage

Provides functionality for:
- Prediction request/result models and degraded-mode flags
- Engine strategies (optional native, portable harmonic, equilibrium)
- Tile-based prediction orchestration with regional fallback
"""

from offline_tide.prediction.engines import (
    EquilibriumEngine,
    HarmonicEngine,
    PredictionEngine,
    TideModel,
    load_native_engine,
)
from offline_tide.prediction.models import (
    Flags,
    PredictionPoint,
    PredictionRequest,
    PredictionResult,
    TideEventsResult,
)
from offline_tide.prediction.orchestrator import (
    PredictionOrchestrator,
    PreparedModel,
    apply_local_calibration,
    build_tide_model,
    find_datum_transform,
    infer_minor_constituents,
)

__all__ = [
    # Models
    'Flags',
    'PredictionPoint',
    'PredictionRequest',
    'PredictionResult',
    'TideEventsResult',
    # Engines
    'EquilibriumEngine',
    'HarmonicEngine',
    'PredictionEngine',
    'TideModel',
    'load_native_engine',
    # Orchestration
    'PredictionOrchestrator',
    'PreparedModel',
    'apply_local_calibration',
    'build_tide_model',
    'find_datum_transform',
    'infer_minor_constituents',
]
