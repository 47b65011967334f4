"""
Prediction engines tried in order by the orchestrator.

An engine turns a :class:`TideModel` and a set of instants into levels in
metres.  The chain is::

    native (optional)  ->  HarmonicEngine ('fallback')  ->  EquilibriumEngine

An engine that cannot serve a model says so through ``supports`` or by
raising :class:`EngineUnavailable`; the orchestrator moves on to the next
one and records which engine produced the result.
"""
from __future__ import annotations

import importlib
import logging
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd

from offline_tide.exceptions import EngineUnavailable
from offline_tide.harmonics.constituents import Constituent
from offline_tide.harmonics.nodal import NodalCorrection, factors_for
from offline_tide.harmonics.synthesis import predict_series

logger = logging.getLogger(__name__)

NATIVE = 'native'
FALLBACK = 'fallback'
EQUILIBRIUM = 'equilibrium'


@dataclass(frozen=True)
class TideModel:
    """
    Everything an engine needs to synthesise levels.

    ``nodal`` of ``None`` means the factors are computed once per series at
    its midpoint.
    """

    constituents: tuple[Constituent, ...] = field(default_factory=tuple)
    baseline: float = 0.0
    bounds: tuple[float, float] | None = None
    nodal: NodalCorrection | None = None

    def nodal_for(self, times: pd.DatetimeIndex) -> NodalCorrection:
        if self.nodal is not None:
            return self.nodal
        if len(times) == 0:
            return NodalCorrection.identity()
        return factors_for(times[0] + (times[-1] - times[0]) / 2)


@runtime_checkable
class PredictionEngine(Protocol):
    source: str

    def supports(self, model: TideModel) -> bool:
        ...

    def synthesize(self, model: TideModel, times: pd.DatetimeIndex) -> np.ndarray:
        ...


class HarmonicEngine:
    """Portable numpy synthesizer; needs at least one constituent."""

    source = FALLBACK

    def supports(self, model: TideModel) -> bool:
        return bool(model.constituents)

    def synthesize(self, model: TideModel, times: pd.DatetimeIndex) -> np.ndarray:
        if not model.constituents:
            raise EngineUnavailable('Harmonic engine needs at least one constituent.')
        return predict_series(
            model.constituents, model.nodal_for(times), times,
            baseline=model.baseline, bounds=model.bounds, allow_equilibrium=False,
        )


class EquilibriumEngine:
    """Single synthetic semidiurnal term about the baseline; always available."""

    source = EQUILIBRIUM

    def supports(self, model: TideModel) -> bool:
        return True

    def synthesize(self, model: TideModel, times: pd.DatetimeIndex) -> np.ndarray:
        return predict_series(
            (), NodalCorrection.identity(), times,
            baseline=model.baseline, bounds=model.bounds, allow_equilibrium=True,
        )


def load_native_engine(
    path: str | None,
    logger: logging.Logger | None = None,
) -> PredictionEngine | None:
    """
    Import an optional native engine from a ``"module:attribute"`` path.

    A class is instantiated without arguments; any other attribute is used
    as is.  Returns ``None`` when *path* is empty or the engine cannot be
    loaded.
    """
    _log = logger or logging.getLogger(__name__)

    if not path:
        return None
    module_name, _, attr = path.partition(':')
    if not module_name or not attr:
        _log.warning('Native engine path %r is not of the form module:attribute.', path)
        return None

    try:
        target = getattr(importlib.import_module(module_name), attr)
        engine = target() if isinstance(target, type) else target
    except Exception as exc:
        _log.warning('Native engine %s unavailable: %s', path, exc)
        return None

    if not callable(getattr(engine, 'synthesize', None)):
        _log.warning('Native engine %s has no synthesize(); ignored.', path)
        return None

    _log.info('Loaded native engine %s.', path)
    return engine
