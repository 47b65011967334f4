"""
Harmonic synthesis of sea-surface height from tidal constituents.

Implements the superposition::

    h(t) = H0 + sum{ f_i * A_i * cos(speed_i * t + phase_i) }

where *t* is hours since 2000-01-01T00:00Z, *f_i* the nodal factor of the
constituent's cycle, and *H0* the baseline (regional mean level or an
explicit datum offset).

Two entry points are provided:

* :func:`predict` -- one instant, returns a float.
* :func:`predict_series` -- vectorised over a sequence of instants.

With no constituents both fall back to a single synthetic semidiurnal term
(equilibrium approximation), a degraded-but-available mode rather than an
error.  Results are saturated against known regional extremes so corrupted
inputs cannot produce absurd levels.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Sequence

import numpy as np

from .constituents import CONSTITUENT_SPEEDS, Constituent
from .nodal import NodalCorrection
from .timebase import hours_since_epoch, hours_since_epoch_array

logger = logging.getLogger(__name__)

EQUILIBRIUM_AMPLITUDE_M = 0.5
EQUILIBRIUM_SPEED_DEG_HR = CONSTITUENT_SPEEDS['M2']
CLAMP_MARGIN_M = 0.5


def predict(
    constituents: Sequence[Constituent],
    nodal: NodalCorrection,
    instant: object,
    baseline: float = 0.0,
    bounds: tuple[float, float] | None = None,
) -> float:
    """
    Predict the water level at a single instant.

    Parameters
    ----------
    constituents : sequence of Constituent
        Resolved constituents.  Empty selects the equilibrium term.
    nodal : NodalCorrection
        Amplitude factors for the instant.
    instant : datetime-like
        Time of interest (naive values are UTC).
    baseline : float, optional
        Mean level H0 in metres (default 0.0).
    bounds : tuple of float, optional
        Known regional ``(low, high)`` water; the result is clamped to
        ``[low - 0.5, high + 0.5]``.

    Returns
    -------
    float
        Predicted level in metres relative to the baseline datum.
    """
    hours = hours_since_epoch(instant)

    if not constituents:
        angle = math.radians(math.fmod(EQUILIBRIUM_SPEED_DEG_HR * hours, 360.0))
        level = baseline + EQUILIBRIUM_AMPLITUDE_M * math.cos(angle)
        return float(saturate(level, baseline, bounds))

    level = baseline
    for c in constituents:
        angle = math.radians(math.fmod(c.speed_deg_hr * hours + c.phase_deg, 360.0))
        level += c.amplitude_m * nodal.factor_for(c.code) * math.cos(angle)

    return float(saturate(level, baseline, bounds))


def predict_series(
    constituents: Sequence[Constituent],
    nodal: NodalCorrection,
    times: object,
    baseline: float = 0.0,
    bounds: tuple[float, float] | None = None,
    allow_equilibrium: bool = True,
    logger: logging.Logger | None = None,
) -> np.ndarray:
    """
    Predict water levels over a sequence of instants.

    Parameters
    ----------
    constituents : sequence of Constituent
        Resolved constituents.
    nodal : NodalCorrection
        Amplitude factors; nodal cycles are multi-day, so one set is used
        for the whole series.
    times : array-like of datetime-like
        Prediction times (naive values are UTC).
    baseline : float, optional
        Mean level H0 in metres.
    bounds : tuple of float, optional
        Known regional ``(low, high)`` water used for saturation.
    allow_equilibrium : bool, optional
        If ``False``, an empty constituent list yields a flat series at the
        baseline instead of the equilibrium term (default ``True``).
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.

    Returns
    -------
    np.ndarray
        Predicted levels, one per instant.
    """
    _log = logger or logging.getLogger(__name__)

    hours = hours_since_epoch_array(times)

    if not constituents:
        if not allow_equilibrium:
            return np.full(hours.shape, float(baseline))
        _log.debug('No constituents; using equilibrium approximation.')
        angles = np.radians(np.mod(EQUILIBRIUM_SPEED_DEG_HR * hours, 360.0))
        levels = baseline + EQUILIBRIUM_AMPLITUDE_M * np.cos(angles)
        return saturate(levels, baseline, bounds)

    speeds = np.array([c.speed_deg_hr for c in constituents], dtype=float)
    phases = np.array([c.phase_deg for c in constituents], dtype=float)
    amps = np.array(
        [c.amplitude_m * nodal.factor_for(c.code) for c in constituents],
        dtype=float,
    )

    angles = np.radians(np.mod(np.outer(hours, speeds) + phases, 360.0))
    levels = baseline + np.cos(angles) @ amps

    _log.debug(
        'Synthesised %d steps from %d constituents.', len(hours), len(constituents),
    )
    return saturate(levels, baseline, bounds)


def saturate(
    levels: float | np.ndarray,
    baseline: float,
    bounds: tuple[float, float] | None,
) -> np.ndarray:
    """
    Replace non-finite levels by the baseline and clamp to ``bounds +/- 0.5``.

    Never raises for in-domain input; corrupted constituents therefore
    produce a saturated, not an absurd, level.
    """
    levels = np.where(np.isfinite(levels), levels, baseline)
    if bounds is None:
        return levels
    low, high = bounds
    return np.clip(levels, low - CLAMP_MARGIN_M, high + CLAMP_MARGIN_M)


def envelope(
    constituents: Sequence[Constituent],
    nodal: NodalCorrection,
    baseline: float = 0.0,
) -> tuple[float, float]:
    """
    Theoretical ``(low, high)`` range of a constituent set.

    Used as saturation bounds when no regional extremes are known.
    """
    if not constituents:
        return baseline - EQUILIBRIUM_AMPLITUDE_M, baseline + EQUILIBRIUM_AMPLITUDE_M
    reach = sum(
        abs(c.amplitude_m) * nodal.factor_for(c.code)
        for c in constituents
        if math.isfinite(c.amplitude_m)
    )
    return baseline - reach, baseline + reach
