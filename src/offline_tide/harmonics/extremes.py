"""
High/low water extraction from synthesized water levels.

The synthesizer is sampled at a fixed interval (default 15 minutes) over a
window; a sample is a high if both neighbours are lower and a low if both
are higher.  Confidence comes from the magnitude of the second difference
at the sample (sharper turning points score higher) and is capped below
certainty to reflect model uncertainty.

A flat or degenerate series (for example, no constituents) yields no
events.  Callers then fall back to :func:`canned_semidiurnal_events`, an
explicit degraded mode.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from enum import Enum

import numpy as np
import pandas as pd
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from scipy.signal import argrelextrema

from .constituents import CONSTITUENT_SPEEDS, Constituent
from .nodal import NodalCorrection, factors_for
from .synthesis import predict_series
from .timebase import to_utc_timestamp

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL_MINUTES = 15.0
CONFIDENCE_CEILING = 95.0
CONFIDENCE_FLOOR = 50.0
CANNED_CONFIDENCE = 70.0


class TideEventKind(str, Enum):
    HIGH = 'high'
    LOW = 'low'


class TideEvent(BaseModel):
    """A local high or low water event."""

    model_config = ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel,
    )

    timestamp_utc: datetime
    level_meters: float
    kind: TideEventKind
    confidence_percent: float


def find_extremes(
    constituents: Sequence[Constituent],
    window: tuple[object, object],
    sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
    nodal: NodalCorrection | None = None,
    baseline: float = 0.0,
    bounds: tuple[float, float] | None = None,
    logger: logging.Logger | None = None,
) -> list[TideEvent]:
    """
    Locate high and low water events over a time window.

    Parameters
    ----------
    constituents : sequence of Constituent
        Resolved constituents.  Empty produces a flat series and therefore
        no events.
    window : tuple
        ``(start, end)`` datetime-likes (naive values are UTC).
    sample_interval_minutes : float, optional
        Sampling interval (default 15 minutes).
    nodal : NodalCorrection, optional
        Amplitude factors.  Defaults to the factors at the window midpoint.
    baseline : float, optional
        Mean level H0 in metres.
    bounds : tuple of float, optional
        Known regional ``(low, high)`` water for saturation.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.

    Returns
    -------
    list of TideEvent
        Events in time order, alternating high/low.

    Raises
    ------
    ValueError
        If the window is inverted or the interval is not positive.
    """
    _log = logger or logging.getLogger(__name__)

    start = to_utc_timestamp(window[0])
    end = to_utc_timestamp(window[1])
    if end <= start:
        raise ValueError(f"Window end {end} must be after start {start}.")
    if not np.isfinite(sample_interval_minutes) or sample_interval_minutes <= 0:
        raise ValueError('sample_interval_minutes must be positive.')

    if nodal is None:
        nodal = factors_for(start + (end - start) / 2)

    times = pd.date_range(
        start, end, freq=pd.Timedelta(minutes=sample_interval_minutes),
    )
    if len(times) < 3:
        _log.info('Window too short for extrema (%d samples).', len(times))
        return []

    levels = predict_series(
        constituents, nodal, times, baseline=baseline, bounds=bounds,
        allow_equilibrium=False, logger=_log,
    )
    events = events_from_series(times, levels)

    _log.info(
        'Extrema search: %d samples at %.1f min, %d events.',
        len(times), sample_interval_minutes, len(events),
    )
    return events


def events_from_series(
    times: pd.DatetimeIndex,
    levels: np.ndarray,
) -> list[TideEvent]:
    """
    Extract alternating high/low events from an evenly sampled series.

    Parameters
    ----------
    times : pd.DatetimeIndex
        Sample times.
    levels : np.ndarray
        Water levels at *times*.

    Returns
    -------
    list of TideEvent
        Empty if the series has no local extremum.  A run of equal samples
        (a flat top or a saturated crest) counts as one extremum, reported
        at the middle of the run.
    """
    levels = np.asarray(levels, dtype=float)
    if len(levels) < 3:
        return []

    # runs of equal samples are scanned as a single point
    run_starts = np.flatnonzero(np.r_[True, np.diff(levels) != 0])
    run_ends = np.r_[run_starts[1:], len(levels)] - 1
    centres = (run_starts + run_ends) // 2
    run_levels = levels[run_starts]

    high_idx = centres[argrelextrema(run_levels, np.greater, order=1)[0]]
    low_idx = centres[argrelextrema(run_levels, np.less, order=1)[0]]
    if len(high_idx) == 0 and len(low_idx) == 0:
        return []

    # second difference centred on sample i lives at position i - 1
    curvature = np.abs(levels[:-2] - 2.0 * levels[1:-1] + levels[2:])

    candidates = sorted(
        [(int(i), TideEventKind.HIGH) for i in high_idx]
        + [(int(i), TideEventKind.LOW) for i in low_idx]
    )
    candidates = _enforce_alternation(candidates, levels)

    sharpest = max(curvature[i - 1] for i, _ in candidates)
    events = []
    for i, kind in candidates:
        events.append(TideEvent(
            timestamp_utc=times[i].to_pydatetime(),
            level_meters=float(levels[i]),
            kind=kind,
            confidence_percent=_confidence(curvature[i - 1], sharpest),
        ))
    return events


def _enforce_alternation(
    candidates: list[tuple[int, TideEventKind]],
    levels: np.ndarray,
) -> list[tuple[int, TideEventKind]]:
    """Collapse runs of same-kind events, keeping the most extreme one."""
    merged: list[tuple[int, TideEventKind]] = []
    for idx, kind in candidates:
        if merged and merged[-1][1] is kind:
            prev_idx = merged[-1][0]
            if kind is TideEventKind.HIGH:
                keep_new = levels[idx] > levels[prev_idx]
            else:
                keep_new = levels[idx] < levels[prev_idx]
            if keep_new:
                merged[-1] = (idx, kind)
            continue
        merged.append((idx, kind))
    return merged


def _confidence(curvature: float, sharpest: float) -> float:
    if sharpest <= 0.0 or not np.isfinite(sharpest):
        return CONFIDENCE_FLOOR
    score = CONFIDENCE_FLOOR + (CONFIDENCE_CEILING - CONFIDENCE_FLOOR) * (
        curvature / sharpest
    )
    return round(min(CONFIDENCE_CEILING, score), 1)


def canned_semidiurnal_events(
    window: tuple[object, object],
    mean_high_water: float,
    mean_low_water: float,
) -> list[TideEvent]:
    """
    Generic semidiurnal high/low pattern for degraded mode.

    Events alternate every half M2 period, starting with a high a quarter
    period after the window start, at the mean high/low water levels.
    Confidence is fixed at 70%.
    """
    start = to_utc_timestamp(window[0])
    end = to_utc_timestamp(window[1])
    half_period = pd.Timedelta(hours=180.0 / CONSTITUENT_SPEEDS['M2'])

    events = []
    t = start + half_period / 2
    kind = TideEventKind.HIGH
    while t <= end:
        level = mean_high_water if kind is TideEventKind.HIGH else mean_low_water
        events.append(TideEvent(
            timestamp_utc=t.to_pydatetime(),
            level_meters=float(level),
            kind=kind,
            confidence_percent=CANNED_CONFIDENCE,
        ))
        kind = TideEventKind.LOW if kind is TideEventKind.HIGH else TideEventKind.HIGH
        t += half_period
    return events
