"""
Constituent calibration from observed water levels.

Fits amplitudes and phases by ordinary least squares in the same phase
convention the synthesizer uses (``A * cos(speed * t + phase)``, *t* in
hours since 2000-01-01T00:00Z), so fitted constituents can be packaged
into tiles and predicted without conversion.

Also provides :func:`compare_constituents`, the per-constituent amplitude,
phase and vector difference between two constituent sets, following the
NOS convention::

    Vd = sqrt(A1^2 + A2^2 - 2*A1*A2*cos(dg))
"""
from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd

from .constituents import Constituent, ConstituentCatalog, normalize_constituent_name
from .nodal import factors_for
from .timebase import hours_since_epoch_array, to_utc_index

logger = logging.getLogger(__name__)

DEFAULT_FIT_CONSTITUENTS: list[str] = [
    'M2', 'S2', 'N2', 'K2', 'K1', 'O1', 'P1', 'Q1', 'M4', 'MS4',
]
"""Constituents requested when the caller does not name any."""


def fit_constituents(
    time: object,
    values: np.ndarray,
    constit: list[str] | None = None,
    min_duration_days: float = 15.0,
    rayleigh_min: float = 0.9,
    apply_nodal: bool = True,
    catalog: ConstituentCatalog | None = None,
    logger: logging.Logger | None = None,
) -> dict:
    """
    Fit tidal constituents to an observed water level record.

    Parameters
    ----------
    time : array-like of datetime-like
        Observation timestamps (naive values are UTC).  Need not be evenly
        spaced.
    values : np.ndarray
        Observed water levels in metres.  Non-finite samples are ignored.
    constit : list of str, optional
        Constituent codes to resolve.  Defaults to
        :data:`DEFAULT_FIT_CONSTITUENTS`.  Constituents that cannot be
        separated from a stronger neighbour given the record length
        (Rayleigh criterion) are dropped.
    min_duration_days : float, optional
        Minimum record length (default 15 days).
    rayleigh_min : float, optional
        Minimum separation in Rayleigh units (default 0.9).
    apply_nodal : bool, optional
        Divide fitted amplitudes by the nodal factor at the record midpoint
        so the synthesizer's own correction is not applied twice (default
        ``True``).
    catalog : ConstituentCatalog, optional
        Speed lookup; defaults to the standard catalog.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.

    Returns
    -------
    dict
        ``"constituents"`` : list of :class:`Constituent`.
        ``"table"`` : :class:`pandas.DataFrame` with columns ``Name``,
            ``Amplitude``, ``Phase``, ``Speed``.
        ``"mean"`` : float, fitted mean level.
        ``"rmse"`` : float, residual root-mean-square error.
        ``"dropped"`` : list of str, constituents removed by the Rayleigh
            criterion or missing from the catalog.

    Raises
    ------
    ValueError
        If lengths differ, there is no finite data, or the record is
        shorter than *min_duration_days*.
    """
    _log = logger or logging.getLogger(__name__)
    catalog = catalog or ConstituentCatalog()

    index = to_utc_index(time)
    values = np.asarray(values, dtype=float)

    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------
    if len(index) != len(values):
        raise ValueError(
            f"time ({len(index)}) and values ({len(values)}) must have the "
            f"same length."
        )

    finite_mask = np.isfinite(values)
    if not np.any(finite_mask):
        raise ValueError('values contains no finite data.')

    index = index[finite_mask]
    values = values[finite_mask]

    duration_hours = (index.max() - index.min()).total_seconds() / 3600.0
    if duration_hours / 24.0 < min_duration_days:
        raise ValueError(
            f"Record length {duration_hours / 24.0:.1f} days is less than the "
            f"minimum {min_duration_days} days required for calibration."
        )

    # ------------------------------------------------------------------
    # Constituent selection
    # ------------------------------------------------------------------
    requested = [normalize_constituent_name(c) for c in (constit or DEFAULT_FIT_CONSTITUENTS)]
    codes, dropped = _select_resolvable(requested, duration_hours, rayleigh_min, catalog)
    if not codes:
        raise ValueError('No resolvable constituents for this record length.')

    _log.info(
        'Fitting %d constituents to a %.1f-day record (%d samples); dropped %s.',
        len(codes), duration_hours / 24.0, len(values), dropped or 'none',
    )

    # ------------------------------------------------------------------
    # Least squares: mean + sum(a cos(wt) + b sin(wt))
    # ------------------------------------------------------------------
    hours = hours_since_epoch_array(index)
    speeds = np.array([catalog.speed_for(c) for c in codes], dtype=float)
    omega_t = np.radians(np.mod(np.outer(hours, speeds), 360.0))

    design = np.hstack([np.ones((len(hours), 1)), np.cos(omega_t), np.sin(omega_t)])
    coef, *_ = np.linalg.lstsq(design, values, rcond=None)

    n = len(codes)
    a = coef[1:n + 1]
    b = coef[n + 1:]
    amplitudes = np.hypot(a, b)
    # A cos(wt + g) = A cos(g) cos(wt) - A sin(g) sin(wt)
    phases = np.mod(np.degrees(np.arctan2(-b, a)), 360.0)

    if apply_nodal:
        nodal = factors_for(index.min() + (index.max() - index.min()) / 2)
        amplitudes = amplitudes / np.array([nodal.factor_for(c) for c in codes])

    residual = values - design @ coef
    rmse = float(np.sqrt(np.mean(residual ** 2)))

    constituents = [
        Constituent(code=c, amplitude_m=float(amp), phase_deg=float(ph), speed_deg_hr=float(sp))
        for c, amp, ph, sp in zip(codes, amplitudes, phases, speeds)
    ]
    table = pd.DataFrame({
        'Name': codes,
        'Amplitude': amplitudes,
        'Phase': phases,
        'Speed': speeds,
    })

    mean_level = float(coef[0])
    _log.info('Calibration complete. Mean=%.4f, RMSE=%.4f.', mean_level, rmse)

    return {
        'constituents': constituents,
        'table': table,
        'mean': mean_level,
        'rmse': rmse,
        'dropped': dropped,
    }


def _select_resolvable(
    requested: list[str],
    duration_hours: float,
    rayleigh_min: float,
    catalog: ConstituentCatalog,
) -> tuple[list[str], list[str]]:
    """Keep constituents in request order unless too close to a kept one."""
    kept: list[str] = []
    dropped: list[str] = []
    for code in requested:
        speed = catalog.speed_for(code)
        if speed is None or code in kept:
            dropped.append(code)
            continue
        too_close = any(
            abs(speed - catalog.speed_for(k)) * duration_hours / 360.0 < rayleigh_min
            for k in kept
        )
        if too_close:
            dropped.append(code)
        else:
            kept.append(code)
    return kept, dropped


def compare_constituents(
    reference: Sequence[Constituent],
    candidate: Sequence[Constituent],
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """
    Compare two constituent sets code by code.

    Parameters
    ----------
    reference : sequence of Constituent
        Reference set (for example, the currently cached tile version).
    candidate : sequence of Constituent
        Candidate set (for example, a newly published tile version).
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.

    Returns
    -------
    pd.DataFrame
        Columns: ``Constituent``, ``Ref_Amp``, ``New_Amp``, ``Amp_Diff``,
        ``Ref_Phase``, ``New_Phase``, ``Phase_Diff``, ``Vector_Diff``.
        Codes present in only one set have NaN on the other side.
    """
    _log = logger or logging.getLogger(__name__)

    ref_map = {c.code: c for c in reference}
    new_map = {c.code: c for c in candidate}
    codes = sorted(set(ref_map) | set(new_map))

    ref_amp = np.array([ref_map[c].amplitude_m if c in ref_map else np.nan for c in codes])
    ref_phase = np.array([ref_map[c].phase_deg if c in ref_map else np.nan for c in codes])
    new_amp = np.array([new_map[c].amplitude_m if c in new_map else np.nan for c in codes])
    new_phase = np.array([new_map[c].phase_deg if c in new_map else np.nan for c in codes])

    amp_diff = new_amp - ref_amp

    # Phase difference wrapped to [-180, 180]
    phase_diff = (new_phase - ref_phase + 180.0) % 360.0 - 180.0

    delta_rad = np.radians(phase_diff)
    vector_diff = np.sqrt(
        new_amp ** 2
        + ref_amp ** 2
        - 2.0 * new_amp * ref_amp * np.cos(delta_rad)
    )

    df = pd.DataFrame({
        'Constituent': codes,
        'Ref_Amp': ref_amp,
        'New_Amp': new_amp,
        'Amp_Diff': amp_diff,
        'Ref_Phase': ref_phase,
        'New_Phase': new_phase,
        'Phase_Diff': phase_diff,
        'Vector_Diff': vector_diff,
    })

    _log.info(
        'Constituent comparison: %d codes, max vector diff=%.4f.',
        len(codes), np.nanmax(vector_diff) if np.any(np.isfinite(vector_diff)) else np.nan,
    )
    return df
