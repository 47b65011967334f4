"""
Time base shared by the nodal calculator and the synthesizer.

All phase arithmetic is done in hours since a fixed epoch
(2000-01-01T00:00Z) so angles stay well-conditioned across decades.
Naive timestamps are interpreted as UTC.
"""
from __future__ import annotations

import numpy as np
import pandas as pd

EPOCH = pd.Timestamp('2000-01-01T00:00:00', tz='UTC')
"""Reference epoch for ``hours_since_epoch``."""

_NS_PER_HOUR = 3.6e12


def to_utc_timestamp(instant: object) -> pd.Timestamp:
    """
    Coerce *instant* to a tz-aware UTC :class:`pandas.Timestamp`.

    Raises
    ------
    ValueError
        If *instant* cannot be parsed or is ``NaT``.
    """
    ts = pd.Timestamp(instant)
    if ts is pd.NaT:
        raise ValueError(f"Instant {instant!r} is not a valid timestamp.")
    if ts.tzinfo is None:
        return ts.tz_localize('UTC')
    return ts.tz_convert('UTC')


def to_utc_index(times: object) -> pd.DatetimeIndex:
    """Coerce a sequence of instants to a tz-aware UTC DatetimeIndex."""
    index = pd.DatetimeIndex(times)
    if index.tz is None:
        return index.tz_localize('UTC')
    return index.tz_convert('UTC')


def hours_since_epoch(instant: object) -> float:
    """Hours elapsed between :data:`EPOCH` and *instant*."""
    ts = to_utc_timestamp(instant)
    return (ts.value - EPOCH.value) / _NS_PER_HOUR


def hours_since_epoch_array(times: object) -> np.ndarray:
    """Vectorised :func:`hours_since_epoch` for a sequence of instants."""
    index = to_utc_index(times).tz_localize(None)
    ns = index.to_numpy(dtype='datetime64[ns]').astype(np.int64)
    return (ns - EPOCH.value) / _NS_PER_HOUR
