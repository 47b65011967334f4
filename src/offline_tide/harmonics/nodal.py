"""
Nodal correction factors.

Slowly varying astronomical cycles modulate constituent amplitudes:

* the 18.61-year regression of the lunar node (``node``),
* the 8.85-year revolution of the lunar perigee (``perigee``),
* a 173.31-day declination/inclination cycle (``inclination``).

Fundamental arguments follow Meeus (1998), *Astronomical Algorithms*,
chapter 47.  The factors are a pure function of the instant and are shared
by every constituent in a synthesis call.  Outside 1900-2100 the
polynomials lose accuracy, so the factors are tapered linearly toward 1.0
(no correction) over a further century and are exactly 1.0 beyond that.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .constituents import NODAL_GROUPS, normalize_constituent_name
from .timebase import to_utc_timestamp

logger = logging.getLogger(__name__)

VALID_YEARS = (1900.0, 2100.0)
TAPER_YEARS = 100.0

NODE_AMPLITUDE = 0.037
PERIGEE_AMPLITUDE = 0.027
INCLINATION_AMPLITUDE = 0.016
INCLINATION_PERIOD_DAYS = 173.31

_J2000 = 2451545.0


@dataclass(frozen=True)
class NodalCorrection:
    """Amplitude factors for one instant."""

    node: float = 1.0
    perigee: float = 1.0
    inclination: float = 1.0

    @classmethod
    def identity(cls) -> NodalCorrection:
        """No correction: every factor is 1.0."""
        return cls()

    def factor_for(self, code: str) -> float:
        """Return the amplitude factor for constituent *code*."""
        group = NODAL_GROUPS.get(normalize_constituent_name(code))
        if group is None:
            return 1.0
        return getattr(self, group)


@dataclass(frozen=True)
class AstronomicalArguments:
    """Mean longitudes in degrees, normalised to [0, 360)."""

    s: float   # moon
    h: float   # sun
    p: float   # lunar perigee
    N: float   # lunar ascending node
    pp: float  # solar perigee


def _julian_centuries(julian_day: float) -> float:
    return (julian_day - _J2000) / 36525.0


def astronomical_arguments(instant: object) -> AstronomicalArguments:
    """
    Compute the fundamental lunar/solar arguments for *instant*.

    Parameters
    ----------
    instant : datetime-like
        Time of interest; naive values are taken as UTC.

    Returns
    -------
    AstronomicalArguments
    """
    T = _julian_centuries(to_utc_timestamp(instant).to_julian_date())
    T2, T3, T4 = T * T, T ** 3, T ** 4

    s = 218.3164477 + 481267.88123421 * T - 0.0015786 * T2 + T3 / 538841 - T4 / 65194000
    h = 280.4664567 + 36000.76982779 * T + 0.0003032 * T2 + T3 / 49931000 - T4 / 153000000
    p = 83.3532465 + 4069.0137287 * T - 0.0103200 * T2 - T3 / 80053 + T4 / 18999000
    N = 125.0445479 - 1934.1362891 * T + 0.0020754 * T2 + T3 / 467441 - T4 / 60616000
    pp = 282.9373480 + 1.71945766 * T + 0.0004527 * T2 + T3 / 300000000

    return AstronomicalArguments(
        s=s % 360.0, h=h % 360.0, p=p % 360.0, N=N % 360.0, pp=pp % 360.0,
    )


def _validity_weight(decimal_year: float) -> float:
    """1.0 inside the valid range, linear taper to 0.0 over TAPER_YEARS."""
    lo, hi = VALID_YEARS
    if lo <= decimal_year <= hi:
        return 1.0
    excess = lo - decimal_year if decimal_year < lo else decimal_year - hi
    return max(0.0, 1.0 - excess / TAPER_YEARS)


def factors_for(instant: object) -> NodalCorrection:
    """
    Nodal correction factors for *instant*.

    Never raises: unparseable or non-finite instants, and instants far
    outside the valid range, return :meth:`NodalCorrection.identity`.
    """
    try:
        ts = to_utc_timestamp(instant)
    except (ValueError, TypeError, OverflowError):
        logger.debug('Nodal factors requested for invalid instant %r.', instant)
        return NodalCorrection.identity()

    decimal_year = ts.year + (ts.dayofyear - 1) / 365.25
    weight = _validity_weight(decimal_year)
    if weight == 0.0:
        return NodalCorrection.identity()

    args = astronomical_arguments(ts)
    days = ts.to_julian_date() - _J2000

    node = 1.0 - NODE_AMPLITUDE * math.cos(math.radians(args.N))
    perigee = 1.0 + PERIGEE_AMPLITUDE * math.cos(math.radians(args.p))
    inclination = 1.0 + INCLINATION_AMPLITUDE * math.cos(
        2.0 * math.pi * days / INCLINATION_PERIOD_DAYS
    )

    return NodalCorrection(
        node=1.0 + weight * (node - 1.0),
        perigee=1.0 + weight * (perigee - 1.0),
        inclination=1.0 + weight * (inclination - 1.0),
    )
