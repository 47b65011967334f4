"""
Constituent catalog: speeds, name aliases, nodal groups and regional defaults.

Speeds are physical constants per named constituent (Schureman 1958, SP98,
Table 2) and never vary by location.  Amplitudes and phases do; the
regional tables below are the defaults used when a location has no
calibrated tile in the offline cache.

Phases in this package follow the synthesis convention
``A * cos(speed * t + phase)`` with *t* in hours since 2000-01-01T00:00Z.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constituent angular speeds in degrees per hour.
# ---------------------------------------------------------------------------

CONSTITUENT_SPEEDS: dict[str, float] = {
    # Semidiurnal
    'M2':   28.9841042,
    'S2':   30.0000000,
    'N2':   28.4397295,
    'K2':   30.0821373,
    '2N2':  27.8953548,
    'MU2':  27.9682084,
    'NU2':  28.5125831,
    'L2':   29.5284789,
    'T2':   29.9589333,
    'R2':   30.0410667,
    'LDA2': 29.4556253,
    # Diurnal
    'K1':   15.0410686,
    'O1':   13.9430356,
    'P1':   14.9589314,
    'Q1':   13.3986609,
    'J1':   15.5854433,
    'M1':   14.4966939,
    'OO1':  16.1391017,
    '2Q1':  12.8542862,
    'RHO1': 13.4715145,
    'SIGMA1': 12.9271398,
    # Long-period
    'MF':    1.0980331,
    'MM':    0.5443747,
    'SSA':   0.0821373,
    'SA':    0.0410686,
    'MSM':   0.4715211,
    'MSF':   1.0158958,
    # Shallow-water / overtides
    'M3':   43.4761563,
    'M4':   57.9682084,
    'M6':   86.9523127,
    'M8':  115.9364169,
    'MS4':  58.9841042,
    'MN4':  57.4238337,
    'MK3':  44.0251729,
    'S4':   60.0000000,
    'S6':   90.0000000,
    '2MK3': 42.9271398,
    '2SM2': 31.0158958,
    'MO3':  42.9271398,
    '2MS6': 87.9682084,
    '2MK6': 88.9523127,
}
"""Angular speeds (degrees/hour) keyed by canonical constituent code."""

# Alternate spellings seen in tile payloads and third-party tables.  Codes
# that are already canonical are not listed; normalization upper-cases first.
CONSTITUENT_ALIASES: dict[str, str] = {
    'LAM2': 'LDA2',
    'LAMBDA2': 'LDA2',
    'Λ2': 'LDA2',
    'RHO': 'RHO1',
    'Ρ1': 'RHO1',
    'Ν2': 'NU2',
    'Μ2': 'MU2',
    'Σ1': 'SIGMA1',
}
"""Mapping of alternate constituent names to canonical codes."""

# Which slowly-varying astronomical cycle modulates each constituent's
# amplitude.  Solar constituents (S2, P1, ...) are absent: factor 1.0.
NODAL_GROUPS: dict[str, str] = {
    'M2': 'node',
    'N2': 'node',
    '2N2': 'node',
    'NU2': 'node',
    'MU2': 'node',
    'LDA2': 'node',
    'L2': 'node',
    'M4': 'node',
    'MN4': 'node',
    'MS4': 'node',
    'M6': 'node',
    'M8': 'node',
    'O1': 'perigee',
    'Q1': 'perigee',
    '2Q1': 'perigee',
    'RHO1': 'perigee',
    'SIGMA1': 'perigee',
    'K1': 'inclination',
    'K2': 'inclination',
    'J1': 'inclination',
    'OO1': 'inclination',
    'MF': 'inclination',
    'MM': 'inclination',
}
"""Nodal cycle (``node``, ``perigee``, ``inclination``) per constituent."""


def normalize_constituent_name(name: str) -> str:
    """
    Normalize a constituent name to the canonical catalog code.

    Parameters
    ----------
    name : str
        Constituent name as found in a payload (``"Mf"``, ``"LAM2"``, ...).

    Returns
    -------
    str
        Canonical code.  Unknown names are returned stripped and
        upper-cased.
    """
    cleaned = name.strip().upper()
    return CONSTITUENT_ALIASES.get(cleaned, cleaned)


@dataclass(frozen=True)
class Constituent:
    """One resolved tidal constituent for a location."""

    code: str
    amplitude_m: float
    phase_deg: float
    speed_deg_hr: float


@dataclass(frozen=True)
class RegionProfile:
    """Default constituents and tidal range for one macro-region."""

    name: str
    mean_high_water: float
    mean_low_water: float
    constituents: tuple[tuple[str, float, float], ...]

    @property
    def baseline(self) -> float:
        """Mean of mean-high and mean-low water."""
        return (self.mean_high_water + self.mean_low_water) / 2.0


# (code, amplitude m, phase deg) per region.
REGIONS: dict[str, RegionProfile] = {
    'gulf_of_thailand': RegionProfile(
        name='gulf_of_thailand',
        mean_high_water=1.85,
        mean_low_water=0.35,
        constituents=(
            ('M2', 0.42, 188.0),
            ('S2', 0.18, 176.0),
            ('N2', 0.07, 170.0),
            ('K1', 0.48, 118.0),
            ('O1', 0.36, 110.0),
            ('P1', 0.17, 115.0),
            ('Q1', 0.08, 104.0),
            ('M4', 0.09, 92.0),
            ('MS4', 0.05, 96.0),
        ),
    ),
    'andaman_sea': RegionProfile(
        name='andaman_sea',
        mean_high_water=2.95,
        mean_low_water=0.25,
        constituents=(
            ('M2', 0.90, 205.0),
            ('S2', 0.44, 198.0),
            ('N2', 0.20, 192.0),
            ('K2', 0.13, 200.0),
            ('K1', 0.42, 126.0),
            ('O1', 0.30, 115.0),
            ('P1', 0.14, 120.0),
            ('Q1', 0.06, 108.0),
            ('M4', 0.07, 102.0),
            ('MS4', 0.04, 104.0),
        ),
    ),
}
"""Macro-region default profiles."""

DEFAULT_REGION = 'gulf_of_thailand'


class ConstituentCatalog:
    """
    Read-only lookup over the constituent tables.

    Instances are constructed explicitly and passed to the components that
    need them; the tables can be extended per instance without touching
    the module-level defaults.
    """

    def __init__(
        self,
        speeds: dict[str, float] | None = None,
        regions: dict[str, RegionProfile] | None = None,
    ):
        self._speeds = dict(CONSTITUENT_SPEEDS if speeds is None else speeds)
        self._regions = dict(REGIONS if regions is None else regions)

    def __contains__(self, code: str) -> bool:
        return normalize_constituent_name(code) in self._speeds

    def speed_for(self, code: str) -> float | None:
        """Return the speed (deg/h) for *code*, or ``None`` if unknown."""
        return self._speeds.get(normalize_constituent_name(code))

    def region_for(self, lat: float, lon: float) -> str:
        """
        Pick the macro-region for a coordinate.

        West of 99 E between 5 N and 15 N is the Andaman Sea; everything
        else uses the Gulf of Thailand profile.
        """
        if lon < 99.0 and 5.0 < lat < 15.0 and 'andaman_sea' in self._regions:
            return 'andaman_sea'
        return DEFAULT_REGION

    def profile(self, region: str) -> RegionProfile:
        try:
            return self._regions[region]
        except KeyError:
            raise ValueError(f"Unknown region '{region}'.") from None

    def default_constituents(self, region: str) -> list[Constituent]:
        """Return the default constituent set for *region*."""
        profile = self.profile(region)
        return [
            Constituent(
                code=code,
                amplitude_m=amplitude,
                phase_deg=phase,
                speed_deg_hr=self._speeds[code],
            )
            for code, amplitude, phase in profile.constituents
        ]

    def baseline_for(self, region: str) -> float:
        return self.profile(region).baseline

    def bounds_for(self, region: str) -> tuple[float, float]:
        profile = self.profile(region)
        return profile.mean_low_water, profile.mean_high_water
