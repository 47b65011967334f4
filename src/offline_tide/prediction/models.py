"""
Request and result models exchanged with callers of the orchestrator.

All models serialise with camelCase keys (``model_dump(by_alias=True)``)
and accept either camelCase or snake_case on input.
"""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from offline_tide.harmonics.extremes import TideEvent

Unit = Literal['m', 'ft']
Source = Literal['native', 'fallback', 'equilibrium']


class Flags:
    """Degraded-mode notices written into ``flags``."""

    MISSING_CONSTITUENTS = 'missing_constituents'
    CATALOG_DEFAULTS = 'catalog_defaults'
    DATUM_UNAVAILABLE = 'datum_unavailable'
    CALIBRATION_APPLIED = 'calibration_applied'
    MINOR_CONSTITUENTS_INFERRED = 'minor_constituents_inferred'
    CANNED_EXTREMES = 'canned_extremes'


class _Model(BaseModel):
    model_config = ConfigDict(
        frozen=True, populate_by_name=True, alias_generator=to_camel,
    )


class PredictionRequest(_Model):
    """
    Time range and presentation options for one prediction.

    ``step_minutes`` defaults to the configured step when omitted.
    """

    start_time_utc: datetime
    end_time_utc: datetime
    step_minutes: float | None = None
    tile_id: str | None = None
    datum: str | None = None
    unit: Unit = 'm'
    include_confidence: bool = False
    include_slope: bool = False
    location_id: str | None = None


class PredictionPoint(_Model):
    """One predicted level; values are expressed in the result's unit."""

    timestamp_utc: datetime
    level_meters: float
    slope_meters_per_minute: float | None = None
    lower_bound: float | None = None
    upper_bound: float | None = None


class PredictionResult(_Model):
    tile_id: str
    points: tuple[PredictionPoint, ...]
    datum: str
    unit: Unit
    source: Source
    generated_at: datetime
    flags: tuple[str, ...] = ()


class TideEventsResult(_Model):
    tile_id: str
    events: tuple[TideEvent, ...]
    datum: str
    source: Source
    generated_at: datetime
    flags: tuple[str, ...] = ()
