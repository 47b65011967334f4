"""
Tile-based prediction orchestration.

:class:`PredictionOrchestrator` ties the cache, payload decoding, model
preparation and the engine chain together.  It performs no network I/O and
no cache writes other than the access statistics updated by
``TileCache.get``.

Model preparation (:func:`build_tide_model`) applies, in order:

1. catalog speed resolution for payload constituents,
2. minor constituent inference from ``minorRules``,
3. ``localCalibration`` entries valid at the request start,
4. the ``datumTransforms`` entry from the tile datum to the requested one.

Degradations are reported through ``flags``; only structural problems
(bad request, missing tile, malformed payload) raise.
"""
from __future__ import annotations

import cmath
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone

import numpy as np
import pandas as pd
from pydantic import ValidationError

from offline_tide.exceptions import (
    EngineUnavailable,
    InvalidRequestRange,
    TileNotCached,
)
from offline_tide.harmonics.constituents import (
    Constituent,
    ConstituentCatalog,
    normalize_constituent_name,
)
from offline_tide.harmonics.extremes import (
    DEFAULT_SAMPLE_INTERVAL_MINUTES,
    canned_semidiurnal_events,
    find_extremes,
)
from offline_tide.harmonics.nodal import NodalCorrection
from offline_tide.harmonics.synthesis import envelope
from offline_tide.harmonics.timebase import to_utc_timestamp
from offline_tide.tiles.cache import TileCache
from offline_tide.tiles.models import (
    DatumTransform,
    LocalCalibration,
    MinorRule,
    TileManifest,
    TileMeta,
    TilePayload,
)
from offline_tide.tiles.packaging import decode_payload
from offline_tide.tiles.selector import select_tile
from offline_tide.utils import PredictionSettings

from .engines import (
    EQUILIBRIUM,
    FALLBACK,
    NATIVE,
    EquilibriumEngine,
    HarmonicEngine,
    PredictionEngine,
    TideModel,
    load_native_engine,
)
from .models import (
    Flags,
    PredictionPoint,
    PredictionRequest,
    PredictionResult,
    TideEventsResult,
)

logger = logging.getLogger(__name__)

FEET_PER_METER = 3.28084
LEVEL_DECIMALS = 3
SLOPE_DECIMALS = 5
DEFAULT_CONFIDENCE_M = 0.1
DEFAULT_TILE_DATUM = 'MSL'
CATALOG_DATUM = 'CD'


@dataclass(frozen=True)
class PreparedModel:
    """A :class:`TideModel` plus the bookkeeping the result needs."""

    model: TideModel
    datum: str
    flags: tuple[str, ...] = ()
    datum_uncertainty_m: float = 0.0
    rmse_m: float | None = None
    calibrations: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Model preparation
# ---------------------------------------------------------------------------

def infer_minor_constituents(
    constituents: Sequence[Constituent],
    rules: Sequence[MinorRule],
    catalog: ConstituentCatalog,
    logger: logging.Logger | None = None,
) -> list[Constituent]:
    """
    Add constituents derived from major ones.

    ``ratio`` scales the first reference: ``A = c0 * A_ref0`` with the
    reference phase.  ``inference`` sums the reference phasors:
    ``A e^{ig} = sum(c_i * A_i e^{ig_i})``.  Both then add
    ``phaseOffsetDeg``.  Rules whose target is already present, or whose
    references or target speed are unknown, are skipped.

    Returns
    -------
    list of Constituent
        Only the newly inferred constituents.
    """
    _log = logger or logging.getLogger(__name__)

    by_code = {c.code: c for c in constituents}
    inferred = []
    for rule in rules:
        target = normalize_constituent_name(rule.target)
        if target in by_code:
            continue
        refs = [by_code.get(normalize_constituent_name(r)) for r in rule.references]
        speed = catalog.speed_for(target)
        if not refs or any(r is None for r in refs) or speed is None or not rule.coefficients:
            _log.debug('Minor rule for %s skipped: references or speed unavailable.', target)
            continue

        if rule.formula == 'ratio':
            amplitude = rule.coefficients[0] * refs[0].amplitude_m
            phase = refs[0].phase_deg
        else:
            phasor = sum(
                coef * cmath.rect(ref.amplitude_m, math.radians(ref.phase_deg))
                for coef, ref in zip(rule.coefficients, refs)
            )
            amplitude = abs(phasor)
            phase = math.degrees(cmath.phase(phasor))

        constituent = Constituent(
            code=target,
            amplitude_m=float(amplitude),
            phase_deg=float((phase + rule.phase_offset_deg) % 360.0),
            speed_deg_hr=speed,
        )
        by_code[target] = constituent
        inferred.append(constituent)
    return inferred


def _calibration_applies(
    entry: LocalCalibration,
    at: pd.Timestamp,
    location_id: str | None,
) -> bool:
    if entry.location_id is not None and location_id is not None \
            and entry.location_id != location_id:
        return False
    if entry.valid_from is not None and at < to_utc_timestamp(entry.valid_from):
        return False
    if entry.valid_to is not None and at > to_utc_timestamp(entry.valid_to):
        return False
    return True


def apply_local_calibration(
    constituents: Sequence[Constituent],
    baseline: float,
    entries: Sequence[LocalCalibration],
    at: object,
    location_id: str | None = None,
) -> tuple[list[Constituent], float, list[str]]:
    """
    Merge location-specific offsets into constituents and baseline.

    An entry naming a ``constituent`` adjusts only that one; otherwise its
    amplitude scale and phase offset apply to all.  ``heightOffsetM`` is
    added to the baseline.  Entries outside ``[validFrom, validTo]`` at *at*,
    or for another location, are ignored.

    Returns
    -------
    tuple
        ``(constituents, baseline, sources)`` where *sources* lists the
        ``source`` of each applied entry.
    """
    at = to_utc_timestamp(at)
    adjusted = list(constituents)
    sources = []
    for entry in entries:
        if not _calibration_applies(entry, at, location_id):
            continue
        target = normalize_constituent_name(entry.constituent) if entry.constituent else None
        scale = entry.amplitude_scale if entry.amplitude_scale is not None else 1.0
        shift = entry.phase_offset_deg or 0.0
        adjusted = [
            Constituent(
                code=c.code,
                amplitude_m=c.amplitude_m * scale,
                phase_deg=(c.phase_deg + shift) % 360.0,
                speed_deg_hr=c.speed_deg_hr,
            )
            if target is None or c.code == target else c
            for c in adjusted
        ]
        baseline += entry.height_offset_m or 0.0
        sources.append(entry.source)
    return adjusted, baseline, sources


def find_datum_transform(
    transforms: Sequence[DatumTransform],
    source: str,
    target: str,
) -> tuple[float, float] | None:
    """
    ``(offset_m, uncertainty_m)`` taking levels from *source* to *target*.

    A transform listed in the opposite direction is used with its offset
    negated.
    """
    source, target = source.upper(), target.upper()
    for t in transforms:
        if t.from_datum.upper() == source and t.to_datum.upper() == target:
            return t.offset_m, t.uncertainty_m
    for t in transforms:
        if t.from_datum.upper() == target and t.to_datum.upper() == source:
            return -t.offset_m, t.uncertainty_m
    return None


def build_tide_model(
    payload: TilePayload,
    request: PredictionRequest,
    catalog: ConstituentCatalog,
    source_datum: str | None = None,
    logger: logging.Logger | None = None,
) -> PreparedModel:
    """
    Turn a decoded tile payload into an engine-ready model.

    Payload constituents oscillate about the tile datum, so the baseline
    starts at 0 and picks up calibration height offsets and the datum
    transform to the requested datum.  Saturation bounds are the
    theoretical envelope of the final constituent set.

    Parameters
    ----------
    payload : TilePayload
        Decoded tile contents.
    request : PredictionRequest
        Supplies the requested datum, location and the instant used to
        check calibration validity.
    catalog : ConstituentCatalog
        Speed lookup for constituents and minor rules.
    source_datum : str, optional
        Datum of the tile (from its manifest entry); defaults to ``MSL``.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.
    """
    _log = logger or logging.getLogger(__name__)
    source_datum = source_datum or DEFAULT_TILE_DATUM
    flags: list[str] = []

    constituents = payload.resolve_constituents(catalog, _log)
    if len(constituents) < len(payload.constituents) or not constituents:
        flags.append(Flags.MISSING_CONSTITUENTS)

    if payload.minor_rules and constituents:
        inferred = infer_minor_constituents(constituents, payload.minor_rules, catalog, _log)
        if inferred:
            constituents.extend(inferred)
            flags.append(Flags.MINOR_CONSTITUENTS_INFERRED)
            _log.debug('Inferred %s.', ', '.join(c.code for c in inferred))

    baseline = 0.0
    sources: list[str] = []
    if payload.local_calibration:
        constituents, baseline, sources = apply_local_calibration(
            constituents, baseline, payload.local_calibration,
            request.start_time_utc, request.location_id,
        )
        if sources:
            flags.append(Flags.CALIBRATION_APPLIED)

    datum = source_datum
    uncertainty = 0.0
    if request.datum and request.datum.upper() != source_datum.upper():
        transform = find_datum_transform(
            payload.datum_transforms or (), source_datum, request.datum,
        )
        if transform is None:
            flags.append(Flags.DATUM_UNAVAILABLE)
            _log.warning(
                'Tile %s: no transform from %s to %s; returning %s.',
                payload.tile_id, source_datum, request.datum, source_datum,
            )
        else:
            offset, uncertainty = transform
            baseline += offset
            datum = request.datum

    constituents = tuple(constituents)
    bounds = envelope(constituents, NodalCorrection(), baseline) if constituents else None

    rmse = None
    if payload.stats is not None:
        values = [v for v in (payload.stats.rmse_high, payload.stats.rmse_low) if v is not None]
        rmse = max(values) if values else None

    return PreparedModel(
        model=TideModel(constituents=constituents, baseline=baseline, bounds=bounds),
        datum=datum,
        flags=tuple(flags),
        datum_uncertainty_m=uncertainty,
        rmse_m=rmse,
        calibrations=tuple(sources),
    )


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class PredictionOrchestrator:
    """
    Produce predictions for cached tiles.

    Parameters
    ----------
    cache : TileCache
        Source of tile payloads.
    catalog : ConstituentCatalog, optional
        Constituent speeds and regional defaults.
    native_engine : PredictionEngine, optional
        High-performance engine tried before the portable one.  When
        omitted, ``settings.native_engine`` is imported if set.
    settings : PredictionSettings, optional
        Step default and point limit.
    clock : callable, optional
        Returns the current UTC time, used for ``generatedAt``.
    logger : logging.Logger, optional
        Logger instance for diagnostic messages.
    """

    def __init__(
        self,
        cache: TileCache,
        catalog: ConstituentCatalog | None = None,
        native_engine: PredictionEngine | None = None,
        settings: PredictionSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ):
        self._log = logger or logging.getLogger(__name__)
        self.cache = cache
        self.catalog = catalog or ConstituentCatalog()
        self.settings = settings or PredictionSettings()
        if native_engine is None:
            native_engine = load_native_engine(self.settings.native_engine, self._log)
        self._engines: list[tuple[str, PredictionEngine]] = [
            (FALLBACK, HarmonicEngine()),
            (EQUILIBRIUM, EquilibriumEngine()),
        ]
        if native_engine is not None:
            self._engines.insert(0, (NATIVE, native_engine))
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def _coerce_request(self, request: PredictionRequest | dict) -> PredictionRequest:
        if isinstance(request, PredictionRequest):
            return request
        try:
            return PredictionRequest.model_validate(request)
        except ValidationError as exc:
            raise InvalidRequestRange(f"Invalid prediction request: {exc}") from exc

    def _sample_times(self, start: object, end: object, step_minutes: float) -> pd.DatetimeIndex:
        """Validate a range and return its sample instants."""
        if step_minutes is None or not math.isfinite(step_minutes) or step_minutes <= 0:
            raise InvalidRequestRange(f"Step must be a positive number of minutes, got {step_minutes}.")
        try:
            start = to_utc_timestamp(start)
            end = to_utc_timestamp(end)
        except (ValueError, TypeError) as exc:
            raise InvalidRequestRange(f"Invalid time range: {exc}") from exc
        if end < start:
            raise InvalidRequestRange(f"End {end} is before start {start}.")

        step = pd.Timedelta(minutes=step_minutes)
        if step <= pd.Timedelta(0):
            raise InvalidRequestRange(f"Step of {step_minutes} minutes is below the clock resolution.")
        count = int((end - start) / step) + 1
        if count > self.settings.max_points:
            raise InvalidRequestRange(
                f"Request spans {count} points; the limit is {self.settings.max_points}."
            )
        return pd.date_range(start, periods=count, freq=step)

    def _load_payload(self, tile_id: str) -> TilePayload:
        record = self.cache.get(tile_id)
        if record is None:
            raise TileNotCached(tile_id)
        return decode_payload(record.compressed_payload)

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    def _synthesize(self, model: TideModel, times: pd.DatetimeIndex) -> tuple[np.ndarray, str]:
        for source, engine in self._engines:
            supports = getattr(engine, 'supports', None)
            if supports is not None and not supports(model):
                continue
            try:
                levels = np.asarray(engine.synthesize(model, times), dtype=float)
            except EngineUnavailable as exc:
                self._log.debug('%s engine unavailable: %s', source, exc)
                continue
            except Exception as exc:
                self._log.warning('%s engine failed (%s); falling back.', source, exc)
                continue
            if levels.shape != (len(times),) or not np.all(np.isfinite(levels)):
                self._log.warning('%s engine returned unusable output; falling back.', source)
                continue
            return levels, source
        raise EngineUnavailable('No prediction engine could serve the request.')

    def _result(
        self,
        tile_id: str,
        request: PredictionRequest,
        prepared: PreparedModel,
        times: pd.DatetimeIndex,
        extra_flags: Sequence[str] = (),
    ) -> PredictionResult:
        levels, source = self._synthesize(prepared.model, times)

        scale = FEET_PER_METER if request.unit == 'ft' else 1.0
        values = levels * scale
        step = self._step(request)

        slopes = None
        if request.include_slope:
            if len(values) > 1:
                slopes = np.diff(values) / step
                slopes = np.concatenate([slopes[:1], slopes])
            else:
                slopes = np.zeros(len(values))

        half_width = None
        if request.include_confidence:
            base = prepared.rmse_m if prepared.rmse_m is not None else DEFAULT_CONFIDENCE_M
            half_width = (base + prepared.datum_uncertainty_m) * scale

        points = []
        for i, ts in enumerate(times):
            value = round(float(values[i]), LEVEL_DECIMALS)
            points.append(PredictionPoint(
                timestamp_utc=ts.to_pydatetime(),
                level_meters=value,
                slope_meters_per_minute=(
                    round(float(slopes[i]), SLOPE_DECIMALS) if slopes is not None else None
                ),
                lower_bound=(
                    round(value - half_width, LEVEL_DECIMALS) if half_width is not None else None
                ),
                upper_bound=(
                    round(value + half_width, LEVEL_DECIMALS) if half_width is not None else None
                ),
            ))

        flags = list(prepared.flags) + [f for f in extra_flags if f not in prepared.flags]
        if source == EQUILIBRIUM and Flags.MISSING_CONSTITUENTS not in flags:
            flags.append(Flags.MISSING_CONSTITUENTS)

        self._log.info(
            'Predicted %d points for %s via %s engine (flags: %s).',
            len(points), tile_id, source, ', '.join(flags) or 'none',
        )
        return PredictionResult(
            tile_id=tile_id,
            points=tuple(points),
            datum=prepared.datum,
            unit=request.unit,
            source=source,
            generated_at=self._clock(),
            flags=tuple(flags),
        )

    def _step(self, request: PredictionRequest) -> float:
        if request.step_minutes is None:
            return self.settings.default_step_minutes
        return request.step_minutes

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def predict(
        self,
        tile_id: str,
        request: PredictionRequest | dict,
        meta: TileMeta | None = None,
    ) -> PredictionResult:
        """
        Predict levels for a cached tile.

        Parameters
        ----------
        tile_id : str
            Tile to load from the cache.
        request : PredictionRequest or dict
            Time range and options.
        meta : TileMeta, optional
            Manifest entry of the tile; supplies the tile datum.

        Raises
        ------
        InvalidRequestRange
            Before any cache access, if the range or step is invalid.
        TileNotCached
            If the tile is not in the cache (or was corrupt).
        MalformedPayload
            If the cached blob does not decode.
        """
        request = self._coerce_request(request)
        times = self._sample_times(
            request.start_time_utc, request.end_time_utc, self._step(request),
        )
        payload = self._load_payload(tile_id)
        prepared = build_tide_model(
            payload, request, self.catalog,
            source_datum=meta.datum if meta else None, logger=self._log,
        )
        return self._result(tile_id, request, prepared, times)

    def predict_extremes(
        self,
        tile_id: str,
        start: object,
        end: object,
        sample_interval_minutes: float = DEFAULT_SAMPLE_INTERVAL_MINUTES,
        meta: TileMeta | None = None,
    ) -> TideEventsResult:
        """
        High/low water events for a cached tile.

        When no event is found (flat series, missing constituents) the
        canned semidiurnal pattern is returned with ``canned_extremes``.
        """
        times = self._sample_times(start, end, sample_interval_minutes)
        if times[0] == to_utc_timestamp(end):
            raise InvalidRequestRange(f"Extremes window end {end} must be after start {start}.")
        payload = self._load_payload(tile_id)
        request = PredictionRequest(start_time_utc=start, end_time_utc=end)
        prepared = build_tide_model(
            payload, request, self.catalog,
            source_datum=meta.datum if meta else None, logger=self._log,
        )
        model = prepared.model
        flags = list(prepared.flags)

        events = find_extremes(
            model.constituents, (start, end),
            sample_interval_minutes=sample_interval_minutes,
            baseline=model.baseline, bounds=model.bounds, logger=self._log,
        )
        source = FALLBACK
        if not events:
            low, high = model.bounds or envelope((), NodalCorrection(), model.baseline)
            events = canned_semidiurnal_events((start, end), high, low)
            source = EQUILIBRIUM
            flags.append(Flags.CANNED_EXTREMES)
            self._log.warning('Tile %s: no extrema found; using canned pattern.', tile_id)

        return TideEventsResult(
            tile_id=tile_id,
            events=tuple(events),
            datum=prepared.datum,
            source=source,
            generated_at=self._clock(),
            flags=tuple(flags),
        )

    def predict_for_location(
        self,
        manifest: TileManifest,
        lat: float,
        lon: float,
        request: PredictionRequest | dict,
    ) -> PredictionResult:
        """
        Predict for a coordinate, falling back to regional defaults.

        The tile is chosen with :func:`select_tile`.  If it is not cached,
        the catalog's regional constituents are used instead (relative to
        chart datum) and ``catalog_defaults`` is flagged.
        """
        request = self._coerce_request(request)
        times = self._sample_times(
            request.start_time_utc, request.end_time_utc, self._step(request),
        )

        meta = select_tile(manifest, lat, lon, logger=self._log)
        if meta is not None:
            try:
                return self.predict(meta.tile_id, request, meta=meta)
            except TileNotCached:
                self._log.warning(
                    'Tile %s not cached; using regional defaults for (%.4f, %.4f).',
                    meta.tile_id, lat, lon,
                )

        region = self.catalog.region_for(lat, lon)
        flags = [Flags.CATALOG_DEFAULTS]
        if request.datum and request.datum.upper() != CATALOG_DATUM:
            flags.append(Flags.DATUM_UNAVAILABLE)

        prepared = PreparedModel(
            model=TideModel(
                constituents=tuple(self.catalog.default_constituents(region)),
                baseline=self.catalog.baseline_for(region),
                bounds=self.catalog.bounds_for(region),
            ),
            datum=CATALOG_DATUM,
        )
        tile_id = meta.tile_id if meta is not None else f'catalog:{region}'
        return self._result(tile_id, request, prepared, times, extra_flags=flags)
