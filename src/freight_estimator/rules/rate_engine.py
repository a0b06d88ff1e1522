# src/freight_estimator/rules/rate_engine.py
"""Ocean freight rate aggregation.

Blends the available core freight indices into a base rate, adjusts it with
charter and demand modifiers, the intra-Asia blend and seasonality, adds the
fuel surcharge and reports a reliability score with a min/max range.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from ..connectors.index_sources import FetchOutcome, IndexReading, IndexSourceRegistry, Provenance
from .containers import ContainerType
from .index_catalog import IndexCatalog, IndexCategory, IndexId
from .regions import INTRA_ASIA_REGIONS, UNKNOWN_REGION, is_intra_asia
from .statistics import mean, round_half_up, standard_deviation, weighted_mean

logger = logging.getLogger(__name__)

SYNTHETIC_SOURCE = "Base calculation fallback"
ERROR_SOURCE = "Error Fallback"
SEASONALITY_SOURCE = "Seasonality"
FUEL_SOURCE = "Fuel Surcharge"


# -------------------------------
# Debug trace
# -------------------------------

class Stage(str, Enum):
    FETCH_INDEX = "fetch_index"
    CORE_RATE = "core_rate"
    SYNTHETIC_RATE = "synthetic_rate"
    REGIONS = "regions"
    CHARTER_MODIFIER = "charter_modifier"
    DEMAND_MODIFIER = "demand_modifier"
    INTRA_ASIA_BLEND = "intra_asia_blend"
    SEASONALITY = "seasonality"
    FUEL_SURCHARGE = "fuel_surcharge"
    RELIABILITY = "reliability"
    RANGE = "range"
    ERROR = "error"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FALLBACK = "fallback"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class DebugStep:
    stage: Stage
    inputs: Dict[str, Any]
    result: Any = None
    status: StepStatus = StepStatus.SUCCESS
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "stage": self.stage.value,
            "inputs": self.inputs,
            "result": self.result,
            "status": self.status.value,
        }
        if self.error:
            payload["error"] = self.error
        return payload


Steps = Tuple[DebugStep, ...]


# -------------------------------
# Configuration & result
# -------------------------------

@dataclass(frozen=True)
class EngineConfig:
    catalog: IndexCatalog
    charter_band: Tuple[float, float] = (0.8, 1.2)
    demand_band: Tuple[float, float] = (0.9, 1.1)
    intra_asia_regions: FrozenSet[str] = INTRA_ASIA_REGIONS
    blend_core_weight: float = 1.0
    reliability_base: float = 0.7
    reliability_per_source: float = 0.05
    reliability_source_cap: float = 0.2
    dispersion_penalty: float = 0.5
    min_reliability: float = 0.4
    max_reliability: float = 1.0
    spread_base: float = 0.10
    spread_per_unreliability: float = 0.10
    synthetic_low: int = 1500
    synthetic_high: int = 3000
    fallback_reliability: float = 0.5
    error_reliability: float = 0.4

    def __post_init__(self) -> None:
        if not 0 <= self.min_reliability <= self.max_reliability <= 1:
            raise ValueError("reliability band must satisfy 0 <= min <= max <= 1")
        if self.synthetic_high <= self.synthetic_low:
            raise ValueError("synthetic rate band is empty")

    @classmethod
    def from_settings(cls, catalog: IndexCatalog, settings: Any) -> "EngineConfig":
        return cls(
            catalog=catalog,
            min_reliability=settings.min_reliability,
            max_reliability=settings.max_reliability,
        )

    def band(self, category: IndexCategory) -> Tuple[float, float]:
        if category is IndexCategory.CHARTER:
            return self.charter_band
        if category is IndexCategory.DEMAND:
            return self.demand_band
        raise ValueError(f"{category.value} is not a modifier category")

    def clamp_reliability(self, value: float) -> float:
        return min(self.max_reliability, max(self.min_reliability, value))


@dataclass
class AggregationResult:
    rate: float
    min_rate: float
    max_rate: float
    fuel_surcharge: float
    final_rate: float
    reliability: float
    source_count: int
    sources_used: List[str]
    debug_log: Optional[List[DebugStep]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "rate": self.rate,
            "min_rate": self.min_rate,
            "max_rate": self.max_rate,
            "fuel_surcharge": self.fuel_surcharge,
            "final_rate": self.final_rate,
            "reliability": self.reliability,
            "source_count": self.source_count,
            "sources_used": list(self.sources_used),
        }
        if self.debug_log is not None:
            payload["debug_log"] = [s.to_dict() for s in self.debug_log]
        if self.error is not None:
            payload["error"] = self.error
        return payload


# -------------------------------
# Pure helpers
# -------------------------------

def string_hash(text: str) -> int:
    """Non-negative 32-bit shift-and-subtract hash (``h * 31 + c`` with int32 wraparound)."""

    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return abs(h)


def synthetic_base_rate(origin: str, destination: str, container_type: str, low: int = 1500, high: int = 3000) -> float:
    """Deterministic placeholder rate in ``[low, high)`` for a lane without index data."""

    return float(low + string_hash(f"{origin}-{destination}-{container_type}") % (high - low))


@dataclass
class _Lane:
    origin: str
    destination: str
    container: ContainerType
    weight: int


@dataclass
class _Tally:
    """Contributions collected while the rate is being built."""

    core_values: List[float] = field(default_factory=list)
    sources_used: List[str] = field(default_factory=list)


class RateAggregationEngine:
    def __init__(
        self,
        sources: IndexSourceRegistry,
        regions: Any,
        seasonality: Any,
        fuel: Any,
        config: EngineConfig,
        today: Callable[[], date] = date.today,
    ):
        self.sources = sources
        self.regions = regions
        self.seasonality = seasonality
        self.fuel = fuel
        self.config = config
        self._today = today

    # ---------- input ----------

    @staticmethod
    def _validate(origin: str, destination: str, container_type: Any, weight: Any) -> _Lane:
        origin = (origin or "").strip().upper()
        destination = (destination or "").strip().upper()
        if not origin or not destination:
            raise ValueError("origin and destination ports are required")
        container = ContainerType.parse(container_type)
        if isinstance(weight, float) and not weight.is_integer():
            raise ValueError(f"weight must be a whole number of kg, got {weight!r}")
        try:
            weight = int(weight)
        except (TypeError, ValueError):
            raise ValueError(f"weight must be an integer, got {weight!r}") from None
        if weight <= 0:
            raise ValueError("weight must be positive")
        return _Lane(origin, destination, container, weight)

    # ---------- stages ----------

    @staticmethod
    def _fetch_steps(outcomes: Dict[IndexId, FetchOutcome]) -> Steps:
        steps = []
        for index_id, outcome in outcomes.items():
            reading = outcome.reading
            if reading is None:
                status = StepStatus.FAILED
            elif reading.provenance is Provenance.FALLBACK_SEARCH:
                status = StepStatus.FALLBACK
            else:
                status = StepStatus.SUCCESS
            errors = [e for e in (outcome.primary_error, outcome.fallback_error) if e]
            steps.append(
                DebugStep(
                    Stage.FETCH_INDEX,
                    {"index": index_id.value, "fallback_attempted": outcome.fallback_attempted},
                    None if reading is None else {
                        "value": reading.current_value,
                        "change": reading.change,
                        "as_of": reading.as_of.isoformat(),
                        "provenance": reading.provenance.value,
                    },
                    status,
                    "; ".join(errors) or None,
                )
            )
        return tuple(steps)

    def _core_rate(self, readings: Dict[IndexId, IndexReading]) -> Tuple[Optional[float], List[Tuple[str, float]], Steps]:
        used = [
            (spec.index_id.value, readings[spec.index_id].current_value, spec.weight)
            for spec in self.config.catalog.core
            if spec.index_id in readings
        ]
        inputs = {name: {"value": v, "weight": w} for name, v, w in used}
        if not used:
            return None, [], (DebugStep(Stage.CORE_RATE, inputs, None, StepStatus.FAILED, "no core index data"),)

        rate = round_half_up(weighted_mean((v, w) for _, v, w in used))
        return rate, [(name, v) for name, v, _ in used], (DebugStep(Stage.CORE_RATE, inputs, rate),)

    def _synthetic_rate(self, lane: _Lane) -> Tuple[float, Steps]:
        rate = synthetic_base_rate(
            lane.origin, lane.destination, lane.container.value,
            self.config.synthetic_low, self.config.synthetic_high,
        )
        step = DebugStep(
            Stage.SYNTHETIC_RATE,
            {"origin": lane.origin, "destination": lane.destination, "container_type": lane.container.value},
            rate,
            StepStatus.FALLBACK,
        )
        return rate, (step,)

    def _resolve_regions(self, lane: _Lane) -> Tuple[Tuple[str, str], Steps]:
        inputs = {"origin": lane.origin, "destination": lane.destination}
        try:
            regions = (self.regions.region_of(lane.origin), self.regions.region_of(lane.destination))
        except Exception as e:
            logger.warning(f"Region lookup failed for {lane.origin}->{lane.destination}: {e}")
            return (UNKNOWN_REGION, UNKNOWN_REGION), (
                DebugStep(Stage.REGIONS, inputs, [UNKNOWN_REGION, UNKNOWN_REGION], StepStatus.FAILED, str(e)),
            )
        return regions, (DebugStep(Stage.REGIONS, inputs, list(regions)),)

    def _modifier(
        self, category: IndexCategory, readings: Dict[IndexId, IndexReading]
    ) -> Tuple[float, List[str], Steps]:
        """Clamped product of ``1 + w * (v - b) / b`` over the category's available indices."""

        stage = Stage.CHARTER_MODIFIER if category is IndexCategory.CHARTER else Stage.DEMAND_MODIFIER
        factor = 1.0
        applied: List[str] = []
        inputs: Dict[str, Any] = {}
        for spec in self.config.catalog.in_category(category):
            reading = readings.get(spec.index_id)
            if reading is None:
                continue
            factor *= 1 + spec.weight * (reading.current_value - spec.baseline) / spec.baseline
            applied.append(spec.index_id.value)
            inputs[spec.index_id.value] = {
                "value": reading.current_value,
                "baseline": spec.baseline,
                "weight": spec.weight,
            }

        if not applied:
            return 1.0, [], (DebugStep(stage, inputs, 1.0, StepStatus.SKIPPED),)

        low, high = self.config.band(category)
        clamped = min(high, max(low, factor))
        inputs["raw_factor"] = factor
        return clamped, applied, (DebugStep(stage, inputs, clamped),)

    def _intra_asia_blend(
        self, rate: float, regions: Tuple[str, str], readings: Dict[IndexId, IndexReading]
    ) -> Tuple[float, bool, Steps]:
        specs = self.config.catalog.in_category(IndexCategory.INTRA_ASIA)
        inputs: Dict[str, Any] = {"rate": rate, "origin_region": regions[0], "destination_region": regions[1]}
        if not specs:
            return rate, False, (DebugStep(Stage.INTRA_ASIA_BLEND, inputs, rate, StepStatus.SKIPPED, "no intra-Asia index configured"),)
        spec = specs[0]
        if not is_intra_asia(regions[0], regions[1], self.config.intra_asia_regions):
            return rate, False, (DebugStep(Stage.INTRA_ASIA_BLEND, inputs, rate, StepStatus.SKIPPED, "not an intra-Asia lane"),)
        reading = readings.get(spec.index_id)
        if reading is None:
            return rate, False, (DebugStep(Stage.INTRA_ASIA_BLEND, inputs, rate, StepStatus.SKIPPED, f"no {spec.index_id.value} data"),)

        core_w = self.config.blend_core_weight
        blended = (rate * core_w + reading.current_value * spec.weight) / (core_w + spec.weight)
        inputs.update({"value": reading.current_value, "weight": spec.weight})
        return blended, True, (DebugStep(Stage.INTRA_ASIA_BLEND, inputs, blended),)

    def _seasonality(self, rate: float, regions: Tuple[str, str]) -> Tuple[float, float, Steps]:
        month = self._today().month
        inputs = {"rate": rate, "origin_region": regions[0], "destination_region": regions[1], "month": month}
        try:
            found = self.seasonality.factor_for(regions[0], regions[1], month)
        except Exception as e:
            logger.warning(f"Seasonality lookup failed: {e}")
            return rate, 1.0, (DebugStep(Stage.SEASONALITY, inputs, 1.0, StepStatus.FAILED, str(e)),)

        if found is None or found.factor is None or found.factor <= 0:
            return rate, 1.0, (DebugStep(Stage.SEASONALITY, inputs, 1.0, StepStatus.SKIPPED),)

        inputs["confidence"] = found.confidence
        adjusted = round_half_up(rate * found.factor)
        return adjusted, float(found.factor), (DebugStep(Stage.SEASONALITY, inputs, found.factor),)

    def _fuel_surcharge(self, lane: _Lane) -> Tuple[float, Steps]:
        inputs = {"origin": lane.origin, "destination": lane.destination, "container_type": lane.container.value}
        try:
            found = self.fuel.surcharge_for(lane.origin, lane.destination, lane.container)
        except Exception as e:
            logger.warning(f"Fuel surcharge failed for {lane.origin}->{lane.destination}: {e}")
            return 0.0, (DebugStep(Stage.FUEL_SURCHARGE, inputs, 0.0, StepStatus.FAILED, str(e)),)

        if found is None or not found.surcharge or found.surcharge < 0:
            return 0.0, (DebugStep(Stage.FUEL_SURCHARGE, inputs, 0.0, StepStatus.SKIPPED),)

        inputs.update({
            "fuel_type": found.fuel_type,
            "fuel_price": found.fuel_price,
            "distance_km": found.distance_km,
            "container_factor": found.container_factor,
        })
        return float(found.surcharge), (DebugStep(Stage.FUEL_SURCHARGE, inputs, found.surcharge),)

    def _reliability(self, core_values: List[float]) -> Tuple[float, Steps]:
        cfg = self.config
        n = len(core_values)
        avg = mean(core_values)
        dispersion = standard_deviation(core_values) / avg if avg > 0 else 0.0
        raw = (
            cfg.reliability_base
            + min(n * cfg.reliability_per_source, cfg.reliability_source_cap)
            - cfg.dispersion_penalty * dispersion
        )
        reliability = round_half_up(cfg.clamp_reliability(raw), 2)
        inputs = {"core_sources": n, "relative_std_dev": dispersion, "raw": raw}
        return reliability, (DebugStep(Stage.RELIABILITY, inputs, reliability),)

    def _range(self, rate: float, reliability: float) -> Tuple[Tuple[float, float], Steps]:
        spread = self.config.spread_base + (1 - reliability) * self.config.spread_per_unreliability
        low = min(rate, round_half_up(rate * (1 - spread)))
        high = max(rate, round_half_up(rate * (1 + spread)))
        step = DebugStep(Stage.RANGE, {"rate": rate, "reliability": reliability, "spread": spread}, [low, high])
        return (low, high), (step,)

    # ---------- orchestration ----------

    async def _aggregate(self, lane: _Lane, trace: List[DebugStep]) -> AggregationResult:
        catalog = self.config.catalog
        outcomes = await self.sources.fetch_all(catalog.index_ids)
        trace.extend(self._fetch_steps(outcomes))
        readings = {i: o.reading for i, o in outcomes.items() if o.reading is not None}

        rate, core_used, steps = self._core_rate(readings)
        trace.extend(steps)

        if rate is None:
            rate, steps = self._synthetic_rate(lane)
            trace.extend(steps)
            surcharge, steps = self._fuel_surcharge(lane)
            trace.extend(steps)
            reliability = self.config.clamp_reliability(self.config.fallback_reliability)
            (low, high), steps = self._range(rate, reliability)
            trace.extend(steps)
            logger.warning(f"No core index data for {lane.origin}->{lane.destination}, using synthetic rate {rate}")
            return AggregationResult(
                rate=rate,
                min_rate=low,
                max_rate=high,
                fuel_surcharge=surcharge,
                final_rate=round_half_up(rate + surcharge),
                reliability=reliability,
                source_count=0,
                sources_used=[SYNTHETIC_SOURCE],
            )

        tally = _Tally(core_values=[v for _, v in core_used], sources_used=[name for name, _ in core_used])

        regions, steps = self._resolve_regions(lane)
        trace.extend(steps)

        for category in (IndexCategory.CHARTER, IndexCategory.DEMAND):
            factor, applied, steps = self._modifier(category, readings)
            trace.extend(steps)
            rate *= factor
            tally.sources_used.extend(applied)

        rate, blended, steps = self._intra_asia_blend(rate, regions, readings)
        trace.extend(steps)
        rate = round_half_up(rate)
        if blended:
            tally.sources_used.append(IndexId.ISTFIX.value)

        rate, factor, steps = self._seasonality(rate, regions)
        trace.extend(steps)
        if factor != 1.0:
            tally.sources_used.append(SEASONALITY_SOURCE)

        surcharge, steps = self._fuel_surcharge(lane)
        trace.extend(steps)
        if surcharge > 0:
            tally.sources_used.append(FUEL_SOURCE)

        reliability, steps = self._reliability(tally.core_values)
        trace.extend(steps)

        (low, high), steps = self._range(rate, reliability)
        trace.extend(steps)

        return AggregationResult(
            rate=rate,
            min_rate=low,
            max_rate=high,
            fuel_surcharge=surcharge,
            final_rate=round_half_up(rate + surcharge),
            reliability=reliability,
            source_count=len(tally.core_values),
            sources_used=tally.sources_used,
        )

    def _error_result(self, lane: _Lane, error: Exception, trace: List[DebugStep]) -> AggregationResult:
        trace.append(DebugStep(Stage.ERROR, {"origin": lane.origin, "destination": lane.destination}, None, StepStatus.FAILED, str(error)))
        rate, steps = self._synthetic_rate(lane)
        trace.extend(steps)
        surcharge, steps = self._fuel_surcharge(lane)
        trace.extend(steps)
        reliability = self.config.clamp_reliability(self.config.error_reliability)
        (low, high), steps = self._range(rate, reliability)
        trace.extend(steps)
        return AggregationResult(
            rate=rate,
            min_rate=low,
            max_rate=high,
            fuel_surcharge=surcharge,
            final_rate=round_half_up(rate + surcharge),
            reliability=reliability,
            source_count=0,
            sources_used=[ERROR_SOURCE],
            error=str(error) or type(error).__name__,
        )

    async def compute(
        self,
        origin_port_id: str,
        destination_port_id: str,
        container_type: "ContainerType | str",
        weight: int = 20000,
        debug: bool = False,
    ) -> AggregationResult:
        """Estimate the rate for one lane.

        Raises ``ValueError`` for structurally invalid input. Otherwise always
        returns a result; source, seasonality and fuel failures degrade to
        neutral values and anything unexpected yields the error fallback.
        """
        lane = self._validate(origin_port_id, destination_port_id, container_type, weight)
        trace: List[DebugStep] = []
        try:
            result = await self._aggregate(lane, trace)
        except Exception as e:
            logger.exception(f"Rate aggregation failed for {lane.origin}->{lane.destination} {lane.container.value}")
            result = self._error_result(lane, e, trace)

        logger.info(
            f"Rate {lane.origin}->{lane.destination} {lane.container.value}: "
            f"{result.final_rate} (rate {result.rate}, reliability {result.reliability}, sources {result.source_count})"
        )
        if debug:
            result.debug_log = list(trace)
        return result
