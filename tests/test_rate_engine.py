import asyncio
import datetime
from types import SimpleNamespace

import pytest

from freight_estimator.connectors.index_sources import IndexReading, IndexSourceRegistry
from freight_estimator.rules.fuel_surcharge import FuelSurcharge
from freight_estimator.rules.index_catalog import IndexId, load_index_catalog
from freight_estimator.rules.rate_engine import (
    AggregationResult,
    DebugStep,
    EngineConfig,
    RateAggregationEngine,
    Stage,
    StepStatus,
    string_hash,
    synthetic_base_rate,
)
from freight_estimator.rules.seasonality import SeasonalityFactor

AS_OF = datetime.date(2025, 4, 25)

REGIONS = {
    "CNSHA": "China",
    "SGSIN": "Asia",
    "NLRTM": "Europe",
    "USLAX": "North America",
}


class StubAdapter:
    def __init__(self, values, failing=()):
        self.values = values
        self.failing = set(failing)

    async def fetch_current(self, index_id):
        if index_id in self.failing:
            raise RuntimeError(f"{index_id.value} unavailable")
        value = self.values.get(index_id)
        if value is None:
            return None
        return IndexReading(index_id, value, None, AS_OF)


class StubSearch:
    def __init__(self, values):
        self.values = values

    async def search(self, index_id):
        value = self.values.get(index_id)
        if value is None:
            return None
        return IndexReading(index_id, value, None, AS_OF)


def _fuel(amount):
    return SimpleNamespace(
        surcharge_for=lambda o, d, c: FuelSurcharge(amount, 550.0, "VLSFO", 10000.0, 1.0)
    )


def _seasonality(factor):
    return SimpleNamespace(
        factor_for=lambda o, d, m: None if factor is None else SeasonalityFactor(factor, 1.0)
    )


def _raise(exc):
    def _inner(*args, **kwargs):
        raise exc
    return _inner


def make_engine(values=None, failing=(), fallback=None, seasonality=None, fuel=None, regions=None):
    catalog = load_index_catalog()
    sources = IndexSourceRegistry.for_catalog(
        catalog, StubAdapter(values or {}, failing), fallback=fallback, timeout=1.0
    )
    regions = regions or SimpleNamespace(region_of=lambda code: REGIONS.get(code, "Unknown"))
    return RateAggregationEngine(
        sources=sources,
        regions=regions,
        seasonality=seasonality or _seasonality(None),
        fuel=fuel or _fuel(0),
        config=EngineConfig(catalog=catalog),
        today=lambda: AS_OF,
    )


def compute(engine, origin="CNSHA", destination="NLRTM", container="40HC", **kwargs) -> AggregationResult:
    return asyncio.run(engine.compute(origin, destination, container, **kwargs))


def test_weighted_core_rate_with_fuel_surcharge():
    engine = make_engine({IndexId.SCFI: 1100.0, IndexId.CCFI: 1050.0}, fuel=_fuel(50))

    result = compute(engine)

    # (1100 * 1.2 + 1050 * 1.0) / 2.2 = 1077.27
    assert result.rate == 1077
    assert result.fuel_surcharge == 50
    assert result.final_rate == 1127
    assert result.reliability == 0.78
    assert (result.min_rate, result.max_rate) == (946, 1208)
    assert result.source_count == 2
    assert result.sources_used == ["SCFI", "CCFI", "Fuel Surcharge"]
    assert result.error is None
    assert result.debug_log is None


def test_no_core_data_uses_deterministic_synthetic_rate():
    first = compute(make_engine({IndexId.HARPEX: 1500.0}, fuel=_fuel(120)))
    second = compute(make_engine({IndexId.BDI: 900.0}, fuel=_fuel(120)))

    expected = synthetic_base_rate("CNSHA", "NLRTM", "40HC")
    assert first.rate == second.rate == expected
    assert 1500 <= first.rate < 3000
    assert first.final_rate == expected + 120
    assert first.reliability == 0.5
    assert first.source_count == 0
    assert first.sources_used == ["Base calculation fallback"]
    assert first.min_rate <= first.rate <= first.max_rate


def test_synthetic_rate_varies_by_lane():
    rates = {
        synthetic_base_rate(o, d, c)
        for o, d, c in [("CNSHA", "NLRTM", "40HC"), ("CNSHA", "NLRTM", "20DC"), ("USLAX", "SGSIN", "40DC")]
    }
    assert len(rates) > 1


def test_string_hash_wraps_to_32_bits():
    assert string_hash("") == 0
    assert string_hash("a") == 97
    assert string_hash("ab") == 97 * 31 + 98
    long_key = "CNSHA-NLRTM-40HC" * 8
    assert 0 <= string_hash(long_key) <= 2 ** 31


def test_every_source_failing_still_returns_fallback():
    catalog_ids = load_index_catalog().index_ids
    engine = make_engine(failing=catalog_ids, fallback=StubSearch({}), fuel=_fuel(75))

    result = compute(engine)

    assert result.source_count == 0
    assert result.sources_used == ["Base calculation fallback"]
    assert result.final_rate == result.rate + 75
    assert result.error is None


@pytest.mark.parametrize(
    "values",
    [
        {IndexId.SCFI: 1000.0},
        {IndexId.SCFI: 1000.0, IndexId.FBX: 1010.0, IndexId.WCI: 990.0, IndexId.CCFI: 1005.0},
        {IndexId.SCFI: 100.0, IndexId.FBX: 5000.0},
        {IndexId.WCI: 2500.0, IndexId.HARPEX: 3000.0, IndexId.CTS: 20.0},
        {},
    ],
)
def test_range_contains_rate_and_reliability_stays_in_band(values):
    result = compute(make_engine(values, fuel=_fuel(40)))

    assert result.min_rate <= result.rate <= result.max_rate
    assert 0.4 <= result.reliability <= 1.0


def test_wide_dispersion_clamps_reliability_to_floor():
    result = compute(make_engine({IndexId.SCFI: 100.0, IndexId.FBX: 5000.0}))

    assert result.reliability == 0.4


def test_reliability_grows_with_agreeing_sources():
    one = compute(make_engine({IndexId.SCFI: 1000.0}))
    two = compute(make_engine({IndexId.SCFI: 1000.0, IndexId.FBX: 1000.0}))
    four = compute(make_engine({i: 1000.0 for i in (IndexId.SCFI, IndexId.FBX, IndexId.WCI, IndexId.CCFI)}))

    assert (one.reliability, two.reliability, four.reliability) == (0.75, 0.8, 0.9)


def test_reliability_drops_with_dispersion():
    tight = compute(make_engine({IndexId.SCFI: 1000.0, IndexId.FBX: 1000.0}))
    loose = compute(make_engine({IndexId.SCFI: 900.0, IndexId.FBX: 1100.0}))

    assert loose.reliability < tight.reliability
    assert loose.reliability == 0.73
    # lower reliability widens the range
    assert (loose.max_rate - loose.min_rate) / loose.rate > (tight.max_rate - tight.min_rate) / tight.rate


def test_modifiers_are_clamped_to_their_bands():
    engine = make_engine({IndexId.SCFI: 1000.0, IndexId.HARPEX: 1_000_000.0, IndexId.CTS: 0.001})

    result = compute(engine)

    # charter capped at 1.2, demand floored at 0.9
    assert result.rate == 1080
    assert result.sources_used == ["SCFI", "Harpex", "CTS"]
    assert result.source_count == 1


def test_modifier_within_band_adjusts_rate():
    # 1 + 0.1 * (1650 - 1500) / 1500 = 1.01
    result = compute(make_engine({IndexId.SCFI: 2000.0, IndexId.BDI: 1650.0}))

    assert result.rate == 2020


def test_intra_asia_lane_blends_istfix():
    result = compute(make_engine({IndexId.SCFI: 1000.0, IndexId.ISTFIX: 2000.0}), "CNSHA", "SGSIN")

    # (1000 * 1.0 + 2000 * 1.5) / 2.5
    assert result.rate == 1600
    assert "ISTFIX" in result.sources_used


@pytest.mark.parametrize(
    "origin, destination",
    [("CNSHA", "NLRTM"), ("ZZZZZ", "YYYYY"), ("SGSIN", "ZZZZZ")],
)
def test_istfix_ignored_outside_intra_asia(origin, destination):
    result = compute(make_engine({IndexId.SCFI: 1000.0, IndexId.ISTFIX: 2000.0}), origin, destination)

    assert result.rate == 1000
    assert "ISTFIX" not in result.sources_used


def test_region_lookup_failure_is_neutral():
    regions = SimpleNamespace(region_of=_raise(RuntimeError("db down")))
    engine = make_engine({IndexId.SCFI: 1000.0, IndexId.ISTFIX: 2000.0}, regions=regions)

    result = compute(engine, "CNSHA", "SGSIN")

    assert result.rate == 1000
    assert result.error is None


def test_seasonality_factor_applies():
    result = compute(make_engine({IndexId.SCFI: 1000.0}, seasonality=_seasonality(1.1)))

    assert result.rate == 1100
    assert "Seasonality" in result.sources_used


@pytest.mark.parametrize(
    "seasonality",
    [
        _seasonality(None),
        _seasonality(0.0),
        _seasonality(-1.0),
        SimpleNamespace(factor_for=_raise(RuntimeError("no table"))),
    ],
)
def test_missing_or_invalid_seasonality_is_neutral(seasonality):
    result = compute(make_engine({IndexId.SCFI: 1000.0}, seasonality=seasonality))

    assert result.rate == 1000
    assert "Seasonality" not in result.sources_used


def test_seasonality_skipped_on_synthetic_rate():
    result = compute(make_engine({}, seasonality=_seasonality(1.5)))

    assert result.rate == synthetic_base_rate("CNSHA", "NLRTM", "40HC")


def test_fuel_failure_means_no_surcharge():
    fuel = SimpleNamespace(surcharge_for=_raise(RuntimeError("price feed down")))

    result = compute(make_engine({IndexId.SCFI: 1000.0}, fuel=fuel))

    assert result.fuel_surcharge == 0
    assert result.final_rate == result.rate
    assert "Fuel Surcharge" not in result.sources_used


def test_alternate_lookup_recovers_core_index():
    engine = make_engine(
        {IndexId.FBX: 1000.0},
        failing=[IndexId.SCFI],
        fallback=StubSearch({IndexId.SCFI: 1000.0}),
    )

    result = compute(engine, debug=True)

    assert result.source_count == 2
    assert result.sources_used[:2] == ["SCFI", "FBX"]
    scfi_step = next(
        s for s in result.debug_log if s.stage is Stage.FETCH_INDEX and s.inputs["index"] == "SCFI"
    )
    assert scfi_step.status is StepStatus.FALLBACK
    assert scfi_step.result["provenance"] == "fallback_search"
    assert "unavailable" in scfi_step.error


def test_debug_mode_does_not_change_numbers():
    values = {IndexId.SCFI: 1100.0, IndexId.WCI: 1180.0, IndexId.NEWCONTEX: 600.0, IndexId.BDI: 1400.0}

    plain = compute(make_engine(values, fuel=_fuel(60), seasonality=_seasonality(0.95)))
    traced = compute(make_engine(values, fuel=_fuel(60), seasonality=_seasonality(0.95)), debug=True)

    assert plain.debug_log is None
    assert traced.debug_log
    assert all(isinstance(s, DebugStep) for s in traced.debug_log)
    expected = plain.to_dict()
    actual = traced.to_dict()
    actual.pop("debug_log")
    assert actual == expected


def test_debug_log_covers_each_stage():
    result = compute(make_engine({IndexId.SCFI: 1000.0}, fuel=_fuel(10)), debug=True)

    stages = [s.stage for s in result.debug_log]
    assert stages.count(Stage.FETCH_INDEX) == 9
    for stage in (
        Stage.CORE_RATE,
        Stage.REGIONS,
        Stage.CHARTER_MODIFIER,
        Stage.DEMAND_MODIFIER,
        Stage.INTRA_ASIA_BLEND,
        Stage.SEASONALITY,
        Stage.FUEL_SURCHARGE,
        Stage.RELIABILITY,
        Stage.RANGE,
    ):
        assert stage in stages
    assert result.to_dict()["debug_log"][0]["stage"] == "fetch_index"


def test_unexpected_failure_returns_error_fallback(monkeypatch):
    engine = make_engine({IndexId.SCFI: 1000.0}, fuel=_fuel(30))
    monkeypatch.setattr(engine, "_reliability", _raise(ZeroDivisionError("boom")))

    result = compute(engine, debug=True)

    assert result.error == "boom"
    assert result.sources_used == ["Error Fallback"]
    assert result.reliability == 0.4
    assert result.source_count == 0
    assert result.rate == synthetic_base_rate("CNSHA", "NLRTM", "40HC")
    assert result.final_rate == result.rate + 30
    assert result.min_rate <= result.rate <= result.max_rate
    assert any(s.stage is Stage.ERROR for s in result.debug_log)


@pytest.mark.parametrize(
    "origin, destination, container, weight",
    [
        ("", "NLRTM", "40HC", 20000),
        ("CNSHA", "   ", "40HC", 20000),
        ("CNSHA", "NLRTM", "45XX", 20000),
        ("CNSHA", "NLRTM", "40HC", 0),
        ("CNSHA", "NLRTM", "40HC", 1.5),
        ("CNSHA", "NLRTM", "40HC", "heavy"),
    ],
)
def test_structurally_invalid_input_raises(origin, destination, container, weight):
    engine = make_engine({IndexId.SCFI: 1000.0})

    with pytest.raises(ValueError):
        asyncio.run(engine.compute(origin, destination, container, weight=weight))


def test_port_codes_are_normalised():
    engine = make_engine({})

    assert compute(engine, " cnsha ", "nlrtm", "40hc").rate == synthetic_base_rate("CNSHA", "NLRTM", "40HC")


def test_config_from_settings_uses_reliability_band():
    catalog = load_index_catalog()
    settings = SimpleNamespace(min_reliability=0.5, max_reliability=0.9)

    config = EngineConfig.from_settings(catalog, settings)

    assert (config.min_reliability, config.max_reliability) == (0.5, 0.9)
    with pytest.raises(ValueError):
        EngineConfig(catalog=catalog, min_reliability=0.9, max_reliability=0.5)
