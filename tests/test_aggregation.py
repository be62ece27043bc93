import itertools

import numpy as np
import polars as pl
import pytest

from soc_scenarios.aggregation import (
    CompositeAccumulator,
    CompositeKey,
    aggregate,
    region_frame,
    trajectory_frame,
)
from soc_scenarios.data_model import (
    CarbonPoolState,
    CombinationKey,
    ProjectionResult,
    RegionAreaTable,
    ScenarioRun,
)
from soc_scenarios.errors import DimensionMismatchError

_SEEDS = itertools.count()


def _result(region, land_use, scenario="business_as_usual", mode="static", source="historical", n=24, level=50.0):
    rng = np.random.default_rng(next(_SEEDS))
    pools = np.tile([1.0, 5.0, 1.0, level - 12.0, 5.0], (n + 1, 1)) + rng.uniform(0.0, 0.5, (n + 1, 5))
    run = ScenarioRun(pools=pools, co2=np.zeros(n), plant_input=np.zeros(n))
    return ProjectionResult(
        key=CombinationKey(region, land_use, source),
        climate_mode=mode,
        scenario=scenario,
        target_land_use=land_use,
        run=run,
        baseline=run.initial_state,
    )


@pytest.fixture
def results():
    out = []
    for region in ("R1", "R2", "R3"):
        for land_use, level in (("cropland", 45.0), ("pasture", 80.0)):
            for scenario in ("business_as_usual", "to_forest"):
                for mode in ("static", "climate_change"):
                    out.append(_result(region, land_use, scenario, mode, level=level))
    return out


@pytest.fixture
def areas():
    return RegionAreaTable(
        {
            ("R1", "cropland"): 1200.0,
            ("R1", "pasture"): 300.0,
            ("R2", "cropland"): 50.5,
            ("R3", "pasture"): 0.0,
        }
    )


def test_aggregate_weights_by_area(results, areas):
    acc = aggregate(results, areas)
    cell = acc[("historical", "static", "business_as_usual")]

    expected = sum(
        r.run.total * areas.area(r.key.region, r.key.land_use)
        for r in results
        if r.climate_mode == "static" and r.scenario == "business_as_usual"
    )
    np.testing.assert_allclose(cell.total, expected)
    assert cell.area == pytest.approx(1200.0 + 300.0 + 50.5)
    assert cell.n_members == 6
    assert cell.sequestration[0] == pytest.approx(0.0)


def test_partial_accumulators_merge_to_the_single_pass_result(results, areas):
    single = aggregate(results, areas)

    by_region = {}
    for r in results:
        by_region.setdefault(r.key.region, []).append(r)
    partials = [aggregate(group, areas) for group in by_region.values()]
    merged = CompositeAccumulator()
    for partial in reversed(partials):
        merged.merge(partial)

    assert set(merged.cells) == set(single.cells)
    for key, cell in single.cells.items():
        np.testing.assert_allclose(merged.cells[key].total, cell.total)
        np.testing.assert_allclose(merged.cells[key].sequestration, cell.sequestration)
        assert merged.cells[key].area == pytest.approx(cell.area)


def test_zero_or_missing_area_contributes_nothing(areas):
    only_r3 = [_result("R3", "pasture"), _result("R4", "cropland")]
    cell = aggregate(only_r3, areas)[CompositeKey("historical", "static", "business_as_usual")]

    np.testing.assert_allclose(cell.total, 0.0)
    assert cell.area == 0.0
    assert cell.n_members == 2


def test_mismatched_horizons_cannot_be_combined(areas):
    acc = aggregate([_result("R1", "cropland", n=24)], areas)
    with pytest.raises(DimensionMismatchError):
        aggregate([_result("R1", "pasture", n=36)], areas, accumulator=acc)


def test_composite_frame_layout(results, areas):
    frame = aggregate(results, areas).to_frame()

    assert isinstance(frame, pl.DataFrame)
    assert frame.columns == [
        "climate_source", "climate_mode", "scenario", "month", "soc_total_Mg", "soc_change_Mg", "area_ha"
    ]
    # 2 modes x 2 scenarios, 25 snapshots each
    assert frame.height == 4 * 25
    assert frame.select(pl.col("month").max()).item() == 24


def test_empty_accumulator_frame():
    frame = CompositeAccumulator().to_frame()
    assert frame.height == 0
    assert "soc_total_Mg" in frame.columns


def test_trajectory_frame_has_pools_and_change():
    result = _result("R1", "cropland")
    frame = trajectory_frame(result)

    assert frame.height == 25
    for name in ("DPM", "RPM", "BIO", "HUM", "IOM", "SOC", "SOC_change"):
        assert name in frame.columns
    np.testing.assert_allclose(frame["SOC"].to_numpy(), result.run.total)
    assert frame["SOC_change"][0] == pytest.approx(0.0)


def test_region_frame_splits_totals_by_region(results, areas):
    frame = region_frame(results, areas)

    assert set(frame["region"].unique().to_list()) == {"R1", "R2", "R3"}
    r1 = frame.filter(
        (pl.col("region") == "R1")
        & (pl.col("climate_mode") == "static")
        & (pl.col("scenario") == "business_as_usual")
    )
    assert r1["area_ha"][0] == pytest.approx(1500.0)


def test_baseline_state_is_kept_separately():
    result = _result("R1", "cropland")
    assert isinstance(result.baseline, CarbonPoolState)
    np.testing.assert_allclose(result.sequestration, result.run.total - result.baseline.SOC)
