import logging
import warnings

import numpy as np
import pytest

from soc_scenarios.data_model import CombinationKey, LandManagementProfile
from soc_scenarios.errors import CalibrationWarning, ConfigurationError
from soc_scenarios.forcing import ModifierCache
from soc_scenarios.RothC_Core import iom_from_soc
from soc_scenarios.calibration import (
    calibrate_below_ground_input,
    distribute_below_ground,
    inherit_calibration,
    plant_input_with_bgc,
    report_non_convergence,
    resolve_variant_table,
    variants_of,
)
from soc_scenarios.spinup import run_spinup

from conftest import CROP_COVER


@pytest.fixture
def pasture_xi(region, climate, land_uses, fast_config):
    pasture = land_uses["pasture"]
    key = CombinationKey(region.name, pasture.name, climate.source)
    return ModifierCache(fast_config).spinup(key, region, climate, pasture).xi


def test_distribute_below_ground_over_vegetated_months():
    monthly = distribute_below_ground(3.0, CROP_COVER)

    assert monthly.sum() == pytest.approx(3.0)
    assert np.all(monthly[CROP_COVER == 0] == 0.0)
    np.testing.assert_allclose(monthly[CROP_COVER == 1], 0.5)


def test_distribute_below_ground_rejects_bare_cycle_and_negative_input():
    with pytest.raises(ConfigurationError):
        distribute_below_ground(1.0, np.zeros(12))
    with pytest.raises(ConfigurationError):
        distribute_below_ground(-1.0, CROP_COVER)


def test_plant_input_with_bgc_adds_residue(land_uses):
    cropland = land_uses["cropland"]
    plant = plant_input_with_bgc(cropland, 1.2)

    np.testing.assert_allclose(plant, cropland.residue + np.where(CROP_COVER == 1, 0.2, 0.0))


def test_calibration_recovers_known_below_ground_input(land_uses, pasture_xi, fast_config):
    pasture = land_uses["pasture"]
    true_bgc = 2.0

    # IOM only depends on the target, so solve target = active equilibrium + IOM(target)
    active = run_spinup(
        0.0, pasture_xi, plant_input_with_bgc(pasture, true_bgc), pasture.manure,
        clay=0.3, dpm_rpm=pasture.dpm_rpm, years=fast_config.spinup_years,
    ).equilibrium.SOC
    target = active
    for _ in range(50):
        target = active + iom_from_soc(target)

    result = calibrate_below_ground_input(target, pasture, 0.3, pasture_xi, fast_config)

    assert result.converged
    assert result.below_ground_input == pytest.approx(true_bgc, abs=1e-3)
    assert result.equilibrium.SOC == pytest.approx(target, abs=0.05)
    assert result.equilibrium.IOM == pytest.approx(iom_from_soc(target))


def test_calibration_matches_observed_pasture_stock(region, land_uses, pasture_xi, fast_config):
    key = CombinationKey(region.name, "pasture", "historical")
    result = calibrate_below_ground_input(
        region.observed_soc["pasture"], land_uses["pasture"], region.soil.clay, pasture_xi, fast_config, key=key
    )

    assert result.key == key
    assert result.converged
    assert abs(result.equilibrium.SOC - 80.0) < 0.05
    assert fast_config.calibration_bounds[0] <= result.below_ground_input <= fast_config.calibration_bounds[1]
    assert result.trajectory is not None
    assert result.trajectory.n_months == fast_config.spinup_months
    assert result.inherited_from is None


def test_calibration_without_trajectory(land_uses, pasture_xi, fast_config):
    result = calibrate_below_ground_input(80.0, land_uses["pasture"], 0.3, pasture_xi, fast_config,
                                          keep_trajectory=False)
    assert result.trajectory is None


def test_unreachable_target_warns(land_uses, pasture_xi, fast_config):
    config = fast_config.replace(calibration_bounds=(0.0, 0.01))

    with pytest.warns(CalibrationWarning):
        result = calibrate_below_ground_input(80.0, land_uses["pasture"], 0.3, pasture_xi, config)

    assert not result.converged
    assert result.objective > config.calibration_soc_tolerance
    assert result.below_ground_input <= 0.01


def test_unreachable_target_can_be_reported_later(land_uses, pasture_xi, fast_config, caplog):
    config = fast_config.replace(calibration_bounds=(0.0, 0.01))
    key = CombinationKey("R1", "pasture", "historical")

    with warnings.catch_warnings():
        warnings.simplefilter("error", CalibrationWarning)
        result = calibrate_below_ground_input(80.0, land_uses["pasture"], 0.3, pasture_xi, config, key=key,
                                              report=False)
    assert not result.converged

    with caplog.at_level(logging.WARNING, logger="soc_scenarios"):
        with pytest.warns(CalibrationWarning, match="did not converge"):
            message = report_non_convergence(result)

    assert str(key) in message
    assert "did not converge" in caplog.text


@pytest.mark.parametrize("target", [None, 0.0, -5.0, float("nan")])
def test_calibration_requires_observed_stock(target, land_uses, pasture_xi, fast_config):
    with pytest.raises(ConfigurationError):
        calibrate_below_ground_input(target, land_uses["pasture"], 0.3, pasture_xi, fast_config)


def test_calibration_rejects_cover_without_vegetation(pasture_xi, fast_config):
    fallow = LandManagementProfile("fallow", np.full(12, 0.05), np.zeros(12), np.zeros(12))
    with pytest.raises(ConfigurationError):
        calibrate_below_ground_input(40.0, fallow, 0.3, pasture_xi, fast_config)


def test_variant_inherits_base_calibration(land_uses, pasture_xi, fast_config):
    key = CombinationKey("R1", "pasture", "historical")
    base = calibrate_below_ground_input(80.0, land_uses["pasture"], 0.3, pasture_xi, fast_config, key=key)

    variant = inherit_calibration(base, land_uses["pasture_optimized"])

    assert variant.key == CombinationKey("R1", "pasture_optimized", "historical")
    assert variant.below_ground_input == base.below_ground_input
    assert variant.equilibrium is base.equilibrium
    assert variant.inherited_from == "pasture"
    np.testing.assert_allclose(
        variant.plant_input, land_uses["pasture_optimized"].residue + base.below_ground_input / 12.0
    )


def test_resolve_variant_table(land_uses):
    table = resolve_variant_table(land_uses)

    assert table == {"cropland_optimized": "cropland", "pasture_optimized": "pasture"}
    assert variants_of(table, "cropland") == ["cropland_optimized"]
    assert variants_of(table, "forest") == []


def test_resolve_variant_table_follows_chains_to_root(land_uses):
    land_uses = dict(land_uses)
    land_uses["cropland_cover_crop"] = LandManagementProfile(
        "cropland_cover_crop", np.full(12, 0.2), np.zeros(12), np.ones(12), base="cropland_optimized"
    )

    assert resolve_variant_table(land_uses)["cropland_cover_crop"] == "cropland"


def test_resolve_variant_table_rejects_unknown_base_and_cycles(land_uses):
    unknown = dict(land_uses)
    unknown["orchard_optimized"] = LandManagementProfile(
        "orchard_optimized", np.zeros(12), np.zeros(12), np.ones(12), base="orchard"
    )
    with pytest.raises(ConfigurationError, match="unknown base"):
        resolve_variant_table(unknown)

    cyclic = {
        "a": LandManagementProfile("a", np.zeros(12), np.zeros(12), np.ones(12), base="b"),
        "b": LandManagementProfile("b", np.zeros(12), np.zeros(12), np.ones(12), base="a"),
    }
    with pytest.raises(ConfigurationError, match="Circular"):
        resolve_variant_table(cyclic)
