import logging

import numpy as np
import pytest

from soc_scenarios.data_model import CombinationKey
from soc_scenarios.errors import ConfigurationError
from soc_scenarios.forcing import ModifierCache, representative_temperature, spinup_forcing
from soc_scenarios.RothC_Core import iom_from_soc
from soc_scenarios.spinup import annual_drift, extend_spinup, run_spinup

from conftest import SEASONAL_TEMP, make_climate


def _spinup_xi(region, climate, land_use, config):
    key = CombinationKey(region.name, land_use.name, climate.source)
    return ModifierCache(config).spinup(key, region, climate, land_use).xi


def test_representative_temperature_averages_the_preceding_window():
    climate = make_climate(first_year=1980, last_year=2030, warming=0.5, start_year=2000)

    temp12 = representative_temperature(climate, start_year=2000, window_years=20)

    # the window 1980-1999 sits before the warming trend
    np.testing.assert_allclose(temp12, SEASONAL_TEMP)


def test_representative_temperature_requires_full_window():
    climate = make_climate(first_year=2000, last_year=2030)
    with pytest.raises(ConfigurationError):
        representative_temperature(climate, start_year=2010, window_years=30)


def test_spinup_forcing_tiles_normals(region, climate, fast_config):
    forcing = spinup_forcing(region, climate, fast_config)

    assert forcing.n_months == fast_config.spinup_months
    np.testing.assert_allclose(forcing.precipitation[-12:], region.precipitation)
    np.testing.assert_allclose(forcing.temperature[:12], forcing.temperature[-12:])


def test_spinup_starts_from_empty_active_pools(region, climate, land_uses, fast_config):
    pasture = land_uses["pasture"]
    xi = _spinup_xi(region, climate, pasture, fast_config)
    iom = iom_from_soc(80.0)

    result = run_spinup(iom, xi, pasture.residue, pasture.manure, clay=0.3, dpm_rpm=pasture.dpm_rpm,
                        years=fast_config.spinup_years)

    np.testing.assert_allclose(result.trajectory.pools[0], [0.0, 0.0, 0.0, 0.0, iom])
    np.testing.assert_allclose(result.trajectory.pool("IOM"), iom)
    assert np.all(result.trajectory.pools >= 0.0)
    assert len(result.trajectory) == fast_config.spinup_months + 1


def test_equilibrium_is_mean_of_final_year(region, climate, land_uses, fast_config):
    pasture = land_uses["pasture"]
    xi = _spinup_xi(region, climate, pasture, fast_config)

    result = run_spinup(5.0, xi, pasture.residue, pasture.manure, clay=0.3, years=fast_config.spinup_years)

    expected = result.trajectory.pools[-12:].mean(axis=0)
    np.testing.assert_allclose(result.equilibrium.as_array(), expected)
    assert result.equilibrium.SOC != pytest.approx(result.trajectory.total[-1], rel=1e-9)


def test_converged_spinup_is_idempotent(region, climate, land_uses, fast_config):
    config = fast_config.replace(spinup_years=750)
    pasture = land_uses["pasture"]
    xi = _spinup_xi(region, climate, pasture, config)

    result = run_spinup(5.0, xi, pasture.residue, pasture.manure, clay=0.3, dpm_rpm=pasture.dpm_rpm,
                        years=config.spinup_years, tolerance=1e-4)
    extended = extend_spinup(result, 50, xi[-12:], pasture.residue, pasture.manure, clay=0.3,
                             dpm_rpm=pasture.dpm_rpm)

    assert result.converged
    assert extended.equilibrium.SOC == pytest.approx(result.equilibrium.SOC, rel=1e-4)


def test_short_spinup_reports_drift(region, climate, land_uses, fast_config, caplog):
    pasture = land_uses["pasture"]
    config = fast_config.replace(spinup_years=5)
    xi = _spinup_xi(region, climate, pasture, config)

    with caplog.at_level(logging.WARNING, logger="soc_scenarios"):
        result = run_spinup(5.0, xi, pasture.residue, pasture.manure, clay=0.3, years=5, tolerance=1e-3)

    assert not result.converged
    assert result.drift > 1e-3
    assert "levelled off" in caplog.text


def test_spinup_rejects_wrong_modifier_length():
    with pytest.raises(ConfigurationError):
        run_spinup(5.0, np.ones(100), np.zeros(12), np.zeros(12), clay=0.3, years=10)


def test_annual_drift_of_flat_run_is_zero():
    result = run_spinup(5.0, np.zeros(24), np.zeros(12), np.zeros(12), clay=0.3, years=2)

    assert annual_drift(result.trajectory) == 0.0
