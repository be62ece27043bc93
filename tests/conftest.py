"""Test configuration and shared fixtures for the soc_scenarios package."""

from pathlib import Path
import sys

import numpy as np
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"

if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


from soc_scenarios.config import SimulationConfig  # noqa: E402
from soc_scenarios.data_model import (  # noqa: E402
    ClimateSeries,
    LandManagementProfile,
    RegionInputs,
    SoilProfile,
)

MONTHS = np.arange(12)
SEASONAL_TEMP = 10.0 + 8.0 * np.sin(2 * np.pi * (MONTHS - 3) / 12)
PRECIPITATION = np.array([80, 70, 75, 65, 60, 55, 50, 55, 60, 75, 85, 90], dtype=float)
EVAPORATION = np.array([10, 15, 30, 50, 75, 95, 105, 90, 60, 35, 15, 10], dtype=float)
CROP_COVER = np.array([0, 0, 0, 1, 1, 1, 1, 1, 1, 0, 0, 0])
FULL_COVER = np.ones(12, dtype=int)


def make_climate(source="historical", region="R1", first_year=1990, last_year=2040, warming=0.0, start_year=2023):
    """Seasonal temperature cycle, optionally warming linearly from ``start_year``."""
    n_years = last_year - first_year + 1
    years = np.repeat(np.arange(first_year, last_year + 1), 12)
    trend = warming * np.clip(years - start_year, 0, None)
    tmean = np.tile(SEASONAL_TEMP, n_years) + trend
    return ClimateSeries(
        source=source,
        region=region,
        first_year=first_year,
        tmin=tmean - 4.0,
        tmax=tmean + 4.0,
    )


def make_region(name="R1", clay=0.3, observed_soc=None, thickness=30.0):
    return RegionInputs(
        soil=SoilProfile(region=name, clay=clay, bulk_density=1.3, thickness=thickness),
        precipitation=PRECIPITATION,
        evapotranspiration=EVAPORATION,
        observed_soc=observed_soc or {},
    )


def make_land_uses():
    crop_residue = np.where(CROP_COVER == 1, 0.15, 0.0)
    return {
        "cropland": LandManagementProfile("cropland", crop_residue, np.zeros(12), CROP_COVER),
        "cropland_optimized": LandManagementProfile(
            "cropland_optimized", crop_residue * 1.2, np.full(12, 0.05), FULL_COVER, base="cropland"
        ),
        "pasture": LandManagementProfile("pasture", np.full(12, 0.1), np.zeros(12), FULL_COVER, dpm_rpm=0.67),
        "pasture_optimized": LandManagementProfile(
            "pasture_optimized", np.full(12, 0.12), np.full(12, 0.02), FULL_COVER, dpm_rpm=0.67, base="pasture"
        ),
        "forest": LandManagementProfile("forest", np.full(12, 0.2), np.zeros(12), FULL_COVER, dpm_rpm=0.25),
        "old_growth_forest": LandManagementProfile(
            "old_growth_forest", np.full(12, 0.3), np.zeros(12), FULL_COVER, dpm_rpm=0.25
        ),
    }


@pytest.fixture
def region():
    return make_region(observed_soc={"cropland": 45.0, "pasture": 80.0, "forest": 90.0, "old_growth_forest": 110.0})


@pytest.fixture
def climate():
    return make_climate()


@pytest.fixture
def land_uses():
    return make_land_uses()


@pytest.fixture
def fast_config():
    return SimulationConfig(
        spinup_years=150,
        forward_years=10,
        averaging_window_years=30,
        start_year=2023,
        calibration_xatol=1e-5,
        spinup_tolerance=None,
        n_jobs=1,
        progress=False,
    )
