"""
soc_scenarios: RothC soil organic carbon projections under land-use and climate scenarios.

This package provides tools for:
- Computing RothC temperature and moisture rate modifiers.
- Spinning the 5-pool model up to equilibrium and calibrating below-ground inputs.
- Projecting land-use transitions forward and aggregating them by area.

Typical usage example:
    import soc_scenarios as ss

    config = ss.SimulationConfig.from_yaml("run.yml")
    result = ss.run_pipeline(inputs, config)
    result.composite.to_frame()
"""

from soc_scenarios.config import ScenarioRoles, SimulationConfig
from soc_scenarios.data_model import (
    CalibrationResult,
    CarbonPoolState,
    ClimateSeries,
    CombinationKey,
    LandManagementProfile,
    ModifierSeries,
    ProjectionResult,
    RegionAreaTable,
    RegionInputs,
    ScenarioRun,
    SoilProfile,
)
from soc_scenarios.errors import (
    CalibrationWarning,
    ConfigurationError,
    DimensionMismatchError,
    MissingCombinationError,
    SocModelError,
)
from soc_scenarios.pipeline import PipelineResult, SimulationInputs, run_pipeline

__all__ = [
    "CalibrationResult",
    "CalibrationWarning",
    "CarbonPoolState",
    "ClimateSeries",
    "CombinationKey",
    "ConfigurationError",
    "DimensionMismatchError",
    "LandManagementProfile",
    "MissingCombinationError",
    "ModifierSeries",
    "PipelineResult",
    "ProjectionResult",
    "RegionAreaTable",
    "RegionInputs",
    "ScenarioRoles",
    "ScenarioRun",
    "SimulationConfig",
    "SimulationInputs",
    "SocModelError",
    "SoilProfile",
    "run_pipeline",
]

# Package metadata
from importlib import metadata as _metadata
from pathlib import Path


try:
    __version__ = _metadata.version("soc_scenarios")
except _metadata.PackageNotFoundError:
    try:  # Python 3.11+
        import tomllib
    except ModuleNotFoundError:  # pragma: no cover - Python <3.11
        tomllib = None

    _pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if tomllib is not None and _pyproject.exists():
        with _pyproject.open("rb") as _fp:
            __version__ = tomllib.load(_fp)["project"]["version"]
    else:
        __version__ = "0.0.0.dev1"

__author__ = "Cristóbal Loyola"
