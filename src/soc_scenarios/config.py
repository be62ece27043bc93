"""
Run configuration for the SOC scenario engine.

All parameters are scalars with defaults matching the state-wide runs the
engine was built for (30 cm topsoil, 750-year spin-up, 2023-2100 forward
horizon). A configuration can be built directly, from a plain dict, or from a
YAML file.
"""

from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from soc_scenarios.errors import ConfigurationError
from soc_scenarios.RothC_Core import TEMPERATURE_ASYMPTOTE

INTEGRATION_METHODS = ("rothc", "exact")


@dataclass(frozen=True)
class ScenarioRoles:
    """Names of the land uses that act as conversion targets."""

    pasture: str = "pasture"
    pasture_optimized: str = "pasture_optimized"
    forest: str = "forest"
    old_growth: str = "old_growth_forest"


@dataclass(frozen=True)
class SimulationConfig:
    """
    Simulation, calibration and execution settings.
    """

    ############### domain #########################
    n_regions: Optional[int] = None
    soil_thickness: float = 30.0          # cm
    start_year: int = 2023
    spinup_years: int = 750
    forward_years: int = 77
    averaging_window_years: int = 30

    ############### rate modifiers #########################
    pe_factor: float = 0.75
    temperature_floor: float = -5.0
    moisture_floor: float = 0.2
    moisture_ceiling: float = 1.0
    apply_cover_factor: bool = False

    ############### integrator / spin-up #########################
    integration_method: str = "rothc"
    spinup_tolerance: Optional[float] = 1e-3

    ############### calibration #########################
    calibration_bounds: Tuple[float, float] = (0.0, 50.0)   # Mg C/ha/yr
    calibration_xatol: float = 1e-4
    calibration_maxiter: int = 500
    calibration_soc_tolerance: float = 0.05                # Mg C/ha

    ############### scenarios #########################
    roles: ScenarioRoles = field(default_factory=ScenarioRoles)

    ############### execution #########################
    n_jobs: int = -1
    progress: bool = True
    log_file: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.n_regions is not None and self.n_regions < 1:
            raise ConfigurationError("n_regions must be a positive integer or None.")
        if self.soil_thickness <= 0:
            raise ConfigurationError(f"soil_thickness must be positive, got {self.soil_thickness}.")
        for name in ("spinup_years", "forward_years", "averaging_window_years"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1 year.")
        if self.temperature_floor <= TEMPERATURE_ASYMPTOTE:
            raise ConfigurationError(
                f"temperature_floor must lie above {TEMPERATURE_ASYMPTOTE} °C, got {self.temperature_floor}."
            )
        if self.pe_factor <= 0:
            raise ConfigurationError("pe_factor must be positive.")
        if not 0.0 <= self.moisture_floor <= self.moisture_ceiling:
            raise ConfigurationError("Moisture modifier bounds must satisfy 0 <= floor <= ceiling.")
        if self.integration_method not in INTEGRATION_METHODS:
            raise ConfigurationError(
                f"integration_method must be one of {INTEGRATION_METHODS}, got {self.integration_method!r}."
            )
        if self.spinup_tolerance is not None and self.spinup_tolerance <= 0:
            raise ConfigurationError("spinup_tolerance must be positive or None.")

        lower, upper = self.calibration_bounds
        if lower < 0 or upper <= lower:
            raise ConfigurationError(
                f"calibration_bounds must be non-negative and increasing, got {self.calibration_bounds}."
            )
        if self.calibration_xatol <= 0 or self.calibration_soc_tolerance <= 0:
            raise ConfigurationError("Calibration tolerances must be positive.")
        if self.calibration_maxiter < 1:
            raise ConfigurationError("calibration_maxiter must be at least 1.")

    @property
    def spinup_months(self) -> int:
        return self.spinup_years * 12

    @property
    def forward_months(self) -> int:
        return self.forward_years * 12

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "SimulationConfig":
        """Build a config from a (possibly partial) mapping of field values."""
        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")

        values = dict(values)
        if isinstance(values.get("roles"), dict):
            values["roles"] = ScenarioRoles(**values["roles"])
        if values.get("calibration_bounds") is not None:
            values["calibration_bounds"] = tuple(values["calibration_bounds"])
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SimulationConfig":
        with open(path, 'r') as file:
            try:
                params = yaml.safe_load(file) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(f"Could not parse configuration file {path}: {exc}") from exc
        if not isinstance(params, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping.")
        return cls.from_dict(params)

    def replace(self, **changes) -> "SimulationConfig":
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return type(self)(**values)
