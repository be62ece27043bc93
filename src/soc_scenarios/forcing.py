"""
Monthly climate forcing and rate-modifier series for the two simulation phases.

Spin-up: a representative temperature year, the mean of the
``averaging_window_years`` preceding the simulation start, tiled over the
whole spin-up horizon together with the regional precipitation and
evapotranspiration normals.

Forward: the projected temperature of the climate source from the simulation
start onwards, with the regional normals tiled alongside (or the source's own
water balance when it carries one).

Modifier series only depend on (region, land use, climate source, phase). The
pipeline computes each of them once, before any task runs, and hands the same
series to calibration and to every scenario.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, NamedTuple

import numpy as np

from soc_scenarios.config import SimulationConfig
from soc_scenarios.data_model import (
    ClimateSeries,
    CombinationKey,
    LandManagementProfile,
    ModifierSeries,
    RegionInputs,
)
from soc_scenarios.errors import ConfigurationError, MissingCombinationError
from soc_scenarios.RothC_Core import rate_modifiers, tile_months

logger = logging.getLogger(__name__)

SPINUP = "spinup"
FORWARD = "forward"
PHASES = (SPINUP, FORWARD)


@dataclass(frozen=True, eq=False)
class ClimateForcing:
    temperature: np.ndarray
    precipitation: np.ndarray
    evapotranspiration: np.ndarray

    @property
    def n_months(self) -> int:
        return self.temperature.size


def representative_temperature(climate: ClimateSeries, start_year: int, window_years: int) -> np.ndarray:
    """Mean 12-month temperature cycle of the ``window_years`` immediately before ``start_year``."""
    window = climate.window(start_year - window_years, window_years)
    return window.reshape(window_years, 12).mean(axis=0)


def spinup_forcing(region: RegionInputs, climate: ClimateSeries, config: SimulationConfig) -> ClimateForcing:
    temp12 = representative_temperature(climate, config.start_year, config.averaging_window_years)
    years = config.spinup_years
    return ClimateForcing(
        temperature=tile_months(temp12, years, "temperature"),
        precipitation=tile_months(region.precipitation, years, "precipitation"),
        evapotranspiration=tile_months(region.evapotranspiration, years, "evapotranspiration"),
    )


def forward_forcing(region: RegionInputs, climate: ClimateSeries, config: SimulationConfig) -> ClimateForcing:
    years = config.forward_years
    temperature = climate.window(config.start_year, years)
    water = climate.water_window(config.start_year, years)
    if water is None:
        rain = tile_months(region.precipitation, years, "precipitation")
        evap = tile_months(region.evapotranspiration, years, "evapotranspiration")
    else:
        rain, evap = water
    return ClimateForcing(temperature=temperature, precipitation=rain, evapotranspiration=evap)


def modifiers_for(
    forcing: ClimateForcing,
    region: RegionInputs,
    land_use: LandManagementProfile,
    config: SimulationConfig,
) -> ModifierSeries:
    """Rate modifiers for a forcing window, with the land use's cover cycle tiled alongside."""
    if forcing.n_months % 12 != 0:
        raise ConfigurationError(f"Forcing must cover whole years, got {forcing.n_months} months.")
    cover = np.tile(land_use.cover, forcing.n_months // 12)
    return rate_modifiers(
        forcing.temperature,
        forcing.precipitation,
        forcing.evapotranspiration,
        cover,
        clay=region.soil.clay,
        thickness=region.soil.depth(config.soil_thickness),
        pe_factor=config.pe_factor,
        temperature_floor=config.temperature_floor,
        fw_min=config.moisture_floor,
        fw_max=config.moisture_ceiling,
        apply_cover_factor=config.apply_cover_factor,
    )


class ModifierKey(NamedTuple):
    region: str
    land_use: str
    climate_source: str
    phase: str

    @classmethod
    def from_combination(cls, key: CombinationKey, phase: str) -> "ModifierKey":
        if phase not in PHASES:
            raise ConfigurationError(f"Unknown phase {phase!r}, expected one of {PHASES}.")
        return cls(key.region, key.land_use, key.climate_source, phase)


class ModifierCache:
    """
    Memoises ModifierSeries per (region, land use, climate source, phase).

    The pipeline fills one cache in the parent process before dispatching any
    task, and workers only receive the finished series they need. A series
    that could not be built keeps the reason, so looking it up later raises
    a MissingCombinationError that says why.
    """

    def __init__(self, config: SimulationConfig):
        self.config = config
        self._series: Dict[ModifierKey, ModifierSeries] = {}
        self._errors: Dict[ModifierKey, str] = {}

    def __len__(self) -> int:
        return len(self._series)

    def __contains__(self, key: ModifierKey) -> bool:
        return key in self._series

    def get(
        self,
        key: CombinationKey,
        phase: str,
        region: RegionInputs,
        climate: ClimateSeries,
        land_use: LandManagementProfile,
    ) -> ModifierSeries:
        mkey = ModifierKey.from_combination(key, phase)
        if mkey not in self._series:
            build: Callable = spinup_forcing if phase == SPINUP else forward_forcing
            forcing = build(region, climate, self.config)
            self._series[mkey] = modifiers_for(forcing, region, land_use, self.config)
            logger.debug(f"Computed {phase} modifiers for {key} ({forcing.n_months} months)")
        return self._series[mkey]

    def spinup(self, key, region, climate, land_use) -> ModifierSeries:
        return self.get(key, SPINUP, region, climate, land_use)

    def forward(self, key, region, climate, land_use) -> ModifierSeries:
        return self.get(key, FORWARD, region, climate, land_use)

    def record_error(self, key: CombinationKey, phase: str, reason: str) -> None:
        self._errors[ModifierKey.from_combination(key, phase)] = reason

    def lookup(self, key: CombinationKey, phase: str) -> ModifierSeries:
        """Series computed earlier, without building anything new."""
        mkey = ModifierKey.from_combination(key, phase)
        try:
            return self._series[mkey]
        except KeyError:
            reason = self._errors.get(mkey, "not computed")
            raise MissingCombinationError(f"No {phase} rate modifiers for {key}: {reason}") from None
