"""
Forward projection of carbon pools under land-use transitions and climate modes.

Every projection starts from the spin-up equilibrium of the land use currently
in place ("old") and follows the calibrated inputs and rate modifiers of the
land use it converts to ("new"). Conversion to old-growth forest ramps the
plant input from the young-forest to the old-growth calibration instead of
switching abruptly.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import numpy as np

from soc_scenarios.config import ScenarioRoles, SimulationConfig
from soc_scenarios.data_model import (
    CalibrationResult,
    CarbonPoolState,
    CombinationKey,
    LandManagementProfile,
    ModifierSeries,
    ProjectionResult,
    ScenarioRun,
)
from soc_scenarios.errors import ConfigurationError
from soc_scenarios.RothC_Core import run_rothc, tile_months

logger = logging.getLogger(__name__)

# Scenarios
BUSINESS_AS_USUAL = "business_as_usual"
BEST_MANAGEMENT = "best_management"
TO_PASTURE = "to_pasture"
TO_PASTURE_OPTIMIZED = "to_pasture_optimized"
TO_FOREST = "to_forest"
TO_OLD_GROWTH = "to_old_growth"
SCENARIOS = (
    BUSINESS_AS_USUAL,
    BEST_MANAGEMENT,
    TO_PASTURE,
    TO_PASTURE_OPTIMIZED,
    TO_FOREST,
    TO_OLD_GROWTH,
)

# Climate modes
STATIC_CLIMATE = "static"
CLIMATE_CHANGE = "climate_change"
CLIMATE_MODES = (STATIC_CLIMATE, CLIMATE_CHANGE)


@dataclass(frozen=True)
class ScenarioTarget:
    """Land use a scenario converts to, and the land use its input ramps from (if any)."""

    land_use: str
    ramp_from: Optional[str] = None


def resolve_scenario_targets(
    old_land_use: str,
    variant_table: Mapping[str, str],
    roles: ScenarioRoles,
    available: Optional[set] = None,
) -> Dict[str, ScenarioTarget]:
    """
    Target land use of every scenario applicable to ``old_land_use``.

    ``variant_table`` maps variant -> base; the best-management target is the
    variant whose base is the old land use. Scenarios whose target (or ramp
    source) is not in ``available`` are left out.
    """
    best = sorted(v for v, b in variant_table.items() if b == old_land_use)
    if len(best) > 1:
        raise ConfigurationError(f"Land use {old_land_use} has several best-management variants: {best}.")

    targets = {
        BUSINESS_AS_USUAL: ScenarioTarget(old_land_use),
        BEST_MANAGEMENT: ScenarioTarget(best[0]) if best else None,
        TO_PASTURE: ScenarioTarget(roles.pasture),
        TO_PASTURE_OPTIMIZED: ScenarioTarget(roles.pasture_optimized),
        TO_FOREST: ScenarioTarget(roles.forest),
        TO_OLD_GROWTH: ScenarioTarget(roles.old_growth, ramp_from=roles.forest),
    }

    resolved = {}
    for scenario, target in targets.items():
        if target is None:
            continue
        needed = {target.land_use} | ({target.ramp_from} if target.ramp_from else set())
        if available is not None and not needed <= set(available):
            logger.debug(f"Skipping {scenario} for {old_land_use}: {sorted(needed - set(available))} not calibrated")
            continue
        resolved[scenario] = target
    return resolved


def ramp_plant_input(young12, old12, n_years: int) -> np.ndarray:
    """
    Linear month-position ramp of plant input across ``n_years``.

    Each calendar month moves from its young-forest value in the first year to
    its old-growth value in the final year, so the horizon needs at least two
    years.
    """
    young12 = np.asarray(young12, dtype=float).ravel()
    old12 = np.asarray(old12, dtype=float).ravel()
    if young12.size != 12 or old12.size != 12:
        raise ConfigurationError("Ramp end points must be 12-month plant input vectors.")
    if n_years < 2:
        raise ConfigurationError(f"A plant-input ramp needs at least two years, got {n_years}.")
    weights = np.linspace(0.0, 1.0, n_years)[:, None]
    return (young12[None, :] + weights * (old12 - young12)[None, :]).ravel()


def static_modifiers(spinup_modifiers: ModifierSeries, n_years: int) -> np.ndarray:
    """Static climate: the final spin-up year (the representative cycle) repeated."""
    if len(spinup_modifiers) < 12:
        raise ConfigurationError("Spin-up modifiers must cover at least one year.")
    return tile_months(spinup_modifiers.tail(12).xi, n_years, "rate modifier")


def project_scenario(
    initial: CarbonPoolState,
    target: LandManagementProfile,
    target_calibration: CalibrationResult,
    xi,
    clay: float,
    n_years: int,
    plant_input: Optional[np.ndarray] = None,
    method: str = "rothc",
) -> ScenarioRun:
    """
    Integrate forward from ``initial`` under the target land use.

    ``plant_input`` overrides the target's calibrated (tiled) input for the whole
    horizon, e.g. with a ramp.
    """
    months = n_years * 12
    if plant_input is None:
        plant_input = tile_months(target_calibration.plant_input, n_years, "plant input")
    plant_input = np.asarray(plant_input, dtype=float)
    if plant_input.size != months:
        raise ConfigurationError(f"Plant input covers {plant_input.size} months, expected {months}.")
    return run_rothc(
        initial,
        xi,
        plant_input,
        tile_months(target.manure, n_years, "manure input"),
        clay=clay,
        dpm_rpm=target.dpm_rpm,
        method=method,
    )


def project_land_use(
    key: CombinationKey,
    land_uses: Mapping[str, LandManagementProfile],
    calibrations: Mapping[str, CalibrationResult],
    spinup_modifiers: Mapping[str, ModifierSeries],
    forward_modifiers: Mapping[str, ModifierSeries],
    variant_table: Mapping[str, str],
    clay: float,
    config: SimulationConfig,
    scenarios=SCENARIOS,
    climate_modes=CLIMATE_MODES,
) -> List[ProjectionResult]:
    """
    All scenario projections for one (region, old land use, climate source).

    ``calibrations`` and the two modifier mappings are keyed by land use name
    and hold the entries of this region and climate source. Forward modifiers
    are only needed for the climate-change mode.
    """
    old = key.land_use
    if old not in calibrations:
        raise ConfigurationError(f"No calibration for the current land use of {key}.")
    baseline = calibrations[old].equilibrium
    n_years = config.forward_years
    targets = resolve_scenario_targets(old, variant_table, config.roles, available=set(calibrations))
    if n_years < 2:
        ramped = [s for s, t in targets.items() if t.ramp_from is not None]
        if ramped:
            logger.debug(f"Skipping {ramped} for {key}: a ramp needs a forward horizon of at least two years")
        targets = {s: t for s, t in targets.items() if t.ramp_from is None}

    results = []
    for mode in climate_modes:
        if mode not in CLIMATE_MODES:
            raise ConfigurationError(f"Unknown climate mode {mode!r}.")
        for scenario in scenarios:
            if scenario not in targets:
                continue
            target = targets[scenario]
            new = target.land_use
            if mode == STATIC_CLIMATE:
                xi = static_modifiers(spinup_modifiers[new], n_years)
            else:
                xi = forward_modifiers[new].xi

            plant_input = None
            if target.ramp_from is not None:
                plant_input = ramp_plant_input(
                    calibrations[target.ramp_from].plant_input,
                    calibrations[new].plant_input,
                    n_years,
                )

            run = project_scenario(
                baseline,
                land_uses[new],
                calibrations[new],
                xi,
                clay=clay,
                n_years=n_years,
                plant_input=plant_input,
                method=config.integration_method,
            )
            results.append(
                ProjectionResult(
                    key=key,
                    climate_mode=mode,
                    scenario=scenario,
                    target_land_use=new,
                    run=run,
                    baseline=baseline,
                )
            )
    return results
