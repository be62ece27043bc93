"""
Inverse calibration of the unobserved below-ground carbon input (BGC).

For each (region, land use, climate source) with an observed SOC stock, the
annual BGC is searched with a bounded scalar minimizer so that the spin-up
equilibrium SOC matches the observation. Best-management variants have no
observations of their own and inherit the calibration of their base land use.
"""

import logging
import warnings
from typing import Dict, Mapping, Optional

import numpy as np
from scipy.optimize import minimize_scalar

from soc_scenarios.config import SimulationConfig
from soc_scenarios.data_model import CalibrationResult, CombinationKey, LandManagementProfile
from soc_scenarios.errors import CalibrationWarning, ConfigurationError
from soc_scenarios.RothC_Core import iom_from_soc
from soc_scenarios.spinup import run_spinup

logger = logging.getLogger(__name__)


def distribute_below_ground(bgc: float, cover) -> np.ndarray:
    """
    Spread an annual below-ground input evenly over the vegetated months.

    Bare months (cover == 0) receive nothing.
    """
    if bgc < 0:
        raise ConfigurationError(f"Below-ground carbon input must be non-negative, got {bgc}.")
    cover = np.asarray(cover).ravel()
    vegetated = cover == 1
    n_veg = int(vegetated.sum())
    if n_veg == 0:
        raise ConfigurationError("Cannot distribute below-ground carbon: the cover cycle has no vegetated month.")
    return np.where(vegetated, bgc / n_veg, 0.0)


def plant_input_with_bgc(land_use: LandManagementProfile, bgc: float) -> np.ndarray:
    """Residue input of a land use plus its below-ground share, per month."""
    return land_use.residue + distribute_below_ground(bgc, land_use.cover)


def resolve_variant_table(land_uses: Mapping[str, LandManagementProfile]) -> Dict[str, str]:
    """
    Map every variant land use to the root land use it inherits calibration from.

    Built once at setup. Unknown bases and cycles raise ConfigurationError.
    """
    table: Dict[str, str] = {}
    for name, profile in land_uses.items():
        if profile.base is None:
            continue
        seen = [name]
        root = profile.base
        while True:
            if root not in land_uses:
                raise ConfigurationError(f"Land use {name} refers to unknown base {root!r}.")
            if root in seen:
                raise ConfigurationError(f"Circular base variants: {' -> '.join(seen + [root])}.")
            seen.append(root)
            parent = land_uses[root].base
            if parent is None:
                break
            root = parent
        table[name] = root
    return table


def variants_of(variant_table: Mapping[str, str], base: str) -> list:
    return sorted(v for v, b in variant_table.items() if b == base)


def calibrate_below_ground_input(
    target_soc: float,
    land_use: LandManagementProfile,
    clay: float,
    xi,
    config: SimulationConfig,
    key: Optional[CombinationKey] = None,
    keep_trajectory: bool = True,
    report: bool = True,
) -> CalibrationResult:
    """
    Find the annual BGC (Mg C/ha/yr) whose spin-up equilibrium SOC equals ``target_soc``.

    The IOM pool is sized from the target SOC; the objective is the absolute
    mismatch of equilibrium total SOC, minimised over ``config.calibration_bounds``.
    Non-convergence is reported as a CalibrationWarning (unless ``report`` is
    off, e.g. inside worker processes) and the best value found
    is returned with ``converged=False``.
    """
    if target_soc is None or not np.isfinite(target_soc) or target_soc <= 0:
        raise ConfigurationError(
            f"Land use {land_use.name} has no usable observed SOC ({target_soc}); "
            "it must inherit its calibration from a base land use."
        )
    key = key or CombinationKey("-", land_use.name, "-")
    iom = iom_from_soc(target_soc)
    xi = np.asarray(xi, dtype=float)

    # cover degeneracy is a configuration problem, not an optimizer one
    distribute_below_ground(0.0, land_use.cover)

    def equilibrium_soc(bgc: float) -> float:
        result = run_spinup(
            iom,
            xi,
            plant_input_with_bgc(land_use, bgc),
            land_use.manure,
            clay=clay,
            dpm_rpm=land_use.dpm_rpm,
            years=config.spinup_years,
            method=config.integration_method,
        )
        return result.equilibrium.SOC

    def objective(bgc: float) -> float:
        return abs(equilibrium_soc(max(bgc, 0.0)) - target_soc)

    opt = minimize_scalar(
        objective,
        bounds=config.calibration_bounds,
        method="bounded",
        options={"xatol": config.calibration_xatol, "maxiter": config.calibration_maxiter},
    )
    bgc = float(max(opt.x, 0.0))
    plant_input = plant_input_with_bgc(land_use, bgc)

    final = run_spinup(
        iom,
        xi,
        plant_input,
        land_use.manure,
        clay=clay,
        dpm_rpm=land_use.dpm_rpm,
        years=config.spinup_years,
        method=config.integration_method,
        tolerance=config.spinup_tolerance,
    )
    mismatch = abs(final.equilibrium.SOC - target_soc)
    converged = bool(opt.success) and mismatch <= config.calibration_soc_tolerance

    result = CalibrationResult(
        key=key,
        below_ground_input=bgc,
        plant_input=plant_input,
        equilibrium=final.equilibrium,
        trajectory=final.trajectory if keep_trajectory else None,
        converged=converged,
        objective=float(mismatch),
    )
    if not converged:
        if report:
            report_non_convergence(result, stacklevel=3)
    else:
        logger.debug(f"Calibrated {key}: BGC={bgc:.4f} Mg C/ha/yr in {opt.nfev} evaluations")
    return result


def report_non_convergence(result: CalibrationResult, stacklevel: int = 2) -> str:
    """Log and warn about a calibration that missed its observed SOC."""
    message = (
        f"Calibration for {result.key} did not converge: best below-ground input "
        f"{result.below_ground_input:.4f} Mg C/ha/yr gives SOC {result.equilibrium.SOC:.3f} Mg C/ha, "
        f"{result.objective:.3g} Mg C/ha away from the observed stock."
    )
    logger.warning(message)
    warnings.warn(message, CalibrationWarning, stacklevel=stacklevel)
    return message


def inherit_calibration(
    base_result: CalibrationResult,
    variant: LandManagementProfile,
    key: Optional[CombinationKey] = None,
) -> CalibrationResult:
    """
    Calibration of a best-management variant, copied from its base land use.

    The BGC and equilibrium state are taken as-is; the plant input combines the
    variant's own residue with the inherited BGC on the variant's cover cycle.
    """
    if key is None:
        key = CombinationKey(base_result.key.region, variant.name, base_result.key.climate_source)
    return CalibrationResult(
        key=key,
        below_ground_input=base_result.below_ground_input,
        plant_input=plant_input_with_bgc(variant, base_result.below_ground_input),
        equilibrium=base_result.equilibrium,
        trajectory=None,
        converged=base_result.converged,
        objective=base_result.objective,
        inherited_from=base_result.key.land_use,
    )
