"""
Spin-up: integrate from empty active pools over a long synthetic pre-history
and take the mean of the final year as the equilibrium carbon state.
"""

import logging
from dataclasses import dataclass

import numpy as np

from soc_scenarios.data_model import CarbonPoolState, ScenarioRun
from soc_scenarios.errors import ConfigurationError
from soc_scenarios.RothC_Core import run_rothc, tile_months

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SpinupResult:
    trajectory: ScenarioRun
    equilibrium: CarbonPoolState
    drift: float          # relative change in mean SOC between the last two years
    converged: bool


def annual_drift(run: ScenarioRun) -> float:
    """Relative change of the mean total SOC between the final two years of a run."""
    total = run.total
    if total.size < 24:
        return float("nan")
    last = total[-12:].mean()
    previous = total[-24:-12].mean()
    if last == 0.0:
        return 0.0 if previous == 0.0 else float("inf")
    return float(abs(last - previous) / last)


def _summarise(run: ScenarioRun, tolerance) -> SpinupResult:
    drift = annual_drift(run)
    converged = True
    if tolerance is not None and not drift <= tolerance:
        converged = False
        logger.warning(
            f"Spin-up has not levelled off: SOC changed by {drift:.2e} (relative) over the final year, "
            f"tolerance is {tolerance:.2e}."
        )
    return SpinupResult(
        trajectory=run,
        equilibrium=run.equilibrium(12),
        drift=drift,
        converged=converged,
    )


def run_spinup(
    iom: float,
    xi,
    plant_input12,
    manure12,
    clay: float,
    dpm_rpm: float = 1.44,
    years: int = 750,
    method: str = "rothc",
    tolerance=None,
) -> SpinupResult:
    """
    Run the pre-history from (0, 0, 0, 0, IOM).

    ``xi`` is the spin-up modifier series (``years * 12`` months, usually
    cached); plant and manure inputs are one representative year, tiled.
    The equilibrium is the mean of the final 12 monthly snapshots.
    """
    if years < 2:
        raise ConfigurationError("Spin-up needs at least two years.")
    xi = np.asarray(xi, dtype=float)
    if xi.size != years * 12:
        raise ConfigurationError(f"Spin-up modifiers cover {xi.size} months, expected {years * 12}.")

    run = run_rothc(
        CarbonPoolState.initial(iom),
        xi,
        tile_months(plant_input12, years, "plant input"),
        tile_months(manure12, years, "manure input"),
        clay=clay,
        dpm_rpm=dpm_rpm,
        method=method,
    )
    return _summarise(run, tolerance)


def extend_spinup(
    result: SpinupResult,
    extra_years: int,
    xi12,
    plant_input12,
    manure12,
    clay: float,
    dpm_rpm: float = 1.44,
    method: str = "rothc",
    tolerance=None,
) -> SpinupResult:
    """Continue a spin-up from its final state for ``extra_years`` more years."""
    run = run_rothc(
        result.trajectory.final_state,
        tile_months(xi12, extra_years, "rate modifier"),
        tile_months(plant_input12, extra_years, "plant input"),
        tile_months(manure12, extra_years, "manure input"),
        clay=clay,
        dpm_rpm=dpm_rpm,
        method=method,
    )
    return _summarise(run, tolerance)
