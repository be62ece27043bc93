"""
End-to-end run: calibration, inheritance, forward projections and aggregation.

Work is split along the independent axes of the problem. Calibration runs one
task per (region, observed land use, climate source); projections run one task
per (region, land use, climate source) covering every climate mode and
scenario. Rate modifiers are computed once in the parent process and tasks get
the finished series they need, so they are dispatched with joblib and merged
in the parent. Workers stay quiet: failures and non-converged calibrations
come back as data and are logged (and warned about) by the parent, where the
handlers from ``configure_logging`` live. A configuration error in one task is
recorded without stopping its siblings.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from joblib import Parallel, delayed
from tqdm import tqdm

from soc_scenarios.aggregation import CompositeAccumulator, aggregate
from soc_scenarios.calibration import (
    calibrate_below_ground_input,
    inherit_calibration,
    report_non_convergence,
    resolve_variant_table,
)
from soc_scenarios.config import SimulationConfig
from soc_scenarios.data_model import (
    CalibrationResult,
    ClimateSeries,
    CombinationKey,
    LandManagementProfile,
    ModifierSeries,
    ProjectionResult,
    RegionAreaTable,
    RegionInputs,
    ResultTable,
)
from soc_scenarios.errors import ConfigurationError, MissingCombinationError, SocModelError
from soc_scenarios.forcing import FORWARD, PHASES, SPINUP, ModifierCache
from soc_scenarios.log_utils import configure_logging
from soc_scenarios.scenarios import CLIMATE_CHANGE, CLIMATE_MODES, SCENARIOS, TO_OLD_GROWTH, project_land_use

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SimulationInputs:
    regions: Mapping[str, RegionInputs]
    climates: Mapping[Tuple[str, str], ClimateSeries]      # (source, region) -> series
    land_uses: Mapping[str, LandManagementProfile]
    areas: RegionAreaTable = field(default_factory=RegionAreaTable)

    @property
    def climate_sources(self) -> List[str]:
        return sorted({source for source, _ in self.climates})

    def climate(self, source: str, region: str) -> ClimateSeries:
        try:
            return self.climates[(source, region)]
        except KeyError:
            raise MissingCombinationError(f"No climate series for source {source} in region {region}.") from None

    def land_use(self, name: str) -> LandManagementProfile:
        try:
            return self.land_uses[name]
        except KeyError:
            raise MissingCombinationError(f"Unknown land use {name!r}.") from None

    def selected_regions(self, n_regions: Optional[int] = None) -> List[str]:
        names = sorted(self.regions)
        return names if n_regions is None else names[:n_regions]


@dataclass(frozen=True)
class TaskFailure:
    stage: str
    key: CombinationKey
    error: str


@dataclass
class PipelineResult:
    calibrations: ResultTable
    projections: List[ProjectionResult]
    composite: CompositeAccumulator
    failures: List[TaskFailure] = field(default_factory=list)


def _record_failure(failures: List[TaskFailure], stage: str, key: CombinationKey, error: str) -> None:
    logger.error(f"{stage.capitalize()} failed for {key}: {error}")
    failures.append(TaskFailure(stage, key, error))


# -----------------------------------------------------------------------------
# Rate modifiers
# -----------------------------------------------------------------------------
def modelled_land_uses(
    inputs: SimulationInputs,
    region_name: str,
    variant_table: Optional[Mapping[str, str]] = None,
) -> List[str]:
    """
    Land uses simulated in a region: those with observed SOC and a management
    profile, plus the best-management variants that inherit from them.
    """
    if variant_table is None:
        variant_table = resolve_variant_table(inputs.land_uses)
    observed = inputs.regions[region_name].observed_soc
    bases = {lu for lu in observed if lu in inputs.land_uses and lu not in variant_table}
    variants = {v for v, base in variant_table.items() if base in bases}
    return sorted(bases | variants)


def build_modifiers(
    inputs: SimulationInputs,
    config: SimulationConfig,
    regions: Optional[Sequence[str]] = None,
    phases: Sequence[str] = PHASES,
) -> ModifierCache:
    """
    Compute every rate-modifier series the run needs, once per
    (region, land use, climate source, phase).

    Series that cannot be built (missing climate source, climate window not
    covered) are recorded in the cache and surface as task failures later.
    """
    cache = ModifierCache(config)
    variant_table = resolve_variant_table(inputs.land_uses)
    if regions is None:
        regions = inputs.selected_regions(config.n_regions)

    for region_name in regions:
        region = inputs.regions[region_name]
        land_uses = modelled_land_uses(inputs, region_name, variant_table)
        for source in inputs.climate_sources:
            try:
                climate = inputs.climate(source, region_name)
            except MissingCombinationError as e:
                logger.warning(f"No rate modifiers for {region_name} under {source}: {e}")
                for name in land_uses:
                    for phase in phases:
                        cache.record_error(CombinationKey(region_name, name, source), phase, str(e))
                continue
            for name in land_uses:
                key = CombinationKey(region_name, name, source)
                for phase in phases:
                    try:
                        cache.get(key, phase, region, climate, inputs.land_uses[name])
                    except SocModelError as e:
                        logger.warning(f"No {phase} rate modifiers for {key}: {e}")
                        cache.record_error(key, phase, str(e))

    logger.info(f"Computed {len(cache)} rate-modifier series")
    return cache


# -----------------------------------------------------------------------------
# Worker tasks
# -----------------------------------------------------------------------------
def _calibration_task(
    key: CombinationKey,
    target_soc: float,
    land_use: LandManagementProfile,
    clay: float,
    xi,
    config: SimulationConfig,
):
    try:
        result = calibrate_below_ground_input(target_soc, land_use, clay, xi, config, key=key, report=False)
        return key, result, None
    except SocModelError as e:
        return key, None, str(e)


def _projection_task(
    key: CombinationKey,
    land_uses: Mapping[str, LandManagementProfile],
    calibrations: Dict[str, CalibrationResult],
    spinup_xi: Dict[str, ModifierSeries],
    forward_xi: Dict[str, ModifierSeries],
    variant_table: Mapping[str, str],
    clay: float,
    config: SimulationConfig,
    scenarios,
    climate_modes,
):
    try:
        results = project_land_use(
            key,
            land_uses,
            calibrations,
            spinup_xi,
            forward_xi,
            variant_table,
            clay,
            config,
            scenarios=scenarios,
            climate_modes=climate_modes,
        )
        return key, results, None
    except SocModelError as e:
        return key, [], str(e)


def _progress(tasks, desc: str, config: SimulationConfig):
    return tqdm(tasks, desc=desc, disable=not config.progress)


# -----------------------------------------------------------------------------
# Stages
# -----------------------------------------------------------------------------
def run_calibrations(
    inputs: SimulationInputs,
    config: SimulationConfig,
    failures: Optional[List[TaskFailure]] = None,
    modifiers: Optional[ModifierCache] = None,
) -> ResultTable:
    """
    Calibrate every land use with observed SOC, then copy calibrations to
    their best-management variants.
    """
    failures = failures if failures is not None else []
    variant_table = resolve_variant_table(inputs.land_uses)
    regions = inputs.selected_regions(config.n_regions)
    if modifiers is None:
        modifiers = build_modifiers(inputs, config, regions, phases=(SPINUP,))

    tasks = []
    for region_name in regions:
        region = inputs.regions[region_name]
        for land_use in sorted(region.observed_soc):
            if land_use in variant_table:
                logger.info(f"Observed SOC for variant {land_use} in {region_name} ignored; it inherits from {variant_table[land_use]}")
                continue
            if land_use not in inputs.land_uses:
                logger.warning(f"Observed SOC for {region_name}/{land_use} has no land management profile; skipped")
                continue
            for source in inputs.climate_sources:
                key = CombinationKey(region_name, land_use, source)
                try:
                    xi = modifiers.lookup(key, SPINUP).xi
                except MissingCombinationError as e:
                    _record_failure(failures, "calibration", key, str(e))
                    continue
                tasks.append((key, region.observed_soc[land_use], inputs.land_uses[land_use], region.soil.clay, xi))

    logger.info(f"Calibrating {len(tasks)} combinations across {len(regions)} regions")
    outputs = Parallel(n_jobs=config.n_jobs)(
        delayed(_calibration_task)(key, target, land_use, clay, xi, config)
        for key, target, land_use, clay, xi in _progress(tasks, "Calibration", config)
    )

    table = ResultTable()
    n_unconverged = 0
    for key, result, error in outputs:
        if result is None:
            _record_failure(failures, "calibration", key, error)
            continue
        if not result.converged:
            n_unconverged += 1
            report_non_convergence(result)
        table.add(key, result)

    for variant, base in sorted(variant_table.items()):
        for region_name in regions:
            for source in inputs.climate_sources:
                base_key = CombinationKey(region_name, base, source)
                if base_key not in table:
                    continue
                variant_key = CombinationKey(region_name, variant, source)
                try:
                    table.add(variant_key, inherit_calibration(table[base_key], inputs.land_uses[variant], variant_key))
                except ConfigurationError as e:
                    _record_failure(failures, "inheritance", variant_key, str(e))

    n_failed = sum(f.stage in ("calibration", "inheritance") for f in failures)
    logger.info(
        f"Calibration complete: {len(table)} combinations staged, {n_failed} failed, "
        f"{n_unconverged} not converged"
    )
    return table


def run_projections(
    inputs: SimulationInputs,
    calibrations: ResultTable,
    config: SimulationConfig,
    failures: Optional[List[TaskFailure]] = None,
    scenarios=SCENARIOS,
    climate_modes=CLIMATE_MODES,
    modifiers: Optional[ModifierCache] = None,
) -> List[ProjectionResult]:
    """Project every calibrated non-variant land use of each region under all scenarios."""
    failures = failures if failures is not None else []
    variant_table = resolve_variant_table(inputs.land_uses)
    with_forward = CLIMATE_CHANGE in climate_modes
    if modifiers is None:
        phases = (SPINUP, FORWARD) if with_forward else (SPINUP,)
        modifiers = build_modifiers(inputs, config, sorted({key.region for key in calibrations}), phases)

    grouped: Dict[Tuple[str, str], Dict[str, CalibrationResult]] = {}
    for key in calibrations:
        grouped.setdefault((key.region, key.climate_source), {})[key.land_use] = calibrations[key]

    tasks = []
    for key in sorted(k for k in calibrations if k.land_use not in variant_table):
        group = grouped[(key.region, key.climate_source)]
        spinup_xi, forward_xi = {}, {}
        try:
            for name in group:
                lu_key = CombinationKey(key.region, name, key.climate_source)
                # static climate only needs the final spin-up year
                spinup_xi[name] = modifiers.lookup(lu_key, SPINUP).tail(12)
                if with_forward:
                    forward_xi[name] = modifiers.lookup(lu_key, FORWARD)
        except MissingCombinationError as e:
            _record_failure(failures, "projection", key, str(e))
            continue
        tasks.append((key, group, spinup_xi, forward_xi))

    logger.info(f"Projecting {len(tasks)} combinations over {config.forward_years} years")
    if config.forward_years < 2 and TO_OLD_GROWTH in scenarios:
        logger.warning(f"{TO_OLD_GROWTH} is skipped: its plant-input ramp needs at least two forward years")
    outputs = Parallel(n_jobs=config.n_jobs)(
        delayed(_projection_task)(
            key,
            inputs.land_uses,
            group,
            spinup_xi,
            forward_xi,
            variant_table,
            inputs.regions[key.region].soil.clay,
            config,
            scenarios,
            climate_modes,
        )
        for key, group, spinup_xi, forward_xi in _progress(tasks, "Projection", config)
    )

    projections = []
    for key, results, error in outputs:
        if error is not None:
            _record_failure(failures, "projection", key, error)
        projections.extend(results)
    return projections


def run_pipeline(inputs: SimulationInputs, config: Optional[SimulationConfig] = None) -> PipelineResult:
    config = config or SimulationConfig()
    configure_logging(config.log_level, config.log_file)

    failures: List[TaskFailure] = []
    modifiers = build_modifiers(inputs, config)
    calibrations = run_calibrations(inputs, config, failures, modifiers)
    projections = run_projections(inputs, calibrations, config, failures, modifiers=modifiers)
    composite = aggregate(projections, inputs.areas)

    logger.info(
        f"Finished: {len(projections)} trajectories aggregated into {len(composite)} composite series, "
        f"{len(failures)} failed tasks"
    )
    return PipelineResult(
        calibrations=calibrations,
        projections=projections,
        composite=composite,
        failures=failures,
    )
