"""
Area-weighted reduction of per-hectare trajectories into composite totals.

Per-hectare SOC (Mg C/ha) times land-use area (ha) gives Mg C. Composite cells
are keyed by (climate source, climate mode, scenario) and are plain sums, so
partial accumulators built over any partition of regions merge to the same
result as a single pass.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, NamedTuple, Optional

import numpy as np
import polars as pl

from soc_scenarios.data_model import POOL_NAMES, CarbonPoolState, ProjectionResult, RegionAreaTable, ScenarioRun
from soc_scenarios.errors import DimensionMismatchError


class CompositeKey(NamedTuple):
    climate_source: str
    climate_mode: str
    scenario: str


def sequestration_signal(run: ScenarioRun, baseline: CarbonPoolState) -> np.ndarray:
    """Per-month total SOC minus the baseline equilibrium SOC (Mg C/ha)."""
    return run.total - baseline.SOC


@dataclass
class CompositeCell:
    total: np.ndarray          # Mg C
    sequestration: np.ndarray  # Mg C
    area: float = 0.0          # ha
    n_members: int = 0

    def _check(self, other_length: int) -> None:
        if self.total.size != other_length:
            raise DimensionMismatchError(
                f"Cannot combine trajectories of {self.total.size} and {other_length} months."
            )


@dataclass
class CompositeAccumulator:
    cells: Dict[CompositeKey, CompositeCell] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.cells)

    def __getitem__(self, key) -> CompositeCell:
        return self.cells[CompositeKey(*key)]

    def _accumulate(self, key: CompositeKey, total: np.ndarray, seq: np.ndarray, area: float, n: int) -> None:
        cell = self.cells.get(key)
        if cell is None:
            self.cells[key] = CompositeCell(total.copy(), seq.copy(), area, n)
            return
        cell._check(total.size)
        cell.total += total
        cell.sequestration += seq
        cell.area += area
        cell.n_members += n

    def add(self, result: ProjectionResult, area: float) -> None:
        """Add one projection weighted by the area of the land use it starts from."""
        key = CompositeKey(result.key.climate_source, result.climate_mode, result.scenario)
        self._accumulate(
            key,
            result.run.total * area,
            sequestration_signal(result.run, result.baseline) * area,
            float(area),
            1,
        )

    def merge(self, other: "CompositeAccumulator") -> "CompositeAccumulator":
        """Fold another accumulator into this one (in place) and return self."""
        for key, cell in other.cells.items():
            self._accumulate(key, cell.total, cell.sequestration, cell.area, cell.n_members)
        return self

    def to_frame(self) -> pl.DataFrame:
        """Long table: one row per composite cell and month."""
        frames = []
        for key, cell in sorted(self.cells.items()):
            n = cell.total.size
            frames.append(
                pl.DataFrame(
                    {
                        "climate_source": [key.climate_source] * n,
                        "climate_mode": [key.climate_mode] * n,
                        "scenario": [key.scenario] * n,
                        "month": np.arange(n),
                        "soc_total_Mg": cell.total,
                        "soc_change_Mg": cell.sequestration,
                        "area_ha": [cell.area] * n,
                    }
                )
            )
        if not frames:
            return pl.DataFrame(
                schema={
                    "climate_source": pl.Utf8,
                    "climate_mode": pl.Utf8,
                    "scenario": pl.Utf8,
                    "month": pl.Int64,
                    "soc_total_Mg": pl.Float64,
                    "soc_change_Mg": pl.Float64,
                    "area_ha": pl.Float64,
                }
            )
        return pl.concat(frames)


def aggregate(
    results: Iterable[ProjectionResult],
    areas: RegionAreaTable,
    accumulator: Optional[CompositeAccumulator] = None,
) -> CompositeAccumulator:
    """Single-pass area-weighted sum. Regions / land uses without area contribute zero."""
    acc = accumulator if accumulator is not None else CompositeAccumulator()
    for result in results:
        acc.add(result, areas.area(result.key.region, result.key.land_use))
    return acc


def trajectory_frame(result: ProjectionResult) -> pl.DataFrame:
    """Per-month pools, total and baseline difference of a single projection (Mg C/ha)."""
    run = result.run
    n = len(run)
    data = {
        "region": [result.key.region] * n,
        "land_use": [result.key.land_use] * n,
        "climate_source": [result.key.climate_source] * n,
        "climate_mode": [result.climate_mode] * n,
        "scenario": [result.scenario] * n,
        "month": np.arange(n),
    }
    for i, name in enumerate(POOL_NAMES):
        data[name] = run.pools[:, i]
    data["SOC"] = run.total
    data["SOC_change"] = result.sequestration
    return pl.DataFrame(data)


def region_frame(results: Iterable[ProjectionResult], areas: RegionAreaTable) -> pl.DataFrame:
    """
    Area-weighted totals per region, climate source, mode and scenario (Mg C),
    summed over the land uses of each region.
    """
    per_region: Dict[str, CompositeAccumulator] = {}
    for result in results:
        acc = per_region.setdefault(result.key.region, CompositeAccumulator())
        acc.add(result, areas.area(result.key.region, result.key.land_use))

    frames = [
        acc.to_frame().with_columns(pl.lit(region).alias("region"))
        for region, acc in sorted(per_region.items())
    ]
    if not frames:
        return CompositeAccumulator().to_frame().with_columns(pl.lit(None, dtype=pl.Utf8).alias("region"))
    return pl.concat(frames)
