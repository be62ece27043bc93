"""
Typed records exchanged between the simulation components.

Intermediate results are keyed by a flat ``CombinationKey`` (region, land use,
climate source) instead of nested dictionaries, so a missing combination is a
``MissingCombinationError`` rather than a silent ``None``.
"""

from collections.abc import Mapping as _Mapping
from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, NamedTuple, Optional, Tuple

import numpy as np

from soc_scenarios.errors import ConfigurationError, DimensionMismatchError, MissingCombinationError

POOL_NAMES = ("DPM", "RPM", "BIO", "HUM", "IOM")


def _as_monthly_vector(values, name: str, length: Optional[int] = 12) -> np.ndarray:
    arr = np.array(values, dtype=float).ravel()
    if length is not None and arr.size != length:
        raise DimensionMismatchError(f"{name} must contain {length} monthly values, got {arr.size}.")
    arr.setflags(write=False)
    return arr


# -----------------------------------------------------------------------------
# Keys
# -----------------------------------------------------------------------------
class CombinationKey(NamedTuple):
    region: str
    land_use: str
    climate_source: str

    def __str__(self) -> str:
        return f"{self.region}/{self.land_use}/{self.climate_source}"


# -----------------------------------------------------------------------------
# Static inputs
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class SoilProfile:
    region: str
    clay: float                       # fraction (0-1)
    bulk_density: float               # g/cm3
    thickness: Optional[float] = None  # cm, falls back to the configured soil thickness

    def __post_init__(self):
        if not 0.0 <= self.clay <= 1.0:
            raise ConfigurationError(f"Clay fraction for {self.region} must be within [0, 1], got {self.clay}.")
        if self.bulk_density <= 0:
            raise ConfigurationError(f"Bulk density for {self.region} must be positive.")
        if self.thickness is not None and self.thickness <= 0:
            raise ConfigurationError(f"Soil thickness for {self.region} must be positive, got {self.thickness}.")

    def depth(self, default: float) -> float:
        return self.thickness if self.thickness is not None else default


@dataclass(frozen=True, eq=False)
class RegionInputs:
    """Soil plus long-term monthly water-balance normals and observed SOC stocks."""

    soil: SoilProfile
    precipitation: np.ndarray         # mm/month, 12 values
    evapotranspiration: np.ndarray    # mm/month, 12 values
    observed_soc: Mapping[str, float] = field(default_factory=dict)  # Mg C/ha per land use

    def __post_init__(self):
        object.__setattr__(self, "precipitation", _as_monthly_vector(self.precipitation, "precipitation"))
        object.__setattr__(self, "evapotranspiration", _as_monthly_vector(self.evapotranspiration, "evapotranspiration"))
        for land_use, soc in self.observed_soc.items():
            if soc <= 0:
                raise ConfigurationError(f"Observed SOC for {self.name}/{land_use} must be positive, got {soc}.")
        object.__setattr__(self, "observed_soc", dict(self.observed_soc))

    @property
    def name(self) -> str:
        return self.soil.region


@dataclass(frozen=True, eq=False)
class ClimateSeries:
    """Monthly temperature (and optionally water balance) for one region and source."""

    source: str
    region: str
    first_year: int
    tmin: np.ndarray
    tmax: np.ndarray
    precipitation: Optional[np.ndarray] = None
    evapotranspiration: Optional[np.ndarray] = None

    def __post_init__(self):
        tmin = _as_monthly_vector(self.tmin, "tmin", length=None)
        tmax = _as_monthly_vector(self.tmax, "tmax", length=None)
        if tmin.size != tmax.size:
            raise DimensionMismatchError(
                f"tmin and tmax for {self.source}/{self.region} differ in length ({tmin.size} vs {tmax.size})."
            )
        if tmin.size == 0 or tmin.size % 12 != 0:
            raise DimensionMismatchError(
                f"Climate series {self.source}/{self.region} must cover whole years, got {tmin.size} months."
            )
        object.__setattr__(self, "tmin", tmin)
        object.__setattr__(self, "tmax", tmax)
        for name in ("precipitation", "evapotranspiration"):
            values = getattr(self, name)
            if values is not None:
                object.__setattr__(self, name, _as_monthly_vector(values, name, length=tmin.size))

    @property
    def n_years(self) -> int:
        return self.tmin.size // 12

    @property
    def last_year(self) -> int:
        return self.first_year + self.n_years - 1

    @property
    def temperature(self) -> np.ndarray:
        return (self.tmin + self.tmax) / 2.0

    def _slice(self, first_year: int, n_years: int) -> slice:
        if first_year < self.first_year or first_year + n_years - 1 > self.last_year:
            raise ConfigurationError(
                f"Climate source {self.source} for {self.region} covers {self.first_year}-{self.last_year}, "
                f"cannot provide {first_year}-{first_year + n_years - 1}."
            )
        start = (first_year - self.first_year) * 12
        return slice(start, start + n_years * 12)

    def window(self, first_year: int, n_years: int) -> np.ndarray:
        """Mean monthly temperature for ``n_years`` starting at ``first_year``."""
        return self.temperature[self._slice(first_year, n_years)]

    def water_window(self, first_year: int, n_years: int) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        """Precipitation and evapotranspiration for the same window, when the source carries them."""
        if self.precipitation is None or self.evapotranspiration is None:
            return None
        sl = self._slice(first_year, n_years)
        return self.precipitation[sl], self.evapotranspiration[sl]


@dataclass(frozen=True, eq=False)
class LandManagementProfile:
    """Monthly residue input, manure input and soil cover for one land use / management variant."""

    name: str
    residue: np.ndarray     # Mg C/ha/month
    manure: np.ndarray      # Mg C/ha/month
    cover: np.ndarray       # 1 vegetated, 0 bare
    dpm_rpm: float = 1.44
    base: Optional[str] = None

    def __post_init__(self):
        residue = _as_monthly_vector(self.residue, f"{self.name} residue")
        manure = _as_monthly_vector(self.manure, f"{self.name} manure")
        cover = _as_monthly_vector(self.cover, f"{self.name} cover")
        if (residue < 0).any() or (manure < 0).any():
            raise ConfigurationError(f"Carbon inputs for {self.name} must be non-negative.")
        if not np.isin(cover, (0.0, 1.0)).all():
            raise ConfigurationError(f"Cover indicator for {self.name} must be 0 (bare) or 1 (vegetated).")
        if self.dpm_rpm <= 0:
            raise ConfigurationError(f"DPM/RPM ratio for {self.name} must be positive.")
        if self.base == self.name:
            raise ConfigurationError(f"Land use {self.name} cannot be its own base variant.")
        object.__setattr__(self, "residue", residue)
        object.__setattr__(self, "manure", manure)
        object.__setattr__(self, "cover", cover.astype(int))

    @property
    def is_variant(self) -> bool:
        return self.base is not None


@dataclass(frozen=True)
class RegionAreaTable:
    """Hectares of each land use per region. Missing entries count as zero area."""

    areas: Mapping[Tuple[str, str], float] = field(default_factory=dict)

    def __post_init__(self):
        for key, value in self.areas.items():
            if value < 0:
                raise ConfigurationError(f"Area for {key} must be non-negative, got {value}.")
        object.__setattr__(self, "areas", dict(self.areas))

    def area(self, region: str, land_use: str) -> float:
        return float(self.areas.get((region, land_use), 0.0))

    def regions(self) -> Tuple[str, ...]:
        return tuple(sorted({region for region, _ in self.areas}))


# -----------------------------------------------------------------------------
# Carbon state and trajectories
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class CarbonPoolState:
    DPM: float  # Decomposable Plant Material (Mg C/ha)
    RPM: float  # Resistant Plant Material (Mg C/ha)
    BIO: float  # Microbial Biomass (Mg C/ha)
    HUM: float  # Humified Organic Matter (Mg C/ha)
    IOM: float  # Inert Organic Matter (Mg C/ha)

    @property
    def SOC(self) -> float:
        return self.DPM + self.RPM + self.BIO + self.HUM + self.IOM

    def as_array(self) -> np.ndarray:
        return np.array([self.DPM, self.RPM, self.BIO, self.HUM, self.IOM], dtype=float)

    @classmethod
    def from_array(cls, values) -> "CarbonPoolState":
        values = np.asarray(values, dtype=float).ravel()
        if values.size != len(POOL_NAMES):
            raise DimensionMismatchError(f"A carbon state needs {len(POOL_NAMES)} pools, got {values.size}.")
        return cls(*(float(v) for v in values))

    @classmethod
    def initial(cls, iom: float) -> "CarbonPoolState":
        """Empty active pools with a fixed inert pool, the spin-up starting point."""
        return cls(0.0, 0.0, 0.0, 0.0, float(iom))


@dataclass(frozen=True, eq=False)
class ModifierSeries:
    """Monthly temperature (fT), moisture (fW) and optional plant-cover (fC) rate modifiers."""

    ft: np.ndarray
    fw: np.ndarray
    fc: Optional[np.ndarray] = None

    def __post_init__(self):
        ft = _as_monthly_vector(self.ft, "ft", length=None)
        fw = _as_monthly_vector(self.fw, "fw", length=ft.size)
        object.__setattr__(self, "ft", ft)
        object.__setattr__(self, "fw", fw)
        if self.fc is not None:
            object.__setattr__(self, "fc", _as_monthly_vector(self.fc, "fc", length=ft.size))

    def __len__(self) -> int:
        return self.ft.size

    @property
    def xi(self) -> np.ndarray:
        xi = self.ft * self.fw
        if self.fc is not None:
            xi = xi * self.fc
        return xi

    def tail(self, n_months: int) -> "ModifierSeries":
        return ModifierSeries(
            self.ft[-n_months:],
            self.fw[-n_months:],
            None if self.fc is None else self.fc[-n_months:],
        )


@dataclass(frozen=True, eq=False)
class ScenarioRun:
    """Monthly pool snapshots (initial state included) of one integration."""

    pools: np.ndarray          # (N + 1, 5)
    co2: np.ndarray            # (N,) carbon respired each month
    plant_input: np.ndarray    # (N,) plant carbon added each month

    def __len__(self) -> int:
        return self.pools.shape[0]

    @property
    def n_months(self) -> int:
        return self.pools.shape[0] - 1

    @property
    def total(self) -> np.ndarray:
        return self.pools.sum(axis=1)

    def state(self, month: int) -> CarbonPoolState:
        return CarbonPoolState.from_array(self.pools[month])

    @property
    def initial_state(self) -> CarbonPoolState:
        return self.state(0)

    @property
    def final_state(self) -> CarbonPoolState:
        return self.state(-1)

    def equilibrium(self, months: int = 12) -> CarbonPoolState:
        """Mean of the final ``months`` snapshots."""
        if self.pools.shape[0] < months:
            raise ConfigurationError(f"Trajectory has {self.pools.shape[0]} snapshots, need {months} for a mean.")
        return CarbonPoolState.from_array(self.pools[-months:].mean(axis=0))

    def pool(self, name: str) -> np.ndarray:
        return self.pools[:, POOL_NAMES.index(name)]


# -----------------------------------------------------------------------------
# Staged results
# -----------------------------------------------------------------------------
@dataclass(frozen=True, eq=False)
class CalibrationResult:
    key: CombinationKey
    below_ground_input: float          # Mg C/ha/yr
    plant_input: np.ndarray            # Mg C/ha/month, 12 values (residue + below-ground)
    equilibrium: CarbonPoolState
    trajectory: Optional[ScenarioRun] = None
    converged: bool = True
    objective: float = 0.0
    inherited_from: Optional[str] = None


@dataclass(frozen=True, eq=False)
class ProjectionResult:
    key: CombinationKey                # land_use is the land use before the transition
    climate_mode: str
    scenario: str
    target_land_use: str
    run: ScenarioRun
    baseline: CarbonPoolState

    @property
    def sequestration(self) -> np.ndarray:
        return self.run.total - self.baseline.SOC


class ResultTable(_Mapping):
    """Flat mapping of CombinationKey -> staged result with explicit misses."""

    def __init__(self, items: Optional[Mapping[CombinationKey, object]] = None):
        self._items: Dict[CombinationKey, object] = dict(items or {})

    def __getitem__(self, key: CombinationKey):
        try:
            return self._items[key]
        except KeyError:
            raise MissingCombinationError(f"No result staged for {CombinationKey(*key)}.") from None

    def __iter__(self) -> Iterator[CombinationKey]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key) -> bool:
        return key in self._items

    def get(self, key, default=None):
        return self._items.get(key, default)

    def add(self, key: CombinationKey, value) -> None:
        if key in self._items:
            raise ConfigurationError(f"A result for {key} has already been staged.")
        self._items[key] = value
