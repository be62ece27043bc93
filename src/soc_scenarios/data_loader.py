"""Adapters turning the prepared input tables into typed simulation records.

Geographic aggregation and spreadsheet parsing happen upstream; what reaches
the engine are plain ``polars`` tables (one row per region/month, land use/
month, etc.). This module validates their columns, reshapes the monthly rows
into 12-value vectors and builds the immutable records of ``data_model``.

``read_table`` loads a CSV or Parquet file once and hands out clones, so
callers can reuse the same table without re-reading it from disk.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional, Tuple

import numpy as np
import polars as pl

from soc_scenarios.data_model import (
    ClimateSeries,
    LandManagementProfile,
    RegionAreaTable,
    RegionInputs,
    SoilProfile,
)
from soc_scenarios.errors import ConfigurationError, DimensionMismatchError


@lru_cache(maxsize=None)
def _load_table(path: str) -> pl.DataFrame:
    """Read a CSV or Parquet table from disk."""

    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Input table not found: {file_path}")
    if file_path.suffix.lower() == ".parquet":
        return pl.read_parquet(file_path)
    return pl.read_csv(file_path)


def read_table(path) -> pl.DataFrame:
    """Return a cached copy of the table stored at ``path``."""

    return _load_table(str(Path(path).resolve())).clone()


def _require_columns(df: pl.DataFrame, columns: Iterable[str], table: str) -> None:
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ConfigurationError(f"The {table} table is missing columns {missing}.")


def _monthly_vector(group: pl.DataFrame, column: str, label: str) -> np.ndarray:
    """Values of ``column`` ordered by month, requiring exactly months 1..12."""

    ordered = group.sort("month")
    months = ordered["month"].to_list()
    if months != list(range(1, 13)):
        raise DimensionMismatchError(f"{label} must have one row for each month 1-12, got {months}.")
    return ordered[column].to_numpy().astype(float)


def soc_stock_from_concentration(soc_percent, bulk_density, thickness):
    """SOC stock (Mg C/ha) from concentration (%), bulk density (g/cm3) and thickness (cm)."""

    return np.asarray(soc_percent, dtype=float) * np.asarray(bulk_density, dtype=float) * np.asarray(thickness, dtype=float)


# -----------------------------------------------------------------------------
# Region tables
# -----------------------------------------------------------------------------
def load_soil_profiles(df: pl.DataFrame) -> Dict[str, SoilProfile]:
    """Soil table with columns ``region, clay, bulk_density[, thickness]``."""

    _require_columns(df, ("region", "clay", "bulk_density"), "soil")
    has_thickness = "thickness" in df.columns
    profiles = {}
    for row in df.iter_rows(named=True):
        region = str(row["region"])
        if region in profiles:
            raise ConfigurationError(f"Region {region} appears twice in the soil table.")
        thickness = row["thickness"] if has_thickness else None
        profiles[region] = SoilProfile(
            region=region,
            clay=float(row["clay"]),
            bulk_density=float(row["bulk_density"]),
            thickness=None if thickness is None else float(thickness),
        )
    return profiles


def load_observed_soc(
    df: pl.DataFrame,
    soils: Optional[Mapping[str, SoilProfile]] = None,
    default_thickness: float = 30.0,
) -> Dict[str, Dict[str, float]]:
    """
    Observed SOC per region and land use.

    Either a ``soc`` column (Mg C/ha) or a ``soc_percent`` column, which is
    converted to a stock with the region's bulk density and thickness.
    """

    _require_columns(df, ("region", "land_use"), "observed SOC")
    if "soc" in df.columns:
        stocks = df.select("region", "land_use", pl.col("soc").cast(pl.Float64))
    elif "soc_percent" in df.columns:
        if soils is None:
            raise ConfigurationError("Soil profiles are needed to convert soc_percent into stocks.")
        rows = []
        for row in df.iter_rows(named=True):
            soil = soils.get(str(row["region"]))
            if soil is None:
                raise ConfigurationError(f"No soil profile for region {row['region']}.")
            stock = soc_stock_from_concentration(row["soc_percent"], soil.bulk_density, soil.depth(default_thickness))
            rows.append({"region": row["region"], "land_use": row["land_use"], "soc": float(stock)})
        stocks = pl.DataFrame(rows, schema={"region": pl.Utf8, "land_use": pl.Utf8, "soc": pl.Float64})
    else:
        raise ConfigurationError("The observed SOC table needs a 'soc' or 'soc_percent' column.")

    observed: Dict[str, Dict[str, float]] = {}
    for row in stocks.drop_nulls("soc").iter_rows(named=True):
        observed.setdefault(str(row["region"]), {})[str(row["land_use"])] = float(row["soc"])
    return observed


def load_regions(
    soils: pl.DataFrame,
    climate_normals: pl.DataFrame,
    observed_soc: Optional[pl.DataFrame] = None,
    default_thickness: float = 30.0,
) -> Dict[str, RegionInputs]:
    """
    Region records from the soil table, the monthly water-balance normals
    (``region, month, precipitation, evapotranspiration``) and observed SOC.
    """

    profiles = load_soil_profiles(soils)
    _require_columns(climate_normals, ("region", "month", "precipitation", "evapotranspiration"), "climate normals")
    observed = load_observed_soc(observed_soc, profiles, default_thickness) if observed_soc is not None else {}

    regions = {}
    for (region,), group in climate_normals.group_by(["region"], maintain_order=True):
        region = str(region)
        if region not in profiles:
            raise ConfigurationError(f"Region {region} has climate normals but no soil profile.")
        regions[region] = RegionInputs(
            soil=profiles[region],
            precipitation=_monthly_vector(group, "precipitation", f"Precipitation of {region}"),
            evapotranspiration=_monthly_vector(group, "evapotranspiration", f"Evapotranspiration of {region}"),
            observed_soc=observed.get(region, {}),
        )

    missing = sorted(set(profiles) - set(regions))
    if missing:
        raise ConfigurationError(f"Regions without climate normals: {missing}")
    return regions


# -----------------------------------------------------------------------------
# Land management
# -----------------------------------------------------------------------------
def load_land_management(df: pl.DataFrame) -> Dict[str, LandManagementProfile]:
    """
    Land management table, one row per land use and month:
    ``land_use, month, residue, manure, cover[, dpm_rpm, base]``.
    ``dpm_rpm`` and ``base`` are read from the first row of each land use.
    """

    _require_columns(df, ("land_use", "month", "residue", "manure", "cover"), "land management")
    profiles = {}
    for (name,), group in df.group_by(["land_use"], maintain_order=True):
        name = str(name)
        first = group.row(0, named=True)
        base = first.get("base")
        profiles[name] = LandManagementProfile(
            name=name,
            residue=_monthly_vector(group, "residue", f"Residue of {name}"),
            manure=_monthly_vector(group, "manure", f"Manure of {name}"),
            cover=_monthly_vector(group, "cover", f"Cover of {name}"),
            dpm_rpm=float(first["dpm_rpm"]) if first.get("dpm_rpm") is not None else 1.44,
            base=str(base) if base not in (None, "") else None,
        )
    return profiles


# -----------------------------------------------------------------------------
# Climate sources and areas
# -----------------------------------------------------------------------------
def load_climate_series(df: pl.DataFrame) -> Dict[Tuple[str, str], ClimateSeries]:
    """
    Monthly temperature per climate source and region:
    ``source, region, year, month, tmin, tmax[, precipitation, evapotranspiration]``.
    Years must be contiguous with all 12 months present.
    """

    _require_columns(df, ("source", "region", "year", "month", "tmin", "tmax"), "climate")
    with_water = "precipitation" in df.columns and "evapotranspiration" in df.columns
    series = {}
    for (source, region), group in df.group_by(["source", "region"], maintain_order=True):
        ordered = group.sort(["year", "month"])
        years = ordered["year"].to_numpy()
        months = ordered["month"].to_numpy()
        first_year = int(years[0])
        n_years = int(years[-1]) - first_year + 1
        expected_years = np.repeat(np.arange(first_year, first_year + n_years), 12)
        expected_months = np.tile(np.arange(1, 13), n_years)
        if years.size != expected_years.size or not (
            np.array_equal(years, expected_years) and np.array_equal(months, expected_months)
        ):
            raise DimensionMismatchError(
                f"Climate series {source}/{region} must contain every month of contiguous years."
            )
        series[(str(source), str(region))] = ClimateSeries(
            source=str(source),
            region=str(region),
            first_year=first_year,
            tmin=ordered["tmin"].to_numpy(),
            tmax=ordered["tmax"].to_numpy(),
            precipitation=ordered["precipitation"].to_numpy() if with_water else None,
            evapotranspiration=ordered["evapotranspiration"].to_numpy() if with_water else None,
        )
    return series


def load_area_table(df: pl.DataFrame) -> RegionAreaTable:
    """Land-use areas ``region, land_use, area_ha``; duplicate rows are summed."""

    _require_columns(df, ("region", "land_use", "area_ha"), "area")
    summed = (
        df.with_columns(pl.col("area_ha").cast(pl.Float64).fill_null(0.0))
        .group_by(["region", "land_use"])
        .agg(pl.col("area_ha").sum())
    )
    return RegionAreaTable(
        {(str(r), str(lu)): float(a) for r, lu, a in summed.select("region", "land_use", "area_ha").iter_rows()}
    )
