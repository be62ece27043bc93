## File: RothC_Core.py
"""
Core RothC model routines: rate-modifying factors, inert pool sizing and the
monthly 5-pool integrator (with CO2 tracking)
"""

# -----------------------------------------------------------------------------
# MODULES
# -----------------------------------------------------------------------------
from typing import Dict, Optional, Tuple

import numpy as np
from scipy.linalg import expm

from soc_scenarios.data_model import CarbonPoolState, ModifierSeries, ScenarioRun
from soc_scenarios.errors import ConfigurationError, DimensionMismatchError

# -----------------------------------------------------------------------------
# Model constants
# -----------------------------------------------------------------------------
# Annual decay rate constants (1/yr) for DPM, RPM, BIO, HUM. IOM does not decay.
DECAY_RATES = np.array([10.0, 0.3, 0.66, 0.02], dtype=float)

# Manure (FYM) split into DPM, RPM and HUM
FYM_SPLIT = np.array([0.49, 0.49, 0.02], dtype=float)

# Fraction of decomposed carbon going to BIO (rest of the non-respired part to HUM)
BIO_FRACTION = 0.46
HUM_FRACTION = 0.54

# Moisture: 1-bar point and bare-soil limiting deficit relative to the maximum
SMD_1BAR_FRACTION = 0.444
BARE_SOIL_DIVISOR = 1.8

TIME_FACT = 12.0  # monthly steps

# fT is only defined above this temperature (denominator of its exponent)
TEMPERATURE_ASYMPTOTE = -18.27


# -----------------------------------------------------------------------------
# Input checks
# -----------------------------------------------------------------------------
def _check_clay(clay: float) -> None:
    if not 0.0 <= clay <= 1.0:
        raise ConfigurationError(f"Clay must be a fraction within [0, 1], got {clay}.")


def _check_thickness(thickness: float) -> None:
    if thickness <= 0:
        raise ConfigurationError(f"Soil thickness must be positive, got {thickness}.")


def _check_lengths(**series: np.ndarray) -> int:
    lengths = {name: np.asarray(values).size for name, values in series.items()}
    if len(set(lengths.values())) > 1:
        raise DimensionMismatchError(f"Monthly series differ in length: {lengths}")
    return next(iter(lengths.values()))


def _non_negative(values, name: str) -> np.ndarray:
    arr = np.asarray(values, dtype=float).ravel()
    if not np.isfinite(arr).all():
        raise ConfigurationError(f"{name} contains non-finite values.")
    if (arr < 0).any():
        raise ConfigurationError(f"{name} must be non-negative (min {arr.min():.4g}).")
    return arr


# -----------------------------------------------------------------------------
# Rate-modifying factors
# -----------------------------------------------------------------------------
def RMF_Tmp(temp, floor: float = -5.0):
    """
    Temperature modifying factor, vectorized over an array of temp (°C).
    temp <= floor → 0.0, else 47.91/(exp(106.06/(temp+18.27))+1).
    """
    if floor <= TEMPERATURE_ASYMPTOTE:
        raise ConfigurationError(f"Temperature floor must lie above {TEMPERATURE_ASYMPTOTE} °C, got {floor}.")
    tmp = np.asarray(temp, dtype=float)
    with np.errstate(divide='ignore', over='ignore', invalid='ignore'):
        rmf = 47.91 / (np.exp(106.06 / (tmp + 18.27)) + 1.0)
    # zero out at and below the floor
    return np.where(tmp <= floor, 0.0, rmf)


def max_soil_moisture_deficit(clay: float, thickness: float, bare: bool = False) -> float:
    """
    Maximum topsoil moisture deficit (mm, negative).

    The RothC value -(20.0 + 1.3 (%clay) - 0.01 (%clay)**2) is given for 23 cm,
    so it is rescaled to the actual thickness. Bare soil dries out to a
    shallower limit (the vegetated value divided by 1.8).
    """
    _check_clay(clay)
    _check_thickness(thickness)
    pclay = clay * 100.0
    smd_max = -(20.0 + 1.3 * pclay - 0.01 * pclay**2) * thickness / 23.0
    if bare:
        smd_max /= BARE_SOIL_DIVISOR
    return smd_max


def RMF_Moist_series(
    rain,
    evap,
    clay: float,
    thickness: float,
    pe_factor: float = 0.75,
    bare: bool = False,
    fw_min: float = 0.2,
    fw_max: float = 1.0,
) -> np.ndarray:
    """Moisture modifying factor for a whole monthly series under one cover assumption.

    evap must be given as open-pan evaporation; it is scaled by ``pe_factor``
    before being subtracted from rain. The accumulated deficit never goes above
    zero (no surplus storage) and is held at the maximum deficit once reached.
    """
    rain = np.asarray(rain, dtype=float).ravel()
    evap = np.asarray(evap, dtype=float).ravel()
    _check_lengths(rain=rain, evap=evap)

    smd_max = max_soil_moisture_deficit(clay, thickness, bare=bare)
    smd_1bar = SMD_1BAR_FRACTION * smd_max

    # water balance
    df = rain - pe_factor * evap

    acc = np.empty_like(df)
    deficit = 0.0
    for t, d in enumerate(df):
        deficit = min(deficit + d, 0.0)
        if deficit <= smd_max:
            deficit = smd_max
        acc[t] = deficit

    with np.errstate(divide='ignore', invalid='ignore'):
        scaled = fw_min + (fw_max - fw_min) * (smd_max - acc) / (smd_max - smd_1bar)
    rmf = np.where(acc > smd_1bar, fw_max, scaled)
    return np.clip(rmf, fw_min, fw_max)


def RMF_Moist(
    rain,
    evap,
    clay: float,
    thickness: float,
    cover,
    pe_factor: float = 0.75,
    fw_min: float = 0.2,
    fw_max: float = 1.0,
) -> np.ndarray:
    """
    Moisture modifying factor merged on the monthly cover indicator.

    The series is computed twice, once assuming the soil is vegetated all year
    and once assuming it is bare all year, and each month takes the value that
    matches its cover (1 vegetated, 0 bare).
    """
    cover = np.asarray(cover).ravel()
    _check_lengths(rain=rain, evap=evap, cover=cover)

    fw_veg = RMF_Moist_series(rain, evap, clay, thickness, pe_factor, False, fw_min, fw_max)
    fw_bare = RMF_Moist_series(rain, evap, clay, thickness, pe_factor, True, fw_min, fw_max)
    return np.where(cover == 1, fw_veg, fw_bare)


def RMF_PC(pc):
    """
    Plant‐cover modifying factor, vectorized over array of pc (0/1).
    1 if bare (pc==0), 0.6 otherwise.
    """
    arr = np.asarray(pc)
    return np.where(arr == 0, 1.0, 0.6)


def rate_modifiers(
    temp,
    rain,
    evap,
    cover,
    clay: float,
    thickness: float,
    pe_factor: float = 0.75,
    temperature_floor: float = -5.0,
    fw_min: float = 0.2,
    fw_max: float = 1.0,
    apply_cover_factor: bool = False,
) -> ModifierSeries:
    """
    Monthly decomposition rate modifiers for one region / land use / climate.

    Returns the fT and fW series (and the plant-cover factor when
    ``apply_cover_factor`` is set); ``ModifierSeries.xi`` is their product.
    All inputs must have the same number of months.
    """
    _check_clay(clay)
    _check_thickness(thickness)
    _check_lengths(temp=temp, rain=rain, evap=evap, cover=cover)

    ft = RMF_Tmp(temp, floor=temperature_floor)
    fw = RMF_Moist(rain, evap, clay, thickness, cover, pe_factor, fw_min, fw_max)
    fc = RMF_PC(cover) if apply_cover_factor else None
    return ModifierSeries(ft=ft, fw=fw, fc=fc)


# -----------------------------------------------------------------------------
# Pool sizing and partition
# -----------------------------------------------------------------------------
def iom_from_soc(soc):
    """Inert organic matter from total SOC (Falloon et al., 1998)."""
    soc = np.asarray(soc, dtype=float)
    if (soc < 0).any():
        raise ConfigurationError("SOC must be non-negative to size the IOM pool.")
    iom = 0.049 * soc**1.139
    return float(iom) if iom.ndim == 0 else iom


def co2_bio_hum_ratio(clay: float) -> float:
    """CO2/(BIO+HUM) ratio x of decomposed carbon, from clay fraction."""
    _check_clay(clay)
    return 1.67 * (1.85 + 1.60 * np.exp(-0.0786 * clay * 100.0))


def transfer_matrix(clay: float) -> np.ndarray:
    """5x5 annual rate matrix A of the linear system dC/dt = xi * A C + inputs."""
    x = co2_bio_hum_ratio(clay)
    A = np.zeros((5, 5), dtype=float)
    A[np.arange(4), np.arange(4)] = -DECAY_RATES
    A[2, :4] += BIO_FRACTION / (x + 1.0) * DECAY_RATES
    A[3, :4] += HUM_FRACTION / (x + 1.0) * DECAY_RATES
    return A


def _input_vectors(plant_input: np.ndarray, manure: np.ndarray, dpm_rpm: float) -> np.ndarray:
    """Monthly carbon added to each pool, shape (N, 5)."""
    dpm_frac = dpm_rpm / (dpm_rpm + 1.0)
    inputs = np.zeros((plant_input.size, 5), dtype=float)
    inputs[:, 0] = dpm_frac * plant_input + FYM_SPLIT[0] * manure
    inputs[:, 1] = (1.0 - dpm_frac) * plant_input + FYM_SPLIT[1] * manure
    inputs[:, 3] = FYM_SPLIT[2] * manure
    return inputs


# -----------------------------------------------------------------------------
# Integrators
# -----------------------------------------------------------------------------
def _run_rothc_steps(c0: np.ndarray, xi: np.ndarray, inputs: np.ndarray, clay: float):
    """Standard monthly RothC step: decay at xi*k/12, partition losses, add inputs at month end."""
    n = xi.size
    pools = np.empty((n + 1, 5), dtype=float)
    co2 = np.empty(n, dtype=float)
    pools[0] = c0

    x = co2_bio_hum_ratio(clay)
    resp_frac = x / (x + 1.0)
    to_bio = BIO_FRACTION / (x + 1.0)
    to_hum = HUM_FRACTION / (x + 1.0)

    retained = np.exp(-np.outer(xi, DECAY_RATES) / TIME_FACT).tolist()
    added = inputs.tolist()

    DPM, RPM, BIO, HUM, IOM = (float(v) for v in c0)
    for t in range(n):
        r_dpm, r_rpm, r_bio, r_hum = retained[t]
        i_dpm, i_rpm, _, i_hum, _ = added[t]

        # decay existing pools
        DPM_1 = DPM * r_dpm
        RPM_1 = RPM * r_rpm
        BIO_1 = BIO * r_bio
        HUM_1 = HUM * r_hum

        loss = (DPM - DPM_1) + (RPM - RPM_1) + (BIO - BIO_1) + (HUM - HUM_1)
        co2[t] = loss * resp_frac

        DPM = DPM_1 + i_dpm
        RPM = RPM_1 + i_rpm
        BIO = BIO_1 + loss * to_bio
        HUM = HUM_1 + loss * to_hum + i_hum

        pools[t + 1] = (DPM, RPM, BIO, HUM, IOM)

    return pools, co2


def _exact_transition(rate_m: float, A: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    One-month transition of dC/dt = rate_m * A C + f for constant f.

    Uses the augmented matrix [[rate_m*A, I], [0, 0]] so that a single expm
    yields both the state propagator and the integrated input response.
    """
    n = A.shape[0]
    dt = 1.0 / TIME_FACT
    aug = np.zeros((2 * n, 2 * n), dtype=float)
    aug[:n, :n] = rate_m * A * dt
    aug[:n, n:] = np.eye(n) * dt
    E = expm(aug)
    return E[:n, :n], E[:n, n:]


def _run_exact_steps(c0: np.ndarray, xi: np.ndarray, inputs: np.ndarray, clay: float):
    """Matrix-exponential solution with monthly inputs spread evenly over the month."""
    n = xi.size
    pools = np.empty((n + 1, 5), dtype=float)
    co2 = np.empty(n, dtype=float)
    pools[0] = c0

    A = transfer_matrix(clay)
    cache: Dict[float, Tuple[np.ndarray, np.ndarray]] = {}
    state = c0.astype(float)
    for t in range(n):
        rate_m = float(xi[t])
        if rate_m not in cache:
            cache[rate_m] = _exact_transition(rate_m, A)
        phi, gamma = cache[rate_m]
        new_state = phi @ state + gamma @ (inputs[t] * TIME_FACT)
        # IOM is inert
        new_state[4] = state[4]
        co2[t] = state.sum() + inputs[t].sum() - new_state.sum()
        pools[t + 1] = new_state
        state = new_state

    return pools, co2


def run_rothc(
    c0: CarbonPoolState,
    xi,
    plant_input,
    manure=None,
    clay: float = 0.25,
    dpm_rpm: float = 1.44,
    method: str = "rothc",
) -> ScenarioRun:
    """
    Advance the carbon pools over N monthly steps.

    Parameters
    ----------
    c0 : CarbonPoolState
        Initial pools (Mg C/ha), all non-negative.
    xi : array (N,)
        Combined monthly rate modifier.
    plant_input, manure : array (N,)
        Monthly plant residue and manure carbon inputs (Mg C/ha/month).
        ``manure`` defaults to zero.
    clay : float
        Clay fraction (0-1), sets the CO2/(BIO+HUM) partition.
    dpm_rpm : float
        DPM/RPM ratio of the incoming plant material.
    method : {"rothc", "exact"}
        "rothc" is the standard RothC monthly step; "exact" solves the linear
        ODE per month with a matrix exponential.

    Returns
    -------
    ScenarioRun with N + 1 snapshots (the initial state first).
    """
    _check_clay(clay)
    if dpm_rpm <= 0:
        raise ConfigurationError(f"DPM/RPM ratio must be positive, got {dpm_rpm}.")

    c0_arr = _non_negative(c0.as_array(), "Initial carbon pools")
    xi = _non_negative(xi, "Rate modifier")
    plant_input = _non_negative(plant_input, "Plant carbon input")
    manure = np.zeros_like(plant_input) if manure is None else _non_negative(manure, "Manure carbon input")
    _check_lengths(xi=xi, plant_input=plant_input, manure=manure)

    inputs = _input_vectors(plant_input, manure, dpm_rpm)
    if method == "rothc":
        pools, co2 = _run_rothc_steps(c0_arr, xi, inputs, clay)
    elif method == "exact":
        pools, co2 = _run_exact_steps(c0_arr, xi, inputs, clay)
    else:
        raise ConfigurationError(f"Unknown integration method {method!r}.")

    return ScenarioRun(pools=pools, co2=co2, plant_input=plant_input)


def tile_months(values, n_years: int, name: Optional[str] = None) -> np.ndarray:
    """Repeat a 12-month cycle for ``n_years``."""
    values = np.asarray(values, dtype=float).ravel()
    if values.size != 12:
        raise DimensionMismatchError(f"{name or 'series'} must contain 12 monthly values, got {values.size}.")
    return np.tile(values, n_years)
