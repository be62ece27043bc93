"""Exceptions and warnings raised by the SOC scenario engine."""


class SocModelError(Exception):
    """Base class for every error raised by soc_scenarios."""


class ConfigurationError(SocModelError, ValueError):
    """Malformed inputs, out-of-range parameters or degenerate setups."""


class DimensionMismatchError(ConfigurationError):
    """Two series that must be aligned month-by-month have different lengths."""


class MissingCombinationError(ConfigurationError):
    """A (region, land use, climate source) combination has no staged result."""


class CalibrationWarning(UserWarning):
    """The below-ground input optimizer did not reach the requested tolerance."""
