"""Exception and warning types raised by the engine."""

from __future__ import annotations


class NetworkError(Exception):
    """Base class for every error raised by seqnet."""


class DimensionMismatchError(NetworkError, ValueError):
    """Input or target size disagrees with the declared network shape."""


class ConfigurationError(NetworkError, ValueError):
    """Invalid caller configuration (names, modes, sizes, structure)."""


class StageTypeError(ConfigurationError, TypeError):
    """A stage was requested as a kind it is not."""


class DivergenceWarning(RuntimeWarning):
    """Training stopped because a parameter became non-finite."""


__all__ = [
    "ConfigurationError",
    "DimensionMismatchError",
    "DivergenceWarning",
    "NetworkError",
    "StageTypeError",
]
