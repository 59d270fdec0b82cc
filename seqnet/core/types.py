"""Core typing contracts for seqnet."""

from __future__ import annotations

from enum import Enum
from typing import Iterable, Tuple, Union

import numpy as np

Array = np.ndarray

FLOAT = np.float64

Label = int

PartialTarget = Tuple[int, float]

Target = Union[Array, Label, PartialTarget]


class GradCheckMode(str, Enum):
    """Parameter selection used by :meth:`Network.gradient_check`."""

    ALL = "all"
    RANDOM = "random"


def as_vector(values: Iterable[float] | Array) -> Array:
    """Return ``values`` as a contiguous 1-D float vector."""

    return np.ascontiguousarray(np.asarray(values, dtype=FLOAT).reshape(-1))


def is_label(target: object) -> bool:
    return isinstance(target, (int, np.integer)) and not isinstance(target, bool)


def _is_real(value: object) -> bool:
    return isinstance(value, (int, float, np.integer, np.floating)) and not isinstance(value, bool)


def is_partial_target(target: object) -> bool:
    """``(label, value)`` pairs; any other tuple is a dense target vector."""

    return (
        isinstance(target, tuple)
        and len(target) == 2
        and is_label(target[0])
        and _is_real(target[1])
    )


__all__ = [
    "Array",
    "FLOAT",
    "GradCheckMode",
    "Label",
    "PartialTarget",
    "Target",
    "as_vector",
    "is_label",
    "is_partial_target",
]
