"""Activation functions attached to stages.

Every activation works on whole vectors and expresses its derivative in
terms of the *output* ``y`` rather than the pre-activation ``a``; stages only
keep their outputs around between the forward and backward pass.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple, Type

import numpy as np

from .errors import ConfigurationError
from .types import FLOAT, Array


class ActivationKind(str, Enum):
    IDENTITY = "identity"
    SIGMOID = "sigmoid"
    TANH = "tanh"
    RELU = "relu"
    SOFTMAX = "softmax"


class Activation:
    """Element-wise activation base class."""

    kind: ActivationKind
    target_range: Tuple[float, float] = (0.1, 0.9)

    def f(self, a: Array) -> Array:
        raise NotImplementedError

    def df(self, y: Array) -> Array:
        """Return ``dy/da`` element-wise, given the output ``y``."""

        raise NotImplementedError

    def jacobian_row(self, y: Array, index: int) -> Array:
        """Return the vector ``v`` with ``v[j] = dy_j / da_index``."""

        row = np.zeros_like(y, dtype=FLOAT)
        row[index] = self.df(y[index : index + 1])[0]
        return row

    def scale(self) -> Tuple[float, float]:
        """Return the ``(min, max)`` target values this activation can reach."""

        return self.target_range

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Activation) and other.kind == self.kind

    def __hash__(self) -> int:
        return hash(self.kind)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class Identity(Activation):
    kind = ActivationKind.IDENTITY

    def f(self, a: Array) -> Array:
        return np.array(a, dtype=FLOAT, copy=True)

    def df(self, y: Array) -> Array:
        return np.ones_like(y, dtype=FLOAT)


class Sigmoid(Activation):
    kind = ActivationKind.SIGMOID

    def f(self, a: Array) -> Array:
        return 1.0 / (1.0 + np.exp(-a))

    def df(self, y: Array) -> Array:
        return y * (1.0 - y)


class Tanh(Activation):
    kind = ActivationKind.TANH
    target_range = (-0.8, 0.8)

    def f(self, a: Array) -> Array:
        return np.tanh(a)

    def df(self, y: Array) -> Array:
        return 1.0 - np.square(y)


class Relu(Activation):
    kind = ActivationKind.RELU

    def f(self, a: Array) -> Array:
        return np.maximum(a, 0.0)

    def df(self, y: Array) -> Array:
        return (y > 0.0).astype(FLOAT)


class Softmax(Activation):
    kind = ActivationKind.SOFTMAX
    target_range = (0.0, 1.0)

    def f(self, a: Array) -> Array:
        shifted = a - np.max(a)
        e = np.exp(shifted)
        return e / np.sum(e)

    def df(self, y: Array) -> Array:
        return y * (1.0 - y)

    def jacobian_row(self, y: Array, index: int) -> Array:
        row = -y * y[index]
        row[index] = y[index] * (1.0 - y[index])
        return row


_ACTIVATIONS: Dict[str, Type[Activation]] = {
    ActivationKind.IDENTITY.value: Identity,
    ActivationKind.SIGMOID.value: Sigmoid,
    ActivationKind.TANH.value: Tanh,
    ActivationKind.RELU.value: Relu,
    ActivationKind.SOFTMAX.value: Softmax,
}


def get_activation(spec: str | Activation) -> Activation:
    """Resolve ``spec`` to an activation instance."""

    if isinstance(spec, Activation):
        return spec
    key = str(spec).lower()
    if key == "tan_h":
        key = "tanh"
    try:
        return _ACTIVATIONS[key]()
    except KeyError as exc:
        available = ", ".join(sorted(_ACTIVATIONS))
        raise ConfigurationError(
            f"Unknown activation {spec!r}. Available activations: {available}"
        ) from exc


__all__ = [
    "Activation",
    "ActivationKind",
    "Identity",
    "Relu",
    "Sigmoid",
    "Softmax",
    "Tanh",
    "get_activation",
]
