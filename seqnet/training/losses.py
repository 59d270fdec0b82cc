"""Loss registry and canonical activation/loss pairs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Tuple

import numpy as np

from ..core.activations import Activation, ActivationKind
from ..core.errors import ConfigurationError
from ..core.types import Array

LossFn = Callable[[Array, Array], Array]

# Keeps log() finite when an output saturates.
_EPS = 1e-12


class LossKind(str, Enum):
    MSE = "mse"
    ABSOLUTE = "absolute"
    CROSS_ENTROPY = "cross_entropy"
    CROSS_ENTROPY_MULTICLASS = "cross_entropy_multiclass"


@dataclass(frozen=True)
class Loss:
    """Loss wrapper exposing the summed scalar loss and ``dE/dy``."""

    kind: LossKind
    elementwise: LossFn
    gradient: LossFn

    @property
    def name(self) -> str:
        return self.kind.value

    def f(self, predicted: Array, target: Array) -> float:
        return float(np.sum(self.elementwise(predicted, target)))

    def df(self, predicted: Array, target: Array) -> Array:
        return self.gradient(predicted, target)

    def __call__(self, predicted: Array, target: Array) -> tuple[float, Array]:
        return self.f(predicted, target), self.df(predicted, target)


class LossRegistry:
    """Central registry for loss functions."""

    def __init__(self) -> None:
        self._registry: Dict[str, Loss] = {}

    def register(self, name: str, loss: Loss) -> None:
        self._registry[name] = loss

    def get(self, name: str) -> Loss:
        try:
            return self._registry[name]
        except KeyError as exc:
            available = ", ".join(self.names())
            raise ConfigurationError(
                f"Unknown loss {name!r}. Available losses: {available}"
            ) from exc

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def resolve(self, spec: str | Loss) -> Loss:
        if isinstance(spec, Loss):
            return spec
        return self.get(str(spec).lower())


REGISTRY = LossRegistry()


def _mse(y: Array, t: Array) -> Array:
    return 0.5 * np.square(y - t)


def _mse_grad(y: Array, t: Array) -> Array:
    return y - t


def _absolute(y: Array, t: Array) -> Array:
    return np.abs(y - t)


def _absolute_grad(y: Array, t: Array) -> Array:
    return np.sign(y - t)


def _cross_entropy(y: Array, t: Array) -> Array:
    y = np.clip(y, _EPS, 1.0 - _EPS)
    return -t * np.log(y) - (1.0 - t) * np.log(1.0 - y)


def _cross_entropy_grad(y: Array, t: Array) -> Array:
    y = np.clip(y, _EPS, 1.0 - _EPS)
    return (y - t) / (y * (1.0 - y))


def _cross_entropy_multiclass(y: Array, t: Array) -> Array:
    return -t * np.log(np.maximum(y, _EPS))


def _cross_entropy_multiclass_grad(y: Array, t: Array) -> Array:
    return -t / np.maximum(y, _EPS)


MSE = Loss(LossKind.MSE, _mse, _mse_grad)
ABSOLUTE = Loss(LossKind.ABSOLUTE, _absolute, _absolute_grad)
CROSS_ENTROPY = Loss(LossKind.CROSS_ENTROPY, _cross_entropy, _cross_entropy_grad)
CROSS_ENTROPY_MULTICLASS = Loss(
    LossKind.CROSS_ENTROPY_MULTICLASS,
    _cross_entropy_multiclass,
    _cross_entropy_multiclass_grad,
)

REGISTRY.register("mse", MSE)
REGISTRY.register("absolute", ABSOLUTE)
REGISTRY.register("cross_entropy", CROSS_ENTROPY)
REGISTRY.register("cross_entropy_multiclass", CROSS_ENTROPY_MULTICLASS)
# Short aliases used by configs and the CLI
REGISTRY.register("mae", ABSOLUTE)
REGISTRY.register("bce", CROSS_ENTROPY)
REGISTRY.register("ce", CROSS_ENTROPY_MULTICLASS)


# Pairs whose combined gradient dE/da reduces to ``y - t``.
CANONICAL_LINKS: FrozenSet[Tuple[ActivationKind, LossKind]] = frozenset(
    {
        (ActivationKind.SIGMOID, LossKind.CROSS_ENTROPY),
        (ActivationKind.TANH, LossKind.CROSS_ENTROPY),
        (ActivationKind.IDENTITY, LossKind.MSE),
        (ActivationKind.SOFTMAX, LossKind.CROSS_ENTROPY_MULTICLASS),
    }
)


def is_canonical_link(activation: Activation, loss: Loss) -> bool:
    return (activation.kind, loss.kind) in CANONICAL_LINKS


__all__ = [
    "ABSOLUTE",
    "CANONICAL_LINKS",
    "CROSS_ENTROPY",
    "CROSS_ENTROPY_MULTICLASS",
    "MSE",
    "Loss",
    "LossKind",
    "LossRegistry",
    "REGISTRY",
    "is_canonical_link",
]
