"""Optimizers updating stage parameters from merged gradients.

Every optimizer follows the same contract: ``update(param, grad, key=...,
hessian=...)`` returns the new parameter vector without touching ``param``.
``key`` names the parameter vector so per-parameter state survives across
batches and epochs until :meth:`Optimizer.reset`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Protocol

import numpy as np

from ..core.errors import ConfigurationError
from ..core.types import Array


class Optimizer(Protocol):
    """Protocol implemented by parameter update rules."""

    def reset(self) -> None:
        """Forget all per-parameter state."""

    def requires_hessian(self) -> bool:
        """Return ``True`` when :meth:`update` needs curvature statistics."""

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        """Return the updated ``param``."""


@dataclass
class _Stateful:
    _state: Dict[str, Dict[str, Array]] = field(default_factory=dict, init=False, repr=False)

    def reset(self) -> None:
        self._state.clear()

    def requires_hessian(self) -> bool:
        return False

    def _slot(self, key: str, name: str, like: Array) -> Array:
        entry = self._state.setdefault(key, {})
        if name not in entry:
            entry[name] = np.zeros_like(like)
        return entry[name]


@dataclass
class GradientDescent(_Stateful):
    """Vanilla SGD with optional L2 weight decay."""

    alpha: float = 0.01
    weight_decay: float = 0.0

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        return param - self.alpha * (grad + self.weight_decay * param)


@dataclass
class Momentum(_Stateful):
    alpha: float = 0.01
    weight_decay: float = 0.0
    mu: float = 0.9

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        velocity = self._slot(key, "velocity", param)
        velocity *= self.mu
        velocity -= self.alpha * (grad + self.weight_decay * param)
        return param + velocity


@dataclass
class Adagrad(_Stateful):
    alpha: float = 0.01
    eps: float = 1e-8

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        g2 = self._slot(key, "g2", param)
        g2 += np.square(grad)
        return param - self.alpha * grad / (np.sqrt(g2) + self.eps)


@dataclass
class RMSprop(_Stateful):
    alpha: float = 0.0001
    mu: float = 0.99
    eps: float = 1e-8

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        g2 = self._slot(key, "g2", param)
        g2 *= self.mu
        g2 += (1.0 - self.mu) * np.square(grad)
        return param - self.alpha * grad / np.sqrt(g2 + self.eps)


@dataclass
class Adam(_Stateful):
    alpha: float = 0.001
    beta1: float = 0.9
    beta2: float = 0.999
    eps: float = 1e-8
    _steps: Dict[str, int] = field(default_factory=dict, init=False, repr=False)

    def reset(self) -> None:
        super().reset()
        self._steps.clear()

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        m = self._slot(key, "m", param)
        v = self._slot(key, "v", param)
        step = self._steps.get(key, 0) + 1
        self._steps[key] = step
        m *= self.beta1
        m += (1.0 - self.beta1) * grad
        v *= self.beta2
        v += (1.0 - self.beta2) * np.square(grad)
        m_hat = m / (1.0 - self.beta1**step)
        v_hat = v / (1.0 - self.beta2**step)
        return param - self.alpha * m_hat / (np.sqrt(v_hat) + self.eps)


@dataclass
class LevenbergMarquardt(_Stateful):
    """Stochastic diagonal Levenberg-Marquardt; scales steps by curvature."""

    alpha: float = 0.00085
    mu: float = 0.02

    def requires_hessian(self) -> bool:
        return True

    def update(self, param: Array, grad: Array, *, key: str, hessian: Array | None = None) -> Array:
        if hessian is None:
            raise ConfigurationError("LevenbergMarquardt.update requires curvature statistics")
        return param - self.alpha / (hessian + self.mu) * grad


_OPTIMIZERS: Dict[str, Callable[..., Optimizer]] = {
    "sgd": GradientDescent,
    "gradient_descent": GradientDescent,
    "momentum": Momentum,
    "adagrad": Adagrad,
    "rmsprop": RMSprop,
    "adam": Adam,
    "lm": LevenbergMarquardt,
    "levenberg_marquardt": LevenbergMarquardt,
}


def build_optimizer(name: str, **kwargs: float) -> Optimizer:
    """Instantiate the optimizer registered under ``name``."""

    try:
        factory = _OPTIMIZERS[name.lower()]
    except KeyError as exc:
        available = ", ".join(sorted(_OPTIMIZERS))
        raise ConfigurationError(
            f"Unknown optimizer {name!r}. Available optimizers: {available}"
        ) from exc
    try:
        return factory(**kwargs)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid options for optimizer {name!r}: {exc}") from exc


__all__ = [
    "Adagrad",
    "Adam",
    "GradientDescent",
    "LevenbergMarquardt",
    "Momentum",
    "Optimizer",
    "RMSprop",
    "build_optimizer",
]
