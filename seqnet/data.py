"""Pure in-memory synthetic datasets."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List

import numpy as np

from .core.errors import ConfigurationError
from .core.types import FLOAT, Array


@dataclass(frozen=True)
class Dataset:
    """Materialised samples ready for :meth:`Network.fit`."""

    name: str
    inputs: List[Array]
    targets: list
    task_type: str

    def __len__(self) -> int:
        return len(self.inputs)


def make_xor(n_repeats: int = 1, seed: int = 0) -> Dataset:
    """The four XOR points with scalar targets, repeated ``n_repeats`` times."""

    base = [
        (np.array([0.0, 0.0]), np.array([0.0])),
        (np.array([0.0, 1.0]), np.array([1.0])),
        (np.array([1.0, 0.0]), np.array([1.0])),
        (np.array([1.0, 1.0]), np.array([0.0])),
    ]
    rng = np.random.default_rng(seed)
    order = np.concatenate([rng.permutation(len(base)) for _ in range(max(1, n_repeats))])
    return Dataset(
        name="xor",
        inputs=[base[i][0].astype(FLOAT) for i in order],
        targets=[base[i][1].astype(FLOAT) for i in order],
        task_type="regression",
    )


def make_blobs(
    n_per_class: int = 40, n_classes: int = 3, dim: int = 2, spread: float = 0.4, seed: int = 0
) -> Dataset:
    """Gaussian clusters around well separated centres, labelled by cluster."""

    rng = np.random.default_rng(seed)
    angles = 2.0 * np.pi * np.arange(n_classes) / n_classes
    centres = np.zeros((n_classes, dim), dtype=FLOAT)
    centres[:, 0] = 2.0 * np.cos(angles)
    if dim > 1:
        centres[:, 1] = 2.0 * np.sin(angles)
    inputs: List[Array] = []
    labels: List[int] = []
    for label, centre in enumerate(centres):
        noise = spread * rng.standard_normal((n_per_class, dim))
        inputs.extend(centre + noise)
        labels.extend([label] * n_per_class)
    order = rng.permutation(len(inputs))
    return Dataset(
        name="blobs",
        inputs=[np.asarray(inputs[i], dtype=FLOAT) for i in order],
        targets=[int(labels[i]) for i in order],
        task_type="multiclass",
    )


def make_sine(n_points: int = 64, freq: int = 1, seed: int = 0) -> Dataset:
    """Noisy ``sin(freq * pi * x)`` on ``[-1, 1]``."""

    rng = np.random.default_rng(seed)
    x = np.linspace(-1.0, 1.0, n_points, dtype=FLOAT)
    y = np.sin(freq * np.pi * x) + 0.05 * rng.standard_normal(n_points)
    order = rng.permutation(n_points)
    return Dataset(
        name="sine",
        inputs=[np.array([x[i]], dtype=FLOAT) for i in order],
        targets=[np.array([y[i]], dtype=FLOAT) for i in order],
        task_type="regression",
    )


_DATASETS: Dict[str, Callable[..., Dataset]] = {
    "xor": make_xor,
    "blobs": make_blobs,
    "sine": make_sine,
}


def get(name: str, **options: object) -> Dataset:
    try:
        factory = _DATASETS[name]
    except KeyError as exc:
        available = ", ".join(sorted(_DATASETS))
        raise ConfigurationError(f"Unknown dataset {name!r}. Available datasets: {available}") from exc
    return factory(**options)


def names() -> List[str]:
    return sorted(_DATASETS)


__all__ = ["Dataset", "get", "make_blobs", "make_sine", "make_xor", "names"]
