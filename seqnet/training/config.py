"""Trainer configuration and config-file loading."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from ..core.errors import ConfigurationError

DEFAULT_TASK_SIZE = 8
THREADS_ENV = "SEQNET_THREADS"


def _default_threads() -> int:
    raw = os.environ.get(THREADS_ENV)
    if raw is None or raw.strip() == "":
        return DEFAULT_TASK_SIZE
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{THREADS_ENV} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class TrainConfig:
    """Defaults consumed by :meth:`seqnet.training.network.Network.train`.

    Attributes
    ----------
    batch_size:
        Number of samples merged into one parameter update.
    epochs:
        Passes over the dataset.
    thread_count:
        Worker slots used to fan a mini-batch out. ``SEQNET_THREADS``
        overrides the default.
    task_size:
        Batches smaller than this let stages split their own work across
        threads, since batch-level fan-out alone would leave workers idle.
    hessian_samples:
        Upper bound on samples used by the curvature pre-pass.
    explosion_check_interval:
        Parameters are checked for non-finite values after the first batch
        and then every this many batches.
    reset_weights:
        Reinitialise all parameters before training.
    seed:
        Seed for weight initialisation and random gradient-check sampling.
    """

    batch_size: int = 1
    epochs: int = 1
    thread_count: int = DEFAULT_TASK_SIZE
    task_size: int = DEFAULT_TASK_SIZE
    hessian_samples: int = 500
    explosion_check_interval: int = 100
    reset_weights: bool = True
    seed: int = 0

    @classmethod
    def from_env(cls) -> "TrainConfig":
        return cls(thread_count=_default_threads())

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TrainConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown train config keys: {', '.join(unknown)}")
        base = cls.from_env()
        config = replace(base, **dict(data))
        config.validate()
        return config

    def with_overrides(self, **overrides: Any) -> "TrainConfig":
        config = replace(self, **{k: v for k, v in overrides.items() if v is not None})
        config.validate()
        return config

    def validate(self) -> None:
        for name in ("batch_size", "thread_count", "task_size", "explosion_check_interval"):
            value = getattr(self, name)
            if int(value) <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.epochs < 0:
            raise ConfigurationError(f"epochs must be non-negative, got {self.epochs}")
        if self.hessian_samples < 0:
            raise ConfigurationError(
                f"hessian_samples must be non-negative, got {self.hessian_samples}"
            )

    def to_dict(self) -> dict:
        return asdict(self)


def read_config_file(path: str | Path) -> Mapping[str, Any]:
    """Decode a JSON or YAML file into a mapping."""

    path = Path(path)
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(path.read_text()) or {}
    elif suffix == ".json":
        data = json.loads(path.read_text() or "{}")
    else:
        raise ConfigurationError(f"Unsupported config file type: {path.suffix}")
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config {path.name} must decode to a mapping")
    return data


def load_config(path: str | Path) -> TrainConfig:
    """Load a :class:`TrainConfig` from ``path``.

    A top-level ``train`` section is used when present, so the same file can
    also carry network and data settings for the CLI.
    """

    data = read_config_file(path)
    section = data.get("train", data)
    if not isinstance(section, Mapping):
        raise ConfigurationError("The 'train' section must be a mapping")
    return TrainConfig.from_mapping(section)


__all__ = [
    "DEFAULT_TASK_SIZE",
    "THREADS_ENV",
    "TrainConfig",
    "load_config",
    "read_config_file",
]
