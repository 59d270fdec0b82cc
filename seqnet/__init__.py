"""seqnet public API."""

import logging

from .core import activations  # noqa: F401
from .core import types  # noqa: F401
from .core.errors import (
    ConfigurationError,
    DimensionMismatchError,
    DivergenceWarning,
    NetworkError,
    StageTypeError,
)
from .core.stages import FullyConnected, InputStage, Stage, StageChain
from .core.types import GradCheckMode
from .training.config import TrainConfig, load_config
from .training.network import Network
from .training.optimizers import (
    Adagrad,
    Adam,
    GradientDescent,
    LevenbergMarquardt,
    Momentum,
    RMSprop,
    build_optimizer,
)
from .training.results import Result

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"

__all__ = [
    "Adagrad",
    "Adam",
    "ConfigurationError",
    "DimensionMismatchError",
    "DivergenceWarning",
    "FullyConnected",
    "GradCheckMode",
    "GradientDescent",
    "InputStage",
    "LevenbergMarquardt",
    "Momentum",
    "Network",
    "NetworkError",
    "RMSprop",
    "Result",
    "Stage",
    "StageChain",
    "StageTypeError",
    "TrainConfig",
    "activations",
    "build_optimizer",
    "load_config",
    "types",
]
