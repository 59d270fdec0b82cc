"""Training, evaluation and gradient verification."""

from .config import TrainConfig, load_config
from .losses import REGISTRY as LOSSES
from .network import Network
from .optimizers import build_optimizer
from .results import Result

__all__ = ["LOSSES", "Network", "Result", "TrainConfig", "build_optimizer", "load_config"]
