"""Bridge the trainer's argument-free epoch hook to metric sinks."""

from __future__ import annotations

import logging
from typing import Dict, List, Mapping, Sequence

from ..core.types import is_label

logger = logging.getLogger(__name__)


class EpochReporter:
    """Evaluate a network after each epoch and forward the metrics.

    Pass an instance as ``on_epoch`` to :meth:`Network.train`. Every call
    computes ``loss`` over the given dataset and, when all targets are class
    labels, ``accuracy`` (percent); the record goes to every sink exposing
    ``on_epoch(epoch, metrics)`` or being callable with the same arguments.
    """

    def __init__(self, network, inputs: Sequence, targets: Sequence, sinks: Sequence[object] = ()):
        self.network = network
        self.inputs = inputs
        self.targets = targets
        self.sinks = list(sinks)
        self.epoch = 0
        self.history: List[Dict[str, float]] = []
        self._classification = len(targets) > 0 and all(is_label(t) for t in targets)

    def __call__(self) -> None:
        self.epoch += 1
        metrics: Dict[str, float] = {"loss": self.network.get_loss(self.inputs, self.targets)}
        if self._classification:
            metrics["accuracy"] = self.network.test(self.inputs, self.targets).accuracy()
        self.history.append(metrics)
        logger.debug("epoch %d metrics: %s", self.epoch, metrics)
        self._emit(metrics)

    def _emit(self, metrics: Mapping[str, float]) -> None:
        for sink in self.sinks:
            if hasattr(sink, "on_epoch"):
                sink.on_epoch(self.epoch, metrics)  # type: ignore[attr-defined]
            elif callable(sink):
                sink(self.epoch, metrics)


__all__ = ["EpochReporter"]
