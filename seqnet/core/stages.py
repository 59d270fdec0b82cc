"""Processing stages and the ordered chain that owns them.

A stage keeps its parameters as flat vectors and, for every worker slot,
its own gradient accumulators and forward caches. Slots never share
mutable state, so concurrent forward/backward passes on distinct slots need
no locking. Parameters only change in :meth:`StageChain.update_weights`.
"""

from __future__ import annotations

from concurrent.futures import Executor
from typing import TYPE_CHECKING, ClassVar, Iterator, List, Sequence, TextIO, Tuple, Type, TypeVar

import numpy as np

from .activations import Activation, Identity, get_activation
from .errors import ConfigurationError, DimensionMismatchError, StageTypeError
from .parallel import parallel_for, split_range
from .types import FLOAT, Array

if TYPE_CHECKING:
    from ..training.optimizers import Optimizer

_FORMAT = ".17g"
# Below this many output columns a stage never splits its forward pass.
_PARALLEL_MIN_COLUMNS = 64

S = TypeVar("S", bound="Stage")


class Stage:
    """Base class for a stage in a :class:`StageChain`."""

    kind: ClassVar[str] = "stage"

    def __init__(
        self,
        in_size: int,
        out_size: int,
        activation: str | Activation = "identity",
        *,
        weight_size: int = 0,
        bias_size: int = 0,
    ) -> None:
        if in_size <= 0 or out_size <= 0:
            raise ConfigurationError(
                f"Stage sizes must be positive, got in={in_size}, out={out_size}"
            )
        self._in_size = int(in_size)
        self._out_size = int(out_size)
        self._h = get_activation(activation)
        self.weight = np.zeros(int(weight_size), dtype=FLOAT)
        self.bias = np.zeros(int(bias_size), dtype=FLOAT)
        self.weight_hessian = np.zeros_like(self.weight)
        self.bias_hessian = np.zeros_like(self.bias)
        self.prev: Stage | None = None
        self.next: Stage | None = None
        self.parallelize = False
        self._executor: Executor | None = None
        self._parallel_parts = 1
        self._dw: List[Array] = []
        self._db: List[Array] = []
        self._inputs: List[Array | None] = []
        self._outputs: List[Array | None] = []
        self.set_worker_count(1)

    # ------------------------------------------------------------------
    # Shape and collaborators

    def in_size(self) -> int:
        return self._in_size

    def out_size(self) -> int:
        return self._out_size

    def in_shape(self) -> Tuple[int, int, int]:
        """Input shape as ``(width, height, channels)``."""

        return (self._in_size, 1, 1)

    def activation_function(self) -> Activation:
        return self._h

    def has_parameters(self) -> bool:
        return self.weight.size > 0 or self.bias.size > 0

    # ------------------------------------------------------------------
    # Slot-indexed state

    @property
    def worker_count(self) -> int:
        return len(self._dw)

    def set_worker_count(self, count: int) -> None:
        """Allocate accumulators and forward caches for ``count`` slots."""

        count = max(1, int(count))
        while len(self._dw) < count:
            self._dw.append(np.zeros_like(self.weight))
            self._db.append(np.zeros_like(self.bias))
            self._inputs.append(None)
            self._outputs.append(None)

    def weight_diff(self, slot: int = 0) -> Array:
        return self._dw[slot]

    def bias_diff(self, slot: int = 0) -> Array:
        return self._db[slot]

    def output(self, slot: int = 0) -> Array | None:
        return self._outputs[slot]

    def accumulate(self, slot: int, dw: Array, db: Array) -> None:
        """Add one sample's parameter gradients to ``slot``'s accumulators."""

        if self.weight.size:
            self._dw[slot] += dw
        if self.bias.size:
            self._db[slot] += db

    def clear_diff(self, worker_count: int | None = None) -> None:
        count = self.worker_count if worker_count is None else min(worker_count, self.worker_count)
        for slot in range(count):
            self._dw[slot].fill(0.0)
            self._db[slot].fill(0.0)

    def merge(self, worker_count: int, batch_size: int) -> None:
        """Sum slots ``1..worker_count-1`` into slot 0 and divide by ``batch_size``."""

        dw = self._dw[0]
        db = self._db[0]
        for slot in range(1, min(worker_count, self.worker_count)):
            dw += self._dw[slot]
            db += self._db[slot]
        dw /= batch_size
        db /= batch_size

    def update_weight(
        self, optimizer: Optimizer, worker_count: int, batch_size: int, *, key: str
    ) -> None:
        if not self.has_parameters():
            return
        self.merge(worker_count, batch_size)
        if self.weight.size:
            self.weight[...] = optimizer.update(
                self.weight, self._dw[0], key=f"{key}.weight", hessian=self.weight_hessian
            )
        if self.bias.size:
            self.bias[...] = optimizer.update(
                self.bias, self._db[0], key=f"{key}.bias", hessian=self.bias_hessian
            )
        self.clear_diff(worker_count)
        self.post_update()

    def post_update(self) -> None:
        """Hook invoked after parameters were overwritten."""

    # ------------------------------------------------------------------
    # Curvature statistics

    def clear_hessian(self) -> None:
        self.weight_hessian.fill(0.0)
        self.bias_hessian.fill(0.0)

    def divide_hessian(self, denominator: int) -> None:
        self.weight_hessian /= denominator
        self.bias_hessian /= denominator

    # ------------------------------------------------------------------
    # Parallelism

    def set_parallelize(
        self, parallelize: bool, executor: Executor | None = None, parts: int = 1
    ) -> None:
        self.parallelize = bool(parallelize)
        self._executor = executor if parallelize else None
        self._parallel_parts = max(1, int(parts))

    def _split_enabled(self) -> bool:
        return (
            self.parallelize
            and self._executor is not None
            and self._parallel_parts > 1
            and self._out_size >= _PARALLEL_MIN_COLUMNS
        )

    # ------------------------------------------------------------------
    # Propagation

    def forward(self, inputs: Array, slot: int) -> Array:
        """Return this stage's output for ``inputs``."""

        raise NotImplementedError

    def backward(self, delta: Array, slot: int) -> Array:
        """Accumulate gradients for ``delta`` and return the upstream delta."""

        raise NotImplementedError

    def backward_second_order(self, delta2: Array) -> Array:
        """Accumulate curvature for ``delta2`` and return the upstream value."""

        raise NotImplementedError

    def forward_propagation(self, inputs: Array, slot: int = 0) -> Array:
        """Run this stage and every stage after it; return the tail output."""

        self._inputs[slot] = inputs
        out = self.forward(inputs, slot)
        self._outputs[slot] = out
        if self.next is None:
            return out
        return self.next.forward_propagation(out, slot)

    def back_propagation(self, delta: Array, slot: int = 0) -> Array:
        """Run the backward pass from this stage down to the head."""

        upstream = self.backward(delta, slot)
        if self.prev is None:
            return upstream
        return self.prev.back_propagation(upstream, slot)

    def back_propagation_2nd(self, delta2: Array) -> Array:
        upstream = self.backward_second_order(delta2)
        if self.prev is None:
            return upstream
        return self.prev.back_propagation_2nd(upstream)

    def _previous_activation(self) -> Activation:
        if self.prev is None:
            return Identity()
        return self.prev.activation_function()

    def _cached_input(self, slot: int) -> Array:
        inputs = self._inputs[slot]
        if inputs is None:
            raise ConfigurationError(
                f"{type(self).__name__}: backward called before forward on slot {slot}"
            )
        return inputs

    # ------------------------------------------------------------------
    # Parameters

    def init_weight(self, rng: np.random.Generator) -> None:
        """Reinitialise parameters; stages without parameters do nothing."""

    def is_exploded(self) -> bool:
        return not (np.all(np.isfinite(self.weight)) and np.all(np.isfinite(self.bias)))

    def has_same_weights(self, other: "Stage", eps: float) -> bool:
        if self.weight.shape != other.weight.shape or self.bias.shape != other.bias.shape:
            return False
        return bool(
            np.all(np.abs(self.weight - other.weight) <= eps)
            and np.all(np.abs(self.bias - other.bias) <= eps)
        )

    def save(self, stream: TextIO) -> None:
        """Write parameters as text, one line per non-empty vector."""

        for values in (self.weight, self.bias):
            if values.size:
                stream.write(" ".join(format(float(v), _FORMAT) for v in values))
                stream.write("\n")

    def load(self, stream: TextIO) -> None:
        for name, values in (("weight", self.weight), ("bias", self.bias)):
            if not values.size:
                continue
            tokens = stream.readline().split()
            if len(tokens) != values.size:
                raise ConfigurationError(
                    f"{type(self).__name__}: expected {values.size} {name} values, "
                    f"found {len(tokens)}"
                )
            values[...] = np.array([float(token) for token in tokens], dtype=FLOAT)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(in={self._in_size}, out={self._out_size}, h={self._h!r})"


class InputStage(Stage):
    """Identity pass-through used as the head of a chain."""

    kind = "input"

    def __init__(self, size: int) -> None:
        super().__init__(size, size, "identity")

    def forward(self, inputs: Array, slot: int) -> Array:
        return inputs

    def backward(self, delta: Array, slot: int) -> Array:
        return delta

    def backward_second_order(self, delta2: Array) -> Array:
        return delta2


class FullyConnected(Stage):
    """Dense stage ``y = h(x W + b)`` with ``W`` stored ``(in, out)`` row-major."""

    kind = "fully_connected"

    def __init__(
        self,
        in_size: int,
        out_size: int,
        activation: str | Activation = "tanh",
        *,
        has_bias: bool = True,
    ) -> None:
        super().__init__(
            in_size,
            out_size,
            activation,
            weight_size=in_size * out_size,
            bias_size=out_size if has_bias else 0,
        )

    @property
    def matrix(self) -> Array:
        """2-D view over :attr:`weight`; writes go through to the flat vector."""

        return self.weight.reshape(self._in_size, self._out_size)

    def init_weight(self, rng: np.random.Generator) -> None:
        bound = np.sqrt(6.0 / (self._in_size + self._out_size))
        self.weight[...] = rng.uniform(-bound, bound, size=self.weight.size)
        self.bias.fill(0.0)

    def forward(self, inputs: Array, slot: int) -> Array:
        W = self.matrix
        if self._split_enabled():
            a = np.empty(self._out_size, dtype=FLOAT)
            blocks = split_range(0, self._out_size, self._parallel_parts)

            def _block(index: int) -> None:
                lo, hi = blocks[index]
                a[lo:hi] = inputs @ W[:, lo:hi]

            parallel_for(len(blocks), _block, executor=self._executor)
        else:
            a = inputs @ W
        if self.bias.size:
            a = a + self.bias
        return self._h.f(a)

    def backward(self, delta: Array, slot: int) -> Array:
        x = self._cached_input(slot)
        dw = np.outer(x, delta).reshape(-1)
        self.accumulate(slot, dw, delta)
        return (self.matrix @ delta) * self._previous_activation().df(x)

    def backward_second_order(self, delta2: Array) -> Array:
        x = self._cached_input(0)
        self.weight_hessian += np.outer(np.square(x), delta2).reshape(-1)
        if self.bias.size:
            self.bias_hessian += delta2
        prev_df = self._previous_activation().df(x)
        return (np.square(self.matrix) @ delta2) * np.square(prev_df)


class StageChain:
    """Ordered, exclusively-owned sequence of stages."""

    def __init__(self) -> None:
        self._stages: List[Stage] = []
        self._worker_count = 1

    def add(self, stage: Stage) -> None:
        if not isinstance(stage, Stage):
            raise ConfigurationError(f"Expected a Stage, got {type(stage).__name__}")
        if stage.prev is not None or stage.next is not None or stage in self._stages:
            raise ConfigurationError("Stage already belongs to a chain")
        if self._stages:
            tail = self._stages[-1]
            if tail.out_size() != stage.in_size():
                raise DimensionMismatchError(
                    f"Cannot connect {stage!r} after {tail!r}: "
                    f"out_size {tail.out_size()} != in_size {stage.in_size()}"
                )
            tail.next = stage
            stage.prev = tail
        stage.set_worker_count(self._worker_count)
        self._stages.append(stage)

    def empty(self) -> bool:
        return not self._stages

    def head(self) -> Stage:
        if not self._stages:
            raise ConfigurationError("Network has no stages")
        return self._stages[0]

    def tail(self) -> Stage:
        if not self._stages:
            raise ConfigurationError("Network has no stages")
        return self._stages[-1]

    def depth(self) -> int:
        return len(self._stages)

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages)

    def __getitem__(self, index: int) -> Stage:
        return self._stages[index]

    def at(self, index: int, stage_type: Type[S]) -> S:
        """Return the stage at ``index`` checked against ``stage_type``'s tag."""

        stage = self._stages[index]
        if stage.kind != stage_type.kind:
            raise StageTypeError(
                f"Stage {index} is {stage.kind!r}, cannot be used as {stage_type.kind!r}"
            )
        return stage  # type: ignore[return-value]

    def set_worker_count(self, count: int) -> None:
        self._worker_count = max(self._worker_count, int(count))
        for stage in self._stages:
            stage.set_worker_count(self._worker_count)

    def set_parallelize(
        self, parallelize: bool, executor: Executor | None = None, parts: int = 1
    ) -> None:
        for stage in self._stages:
            stage.set_parallelize(parallelize, executor, parts)

    def init_weight(self, rng: np.random.Generator) -> None:
        for stage in self._stages:
            stage.init_weight(rng)

    def is_exploded(self) -> bool:
        return any(stage.is_exploded() for stage in self._stages)

    def clear_diff(self) -> None:
        for stage in self._stages:
            stage.clear_diff()

    def clear_hessian(self) -> None:
        for stage in self._stages:
            stage.clear_hessian()

    def update_weights(self, optimizer: Optimizer, worker_count: int, batch_size: int) -> None:
        for index, stage in enumerate(self._stages):
            stage.update_weight(optimizer, worker_count, batch_size, key=str(index))

    def divide_hessian(self, denominator: int) -> None:
        for stage in self._stages:
            stage.divide_hessian(denominator)

    def parameters(self) -> Sequence[Tuple[int, Stage]]:
        return [(idx, stage) for idx, stage in enumerate(self._stages) if stage.has_parameters()]


__all__ = ["FullyConnected", "InputStage", "Stage", "StageChain"]
