"""Propagation engine, mini-batch trainer and gradient verifier."""

from __future__ import annotations

import logging
import warnings
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import nullcontext
from pathlib import Path
from typing import (
    Callable,
    ContextManager,
    Iterable,
    List,
    Mapping,
    Sequence,
    TextIO,
    Type,
    TypeVar,
    Union,
)

import numpy as np

from ..core.errors import ConfigurationError, DimensionMismatchError, DivergenceWarning
from ..core.parallel import parallel_for, split_range
from ..core.stages import Stage, StageChain
from ..core.types import (
    Array,
    GradCheckMode,
    Target,
    as_vector,
    is_label,
    is_partial_target,
)
from .config import TrainConfig
from .losses import REGISTRY as LOSS_REGISTRY
from .losses import Loss, is_canonical_link
from .optimizers import GradientDescent, Optimizer
from .results import Result

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Stage)

InputFn = Callable[[int], Union[Sequence[float], Array]]
TargetFn = Callable[[int], Target]

# Parameters sampled per vector in GradCheckMode.RANDOM.
_RANDOM_CHECK_COUNT = 10


def _nop() -> None:
    return None


class Network:
    """Sequential network: an ordered stage chain plus a loss and an optimizer."""

    def __init__(
        self,
        loss: str | Loss = "mse",
        optimizer: Optimizer | None = None,
        name: str = "",
        config: TrainConfig | None = None,
    ) -> None:
        self._name = name
        self._loss = LOSS_REGISTRY.resolve(loss)
        self._optimizer: Optimizer = optimizer if optimizer is not None else GradientDescent()
        self.config = config or TrainConfig.from_env()
        self.config.validate()
        self._chain = StageChain()
        self._canonical = False
        self._init_rng = np.random.default_rng(self.config.seed)

    # ------------------------------------------------------------------
    # Structure

    @property
    def name(self) -> str:
        return self._name

    @property
    def loss(self) -> Loss:
        return self._loss

    @property
    def optimizer(self) -> Optimizer:
        return self._optimizer

    @property
    def stages(self) -> StageChain:
        return self._chain

    def add(self, stage: Stage) -> "Network":
        """Append ``stage`` to the output side and initialise its parameters."""

        self._chain.add(stage)
        stage.init_weight(self._init_rng)
        self._canonical = is_canonical_link(stage.activation_function(), self._loss)
        return self

    __lshift__ = add

    def in_dim(self) -> int:
        return self._chain.head().in_size()

    def out_dim(self) -> int:
        return self._chain.tail().out_size()

    def in_shape(self) -> tuple[int, int, int]:
        return self._chain.head().in_shape()

    def depth(self) -> int:
        return self._chain.depth()

    def __getitem__(self, index: int) -> Stage:
        return self._chain[index]

    def at(self, index: int, stage_type: Type[S]) -> S:
        return self._chain.at(index, stage_type)

    def _require_stages(self) -> None:
        if self._chain.empty():
            raise ConfigurationError("Network has no stages")

    def uses_canonical_link(self) -> bool:
        return self._canonical

    def init_weight(self, seed: int | None = None) -> None:
        """Reinitialise every stage from ``seed`` (default: ``config.seed``)."""

        rng = np.random.default_rng(self.config.seed if seed is None else seed)
        self._chain.init_weight(rng)

    def has_same_weights(self, other: "Network", eps: float) -> bool:
        if self.depth() != other.depth():
            return False
        return all(a.has_same_weights(b, eps) for a, b in zip(self._chain, other._chain))

    # ------------------------------------------------------------------
    # Forward propagation

    def forward(self, inputs: Sequence[float] | Array, slot: int = 0) -> Array:
        """Run ``inputs`` through every stage and return the tail output."""

        head = self._chain.head()
        x = as_vector(inputs)
        if x.size != head.in_size():
            raise DimensionMismatchError(
                f"input dimension mismatch: dim(data)={x.size}, "
                f"dim(network input)={head.in_size()}"
            )
        return head.forward_propagation(x, slot)

    def predict(self, inputs: Sequence[float] | Array) -> Array:
        return self.forward(inputs).copy()

    def predict_label(self, inputs: Sequence[float] | Array) -> int:
        return int(np.argmax(self.forward(inputs)))

    def predict_max_value(self, inputs: Sequence[float] | Array) -> float:
        return float(np.max(self.forward(inputs)))

    # ------------------------------------------------------------------
    # Backward propagation

    def target_value_min(self) -> float:
        return float(self._chain.tail().activation_function().scale()[0])

    def target_value_max(self) -> float:
        return float(self._chain.tail().activation_function().scale()[1])

    def label_to_vector(self, label: int) -> Array:
        """Expand ``label`` into a target scaled to the output activation's range."""

        self._check_label(label)
        vec = np.full(self.out_dim(), self.target_value_min())
        vec[int(label)] = self.target_value_max()
        return vec

    def target_vector(self, target: Target) -> Array:
        if is_label(target):
            return self.label_to_vector(int(target))  # type: ignore[arg-type]
        vec = as_vector(target)  # type: ignore[arg-type]
        if vec.size != self.out_dim():
            raise DimensionMismatchError(
                f"output dimension mismatch: dim(target)={vec.size}, "
                f"dim(network output)={self.out_dim()}"
            )
        return vec

    def backward(self, output: Array, target: Target, slot: int = 0) -> Array:
        """Propagate the error of ``output`` against ``target`` down the chain.

        ``target`` is a dense vector, a class label, or a ``(label, value)``
        pair that supervises a single output position.
        """

        if is_partial_target(target):
            delta = self._partial_delta(output, target)  # type: ignore[arg-type]
        else:
            t = self.target_vector(target)
            if self._canonical:
                delta = output - t
            else:
                delta = self._general_delta(output, t)
        return self._chain.tail().back_propagation(delta, slot)

    def output_delta(self, output: Array, target: Array, *, canonical: bool | None = None) -> Array:
        """Return ``dE/da`` for the tail stage without propagating it."""

        use_shortcut = self._canonical if canonical is None else canonical
        if use_shortcut:
            return output - target
        return self._general_delta(output, target)

    def backward_second_order(self, output: Array) -> Array:
        """Propagate squared-derivative curvature information down the chain."""

        h = self._chain.tail().activation_function()
        df = h.df(output)
        if self._canonical:
            delta2 = self.target_value_max() * df
        else:
            # Gauss-Newton term scaled by max; drops the (y - t) * h''(a) residual part.
            delta2 = self.target_value_max() * np.square(df)
        return self._chain.tail().back_propagation_2nd(delta2)

    def loss_of(self, output: Array, target: Target) -> float:
        if is_partial_target(target):
            label, value = target  # type: ignore[misc]
            self._check_label(label)
            t = np.array(output, copy=True)
            t[int(label)] = float(value)
            return self._loss.f(output, t)
        return self._loss.f(output, self.target_vector(target))

    def _general_delta(self, output: Array, target: Array) -> Array:
        h = self._chain.tail().activation_function()
        dE_dy = self._loss.df(output, target)
        # delta = dE/da = (dE/dy) . (dy/da)
        return np.array(
            [np.dot(dE_dy, h.jacobian_row(output, i)) for i in range(output.size)]
        )

    def _partial_delta(self, output: Array, target: tuple[int, float]) -> Array:
        label, value = target
        self._check_label(label)
        label = int(label)
        if self._canonical:
            delta = np.zeros_like(output)
            delta[label] = output[label] - float(value)
            return delta
        t = np.array(output, copy=True)
        t[label] = float(value)
        return self._general_delta(output, t)

    def _check_label(self, label: int, index: int | None = None) -> None:
        dim_out = self.out_dim()
        if 0 <= int(label) < dim_out:
            return
        where = f"t[{index}]" if index is not None else "label"
        message = (
            f"output dimension mismatch: {where}={label}, dim(network output)={dim_out}. "
            "In classification tasks dim(network output) must be greater than the max class id."
        )
        if dim_out == 1:
            message += " For regression, use vector targets instead of labels."
        raise DimensionMismatchError(message)

    # ------------------------------------------------------------------
    # Training

    def train(
        self,
        in_size: int,
        input_fn: InputFn,
        target_fn: TargetFn,
        batch_size: int | None = None,
        epochs: int | None = None,
        on_batch: Callable[[], None] | None = None,
        on_epoch: Callable[[], None] | None = None,
        reset_weights: bool | None = None,
        thread_count: int | None = None,
    ) -> bool:
        """Train on ``in_size`` samples served by index-based accessors.

        Returns ``False`` when parameters diverged to non-finite values and
        training stopped early, ``True`` otherwise.
        """

        config = self.config.with_overrides(
            batch_size=batch_size,
            epochs=epochs,
            reset_weights=reset_weights,
            thread_count=thread_count,
        )
        if in_size < 0:
            raise ConfigurationError(f"in_size must be non-negative, got {in_size}")
        on_batch = on_batch or _nop
        on_epoch = on_epoch or _nop
        self._require_stages()

        if config.reset_weights:
            self.init_weight()
        parallelize = config.batch_size < config.task_size
        self._chain.set_worker_count(config.thread_count)
        self._chain.clear_diff()
        self._optimizer.reset()
        logger.info(
            "training %s: samples=%d batch_size=%d epochs=%d threads=%d",
            self._name or "network",
            in_size,
            config.batch_size,
            config.epochs,
            config.thread_count,
        )

        with ThreadPoolExecutor(
            max_workers=config.thread_count, thread_name_prefix="seqnet-batch"
        ) as pool, self._stage_executor(parallelize, config.thread_count) as stage_pool:
            self._chain.set_parallelize(parallelize, stage_pool, config.thread_count)
            try:
                for epoch in range(config.epochs):
                    if self._optimizer.requires_hessian():
                        self._calc_hessian(in_size, input_fn, config.hessian_samples)
                    for batch_index, offset in enumerate(range(0, in_size, config.batch_size)):
                        size = min(config.batch_size, in_size - offset)
                        self._train_once(offset, size, input_fn, target_fn, config.thread_count, pool)
                        on_batch()
                        if (
                            batch_index % config.explosion_check_interval == 0
                            and self._chain.is_exploded()
                        ):
                            self._report_divergence(epoch, batch_index)
                            return False
                    on_epoch()
                    logger.debug("epoch %d/%d finished", epoch + 1, config.epochs)
            finally:
                self._chain.set_parallelize(False)
        # batches after the last periodic check are not covered above
        if self._chain.is_exploded():
            self._report_divergence(config.epochs - 1, None)
            return False
        logger.info("training %s finished after %d epochs", self._name or "network", config.epochs)
        return True

    @staticmethod
    def _report_divergence(epoch: int, batch_index: int | None) -> None:
        where = "end of training" if batch_index is None else f"batch {batch_index}"
        logger.warning("non-finite parameter detected in epoch %d, %s", epoch, where)
        warnings.warn(
            "Detected infinite value in weight. Stopped learning.",
            DivergenceWarning,
            stacklevel=3,
        )

    def fit(
        self,
        inputs: Sequence[Sequence[float] | Array],
        targets: Sequence[Target],
        batch_size: int | None = None,
        epochs: int | None = None,
        on_batch: Callable[[], None] | None = None,
        on_epoch: Callable[[], None] | None = None,
        reset_weights: bool | None = None,
        thread_count: int | None = None,
    ) -> bool:
        """Validate materialised ``inputs``/``targets`` and :meth:`train` on them."""

        vectors = self._check_training_data(inputs, targets)
        return self.train(
            len(vectors),
            vectors.__getitem__,
            targets.__getitem__,
            batch_size=batch_size,
            epochs=epochs,
            on_batch=on_batch,
            on_epoch=on_epoch,
            reset_weights=reset_weights,
            thread_count=thread_count,
        )

    def _train_once(
        self,
        offset: int,
        size: int,
        input_fn: InputFn,
        target_fn: TargetFn,
        thread_count: int,
        pool: Executor,
    ) -> None:
        if size == 1:
            target = target_fn(offset)
            self.backward(self.forward(input_fn(offset)), target)
            self._chain.update_weights(self._optimizer, 1, 1)
        else:
            self._train_onebatch(offset, size, input_fn, target_fn, thread_count, pool)

    def _train_onebatch(
        self,
        offset: int,
        size: int,
        input_fn: InputFn,
        target_fn: TargetFn,
        thread_count: int,
        pool: Executor,
    ) -> None:
        ranges = split_range(offset, size, min(size, thread_count))

        def _work(slot: int) -> None:
            start, stop = ranges[slot]
            for index in range(start, stop):
                target = target_fn(index)
                self.backward(self.forward(input_fn(index), slot), target, slot)

        parallel_for(len(ranges), _work, executor=pool)
        # merge all slot gradients and let the optimizer update parameters
        self._chain.update_weights(self._optimizer, len(ranges), size)

    def _calc_hessian(self, in_size: int, input_fn: InputFn, max_samples: int) -> None:
        size = min(in_size, max_samples)
        if size == 0:
            return
        self._chain.clear_hessian()
        for index in range(size):
            self.backward_second_order(self.forward(input_fn(index)))
        self._chain.divide_hessian(size)
        logger.debug("curvature pre-pass over %d samples", size)

    @staticmethod
    def _stage_executor(parallelize: bool, thread_count: int) -> ContextManager[Executor | None]:
        if not parallelize or thread_count <= 1:
            return nullcontext(None)
        return ThreadPoolExecutor(max_workers=thread_count, thread_name_prefix="seqnet-stage")

    def _check_training_data(
        self, inputs: Sequence[Sequence[float] | Array], targets: Sequence[Target]
    ) -> List[Array]:
        if len(inputs) != len(targets):
            raise ConfigurationError(
                f"number of training data ({len(inputs)}) must be equal to "
                f"label data ({len(targets)})"
            )
        dim_in = self.in_dim()
        dim_out = self.out_dim()
        vectors: List[Array] = []
        for index, (x, t) in enumerate(zip(inputs, targets)):
            vec = as_vector(x)
            if vec.size != dim_in:
                raise DimensionMismatchError(
                    f"input dimension mismatch: dim(data[{index}])={vec.size}, "
                    f"dim(network input)={dim_in}"
                )
            if is_partial_target(t):
                self._check_label(t[0], index)  # type: ignore[index]
            elif is_label(t):
                self._check_label(int(t), index)  # type: ignore[arg-type]
            else:
                size = as_vector(t).size  # type: ignore[arg-type]
                if size != dim_out:
                    raise DimensionMismatchError(
                        f"output dimension mismatch: dim(target[{index}])={size}, "
                        f"dim(network output)={dim_out}"
                    )
            vectors.append(vec)
        return vectors

    # ------------------------------------------------------------------
    # Evaluation

    def predict_batch(
        self, inputs: Sequence[Sequence[float] | Array], thread_count: int | None = None
    ) -> List[Array]:
        """Run inference on every input, fanning out across worker slots."""

        count = len(inputs)
        workers = max(1, min(count, thread_count or self.config.thread_count))
        ranges = split_range(0, count, workers)
        self._chain.set_worker_count(len(ranges))
        outputs: List[Array | None] = [None] * count

        def _work(slot: int) -> None:
            start, stop = ranges[slot]
            for index in range(start, stop):
                outputs[index] = self.forward(inputs[index], slot).copy()

        if len(ranges) <= 1:
            parallel_for(len(ranges), _work)
        else:
            with ThreadPoolExecutor(
                max_workers=len(ranges), thread_name_prefix="seqnet-infer"
            ) as pool:
                parallel_for(len(ranges), _work, executor=pool)
        return outputs  # type: ignore[return-value]

    def test(self, inputs: Sequence[Sequence[float] | Array], labels: Sequence[int]) -> Result:
        """Classify every input and build a confusion matrix."""

        if len(inputs) != len(labels):
            raise ConfigurationError(
                f"number of test data ({len(inputs)}) must be equal to label data ({len(labels)})"
            )
        result = Result()
        for x, actual in zip(inputs, labels):
            result.add(self.predict_label(x), int(actual))
        return result

    def get_loss(
        self, inputs: Sequence[Sequence[float] | Array], targets: Sequence[Target]
    ) -> float:
        """Sum of per-sample losses over the dataset."""

        if len(inputs) != len(targets):
            raise ConfigurationError(
                f"number of data ({len(inputs)}) must be equal to targets ({len(targets)})"
            )
        outputs = self.predict_batch(inputs)
        losses = [self.loss_of(out, t) for out, t in zip(outputs, targets)]
        return float(np.sum(losses))

    # ------------------------------------------------------------------
    # Gradient verification

    def gradient_check(
        self,
        inputs: Sequence[Sequence[float] | Array],
        labels: Sequence[Target],
        epsilon: float = 1e-4,
        mode: GradCheckMode | str = GradCheckMode.ALL,
        tolerance: float | None = None,
        seed: int | None = None,
    ) -> bool:
        """Compare back-propagated gradients against central differences.

        Every stage after the head is checked. Returns ``False`` as soon as
        one parameter disagrees by more than ``tolerance`` (default
        ``epsilon``).
        """

        try:
            mode = GradCheckMode(mode)
        except ValueError as exc:
            raise ConfigurationError(f"unknown grad-check type: {mode!r}") from exc
        if len(inputs) != len(labels):
            raise ConfigurationError(
                f"number of data ({len(inputs)}) must be equal to labels ({len(labels)})"
            )
        self._require_stages()
        tolerance = epsilon if tolerance is None else tolerance
        rng = np.random.default_rng(self.config.seed if seed is None else seed)
        vectors = [as_vector(x) for x in inputs]
        targets = [self.target_vector(t) for t in labels]
        try:
            return self._check_stages(vectors, targets, mode, epsilon, tolerance, rng)
        finally:
            # leave no analytic gradients behind for a later update
            self._chain.clear_diff()

    def _check_stages(
        self,
        vectors: Sequence[Array],
        targets: Sequence[Array],
        mode: GradCheckMode,
        epsilon: float,
        tolerance: float,
        rng: np.random.Generator,
    ) -> bool:
        for stage in list(self._chain)[1:]:
            if stage.weight.size == 0:
                continue
            for values, diff in (
                (stage.weight, stage.weight_diff),
                (stage.bias, stage.bias_diff),
            ):
                if values.size == 0:
                    continue
                if mode is GradCheckMode.ALL:
                    indices: Iterable[int] = range(values.size)
                else:
                    indices = rng.integers(0, values.size, size=_RANDOM_CHECK_COUNT)
                for index in indices:
                    error = self._calc_delta(vectors, targets, stage, values, diff, int(index), epsilon)
                    if error > tolerance:
                        logger.debug(
                            "gradient mismatch in %r at index %d: %.3g", stage, index, error
                        )
                        return False
        return True

    def _calc_delta(
        self,
        inputs: Sequence[Array],
        targets: Sequence[Array],
        stage: Stage,
        values: Array,
        diff: Callable[[int], Array],
        index: int,
        epsilon: float,
    ) -> float:
        stage.clear_diff()

        saved = values[index]
        values[index] = saved + epsilon
        f_plus = self._sum_loss(inputs, targets)
        values[index] = saved - epsilon
        f_minus = self._sum_loss(inputs, targets)
        values[index] = saved
        numerical = (f_plus - f_minus) / (2.0 * epsilon)

        for x, t in zip(inputs, targets):
            self.backward(self.forward(x), t)
        analytic = diff(0)[index]
        return float(abs(analytic - numerical))

    def _sum_loss(self, inputs: Sequence[Array], targets: Sequence[Array]) -> float:
        total = 0.0
        for x, t in zip(inputs, targets):
            total += self._loss.f(self.forward(x), t)
        return total

    # ------------------------------------------------------------------
    # Persistence

    def save(self, stream: TextIO) -> None:
        """Write parameters of every stage in chain order (weights only)."""

        for stage in self._chain:
            stage.save(stream)

    def load(self, stream: TextIO) -> None:
        """Read parameters written by :meth:`save` into an identical topology."""

        for stage in self._chain:
            stage.load(stream)

    def save_weights(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            self.save(handle)

    def load_weights(self, path: str | Path) -> None:
        with Path(path).open("r", encoding="utf-8") as handle:
            self.load(handle)

    def state_dict(self) -> Mapping[str, Array]:
        state = {}
        for index, stage in self._chain.parameters():
            if stage.weight.size:
                state[f"{index}.weight"] = stage.weight.copy()
            if stage.bias.size:
                state[f"{index}.bias"] = stage.bias.copy()
        return state

    def load_state_dict(self, state: Mapping[str, Array]) -> None:
        for index, stage in self._chain.parameters():
            for name, values in (("weight", stage.weight), ("bias", stage.bias)):
                if not values.size:
                    continue
                key = f"{index}.{name}"
                if key not in state:
                    raise ConfigurationError(f"Missing parameter {key} in state dict")
                incoming = np.asarray(state[key], dtype=values.dtype).reshape(-1)
                if incoming.shape != values.shape:
                    raise ConfigurationError(
                        f"Parameter {key} has shape {incoming.shape}, expected {values.shape}"
                    )
                values[...] = incoming

    def save_checkpoint(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as handle:
            np.savez_compressed(handle, **self.state_dict())

    def load_checkpoint(self, path: str | Path) -> None:
        with np.load(Path(path)) as data:
            self.load_state_dict({key: data[key] for key in data.files})


__all__ = ["Network"]
