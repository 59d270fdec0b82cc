import io
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from seqnet.core.errors import ConfigurationError, DimensionMismatchError, StageTypeError
from seqnet.core.parallel import parallel_for, split_range
from seqnet.core.stages import FullyConnected, InputStage, StageChain
from seqnet.training.optimizers import GradientDescent


def test_chain_links_stages_and_rejects_size_mismatch():
    chain = StageChain()
    assert chain.empty()
    head = InputStage(3)
    hidden = FullyConnected(3, 4)
    chain.add(head)
    chain.add(hidden)
    assert head.next is hidden and hidden.prev is head
    assert chain.head() is head and chain.tail() is hidden
    assert chain.depth() == 2

    with pytest.raises(DimensionMismatchError):
        chain.add(FullyConnected(5, 2))
    with pytest.raises(ConfigurationError):
        chain.add(hidden)
    assert chain.depth() == 2


def test_empty_chain_has_no_head():
    with pytest.raises(ConfigurationError):
        StageChain().head()


def test_typed_access_checks_stage_kind():
    chain = StageChain()
    chain.add(InputStage(2))
    chain.add(FullyConnected(2, 2))
    assert isinstance(chain.at(1, FullyConnected), FullyConnected)
    with pytest.raises(StageTypeError) as excinfo:
        chain.at(0, FullyConnected)
    assert isinstance(excinfo.value, TypeError)


def test_fully_connected_forward_matches_dense_formula():
    rng = np.random.default_rng(0)
    stage = FullyConnected(3, 2, "sigmoid")
    stage.init_weight(rng)
    stage.bias[:] = [0.1, -0.2]
    x = np.array([0.5, -1.0, 2.0])
    expected = 1.0 / (1.0 + np.exp(-(x @ stage.matrix + stage.bias)))
    np.testing.assert_allclose(stage.forward_propagation(x), expected)
    assert stage.output(0) is not None


def test_split_forward_matches_unsplit():
    rng = np.random.default_rng(1)
    stage = FullyConnected(5, 70, "tanh")
    stage.init_weight(rng)
    x = rng.normal(size=5)
    expected = stage.forward(x, 0)
    with ThreadPoolExecutor(max_workers=4) as pool:
        stage.set_parallelize(True, pool, 4)
        assert stage._split_enabled()
        split = stage.forward(x, 0)
    np.testing.assert_allclose(split, expected, rtol=0, atol=1e-12)


def test_slots_are_merged_and_cleared_on_update():
    stage = FullyConnected(2, 1, "identity")
    stage.weight[:] = [1.0, 2.0]
    stage.bias[:] = [0.5]
    stage.set_worker_count(3)
    stage.accumulate(0, np.array([1.0, 1.0]), np.array([1.0]))
    stage.accumulate(1, np.array([2.0, 0.0]), np.array([1.0]))
    stage.accumulate(2, np.array([3.0, 2.0]), np.array([1.0]))

    stage.update_weight(GradientDescent(alpha=1.0), 3, 3, key="0")

    np.testing.assert_allclose(stage.weight, [1.0 - 2.0, 2.0 - 1.0])
    np.testing.assert_allclose(stage.bias, [0.5 - 1.0])
    for slot in range(3):
        assert not stage.weight_diff(slot).any()
        assert not stage.bias_diff(slot).any()


def test_worker_count_only_grows():
    stage = FullyConnected(2, 2)
    stage.set_worker_count(4)
    stage.set_worker_count(2)
    assert stage.worker_count == 4


def test_exploded_detection():
    stage = FullyConnected(2, 2)
    assert not stage.is_exploded()
    stage.bias[1] = np.inf
    assert stage.is_exploded()


def test_stage_text_roundtrip_is_exact():
    rng = np.random.default_rng(2)
    source = FullyConnected(3, 2)
    source.init_weight(rng)
    source.bias[:] = rng.normal(size=2)
    buffer = io.StringIO()
    source.save(buffer)
    assert len(buffer.getvalue().splitlines()) == 2

    target = FullyConnected(3, 2)
    target.load(io.StringIO(buffer.getvalue()))
    assert target.has_same_weights(source, 0.0)


def test_stage_load_rejects_short_lines():
    stage = FullyConnected(3, 2)
    with pytest.raises(ConfigurationError):
        stage.load(io.StringIO("1 2 3\n0 0\n"))


def test_split_range_covers_everything_once():
    ranges = split_range(10, 7, 3)
    assert ranges == [(10, 13), (13, 16), (16, 17)]
    assert split_range(0, 2, 8) == [(0, 1), (1, 2)]


def test_parallel_for_reraises_worker_errors():
    def _body(index):
        if index == 2:
            raise RuntimeError("boom")

    with ThreadPoolExecutor(max_workers=2) as pool:
        with pytest.raises(RuntimeError, match="boom"):
            parallel_for(4, _body, executor=pool)
