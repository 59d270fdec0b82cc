import io
import json

import numpy as np
import pytest

from seqnet.core.errors import ConfigurationError
from seqnet.training.config import THREADS_ENV, TrainConfig, load_config
from seqnet.training.optimizers import (
    Adam,
    GradientDescent,
    LevenbergMarquardt,
    Momentum,
    build_optimizer,
)
from seqnet.training.results import Result


def test_gradient_descent_does_not_mutate_input():
    param = np.array([1.0, -1.0])
    grad = np.array([0.5, 0.5])
    updated = GradientDescent(alpha=0.1).update(param, grad, key="w")
    np.testing.assert_allclose(updated, [0.95, -1.05])
    np.testing.assert_allclose(param, [1.0, -1.0])


def test_momentum_state_is_keyed_and_resettable():
    opt = Momentum(alpha=0.1, mu=0.5)
    p = np.zeros(1)
    g = np.ones(1)
    p = opt.update(p, g, key="a")
    p = opt.update(p, g, key="a")
    np.testing.assert_allclose(p, [-0.1 - 0.15])
    other = opt.update(np.zeros(1), g, key="b")
    np.testing.assert_allclose(other, [-0.1])
    opt.reset()
    np.testing.assert_allclose(opt.update(np.zeros(1), g, key="a"), [-0.1])


def test_adam_first_step_moves_by_alpha():
    opt = Adam(alpha=0.01)
    updated = opt.update(np.zeros(3), np.array([2.0, -0.5, 1e-3]), key="w")
    np.testing.assert_allclose(updated, [-0.01, 0.01, -0.01], rtol=1e-4)


def test_levenberg_marquardt_uses_curvature():
    opt = LevenbergMarquardt(alpha=0.1, mu=0.1)
    assert opt.requires_hessian()
    updated = opt.update(np.zeros(2), np.ones(2), key="w", hessian=np.array([0.0, 0.9]))
    np.testing.assert_allclose(updated, [-1.0, -0.1])
    with pytest.raises(ConfigurationError):
        opt.update(np.zeros(2), np.ones(2), key="w")


def test_build_optimizer_by_name():
    assert isinstance(build_optimizer("SGD", alpha=0.5), GradientDescent)
    assert isinstance(build_optimizer("levenberg_marquardt"), LevenbergMarquardt)
    assert not build_optimizer("adam").requires_hessian()
    with pytest.raises(ConfigurationError):
        build_optimizer("lbfgs")
    with pytest.raises(ConfigurationError):
        build_optimizer("adam", momentum=0.3)


def test_train_config_defaults_and_env(monkeypatch):
    monkeypatch.delenv(THREADS_ENV, raising=False)
    config = TrainConfig.from_env()
    assert config.batch_size == 1 and config.epochs == 1
    assert config.thread_count == 8 and config.task_size == 8
    assert config.hessian_samples == 500
    assert config.explosion_check_interval == 100
    assert config.reset_weights is True

    monkeypatch.setenv(THREADS_ENV, "3")
    assert TrainConfig.from_env().thread_count == 3
    monkeypatch.setenv(THREADS_ENV, "many")
    with pytest.raises(ConfigurationError):
        TrainConfig.from_env()


def test_train_config_validation_and_overrides():
    config = TrainConfig(seed=4)
    updated = config.with_overrides(batch_size=16, epochs=None)
    assert updated.batch_size == 16 and updated.epochs == config.epochs
    with pytest.raises(ConfigurationError):
        config.with_overrides(batch_size=0)
    with pytest.raises(ConfigurationError):
        TrainConfig.from_mapping({"learning_rate": 0.1})


def test_load_config_from_yaml_and_json(tmp_path, monkeypatch):
    monkeypatch.delenv(THREADS_ENV, raising=False)
    yaml_path = tmp_path / "train.yaml"
    yaml_path.write_text("train:\n  batch_size: 4\n  epochs: 3\n  seed: 9\n")
    config = load_config(yaml_path)
    assert (config.batch_size, config.epochs, config.seed) == (4, 3, 9)
    assert config.thread_count == 8

    json_path = tmp_path / "train.json"
    json_path.write_text(json.dumps({"thread_count": 2, "reset_weights": False}))
    config = load_config(json_path)
    assert config.thread_count == 2 and config.reset_weights is False

    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "train.toml")


def test_result_accuracy_and_confusion_matrix():
    result = Result()
    assert result.accuracy() == 0.0
    for predicted, actual in [(0, 0), (1, 1), (1, 0), (2, 2)]:
        result.add(predicted, actual)
    assert result.accuracy() == pytest.approx(75.0)
    assert result.count(1, 0) == 1
    assert result.count(0, 1) == 0
    assert result.labels() == [0, 1, 2]

    out = io.StringIO()
    result.print_detail(out)
    lines = out.getvalue().splitlines()
    assert lines[0] == "accuracy:75% (3/4)"
    assert len(lines) == 2 + len(result.labels())
    assert result.to_dict()["confusion_matrix"]["1"] == {"0": 1, "1": 1}
