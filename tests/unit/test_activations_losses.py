import numpy as np
import pytest

from seqnet.core.activations import ActivationKind, Softmax, Tanh, get_activation
from seqnet.core.errors import ConfigurationError
from seqnet.core.stages import FullyConnected, InputStage
from seqnet.training.losses import REGISTRY as LOSS_REGISTRY
from seqnet.training.losses import LossKind, is_canonical_link
from seqnet.training.network import Network


def _single_stage(activation: str, loss: str, n_in: int = 4, n_out: int = 5) -> Network:
    net = Network(loss=loss)
    net << InputStage(n_in) << FullyConnected(n_in, n_out, activation)
    return net


def _random_target(rng, activation: str, size: int) -> np.ndarray:
    if activation == "softmax":
        return np.eye(size)[rng.integers(size)]
    if activation == "identity":
        return rng.normal(size=size)
    return rng.uniform(0.05, 0.95, size=size)


@pytest.mark.parametrize(
    "activation, loss",
    [
        ("sigmoid", "cross_entropy"),
        ("identity", "mse"),
        ("softmax", "cross_entropy_multiclass"),
    ],
)
def test_canonical_shortcut_matches_general_delta(activation: str, loss: str) -> None:
    rng = np.random.default_rng(0)
    net = _single_stage(activation, loss)
    assert net.uses_canonical_link()
    for _ in range(25):
        output = net.forward(rng.uniform(-1.0, 1.0, size=4))
        target = _random_target(rng, activation, 5)
        fast = net.output_delta(output, target, canonical=True)
        general = net.output_delta(output, target, canonical=False)
        np.testing.assert_allclose(fast, general, atol=1e-6)


def test_canonical_table_lookup() -> None:
    ce = LOSS_REGISTRY.get("cross_entropy")
    mse = LOSS_REGISTRY.get("mse")
    assert is_canonical_link(Tanh(), ce)
    assert is_canonical_link(get_activation("sigmoid"), ce)
    assert is_canonical_link(get_activation("identity"), mse)
    assert not is_canonical_link(get_activation("tanh"), mse)
    assert not is_canonical_link(Softmax(), ce)
    assert not _single_stage("relu", "mse").uses_canonical_link()


def test_softmax_jacobian_rows_match_finite_differences() -> None:
    h = Softmax()
    a = np.array([0.3, -1.2, 0.8, 0.1])
    y = h.f(a)
    eps = 1e-6
    for i in range(a.size):
        bumped = a.copy()
        bumped[i] += eps
        numeric = (h.f(bumped) - y) / eps
        np.testing.assert_allclose(h.jacobian_row(y, i), numeric, atol=1e-5)
    assert np.isclose(y.sum(), 1.0)


def test_elementwise_derivatives_are_expressed_in_outputs() -> None:
    a = np.linspace(-2.0, 2.0, 9)
    eps = 1e-6
    for name in ("sigmoid", "tanh", "identity"):
        h = get_activation(name)
        numeric = (h.f(a + eps) - h.f(a - eps)) / (2 * eps)
        np.testing.assert_allclose(h.df(h.f(a)), numeric, atol=1e-6)


def test_activation_scales_and_unknown_names() -> None:
    assert get_activation("tanh").scale() == (-0.8, 0.8)
    assert get_activation("softmax").scale() == (0.0, 1.0)
    assert get_activation("tan_h").kind is ActivationKind.TANH
    with pytest.raises(ConfigurationError):
        get_activation("swish")


def test_loss_values_and_registry_aliases() -> None:
    y = np.array([0.2, 0.7])
    t = np.array([0.0, 1.0])
    mse = LOSS_REGISTRY.get("mse")
    assert mse.f(y, t) == pytest.approx(0.5 * (0.04 + 0.09))
    np.testing.assert_allclose(mse.df(y, t), y - t)
    ce = LOSS_REGISTRY.resolve("bce")
    assert ce.kind is LossKind.CROSS_ENTROPY
    assert ce.f(y, t) == pytest.approx(-np.log(0.8) - np.log(0.7))
    assert LOSS_REGISTRY.resolve("ce").kind is LossKind.CROSS_ENTROPY_MULTICLASS
    assert LOSS_REGISTRY.resolve("mae").name == "absolute"
    with pytest.raises(ConfigurationError):
        LOSS_REGISTRY.resolve("hinge")
