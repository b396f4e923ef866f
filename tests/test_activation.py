import numpy as np
import pytest

import wgpu_nd as nd
from wgpu_nd import CategoryError, from_numpy


def _sigmoid(x):
    return 1 / (1 + np.exp(-x))


def _elu(x, alpha):
    return np.where(x >= 0, x, alpha * (np.exp(x) - 1))


ACTIVATIONS = [
    ("relu", lambda x: np.maximum(x, 0)),
    ("gelu", lambda x: 0.5 * x * (1 + np.tanh(np.sqrt(2 / np.pi) * (x + 0.044715 * x ** 3)))),
    ("sigmoid", _sigmoid),
    ("silu", lambda x: x * _sigmoid(x)),
    ("softplus", lambda x: np.log1p(np.exp(x))),
    ("elu", lambda x: _elu(x, 1.0)),
    ("leaky_relu", lambda x: np.where(x >= 0, x, 0.01 * x)),
    ("selu", lambda x: 1.050701 * _elu(x, 1.6732632)),
    ("tanh", np.tanh),
]


@pytest.mark.parametrize("name, ref", ACTIVATIONS, ids=[a[0] for a in ACTIVATIONS])
def test_activation(backend, name, ref):
    x = np.linspace(-6, 6, 101).astype(np.float32)
    out = getattr(nd, name)(from_numpy(x)).numpy()
    assert np.allclose(out, ref(x.astype(np.float64)), rtol=1e-4, atol=1e-5), f"{name} mismatch"


def test_softplus_is_stable(backend):
    x = np.array([-100.0, 0.0, 100.0], np.float32)
    out = nd.softplus(from_numpy(x)).numpy()
    assert np.all(np.isfinite(out))
    assert np.allclose(out, [0.0, np.log(2.0), 100.0], atol=1e-5)


def test_parameters(backend):
    x = np.array([-2.0, -0.5, 0.0, 1.5], np.float32)
    t = from_numpy(x)
    assert np.allclose(nd.elu(t, alpha=0.5).numpy(), _elu(x, 0.5), atol=1e-6)
    assert np.allclose(nd.leaky_relu(t, alpha=0.2).numpy(), np.where(x >= 0, x, 0.2 * x))
    assert np.allclose(
        nd.selu(t, alpha=2.0, scale=3.0).numpy(), 3.0 * _elu(x, 2.0), atol=1e-5,
    )


def test_parameters_do_not_recompile(backend):
    t = from_numpy(np.linspace(-1, 1, 8).astype(np.float32))
    other = nd.zeros((100,))
    nd.leaky_relu(t, alpha=0.1)
    builds = backend.cache.builds
    nd.leaky_relu(t, alpha=0.3)
    nd.leaky_relu(other, alpha=0.5)
    assert backend.cache.builds == builds


def test_prelu(backend, rng):
    x = rng.standard_normal((4, 3)).astype(np.float32)
    alpha = np.array([0.1, 0.2, 0.3], np.float32)
    out = nd.prelu(from_numpy(x), from_numpy(alpha)).numpy()
    assert np.allclose(out, np.where(x >= 0, x, alpha * x))
    assert np.allclose(nd.prelu(from_numpy(x), 0.25).numpy(), np.where(x >= 0, x, 0.25 * x))


def test_activations_require_float(backend):
    i = nd.ones((3,), "int32")
    for fn in (nd.relu, nd.gelu, nd.sigmoid, nd.elu):
        with pytest.raises(CategoryError, match="Float"):
            fn(i)
