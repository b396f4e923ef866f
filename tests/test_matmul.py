import numpy as np
import pytest

import wgpu_nd as nd
from wgpu_nd import CategoryError, DimensionMismatchError, ShapeMismatchError, ValidationError, from_numpy


@pytest.mark.parametrize("m, k, n", [(1, 1, 1), (4, 4, 4), (16, 16, 16), (17, 33, 9), (64, 5, 70)])
def test_matmul_2d(backend, rng, m, k, n):
    a = rng.standard_normal((m, k)).astype(np.float32)
    b = rng.standard_normal((k, n)).astype(np.float32)
    out = nd.matmul(from_numpy(a), from_numpy(b))
    assert out.shape == (m, n)
    assert np.allclose(out.numpy(), a @ b, rtol=1e-4, atol=1e-4), f"matmul {m}x{k}x{n}"


def test_matmul_shape_rule(backend):
    a = nd.ones((2, 3))
    b = nd.ones((3, 4))
    out = a @ b
    assert out.shape == (2, 4)
    assert np.allclose(out.numpy(), 3.0)


def test_batched(backend, rng):
    a = rng.standard_normal((3, 5, 7)).astype(np.float32)
    b = rng.standard_normal((3, 7, 2)).astype(np.float32)
    out = nd.matmul(from_numpy(a), from_numpy(b))
    assert out.shape == (3, 5, 2)
    assert np.allclose(out.numpy(), a @ b, rtol=1e-4, atol=1e-4)


def test_batch_broadcast(backend, rng):
    a = rng.standard_normal((2, 1, 4, 3)).astype(np.float32)
    b = rng.standard_normal((5, 3, 6)).astype(np.float32)
    out = nd.matmul(from_numpy(a), from_numpy(b))
    assert out.shape == (2, 5, 4, 6)
    assert np.allclose(out.numpy(), np.matmul(a, b), rtol=1e-4, atol=1e-4)

    w = rng.standard_normal((3, 6)).astype(np.float32)
    assert np.allclose(nd.matmul(from_numpy(a), from_numpy(w)).numpy(), a @ w, rtol=1e-4, atol=1e-4)


def test_transpose_flags_match_explicit_transpose(backend, rng):
    a = rng.standard_normal((6, 4)).astype(np.float32)
    b = rng.standard_normal((5, 4)).astype(np.float32)
    ta, tb = from_numpy(a), from_numpy(b)

    flagged = nd.matmul(ta, tb, transpose_b=True).numpy()
    viewed = nd.matmul(ta, tb.T).numpy()
    assert np.allclose(flagged, a @ b.T, rtol=1e-4, atol=1e-4)
    assert np.allclose(flagged, viewed, rtol=1e-5, atol=1e-5)

    c = rng.standard_normal((4, 6)).astype(np.float32)
    out = nd.matmul(from_numpy(c), tb, transpose_a=True, transpose_b=True)
    assert out.shape == (6, 5)
    assert np.allclose(out.numpy(), c.T @ b.T, rtol=1e-4, atol=1e-4)


def test_batched_transpose_flags(backend, rng):
    a = rng.standard_normal((2, 3, 8)).astype(np.float32)
    b = rng.standard_normal((2, 3, 5)).astype(np.float32)
    out = from_numpy(a).matmul(from_numpy(b), transpose_a=True)
    assert np.allclose(out.numpy(), np.swapaxes(a, -1, -2) @ b, rtol=1e-4, atol=1e-4)


def test_inner_dimension_mismatch(backend):
    a = nd.zeros((2, 3))
    b = nd.zeros((5, 4))
    with pytest.raises(DimensionMismatchError) as exc:
        nd.matmul(a, b)
    assert "3" in str(exc.value) and "5" in str(exc.value)
    assert exc.value.sizes == (3, 5)


def test_batch_mismatch(backend):
    with pytest.raises(ShapeMismatchError):
        nd.matmul(nd.zeros((2, 3, 4)), nd.zeros((3, 4, 5)))


def test_integer_matmul(backend):
    a = np.arange(6, dtype=np.int32).reshape(2, 3)
    b = np.arange(12, dtype=np.int32).reshape(3, 4) - 5
    assert nd.matmul(from_numpy(a), from_numpy(b)).numpy().tolist() == (a @ b).tolist()


def test_empty_inner_dimension_gives_zeros(backend):
    out = nd.matmul(nd.ones((3, 0)), nd.ones((0, 2)))
    assert out.shape == (3, 2)
    assert out.numpy().tolist() == [[0.0, 0.0]] * 3


def test_matmul_errors(backend):
    with pytest.raises(ValidationError, match="rank"):
        nd.matmul(nd.ones((3,)), nd.ones((3, 2)))
    with pytest.raises(CategoryError):
        nd.matmul(nd.full((2, 2), "bool", True), nd.full((2, 2), "bool", True))
    with pytest.raises(ValidationError, match="kinds differ"):
        nd.matmul(nd.ones((2, 2)), nd.ones((2, 2), "int32"))
