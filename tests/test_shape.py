import itertools

import numpy as np
import pytest

from wgpu_nd.wgpu_errors import AxisError, ShapeMismatchError, ValidationError
from wgpu_nd.wgpu_shape import (
    Layout, as_shape, broadcast_shapes, broadcast_strides, contiguous_strides, normalize_axes, numel,
    reduced_shape,
)

SHAPES = [(), (1,), (3,), (2, 1), (1, 3), (2, 3), (4, 1, 3), (0, 3), (1, 0)]


def test_broadcast_is_commutative():
    for a, b in itertools.product(SHAPES, repeat=2):
        try:
            ab = broadcast_shapes(a, b)
        except ShapeMismatchError:
            with pytest.raises(ShapeMismatchError):
                broadcast_shapes(b, a)
            continue
        assert ab == broadcast_shapes(b, a), f"{a} vs {b}"


def test_broadcast_examples():
    assert broadcast_shapes((3, 1), (1, 4)) == (3, 4)
    assert broadcast_shapes((5, 1, 4), (3, 1)) == (5, 3, 4)
    assert broadcast_shapes((), (2, 2)) == (2, 2)
    assert broadcast_shapes((2, 1), (2, 3), (1, 3)) == (2, 3)
    assert broadcast_shapes((0, 3), (1, 3)) == (0, 3)


def test_broadcast_mismatch_names_dimension():
    with pytest.raises(ShapeMismatchError) as exc:
        broadcast_shapes((2, 3), (4, 3))
    assert exc.value.dim == 0
    assert set(exc.value.sizes) == {2, 4}
    assert "dimension 0" in str(exc.value)

    with pytest.raises(ShapeMismatchError) as exc:
        broadcast_shapes((7, 2, 3), (5,))
    assert exc.value.dim == 2


def test_broadcast_strides():
    assert broadcast_strides((3, 1), (1, 1), (2, 3, 4)) == (0, 1, 0)
    assert broadcast_strides((4,), (1,), (3, 4)) == (0, 1)
    with pytest.raises(ShapeMismatchError):
        broadcast_strides((3,), (1,), (4,))


def test_contiguous_strides_and_numel():
    assert contiguous_strides((2, 3, 4)) == (12, 4, 1)
    assert contiguous_strides(()) == ()
    assert numel(()) == 1
    assert numel((2, 0, 5)) == 0


def test_normalize_axes():
    assert normalize_axes(None, 3) == (0, 1, 2)
    assert normalize_axes(-1, 3) == (2,)
    assert normalize_axes((2, 0), 3) == (0, 2)
    assert normalize_axes((), 3) == ()
    assert normalize_axes(np.int64(1), 3) == (1,)
    assert normalize_axes((np.int32(-1), 0), 3) == (0, 2)
    assert as_shape(np.int64(4)) == (4,)
    with pytest.raises(AxisError):
        normalize_axes(3, 3)
    with pytest.raises(AxisError):
        normalize_axes((0, -3), 3)
    assert issubclass(AxisError, ValidationError)


def test_reduced_shape_removes_axes():
    assert reduced_shape((2, 3, 4), (0, 2)) == (3,)
    assert reduced_shape((2, 3), (0, 1)) == ()


def test_layout_views():
    layout = Layout.contiguous((2, 3))
    assert layout.is_contiguous
    t = layout.transpose(0, 1)
    assert t.shape == (3, 2)
    assert t.strides == (1, 3)
    assert not t.is_contiguous
    assert t.reshape((6,)) is None
    assert layout.reshape((3, 2)) == Layout.contiguous((3, 2))
    with pytest.raises(ValidationError):
        layout.reshape((4,))

    b = Layout.contiguous((3,)).broadcast_to((2, 3))
    assert b.strides == (0, 1)
    assert b.span() == 3


def test_layout_size_one_dims_ignore_strides():
    assert Layout((1, 3), (99, 1)).is_contiguous
