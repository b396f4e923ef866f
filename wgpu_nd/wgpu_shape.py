"""Shape inference, broadcasting and strided layouts.

Broadcasting is right-aligned: the shorter shape is padded on the left with
size-1 dimensions, and a size-1 dimension stretches to its peer's size. An
expanded dimension reads with stride 0, so nothing is ever materialized.
"""

import numbers
from typing import Iterable, Optional, Sequence, Tuple, Union

from wgpu_nd.wgpu_errors import AxisError, ShapeMismatchError, ValidationError

Shape = Tuple[int, ...]


def as_shape(shape) -> Shape:
    """Normalize an int or an iterable of ints into a shape tuple."""
    if isinstance(shape, numbers.Integral):
        shape = (shape,)
    shape = tuple(int(s) for s in shape)
    for s in shape:
        if s < 0:
            raise ValidationError(f"negative dimension in shape {shape}")
    return shape


def numel(shape: Sequence[int]) -> int:
    """Element count (1 for a scalar)."""
    result = 1
    for s in shape:
        result *= s
    return result


def contiguous_strides(shape: Sequence[int]) -> Shape:
    """Row-major strides in elements."""
    strides = [1] * len(shape)
    for i in range(len(shape) - 2, -1, -1):
        strides[i] = strides[i + 1] * max(shape[i + 1], 1)
    return tuple(strides)


def broadcast_shapes(*shapes: Sequence[int]) -> Shape:
    """Broadcast output shape of any number of operand shapes.

    Raises ShapeMismatchError naming the output dimension and the two
    conflicting sizes.
    """
    if not shapes:
        return ()
    rank = max(len(s) for s in shapes)
    out = [1] * rank
    for shape in shapes:
        pad = rank - len(shape)
        for i, size in enumerate(shape):
            d = pad + i
            if size == out[d] or size == 1:
                continue
            if out[d] == 1:
                out[d] = size
            else:
                raise ShapeMismatchError(d, out[d], size, shapes)
    return tuple(out)


def broadcast_strides(shape: Sequence[int], strides: Sequence[int], target: Sequence[int]) -> Shape:
    """Strides that read ``shape`` as if it had ``target``'s shape."""
    pad = len(target) - len(shape)
    if pad < 0:
        raise ValidationError(f"cannot broadcast {tuple(shape)} to lower rank {tuple(target)}")
    result = [0] * pad
    for i, (size, stride) in enumerate(zip(shape, strides)):
        want = target[pad + i]
        if size == want:
            result.append(stride)
        elif size == 1:
            result.append(0)
        else:
            raise ShapeMismatchError(pad + i, size, want, (shape, target))
    return tuple(result)


def normalize_axes(axes: Union[None, int, Iterable[int]], rank: int) -> Shape:
    """Sorted, non-negative axis tuple. ``None`` selects every axis."""
    if axes is None:
        return tuple(range(rank))
    if isinstance(axes, numbers.Integral):
        axes = (axes,)
    result = []
    for axis in axes:
        axis = int(axis)
        if not -rank <= axis < rank:
            raise AxisError(f"axis {axis} out of range for rank {rank}")
        axis %= rank
        if axis in result:
            raise AxisError(f"duplicate axis {axis}")
        result.append(axis)
    return tuple(sorted(result))


def reduced_shape(shape: Sequence[int], axes: Sequence[int]) -> Shape:
    """Shape after removing the reduced axes."""
    return tuple(s for i, s in enumerate(shape) if i not in axes)


# ============================================================================
# Layout
# ============================================================================

class Layout:
    """Logical shape plus the strides and offset used to read a buffer."""

    __slots__ = ("shape", "strides", "offset")

    def __init__(self, shape, strides=None, offset=0):
        self.shape = as_shape(shape)
        self.strides = contiguous_strides(self.shape) if strides is None else tuple(int(s) for s in strides)
        self.offset = int(offset)
        if len(self.strides) != len(self.shape):
            raise ValidationError(f"strides {self.strides} do not match shape {self.shape}")

    @classmethod
    def contiguous(cls, shape) -> "Layout":
        return cls(shape)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def numel(self) -> int:
        return numel(self.shape)

    @property
    def is_contiguous(self) -> bool:
        """True for canonical row-major strides (size-1 dims ignored)."""
        expected = contiguous_strides(self.shape)
        return all(s == e or size == 1 for s, e, size in zip(self.strides, expected, self.shape))

    def span(self) -> int:
        """Number of elements past ``offset`` this layout can touch."""
        if self.numel() == 0:
            return 0
        return 1 + sum((s - 1) * st for s, st in zip(self.shape, self.strides))

    def broadcast_to(self, target) -> "Layout":
        target = as_shape(target)
        return Layout(target, broadcast_strides(self.shape, self.strides, target), self.offset)

    def transpose(self, dim0: int, dim1: int) -> "Layout":
        dim0, dim1 = normalize_axes((dim0,), self.ndim)[0], normalize_axes((dim1,), self.ndim)[0]
        shape, strides = list(self.shape), list(self.strides)
        shape[dim0], shape[dim1] = shape[dim1], shape[dim0]
        strides[dim0], strides[dim1] = strides[dim1], strides[dim0]
        return Layout(shape, strides, self.offset)

    def reshape(self, shape) -> Optional["Layout"]:
        """Contiguous reshape, or None when the layout is not contiguous."""
        shape = as_shape(shape)
        if numel(shape) != self.numel():
            raise ValidationError(f"cannot reshape {self.shape} ({self.numel()} elements) to {shape}")
        if not self.is_contiguous:
            return None
        return Layout(shape, None, self.offset)

    def __eq__(self, other):
        if not isinstance(other, Layout):
            return NotImplemented
        return (self.shape, self.strides, self.offset) == (other.shape, other.strides, other.offset)

    def __hash__(self):
        return hash((self.shape, self.strides, self.offset))

    def __repr__(self):
        return f"Layout(shape={self.shape}, strides={self.strides}, offset={self.offset})"
