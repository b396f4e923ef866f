"""
WgpuTensor: N-dimensional tensor on a compute backend, plus the functional API.

Tensors are immutable: every operation allocates its output and enqueues one
or more kernel dispatches, then returns without waiting. ``numpy()`` and
``tolist()`` are the points where the host waits for the device.

Views (reshape of contiguous data, transpose, broadcast) share the owner's
DeviceBuffer and differ only in their Layout.
"""

import logging

import numpy as np

from wgpu_nd import wgpu_kernels as kernels
from wgpu_nd.wgpu_backend import get_backend
from wgpu_nd.wgpu_dtypes import Category, as_dtype, check_category, from_storage, to_storage
from wgpu_nd.wgpu_errors import AxisError, DimensionMismatchError, ValidationError
from wgpu_nd.wgpu_shape import Layout, as_shape, broadcast_shapes, normalize_axes, numel, reduced_shape

logger = logging.getLogger(__name__)


# ============================================================================
# WgpuTensor
# ============================================================================

class WgpuTensor:
    """Tensor stored in a backend DeviceBuffer."""

    def __init__(self, buffer, layout, dtype, backend=None):
        """
        Args:
            buffer: DeviceBuffer holding the elements
            layout: Layout (shape, strides, offset in elements)
            dtype: DType of the elements
            backend: owning Backend, defaults to the buffer's
        """
        self.buffer = buffer
        self.layout = layout
        self.dtype = as_dtype(dtype)
        self.backend = backend if backend is not None else buffer.backend

    @classmethod
    def _empty(cls, shape, dtype, backend=None):
        backend = backend or get_backend()
        dtype = as_dtype(dtype)
        layout = Layout.contiguous(shape)
        buffer = backend.allocate(layout.numel() * dtype.itemsize)
        return cls(buffer, layout, dtype, backend)

    # ---- Properties ----
    @property
    def shape(self):
        return self.layout.shape

    @property
    def ndim(self):
        return self.layout.ndim

    @property
    def strides(self):
        """Strides in elements."""
        return self.layout.strides

    @property
    def offset(self):
        return self.layout.offset

    @property
    def is_contiguous(self):
        return self.layout.is_contiguous

    def numel(self):
        """Total number of elements."""
        return self.layout.numel()

    # ---- Factory Methods ----
    @classmethod
    def from_numpy(cls, arr, dtype=None, backend=None):
        """Upload a numpy array; float64 becomes Float32, int64 becomes Int32."""
        arr = np.asarray(arr)
        dtype = as_dtype(dtype if dtype is not None else arr.dtype)
        words = to_storage(arr, dtype)
        backend = backend or get_backend()
        buffer = backend.upload_new(words)
        return cls(buffer, Layout.contiguous(arr.shape), dtype, backend)

    @classmethod
    def from_data(cls, shape, dtype, values, backend=None):
        """Tensor of ``shape`` from a flat row-major sequence of values."""
        shape = as_shape(shape)
        values = np.asarray(values).reshape(-1)
        if values.size != numel(shape):
            raise ValidationError(
                f"{values.size} values do not fill shape {shape} ({numel(shape)} elements)"
            )
        return cls.from_numpy(values.reshape(shape), dtype, backend)

    @classmethod
    def full(cls, shape, dtype, value, backend=None):
        """Tensor of ``shape`` with every element ``value`` (filled on the device)."""
        out = cls._empty(as_shape(shape), dtype, backend)
        kernels.launch_fill(out.backend, out.buffer, out.numel(), out.dtype, value)
        return out

    @classmethod
    def zeros(cls, shape, dtype="float32", backend=None):
        # Pooled buffers are reused without clearing, so zeros is a real fill.
        return cls.full(shape, dtype, 0, backend)

    @classmethod
    def ones(cls, shape, dtype="float32", backend=None):
        return cls.full(shape, dtype, 1, backend)

    @classmethod
    def arange(cls, start, end=None, step=1, dtype="float32", backend=None):
        """1-D tensor with values in ``[start, end)``."""
        if end is None:
            end = start
            start = 0
        dtype = as_dtype(dtype)
        return cls.from_numpy(np.arange(start, end, step).astype(dtype.np), dtype, backend)

    @classmethod
    def randn(cls, shape, seed=None, backend=None):
        """Float32 tensor of standard normal samples."""
        rng = np.random.default_rng(seed)
        return cls.from_numpy(rng.standard_normal(as_shape(shape)).astype(np.float32), backend=backend)

    # ---- Data Transfer ----
    def _readable(self):
        return self if self.is_contiguous else self.contiguous()

    def numpy(self):
        """Read the tensor back as a numpy array of its shape (blocks)."""
        t = self._readable()
        if t.numel() == 0:
            return from_storage(np.zeros(self.shape, dtype=self.dtype.np), self.dtype)
        itemsize = self.dtype.itemsize
        data = t.backend.read(t.buffer, t.numel() * itemsize, t.offset * itemsize)
        words = np.frombuffer(data, dtype=self.dtype.np).copy()
        return from_storage(words, self.dtype).reshape(self.shape)

    async def numpy_async(self):
        """Awaitable read-back, required on the browser backend."""
        t = self._readable()
        if t.numel() == 0:
            return from_storage(np.zeros(self.shape, dtype=self.dtype.np), self.dtype)
        itemsize = self.dtype.itemsize
        data = await t.backend.read_async(t.buffer, t.numel() * itemsize, t.offset * itemsize)
        words = np.frombuffer(data, dtype=self.dtype.np).copy()
        return from_storage(words, self.dtype).reshape(self.shape)

    def tolist(self):
        """Elements as a flat row-major list."""
        return self.numpy().reshape(-1).tolist()

    # ---- Shape Manipulation ----
    def _view(self, layout):
        return WgpuTensor(self.buffer, layout, self.dtype, self.backend)

    def reshape(self, *shape):
        """Reshape; a view when contiguous, otherwise a contiguous copy first."""
        new_shape = shape[0] if len(shape) == 1 and isinstance(shape[0], (tuple, list)) else shape
        if isinstance(new_shape, int):
            new_shape = (new_shape,)
        new_shape = tuple(int(s) for s in new_shape)
        if -1 in new_shape:
            known = numel([s for s in new_shape if s != -1]) if new_shape.count(-1) == 1 else 0
            if not known or self.numel() % known:
                raise ValidationError(f"cannot reshape {self.shape} to {new_shape}")
            new_shape = tuple(self.numel() // known if s == -1 else s for s in new_shape)
        layout = self.layout.reshape(new_shape)
        if layout is None:
            return self.contiguous().reshape(new_shape)
        return self._view(layout)

    def transpose(self, dim0, dim1):
        """Swap two dimensions (metadata only, no copy)."""
        return self._view(self.layout.transpose(dim0, dim1))

    @property
    def T(self):
        """Transpose of the last two dimensions."""
        if self.ndim < 2:
            return self
        return self.transpose(-2, -1)

    def broadcast_to(self, *shape):
        """Stride-0 view expanded to ``shape``."""
        new_shape = shape[0] if len(shape) == 1 and isinstance(shape[0], (tuple, list)) else shape
        target = broadcast_shapes(self.shape, as_shape(new_shape))
        if target != as_shape(new_shape):
            raise ValidationError(f"cannot broadcast {self.shape} to {tuple(new_shape)}")
        return self._view(self.layout.broadcast_to(target))

    expand = broadcast_to

    def contiguous(self):
        """Self when already row-major, otherwise a materialized copy."""
        if self.is_contiguous:
            return self
        return copy(self)

    # ---- Operators ----
    def __add__(self, other):
        return add(self, other)

    def __radd__(self, other):
        return add(other, self)

    def __sub__(self, other):
        return sub(self, other)

    def __rsub__(self, other):
        return sub(other, self)

    def __mul__(self, other):
        return mul(self, other)

    def __rmul__(self, other):
        return mul(other, self)

    def __truediv__(self, other):
        return div(self, other)

    def __rtruediv__(self, other):
        return div(other, self)

    def __mod__(self, other):
        return rem(self, other)

    def __pow__(self, other):
        return pow(self, other)

    def __rpow__(self, other):
        return pow(other, self)

    def __matmul__(self, other):
        return matmul(self, other)

    def __neg__(self):
        return neg(self)

    def __abs__(self):
        return abs(self)

    def __and__(self, other):
        return logical_and(self, other)

    def __or__(self, other):
        return logical_or(self, other)

    def __xor__(self, other):
        return logical_xor(self, other)

    def __invert__(self):
        return logical_not(self)

    # ---- Named Operations ----
    def matmul(self, other, transpose_a=False, transpose_b=False):
        return matmul(self, other, transpose_a, transpose_b)

    def sum(self, axis=None):
        return sum_reduce(self, axis)

    def mean(self, axis=None):
        return mean_reduce(self, axis)

    def max(self, axis=None):
        return max_reduce(self, axis)

    def min(self, axis=None):
        return min_reduce(self, axis)

    def __repr__(self):
        return f"WgpuTensor(shape={self.shape}, dtype={self.dtype}, backend={self.backend.name})"


from_numpy = WgpuTensor.from_numpy
from_data = WgpuTensor.from_data
full = WgpuTensor.full
zeros = WgpuTensor.zeros
ones = WgpuTensor.ones
arange = WgpuTensor.arange
randn = WgpuTensor.randn


# ============================================================================
# Operand handling
# ============================================================================

def _same_backend(name, tensors):
    backend = tensors[0].backend
    for t in tensors[1:]:
        if t.backend is not backend:
            raise ValidationError(
                f"{name}: operands live on different backends ({backend.name}, {t.backend.name})"
            )
    return backend


def _operands(name, *values, category=None):
    """Tensors for ``values``; scalars become rank-0 tensors of the peer's kind.

    Every check runs on the tensor operands before a scalar is uploaded, so a
    rejected call schedules no device work.
    """
    tensors = [v for v in values if isinstance(v, WgpuTensor)]
    if not tensors:
        raise ValidationError(f"{name} needs at least one tensor operand")
    for v in values:
        if not isinstance(v, WgpuTensor) and np.ndim(v) != 0:
            raise ValidationError(f"{name}: expected a tensor or a scalar, got {type(v).__name__}")
    if category is not None:
        for t in tensors:
            check_category(name, t.dtype, category)
    _same_kind(name, tensors)
    peer = tensors[0]
    _same_backend(name, tensors)
    return [
        v if isinstance(v, WgpuTensor) else full((), peer.dtype, v, backend=peer.backend)
        for v in values
    ]


def _same_kind(name, tensors):
    dtype = tensors[0].dtype
    for t in tensors[1:]:
        if t.dtype is not dtype:
            raise ValidationError(f"{name}: operand kinds differ, {dtype.label} vs {t.dtype.label}")
    return dtype


def _launch(op, operands, shape, out_dtype, params=()):
    backend = operands[0].backend
    out = WgpuTensor._empty(shape, out_dtype, backend)
    kernels.launch_elementwise(
        backend, op, [(t.buffer, t.layout, t.dtype) for t in operands],
        shape, out.buffer, out_dtype, params,
    )
    return out


def _unary(name, x, params=()):
    op = kernels.get_op(name)
    (x,) = _operands(name, x, category=op.category)
    return _launch(op, [x], x.shape, op.result_dtype(x.dtype), params)


def _binary(name, a, b):
    op = kernels.get_op(name)
    a, b = _operands(name, a, b, category=op.category)
    dtype = a.dtype
    shape = broadcast_shapes(a.shape, b.shape)
    return _launch(op, [a, b], shape, op.result_dtype(dtype))


# ============================================================================
# Functional API - Elementwise
# ============================================================================

def copy(x):
    """Contiguous copy of ``x`` (any kind)."""
    return _unary("copy", x)


def neg(x):
    """Negation: -x."""
    return _unary("neg", x)


def abs(x):
    return _unary("abs", x)


def sign(x):
    """-1, 0 or 1 by the sign of each element."""
    return _unary("sign", x)


def sqr(x):
    return _unary("sqr", x)


def sqrt(x):
    return _unary("sqrt", x)


def rsqr(x):
    """1 / x**2."""
    return _unary("rsqr", x)


def rsqrt(x):
    """1 / sqrt(x)."""
    return _unary("rsqrt", x)


def rcp(x):
    """Reciprocal: 1 / x."""
    return _unary("rcp", x)


def exp(x):
    return _unary("exp", x)


def log(x):
    return _unary("log", x)


def log2(x):
    return _unary("log2", x)


def sin(x):
    return _unary("sin", x)


def cos(x):
    return _unary("cos", x)


def tan(x):
    return _unary("tan", x)


def asin(x):
    return _unary("asin", x)


def acos(x):
    return _unary("acos", x)


def atan(x):
    return _unary("atan", x)


def sinh(x):
    return _unary("sinh", x)


def cosh(x):
    return _unary("cosh", x)


def tanh(x):
    return _unary("tanh", x)


def asinh(x):
    return _unary("asinh", x)


def acosh(x):
    return _unary("acosh", x)


def atanh(x):
    return _unary("atanh", x)


def ceil(x):
    return _unary("ceil", x)


def floor(x):
    return _unary("floor", x)


def round(x):
    """Round half to even."""
    return _unary("round", x)


def trunc(x):
    return _unary("trunc", x)


def add(a, b):
    """Element-wise addition: a + b."""
    return _binary("add", a, b)


def sub(a, b):
    """Element-wise subtraction: a - b."""
    return _binary("sub", a, b)


def mul(a, b):
    """Element-wise multiplication: a * b."""
    return _binary("mul", a, b)


def div(a, b):
    """Element-wise division; integer kinds truncate toward zero."""
    return _binary("div", a, b)


def rem(a, b):
    """Remainder with the sign of the dividend."""
    return _binary("rem", a, b)


def maximum(a, b):
    return _binary("maximum", a, b)


def minimum(a, b):
    return _binary("minimum", a, b)


def pow(a, b):
    return _binary("pow", a, b)


# ============================================================================
# Functional API - Comparison & Logical
# ============================================================================

def eq(a, b):
    return _binary("eq", a, b)


def ne(a, b):
    return _binary("ne", a, b)


def lt(a, b):
    return _binary("lt", a, b)


def le(a, b):
    return _binary("le", a, b)


def gt(a, b):
    return _binary("gt", a, b)


def ge(a, b):
    return _binary("ge", a, b)


def logical_and(a, b):
    return _binary("and", a, b)


def logical_or(a, b):
    return _binary("or", a, b)


def logical_xor(a, b):
    return _binary("xor", a, b)


def logical_not(x):
    return _unary("not", x)


# ============================================================================
# Functional API - Selection
# ============================================================================

def clamp(x, lo, hi):
    """min(max(x, lo), hi), broadcasting all three operands."""
    x, lo, hi = _operands("clamp", x, lo, hi, category=Category.NUMERIC)
    dtype = x.dtype
    shape = broadcast_shapes(x.shape, lo.shape, hi.shape)
    return _launch(kernels.get_op("clamp"), [x, lo, hi], shape, dtype)


def select(cond, a, b):
    """``a`` where ``cond`` is true, else ``b``.

    ``cond`` must be Bool; ``a`` and ``b`` share a kind, and a scalar takes
    the kind of the other one.
    """
    if not isinstance(cond, WgpuTensor):
        raise ValidationError("select: condition must be a tensor")
    check_category("select", cond.dtype, Category.LOGICAL)
    _same_backend("select", [cond] + [v for v in (a, b) if isinstance(v, WgpuTensor)])
    a, b = _operands("select", a, b)
    dtype = a.dtype
    shape = broadcast_shapes(cond.shape, a.shape, b.shape)
    return _launch(kernels.get_op("select"), [cond, a, b], shape, dtype)


where = select


# ============================================================================
# Functional API - Activations
# ============================================================================

def relu(x):
    return _unary("relu", x)


def gelu(x):
    """GELU activation (tanh approximation)."""
    return _unary("gelu", x)


def sigmoid(x):
    return _unary("sigmoid", x)


def silu(x):
    """x * sigmoid(x)."""
    return _unary("silu", x)


def softplus(x):
    """log(1 + exp(x)), computed without overflow for large x."""
    return _unary("softplus", x)


def elu(x, alpha=1.0):
    return _unary("elu", x, (alpha,))


def leaky_relu(x, alpha=0.01):
    return _unary("leaky_relu", x, (alpha,))


def selu(x, alpha=1.6732632, scale=1.050701):
    return _unary("selu", x, (alpha, scale))


def prelu(x, alpha):
    """Leaky ReLU with a learned slope tensor broadcast against ``x``."""
    return _binary("prelu", x, alpha)


# ============================================================================
# Functional API - Reductions
# ============================================================================

def _reduce(op, x, axis):
    (x,) = _operands(op, x, category=Category.NUMERIC)
    axes = normalize_axes(axis, x.ndim)
    if not axes:
        return copy(x)
    for a in axes:
        if x.shape[a] == 0:
            raise AxisError(f"{op}: cannot reduce empty dimension {a} of shape {x.shape}")
    out = WgpuTensor._empty(reduced_shape(x.shape, axes), x.dtype, x.backend)
    kernels.launch_reduce(x.backend, op, x.buffer, x.layout, x.dtype, axes, out.buffer)
    return out


def sum_reduce(x, axis=None):
    """Sum over ``axis`` (int, sequence, or None for all); reduced axes are removed."""
    return _reduce("sum", x, axis)


def max_reduce(x, axis=None):
    return _reduce("max", x, axis)


def min_reduce(x, axis=None):
    return _reduce("min", x, axis)


def mean_reduce(x, axis=None):
    """Mean over ``axis``; integer kinds truncate toward zero."""
    return _reduce("mean", x, axis)


# ============================================================================
# Functional API - Matrix Operations
# ============================================================================

def matmul(a, b, transpose_a=False, transpose_b=False):
    """Batched matrix product with tiled workgroup memory.

    Handles:
    - (M, K) @ (K, N) -> (M, N)
    - Batched: (..., M, K) @ (..., K, N) -> (..., M, N), batch dims broadcast
    - transpose_a / transpose_b swap an operand's last two dims without a copy
    """
    if not isinstance(a, WgpuTensor) or not isinstance(b, WgpuTensor):
        raise ValidationError("matmul operands must be tensors")
    _same_backend("matmul", (a, b))
    check_category("matmul", a.dtype, Category.NUMERIC)
    check_category("matmul", b.dtype, Category.NUMERIC)
    dtype = _same_kind("matmul", (a, b))
    if a.ndim < 2 or b.ndim < 2:
        raise ValidationError(f"matmul operands need rank >= 2, got {a.shape} and {b.shape}")
    batch_shape, m, k_a, k_b, n = kernels.matmul_dims(a.shape, b.shape, transpose_a, transpose_b)
    if k_a != k_b:
        raise DimensionMismatchError("matmul", k_a, k_b)
    out = WgpuTensor._empty(batch_shape + (m, n), dtype, a.backend)
    kernels.launch_matmul(
        a.backend, a.buffer, a.layout, b.buffer, b.layout, out.buffer, dtype,
        transpose_a, transpose_b,
    )
    return out
