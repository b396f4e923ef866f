"""Low-level kernel interface on raw DeviceBuffers (unstable).

For callers that manage their own buffers, e.g. a layer that keeps weights
resident and wants to skip tensor bookkeeping. Buffers hold contiguous
row-major data. Nothing is validated beyond buffer sizes: a violated
contract is a caller bug, so it is logged at CRITICAL and the process
aborts. Use wgpu_tensor for recoverable errors.
"""

import logging
import os

from wgpu_nd import wgpu_kernels as kernels
from wgpu_nd.wgpu_dtypes import as_dtype
from wgpu_nd.wgpu_errors import ValidationError
from wgpu_nd.wgpu_shape import Layout

logger = logging.getLogger(__name__)


def _abort(message):
    logger.critical("wgpu_raw contract violation: %s", message)
    for handler in logging.getLogger().handlers + logging.getLogger("wgpu_nd").handlers:
        handler.flush()
    os.abort()


def _require(condition, message):
    if not condition:
        _abort(message)


def _backend_of(*buffers):
    backend = buffers[0].backend
    _require(all(b.backend is backend for b in buffers), "buffers belong to different backends")
    return backend


def _check_size(name, buffer, count, dtype):
    need = count * dtype.itemsize
    _require(buffer.nbytes >= need, f"{name} holds {buffer.nbytes} bytes, needs {need}")


def _launch(fn, *args, **kwargs):
    try:
        fn(*args, **kwargs)
    except ValidationError as e:
        _abort(str(e))


def gemm(a, b, out, m, k, n, dtype="float32", batch=1, transpose_a=False, transpose_b=False):
    """out[batch, m, n] = op(a)[batch, m, k] @ op(b)[batch, k, n].

    With ``transpose_a`` the buffer ``a`` holds [batch, k, m]; with
    ``transpose_b`` the buffer ``b`` holds [batch, n, k].
    """
    dtype = as_dtype(dtype)
    _require(min(m, k, n, batch) >= 0, f"negative gemm dimension in {(batch, m, k, n)}")
    backend = _backend_of(a, b, out)
    _check_size("a", a, batch * m * k, dtype)
    _check_size("b", b, batch * k * n, dtype)
    _check_size("out", out, batch * m * n, dtype)
    a_layout = Layout((batch, k, m) if transpose_a else (batch, m, k))
    b_layout = Layout((batch, n, k) if transpose_b else (batch, k, n))
    _launch(
        kernels.launch_matmul, backend, a, a_layout, b, b_layout, out, dtype,
        transpose_a, transpose_b,
    )


def transpose(x, out, rows, cols, dtype="float32", batch=1):
    """out[batch, cols, rows] = x[batch, rows, cols] transposed."""
    dtype = as_dtype(dtype)
    backend = _backend_of(x, out)
    _check_size("x", x, batch * rows * cols, dtype)
    _check_size("out", out, batch * rows * cols, dtype)
    layout = Layout((batch, rows, cols)).transpose(1, 2)
    _launch(kernels.launch_copy, backend, x, layout, dtype, out)


def elementwise(op, inputs, out, count, dtype="float32", params=()):
    """Apply the named elementwise ``op`` to ``count`` elements of each input."""
    dtype = as_dtype(dtype)
    _require(op in kernels.OPS and op not in ("fill", "select"), f"unknown elementwise operation {op!r}")
    kernel = kernels.OPS[op]
    _require(len(inputs) == kernel.arity, f"{op} takes {kernel.arity} inputs, got {len(inputs)}")
    _require(len(params) == kernel.n_params, f"{op} takes {kernel.n_params} params, got {len(params)}")
    backend = _backend_of(out, *inputs)
    for i, buf in enumerate(inputs):
        _check_size(f"input {i}", buf, count, dtype)
    out_dtype = kernel.result_dtype(dtype)
    _check_size("out", out, count, out_dtype)
    layout = Layout((count,))
    _launch(
        kernels.launch_elementwise, backend, kernel, [(buf, layout, dtype) for buf in inputs],
        (count,), out, out_dtype, params,
    )


def fill(out, count, value, dtype="float32"):
    """Set the first ``count`` elements of ``out`` to ``value``."""
    dtype = as_dtype(dtype)
    _check_size("out", out, count, dtype)
    _launch(kernels.launch_fill, out.backend, out, count, dtype, value)
