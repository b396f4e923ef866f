"""
wgpu_nd: GPU-accelerated N-dimensional tensors via wgpu-py.

Broadcasting elementwise math, reductions, selection, batched matmul and
activations, each compiled once per operation signature into a WGSL compute
pipeline and dispatched on a wgpu device (native or browser), or run on the
numpy host backend when no adapter is available.

Modules:
    wgpu_tensor    - WgpuTensor and the functional tensor API
    wgpu_kernels   - WGSL program templates and launchers
    wgpu_backend   - Backend interface, buffer lifetimes, default backend
    wgpu_device    - wgpu native and browser backends
    wgpu_host      - numpy host backend
    wgpu_cache     - Pipeline cache keyed by operation signature
    wgpu_allocator - Buffer pool
    wgpu_dtypes    - Element kinds and categories
    wgpu_shape     - Broadcasting and strided layouts
    wgpu_config    - Environment configuration and logging setup
    wgpu_errors    - Error types
    wgpu_raw       - Unstable low-level kernel interface
"""

from wgpu_nd.wgpu_errors import (
    WgpuNdError, ValidationError, CategoryError, ShapeMismatchError,
    DimensionMismatchError, AxisError,
    DeviceError, OutOfMemoryError, ProgramBuildError, DeviceLostError,
)

from wgpu_nd.wgpu_config import Config, get_config, set_config, configure_logging

from wgpu_nd.wgpu_dtypes import (
    DType, Category,
    float32, int32, uint32, bool_,
    as_dtype, has_category, check_category,
)

from wgpu_nd.wgpu_shape import Layout, broadcast_shapes, normalize_axes

from wgpu_nd.wgpu_cache import OpSignature, PipelineCache

from wgpu_nd.wgpu_backend import (
    Backend, DeviceBuffer,
    register_backend, available_backends, create_backend,
    get_backend, set_backend, use_backend,
)

from wgpu_nd.wgpu_device import NativeBackend, BrowserBackend
from wgpu_nd.wgpu_host import HostBackend

from wgpu_nd.wgpu_tensor import (
    WgpuTensor,
    from_numpy, from_data, full, zeros, ones, arange, randn,
    copy, neg, abs, sign, sqr, sqrt, rsqr, rsqrt, rcp,
    exp, log, log2, sin, cos, tan, asin, acos, atan,
    sinh, cosh, tanh, asinh, acosh, atanh,
    ceil, floor, round, trunc,
    add, sub, mul, div, rem, maximum, minimum, pow,
    eq, ne, lt, le, gt, ge,
    logical_and, logical_or, logical_xor, logical_not,
    clamp, select, where,
    relu, gelu, sigmoid, silu, softplus, elu, leaky_relu, selu, prelu,
    sum_reduce, max_reduce, min_reduce, mean_reduce,
    matmul,
)

from wgpu_nd import wgpu_raw

__all__ = [
    # Errors
    "WgpuNdError", "ValidationError", "CategoryError", "ShapeMismatchError",
    "DimensionMismatchError", "AxisError",
    "DeviceError", "OutOfMemoryError", "ProgramBuildError", "DeviceLostError",
    # Config
    "Config", "get_config", "set_config", "configure_logging",
    # Element kinds & shapes
    "DType", "Category", "float32", "int32", "uint32", "bool_",
    "as_dtype", "has_category", "check_category",
    "Layout", "broadcast_shapes", "normalize_axes",
    # Cache & backends
    "OpSignature", "PipelineCache",
    "Backend", "DeviceBuffer",
    "register_backend", "available_backends", "create_backend",
    "get_backend", "set_backend", "use_backend",
    "NativeBackend", "BrowserBackend", "HostBackend",
    # Tensor
    "WgpuTensor",
    "from_numpy", "from_data", "full", "zeros", "ones", "arange", "randn",
    "copy", "neg", "abs", "sign", "sqr", "sqrt", "rsqr", "rsqrt", "rcp",
    "exp", "log", "log2", "sin", "cos", "tan", "asin", "acos", "atan",
    "sinh", "cosh", "tanh", "asinh", "acosh", "atanh",
    "ceil", "floor", "round", "trunc",
    "add", "sub", "mul", "div", "rem", "maximum", "minimum", "pow",
    "eq", "ne", "lt", "le", "gt", "ge",
    "logical_and", "logical_or", "logical_xor", "logical_not",
    "clamp", "select", "where",
    "relu", "gelu", "sigmoid", "silu", "softplus", "elu", "leaky_relu", "selu", "prelu",
    "sum_reduce", "max_reduce", "min_reduce", "mean_reduce",
    "matmul",
    # Low-level
    "wgpu_raw",
]
