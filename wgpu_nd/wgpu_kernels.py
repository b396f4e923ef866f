"""Kernel library: WGSL compute program templates and their launchers.

Every program takes a read-only ``info`` buffer at binding 0 holding the
per-dispatch metadata (element counts, offsets, shapes, strides and scalar
parameters as 32-bit words), followed by its operand buffers and the output.
Sizes and strides are data, so one compiled program serves every shape of
the same rank; the rank, operand kinds and structural flags form the
program's signature.

Operands are always read through their strides. A broadcast dimension is a
stride of 0, a transposed operand has swapped strides, and neither is ever
copied. Outputs are written contiguous, row-major.

Each template also has a host rendering in numpy that consumes the same
``info`` words, executed by the host backend.
"""

import logging
from collections import namedtuple

import numpy as np
from numpy.lib.stride_tricks import as_strided

from wgpu_nd.wgpu_cache import OpSignature
from wgpu_nd.wgpu_dtypes import Category, DType
from wgpu_nd.wgpu_errors import ValidationError
from wgpu_nd.wgpu_shape import broadcast_shapes, broadcast_strides, numel

logger = logging.getLogger(__name__)

WORKGROUP_SIZE = 256
MAX_WORKGROUPS = 65535
TILE = 16

_I32_MIN = -(2 ** 31)
_I32_MAX = 2 ** 31 - 1

Binding = namedtuple("Binding", ["name", "access", "wgsl", "storage"])

INFO_BINDING = Binding("info", "read", "i32", np.dtype(np.int32))


def _binding(name, access, dtype):
    return Binding(name, access, dtype.wgsl, dtype.np)


class Program:
    """A compute program for one signature.

    ``wgsl()`` renders the shader source (only called on a cache miss);
    ``host`` executes the same program on typed numpy views of the bindings.
    """

    __slots__ = ("signature", "label", "bindings", "_render", "host")

    def __init__(self, signature, bindings, render, host):
        self.signature = signature
        self.label = signature.label
        self.bindings = tuple(bindings)
        self._render = render
        self.host = host

    def wgsl(self):
        return self._render()

    def __repr__(self):
        return f"Program({self.signature!r})"


# ============================================================================
# Helpers
# ============================================================================

def pack_info(ints, params=None):
    """Metadata words: ints as i32, followed by already-encoded param words."""
    ints = [int(v) for v in ints]
    for v in ints:
        if not _I32_MIN <= v <= _I32_MAX:
            raise ValidationError(f"value {v} exceeds the 32-bit range of kernel indexing")
    words = np.array(ints, dtype=np.int32)
    if params is not None and len(params):
        words = np.concatenate([words, np.asarray(params).view(np.int32)])
    if words.size == 0:
        words = np.zeros(1, dtype=np.int32)
    return words


def param_words(values, dtype):
    """Encode scalar parameters as the 32-bit words of ``dtype``."""
    if dtype is DType.BOOL:
        values = [bool(v) for v in values]
    return np.asarray(values).astype(dtype.np).view(np.int32)


def grid(n_groups):
    """Workgroup counts for a 1-D launch, folding into y past the x limit."""
    if n_groups <= MAX_WORKGROUPS:
        return (max(n_groups, 1), 1, 1)
    y = -(-n_groups // MAX_WORKGROUPS)
    if y > MAX_WORKGROUPS:
        raise ValidationError(f"launch of {n_groups} workgroups exceeds the dispatch limit")
    return (MAX_WORKGROUPS, y, 1)


def _strided(flat, offset, shape, strides):
    """Read-only view of ``flat`` with element ``strides`` from ``offset``."""
    shape = tuple(int(s) for s in shape)
    strides = tuple(int(s) * flat.itemsize for s in strides)
    view = as_strided(flat[int(offset):], shape=shape, strides=strides, writeable=False)
    return view


def _words(info, start, count):
    return tuple(int(v) for v in info[start:start + count])


def _fmt(template, dtype):
    return template.format(
        T=dtype.wgsl, zero=dtype.literal("zero"), one=dtype.literal("one"),
    )


# ============================================================================
# Integer semantics of WGSL on the host
# ============================================================================

def _div(a, b):
    if a.dtype.kind == "f":
        return a / b
    a64, b64 = a.astype(np.int64), b.astype(np.int64)
    safe = np.where(b64 == 0, 1, b64)
    q = np.abs(a64) // np.abs(safe) * np.sign(a64) * np.sign(safe)
    # Integer x / 0 is x.
    return np.where(b64 == 0, a64, q).astype(a.dtype)


def _rem(a, b):
    if a.dtype.kind == "f":
        return np.fmod(a, b)
    a64, b64 = a.astype(np.int64), b.astype(np.int64)
    safe = np.where(b64 == 0, 1, b64)
    q = np.abs(a64) // np.abs(safe) * np.sign(a64) * np.sign(safe)
    # Integer x % 0 is 0.
    return np.where(b64 == 0, 0, a64 - q * safe).astype(a.dtype)


def _gelu(x):
    c = np.float32(0.7978845608028654)
    return np.float32(0.5) * x * (np.float32(1.0) + np.tanh(c * (x + np.float32(0.044715) * x * x * x)))


def _truthy(x):
    return x != 0


# ============================================================================
# Elementwise operations
# ============================================================================

class ElementwiseOp:
    """Elementwise operation: WGSL expression, numpy rendering, typing rule.

    Args:
        name: operation name (also the program label).
        arity: number of tensor operands.
        category: category every operand must belong to, or None when the
            caller validates (select).
        expr: WGSL expression over ``a``, ``b``, ``c`` and params ``p0``,
            ``p1``; may use ``{T}``, ``{zero}``, ``{one}``. A dict maps a
            Category to the expression used for kinds in that category.
        host: ``host(params, *operands)`` numpy equivalent.
        result: output kind, or None for the operand kind.
        n_params: number of f32 scalar parameters.
    """

    def __init__(self, name, arity, category, expr, host, result=None, n_params=0):
        self.name = name
        self.arity = arity
        self.category = category
        self.expr = expr
        self.host = host
        self.result = result
        self.n_params = n_params

    def result_dtype(self, dtype):
        return self.result or dtype

    def expr_for(self, dtype):
        expr = self.expr
        if isinstance(expr, dict):
            for category, candidate in expr.items():
                if dtype.categories & category:
                    expr = candidate
                    break
            else:
                raise ValidationError(f"{self.name} has no rendering for {dtype.label}")
        return _fmt(expr, dtype)

    def __repr__(self):
        return f"ElementwiseOp({self.name!r}, arity={self.arity})"


OPS = {}


def _op(name, arity, category, expr, host, result=None, n_params=0):
    OPS[name] = ElementwiseOp(name, arity, category, expr, host, result, n_params)


_ANY = Category.NUMERIC | Category.LOGICAL
_SIGN_INT = "select(select({zero}, {one}, a > {zero}), -{one}, a < {zero})"

# ---- unary ----
_op("copy", 1, _ANY, "a", lambda p, a: a)
_op("neg", 1, Category.SIGNED, "-a", lambda p, a: -a)
_op("abs", 1, Category.SIGNED, "abs(a)", lambda p, a: np.abs(a))
_op("sign", 1, Category.SIGNED, {Category.FLOAT: "sign(a)", Category.INTEGER: _SIGN_INT},
    lambda p, a: np.sign(a))
_op("sqr", 1, Category.NUMERIC, "a * a", lambda p, a: a * a)
_op("sqrt", 1, Category.FLOAT, "sqrt(a)", lambda p, a: np.sqrt(a))
_op("rsqr", 1, Category.FLOAT, "{one} / (a * a)", lambda p, a: np.float32(1.0) / (a * a))
_op("rsqrt", 1, Category.FLOAT, "inverseSqrt(a)", lambda p, a: np.float32(1.0) / np.sqrt(a))
_op("rcp", 1, Category.FLOAT, "{one} / a", lambda p, a: np.float32(1.0) / a)
_op("exp", 1, Category.FLOAT, "exp(a)", lambda p, a: np.exp(a))
_op("log", 1, Category.FLOAT, "log(a)", lambda p, a: np.log(a))
_op("log2", 1, Category.FLOAT, "log2(a)", lambda p, a: np.log2(a))
_op("sin", 1, Category.FLOAT, "sin(a)", lambda p, a: np.sin(a))
_op("cos", 1, Category.FLOAT, "cos(a)", lambda p, a: np.cos(a))
_op("tan", 1, Category.FLOAT, "tan(a)", lambda p, a: np.tan(a))
_op("asin", 1, Category.FLOAT, "asin(a)", lambda p, a: np.arcsin(a))
_op("acos", 1, Category.FLOAT, "acos(a)", lambda p, a: np.arccos(a))
_op("atan", 1, Category.FLOAT, "atan(a)", lambda p, a: np.arctan(a))
_op("sinh", 1, Category.FLOAT, "sinh(a)", lambda p, a: np.sinh(a))
_op("cosh", 1, Category.FLOAT, "cosh(a)", lambda p, a: np.cosh(a))
_op("tanh", 1, Category.FLOAT, "tanh(a)", lambda p, a: np.tanh(a))
_op("asinh", 1, Category.FLOAT, "asinh(a)", lambda p, a: np.arcsinh(a))
_op("acosh", 1, Category.FLOAT, "acosh(a)", lambda p, a: np.arccosh(a))
_op("atanh", 1, Category.FLOAT, "atanh(a)", lambda p, a: np.arctanh(a))
_op("ceil", 1, Category.FLOAT, "ceil(a)", lambda p, a: np.ceil(a))
_op("floor", 1, Category.FLOAT, "floor(a)", lambda p, a: np.floor(a))
_op("round", 1, Category.FLOAT, "round(a)", lambda p, a: np.round(a))
_op("trunc", 1, Category.FLOAT, "trunc(a)", lambda p, a: np.trunc(a))
_op("not", 1, Category.LOGICAL, "select({one}, {zero}, a != 0u)",
    lambda p, a: ~_truthy(a), result=DType.BOOL)

# ---- binary arithmetic ----
_op("add", 2, Category.NUMERIC, "a + b", lambda p, a, b: a + b)
_op("sub", 2, Category.NUMERIC, "a - b", lambda p, a, b: a - b)
_op("mul", 2, Category.NUMERIC, "a * b", lambda p, a, b: a * b)
_op("div", 2, Category.NUMERIC,
    {Category.INTEGER: "select(a / b, a, b == {zero})", Category.FLOAT: "a / b"},
    lambda p, a, b: _div(a, b))
_op("rem", 2, Category.NUMERIC,
    {Category.INTEGER: "select(a % b, {zero}, b == {zero})", Category.FLOAT: "a % b"},
    lambda p, a, b: _rem(a, b))
_op("maximum", 2, Category.NUMERIC, "max(a, b)", lambda p, a, b: np.maximum(a, b))
_op("minimum", 2, Category.NUMERIC, "min(a, b)", lambda p, a, b: np.minimum(a, b))
_op("pow", 2, Category.FLOAT, "pow(a, b)", lambda p, a, b: np.power(a, b))

# ---- comparison ----
_op("eq", 2, Category.NUMERIC, "select(0u, 1u, a == b)", lambda p, a, b: a == b, result=DType.BOOL)
_op("ne", 2, Category.NUMERIC, "select(0u, 1u, a != b)", lambda p, a, b: a != b, result=DType.BOOL)
_op("lt", 2, Category.NUMERIC, "select(0u, 1u, a < b)", lambda p, a, b: a < b, result=DType.BOOL)
_op("le", 2, Category.NUMERIC, "select(0u, 1u, a <= b)", lambda p, a, b: a <= b, result=DType.BOOL)
_op("gt", 2, Category.NUMERIC, "select(0u, 1u, a > b)", lambda p, a, b: a > b, result=DType.BOOL)
_op("ge", 2, Category.NUMERIC, "select(0u, 1u, a >= b)", lambda p, a, b: a >= b, result=DType.BOOL)

# ---- logical ----
_op("and", 2, Category.LOGICAL, "select(0u, 1u, a != 0u && b != 0u)",
    lambda p, a, b: _truthy(a) & _truthy(b), result=DType.BOOL)
_op("or", 2, Category.LOGICAL, "select(0u, 1u, a != 0u || b != 0u)",
    lambda p, a, b: _truthy(a) | _truthy(b), result=DType.BOOL)
_op("xor", 2, Category.LOGICAL, "select(0u, 1u, (a != 0u) != (b != 0u))",
    lambda p, a, b: _truthy(a) ^ _truthy(b), result=DType.BOOL)

# ---- ternary ----
_op("clamp", 3, Category.NUMERIC, "min(max(a, b), c)", lambda p, a, b, c: np.minimum(np.maximum(a, b), c))
_op("select", 3, None, "select(c, b, a != 0u)", lambda p, a, b, c: np.where(_truthy(a), b, c))

# ---- activations ----
_op("relu", 1, Category.FLOAT, "max(a, 0.0)", lambda p, a: np.maximum(a, np.float32(0.0)))
_op("gelu", 1, Category.FLOAT,
    "0.5 * a * (1.0 + tanh(0.7978845608 * (a + 0.044715 * a * a * a)))",
    lambda p, a: _gelu(a))
_op("sigmoid", 1, Category.FLOAT, "1.0 / (1.0 + exp(-a))",
    lambda p, a: np.float32(1.0) / (np.float32(1.0) + np.exp(-a)))
_op("silu", 1, Category.FLOAT, "a / (1.0 + exp(-a))",
    lambda p, a: a / (np.float32(1.0) + np.exp(-a)))
_op("softplus", 1, Category.FLOAT, "max(a, 0.0) + log(1.0 + exp(-abs(a)))",
    lambda p, a: np.maximum(a, np.float32(0.0)) + np.log1p(np.exp(-np.abs(a))))
_op("elu", 1, Category.FLOAT, "select(p0 * (exp(a) - 1.0), a, a >= 0.0)",
    lambda p, a: np.where(a >= 0, a, p[0] * (np.exp(a) - np.float32(1.0))), n_params=1)
_op("leaky_relu", 1, Category.FLOAT, "select(p0 * a, a, a >= 0.0)",
    lambda p, a: np.where(a >= 0, a, p[0] * a), n_params=1)
_op("selu", 1, Category.FLOAT, "p1 * select(p0 * (exp(a) - 1.0), a, a >= 0.0)",
    lambda p, a: p[1] * np.where(a >= 0, a, p[0] * (np.exp(a) - np.float32(1.0))), n_params=2)
_op("prelu", 2, Category.FLOAT, "select(b * a, a, a >= 0.0)", lambda p, a, b: np.where(a >= 0, a, b * a))

# ---- initializer ----
_op("fill", 0, _ANY, "bitcast<{T}>(info[PARAMS])", lambda p: p[0], n_params=1)

UNARY_OPS = tuple(n for n, o in OPS.items() if o.arity == 1 and o.n_params == 0 and n != "copy")
BINARY_OPS = tuple(n for n, o in OPS.items() if o.arity == 2)


def get_op(name):
    try:
        return OPS[name]
    except KeyError:
        raise ValidationError(f"unknown elementwise operation {name!r}") from None


_ELEMENTWISE_WGSL = """
{bindings}

const RANK: u32 = {rank}u;
const SHAPE: u32 = {shape_base}u;
const STRIDES: u32 = SHAPE + RANK;
const PARAMS: u32 = STRIDES + {n_in}u * RANK;

fn offset_of(operand: u32, index: u32) -> u32 {{
    var rest = index;
    var off = info[1u + operand];
    for (var i = 0u; i < RANK; i = i + 1u) {{
        let d = RANK - (i + 1u);
        let size = u32(info[SHAPE + d]);
        off = off + i32(rest % size) * info[STRIDES + operand * RANK + d];
        rest = rest / size;
    }}
    return u32(off);
}}

@compute @workgroup_size({wg})
fn main(@builtin(global_invocation_id) gid: vec3<u32>) {{
    let idx = gid.x + gid.y * {row}u;
    if (idx >= u32(info[0])) {{
        return;
    }}
{loads}
    out[idx] = {expr};
}}
"""

_OPERAND_NAMES = ("a", "b", "c")


def elementwise_program(op, rank, in_dtypes, out_dtype):
    """Program for ``op`` over ``len(in_dtypes)`` operands broadcast at ``rank``."""
    in_dtypes = tuple(in_dtypes)
    n_in = len(in_dtypes)
    signature = OpSignature(op.name, in_dtypes + (out_dtype,), ("elementwise", rank, n_in))
    bindings = [INFO_BINDING]
    bindings += [_binding(f"x{i}", "read", dt) for i, dt in enumerate(in_dtypes)]
    bindings.append(_binding("out", "read_write", out_dtype))
    kind = in_dtypes[-1] if in_dtypes else out_dtype

    def render():
        decls = "\n".join(
            f"@group(0) @binding({i}) var<storage, {'read' if b.access == 'read' else 'read_write'}> "
            f"{b.name}: array<{b.wgsl}>;"
            for i, b in enumerate(bindings)
        )
        loads = [f"    let {_OPERAND_NAMES[i]} = x{i}[offset_of({i}u, idx)];" for i in range(n_in)]
        if op.n_params and op.name != "fill":
            loads += [f"    let p{j} = bitcast<f32>(info[PARAMS + {j}u]);" for j in range(op.n_params)]
        return _ELEMENTWISE_WGSL.format(
            bindings=decls, rank=rank, shape_base=1 + n_in, n_in=n_in,
            wg=WORKGROUP_SIZE, row=MAX_WORKGROUPS * WORKGROUP_SIZE,
            loads="\n".join(loads), expr=op.expr_for(kind),
        )

    param_view = out_dtype.np if op.name == "fill" else np.dtype(np.float32)

    def host(arrays):
        info, out = arrays[0], arrays[-1]
        n = int(info[0])
        offsets = _words(info, 1, n_in)
        shape = _words(info, 1 + n_in, rank)
        base = 1 + n_in + rank
        operands = [
            _strided(arrays[1 + i], offsets[i], shape, _words(info, base + i * rank, rank))
            for i in range(n_in)
        ]
        params = info[base + n_in * rank:base + n_in * rank + op.n_params].view(param_view)
        with np.errstate(all="ignore"):
            result = op.host(params, *operands)
        result = np.broadcast_to(np.asarray(result), shape)
        out[:n] = result.astype(out_dtype.np).reshape(-1)

    return Program(signature, bindings, render, host)


# ============================================================================
# Reductions
# ============================================================================

REDUCTIONS = ("sum", "max", "min", "mean")

_REDUCE_WGSL = """
@group(0) @binding(0) var<storage, read> info: array<i32>;
@group(0) @binding(1) var<storage, read> x: array<{T}>;
@group(0) @binding(2) var<storage, read_write> out: array<{T}>;

const KEPT: u32 = {kept}u;
const REDUCED: u32 = {reduced}u;
const KEPT_SHAPE: u32 = 3u;
const KEPT_STRIDES: u32 = KEPT_SHAPE + KEPT;
const RED_SHAPE: u32 = KEPT_STRIDES + KEPT;
const RED_STRIDES: u32 = RED_SHAPE + REDUCED;

var<workgroup> scratch: array<{T}, {wg}>;

fn kept_offset(index: u32) -> i32 {{
    var rest = index;
    var off = info[2];
    for (var i = 0u; i < KEPT; i = i + 1u) {{
        let d = KEPT - (i + 1u);
        let size = u32(info[KEPT_SHAPE + d]);
        off = off + i32(rest % size) * info[KEPT_STRIDES + d];
        rest = rest / size;
    }}
    return off;
}}

fn reduced_offset(index: u32) -> i32 {{
    var rest = index;
    var off = 0i;
    for (var i = 0u; i < REDUCED; i = i + 1u) {{
        let d = REDUCED - (i + 1u);
        let size = u32(info[RED_SHAPE + d]);
        off = off + i32(rest % size) * info[RED_STRIDES + d];
        rest = rest / size;
    }}
    return off;
}}

fn combine(acc: {T}, v: {T}) -> {T} {{
    return {combine};
}}

@compute @workgroup_size({wg})
fn main(
    @builtin(workgroup_id) wid: vec3<u32>,
    @builtin(local_invocation_id) lid: vec3<u32>,
) {{
    let o = wid.x + wid.y * {max_wg}u;
    if (o >= u32(info[0])) {{
        return;
    }}
    let count = u32(info[1]);
    let base = kept_offset(o);

    var acc = {init};
{declare}
    for (var start = 0u; start < count; start = start + {wg}u) {{
        let r = start + lid.x;
        if (r < count) {{
            let v = x[u32(base + reduced_offset(r))];
{accumulate}
        }}
    }}
    scratch[lid.x] = acc;
    workgroupBarrier();

    var width = {half}u;
    loop {{
        if (width == 0u) {{ break; }}
        if (lid.x < width) {{
            scratch[lid.x] = combine(scratch[lid.x], scratch[lid.x + width]);
        }}
        workgroupBarrier();
        width = width >> 1u;
    }}

    if (lid.x == 0u) {{
        out[o] = {finish};
    }}
}}
"""

_KAHAN = """            let y = v - comp;
            let t = acc + y;
            comp = (t - acc) - y;
            acc = t;"""


def reduce_program(op, kept_rank, reduced_rank, dtype):
    """Program reducing ``reduced_rank`` axes for each of the kept coordinates."""
    if op not in REDUCTIONS:
        raise ValidationError(f"unknown reduction {op!r}")
    signature = OpSignature(op, (dtype, dtype), ("reduce", kept_rank, reduced_rank))
    bindings = (INFO_BINDING, _binding("x", "read", dtype), _binding("out", "read_write", dtype))
    additive = op in ("sum", "mean")
    kahan = additive and dtype is DType.FLOAT32

    def render():
        if additive:
            combine, init = "acc + v", dtype.literal("zero")
        else:
            # max and min are idempotent; repeating the seed leaves the result unchanged
            combine = "max(acc, v)" if op == "max" else "min(acc, v)"
            init = "x[u32(base + reduced_offset(0u))]"
        finish = "scratch[0]"
        if op == "mean":
            finish = f"scratch[0] / {dtype.wgsl}(count)"
        return _REDUCE_WGSL.format(
            T=dtype.wgsl, kept=kept_rank, reduced=reduced_rank, wg=WORKGROUP_SIZE,
            half=WORKGROUP_SIZE // 2, max_wg=MAX_WORKGROUPS, combine=combine, init=init,
            declare=f"    var comp = {dtype.literal('zero')};" if kahan else "",
            accumulate=_KAHAN if kahan else "            acc = combine(acc, v);",
            finish=finish,
        )

    def host(arrays):
        info, x, out = arrays
        n_out, count, offset = _words(info, 0, 3)
        kept_shape = _words(info, 3, kept_rank)
        kept_strides = _words(info, 3 + kept_rank, kept_rank)
        red_shape = _words(info, 3 + 2 * kept_rank, reduced_rank)
        red_strides = _words(info, 3 + 2 * kept_rank + reduced_rank, reduced_rank)
        view = _strided(x, offset, kept_shape + red_shape, kept_strides + red_strides)
        axes = tuple(range(kept_rank, kept_rank + reduced_rank))
        if additive:
            wide = np.float64 if dtype is DType.FLOAT32 else np.int64
            acc = view.sum(axis=axes, dtype=wide).astype(x.dtype)
            if op == "mean":
                acc = _div(np.asarray(acc), np.full(np.shape(acc), count, dtype=x.dtype))
        elif op == "max":
            acc = view.max(axis=axes)
        else:
            acc = view.min(axis=axes)
        out[:n_out] = np.asarray(acc, dtype=x.dtype).reshape(-1)

    return Program(signature, bindings, render, host)


# ============================================================================
# Batched matrix multiplication
# ============================================================================

_MATMUL_WGSL = """
@group(0) @binding(0) var<storage, read> info: array<i32>;
@group(0) @binding(1) var<storage, read> a: array<{T}>;
@group(0) @binding(2) var<storage, read> b: array<{T}>;
@group(0) @binding(3) var<storage, read_write> out: array<{T}>;

const TILE: u32 = {tile}u;
const BATCH_RANK: u32 = {batch_rank}u;
const TRANSPOSE_A: bool = {transpose_a};
const TRANSPOSE_B: bool = {transpose_b};
const BATCH_SHAPE: u32 = 11u;
const A_BATCH_STRIDES: u32 = BATCH_SHAPE + BATCH_RANK;
const B_BATCH_STRIDES: u32 = A_BATCH_STRIDES + BATCH_RANK;

var<workgroup> tile_a: array<{T}, {tile_area}>;
var<workgroup> tile_b: array<{T}, {tile_area}>;

fn batch_offsets(batch: u32) -> vec2<i32> {{
    var rest = batch;
    var off = vec2<i32>(info[5], info[6]);
    for (var i = 0u; i < BATCH_RANK; i = i + 1u) {{
        let d = BATCH_RANK - (i + 1u);
        let size = u32(info[BATCH_SHAPE + d]);
        let coord = i32(rest % size);
        off = off + coord * vec2<i32>(info[A_BATCH_STRIDES + d], info[B_BATCH_STRIDES + d]);
        rest = rest / size;
    }}
    return off;
}}

// Element (row, col) of op(A), an M x K matrix.
fn load_a(base: i32, row: u32, col: u32) -> {T} {{
    if (TRANSPOSE_A) {{
        return a[u32(base + i32(col) * info[7] + i32(row) * info[8])];
    }}
    return a[u32(base + i32(row) * info[7] + i32(col) * info[8])];
}}

// Element (row, col) of op(B), a K x N matrix.
fn load_b(base: i32, row: u32, col: u32) -> {T} {{
    if (TRANSPOSE_B) {{
        return b[u32(base + i32(col) * info[9] + i32(row) * info[10])];
    }}
    return b[u32(base + i32(row) * info[9] + i32(col) * info[10])];
}}

@compute @workgroup_size({tile}, {tile})
fn main(
    @builtin(workgroup_id) wid: vec3<u32>,
    @builtin(local_invocation_id) lid: vec3<u32>,
) {{
    let m = u32(info[0]);
    let k = u32(info[1]);
    let n = u32(info[2]);
    if (wid.z >= u32(info[4])) {{
        return;
    }}
    let batch = u32(info[3]) + wid.z;
    let bases = batch_offsets(batch);

    let row = wid.y * TILE + lid.y;
    let col = wid.x * TILE + lid.x;
    let slot = lid.y * TILE + lid.x;

    var acc = {zero};
    for (var t = 0u; t < k; t = t + TILE) {{
        let a_col = t + lid.x;
        if (row < m && a_col < k) {{
            tile_a[slot] = load_a(bases.x, row, a_col);
        }} else {{
            tile_a[slot] = {zero};
        }}
        let b_row = t + lid.y;
        if (b_row < k && col < n) {{
            tile_b[slot] = load_b(bases.y, b_row, col);
        }} else {{
            tile_b[slot] = {zero};
        }}
        workgroupBarrier();

        for (var i = 0u; i < TILE; i = i + 1u) {{
            acc = acc + tile_a[lid.y * TILE + i] * tile_b[i * TILE + lid.x];
        }}
        workgroupBarrier();
    }}

    if (row < m && col < n) {{
        out[(batch * m + row) * n + col] = acc;
    }}
}}
"""


def matmul_program(dtype, batch_rank, transpose_a, transpose_b):
    """Tiled batched matmul; transpose flags are baked into the program."""
    transpose_a, transpose_b = bool(transpose_a), bool(transpose_b)
    signature = OpSignature(
        "matmul", (dtype, dtype, dtype), ("matmul", batch_rank), (transpose_a, transpose_b)
    )
    bindings = (
        INFO_BINDING,
        _binding("a", "read", dtype),
        _binding("b", "read", dtype),
        _binding("out", "read_write", dtype),
    )

    def render():
        return _MATMUL_WGSL.format(
            T=dtype.wgsl, zero=dtype.literal("zero"), tile=TILE, tile_area=TILE * TILE,
            batch_rank=batch_rank,
            transpose_a="true" if transpose_a else "false",
            transpose_b="true" if transpose_b else "false",
        )

    def host(arrays):
        info, a, b, out = arrays
        m, k, n, base, count, a_off, b_off, a_s0, a_s1, b_s0, b_s1 = _words(info, 0, 11)
        batch_shape = _words(info, 11, batch_rank)
        a_batch = _words(info, 11 + batch_rank, batch_rank)
        b_batch = _words(info, 11 + 2 * batch_rank, batch_rank)
        a_rc = (a_s1, a_s0) if transpose_a else (a_s0, a_s1)
        b_rc = (b_s1, b_s0) if transpose_b else (b_s0, b_s1)
        lhs = _strided(a, a_off, batch_shape + (m, k), a_batch + a_rc).reshape((-1, m, k))
        rhs = _strided(b, b_off, batch_shape + (k, n), b_batch + b_rc).reshape((-1, k, n))
        with np.errstate(all="ignore"):
            result = np.matmul(lhs[base:base + count], rhs[base:base + count])
        out[base * m * n:(base + count) * m * n] = result.astype(dtype.np).reshape(-1)

    return Program(signature, bindings, render, host)


# ============================================================================
# Launchers
# ============================================================================
#
# Launchers trust their arguments: category and shape validation happens in
# wgpu_tensor before anything reaches this point.

def _dispatch(backend, program, info_words, buffers, workgroups):
    info = backend.upload_new(info_words)
    backend.dispatch(program, [info] + list(buffers), workgroups)


def launch_elementwise(backend, op, inputs, out_shape, out_buffer, out_dtype, params=()):
    """Dispatch ``op`` over ``inputs`` = [(buffer, layout, dtype), ...].

    Each input layout is broadcast to ``out_shape``; the output is written
    contiguous into ``out_buffer``.
    """
    if isinstance(op, str):
        op = get_op(op)
    n = numel(out_shape)
    if n == 0:
        return
    rank = len(out_shape)
    in_dtypes = tuple(dtype for _, _, dtype in inputs)
    program = elementwise_program(op, rank, in_dtypes, out_dtype)
    ints = [n] + [layout.offset for _, layout, _ in inputs] + list(out_shape)
    for _, layout, _ in inputs:
        ints += broadcast_strides(layout.shape, layout.strides, out_shape)
    words = pack_info(ints, np.asarray(params, dtype=np.float32) if len(params) else None)
    _dispatch(
        backend, program, words,
        [buf for buf, _, _ in inputs] + [out_buffer],
        grid(-(-n // WORKGROUP_SIZE)),
    )


def launch_fill(backend, out_buffer, count, dtype, value):
    """Write ``value`` into the first ``count`` elements of ``out_buffer``."""
    if count == 0:
        return
    program = elementwise_program(OPS["fill"], 0, (), dtype)
    words = pack_info([count], param_words([value], dtype))
    _dispatch(backend, program, words, [out_buffer], grid(-(-count // WORKGROUP_SIZE)))


def launch_copy(backend, buffer, layout, dtype, out_buffer):
    """Materialize a strided view contiguously."""
    launch_elementwise(backend, OPS["copy"], [(buffer, layout, dtype)], layout.shape, out_buffer, dtype)


def launch_reduce(backend, op, buffer, layout, dtype, axes, out_buffer):
    """Reduce ``axes`` of a strided view into a contiguous output."""
    kept = [d for d in range(layout.ndim) if d not in axes]
    kept_shape = [layout.shape[d] for d in kept]
    kept_strides = [layout.strides[d] for d in kept]
    red_shape = [layout.shape[d] for d in axes]
    red_strides = [layout.strides[d] for d in axes]
    n_out = numel(kept_shape)
    if n_out == 0:
        return
    program = reduce_program(op, len(kept), len(axes), dtype)
    ints = [n_out, numel(red_shape), layout.offset] + kept_shape + kept_strides + red_shape + red_strides
    _dispatch(backend, program, pack_info(ints), [buffer, out_buffer], grid(n_out))


def matmul_dims(a_shape, b_shape, transpose_a=False, transpose_b=False):
    """(batch_shape, m, k_a, k_b, n) of a batched product."""
    a_rows, a_cols = a_shape[-2:]
    b_rows, b_cols = b_shape[-2:]
    m, k_a = (a_cols, a_rows) if transpose_a else (a_rows, a_cols)
    k_b, n = (b_cols, b_rows) if transpose_b else (b_rows, b_cols)
    batch_shape = broadcast_shapes(a_shape[:-2], b_shape[:-2])
    return batch_shape, m, k_a, k_b, n


def launch_matmul(backend, a, a_layout, b, b_layout, out_buffer, dtype, transpose_a=False, transpose_b=False):
    """Batched ``op(A) @ op(B)`` into a contiguous ``[..., M, N]`` output."""
    batch_shape, m, k, _, n = matmul_dims(a_layout.shape, b_layout.shape, transpose_a, transpose_b)
    batch = numel(batch_shape)
    if batch * m * n == 0:
        return
    if k == 0:
        launch_fill(backend, out_buffer, batch * m * n, dtype, 0)
        return
    groups_x, groups_y = -(-n // TILE), -(-m // TILE)
    if groups_x > MAX_WORKGROUPS or groups_y > MAX_WORKGROUPS:
        raise ValidationError(f"matmul output {m}x{n} exceeds the dispatch limit")
    a_batch = broadcast_strides(a_layout.shape[:-2], a_layout.strides[:-2], batch_shape)
    b_batch = broadcast_strides(b_layout.shape[:-2], b_layout.strides[:-2], batch_shape)
    program = matmul_program(dtype, len(batch_shape), transpose_a, transpose_b)
    for base in range(0, batch, MAX_WORKGROUPS):
        count = min(MAX_WORKGROUPS, batch - base)
        ints = [m, k, n, base, count, a_layout.offset, b_layout.offset]
        ints += list(a_layout.strides[-2:]) + list(b_layout.strides[-2:])
        ints += list(batch_shape) + list(a_batch) + list(b_batch)
        _dispatch(backend, program, pack_info(ints), [a, b, out_buffer], (groups_x, groups_y, count))
