import threading

import numpy as np
import pytest

import wgpu_nd as nd
from wgpu_nd import wgpu_kernels as kernels
from wgpu_nd.wgpu_dtypes import DType
from wgpu_nd.wgpu_errors import ValidationError


def test_grid_folds_into_y():
    assert kernels.grid(1) == (1, 1, 1)
    assert kernels.grid(0) == (1, 1, 1)
    assert kernels.grid(65535) == (65535, 1, 1)
    assert kernels.grid(65536) == (65535, 2, 1)
    with pytest.raises(ValidationError):
        kernels.grid(65535 * 65535 + 1)


def test_pack_info():
    words = kernels.pack_info([3, -1], np.array([1.5], np.float32))
    assert words.dtype == np.int32
    assert words[:2].tolist() == [3, -1]
    assert words[2:].view(np.float32).tolist() == [1.5]
    assert kernels.pack_info([]).size == 1
    with pytest.raises(ValidationError, match="32-bit"):
        kernels.pack_info([2 ** 31])


def test_param_words():
    assert kernels.param_words([-1], DType.UINT32).view(np.uint32).tolist() == [2 ** 32 - 1]
    assert kernels.param_words([True], DType.BOOL).tolist() == [1]
    assert kernels.param_words([0.5], DType.FLOAT32).view(np.float32).tolist() == [0.5]


def test_elementwise_wgsl():
    program = kernels.elementwise_program(kernels.OPS["add"], 3, (DType.FLOAT32, DType.FLOAT32), DType.FLOAT32)
    source = program.wgsl()
    assert "@workgroup_size(256)" in source
    assert "const RANK: u32 = 3u;" in source
    assert "out[idx] = a + b;" in source
    assert [b.access for b in program.bindings] == ["read", "read", "read", "read_write"]
    assert program.bindings[0].name == "info"


def test_every_op_renders_for_its_kinds():
    for op in kernels.OPS.values():
        kinds = [d for d in DType if op.category is None or d.categories & op.category]
        for dtype in kinds:
            in_dtypes = (dtype,) * op.arity
            if op.name == "select":
                in_dtypes = (DType.BOOL, dtype, dtype)
            program = kernels.elementwise_program(op, 2, in_dtypes, op.result_dtype(dtype))
            source = program.wgsl()
            assert "fn main" in source, f"{op.name} {dtype}"
            assert "{" not in source.split("out[idx] = ")[1].split(";")[0], f"{op.name} {dtype}"


def test_signature_is_shape_independent():
    op = kernels.OPS["mul"]
    a = kernels.elementwise_program(op, 2, (DType.INT32, DType.INT32), DType.INT32)
    b = kernels.elementwise_program(op, 2, (DType.INT32, DType.INT32), DType.INT32)
    c = kernels.elementwise_program(op, 3, (DType.INT32, DType.INT32), DType.INT32)
    assert a.signature == b.signature
    assert a.signature != c.signature


def test_reduce_wgsl():
    source = kernels.reduce_program("sum", 1, 2, DType.FLOAT32).wgsl()
    assert "var<workgroup> scratch: array<f32, 256>;" in source
    assert "var comp" in source
    assert "workgroupBarrier();" in source
    assert "var comp" not in kernels.reduce_program("max", 1, 1, DType.INT32).wgsl()
    assert "/ u32(count)" in kernels.reduce_program("mean", 0, 1, DType.UINT32).wgsl()
    with pytest.raises(ValidationError):
        kernels.reduce_program("prod", 1, 1, DType.FLOAT32)


def test_matmul_signature_carries_transpose_flags():
    plain = kernels.matmul_program(DType.FLOAT32, 0, False, False)
    flagged = kernels.matmul_program(DType.FLOAT32, 0, False, True)
    assert plain.signature != flagged.signature
    assert "const TRANSPOSE_B: bool = true;" in flagged.wgsl()
    assert "@workgroup_size(16, 16)" in plain.wgsl()


def test_one_build_per_signature(backend):
    a = nd.ones((3, 4))
    b = nd.ones((7, 2))
    nd.add(a, a)
    builds = backend.cache.builds
    nd.add(b, b)
    nd.add(a, nd.ones((1, 4)))
    assert backend.cache.builds == builds
    nd.add(nd.ones((2, 2, 2)), nd.ones((2, 2, 2)))
    assert backend.cache.builds == builds + 1


def test_concurrent_ops_build_once(host):
    x = nd.full((4, 4), "float32", 2.0)
    builds = host.cache.builds
    results = []

    def worker():
        results.append(nd.sub(x, x).numpy())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert host.cache.builds == builds + 1
    assert len(results) == 8 and all(not r.any() for r in results)


def test_extreme_reductions_seed_from_data():
    source = kernels.reduce_program("max", 0, 1, DType.FLOAT32).wgsl()
    assert "var acc = x[u32(base + reduced_offset(0u))];" in source
    assert "e+38" not in source


def test_integer_division_guards_zero_divisor():
    div, rem = kernels.OPS["div"], kernels.OPS["rem"]
    assert div.expr_for(DType.INT32) == "select(a / b, a, b == 0i)"
    assert rem.expr_for(DType.UINT32) == "select(a % b, 0u, b == 0u)"
    assert div.expr_for(DType.FLOAT32) == "a / b"
