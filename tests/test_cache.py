import threading
import time

import pytest

from wgpu_nd.wgpu_cache import OpSignature, PipelineCache
from wgpu_nd.wgpu_errors import DeviceError, ProgramBuildError

ADD = OpSignature("add", ("float32", "float32", "float32"), ("elementwise", 2, 2))
MUL = OpSignature("mul", ("float32", "float32", "float32"), ("elementwise", 2, 2))


def test_hit_after_miss():
    cache = PipelineCache()
    assert cache.resolve(ADD, lambda: "pipeline") == "pipeline"
    assert cache.resolve(ADD, lambda: pytest.fail("rebuilt")) == "pipeline"
    assert (cache.misses, cache.hits, cache.builds) == (1, 1, 1)
    assert ADD in cache
    assert len(cache) == 1


def test_signature_equality():
    same = OpSignature("add", ("float32", "float32", "float32"), ("elementwise", 2, 2))
    assert same == ADD and hash(same) == hash(ADD)
    assert OpSignature("add", ADD.dtypes, ("elementwise", 3, 2)) != ADD
    assert ADD.label == "add[float32,float32,float32]"


def test_concurrent_misses_build_once():
    cache = PipelineCache()
    n = 16
    barrier = threading.Barrier(n)
    gate = threading.Event()
    builds = []
    results = [None] * n

    def build():
        builds.append(1)
        gate.wait(5)
        return object()

    def worker(i):
        barrier.wait()
        results[i] = cache.resolve(ADD, build)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    time.sleep(0.05)
    gate.set()
    for t in threads:
        t.join(5)

    assert len(builds) == 1
    assert cache.builds == 1
    assert all(r is results[0] for r in results)
    assert results[0] is not None


def test_failed_build_reaches_every_waiter_and_retries():
    cache = PipelineCache()
    gate = threading.Event()
    errors = []

    def failing():
        gate.wait(5)
        raise ValueError("bad shader")

    def worker():
        try:
            cache.resolve(ADD, failing)
        except ProgramBuildError as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    time.sleep(0.05)
    gate.set()
    for t in threads:
        t.join(5)

    assert len(errors) == 4
    assert "bad shader" in str(errors[0])
    assert ADD not in cache
    assert cache.resolve(ADD, lambda: "fixed") == "fixed"


def test_device_errors_pass_through():
    cache = PipelineCache()

    def lost():
        raise DeviceError("device lost")

    with pytest.raises(DeviceError) as exc:
        cache.resolve(ADD, lost)
    assert not isinstance(exc.value, ProgramBuildError)


def test_none_handle_is_a_build_failure():
    with pytest.raises(ProgramBuildError):
        PipelineCache().resolve(ADD, lambda: None)


def test_unrelated_signatures_do_not_wait():
    cache = PipelineCache()
    gate = threading.Event()
    t = threading.Thread(target=cache.resolve, args=(ADD, lambda: gate.wait(5) and "add"))
    t.start()
    time.sleep(0.02)
    try:
        start = time.monotonic()
        assert cache.resolve(MUL, lambda: "mul") == "mul"
        assert time.monotonic() - start < 1.0
    finally:
        gate.set()
        t.join(5)
    assert cache.get(ADD) == "add"


def test_lru_eviction():
    cache = PipelineCache(max_entries=2)
    sigs = [OpSignature(f"op{i}") for i in range(3)]
    cache.resolve(sigs[0], lambda: 0)
    cache.resolve(sigs[1], lambda: 1)
    cache.resolve(sigs[0], lambda: pytest.fail("rebuilt"))
    cache.resolve(sigs[2], lambda: 2)
    assert sigs[0] in cache
    assert sigs[1] not in cache
    assert len(cache) == 2


def test_interrupted_build_releases_signature():
    cache = PipelineCache()

    def build():
        raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        cache.resolve(ADD, build)
    assert ADD not in cache

    results = []
    t = threading.Thread(target=lambda: results.append(cache.resolve(ADD, lambda: "pipeline")))
    t.start()
    t.join(5)
    assert not t.is_alive()
    assert results == ["pipeline"]
