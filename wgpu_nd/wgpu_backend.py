"""Compute backend interface, buffer lifetime tracking and the default backend.

A backend owns one device, one in-order submission queue and one pipeline
cache. Host calls only enqueue work; ``read`` and ``synchronize`` are the
blocking points.

Buffers are never freed while a submitted dispatch still references them.
Each submission records the allocations it touches; releasing such an
allocation only marks it, and the free happens when the device reports the
submission complete.
"""

import abc
import atexit
import contextlib
import logging
import sys
import threading
import weakref
from collections import deque
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from wgpu_nd.wgpu_allocator import BufferPool, round_size
from wgpu_nd.wgpu_cache import PipelineCache
from wgpu_nd.wgpu_config import Config, get_config
from wgpu_nd.wgpu_errors import (
    DeviceError, DeviceLostError, OutOfMemoryError, ProgramBuildError, ValidationError, WgpuNdError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Buffers
# ============================================================================

class Allocation:
    """Raw device memory plus its in-flight bookkeeping."""

    __slots__ = ("handle", "nbytes", "capacity", "in_flight", "released", "freed")

    def __init__(self, handle, nbytes, capacity):
        self.handle = handle
        self.nbytes = nbytes
        self.capacity = capacity
        self.in_flight = 0
        self.released = False
        self.freed = False

    def __repr__(self):
        return (f"Allocation(nbytes={self.nbytes}, capacity={self.capacity}, "
                f"in_flight={self.in_flight}, released={self.released}, freed={self.freed})")


class DeviceBuffer:
    """Device memory shared by a tensor and all of its views.

    Dropping the last reference releases the allocation back to its backend,
    which defers the actual free until pending dispatches complete.
    """

    def __init__(self, backend: "Backend", alloc: Allocation):
        self.backend = backend
        self.alloc = alloc
        self._finalizer = weakref.finalize(self, backend.release, alloc)

    @property
    def nbytes(self) -> int:
        return self.alloc.nbytes

    @property
    def handle(self):
        return self.alloc.handle

    def release(self) -> None:
        """Release now instead of waiting for garbage collection."""
        self._finalizer()

    def __repr__(self):
        return f"DeviceBuffer({self.backend.name}, nbytes={self.nbytes})"


class _Submission:
    __slots__ = ("serial", "allocs", "token")

    def __init__(self, serial, allocs, token):
        self.serial = serial
        self.allocs = allocs
        self.token = token


# ============================================================================
# Backend interface
# ============================================================================

class Backend(abc.ABC):
    """Uniform device / queue / buffer interface.

    Subclasses implement the raw ``_create_raw`` / ``_destroy_raw`` /
    ``_write_raw`` / ``_build`` / ``_submit`` / ``_read_raw`` / ``_wait_idle``
    primitives; ordering and lifetime rules live here.
    """

    name = "base"
    # False where the host may never block on the queue (browser).
    blocking = True

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.cache = PipelineCache(self.config.pipeline_cache_size)
        self.pool = BufferPool(self.config.pool_bytes, self._destroy_raw)
        self._lock = threading.RLock()
        self._serial = 0
        self._pending: "deque[_Submission]" = deque()
        self._deferred_bytes = 0
        self._lost: Optional[str] = None
        self._closed = False
        self.stats = {"allocations": 0, "frees": 0, "deferred": 0, "dispatches": 0, "uploads": 0}

    # ---- primitives ----
    @abc.abstractmethod
    def _create_raw(self, size: int):
        """Allocate ``size`` bytes of zeroed device memory."""

    @abc.abstractmethod
    def _destroy_raw(self, handle) -> None:
        pass

    @abc.abstractmethod
    def _write_raw(self, handle, offset: int, data: bytes):
        """Enqueue a host-to-device copy; returns a completion token."""

    @abc.abstractmethod
    def _build(self, program):
        """Compile ``program`` into a dispatchable pipeline."""

    @abc.abstractmethod
    def _submit(self, pipeline, program, allocs: Sequence[Allocation], workgroups):
        """Enqueue a dispatch; returns a completion token."""

    @abc.abstractmethod
    def _read_raw(self, handle, offset: int, nbytes: int) -> bytes:
        """Blocking device-to-host copy ordered after all prior submissions."""

    @abc.abstractmethod
    def _wait_idle(self) -> None:
        """Block until every submitted command has completed."""

    def _token_done(self, token) -> bool:
        """Non-blocking completion check; False when unknown."""
        return False

    def _translate_error(self, exc: Exception) -> Optional[DeviceError]:
        """Map a backend-specific exception to a DeviceError, or None."""
        if isinstance(exc, MemoryError):
            return OutOfMemoryError(str(exc) or "out of memory")
        return None

    # ---- error handling ----
    @contextlib.contextmanager
    def _device_errors(self, what):
        try:
            yield
        except WgpuNdError:
            raise
        except Exception as e:
            err = self._translate_error(e)
            if err is None:
                err = DeviceError(f"{what}: {type(e).__name__}: {e}")
            if isinstance(err, DeviceLostError):
                self.mark_lost(str(err))
            logger.error("%s failed on %s backend: %s", what, self.name, err)
            raise err from e

    def mark_lost(self, reason: str) -> None:
        """Record device loss; every later call raises DeviceLostError."""
        if self._lost is None:
            logger.error("%s device lost: %s", self.name, reason)
            self._lost = reason

    @property
    def is_lost(self) -> bool:
        return self._lost is not None

    def _check_alive(self) -> None:
        if self._lost is not None:
            raise DeviceLostError(f"{self.name} device lost: {self._lost}")
        if self._closed:
            raise DeviceError(f"{self.name} backend is closed")

    # ---- buffers ----
    def allocate(self, nbytes: int) -> DeviceBuffer:
        """Allocate a device buffer of at least ``nbytes`` bytes."""
        self._check_alive()
        size = round_size(nbytes)
        pooled = self.pool.take(size)
        if pooled is not None:
            handle, capacity = pooled
        else:
            with self._device_errors("allocate"):
                handle = self._create_raw(size)
            capacity = size
        self.stats["allocations"] += 1
        logger.debug("allocated %d bytes (capacity %d)", nbytes, capacity)
        return DeviceBuffer(self, Allocation(handle, nbytes, capacity))

    def upload(self, buffer: DeviceBuffer, data, offset: int = 0) -> None:
        """Enqueue a copy of host ``data`` into ``buffer`` at byte ``offset``."""
        self._check_alive()
        payload = np.ascontiguousarray(data).tobytes()
        if offset + len(payload) > buffer.alloc.capacity:
            raise ValidationError(
                f"upload of {len(payload)} bytes at offset {offset} exceeds buffer of {buffer.alloc.capacity} bytes"
            )
        if not payload:
            return
        with self._lock:
            with self._device_errors("upload"):
                token = self._write_raw(buffer.handle, offset, payload)
            self._track([buffer.alloc], token)
            self.stats["uploads"] += 1

    def upload_new(self, data) -> DeviceBuffer:
        """Allocate a buffer sized for ``data`` and upload it."""
        data = np.ascontiguousarray(data)
        buffer = self.allocate(data.nbytes)
        self.upload(buffer, data)
        return buffer

    def release(self, alloc: Allocation) -> None:
        """Drop the owner's claim on ``alloc``; frees once no dispatch uses it."""
        with self._lock:
            if alloc.released:
                return
            alloc.released = True
            if alloc.in_flight == 0:
                self._free(alloc)
            else:
                self._deferred_bytes += alloc.capacity
                self.stats["deferred"] += 1
        self.collect()

    def _free(self, alloc: Allocation) -> None:
        alloc.freed = True
        self.stats["frees"] += 1
        if self._closed or self._lost is not None:
            return
        self.pool.give(alloc.handle, alloc.capacity)

    # ---- programs ----
    def resolve(self, program):
        """Compiled pipeline for ``program``, built at most once per signature."""
        return self.cache.resolve(program.signature, lambda: self._build_program(program))

    def _build_program(self, program):
        try:
            return self._build(program)
        except WgpuNdError:
            raise
        except Exception as e:
            err = self._translate_error(e)
            if isinstance(err, (OutOfMemoryError, DeviceLostError)):
                if isinstance(err, DeviceLostError):
                    self.mark_lost(str(err))
                raise err from e
            raise ProgramBuildError(program.label, e) from e

    def dispatch(self, program, buffers: Sequence[DeviceBuffer], workgroups) -> None:
        """Enqueue ``program`` over ``buffers`` (in binding order)."""
        self._check_alive()
        if len(buffers) != len(program.bindings):
            raise ValidationError(
                f"{program.label} expects {len(program.bindings)} buffers, got {len(buffers)}"
            )
        pipeline = self.resolve(program)
        allocs = [b.alloc for b in buffers]
        with self._lock:
            with self._device_errors(program.label):
                token = self._submit(pipeline, program, allocs, workgroups)
            self._track(allocs, token)
            self.stats["dispatches"] += 1
        if self.blocking and self._deferred_bytes > max(self.pool.max_bytes, 1 << 20):
            self.synchronize()

    # ---- completion ----
    def _track(self, allocs, token) -> None:
        self._serial += 1
        for a in allocs:
            a.in_flight += 1
        self._pending.append(_Submission(self._serial, list(allocs), token))

    def _retire(self, upto: int) -> None:
        while self._pending and self._pending[0].serial <= upto:
            self._retire_one(self._pending.popleft())

    def _retire_one(self, sub: _Submission) -> None:
        for a in sub.allocs:
            a.in_flight -= 1
            if a.in_flight == 0 and a.released and not a.freed:
                self._deferred_bytes -= a.capacity
                self._free(a)

    def collect(self) -> None:
        """Retire submissions the device already reports as complete."""
        with self._lock:
            while self._pending and self._token_done(self._pending[0].token):
                self._retire_one(self._pending.popleft())

    def synchronize(self) -> None:
        """Block until all submitted work completes, then free deferred buffers."""
        self._check_alive()
        with self._lock:
            upto = self._serial
        with self._device_errors("synchronize"):
            self._wait_idle()
        with self._lock:
            self._retire(upto)

    async def synchronize_async(self) -> None:
        self.synchronize()

    @property
    def pending_submissions(self) -> int:
        return len(self._pending)

    # ---- read-back ----
    def read(self, buffer: DeviceBuffer, nbytes: Optional[int] = None, offset: int = 0) -> bytes:
        """Blocking read of ``nbytes`` bytes at byte ``offset``."""
        self._check_alive()
        nbytes = buffer.nbytes - offset if nbytes is None else nbytes
        if offset + nbytes > buffer.alloc.capacity:
            raise ValidationError(f"read of {nbytes} bytes at {offset} exceeds buffer of {buffer.alloc.capacity}")
        if nbytes == 0:
            return b""
        with self._lock:
            upto = self._serial
        with self._device_errors("read"):
            data = self._read_raw(buffer.handle, offset, nbytes)
        with self._lock:
            self._retire(upto)
        return data

    async def read_async(self, buffer: DeviceBuffer, nbytes: Optional[int] = None, offset: int = 0) -> bytes:
        return self.read(buffer, nbytes, offset)

    # ---- teardown ----
    def close(self) -> None:
        """Wait for the queue, drop pooled buffers and cached pipelines."""
        if self._closed:
            return
        if self._lost is None:
            try:
                self.synchronize()
            except DeviceError as e:
                logger.warning("error while closing %s backend: %s", self.name, e)
        self._closed = True
        self.pool.drain()
        self.cache.clear()

    def __repr__(self):
        return f"<{type(self).__name__} pipelines={len(self.cache)} pending={len(self._pending)}>"


# ============================================================================
# Registry & default backend
# ============================================================================

_factories: Dict[str, Callable[[Config], Backend]] = {}
_default: Optional[Backend] = None
_default_lock = threading.Lock()


def register_backend(name: str, factory: Callable[[Config], Backend]) -> None:
    """Register a factory taking a Config and returning a Backend."""
    _factories[name] = factory


def available_backends() -> List[str]:
    return sorted(_factories)


def create_backend(name: Optional[str] = None, config: Optional[Config] = None) -> Backend:
    """Create a backend by name; ``auto`` prefers a real adapter over the host."""
    config = config or get_config()
    name = name or config.backend
    if name == "auto":
        preferred = "browser" if sys.platform == "emscripten" else "native"
        try:
            return create_backend(preferred, config)
        except DeviceError as e:
            logger.warning("%s backend unavailable (%s); falling back to host backend", preferred, e)
            return create_backend("host", config)
    try:
        factory = _factories[name]
    except KeyError:
        raise ValidationError(f"unknown backend {name!r}; available: {available_backends()}") from None
    backend = factory(config)
    logger.info("created %s backend", backend.name)
    return backend


def get_backend() -> Backend:
    """Process-wide default backend, created from the config on first use."""
    global _default
    if _default is None:
        with _default_lock:
            if _default is None:
                _default = create_backend()
    return _default


def set_backend(backend: Optional[Backend]) -> Optional[Backend]:
    """Install ``backend`` as the default; returns the previous one."""
    global _default
    with _default_lock:
        previous, _default = _default, backend
    return previous


@contextlib.contextmanager
def use_backend(backend: Backend):
    """Temporarily make ``backend`` the default."""
    previous = set_backend(backend)
    try:
        yield backend
    finally:
        set_backend(previous)


def _cleanup():
    """Release the default backend's device on exit."""
    if _default is not None:
        try:
            _default.close()
        except Exception as e:  # interpreter teardown; report and move on
            logger.debug("cleanup failed: %s", e)


atexit.register(_cleanup)
