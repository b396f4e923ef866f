"""Host backend: numpy storage and a single in-order worker thread.

Runs the host rendering of every kernel program with the same buffers,
metadata and ordering contract as a device backend. Used when no wgpu
adapter is present and to test the engine on machines without a GPU.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np

from wgpu_nd.wgpu_backend import Backend, register_backend
from wgpu_nd.wgpu_errors import DeviceLostError, OutOfMemoryError, ProgramBuildError

logger = logging.getLogger(__name__)


class HostBackend(Backend):
    """Backend whose device memory is numpy and whose queue is one worker.

    Args:
        config: Config, defaults to the process config.
        memory_limit: optional cap on live device bytes; exceeding it raises
            OutOfMemoryError like a real device would.
    """

    name = "host"

    def __init__(self, config=None, memory_limit=None):
        super().__init__(config)
        self.memory_limit = memory_limit
        self._live_bytes = 0
        self._bytes_lock = threading.Lock()
        self._fault = None
        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wgpu_nd-host")

    # ---- memory ----
    def _create_raw(self, size):
        with self._bytes_lock:
            if self.memory_limit is not None and self._live_bytes + size > self.memory_limit:
                raise OutOfMemoryError(
                    f"cannot allocate {size} bytes: {self._live_bytes} of {self.memory_limit} in use"
                )
            self._live_bytes += size
        try:
            return np.zeros(size, dtype=np.uint8)
        except MemoryError:
            with self._bytes_lock:
                self._live_bytes -= size
            raise

    def _destroy_raw(self, handle):
        with self._bytes_lock:
            self._live_bytes -= handle.nbytes

    @property
    def live_bytes(self):
        return self._live_bytes

    # ---- queue ----
    def _enqueue(self, fn):
        return self._queue.submit(self._guarded, fn)

    def _guarded(self, fn):
        if self._fault is not None:
            return
        try:
            fn()
        except Exception as e:  # surfaces as DeviceLostError at the next sync point
            self._fault = e
            self.mark_lost(f"dispatch failed: {e}")

    def _raise_fault(self):
        if self._fault is not None:
            raise DeviceLostError(f"host dispatch failed: {self._fault}") from self._fault

    def _write_raw(self, handle, offset, data):
        payload = np.frombuffer(data, dtype=np.uint8).copy()

        def write():
            handle[offset:offset + payload.nbytes] = payload

        return self._enqueue(write)

    def _build(self, program):
        if program.host is None:
            raise ProgramBuildError(program.label, "no host rendering")
        return program.host

    def _submit(self, pipeline, program, allocs, workgroups):
        handles = [a.handle for a in allocs]
        kinds = [binding.storage for binding in program.bindings]

        def run():
            pipeline([h.view(k) for h, k in zip(handles, kinds)])

        return self._enqueue(run)

    def _read_raw(self, handle, offset, nbytes):
        data = self._queue.submit(lambda: handle[offset:offset + nbytes].tobytes()).result()
        self._raise_fault()
        return data

    def _wait_idle(self):
        self._queue.submit(lambda: None).result()
        self._raise_fault()

    def _token_done(self, token):
        return token.done()

    def close(self):
        super().close()
        self._queue.shutdown(wait=True)


register_backend("host", lambda config: HostBackend(config))
