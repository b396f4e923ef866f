"""Pipeline cache keyed on operation signature.

A signature names everything that changes the generated program: the
operation, its operand kinds, the shape class and structural flags such as
transposes. Sizes, strides and scalar parameters are data and stay out of it.

Installed entries are read without locking. A miss installs an in-flight
marker under a short lock and builds outside it, so concurrent misses on the
same signature collapse into one build while unrelated signatures build in
parallel.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from wgpu_nd.wgpu_errors import DeviceError, ProgramBuildError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpSignature:
    """Key of one compiled program."""

    op: str
    dtypes: Tuple = ()
    shape_class: Tuple = ()
    params: Tuple = ()

    @property
    def label(self) -> str:
        kinds = ",".join(str(d) for d in self.dtypes)
        return f"{self.op}[{kinds}]"


class _InFlight:
    """Marker for a build in progress; waiters block on ``done``."""

    __slots__ = ("done", "handle", "error")

    def __init__(self):
        self.done = threading.Event()
        self.handle = None
        self.error = None


class PipelineCache:
    """Thread-safe signature -> program handle map with single-build misses.

    ``max_entries`` of 0 or None leaves the cache unbounded; otherwise the
    least recently used entry is evicted on insert.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries or None
        self._entries: "OrderedDict[OpSignature, Any]" = OrderedDict()
        self._building = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        self.builds = 0

    def resolve(self, signature: OpSignature, build: Callable[[], Any]) -> Any:
        """Return the program for ``signature``, building it on first use."""
        handle = self._entries.get(signature)
        if handle is not None:
            self.hits += 1
            if self.max_entries is not None:
                with self._lock:
                    if signature in self._entries:
                        self._entries.move_to_end(signature)
            return handle

        with self._lock:
            handle = self._entries.get(signature)
            if handle is not None:
                self.hits += 1
                return handle
            pending = self._building.get(signature)
            owner = pending is None
            if owner:
                pending = _InFlight()
                self._building[signature] = pending
                self.misses += 1

        if not owner:
            pending.done.wait()
            if pending.error is not None:
                raise pending.error
            self.hits += 1
            return pending.handle

        try:
            logger.debug("building pipeline %s %s", signature.label, signature.shape_class)
            handle = build()
            if handle is None:
                raise ProgramBuildError(signature.label, "builder returned no program")
        except Exception as e:
            error = e if isinstance(e, DeviceError) else ProgramBuildError(signature.label, e)
            with self._lock:
                del self._building[signature]
            pending.error = error
            pending.done.set()
            if error is e:
                raise
            raise error from e
        except BaseException:
            # Interrupted build: later callers rebuild, current waiters fail.
            with self._lock:
                del self._building[signature]
            pending.error = ProgramBuildError(signature.label, "build interrupted")
            pending.done.set()
            raise

        with self._lock:
            self.builds += 1
            self._entries[signature] = handle
            del self._building[signature]
            if self.max_entries is not None:
                while len(self._entries) > self.max_entries:
                    evicted, _ = self._entries.popitem(last=False)
                    logger.debug("evicted pipeline %s", evicted.label)
        pending.handle = handle
        pending.done.set()
        return handle

    def get(self, signature: OpSignature) -> Any:
        return self._entries.get(signature)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, signature) -> bool:
        return signature in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self):
        return f"PipelineCache(len={len(self)}, hits={self.hits}, misses={self.misses}, builds={self.builds})"
