"""Buffer pool with best-fit reuse.

Sizes are rounded up to 256 bytes. Released buffers are kept per size and
handed back to the smallest request that fits, until the pool exceeds its
byte budget; past that, released buffers are destroyed.
"""

import bisect
import logging
import threading
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

MIN_BUFFER_SIZE = 0x100


def round_size(nbytes: int) -> int:
    """Allocation size for a request: a positive multiple of 256 bytes."""
    return max(1, -(-nbytes // MIN_BUFFER_SIZE)) * MIN_BUFFER_SIZE


class BufferPool:
    """Best-fit pool of raw device buffers grouped by rounded size."""

    def __init__(self, max_bytes: int, destroy: Callable[[object], None]):
        self.max_bytes = max_bytes
        self._destroy = destroy
        self._free: Dict[int, List[object]] = {}
        self._sizes: List[int] = []
        self._lock = threading.Lock()
        self.reserved = 0
        self.reused = 0

    def take(self, size: int):
        """Pop a pooled buffer of at least ``size`` bytes, or None.

        Returns ``(handle, capacity)``.
        """
        with self._lock:
            i = bisect.bisect_left(self._sizes, size)
            # Larger than 2x the request wastes too much; allocate fresh instead.
            if i == len(self._sizes) or self._sizes[i] > 2 * size:
                return None
            capacity = self._sizes[i]
            bucket = self._free[capacity]
            handle = bucket.pop()
            if not bucket:
                del self._free[capacity]
                self._sizes.pop(i)
            self.reserved -= capacity
            self.reused += 1
            return handle, capacity

    def give(self, handle, capacity: int) -> None:
        """Return a buffer to the pool, destroying it if over budget."""
        with self._lock:
            if self.reserved + capacity <= self.max_bytes:
                bucket = self._free.get(capacity)
                if bucket is None:
                    bucket = self._free[capacity] = []
                    bisect.insort(self._sizes, capacity)
                bucket.append(handle)
                self.reserved += capacity
                return
        logger.debug("buffer pool full (%d bytes), destroying %d byte buffer", self.reserved, capacity)
        self._destroy(handle)

    def drain(self) -> None:
        """Destroy every pooled buffer."""
        with self._lock:
            handles = [h for bucket in self._free.values() for h in bucket]
            self._free.clear()
            self._sizes.clear()
            self.reserved = 0
        for handle in handles:
            self._destroy(handle)

    def __len__(self):
        with self._lock:
            return sum(len(b) for b in self._free.values())
