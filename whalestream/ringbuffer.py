"""Fixed-capacity single-producer/single-consumer ring buffer."""

from __future__ import annotations

import threading
from typing import Generic, Sequence, TypeVar

T = TypeVar("T")


class RingBuffer(Generic[T]):
    """Ring buffer with monotonically growing head and tail positions.

    The producer pushes batches while the consumer pops them or advances the
    tail itself after reading with :meth:`read`.
    """

    def __init__(self, capacity: int, fill: T | None = None) -> None:
        if capacity <= 0 or capacity & (capacity - 1):
            raise ValueError("capacity must be a power of 2")
        self._capacity = capacity
        self._mask = capacity - 1
        self._high_water = capacity * 9 // 10
        self._buffer: list = [fill] * capacity
        self._head = 0
        self._tail = 0
        self._lock = threading.Lock()

    def read(self, index: int) -> T:
        """Return the item stored at absolute position ``index``."""
        return self._buffer[index & self._mask]

    def can_write(self, count: int) -> bool:
        """True if ``count`` more items keep usage within 90% of capacity."""
        with self._lock:
            used = self._head - self._tail
        return used + count <= self._high_water

    def push_batch(self, items: Sequence[T]) -> None:
        """Append ``items`` at the head, wrapping around the end."""
        items = list(items)
        count = len(items)
        if count > self._capacity:
            raise ValueError("batch larger than buffer capacity")
        with self._lock:
            head = self._head
        write_pos = head & self._mask
        first = min(count, self._capacity - write_pos)
        self._buffer[write_pos:write_pos + first] = items[:first]
        if first < count:
            self._buffer[:count - first] = items[first:]
        with self._lock:
            self._head = head + count

    def pop_batch(self, max_count: int) -> list[T]:
        """Remove and return up to ``max_count`` items from the tail."""
        with self._lock:
            head, tail = self._head, self._tail
        to_read = min(head - tail, max_count)
        if to_read <= 0:
            return []
        start = tail & self._mask
        first = min(to_read, self._capacity - start)
        out = self._buffer[start:start + first]
        if first < to_read:
            out.extend(self._buffer[:to_read - first])
        with self._lock:
            self._tail = tail + to_read
        return out

    def update_tail(self, reader_index: int) -> None:
        """Move the tail to ``reader_index``, releasing space to the producer."""
        with self._lock:
            self._tail = reader_index

    @property
    def head(self) -> int:
        """Absolute position of the next write."""
        with self._lock:
            return self._head

    @property
    def tail(self) -> int:
        """Absolute position of the next read."""
        with self._lock:
            return self._tail

    @property
    def capacity(self) -> int:
        """Number of slots in the buffer."""
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return self._head - self._tail