"""
Bounded rolling store of raw ticks.

Fixed capacity, drop-oldest on overflow. Written by the feed, read and pruned
by the aggregator. All methods are synchronous so they never interleave on the
event loop.
"""

from collections import deque
from typing import Deque, Iterator, List, Optional

from .data_types import Tick


class TickBuffer:
    """
    Append-only ring of ticks in arrival order.

    Example:
        >>> buf = TickBuffer(capacity=3)
        >>> for t in ticks:
        ...     buf.append(t)
        >>> recent = buf.snapshot_since(now_ms - 60_000)
    """

    def __init__(self, capacity: int = 1000):
        if capacity <= 0:
            raise ValueError("Capacity must be positive")
        self._capacity = capacity
        self._ticks: Deque[Tick] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, tick: Tick) -> None:
        """Insert a tick; the oldest one is discarded once full."""
        self._ticks.append(tick)

    def snapshot_since(self, cutoff_ms: int) -> List[Tick]:
        """Copy of ticks observed at or after cutoff_ms, insertion order. Buffer is untouched."""
        return [t for t in self._ticks if t.timestamp_ms >= cutoff_ms]

    def prune_before(self, cutoff_ms: int) -> int:
        """
        Remove ticks observed before cutoff_ms.

        Returns:
            Number of ticks removed
        """
        before = len(self._ticks)
        kept = [t for t in self._ticks if t.timestamp_ms >= cutoff_ms]
        if len(kept) != before:
            self._ticks = deque(kept, maxlen=self._capacity)
        return before - len(kept)

    def newest(self) -> Optional[Tick]:
        """Most recently appended tick, or None if empty."""
        return self._ticks[-1] if self._ticks else None

    def __len__(self) -> int:
        return len(self._ticks)

    def __iter__(self) -> Iterator[Tick]:
        return iter(list(self._ticks))
