"""
Tests for the bounded tick buffer.
"""

import pytest

from socketmetrics.engine import TickBuffer

BASE_MS = 1_700_000_000_000


class TestTickBufferCapacity:
    """Capacity and overflow behavior."""

    def test_rejects_non_positive_capacity(self):
        """Zero capacity is a configuration error."""
        with pytest.raises(ValueError):
            TickBuffer(capacity=0)

    def test_size_never_exceeds_capacity(self, make_tick):
        """Appending past capacity keeps size pinned at capacity."""
        buf = TickBuffer(capacity=5)
        for i in range(12):
            buf.append(make_tick(price=float(i), timestamp_ms=BASE_MS + i))
            assert len(buf) <= 5

        assert len(buf) == 5

    def test_overflow_keeps_most_recent_oldest_first(self, make_tick):
        """After overflow the retained ticks are the newest C, in arrival order."""
        buf = TickBuffer(capacity=3)
        for i in range(6):
            buf.append(make_tick(price=float(i), timestamp_ms=BASE_MS + i))

        assert [t.price for t in buf] == [3.0, 4.0, 5.0]
        assert buf.newest().price == 5.0


class TestTickBufferWindows:
    """Snapshot and prune."""

    def test_snapshot_is_inclusive_and_non_destructive(self, make_tick):
        """Ticks at exactly the cutoff are included; buffer size is unchanged."""
        buf = TickBuffer(capacity=10)
        for offset in (0, 10, 20, 30):
            buf.append(make_tick(timestamp_ms=BASE_MS + offset))

        recent = buf.snapshot_since(BASE_MS + 10)

        assert [t.timestamp_ms - BASE_MS for t in recent] == [10, 20, 30]
        assert len(buf) == 4

    def test_snapshot_preserves_insertion_order(self, make_tick):
        """Out-of-order timestamps come back in arrival order, not sorted."""
        buf = TickBuffer(capacity=10)
        buf.append(make_tick(price=1.0, timestamp_ms=BASE_MS + 50))
        buf.append(make_tick(price=2.0, timestamp_ms=BASE_MS + 20))
        buf.append(make_tick(price=3.0, timestamp_ms=BASE_MS + 40))

        assert [t.price for t in buf.snapshot_since(BASE_MS)] == [1.0, 2.0, 3.0]

    def test_prune_before_removes_only_older(self, make_tick):
        """prune_before drops strictly older ticks and reports how many."""
        buf = TickBuffer(capacity=10)
        for offset in (0, 10, 20, 30):
            buf.append(make_tick(timestamp_ms=BASE_MS + offset))

        removed = buf.prune_before(BASE_MS + 20)

        assert removed == 2
        assert [t.timestamp_ms - BASE_MS for t in buf] == [20, 30]

    def test_prune_keeps_capacity(self, make_tick):
        """A pruned buffer still drops oldest at the original capacity."""
        buf = TickBuffer(capacity=3)
        for offset in range(3):
            buf.append(make_tick(timestamp_ms=BASE_MS + offset))
        buf.prune_before(BASE_MS + 2)

        for offset in range(3, 7):
            buf.append(make_tick(timestamp_ms=BASE_MS + offset))

        assert len(buf) == 3
        assert buf.capacity == 3

    def test_empty_snapshot(self):
        """Empty buffer yields an empty snapshot."""
        buf = TickBuffer(capacity=3)
        assert buf.snapshot_since(0) == []
        assert buf.newest() is None
