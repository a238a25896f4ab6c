"""
Tests for summary record stores.
"""

import pytest
import pytest_asyncio

from socketmetrics.engine import InMemorySummaryStore, SqliteSummaryStore, StoreError, SummaryRecord


def _record(ts, price=100.0):
    return SummaryRecord(
        symbol="BTCUSDT",
        mean_price=price,
        total_volume=12.345678,
        moving_average=price + 0.25,
        timestamp_ms=ts,
        sample_count=42,
        source_id="WebSocket",
    )


@pytest_asyncio.fixture(params=["memory", "sqlite"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        store = InMemorySummaryStore()
    else:
        store = SqliteSummaryStore(str(tmp_path / "db" / "metrics.db"))
    await store.open()
    yield store
    await store.close()


class TestSummaryStores:
    """Behavior shared by every store."""

    @pytest.mark.asyncio
    async def test_round_trip(self, any_store):
        """append then most_recent(1) returns a field-for-field equal record."""
        record = _record(1_700_000_000_123, price=43210.987654)

        await any_store.append(record)
        latest = await any_store.most_recent(1)

        assert latest == [record]

    @pytest.mark.asyncio
    async def test_newest_first(self, any_store):
        """Records come back by timestamp, newest first, even if appended out of order."""
        for ts in (2_000, 1_000, 3_000):
            await any_store.append(_record(ts))

        records = await any_store.most_recent(10)

        assert [r.timestamp_ms for r in records] == [3_000, 2_000, 1_000]

    @pytest.mark.asyncio
    async def test_limit(self, any_store):
        """most_recent(n) returns at most n records."""
        for ts in range(5):
            await any_store.append(_record(ts))

        assert len(await any_store.most_recent(2)) == 2
        assert await any_store.most_recent(0) == []

    @pytest.mark.asyncio
    async def test_empty(self, any_store):
        """An empty store returns an empty list."""
        assert await any_store.most_recent(1) == []


class TestInMemoryStore:
    """In-memory specifics."""

    @pytest.mark.asyncio
    async def test_max_records(self):
        """Only the newest max_records are kept."""
        store = InMemorySummaryStore(max_records=2)
        for ts in (1, 2, 3):
            await store.append(_record(ts))

        assert len(store) == 2
        assert [r.timestamp_ms for r in await store.most_recent(5)] == [3, 2]

    @pytest.mark.asyncio
    async def test_stored_record_is_a_copy(self):
        """Mutating the caller's record does not change what was stored."""
        store = InMemorySummaryStore()
        record = _record(1)
        await store.append(record)

        record.mean_price = -1.0

        assert (await store.most_recent(1))[0].mean_price == 100.0


class TestSqliteStore:
    """SQLite specifics."""

    @pytest.mark.asyncio
    async def test_unopened_store_raises(self, tmp_path):
        """Using the store before open() raises StoreError."""
        store = SqliteSummaryStore(str(tmp_path / "metrics.db"))

        with pytest.raises(StoreError):
            await store.append(_record(1))

    @pytest.mark.asyncio
    async def test_persists_across_reopen(self, tmp_path):
        """Records survive closing and reopening the database file."""
        path = str(tmp_path / "metrics.db")
        store = SqliteSummaryStore(path)
        await store.open()
        await store.append(_record(5))
        await store.close()

        reopened = SqliteSummaryStore(path)
        await reopened.open()
        try:
            assert [r.timestamp_ms for r in await reopened.most_recent(1)] == [5]
        finally:
            await reopened.close()
