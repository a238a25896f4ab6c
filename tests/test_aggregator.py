"""
Tests for the aggregation math and the aggregation pass.
"""

import asyncio
import time

import pytest

from fakes import FakeConnection, wait_until
from socketmetrics.engine import AggregationConfig, Aggregator, BroadcastHub, TickBuffer, summarize

BASE_MS = 1_700_000_000_000
WINDOW_MS = 60_000


def _make_aggregator(store, buffer=None, interval_s=60.0, now_ms=BASE_MS + WINDOW_MS):
    buffer = buffer or TickBuffer(capacity=1000)
    hub = BroadcastHub(store)
    aggregator = Aggregator(
        buffer,
        store,
        hub,
        AggregationConfig(interval_s=interval_s, store_timeout_s=0.5),
        clock=lambda: now_ms,
    )
    return aggregator, buffer, hub


class TestSummarize:
    """Pure reduction."""

    def test_empty_window_gives_none(self):
        """No ticks means no record."""
        assert summarize([], BASE_MS) is None

    def test_mean_price_and_total_volume(self, make_tick):
        """Prices [100, 102, 98] average to 100.0; volumes are summed."""
        ticks = [make_tick(price=p, volume=v) for p, v in ((100, 1.0), (102, 0.5), (98, 2.0))]

        record = summarize(ticks, BASE_MS)

        assert record.mean_price == pytest.approx(100.0)
        assert record.total_volume == pytest.approx(3.5)
        assert record.moving_average == pytest.approx(100.0)
        assert record.sample_count == 3
        assert record.timestamp_ms == BASE_MS

    def test_moving_average_uses_last_ten(self, make_tick):
        """With 12 ticks the moving average covers only the final 10 prices."""
        prices = [1000.0, 1000.0] + [float(p) for p in range(1, 11)]
        ticks = [make_tick(price=p) for p in prices]

        record = summarize(ticks, BASE_MS)

        assert record.moving_average == pytest.approx(5.5)
        assert record.mean_price == pytest.approx(sum(prices) / 12)
        assert record.sample_count == 12

    def test_custom_moving_average_window(self, make_tick):
        """The moving average window is configurable."""
        ticks = [make_tick(price=p) for p in (10.0, 20.0, 30.0)]
        assert summarize(ticks, BASE_MS, ma_window=2).moving_average == pytest.approx(25.0)

    def test_symbol_and_source_from_first_tick(self, make_tick):
        """Symbol and source are taken from the first tick of the window."""
        ticks = [
            make_tick(symbol="BTCUSDT", source_id="WebSocket"),
            make_tick(symbol="BTCUSD", source_id="CoinGecko"),
            make_tick(symbol="BTCUSD", source_id="CoinGecko"),
        ]

        record = summarize(ticks, BASE_MS)

        assert record.symbol == "BTCUSDT"
        assert record.source_id == "WebSocket"


class TestAggregateOnce:
    """One aggregation pass against store and hub."""

    @pytest.mark.asyncio
    async def test_empty_window_is_a_no_op(self, store, make_tick):
        """No ticks in the window: no record, no persistence call, no broadcast."""
        aggregator, buffer, hub = _make_aggregator(store)
        buffer.append(make_tick(timestamp_ms=BASE_MS - 1))  # older than the window
        conn = FakeConnection("c1")
        await hub.register(conn)

        result = await aggregator.aggregate_once()

        assert result is None
        assert store.append_calls == 0
        assert conn.sent == []
        assert aggregator.stats.empty_windows == 1

    @pytest.mark.asyncio
    async def test_record_is_persisted_and_published(self, store, make_tick):
        """A non-empty window is stored and sent to every subscriber."""
        aggregator, buffer, hub = _make_aggregator(store)
        for i, price in enumerate((100.0, 102.0, 98.0)):
            buffer.append(make_tick(price=price, timestamp_ms=BASE_MS + 1000 * i))
        conn = FakeConnection("c1")
        await hub.register(conn)

        record = await aggregator.aggregate_once()

        assert record.sample_count == 3
        assert store.records == [record]
        frames = conn.frames()
        assert len(frames) == 1
        assert frames[0]["type"] == "aggregated_data"
        assert frames[0]["data"]["price"] == pytest.approx(100.0)
        assert frames[0]["data"]["dataPoints"] == 3

    @pytest.mark.asyncio
    async def test_persistence_failure_still_broadcasts(self, store, make_tick):
        """A failing store is logged and skipped; subscribers still get the record."""
        store.fail_append = True
        aggregator, buffer, hub = _make_aggregator(store)
        buffer.append(make_tick(timestamp_ms=BASE_MS + 5))
        conn = FakeConnection("c1")
        await hub.register(conn)

        record = await aggregator.aggregate_once()

        assert record is not None
        assert store.records == []
        assert aggregator.stats.persistence_failures == 1
        assert [f["type"] for f in conn.frames()] == ["aggregated_data"]

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, store, make_tick):
        """A store call past store_timeout_s counts as a persistence failure."""
        store.append_delay = 5.0
        aggregator, buffer, hub = _make_aggregator(store)
        aggregator.config.store_timeout_s = 0.05
        buffer.append(make_tick(timestamp_ms=BASE_MS + 5))

        record = await aggregator.aggregate_once()

        assert record is not None
        assert aggregator.stats.persistence_failures == 1

    @pytest.mark.asyncio
    async def test_old_ticks_pruned_after_snapshot(self, store, make_tick):
        """Ticks older than the cutoff leave the buffer; in-window ticks stay."""
        aggregator, buffer, hub = _make_aggregator(store)
        buffer.append(make_tick(timestamp_ms=BASE_MS - 10))
        buffer.append(make_tick(timestamp_ms=BASE_MS + 10))

        await aggregator.aggregate_once()

        assert [t.timestamp_ms for t in buffer] == [BASE_MS + 10]

    @pytest.mark.asyncio
    async def test_on_record_callbacks(self, store, make_tick):
        """Sync and async callbacks both receive the record."""
        aggregator, buffer, hub = _make_aggregator(store)
        seen = []

        async def async_cb(record):
            seen.append(("async", record.sample_count))

        aggregator.on_record(lambda r: seen.append(("sync", r.sample_count)))
        aggregator.on_record(async_cb)
        buffer.append(make_tick(timestamp_ms=BASE_MS + 1))

        await aggregator.aggregate_once()

        assert seen == [("sync", 1), ("async", 1)]


class TestAggregatorTimer:
    """Timer-driven firing."""

    @pytest.mark.asyncio
    async def test_timer_fires_repeatedly(self, store, make_tick):
        """The timer keeps firing on its interval until stopped."""
        buffer = TickBuffer(capacity=100)
        hub = BroadcastHub(store)
        aggregator = Aggregator(buffer, store, hub, AggregationConfig(interval_s=0.05))

        now_ms = int(time.time() * 1000)
        buffer.append(make_tick(timestamp_ms=now_ms + 10_000))  # stays inside every window

        await aggregator.start()
        try:
            await wait_until(lambda: aggregator.stats.firings >= 3)
        finally:
            await aggregator.stop()

        assert aggregator.stats.records_emitted >= 3
        assert len(store.records) >= 3

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight(self, store, make_tick):
        """Stopping does not wait for a stalled store call."""
        store.append_delay = 10.0
        buffer = TickBuffer(capacity=100)
        hub = BroadcastHub(store)
        aggregator = Aggregator(buffer, store, hub, AggregationConfig(interval_s=0.02, store_timeout_s=30.0))
        buffer.append(make_tick(timestamp_ms=int(time.time() * 1000) + 10_000))

        await aggregator.start()
        await wait_until(lambda: store.append_calls >= 1)
        await asyncio.wait_for(aggregator.stop(), timeout=1.0)

        assert aggregator.get_status()["in_flight"] == 0
