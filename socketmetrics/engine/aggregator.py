"""
Aggregator - fixed-interval rollup of the tick buffer.

On every firing:
1. cutoff = now - interval
2. snapshot ticks observed since cutoff (empty window -> skip entirely)
3. reduce to a SummaryRecord
4. prune ticks older than cutoff
5. persist (failures logged, never retried)
6. publish to subscribers

Each firing runs as its own task so a slow store or subscriber never delays
the next one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .broadcast import BroadcastHub
from .data_types import AggregationConfig, SummaryRecord, Tick
from .metrics import MetricsCollector
from .store import SummaryStore
from .tick_buffer import TickBuffer

logger = logging.getLogger(__name__)


def summarize(ticks: Sequence[Tick], timestamp_ms: int, ma_window: int = 10) -> Optional[SummaryRecord]:
    """
    Reduce a window of ticks into one record.

    Args:
        ticks: Window contents, oldest first
        timestamp_ms: Window close time stamped on the record
        ma_window: Moving average covers the last min(ma_window, len(ticks)) prices

    Returns:
        SummaryRecord, or None for an empty window

    Example:
        >>> summarize([t100, t102, t98], now_ms).mean_price
        100.0
    """
    if not ticks:
        return None

    n = len(ticks)
    mean_price = sum(t.price for t in ticks) / n
    total_volume = sum(t.volume for t in ticks)

    tail = ticks[-min(ma_window, n):]
    moving_average = sum(t.price for t in tail) / len(tail)

    first = ticks[0]
    return SummaryRecord(
        symbol=first.symbol,
        mean_price=mean_price,
        total_volume=total_volume,
        moving_average=moving_average,
        timestamp_ms=timestamp_ms,
        sample_count=n,
        source_id=first.source_id,
    )


@dataclass
class AggregatorStats:
    firings: int = 0
    empty_windows: int = 0
    records_emitted: int = 0
    persistence_failures: int = 0
    last_aggregation_time: Optional[int] = None


class Aggregator:
    """
    Timer-driven reducer from TickBuffer to Store and BroadcastHub.

    Args:
        buffer: Source of ticks
        store: Where records are persisted
        hub: Where records are published
        config: Interval, moving average window, store timeout
        clock: Returns epoch milliseconds (injectable for tests)
    """

    def __init__(
        self,
        buffer: TickBuffer,
        store: SummaryStore,
        hub: BroadcastHub,
        config: Optional[AggregationConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or AggregationConfig()
        self._buffer = buffer
        self._store = store
        self._hub = hub
        self._metrics = metrics
        self._clock = clock or (lambda: int(time.time() * 1000))

        self._running = False
        self._timer_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._stats = AggregatorStats()
        self._last_record: Optional[SummaryRecord] = None
        self._callbacks: List[Callable] = []

    @property
    def stats(self) -> AggregatorStats:
        return self._stats

    @property
    def last_record(self) -> Optional[SummaryRecord]:
        return self._last_record

    def on_record(self, callback: Callable[[SummaryRecord], Any]) -> None:
        """Register callback for each emitted record (sync or async)."""
        self._callbacks.append(callback)

    # === Lifecycle ===

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._timer_task = asyncio.create_task(self._timer_loop())
        logger.info(f"Aggregator started (interval {self.config.interval_s}s)")

    async def stop(self) -> None:
        """Stop the timer; in-flight firings are cancelled."""
        self._running = False

        if self._timer_task:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        pending = list(self._inflight)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()

    async def _timer_loop(self) -> None:
        """Fire on steady deadlines so processing time never shifts the cadence."""
        loop = asyncio.get_running_loop()
        interval_s = self.config.interval_s
        next_fire = loop.time() + interval_s

        while self._running:
            await asyncio.sleep(max(0, next_fire - loop.time()))
            next_fire += interval_s

            task = asyncio.create_task(self._fire())
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _fire(self) -> None:
        try:
            await self.aggregate_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Aggregation failed: {e}", exc_info=True)

    # === Aggregation ===

    async def aggregate_once(self) -> Optional[SummaryRecord]:
        """
        Run one aggregation pass.

        Returns:
            The emitted record, or None if the window was empty
        """
        now_ms = self._clock()
        cutoff_ms = now_ms - int(self.config.interval_s * 1000)
        self._stats.firings += 1

        recent = self._buffer.snapshot_since(cutoff_ms)
        if not recent:
            self._stats.empty_windows += 1
            logger.debug("No ticks in window, skipping aggregation")
            return None

        if self._metrics:
            with self._metrics.time("aggregation"):
                record = summarize(recent, now_ms, self.config.moving_average_window)
        else:
            record = summarize(recent, now_ms, self.config.moving_average_window)

        self._buffer.prune_before(cutoff_ms)

        self._last_record = record
        self._stats.records_emitted += 1
        self._stats.last_aggregation_time = now_ms
        if self._metrics:
            self._metrics.record_event("records")

        logger.info(
            f"Aggregated {record.sample_count} ticks for {record.symbol}: "
            f"mean={record.mean_price:.2f} ma={record.moving_average:.2f} vol={record.total_volume:.4f}"
        )

        await self._persist(record)

        if self._metrics:
            with self._metrics.time("publish"):
                await self._hub.publish(record)
        else:
            await self._hub.publish(record)

        await self._notify_callbacks(record)
        return record

    async def _persist(self, record: SummaryRecord) -> None:
        start = time.perf_counter()
        try:
            await asyncio.wait_for(self._store.append(record), timeout=self.config.store_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.persistence_failures += 1
            if self._metrics:
                self._metrics.increment("persistence_failures")
            logger.error(f"Failed to persist summary record: {e!r}")
            return

        if self._metrics:
            self._metrics.record_latency("store_append", (time.perf_counter() - start) * 1000)

    async def _notify_callbacks(self, record: SummaryRecord) -> None:
        for callback in self._callbacks:
            try:
                result = callback(record)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Callback error: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_s": self.config.interval_s,
            "firings": self._stats.firings,
            "empty_windows": self._stats.empty_windows,
            "records_emitted": self._stats.records_emitted,
            "persistence_failures": self._stats.persistence_failures,
            "last_aggregation_time": self._stats.last_aggregation_time,
            "in_flight": len(self._inflight),
        }
