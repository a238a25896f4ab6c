"""
SocketMetrics Engine - wires feed, buffer, aggregator and hub together.

One engine per process, constructed explicitly with its collaborators:

    store = SqliteSummaryStore("data/metrics.db")
    async with SocketMetricsEngine(EngineConfig.from_env(), store=store) as engine:
        await engine.hub.register(connection)
        ...
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from .aggregator import Aggregator
from .broadcast import BroadcastHub
from .data_types import EngineConfig, SummaryRecord, format_timestamp
from .errors import StoreError
from .feed_manager import FeedManager
from .metrics import MetricsCollector
from .store import InMemorySummaryStore, SummaryStore
from .tick_buffer import TickBuffer
from .transports import PollTransport, PushTransport

logger = logging.getLogger(__name__)


class SocketMetricsEngine:
    """
    Ingestion -> aggregation -> broadcast engine.

    Args:
        config: Engine configuration (defaults if None)
        store: Summary store (in-memory if None)
        push_transport: Push transport override (aiohttp websocket if None)
        poll_transport: Poll transport override (aiohttp GET if None)
        clock: Epoch-milliseconds clock for the aggregator
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[SummaryStore] = None,
        push_transport: Optional[PushTransport] = None,
        poll_transport: Optional[PollTransport] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config or EngineConfig()
        self.store = store or InMemorySummaryStore()
        self.metrics = MetricsCollector()

        self.buffer = TickBuffer(self.config.aggregation.buffer_capacity)
        self.hub = BroadcastHub(self.store, self.config.broadcast, metrics=self.metrics)
        self.feed = FeedManager(
            self.buffer,
            self.config.ingestion,
            push_transport=push_transport,
            poll_transport=poll_transport,
            metrics=self.metrics,
        )
        self.aggregator = Aggregator(
            self.buffer,
            self.store,
            self.hub,
            self.config.aggregation,
            metrics=self.metrics,
            clock=clock,
        )

        self.metrics.on_slow_operation(self._on_slow_operation)

        self._running = False
        self._started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Open the store, then start ingestion and the aggregation timer."""
        if self._running:
            return

        await self.store.open()
        self._running = True
        self._started_at = time.time()
        logger.info("Starting SocketMetrics engine")

        await self.feed.start()
        await self.aggregator.start()

    async def stop(self) -> None:
        """Close ingestion, stop the timer, close every subscriber, release the store."""
        if not self._running:
            return

        self._running = False
        logger.info("Stopping SocketMetrics engine")

        await self.feed.stop()
        await self.aggregator.stop()
        await self.hub.close_all()
        await self.store.close()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # === Queries ===

    async def latest(self) -> Optional[SummaryRecord]:
        """Most recent persisted record, or None."""
        records = await self._most_recent(1)
        return records[0] if records else None

    async def history(self, limit: int = 100) -> List[SummaryRecord]:
        """Up to `limit` persisted records, newest first."""
        return await self._most_recent(limit)

    async def republish(self, record: SummaryRecord) -> int:
        """Push a record to every subscriber as an aggregated_data frame."""
        return await self.hub.publish(record)

    async def _most_recent(self, n: int) -> List[SummaryRecord]:
        timeout_s = self.config.aggregation.store_timeout_s
        try:
            return await asyncio.wait_for(self.store.most_recent(n), timeout_s)
        except asyncio.TimeoutError:
            raise StoreError("most_recent", TimeoutError(f"no answer within {timeout_s}s")) from None

    # === Utility Methods ===

    def get_status(self) -> Dict[str, Any]:
        """Get current engine status."""
        last_ms = self.aggregator.stats.last_aggregation_time
        return {
            "running": self._running,
            "feed_connected": self.feed.is_connected,
            "feed_state": self.feed.state.value,
            "client_connections": self.hub.count,
            "data_buffer_size": len(self.buffer),
            "last_aggregation": format_timestamp(last_ms) if last_ms else None,
            "uptime_s": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
            "feed": self.feed.get_status(),
            "aggregator": self.aggregator.get_status(),
            "broadcast": self.hub.get_status(),
        }

    def get_metrics_summary(self) -> Dict[str, Any]:
        """Get metrics summary for monitoring and debugging."""
        return self.metrics.get_summary()

    def _on_slow_operation(self, operation: str, latency_ms: float) -> None:
        logger.warning(f"Slow {operation}: {latency_ms:.0f}ms")
