"""
Broadcast Hub - fan-out of summary records to live subscribers.

Frames are JSON text:
    {"type": "latest_data", "data": {...}}      once per new subscriber
    {"type": "aggregated_data", "data": {...}}  on every aggregation

Delivery is best effort. A connection whose send fails or times out is
removed and closed; the rest still receive the frame.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .data_types import BroadcastConfig, SummaryRecord
from .metrics import MetricsCollector
from .store import SummaryStore

logger = logging.getLogger(__name__)

LATEST_DATA = "latest_data"
AGGREGATED_DATA = "aggregated_data"


def encode_frame(frame_type: str, record: SummaryRecord) -> str:
    """Serialize a subscriber frame."""
    return json.dumps({"type": frame_type, "data": record.to_dict()})


class SubscriberConnection(ABC):
    """Transport-side handle for one subscriber."""

    connection_id: str

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once the connection can no longer be written to."""

    @abstractmethod
    async def send(self, payload: str) -> None:
        """Deliver one text frame. Raises on failure."""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""


class BroadcastHub:
    """
    Maintains the subscriber set and delivers frames to it.

    Usage:
        hub = BroadcastHub(store)
        await hub.register(conn)        # conn receives latest_data if a record exists
        await hub.publish(record)       # every subscriber receives aggregated_data
        await hub.unregister(conn)
    """

    def __init__(
        self,
        store: SummaryStore,
        config: Optional[BroadcastConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self._store = store
        self.config = config or BroadcastConfig()
        self._metrics = metrics
        self._connections: Dict[str, SubscriberConnection] = {}
        self._frames_sent = 0

    @property
    def count(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: SubscriberConnection) -> bool:
        return self._connections.get(connection.connection_id) is connection

    async def register(self, connection: SubscriberConnection) -> None:
        """Add a subscriber, then send it the latest persisted record, if any."""
        self._connections[connection.connection_id] = connection
        logger.info(f"Subscriber {connection.connection_id} connected ({self.count} total)")

        try:
            latest = await asyncio.wait_for(self._store.most_recent(1), timeout=self.config.store_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Could not load latest record for {connection.connection_id}: {e}")
            return

        if latest and connection in self:
            await self._deliver(connection, encode_frame(LATEST_DATA, latest[0]))

    async def unregister(self, connection: SubscriberConnection) -> bool:
        """Remove a subscriber. Returns False if it was not registered."""
        if connection not in self:
            return False
        del self._connections[connection.connection_id]
        logger.info(f"Subscriber {connection.connection_id} disconnected ({self.count} total)")
        return True

    async def publish(self, record: SummaryRecord, frame_type: str = AGGREGATED_DATA) -> int:
        """
        Send one record to every current subscriber.

        Args:
            record: Record to deliver
            frame_type: Frame type tag

        Returns:
            Number of subscribers the frame was delivered to
        """
        payload = encode_frame(frame_type, record)
        targets = list(self._connections.values())
        if not targets:
            return 0

        results = await asyncio.gather(*(self._deliver(conn, payload) for conn in targets))
        delivered = sum(1 for ok in results if ok)
        logger.debug(f"Published {frame_type} to {delivered}/{len(targets)} subscribers")
        return delivered

    async def _deliver(self, connection: SubscriberConnection, payload: str) -> bool:
        if connection.closed:
            await self._drop(connection)
            return False

        try:
            await asyncio.wait_for(connection.send(payload), timeout=self.config.send_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Delivery to {connection.connection_id} failed: {e!r}")
            if self._metrics:
                self._metrics.increment("delivery_failures")
            await self._drop(connection)
            return False

        self._frames_sent += 1
        return True

    async def _drop(self, connection: SubscriberConnection) -> None:
        await self.unregister(connection)
        if not connection.closed:
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"Error closing {connection.connection_id}: {e}")

    async def close_all(self) -> None:
        """Close and forget every subscriber."""
        connections = list(self._connections.values())
        self._connections.clear()
        for connection in connections:
            try:
                await connection.close()
            except Exception as e:
                logger.debug(f"Error closing {connection.connection_id}: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "connections": self.count,
            "frames_sent": self._frames_sent,
        }
