"""
Ingestion, Aggregation and Broadcast Engine

"Ingest continuously, summarize on a fixed cadence, fan out to everyone."

Architecture:
```
VENUE
├─ push stream (websocket trades)
└─ polling endpoints (fallback, rotated on failure)
        ↓
FEED MANAGER  (CONNECTING -> LIVE -> POLLING(i))
        ↓
TICK BUFFER   (bounded, drop oldest)
        ↓
AGGREGATOR    (every 60s: mean, volume, moving average)
        ↓
├─ SUMMARY STORE  (append / most recent N)
└─ BROADCAST HUB  (latest_data on connect, aggregated_data on update)
        ↓
SUBSCRIBERS
```

Usage:
    from socketmetrics.engine import EngineConfig, SocketMetricsEngine

    async def main():
        async with SocketMetricsEngine(EngineConfig()) as engine:
            await asyncio.sleep(3600)

    asyncio.run(main())
"""

from .aggregator import Aggregator, summarize
from .broadcast import AGGREGATED_DATA, LATEST_DATA, BroadcastHub, SubscriberConnection, encode_frame
from .data_types import (
    COINGECKO_ENDPOINT,
    CRYPTOCOMPARE_ENDPOINT,
    AggregationConfig,
    BroadcastConfig,
    EngineConfig,
    FeedState,
    IngestionConfig,
    PollingEndpoint,
    SummaryRecord,
    Tick,
    TransportKind,
)
from .errors import (
    ConnectTimeoutError,
    FeedError,
    PayloadParseError,
    PollRequestError,
    PushTransportError,
    StoreError,
)
from .feed_manager import FeedManager
from .metrics import MetricsCollector
from .parsers import parse_poll_body, parse_push_payload
from .service import SocketMetricsEngine
from .store import InMemorySummaryStore, SqliteSummaryStore, SummaryStore
from .tick_buffer import TickBuffer
from .transports import (
    AiohttpPollTransport,
    AiohttpPushTransport,
    ClosedEvent,
    ConnectedEvent,
    ErrorEvent,
    PayloadEvent,
    PollTransport,
    PushTransport,
)

__all__ = [
    # Engine
    "SocketMetricsEngine",
    "FeedManager",
    "Aggregator",
    "BroadcastHub",
    "TickBuffer",
    "summarize",
    # Data types
    "Tick",
    "SummaryRecord",
    "PollingEndpoint",
    "FeedState",
    "TransportKind",
    "COINGECKO_ENDPOINT",
    "CRYPTOCOMPARE_ENDPOINT",
    # Config
    "EngineConfig",
    "IngestionConfig",
    "AggregationConfig",
    "BroadcastConfig",
    # Store
    "SummaryStore",
    "InMemorySummaryStore",
    "SqliteSummaryStore",
    # Transports
    "PushTransport",
    "PollTransport",
    "AiohttpPushTransport",
    "AiohttpPollTransport",
    "ConnectedEvent",
    "PayloadEvent",
    "ClosedEvent",
    "ErrorEvent",
    # Broadcast
    "SubscriberConnection",
    "encode_frame",
    "LATEST_DATA",
    "AGGREGATED_DATA",
    # Parsers
    "parse_push_payload",
    "parse_poll_body",
    # Errors
    "FeedError",
    "PayloadParseError",
    "PollRequestError",
    "PushTransportError",
    "ConnectTimeoutError",
    "StoreError",
    # Metrics
    "MetricsCollector",
]
