"""
Core data types for the ingestion, aggregation and broadcast engine.

These are the atomic units flowing through the system:
venue payload -> Tick -> TickBuffer -> SummaryRecord -> Store / subscribers.
"""

import math
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

# =============================================================================
# RAW DATA EVENTS
# =============================================================================


@dataclass(slots=True)
class Tick:
    """
    Single normalized price observation.

    Produced by the feed from either the push stream (one trade) or a
    polling endpoint (one price snapshot).
    """

    symbol: str
    price: float
    volume: float
    timestamp_ms: int  # Observation time, epoch milliseconds
    source_id: str
    sequence_id: Union[int, str, None] = None  # Display only

    def validate(self) -> None:
        """Raise ValueError unless the tick may enter the buffer."""
        if not self.symbol:
            raise ValueError("tick has no symbol")
        for name in ("price", "volume"):
            value = getattr(self, name)
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"tick {name} must be finite and non-negative, got {value}")


# =============================================================================
# AGGREGATED OUTPUT
# =============================================================================


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MAX_TIMESTAMP_MS = (datetime(9999, 12, 31, 23, 59, 59, 999000, tzinfo=timezone.utc) - _EPOCH) // timedelta(milliseconds=1)


def format_timestamp(timestamp_ms: int) -> str:
    """Epoch milliseconds to ISO-8601 UTC with millisecond precision, e.g. 2024-01-01T00:00:00.000Z."""
    dt = _EPOCH + timedelta(milliseconds=int(timestamp_ms))
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Union[str, int, float]) -> int:
    """
    Inverse of format_timestamp. Numeric values are taken as epoch milliseconds.

    Raises:
        TypeError: value is neither a string nor a number
        ValueError: unparseable, non-finite or outside 1970..9999
    """
    if isinstance(value, bool):
        raise TypeError(f"timestamp must be a string or number, got {value!r}")

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"timestamp is not finite: {value!r}")
        timestamp_ms = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            timestamp_ms = int(text)
        else:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            dt = datetime.fromisoformat(text)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            timestamp_ms = (dt - _EPOCH) // timedelta(milliseconds=1)
    else:
        raise TypeError(f"timestamp must be a string or number, got {type(value).__name__}")

    if not 0 <= timestamp_ms <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp out of range: {value!r}")
    return timestamp_ms


@dataclass
class SummaryRecord:
    """
    One fixed-interval rollup of the tick buffer.

    Only ever built from a non-empty window, so sample_count >= 1.
    """

    symbol: str
    mean_price: float
    total_volume: float
    moving_average: float
    timestamp_ms: int  # Window close
    sample_count: int
    source_id: str

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation sent to subscribers and HTTP clients."""
        return {
            "symbol": self.symbol,
            "price": self.mean_price,
            "volume": self.total_volume,
            "movingAverage": self.moving_average,
            "timestamp": format_timestamp(self.timestamp_ms),
            "dataPoints": self.sample_count,
            "source": self.source_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummaryRecord":
        """Build a record from its wire representation."""
        return cls(
            symbol=str(data["symbol"]),
            mean_price=float(data["price"]),
            total_volume=float(data["volume"]),
            moving_average=float(data["movingAverage"]),
            timestamp_ms=parse_timestamp(data["timestamp"]),
            sample_count=int(data["dataPoints"]),
            source_id=str(data["source"]),
        )


# =============================================================================
# STATE ENUMS
# =============================================================================


class FeedState(Enum):
    """Which ingestion transport the feed is currently running."""

    STOPPED = "stopped"
    CONNECTING = "connecting"  # Push handshake in flight
    LIVE = "live"  # Push stream delivering
    POLLING = "polling"  # Degraded pull mode


class TransportKind(Enum):
    """Kind of ingestion transport."""

    PUSH = "push"
    POLL = "poll"


# =============================================================================
# CONFIGURATION
# =============================================================================

KeyPath = Tuple[str, ...]


@dataclass(frozen=True)
class PollingEndpoint:
    """
    One pull endpoint with its parsing rule.

    price_path / volume_path are key paths into the JSON body. A missing
    volume_path means the endpoint reports no volume and 0.0 is used.
    """

    name: str
    url: str
    price_path: KeyPath
    volume_path: Optional[KeyPath] = None
    symbol: str = "BTCUSD"


COINGECKO_ENDPOINT = PollingEndpoint(
    name="CoinGecko",
    url=(
        "https://api.coingecko.com/api/v3/simple/price"
        "?ids=bitcoin&vs_currencies=usd&include_24hr_vol=true&include_24hr_change=true"
    ),
    price_path=("bitcoin", "usd"),
    volume_path=("bitcoin", "usd_24h_vol"),
)

CRYPTOCOMPARE_ENDPOINT = PollingEndpoint(
    name="CryptoCompare",
    url="https://min-api.cryptocompare.com/data/price?fsym=BTC&tsyms=USD",
    price_path=("USD",),
)

DEFAULT_PUSH_URL = "wss://stream.binance.com:9443/ws/btcusdt@trade"


def _default_endpoints() -> List[PollingEndpoint]:
    return [COINGECKO_ENDPOINT, CRYPTOCOMPARE_ENDPOINT]


@dataclass
class IngestionConfig:
    """Configuration for the push feed and its polling fallback."""

    push_url: str = DEFAULT_PUSH_URL
    push_source_id: str = "WebSocket"
    connect_timeout_s: float = 10.0  # Push handshake must finish within this
    poll_interval_s: float = 30.0
    polling_endpoints: List[PollingEndpoint] = field(default_factory=_default_endpoints)
    request_timeout_s: Optional[float] = None  # None = transport default

    # Opt-in: keep re-trying the push stream while polling
    retry_push_while_polling: bool = False
    push_retry_base_s: float = 5.0
    push_retry_max_s: float = 300.0

    def __post_init__(self):
        if self.connect_timeout_s <= 0:
            raise ValueError("connect_timeout_s must be positive")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        if not self.polling_endpoints:
            raise ValueError("at least one polling endpoint is required")


@dataclass
class AggregationConfig:
    """Configuration for the rollup timer and tick buffer."""

    interval_s: float = 60.0  # Window length and timer cadence
    buffer_capacity: int = 1000
    moving_average_window: int = 10
    store_timeout_s: float = 5.0

    def __post_init__(self):
        if self.interval_s <= 0:
            raise ValueError("interval_s must be positive")
        if self.buffer_capacity <= 0:
            raise ValueError("buffer_capacity must be positive")
        if self.moving_average_window <= 0:
            raise ValueError("moving_average_window must be positive")


@dataclass
class BroadcastConfig:
    """Configuration for subscriber fan-out."""

    send_timeout_s: float = 1.0
    store_timeout_s: float = 5.0  # Bound on the latest-record lookup at register


@dataclass
class EngineConfig:
    """Top-level engine configuration."""

    ingestion: IngestionConfig = None
    aggregation: AggregationConfig = None
    broadcast: BroadcastConfig = None

    def __post_init__(self):
        if self.ingestion is None:
            self.ingestion = IngestionConfig()
        if self.aggregation is None:
            self.aggregation = AggregationConfig()
        if self.broadcast is None:
            self.broadcast = BroadcastConfig()

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "EngineConfig":
        """
        Build a config from SOCKETMETRICS_* environment variables.

        Recognized variables:
        - SOCKETMETRICS_PUSH_URL
        - SOCKETMETRICS_CONNECT_TIMEOUT (seconds)
        - SOCKETMETRICS_POLL_INTERVAL (seconds)
        - SOCKETMETRICS_RETRY_PUSH (true/false)
        - SOCKETMETRICS_AGGREGATION_INTERVAL (seconds)
        - SOCKETMETRICS_BUFFER_SIZE
        - SOCKETMETRICS_SEND_TIMEOUT (seconds)

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(f"SOCKETMETRICS_{name}")
            return value if value not in (None, "") else None

        ingestion = IngestionConfig()
        if get("PUSH_URL"):
            ingestion.push_url = get("PUSH_URL")
        if get("CONNECT_TIMEOUT"):
            ingestion.connect_timeout_s = float(get("CONNECT_TIMEOUT"))
        if get("POLL_INTERVAL"):
            ingestion.poll_interval_s = float(get("POLL_INTERVAL"))
        if get("RETRY_PUSH"):
            ingestion.retry_push_while_polling = get("RETRY_PUSH").lower() == "true"

        aggregation = AggregationConfig()
        if get("AGGREGATION_INTERVAL"):
            aggregation.interval_s = float(get("AGGREGATION_INTERVAL"))
        if get("BUFFER_SIZE"):
            aggregation.buffer_capacity = int(get("BUFFER_SIZE"))

        broadcast = BroadcastConfig()
        if get("SEND_TIMEOUT"):
            broadcast.send_timeout_s = float(get("SEND_TIMEOUT"))

        # Re-run validation on the overridden values
        return cls(
            ingestion=IngestionConfig(**_fields(ingestion)),
            aggregation=AggregationConfig(**_fields(aggregation)),
            broadcast=broadcast,
        )


def _fields(obj: Any) -> Dict[str, Any]:
    return {name: getattr(obj, name) for name in obj.__dataclass_fields__}
