"""
Payload parsers - venue messages to normalized Ticks.

Push payloads:
- Binance trade events: {"e": "trade", "s": "BTCUSDT", "p": "...", "q": "...", "T": ms, "t": id}
- Generic objects carrying {symbol, price, volume, timestamp, tradeId}
- A JSON array of either, parsed as one batch

Polling bodies are read through the endpoint's configured key paths.

Every parser raises PayloadParseError on malformed input; callers drop the
payload and keep going.
"""

import json
import time
from typing import Any, Dict, List, Optional, Sequence

from .data_types import PollingEndpoint, Tick, parse_timestamp
from .errors import PayloadParseError


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_float(value: Any, name: str, source_id: str) -> float:
    if isinstance(value, bool):
        raise PayloadParseError(source_id, f"{name} is not numeric: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise PayloadParseError(source_id, f"{name} is not numeric: {value!r}") from None


def _to_timestamp(value: Any, source_id: str) -> int:
    try:
        return parse_timestamp(value)
    except (TypeError, ValueError, OverflowError):
        raise PayloadParseError(source_id, f"bad timestamp: {value!r}") from None


def _checked(tick: Tick) -> Tick:
    try:
        tick.validate()
    except ValueError as e:
        raise PayloadParseError(tick.source_id, str(e)) from None
    return tick


def _parse_binance_trade(data: Dict[str, Any], source_id: str) -> Tick:
    try:
        symbol = data["s"]
        price = data["p"]
        quantity = data["q"]
        trade_time = data["T"]
    except KeyError as e:
        raise PayloadParseError(source_id, f"trade event missing field {e}") from None

    return _checked(
        Tick(
            symbol=str(symbol),
            price=_to_float(price, "price", source_id),
            volume=_to_float(quantity, "volume", source_id),
            timestamp_ms=_to_timestamp(trade_time, source_id),
            source_id=source_id,
            sequence_id=data.get("t"),
        )
    )


def _parse_generic(data: Dict[str, Any], source_id: str, now_ms: int) -> Tick:
    if "price" not in data:
        raise PayloadParseError(source_id, "payload missing price")

    raw_ts = data.get("timestamp")
    timestamp_ms = now_ms if raw_ts is None else _to_timestamp(raw_ts, source_id)

    return _checked(
        Tick(
            symbol=str(data["symbol"] or ""),
            price=_to_float(data["price"], "price", source_id),
            volume=_to_float(data.get("volume", 0.0), "volume", source_id),
            timestamp_ms=timestamp_ms,
            source_id=source_id,
            sequence_id=data.get("tradeId"),
        )
    )


def _parse_item(item: Any, source_id: str, now_ms: int) -> Tick:
    if not isinstance(item, dict):
        raise PayloadParseError(source_id, f"expected object, got {type(item).__name__}")
    if item.get("e") == "trade":
        return _parse_binance_trade(item, source_id)
    if "symbol" in item:
        return _parse_generic(item, source_id, now_ms)
    raise PayloadParseError(source_id, "unrecognized payload shape")


def parse_push_payload(raw: str, source_id: str = "WebSocket", now_ms: Optional[int] = None) -> List[Tick]:
    """
    Parse one push message into ticks.

    Args:
        raw: Message text as received
        source_id: Identifier stamped on every tick
        now_ms: Observation time for payloads without a timestamp

    Returns:
        One tick for an object payload, one per element for an array payload.
        A batch is all-or-nothing.

    Raises:
        PayloadParseError: Malformed JSON, unknown shape or invalid values
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise PayloadParseError(source_id, f"invalid JSON: {e}", payload=str(raw)[:200]) from None

    now = _now_ms() if now_ms is None else now_ms
    if isinstance(data, list):
        return [_parse_item(item, source_id, now) for item in data]
    return [_parse_item(data, source_id, now)]


def _lookup(body: Any, path: Sequence[str]) -> Any:
    node = body
    for key in path:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def parse_poll_body(body: Any, endpoint: PollingEndpoint, now_ms: Optional[int] = None) -> Tick:
    """
    Parse a decoded polling response with the endpoint's rule.

    The tick is stamped with the local clock; the millisecond timestamp also
    serves as its sequence id. A missing volume reads as 0.0.

    Raises:
        PayloadParseError: Price not found or values invalid
    """
    price = _lookup(body, endpoint.price_path)
    if price is None:
        raise PayloadParseError(endpoint.name, f"no price at {'.'.join(endpoint.price_path)}")

    volume = 0.0
    if endpoint.volume_path:
        raw_volume = _lookup(body, endpoint.volume_path)
        if raw_volume is not None:
            volume = _to_float(raw_volume, "volume", endpoint.name)

    timestamp_ms = _now_ms() if now_ms is None else now_ms
    return _checked(
        Tick(
            symbol=endpoint.symbol,
            price=_to_float(price, "price", endpoint.name),
            volume=volume,
            timestamp_ms=timestamp_ms,
            source_id=endpoint.name,
            sequence_id=timestamp_ms,
        )
    )
