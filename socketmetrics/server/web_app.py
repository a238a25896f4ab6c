"""
aiohttp application exposing the engine.

Routes:
    GET /                      Service banner with endpoint list
    GET /ws                    Subscriber websocket (latest_data / aggregated_data frames)
    GET /api/metrics/latest    Latest record; also pushed to every subscriber as aggregated_data
    GET /api/metrics/history   Recent records, newest first (?limit=N, default 100)
    GET /api/metrics/status    Feed, buffer, subscriber and aggregation status
"""

import logging
import time
import uuid
from typing import Any, Dict

from aiohttp import WSMsgType, web

from ..engine import SocketMetricsEngine, StoreError, SubscriberConnection
from ..engine.data_types import format_timestamp

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", SocketMetricsEngine)

DEFAULT_HISTORY_LIMIT = 100
MAX_HISTORY_LIMIT = 1000


def _now_iso() -> str:
    return format_timestamp(int(time.time() * 1000))


class WebSocketConnection(SubscriberConnection):
    """Subscriber backed by an aiohttp WebSocketResponse."""

    def __init__(self, ws: web.WebSocketResponse, remote: str = ""):
        self.connection_id = uuid.uuid4().hex[:12]
        self.remote = remote
        self._ws = ws

    @property
    def closed(self) -> bool:
        return self._ws.closed

    async def send(self, payload: str) -> None:
        await self._ws.send_str(payload)

    async def close(self) -> None:
        await self._ws.close()


# === Handlers ===


async def ws_handler(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)

    engine = request.app[ENGINE_KEY]
    connection = WebSocketConnection(ws, remote=request.remote or "")
    await engine.hub.register(connection)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                logger.debug(f"Message from {connection.connection_id}: {msg.data[:200]}")
            elif msg.type == WSMsgType.ERROR:
                logger.warning(f"Subscriber {connection.connection_id} error: {ws.exception()}")
    finally:
        await engine.hub.unregister(connection)

    return ws


async def index_handler(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "message": "SocketMetrics - real-time price aggregation",
            "status": "running",
            "endpoints": {
                "websocket": "/ws",
                "latest": "/api/metrics/latest",
                "history": "/api/metrics/history?limit=100",
                "status": "/api/metrics/status",
            },
        }
    )


async def latest_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    try:
        record = await engine.latest()
    except StoreError as e:
        logger.error(f"Latest lookup failed: {e}")
        return _error(500, "Failed to fetch latest data")

    if record is None:
        return _error(404, "No data available")

    delivered = await engine.republish(record)
    logger.debug(f"Latest record re-broadcast to {delivered} subscribers")

    return web.json_response(
        {
            "success": True,
            "message": "Latest data retrieved and broadcasted",
            "data": record.to_dict(),
            "timestamp": _now_iso(),
        }
    )


async def history_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]

    raw_limit = request.query.get("limit")
    if raw_limit is None:
        limit = DEFAULT_HISTORY_LIMIT
    else:
        try:
            limit = int(raw_limit)
        except ValueError:
            return _error(400, "limit must be a positive integer")
        if limit <= 0:
            return _error(400, "limit must be a positive integer")
        limit = min(limit, MAX_HISTORY_LIMIT)

    try:
        records = await engine.history(limit)
    except StoreError as e:
        logger.error(f"History lookup failed: {e}")
        return _error(500, "Failed to fetch historical data")

    return web.json_response(
        {
            "success": True,
            "data": [r.to_dict() for r in records],
            "count": len(records),
        }
    )


async def status_handler(request: web.Request) -> web.Response:
    engine = request.app[ENGINE_KEY]
    status = engine.get_status()

    return web.json_response(
        {
            "success": True,
            "status": {
                "feedConnected": status["feed_connected"],
                "feedState": status["feed_state"],
                "pollingEndpoint": status["feed"]["endpoint"],
                "clientConnections": status["client_connections"],
                "dataBufferSize": status["data_buffer_size"],
                "lastAggregation": status["last_aggregation"],
                "uptime": status["uptime_s"],
                "metrics": engine.get_metrics_summary(),
            },
            "timestamp": _now_iso(),
        }
    )


def _error(status: int, message: str) -> web.Response:
    body: Dict[str, Any] = {"success": False, "message": message}
    return web.json_response(body, status=status)


# === Application ===


def build_app(engine: SocketMetricsEngine, manage_engine: bool = True) -> web.Application:
    """
    Build the aiohttp application around an engine.

    Args:
        engine: Engine serving the routes
        manage_engine: Start the engine on startup and stop it on cleanup

    Returns:
        Configured web.Application
    """
    app = web.Application()
    app[ENGINE_KEY] = engine

    app.router.add_get("/", index_handler)
    app.router.add_get("/ws", ws_handler)
    app.router.add_get("/api/metrics/latest", latest_handler)
    app.router.add_get("/api/metrics/history", history_handler)
    app.router.add_get("/api/metrics/status", status_handler)

    async def _close_subscribers(app_ctx: web.Application) -> None:
        # Open websockets would otherwise hold the server until shutdown_timeout
        await app_ctx[ENGINE_KEY].hub.close_all()

    app.on_shutdown.append(_close_subscribers)

    if manage_engine:

        async def _start_engine(app_ctx: web.Application) -> None:
            await app_ctx[ENGINE_KEY].start()

        async def _stop_engine(app_ctx: web.Application) -> None:
            await app_ctx[ENGINE_KEY].stop()

        app.on_startup.append(_start_engine)
        app.on_cleanup.append(_stop_engine)

    return app
