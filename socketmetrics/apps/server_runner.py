#!/usr/bin/env python3
"""
SocketMetrics Server Runner

Starts the engine behind the aiohttp web application and runs until
SIGINT/SIGTERM.

Usage:
    socketmetrics-server                              # Defaults, in-memory store
    socketmetrics-server --port 8080 --db data/metrics.db
    socketmetrics-server --interval 10 --retry-push   # Short windows, retry push feed
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import List, Optional

from aiohttp import web

from socketmetrics.engine import (
    EngineConfig,
    InMemorySummaryStore,
    SocketMetricsEngine,
    SqliteSummaryStore,
    StoreError,
    SummaryStore,
)
from socketmetrics.logging_config import configure_default_logging, log_exception
from socketmetrics.server import build_app
from socketmetrics.utils.retry import RetryError, retry_async

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3000


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Environment first, command line on top."""
    config = EngineConfig.from_env()

    if args.push_url:
        config.ingestion.push_url = args.push_url
    if args.poll_interval is not None:
        config.ingestion.poll_interval_s = args.poll_interval
    if args.retry_push:
        config.ingestion.retry_push_while_polling = True
    if args.interval is not None:
        config.aggregation.interval_s = args.interval
    if args.buffer_size is not None:
        config.aggregation.buffer_capacity = args.buffer_size

    # Re-validate after overrides
    config.ingestion.__post_init__()
    config.aggregation.__post_init__()
    return config


def build_store(db_path: Optional[str]) -> SummaryStore:
    if db_path:
        return SqliteSummaryStore(db_path)
    logger.warning("No database configured, summaries are kept in memory only")
    return InMemorySummaryStore(max_records=10_000)


@retry_async(max_attempts=5, exceptions=(StoreError,), base_delay=1.0, max_delay=10.0)
async def open_store(store: SummaryStore) -> None:
    await store.open()


async def run_server(config: EngineConfig, store: SummaryStore, host: str, port: int) -> None:
    """Serve until a termination signal arrives, then shut down gracefully."""
    await open_store(store)

    engine = SocketMetricsEngine(config, store=store)
    app = build_app(engine)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Serving on http://{host}:{port} (websocket at ws://{host}:{port}/ws)")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows; KeyboardInterrupt still ends asyncio.run
            pass

    try:
        await stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await runner.cleanup()
        logger.info("Server stopped")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Real-time price aggregation and websocket broadcast server")
    parser.add_argument("--host", default=os.getenv("HOST", DEFAULT_HOST), help=f"Bind address (default: {DEFAULT_HOST})")
    parser.add_argument(
        "--port", type=int, default=int(os.getenv("PORT", DEFAULT_PORT)), help=f"Bind port (default: {DEFAULT_PORT})"
    )
    parser.add_argument(
        "--db", default=os.getenv("SOCKETMETRICS_DB"), help="SQLite database path (default: in-memory store)"
    )
    parser.add_argument("--push-url", help="Push stream websocket URL")
    parser.add_argument("--interval", type=float, help="Aggregation interval in seconds (default: 60)")
    parser.add_argument("--buffer-size", type=int, help="Tick buffer capacity (default: 1000)")
    parser.add_argument("--poll-interval", type=float, help="Polling fallback interval in seconds (default: 30)")
    parser.add_argument(
        "--retry-push", action="store_true", help="Keep retrying the push stream while polling"
    )
    parser.add_argument("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO)")
    parser.add_argument("--log-file", default=None, help="Log file path (default: LOG_FILE or none)")
    parser.add_argument("--json-logs", action="store_true", help="JSON log lines (default: LOG_JSON)")
    parser.add_argument("--no-console", action="store_true", help="Disable console logging (default: LOG_CONSOLE)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_default_logging(
        level=args.log_level,
        log_file=args.log_file,
        json_format=True if args.json_logs else None,
        console=False if args.no_console else None,
    )

    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    store = build_store(args.db)

    try:
        asyncio.run(run_server(config, store, args.host, args.port))
    except KeyboardInterrupt:
        pass
    except RetryError as e:
        log_exception(logger, e.last_exception, "Could not open summary store")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
