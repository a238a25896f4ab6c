"""
Feed Manager - one live ingestion transport with polling failover.

State machine:

    CONNECTING --handshake ok--------------------> LIVE
    CONNECTING --error / close / connect timeout--> POLLING(0)
    LIVE       --error / close-------------------> POLLING(0)
    POLLING(i) --request or parse failure--------> POLLING((i+1) mod N)

Polling never stops on its own. With retry_push_while_polling enabled the
push stream is re-attempted in the background with exponential backoff, and
a successful handshake moves POLLING -> LIVE.

Transports report through a single asyncio.Queue; one consumer task applies
every event, so state changes and buffer writes never interleave.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional

from ..utils.retry import ExponentialBackoff
from .data_types import FeedState, IngestionConfig, PollingEndpoint, Tick, TransportKind
from .errors import ConnectTimeoutError, FeedError, PayloadParseError
from .metrics import MetricsCollector
from .parsers import parse_poll_body, parse_push_payload
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
    TransportEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class FeedStats:
    """Counters for the feed."""

    messages_received: int = 0
    ticks_accepted: int = 0
    parse_errors: int = 0
    poll_failures: int = 0
    push_attempts: int = 0
    transitions: int = 0
    endpoint_rotations: int = 0
    last_tick_time: Optional[int] = None


class _Envelope(NamedTuple):
    """Queue item: event tagged with the generation that produced it."""

    generation: int
    endpoint_index: Optional[int]  # Poll events only
    event: TransportEvent


class FeedManager:
    """
    Owns the active ingestion transport and feeds parsed ticks into a TickBuffer.

    Usage:
        feed = FeedManager(buffer, IngestionConfig())
        await feed.start()
        ...
        await feed.stop()
    """

    def __init__(
        self,
        buffer: TickBuffer,
        config: Optional[IngestionConfig] = None,
        push_transport: Optional[PushTransport] = None,
        poll_transport: Optional[PollTransport] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.config = config or IngestionConfig()
        self._buffer = buffer
        self._push = push_transport or AiohttpPushTransport(self.config.push_url, self.config.push_source_id)
        self._poll = poll_transport or AiohttpPollTransport(self.config.request_timeout_s)
        self._endpoints: List[PollingEndpoint] = list(self.config.polling_endpoints)
        self._metrics = metrics

        self._state = FeedState.STOPPED
        self._endpoint_index = 0
        self._stats = FeedStats()
        self._running = False

        self._queue: Optional[asyncio.Queue] = None
        self._consumer_task: Optional[asyncio.Task] = None

        # Push attempt bookkeeping; events from older attempts are stale
        self._push_generation = 0
        self._push_connected = False
        self._push_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None

        # Poll loop bookkeeping
        self._poll_generation = 0
        self._poll_task: Optional[asyncio.Task] = None

        # Background push retry while polling
        self._backoff = ExponentialBackoff(
            base=self.config.push_retry_base_s,
            multiplier=2.0,
            max_delay=self.config.push_retry_max_s,
        )
        self._retry_count = 0
        self._retry_task: Optional[asyncio.Task] = None

    # === Properties ===

    @property
    def state(self) -> FeedState:
        return self._state

    @property
    def endpoint_index(self) -> int:
        return self._endpoint_index

    @property
    def current_endpoint(self) -> Optional[PollingEndpoint]:
        """Endpoint in use while polling, else None."""
        if self._state != FeedState.POLLING:
            return None
        return self._endpoints[self._endpoint_index]

    @property
    def is_connected(self) -> bool:
        """True while the push stream is live."""
        return self._state == FeedState.LIVE

    @property
    def stats(self) -> FeedStats:
        return self._stats

    # === Lifecycle ===

    async def start(self) -> None:
        """Begin in CONNECTING with a push attempt."""
        if self._running:
            return

        self._running = True
        self._queue = asyncio.Queue()
        self._consumer_task = asyncio.create_task(self._consume())
        self._set_state(FeedState.CONNECTING)
        self._begin_push_attempt()

    async def stop(self) -> None:
        """Close the active transport and stop all feed tasks."""
        self._running = False

        for name in ("_retry_task", "_watchdog_task", "_push_task", "_poll_task", "_consumer_task"):
            task = getattr(self, name)
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                setattr(self, name, None)

        await self._poll.close()
        self._push_connected = False
        self._set_state(FeedState.STOPPED)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    # === Push transport ===

    def _begin_push_attempt(self) -> None:
        self._push_generation += 1
        self._push_connected = False
        self._stats.push_attempts += 1
        generation = self._push_generation

        self._push_task = asyncio.create_task(self._run_push(generation))
        self._watchdog_task = asyncio.create_task(self._connect_watchdog(generation))

    async def _run_push(self, generation: int) -> None:
        def emit(event: TransportEvent) -> None:
            self._queue.put_nowait(_Envelope(generation, None, event))

        try:
            await self._push.run(emit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Push transport crashed: {e}", exc_info=True)
            emit(ErrorEvent(TransportKind.PUSH, self._push.source_id, e))

    async def _connect_watchdog(self, generation: int) -> None:
        await asyncio.sleep(self.config.connect_timeout_s)
        error = ConnectTimeoutError(
            self._push.source_id, f"handshake not completed within {self.config.connect_timeout_s}s"
        )
        self._queue.put_nowait(_Envelope(generation, None, ErrorEvent(TransportKind.PUSH, self._push.source_id, error)))

    def _abandon_push(self) -> None:
        """Drop the current push attempt; its later events become stale."""
        self._push_generation += 1
        self._push_connected = False
        for task in (self._push_task, self._watchdog_task):
            if task and not task.done():
                task.cancel()
        self._push_task = None
        self._watchdog_task = None

    # === Poll transport ===

    def _enter_polling(self) -> None:
        self._endpoint_index = 0
        self._set_state(FeedState.POLLING)

        self._poll_generation += 1
        self._poll_task = asyncio.create_task(self._poll_loop(self._poll_generation))

        if self.config.retry_push_while_polling:
            self._schedule_push_retry()

    def _stop_polling(self) -> None:
        self._poll_generation += 1
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = None

    async def _poll_loop(self, generation: int) -> None:
        """Fetch immediately, then once per poll interval."""
        loop = asyncio.get_running_loop()
        interval_s = self.config.poll_interval_s

        while self._running:
            start = loop.time()
            index = self._endpoint_index
            endpoint = self._endpoints[index]

            try:
                body = await self._poll.fetch(endpoint)
                event = PayloadEvent(TransportKind.POLL, endpoint.name, body)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                event = ErrorEvent(TransportKind.POLL, endpoint.name, e)

            self._queue.put_nowait(_Envelope(generation, index, event))

            # Sleep remaining interval
            elapsed = loop.time() - start
            await asyncio.sleep(max(0, interval_s - elapsed))

    def _rotate_endpoint(self) -> None:
        old = self._endpoints[self._endpoint_index].name
        self._endpoint_index = (self._endpoint_index + 1) % len(self._endpoints)
        self._stats.endpoint_rotations += 1
        logger.info(f"Polling endpoint {old} failed, switching to {self._endpoints[self._endpoint_index].name}")

    # === Push retry ===

    def _schedule_push_retry(self) -> None:
        delay = self._backoff.calculate(self._retry_count)
        self._retry_count += 1
        logger.info(f"Retrying push stream in {delay:.1f}s")
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._running and self._state == FeedState.POLLING:
            self._begin_push_attempt()

    def _cancel_push_retry(self) -> None:
        if self._retry_task and not self._retry_task.done():
            self._retry_task.cancel()
        self._retry_task = None

    # === Event handling ===

    async def _consume(self) -> None:
        """Single consumer; applies every transport event in arrival order."""
        while True:
            envelope = await self._queue.get()
            try:
                if envelope.event.kind == TransportKind.PUSH:
                    self._handle_push_event(envelope)
                else:
                    self._handle_poll_event(envelope)
            except Exception as e:
                logger.error(f"Error handling {type(envelope.event).__name__}: {e}", exc_info=True)

    def _handle_push_event(self, envelope: _Envelope) -> None:
        if envelope.generation != self._push_generation:
            logger.debug(f"Ignoring stale push event {type(envelope.event).__name__}")
            return

        event = envelope.event
        if isinstance(event, ConnectedEvent):
            self._push_connected = True
            if self._watchdog_task and not self._watchdog_task.done():
                self._watchdog_task.cancel()
            self._watchdog_task = None

            if self._state == FeedState.POLLING:
                logger.info("Push stream restored, stopping polling")
                self._stop_polling()
                self._cancel_push_retry()
            self._retry_count = 0
            self._set_state(FeedState.LIVE)

        elif isinstance(event, PayloadEvent):
            if not self._push_connected:
                return
            self._stats.messages_received += 1
            try:
                ticks = parse_push_payload(event.data, source_id=event.source_id)
            except PayloadParseError as e:
                self._stats.parse_errors += 1
                logger.warning(f"Dropping malformed push payload: {e}")
                return
            for tick in ticks:
                self._accept(tick)

        elif isinstance(event, ErrorEvent) and isinstance(event.error, ConnectTimeoutError) and self._push_connected:
            # Watchdog fired while the handshake was already queued
            logger.debug("Ignoring connect timeout for a completed handshake")

        elif isinstance(event, (ClosedEvent, ErrorEvent)):
            if isinstance(event, ClosedEvent):
                logger.warning(f"Push stream closed: {event.reason}")
            else:
                logger.error(f"Push stream error: {event.error}")
                if self._metrics:
                    self._metrics.increment("errors")

            self._abandon_push()
            if self._state in (FeedState.CONNECTING, FeedState.LIVE):
                logger.info("Falling back to polling")
                if self._metrics:
                    self._metrics.increment("failovers")
                self._enter_polling()
            elif self._state == FeedState.POLLING and self.config.retry_push_while_polling:
                self._schedule_push_retry()

    def _handle_poll_event(self, envelope: _Envelope) -> None:
        if (
            envelope.generation != self._poll_generation
            or self._state != FeedState.POLLING
            or envelope.endpoint_index != self._endpoint_index
        ):
            return

        event = envelope.event
        endpoint = self._endpoints[envelope.endpoint_index]

        if isinstance(event, PayloadEvent):
            self._stats.messages_received += 1
            try:
                tick = parse_poll_body(event.data, endpoint)
            except PayloadParseError as e:
                self._stats.parse_errors += 1
                logger.warning(f"Unrecognized response from {endpoint.name}: {e}")
                self._rotate_endpoint()
                return
            self._accept(tick)

        elif isinstance(event, ErrorEvent):
            self._stats.poll_failures += 1
            if isinstance(event.error, FeedError):
                logger.warning(f"Polling failed: {event.error}")
            else:
                logger.error(f"Polling failed: {event.error}", exc_info=event.error)
            self._rotate_endpoint()

    def _accept(self, tick: Tick) -> None:
        self._buffer.append(tick)
        self._stats.ticks_accepted += 1
        self._stats.last_tick_time = int(time.time() * 1000)
        if self._metrics:
            self._metrics.record_event("ticks")

    def _set_state(self, new_state: FeedState) -> None:
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._stats.transitions += 1
        logger.info(f"Feed state: {old_state.value} -> {new_state.value}")
    # === Utility Methods ===

    def get_status(self) -> Dict[str, Any]:
        """Get current feed status."""
        endpoint = self.current_endpoint
        return {
            "state": self._state.value,
            "connected": self.is_connected,
            "endpoint": endpoint.name if endpoint else None,
            "endpoint_index": self._endpoint_index if endpoint else None,
            "messages_received": self._stats.messages_received,
            "ticks_accepted": self._stats.ticks_accepted,
            "parse_errors": self._stats.parse_errors,
            "poll_failures": self._stats.poll_failures,
            "push_attempts": self._stats.push_attempts,
            "transitions": self._stats.transitions,
            "endpoint_rotations": self._stats.endpoint_rotations,
            "last_tick_time": self._stats.last_tick_time,
        }
