"""
Ingestion transports.

A transport only moves bytes; it never touches feed state. Everything it
observes is reported as one of a closed set of events:

    ConnectedEvent  - push handshake completed
    PayloadEvent    - one message (push) or one decoded response body (poll)
    ClosedEvent     - push stream closed by the remote side
    ErrorEvent      - handshake, runtime or request failure

The FeedManager consumes these events from a single queue.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import aiohttp

from .data_types import PollingEndpoint, TransportKind
from .errors import PayloadParseError, PollRequestError, PushTransportError

logger = logging.getLogger(__name__)

# =============================================================================
# EVENTS
# =============================================================================


@dataclass(frozen=True)
class ConnectedEvent:
    kind: TransportKind
    source_id: str


@dataclass(frozen=True)
class PayloadEvent:
    kind: TransportKind
    source_id: str
    data: Any  # str for push, decoded JSON for poll


@dataclass(frozen=True)
class ClosedEvent:
    kind: TransportKind
    source_id: str
    reason: str = ""


@dataclass(frozen=True)
class ErrorEvent:
    kind: TransportKind
    source_id: str
    error: Exception


TransportEvent = Union[ConnectedEvent, PayloadEvent, ClosedEvent, ErrorEvent]
EventSink = Callable[[TransportEvent], None]

# =============================================================================
# INTERFACES
# =============================================================================


class PushTransport(ABC):
    """Long-lived push connection to the venue."""

    source_id: str = "WebSocket"

    @abstractmethod
    async def run(self, emit: EventSink) -> None:
        """
        Connect and stream until the connection ends.

        Must emit ConnectedEvent after the handshake, one PayloadEvent per
        message, then exactly one ClosedEvent or ErrorEvent before returning.
        Cancellation closes the connection.
        """


class PollTransport(ABC):
    """Request/response access to polling endpoints."""

    @abstractmethod
    async def fetch(self, endpoint: PollingEndpoint) -> Any:
        """
        Issue one GET request and return the decoded JSON body.

        Raises:
            PollRequestError: Non-200 status, network failure or timeout
            PayloadParseError: Body is not JSON
        """

    async def close(self) -> None:
        """Release any held resources."""


# =============================================================================
# AIOHTTP IMPLEMENTATIONS
# =============================================================================


class AiohttpPushTransport(PushTransport):
    """
    WebSocket push transport on aiohttp.

    Uses the caller's session when given, otherwise opens one per run.
    """

    def __init__(
        self,
        url: str,
        source_id: str = "WebSocket",
        session: Optional[aiohttp.ClientSession] = None,
        heartbeat: Optional[float] = 30.0,
    ):
        self.url = url
        self.source_id = source_id
        self._session = session
        self._heartbeat = heartbeat

    async def run(self, emit: EventSink) -> None:
        session = self._session or aiohttp.ClientSession()
        try:
            await self._stream(session, emit)
        finally:
            if session is not self._session:
                await session.close()

    async def _stream(self, session: aiohttp.ClientSession, emit: EventSink) -> None:
        kind = TransportKind.PUSH
        try:
            logger.info(f"Connecting to {self.url}")
            async with session.ws_connect(self.url, heartbeat=self._heartbeat) as ws:
                emit(ConnectedEvent(kind, self.source_id))

                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        emit(PayloadEvent(kind, self.source_id, msg.data))
                    elif msg.type == aiohttp.WSMsgType.BINARY:
                        emit(PayloadEvent(kind, self.source_id, msg.data.decode("utf-8", "replace")))
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        emit(ErrorEvent(kind, self.source_id, PushTransportError(self.source_id, str(ws.exception()))))
                        return

                emit(ClosedEvent(kind, self.source_id, reason=f"close code {ws.close_code}"))

        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            emit(ErrorEvent(kind, self.source_id, PushTransportError(self.source_id, str(e) or type(e).__name__)))


class AiohttpPollTransport(PollTransport):
    """HTTP GET polling transport on aiohttp."""

    def __init__(
        self,
        request_timeout_s: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._request_timeout_s = request_timeout_s
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def fetch(self, endpoint: PollingEndpoint) -> Any:
        session = await self._get_session()
        kwargs: Dict[str, Any] = {}
        if self._request_timeout_s:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=self._request_timeout_s)

        try:
            async with session.get(endpoint.url, **kwargs) as resp:
                if resp.status != 200:
                    raise PollRequestError(endpoint.name, status_code=resp.status)
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise PayloadParseError(endpoint.name, f"invalid JSON body: {e}") from None
        except asyncio.TimeoutError as e:
            raise PollRequestError(endpoint.name, message="request timed out", original_error=e) from e
        except aiohttp.ClientError as e:
            raise PollRequestError(endpoint.name, original_error=e) from e

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
