"""
Exception types raised inside the engine.

None of these are fatal to the process: the feed recovers from FeedError
subclasses, the aggregator logs and swallows StoreError.
"""

from typing import Optional


class FeedError(Exception):
    """Base exception for ingestion failures."""

    def __init__(self, source_id: str, message: str):
        self.source_id = source_id
        self.message = message
        super().__init__(f"{source_id}: {message}")


class PayloadParseError(FeedError):
    """Raised when a payload is malformed or yields an invalid tick."""

    def __init__(self, source_id: str, message: str, payload: str = ""):
        self.payload = payload
        super().__init__(source_id, message)


class PollRequestError(FeedError):
    """Raised when a polling request fails (non-200 status or client error)."""

    def __init__(self, source_id: str, status_code: int = 0, message: str = "", original_error: Optional[Exception] = None):
        self.status_code = status_code
        self.original_error = original_error
        if not message:
            message = f"HTTP {status_code}" if status_code else f"request failed: {original_error}"
        super().__init__(source_id, message)


class PushTransportError(FeedError):
    """Raised when the push stream cannot be opened or breaks."""


class ConnectTimeoutError(PushTransportError):
    """Raised when the push handshake does not complete within the connect timeout."""


class StoreError(Exception):
    """Raised when a summary store operation fails."""

    def __init__(self, operation: str, original_error: Optional[Exception] = None):
        self.operation = operation
        self.original_error = original_error
        super().__init__(f"Store {operation} failed: {original_error}")
