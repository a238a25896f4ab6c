"""HTTP and websocket surface for the engine."""

from .web_app import ENGINE_KEY, WebSocketConnection, build_app

__all__ = [
    "ENGINE_KEY",
    "WebSocketConnection",
    "build_app",
]
