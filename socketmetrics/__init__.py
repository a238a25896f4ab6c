"""
SocketMetrics - real-time price ingestion, aggregation and websocket broadcast.

Subpackages:
- engine: feed manager, tick buffer, aggregator, broadcast hub, stores
- server: aiohttp routes and subscriber websocket
- apps:   command-line runner
- utils:  retry helpers
"""

__version__ = "1.0.0"
