"""Utility modules for the socketmetrics package."""

from .retry import ExponentialBackoff, RetryError, retry_async

__all__ = [
    "ExponentialBackoff",
    "RetryError",
    "retry_async",
]
