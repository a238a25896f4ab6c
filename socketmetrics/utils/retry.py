"""
Retry helpers with exponential backoff.

Used for:
- Background push stream re-attempts while the feed is polling
- Opening the summary store at startup
"""

import asyncio
import functools
import logging
import random
from typing import Any, Callable, Optional, Tuple, Type

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """Raised when retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: Exception):
        super().__init__(message)
        self.last_exception = last_exception


class ExponentialBackoff:
    """
    Exponential backoff delays with optional +/-25% jitter.

    Args:
        base: Delay for the first retry, in seconds
        multiplier: Growth factor per attempt
        max_delay: Cap in seconds
        jitter: Randomize delays so reconnecting clients spread out

    Example:
        >>> backoff = ExponentialBackoff(base=5.0, max_delay=300.0, jitter=False)
        >>> [backoff.calculate(n) for n in range(4)]
        [5.0, 10.0, 20.0, 40.0]
    """

    def __init__(
        self,
        base: float = 1.0,
        multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = True,
    ):
        self.base = base
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter

    def calculate(self, attempt: int) -> float:
        """
        Delay before retry number `attempt` (0-indexed), in seconds.
        """
        delay = min(self.base * (self.multiplier**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * 0.25
            delay += random.uniform(-jitter_amount, jitter_amount)

        return max(0.0, delay)


def retry_async(
    max_attempts: int = 3,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    base_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 60.0,
    jitter: bool = True,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Decorator for async functions with exponential backoff retry.

    Args:
        max_attempts: Maximum number of attempts (includes initial call)
        exceptions: Exception types that trigger a retry
        base_delay: Base delay in seconds
        multiplier: Exponential growth factor
        max_delay: Maximum delay cap in seconds
        jitter: Add random jitter to delays
        on_retry: Optional callback called on each failure (exception, attempt)

    Raises:
        RetryError: All attempts failed

    Example:
        >>> @retry_async(max_attempts=5, exceptions=(StoreError,))
        ... async def open_store():
        ...     await store.open()
    """
    backoff = ExponentialBackoff(base_delay, multiplier, max_delay, jitter)

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            last_exception: Optional[Exception] = None

            for attempt in range(max_attempts):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed for {func.__name__}: {e}")

                    if on_retry:
                        on_retry(e, attempt)

                    if attempt < max_attempts - 1:
                        delay = backoff.calculate(attempt)
                        logger.info(f"Retrying in {delay:.2f} seconds...")
                        await asyncio.sleep(delay)

            error_msg = f"{func.__name__} failed after {max_attempts} attempts. Last error: {last_exception}"
            logger.error(error_msg)
            raise RetryError(error_msg, last_exception)  # type: ignore

        return wrapper

    return decorator
