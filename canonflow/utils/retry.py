"""Retry utilities for handling transient failures.

Provides the backoff arithmetic shared by the execution engine's step
retries and a decorator for retrying async operations (used by the file
store around filesystem writes).

Backoff Formula:
    delay(attempt) = base_delay * multiplier ** (attempt - 1)
    For base_delay=1.0, multiplier=2.0: 1s, 2s, 4s, 8s, ...
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)


def backoff_delay(attempt: int, base_delay: float, multiplier: float) -> float:
    """Compute the delay before retrying after a failed attempt.

    Args:
        attempt: 1-based number of the attempt that just failed
        base_delay: Delay after the first failure, in seconds
        multiplier: Growth factor applied per subsequent failure

    Returns:
        Delay in seconds (never negative)
    """
    if attempt < 1 or base_delay <= 0:
        return 0.0
    return float(base_delay * multiplier ** (attempt - 1))


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 0.05,
    multiplier: float = 2.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with exponential backoff retry logic.

    Args:
        max_attempts: Maximum number of attempts before giving up
        base_delay: Delay after the first failure, in seconds
        multiplier: Backoff growth factor
        exceptions: Exception types that trigger a retry. Others propagate
            immediately.

    Raises:
        The last caught exception if all attempts are exhausted.

    Example:
        >>> @async_retry(max_attempts=3, exceptions=(OSError,))
        ... async def write_file(path, data):
        ...     ...
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, multiplier)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
