# src/api/retry.py
#
# Retry utilities with exponential backoff:
# - retry_with_backoff: async, used for distance/routing API calls
# - retry_sync: decorator, used for order-store writes during commit

import asyncio
import inspect
import logging
import time
from functools import wraps
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def retry_with_backoff(
    func: Callable,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,),
    label: Optional[str] = None,
) -> T:
    """
    Call `func` until it succeeds or the retries run out.

    Args:
        func: async (or plain) zero-argument callable
        max_retries: retries after the first attempt
        initial_delay: first sleep in seconds, doubled (exponential_base) each time
        max_delay: cap on a single sleep
        exceptions: only these are retried; anything else propagates at once
        label: name used in the log lines (defaults to the function name)

    Returns:
        Whatever `func` returns

    Raises:
        The last exception once every attempt failed
    """
    name = label or getattr(func, "__name__", "call")
    delay = initial_delay

    for attempt in range(max_retries + 1):
        try:
            if inspect.iscoroutinefunction(func):
                return await func()
            return func()
        except exceptions as e:
            if attempt >= max_retries:
                logger.error(f"{name}: all {max_retries + 1} attempts failed. Last error: {e}")
                raise
            logger.warning(
                f"{name}: attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            await asyncio.sleep(delay)
            delay = min(delay * exponential_base, max_delay)


def retry_sync(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Decorator for synchronous functions with retry logic.

    Usage:
        @retry_sync(max_retries=2, exceptions=(sqlite3.OperationalError,))
        def write_order():
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.error(f"All {max_retries + 1} attempts failed for {func.__name__}. Last error: {e}")
                        raise
                    logger.warning(
                        f"Attempt {attempt + 1}/{max_retries + 1} failed for {func.__name__}: {e}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)
                    delay = min(delay * exponential_base, max_delay)

        return wrapper
    return decorator
