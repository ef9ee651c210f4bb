"""
kubestrap/utils/async_retry.py

Provides a decorator to retry an async function multiple times upon failure.
"""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Tuple, Type
from typing_extensions import ParamSpec, TypeVar

P = ParamSpec("P")
R = TypeVar("R")

logger = logging.getLogger(__name__)


def async_retry(
    retries: int = 3,
    delay: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable[
    [Callable[P, Coroutine[Any, Any, R]]], Callable[P, Coroutine[Any, Any, R]]
]:
    """Decorates an async function to retry upon failure.

    The decorated function is attempted up to `retries` times, sleeping `delay`
    seconds between attempts. Only exceptions matching `retry_on` trigger a
    retry; anything else propagates on the first occurrence.

    Args:
        retries (int, optional):
            Maximum number of total attempts (not just failures). Values below 1
            are treated as 1. Defaults to 3.
        delay (float, optional):
            Delay in seconds between attempts. Defaults to 1.0.
        retry_on (Tuple[Type[BaseException], ...], optional):
            Exception types that are worth another attempt. Defaults to (Exception,).

    Returns:
        A decorator that, when applied to an async function, returns a wrapped
        version that retries on the selected exceptions.
    """
    attempts = max(1, retries)

    def decorator(
        func: Callable[P, Coroutine[Any, Any, R]]
    ) -> Callable[P, Coroutine[Any, Any, R]]:
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            for attempt_number in range(1, attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retry_on as exc:
                    logger.debug(
                        "Attempt %d/%d for %r failed: %s",
                        attempt_number,
                        attempts,
                        func.__qualname__,
                        exc,
                    )
                    if attempt_number == attempts:
                        raise
                    await asyncio.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        wrapper.__qualname__ = func.__qualname__
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator
