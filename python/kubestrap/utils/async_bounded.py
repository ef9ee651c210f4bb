"""
kubestrap/utils/async_bounded.py

asyncio.gather with a concurrency cap, used to fan a stage out across nodes.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    func: Callable[[T], Awaitable[R]],
    items: Iterable[T],
    *,
    limit: int,
    return_exceptions: bool = False,
) -> List[Union[R, Any]]:
    """
    Run `func(item)` for every item with at most `limit` in flight, and wait
    for all of them. Results keep the order of `items`.

    With return_exceptions=True, failures are returned in place of results
    (as with asyncio.gather) so one item cannot stop the others.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _one(item: T) -> R:
        async with semaphore:
            return await func(item)

    return await asyncio.gather(
        *[_one(item) for item in items], return_exceptions=return_exceptions
    )
