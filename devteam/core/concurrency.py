"""Bounded-parallelism helpers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def map_limit(
    items: Iterable[T],
    limit: int,
    fn: Callable[[T], Awaitable[R]],
) -> list[Optional[R]]:
    """Apply fn to every item with at most `limit` calls in flight.

    Results keep input order. An item whose call raises yields None so one
    failure never aborts the batch.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> Optional[R]:
        async with semaphore:
            try:
                return await fn(item)
            except Exception as e:  # noqa: BLE001 - per-item failures degrade to None
                logger.debug("map_limit item failed: %s", e, exc_info=True)
                return None

    return list(await asyncio.gather(*(_run(item) for item in items)))
