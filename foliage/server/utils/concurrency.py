"""Bounded fan-out of independent object store calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

logger = logging.getLogger(__name__)

__all__ = ["run_bounded"]

_T = TypeVar("_T")


async def run_bounded(
    items: Iterable[_T],
    call: Callable[[_T], Awaitable[bool]],
    concurrency: int,
    timeout: float | None = None,
) -> list[bool]:
    """Run call for every item with at most `concurrency` calls in flight.

    Each call reports success as a bool. An exception or a timeout counts as a
    failure for that item only; sibling calls keep running. Results are
    returned in the order of items.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")
    semaphore = asyncio.Semaphore(concurrency)

    async def _run(item: _T) -> bool:
        async with semaphore:
            try:
                if timeout is None:
                    return await call(item)
                return await asyncio.wait_for(call(item), timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Object store call for {item} timed out after {timeout}s")
                return False
            except Exception:
                logger.exception(f"Object store call for {item} failed")
                return False

    return list(await asyncio.gather(*(_run(item) for item in items)))
