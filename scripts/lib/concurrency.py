"""
Bounded fan-out for async work.

Usage:
    from scripts.lib.concurrency import bounded_gather

    results = await bounded_gather([fetch(a), fetch(b)], limit=4)
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Iterable, List


async def bounded_gather(
    aws: Iterable[Awaitable[Any]],
    limit: int,
    return_exceptions: bool = False,
) -> List[Any]:
    """
    Await every awaitable with at most ``limit`` running at once.

    Results keep input order. With ``return_exceptions`` a failure is returned
    in place of its result instead of propagating.
    """
    aws = list(aws)
    if not aws:
        return []
    semaphore = asyncio.Semaphore(max(1, min(limit, len(aws))))

    async def _run(aw: Awaitable[Any]) -> Any:
        async with semaphore:
            return await aw

    return await asyncio.gather(
        *(_run(aw) for aw in aws), return_exceptions=return_exceptions,
    )
