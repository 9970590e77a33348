from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Iterable
from typing import TypeVar


T = TypeVar("T")


async def gather_all(awaitables: Iterable[Awaitable[T]]) -> list[T]:
    """Await everything concurrently; on the first failure cancel the rest.

    Unlike a bare ``asyncio.gather`` no sibling is left running once the
    caller has stopped waiting for it.
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
