from __future__ import annotations

import asyncio

import pytest

from mapdiffbot.tasks import gather_all


@pytest.mark.asyncio
async def test_gather_all_preserves_order() -> None:
    async def value(delay: float, result: int) -> int:
        await asyncio.sleep(delay)
        return result

    assert await gather_all([value(0.02, 1), value(0, 2), value(0.01, 3)]) == [1, 2, 3]


@pytest.mark.asyncio
async def test_gather_all_cancels_siblings_on_failure() -> None:
    cancelled: list[str] = []

    async def slow(name: str) -> int:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(name)
            raise
        return 0

    async def fail() -> int:
        await asyncio.sleep(0)
        raise RuntimeError("render failed")

    with pytest.raises(RuntimeError, match="render failed"):
        await gather_all([slow("a"), fail(), slow("b")])
    assert sorted(cancelled) == ["a", "b"]


@pytest.mark.asyncio
async def test_gather_all_cancels_children_when_caller_is_cancelled() -> None:
    started = asyncio.Event()
    child_cancelled = asyncio.Event()

    async def child() -> None:
        started.set()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            child_cancelled.set()
            raise

    outer = asyncio.create_task(gather_all([child()]))
    await started.wait()
    outer.cancel()

    with pytest.raises(asyncio.CancelledError):
        await outer
    assert child_cancelled.is_set()


@pytest.mark.asyncio
async def test_gather_all_empty() -> None:
    assert await gather_all([]) == []
