"""
Tests for the once-initialized async guard.
"""

import asyncio

import pytest

from jlpt_explainer.once import AsyncOnce


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_build() -> None:
    calls = []

    async def factory() -> str:
        calls.append(1)
        await asyncio.sleep(0.01)
        return "ready"

    once = AsyncOnce(factory)
    results = await asyncio.gather(*(once.get() for _ in range(5)))

    assert results == ["ready"] * 5
    assert calls == [1]
    assert once.ready
    assert await once.get() == "ready"
    assert calls == [1]


@pytest.mark.asyncio
async def test_failed_build_is_retried() -> None:
    attempts = []

    async def factory() -> int:
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("boom")
        return len(attempts)

    once = AsyncOnce(factory)
    with pytest.raises(RuntimeError):
        await once.get()
    assert not once.ready

    assert await once.get() == 2
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_reset_forces_rebuild() -> None:
    counter = []

    async def factory() -> int:
        counter.append(1)
        return len(counter)

    once = AsyncOnce(factory)
    assert await once.get() == 1
    once.reset()
    assert not once.ready
    assert await once.get() == 2


def test_survives_separate_event_loops() -> None:
    """A value built under one event loop is reused under the next."""
    counter = []

    async def factory() -> int:
        counter.append(1)
        return len(counter)

    once = AsyncOnce(factory)
    assert asyncio.run(once.get()) == 1
    assert asyncio.run(once.get()) == 1
    assert counter == [1]
