"""Once-initialized async resources.

``AsyncOnce`` runs a coroutine factory at most once per successful build.
Concurrent first callers share a single in-flight task; when the build fails
every waiter sees the error and the guard is cleared so the next call retries.
"""

import asyncio
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class AsyncOnce(Generic[T]):
    def __init__(self, factory: Callable[[], Awaitable[T]]) -> None:
        self._factory = factory
        self._task: Optional["asyncio.Task[T]"] = None
        self._value: Any = None
        self._ready = False

    @property
    def ready(self) -> bool:
        return self._ready

    async def get(self) -> T:
        if self._ready:
            return self._value
        task = self._task
        # A task left behind by another event loop cannot be awaited here.
        if task is None or task.get_loop() is not asyncio.get_running_loop():
            task = asyncio.ensure_future(self._build())
            self._task = task
        # Shield so a caller that times out does not cancel the shared build.
        return await asyncio.shield(task)

    async def _build(self) -> T:
        try:
            value = await self._factory()
        except BaseException:
            self._task = None
            raise
        self._value = value
        self._ready = True
        return value

    def reset(self) -> None:
        """Forget the built value; the next ``get`` rebuilds."""
        self._task = None
        self._value = None
        self._ready = False
