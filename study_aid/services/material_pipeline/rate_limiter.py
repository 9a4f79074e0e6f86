"""
Process-wide cap on concurrent calls to the generation provider.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from services.material_pipeline.constants import DEFAULT_PROVIDER_CONCURRENCY


class ProviderLimiter:
    """
    Shared by every worker and stage in the process, so concurrent jobs still
    keep at most max_concurrent provider calls in flight together.
    """

    def __init__(self, max_concurrent: int = DEFAULT_PROVIDER_CONCURRENCY) -> None:
        self.max_concurrent = max(1, int(max_concurrent))
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._in_flight = 0
        self.peak_in_flight = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def _acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

    def _release(self) -> None:
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ProviderLimiter":
        await self._acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._release()

    async def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Run a blocking provider call in a thread while holding a slot.

        A thread cannot be interrupted, so when the caller is cancelled (a
        stage timeout, a worker shutdown) the slot stays taken until the
        thread returns.
        """
        await self._acquire()
        try:
            future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
        except BaseException:
            self._release()
            raise
        future.add_done_callback(self._on_call_done)
        return await asyncio.shield(future)

    def _on_call_done(self, future: asyncio.Future) -> None:
        self._release()
        if not future.cancelled():
            # Marks the outcome as retrieved when the caller is already gone.
            future.exception()
