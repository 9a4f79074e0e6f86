"""
Batched execution of chunk-level work with a concurrency cap and a pause
between batches.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence

from services.material_pipeline.constants import DEFAULT_BATCH_DELAY_SECONDS, DEFAULT_MAX_CONCURRENT_CHUNKS
from utils.logger import get_logger

logger = get_logger(__name__)

UnitOfWork = Callable[[Any], Awaitable[Any]]
ProgressCallback = Callable[[int, int], Any]


class RateLimitedBatchExecutor:
    """
    Runs ``unit_of_work`` over items in batches of at most ``concurrency``.

    Results come back in input order. The first failure cancels the rest of
    its batch and is raised; results gathered so far are discarded.
    """

    def __init__(
        self,
        concurrency: int = DEFAULT_MAX_CONCURRENT_CHUNKS,
        batch_delay: float = DEFAULT_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.concurrency = max(1, int(concurrency))
        self.batch_delay = max(0.0, float(batch_delay))
        self._sleep = sleep

    async def run(
        self,
        items: Iterable[Any],
        unit_of_work: UnitOfWork,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[Any]:
        item_list = list(items)
        total = len(item_list)
        results: List[Any] = []
        if not total:
            return results

        for batch_start in range(0, total, self.concurrency):
            if batch_start and self.batch_delay > 0:
                await self._sleep(self.batch_delay)
            batch = item_list[batch_start : batch_start + self.concurrency]
            results.extend(await self._run_batch(batch, unit_of_work))
            logger.debug("Batch finished: %s/%s items done", len(results), total)
            if on_progress is not None:
                outcome = on_progress(len(results), total)
                if asyncio.iscoroutine(outcome):
                    await outcome
        return results

    async def _run_batch(self, batch: Sequence[Any], unit_of_work: UnitOfWork) -> List[Any]:
        tasks = [asyncio.ensure_future(unit_of_work(item)) for item in batch]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        failed = [task for task in tasks if task in done and not task.cancelled() and task.exception() is not None]
        if failed:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            raise failed[0].exception()
        # Slots follow input order regardless of completion order.
        return [task.result() for task in tasks]
