"""
Bounded retry with linear backoff.

One policy object serves every retry site in the pipeline: single provider
calls, per-chunk units of work, and text extraction. Delays grow as
``base_delay * attempt`` (1s, 2s, 3s ... with the defaults).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from services.material_pipeline.errors import describe_error, is_retryable_error
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AttemptEvent:
    attempt: int
    max_attempts: int
    succeeded: bool
    error: Optional[BaseException] = None
    will_retry: bool = False
    delay_seconds: float = 0.0


AttemptCallback = Callable[[AttemptEvent], Any]
Classifier = Callable[[BaseException], bool]
Sleeper = Callable[[float], Awaitable[Any]]


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        classifier: Classifier = is_retryable_error,
        sleep: Sleeper = asyncio.sleep,
        description: str = "operation",
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(0.0, float(base_delay))
        self.classifier = classifier
        self._sleep = sleep
        self.description = description

    def delay_for(self, attempt: int, error: Optional[BaseException] = None) -> float:
        delay = self.base_delay * attempt
        retry_after = getattr(error, "retry_after_seconds", None)
        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[Any]],
        on_attempt: Optional[AttemptCallback] = None,
    ) -> Tuple[Any, int]:
        """
        Run *operation* until it succeeds, fails fatally, or attempts run out.

        Returns ``(result, attempts_made)``. On failure the last error is
        re-raised unchanged; non-retryable errors are raised after the attempt
        that produced them.
        """
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retryable = self.classifier(exc)
                will_retry = retryable and attempt < self.max_attempts
                delay = self.delay_for(attempt, exc) if will_retry else 0.0
                await _notify(
                    on_attempt,
                    AttemptEvent(
                        attempt=attempt,
                        max_attempts=self.max_attempts,
                        succeeded=False,
                        error=exc,
                        will_retry=will_retry,
                        delay_seconds=delay,
                    ),
                )
                if not will_retry:
                    if retryable:
                        logger.warning(
                            "%s failed after %s/%s attempts: %s",
                            self.description,
                            attempt,
                            self.max_attempts,
                            describe_error(exc),
                        )
                    raise
                logger.info(
                    "%s attempt %s/%s failed (%s); retrying in %.1fs",
                    self.description,
                    attempt,
                    self.max_attempts,
                    describe_error(exc),
                    delay,
                )
                if delay > 0:
                    await self._sleep(delay)
                continue
            await _notify(
                on_attempt,
                AttemptEvent(attempt=attempt, max_attempts=self.max_attempts, succeeded=True),
            )
            return result, attempt
        # The loop either returns or raises; max_attempts is at least 1.
        raise RuntimeError("unreachable")


async def _notify(callback: Optional[AttemptCallback], event: AttemptEvent) -> None:
    if callback is None:
        return
    outcome = callback(event)
    if asyncio.iscoroutine(outcome):
        await outcome
