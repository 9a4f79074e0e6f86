"""
Error taxonomy for material processing.

Every pipeline error says whether it is worth another attempt. Foreign
exceptions (provider SDKs, requests, asyncio) are classified by
is_retryable_error so the retry decision lives in one place.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class MaterialPipelineError(Exception):
    retryable: bool = False
    error_code: str = "pipeline_error"

    def __init__(self, message: str = "", *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code:
            self.error_code = error_code


class TransientProviderError(MaterialPipelineError):
    """Timeouts, connection resets, 5xx responses from a provider."""

    retryable = True
    error_code = "provider_unavailable"


class ProviderRateLimitError(TransientProviderError):
    error_code = "provider_rate_limited"

    def __init__(self, message: str = "", *, retry_after_seconds: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class StageTimeoutError(MaterialPipelineError):
    retryable = True
    error_code = "stage_timeout"


class ContentValidationError(MaterialPipelineError):
    """Malformed provider output or content that fails structural checks."""

    retryable = False
    error_code = "validation_failed"


class StoreError(MaterialPipelineError):
    """Persistent store read/write failure; retried at job level only."""

    retryable = False
    error_code = "store_error"


class MaterialNotFoundError(MaterialPipelineError):
    retryable = False
    error_code = "material_not_found"


class InvalidTransitionError(MaterialPipelineError):
    """A task status change that the lifecycle does not allow."""

    retryable = False
    error_code = "invalid_transition"


class StageFailedError(MaterialPipelineError):
    """Raised by the stage runner once a stage has stopped the sequence."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage}: {describe_error(cause)}", error_code=error_code_for(cause))
        self.stage = stage
        self.cause = cause
        self.retryable = is_retryable_error(cause) or isinstance(cause, StoreError)


_RETRYABLE_MARKERS = (
    "429",
    "rate limit",
    "ratelimit",
    "resource exhausted",
    "too many requests",
    "502",
    "503",
    "504",
    "timed out",
    "timeout",
    "temporarily unavailable",
    "connection reset",
)


def is_rate_limit_message(message: str) -> bool:
    lower = (message or "").lower()
    return "429" in lower or "rate limit" in lower or "resource exhausted" in lower or "too many requests" in lower


def is_retryable_error(exc: BaseException) -> bool:
    """Return True when *exc* is a transient failure worth retrying."""
    if isinstance(exc, MaterialPipelineError):
        return exc.retryable
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    lower = str(exc or "").lower()
    return any(marker in lower for marker in _RETRYABLE_MARKERS)


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, MaterialPipelineError):
        return exc.error_code
    return "transient_error" if is_retryable_error(exc) else "unexpected_error"


def describe_error(exc: BaseException) -> str:
    """Human-readable reason; never a bare class name without context."""
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return message
