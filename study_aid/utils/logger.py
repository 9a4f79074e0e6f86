"""
Logging setup for the study-aid processing worker.

Console output always; Logtail shipping when LOGTAIL_SOURCE_TOKEN is set.
Lines about one processing job go through ``job_logger`` so both sinks carry
the job and material ids.
"""
import json
import logging
import os
import sys
from typing import Any, Dict, MutableMapping, Optional, Tuple

try:
    from logtail import LogtailHandler
    LOGTAIL_AVAILABLE = True
except ImportError:
    LOGTAIL_AVAILABLE = False
    LogtailHandler = None

# Record attributes set by JobLogAdapter.
JOB_FIELDS = ("job_id", "material_id", "attempt")


class StructuredFormatter(logging.Formatter):
    """One JSON object per record for Logtail, with job fields when present."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.msg, dict):
            payload = dict(record.msg)
            message = payload.pop("message", "")
        else:
            payload = {}
            message = record.getMessage()
        log_data: Dict[str, Any] = {
            "message": message,
            "level": record.levelname,
            "logger": record.name,
            "timestamp": self.formatTime(record, self.datefmt),
        }
        for field in JOB_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value
        log_data.update(payload)
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class JobLogAdapter(logging.LoggerAdapter):
    """Appends job_id/material_id to the text and attaches them as record fields."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        fields = {key: value for key, value in self.extra.items() if value is not None}
        kwargs["extra"] = {**fields, **kwargs.get("extra", {})}
        if isinstance(msg, str) and fields:
            msg = f"{msg} [{' '.join(f'{key}={value}' for key, value in fields.items())}]"
        return msg, kwargs


_loggers: Dict[str, logging.Logger] = {}


def _resolve_level() -> int:
    name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get or create a logger with console and (optional) Logtail handlers.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    if name in _loggers:
        return _loggers[name]

    level = _resolve_level()
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        _loggers[name] = logger
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ConsoleFormatter())
    logger.addHandler(console_handler)

    logtail_token = os.getenv("LOGTAIL_SOURCE_TOKEN")
    logtail_host = os.getenv("LOGTAIL_INGEST_HOST", "in.logtail.com")

    if LOGTAIL_AVAILABLE and logtail_token:
        try:
            logtail_handler = LogtailHandler(source_token=logtail_token, host=logtail_host)
            logtail_handler.setLevel(level)
            logtail_handler.setFormatter(StructuredFormatter())
            logger.addHandler(logtail_handler)
        except Exception as e:
            logger.warning(f"Failed to initialize Logtail handler: {e}. Using console logging only.")
    elif logtail_token and not LOGTAIL_AVAILABLE:
        logger.debug("LOGTAIL_SOURCE_TOKEN is set but logtail-python is not installed")

    _loggers[name] = logger
    return logger


def job_logger(
    logger: logging.Logger,
    job_id: str,
    material_id: str,
    attempt: Optional[int] = None,
) -> JobLogAdapter:
    return JobLogAdapter(logger, {"job_id": job_id, "material_id": material_id, "attempt": attempt})
