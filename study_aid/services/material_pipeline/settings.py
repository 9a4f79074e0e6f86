"""
Runtime configuration for the material pipeline, read from the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from services.material_pipeline import constants


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    try:
        value = int(str(os.getenv(name, default)).strip())
    except ValueError:
        value = default
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    try:
        value = float(str(os.getenv(name, default)).strip())
    except ValueError:
        value = default
    return max(minimum, value)


@dataclass(frozen=True)
class PipelineSettings:
    enabled: bool = True
    chunk_size: int = constants.DEFAULT_CHUNK_SIZE
    max_concurrent_chunks: int = constants.DEFAULT_MAX_CONCURRENT_CHUNKS
    batch_delay_seconds: float = constants.DEFAULT_BATCH_DELAY_SECONDS
    provider_concurrency: int = constants.DEFAULT_PROVIDER_CONCURRENCY
    chunk_max_attempts: int = constants.DEFAULT_CHUNK_MAX_ATTEMPTS
    chunk_retry_delay_seconds: float = constants.DEFAULT_CHUNK_RETRY_DELAY_SECONDS
    job_max_attempts: int = constants.DEFAULT_JOB_MAX_ATTEMPTS
    job_retry_delay_seconds: float = constants.DEFAULT_JOB_RETRY_DELAY_SECONDS
    stage_timeout_seconds: float = constants.DEFAULT_STAGE_TIMEOUT_SECONDS
    question_chunk_threshold: int = constants.DEFAULT_QUESTION_CHUNK_THRESHOLD
    question_count: int = constants.DEFAULT_QUESTION_COUNT
    question_difficulty: str = constants.DEFAULT_QUESTION_DIFFICULTY
    worker_concurrency: int = 4
    poll_interval_seconds: float = 5.0
    stalled_job_minutes: int = 120

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        load_dotenv()
        difficulty = os.getenv("MATERIAL_QUESTION_DIFFICULTY", constants.DEFAULT_QUESTION_DIFFICULTY).strip().lower()
        if difficulty not in constants.QUESTION_DIFFICULTIES:
            difficulty = constants.DEFAULT_QUESTION_DIFFICULTY
        return cls(
            enabled=_env_bool("MATERIAL_PIPELINE_ENABLED", True),
            chunk_size=_env_int("MATERIAL_CHUNK_SIZE", constants.DEFAULT_CHUNK_SIZE),
            max_concurrent_chunks=_env_int("MATERIAL_MAX_CONCURRENT_CHUNKS", constants.DEFAULT_MAX_CONCURRENT_CHUNKS),
            batch_delay_seconds=_env_float("MATERIAL_BATCH_DELAY_SECONDS", constants.DEFAULT_BATCH_DELAY_SECONDS),
            provider_concurrency=_env_int("MATERIAL_PROVIDER_CONCURRENCY", constants.DEFAULT_PROVIDER_CONCURRENCY),
            chunk_max_attempts=_env_int("MATERIAL_CHUNK_MAX_ATTEMPTS", constants.DEFAULT_CHUNK_MAX_ATTEMPTS),
            chunk_retry_delay_seconds=_env_float(
                "MATERIAL_CHUNK_RETRY_DELAY_SECONDS", constants.DEFAULT_CHUNK_RETRY_DELAY_SECONDS
            ),
            job_max_attempts=_env_int("MATERIAL_JOB_MAX_ATTEMPTS", constants.DEFAULT_JOB_MAX_ATTEMPTS),
            job_retry_delay_seconds=_env_float(
                "MATERIAL_JOB_RETRY_DELAY_SECONDS", constants.DEFAULT_JOB_RETRY_DELAY_SECONDS
            ),
            stage_timeout_seconds=_env_float(
                "MATERIAL_STAGE_TIMEOUT_SECONDS", constants.DEFAULT_STAGE_TIMEOUT_SECONDS, minimum=1.0
            ),
            question_chunk_threshold=_env_int(
                "MATERIAL_QUESTION_CHUNK_THRESHOLD", constants.DEFAULT_QUESTION_CHUNK_THRESHOLD
            ),
            question_count=_env_int("MATERIAL_QUESTION_COUNT", constants.DEFAULT_QUESTION_COUNT),
            question_difficulty=difficulty,
            worker_concurrency=_env_int("MATERIAL_WORKER_CONCURRENCY", 4),
            poll_interval_seconds=_env_float("MATERIAL_POLL_INTERVAL_SECONDS", 5.0, minimum=0.1),
            stalled_job_minutes=_env_int("MATERIAL_STALLED_JOB_MINUTES", 120),
        )
