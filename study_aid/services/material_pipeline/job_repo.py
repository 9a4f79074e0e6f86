"""
Repository for material_processing_job operations.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from db.sql_db import dt_to_utc_iso, utc_now_iso
from services.material_pipeline.constants import (
    DEFAULT_JOB_MAX_ATTEMPTS,
    DEFAULT_JOB_RETRY_DELAY_SECONDS,
    MAX_ERROR_CHARS,
)
from services.material_pipeline.material_repo import store_session
from services.material_pipeline.types import Job

_JOB_COLUMNS = """
    id, material_id, status, attempt_count, max_attempts, retry_delay_seconds, error_code, error_detail,
    created_at, scheduled_for, started_at, finished_at, worker_id
"""

_CLAIM_RACE_RETRIES = 3


class MaterialJobRepository:
    def create_job(
        self,
        material_id: str,
        max_attempts: int = DEFAULT_JOB_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_JOB_RETRY_DELAY_SECONDS,
    ) -> Job:
        job_id = str(uuid.uuid4())
        now = utc_now_iso()
        with store_session("create_job") as session:
            session.execute(
                text(
                    """
                    INSERT INTO material_processing_job (
                        id, material_id, status, attempt_count, max_attempts, retry_delay_seconds,
                        created_at, scheduled_for
                    ) VALUES (
                        :id, :material_id, 'pending', 0, :max_attempts, :retry_delay_seconds, :now, :now
                    )
                    """
                ),
                {
                    "id": job_id,
                    "material_id": str(material_id),
                    "max_attempts": max(1, int(max_attempts)),
                    "retry_delay_seconds": max(0.0, float(retry_delay_seconds)),
                    "now": now,
                },
            )
            row = _select_job(session, job_id)
        return _row_to_job(row)

    def get_job(self, job_id: str) -> Optional[Job]:
        with store_session("get_job") as session:
            row = _select_job(session, str(job_id))
        return _row_to_job(row) if row else None

    def get_active_job_for_material(self, material_id: str) -> Optional[Job]:
        with store_session("get_active_job_for_material") as session:
            row = session.execute(
                text(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM material_processing_job
                    WHERE material_id = :material_id
                      AND status IN ('pending', 'running')
                    ORDER BY created_at DESC
                    LIMIT 1
                    """
                ),
                {"material_id": str(material_id)},
            ).mappings().fetchone()
        return _row_to_job(row) if row else None

    def claim_next_due(self, worker_id: str, now: Optional[str] = None) -> Optional[Job]:
        """
        Flip the oldest due pending job to running for *worker_id*.

        Select-then-conditional-update works on SQLite and PostgreSQL alike;
        a lost race shows up as rowcount 0 and the next candidate is tried.
        """
        now = now or utc_now_iso()
        for _ in range(_CLAIM_RACE_RETRIES):
            with store_session("claim_next_due") as session:
                candidate = session.execute(
                    text(
                        """
                        SELECT id
                        FROM material_processing_job
                        WHERE status = 'pending'
                          AND scheduled_for <= :now
                        ORDER BY scheduled_for ASC, created_at ASC
                        LIMIT 1
                        """
                    ),
                    {"now": now},
                ).mappings().fetchone()
                if not candidate:
                    return None
                result = session.execute(
                    text(
                        """
                        UPDATE material_processing_job
                        SET status = 'running',
                            started_at = :now,
                            worker_id = :worker_id
                        WHERE id = :job_id
                          AND status = 'pending'
                        """
                    ),
                    {"job_id": candidate["id"], "worker_id": worker_id, "now": now},
                )
                if int(result.rowcount or 0) == 1:
                    row = _select_job(session, candidate["id"])
                    return _row_to_job(row)
        return None

    def count_pending(self) -> int:
        with store_session("count_pending") as session:
            value = session.execute(
                text("SELECT COUNT(*) FROM material_processing_job WHERE status = 'pending'")
            ).scalar()
        return int(value or 0)

    def set_attempt_count(self, job_id: str, attempt_count: int) -> None:
        with store_session("set_attempt_count") as session:
            session.execute(
                text(
                    """
                    UPDATE material_processing_job
                    SET attempt_count = :attempt_count
                    WHERE id = :job_id
                    """
                ),
                {"job_id": str(job_id), "attempt_count": int(attempt_count)},
            )

    def mark_retry_scheduled(self, job_id: str, delay_seconds: float, error_code: str, error_detail: str) -> str:
        """Put a running job back to pending, due after *delay_seconds*."""
        due = dt_to_utc_iso(datetime.now(timezone.utc) + timedelta(seconds=max(0.0, float(delay_seconds))))
        with store_session("mark_retry_scheduled") as session:
            session.execute(
                text(
                    """
                    UPDATE material_processing_job
                    SET status = 'pending',
                        scheduled_for = :scheduled_for,
                        error_code = :error_code,
                        error_detail = :error_detail,
                        worker_id = NULL
                    WHERE id = :job_id
                    """
                ),
                {
                    "job_id": str(job_id),
                    "scheduled_for": due,
                    "error_code": (error_code or "")[:200],
                    "error_detail": (error_detail or "")[:MAX_ERROR_CHARS],
                },
            )
        return due

    def mark_completed(self, job_id: str) -> None:
        now = utc_now_iso()
        with store_session("mark_completed") as session:
            session.execute(
                text(
                    """
                    UPDATE material_processing_job
                    SET status = 'completed',
                        error_code = NULL,
                        error_detail = NULL,
                        finished_at = :finished_at
                    WHERE id = :job_id
                    """
                ),
                {"job_id": str(job_id), "finished_at": now},
            )

    def mark_failed(self, job_id: str, error_code: str, error_detail: str) -> None:
        now = utc_now_iso()
        with store_session("mark_failed") as session:
            session.execute(
                text(
                    """
                    UPDATE material_processing_job
                    SET status = 'failed',
                        error_code = :error_code,
                        error_detail = :error_detail,
                        finished_at = :finished_at
                    WHERE id = :job_id
                    """
                ),
                {
                    "job_id": str(job_id),
                    "error_code": (error_code or "")[:200],
                    "error_detail": (error_detail or "")[:MAX_ERROR_CHARS],
                    "finished_at": now,
                },
            )

    def release_worker_jobs(self, worker_id: str) -> int:
        with store_session("release_worker_jobs") as session:
            result = session.execute(
                text(
                    """
                    UPDATE material_processing_job
                    SET status = 'pending',
                        worker_id = NULL
                    WHERE status = 'running'
                      AND worker_id = :worker_id
                    """
                ),
                {"worker_id": worker_id},
            )
            return int(result.rowcount or 0)

    def recover_stalled_jobs(self, max_age_minutes: int = 120) -> int:
        """Return running jobs started more than *max_age_minutes* ago to pending."""
        cutoff = dt_to_utc_iso(datetime.now(timezone.utc) - timedelta(minutes=max(1, int(max_age_minutes))))
        with store_session("recover_stalled_jobs") as session:
            result = session.execute(
                text(
                    """
                    UPDATE material_processing_job
                    SET status = 'pending',
                        worker_id = NULL
                    WHERE status = 'running'
                      AND started_at IS NOT NULL
                      AND started_at < :cutoff
                    """
                ),
                {"cutoff": cutoff},
            )
            return int(result.rowcount or 0)


def _select_job(session: Session, job_id: str):
    return session.execute(
        text(f"SELECT {_JOB_COLUMNS} FROM material_processing_job WHERE id = :job_id"),
        {"job_id": job_id},
    ).mappings().fetchone()


def _row_to_job(row: Any) -> Job:
    data = dict(row)
    return Job(
        id=str(data["id"]),
        material_id=str(data["material_id"]),
        status=str(data.get("status") or "pending"),
        attempt_count=int(data.get("attempt_count") or 0),
        max_attempts=int(data.get("max_attempts") or DEFAULT_JOB_MAX_ATTEMPTS),
        retry_delay_seconds=float(data.get("retry_delay_seconds") or 0.0),
        error_code=data.get("error_code"),
        error_detail=data.get("error_detail"),
        created_at=data.get("created_at"),
        scheduled_for=data.get("scheduled_for"),
        started_at=data.get("started_at"),
        finished_at=data.get("finished_at"),
        worker_id=data.get("worker_id"),
    )
