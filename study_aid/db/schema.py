"""
Table definitions for study materials and their processing records.

Plain DDL that runs unchanged on SQLite and PostgreSQL. JSON payloads are
stored as TEXT; timestamps are UTC ISO-8601 strings (see utc_now_iso).
"""

from __future__ import annotations

from sqlalchemy import text

from db.sql_db import get_db_session

_DDL = [
    """
    CREATE TABLE IF NOT EXISTS study_material (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT,
        blob_ref TEXT NOT NULL,
        kind TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        extracted_text TEXT,
        category TEXT,
        topics_json TEXT,
        summary TEXT,
        key_points_json TEXT,
        difficulty_level TEXT,
        questions_json TEXT,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS material_processing_task (
        id TEXT PRIMARY KEY,
        material_id TEXT NOT NULL REFERENCES study_material(id),
        stage TEXT NOT NULL,
        stage_index INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        progress DOUBLE PRECISION NOT NULL DEFAULT 0,
        result_json TEXT,
        error_message TEXT,
        message TEXT,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CONSTRAINT uq_material_processing_task_stage UNIQUE (material_id, stage)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS material_processing_job (
        id TEXT PRIMARY KEY,
        material_id TEXT NOT NULL REFERENCES study_material(id),
        status TEXT NOT NULL DEFAULT 'pending',
        attempt_count INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        retry_delay_seconds DOUBLE PRECISION NOT NULL DEFAULT 5,
        error_code TEXT,
        error_detail TEXT,
        created_at TEXT NOT NULL,
        scheduled_for TEXT NOT NULL,
        started_at TEXT,
        finished_at TEXT,
        worker_id TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_study_material_owner ON study_material (owner_id, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_material_processing_task_material ON material_processing_task (material_id, stage_index)",
    "CREATE INDEX IF NOT EXISTS ix_material_processing_job_due ON material_processing_job (status, scheduled_for)",
    "CREATE INDEX IF NOT EXISTS ix_material_processing_job_material ON material_processing_job (material_id, created_at)",
]

TABLE_NAMES = ("study_material", "material_processing_task", "material_processing_job")


def ensure_schema() -> None:
    """Create the material processing tables and indexes when missing."""
    with get_db_session() as session:
        for statement in _DDL:
            session.execute(text(statement))
