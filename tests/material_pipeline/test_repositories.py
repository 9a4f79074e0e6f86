"""Material and job repository tests against a throwaway SQLite database."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from db.schema import TABLE_NAMES
from db.sql_db import check_table_exists, dt_to_utc_iso, get_db_session
from services.material_pipeline.constants import STAGE_ORDER
from services.material_pipeline.job_repo import MaterialJobRepository
from services.material_pipeline.material_repo import MaterialRepository
from services.material_pipeline.types import Question

pytestmark = [pytest.mark.repo]


def test_schema_creates_all_tables(sqlite_db):
    for table in TABLE_NAMES:
        assert check_table_exists(table)


def test_material_roundtrip_with_json_fields(sqlite_db):
    repo = MaterialRepository()
    material = repo.create_material("owner-1", "  /data/notes.pdf ", "Document", title="Notes")
    assert material.status == "pending"
    assert material.kind == "document"
    assert material.blob_ref == "/data/notes.pdf"

    question = Question(
        question="Q?", options=["a", "b", "c", "d"], correct_index=2, explanation="because", tags=["t"]
    )
    repo.update_material(
        material.id,
        {"category": "Aviation", "topics": ["Lift"], "key_points": ["k1"], "questions": [question]},
    )

    stored = repo.get_material(material.id)
    assert stored.category == "Aviation"
    assert stored.topics == ["Lift"]
    assert stored.key_points == ["k1"]
    assert stored.questions == [question]
    assert repo.get_material("missing") is None


def test_material_rejects_unknown_kind_and_fields(sqlite_db):
    repo = MaterialRepository()
    with pytest.raises(ValueError):
        repo.create_material("owner-1", "/data/x", "video")
    material = repo.create_material("owner-1", "/data/x", "image")
    with pytest.raises(ValueError):
        repo.update_material(material.id, {"owner_id": "someone-else"})


def test_create_tasks_is_idempotent_and_ordered(sqlite_db):
    repo = MaterialRepository()
    material = repo.create_material("owner-1", "/data/x", "document")

    first = repo.create_tasks(material.id)
    second = repo.create_tasks(material.id)

    assert [task.stage for task in first] == STAGE_ORDER
    assert [task.id for task in second] == [task.id for task in first]
    assert all(task.status == "pending" and task.progress == 0.0 for task in first)


def test_update_and_reset_task(sqlite_db):
    repo = MaterialRepository()
    material = repo.create_material("owner-1", "/data/x", "document")
    task = repo.create_tasks(material.id)[2]

    updated = repo.update_task(
        task.id,
        {
            "status": "failed",
            "progress": 0.5,
            "attempt_count": 2,
            "result": {"kind": "embedding_generation"},
            "error_message": "boom",
        },
    )
    assert updated.status == "failed"
    assert updated.result == {"kind": "embedding_generation"}

    repo.reset_task_for_retry(task.id)
    reset = repo.get_task(task.id)
    assert reset.status == "pending"
    assert reset.progress == 0.0
    assert reset.result is None
    assert reset.error_message is None
    assert reset.attempt_count == 0


def test_claim_next_due_takes_oldest_due_job_once(sqlite_db):
    materials = MaterialRepository()
    jobs = MaterialJobRepository()
    material = materials.create_material("owner-1", "/data/x", "document")
    job = jobs.create_job(material.id, max_attempts=3, retry_delay_seconds=2)

    claimed = jobs.claim_next_due("worker-a")
    assert claimed.id == job.id
    assert claimed.status == "running"
    assert claimed.worker_id == "worker-a"
    assert jobs.claim_next_due("worker-b") is None


def test_retry_scheduled_in_future_is_not_claimed_yet(sqlite_db):
    materials = MaterialRepository()
    jobs = MaterialJobRepository()
    material = materials.create_material("owner-1", "/data/x", "document")
    job = jobs.create_job(material.id)
    jobs.claim_next_due("worker-a")

    due = jobs.mark_retry_scheduled(job.id, 60, "provider_unavailable", "503")

    assert jobs.claim_next_due("worker-a") is None
    later = dt_to_utc_iso(datetime.now(timezone.utc) + timedelta(minutes=5))
    assert due < later
    reclaimed = jobs.claim_next_due("worker-a", now=later)
    assert reclaimed.id == job.id
    assert reclaimed.error_detail == "503"


def test_active_job_lookup_and_terminal_states(sqlite_db):
    materials = MaterialRepository()
    jobs = MaterialJobRepository()
    material = materials.create_material("owner-1", "/data/x", "document")
    job = jobs.create_job(material.id)
    assert jobs.get_active_job_for_material(material.id).id == job.id

    jobs.mark_failed(job.id, "validation_failed", "x" * 5000)

    stored = jobs.get_job(job.id)
    assert stored.status == "failed"
    assert len(stored.error_detail) == 2000
    assert stored.finished_at is not None
    assert jobs.get_active_job_for_material(material.id) is None


def test_release_and_recover_running_jobs(sqlite_db):
    materials = MaterialRepository()
    jobs = MaterialJobRepository()
    material = materials.create_material("owner-1", "/data/x", "document")
    jobs.create_job(material.id)
    jobs.create_job(material.id)
    first = jobs.claim_next_due("worker-a")
    second = jobs.claim_next_due("worker-b")
    assert first.id != second.id

    assert jobs.release_worker_jobs("worker-a") == 1
    assert jobs.get_job(first.id).status == "pending"
    assert jobs.get_job(second.id).status == "running"

    stale = dt_to_utc_iso(datetime.now(timezone.utc) - timedelta(hours=5))
    with get_db_session() as session:
        session.execute(
            text("UPDATE material_processing_job SET started_at = :stale WHERE id = :job_id"),
            {"stale": stale, "job_id": second.id},
        )
    assert jobs.recover_stalled_jobs(max_age_minutes=60) == 1
    assert jobs.get_job(second.id).status == "pending"
    assert jobs.count_pending() == 2
