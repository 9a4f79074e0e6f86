"""
Repository for study_material and material_processing_task rows.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.sql_db import get_db_session, json_dumps, json_loads, utc_now_iso
from services.material_pipeline.constants import MATERIAL_KINDS, STAGE_INDEX, STAGE_ORDER, STATUS_PENDING
from services.material_pipeline.errors import StoreError
from services.material_pipeline.types import Material, ProcessingTask, Question

_MATERIAL_COLUMNS = """
    id, owner_id, title, blob_ref, kind, status, extracted_text, category, topics_json, summary,
    key_points_json, difficulty_level, questions_json, error_message, created_at, updated_at
"""

_TASK_COLUMNS = """
    id, material_id, stage, stage_index, status, progress, result_json, error_message, message,
    attempt_count, created_at, updated_at
"""

# Logical field name -> (column, encoder)
_MATERIAL_FIELDS = {
    "title": ("title", None),
    "status": ("status", None),
    "extracted_text": ("extracted_text", None),
    "category": ("category", None),
    "topics": ("topics_json", json_dumps),
    "summary": ("summary", None),
    "key_points": ("key_points_json", json_dumps),
    "difficulty_level": ("difficulty_level", None),
    "questions": ("questions_json", lambda items: json_dumps([_question_dict(item) for item in items or []])),
    "error_message": ("error_message", None),
}

_TASK_FIELDS = {
    "status": ("status", None),
    "progress": ("progress", float),
    "result": ("result_json", json_dumps),
    "error_message": ("error_message", None),
    "message": ("message", None),
    "attempt_count": ("attempt_count", int),
}


@contextmanager
def store_session(operation: str) -> Iterator[Session]:
    """get_db_session() with SQLAlchemy failures surfaced as StoreError."""
    try:
        with get_db_session() as session:
            yield session
    except SQLAlchemyError as exc:
        raise StoreError(f"{operation} failed: {exc}") from exc


class MaterialRepository:
    def create_material(
        self,
        owner_id: str,
        blob_ref: str,
        kind: str,
        title: Optional[str] = None,
        material_id: Optional[str] = None,
    ) -> Material:
        kind = (kind or "").strip().lower()
        if kind not in MATERIAL_KINDS:
            raise ValueError(f"Unsupported material kind: {kind!r}")
        if not (blob_ref or "").strip():
            raise ValueError("blob_ref is required")
        material_id = material_id or str(uuid.uuid4())
        now = utc_now_iso()
        with store_session("create_material") as session:
            session.execute(
                text(
                    """
                    INSERT INTO study_material (
                        id, owner_id, title, blob_ref, kind, status, created_at, updated_at
                    ) VALUES (
                        :id, :owner_id, :title, :blob_ref, :kind, 'pending', :now, :now
                    )
                    """
                ),
                {
                    "id": material_id,
                    "owner_id": str(owner_id),
                    "title": title,
                    "blob_ref": blob_ref.strip(),
                    "kind": kind,
                    "now": now,
                },
            )
            row = _select_material(session, material_id)
        return _row_to_material(row)

    def get_material(self, material_id: str) -> Optional[Material]:
        with store_session("get_material") as session:
            row = _select_material(session, str(material_id))
        return _row_to_material(row) if row else None

    def update_material(self, material_id: str, fields: Dict[str, Any]) -> Optional[Material]:
        assignments, params = _build_assignments(fields, _MATERIAL_FIELDS)
        params["material_id"] = str(material_id)
        with store_session("update_material") as session:
            session.execute(
                text(f"UPDATE study_material SET {assignments} WHERE id = :material_id"),
                params,
            )
            row = _select_material(session, str(material_id))
        return _row_to_material(row) if row else None

    def create_tasks(self, material_id: str, stages: Sequence[str] = STAGE_ORDER) -> List[ProcessingTask]:
        """Create one pending task per stage; existing stages are left alone."""
        material_id = str(material_id)
        now = utc_now_iso()
        with store_session("create_tasks") as session:
            existing = {
                row["stage"]
                for row in session.execute(
                    text("SELECT stage FROM material_processing_task WHERE material_id = :material_id"),
                    {"material_id": material_id},
                ).mappings()
            }
            for stage in stages:
                if stage in existing:
                    continue
                _insert_task(session, material_id, stage, now)
            rows = _select_tasks(session, material_id)
        return [_row_to_task(row) for row in rows]

    def create_task(self, material_id: str, stage: str) -> ProcessingTask:
        if stage not in STAGE_INDEX:
            raise ValueError(f"Unknown stage: {stage!r}")
        with store_session("create_task") as session:
            task_id = _insert_task(session, str(material_id), stage, utc_now_iso())
            row = _select_task(session, task_id)
        return _row_to_task(row)

    def get_task(self, task_id: str) -> Optional[ProcessingTask]:
        with store_session("get_task") as session:
            row = _select_task(session, str(task_id))
        return _row_to_task(row) if row else None

    def update_task(self, task_id: str, fields: Dict[str, Any]) -> ProcessingTask:
        assignments, params = _build_assignments(fields, _TASK_FIELDS)
        params["task_id"] = str(task_id)
        with store_session("update_task") as session:
            session.execute(
                text(f"UPDATE material_processing_task SET {assignments} WHERE id = :task_id"),
                params,
            )
            row = _select_task(session, str(task_id))
        if not row:
            raise StoreError(f"update_task failed: task {task_id} not found")
        return _row_to_task(row)

    def get_tasks_for_material(self, material_id: str) -> List[ProcessingTask]:
        with store_session("get_tasks_for_material") as session:
            rows = _select_tasks(session, str(material_id))
        return [_row_to_task(row) for row in rows]

    def reset_task_for_retry(self, task_id: str) -> None:
        with store_session("reset_task_for_retry") as session:
            session.execute(
                text(
                    """
                    UPDATE material_processing_task
                    SET status = 'pending',
                        progress = 0,
                        attempt_count = 0,
                        result_json = NULL,
                        error_message = NULL,
                        message = NULL,
                        updated_at = :now
                    WHERE id = :task_id
                    """
                ),
                {"task_id": str(task_id), "now": utc_now_iso()},
            )


def _build_assignments(fields: Dict[str, Any], allowed: Dict[str, Any]):
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown fields: {sorted(unknown)}")
    parts = []
    params: Dict[str, Any] = {}
    for name, value in fields.items():
        column, encode = allowed[name]
        if encode is not None and value is not None:
            value = encode(value)
        parts.append(f"{column} = :{column}")
        params[column] = value
    parts.append("updated_at = :updated_at")
    params["updated_at"] = utc_now_iso()
    return ", ".join(parts), params


def _insert_task(session: Session, material_id: str, stage: str, now: str) -> str:
    task_id = str(uuid.uuid4())
    session.execute(
        text(
            """
            INSERT INTO material_processing_task (
                id, material_id, stage, stage_index, status, progress, attempt_count, created_at, updated_at
            ) VALUES (
                :id, :material_id, :stage, :stage_index, :status, 0, 0, :now, :now
            )
            """
        ),
        {
            "id": task_id,
            "material_id": material_id,
            "stage": stage,
            "stage_index": STAGE_INDEX[stage],
            "status": STATUS_PENDING,
            "now": now,
        },
    )
    return task_id


def _select_material(session: Session, material_id: str):
    return session.execute(
        text(f"SELECT {_MATERIAL_COLUMNS} FROM study_material WHERE id = :material_id"),
        {"material_id": material_id},
    ).mappings().fetchone()


def _select_task(session: Session, task_id: str):
    return session.execute(
        text(f"SELECT {_TASK_COLUMNS} FROM material_processing_task WHERE id = :task_id"),
        {"task_id": task_id},
    ).mappings().fetchone()


def _select_tasks(session: Session, material_id: str):
    return session.execute(
        text(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM material_processing_task
            WHERE material_id = :material_id
            ORDER BY stage_index ASC
            """
        ),
        {"material_id": material_id},
    ).mappings().fetchall()


def _question_dict(item: Any) -> Dict[str, Any]:
    return item.to_dict() if isinstance(item, Question) else dict(item)


def _row_to_material(row: Any) -> Material:
    data = dict(row)
    return Material(
        id=str(data["id"]),
        owner_id=str(data["owner_id"]),
        title=data.get("title"),
        blob_ref=str(data["blob_ref"]),
        kind=str(data["kind"]),
        status=str(data.get("status") or STATUS_PENDING),
        extracted_text=data.get("extracted_text"),
        category=data.get("category"),
        topics=list(json_loads(data.get("topics_json"), [])),
        summary=data.get("summary"),
        key_points=list(json_loads(data.get("key_points_json"), [])),
        difficulty_level=data.get("difficulty_level"),
        questions=[Question.from_dict(item) for item in json_loads(data.get("questions_json"), [])],
        error_message=data.get("error_message"),
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
    )


def _row_to_task(row: Any) -> ProcessingTask:
    data = dict(row)
    return ProcessingTask(
        id=str(data["id"]),
        material_id=str(data["material_id"]),
        stage=str(data["stage"]),
        stage_index=int(data.get("stage_index") or 0),
        status=str(data.get("status") or STATUS_PENDING),
        progress=float(data.get("progress") or 0.0),
        result=json_loads(data.get("result_json"), None),
        error_message=data.get("error_message"),
        message=data.get("message"),
        attempt_count=int(data.get("attempt_count") or 0),
        created_at=data.get("created_at"),
        updated_at=data.get("updated_at"),
    )
