"""
Lifecycle of processing tasks and the material status derived from them.

A task moves pending -> processing -> completed | failed. Job-level retries
add two edges: a processing task whose job will be retried goes back to
pending, and a failed task is reset to pending when a failed material is
submitted again. A pending task may also fail directly when its job gives up
before the stage could start. Material status is never written directly; it is
recomputed from the task rows after every status change.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Sequence, Union

from services.material_pipeline.constants import (
    MAX_ERROR_CHARS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
)
from services.material_pipeline.errors import InvalidTransitionError, MaterialNotFoundError
from services.material_pipeline.types import ProcessingTask, StageResult
from utils.logger import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[str, tuple] = {
    STATUS_PENDING: (STATUS_PROCESSING, STATUS_FAILED),
    STATUS_PROCESSING: (STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED, STATUS_PENDING),
    STATUS_COMPLETED: (),
    STATUS_FAILED: (STATUS_PENDING,),
}


def derive_material_status(statuses: Iterable[str]) -> str:
    """
    failed if any task failed, completed if all completed, processing once any
    task has left pending, otherwise pending. No tasks at all means pending.
    """
    values = list(statuses)
    if not values:
        return STATUS_PENDING
    if any(status == STATUS_FAILED for status in values):
        return STATUS_FAILED
    if all(status == STATUS_COMPLETED for status in values):
        return STATUS_COMPLETED
    if any(status != STATUS_PENDING for status in values):
        return STATUS_PROCESSING
    return STATUS_PENDING


def aggregate_progress(tasks: Sequence[ProcessingTask]) -> float:
    """Arithmetic mean of task progress values."""
    if not tasks:
        return 0.0
    return sum(_clamp(task.progress) for task in tasks) / len(tasks)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, ())


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


class MaterialStateMachine:
    """
    Applies task events through the repository and keeps the material row in
    step. Every event is idempotent: repeating a completion or failure leaves
    the stored rows unchanged.
    """

    def __init__(self, repo) -> None:
        self.repo = repo

    def start_task(self, task_id: str, message: Optional[str] = None) -> ProcessingTask:
        task = self._load(task_id)
        if task.status == STATUS_COMPLETED:
            return task
        self._check(task, STATUS_PROCESSING)
        # A new run starts from zero; monotonic progress applies within one run.
        updated = self.repo.update_task(
            task_id,
            {
                "status": STATUS_PROCESSING,
                "progress": 0.0,
                "error_message": None,
                "message": message,
                "attempt_count": task.attempt_count + 1,
            },
        )
        self.refresh_material(task.material_id)
        return updated

    def report_progress(self, task_id: str, progress: float, message: Optional[str] = None) -> ProcessingTask:
        task = self._load(task_id)
        if task.status != STATUS_PROCESSING:
            logger.debug("Ignoring progress for task_id=%s in status=%s", task_id, task.status)
            return task
        value = max(task.progress, _clamp(progress))
        fields: Dict[str, Any] = {"progress": value}
        if message is not None:
            fields["message"] = message
        if value == task.progress and message in (None, task.message):
            return task
        return self.repo.update_task(task_id, fields)

    def complete_task(
        self,
        task_id: str,
        result: Union[StageResult, Dict[str, Any], None] = None,
        message: Optional[str] = None,
    ) -> ProcessingTask:
        task = self._load(task_id)
        if task.status == STATUS_COMPLETED:
            return task
        self._check(task, STATUS_COMPLETED)
        payload = result.payload() if hasattr(result, "payload") else result
        updated = self.repo.update_task(
            task_id,
            {
                "status": STATUS_COMPLETED,
                "progress": 1.0,
                "result": payload,
                "error_message": None,
                "message": message,
            },
        )
        self.refresh_material(task.material_id)
        return updated

    def fail_task(self, task_id: str, error_message: str) -> ProcessingTask:
        task = self._load(task_id)
        if task.status == STATUS_FAILED:
            return task
        self._check(task, STATUS_FAILED)
        reason = (error_message or "Stage failed")[:MAX_ERROR_CHARS]
        updated = self.repo.update_task(
            task_id,
            {"status": STATUS_FAILED, "error_message": reason, "message": reason},
        )
        self.refresh_material(task.material_id)
        return updated

    def requeue_task(self, task_id: str, error_message: str, message: Optional[str] = None) -> ProcessingTask:
        """Return a task to pending ahead of a job retry, keeping the last error."""
        task = self._load(task_id)
        if task.status == STATUS_PENDING:
            return task
        self._check(task, STATUS_PENDING)
        updated = self.repo.update_task(
            task_id,
            {
                "status": STATUS_PENDING,
                "progress": 0.0,
                "error_message": (error_message or "")[:MAX_ERROR_CHARS] or None,
                "message": message,
            },
        )
        self.refresh_material(task.material_id)
        return updated

    def fail_unfinished(self, material_id: str, error_message: str) -> Optional[ProcessingTask]:
        """
        Fail the first task that has not completed, so a job that gives up
        outside of a stage still leaves the material failed.
        """
        for task in self.repo.get_tasks_for_material(material_id):
            if task.status == STATUS_FAILED:
                return task
            if task.status != STATUS_COMPLETED:
                return self.fail_task(task.id, error_message)
        return None

    def reset_failed_tasks(self, material_id: str) -> int:
        """Put every failed task of a material back to pending."""
        reset = 0
        for task in self.repo.get_tasks_for_material(material_id):
            if task.status == STATUS_FAILED:
                self.repo.reset_task_for_retry(task.id)
                reset += 1
        if reset:
            self.refresh_material(material_id)
        return reset

    def refresh_material(self, material_id: str) -> str:
        tasks = self.repo.get_tasks_for_material(material_id)
        status = derive_material_status(task.status for task in tasks)
        error_message = None
        if status == STATUS_FAILED:
            failed = next(task for task in tasks if task.status == STATUS_FAILED)
            error_message = failed.error_message or f"{failed.stage} failed"
        self.repo.update_material(material_id, {"status": status, "error_message": error_message})
        return status

    def _load(self, task_id: str) -> ProcessingTask:
        task = self.repo.get_task(task_id)
        if task is None:
            raise MaterialNotFoundError(f"Processing task not found: {task_id}")
        return task

    @staticmethod
    def _check(task: ProcessingTask, target: str) -> None:
        if not can_transition(task.status, target):
            raise InvalidTransitionError(
                f"Task {task.id} ({task.stage}) cannot move from {task.status} to {target}"
            )
