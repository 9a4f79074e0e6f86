"""
Facade service for API handlers.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from services.material_pipeline.constants import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
)
from services.material_pipeline.errors import MaterialNotFoundError
from services.material_pipeline.scheduler import MaterialProcessingScheduler
from services.material_pipeline.state_machine import aggregate_progress
from services.material_pipeline.types import Material, ProcessingTask
from utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_MESSAGES = {
    STATUS_PENDING: "Waiting to start",
    STATUS_PROCESSING: "In progress",
    STATUS_COMPLETED: "Done",
    STATUS_FAILED: "Failed",
}


class MaterialProcessingService:
    def __init__(self, scheduler: Optional[MaterialProcessingScheduler] = None, index=None, gateway=None) -> None:
        self.scheduler = scheduler or MaterialProcessingScheduler()
        self.enabled = self.scheduler.enabled
        self.material_repo = self.scheduler.material_repo
        self.index = index
        self.gateway = gateway

    def register_material(self, owner_id: str, blob_ref: str, kind: str, title: Optional[str] = None) -> Material:
        material = self.material_repo.create_material(owner_id=owner_id, blob_ref=blob_ref, kind=kind, title=title)
        logger.info("Registered material_id=%s owner_id=%s kind=%s", material.id, owner_id, material.kind)
        return material

    def submit_for_processing(self, material_id: str) -> str:
        self._ensure_enabled()
        return self.scheduler.enqueue(material_id)

    def get_material(self, material_id: str) -> Material:
        material = self.material_repo.get_material(material_id)
        if material is None:
            raise MaterialNotFoundError(f"Material not found: {material_id}")
        return material

    def get_processing_status(self, material_id: str) -> List[Dict[str, Any]]:
        """One entry per stage task, in stage order."""
        self.get_material(material_id)
        return [_task_status(task) for task in self.material_repo.get_tasks_for_material(material_id)]

    def get_material_overview(self, material_id: str) -> Dict[str, Any]:
        material = self.get_material(material_id)
        tasks = self.material_repo.get_tasks_for_material(material_id)
        current = next((task for task in tasks if task.status != STATUS_COMPLETED), None)
        return {
            "material_id": material.id,
            "status": material.status,
            "progress": aggregate_progress(tasks),
            "current_stage": current.stage if current else None,
            "error_message": material.error_message,
            "stages": [_task_status(task) for task in tasks],
        }

    def get_job_progress(self, job_id: str) -> Dict[str, Any]:
        job = self.scheduler.get_job(job_id)
        return {
            "state": job["state"],
            "progress": job["progress"],
            "failed_reason": job["failed_reason"],
            "attempts_made": job["attempts_made"],
        }

    def search_material(self, material_id: str, query: str, limit: int = 8) -> List[Dict[str, Any]]:
        if self.index is None or self.gateway is None or not self.index.is_configured():
            return []
        query = (query or "").strip()
        if not query:
            return []
        return self.index.search_chunks(material_id, self.gateway.embed(query), limit=limit)

    def _ensure_enabled(self) -> None:
        if not self.enabled:
            raise RuntimeError("Material processing pipeline is disabled")


def _task_status(task: ProcessingTask) -> Dict[str, Any]:
    if task.status == STATUS_FAILED:
        message = task.error_message or task.message or f"{task.stage} failed"
    else:
        message = task.message or _DEFAULT_MESSAGES.get(task.status, task.status)
    return {
        "stage": task.stage,
        "status": task.status,
        "progress": task.progress,
        "message": message,
        "error": task.error_message if task.status == STATUS_FAILED else None,
        "attempts": task.attempt_count,
    }
