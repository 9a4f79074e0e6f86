"""
Job queue and async worker for material processing.
"""

from __future__ import annotations

import asyncio
import socket
import uuid
from typing import Any, Dict, Optional, Set

from services.material_pipeline.constants import JOB_COMPLETED, JOB_FAILED
from services.material_pipeline.errors import (
    MaterialNotFoundError,
    StageFailedError,
    StoreError,
    describe_error,
    error_code_for,
    is_retryable_error,
)
from services.material_pipeline.job_repo import MaterialJobRepository
from services.material_pipeline.material_repo import MaterialRepository
from services.material_pipeline.settings import PipelineSettings
from services.material_pipeline.stage_runner import StageRunner
from services.material_pipeline.state_machine import MaterialStateMachine, aggregate_progress
from services.material_pipeline.types import Job
from utils.logger import get_logger, job_logger

logger = get_logger(__name__)


class MaterialProcessingScheduler:
    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        material_repo: Optional[MaterialRepository] = None,
        job_repo: Optional[MaterialJobRepository] = None,
        stage_runner: Optional[StageRunner] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.settings = settings or PipelineSettings.from_env()
        self.enabled = self.settings.enabled
        self.poll_interval_seconds = self.settings.poll_interval_seconds
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid.uuid4()}"
        self._stop_event = asyncio.Event()
        self._poller_task: Optional[asyncio.Task] = None
        self._job_tasks: Set[asyncio.Task] = set()
        self._max_concurrent_jobs = self.settings.worker_concurrency

        self.material_repo = material_repo or MaterialRepository()
        self.job_repo = job_repo or MaterialJobRepository()
        self.state = MaterialStateMachine(self.material_repo)
        self.stage_runner = stage_runner or _default_stage_runner(self.material_repo, self.settings, self.state)

    def enqueue(self, material_id: str) -> str:
        """
        Queue processing for a material and return the job id.

        An active job for the same material is reused. Failed tasks from an
        earlier job are reset so the new job resumes at the failed stage.
        """
        material_id = str(material_id)
        if self.material_repo.get_material(material_id) is None:
            raise MaterialNotFoundError(f"Material not found: {material_id}")
        active = self.job_repo.get_active_job_for_material(material_id)
        if active is not None:
            logger.info("Reusing active job_id=%s for material_id=%s", active.id, material_id)
            return active.id
        self.material_repo.create_tasks(material_id)
        self.state.reset_failed_tasks(material_id)
        job = self.job_repo.create_job(
            material_id,
            max_attempts=self.settings.job_max_attempts,
            retry_delay_seconds=self.settings.job_retry_delay_seconds,
        )
        self.state.refresh_material(material_id)
        logger.info("Enqueued job_id=%s material_id=%s", job.id, material_id)
        return job.id

    def get_job(self, job_id: str) -> Dict[str, Any]:
        job = self.job_repo.get_job(job_id)
        if job is None:
            raise ValueError("Job not found")
        tasks = self.material_repo.get_tasks_for_material(job.material_id)
        return {
            "job_id": job.id,
            "material_id": job.material_id,
            "state": job.status,
            "progress": 1.0 if job.status == JOB_COMPLETED else aggregate_progress(tasks),
            "failed_reason": job.error_detail if job.status == JOB_FAILED else None,
            "last_error": job.error_detail,
            "attempts_made": job.attempt_count,
            "max_attempts": job.max_attempts,
            "scheduled_for": job.scheduled_for,
        }

    async def start(self) -> None:
        """
        Start polling for due material jobs in the background.

        Jobs left running by a worker that died more than
        ``stalled_job_minutes`` ago are put back in the queue first.
        """
        if not self.enabled:
            logger.info("Material processing is disabled (MATERIAL_PIPELINE_ENABLED=false); worker not started")
            return
        if self._poller_task and not self._poller_task.done():
            return
        recovered = self.job_repo.recover_stalled_jobs(self.settings.stalled_job_minutes)
        if recovered:
            logger.warning(
                "Requeued %s material jobs stalled for over %s minutes",
                recovered,
                self.settings.stalled_job_minutes,
            )
        self._stop_event.clear()
        self._poller_task = asyncio.create_task(self._poll_loop(), name="material-job-poller")
        logger.info(
            "Material worker %s polling every %ss for up to %s concurrent jobs",
            self.worker_id,
            self.poll_interval_seconds,
            self._max_concurrent_jobs,
        )

    async def stop(self) -> None:
        """
        Stop polling, cancel in-flight jobs and hand their rows back to the queue.

        A released job resumes at its unfinished stage on the next claim; one
        that was already on its last attempt is failed instead.
        """
        if not self.enabled:
            return
        self._stop_event.set()
        if self._poller_task:
            self._poller_task.cancel()
            try:
                await self._poller_task
            except asyncio.CancelledError:
                pass
        interrupted = len(self._job_tasks)
        for task in list(self._job_tasks):
            task.cancel()
        if self._job_tasks:
            await asyncio.gather(*self._job_tasks, return_exceptions=True)
        released = self.job_repo.release_worker_jobs(self.worker_id)
        logger.info("Material worker %s stopped; interrupted=%s released=%s", self.worker_id, interrupted, released)

    async def run_until_idle(self, wait_for_scheduled: bool = False) -> int:
        """
        Process due jobs one after another until none is left.

        With ``wait_for_scheduled`` the loop keeps polling while retries are
        scheduled in the future; otherwise those stay queued.
        """
        processed = 0
        while True:
            job = self.job_repo.claim_next_due(self.worker_id)
            if job is not None:
                await self._process_job(job)
                processed += 1
                continue
            if wait_for_scheduled and self.job_repo.count_pending():
                await asyncio.sleep(self.poll_interval_seconds)
                continue
            return processed

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                claimed = self._claim_due_jobs()
                if claimed:
                    logger.debug("Claimed %s material jobs; running=%s", claimed, len(self._job_tasks))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Material job poll failed: %s", exc, exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def _claim_due_jobs(self) -> int:
        """Claim due jobs while there is room and start one task per job."""
        claimed = 0
        while len(self._job_tasks) < self._max_concurrent_jobs:
            job = self.job_repo.claim_next_due(self.worker_id)
            if job is None:
                break
            task = asyncio.create_task(self._process_job(job), name=f"material-job-{job.id}")
            self._job_tasks.add(task)
            task.add_done_callback(self._job_tasks.discard)
            claimed += 1
        return claimed

    async def _process_job(self, job: Job) -> None:
        """
        Run one claimed job to completion, a scheduled retry, or failure.

        The attempt counter is written before any stage runs, so a crash
        mid-attempt still counts against ``max_attempts``.
        """
        attempt = job.attempt_count + 1
        log = job_logger(logger, job.id, job.material_id)
        if attempt > job.max_attempts:
            # Released by stop() or stalled recovery after its last attempt had started.
            try:
                self._give_up(job, f"Interrupted during final attempt {job.attempt_count}/{job.max_attempts}")
            except StoreError as store_exc:
                log.error("Could not record exhausted job: %s", store_exc, exc_info=True)
            return
        log = job_logger(logger, job.id, job.material_id, attempt)
        try:
            self.job_repo.set_attempt_count(job.id, attempt)
            log.info("Processing material, attempt %s of %s", attempt, job.max_attempts)
            await self.stage_runner.run_material(job.material_id, final_attempt=attempt >= job.max_attempts)
            self.job_repo.mark_completed(job.id)
            log.info("Material processed")
        except asyncio.CancelledError:
            log.info("Material job interrupted")
            raise
        except Exception as exc:
            try:
                self._handle_failure(job, attempt, exc)
            except StoreError as store_exc:
                log.error("Could not record job failure: %s", store_exc, exc_info=True)

    def _handle_failure(self, job: Job, attempt: int, exc: BaseException) -> None:
        log = job_logger(logger, job.id, job.material_id, attempt)
        if isinstance(exc, StageFailedError):
            retryable = exc.retryable
        else:
            retryable = is_retryable_error(exc) or isinstance(exc, StoreError)
        code = error_code_for(exc)
        detail = describe_error(exc)
        if retryable and attempt < job.max_attempts:
            delay = job.retry_delay_seconds * attempt
            due = self.job_repo.mark_retry_scheduled(job.id, delay, code, detail)
            log.warning("Attempt %s of %s failed, retrying at %s: %s", attempt, job.max_attempts, due, detail)
            return
        self.job_repo.mark_failed(job.id, code, detail)
        self.state.fail_unfinished(job.material_id, detail)
        log.error(
            "Material processing failed (%s) after %s of %s attempts: %s",
            code,
            attempt,
            job.max_attempts,
            detail,
        )

    def _give_up(self, job: Job, detail: str) -> None:
        self.job_repo.mark_failed(job.id, "attempts_exhausted", detail)
        self.state.fail_unfinished(job.material_id, detail)
        job_logger(logger, job.id, job.material_id).error("Material processing failed: %s", detail)


def _default_stage_runner(
    material_repo: MaterialRepository,
    settings: PipelineSettings,
    state: MaterialStateMachine,
) -> StageRunner:
    from services.material_pipeline.embedding_index import EmbeddingIndex
    from services.material_pipeline.llm_gateway import MaterialLLMGateway
    from services.material_pipeline.text_extractor import TextExtractor

    gateway = MaterialLLMGateway()
    return StageRunner(
        repo=material_repo,
        gateway=gateway,
        extractor=TextExtractor(gateway),
        settings=settings,
        index=EmbeddingIndex(),
        state_machine=state,
    )
