"""
Executes the processing stages of one material, strictly in order.
"""

from __future__ import annotations

import asyncio
import math
from typing import Any, Awaitable, Callable, Dict, List, Optional

from services.material_pipeline.batch_executor import RateLimitedBatchExecutor
from services.material_pipeline.chunker import Chunker
from services.material_pipeline.constants import (
    STAGE_CONTENT_ANALYSIS,
    STAGE_EMBEDDING_GENERATION,
    STAGE_ORDER,
    STAGE_QUESTION_GENERATION,
    STAGE_TEXT_EXTRACTION,
    STATUS_COMPLETED,
)
from services.material_pipeline.errors import (
    ContentValidationError,
    MaterialNotFoundError,
    StageFailedError,
    StageTimeoutError,
    StoreError,
    describe_error,
    is_retryable_error,
)
from services.material_pipeline.prompts import (
    ANALYSIS_SYSTEM_PROMPT,
    QUESTION_SYSTEM_PROMPT,
    build_analysis_prompt,
    build_question_prompt,
    parse_analysis,
    parse_questions,
)
from services.material_pipeline.rate_limiter import ProviderLimiter
from services.material_pipeline.retry import AttemptEvent, RetryPolicy
from services.material_pipeline.settings import PipelineSettings
from services.material_pipeline.state_machine import MaterialStateMachine
from services.material_pipeline.types import (
    ContentAnalysis,
    Embeddings,
    ExtractedText,
    Material,
    ProcessingTask,
    Question,
    Questions,
    StageResult,
)
from utils.logger import get_logger

logger = get_logger(__name__)

_START_MESSAGES = {
    STAGE_TEXT_EXTRACTION: "Extracting text",
    STAGE_CONTENT_ANALYSIS: "Analyzing content",
    STAGE_EMBEDDING_GENERATION: "Generating embeddings",
    STAGE_QUESTION_GENERATION: "Generating questions",
}


class StageRunner:
    def __init__(
        self,
        repo,
        gateway,
        extractor,
        settings: Optional[PipelineSettings] = None,
        limiter: Optional[ProviderLimiter] = None,
        index=None,
        state_machine: Optional[MaterialStateMachine] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.repo = repo
        self.gateway = gateway
        self.extractor = extractor
        self.settings = settings or PipelineSettings()
        self.limiter = limiter or ProviderLimiter(self.settings.provider_concurrency)
        self.index = index
        self.state = state_machine or MaterialStateMachine(repo)
        self._sleep = sleep
        self.executor = RateLimitedBatchExecutor(
            concurrency=self.settings.max_concurrent_chunks,
            batch_delay=self.settings.batch_delay_seconds,
            sleep=sleep,
        )
        self._stages: Dict[str, Callable[[Material, str], Awaitable[StageResult]]] = {
            STAGE_TEXT_EXTRACTION: self._extract_text,
            STAGE_CONTENT_ANALYSIS: self._analyze_content,
            STAGE_EMBEDDING_GENERATION: self._generate_embeddings,
            STAGE_QUESTION_GENERATION: self._generate_questions,
        }

    async def run_material(self, material_id: str, final_attempt: bool = True) -> None:
        """
        Run every stage that is not completed yet, in stage order.

        Stops at the first failing stage and raises StageFailedError; later
        stages are left pending. With ``final_attempt=False`` a retryable
        failure puts the task back to pending instead of failing it, since the
        caller is going to retry the job.
        """
        if self.repo.get_material(material_id) is None:
            raise MaterialNotFoundError(f"Material not found: {material_id}")
        tasks = {task.stage: task for task in self.repo.get_tasks_for_material(material_id)}
        for stage in STAGE_ORDER:
            task = tasks.get(stage) or self.repo.create_task(material_id, stage)
            if task.status == STATUS_COMPLETED:
                continue
            await self.run_stage(material_id, task, final_attempt=final_attempt)

    async def run_stage(self, material_id: str, task: ProcessingTask, final_attempt: bool = True) -> StageResult:
        stage = task.stage
        try:
            self.state.start_task(task.id, message=_START_MESSAGES.get(stage))
            material = self.repo.get_material(material_id)
            if material is None:
                raise MaterialNotFoundError(f"Material not found: {material_id}")
            logger.info("Stage started material_id=%s stage=%s", material_id, stage)
            result = await self._run_within_budget(stage, self._stages[stage](material, task.id))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error: BaseException = exc
        else:
            self.state.complete_task(task.id, result, message=_completion_message(result))
            logger.info("Stage completed material_id=%s stage=%s", material_id, stage)
            return result

        self._record_failure(task, error, final_attempt)
        raise StageFailedError(stage, error) from error

    async def _run_within_budget(self, stage: str, work: Awaitable[StageResult]) -> StageResult:
        """
        Await *work* for at most the stage timeout.

        Only the budget running out becomes a StageTimeoutError; a TimeoutError
        raised by the stage itself propagates unchanged.
        """
        budget = self.settings.stage_timeout_seconds
        stage_task = asyncio.ensure_future(work)
        try:
            done, _ = await asyncio.wait({stage_task}, timeout=budget)
        except asyncio.CancelledError:
            stage_task.cancel()
            raise
        if stage_task in done:
            return stage_task.result()
        stage_task.cancel()
        await asyncio.gather(stage_task, return_exceptions=True)
        raise StageTimeoutError(f"{stage} exceeded {budget:g}s time budget")

    def _record_failure(self, task: ProcessingTask, error: BaseException, final_attempt: bool) -> None:
        reason = describe_error(error)
        retryable = is_retryable_error(error) or isinstance(error, StoreError)
        try:
            if retryable and not final_attempt:
                logger.warning(
                    "Stage failed, job will retry material_id=%s stage=%s: %s",
                    task.material_id,
                    task.stage,
                    reason,
                )
                self.state.requeue_task(task.id, reason, message=f"Retrying after error: {reason}")
            else:
                logger.error("Stage failed material_id=%s stage=%s: %s", task.material_id, task.stage, reason)
                self.state.fail_task(task.id, reason)
        except StoreError as exc:
            logger.error("Could not record failure for task_id=%s: %s", task.id, exc)

    async def _extract_text(self, material: Material, task_id: str) -> ExtractedText:
        async def call() -> str:
            if material.kind == "image":
                return await self.limiter.call(self.extractor.extract_text, material.blob_ref, material.kind)
            return await asyncio.to_thread(self.extractor.extract_text, material.blob_ref, material.kind)

        text, _ = await self._policy("text extraction").execute(call, on_attempt=self._attempt_reporter(task_id))
        self.repo.update_material(material.id, {"extracted_text": text})
        return ExtractedText(text=text, char_count=len(text))

    async def _analyze_content(self, material: Material, task_id: str) -> ContentAnalysis:
        text = _require_text(material)

        async def call() -> ContentAnalysis:
            raw = await self.limiter.call(self.gateway.generate, build_analysis_prompt(text), ANALYSIS_SYSTEM_PROMPT)
            return parse_analysis(raw)

        analysis, _ = await self._policy("content analysis").execute(call, on_attempt=self._attempt_reporter(task_id))
        self.repo.update_material(
            material.id,
            {
                "category": analysis.category,
                "topics": analysis.topics,
                "summary": analysis.summary,
                "key_points": analysis.key_points,
                "difficulty_level": analysis.difficulty_level,
            },
        )
        return analysis

    async def _generate_embeddings(self, material: Material, task_id: str) -> Embeddings:
        chunks = list(Chunker(self.settings.chunk_size).split(_require_text(material)))
        policy = self._policy("chunk embedding")

        async def embed_chunk(numbered) -> List[float]:
            number, chunk = numbered
            vector, _ = await policy.execute(
                lambda: self.limiter.call(self.gateway.embed, chunk),
                on_attempt=self._attempt_reporter(task_id, f"Chunk {number}"),
            )
            return vector

        def on_progress(done: int, total: int) -> None:
            self.state.report_progress(task_id, done / total, message=f"Embedded {done} of {total} chunks")

        vectors = await self.executor.run(list(enumerate(chunks, 1)), embed_chunk, on_progress)
        indexed = False
        if self.index is not None and self.index.is_configured():
            indexed = await asyncio.to_thread(self.index.index, material.id, chunks, vectors, material.owner_id)
        return Embeddings(vectors=vectors, chunk_count=len(chunks), indexed=indexed)

    async def _generate_questions(self, material: Material, task_id: str) -> Questions:
        text = _require_text(material)
        count = self.settings.question_count
        difficulty = self.settings.question_difficulty
        if len(text) > self.settings.question_chunk_threshold:
            pieces = list(Chunker(self.settings.chunk_size).split(text))
        else:
            pieces = [text]
        per_piece = max(1, math.ceil(count / len(pieces)))
        policy = self._policy("question generation")

        async def generate_for(numbered):
            number, piece = numbered

            async def call():
                raw = await self.limiter.call(
                    self.gateway.generate,
                    build_question_prompt(piece, per_piece, difficulty),
                    QUESTION_SYSTEM_PROMPT,
                )
                return parse_questions(raw, difficulty)

            parsed, _ = await policy.execute(call, on_attempt=self._attempt_reporter(task_id, f"Part {number}"))
            return parsed

        def on_progress(done: int, total: int) -> None:
            self.state.report_progress(task_id, done / total, message=f"Generated questions for {done} of {total} parts")

        results = await self.executor.run(list(enumerate(pieces, 1)), generate_for, on_progress)
        questions: List[Question] = []
        dropped = 0
        for valid, dropped_here in results:
            questions.extend(valid)
            dropped += dropped_here
        if not questions:
            raise ContentValidationError("No valid questions were generated")
        questions = questions[:count]
        self.repo.update_material(material.id, {"questions": questions})
        return Questions(questions=questions, dropped_count=dropped)

    def _policy(self, description: str) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.chunk_max_attempts,
            base_delay=self.settings.chunk_retry_delay_seconds,
            sleep=self._sleep,
            description=description,
        )

    def _attempt_reporter(self, task_id: str, unit: Optional[str] = None) -> Callable[[AttemptEvent], None]:
        """Surface failed attempts that will be retried in the task message."""

        def report(event: AttemptEvent) -> None:
            if event.succeeded or not event.will_retry:
                return
            prefix = f"{unit} attempt" if unit else "Attempt"
            self.state.report_progress(
                task_id,
                0.0,
                message=(
                    f"{prefix} {event.attempt}/{event.max_attempts} failed ({describe_error(event.error)}); "
                    f"retrying in {event.delay_seconds:.0f}s"
                ),
            )

        return report


def _require_text(material: Material) -> str:
    text = (material.extracted_text or "").strip()
    if not text:
        raise ContentValidationError("Extracted text is missing; text extraction has not completed")
    return text


def _completion_message(result: StageResult) -> str:
    if isinstance(result, ExtractedText):
        return f"Extracted {result.char_count} characters"
    if isinstance(result, ContentAnalysis):
        return f"Identified {len(result.topics)} topics in {result.category}"
    if isinstance(result, Embeddings):
        return f"Embedded {result.chunk_count} of {result.chunk_count} chunks"
    return f"Generated {len(result.questions)} questions"
