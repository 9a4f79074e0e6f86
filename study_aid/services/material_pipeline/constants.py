"""
Constants for the uploaded-material processing pipeline.
"""

from typing import Dict, List, Tuple

STAGE_TEXT_EXTRACTION = "text_extraction"
STAGE_CONTENT_ANALYSIS = "content_analysis"
STAGE_EMBEDDING_GENERATION = "embedding_generation"
STAGE_QUESTION_GENERATION = "question_generation"

STAGE_ORDER: List[str] = [
    STAGE_TEXT_EXTRACTION,
    STAGE_CONTENT_ANALYSIS,
    STAGE_EMBEDDING_GENERATION,
    STAGE_QUESTION_GENERATION,
]

STAGE_INDEX: Dict[str, int] = {stage: idx for idx, stage in enumerate(STAGE_ORDER)}

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TASK_STATUSES: Tuple[str, ...] = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)

JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

MATERIAL_KINDS: Tuple[str, ...] = ("document", "image")

DEFAULT_CHUNK_SIZE = 4000
DEFAULT_MAX_CONCURRENT_CHUNKS = 3
DEFAULT_BATCH_DELAY_SECONDS = 1.0
DEFAULT_PROVIDER_CONCURRENCY = 3

DEFAULT_CHUNK_MAX_ATTEMPTS = 3
DEFAULT_CHUNK_RETRY_DELAY_SECONDS = 1.0
DEFAULT_JOB_MAX_ATTEMPTS = 3
DEFAULT_JOB_RETRY_DELAY_SECONDS = 5.0

DEFAULT_STAGE_TIMEOUT_SECONDS = 600.0
DEFAULT_QUESTION_CHUNK_THRESHOLD = 12_000
DEFAULT_QUESTION_COUNT = 10
DEFAULT_QUESTION_DIFFICULTY = "medium"

QUESTION_OPTION_COUNT = 4
QUESTION_DIFFICULTIES: Tuple[str, ...] = ("easy", "medium", "hard")

MAX_ERROR_CHARS = 2000
