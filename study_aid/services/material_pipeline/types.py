"""
Shared datatypes for material processing.

Stage results are one dataclass per stage, tagged by ``kind`` when persisted,
so each consumer reads a known shape instead of raw provider JSON.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from services.material_pipeline.constants import (
    STAGE_CONTENT_ANALYSIS,
    STAGE_EMBEDDING_GENERATION,
    STAGE_QUESTION_GENERATION,
    STAGE_TEXT_EXTRACTION,
)


@dataclass
class Question:
    question: str
    options: List[str]
    correct_index: int
    explanation: str
    difficulty: str = "medium"
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "options": list(self.options),
            "correct_index": self.correct_index,
            "explanation": self.explanation,
            "difficulty": self.difficulty,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Question":
        return cls(
            question=str(data.get("question") or ""),
            options=[str(option) for option in data.get("options") or []],
            correct_index=int(data.get("correct_index", -1)),
            explanation=str(data.get("explanation") or ""),
            difficulty=str(data.get("difficulty") or "medium"),
            tags=[str(tag) for tag in data.get("tags") or []],
        )


@dataclass
class ExtractedText:
    text: str
    char_count: int = 0
    kind: str = STAGE_TEXT_EXTRACTION

    def payload(self) -> Dict[str, Any]:
        return {"kind": self.kind, "char_count": self.char_count or len(self.text)}


@dataclass
class ContentAnalysis:
    category: str
    topics: List[str]
    summary: str
    key_points: List[str] = field(default_factory=list)
    difficulty_level: Optional[str] = None
    kind: str = STAGE_CONTENT_ANALYSIS

    def payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "category": self.category,
            "topics": list(self.topics),
            "summary": self.summary,
            "key_points": list(self.key_points),
            "difficulty_level": self.difficulty_level,
        }


@dataclass
class Embeddings:
    vectors: List[List[float]]
    chunk_count: int
    indexed: bool = False
    kind: str = STAGE_EMBEDDING_GENERATION

    def payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "vectors": [list(vector) for vector in self.vectors],
            "chunk_count": self.chunk_count,
            "dimensions": len(self.vectors[0]) if self.vectors else 0,
            "indexed": self.indexed,
        }


@dataclass
class Questions:
    questions: List[Question]
    dropped_count: int = 0
    kind: str = STAGE_QUESTION_GENERATION

    def payload(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "questions": [question.to_dict() for question in self.questions],
            "dropped_count": self.dropped_count,
        }


StageResult = Union[ExtractedText, ContentAnalysis, Embeddings, Questions]


@dataclass
class Material:
    id: str
    owner_id: str
    blob_ref: str
    kind: str
    status: str = "pending"
    title: Optional[str] = None
    extracted_text: Optional[str] = None
    category: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    key_points: List[str] = field(default_factory=list)
    difficulty_level: Optional[str] = None
    questions: List[Question] = field(default_factory=list)
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ProcessingTask:
    id: str
    material_id: str
    stage: str
    status: str = "pending"
    progress: float = 0.0
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    message: Optional[str] = None
    attempt_count: int = 0
    stage_index: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Job:
    id: str
    material_id: str
    status: str = "pending"
    attempt_count: int = 0
    max_attempts: int = 3
    retry_delay_seconds: float = 5.0
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    created_at: Optional[str] = None
    scheduled_for: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    worker_id: Optional[str] = None
