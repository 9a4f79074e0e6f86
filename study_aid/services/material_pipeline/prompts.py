"""
Prompt builders and provider-output parsing for analysis and questions.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from services.material_pipeline.constants import QUESTION_DIFFICULTIES, QUESTION_OPTION_COUNT
from services.material_pipeline.errors import ContentValidationError
from services.material_pipeline.types import ContentAnalysis, Question
from utils.logger import get_logger

logger = get_logger(__name__)

ANALYSIS_MAX_CHARS = 12000

ANALYSIS_SYSTEM_PROMPT = "You analyze study material and answer with strict JSON only."
QUESTION_SYSTEM_PROMPT = "You write multiple-choice exam questions and answer with a strict JSON array only."

_LETTER_RE = re.compile(r"^\s*([A-Da-d])(?:\s*[).:\-]|\s*$)")
_OPTION_PREFIX_RE = re.compile(r"^\s*[A-Da-d]\s*[).:\-]\s+")


class AnalysisOutput(BaseModel):
    category: str = Field(..., min_length=1)
    topics: List[str] = Field(default_factory=list)
    summary: str = Field(..., min_length=1)
    key_points: List[str] = Field(default_factory=list)
    difficulty_level: Optional[str] = None


class QuestionOutput(BaseModel):
    question: str = ""
    options: Optional[List[Any]] = None
    correctAnswer: Any = None
    explanation: str = ""
    tags: Optional[List[Any]] = None
    difficulty: Optional[str] = None


def build_analysis_prompt(text: str) -> str:
    content = (text or "")[:ANALYSIS_MAX_CHARS]
    return (
        "Analyze this study material and provide:\n"
        "1. A single subject category\n"
        "2. Main topics covered\n"
        "3. A concise summary\n"
        "4. Key learning points\n"
        "5. Difficulty level (beginner/intermediate/advanced)\n\n"
        "Return strict JSON with keys: category (string), topics (array of strings), summary (string), "
        "key_points (array of strings), difficulty_level (string).\n\n"
        f"Content:\n{content}"
    )


def build_question_prompt(text: str, count: int, difficulty: str) -> str:
    return (
        f"Generate {count} multiple-choice questions about this study material.\n"
        f"Difficulty level: {difficulty}\n\n"
        f"Study Material:\n{text}\n\n"
        "For each question:\n"
        "1. Create a clear, concise question\n"
        f"2. Provide {QUESTION_OPTION_COUNT} plausible options (A, B, C, D)\n"
        "3. Mark the correct answer\n"
        "4. Add a brief explanation\n"
        "5. Add relevant topic tags\n\n"
        "Format your response as a JSON array:\n"
        '[{"question": "string", "options": ["A) string", "B) string", "C) string", "D) string"], '
        '"correctAnswer": "A", "explanation": "string", "tags": ["string"]}]'
    )


def parse_analysis(raw: str) -> ContentAnalysis:
    parsed = _parse_json_output(raw)
    if not isinstance(parsed, dict):
        raise ContentValidationError("Failed to parse analysis response: expected a JSON object")
    try:
        output = AnalysisOutput.model_validate(parsed)
    except ValidationError as exc:
        raise ContentValidationError(f"Failed to parse analysis response: {exc.errors()[0].get('msg')}") from exc
    return ContentAnalysis(
        category=output.category.strip(),
        topics=_as_str_list(output.topics),
        summary=output.summary.strip(),
        key_points=_as_str_list(output.key_points),
        difficulty_level=(output.difficulty_level or "").strip().lower() or None,
    )


def parse_questions(raw: str, default_difficulty: str = "medium") -> Tuple[List[Question], int]:
    """
    Parse a question array and keep only structurally valid questions.

    Returns ``(valid_questions, dropped_count)``. A response that is not a
    JSON array at all is a ContentValidationError.
    """
    parsed = _parse_json_output(raw)
    if isinstance(parsed, dict) and isinstance(parsed.get("questions"), list):
        parsed = parsed["questions"]
    if not isinstance(parsed, list):
        raise ContentValidationError("Failed to parse question response: expected a JSON array")
    questions: List[Question] = []
    dropped = 0
    for item in parsed:
        question = normalize_question(item, default_difficulty)
        if question is None:
            dropped += 1
            continue
        questions.append(question)
    if dropped:
        logger.info("Dropped %s invalid generated questions", dropped)
    return questions, dropped


def normalize_question(item: Any, default_difficulty: str = "medium") -> Optional[Question]:
    if not isinstance(item, dict):
        return None
    try:
        output = QuestionOutput.model_validate(item)
    except ValidationError:
        return None
    text = output.question.strip()
    explanation = output.explanation.strip()
    options = [_strip_option_prefix(str(option)) for option in output.options or []]
    if not text or not explanation:
        return None
    if len(options) != QUESTION_OPTION_COUNT or not all(options):
        return None
    correct_index = _correct_index(output.correctAnswer, options)
    if correct_index is None or not 0 <= correct_index < QUESTION_OPTION_COUNT:
        return None
    difficulty = (output.difficulty or default_difficulty or "medium").strip().lower()
    if difficulty not in QUESTION_DIFFICULTIES:
        difficulty = default_difficulty
    return Question(
        question=text,
        options=options,
        correct_index=correct_index,
        explanation=explanation,
        difficulty=difficulty,
        tags=_as_str_list(output.tags),
    )


def _correct_index(value: Any, options: List[str]) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    answer = str(value or "").strip()
    if not answer:
        return None
    if answer.isdigit():
        return int(answer)
    letter = _LETTER_RE.match(answer)
    if letter:
        return "ABCD".index(letter.group(1).upper())
    stripped = _strip_option_prefix(answer).lower()
    for idx, option in enumerate(options):
        if option.lower() == stripped:
            return idx
    return None


def _strip_option_prefix(option: str) -> str:
    return _OPTION_PREFIX_RE.sub("", option or "", count=1).strip()


def _parse_json_output(raw: str) -> Any:
    value = (raw or "").strip()
    if not value:
        return None
    fenced = re.search(r"```(?:json)?\s*(\{.*\}|\[.*\])\s*```", value, flags=re.DOTALL)
    if fenced:
        value = fenced.group(1).strip()
    try:
        return json.loads(value)
    except ValueError:
        match = re.search(r"(\[.*\]|\{.*\})", value, flags=re.DOTALL)
        if match:
            try:
                return json.loads(match.group(1))
            except ValueError:
                return None
        return None


def _as_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    result = []
    for item in value:
        text = str(item).strip()
        if text:
            result.append(text)
    return result
