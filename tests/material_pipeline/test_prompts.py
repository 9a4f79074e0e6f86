import json

import pytest

from pipeline_fakes import ANALYSIS_JSON, QUESTIONS_JSON
from services.material_pipeline.errors import ContentValidationError
from services.material_pipeline.prompts import (
    ANALYSIS_MAX_CHARS,
    build_analysis_prompt,
    build_question_prompt,
    normalize_question,
    parse_analysis,
    parse_questions,
)


def test_analysis_parses_fenced_json():
    analysis = parse_analysis(f"Here you go:\n```json\n{ANALYSIS_JSON}\n```")

    assert analysis.category == "Aviation"
    assert analysis.topics == ["Lift", "Drag", "Weight"]
    assert analysis.key_points == ["Lift opposes weight", "Thrust opposes drag"]
    assert analysis.difficulty_level == "beginner"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "no json here",
        "[1, 2, 3]",
        json.dumps({"topics": ["Lift"], "summary": "missing category"}),
        json.dumps({"category": "", "summary": "empty category"}),
    ],
)
def test_malformed_analysis_is_a_validation_error(raw):
    with pytest.raises(ContentValidationError) as exc_info:
        parse_analysis(raw)
    assert str(exc_info.value).startswith("Failed to parse analysis response")


def test_analysis_prompt_is_truncated():
    prompt = build_analysis_prompt("x" * (ANALYSIS_MAX_CHARS + 500))
    assert prompt.count("x") == ANALYSIS_MAX_CHARS


def test_question_prompt_mentions_count_and_difficulty():
    prompt = build_question_prompt("Lift and drag.", 5, "hard")
    assert "Generate 5 multiple-choice questions" in prompt
    assert "Difficulty level: hard" in prompt
    assert "Lift and drag." in prompt


def test_questions_keep_valid_items_and_count_drops():
    questions, dropped = parse_questions(QUESTIONS_JSON, "easy")

    assert dropped == 1
    assert [q.correct_index for q in questions] == [0, 1]
    assert questions[0].options == ["Lift", "Drag", "Thrust", "Friction"]
    assert questions[0].difficulty == "easy"
    assert questions[0].tags == ["forces"]


def test_questions_accept_wrapped_object():
    wrapped = json.dumps({"questions": json.loads(QUESTIONS_JSON)[:1]})
    questions, dropped = parse_questions(wrapped)
    assert (len(questions), dropped) == (1, 0)


def test_question_response_that_is_not_an_array_is_rejected():
    with pytest.raises(ContentValidationError):
        parse_questions('{"question": "lonely"}')
    with pytest.raises(ContentValidationError):
        parse_questions("I could not write questions for this.")


def _item(**overrides):
    item = {
        "question": "Which force opposes weight?",
        "options": ["Lift", "Drag", "Thrust", "Friction"],
        "correctAnswer": "A",
        "explanation": "Lift acts upward.",
    }
    item.update(overrides)
    return item


@pytest.mark.parametrize(
    "answer, expected",
    [("A", 0), ("b", 1), ("C) Thrust", 2), (3, 3), ("2", 2), ("Friction", 3)],
)
def test_correct_answer_forms(answer, expected):
    assert normalize_question(_item(correctAnswer=answer)).correct_index == expected


@pytest.mark.parametrize(
    "overrides",
    [
        {"options": ["Lift", "Drag", "Thrust"]},
        {"options": ["Lift", "Drag", "Thrust", "Friction", "Torque"]},
        {"options": ["Lift", "", "Thrust", "Friction"]},
        {"correctAnswer": 4},
        {"correctAnswer": -1},
        {"correctAnswer": "E"},
        {"correctAnswer": None},
        {"question": "   "},
        {"explanation": ""},
    ],
)
def test_structurally_invalid_questions_are_dropped(overrides):
    assert normalize_question(_item(**overrides)) is None


def test_unknown_difficulty_falls_back_to_default():
    question = normalize_question(_item(difficulty="impossible"), "medium")
    assert question.difficulty == "medium"
