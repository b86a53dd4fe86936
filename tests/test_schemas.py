import pytest

from engines.validation import InvalidQuestionType, ValidationError
from schemas import (
    EssayQuestion,
    FlowProgress,
    MultiSelectQuestion,
    ProgressSummary,
    TrueFalseQuestion,
    parse_question,
)


def test_parse_question_selects_variant_by_type():
    question = parse_question({"id": "q1", "type": "multi_select", "correct_answer": ["A", "B"]})

    assert isinstance(question, MultiSelectQuestion)
    assert question.points == 1.0


def test_parse_question_rejects_unknown_type():
    with pytest.raises(InvalidQuestionType) as excinfo:
        parse_question({"id": "q1", "type": "matching", "correct_answer": "A"})

    assert excinfo.value.question_type == "matching"
    assert excinfo.value.question_id == "q1"


def test_parse_question_rejects_mistyped_answer_key():
    with pytest.raises(ValidationError):
        parse_question({"id": "q1", "type": "true_false", "correct_answer": "yes"})
    with pytest.raises(ValidationError):
        parse_question({"id": "q2", "type": "multiple_choice", "correct_answer": 3})


def test_parse_question_rejects_negative_points():
    with pytest.raises(ValidationError):
        parse_question({"id": "q1", "type": "essay", "points": -1})


def test_parse_question_passes_typed_models_through():
    question = TrueFalseQuestion(id="q1", correct_answer=False)

    assert parse_question(question) is question
    assert question.is_correct(False) is True
    assert question.is_correct(0) is False


def test_essay_needs_no_answer_key():
    question = parse_question({"id": "q1", "type": "essay", "question": "Tell us about yourself"})

    assert isinstance(question, EssayQuestion)
    assert question.is_correct("anything") is False


def test_flow_progress_defaults_to_empty_summary():
    progress = FlowProgress(
        enrollment_id="e1",
        flow_id="f1",
        flow_title="Onboarding",
        started_at="2024-01-01T00:00:00+00:00",
    )

    assert progress.stages == []
    assert progress.summary == ProgressSummary()
    assert progress.model_dump()["summary"]["percentage"] == 0
