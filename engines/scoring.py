"""Assessment scoring engine.

Grades a submission against an assessment's questions and turns the
weighted result into a pass/fail verdict. The engine is a pure function
of its inputs: it performs no I/O and keeps no state between calls.

Each question type owns its comparison rule (see ``schemas.Question``):
choice, true/false and short answers must match the key exactly,
multi-select answers must have the key's length with every choice in
the key, and essay or file-upload questions are never correct until a
person awards points through ``overrides``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from engines.validation import ValidationError, validate_points
from schemas import GradableAssessment, Question, parse_question

_LOGGER = logging.getLogger(__name__)

AssessmentInput = Union[GradableAssessment, Mapping[str, Any]]


@dataclass(frozen=True)
class GradeResult:
    """Outcome of grading one submission."""

    score: float
    max_score: float
    is_passed: bool
    percentage: float
    awarded: Dict[str, float] = field(default_factory=dict)

    def as_response(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "maxScore": self.max_score,
            "isPassed": self.is_passed,
            "percentage": self.percentage,
        }


def _coerce_assessment(assessment: AssessmentInput) -> tuple[float, list[Question]]:
    if isinstance(assessment, GradableAssessment):
        return float(assessment.passing_score), list(assessment.questions)
    try:
        passing_score = float(assessment["passing_score"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("assessment passing_score is required") from exc
    raw_questions: Sequence[Any] = assessment.get("questions") or ()
    return passing_score, [parse_question(raw) for raw in raw_questions]


def grade(
    assessment: AssessmentInput,
    answers: Mapping[str, Any],
    overrides: Optional[Mapping[str, float]] = None,
) -> GradeResult:
    """Grade ``answers`` (question id -> submitted answer) for ``assessment``.

    Unanswered questions count as incorrect. ``overrides`` maps question ids
    to manually awarded points and takes precedence over automatic grading.
    Raises InvalidQuestionType for an unknown question type tag.
    """
    passing_score, questions = _coerce_assessment(assessment)
    overrides = overrides or {}

    total_points = 0.0
    earned_points = 0.0
    awarded: Dict[str, float] = {}
    for question in questions:
        weight = float(question.points)
        total_points += weight
        if question.id in overrides:
            points = validate_points(overrides[question.id], weight)
        elif question.id in answers and question.is_correct(answers[question.id]):
            points = weight
        else:
            points = 0.0
        awarded[question.id] = points
        earned_points += points

    score = min(round(earned_points, 2), total_points)
    ratio = score / total_points * 100 if total_points > 0 else 0.0
    is_passed = ratio >= passing_score
    percentage = round(ratio, 2)

    _LOGGER.debug(
        "Graded %s questions: %s/%s (%.2f%%, pass mark %.2f)",
        len(questions),
        score,
        total_points,
        percentage,
        passing_score,
    )
    return GradeResult(
        score=score,
        max_score=total_points,
        is_passed=is_passed,
        percentage=percentage,
        awarded=awarded,
    )
