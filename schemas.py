"""Pydantic schemas for questions, assessments and progress projections."""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictStr, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from engines.validation import InvalidQuestionType, ValidationError

__all__ = [
    "QUESTION_TYPES",
    "ITEM_TYPES",
    "MultipleChoiceQuestion",
    "MultiSelectQuestion",
    "TrueFalseQuestion",
    "ShortAnswerQuestion",
    "EssayQuestion",
    "FileUploadQuestion",
    "Question",
    "GradableAssessment",
    "ItemProgressView",
    "StageProgressView",
    "ProgressSummary",
    "FlowProgress",
    "EnrollmentOverview",
    "FlowCompletionSummary",
    "parse_question",
]

QUESTION_TYPES = (
    "multiple_choice",
    "multi_select",
    "true_false",
    "short_answer",
    "essay",
    "file_upload",
)

ITEM_TYPES = ("content", "assessment", "info")


def _strict_equals(submitted: Any, expected: Any) -> bool:
    # bool is an int subclass in Python; compare exact types so True != 1.
    return type(submitted) is type(expected) and submitted == expected


class _QuestionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    assessment_id: str | None = None
    question: str = ""
    options: List[str] = Field(default_factory=list)
    explanation: str | None = None
    points: float = Field(default=1.0, ge=0)
    position: int = Field(default=0, ge=0)

    def is_correct(self, answer: Any) -> bool:
        raise NotImplementedError


class MultipleChoiceQuestion(_QuestionBase):
    type: Literal["multiple_choice"] = "multiple_choice"
    correct_answer: StrictStr

    def is_correct(self, answer: Any) -> bool:
        return _strict_equals(answer, self.correct_answer)


class TrueFalseQuestion(_QuestionBase):
    type: Literal["true_false"] = "true_false"
    correct_answer: StrictBool

    def is_correct(self, answer: Any) -> bool:
        return _strict_equals(answer, self.correct_answer)


class ShortAnswerQuestion(_QuestionBase):
    type: Literal["short_answer"] = "short_answer"
    correct_answer: StrictStr

    def is_correct(self, answer: Any) -> bool:
        return _strict_equals(answer, self.correct_answer)


class MultiSelectQuestion(_QuestionBase):
    type: Literal["multi_select"] = "multi_select"
    correct_answer: List[StrictStr]

    def is_correct(self, answer: Any) -> bool:
        """Equal cardinality and every submitted choice present in the key.

        Duplicates in the submission are not collapsed, so this is not plain
        set equality.
        """
        if not isinstance(answer, (list, tuple, set, frozenset)):
            return False
        return len(answer) == len(self.correct_answer) and all(
            choice in self.correct_answer for choice in answer
        )


class EssayQuestion(_QuestionBase):
    type: Literal["essay"] = "essay"
    correct_answer: Any = None

    def is_correct(self, answer: Any) -> bool:
        return False


class FileUploadQuestion(_QuestionBase):
    type: Literal["file_upload"] = "file_upload"
    correct_answer: Any = None

    def is_correct(self, answer: Any) -> bool:
        return False


Question = Annotated[
    Union[
        MultipleChoiceQuestion,
        MultiSelectQuestion,
        TrueFalseQuestion,
        ShortAnswerQuestion,
        EssayQuestion,
        FileUploadQuestion,
    ],
    Field(discriminator="type"),
]

_QUESTION_ADAPTER: TypeAdapter[Question] = TypeAdapter(Question)


def parse_question(raw: Mapping[str, Any] | BaseModel) -> Question:
    """Validate a stored or authored question into its typed variant."""
    if isinstance(raw, _QuestionBase):
        return raw  # type: ignore[return-value]
    data = raw.model_dump() if isinstance(raw, BaseModel) else dict(raw)
    question_type = data.get("type")
    if question_type not in QUESTION_TYPES:
        raise InvalidQuestionType(question_type, data.get("id"))
    try:
        return _QUESTION_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {question_type} question: {exc.errors()[0]['msg']}") from exc


class GradableAssessment(BaseModel):
    """The slice of an assessment the scoring engine reads."""

    id: str | None = None
    passing_score: float = Field(ge=0, le=100)
    questions: List[Question] = Field(default_factory=list)


class ItemProgressView(BaseModel):
    item_id: str
    item_title: str
    item_type: Literal["content", "assessment", "info"]
    item_position: int
    completed_at: str | None = None
    score: float | None = None


class StageProgressView(BaseModel):
    stage_id: str
    stage_title: str
    stage_position: int
    started_at: str | None = None
    completed_at: str | None = None
    items: List[ItemProgressView] = Field(default_factory=list)


class ProgressSummary(BaseModel):
    completed_items: int = 0
    total_items: int = 0
    completed_stages: int = 0
    total_stages: int = 0
    percentage: int = Field(default=0, description="Completed items over total items, rounded to a whole percent.")


class FlowProgress(BaseModel):
    enrollment_id: str
    flow_id: str
    flow_title: str
    started_at: str
    completed_at: str | None = None
    stages: List[StageProgressView] = Field(default_factory=list)
    summary: ProgressSummary = Field(default_factory=ProgressSummary)


class EnrollmentOverview(BaseModel):
    id: str
    flow_id: str
    flow: Dict[str, Any]
    status: str
    started_at: str
    completed_at: str | None = None
    progress: ProgressSummary


class FlowCompletionSummary(BaseModel):
    total_enrolled: int
    total_completed: int
    completion_rate: float
    avg_completion_time_hours: float | None = None
