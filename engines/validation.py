"""Error taxonomy and input validation for the progress and assessment engines."""

import json
import math
from typing import Any, Mapping, Optional


class EngineError(Exception):
    """Base class for errors raised by the engines and the record store."""
    pass


class NotFoundError(EngineError):
    """A referenced enrollment, stage, item, assessment or attempt does not exist."""
    pass


class AttemptNotFound(NotFoundError):
    pass


class ValidationError(EngineError):
    """Raised when input is malformed; the operation has no partial effect."""
    pass


class InvalidQuestionType(ValidationError):
    """Raised when a question carries a type tag outside the six known kinds."""

    def __init__(self, question_type: Any, question_id: Optional[str] = None):
        self.question_type = question_type
        self.question_id = question_id
        where = f" on question {question_id}" if question_id else ""
        super().__init__(f"Invalid question type {question_type!r}{where}")


class RetryLimitExceeded(EngineError):
    pass


class PropagationIncomplete(EngineError):
    """A stage or flow recheck failed after the triggering completion succeeded.

    Never surfaced to the participant; the cascade is retried by the next
    completion event or an explicit recheck.
    """

    def __init__(self, level: str, enrollment_id: str, reason: str):
        self.level = level
        self.enrollment_id = enrollment_id
        self.reason = reason
        super().__init__(
            f"Propagation stopped at {level} level for enrollment {enrollment_id}: {reason}"
        )


def validate_percentage(value: Any, field: str = "score") -> Optional[float]:
    """Return ``value`` as a float in [0, 100]; ``None`` passes through.

    Raises ValidationError for non-numeric, non-finite or out-of-range values.
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be finite")
    if not 0.0 <= number <= 100.0:
        raise ValidationError(f"{field} must be between 0 and 100")
    return number


# SQLite INTEGER columns hold signed 64-bit values.
MAX_TIME_SPENT_SECONDS = 2**63 - 1


def _json_safe(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, tuple):
        return list(value)
    return value


def validate_answers(answers: Any) -> dict[str, Any]:
    """Return ``answers`` as a plain dict that can be stored as JSON.

    Set and tuple answers (multi-select) become lists.
    """
    if not isinstance(answers, Mapping):
        raise ValidationError("answers must be a mapping of question id to answer")
    cleaned: dict[str, Any] = {}
    for key, value in answers.items():
        if not isinstance(key, str):
            raise ValidationError("answer keys must be question ids")
        cleaned[key] = _json_safe(value)
    try:
        json.dumps(cleaned, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"answers must be JSON serialisable: {exc}") from exc
    return cleaned


def validate_time_spent(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("time_spent_seconds must be a number")
    if not math.isfinite(float(value)) or value < 0:
        raise ValidationError("time_spent_seconds must be greater than or equal to zero")
    if value > MAX_TIME_SPENT_SECONDS:
        raise ValidationError(f"time_spent_seconds must not exceed {MAX_TIME_SPENT_SECONDS}")
    return int(value)


def validate_points(value: Any, maximum: float) -> float:
    """Validate a manually awarded point value against the question weight."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("points must be a number")
    number = float(value)
    if not math.isfinite(number) or number < 0:
        raise ValidationError("points must be greater than or equal to zero")
    if number > maximum:
        raise ValidationError(f"points cannot exceed the question weight ({maximum:g})")
    return number
