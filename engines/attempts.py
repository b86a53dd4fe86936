"""Assessment attempt lifecycle.

An attempt is opened with empty answers, then submitted exactly once in
normal operation: the submission is graded by ``engines.scoring`` and the
result is written back onto the attempt row. Passing an assessment does
not complete the stage item that hosts it; the caller forwards the
attempt's percentage to the completion propagator.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from db import RecordStore, utcnow
from engines.scoring import GradeResult, grade
from engines.validation import (
    AttemptNotFound,
    NotFoundError,
    RetryLimitExceeded,
    ValidationError,
    validate_answers,
    validate_points,
    validate_time_spent,
)
from schemas import parse_question

_LOGGER = logging.getLogger(__name__)


class AttemptLifecycle:
    """Create, submit and review assessment attempts.

    Parameters
    ----------
    store:
        Record store holding assessments, questions and attempts.
    clock:
        Returns the current instant as an ISO-8601 string.
    enforce_retry_limit:
        When true, ``start_attempt`` refuses a new attempt once the learner
        has completed ``retry_limit`` attempts. Off by default so that the
        presentation layer decides how to treat the limit.
    """

    def __init__(
        self,
        store: RecordStore,
        clock: Callable[[], str] = utcnow,
        enforce_retry_limit: bool = False,
    ) -> None:
        self.store = store
        self._clock = clock
        self.enforce_retry_limit = bool(enforce_retry_limit)

    # ----- public API --------------------------------------------------
    def start_attempt(
        self,
        assessment_id: str,
        user_id: str,
        enrollment_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        assessment = self.store.get_assessment(assessment_id)
        if assessment is None:
            raise NotFoundError(f"assessment {assessment_id} not found")
        if not assessment["is_published"]:
            raise ValidationError("Assessment is not published")
        if enrollment_id is not None and self.store.get_enrollment(enrollment_id) is None:
            raise NotFoundError(f"enrollment {enrollment_id} not found")

        if self.enforce_retry_limit:
            remaining = self.remaining_attempts(assessment_id, user_id, assessment=assessment)
            if remaining is not None and remaining <= 0:
                raise RetryLimitExceeded(
                    f"Maximum number of attempts ({assessment['retry_limit']}) reached"
                )

        attempt = self.store.insert_attempt(
            assessment_id, user_id, started_at=self._clock(), enrollment_id=enrollment_id
        )
        _LOGGER.info("Started attempt %s on assessment %s for %s", attempt["id"], assessment_id, user_id)
        return attempt

    def submit_attempt(
        self,
        attempt_id: str,
        answers: Mapping[str, Any],
        time_spent_seconds: float = 0,
    ) -> Dict[str, Any]:
        """Grade ``answers`` and store the terminal state of the attempt.

        Submitting an already completed attempt re-grades it and overwrites
        the stored result; callers should not offer that path.
        """
        answers = validate_answers(answers)
        time_spent = validate_time_spent(time_spent_seconds)
        attempt = self._load_attempt(attempt_id)
        if attempt["completed_at"] is not None:
            _LOGGER.warning("Attempt %s re-submitted; previous result is overwritten", attempt_id)

        assessment = self._load_assessment(attempt["assessment_id"])
        result = grade(assessment, answers)
        return self._store_result(attempt_id, answers, time_spent, result, overrides={})

    def grade_question(self, attempt_id: str, question_id: str, points: float) -> Dict[str, Any]:
        """Award ``points`` by hand for one question of a submitted attempt.

        Used for essay and file-upload questions. The attempt is re-graded
        with every manual award made so far.
        """
        attempt = self._load_attempt(attempt_id)
        if attempt["completed_at"] is None:
            raise ValidationError("Attempt has not been submitted yet")
        assessment = self._load_assessment(attempt["assessment_id"])
        question = next((q for q in assessment["questions"] if q["id"] == question_id), None)
        if question is None:
            raise NotFoundError(f"question {question_id} not found on this assessment")
        weight = float(parse_question(question).points)

        overrides = dict(attempt["overrides"])
        overrides[question_id] = validate_points(points, weight)
        result = grade(assessment, attempt["answers"], overrides=overrides)
        return self._store_result(
            attempt_id,
            attempt["answers"],
            attempt["time_spent_seconds"],
            result,
            overrides=overrides,
            completed_at=attempt["completed_at"],
        )

    def list_attempts(self, user_id: str, assessment_id: Optional[str] = None) -> list[Dict[str, Any]]:
        return self.store.list_attempts_for_user(user_id, assessment_id)

    def list_assessment_attempts(
        self,
        assessment_id: str,
        *,
        page: int = 1,
        limit: int = 50,
        user_id: Optional[str] = None,
        passed: Optional[bool] = None,
    ) -> Dict[str, Any]:
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= 100:
            raise ValidationError("limit must be between 1 and 100")
        if self.store.get_assessment(assessment_id) is None:
            raise NotFoundError(f"assessment {assessment_id} not found")
        attempts, total = self.store.list_assessment_attempts(
            assessment_id,
            limit=limit,
            offset=(page - 1) * limit,
            user_id=user_id,
            passed=passed,
        )
        total_pages = -(-total // limit)
        return {
            "data": attempts,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": total_pages,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        }

    def remaining_attempts(
        self,
        assessment_id: str,
        user_id: str,
        *,
        assessment: Optional[Mapping[str, Any]] = None,
    ) -> Optional[int]:
        """Attempts left before ``retry_limit``; ``None`` means unlimited (limit 0)."""
        if assessment is None:
            assessment = self.store.get_assessment(assessment_id)
            if assessment is None:
                raise NotFoundError(f"assessment {assessment_id} not found")
        limit = int(assessment["retry_limit"])
        if limit == 0:
            return None
        used = self.store.count_completed_attempts(assessment_id, user_id)
        return max(0, limit - used)

    # ----- helpers -----------------------------------------------------
    def _load_attempt(self, attempt_id: str) -> Dict[str, Any]:
        attempt = self.store.get_attempt(attempt_id)
        if attempt is None:
            raise AttemptNotFound(f"Assessment attempt {attempt_id} not found")
        return attempt

    def _load_assessment(self, assessment_id: str) -> Dict[str, Any]:
        assessment = self.store.get_assessment(assessment_id, include_questions=True)
        if assessment is None:
            raise NotFoundError(f"assessment {assessment_id} not found")
        return assessment

    def _store_result(
        self,
        attempt_id: str,
        answers: Dict[str, Any],
        time_spent: int,
        result: GradeResult,
        *,
        overrides: Dict[str, float],
        completed_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        updated = self.store.update_attempt_result(
            attempt_id,
            answers=answers,
            time_spent_seconds=time_spent,
            score=result.score,
            max_score=result.max_score,
            is_passed=result.is_passed,
            awarded=result.awarded,
            overrides=overrides,
            completed_at=completed_at or self._clock(),
        )
        _LOGGER.info(
            "Attempt %s graded %s/%s (passed=%s)",
            attempt_id,
            result.score,
            result.max_score,
            result.is_passed,
        )
        return updated
