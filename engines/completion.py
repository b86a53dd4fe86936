"""Completion propagation for enrollments.

Completing a stage item cascades upwards in a fixed order: the item's
progress row is written first, then the item's stage is re-checked and,
when every item of the stage is complete, the stage is marked complete;
finally every stage of the flow is re-checked and the enrollment is
marked complete once all of them are.

The checks are recomputed from the stored rows on every call instead of
maintaining counters, so a cascade interrupted by a failure is repaired
by the next completion event or an explicit :meth:`recheck`. Completion
timestamps only ever move from null to a value.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Optional

from db import RecordStore, utcnow
from engines.caching import ProjectionCache
from engines.validation import NotFoundError, PropagationIncomplete, ValidationError, validate_percentage

_LOGGER = logging.getLogger(__name__)


@dataclass
class CompletionOutcome:
    """State of the cascade after a completion or recheck."""

    enrollment_id: str
    stage_id: Optional[str] = None
    item: Optional[Dict[str, Any]] = None
    stage_completed_at: Optional[str] = None
    enrollment_completed_at: Optional[str] = None
    completed_stages: tuple[str, ...] = ()
    enrollment_completed: bool = False
    propagation_error: Optional[str] = None

    @property
    def propagated(self) -> bool:
        return self.propagation_error is None

    def as_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["completed_stages"] = list(self.completed_stages)
        payload["propagated"] = self.propagated
        return payload


class CompletionPropagator:
    """Cascade item completion into stage and enrollment completion.

    Parameters
    ----------
    store:
        Record store with the flow structure and progress rows.
    cache:
        Optional projection cache; entries of an enrollment are dropped
        after every write to it.
    clock:
        Returns the current instant as an ISO-8601 string.
    """

    def __init__(
        self,
        store: RecordStore,
        cache: Optional[ProjectionCache] = None,
        clock: Callable[[], str] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock

    # ----- public API --------------------------------------------------
    def start_stage(self, stage_id: str, enrollment_id: str, user_id: str) -> Dict[str, Any]:
        """Record the participant's first visit to a stage.

        Later visits keep the original ``started_at``.
        """
        enrollment = self._load_enrollment(enrollment_id, user_id)
        stage = self.store.get_stage(stage_id)
        if stage is None:
            raise NotFoundError(f"stage {stage_id} not found")
        if stage["flow_id"] != enrollment["flow_id"]:
            raise ValidationError("stage does not belong to the enrolled flow")

        progress = self.store.upsert_stage_started(user_id, enrollment_id, stage_id, self._clock())
        self._invalidate(enrollment_id)
        return progress

    def complete_item(
        self,
        item_id: str,
        enrollment_id: str,
        user_id: str,
        score: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CompletionOutcome:
        """Mark an item complete and cascade to its stage and flow.

        Completing an already completed item keeps the first ``completed_at``;
        a supplied ``score`` replaces the stored one. Failures after the item
        write are logged and reported in ``propagation_error`` rather than
        raised, and the item completion stands.
        """
        score = validate_percentage(score)
        item = self.store.get_stage_item(item_id)
        if item is None:
            raise NotFoundError(f"stage item {item_id} not found")
        enrollment = self._load_enrollment(enrollment_id, user_id)
        stage = self.store.get_stage(item["stage_id"])
        if stage is None or stage["flow_id"] != enrollment["flow_id"]:
            raise ValidationError("stage item does not belong to the enrolled flow")

        now = self._clock()
        item_progress = self.store.upsert_item_completed(
            user_id, enrollment_id, item_id, now, score=score, metadata=metadata
        )
        outcome = CompletionOutcome(enrollment_id=enrollment_id, stage_id=stage["id"], item=item_progress)
        self._run_cascade(enrollment, [stage["id"]], now, outcome, mark_started=True)
        return outcome

    def recheck(self, enrollment_id: str, user_id: str) -> CompletionOutcome:
        """Re-derive completion of every stage and of the enrollment."""
        enrollment = self._load_enrollment(enrollment_id, user_id)
        stage_ids = [stage["id"] for stage in self.store.list_stages(enrollment["flow_id"])]
        outcome = CompletionOutcome(enrollment_id=enrollment_id)
        self._run_cascade(enrollment, stage_ids, self._clock(), outcome, mark_started=False)
        return outcome

    # ----- cascade -----------------------------------------------------
    def _run_cascade(
        self,
        enrollment: Dict[str, Any],
        stage_ids: Iterable[str],
        now: str,
        outcome: CompletionOutcome,
        *,
        mark_started: bool,
    ) -> None:
        try:
            self._cascade(enrollment, list(stage_ids), now, outcome, mark_started=mark_started)
        except PropagationIncomplete as exc:
            _LOGGER.warning("%s", exc)
            outcome.propagation_error = str(exc)
        finally:
            self._invalidate(enrollment["id"])

    def _cascade(
        self,
        enrollment: Dict[str, Any],
        stage_ids: list[str],
        now: str,
        outcome: CompletionOutcome,
        *,
        mark_started: bool,
    ) -> None:
        user_id = enrollment["user_id"]
        enrollment_id = enrollment["id"]
        level = "stage"
        stage_states: Dict[str, Optional[str]] = {}
        newly_completed: list[str] = []
        try:
            with self.store.transaction() as con:
                for stage_id in stage_ids:
                    completed_at, transitioned = self._check_stage(
                        con, user_id, enrollment_id, stage_id, now, mark_started=mark_started
                    )
                    stage_states[stage_id] = completed_at
                    if transitioned:
                        newly_completed.append(stage_id)
                level = "flow"
                # Checked whenever a stage is complete so an earlier interrupted
                # cascade still reaches the enrollment.
                enrollment_completed_at, enrollment_transitioned = enrollment["completed_at"], False
                if not stage_ids or any(stage_states.values()):
                    enrollment_completed_at, enrollment_transitioned = self._check_flow(
                        con, enrollment, now
                    )
        except sqlite3.Error as exc:
            raise PropagationIncomplete(level, enrollment_id, str(exc)) from exc

        if outcome.stage_id is not None:
            outcome.stage_completed_at = stage_states.get(outcome.stage_id)
        outcome.completed_stages = tuple(newly_completed)
        outcome.enrollment_completed_at = enrollment_completed_at
        outcome.enrollment_completed = enrollment_transitioned

    def _check_stage(
        self,
        con: sqlite3.Connection,
        user_id: str,
        enrollment_id: str,
        stage_id: str,
        now: str,
        *,
        mark_started: bool,
    ) -> tuple[Optional[str], bool]:
        items = self.store.list_stage_items(stage_id, con=con)
        progress = self.store.list_item_progress(user_id, enrollment_id, con=con)
        all_completed = all(
            (progress.get(item["id"]) or {}).get("completed_at") for item in items
        )
        if mark_started or all_completed:
            self.store.upsert_stage_started(user_id, enrollment_id, stage_id, now, con=con)

        transitioned = False
        if all_completed:
            transitioned = self.store.mark_stage_completed(user_id, enrollment_id, stage_id, now, con=con)
            if transitioned:
                _LOGGER.info("Stage %s completed for enrollment %s", stage_id, enrollment_id)

        row = self.store.get_stage_progress(user_id, enrollment_id, stage_id, con=con)
        return (row["completed_at"] if row else None), transitioned

    def _check_flow(
        self,
        con: sqlite3.Connection,
        enrollment: Dict[str, Any],
        now: str,
    ) -> tuple[Optional[str], bool]:
        user_id = enrollment["user_id"]
        enrollment_id = enrollment["id"]
        stages = self.store.list_stages(enrollment["flow_id"], con=con)
        stage_progress = self.store.list_stage_progress(user_id, enrollment_id, con=con)
        all_completed = all(
            (stage_progress.get(stage["id"]) or {}).get("completed_at") for stage in stages
        )

        transitioned = False
        if all_completed:
            transitioned = self.store.mark_enrollment_completed(enrollment_id, now, con=con)
            if transitioned:
                _LOGGER.info("Enrollment %s completed by %s", enrollment_id, user_id)
                flow = self.store.get_flow(enrollment["flow_id"], con=con)
                if flow and flow["promote_to_member"]:
                    self.store.promote_user_to_member(user_id, con=con)
                    _LOGGER.info("Promoted %s to member after completing flow %s", user_id, flow["id"])

        current = self.store.get_enrollment(enrollment_id, con=con)
        return (current["completed_at"] if current else None), transitioned

    # ----- helpers -----------------------------------------------------
    def _load_enrollment(self, enrollment_id: str, user_id: str) -> Dict[str, Any]:
        enrollment = self.store.get_enrollment(enrollment_id)
        if enrollment is None or enrollment["user_id"] != user_id:
            raise NotFoundError(f"enrollment {enrollment_id} not found")
        return enrollment

    def _invalidate(self, enrollment_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(enrollment_id)
