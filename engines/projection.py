"""Read-only progress views for participants and flow owners."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from db import RecordStore
from engines.caching import ProjectionCache
from engines.validation import NotFoundError
from schemas import (
    EnrollmentOverview,
    FlowCompletionSummary,
    FlowProgress,
    ItemProgressView,
    ProgressSummary,
    StageProgressView,
)

_LOGGER = logging.getLogger(__name__)


def _percentage(completed: int, total: int) -> int:
    return round(completed / total * 100) if total > 0 else 0


def _as_utc(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ProgressProjection:
    """Build the enrollment -> stages -> items progress tree."""

    def __init__(self, store: RecordStore, cache: Optional[ProjectionCache] = None) -> None:
        self.store = store
        self.cache = cache

    def flow_progress(self, enrollment_id: str, user_id: str) -> FlowProgress:
        """Return the participant's progress through the enrolled flow.

        Stages and items without a progress row are reported with null
        timestamps ("not started").
        """
        if self.cache is not None:
            cached = self.cache.get(user_id, enrollment_id)
            if cached is not None:
                return cached.model_copy(deep=True)

        enrollment = self.store.get_enrollment(enrollment_id)
        if enrollment is None or enrollment["user_id"] != user_id:
            raise NotFoundError("Enrollment progress not found")
        flow = self.store.get_flow(enrollment["flow_id"]) or {}

        stage_progress = self.store.list_stage_progress(user_id, enrollment_id)
        item_progress = self.store.list_item_progress(user_id, enrollment_id)

        stages = []
        for stage in self.store.list_stages(enrollment["flow_id"]):
            stage_row = stage_progress.get(stage["id"]) or {}
            items = []
            for item in self.store.list_stage_items(stage["id"]):
                item_row = item_progress.get(item["id"]) or {}
                items.append(
                    ItemProgressView(
                        item_id=item["id"],
                        item_title=item["title"],
                        item_type=item["type"],
                        item_position=item["position"],
                        completed_at=item_row.get("completed_at"),
                        score=item_row.get("score"),
                    )
                )
            stages.append(
                StageProgressView(
                    stage_id=stage["id"],
                    stage_title=stage["title"],
                    stage_position=stage["position"],
                    started_at=stage_row.get("started_at"),
                    completed_at=stage_row.get("completed_at"),
                    items=items,
                )
            )

        total_items = sum(len(stage.items) for stage in stages)
        completed_items = sum(1 for stage in stages for item in stage.items if item.completed_at)
        projection = FlowProgress(
            enrollment_id=enrollment["id"],
            flow_id=enrollment["flow_id"],
            flow_title=flow.get("name") or "Untitled Flow",
            started_at=enrollment["started_at"],
            completed_at=enrollment["completed_at"],
            stages=stages,
            summary=ProgressSummary(
                completed_items=completed_items,
                total_items=total_items,
                completed_stages=sum(1 for stage in stages if stage.completed_at),
                total_stages=len(stages),
                percentage=_percentage(completed_items, total_items),
            ),
        )
        if self.cache is not None:
            self.cache.add(user_id, enrollment_id, projection.model_copy(deep=True))
        return projection

    def list_enrollments(self, user_id: str) -> list[EnrollmentOverview]:
        """Participant dashboard: every enrollment with its item counts, newest first."""
        overviews = []
        for enrollment in self.store.list_enrollments(user_id):
            progress = self.flow_progress(enrollment["id"], user_id).summary
            overviews.append(
                EnrollmentOverview(
                    id=enrollment["id"],
                    flow_id=enrollment["flow_id"],
                    flow={
                        "id": enrollment["flow_id"],
                        "name": enrollment["flow_name"],
                        "description": enrollment["flow_description"],
                    },
                    status=enrollment["status"],
                    started_at=enrollment["started_at"],
                    completed_at=enrollment["completed_at"],
                    progress=progress,
                )
            )
        return overviews

    def flow_summary(self, flow_id: str) -> FlowCompletionSummary:
        """Aggregate completion statistics over every enrollment of a flow."""
        if self.store.get_flow(flow_id) is None:
            raise NotFoundError(f"flow {flow_id} not found")
        enrollments = self.store.list_flow_enrollments(flow_id)
        completed = [e for e in enrollments if e["completed_at"]]

        durations = []
        for enrollment in completed:
            try:
                started = _as_utc(enrollment["started_at"])
                finished = _as_utc(enrollment["completed_at"])
            except (TypeError, ValueError):
                _LOGGER.debug("Skipping enrollment %s with unparsable timestamps", enrollment["id"])
                continue
            durations.append((finished - started).total_seconds() / 3600)

        total = len(enrollments)
        return FlowCompletionSummary(
            total_enrolled=total,
            total_completed=len(completed),
            completion_rate=round(len(completed) / total * 100, 2) if total else 0.0,
            avg_completion_time_hours=round(sum(durations) / len(durations), 2) if durations else None,
        )
