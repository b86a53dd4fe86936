import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Returns ISO timestamps one second apart, starting 2024-01-01."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> str:
        self.current += timedelta(seconds=1)
        return self.current.isoformat()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    from db import RecordStore

    record_store = RecordStore(str(tmp_path / "test.db"), max_connections=4)
    record_store.init()
    yield record_store
    record_store.close()


@pytest.fixture
def onboarding_flow(store):
    """Two-stage flow: an intro stage with two items, a quiz stage with one."""
    flow = store.create_flow("Onboarding", promote_to_member=True)
    intro = store.create_stage(flow["id"], "Intro", 0)
    welcome = store.create_stage_item(intro["id"], "info", 0, title="Welcome", body="Hi there")
    handbook = store.create_stage_item(intro["id"], "content", 1, title="Handbook", content_id="doc-1")

    quiz = store.create_assessment("Quiz", passing_score=50)
    q1 = store.create_question(quiz["id"], "multiple_choice", "Pick A", options=["A", "B"], correct_answer="A")
    q2 = store.create_question(quiz["id"], "multiple_choice", "Pick B", options=["A", "B"], correct_answer="B")
    check = store.create_stage(flow["id"], "Check", 1)
    quiz_item = store.create_stage_item(check["id"], "assessment", 0, title="Quiz", assessment_id=quiz["id"])

    enrollment = store.create_enrollment("alice", flow["id"])
    return {
        "flow": flow,
        "intro": intro,
        "check": check,
        "welcome": welcome,
        "handbook": handbook,
        "quiz": quiz,
        "questions": [q1, q2],
        "quiz_item": quiz_item,
        "enrollment": enrollment,
        "user_id": "alice",
    }
