"""Test cases for record store operations."""

import logging
import sqlite3

import pytest

from engines.validation import NotFoundError, ValidationError


def test_stage_item_requires_matching_reference(store):
    flow = store.create_flow("Flow")
    stage = store.create_stage(flow["id"], "Stage", 0)

    with pytest.raises(ValidationError):
        store.create_stage_item(stage["id"], "video", 0, content_id="c1")
    with pytest.raises(ValidationError):
        store.create_stage_item(stage["id"], "content", 0, body="text")
    with pytest.raises(ValidationError):
        store.create_stage_item(stage["id"], "info", 0, body="text", content_id="c1")
    with pytest.raises(NotFoundError):
        store.create_stage_item(stage["id"], "assessment", 0, assessment_id="missing")

    assert store.list_stage_items(stage["id"]) == []


def test_positions_are_unique_within_parent(store):
    flow = store.create_flow("Flow")
    stage = store.create_stage(flow["id"], "Stage", 0)
    store.create_stage_item(stage["id"], "info", 0, body="first")

    with pytest.raises(ValidationError):
        store.create_stage(flow["id"], "Duplicate", 0)
    with pytest.raises(ValidationError):
        store.create_stage_item(stage["id"], "info", 0, body="second")


def test_stages_and_items_are_listed_by_position(store):
    flow = store.create_flow("Flow")
    later = store.create_stage(flow["id"], "Later", 5)
    earlier = store.create_stage(flow["id"], "Earlier", 1)
    store.create_stage_item(earlier["id"], "info", 3, title="b", body="b")
    store.create_stage_item(earlier["id"], "info", 0, title="a", body="a")

    assert [s["id"] for s in store.list_stages(flow["id"])] == [earlier["id"], later["id"]]
    assert [i["title"] for i in store.list_stage_items(earlier["id"])] == ["a", "b"]


def test_enrollment_is_unique_per_user_and_flow(store):
    flow = store.create_flow("Flow")

    first = store.create_enrollment("alice", flow["id"])
    second = store.create_enrollment("alice", flow["id"])

    assert first["id"] == second["id"]
    assert first["status"] == "active"
    assert len(store.list_flow_enrollments(flow["id"])) == 1
    with pytest.raises(NotFoundError):
        store.create_enrollment("alice", "missing")


def test_item_completion_keeps_first_timestamp(onboarding_flow, store):
    enrollment_id = onboarding_flow["enrollment"]["id"]
    item_id = onboarding_flow["welcome"]["id"]

    store.upsert_item_completed("alice", enrollment_id, item_id, "2024-01-01T10:00:00+00:00", score=20)
    row = store.upsert_item_completed(
        "alice", enrollment_id, item_id, "2024-01-02T10:00:00+00:00", metadata={"device": "mobile"}
    )

    assert row["completed_at"] == "2024-01-01T10:00:00+00:00"
    assert row["score"] == 20
    assert row["metadata"] == {"device": "mobile"}


def test_stage_and_enrollment_completion_transition_once(onboarding_flow, store):
    enrollment_id = onboarding_flow["enrollment"]["id"]
    stage_id = onboarding_flow["intro"]["id"]
    store.upsert_stage_started("alice", enrollment_id, stage_id, "2024-01-01T10:00:00+00:00")

    assert store.mark_stage_completed("alice", enrollment_id, stage_id, "2024-01-01T11:00:00+00:00") is True
    assert store.mark_stage_completed("alice", enrollment_id, stage_id, "2024-01-01T12:00:00+00:00") is False
    assert store.get_stage_progress("alice", enrollment_id, stage_id)["completed_at"] == "2024-01-01T11:00:00+00:00"

    assert store.mark_enrollment_completed(enrollment_id, "2024-01-01T13:00:00+00:00") is True
    assert store.mark_enrollment_completed(enrollment_id, "2024-01-01T14:00:00+00:00") is False
    assert store.get_enrollment(enrollment_id)["completed_at"] == "2024-01-01T13:00:00+00:00"


def test_transaction_rolls_back_on_error(onboarding_flow, store):
    enrollment_id = onboarding_flow["enrollment"]["id"]
    stage_id = onboarding_flow["intro"]["id"]

    with pytest.raises(sqlite3.OperationalError):
        with store.transaction() as con:
            store.upsert_stage_started("alice", enrollment_id, stage_id, "2024-01-01T10:00:00+00:00", con=con)
            con.execute("SELECT * FROM no_such_table")

    assert store.get_stage_progress("alice", enrollment_id, stage_id) is None


def test_questions_round_trip_answer_keys(onboarding_flow, store):
    quiz_id = onboarding_flow["quiz"]["id"]
    store.create_question(quiz_id, "true_false", "Is water wet?", correct_answer=True)
    store.create_question(quiz_id, "multi_select", "Pick two", options=["A", "B", "C"], correct_answer=["A", "C"])

    questions = store.get_assessment(quiz_id, include_questions=True)["questions"]

    assert [q["position"] for q in questions] == [0, 1, 2, 3]
    assert questions[2]["correct_answer"] is True
    assert questions[3]["correct_answer"] == ["A", "C"]
    assert questions[3]["options"] == ["A", "B", "C"]


def test_invalid_question_is_not_stored(onboarding_flow, store):
    quiz_id = onboarding_flow["quiz"]["id"]

    with pytest.raises(ValidationError):
        store.create_question(quiz_id, "ranking", "Order these", correct_answer=["A"])

    assert len(store.list_questions(quiz_id)) == 2


def test_assessment_settings_are_validated(store):
    with pytest.raises(ValidationError):
        store.create_assessment("Too strict", passing_score=120)
    with pytest.raises(ValidationError):
        store.create_assessment("Negative", retry_limit=-1)

    assessment = store.create_assessment("Defaults")
    assert assessment["passing_score"] == 70
    assert assessment["retry_limit"] == 3
    assert assessment["is_published"] is True


def test_corrupt_json_column_is_logged(onboarding_flow, store, caplog):
    question_id = onboarding_flow["questions"][0]["id"]
    store._exec("UPDATE questions SET correct_answer = ? WHERE id = ?", ("{not json", question_id))

    with caplog.at_level(logging.WARNING, logger="db"):
        questions = store.list_questions(onboarding_flow["quiz"]["id"])

    assert questions[0]["correct_answer"] is None
    assert "correct_answer is not valid JSON" in caplog.text
