import pytest

from engines.attempts import AttemptLifecycle
from engines.validation import AttemptNotFound, NotFoundError, RetryLimitExceeded, ValidationError


@pytest.fixture
def lifecycle(store, clock):
    return AttemptLifecycle(store, clock=clock)


@pytest.fixture
def quiz(store):
    assessment = store.create_assessment("Quiz", passing_score=50, retry_limit=2)
    q1 = store.create_question(assessment["id"], "multiple_choice", "Pick A", options=["A", "B"], correct_answer="A")
    q2 = store.create_question(assessment["id"], "multiple_choice", "Pick B", options=["A", "B"], correct_answer="B")
    return {"assessment": assessment, "q1": q1["id"], "q2": q2["id"]}


def test_start_attempt_opens_empty_attempt(lifecycle, quiz):
    attempt = lifecycle.start_attempt(quiz["assessment"]["id"], "alice")

    assert attempt["answers"] == {}
    assert attempt["completed_at"] is None
    assert attempt["score"] is None
    assert attempt["percentage"] is None


def test_submit_grades_and_stores_result(lifecycle, quiz):
    attempt = lifecycle.start_attempt(quiz["assessment"]["id"], "alice")

    result = lifecycle.submit_attempt(attempt["id"], {quiz["q1"]: "A", quiz["q2"]: "C"}, time_spent_seconds=42)

    assert result["score"] == 1
    assert result["max_score"] == 2
    assert result["is_passed"] is True
    assert result["percentage"] == 50.0
    assert result["time_spent_seconds"] == 42
    assert result["completed_at"] is not None
    assert result["completed_at"] > result["started_at"]
    assert result["answers"] == {quiz["q1"]: "A", quiz["q2"]: "C"}


def test_empty_answers_score_zero(lifecycle, quiz):
    attempt = lifecycle.start_attempt(quiz["assessment"]["id"], "alice")

    result = lifecycle.submit_attempt(attempt["id"], {})

    assert (result["score"], result["max_score"], result["is_passed"]) == (0, 2, False)


def test_unknown_attempt_is_rejected(lifecycle):
    with pytest.raises(AttemptNotFound):
        lifecycle.submit_attempt("missing", {})


def test_unknown_attempt_is_a_not_found_error(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.grade_question("missing", "q", 1)


def test_malformed_submission_is_rejected(lifecycle, quiz):
    attempt = lifecycle.start_attempt(quiz["assessment"]["id"], "alice")

    with pytest.raises(ValidationError):
        lifecycle.submit_attempt(attempt["id"], ["A", "B"])
    with pytest.raises(ValidationError):
        lifecycle.submit_attempt(attempt["id"], {}, time_spent_seconds=-1)
    assert lifecycle.store.get_attempt(attempt["id"])["completed_at"] is None


def test_unpublished_assessment_cannot_be_started(store, lifecycle):
    draft = store.create_assessment("Draft", is_published=False)

    with pytest.raises(ValidationError, match="not published"):
        lifecycle.start_attempt(draft["id"], "alice")


def test_missing_assessment_or_enrollment(lifecycle, quiz):
    with pytest.raises(NotFoundError):
        lifecycle.start_attempt("missing", "alice")
    with pytest.raises(NotFoundError):
        lifecycle.start_attempt(quiz["assessment"]["id"], "alice", enrollment_id="missing")


def test_retry_limit_is_reported_but_not_enforced_by_default(lifecycle, quiz):
    assessment_id = quiz["assessment"]["id"]
    for _ in range(3):
        attempt = lifecycle.start_attempt(assessment_id, "alice")
        lifecycle.submit_attempt(attempt["id"], {})

    assert lifecycle.remaining_attempts(assessment_id, "alice") == 0
    assert len(lifecycle.list_attempts("alice", assessment_id)) == 3


def test_retry_limit_enforced_when_enabled(store, clock, quiz):
    lifecycle = AttemptLifecycle(store, clock=clock, enforce_retry_limit=True)
    assessment_id = quiz["assessment"]["id"]
    for _ in range(2):
        attempt = lifecycle.start_attempt(assessment_id, "alice")
        lifecycle.submit_attempt(attempt["id"], {})

    with pytest.raises(RetryLimitExceeded):
        lifecycle.start_attempt(assessment_id, "alice")
    # Other learners keep their own budget.
    assert lifecycle.start_attempt(assessment_id, "bob")["user_id"] == "bob"


def test_zero_retry_limit_means_unlimited(store, lifecycle):
    assessment = store.create_assessment("Open", retry_limit=0)

    assert lifecycle.remaining_attempts(assessment["id"], "alice") is None


def test_manual_grading_of_essay(store, lifecycle):
    assessment = store.create_assessment("Essay", passing_score=60)
    mc = store.create_question(assessment["id"], "multiple_choice", "Pick A", options=["A"], correct_answer="A")
    essay = store.create_question(assessment["id"], "essay", "Describe the team", points=4)
    attempt = lifecycle.start_attempt(assessment["id"], "alice")
    submitted = lifecycle.submit_attempt(attempt["id"], {mc["id"]: "A", essay["id"]: "We ship."})
    assert submitted["is_passed"] is False

    graded = lifecycle.grade_question(attempt["id"], essay["id"], 3)

    assert graded["score"] == 4
    assert graded["is_passed"] is True
    assert graded["overrides"] == {essay["id"]: 3.0}
    assert graded["completed_at"] == submitted["completed_at"]


def test_manual_grading_requires_submission_and_valid_points(store, lifecycle):
    assessment = store.create_assessment("Essay")
    essay = store.create_question(assessment["id"], "essay", "Describe", points=2)
    attempt = lifecycle.start_attempt(assessment["id"], "alice")

    with pytest.raises(ValidationError):
        lifecycle.grade_question(attempt["id"], essay["id"], 1)

    lifecycle.submit_attempt(attempt["id"], {})
    with pytest.raises(ValidationError):
        lifecycle.grade_question(attempt["id"], essay["id"], 5)
    with pytest.raises(NotFoundError):
        lifecycle.grade_question(attempt["id"], "other-question", 1)


def test_admin_listing_paginates_and_filters(lifecycle, quiz):
    assessment_id = quiz["assessment"]["id"]
    for user, answer in [("alice", "A"), ("bob", "B"), ("carol", "A")]:
        attempt = lifecycle.start_attempt(assessment_id, user)
        lifecycle.submit_attempt(attempt["id"], {quiz["q1"]: answer})

    first = lifecycle.list_assessment_attempts(assessment_id, page=1, limit=2)
    second = lifecycle.list_assessment_attempts(assessment_id, page=2, limit=2)
    passed = lifecycle.list_assessment_attempts(assessment_id, passed=True)

    assert first["pagination"] == {
        "page": 1,
        "limit": 2,
        "total": 3,
        "totalPages": 2,
        "hasNext": True,
        "hasPrev": False,
    }
    # Newest first.
    assert [a["user_id"] for a in first["data"]] == ["carol", "bob"]
    assert [a["user_id"] for a in second["data"]] == ["alice"]
    assert {a["user_id"] for a in passed["data"]} == {"alice", "carol"}


def test_admin_listing_validates_paging(lifecycle, quiz):
    with pytest.raises(ValidationError):
        lifecycle.list_assessment_attempts(quiz["assessment"]["id"], page=0)
    with pytest.raises(ValidationError):
        lifecycle.list_assessment_attempts(quiz["assessment"]["id"], limit=101)
    with pytest.raises(NotFoundError):
        lifecycle.list_assessment_attempts("missing")


def test_set_and_tuple_answers_are_stored_as_lists(store, lifecycle):
    assessment = store.create_assessment("Channels", passing_score=100)
    pick = store.create_question(
        assessment["id"], "multi_select", "Official channels", options=["A", "B", "C"], correct_answer=["A", "B"]
    )
    other = store.create_question(
        assessment["id"], "multi_select", "Backup channels", options=["C", "D"], correct_answer=["C", "D"]
    )
    attempt = lifecycle.start_attempt(assessment["id"], "alice")

    result = lifecycle.submit_attempt(attempt["id"], {pick["id"]: {"B", "A"}, other["id"]: ("D", "C")}, 10)

    assert result["is_passed"] is True
    assert result["score"] == 2
    assert result["answers"] == {pick["id"]: ["A", "B"], other["id"]: ["D", "C"]}


def test_unserialisable_answer_is_rejected(lifecycle, quiz):
    attempt = lifecycle.start_attempt(quiz["assessment"]["id"], "alice")

    with pytest.raises(ValidationError):
        lifecycle.submit_attempt(attempt["id"], {quiz["q1"]: object()})
    with pytest.raises(ValidationError):
        lifecycle.submit_attempt(attempt["id"], {quiz["q1"]: float("nan")})
    assert lifecycle.store.get_attempt(attempt["id"])["completed_at"] is None


def test_time_spent_beyond_storage_range_is_rejected(lifecycle, quiz):
    attempt = lifecycle.start_attempt(quiz["assessment"]["id"], "alice")

    with pytest.raises(ValidationError):
        lifecycle.submit_attempt(attempt["id"], {}, 1e300)
    with pytest.raises(ValidationError):
        lifecycle.submit_attempt(attempt["id"], {}, 2**63)

    result = lifecycle.submit_attempt(attempt["id"], {}, 2**62)
    assert result["time_spent_seconds"] == 2**62
