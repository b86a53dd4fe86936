"""Seed a demo onboarding flow and walk participants through it over HTTP.

Usage::

    python generate_test_data.py --db data.db --seed-only
    uvicorn app:app &
    python generate_test_data.py --db data.db --base-url http://127.0.0.1:8000
"""

import argparse
import random
import time

import requests

from db import RecordStore

BASE_URL = "http://127.0.0.1:8000"

USERS = ["alice", "peter", "marco"]

# Probability that a simulated participant answers a question correctly
SKILL = {"alice": 0.95, "peter": 0.7, "marco": 0.4}


def seed_demo_flow(store: RecordStore) -> dict:
    """Create a two-stage flow with content, info and a graded quiz."""
    flow = store.create_flow("New Hire Onboarding", "Company basics and a short quiz", promote_to_member=True)

    welcome = store.create_stage(flow["id"], "Welcome", 0)
    store.create_stage_item(welcome["id"], "info", 0, title="Hello", body="Welcome to the team!")
    store.create_stage_item(welcome["id"], "content", 1, title="Handbook", content_id="handbook-pdf")

    quiz = store.create_assessment("Handbook quiz", passing_score=50, retry_limit=3)
    store.create_question(
        quiz["id"],
        "multiple_choice",
        "When is payday?",
        options=["Monthly", "Weekly"],
        correct_answer="Monthly",
    )
    store.create_question(quiz["id"], "true_false", "Badges must be worn on site.", correct_answer=True)
    store.create_question(
        quiz["id"],
        "multi_select",
        "Which channels are official?",
        options=["Email", "Chat", "Fax"],
        correct_answer=["Email", "Chat"],
        points=2,
    )

    check = store.create_stage(flow["id"], "Knowledge check", 1)
    quiz_item = store.create_stage_item(check["id"], "assessment", 0, title="Quiz", assessment_id=quiz["id"])

    enrollments = {user: store.create_enrollment(user, flow["id"])["id"] for user in USERS}
    print(f"Seeded flow {flow['id']} with {len(enrollments)} enrollments.")
    return {
        "flow": flow,
        "stages": [welcome, check],
        "quiz": quiz,
        "quiz_item": quiz_item,
        "enrollments": enrollments,
    }


def test_connection(base_url):
    try:
        r = requests.get(base_url, timeout=5)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def _answer(question, skill):
    correct = question["correct_answer"]
    if random.random() < skill:
        return correct
    if question["type"] == "true_false":
        return not correct
    if question["type"] == "multi_select":
        return list(question["options"])
    return "wrong"


def simulate_participant(base_url, store, demo, user_id):
    enrollment_id = demo["enrollments"][user_id]
    for stage in demo["stages"]:
        r = requests.post(
            f"{base_url}/progress/stages/{stage['id']}/start",
            json={"user_id": user_id, "enrollment_id": enrollment_id},
            timeout=10,
        )
        print(f"[{user_id}] start {stage['title']}: {r.status_code}")
        for item in store.list_stage_items(stage["id"]):
            score = None
            if item["type"] == "assessment":
                score = simulate_quiz(base_url, store, demo, user_id, enrollment_id)
                if score is None:
                    print(f"[{user_id}] failed {item['title']}, stopping.")
                    return
            payload = {"user_id": user_id, "enrollment_id": enrollment_id}
            if score is not None:
                payload["score"] = score
            r = requests.post(f"{base_url}/progress/stage-items/{item['id']}/complete", json=payload, timeout=10)
            print(f"[{user_id}] complete {item['title']}: {r.status_code}")
            time.sleep(0.1)

    r = requests.get(f"{base_url}/progress/enrollments/{enrollment_id}", params={"user_id": user_id}, timeout=10)
    if r.ok:
        summary = r.json()["progress"]["summary"]
        print(f"[{user_id}] progress {summary['percentage']}%")


def simulate_quiz(base_url, store, demo, user_id, enrollment_id):
    quiz_id = demo["quiz"]["id"]
    questions = store.list_questions(quiz_id)
    skill = SKILL.get(user_id, 0.5)
    for _ in range(demo["quiz"]["retry_limit"]):
        r = requests.post(
            f"{base_url}/assessments/{quiz_id}/attempts",
            json={"user_id": user_id, "enrollment_id": enrollment_id},
            timeout=10,
        )
        if not r.ok:
            print(f"[{user_id}] could not start attempt: {r.status_code}")
            return None
        attempt_id = r.json()["attemptId"]
        answers = {q["id"]: _answer(q, skill) for q in questions}
        r = requests.post(
            f"{base_url}/assessments/attempts/{attempt_id}/submit",
            json={"answers": answers, "time_spent_seconds": random.randint(30, 240)},
            timeout=10,
        )
        result = r.json()
        print(f"[{user_id}] attempt {result['score']}/{result['maxScore']} passed={result['isPassed']}")
        if result["isPassed"]:
            return result["percentage"]
    return None


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--db", default="data.db", help="SQLite database file used by the server")
    parser.add_argument("--base-url", default=BASE_URL)
    parser.add_argument("--seed-only", action="store_true", help="seed the database without simulating")
    args = parser.parse_args()

    store = RecordStore(args.db)
    store.init()
    demo = seed_demo_flow(store)
    if args.seed_only:
        return
    if not test_connection(args.base_url):
        return
    for user in USERS:
        simulate_participant(args.base_url, store, demo, user)

    r = requests.get(f"{args.base_url}/flows/{demo['flow']['id']}/progress", timeout=10)
    if r.ok:
        print(f"Flow summary: {r.json()['summary']}")
    else:
        print("Failed to get flow summary")


if __name__ == "__main__":
    main()
