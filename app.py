# app.py — onboarding progress service
# - Stage/item completion with cascading stage and enrollment completion
# - Assessment attempts graded on submission
# - Services are built once per process in the lifespan and read from app.state

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from db import RecordStore
from engines.attempts import AttemptLifecycle
from engines.caching import ProjectionCache
from engines.completion import CompletionPropagator
from engines.projection import ProgressProjection
from engines.validation import EngineError, NotFoundError, RetryLimitExceeded, ValidationError
from env_validation import Settings, load_settings

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: RecordStore
    cache: ProjectionCache
    attempts: AttemptLifecycle
    propagator: CompletionPropagator
    projection: ProgressProjection


def build_services(settings: Settings, store: Optional[RecordStore] = None) -> Services:
    """Wire the record store and engines for one process."""
    if store is None:
        store = RecordStore(settings.db_path, max_connections=settings.db_max_connections)
        store.init()
    cache = ProjectionCache(ttl_seconds=settings.projection_cache_ttl)
    return Services(
        store=store,
        cache=cache,
        attempts=AttemptLifecycle(store, enforce_retry_limit=settings.enforce_retry_limit),
        propagator=CompletionPropagator(store, cache=cache),
        projection=ProgressProjection(store, cache=cache),
    )


@asynccontextmanager
async def _lifespan(application: FastAPI):
    try:
        settings = load_settings()
        logging.getLogger().setLevel(settings.log_level)
        services = build_services(settings)
        application.state.services = services
        logger.info(
            "Progress service ready (db=%s, cache_ttl=%ss, enforce_retry_limit=%s)",
            settings.db_path,
            settings.projection_cache_ttl,
            settings.enforce_retry_limit,
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        services.store.close()


app = FastAPI(title="Onboarding Progress Engine", version="1.0.0", lifespan=_lifespan)


def _services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="service not initialized")
    return services


def _http_error(exc: EngineError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RetryLimitExceeded):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


class StageStartBody(BaseModel):
    user_id: str
    enrollment_id: str


class ItemCompleteBody(BaseModel):
    user_id: str
    enrollment_id: str
    score: Optional[float] = Field(default=None, ge=0, le=100)
    metadata: Optional[Dict[str, Any]] = None


class RecheckBody(BaseModel):
    user_id: str


class EnrollmentCreateBody(BaseModel):
    user_id: str
    flow_id: str


class AttemptStartBody(BaseModel):
    user_id: str
    enrollment_id: Optional[str] = None


class AttemptSubmitBody(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)
    time_spent_seconds: float = Field(default=0, ge=0)


class ManualGradeBody(BaseModel):
    points: float = Field(ge=0)


@app.get("/")
def root():
    return {"status": "ok"}


# ---------- Progress APIs ----------
@app.post("/progress/stages/{stage_id}/start", status_code=201)
def start_stage(stage_id: str, body: StageStartBody, request: Request):
    services = _services(request)
    try:
        progress = services.propagator.start_stage(stage_id, body.enrollment_id, body.user_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {"progress": progress}


@app.post("/progress/stage-items/{item_id}/complete", status_code=201)
def complete_stage_item(item_id: str, body: ItemCompleteBody, request: Request):
    services = _services(request)
    try:
        outcome = services.propagator.complete_item(
            item_id,
            body.enrollment_id,
            body.user_id,
            score=body.score,
            metadata=body.metadata,
        )
    except EngineError as exc:
        raise _http_error(exc) from exc
    return outcome.as_dict()


@app.post("/progress/enrollments/{enrollment_id}/recheck")
def recheck_enrollment(enrollment_id: str, body: RecheckBody, request: Request):
    services = _services(request)
    try:
        outcome = services.propagator.recheck(enrollment_id, body.user_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return outcome.as_dict()


@app.get("/progress/enrollments/{enrollment_id}")
def get_enrollment_progress(enrollment_id: str, request: Request, user_id: str = Query(...)):
    services = _services(request)
    try:
        progress = services.projection.flow_progress(enrollment_id, user_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {"progress": progress.model_dump()}


@app.get("/progress/enrollments")
def list_enrollments(request: Request, user_id: str = Query(...)):
    services = _services(request)
    enrollments = services.projection.list_enrollments(user_id)
    return {"enrollments": [enrollment.model_dump() for enrollment in enrollments]}


@app.post("/progress/enrollments")
def create_enrollment(body: EnrollmentCreateBody, request: Request):
    services = _services(request)
    try:
        enrollment = services.store.create_enrollment(body.user_id, body.flow_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {"enrollment_id": enrollment["id"]}


@app.get("/flows/{flow_id}/progress")
def flow_progress_summary(flow_id: str, request: Request):
    services = _services(request)
    try:
        summary = services.projection.flow_summary(flow_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {"summary": summary.model_dump()}


# ---------- Assessment APIs ----------
@app.post("/assessments/{assessment_id}/attempts", status_code=201)
def start_attempt(assessment_id: str, body: AttemptStartBody, request: Request):
    services = _services(request)
    try:
        attempt = services.attempts.start_attempt(assessment_id, body.user_id, body.enrollment_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {"attemptId": attempt["id"]}


@app.get("/assessments/{assessment_id}/attempts")
def list_user_attempts(assessment_id: str, request: Request, user_id: str = Query(...)):
    services = _services(request)
    try:
        remaining = services.attempts.remaining_attempts(assessment_id, user_id)
    except EngineError as exc:
        raise _http_error(exc) from exc
    attempts = services.attempts.list_attempts(user_id, assessment_id)
    return {"attempts": attempts, "remaining_attempts": remaining}


@app.get("/assessments/{assessment_id}/admin/attempts")
def list_assessment_attempts(
    assessment_id: str,
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user_id: Optional[str] = Query(None),
    passed: Optional[bool] = Query(None),
):
    services = _services(request)
    try:
        return services.attempts.list_assessment_attempts(
            assessment_id, page=page, limit=limit, user_id=user_id, passed=passed
        )
    except EngineError as exc:
        raise _http_error(exc) from exc


@app.post("/assessments/attempts/{attempt_id}/submit")
def submit_attempt(attempt_id: str, body: AttemptSubmitBody, request: Request):
    services = _services(request)
    try:
        attempt = services.attempts.submit_attempt(attempt_id, body.answers, body.time_spent_seconds)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {
        "score": attempt["score"],
        "maxScore": attempt["max_score"],
        "isPassed": attempt["is_passed"],
        "percentage": attempt["percentage"],
        "attempt": attempt,
    }


@app.post("/assessments/attempts/{attempt_id}/questions/{question_id}/grade")
def grade_question(attempt_id: str, question_id: str, body: ManualGradeBody, request: Request):
    services = _services(request)
    try:
        attempt = services.attempts.grade_question(attempt_id, question_id, body.points)
    except EngineError as exc:
        raise _http_error(exc) from exc
    return {
        "score": attempt["score"],
        "maxScore": attempt["max_score"],
        "isPassed": attempt["is_passed"],
        "percentage": attempt["percentage"],
        "attempt": attempt,
    }
