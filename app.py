# app.py - learning personalization service
# - mastery tracking and adaptive difficulty per learner/subject/topic
# - multi-criteria tutor ranking over stored or posted tutor documents
# - tutor escalation decisions with event analytics

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

import db
from candidate_aggregator import CandidateAggregator, build_candidate
from engines.caching import TTLCache
from engines.escalation import (
    EscalationContext,
    EscalationEngine,
    EscalationEvent,
    build_call_to_action,
    classify_boundary_intent,
    summarize_escalation_events,
)
from engines.mastery import MasteryEngine, recommend_starting_difficulty
from engines.tutor_ranking import TutorRankingEngine
from env_validation import get_env_bool, get_env_int
from progress_store import ProgressStore, SQLiteProgressStore, StaleProgressError
from schemas import (
    AttemptResult,
    AttemptSubmission,
    DifficultyDecisionOut,
    EscalationEventIn,
    EscalationRequest,
    EscalationResponse,
    LearningInsightsOut,
    ProgressDocument,
    ProgressResponse,
    RankedTutorOut,
    RankTutorsRequest,
    StartingDifficultyRequest,
    TutorDocument,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info(
            "Service ready | db=%s ranking_workers=%s candidate_ttl=%ss",
            db.DB_PATH,
            RANKING_ENGINE.max_workers,
            get_env_int("CANDIDATE_CACHE_TTL_SECONDS"),
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="Learning Personalization Service", version="1.0.0", lifespan=_lifespan)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError):
    logger.info("Rejected %s %s: %d validation errors", request.method, request.url.path, len(exc.errors()))
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.get("/health")
def health():
    return {"status": "ok"}


PROGRESS_STORE: ProgressStore = SQLiteProgressStore()
MASTERY_ENGINE = MasteryEngine()
RANKING_ENGINE = TutorRankingEngine(max_workers=get_env_int("RANKING_MAX_WORKERS"))
ESCALATION_ENGINE = EscalationEngine()
CANDIDATES = CandidateAggregator(
    db.get_tutor_document,
    cache=TTLCache(ttl_seconds=get_env_int("CANDIDATE_CACHE_TTL_SECONDS")),
)


def _load_progress(learner_id: str, subject_id: str, topic_id: str):
    try:
        return PROGRESS_STORE.get(learner_id, subject_id, topic_id)
    except ValidationError as exc:
        logger.error("Stored progress for %s/%s/%s is malformed: %s", learner_id, subject_id, topic_id, exc)
        raise HTTPException(status_code=500, detail="stored progress record is malformed") from exc


# ---------- Progress ----------
@app.post("/progress/attempts", response_model=AttemptResult)
def submit_attempt(body: AttemptSubmission):
    attempt = body.attempt.to_attempt()
    retries = get_env_int("PROGRESS_WRITE_RETRIES")

    for try_no in range(1, retries + 2):
        current = _load_progress(body.learner_id, body.subject_id, body.topic_id)
        updated, decision = MASTERY_ENGINE.apply(
            current,
            attempt,
            learner_id=body.learner_id,
            subject_id=body.subject_id,
            topic_id=body.topic_id,
        )
        try:
            stored = PROGRESS_STORE.save(updated)
        except StaleProgressError as exc:
            logger.warning("Concurrent progress update (try %d of %d): %s", try_no, retries + 1, exc)
            continue

        if decision.should_suggest_tutor:
            logger.info(
                "Tutor suggested for %s on %s/%s: %s",
                body.learner_id,
                body.subject_id,
                body.topic_id,
                decision.tutor_suggestion_reason,
            )
        return AttemptResult(
            progress=ProgressDocument.from_record(stored),
            decision=DifficultyDecisionOut.from_decision(decision),
        )

    raise HTTPException(status_code=409, detail="progress was updated concurrently; retry the attempt")


@app.get("/progress/{learner_id}/{subject_id}/{topic_id}", response_model=ProgressResponse)
def get_progress(learner_id: str, subject_id: str, topic_id: str):
    record = _load_progress(learner_id, subject_id, topic_id)
    if record is None:
        raise HTTPException(status_code=404, detail="progress not found")

    record.mastery_score = MASTERY_ENGINE.mastery(record)
    return ProgressResponse(
        progress=ProgressDocument.from_record(record),
        mastery_score=record.mastery_score,
        insights=LearningInsightsOut.from_insights(MASTERY_ENGINE.insights(record)),
    )


@app.get("/progress/{learner_id}")
def list_learner_progress(learner_id: str, subject_id: Optional[str] = None):
    try:
        records = PROGRESS_STORE.list_for_learner(learner_id, subject_id)
    except ValidationError as exc:
        logger.error("Stored progress for %s is malformed: %s", learner_id, exc)
        raise HTTPException(status_code=500, detail="stored progress record is malformed") from exc

    for record in records:
        record.mastery_score = MASTERY_ENGINE.mastery(record)
    return {
        "count": len(records),
        "progress": [ProgressDocument.from_record(record) for record in records],
    }


@app.post("/progress/starting-difficulty")
def starting_difficulty(body: StartingDifficultyRequest):
    difficulty = recommend_starting_difficulty(body.self_assessment, body.recent_session_scores)
    return {"difficulty": difficulty}


# ---------- Tutors ----------
@app.put("/tutors/{tutor_id}")
def put_tutor(tutor_id: str, document: TutorDocument):
    if document.tutor_id != tutor_id:
        raise HTTPException(status_code=400, detail="tutor_id mismatch with path")
    db.upsert_tutor_document(tutor_id, document.model_dump(mode="json"))
    CANDIDATES.invalidate(tutor_id)
    return {"status": "ok", "tutor_id": tutor_id}


@app.post("/tutors/rank")
def rank_tutors(body: RankTutorsRequest):
    tutor_ids = body.tutor_ids
    if not tutor_ids and not body.tutors:
        # Nothing named: rank the whole stored pool
        tutor_ids = db.list_tutor_ids()
    candidates = CANDIDATES.load_many(tutor_ids)
    candidates.extend(build_candidate(document) for document in body.tutors)

    ranked = RANKING_ENGINE.rank_tutors(candidates, body.criteria.to_criteria(), limit=body.limit)
    return {
        "count": len(ranked),
        "tutors": [RankedTutorOut.from_ranked(item) for item in ranked],
    }


# ---------- Escalation ----------
@app.post("/escalation", response_model=EscalationResponse)
def evaluate_escalation(body: EscalationRequest):
    intent = classify_boundary_intent(body.message)
    if intent == "academic_integrity":
        # Integrity requests are answered outside the normal chat flow.
        return EscalationResponse(
            should_escalate=False,
            priority="low",
            reason="",
            trigger_type="none",
            message_key=intent,
            boundary_intent=intent,
        )

    progress = None
    if body.subject_id and body.topic_id:
        progress = _load_progress(body.learner_id, body.subject_id, body.topic_id)

    context = EscalationContext(
        message=body.message,
        progress=progress,
        conversation_length=body.conversation_length,
        conversation_history=tuple(body.conversation_history),
    )
    decision = ESCALATION_ENGINE.should_escalate(context)
    if not decision.should_escalate:
        return EscalationResponse(
            should_escalate=False,
            priority=decision.priority,
            reason=decision.reason,
            trigger_type=decision.trigger_type,
            boundary_intent=intent,
        )

    suggestion = build_call_to_action(decision)
    if get_env_bool("ESCALATION_EVENTS_ENABLED", True):
        try:
            db.log_escalation(
                body.learner_id,
                suggestion.trigger_type,
                suggestion.priority,
                "viewed",
                conversation_id=body.conversation_id,
            )
        except Exception:
            logger.exception("Failed to log escalation for %s", body.learner_id)

    return EscalationResponse(
        should_escalate=True,
        priority=suggestion.priority,
        reason=suggestion.reason,
        trigger_type=suggestion.trigger_type,
        suggested_subject=suggestion.suggested_subject or body.subject_id,
        message_key=suggestion.message_key,
        cta_buttons=[{"label": label, "action": action} for label, action in suggestion.cta_buttons],
        boundary_intent=intent,
    )


@app.post("/escalation/events")
def record_escalation_event(body: EscalationEventIn):
    if not get_env_bool("ESCALATION_EVENTS_ENABLED", True):
        return {"status": "disabled"}
    try:
        event_id = db.log_escalation(
            body.user_id,
            body.trigger_type,
            body.priority,
            body.user_action,
            conversation_id=body.conversation_id,
            tutor_id=body.tutor_id,
            timestamp=body.timestamp,
        )
    except Exception as exc:
        logger.exception("Failed to persist escalation event: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to persist escalation event") from exc
    return {"status": "ok", "event_id": event_id}


@app.get("/escalation/summary")
def escalation_summary(user_id: Optional[str] = None, since: Optional[datetime] = None):
    rows = db.list_escalation_events(user_id=user_id, since=since)
    events = [
        EscalationEvent(
            user_id=row["user_id"],
            trigger_type=row["trigger_type"],
            priority=row["priority"],
            user_action=row["user_action"],
            timestamp=row["timestamp"],
            conversation_id=row["conversation_id"],
            tutor_id=row["tutor_id"],
        )
        for row in rows
    ]
    return summarize_escalation_events(events)
