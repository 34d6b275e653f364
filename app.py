# app.py: ReasonQuest adaptive progression service
# - In-memory sessions (warmup, main rounds, optional boss, recap)
# - Skill state, review queue, streaks and badges persisted through db.py

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException

import db
from engines.orchestrator import ActiveSession, AdaptiveRoundOrchestrator, SessionRegistry
from engines.session import RoundStateError
from env_validation import get_env_int
from schemas import (
    AdaptiveSettings,
    AdaptiveSettingsUpdate,
    AnswerRequest,
    AnswerResponse,
    FeedbackOut,
    FinalizeOutcome,
    RoundResponse,
    SessionResponse,
    StartSessionRequest,
)

logger = logging.getLogger(__name__)
_API_LOGGER = logging.getLogger("rq.api")


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()
        logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

        db.init()
        logger.info("Storage ready at %s", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="ReasonQuest", version="1.0.0", lifespan=_lifespan)

ORCHESTRATOR = AdaptiveRoundOrchestrator()
SESSIONS = SessionRegistry(
    max_sessions=get_env_int("MAX_ACTIVE_SESSIONS", 500),
    idle_seconds=get_env_int("SESSION_IDLE_MINUTES", 120) * 60,
)


def _get_session(session_id: str) -> ActiveSession:
    active = SESSIONS.get(session_id)
    if active is None:
        raise HTTPException(status_code=404, detail="session not found")
    return active


def _session_payload(active: ActiveSession) -> SessionResponse:
    session = active.session
    stats = session.stats
    return SessionResponse(
        session_id=active.session_id,
        learner_id=active.learner_id,
        age_band=active.age_band,
        phases=list(session.phases),
        step=session.current_step,
        index=session.index,
        stats={
            "xp": stats.xp,
            "strategy_xp": stats.strategy_xp,
            "rounds": stats.rounds,
            "correct": stats.correct,
            "first_try_correct": stats.first_try_correct,
            "recoveries": stats.recoveries,
            "hints_used": stats.hints_used,
            "streak": stats.streak,
            "badges": list(stats.badges),
            "level_ups": [{"skill": skill.value, "level": level} for skill, level in stats.level_ups],
            "accuracy": session.accuracy,
            "first_try_rate": session.first_try_rate,
            "strongest_skill": session.strongest_skill().value if session.strongest_skill() else None,
            "focus_skill": session.focus_skill().value if session.focus_skill() else None,
        },
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/learners/{learner_id}/skills")
def learner_skills(learner_id: str):
    return ORCHESTRATOR.skill_tree(learner_id)


@app.get("/learners/{learner_id}/settings", response_model=AdaptiveSettings)
def get_settings(learner_id: str):
    return ORCHESTRATOR.load_settings(learner_id)


@app.put("/learners/{learner_id}/settings", response_model=AdaptiveSettings)
def put_settings(learner_id: str, body: AdaptiveSettingsUpdate):
    settings = ORCHESTRATOR.save_settings(learner_id, body.model_dump(exclude_none=True))
    _API_LOGGER.info("Settings updated for %s: %s", learner_id, settings.model_dump())
    return settings


@app.post("/sessions", response_model=SessionResponse)
def start_session(body: StartSessionRequest):
    session_id = uuid4().hex
    active = ORCHESTRATOR.start_session(session_id, body.learner_id, body.age_band)
    SESSIONS.add(active)
    _API_LOGGER.info("Session %s started for %s (%s)", session_id, body.learner_id, ",".join(active.session.phases))
    return _session_payload(active)


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(session_id: str):
    return _session_payload(_get_session(session_id))


@app.post("/sessions/{session_id}/restart", response_model=SessionResponse)
def restart_session(session_id: str):
    active = _get_session(session_id)
    ORCHESTRATOR.restart(active)
    return _session_payload(active)


@app.post("/sessions/{session_id}/round", response_model=RoundResponse)
def next_round(session_id: str):
    active = _get_session(session_id)
    try:
        prepared = ORCHESTRATOR.next_round(active)
    except RoundStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if prepared is None:
        raise HTTPException(status_code=404, detail="no round available for this learner")
    return RoundResponse(
        session_id=session_id,
        step=active.session.current_step,
        activity=prepared.activity,
        plan=prepared.plan.to_dict(),
        attempt_number=active.round_state.attempt_number if active.round_state else 1,
    )


@app.post("/sessions/{session_id}/answer", response_model=AnswerResponse)
def answer(session_id: str, body: AnswerRequest):
    active = _get_session(session_id)
    try:
        outcome = ORCHESTRATOR.answer(active, body.choice_index, response_time_ms=body.response_time_ms)
    except RoundStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    result: Optional[FinalizeOutcome] = None
    if outcome.result is not None:
        result = FinalizeOutcome(**outcome.result.to_dict())
        _API_LOGGER.debug("Round finalized in session %s: %s", session_id, outcome.result)
    return AnswerResponse(
        session_id=session_id,
        is_correct=outcome.is_correct,
        attempt_number=outcome.attempt_number,
        round_phase=outcome.round_state.phase.value,
        feedback=FeedbackOut(**outcome.feedback.to_dict()),
        outcome=result,
    )


@app.post("/sessions/{session_id}/advance", response_model=SessionResponse)
def advance(session_id: str):
    active = _get_session(session_id)
    try:
        ORCHESTRATOR.advance(active)
    except RoundStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return _session_payload(active)


@app.get("/learners/{learner_id}/quest")
def daily_quest(learner_id: str):
    return ORCHESTRATOR.daily_quest(learner_id)


@app.get("/learners/{learner_id}/weekly")
def weekly(learner_id: str):
    return ORCHESTRATOR.weekly_report(learner_id)


@app.get("/learners/{learner_id}/progress")
def progress(learner_id: str):
    return ORCHESTRATOR.progress(learner_id)
