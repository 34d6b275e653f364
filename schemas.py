"""Pydantic schemas for the HTTP request and response bodies."""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

__all__ = [
    "AgeBand",
    "HintMode",
    "AdaptiveSettings",
    "AdaptiveSettingsUpdate",
    "StartSessionRequest",
    "AnswerRequest",
    "FeedbackOut",
    "FinalizeOutcome",
    "RoundResponse",
    "AnswerResponse",
    "SessionResponse",
]

AgeBand = Literal["4-6", "7-9", "10-13", "14-18", "adult"]
HintMode = Literal["guided", "minimal", "off"]


class AdaptiveSettings(BaseModel):
    """Per-learner tuning of the session shape; missing rows use these defaults."""

    main_rounds: int = Field(default=1, ge=1, le=4, description="Main rounds between warmup and boss.")
    boss_enabled: bool = True
    boss_intensity: int = Field(
        default=3,
        ge=1,
        le=5,
        description="Shifts the boss difficulty around one level above the learner's level.",
    )
    hint_mode: HintMode = "guided"
    daily_goal: int = Field(default=3, ge=1, le=10, description="First attempts per day for a full quest bar.")


class AdaptiveSettingsUpdate(BaseModel):
    main_rounds: int | None = Field(default=None, ge=1, le=4)
    boss_enabled: bool | None = None
    boss_intensity: int | None = Field(default=None, ge=1, le=5)
    hint_mode: HintMode | None = None
    daily_goal: int | None = Field(default=None, ge=1, le=10)


class StartSessionRequest(BaseModel):
    learner_id: str = Field(min_length=1)
    age_band: AgeBand = "10-13"


class AnswerRequest(BaseModel):
    choice_index: int = Field(ge=0)
    response_time_ms: int | None = Field(default=None, ge=0)


class FeedbackOut(BaseModel):
    title: str
    message: str
    tip: str
    celebrate: str | None = None
    hint: str | None = None


class FinalizeOutcome(BaseModel):
    xp_awarded: int
    strategy_xp: int
    new_level: int
    new_mastery_score: float
    leveled_up: bool
    streak: int
    new_badges: List[str] = Field(default_factory=list)


class RoundResponse(BaseModel):
    session_id: str
    step: str
    activity: Dict[str, Any]
    plan: Dict[str, Any]
    attempt_number: int = 1


class AnswerResponse(BaseModel):
    session_id: str
    is_correct: bool
    attempt_number: int
    round_phase: str
    feedback: FeedbackOut
    outcome: FinalizeOutcome | None = None


class SessionResponse(BaseModel):
    session_id: str
    learner_id: str
    age_band: str
    phases: List[str]
    step: str
    index: int
    stats: Dict[str, Any] = Field(default_factory=dict)
