import pytest
from pydantic import ValidationError

from schemas import (
    AdaptiveSettings,
    AdaptiveSettingsUpdate,
    AnswerRequest,
    AnswerResponse,
    FeedbackOut,
    StartSessionRequest,
)


def test_adaptive_settings_defaults():
    settings = AdaptiveSettings()
    assert settings.model_dump() == {
        "main_rounds": 1,
        "boss_enabled": True,
        "boss_intensity": 3,
        "hint_mode": "guided",
        "daily_goal": 3,
    }


@pytest.mark.parametrize(
    "field, value",
    [
        ("main_rounds", 0),
        ("main_rounds", 5),
        ("boss_intensity", 6),
        ("daily_goal", 11),
        ("hint_mode", "verbose"),
    ],
)
def test_adaptive_settings_bounds(field, value):
    with pytest.raises(ValidationError):
        AdaptiveSettings(**{field: value})
    with pytest.raises(ValidationError):
        AdaptiveSettingsUpdate(**{field: value})


def test_partial_update_drops_unset_fields():
    update = AdaptiveSettingsUpdate(boss_enabled=False)
    assert update.model_dump(exclude_none=True) == {"boss_enabled": False}


def test_start_session_request():
    assert StartSessionRequest(learner_id="learner-1").age_band == "10-13"
    with pytest.raises(ValidationError):
        StartSessionRequest(learner_id="")
    with pytest.raises(ValidationError):
        StartSessionRequest(learner_id="learner-1", age_band="3-4")


def test_answer_request_rejects_negative_values():
    with pytest.raises(ValidationError):
        AnswerRequest(choice_index=-1)
    with pytest.raises(ValidationError):
        AnswerRequest(choice_index=0, response_time_ms=-5)


def test_answer_response_without_outcome():
    response = AnswerResponse(
        session_id="s1",
        is_correct=False,
        attempt_number=1,
        round_phase="awaiting_retry",
        feedback=FeedbackOut(title="Not yet", message="Try again", tip="Compare", hint="Hint: look closer"),
    )
    payload = response.model_dump()
    assert payload["outcome"] is None
    assert payload["feedback"]["celebrate"] is None
