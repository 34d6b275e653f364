from datetime import datetime, timedelta, timezone

import pytest

from engines.mastery import SkillState
from engines.selection import (
    AttemptSummary,
    boss_offset,
    choose_next_item,
    errors_by_skill,
    rank_weakest,
)
from skills import CT_SKILLS, Skill

NOW = datetime(2026, 3, 11, 16, 0, tzinfo=timezone.utc)


def _states(**overrides):
    """Every skill at level 1 with mastery 0.9 unless overridden as (level, mastery)."""
    states = []
    for skill in CT_SKILLS:
        level, mastery = overrides.get(skill.value, (1, 0.9))
        states.append(SkillState(skill=skill, level=level, xp=0, mastery_score=mastery))
    return states


def _attempts(*pairs):
    return [
        AttemptSummary(skill=skill, is_correct=correct, created_at=NOW - timedelta(minutes=len(pairs) - index))
        for index, (skill, correct) in enumerate(pairs)
    ]


def test_warmup_targets_weakest_one_level_down():
    plan = choose_next_item(
        now=NOW,
        due_review_count=0,
        skill_states=_states(evaluate=(3, 0.2)),
        recent_attempts=[],
        session_step="warmup",
    )
    assert plan.mode == "warmup"
    assert plan.skill is Skill.EVALUATE
    assert plan.target_difficulty == 2
    assert plan.source == "new_pool"


def test_warmup_difficulty_never_below_one():
    plan = choose_next_item(now=NOW, due_review_count=0, skill_states=[], recent_attempts=[], session_step="warmup")
    # Empty history: defaults for every skill, first in canonical order wins.
    assert plan.skill is Skill.INTERPRET
    assert plan.target_difficulty == 1


def test_main_targets_weakest_at_its_level():
    plan = choose_next_item(
        now=NOW,
        due_review_count=0,
        skill_states=_states(explain=(2, 0.3)),
        recent_attempts=[],
        session_step="main",
    )
    assert (plan.mode, plan.skill, plan.target_difficulty) == ("main", Skill.EXPLAIN, 2)


def test_recent_errors_push_a_skill_to_the_front():
    states = _states(analyze=(1, 0.5), infer=(1, 0.5))
    attempts = _attempts((Skill.INFER, False), (Skill.INFER, False), (Skill.ANALYZE, True))

    plan = choose_next_item(now=NOW, due_review_count=0, skill_states=states, recent_attempts=attempts, session_step="main")
    assert plan.skill is Skill.INFER


def test_only_the_newest_sixteen_attempts_count():
    old_errors = [(Skill.EXPLAIN, False)] * 4
    recent = [(Skill.ANALYZE, True)] * 16
    counts = errors_by_skill(_attempts(*(old_errors + recent)))
    assert counts[Skill.EXPLAIN] == 0

    ranked = rank_weakest(_states(), _attempts(*(old_errors + recent)))
    assert ranked[0].skill is Skill.INTERPRET


def test_due_reviews_preempt_warmup_and_main():
    for step in ("warmup", "main"):
        plan = choose_next_item(
            now=NOW,
            due_review_count=2,
            skill_states=_states(infer=(2, 0.4)),
            recent_attempts=[],
            session_step=step,
            due_review_by_skill={Skill.EVALUATE: 2},
        )
        assert plan.mode == "review"
        assert plan.source == "review_queue"
        assert plan.skill is Skill.EVALUATE
        assert plan.target_difficulty == 2


def test_due_review_ties_go_to_the_weaker_skill():
    plan = choose_next_item(
        now=NOW,
        due_review_count=4,
        skill_states=_states(infer=(1, 0.5), evaluate=(1, 0.1)),
        recent_attempts=[],
        session_step="main",
        due_review_by_skill={"infer": 2, "evaluate": 2},
    )
    assert plan.skill is Skill.EVALUATE


def test_due_reviews_without_breakdown_use_weakest_skill():
    plan = choose_next_item(
        now=NOW,
        due_review_count=1,
        skill_states=_states(self_regulate=(1, 0.1)),
        recent_attempts=[],
        session_step="warmup",
    )
    assert plan.mode == "review"
    assert plan.skill is Skill.SELF_REGULATE


def test_boss_ignores_due_reviews_and_stretches_readiest_skill():
    plan = choose_next_item(
        now=NOW,
        due_review_count=5,
        skill_states=_states(analyze=(3, 0.7), interpret=(1, 0.1)),
        recent_attempts=[],
        session_step="boss",
        due_review_by_skill={Skill.INTERPRET: 5},
    )
    assert plan.mode == "boss"
    assert plan.source == "new_pool"
    assert plan.skill is Skill.ANALYZE
    assert plan.target_difficulty == 4


@pytest.mark.parametrize("intensity, expected", [(1, 3), (2, 4), (3, 4), (4, 5), (5, 5)])
def test_boss_intensity_shifts_target(intensity, expected):
    plan = choose_next_item(
        now=NOW,
        due_review_count=0,
        skill_states=_states(analyze=(3, 0.7)),
        recent_attempts=[],
        session_step="boss",
        boss_intensity=intensity,
    )
    assert plan.target_difficulty == expected


def test_boss_target_is_clamped_at_level_five():
    plan = choose_next_item(
        now=NOW,
        due_review_count=0,
        skill_states=_states(infer=(5, 0.95)),
        recent_attempts=[],
        session_step="boss",
        boss_intensity=5,
    )
    assert plan.skill is Skill.INFER
    assert plan.target_difficulty == 5


def test_boss_offset_rounds_halves_up():
    assert [boss_offset(value) for value in range(1, 6)] == [-1, 0, 0, 1, 1]


def test_plan_to_dict_uses_skill_value():
    plan = choose_next_item(now=NOW, due_review_count=0, skill_states=[], recent_attempts=[], session_step="main")
    assert plan.to_dict() == {"mode": "main", "skill": "interpret", "target_difficulty": 1, "source": "new_pool"}
