"""Next-item selection policy.

Given the learner's skill states, the due review backlog and the recent
attempt window, decide which skill to practise next, at which difficulty,
and whether the item should come from the review queue or the fresh pool.
The policy never picks a concrete activity; see :mod:`activity_bank`.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from engines.mastery import MAX_LEVEL, SkillState, complete_skill_states
from skills import Skill, normalize_skill, round_half_up

SessionStep = Literal["warmup", "main", "boss"]
PlanSource = Literal["review_queue", "new_pool"]

RECENT_WINDOW = 16
ERROR_WEIGHT = 0.06
READINESS_LEVEL_WEIGHT = 0.35
DEFAULT_BOSS_INTENSITY = 3


@dataclass(frozen=True)
class AttemptSummary:
    skill: Skill
    is_correct: bool
    created_at: datetime
    response_time_ms: Optional[int] = None


@dataclass(frozen=True)
class NextItemPlan:
    mode: str
    skill: Skill
    target_difficulty: int
    source: str

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["skill"] = self.skill.value
        return payload


def errors_by_skill(recent_attempts: Sequence[AttemptSummary], window: int = RECENT_WINDOW) -> Counter:
    """Count incorrect attempts per skill among the newest ``window`` attempts.

    ``recent_attempts`` is ordered oldest first, so the window is its tail.
    """

    tail = list(recent_attempts)[-window:] if window > 0 else []
    return Counter(attempt.skill for attempt in tail if not attempt.is_correct)


def weakness(state: SkillState, errors: int) -> float:
    return (1.0 - state.mastery_score) + errors * ERROR_WEIGHT


def readiness(state: SkillState) -> float:
    return state.level * READINESS_LEVEL_WEIGHT + state.mastery_score


def rank_weakest(states: Sequence[SkillState], recent_attempts: Sequence[AttemptSummary]) -> List[SkillState]:
    errors = errors_by_skill(recent_attempts)
    return sorted(states, key=lambda state: weakness(state, errors[state.skill]), reverse=True)


def rank_near_level_up(states: Sequence[SkillState]) -> List[SkillState]:
    return sorted(states, key=readiness, reverse=True)


def boss_offset(intensity: int) -> int:
    return round_half_up((intensity - DEFAULT_BOSS_INTENSITY) / 2)


def _clamp_difficulty(value: int) -> int:
    return max(1, min(MAX_LEVEL, value))


def _most_due_skill(due_review_by_skill: Optional[Mapping[Any, int]], weakest_first: Sequence[SkillState]) -> Skill:
    counts: Counter = Counter()
    for raw_skill, count in (due_review_by_skill or {}).items():
        counts[normalize_skill(raw_skill)] += int(count or 0)
    top = max(counts.values(), default=0)
    if top <= 0:
        return weakest_first[0].skill
    # Ties resolve towards the weaker skill.
    for state in weakest_first:
        if counts[state.skill] == top:
            return state.skill
    return weakest_first[0].skill


def choose_next_item(
    *,
    now: datetime,
    due_review_count: int,
    skill_states: Sequence[SkillState],
    recent_attempts: Sequence[AttemptSummary],
    session_step: str,
    due_review_by_skill: Optional[Mapping[Any, int]] = None,
    boss_intensity: int = DEFAULT_BOSS_INTENSITY,
) -> NextItemPlan:
    """Return the plan for the next round; the first matching rule wins.

    1. Due reviews outside boss rounds go to the review queue, on the skill
       with the most due items (weakest skill on ties or without a breakdown).
    2. Warmups target the weakest skill one level below its current level.
    3. Boss rounds stretch the skill closest to levelling up one level above
       its current level, shifted by the boss intensity.
    4. Main rounds target the weakest skill at its level.
    """

    states = complete_skill_states(skill_states)
    weakest_first = rank_weakest(states, recent_attempts)
    weakest = weakest_first[0]
    near_level_up = rank_near_level_up(states)[0]

    if due_review_count > 0 and session_step != "boss":
        return NextItemPlan(
            mode="review",
            skill=_most_due_skill(due_review_by_skill, weakest_first),
            target_difficulty=weakest.level,
            source="review_queue",
        )

    if session_step == "warmup":
        return NextItemPlan(
            mode="warmup",
            skill=weakest.skill,
            target_difficulty=max(1, weakest.level - 1),
            source="new_pool",
        )

    if session_step == "boss":
        target = min(MAX_LEVEL, near_level_up.level + 1)
        return NextItemPlan(
            mode="boss",
            skill=near_level_up.skill,
            target_difficulty=_clamp_difficulty(target + boss_offset(boss_intensity)),
            source="new_pool",
        )

    return NextItemPlan(
        mode="main",
        skill=weakest.skill,
        target_difficulty=weakest.level,
        source="new_pool",
    )
