"""Skill mastery state and the per-attempt mastery update engine.

Every finalized round is folded into the learner's :class:`SkillState` for the
round's skill: XP is awarded by session mode and outcome, the mastery score
is smoothed with an exponential moving average of an attempt quality signal,
and the level is promoted through fixed XP thresholds while the mastery
score stays above the mastery floor.

All functions here are pure; persistence is handled by the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Literal, Mapping, Union

from skills import CT_SKILLS, Skill, normalize_skill

SessionMode = Literal["warmup", "main", "boss", "review"]
SESSION_MODES = ("warmup", "main", "boss", "review")

MAX_LEVEL = 5
MASTERY_FLOOR_FOR_LEVEL_UP = 0.82
MASTERY_DECAY = 0.78
MASTERY_WEIGHT = 0.22

# XP needed to leave each level; level 5 is terminal.
LEVEL_XP_REQUIREMENTS: Dict[int, int] = {1: 80, 2: 200, 3: 360, 4: 560}

MODE_BASE_XP: Dict[str, int] = {"warmup": 10, "main": 16, "review": 18, "boss": 28}

CORRECT_FIRST_TRY_BONUS = 10
CORRECT_ON_RETRY_BONUS = 6
INCORRECT_PARTICIPATION_BONUS = 2
HINT_STRATEGY_BONUS = 5
RETRY_RECOVERY_STRATEGY_BONUS = 8


class SkillStateError(ValueError):
    """Raised when a stored skill state row violates the model invariants."""


@dataclass(frozen=True)
class SkillState:
    """Level, XP and mastery of one learner for one skill."""

    skill: Skill
    level: int = 1
    xp: int = 0
    mastery_score: float = 0.0

    @classmethod
    def default(cls, skill: Union[Skill, str]) -> "SkillState":
        return cls(skill=normalize_skill(skill))

    @classmethod
    def from_row(cls, row: Mapping[str, object]) -> "SkillState":
        """Build a state from a storage row, validating the invariants."""

        skill = normalize_skill(str(row["skill"]))
        level = int(row.get("level", 1) or 1)
        xp = int(row.get("xp", 0) or 0)
        mastery = float(row.get("mastery_score", 0.0) or 0.0)
        if not 1 <= level <= MAX_LEVEL:
            raise SkillStateError(f"level {level} for {skill.value} outside 1..{MAX_LEVEL}")
        if xp < 0:
            raise SkillStateError(f"negative xp for {skill.value}")
        return cls(skill=skill, level=level, xp=xp, mastery_score=clamp01(mastery))

    def xp_to_next_level(self) -> int:
        return xp_to_next_level(self.level, self.xp)


@dataclass(frozen=True)
class MasteryUpdate:
    """Outcome of one finalized attempt for a skill."""

    new_level: int
    new_xp: int
    new_mastery_score: float
    leveled_up: bool
    xp_awarded: int
    strategy_xp: int


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def complete_skill_states(states: Iterable[SkillState]) -> List[SkillState]:
    """Return exactly one state per skill in canonical order.

    Missing skills are synthesized with defaults; when a skill appears twice
    the last state wins.
    """

    by_skill: Dict[Skill, SkillState] = {}
    for state in states:
        by_skill[state.skill] = state
    return [by_skill.get(skill) or SkillState.default(skill) for skill in CT_SKILLS]


def compute_xp_award(
    mode: str,
    is_correct: bool,
    attempt_number: int,
    used_hint: bool,
) -> tuple[int, int]:
    """Return ``(xp_awarded, strategy_xp)`` for a finalized attempt.

    Strategy XP rewards hint usage and recovering on the retry; it is part of
    the awarded total, reported separately.
    """

    xp = MODE_BASE_XP[mode]
    strategy_xp = 0

    if is_correct:
        xp += CORRECT_FIRST_TRY_BONUS if attempt_number == 1 else CORRECT_ON_RETRY_BONUS
    else:
        xp += INCORRECT_PARTICIPATION_BONUS

    if used_hint:
        xp += HINT_STRATEGY_BONUS
        strategy_xp += HINT_STRATEGY_BONUS

    if attempt_number == 2 and is_correct:
        xp += RETRY_RECOVERY_STRATEGY_BONUS
        strategy_xp += RETRY_RECOVERY_STRATEGY_BONUS

    return xp, strategy_xp


def compute_quality(is_correct: bool, attempt_number: int, used_hint: bool) -> float:
    """Quality signal in [0, 1] fed into mastery smoothing."""

    if is_correct and attempt_number == 1:
        return 0.9 if used_hint else 1.0
    if is_correct and attempt_number == 2:
        return 0.75
    return 0.35 if attempt_number == 1 else 0.2


def smooth_mastery(current_mastery: float, quality: float) -> float:
    return clamp01(current_mastery * MASTERY_DECAY + quality * MASTERY_WEIGHT)


def update_mastery_state(
    current_level: int,
    current_xp: int,
    current_mastery_score: float,
    *,
    is_correct: bool,
    attempt_number: int,
    used_hint: bool,
    mode: str,
) -> MasteryUpdate:
    """Apply one finalized attempt to a skill's level, XP and mastery.

    The level-up loop re-checks the same post-update mastery score against
    each successive XP threshold, so a learner far ahead on XP can climb
    several levels in one update.
    """

    xp_awarded, strategy_xp = compute_xp_award(mode, is_correct, attempt_number, used_hint)
    new_xp = current_xp + xp_awarded
    quality = compute_quality(is_correct, attempt_number, used_hint)
    new_mastery = smooth_mastery(current_mastery_score, quality)

    new_level = current_level
    leveled_up = False
    while new_level < MAX_LEVEL:
        requirement = LEVEL_XP_REQUIREMENTS[new_level]
        if new_xp >= requirement and new_mastery >= MASTERY_FLOOR_FOR_LEVEL_UP:
            new_level += 1
            leveled_up = True
        else:
            break

    return MasteryUpdate(
        new_level=new_level,
        new_xp=new_xp,
        new_mastery_score=new_mastery,
        leveled_up=leveled_up,
        xp_awarded=xp_awarded,
        strategy_xp=strategy_xp,
    )


def apply_attempt(
    state: SkillState,
    *,
    is_correct: bool,
    attempt_number: int,
    used_hint: bool,
    mode: str,
) -> tuple[SkillState, MasteryUpdate]:
    """Convenience wrapper returning the successor state alongside the update."""

    update = update_mastery_state(
        state.level,
        state.xp,
        state.mastery_score,
        is_correct=is_correct,
        attempt_number=attempt_number,
        used_hint=used_hint,
        mode=mode,
    )
    successor = SkillState(
        skill=state.skill,
        level=update.new_level,
        xp=update.new_xp,
        mastery_score=update.new_mastery_score,
    )
    return successor, update


def xp_to_next_level(level: int, xp: int) -> int:
    if level >= MAX_LEVEL:
        return 0
    return max(0, LEVEL_XP_REQUIREMENTS[level] - xp)


def badge_keys_for_milestones(
    skill: Union[Skill, str],
    new_level: int,
    *,
    is_boss: bool,
    is_correct: bool,
    solved_on_retry: bool,
) -> List[str]:
    skill_id = normalize_skill(skill).value
    badges: List[str] = []

    if new_level >= 3:
        badges.append(f"track_{skill_id}_adept")
    if new_level >= 5:
        badges.append(f"track_{skill_id}_master")
    if is_boss and is_correct:
        badges.append("boss_challenge_clear")
    if solved_on_retry:
        badges.append("strategy_retry_recovery")

    return list(dict.fromkeys(badges))


def streak_badges(streak: int) -> List[str]:
    return [f"streak_{days}" for days in (3, 7, 14) if streak >= days]
