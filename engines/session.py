"""In-memory session phases and the per-round attempt state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from skills import Skill, round_half_up

RECAP = "recap"
MIN_MAIN_ROUNDS = 1
MAX_MAIN_ROUNDS = 4
MAX_ATTEMPTS = 2


class RoundStateError(ValueError):
    """Raised when an attempt is submitted to a round that cannot accept it."""


def build_phases(main_rounds: int, boss_enabled: bool) -> Tuple[str, ...]:
    count = max(MIN_MAIN_ROUNDS, min(MAX_MAIN_ROUNDS, int(main_rounds)))
    phases = ["warmup"] + ["main"] * count
    if boss_enabled:
        phases.append("boss")
    return tuple(phases)


class RoundPhase(str, Enum):
    PRESENTED = "presented"
    AWAITING_RETRY = "awaiting_retry"
    FINALIZED = "finalized"


@dataclass
class RoundState:
    """Presented -> (AwaitingRetry) -> Finalized, at most two attempts.

    ``submit`` returns ``True`` when the submission finalized the round; the
    caller runs the mastery update and review scheduling exactly then.
    """

    activity_id: str
    phase: RoundPhase = RoundPhase.PRESENTED
    attempt_number: int = 1
    used_hint: bool = False
    final_correct: Optional[bool] = None

    @property
    def is_finalized(self) -> bool:
        return self.phase is RoundPhase.FINALIZED

    def submit(self, is_correct: bool) -> bool:
        if self.phase is RoundPhase.FINALIZED:
            raise RoundStateError(f"round for {self.activity_id} is already finalized")

        if self.phase is RoundPhase.PRESENTED and not is_correct:
            self.phase = RoundPhase.AWAITING_RETRY
            self.attempt_number = MAX_ATTEMPTS
            self.used_hint = True
            return False

        self.phase = RoundPhase.FINALIZED
        self.final_correct = bool(is_correct)
        return True


@dataclass
class SkillTally:
    attempts: int = 0
    correct: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.attempts if self.attempts else 0.0


@dataclass
class SessionStats:
    xp: int = 0
    strategy_xp: int = 0
    correct: int = 0
    first_try_correct: int = 0
    recoveries: int = 0
    hints_used: int = 0
    streak: int = 0
    rounds: int = 0
    badges: List[str] = field(default_factory=list)
    level_ups: List[Tuple[Skill, int]] = field(default_factory=list)
    by_skill: Dict[Skill, SkillTally] = field(default_factory=dict)


@dataclass
class Session:
    """One sitting: warmup, N main rounds, optional boss, then recap."""

    learner_id: str
    phases: Tuple[str, ...]
    index: int = 0
    used_activity_ids: List[str] = field(default_factory=list)
    stats: SessionStats = field(default_factory=SessionStats)

    @classmethod
    def from_settings(cls, learner_id: str, main_rounds: int, boss_enabled: bool) -> "Session":
        return cls(learner_id=learner_id, phases=build_phases(main_rounds, boss_enabled))

    @property
    def current_step(self) -> str:
        if self.index < len(self.phases):
            return self.phases[self.index]
        return RECAP

    @property
    def is_recap(self) -> bool:
        return self.current_step == RECAP

    def advance(self, activity_id: Optional[str] = None) -> str:
        if activity_id:
            self.used_activity_ids.append(activity_id)
        self.index = min(self.index + 1, len(self.phases))
        return self.current_step

    def restart(self) -> None:
        """Back to the first phase; persisted learner state is untouched."""

        self.index = 0
        self.used_activity_ids = []
        self.stats = SessionStats()

    def record_outcome(
        self,
        *,
        skill: Skill,
        is_correct: bool,
        attempt_number: int,
        used_hint: bool,
        xp_awarded: int,
        strategy_xp: int,
        leveled_up: bool = False,
        new_level: Optional[int] = None,
        streak: Optional[int] = None,
        new_badges: Optional[List[str]] = None,
    ) -> None:
        stats = self.stats
        tally = stats.by_skill.setdefault(skill, SkillTally())
        tally.attempts += 1
        tally.correct += 1 if is_correct else 0

        stats.xp += xp_awarded
        stats.strategy_xp += strategy_xp
        stats.correct += 1 if is_correct else 0
        stats.first_try_correct += 1 if is_correct and attempt_number == 1 else 0
        stats.recoveries += 1 if is_correct and attempt_number == 2 else 0
        stats.hints_used += 1 if attempt_number == 2 or used_hint else 0
        stats.rounds += 1
        if streak is not None:
            stats.streak = streak
        if new_badges:
            stats.badges.extend(new_badges)
        if leveled_up and new_level is not None:
            stats.level_ups.append((skill, new_level))

    @property
    def accuracy(self) -> int:
        return _percent(self.stats.correct, self.stats.rounds)

    @property
    def first_try_rate(self) -> int:
        return _percent(self.stats.first_try_correct, self.stats.rounds)

    def strongest_skill(self) -> Optional[Skill]:
        ranked = sorted(self.stats.by_skill.items(), key=lambda item: item[1].accuracy, reverse=True)
        return ranked[0][0] if ranked else None

    def focus_skill(self) -> Optional[Skill]:
        ranked = sorted(self.stats.by_skill.items(), key=lambda item: item[1].accuracy)
        return ranked[0][0] if ranked else None


def _percent(part: int, whole: int) -> int:
    return round_half_up(part / whole * 100) if whole else 0
