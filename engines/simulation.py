"""Offline learner simulation over the pure progression engines."""

from __future__ import annotations

import random
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from engines.mastery import SkillState, apply_attempt, complete_skill_states
from engines.selection import AttemptSummary, NextItemPlan, choose_next_item
from engines.session import RoundState, Session
from engines.spaced_repetition import ReviewQueueEntry, SpacedRepetitionScheduler
from skills import CT_SKILLS, Skill


@dataclass
class Persona:
    """Represents a simulated learner profile."""

    name: str
    accuracy: float
    retry_accuracy: float = 0.6
    difficulty_penalty: float = 0.08


@dataclass
class RoundResult:
    """Outcome of one simulated round."""

    persona: str
    day: int
    mode: str
    skill: Skill
    target_difficulty: int
    source: str
    correct: bool
    attempt_number: int
    xp_awarded: int
    leveled_up: bool


@dataclass
class SimulationMetrics:
    """Aggregated statistics for a persona across simulated sessions."""

    persona: str
    rounds: int
    first_try_rate: float
    recovery_rate: float
    review_share: float
    total_xp: int
    mean_level: float
    levels: Dict[str, int] = field(default_factory=dict)


AttemptModel = Callable[[random.Random, Persona, SkillState, NextItemPlan, int], bool]


class LearnerSimulation:
    """Drive daily sessions for a synthetic learner through selection, mastery and review."""

    def __init__(
        self,
        persona: Persona,
        *,
        main_rounds: int = 1,
        boss_enabled: bool = True,
        boss_intensity: int = 3,
        random_seed: int | None = None,
        start: Optional[datetime] = None,
        attempt_model: AttemptModel | None = None,
    ) -> None:
        self.persona = persona
        self.main_rounds = main_rounds
        self.boss_enabled = boss_enabled
        self.boss_intensity = boss_intensity
        self.rng = random.Random(random_seed)
        self.start = start or datetime(2026, 1, 5, 16, 0, tzinfo=timezone.utc)
        self.attempt_model: AttemptModel = attempt_model or self._default_attempt_model
        self.scheduler = SpacedRepetitionScheduler()

        self.states: Dict[Skill, SkillState] = {skill: SkillState.default(skill) for skill in CT_SKILLS}
        self.reviews: Dict[str, ReviewQueueEntry] = {}
        self.recent: List[AttemptSummary] = []
        self._counter = 0

    # ------------------------------------------------------------------
    def run(self, *, days: int = 7) -> List[RoundResult]:
        """Play one session per day for ``days`` days."""

        results: List[RoundResult] = []
        for day in range(days):
            results.extend(self.play_session(day))
        return results

    def play_session(self, day: int) -> List[RoundResult]:
        now = self.start + timedelta(days=day)
        session = Session.from_settings(self.persona.name, self.main_rounds, self.boss_enabled)
        results: List[RoundResult] = []

        while not session.is_recap:
            plan, activity_id = self._plan(session, now)
            round_state = RoundState(activity_id=activity_id)
            state = self.states[plan.skill]

            while not round_state.is_finalized:
                attempt_number = round_state.attempt_number
                used_hint = round_state.used_hint
                correct = self.attempt_model(self.rng, self.persona, state, plan, attempt_number)
                self.recent.append(AttemptSummary(skill=plan.skill, is_correct=correct, created_at=now))
                round_state.submit(correct)

            successor, update = apply_attempt(
                state,
                is_correct=bool(round_state.final_correct),
                attempt_number=attempt_number,
                used_hint=used_hint,
                mode=plan.mode,
            )
            self.states[plan.skill] = successor
            self.reviews[activity_id] = self.scheduler.update_entry(
                self.reviews.get(activity_id),
                activity_id=activity_id,
                skill=plan.skill,
                now=now,
                was_correct=bool(round_state.final_correct),
                attempt_number=attempt_number,
            )
            session.record_outcome(
                skill=plan.skill,
                is_correct=bool(round_state.final_correct),
                attempt_number=attempt_number,
                used_hint=used_hint,
                xp_awarded=update.xp_awarded,
                strategy_xp=update.strategy_xp,
                leveled_up=update.leveled_up,
                new_level=update.new_level,
            )
            results.append(
                RoundResult(
                    persona=self.persona.name,
                    day=day,
                    mode=plan.mode,
                    skill=plan.skill,
                    target_difficulty=plan.target_difficulty,
                    source=plan.source,
                    correct=bool(round_state.final_correct),
                    attempt_number=attempt_number,
                    xp_awarded=update.xp_awarded,
                    leveled_up=update.leveled_up,
                )
            )
            session.advance(activity_id)
            now += timedelta(minutes=2)

        return results

    @property
    def skill_states(self) -> List[SkillState]:
        return complete_skill_states(self.states.values())

    # ------------------------------------------------------------------
    def summarise(self, results: Iterable[RoundResult]) -> SimulationMetrics:
        rows = list(results)
        first_try = [row for row in rows if row.correct and row.attempt_number == 1]
        retries = [row for row in rows if row.attempt_number == 2]
        recovered = [row for row in retries if row.correct]
        states = self.skill_states
        return SimulationMetrics(
            persona=self.persona.name,
            rounds=len(rows),
            first_try_rate=len(first_try) / len(rows) if rows else 0.0,
            recovery_rate=len(recovered) / len(retries) if retries else 0.0,
            review_share=sum(1 for row in rows if row.source == "review_queue") / len(rows) if rows else 0.0,
            total_xp=sum(state.xp for state in states),
            mean_level=mean(state.level for state in states),
            levels={state.skill.value: state.level for state in states},
        )

    # ------------------------------------------------------------------
    def _plan(self, session: Session, now: datetime) -> Tuple[NextItemPlan, str]:
        due = self.scheduler.summarize_due(self.reviews.values(), now)
        plan = choose_next_item(
            now=now,
            due_review_count=due.total,
            skill_states=self.skill_states,
            recent_attempts=self.recent,
            session_step=session.current_step,
            due_review_by_skill=due.by_skill,
            boss_intensity=self.boss_intensity,
        )
        if plan.source == "review_queue":
            for entry in self.scheduler.get_due_reviews(self.reviews.values(), now, skill=plan.skill):
                if entry.activity_id not in session.used_activity_ids:
                    return plan, entry.activity_id
        self._counter += 1
        return plan, f"{plan.skill.value}-{plan.target_difficulty}-{self._counter}"

    @staticmethod
    def _default_attempt_model(
        rng: random.Random,
        persona: Persona,
        state: SkillState,
        plan: NextItemPlan,
        attempt_number: int,
    ) -> bool:
        """Accuracy drops as the target difficulty climbs above the learner's level."""

        base = persona.accuracy if attempt_number == 1 else persona.retry_accuracy
        stretch = plan.target_difficulty - state.level
        effective = max(0.05, min(0.95, base - stretch * persona.difficulty_penalty))
        return rng.random() < effective


def compare_personas(
    personas: Sequence[Persona],
    *,
    days: int = 14,
    random_seed: int | None = None,
    **settings,
) -> List[SimulationMetrics]:
    """Run every persona with the same settings and seed."""

    metrics: List[SimulationMetrics] = []
    for persona in personas:
        simulation = LearnerSimulation(persona, random_seed=random_seed, **settings)
        metrics.append(simulation.summarise(simulation.run(days=days)))
    return metrics


def rounds_by_mode(results: Iterable[RoundResult]) -> Dict[str, int]:
    counts: Dict[str, int] = defaultdict(int)
    for row in results:
        counts[row.mode] += 1
    return dict(counts)


__all__ = [
    "Persona",
    "RoundResult",
    "SimulationMetrics",
    "LearnerSimulation",
    "compare_personas",
    "rounds_by_mode",
]
