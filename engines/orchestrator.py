"""Round orchestration: the I/O glue between the pure engines and storage.

The orchestrator reads learner state from :mod:`db`, asks the selection policy
for a plan, resolves the plan to an activity through the content bank, runs
the per-round attempt state machine and, once a round is finalized, applies
the mastery update and refreshes the review queue, streak and badges.

Skill state is the primary contract and storage errors there propagate. The
review queue, streaks, badges and adaptive settings are optional subsystems:
when :class:`db.StorageUnavailableError` is raised for one of them the
orchestrator logs a warning and carries on with defaults.
"""

from __future__ import annotations

import logging
import random
import threading
import weakref
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from time import monotonic
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import db
from activity_bank import ActivityBank, correct_choice_index, get_default_bank
from engines.feedback_engine import FeedbackDetail, FeedbackEngine
from engines.mastery import (
    SkillState,
    apply_attempt,
    badge_keys_for_milestones,
    complete_skill_states,
    streak_badges,
)
from engines.reporting import (
    AttemptRecord,
    DailyQuestState,
    WeeklyReport,
    daily_quest_state,
    progress_summary,
    skill_tree,
    update_streak,
    utc_day,
    weekly_report,
)
from engines.selection import RECENT_WINDOW, AttemptSummary, NextItemPlan, choose_next_item
from engines.session import RoundState, RoundStateError, Session
from engines.spaced_repetition import DueSummary, ReviewQueueEntry, SpacedRepetitionScheduler
from env_validation import get_env_int
from schemas import AdaptiveSettings
from skills import normalize_skill

logger = logging.getLogger(__name__)

REVIEW_CANDIDATES = 16

_LOCKS: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
_LOCKS_GUARD = threading.Lock()


def learner_lock(learner_id: str) -> threading.RLock:
    """One re-entrant lock per learner, shared by every orchestrator instance.

    An entry lives only while some caller still references the lock.
    """

    with _LOCKS_GUARD:
        lock = _LOCKS.get(learner_id)
        if lock is None:
            lock = _LOCKS[learner_id] = threading.RLock()
        return lock


@dataclass(frozen=True)
class AdaptiveRound:
    activity: Dict[str, Any]
    plan: NextItemPlan


@dataclass(frozen=True)
class FinalizeResult:
    xp_awarded: int
    strategy_xp: int
    new_level: int
    new_mastery_score: float
    leveled_up: bool
    streak: int
    new_badges: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActiveSession:
    """A running sitting: the phase machine plus the round in flight."""

    session_id: str
    age_band: str
    settings: AdaptiveSettings
    session: Session
    current: Optional[AdaptiveRound] = None
    round_state: Optional[RoundState] = None

    @property
    def learner_id(self) -> str:
        return self.session.learner_id


class SessionRegistry:
    """Active sittings by id, bounded by count and idle time.

    Entries are kept in least-recently-used order; each ``add`` or ``get``
    first drops sittings idle for longer than ``idle_seconds`` and then the
    oldest ones beyond ``max_sessions``.
    """

    def __init__(
        self,
        max_sessions: int = 500,
        idle_seconds: float = 2 * 60 * 60,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.max_sessions = max(1, int(max_sessions))
        self.idle_seconds = max(1.0, float(idle_seconds))
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ActiveSession]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._entries

    def add(self, active: ActiveSession) -> None:
        with self._lock:
            now = self._clock()
            self._entries[active.session_id] = (now, active)
            self._entries.move_to_end(active.session_id)
            self._evict(now)

    def get(self, session_id: str) -> Optional[ActiveSession]:
        with self._lock:
            now = self._clock()
            self._evict(now)
            entry = self._entries.get(session_id)
            if entry is None:
                return None
            self._entries[session_id] = (now, entry[1])
            self._entries.move_to_end(session_id)
            return entry[1]

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def _evict(self, now: float) -> None:
        while self._entries:
            session_id, (last_used, _) = next(iter(self._entries.items()))
            if len(self._entries) <= self.max_sessions and now - last_used < self.idle_seconds:
                break
            del self._entries[session_id]
            logger.debug("Session %s evicted", session_id)


@dataclass(frozen=True)
class AnswerOutcome:
    is_correct: bool
    attempt_number: int
    round_state: RoundState
    feedback: FeedbackDetail
    result: Optional[FinalizeResult] = None


def attempt_record(row: Dict[str, Any]) -> AttemptRecord:
    return AttemptRecord(
        activity_id=str(row["activity_id"]),
        skill=normalize_skill(row["skill"]),
        is_correct=bool(row["is_correct"]),
        attempt_number=int(row.get("attempt_number") or 1),
        session_mode=str(row.get("session_mode") or "main"),
        created_at=row["created_at"],
        used_hint=bool(row.get("used_hint")),
        response_time_ms=row.get("response_time_ms"),
    )


def review_entry(row: Dict[str, Any]) -> ReviewQueueEntry:
    return ReviewQueueEntry(
        activity_id=str(row["activity_id"]),
        skill=normalize_skill(row["skill"]),
        due_at=row["due_at"],
        interval_days=int(row["interval_days"]),
        ease=float(row["ease"]),
        last_result=row.get("last_result"),
    )


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class AdaptiveRoundOrchestrator:
    def __init__(
        self,
        bank: Optional[ActivityBank] = None,
        *,
        scheduler: Optional[SpacedRepetitionScheduler] = None,
        feedback: Optional[FeedbackEngine] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._bank = bank
        self.scheduler = scheduler or SpacedRepetitionScheduler()
        self.feedback = feedback or FeedbackEngine()
        self.rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def bank(self) -> ActivityBank:
        if self._bank is None:
            self._bank = get_default_bank()
        return self._bank

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # learner state
    # ------------------------------------------------------------------
    def default_settings(self) -> AdaptiveSettings:
        return AdaptiveSettings(daily_goal=get_env_int("DEFAULT_DAILY_GOAL", 3))

    def load_settings(self, learner_id: str) -> AdaptiveSettings:
        try:
            row = db.get_adaptive_settings(learner_id)
        except db.StorageUnavailableError as exc:
            logger.warning("Adaptive settings unavailable for %s, using defaults: %s", learner_id, exc)
            return self.default_settings()
        if row is None:
            return self.default_settings()
        return AdaptiveSettings(
            main_rounds=row["main_rounds"],
            boss_enabled=row["boss_enabled"],
            boss_intensity=row["boss_intensity"],
            hint_mode=row["hint_mode"],
            daily_goal=row["daily_goal"],
        )

    def save_settings(self, learner_id: str, changes: Dict[str, Any]) -> AdaptiveSettings:
        """Merge ``changes`` into the stored settings and persist them."""

        merged = self.load_settings(learner_id).model_copy(
            update={key: value for key, value in changes.items() if value is not None}
        )
        settings = AdaptiveSettings.model_validate(merged.model_dump())
        try:
            db.update_adaptive_settings(learner_id, settings.model_dump())
        except db.StorageUnavailableError as exc:
            logger.warning("Adaptive settings not saved for %s: %s", learner_id, exc)
        return settings

    def skill_states(self, learner_id: str) -> List[SkillState]:
        db.ensure_skill_rows(learner_id)
        rows = db.get_skill_states(learner_id)
        return complete_skill_states(SkillState.from_row(row) for row in rows)

    def review_entries(self, learner_id: str) -> List[ReviewQueueEntry]:
        try:
            rows = db.list_review_entries(learner_id)
        except db.StorageUnavailableError as exc:
            logger.warning("Review queue unavailable for %s: %s", learner_id, exc)
            return []
        return [review_entry(row) for row in rows]

    def due_summary(self, learner_id: str, now: Optional[datetime] = None) -> DueSummary:
        return self.scheduler.summarize_due(self.review_entries(learner_id), now or self.now())

    def recent_attempts(self, learner_id: str) -> List[AttemptSummary]:
        return [
            AttemptSummary(
                skill=normalize_skill(row["skill"]),
                is_correct=row["is_correct"],
                created_at=row["created_at"],
                response_time_ms=row.get("response_time_ms"),
            )
            for row in db.list_recent_attempts(learner_id, limit=RECENT_WINDOW)
        ]

    def current_streak(self, learner_id: str, today: date) -> int:
        """Stored streak, or 0 once a day has been skipped."""

        try:
            row = db.get_streak(learner_id)
        except db.StorageUnavailableError as exc:
            logger.warning("Streaks unavailable for %s: %s", learner_id, exc)
            return 0
        if not row or row["last_played"] is None:
            return 0
        if row["last_played"] < today - timedelta(days=1):
            return 0
        return int(row["current_streak"])

    # ------------------------------------------------------------------
    # rounds
    # ------------------------------------------------------------------
    def prepare_round(
        self,
        learner_id: str,
        *,
        age_band: Optional[str],
        session_step: str,
        exclude_ids: Iterable[str] = (),
        settings: Optional[AdaptiveSettings] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AdaptiveRound]:
        """Plan the next round and resolve it to a playable activity.

        Returns ``None`` when the content bank has nothing playable for the
        learner's age band.
        """

        now = now or self.now()
        settings = settings or self.load_settings(learner_id)
        exclude = set(exclude_ids)

        if not self.bank.for_age_band(age_band):
            logger.info("No playable activities for age band %s", age_band)
            return None

        entries = self.review_entries(learner_id)
        due = self.scheduler.summarize_due(entries, now)
        plan = choose_next_item(
            now=now,
            due_review_count=due.total,
            skill_states=self.skill_states(learner_id),
            recent_attempts=self.recent_attempts(learner_id),
            session_step=session_step,
            due_review_by_skill=due.by_skill,
            boss_intensity=settings.boss_intensity,
        )

        activity = None
        if plan.source == "review_queue":
            due_ids = [
                entry.activity_id
                for entry in self.scheduler.get_due_reviews(entries, now, skill=plan.skill)
                if entry.activity_id not in exclude
            ][:REVIEW_CANDIDATES]
            candidates = self.bank.resolve_ids(due_ids)
            if candidates:
                activity = self.rng.choice(candidates)

        if activity is None:
            activity = self.bank.select(
                skill=plan.skill,
                target_difficulty=plan.target_difficulty,
                age_band=age_band,
                exclude=exclude,
                rng=self.rng,
            )

        if activity is None:
            return None

        logger.debug(
            "Planned %s round for %s: skill=%s difficulty=%s source=%s activity=%s",
            plan.mode,
            learner_id,
            plan.skill.value,
            plan.target_difficulty,
            plan.source,
            activity["id"],
        )
        return AdaptiveRound(activity=activity, plan=plan)

    def log_attempt(
        self,
        learner_id: str,
        activity: Dict[str, Any],
        plan: NextItemPlan,
        *,
        choice_index: int,
        is_correct: bool,
        attempt_number: int,
        used_hint: bool,
        response_time_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        return db.record_attempt(
            learner_id,
            activity["id"],
            choice_index=choice_index,
            is_correct=is_correct,
            attempt_number=attempt_number,
            session_mode=plan.mode,
            skill=plan.skill.value,
            used_hint=used_hint,
            response_time_ms=response_time_ms,
            created_at=now or self.now(),
        )

    def finalize_round(
        self,
        learner_id: str,
        activity: Dict[str, Any],
        plan: NextItemPlan,
        *,
        final_correct: bool,
        attempt_number: int,
        used_hint: bool,
        now: Optional[datetime] = None,
    ) -> FinalizeResult:
        """Apply a finalized round to skill state, review queue, streak and badges."""

        now = now or self.now()
        with learner_lock(learner_id):
            db.ensure_skill_rows(learner_id)
            row = db.get_skill_state(learner_id, plan.skill.value)
            state = SkillState.from_row(row) if row else SkillState.default(plan.skill)

            successor, update = apply_attempt(
                state,
                is_correct=final_correct,
                attempt_number=attempt_number,
                used_hint=used_hint,
                mode=plan.mode,
            )
            db.upsert_skill_state(
                learner_id, plan.skill.value, successor.level, successor.xp, successor.mastery_score
            )
            if update.leveled_up:
                logger.info("Learner %s reached level %d in %s", learner_id, update.new_level, plan.skill.value)

            self._schedule_review(learner_id, activity, plan, final_correct, attempt_number, now)
            streak = self._touch_streak(learner_id, utc_day(now))

            candidates = badge_keys_for_milestones(
                plan.skill,
                update.new_level,
                is_boss=plan.mode == "boss",
                is_correct=final_correct,
                solved_on_retry=final_correct and attempt_number == 2,
            )
            if plan.mode == "boss" and final_correct:
                candidates.append(f"boss_daily_{utc_day(now).isoformat()}")
            candidates.extend(streak_badges(streak))
            new_badges = self._award_badges(learner_id, candidates)

        return FinalizeResult(
            xp_awarded=update.xp_awarded,
            strategy_xp=update.strategy_xp,
            new_level=update.new_level,
            new_mastery_score=update.new_mastery_score,
            leveled_up=update.leveled_up,
            streak=streak,
            new_badges=new_badges,
        )

    def _schedule_review(
        self,
        learner_id: str,
        activity: Dict[str, Any],
        plan: NextItemPlan,
        was_correct: bool,
        attempt_number: int,
        now: datetime,
    ) -> None:
        try:
            row = db.get_review_entry(learner_id, activity["id"])
            entry = self.scheduler.update_entry(
                review_entry(row) if row else None,
                activity_id=activity["id"],
                skill=plan.skill,
                now=now,
                was_correct=was_correct,
                attempt_number=attempt_number,
            )
            db.upsert_review_entry(
                learner_id,
                entry.activity_id,
                skill=entry.skill.value,
                due_at=entry.due_at,
                interval_days=entry.interval_days,
                ease=entry.ease,
                last_result=entry.last_result,
            )
        except db.StorageUnavailableError as exc:
            logger.warning("Review scheduling skipped for %s: %s", learner_id, exc)

    def _touch_streak(self, learner_id: str, today: date) -> int:
        try:
            row = db.get_streak(learner_id)
            streak = update_streak(
                int(row["current_streak"]) if row else 0,
                row["last_played"] if row else None,
                today,
            )
            db.upsert_streak(learner_id, streak, today)
        except db.StorageUnavailableError as exc:
            logger.warning("Streak update skipped for %s: %s", learner_id, exc)
            return 0
        return streak

    def _award_badges(self, learner_id: str, candidates: Sequence[str]) -> List[str]:
        keys = list(dict.fromkeys(candidates))
        if not keys:
            return []
        try:
            new_badges = db.insert_badges(learner_id, keys)
        except db.StorageUnavailableError as exc:
            logger.warning("Badges skipped for %s: %s", learner_id, exc)
            return []
        if new_badges:
            logger.info("Learner %s earned badges: %s", learner_id, ", ".join(new_badges))
        return new_badges

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def start_session(self, session_id: str, learner_id: str, age_band: str) -> ActiveSession:
        db.ensure_learner(learner_id, age_band)
        settings = self.load_settings(learner_id)
        return ActiveSession(
            session_id=session_id,
            age_band=age_band,
            settings=settings,
            session=Session.from_settings(learner_id, settings.main_rounds, settings.boss_enabled),
        )

    def next_round(self, active: ActiveSession, now: Optional[datetime] = None) -> Optional[AdaptiveRound]:
        """The round for the current phase; an unfinished round is returned as is.

        A finalized round must be advanced past before the next one is
        prepared, so each phase plays exactly one round.
        """

        if active.session.is_recap:
            raise RoundStateError("session is in recap; restart to play again")
        if active.current is not None and active.round_state is not None:
            if active.round_state.is_finalized:
                raise RoundStateError(
                    f"round for {active.round_state.activity_id} is finalized; advance to the next phase"
                )
            return active.current

        prepared = self.prepare_round(
            active.learner_id,
            age_band=active.age_band,
            session_step=active.session.current_step,
            exclude_ids=active.session.used_activity_ids,
            settings=active.settings,
            now=now,
        )
        active.current = prepared
        active.round_state = RoundState(activity_id=prepared.activity["id"]) if prepared else None
        return prepared

    def answer(
        self,
        active: ActiveSession,
        choice_index: int,
        *,
        response_time_ms: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> AnswerOutcome:
        """Submit one choice for the round in flight."""

        current, state = active.current, active.round_state
        if current is None or state is None:
            raise RoundStateError("no round in progress")
        if state.is_finalized:
            raise RoundStateError(f"round for {state.activity_id} is already finalized")

        content = current.activity["content"]
        choices = content["choices"]
        if not 0 <= choice_index < len(choices):
            raise ValueError(f"choice_index {choice_index} outside 0..{len(choices) - 1}")

        now = now or self.now()
        learner_id = active.learner_id
        attempt_number = state.attempt_number
        used_hint = state.used_hint
        correct_index = correct_choice_index(current.activity)
        is_correct = choice_index == correct_index

        with learner_lock(learner_id):
            self.log_attempt(
                learner_id,
                current.activity,
                current.plan,
                choice_index=choice_index,
                is_correct=is_correct,
                attempt_number=attempt_number,
                used_hint=used_hint,
                response_time_ms=response_time_ms,
                now=now,
            )
            finalized = state.submit(is_correct)

            result = None
            if finalized:
                result = self.finalize_round(
                    learner_id,
                    current.activity,
                    current.plan,
                    final_correct=is_correct,
                    attempt_number=attempt_number,
                    used_hint=used_hint,
                    now=now,
                )
                active.session.record_outcome(
                    skill=current.plan.skill,
                    is_correct=is_correct,
                    attempt_number=attempt_number,
                    used_hint=used_hint,
                    xp_awarded=result.xp_awarded,
                    strategy_xp=result.strategy_xp,
                    leveled_up=result.leveled_up,
                    new_level=result.new_level,
                    streak=result.streak,
                    new_badges=result.new_badges,
                )

        feedback = self.feedback.generate_feedback(
            age_band=active.age_band,
            skill=current.plan.skill,
            is_correct=is_correct,
            correct_choice=choices[correct_index],
            chosen_choice=choices[choice_index],
            explanation=str(content.get("explanation") or ""),
            strategy_tip=str(content.get("tip") or ""),
            attempt_number=attempt_number,
            hint_mode=active.settings.hint_mode,
        )
        return AnswerOutcome(
            is_correct=is_correct,
            attempt_number=attempt_number,
            round_state=state,
            feedback=feedback,
            result=result,
        )

    def advance(self, active: ActiveSession) -> str:
        """Leave the current phase; only a finalized round completes it."""

        if active.session.is_recap:
            raise RoundStateError("session is in recap; restart to play again")
        current, state = active.current, active.round_state
        if current is None or state is None or not state.is_finalized:
            raise RoundStateError("finish the current round before advancing")
        active.current = None
        active.round_state = None
        return active.session.advance(current.activity["id"])

    def restart(self, active: ActiveSession) -> None:
        active.current = None
        active.round_state = None
        active.session.restart()

    # ------------------------------------------------------------------
    # reporting
    # ------------------------------------------------------------------
    def daily_quest(
        self,
        learner_id: str,
        settings: Optional[AdaptiveSettings] = None,
        now: Optional[datetime] = None,
    ) -> DailyQuestState:
        now = now or self.now()
        settings = settings or self.load_settings(learner_id)
        rows = db.list_attempts(learner_id, since=_day_start(utc_day(now)))
        return daily_quest_state(
            learner_id,
            [attempt_record(row) for row in rows],
            self.skill_states(learner_id),
            now=now,
            due_reviews=self.due_summary(learner_id, now).total,
            daily_goal=settings.daily_goal,
            boss_enabled=settings.boss_enabled,
        )

    def weekly_report(self, learner_id: str, now: Optional[datetime] = None) -> WeeklyReport:
        now = now or self.now()
        today = utc_day(now)
        rows = db.list_attempts(learner_id, since=_day_start(today - timedelta(days=13)))
        return weekly_report(
            learner_id,
            [attempt_record(row) for row in rows],
            now=now,
            streak=self.current_streak(learner_id, today),
        )

    def skill_tree(self, learner_id: str, now: Optional[datetime] = None) -> Dict[str, object]:
        due = self.due_summary(learner_id, now)
        return skill_tree(self.skill_states(learner_id), due.by_skill)

    def progress(self, learner_id: str, now: Optional[datetime] = None) -> Dict[str, object]:
        now = now or self.now()
        try:
            badge_keys = db.list_badge_keys(learner_id)
        except db.StorageUnavailableError as exc:
            logger.warning("Badges unavailable for %s: %s", learner_id, exc)
            badge_keys = []
        return progress_summary(
            [attempt_record(row) for row in db.list_attempts(learner_id)],
            self.skill_states(learner_id),
            streak=self.current_streak(learner_id, utc_day(now)),
            badge_keys=badge_keys,
        )
