"""Spaced repetition scheduling for previously attempted activities."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from skills import CT_SKILLS, Skill, normalize_skill, round_half_up

MIN_EASE = 1.3
MAX_EASE = 2.8
DEFAULT_EASE = 2.5
DEFAULT_INTERVAL_DAYS = 1
FAILURE_EASE_PENALTY = 0.2


@dataclass
class ReviewQueueEntry:
    activity_id: str
    skill: Skill
    due_at: datetime
    interval_days: int = DEFAULT_INTERVAL_DAYS
    ease: float = DEFAULT_EASE
    last_result: Optional[bool] = None

    def is_due(self, now: datetime) -> bool:
        return self.due_at <= now


@dataclass(frozen=True)
class ReviewUpdate:
    interval_days: int
    ease: float
    due_at: datetime

    @property
    def due_at_iso(self) -> str:
        return self.due_at.isoformat()


@dataclass(frozen=True)
class DueSummary:
    total: int
    by_skill: Dict[Skill, int]


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SpacedRepetitionScheduler:
    """SM-2 style scheduler with a two-bucket quality signal.

    A correct first attempt maps to quality 4, a correct retry to quality 3.
    Failures shrink the ease by a fixed step (never below the floor) and reset
    the interval to one day.
    """

    def __init__(
        self,
        *,
        min_ease: float = MIN_EASE,
        max_ease: float = MAX_EASE,
        default_ease: float = DEFAULT_EASE,
    ) -> None:
        self.min_ease = min_ease
        self.max_ease = max_ease
        self.default_ease = default_ease

    def compute_next_review(
        self,
        now: datetime,
        was_correct: bool,
        attempt_number: int,
        previous_interval_days: Optional[int] = None,
        previous_ease: Optional[float] = None,
    ) -> ReviewUpdate:
        """Calculate the next interval, ease and due date for an activity."""

        previous_interval = max(
            1, previous_interval_days if previous_interval_days is not None else DEFAULT_INTERVAL_DAYS
        )
        ease = max(self.min_ease, previous_ease if previous_ease is not None else self.default_ease)

        if was_correct:
            quality = 4 if attempt_number == 1 else 3
            miss = 5 - quality
            ease = ease + (0.1 - miss * (0.08 + miss * 0.02))
            ease = max(self.min_ease, min(self.max_ease, ease))
            interval_days = max(1, round_half_up(previous_interval * ease))
        else:
            ease = max(self.min_ease, ease - FAILURE_EASE_PENALTY)
            interval_days = 1

        return ReviewUpdate(
            interval_days=interval_days,
            ease=ease,
            due_at=now + timedelta(days=interval_days),
        )

    def update_entry(
        self,
        entry: Optional[ReviewQueueEntry],
        *,
        activity_id: str,
        skill: Skill,
        now: datetime,
        was_correct: bool,
        attempt_number: int,
    ) -> ReviewQueueEntry:
        """Create or reschedule the queue entry for one activity."""

        update = self.compute_next_review(
            now,
            was_correct,
            attempt_number,
            previous_interval_days=entry.interval_days if entry else None,
            previous_ease=entry.ease if entry else None,
        )
        return ReviewQueueEntry(
            activity_id=activity_id,
            skill=normalize_skill(skill),
            due_at=update.due_at,
            interval_days=update.interval_days,
            ease=update.ease,
            last_result=was_correct,
        )

    def get_due_reviews(
        self,
        entries: Iterable[ReviewQueueEntry],
        current_time: Optional[datetime] = None,
        *,
        skill: Optional[Skill] = None,
    ) -> List[ReviewQueueEntry]:
        """Due entries, oldest due date first."""

        now = _to_utc(current_time or datetime.now(timezone.utc))
        due = [
            entry
            for entry in entries
            if _to_utc(entry.due_at) <= now and (skill is None or entry.skill == skill)
        ]
        return sorted(due, key=lambda entry: _to_utc(entry.due_at))

    def summarize_due(
        self,
        entries: Iterable[ReviewQueueEntry],
        current_time: Optional[datetime] = None,
    ) -> DueSummary:
        due = self.get_due_reviews(entries, current_time)
        counts = Counter(entry.skill for entry in due)
        return DueSummary(total=len(due), by_skill={skill: counts[skill] for skill in CT_SKILLS if counts[skill]})

    def review_load(
        self,
        entries: Iterable[ReviewQueueEntry],
        current_time: Optional[datetime] = None,
        days: int = 7,
    ) -> Dict[str, int]:
        """Count of reviews falling due on each of the next ``days`` days."""

        now = _to_utc(current_time or datetime.now(timezone.utc))
        pending = [_to_utc(entry.due_at).date() for entry in entries]
        load: Dict[str, int] = {}
        for offset in range(days):
            day = (now + timedelta(days=offset)).date()
            load[day.isoformat()] = sum(1 for due_date in pending if due_date == day)
        return load


_DEFAULT_SCHEDULER = SpacedRepetitionScheduler()


def compute_next_review(
    now: datetime,
    was_correct: bool,
    attempt_number: int,
    previous_interval_days: Optional[int] = None,
    previous_ease: Optional[float] = None,
) -> ReviewUpdate:
    """Module-level shortcut using the default scheduler parameters."""

    return _DEFAULT_SCHEDULER.compute_next_review(
        now,
        was_correct,
        attempt_number,
        previous_interval_days=previous_interval_days,
        previous_ease=previous_ease,
    )
