"""Daily quest, weekly report and progress aggregation over attempt history.

Everything in this module is recomputed from attempt records on demand;
nothing here is stored. Round counts use first attempts only so that a retry
never counts twice towards the daily quest or the weekly figures.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from engines.mastery import SkillState, complete_skill_states, xp_to_next_level
from skills import CT_SKILLS, SKILL_DESCRIPTIONS, SKILL_LABELS, Skill, round_half_up

QUEST_MAIN_TARGET = 2
DEFAULT_DAILY_GOAL = 3
MIN_DAILY_GOAL = 1
MAX_DAILY_GOAL = 10
COMPLETION_BADGE_THRESHOLDS = (10, 25, 50)
GROWTH_DAYS = 14


@dataclass(frozen=True)
class AttemptRecord:
    """One logged attempt as the aggregation functions need it."""

    activity_id: str
    skill: Skill
    is_correct: bool
    attempt_number: int
    session_mode: str
    created_at: datetime
    used_hint: bool = False
    response_time_ms: Optional[int] = None

    @property
    def is_first_attempt(self) -> bool:
        return self.attempt_number == 1

    @property
    def is_recovery(self) -> bool:
        return self.attempt_number == 2 and self.is_correct


@dataclass
class QuestCompletion:
    warmup: bool = False
    main_count: int = 0
    boss: bool = False


@dataclass
class DailyQuestState:
    learner_id: str
    date: str
    rounds_today: int
    daily_goal: int
    progress_percent: int
    due_reviews: int
    weakest_skills: List[Skill]
    completed: QuestCompletion
    remaining_steps: List[str]
    is_complete: bool


@dataclass
class DailyBucket:
    date: str
    rounds: int
    first_try_accuracy: int


@dataclass
class SkillTrend:
    skill: Skill
    label: str
    attempts: int
    accuracy: int
    delta_vs_last_week: int


@dataclass
class WeekSummary:
    rounds: int
    sessions: int
    first_try_correct: int
    first_try_accuracy: int
    mastery_accuracy: int
    recovery_wins: int
    by_skill: Dict[Skill, List[int]] = field(default_factory=dict)


@dataclass
class WeeklyReport:
    learner_id: str
    range_from: str
    range_to: str
    rounds_this_week: int
    sessions_this_week: int
    first_try_accuracy: int
    mastery_accuracy: int
    strategy_recoveries: int
    streak: int
    daily: List[DailyBucket]
    skill_trends: List[SkillTrend]
    wins: List[str]
    focus_skill: Skill
    coach_notes: List[str]


def percent(part: int, whole: int) -> int:
    return round_half_up(part / whole * 100) if whole > 0 else 0


def utc_day(value: datetime) -> date:
    if value.tzinfo is None:
        return value.date()
    return value.astimezone(timezone.utc).date()


def clamp_daily_goal(goal: Optional[int]) -> int:
    value = DEFAULT_DAILY_GOAL if goal is None else int(goal)
    return max(MIN_DAILY_GOAL, min(MAX_DAILY_GOAL, value))


def first_attempts(attempts: Iterable[AttemptRecord]) -> List[AttemptRecord]:
    return [attempt for attempt in attempts if attempt.is_first_attempt]


def quest_is_complete(warmup_done: bool, main_count: int, boss_done: bool, boss_enabled: bool) -> bool:
    return warmup_done and main_count >= QUEST_MAIN_TARGET and (boss_done or not boss_enabled)


def daily_quest_state(
    learner_id: str,
    attempts: Iterable[AttemptRecord],
    skill_states: Sequence[SkillState],
    *,
    now: datetime,
    due_reviews: int = 0,
    daily_goal: Optional[int] = None,
    boss_enabled: bool = True,
) -> DailyQuestState:
    """Derive today's quest progress from the attempt history."""

    today = utc_day(now)
    todays_firsts = [attempt for attempt in first_attempts(attempts) if utc_day(attempt.created_at) == today]

    completed = QuestCompletion()
    for attempt in todays_firsts:
        if attempt.session_mode == "warmup":
            completed.warmup = True
        elif attempt.session_mode in ("main", "review"):
            completed.main_count += 1
        elif attempt.session_mode == "boss":
            completed.boss = True

    remaining: List[str] = []
    if not completed.warmup:
        remaining.append("warmup")
    remaining.extend(["main"] * max(0, QUEST_MAIN_TARGET - completed.main_count))
    if boss_enabled and not completed.boss:
        remaining.append("boss")

    goal = clamp_daily_goal(daily_goal)
    rounds_today = len(todays_firsts)
    weakest = sorted(complete_skill_states(skill_states), key=lambda state: state.mastery_score)[:2]

    return DailyQuestState(
        learner_id=learner_id,
        date=today.isoformat(),
        rounds_today=rounds_today,
        daily_goal=goal,
        progress_percent=min(100, percent(min(rounds_today, goal), goal)),
        due_reviews=due_reviews,
        weakest_skills=[state.skill for state in weakest],
        completed=completed,
        remaining_steps=remaining,
        is_complete=quest_is_complete(completed.warmup, completed.main_count, completed.boss, boss_enabled),
    )


def summarize_window(attempts: Sequence[AttemptRecord]) -> WeekSummary:
    """First-try and mastery accuracy for one reporting window.

    Recoveries are attempt-2 successes; each one follows a failed first
    attempt of the same round, so they are disjoint from first-try successes.
    The cap keeps mastery accuracy at or below 100 for partial histories.
    """

    firsts = first_attempts(attempts)
    recoveries = sum(1 for attempt in attempts if attempt.is_recovery)
    rounds = len(firsts)
    first_try_correct = sum(1 for attempt in firsts if attempt.is_correct)
    mastery_correct = min(rounds, first_try_correct + recoveries)

    by_skill: Dict[Skill, List[int]] = {}
    for attempt in firsts:
        bucket = by_skill.setdefault(attempt.skill, [0, 0])
        bucket[0] += 1
        bucket[1] += 1 if attempt.is_correct else 0

    return WeekSummary(
        rounds=rounds,
        sessions=len({utc_day(attempt.created_at) for attempt in firsts}),
        first_try_correct=first_try_correct,
        first_try_accuracy=percent(first_try_correct, rounds),
        mastery_accuracy=percent(mastery_correct, rounds),
        recovery_wins=recoveries,
        by_skill=by_skill,
    )


def week_days(now: datetime) -> List[date]:
    today = utc_day(now)
    return [today - timedelta(days=offset) for offset in range(6, -1, -1)]


def skill_trends(current: WeekSummary, previous: WeekSummary) -> List[SkillTrend]:
    trends: List[SkillTrend] = []
    for skill in CT_SKILLS:
        attempts, correct = current.by_skill.get(skill, [0, 0])
        prev_attempts, prev_correct = previous.by_skill.get(skill, [0, 0])
        accuracy = percent(correct, attempts)
        trends.append(
            SkillTrend(
                skill=skill,
                label=SKILL_LABELS[skill],
                attempts=attempts,
                accuracy=accuracy,
                delta_vs_last_week=accuracy - percent(prev_correct, prev_attempts),
            )
        )
    return trends


def weekly_report(
    learner_id: str,
    attempts: Iterable[AttemptRecord],
    *,
    now: datetime,
    streak: int = 0,
) -> WeeklyReport:
    """Compare the last seven days against the seven days before them."""

    this_week = week_days(now)
    this_start, this_end = this_week[0], this_week[-1]
    prev_start = this_start - timedelta(days=7)

    rows = list(attempts)
    current_rows = [row for row in rows if this_start <= utc_day(row.created_at) <= this_end]
    previous_rows = [row for row in rows if prev_start <= utc_day(row.created_at) < this_start]

    current = summarize_window(current_rows)
    previous = summarize_window(previous_rows)

    daily: List[DailyBucket] = []
    for day in this_week:
        firsts = [row for row in first_attempts(current_rows) if utc_day(row.created_at) == day]
        daily.append(
            DailyBucket(
                date=day.isoformat(),
                rounds=len(firsts),
                first_try_accuracy=percent(sum(1 for row in firsts if row.is_correct), len(firsts)),
            )
        )

    trends = skill_trends(current, previous)
    practised = [trend for trend in trends if trend.attempts > 0] or trends
    focus = sorted(practised, key=lambda trend: trend.accuracy)[0].skill
    strongest = sorted(practised, key=lambda trend: trend.accuracy, reverse=True)[0].skill

    wins: List[str] = []
    if current.mastery_accuracy >= 75:
        wins.append(f"Mastery accuracy {current.mastery_accuracy}% this week")
    if current.recovery_wins >= 2:
        wins.append(f"Strategy recoveries: {current.recovery_wins}")
    if streak:
        wins.append(f"Current streak: {streak} days")
    if not wins:
        wins.append("Consistency is building. Keep short daily sessions.")

    coach_notes = [
        f"Celebrate {SKILL_LABELS[strongest]}: this was the strongest track this week.",
        f"Focus next on {SKILL_LABELS[focus]} with two targeted rounds each day.",
        "Aim for one recovery win each session by using the hint then retrying with evidence.",
    ]

    return WeeklyReport(
        learner_id=learner_id,
        range_from=this_start.isoformat(),
        range_to=this_end.isoformat(),
        rounds_this_week=current.rounds,
        sessions_this_week=current.sessions,
        first_try_accuracy=current.first_try_accuracy,
        mastery_accuracy=current.mastery_accuracy,
        strategy_recoveries=current.recovery_wins,
        streak=streak,
        daily=daily,
        skill_trends=trends,
        wins=wins,
        focus_skill=focus,
        coach_notes=coach_notes,
    )


def skill_tree(
    skill_states: Sequence[SkillState],
    due_by_skill: Optional[Mapping[Skill, int]] = None,
) -> Dict[str, object]:
    tracks = []
    for state in complete_skill_states(skill_states):
        tracks.append(
            {
                "skill": state.skill.value,
                "label": SKILL_LABELS[state.skill],
                "description": SKILL_DESCRIPTIONS[state.skill],
                "level": state.level,
                "mastery_score": state.mastery_score,
                "xp": state.xp,
                "due_reviews": int((due_by_skill or {}).get(state.skill, 0)),
                "xp_to_next": xp_to_next_level(state.level, state.xp),
            }
        )
    return {"tracks": tracks, "total_xp": sum(track["xp"] for track in tracks)}


def progress_summary(
    attempts: Iterable[AttemptRecord],
    skill_states: Sequence[SkillState],
    *,
    streak: int = 0,
    badge_keys: Sequence[str] = (),
) -> Dict[str, object]:
    """All-time progress view; unlike the weekly report it counts retries."""

    rows = list(attempts)
    completions = len(rows)
    correct = sum(1 for row in rows if row.is_correct)

    buckets: Dict[Skill, List[int]] = {}
    growth: "OrderedDict[str, List[int]]" = OrderedDict()
    for row in sorted(rows, key=lambda item: item.created_at):
        bucket = buckets.setdefault(row.skill, [0, 0])
        bucket[0] += 1
        bucket[1] += 1 if row.is_correct else 0
        day = growth.setdefault(utc_day(row.created_at).isoformat(), [0, 0])
        day[0] += 1
        day[1] += 1 if row.is_correct else 0

    recoveries = sum(1 for row in rows if row.is_recovery)
    wins: List[str] = []
    if recoveries >= 3:
        wins.append(f"Recovered after feedback {recoveries} times")
    if streak >= 3:
        wins.append(f"Current streak: {streak}")
    if badge_keys:
        wins.append(f"Badges earned: {len(badge_keys)}")

    states = list(skill_states)
    return {
        "streak": streak,
        "completions": completions,
        "accuracy": percent(correct, completions),
        "by_skill": [
            {
                "skill": skill.value,
                "accuracy": percent(buckets.get(skill, [0, 0])[1], buckets.get(skill, [0, 0])[0]),
                "attempts": buckets.get(skill, [0, 0])[0],
            }
            for skill in CT_SKILLS
        ],
        "growth": [
            {"date": key, "completions": total, "accuracy": percent(hits, total)}
            for key, (total, hits) in sorted(growth.items())[-GROWTH_DAYS:]
        ],
        "wins": wins,
        "badge_keys": list(badge_keys),
        "completion_badges": [threshold for threshold in COMPLETION_BADGE_THRESHOLDS if completions >= threshold],
        "xp_total": sum(state.xp for state in states),
        "skill_levels": [
            {"skill": state.skill.value, "level": state.level, "mastery_score": state.mastery_score, "xp": state.xp}
            for state in states
        ],
    }


def update_streak(current_streak: int, last_played: Optional[date], today: date) -> int:
    """Same day keeps the streak, the next day extends it, a gap resets it."""

    if last_played is None:
        return 1
    if last_played == today:
        return max(1, current_streak)
    if last_played == today - timedelta(days=1):
        return current_streak + 1
    return 1
