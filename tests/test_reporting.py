from datetime import date, datetime, timedelta, timezone

import pytest

from engines.mastery import SkillState
from engines.reporting import (
    AttemptRecord,
    daily_quest_state,
    percent,
    progress_summary,
    quest_is_complete,
    skill_tree,
    summarize_window,
    update_streak,
    utc_day,
    weekly_report,
)
from skills import CT_SKILLS, Skill

NOW = datetime(2026, 3, 11, 15, 30, tzinfo=timezone.utc)


def _attempt(skill, correct, mode="main", attempt=1, when=NOW, activity_id="act"):
    return AttemptRecord(
        activity_id=activity_id,
        skill=skill,
        is_correct=correct,
        attempt_number=attempt,
        session_mode=mode,
        created_at=when,
        used_hint=attempt == 2,
    )


@pytest.mark.parametrize("warmup", [True, False])
@pytest.mark.parametrize("main_count", [1, 2])
@pytest.mark.parametrize("boss", [True, False])
def test_quest_requires_warmup_two_mains_and_boss(warmup, main_count, boss):
    expected = warmup and main_count >= 2 and boss
    assert quest_is_complete(warmup, main_count, boss, boss_enabled=True) is expected


def test_quest_without_boss_round_ignores_boss():
    assert quest_is_complete(True, 2, False, boss_enabled=False) is True
    assert quest_is_complete(True, 1, False, boss_enabled=False) is False


def test_daily_quest_counts_first_attempts_from_today_only():
    attempts = [
        _attempt(Skill.INTERPRET, True, mode="warmup", when=NOW - timedelta(hours=3)),
        _attempt(Skill.EVALUATE, False, when=NOW - timedelta(hours=2)),
        _attempt(Skill.EVALUATE, True, attempt=2, when=NOW - timedelta(hours=2)),
        _attempt(Skill.INFER, True, mode="review", when=NOW - timedelta(hours=1)),
        _attempt(Skill.ANALYZE, True, mode="boss", when=NOW - timedelta(days=1)),
    ]
    states = [
        SkillState(Skill.EXPLAIN, mastery_score=0.6),
        SkillState(Skill.INTERPRET, mastery_score=0.7),
        SkillState(Skill.ANALYZE, mastery_score=0.8),
        SkillState(Skill.EVALUATE, mastery_score=0.2),
        SkillState(Skill.INFER, mastery_score=0.9),
        SkillState(Skill.SELF_REGULATE, mastery_score=0.5),
    ]

    quest = daily_quest_state("learner-1", attempts, states, now=NOW, due_reviews=4, daily_goal=3)

    assert quest.date == "2026-03-11"
    assert quest.rounds_today == 3
    assert quest.progress_percent == 100
    assert quest.completed.warmup is True
    assert quest.completed.main_count == 2
    assert quest.completed.boss is False
    assert quest.remaining_steps == ["boss"]
    assert quest.is_complete is False
    assert quest.due_reviews == 4
    assert quest.weakest_skills == [Skill.EVALUATE, Skill.SELF_REGULATE]


def test_daily_quest_goal_is_clamped_and_progress_capped():
    attempts = [_attempt(Skill.INFER, True, mode="warmup")]
    quest = daily_quest_state("learner-1", attempts, [], now=NOW, daily_goal=50, boss_enabled=False)

    assert quest.daily_goal == 10
    assert quest.progress_percent == 10
    assert quest.remaining_steps == ["main", "main"]

    many = [_attempt(Skill.INFER, True) for _ in range(8)]
    assert daily_quest_state("learner-1", many, [], now=NOW, daily_goal=3).progress_percent == 100


def _week_history():
    march_10 = NOW - timedelta(days=1)
    return [
        _attempt(Skill.INFER, True, when=march_10),
        _attempt(Skill.EVALUATE, False, when=march_10),
        _attempt(Skill.EVALUATE, True, attempt=2, when=march_10),
        _attempt(Skill.INFER, True, when=NOW),
        _attempt(Skill.EXPLAIN, False, when=NOW),
        _attempt(Skill.EXPLAIN, True, attempt=2, when=NOW),
        # previous week
        _attempt(Skill.INFER, False, when=NOW - timedelta(days=8)),
        # outside both windows
        _attempt(Skill.INFER, True, when=NOW - timedelta(days=20)),
    ]


def test_weekly_report_compares_against_previous_week():
    report = weekly_report("learner-1", _week_history(), now=NOW, streak=2)

    assert (report.range_from, report.range_to) == ("2026-03-05", "2026-03-11")
    assert report.rounds_this_week == 4
    assert report.sessions_this_week == 2
    assert report.first_try_accuracy == 50
    assert report.mastery_accuracy == 100
    assert report.strategy_recoveries == 2
    assert [bucket.rounds for bucket in report.daily] == [0, 0, 0, 0, 0, 2, 2]
    assert report.daily[-1].first_try_accuracy == 50

    trends = {trend.skill: trend for trend in report.skill_trends}
    assert len(trends) == len(CT_SKILLS)
    assert trends[Skill.INFER].accuracy == 100
    assert trends[Skill.INFER].delta_vs_last_week == 100
    assert trends[Skill.EVALUATE].attempts == 1
    assert trends[Skill.EVALUATE].delta_vs_last_week == 0

    assert report.focus_skill is Skill.EVALUATE
    assert report.wins == [
        "Mastery accuracy 100% this week",
        "Strategy recoveries: 2",
        "Current streak: 2 days",
    ]
    assert report.coach_notes[0].startswith("Celebrate Infer")
    assert report.coach_notes[1].startswith("Focus next on Evaluate")


def test_weekly_report_for_empty_history():
    report = weekly_report("learner-1", [], now=NOW)

    assert report.rounds_this_week == 0
    assert report.first_try_accuracy == 0
    assert report.mastery_accuracy == 0
    assert report.wins == ["Consistency is building. Keep short daily sessions."]
    assert report.focus_skill is Skill.INTERPRET


def test_mastery_accuracy_never_exceeds_one_hundred():
    # A recovery whose first attempt fell before the window.
    rows = [_attempt(Skill.INFER, True), _attempt(Skill.EVALUATE, True, attempt=2)]
    summary = summarize_window(rows)
    assert summary.rounds == 1
    assert summary.mastery_accuracy == 100


def test_progress_summary_counts_every_attempt():
    rows = [
        _attempt(Skill.INFER, True, when=NOW - timedelta(days=2)),
        _attempt(Skill.INFER, False, when=NOW - timedelta(days=1)),
        _attempt(Skill.INFER, True, attempt=2, when=NOW - timedelta(days=1)),
        _attempt(Skill.ANALYZE, False, when=NOW),
        _attempt(Skill.ANALYZE, True, attempt=2, when=NOW),
    ]
    states = [SkillState(Skill.INFER, level=2, xp=120, mastery_score=0.7)]

    summary = progress_summary(rows, states, streak=3, badge_keys=["streak_3"])

    assert summary["completions"] == 5
    assert summary["accuracy"] == 60
    by_skill = {row["skill"]: row for row in summary["by_skill"]}
    assert by_skill["infer"] == {"skill": "infer", "accuracy": 67, "attempts": 3}
    assert by_skill["explain"]["attempts"] == 0
    assert [day["date"] for day in summary["growth"]] == ["2026-03-09", "2026-03-10", "2026-03-11"]
    assert summary["wins"] == ["Current streak: 3", "Badges earned: 1"]
    assert summary["completion_badges"] == []
    assert summary["xp_total"] == 120


def test_progress_summary_growth_keeps_last_fourteen_days():
    rows = [_attempt(Skill.INFER, True, when=NOW - timedelta(days=offset)) for offset in range(20)]
    summary = progress_summary(rows, [])

    assert len(summary["growth"]) == 14
    assert summary["growth"][-1]["date"] == "2026-03-11"
    assert summary["completion_badges"] == [10]


def test_skill_tree_lists_every_track():
    states = [SkillState(Skill.EVALUATE, level=2, xp=150, mastery_score=0.6)]
    tree = skill_tree(states, {Skill.EVALUATE: 3})

    tracks = {track["skill"]: track for track in tree["tracks"]}
    assert list(tracks) == [skill.value for skill in CT_SKILLS]
    assert tracks["evaluate"]["due_reviews"] == 3
    assert tracks["evaluate"]["xp_to_next"] == 50
    assert tracks["interpret"]["xp_to_next"] == 80
    assert tracks["self_regulate"]["label"] == "Self-Regulate"
    assert tree["total_xp"] == 150


@pytest.mark.parametrize(
    "current, last_played, expected",
    [
        (0, None, 1),
        (4, date(2026, 3, 11), 4),
        (0, date(2026, 3, 11), 1),
        (4, date(2026, 3, 10), 5),
        (9, date(2026, 3, 8), 1),
    ],
)
def test_update_streak(current, last_played, expected):
    assert update_streak(current, last_played, date(2026, 3, 11)) == expected


def test_percent_rounds_halves_up():
    assert percent(1, 8) == 13
    assert percent(2, 3) == 67
    assert percent(5, 0) == 0


def test_utc_day_converts_offsets():
    plus_five = timezone(timedelta(hours=5))
    assert utc_day(datetime(2026, 3, 11, 1, 0, tzinfo=plus_five)) == date(2026, 3, 10)
