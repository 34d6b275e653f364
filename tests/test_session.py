import unittest

import pytest

from engines.session import (
    RECAP,
    RoundPhase,
    RoundState,
    RoundStateError,
    Session,
    build_phases,
)
from skills import Skill


@pytest.mark.parametrize(
    "main_rounds, boss, expected",
    [
        (1, True, ("warmup", "main", "boss")),
        (3, False, ("warmup", "main", "main", "main")),
        (0, True, ("warmup", "main", "boss")),
        (9, True, ("warmup", "main", "main", "main", "main", "boss")),
    ],
)
def test_build_phases(main_rounds, boss, expected):
    assert build_phases(main_rounds, boss) == expected


class RoundStateTests(unittest.TestCase):
    def test_correct_first_attempt_finalizes(self):
        state = RoundState(activity_id="a1")
        self.assertTrue(state.submit(True))
        self.assertEqual(state.phase, RoundPhase.FINALIZED)
        self.assertEqual(state.attempt_number, 1)
        self.assertFalse(state.used_hint)
        self.assertTrue(state.final_correct)

    def test_wrong_first_attempt_waits_for_retry_with_hint(self):
        state = RoundState(activity_id="a1")
        self.assertFalse(state.submit(False))
        self.assertEqual(state.phase, RoundPhase.AWAITING_RETRY)
        self.assertEqual(state.attempt_number, 2)
        self.assertTrue(state.used_hint)
        self.assertIsNone(state.final_correct)

    def test_retry_finalizes_either_way(self):
        for outcome in (True, False):
            state = RoundState(activity_id="a1")
            state.submit(False)
            self.assertTrue(state.submit(outcome))
            self.assertTrue(state.is_finalized)
            self.assertEqual(state.final_correct, outcome)
            self.assertEqual(state.attempt_number, 2)

    def test_no_third_attempt(self):
        state = RoundState(activity_id="a1")
        state.submit(False)
        state.submit(False)
        with self.assertRaises(RoundStateError):
            state.submit(True)


class SessionTests(unittest.TestCase):
    def test_phases_advance_to_recap_and_stop(self):
        session = Session.from_settings("learner-1", main_rounds=2, boss_enabled=True)
        steps = [session.current_step]
        for activity_id in ("w", "m1", "m2", "b"):
            steps.append(session.advance(activity_id))

        self.assertEqual(steps, ["warmup", "main", "main", "boss", RECAP])
        self.assertTrue(session.is_recap)
        self.assertEqual(session.advance(), RECAP)
        self.assertEqual(session.used_activity_ids, ["w", "m1", "m2", "b"])

    def test_restart_clears_progress(self):
        session = Session.from_settings("learner-1", main_rounds=1, boss_enabled=False)
        session.record_outcome(
            skill=Skill.INFER, is_correct=True, attempt_number=1, used_hint=False, xp_awarded=20, strategy_xp=0
        )
        session.advance("w")
        session.restart()

        self.assertEqual(session.current_step, "warmup")
        self.assertEqual(session.used_activity_ids, [])
        self.assertEqual(session.stats.xp, 0)
        self.assertEqual(session.stats.rounds, 0)

    def test_record_outcome_tallies(self):
        session = Session.from_settings("learner-1", main_rounds=2, boss_enabled=True)
        session.record_outcome(
            skill=Skill.INTERPRET, is_correct=True, attempt_number=1, used_hint=False, xp_awarded=20, strategy_xp=0
        )
        session.record_outcome(
            skill=Skill.EVALUATE,
            is_correct=True,
            attempt_number=2,
            used_hint=True,
            xp_awarded=35,
            strategy_xp=13,
            leveled_up=True,
            new_level=2,
            streak=4,
            new_badges=["strategy_retry_recovery"],
        )
        session.record_outcome(
            skill=Skill.EVALUATE, is_correct=False, attempt_number=2, used_hint=True, xp_awarded=23, strategy_xp=5
        )

        stats = session.stats
        self.assertEqual(stats.xp, 78)
        self.assertEqual(stats.strategy_xp, 18)
        self.assertEqual(stats.rounds, 3)
        self.assertEqual(stats.correct, 2)
        self.assertEqual(stats.first_try_correct, 1)
        self.assertEqual(stats.recoveries, 1)
        self.assertEqual(stats.hints_used, 2)
        self.assertEqual(stats.streak, 4)
        self.assertEqual(stats.badges, ["strategy_retry_recovery"])
        self.assertEqual(stats.level_ups, [(Skill.EVALUATE, 2)])
        self.assertEqual(session.accuracy, 67)
        self.assertEqual(session.first_try_rate, 33)
        self.assertEqual(session.strongest_skill(), Skill.INTERPRET)
        self.assertEqual(session.focus_skill(), Skill.EVALUATE)

    def test_empty_session_has_no_rates(self):
        session = Session.from_settings("learner-1", main_rounds=1, boss_enabled=True)
        self.assertEqual(session.accuracy, 0)
        self.assertIsNone(session.strongest_skill())
        self.assertIsNone(session.focus_skill())
