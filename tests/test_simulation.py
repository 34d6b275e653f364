import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engines.simulation import LearnerSimulation, Persona, compare_personas, rounds_by_mode
from scripts import simulate_learner


def _always(result):
    return lambda rng, persona, state, plan, attempt_number: result


def test_perfect_learner_earns_reviews_and_xp():
    simulation = LearnerSimulation(Persona("perfect", accuracy=1.0), attempt_model=_always(True))
    results = simulation.run(days=7)

    assert len(results) == 21
    metrics = simulation.summarise(results)
    assert metrics.first_try_rate == 1.0
    assert metrics.recovery_rate == 0.0
    assert metrics.review_share > 0
    assert metrics.total_xp == sum(row.xp_awarded for row in results)
    assert all(row.attempt_number == 1 for row in results)
    assert rounds_by_mode(results)["boss"] == 7


def test_struggling_learner_uses_every_retry():
    simulation = LearnerSimulation(
        Persona("struggling", accuracy=0.0), boss_enabled=False, main_rounds=2, attempt_model=_always(False)
    )
    results = simulation.run(days=2)

    assert len(results) == 6
    assert all(row.attempt_number == 2 and not row.correct for row in results)
    assert "boss" not in rounds_by_mode(results)
    metrics = simulation.summarise(results)
    assert metrics.first_try_rate == 0.0
    assert metrics.mean_level == 1


def test_seeded_runs_are_reproducible():
    first = LearnerSimulation(Persona("a", accuracy=0.7), random_seed=42).run(days=5)
    second = LearnerSimulation(Persona("a", accuracy=0.7), random_seed=42).run(days=5)
    assert first == second


def test_compare_personas_reports_each_profile():
    metrics = compare_personas(
        [Persona("steady", accuracy=0.9), Persona("shaky", accuracy=0.3)],
        days=4,
        random_seed=1,
        main_rounds=2,
    )
    assert [row.persona for row in metrics] == ["steady", "shaky"]
    assert all(row.rounds == 16 for row in metrics)
    assert all(1 <= level <= 5 for row in metrics for level in row.levels.values())


def test_cli_prints_report(tmp_path, capsys):
    output = tmp_path / "sim.json"
    exit_code = simulate_learner.main(["--days", "2", "--seed", "4", "--no-boss", "--output", str(output)])

    assert exit_code == 0
    report = json.loads(capsys.readouterr().out)
    assert report == json.loads(output.read_text(encoding="utf-8"))
    assert report["days"] == 2
    assert sum(report["rounds_by_mode"].values()) == 4
    assert "boss" not in report["rounds_by_mode"]
    assert len(report["skill_states"]) == 6


def test_cli_rejects_zero_days(capsys):
    assert simulate_learner.main(["--days", "0"]) == 1
    assert "--days" in capsys.readouterr().err
