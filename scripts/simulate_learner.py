"""Simulate daily sessions for a synthetic learner and print the resulting skill states."""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from engines.simulation import LearnerSimulation, Persona, rounds_by_mode


def _probability(value: str) -> float:
    parsed = float(value)
    if not 0.0 <= parsed <= 1.0:
        raise argparse.ArgumentTypeError(f"expected a value between 0 and 1, got {value}")
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--days", type=int, default=14, help="Number of daily sessions (default: 14)")
    parser.add_argument("--accuracy", type=_probability, default=0.75, help="First-attempt accuracy")
    parser.add_argument("--retry-accuracy", type=_probability, default=0.6, help="Second-attempt accuracy")
    parser.add_argument("--main-rounds", type=int, default=1, choices=range(1, 5), help="Main rounds per session")
    parser.add_argument("--no-boss", action="store_true", help="Disable the boss round")
    parser.add_argument("--boss-intensity", type=int, default=3, choices=range(1, 6), help="Boss intensity 1-5")
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible runs")
    parser.add_argument("--output", type=str, default=None, help="Optional path to write the JSON report")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    if args.days < 1:
        print("--days must be at least 1", file=sys.stderr)
        return 1

    persona = Persona(name="synthetic", accuracy=args.accuracy, retry_accuracy=args.retry_accuracy)
    simulation = LearnerSimulation(
        persona,
        main_rounds=args.main_rounds,
        boss_enabled=not args.no_boss,
        boss_intensity=args.boss_intensity,
        random_seed=args.seed,
    )
    results = simulation.run(days=args.days)

    report = {
        "days": args.days,
        "metrics": asdict(simulation.summarise(results)),
        "rounds_by_mode": rounds_by_mode(results),
        "skill_states": [
            {
                "skill": state.skill.value,
                "level": state.level,
                "xp": state.xp,
                "mastery_score": round(state.mastery_score, 4),
            }
            for state in simulation.skill_states
        ],
    }
    payload = json.dumps(report, indent=2)
    if args.output:
        Path(args.output).write_text(payload + "\n", encoding="utf-8")
    print(payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
