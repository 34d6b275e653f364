"""Offline content pack validator: playability, skill coverage and activity types."""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, List, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from activity_bank import ActivityBank, ActivityValidationError, activity_skill
from skills import CT_SKILLS

REQUIRED_TYPES: tuple[str, ...] = ("warmup", "main", "boss", "review")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--pack",
        type=str,
        default=str(ROOT / "content" / "starter_pack.json"),
        help="Path to the content pack JSON file (default: content/starter_pack.json)",
    )
    parser.add_argument(
        "--age-band",
        type=str,
        default=None,
        help="Only check skill coverage for this age band",
    )
    parser.add_argument(
        "--allow-unplayable",
        action="store_true",
        help="Report unplayable activities without failing",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Optional path to write the JSON report",
    )
    return parser


def _write_output(report: dict, output_path: str | None) -> None:
    payload = json.dumps(report, indent=2, ensure_ascii=False)
    if output_path:
        Path(output_path).write_text(payload + "\n", encoding="utf-8")
    print(payload)


def build_report(bank: ActivityBank, age_band: str | None = None) -> Dict[str, Any]:
    activities = bank.for_age_band(age_band)
    skills = Counter(activity_skill(activity).value for activity in activities)
    types = Counter(activity["type"] for activity in activities)
    return {
        "pack": str(bank.path),
        "age_band": age_band,
        "playable": len(activities),
        "unplayable": list(bank.rejected),
        "by_skill": {skill.value: skills.get(skill.value, 0) for skill in CT_SKILLS},
        "by_type": dict(sorted(types.items())),
        "missing_skills": [skill.value for skill in CT_SKILLS if not skills.get(skill.value)],
        "missing_types": [kind for kind in REQUIRED_TYPES if not types.get(kind)],
    }


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        bank = ActivityBank(args.pack, auto_sync=False)
    except (FileNotFoundError, ActivityValidationError, json.JSONDecodeError) as exc:
        print(f"Cannot load content pack: {exc}", file=sys.stderr)
        return 1

    report = build_report(bank, args.age_band)

    failures: List[str] = []
    if report["unplayable"] and not args.allow_unplayable:
        failures.append(f"Unplayable activities: {', '.join(report['unplayable'])}")
    if report["missing_skills"]:
        failures.append(f"No playable activity for skills: {', '.join(report['missing_skills'])}")
    if report["missing_types"]:
        failures.append(f"Missing activity types: {', '.join(report['missing_types'])}")

    for message in failures:
        print(message, file=sys.stderr)

    report["ok"] = not failures
    _write_output(report, args.output)
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
