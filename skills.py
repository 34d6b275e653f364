"""Fixed critical-thinking skill registry and label normalisation."""

from __future__ import annotations

import math
from enum import Enum
from typing import Dict, Tuple, Union


class Skill(str, Enum):
    """The six reasoning competencies tracked per learner."""

    INTERPRET = "interpret"
    ANALYZE = "analyze"
    EVALUATE = "evaluate"
    INFER = "infer"
    EXPLAIN = "explain"
    SELF_REGULATE = "self_regulate"


CT_SKILLS: Tuple[Skill, ...] = tuple(Skill)
DEFAULT_SKILL = Skill.INTERPRET

SKILL_LABELS: Dict[Skill, str] = {
    Skill.INTERPRET: "Interpret",
    Skill.ANALYZE: "Analyze",
    Skill.EVALUATE: "Evaluate",
    Skill.INFER: "Infer",
    Skill.EXPLAIN: "Explain",
    Skill.SELF_REGULATE: "Self-Regulate",
}

SKILL_DESCRIPTIONS: Dict[Skill, str] = {
    Skill.INTERPRET: "Understand what information means and separate observation from assumption.",
    Skill.ANALYZE: "Break complex tasks into parts and detect relationships.",
    Skill.EVALUATE: "Judge evidence quality and source credibility.",
    Skill.INFER: "Draw the best conclusion from available information.",
    Skill.EXPLAIN: "Justify claims clearly with evidence.",
    Skill.SELF_REGULATE: "Monitor thinking, catch mistakes, and adjust strategy.",
}

# Labels used by older content packs.
LEGACY_SKILL_MAP: Dict[str, Skill] = {
    "observation": Skill.INTERPRET,
    "observation_vs_inference": Skill.INTERPRET,
    "classification": Skill.INTERPRET,
    "pattern": Skill.INTERPRET,
    "fair_test": Skill.ANALYZE,
    "variables": Skill.ANALYZE,
    "sequencing": Skill.ANALYZE,
    "tools": Skill.ANALYZE,
    "evidence": Skill.EVALUATE,
    "sample_size": Skill.EVALUATE,
    "credibility": Skill.EVALUATE,
    "source_check": Skill.EVALUATE,
    "source-check": Skill.EVALUATE,
    "data_analysis": Skill.EVALUATE,
    "cause_effect": Skill.INFER,
    "cause-effect": Skill.INFER,
    "prediction": Skill.INFER,
    "cer": Skill.EXPLAIN,
    "self_regulation": Skill.SELF_REGULATE,
    "elimination": Skill.SELF_REGULATE,
    "engineering_design": Skill.SELF_REGULATE,
}

_CANONICAL: Dict[str, Skill] = {skill.value: skill for skill in CT_SKILLS}


def normalize_skill(label: Union[str, Skill, None]) -> Skill:
    """Map any external skill label onto one of the six canonical skills.

    The mapping is total: unknown or empty labels fall back to
    :data:`DEFAULT_SKILL`.
    """

    if isinstance(label, Skill):
        return label
    if label is None:
        return DEFAULT_SKILL
    key = "_".join(str(label).strip().lower().split())
    if key in _CANONICAL:
        return _CANONICAL[key]
    return LEGACY_SKILL_MAP.get(key, DEFAULT_SKILL)


def difficulty_to_level(value: Union[str, int, float, None]) -> int:
    """Translate an encoded activity difficulty into a 1-5 level."""

    if isinstance(value, bool) or value is None:
        return 2
    if isinstance(value, (int, float)):
        return max(1, min(5, round_half_up(value)))

    key = str(value).strip().lower()
    if key == "easy":
        return 1
    if key == "medium":
        return 3
    if key == "hard":
        return 5
    digits = ""
    for char in key.lstrip("+-"):
        if not char.isdigit():
            break
        digits += char
    if digits:
        parsed = int(digits)
        if key.startswith("-"):
            parsed = -parsed
        return max(1, min(5, parsed))
    return 2


def level_to_difficulty(level: int) -> str:
    """Return the coarse difficulty label used by content authors."""

    if level <= 2:
        return "easy"
    if level <= 4:
        return "medium"
    return "hard"


def round_half_up(value: float) -> int:
    """Round halves towards positive infinity (2.5 -> 3, -2.5 -> -2)."""

    return int(math.floor(float(value) + 0.5))
