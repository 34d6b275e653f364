"""Learner-facing feedback and retry hints for a submitted attempt."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from skills import Skill, normalize_skill

YOUNG_AGE_BANDS = frozenset({"4-6", "7-9"})
HINT_MODES = ("guided", "minimal", "off")

MINIMAL_HINT = "Hint: focus on direct evidence and remove weak options."
OFF_HINT = "Hint: use your strategy tip and compare evidence carefully."


@dataclass
class FeedbackDetail:
    title: str
    message: str
    tip: str
    celebrate: Optional[str] = None
    hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


class FeedbackEngine:
    def __init__(self) -> None:
        self.celebrate_by_skill: Dict[Skill, str] = {
            Skill.INTERPRET: "You separated what you observed from what you assumed.",
            Skill.ANALYZE: "You broke the problem into clear parts before choosing.",
            Skill.EVALUATE: "You checked evidence quality instead of guessing.",
            Skill.INFER: "You made the strongest conclusion from available clues.",
            Skill.EXPLAIN: "You connected the answer to evidence and reasoning.",
            Skill.SELF_REGULATE: "You adjusted strategy when the first attempt did not work.",
        }
        self.hints_by_skill: Dict[Skill, Dict[str, str]] = {
            Skill.INTERPRET: {
                "short": "Hint: pick what you can directly SEE or MEASURE.",
                "long": (
                    "Hint: separate direct observation from interpretation. "
                    "Choose the option that can be verified immediately."
                ),
            },
            Skill.ANALYZE: {
                "short": "Hint: keep only one variable changing.",
                "long": "Hint: break the task into steps and check whether each option keeps a fair comparison.",
            },
            Skill.EVALUATE: {
                "short": "Hint: choose the strongest evidence, not the loudest claim.",
                "long": "Hint: ask which option uses reliable evidence, controls, and direct support for the claim.",
            },
            Skill.INFER: {
                "short": "Hint: follow the clues to the most likely result.",
                "long": "Hint: infer only what the provided evidence supports; avoid adding facts that were not given.",
            },
            Skill.EXPLAIN: {
                "short": "Hint: match claim + evidence together.",
                "long": "Hint: pick the answer that best connects the claim with evidence and a clear reason.",
            },
            Skill.SELF_REGULATE: {
                "short": "Hint: pause and check what might be missing.",
                "long": (
                    "Hint: review your first approach, identify missing information, "
                    "and select the option that corrects that gap."
                ),
            },
        }

    def generate_feedback(
        self,
        *,
        age_band: str,
        skill: Skill | str,
        is_correct: bool,
        correct_choice: str,
        chosen_choice: str,
        explanation: str,
        strategy_tip: str,
        attempt_number: int,
        hint_mode: str = "guided",
    ) -> FeedbackDetail:
        """Build the feedback card shown after an attempt.

        Correct answers celebrate the skill (or the recovery on a retry); a
        wrong first attempt carries a hint for the retry; a wrong second
        attempt walks through the best answer.
        """

        skill = normalize_skill(skill)
        short = age_band in YOUNG_AGE_BANDS

        if is_correct:
            recovered = attempt_number == 2
            return FeedbackDetail(
                title="Strong move" if short else "Correct and strategic",
                message=explanation if short else f'You chose "{chosen_choice}." {explanation}',
                tip=strategy_tip,
                celebrate=(
                    "You improved after feedback and adjusted strategy."
                    if recovered
                    else self.celebrate_by_skill[skill]
                ),
            )

        if attempt_number == 1:
            return FeedbackDetail(
                title="Not yet" if short else "Close, retry with strategy",
                message=(
                    "That option does not fit best yet."
                    if short
                    else f'"{chosen_choice}" is not the strongest option for this task.'
                ),
                tip=strategy_tip,
                hint=self._hint(skill, short, hint_mode),
            )

        message = f'Best answer: "{correct_choice}." {explanation}'
        if not short:
            message = f"{message} Use this strategy next: {strategy_tip}"
        return FeedbackDetail(
            title="Let's lock it in" if short else "Best reasoning walkthrough",
            message=message,
            tip=strategy_tip,
        )

    def _hint(self, skill: Skill, short: bool, hint_mode: str) -> str:
        if hint_mode == "minimal":
            return MINIMAL_HINT
        if hint_mode == "off":
            return OFF_HINT
        return self.hints_by_skill[skill]["short" if short else "long"]
