"""Content pack loading, playability checks and plan-driven activity selection."""
from __future__ import annotations

import json
import os
import random
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import db
from skills import Skill, difficulty_to_level, normalize_skill

CANDIDATE_POOL_SIZE = 8

PLACEHOLDER_PATTERNS = (
    "red blue red blue next car",
    "red blue red blue next sleep",
    "option a for",
    "option b for",
    "option c for",
    "option d for",
)


class ActivityValidationError(ValueError):
    """Raised when an activity from the JSON content pack fails validation."""


def _correct_index(content: Dict[str, Any]) -> int:
    for key in ("correctIndex", "correctChoiceIndex"):
        value = content.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return -1


def is_placeholder_choice(choice: str) -> bool:
    normalized = str(choice).strip().lower()
    if not normalized:
        return True
    return any(token in normalized for token in PLACEHOLDER_PATTERNS)


def is_playable(activity: Dict[str, Any]) -> bool:
    """True when the activity can be shown: prompt, real choices, valid answer."""

    content = activity.get("content") or {}
    if not isinstance(content, dict):
        return False

    prompt = content.get("prompt") or content.get("question")
    choices = content.get("choices")
    if not prompt or not isinstance(choices, list) or len(choices) < 2:
        return False

    correct = _correct_index(content)
    if correct < 0 or correct >= len(choices):
        return False

    for choice in choices:
        if not isinstance(choice, str) or is_placeholder_choice(choice):
            return False
    return True


def activity_skill(activity: Dict[str, Any]) -> Skill:
    content = activity.get("content") or {}
    if content.get("ct_skill"):
        return normalize_skill(content["ct_skill"])
    return normalize_skill(activity.get("skill"))


def correct_choice_index(activity: Dict[str, Any]) -> int:
    return _correct_index(activity.get("content") or {})


class ActivityBank:
    """Holds the playable activities of a content pack and picks one per plan."""

    REQUIRED_FIELDS = ("id", "age_band", "type", "skill", "content")

    def __init__(self, path: str | Path, *, auto_sync: bool = True) -> None:
        self.path = Path(path)
        self._activities: List[Dict[str, Any]] = []
        self.rejected: List[str] = []
        self._load(auto_sync=auto_sync)

    def _load(self, *, auto_sync: bool) -> None:
        if not self.path.exists():
            raise FileNotFoundError(f"Content pack not found: {self.path}")

        with self.path.open("r", encoding="utf-8") as fh:
            raw = json.load(fh)

        if not isinstance(raw, list):
            raise ActivityValidationError("Content pack root must be a JSON list")

        activities: List[Dict[str, Any]] = []
        seen_ids: set[str] = set()
        for entry in raw:
            if not isinstance(entry, dict):
                raise ActivityValidationError("Each activity must be an object")

            for field in self.REQUIRED_FIELDS:
                if field not in entry or entry[field] in (None, ""):
                    raise ActivityValidationError(f"Activity {entry.get('id')} missing required field '{field}'")

            activity_id = str(entry["id"])
            if activity_id in seen_ids:
                raise ActivityValidationError(f"Duplicate activity id detected: {activity_id}")
            seen_ids.add(activity_id)

            if not isinstance(entry["content"], dict):
                raise ActivityValidationError(f"Activity {activity_id} content must be an object")

            activity = {
                "id": activity_id,
                "age_band": str(entry["age_band"]),
                "type": str(entry["type"]),
                "skill": str(entry["skill"]),
                "difficulty": entry.get("difficulty"),
                "title": str(entry.get("title") or ""),
                "content": entry["content"],
            }
            if is_playable(activity):
                activities.append(activity)
            else:
                self.rejected.append(activity_id)

        self._activities = activities

        if auto_sync and activities:
            db.upsert_activities(activities)

    @property
    def activities(self) -> List[Dict[str, Any]]:
        return list(self._activities)

    def get(self, activity_id: str) -> Optional[Dict[str, Any]]:
        for activity in self._activities:
            if activity["id"] == activity_id:
                return activity
        return None

    def for_age_band(self, age_band: Optional[str]) -> List[Dict[str, Any]]:
        if not age_band:
            return self.activities
        return [activity for activity in self._activities if activity["age_band"] == age_band]

    def select(
        self,
        *,
        skill: Skill,
        target_difficulty: int,
        age_band: Optional[str] = None,
        exclude: Optional[Iterable[str]] = None,
        rng: Optional[random.Random] = None,
    ) -> Optional[Dict[str, Any]]:
        """Pick a fresh activity for a plan.

        Excluded ids are skipped and the plan's skill is preferred; among the
        remaining items one of the closest few by difficulty is drawn at
        random. Falls back to any playable item of the age band.
        """

        picker = rng or random
        pool = self.for_age_band(age_band)
        if not pool:
            return None

        exclusion = set(exclude or ())
        available = [activity for activity in pool if activity["id"] not in exclusion]
        matching = [activity for activity in available if activity_skill(activity) == skill]
        candidates = matching or available
        if not candidates:
            return picker.choice(pool)

        ranked = sorted(
            candidates,
            key=lambda activity: abs(difficulty_to_level(activity.get("difficulty")) - target_difficulty),
        )
        return picker.choice(ranked[:CANDIDATE_POOL_SIZE])

    def resolve_ids(self, activity_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Activities for ``activity_ids`` in the given order, unknown ids dropped."""

        by_id = {activity["id"]: activity for activity in self._activities}
        return [by_id[activity_id] for activity_id in activity_ids if activity_id in by_id]

    @classmethod
    def from_activities(cls, activities: Sequence[Dict[str, Any]]) -> "ActivityBank":
        bank = cls.__new__(cls)
        bank.path = Path("<in-memory>")
        bank._activities = [activity for activity in activities if is_playable(activity)]
        bank.rejected = [str(activity.get("id")) for activity in activities if not is_playable(activity)]
        return bank


_DEFAULT_BANK: Optional[ActivityBank] = None


def get_default_bank() -> ActivityBank:
    global _DEFAULT_BANK
    if _DEFAULT_BANK is None:
        _DEFAULT_BANK = ActivityBank(os.getenv("CONTENT_PACK_PATH", "content/starter_pack.json"))
    return _DEFAULT_BANK


def set_default_bank(bank: Optional[ActivityBank]) -> None:
    global _DEFAULT_BANK
    _DEFAULT_BANK = bank
