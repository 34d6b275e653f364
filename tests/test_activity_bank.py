import json
import random
from pathlib import Path

import pytest

import db
from activity_bank import (
    ActivityBank,
    ActivityValidationError,
    activity_skill,
    correct_choice_index,
    is_placeholder_choice,
    is_playable,
)
from conftest import make_activity
from skills import Skill


@pytest.fixture
def pack_path(tmp_path: Path, sample_activities) -> Path:
    activities = list(sample_activities)
    activities.append(make_activity("placeholder-1", "infer", 2, choices=["Option A for x", "Option B for x"]))
    activities.append(make_activity("young-1", "infer", 1, age_band="7-9"))
    path = tmp_path / "pack.json"
    path.write_text(json.dumps(activities), encoding="utf-8")
    return path


def test_load_keeps_playable_and_rejects_placeholders(pack_path):
    bank = ActivityBank(pack_path, auto_sync=False)

    assert len(bank.activities) == 31
    assert bank.rejected == ["placeholder-1"]
    assert bank.get("infer-3")["skill"] == "infer"
    assert bank.get("placeholder-1") is None


def test_auto_sync_writes_activities(temp_db, pack_path):
    ActivityBank(pack_path)

    stored = db.list_activities(age_band="7-9")
    assert [activity["id"] for activity in stored] == ["young-1"]
    assert stored[0]["content"]["correctIndex"] == 1


def test_missing_required_field(tmp_path):
    path = tmp_path / "pack.json"
    broken = make_activity("a-1", "infer", 1)
    del broken["skill"]
    path.write_text(json.dumps([broken]), encoding="utf-8")

    with pytest.raises(ActivityValidationError, match="missing required field 'skill'"):
        ActivityBank(path, auto_sync=False)


def test_duplicate_ids(tmp_path):
    path = tmp_path / "pack.json"
    path.write_text(json.dumps([make_activity("a-1", "infer", 1), make_activity("a-1", "infer", 2)]), encoding="utf-8")

    with pytest.raises(ActivityValidationError, match="Duplicate activity id"):
        ActivityBank(path, auto_sync=False)


def test_root_must_be_a_list(tmp_path):
    path = tmp_path / "pack.json"
    path.write_text(json.dumps({"id": "a-1"}), encoding="utf-8")

    with pytest.raises(ActivityValidationError):
        ActivityBank(path, auto_sync=False)


def test_missing_pack(tmp_path):
    with pytest.raises(FileNotFoundError):
        ActivityBank(tmp_path / "nope.json", auto_sync=False)


@pytest.mark.parametrize(
    "content, playable",
    [
        ({"prompt": "Q", "choices": ["yes", "no"], "correctIndex": 0}, True),
        ({"question": "Q", "choices": ["yes", "no"], "correctChoiceIndex": 1}, True),
        ({"prompt": "", "choices": ["yes", "no"], "correctIndex": 0}, False),
        ({"prompt": "Q", "choices": ["yes"], "correctIndex": 0}, False),
        ({"prompt": "Q", "choices": ["yes", "no"], "correctIndex": 2}, False),
        ({"prompt": "Q", "choices": ["yes", "no"], "correctIndex": True}, False),
        ({"prompt": "Q", "choices": ["yes", "   "], "correctIndex": 0}, False),
        ({"prompt": "Q", "choices": ["Red blue red blue next car", "no"], "correctIndex": 1}, False),
    ],
)
def test_is_playable(content, playable):
    assert is_playable({"id": "x", "content": content}) is playable


def test_placeholder_detection_is_case_insensitive():
    assert is_placeholder_choice("OPTION C FOR the bridge")
    assert not is_placeholder_choice("Option three")


def test_activity_skill_prefers_ct_skill():
    activity = make_activity("a-1", "cause_effect", 2, ct_skill="explain")
    assert activity_skill(activity) is Skill.EXPLAIN
    assert activity_skill(make_activity("a-2", "cause_effect", 2)) is Skill.INFER
    assert correct_choice_index(activity) == 1


def test_select_prefers_skill_and_close_difficulty(sample_activities):
    bank = ActivityBank.from_activities(sample_activities)
    rng = random.Random(3)

    for _ in range(20):
        picked = bank.select(skill=Skill.ANALYZE, target_difficulty=2, rng=rng)
        assert activity_skill(picked) is Skill.ANALYZE


def test_select_returns_closest_difficulty_when_pool_is_small():
    activities = [make_activity("near", "infer", 3), make_activity("far", "infer", 5)]
    for index in range(8):
        activities.append(make_activity(f"other-{index}", "analyze", 1))
    bank = ActivityBank.from_activities(activities)

    ranked = bank.select(skill=Skill.INFER, target_difficulty=3, exclude={"far"}, rng=random.Random(0))
    assert ranked["id"] == "near"


def test_select_falls_back_to_other_skills_then_excluded_items():
    bank = ActivityBank.from_activities([make_activity("only", "infer", 2)])

    assert bank.select(skill=Skill.EXPLAIN, target_difficulty=2)["id"] == "only"
    assert bank.select(skill=Skill.INFER, target_difficulty=2, exclude=["only"])["id"] == "only"
    assert bank.select(skill=Skill.INFER, target_difficulty=2, age_band="4-6") is None


def test_for_age_band_and_resolve_ids(sample_activities):
    activities = sample_activities + [make_activity("young-1", "infer", 1, age_band="7-9")]
    bank = ActivityBank.from_activities(activities)

    assert [activity["id"] for activity in bank.for_age_band("7-9")] == ["young-1"]
    assert len(bank.for_age_band(None)) == 31
    assert [activity["id"] for activity in bank.resolve_ids(["infer-2", "missing", "analyze-1"])] == [
        "infer-2",
        "analyze-1",
    ]


def test_starter_pack_is_fully_playable():
    pack = Path(__file__).resolve().parents[1] / "content" / "starter_pack.json"
    bank = ActivityBank(pack, auto_sync=False)

    assert bank.rejected == []
    skills = {activity_skill(activity) for activity in bank.for_age_band("10-13")}
    assert skills == set(Skill)
