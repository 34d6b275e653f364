import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Fresh connection pool for each test
    monkeypatch.setattr(db, "_pool", db.SQLiteConnectionPool(str(db_path), max_connections=10))
    db.init()
    yield str(db_path)
    db._pool.close_all()


def make_activity(activity_id, skill, difficulty, *, kind="main", age_band="10-13", correct=1, **content):
    """Small playable activity; the correct choice is ``choices[correct]``."""
    body = {
        "prompt": f"Prompt for {activity_id}",
        "choices": ["First idea", "Best supported answer", "Third idea"],
        "correctIndex": correct,
        "explanation": "It matches the evidence.",
        "tip": "Compare evidence carefully.",
    }
    body.update(content)
    return {
        "id": activity_id,
        "age_band": age_band,
        "type": kind,
        "skill": skill,
        "difficulty": difficulty,
        "title": activity_id.replace("-", " ").title(),
        "content": body,
    }


@pytest.fixture
def sample_activities():
    activities = []
    for skill in ("interpret", "analyze", "evaluate", "infer", "explain", "self_regulate"):
        for level in (1, 2, 3, 4, 5):
            activities.append(make_activity(f"{skill}-{level}", skill, level))
    return activities


@pytest.fixture
def fixed_now():
    return datetime(2026, 3, 11, 15, 30, tzinfo=timezone.utc)
