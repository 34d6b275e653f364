import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from db_pool import SQLiteConnectionPool
from env_validation import get_env_bool
from skills import CT_SKILLS

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

# Optional subsystems and the environment switch that turns each one off.
_OPTIONAL_TABLES: Dict[str, Optional[str]] = {
    "review_queue": "REVIEW_QUEUE_ENABLED",
    "badges": "BADGES_ENABLED",
    "streaks": None,
    "adaptive_settings": None,
}


class StorageUnavailableError(RuntimeError):
    """Raised when an optional table is missing or switched off."""


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


@contextmanager
def _optional(table: str) -> Iterator[None]:
    flag = _OPTIONAL_TABLES.get(table)
    if flag and not get_env_bool(flag, True):
        raise StorageUnavailableError(f"{table} is disabled ({flag})")
    try:
        yield
    except sqlite3.OperationalError as exc:
        if "no such table" in str(exc):
            raise StorageUnavailableError(f"{table} is unavailable: {exc}") from exc
        raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: Optional[datetime]) -> str:
    if value is None:
        return _now_iso()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> datetime:
    """Parse a stored timestamp into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value or "").strip()
    if not text:
        return datetime.now(timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = datetime.strptime(text, "%Y-%m-%d %H:%M:%S")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False)


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learners (
              learner_id  TEXT PRIMARY KEY,
              age_band    TEXT NOT NULL DEFAULT '10-13',
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS adaptive_settings (
              learner_id      TEXT PRIMARY KEY,
              main_rounds     INTEGER NOT NULL DEFAULT 1,
              boss_enabled    INTEGER NOT NULL DEFAULT 1,
              boss_intensity  INTEGER NOT NULL DEFAULT 3,
              hint_mode       TEXT NOT NULL DEFAULT 'guided',
              daily_goal      INTEGER NOT NULL DEFAULT 3,
              updated_at      TEXT NOT NULL,
              FOREIGN KEY(learner_id) REFERENCES learners(learner_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS skill_state (
              learner_id     TEXT NOT NULL,
              skill          TEXT NOT NULL,
              level          INTEGER NOT NULL DEFAULT 1 CHECK(level BETWEEN 1 AND 5),
              xp             INTEGER NOT NULL DEFAULT 0 CHECK(xp >= 0),
              mastery_score  REAL NOT NULL DEFAULT 0.0,
              updated_at     TEXT NOT NULL,
              PRIMARY KEY (learner_id, skill),
              FOREIGN KEY(learner_id) REFERENCES learners(learner_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS attempts (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id        TEXT NOT NULL,
              activity_id       TEXT NOT NULL,
              choice_index      INTEGER NOT NULL,
              is_correct        INTEGER NOT NULL,
              attempt_number    INTEGER NOT NULL DEFAULT 1,
              response_time_ms  INTEGER,
              session_mode      TEXT NOT NULL,
              skill             TEXT NOT NULL,
              used_hint         INTEGER NOT NULL DEFAULT 0,
              created_at        TEXT NOT NULL,
              FOREIGN KEY(learner_id) REFERENCES learners(learner_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_attempts_learner ON attempts(learner_id, created_at);

            CREATE TABLE IF NOT EXISTS review_queue (
              learner_id     TEXT NOT NULL,
              activity_id    TEXT NOT NULL,
              skill          TEXT NOT NULL,
              due_at         TEXT NOT NULL,
              interval_days  INTEGER NOT NULL DEFAULT 1,
              ease           REAL NOT NULL DEFAULT 2.5,
              last_result    INTEGER,
              created_at     TEXT NOT NULL,
              PRIMARY KEY (learner_id, activity_id),
              FOREIGN KEY(learner_id) REFERENCES learners(learner_id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_review_due ON review_queue(learner_id, skill, due_at);

            CREATE TABLE IF NOT EXISTS badges (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              learner_id  TEXT NOT NULL,
              badge_key   TEXT NOT NULL,
              earned_at   TEXT NOT NULL,
              UNIQUE(learner_id, badge_key),
              FOREIGN KEY(learner_id) REFERENCES learners(learner_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS streaks (
              learner_id      TEXT PRIMARY KEY,
              current_streak  INTEGER NOT NULL DEFAULT 0,
              last_played     TEXT,
              updated_at      TEXT NOT NULL,
              FOREIGN KEY(learner_id) REFERENCES learners(learner_id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS activities (
              id            TEXT PRIMARY KEY,
              age_band      TEXT NOT NULL,
              type          TEXT NOT NULL,
              skill         TEXT NOT NULL,
              difficulty    TEXT,
              title         TEXT,
              content_json  TEXT NOT NULL,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_activities_age ON activities(age_band);
            """
        )
        con.commit()


# -------------- learners --------------
def ensure_learner(learner_id: str, age_band: Optional[str] = None) -> None:
    if age_band:
        _exec(
            """
            INSERT INTO learners(learner_id, age_band) VALUES (?, ?)
            ON CONFLICT(learner_id) DO UPDATE SET age_band = excluded.age_band
            """,
            (learner_id, age_band),
        )
    else:
        _exec("INSERT OR IGNORE INTO learners(learner_id) VALUES (?)", (learner_id,))


def get_learner(learner_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT learner_id, age_band, created_at FROM learners WHERE learner_id = ?", (learner_id,))
    return dict(rows[0]) if rows else None


# -------------- skill state --------------
def ensure_skill_rows(learner_id: str) -> None:
    """Create the default row for every skill the learner does not have yet."""
    now = _now_iso()
    with _conn() as con:
        con.execute("INSERT OR IGNORE INTO learners(learner_id) VALUES (?)", (learner_id,))
        con.executemany(
            """
            INSERT OR IGNORE INTO skill_state(learner_id, skill, level, xp, mastery_score, updated_at)
            VALUES (?, ?, 1, 0, 0.0, ?)
            """,
            [(learner_id, skill.value, now) for skill in CT_SKILLS],
        )
        con.commit()


def get_skill_states(learner_id: str) -> List[Dict[str, Any]]:
    rows = _query(
        "SELECT skill, level, xp, mastery_score, updated_at FROM skill_state WHERE learner_id = ? ORDER BY skill",
        (learner_id,),
    )
    return [dict(row) for row in rows]


def get_skill_state(learner_id: str, skill: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT skill, level, xp, mastery_score, updated_at FROM skill_state WHERE learner_id = ? AND skill = ?",
        (learner_id, skill),
    )
    return dict(rows[0]) if rows else None


def upsert_skill_state(learner_id: str, skill: str, level: int, xp: int, mastery_score: float) -> None:
    _exec(
        """
        INSERT INTO skill_state(learner_id, skill, level, xp, mastery_score, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(learner_id, skill) DO UPDATE SET
          level = excluded.level,
          xp = excluded.xp,
          mastery_score = excluded.mastery_score,
          updated_at = excluded.updated_at
        """,
        (learner_id, skill, int(level), int(xp), float(mastery_score), _now_iso()),
    )


# -------------- attempts --------------
def _attempt_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["is_correct"] = bool(data["is_correct"])
    data["used_hint"] = bool(data["used_hint"])
    data["created_at"] = parse_timestamp(data["created_at"])
    return data


def record_attempt(
    learner_id: str,
    activity_id: str,
    *,
    choice_index: int,
    is_correct: bool,
    attempt_number: int,
    session_mode: str,
    skill: str,
    used_hint: bool = False,
    response_time_ms: Optional[int] = None,
    created_at: Optional[datetime] = None,
) -> int:
    cur = _exec(
        """
        INSERT INTO attempts(
          learner_id, activity_id, choice_index, is_correct, attempt_number,
          response_time_ms, session_mode, skill, used_hint, created_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            learner_id,
            activity_id,
            int(choice_index),
            1 if is_correct else 0,
            int(attempt_number),
            None if response_time_ms is None else int(response_time_ms),
            session_mode,
            skill,
            1 if used_hint else 0,
            _to_iso(created_at),
        ),
    )
    return int(cur.lastrowid)


def list_recent_attempts(learner_id: str, limit: int = 16) -> List[Dict[str, Any]]:
    """The newest ``limit`` attempts, returned oldest first."""
    rows = _query(
        """
        SELECT id, learner_id, activity_id, choice_index, is_correct, attempt_number,
               response_time_ms, session_mode, skill, used_hint, created_at
        FROM attempts WHERE learner_id = ?
        ORDER BY created_at DESC, id DESC LIMIT ?
        """,
        (learner_id, int(limit)),
    )
    return [_attempt_row(row) for row in reversed(rows)]


def list_attempts(learner_id: str, since: Optional[datetime] = None) -> List[Dict[str, Any]]:
    sql = (
        "SELECT id, learner_id, activity_id, choice_index, is_correct, attempt_number, "
        "response_time_ms, session_mode, skill, used_hint, created_at "
        "FROM attempts WHERE learner_id = ?"
    )
    params: List[Any] = [learner_id]
    if since is not None:
        sql += " AND created_at >= ?"
        params.append(_to_iso(since))
    sql += " ORDER BY created_at, id"
    return [_attempt_row(row) for row in _query(sql, params)]


# -------------- review queue --------------
def _review_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["due_at"] = parse_timestamp(data["due_at"])
    if data.get("last_result") is not None:
        data["last_result"] = bool(data["last_result"])
    return data


def get_review_entry(learner_id: str, activity_id: str) -> Optional[Dict[str, Any]]:
    with _optional("review_queue"):
        rows = _query(
            """
            SELECT activity_id, skill, due_at, interval_days, ease, last_result
            FROM review_queue WHERE learner_id = ? AND activity_id = ?
            """,
            (learner_id, activity_id),
        )
    return _review_row(rows[0]) if rows else None


def upsert_review_entry(
    learner_id: str,
    activity_id: str,
    *,
    skill: str,
    due_at: datetime,
    interval_days: int,
    ease: float,
    last_result: Optional[bool],
) -> None:
    with _optional("review_queue"):
        _exec(
            """
            INSERT INTO review_queue(learner_id, activity_id, skill, due_at, interval_days, ease, last_result, created_at)
            VALUES (?,?,?,?,?,?,?,?)
            ON CONFLICT(learner_id, activity_id) DO UPDATE SET
              skill = excluded.skill,
              due_at = excluded.due_at,
              interval_days = excluded.interval_days,
              ease = excluded.ease,
              last_result = excluded.last_result
            """,
            (
                learner_id,
                activity_id,
                skill,
                _to_iso(due_at),
                int(interval_days),
                float(ease),
                None if last_result is None else int(bool(last_result)),
                _now_iso(),
            ),
        )


def list_review_entries(learner_id: str, skill: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = (
        "SELECT activity_id, skill, due_at, interval_days, ease, last_result "
        "FROM review_queue WHERE learner_id = ?"
    )
    params: List[Any] = [learner_id]
    if skill:
        sql += " AND skill = ?"
        params.append(skill)
    sql += " ORDER BY due_at"
    with _optional("review_queue"):
        rows = _query(sql, params)
    return [_review_row(row) for row in rows]


# -------------- adaptive settings --------------
def get_adaptive_settings(learner_id: str) -> Optional[Dict[str, Any]]:
    with _optional("adaptive_settings"):
        rows = _query(
            """
            SELECT main_rounds, boss_enabled, boss_intensity, hint_mode, daily_goal, updated_at
            FROM adaptive_settings WHERE learner_id = ?
            """,
            (learner_id,),
        )
    if not rows:
        return None
    data = dict(rows[0])
    data["boss_enabled"] = bool(data["boss_enabled"])
    return data


def update_adaptive_settings(learner_id: str, settings: Dict[str, Any]) -> None:
    with _optional("adaptive_settings"):
        _exec("INSERT OR IGNORE INTO learners(learner_id) VALUES (?)", (learner_id,))
        _exec(
            """
            INSERT INTO adaptive_settings(
              learner_id, main_rounds, boss_enabled, boss_intensity, hint_mode, daily_goal, updated_at
            ) VALUES (?,?,?,?,?,?,?)
            ON CONFLICT(learner_id) DO UPDATE SET
              main_rounds = excluded.main_rounds,
              boss_enabled = excluded.boss_enabled,
              boss_intensity = excluded.boss_intensity,
              hint_mode = excluded.hint_mode,
              daily_goal = excluded.daily_goal,
              updated_at = excluded.updated_at
            """,
            (
                learner_id,
                int(settings["main_rounds"]),
                1 if settings["boss_enabled"] else 0,
                int(settings["boss_intensity"]),
                str(settings["hint_mode"]),
                int(settings["daily_goal"]),
                _now_iso(),
            ),
        )


# -------------- streaks --------------
def get_streak(learner_id: str) -> Optional[Dict[str, Any]]:
    with _optional("streaks"):
        rows = _query("SELECT current_streak, last_played FROM streaks WHERE learner_id = ?", (learner_id,))
    if not rows:
        return None
    data = dict(rows[0])
    data["last_played"] = date.fromisoformat(data["last_played"]) if data["last_played"] else None
    return data


def upsert_streak(learner_id: str, current_streak: int, last_played: date) -> None:
    with _optional("streaks"):
        _exec(
            """
            INSERT INTO streaks(learner_id, current_streak, last_played, updated_at) VALUES (?,?,?,?)
            ON CONFLICT(learner_id) DO UPDATE SET
              current_streak = excluded.current_streak,
              last_played = excluded.last_played,
              updated_at = excluded.updated_at
            """,
            (learner_id, int(current_streak), last_played.isoformat(), _now_iso()),
        )


# -------------- badges --------------
def list_badge_keys(learner_id: str, keys: Optional[Sequence[str]] = None) -> List[str]:
    sql = "SELECT badge_key FROM badges WHERE learner_id = ?"
    params: List[Any] = [learner_id]
    if keys is not None:
        if not keys:
            return []
        placeholders = ",".join("?" for _ in keys)
        sql += f" AND badge_key IN ({placeholders})"
        params.extend(keys)
    sql += " ORDER BY earned_at, id"
    with _optional("badges"):
        rows = _query(sql, params)
    return [row["badge_key"] for row in rows]


def insert_badges(learner_id: str, keys: Iterable[str]) -> List[str]:
    """Insert the badges the learner does not own yet; return the new keys."""
    candidates = list(dict.fromkeys(keys))
    if not candidates:
        return []
    inserted: List[str] = []
    earned_at = _now_iso()
    with _optional("badges"):
        with _conn() as con:
            for key in candidates:
                cur = con.execute(
                    "INSERT OR IGNORE INTO badges(learner_id, badge_key, earned_at) VALUES (?,?,?)",
                    (learner_id, key, earned_at),
                )
                if cur.rowcount:
                    inserted.append(key)
            con.commit()
    return inserted


def list_badges(learner_id: str) -> List[Dict[str, Any]]:
    with _optional("badges"):
        rows = _query(
            "SELECT badge_key, earned_at FROM badges WHERE learner_id = ? ORDER BY earned_at, id",
            (learner_id,),
        )
    return [dict(row) for row in rows]


# -------------- activities --------------
def _activity_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    data["content"] = json.loads(data.pop("content_json"))
    difficulty = data.get("difficulty")
    if isinstance(difficulty, str):
        try:
            data["difficulty"] = json.loads(difficulty)
        except json.JSONDecodeError:
            pass
    return data


def upsert_activities(activities: Iterable[Dict[str, Any]]) -> None:
    to_store = list(activities)
    if not to_store:
        return

    with _conn() as con:
        for activity in to_store:
            con.execute(
                """
                INSERT INTO activities(id, age_band, type, skill, difficulty, title, content_json)
                VALUES (?,?,?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                  age_band = excluded.age_band,
                  type = excluded.type,
                  skill = excluded.skill,
                  difficulty = excluded.difficulty,
                  title = excluded.title,
                  content_json = excluded.content_json
                """,
                (
                    activity["id"],
                    activity["age_band"],
                    activity["type"],
                    activity["skill"],
                    json_dumps(activity.get("difficulty")),
                    activity.get("title"),
                    json_dumps(activity["content"]),
                ),
            )
        con.commit()
    logger.debug("Synced %d activities", len(to_store))


def list_activities(age_band: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
    if age_band:
        rows = _query(
            "SELECT id, age_band, type, skill, difficulty, title, content_json FROM activities "
            "WHERE age_band = ? ORDER BY id LIMIT ?",
            (age_band, int(limit)),
        )
    else:
        rows = _query(
            "SELECT id, age_band, type, skill, difficulty, title, content_json FROM activities ORDER BY id LIMIT ?",
            (int(limit),),
        )
    return [_activity_row(row) for row in rows]


def get_activities(activity_ids: Sequence[str]) -> List[Dict[str, Any]]:
    """Activities for ``activity_ids`` in the given order; unknown ids are dropped."""
    ids = [str(activity_id) for activity_id in activity_ids]
    if not ids:
        return []
    placeholders = ",".join("?" for _ in ids)
    rows = _query(
        f"SELECT id, age_band, type, skill, difficulty, title, content_json FROM activities WHERE id IN ({placeholders})",
        ids,
    )
    by_id = {row["id"]: _activity_row(row) for row in rows}
    return [by_id[activity_id] for activity_id in ids if activity_id in by_id]
