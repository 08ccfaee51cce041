import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


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


def init():
    if DB_PATH != ":memory:":
        Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS learner_progress (
              learner_id  TEXT NOT NULL,
              subject_id  TEXT NOT NULL,
              topic_id    TEXT NOT NULL,
              document    TEXT NOT NULL,
              version     INTEGER NOT NULL DEFAULT 1,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              PRIMARY KEY (learner_id, subject_id, topic_id)
            );

            CREATE TABLE IF NOT EXISTS tutor_documents (
              tutor_id    TEXT PRIMARY KEY,
              document    TEXT NOT NULL,
              updated_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS escalation_events (
              id              INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id         TEXT NOT NULL,
              trigger_type    TEXT NOT NULL,
              priority        TEXT NOT NULL CHECK (priority IN ('low','medium','high')),
              user_action     TEXT NOT NULL,
              conversation_id TEXT,
              tutor_id        TEXT,
              created_at      TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_escalation_user ON escalation_events(user_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_escalation_trigger ON escalation_events(trigger_type);
            """
        )
        con.commit()


# -------------- learner progress --------------
def get_progress(learner_id: str, subject_id: str, topic_id: str) -> Optional[Dict[str, Any]]:
    """Return the stored progress document with its version, or None."""
    rows = _query(
        """
        SELECT document, version FROM learner_progress
        WHERE learner_id = ? AND subject_id = ? AND topic_id = ?
        """,
        (learner_id, subject_id, topic_id),
    )
    if not rows:
        return None
    document = json.loads(rows[0]["document"])
    document["version"] = int(rows[0]["version"])
    return document


def save_progress(
    learner_id: str,
    subject_id: str,
    topic_id: str,
    document: Dict[str, Any],
    expected_version: int,
) -> bool:
    """Write ``document`` if the stored version still equals ``expected_version``.

    A version of 0 means the record must not exist yet. Returns False when
    another writer got there first; the new version is ``expected_version + 1``.
    """
    payload = json_dumps(document)
    new_version = int(expected_version) + 1
    if expected_version == 0:
        cur = _exec(
            """
            INSERT INTO learner_progress(learner_id, subject_id, topic_id, document, version, updated_at)
            VALUES (?,?,?,?,?,CURRENT_TIMESTAMP)
            ON CONFLICT(learner_id, subject_id, topic_id) DO NOTHING
            """,
            (learner_id, subject_id, topic_id, payload, new_version),
        )
    else:
        cur = _exec(
            """
            UPDATE learner_progress
            SET document = ?, version = ?, updated_at = CURRENT_TIMESTAMP
            WHERE learner_id = ? AND subject_id = ? AND topic_id = ? AND version = ?
            """,
            (payload, new_version, learner_id, subject_id, topic_id, int(expected_version)),
        )
    return cur.rowcount == 1


def list_progress(learner_id: str, subject_id: Optional[str] = None) -> list[Dict[str, Any]]:
    if subject_id:
        rows = _query(
            """
            SELECT document, version FROM learner_progress
            WHERE learner_id = ? AND subject_id = ?
            ORDER BY subject_id, topic_id
            """,
            (learner_id, subject_id),
        )
    else:
        rows = _query(
            "SELECT document, version FROM learner_progress WHERE learner_id = ? ORDER BY subject_id, topic_id",
            (learner_id,),
        )
    data: list[Dict[str, Any]] = []
    for row in rows:
        document = json.loads(row["document"])
        document["version"] = int(row["version"])
        data.append(document)
    return data


# -------------- tutor documents --------------
def upsert_tutor_document(tutor_id: str, document: Dict[str, Any]) -> None:
    _exec(
        """
        INSERT INTO tutor_documents(tutor_id, document, updated_at)
        VALUES (?,?,CURRENT_TIMESTAMP)
        ON CONFLICT(tutor_id) DO UPDATE SET
          document=excluded.document,
          updated_at=CURRENT_TIMESTAMP
        """,
        (tutor_id, json_dumps(document)),
    )


def get_tutor_document(tutor_id: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT document FROM tutor_documents WHERE tutor_id = ?", (tutor_id,))
    if not rows:
        return None
    return json.loads(rows[0]["document"])


def list_tutor_ids(limit: int = 500) -> list[str]:
    rows = _query("SELECT tutor_id FROM tutor_documents ORDER BY tutor_id LIMIT ?", (int(limit),))
    return [row["tutor_id"] for row in rows]


# -------------- escalation events --------------
def log_escalation(
    user_id: str,
    trigger_type: str,
    priority: str,
    user_action: str,
    *,
    conversation_id: Optional[str] = None,
    tutor_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> int:
    """Record one learner interaction with an escalation suggestion."""
    created_at = _coerce_to_utc(timestamp).isoformat()
    cur = _exec(
        """
        INSERT INTO escalation_events
        (user_id, trigger_type, priority, user_action, conversation_id, tutor_id, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (user_id, trigger_type, priority, user_action, conversation_id, tutor_id, created_at),
    )
    return int(cur.lastrowid)


def list_escalation_events(
    user_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 1000,
) -> list[Dict[str, Any]]:
    clauses = []
    params: list[Any] = []
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    if since is not None:
        clauses.append("created_at >= ?")
        params.append(_coerce_to_utc(since).isoformat())
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    rows = _query(
        f"""
        SELECT id, user_id, trigger_type, priority, user_action, conversation_id, tutor_id, created_at
        FROM escalation_events
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        params,
    )
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["timestamp"] = _parse_timestamp(item.pop("created_at"))
        data.append(item)
    return data


# -------------- helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=_json_default)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return _coerce_to_utc(value).isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        return _coerce_to_utc(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))


def _coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
