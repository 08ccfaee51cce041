"""Test cases for db operations."""

from datetime import datetime, timedelta, timezone

from db import (
    _conn,
    get_progress,
    get_tutor_document,
    list_escalation_events,
    list_progress,
    list_tutor_ids,
    log_escalation,
    save_progress,
    upsert_tutor_document,
)


def _document(topic_id: str = "fractions", total: int = 1) -> dict:
    return {
        "learner_id": "alice",
        "subject_id": "math",
        "topic_id": topic_id,
        "total_attempts": total,
        "correct_answers": total,
        "incorrect_answers": 0,
    }


def test_progress_insert_and_versioned_update(temp_db):
    assert save_progress("alice", "math", "fractions", _document(), expected_version=0)
    assert get_progress("alice", "math", "fractions")["version"] == 1

    # A second insert for the same key loses
    assert not save_progress("alice", "math", "fractions", _document(), expected_version=0)

    assert save_progress("alice", "math", "fractions", _document(total=2), expected_version=1)
    assert not save_progress("alice", "math", "fractions", _document(total=3), expected_version=1)

    stored = get_progress("alice", "math", "fractions")
    assert stored["version"] == 2
    assert stored["total_attempts"] == 2


def test_missing_progress_is_none(temp_db):
    assert get_progress("nobody", "math", "fractions") is None


def test_list_progress_by_learner_and_subject(temp_db):
    save_progress("alice", "math", "fractions", _document("fractions"), expected_version=0)
    save_progress("alice", "math", "decimals", _document("decimals"), expected_version=0)

    topics = [doc["topic_id"] for doc in list_progress("alice", "math")]
    assert topics == ["decimals", "fractions"]
    assert list_progress("alice", "physics") == []
    assert len(list_progress("alice")) == 2


def test_tutor_documents_upsert(temp_db):
    upsert_tutor_document("t2", {"tutor_id": "t2", "subjects": ["math"]})
    upsert_tutor_document("t1", {"tutor_id": "t1", "subjects": []})
    upsert_tutor_document("t2", {"tutor_id": "t2", "subjects": ["physics"]})

    assert get_tutor_document("t2")["subjects"] == ["physics"]
    assert get_tutor_document("missing") is None
    assert list_tutor_ids() == ["t1", "t2"]


def test_escalation_events_round_trip(temp_db):
    earlier = datetime(2024, 4, 1, tzinfo=timezone.utc)
    later = earlier + timedelta(days=10)
    first = log_escalation("u1", "low_mastery", "medium", "viewed", timestamp=earlier)
    second = log_escalation("u1", "low_mastery", "medium", "booked_tutor", tutor_id="t9", timestamp=later)
    log_escalation("u2", "user_request", "medium", "viewed", conversation_id="c1")

    assert second > first
    events = list_escalation_events(user_id="u1")
    assert [e["user_action"] for e in events] == ["booked_tutor", "viewed"]
    assert events[0]["tutor_id"] == "t9"
    assert events[0]["timestamp"] == later

    recent = list_escalation_events(user_id="u1", since=earlier + timedelta(days=1))
    assert [e["id"] for e in recent] == [second]
    assert len(list_escalation_events()) == 3


def test_escalation_priority_is_constrained(temp_db):
    with _conn() as con:
        rows = con.execute(
            "SELECT sql FROM sqlite_master WHERE name = 'escalation_events'"
        ).fetchall()
    assert "CHECK (priority IN ('low','medium','high'))" in rows[0]["sql"]
