"""Optimistic versioning for learner progress records."""

from datetime import datetime, timezone

import pytest

import db
from engines.mastery import LearnerProgressRecord, QuestionOutcome, QuizAttempt, apply_attempt
from progress_store import InMemoryProgressStore, SQLiteProgressStore, StaleProgressError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

ATTEMPT = QuizAttempt(
    answers=(
        QuestionOutcome(True, 12.0, "q1", "ratios"),
        QuestionOutcome(False, 30.0, "q2", "percentages"),
    ),
    score=50.0,
)


def _first_record() -> LearnerProgressRecord:
    record, _ = apply_attempt(None, ATTEMPT, NOW, learner_id="alice", subject_id="math", topic_id="ratios")
    return record


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    if request.param == "memory":
        return InMemoryProgressStore()
    request.getfixturevalue("temp_db")
    return SQLiteProgressStore()


def test_missing_record_returns_none(store):
    assert store.get("alice", "math", "ratios") is None


def test_save_and_reload(store):
    stored = store.save(_first_record())
    assert stored.version == 1

    loaded = store.get("alice", "math", "ratios")
    assert loaded.version == 1
    assert loaded.total_attempts == 2
    assert loaded.weak_areas == ["percentages"]
    assert loaded.strengths == ["ratios"]
    assert loaded.last_practiced_at == NOW
    assert loaded.mastery_score == stored.mastery_score


def test_versions_increase_with_each_write(store):
    store.save(_first_record())
    current = store.get("alice", "math", "ratios")
    updated, _ = apply_attempt(current, ATTEMPT, NOW)
    assert store.save(updated).version == 2
    assert store.get("alice", "math", "ratios").total_attempts == 4


def test_concurrent_writers_cannot_both_win(store):
    store.save(_first_record())
    reader_one = store.get("alice", "math", "ratios")
    reader_two = store.get("alice", "math", "ratios")

    store.save(apply_attempt(reader_one, ATTEMPT, NOW)[0])
    with pytest.raises(StaleProgressError) as excinfo:
        store.save(apply_attempt(reader_two, ATTEMPT, NOW)[0])

    assert excinfo.value.expected_version == 1
    assert store.get("alice", "math", "ratios").total_attempts == 4


def test_second_insert_of_new_record_is_stale(store):
    store.save(_first_record())
    with pytest.raises(StaleProgressError):
        store.save(_first_record())


def test_in_memory_store_hands_out_copies():
    store = InMemoryProgressStore()
    store.save(_first_record())
    loaded = store.get("alice", "math", "ratios")
    loaded.weak_areas.append("mutated")
    assert store.get("alice", "math", "ratios").weak_areas == ["percentages"]
    assert len(store) == 1


def test_sqlite_document_shape(temp_db):
    SQLiteProgressStore().save(_first_record())
    document = db.get_progress("alice", "math", "ratios")
    assert document["version"] == 1
    assert document["total_attempts"] == 2
    assert document["current_difficulty"] == "easy"
    assert document["last_practiced_at"].startswith("2024-05-01T12:00:00")


def test_list_for_learner_filters_and_orders(store):
    for subject_id, topic_id in (("math", "ratios"), ("math", "angles"), ("physics", "forces")):
        record, _ = apply_attempt(None, ATTEMPT, NOW, learner_id="alice", subject_id=subject_id, topic_id=topic_id)
        store.save(record)
    other, _ = apply_attempt(None, ATTEMPT, NOW, learner_id="bob", subject_id="math", topic_id="ratios")
    store.save(other)

    assert [(r.subject_id, r.topic_id) for r in store.list_for_learner("alice")] == [
        ("math", "angles"),
        ("math", "ratios"),
        ("physics", "forces"),
    ]
    assert [r.topic_id for r in store.list_for_learner("alice", "math")] == ["angles", "ratios"]
    assert all(r.version == 1 for r in store.list_for_learner("alice"))
    assert store.list_for_learner("carol") == []
