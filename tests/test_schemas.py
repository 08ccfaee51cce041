from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from engines.mastery import LearnerProgressRecord
from schemas import (
    EscalationEventIn,
    ProgressDocument,
    QuizAttemptIn,
    RankingCriteriaIn,
    ReviewDocument,
    TutorProfileDocument,
)


def _progress_payload(**overrides):
    payload = {
        "learner_id": "alice",
        "subject_id": "math",
        "topic_id": "fractions",
        "total_attempts": 10,
        "correct_answers": 8,
        "incorrect_answers": 2,
        "current_difficulty": "medium",
        "last_practiced_at": "2024-05-01T12:00:00Z",
        "version": 3,
    }
    payload.update(overrides)
    return payload


def test_progress_document_converts_to_record():
    record = ProgressDocument.model_validate(_progress_payload()).to_record()
    assert isinstance(record, LearnerProgressRecord)
    assert record.correct_answers == 8
    assert record.version == 3
    assert record.last_practiced_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_progress_document_round_trips_through_record():
    document = ProgressDocument.model_validate(_progress_payload(weak_areas=["a"]))
    assert ProgressDocument.from_record(document.to_record()) == document


@pytest.mark.parametrize(
    "overrides",
    [
        {"total_attempts": 11},
        {"current_difficulty": "expert"},
        {"correct_answers": -1, "total_attempts": 1, "incorrect_answers": 2},
        {"consecutive_correct": 1, "consecutive_incorrect": 1},
        {"learner_id": None},
    ],
)
def test_malformed_progress_documents_are_rejected(overrides):
    with pytest.raises(ValidationError):
        ProgressDocument.model_validate(_progress_payload(**overrides))


def test_unknown_fields_are_dropped_and_labels_trimmed():
    document = ProgressDocument.model_validate(
        _progress_payload(legacy_field="x", weak_areas=[f"w{i}" for i in range(12)])
    )
    assert not hasattr(document, "legacy_field")
    assert document.weak_areas == [f"w{i}" for i in range(2, 12)]


def test_quiz_attempt_requires_answers_and_valid_score():
    with pytest.raises(ValidationError):
        QuizAttemptIn.model_validate({"answers": [], "score": 50})
    with pytest.raises(ValidationError):
        QuizAttemptIn.model_validate({"answers": [{"is_correct": True}], "score": 120})

    attempt = QuizAttemptIn.model_validate(
        {"answers": [{"is_correct": True, "time_spent_seconds": 4, "topic": "ratios"}], "score": 100}
    ).to_attempt()
    assert attempt.correct_count == 1
    assert attempt.answers[0].label == "ratios"


def test_review_rating_must_be_between_one_and_five():
    with pytest.raises(ValidationError):
        ReviewDocument(rating=0)
    assert ReviewDocument(rating=4.5).rating == 4.5


def test_profile_normalises_days_and_rejects_negative_prices():
    profile = TutorProfileDocument(availability={" Monday ": True})
    assert profile.availability == {"monday": True}
    with pytest.raises(ValidationError):
        TutorProfileDocument(subject_pricing={"math": -100})


def test_ranking_criteria_conversion():
    criteria = RankingCriteriaIn(subject_id="math", preferred_days=["Monday", "FRIDAY"], max_budget=5000).to_criteria()
    assert criteria.preferred_days == ("monday", "friday")
    assert criteria.max_budget_cents == 5000
    with pytest.raises(ValidationError):
        RankingCriteriaIn(max_budget=-1)


def test_escalation_event_actions_are_closed():
    with pytest.raises(ValidationError):
        EscalationEventIn(user_id="u", trigger_type="low_mastery", priority="low", user_action="liked")
    event = EscalationEventIn(user_id="u", trigger_type="low_mastery", priority="low", user_action="viewed")
    assert event.timestamp.tzinfo is not None
