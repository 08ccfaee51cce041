"""Mastery tracking and adaptive quiz difficulty.

The engine keeps one :class:`LearnerProgressRecord` per learner/subject/topic
and derives two things from it: a 0-100 mastery score and the difficulty of
the next quiz. Both computations are deterministic functions of the record
(plus the attempt just taken and the current time), so the caller owns
persistence and the engine never touches a store.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Difficulty = str

DIFFICULTY_LEVELS: Tuple[Difficulty, ...] = ("easy", "medium", "hard")

DIFFICULTY_MULTIPLIERS: Dict[Difficulty, float] = {
    "easy": 0.5,
    "medium": 0.75,
    "hard": 1.0,
}

UPGRADE_THRESHOLD = 0.8
DOWNGRADE_THRESHOLD = 0.5
UPGRADE_STREAK = 2
TUTOR_THRESHOLD = 3
MASTERY_THRESHOLD = 75

# Attempt-level streak bands (percent scores).
STREAK_CORRECT_SCORE = 70
STREAK_INCORRECT_SCORE = 50

RECENCY_WINDOW_DAYS = 30
MAX_TRACKED_LABELS = 10

_REASONING: Dict[Tuple[str, Difficulty], str] = {
    ("upgrade", "easy"): "Great work! You're consistently scoring well. Let's try medium difficulty questions.",
    ("upgrade", "medium"): "Excellent progress! You're ready for challenging questions.",
    ("upgrade", "hard"): "Outstanding! Keep challenging yourself at this level.",
    ("downgrade", "hard"): "Let's consolidate your understanding with medium-level questions.",
    ("downgrade", "medium"): "Building confidence with fundamentals before progressing.",
    ("downgrade", "easy"): "Keep practicing the basics - you'll improve with time!",
    ("maintain", "easy"): "You're making steady progress. Keep working on the fundamentals.",
    ("maintain", "medium"): "Good progress! Continue practicing at this level.",
    ("maintain", "hard"): "You're holding your own on challenging questions. Keep it up.",
}


@dataclass(frozen=True)
class QuestionOutcome:
    is_correct: bool
    time_spent_seconds: float
    question_id: str = ""
    topic: Optional[str] = None

    @property
    def label(self) -> str:
        """Topic, else a question-id prefix; empty when the answer carries neither."""
        if self.topic:
            return self.topic
        if not self.question_id:
            return ""
        return f"Question {self.question_id[:8]}"


@dataclass(frozen=True)
class QuizAttempt:
    """Immutable result of one submitted quiz."""

    answers: Tuple[QuestionOutcome, ...]
    score: float  # percentage 0-100
    difficulty: Difficulty = "easy"

    @property
    def correct_count(self) -> int:
        return sum(1 for answer in self.answers if answer.is_correct)


@dataclass
class LearnerProgressRecord:
    learner_id: str
    subject_id: str
    topic_id: str
    total_attempts: int = 0
    correct_answers: int = 0
    incorrect_answers: int = 0
    average_time_seconds: float = 0.0
    current_difficulty: Difficulty = "easy"
    consecutive_correct: int = 0
    consecutive_incorrect: int = 0
    weak_areas: List[str] = field(default_factory=list)
    strengths: List[str] = field(default_factory=list)
    last_practiced_at: Optional[datetime] = None
    mastery_score: int = 0  # derived, recomputed on every write
    needs_tutor_intervention: bool = False
    version: int = 0


@dataclass(frozen=True)
class DifficultyDecision:
    next_difficulty: Difficulty
    confidence: float
    reasoning: str
    should_suggest_tutor: bool = False
    tutor_suggestion_reason: Optional[str] = None


@dataclass(frozen=True)
class LearningInsights:
    overall_trend: str  # improving | stable | declining
    strengths_count: int
    weak_areas_count: int
    recommended_focus: List[str]
    estimated_days_to_mastery: int
    motivation_key: str


@dataclass(frozen=True)
class ProgressComparison:
    mastery_score_change: int
    accuracy_change: float
    attempts_difference: int
    trend: str  # improved | declined | no_change


def new_progress_record(learner_id: str, subject_id: str, topic_id: str) -> LearnerProgressRecord:
    """Record used for a learner who has never practiced the topic."""
    return LearnerProgressRecord(learner_id=learner_id, subject_id=subject_id, topic_id=topic_id)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_since(timestamp: Optional[datetime], now: Optional[datetime] = None) -> float:
    """Fractional days elapsed since ``timestamp``; infinite when never practiced."""
    if timestamp is None:
        return math.inf
    current = _as_utc(now) if now is not None else _utcnow()
    return (current - _as_utc(timestamp)).total_seconds() / 86400.0


def overall_accuracy(record: LearnerProgressRecord) -> float:
    if record.total_attempts <= 0:
        return 0.0
    return record.correct_answers / record.total_attempts


def calculate_mastery_score(
    record: Optional[LearnerProgressRecord],
    now: Optional[datetime] = None,
) -> int:
    """Return the 0-100 mastery score for ``record``.

    accuracy (70) + difficulty (20) + recency (10) + consistency (5), with a
    20% penalty once the learner has failed three quizzes in a row.
    """
    if record is None or record.total_attempts <= 0:
        return 0

    score = overall_accuracy(record) * 70
    score += DIFFICULTY_MULTIPLIERS.get(record.current_difficulty, DIFFICULTY_MULTIPLIERS["easy"]) * 20

    # Future timestamps from skewed clocks count as practiced now
    recency = min(1.0, max(0.0, 1 - days_since(record.last_practiced_at, now) / RECENCY_WINDOW_DAYS))
    score += recency * 10

    if record.total_attempts >= 5:
        score += min(record.total_attempts / 20, 1) * 5

    if record.consecutive_incorrect >= TUTOR_THRESHOLD:
        score *= 0.8

    return int(math.floor(min(score, 100) + 0.5))


def _shift(difficulty: Difficulty, step: int) -> Difficulty:
    try:
        index = DIFFICULTY_LEVELS.index(difficulty)
    except ValueError:
        index = 0
    index = min(max(index + step, 0), len(DIFFICULTY_LEVELS) - 1)
    return DIFFICULTY_LEVELS[index]


def _tutor_suggestion(
    record: LearnerProgressRecord,
    recent_accuracy: float,
    now: Optional[datetime],
) -> Optional[str]:
    accuracy = overall_accuracy(record)

    if record.consecutive_incorrect >= TUTOR_THRESHOLD:
        return (
            f"You've struggled with {record.consecutive_incorrect} consecutive quizzes. "
            "A tutor could provide personalized guidance to help you improve."
        )

    mastery = calculate_mastery_score(record, now)
    if mastery < 40 and record.total_attempts >= 5:
        return (
            f"After {record.total_attempts} attempts, your mastery is still at {mastery}%. "
            "A tutor could help you break through this learning plateau."
        )

    if recent_accuracy < 0.4 and accuracy > recent_accuracy + 0.2:
        return "Your recent performance has declined. A tutor can help identify what's causing the difficulty."

    if record.current_difficulty == "easy" and record.total_attempts >= 8 and accuracy < 0.6:
        return "You're having trouble with basic concepts. A tutor can help build a strong foundation."

    return None


def calculate_next_difficulty(
    record: Optional[LearnerProgressRecord],
    last_attempt: QuizAttempt,
    now: Optional[datetime] = None,
) -> DifficultyDecision:
    """Decide the next quiz difficulty from the latest attempt and the running streak.

    Moves at most one level per call. ``confidence`` only reports how much
    history backs the decision; it never changes the chosen level.
    """
    if record is None:
        record = new_progress_record("", "", "")

    recent_accuracy = last_attempt.score / 100
    streak = record.consecutive_correct - record.consecutive_incorrect
    current = record.current_difficulty if record.current_difficulty in DIFFICULTY_LEVELS else "easy"

    if recent_accuracy >= UPGRADE_THRESHOLD and streak >= UPGRADE_STREAK:
        direction, next_difficulty = "upgrade", _shift(current, 1)
    elif recent_accuracy < DOWNGRADE_THRESHOLD:
        direction, next_difficulty = "downgrade", _shift(current, -1)
    else:
        direction, next_difficulty = "maintain", current

    suggestion = _tutor_suggestion(record, recent_accuracy, now)
    logger.debug(
        "difficulty %s -> %s (%s, accuracy=%.2f, streak=%d)",
        current,
        next_difficulty,
        direction,
        recent_accuracy,
        streak,
    )
    return DifficultyDecision(
        next_difficulty=next_difficulty,
        confidence=min(record.total_attempts / 10, 1.0),
        reasoning=_REASONING[(direction, current)],
        should_suggest_tutor=suggestion is not None,
        tutor_suggestion_reason=suggestion,
    )


def _merge_labels(existing: Sequence[str], incoming: Sequence[str]) -> List[str]:
    merged = [label for label in existing if label not in incoming]
    for label in incoming:
        if label in merged:
            merged.remove(label)
        merged.append(label)
    return merged[-MAX_TRACKED_LABELS:]


def _weak_areas(attempt: QuizAttempt) -> List[str]:
    return [answer.label for answer in attempt.answers if not answer.is_correct and answer.label]


def _strengths(attempt: QuizAttempt) -> List[str]:
    if not attempt.answers:
        return []
    mean_time = sum(a.time_spent_seconds for a in attempt.answers) / len(attempt.answers)
    return [
        answer.label
        for answer in attempt.answers
        if answer.is_correct and answer.label and answer.time_spent_seconds <= mean_time
    ]


def apply_attempt(
    record: Optional[LearnerProgressRecord],
    attempt: QuizAttempt,
    now: Optional[datetime] = None,
    *,
    learner_id: str = "",
    subject_id: str = "",
    topic_id: str = "",
) -> Tuple[LearnerProgressRecord, DifficultyDecision]:
    """Fold ``attempt`` into ``record`` and decide the next difficulty.

    Returns a new record; the input is left untouched. A missing record is
    treated as a brand-new learner on ``easy``.
    """
    now = now or _utcnow()
    if record is None:
        record = new_progress_record(learner_id, subject_id, topic_id)

    answered = len(attempt.answers)
    correct = attempt.correct_count
    total_attempts = record.total_attempts + answered

    total_time = record.average_time_seconds * record.total_attempts
    total_time += sum(a.time_spent_seconds for a in attempt.answers)
    average_time = total_time / total_attempts if total_attempts else 0.0

    consecutive_correct = record.consecutive_correct
    consecutive_incorrect = record.consecutive_incorrect
    if attempt.score >= STREAK_CORRECT_SCORE:
        consecutive_correct += 1
        consecutive_incorrect = 0
    elif attempt.score < STREAK_INCORRECT_SCORE:
        consecutive_incorrect += 1
        consecutive_correct = 0

    counted = replace(
        record,
        total_attempts=total_attempts,
        correct_answers=record.correct_answers + correct,
        incorrect_answers=record.incorrect_answers + (answered - correct),
        average_time_seconds=average_time,
        consecutive_correct=consecutive_correct,
        consecutive_incorrect=consecutive_incorrect,
        weak_areas=_merge_labels(record.weak_areas, _weak_areas(attempt)),
        strengths=_merge_labels(record.strengths, _strengths(attempt)),
    )
    decision = calculate_next_difficulty(counted, attempt, now)

    updated = replace(
        counted,
        current_difficulty=decision.next_difficulty,
        needs_tutor_intervention=decision.should_suggest_tutor,
        last_practiced_at=now,
    )
    updated.mastery_score = calculate_mastery_score(updated, now)
    return updated, decision


def recommend_starting_difficulty(
    self_assessment: Optional[str] = None,
    recent_session_scores: Optional[Sequence[float]] = None,
) -> Difficulty:
    """Starting difficulty for a learner without progress data."""
    mapping = {"beginner": "easy", "intermediate": "medium", "advanced": "hard"}
    if self_assessment and self_assessment in mapping:
        return mapping[self_assessment]

    if recent_session_scores:
        average = sum(recent_session_scores) / len(recent_session_scores)
        if average >= 80:
            return "hard"
        if average >= 60:
            return "medium"
    return "easy"


def generate_learning_insights(
    record: LearnerProgressRecord,
    now: Optional[datetime] = None,
) -> LearningInsights:
    mastery = calculate_mastery_score(record, now)

    trend = "stable"
    if record.consecutive_correct >= 2:
        trend = "improving"
    elif record.consecutive_incorrect >= 2:
        trend = "declining"

    # roughly five mastery points per focused daily session
    days = math.ceil(max(0, MASTERY_THRESHOLD - mastery) / 5)

    if mastery >= 85:
        motivation = "mastering"
    elif mastery >= 70:
        motivation = "almost_there"
    elif mastery >= 50:
        motivation = "keep_practicing"
    elif trend == "improving":
        motivation = "on_track"
    else:
        motivation = "consider_tutor"

    return LearningInsights(
        overall_trend=trend,
        strengths_count=len(record.strengths),
        weak_areas_count=len(record.weak_areas),
        recommended_focus=list(record.weak_areas[:3]),
        estimated_days_to_mastery=days,
        motivation_key=motivation,
    )


def compare_progress(
    old: LearnerProgressRecord,
    new: LearnerProgressRecord,
    now: Optional[datetime] = None,
) -> ProgressComparison:
    mastery_change = calculate_mastery_score(new, now) - calculate_mastery_score(old, now)
    if mastery_change > 5:
        trend = "improved"
    elif mastery_change < -5:
        trend = "declined"
    else:
        trend = "no_change"
    return ProgressComparison(
        mastery_score_change=mastery_change,
        accuracy_change=overall_accuracy(new) - overall_accuracy(old),
        attempts_difference=new.total_attempts - old.total_attempts,
        trend=trend,
    )


class MasteryEngine:
    """Object facade over the mastery functions with an injectable clock."""

    def __init__(self, clock=None):
        self._clock = clock or _utcnow

    def mastery(self, record: Optional[LearnerProgressRecord]) -> int:
        return calculate_mastery_score(record, self._clock())

    def next_difficulty(
        self, record: Optional[LearnerProgressRecord], last_attempt: QuizAttempt
    ) -> DifficultyDecision:
        return calculate_next_difficulty(record, last_attempt, self._clock())

    def apply(
        self,
        record: Optional[LearnerProgressRecord],
        attempt: QuizAttempt,
        **ids: str,
    ) -> Tuple[LearnerProgressRecord, DifficultyDecision]:
        return apply_attempt(record, attempt, self._clock(), **ids)

    def insights(self, record: LearnerProgressRecord) -> LearningInsights:
        return generate_learning_insights(record, self._clock())
