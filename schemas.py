"""Pydantic schemas for store documents, aggregator inputs and HTTP bodies.

Loosely-typed documents are validated here, at the boundary, and converted
into the engine value objects. The engines themselves never see a raw dict.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from engines.mastery import (
    MAX_TRACKED_LABELS,
    DifficultyDecision,
    LearnerProgressRecord,
    LearningInsights,
    QuestionOutcome,
    QuizAttempt,
)
from engines.tutor_ranking import RankedTutor, RankingCriteria

__all__ = [
    "DifficultyLiteral",
    "QuestionOutcomeIn",
    "QuizAttemptIn",
    "ProgressDocument",
    "SessionDocument",
    "ReviewDocument",
    "TutorProfileDocument",
    "TutorDocument",
    "RankingCriteriaIn",
    "RankTutorsRequest",
    "RankedTutorOut",
    "AttemptSubmission",
    "DifficultyDecisionOut",
    "AttemptResult",
    "LearningInsightsOut",
    "ProgressResponse",
    "StartingDifficultyRequest",
    "EscalationRequest",
    "EscalationResponse",
    "EscalationEventIn",
]

DifficultyLiteral = Literal["easy", "medium", "hard"]


class QuestionOutcomeIn(BaseModel):
    question_id: str = ""
    is_correct: bool
    time_spent_seconds: float = Field(default=0.0, ge=0.0)
    topic: str | None = Field(
        default=None,
        description="Topic label used for weak-area and strength tracking.",
    )


class QuizAttemptIn(BaseModel):
    answers: list[QuestionOutcomeIn] = Field(min_length=1)
    score: float = Field(ge=0.0, le=100.0, description="Percentage score of the attempt.")
    difficulty: DifficultyLiteral = "easy"

    def to_attempt(self) -> QuizAttempt:
        return QuizAttempt(
            answers=tuple(
                QuestionOutcome(
                    is_correct=a.is_correct,
                    time_spent_seconds=a.time_spent_seconds,
                    question_id=a.question_id,
                    topic=a.topic,
                )
                for a in self.answers
            ),
            score=self.score,
            difficulty=self.difficulty,
        )


class ProgressDocument(BaseModel):
    """Stored shape of a learner progress record.

    ``mastery_score`` is carried for readers of the store only; it is always
    recomputed from the other fields.
    """

    model_config = {"extra": "ignore"}

    learner_id: str
    subject_id: str
    topic_id: str
    total_attempts: int = Field(default=0, ge=0)
    correct_answers: int = Field(default=0, ge=0)
    incorrect_answers: int = Field(default=0, ge=0)
    average_time_seconds: float = Field(default=0.0, ge=0.0)
    current_difficulty: DifficultyLiteral = "easy"
    consecutive_correct: int = Field(default=0, ge=0)
    consecutive_incorrect: int = Field(default=0, ge=0)
    weak_areas: list[str] = Field(default_factory=list)
    strengths: list[str] = Field(default_factory=list)
    last_practiced_at: datetime | None = None
    mastery_score: int = Field(default=0, ge=0, le=100)
    needs_tutor_intervention: bool = False
    version: int = Field(default=0, ge=0)

    @field_validator("weak_areas", "strengths")
    @classmethod
    def _keep_most_recent(cls, value: list[str]) -> list[str]:
        return value[-MAX_TRACKED_LABELS:]

    @model_validator(mode="after")
    def _check_counters(self) -> "ProgressDocument":
        if self.total_attempts != self.correct_answers + self.incorrect_answers:
            raise ValueError("total_attempts must equal correct_answers + incorrect_answers")
        if self.consecutive_correct and self.consecutive_incorrect:
            raise ValueError("consecutive_correct and consecutive_incorrect cannot both be non-zero")
        return self

    def to_record(self) -> LearnerProgressRecord:
        return LearnerProgressRecord(**self.model_dump())

    @classmethod
    def from_record(cls, record: LearnerProgressRecord) -> "ProgressDocument":
        return cls(
            learner_id=record.learner_id,
            subject_id=record.subject_id,
            topic_id=record.topic_id,
            total_attempts=record.total_attempts,
            correct_answers=record.correct_answers,
            incorrect_answers=record.incorrect_answers,
            average_time_seconds=record.average_time_seconds,
            current_difficulty=record.current_difficulty,
            consecutive_correct=record.consecutive_correct,
            consecutive_incorrect=record.consecutive_incorrect,
            weak_areas=list(record.weak_areas),
            strengths=list(record.strengths),
            last_practiced_at=record.last_practiced_at,
            mastery_score=record.mastery_score,
            needs_tutor_intervention=record.needs_tutor_intervention,
            version=record.version,
        )


class SessionDocument(BaseModel):
    session_id: str
    student_id: str
    subject_id: str | None = None
    status: str = Field(description="Session status, e.g. scheduled, completed or cancelled.")


class ReviewDocument(BaseModel):
    session_id: str | None = None
    rating: float = Field(ge=1.0, le=5.0)


class TutorProfileDocument(BaseModel):
    availability: Dict[str, bool] | None = Field(
        default=None,
        description="Weekly calendar keyed by lowercase day name.",
    )
    hourly_rate: float | None = Field(
        default=None,
        ge=0.0,
        description="General hourly rate in major currency units.",
    )
    subject_pricing: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-subject hourly rate in minor currency units (cents).",
    )
    certifications: list[str] = Field(default_factory=list)

    @field_validator("availability")
    @classmethod
    def _lowercase_days(cls, value: Dict[str, bool] | None) -> Dict[str, bool] | None:
        if value is None:
            return None
        return {day.strip().lower(): bool(flag) for day, flag in value.items()}

    @field_validator("subject_pricing")
    @classmethod
    def _non_negative_prices(cls, value: Dict[str, int]) -> Dict[str, int]:
        if any(price < 0 for price in value.values()):
            raise ValueError("subject prices must be non-negative")
        return value


class TutorDocument(BaseModel):
    tutor_id: str
    subjects: list[str] = Field(default_factory=list)
    sessions: list[SessionDocument] = Field(default_factory=list)
    reviews: list[ReviewDocument] = Field(default_factory=list)
    profile: TutorProfileDocument | None = None


class RankingCriteriaIn(BaseModel):
    subject_id: str | None = None
    preferred_days: list[str] = Field(default_factory=list)
    max_budget: int | None = Field(
        default=None,
        ge=0,
        description="Maximum hourly budget in minor currency units (cents).",
    )
    grade_level: str | None = None

    def to_criteria(self) -> RankingCriteria:
        return RankingCriteria(
            subject_id=self.subject_id,
            preferred_days=tuple(day.strip().lower() for day in self.preferred_days),
            max_budget_cents=self.max_budget,
            grade_level=self.grade_level,
        )


class RankTutorsRequest(BaseModel):
    criteria: RankingCriteriaIn = Field(default_factory=RankingCriteriaIn)
    tutors: list[TutorDocument] = Field(
        default_factory=list,
        description="Inline tutor documents, ranked after any stored tutors named in tutor_ids.",
    )
    tutor_ids: list[str] = Field(default_factory=list, description="Ids of stored tutor documents.")
    limit: int | None = Field(default=None, ge=1)


class RankedTutorOut(BaseModel):
    tutor_id: str
    score: float = Field(ge=0.0, le=100.0)
    breakdown: Dict[str, int]
    reasoning: list[str]

    @classmethod
    def from_ranked(cls, ranked: RankedTutor) -> "RankedTutorOut":
        b = ranked.breakdown
        return cls(
            tutor_id=ranked.tutor_id,
            score=ranked.score,
            breakdown={
                "subject_expertise": b.subject_expertise,
                "rating": b.rating,
                "success_metrics": b.success_metrics,
                "availability": b.availability,
                "value": b.value,
                "experience": b.experience,
            },
            reasoning=list(ranked.reasoning),
        )


class AttemptSubmission(BaseModel):
    learner_id: str
    subject_id: str
    topic_id: str
    attempt: QuizAttemptIn


class DifficultyDecisionOut(BaseModel):
    next_difficulty: DifficultyLiteral
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    should_suggest_tutor: bool
    tutor_suggestion_reason: str | None = None

    @classmethod
    def from_decision(cls, decision: DifficultyDecision) -> "DifficultyDecisionOut":
        return cls(
            next_difficulty=decision.next_difficulty,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            should_suggest_tutor=decision.should_suggest_tutor,
            tutor_suggestion_reason=decision.tutor_suggestion_reason,
        )


class AttemptResult(BaseModel):
    progress: ProgressDocument
    decision: DifficultyDecisionOut


class LearningInsightsOut(BaseModel):
    overall_trend: Literal["improving", "stable", "declining"]
    strengths_count: int
    weak_areas_count: int
    recommended_focus: list[str]
    estimated_days_to_mastery: int
    motivation_key: str

    @classmethod
    def from_insights(cls, insights: LearningInsights) -> "LearningInsightsOut":
        return cls(
            overall_trend=insights.overall_trend,
            strengths_count=insights.strengths_count,
            weak_areas_count=insights.weak_areas_count,
            recommended_focus=list(insights.recommended_focus),
            estimated_days_to_mastery=insights.estimated_days_to_mastery,
            motivation_key=insights.motivation_key,
        )


class ProgressResponse(BaseModel):
    progress: ProgressDocument
    mastery_score: int = Field(ge=0, le=100)
    insights: LearningInsightsOut


class StartingDifficultyRequest(BaseModel):
    self_assessment: Literal["beginner", "intermediate", "advanced"] | None = None
    recent_session_scores: list[float] = Field(default_factory=list)


class EscalationRequest(BaseModel):
    learner_id: str
    message: str
    conversation_length: int = Field(default=0, ge=0, description="Number of messages in the conversation.")
    conversation_history: list[str] = Field(default_factory=list)
    subject_id: str | None = None
    topic_id: str | None = None
    conversation_id: str | None = None


class EscalationResponse(BaseModel):
    should_escalate: bool
    priority: Literal["low", "medium", "high"]
    reason: str
    trigger_type: str
    suggested_subject: str | None = None
    message_key: str | None = None
    cta_buttons: list[Dict[str, str]] = Field(default_factory=list)
    boundary_intent: str | None = Field(
        default=None,
        description="Set when the message is answered outside the rule chain (integrity, pricing, comparison).",
    )


class EscalationEventIn(BaseModel):
    user_id: str
    trigger_type: str
    priority: Literal["low", "medium", "high"]
    user_action: Literal["viewed", "clicked_view_tutors", "dismissed", "booked_tutor"]
    conversation_id: str | None = None
    tutor_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
