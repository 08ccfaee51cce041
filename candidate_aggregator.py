"""Build :class:`TutorCandidate` snapshots from raw tutor documents.

The ranking engine only sees frozen candidates. Everything that needs the
store (sessions, reviews, profile) is folded into one snapshot here, and the
snapshot may be kept in an injected :class:`TTLCache` until the tutor's
documents change.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from engines.caching import TTLCache
from engines.tutor_ranking import TutorCandidate
from schemas import TutorDocument

logger = logging.getLogger(__name__)

COMPLETED = "completed"
CANCELLED = "cancelled"

RawTutorDocument = Union[TutorDocument, Mapping[str, Any]]
Loader = Callable[[str], Optional[RawTutorDocument]]


def _as_document(raw: RawTutorDocument) -> TutorDocument:
    if isinstance(raw, TutorDocument):
        return raw
    return TutorDocument.model_validate(raw)


def build_candidate(raw: RawTutorDocument) -> TutorCandidate:
    """Aggregate one tutor's documents into a ranking snapshot.

    Subject review means only count reviews attached to completed sessions
    in that subject; the overall mean counts every review.
    """
    document = _as_document(raw)
    sessions = document.sessions
    completed = [s for s in sessions if s.status == COMPLETED]

    subject_of_completed: Dict[str, str] = {
        s.session_id: s.subject_id for s in completed if s.subject_id
    }
    subject_ratings: Dict[str, List[float]] = defaultdict(list)
    for review in document.reviews:
        subject = subject_of_completed.get(review.session_id or "")
        if subject:
            subject_ratings[subject].append(review.rating)

    ratings = [review.rating for review in document.reviews]
    profile = document.profile

    hourly_rate_cents = None
    if profile is not None and profile.hourly_rate is not None:
        hourly_rate_cents = int(round(profile.hourly_rate * 100))

    return TutorCandidate(
        tutor_id=document.tutor_id,
        subjects=frozenset(document.subjects),
        completed_sessions=len(completed),
        subject_completed_sessions=dict(Counter(s.subject_id for s in completed if s.subject_id)),
        total_sessions=len(sessions),
        non_cancelled_sessions=sum(1 for s in sessions if s.status != CANCELLED),
        unique_students=len({s.student_id for s in sessions}),
        review_count=len(ratings),
        review_mean=sum(ratings) / len(ratings) if ratings else 0.0,
        subject_review_means={
            subject: sum(values) / len(values) for subject, values in subject_ratings.items()
        },
        availability=dict(profile.availability) if profile and profile.availability is not None else None,
        hourly_rate_cents=hourly_rate_cents,
        subject_rates_cents=dict(profile.subject_pricing) if profile else {},
        certifications=len(profile.certifications) if profile else 0,
    )


class CandidateAggregator:
    """Load tutor candidates by id, caching built snapshots when a cache is given."""

    def __init__(self, loader: Loader, cache: Optional[TTLCache] = None):
        self._loader = loader
        self._cache = cache

    def load(self, tutor_id: str) -> Optional[TutorCandidate]:
        if self._cache is not None:
            cached = self._cache.get(tutor_id)
            if cached is not None:
                return cached

        raw = self._loader(tutor_id)
        if raw is None:
            return None
        candidate = build_candidate(raw)
        if self._cache is not None:
            self._cache.set(tutor_id, candidate)
        return candidate

    def load_many(self, tutor_ids: Iterable[str]) -> List[TutorCandidate]:
        """Candidates in request order; unknown or malformed tutors are left out."""
        candidates: List[TutorCandidate] = []
        for tutor_id in tutor_ids:
            try:
                candidate = self.load(tutor_id)
            except ValidationError as exc:
                logger.warning("Skipping tutor %s with malformed documents: %s", tutor_id, exc)
                continue
            if candidate is None:
                logger.info("Tutor %s not found; skipping", tutor_id)
                continue
            candidates.append(candidate)
        return candidates

    def invalidate(self, tutor_id: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(tutor_id)

    def clear(self) -> None:
        if self._cache is not None:
            self._cache.clear()
