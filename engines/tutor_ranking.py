"""Multi-criteria tutor ranking.

Every candidate is scored on its own (no normalisation across the candidate
set) over six bounded sub-scores that add up to at most 100:

    subject expertise 25 | rating 20 | success metrics 20
    availability 15      | value 10  | experience 10

Each sub-score has a pair of pure functions: ``score_*`` returns the points
and ``explain_*`` renders the justification strings. Missing data degrades a
sub-score to its documented default; it never removes the candidate.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

Tiers = Sequence[Tuple[float, int]]

SUBJECT_SESSION_TIERS: Tiers = ((50, 10), (20, 7), (5, 5))  # strictly greater than
SUBJECT_RATING_TIERS: Tiers = ((4.5, 5), (4.0, 4), (3.5, 2))
RATING_MEAN_TIERS: Tiers = ((4.8, 15), (4.5, 13), (4.0, 10), (3.5, 6))
REVIEW_COUNT_TIERS: Tiers = ((50, 5), (20, 4), (10, 3), (5, 2))
COMPLETION_RATE_TIERS: Tiers = ((0.95, 12), (0.85, 9), (0.75, 6))
REPEAT_RATIO_TIERS: Tiers = ((3.0, 8), (2.0, 6), (1.5, 4))
AVAILABLE_DAY_TIERS: Tiers = ((6, 8), (4, 6), (2, 4), (1, 2))
VALUE_RATIO_TIERS: Tiers = ((8, 5), (5, 4), (3, 3))
EXPERIENCE_SESSION_TIERS: Tiers = ((100, 6), (50, 5), (20, 4), (10, 3), (5, 2))
CERTIFICATION_TIERS: Tiers = ((3, 4), (1, 2))

NEUTRAL_VALUE_SCORE = 5


@dataclass(frozen=True)
class TutorCandidate:
    """Read-only facts about one tutor for the duration of a ranking call."""

    tutor_id: str
    subjects: frozenset = frozenset()
    completed_sessions: int = 0
    subject_completed_sessions: Mapping[str, int] = field(default_factory=dict)
    total_sessions: int = 0
    non_cancelled_sessions: int = 0
    unique_students: int = 0
    review_count: int = 0
    review_mean: float = 0.0
    subject_review_means: Mapping[str, float] = field(default_factory=dict)
    availability: Optional[Mapping[str, bool]] = None
    hourly_rate_cents: Optional[int] = None
    subject_rates_cents: Mapping[str, int] = field(default_factory=dict)
    certifications: int = 0


@dataclass(frozen=True)
class RankingCriteria:
    subject_id: Optional[str] = None
    preferred_days: Tuple[str, ...] = ()
    max_budget_cents: Optional[int] = None
    grade_level: Optional[str] = None


@dataclass(frozen=True)
class ScoreBreakdown:
    subject_expertise: int
    rating: int
    success_metrics: int
    availability: int
    value: int
    experience: int

    @property
    def total(self) -> int:
        return (
            self.subject_expertise
            + self.rating
            + self.success_metrics
            + self.availability
            + self.value
            + self.experience
        )


@dataclass(frozen=True)
class RankedTutor:
    tutor_id: str
    score: float
    breakdown: ScoreBreakdown
    reasoning: List[str]


def _tier(value: float, tiers: Tiers, default: int = 0, *, strict: bool = False) -> int:
    for threshold, points in tiers:
        if (value > threshold) if strict else (value >= threshold):
            return points
    return default


# ----- subject expertise (0-25) ------------------------------------------

def score_subject_expertise(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    subject = criteria.subject_id
    if not subject:
        return 25
    if subject not in candidate.subjects:
        return 0
    sessions = candidate.subject_completed_sessions.get(subject, 0)
    score = 10 + _tier(sessions, SUBJECT_SESSION_TIERS, 2, strict=True)
    if subject in candidate.subject_review_means:
        score += _tier(candidate.subject_review_means[subject], SUBJECT_RATING_TIERS)
    return score


def explain_subject_expertise(candidate: TutorCandidate, criteria: RankingCriteria) -> List[str]:
    subject = criteria.subject_id
    if not subject:
        return ["No subject filter - full points"]
    if subject not in candidate.subjects:
        return ["Does not teach requested subject"]

    reasons = ["Teaches requested subject"]
    sessions = candidate.subject_completed_sessions.get(subject, 0)
    if sessions > 50:
        reasons.append(f"Highly experienced in subject ({sessions}+ sessions)")
    elif sessions > 20:
        reasons.append(f"Experienced in subject ({sessions} sessions)")
    elif sessions > 5:
        reasons.append(f"Some experience in subject ({sessions} sessions)")
    else:
        reasons.append(f"Limited experience in subject ({sessions} sessions)")

    mean = candidate.subject_review_means.get(subject)
    if mean is not None:
        if mean >= 4.5:
            reasons.append(f"Excellent subject-specific rating ({mean:.1f}/5)")
        elif mean >= 4.0:
            reasons.append(f"Good subject-specific rating ({mean:.1f}/5)")
        elif mean >= 3.5:
            reasons.append(f"Average subject-specific rating ({mean:.1f}/5)")
    return reasons


# ----- rating (0-20) -----------------------------------------------------

def score_rating(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    if candidate.review_count <= 0:
        return 0
    return _tier(candidate.review_mean, RATING_MEAN_TIERS, 3) + _tier(
        candidate.review_count, REVIEW_COUNT_TIERS, 1
    )


def explain_rating(candidate: TutorCandidate, criteria: RankingCriteria) -> List[str]:
    if candidate.review_count <= 0:
        return ["No reviews yet"]
    mean, count = candidate.review_mean, candidate.review_count
    reasons = []
    if mean >= 4.8:
        reasons.append(f"Exceptional rating ({mean:.2f}/5)")
    elif mean >= 4.5:
        reasons.append(f"Excellent rating ({mean:.2f}/5)")
    elif mean >= 4.0:
        reasons.append(f"Good rating ({mean:.2f}/5)")
    elif mean >= 3.5:
        reasons.append(f"Average rating ({mean:.2f}/5)")
    else:
        reasons.append(f"Below average rating ({mean:.2f}/5)")

    if count >= 50:
        reasons.append(f"High confidence ({count} reviews)")
    elif count >= 20:
        reasons.append(f"Good confidence ({count} reviews)")
    elif count >= 10:
        reasons.append(f"Moderate confidence ({count} reviews)")
    elif count >= 5:
        reasons.append(f"Some reviews ({count})")
    else:
        reasons.append(f"Few reviews ({count})")
    return reasons


# ----- success metrics (0-20) --------------------------------------------

def _completion_rate(candidate: TutorCandidate) -> Optional[float]:
    if candidate.non_cancelled_sessions <= 0:
        return None
    return candidate.completed_sessions / candidate.non_cancelled_sessions


def _repeat_ratio(candidate: TutorCandidate) -> float:
    if candidate.unique_students <= 0:
        return 0.0
    return candidate.total_sessions / candidate.unique_students


def score_success_metrics(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    if candidate.total_sessions <= 0:
        return 0
    score = 0
    rate = _completion_rate(candidate)
    if rate is not None:
        score += _tier(rate, COMPLETION_RATE_TIERS, 3)
    return score + _tier(_repeat_ratio(candidate), REPEAT_RATIO_TIERS, 2)


def explain_success_metrics(candidate: TutorCandidate, criteria: RankingCriteria) -> List[str]:
    if candidate.total_sessions <= 0:
        return ["No session history"]
    reasons = []
    rate = _completion_rate(candidate)
    if rate is not None:
        percent = f"{rate * 100:.0f}%"
        if rate >= 0.95:
            reasons.append(f"Excellent completion rate ({percent})")
        elif rate >= 0.85:
            reasons.append(f"Good completion rate ({percent})")
        elif rate >= 0.75:
            reasons.append(f"Average completion rate ({percent})")
        else:
            reasons.append(f"Below average completion rate ({percent})")

    ratio = _repeat_ratio(candidate)
    detail = f"{ratio:.1f}x avg sessions/student"
    if ratio >= 3.0:
        reasons.append(f"Excellent student retention ({detail})")
    elif ratio >= 2.0:
        reasons.append(f"Good student retention ({detail})")
    elif ratio >= 1.5:
        reasons.append(f"Some repeat students ({detail})")
    else:
        reasons.append(f"Few repeat students ({detail})")
    return reasons


# ----- availability (0-15) -----------------------------------------------

def _available_days(candidate: TutorCandidate) -> List[str]:
    return [day.lower() for day, available in (candidate.availability or {}).items() if available is True]


def _matching_days(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    wanted = {day.lower() for day in criteria.preferred_days}
    return sum(1 for day in _available_days(candidate) if day in wanted)


def score_availability(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    if not candidate.availability:
        return 0
    score = _tier(len(_available_days(candidate)), AVAILABLE_DAY_TIERS)
    if not criteria.preferred_days:
        return score + 3
    matched = _matching_days(candidate, criteria)
    if matched >= len(set(d.lower() for d in criteria.preferred_days)):
        return score + 7
    if matched > 0:
        return score + 4
    return score


def explain_availability(candidate: TutorCandidate, criteria: RankingCriteria) -> List[str]:
    if not candidate.availability:
        return ["No availability data"]
    reasons = []
    days = len(_available_days(candidate))
    if days >= 6:
        reasons.append("Very flexible schedule (6+ days available)")
    elif days >= 4:
        reasons.append(f"Flexible schedule ({days} days available)")
    elif days >= 2:
        reasons.append(f"Limited availability ({days} days available)")
    elif days == 1:
        reasons.append("Very limited availability (1 day)")

    if criteria.preferred_days:
        wanted = len(set(d.lower() for d in criteria.preferred_days))
        matched = _matching_days(candidate, criteria)
        if matched >= wanted:
            reasons.append("Available on all your preferred days")
        elif matched > 0:
            reasons.append(f"Available on {matched}/{wanted} preferred days")
    return reasons


# ----- value (0-10) ------------------------------------------------------

def resolve_price_cents(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    """Per-subject price when one is set, else the general hourly rate."""
    if criteria.subject_id:
        subject_rate = candidate.subject_rates_cents.get(criteria.subject_id)
        if subject_rate:
            return subject_rate
    return candidate.hourly_rate_cents or 0


def _value_ratio(candidate: TutorCandidate, price_cents: int) -> float:
    return candidate.review_mean / ((price_cents / 100) / 10)


def _over_budget(price_cents: int, criteria: RankingCriteria) -> bool:
    return criteria.max_budget_cents is not None and price_cents > criteria.max_budget_cents


def score_value(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    price = resolve_price_cents(candidate, criteria)
    if price <= 0:
        return NEUTRAL_VALUE_SCORE
    if _over_budget(price, criteria):
        return 0
    if candidate.review_count <= 0:
        return 5 + NEUTRAL_VALUE_SCORE
    return 5 + _tier(_value_ratio(candidate, price), VALUE_RATIO_TIERS, 2)


def explain_value(candidate: TutorCandidate, criteria: RankingCriteria) -> List[str]:
    price = resolve_price_cents(candidate, criteria)
    if price <= 0:
        return ["No pricing set"]
    if _over_budget(price, criteria):
        return ["Outside your budget"]
    reasons = ["Within your budget"]
    if candidate.review_count <= 0:
        reasons.append("No reviews yet to judge value")
        return reasons
    ratio = _value_ratio(candidate, price)
    if ratio >= 8:
        reasons.append("Excellent value for money")
    elif ratio >= 5:
        reasons.append("Good value for money")
    elif ratio >= 3:
        reasons.append("Fair value")
    else:
        reasons.append("Premium pricing")
    return reasons


# ----- experience (0-10) -------------------------------------------------

def score_experience(candidate: TutorCandidate, criteria: RankingCriteria) -> int:
    return _tier(candidate.completed_sessions, EXPERIENCE_SESSION_TIERS, 1) + _tier(
        candidate.certifications, CERTIFICATION_TIERS
    )


def explain_experience(candidate: TutorCandidate, criteria: RankingCriteria) -> List[str]:
    sessions = candidate.completed_sessions
    if sessions >= 100:
        reasons = [f"Highly experienced ({sessions}+ sessions)"]
    elif sessions >= 50:
        reasons = [f"Very experienced ({sessions} sessions)"]
    elif sessions >= 20:
        reasons = [f"Experienced ({sessions} sessions)"]
    elif sessions >= 10:
        reasons = [f"Some experience ({sessions} sessions)"]
    elif sessions >= 5:
        reasons = [f"New tutor ({sessions} sessions)"]
    else:
        reasons = [f"Very new tutor ({sessions} sessions)"]

    certs = candidate.certifications
    if certs >= 3:
        reasons.append(f"Multiple certifications ({certs})")
    elif certs >= 1:
        reasons.append(f"Certified ({certs} certification{'s' if certs > 1 else ''})")
    return reasons


Scorer = Callable[[TutorCandidate, RankingCriteria], int]
Explainer = Callable[[TutorCandidate, RankingCriteria], List[str]]

SUB_SCORES: Tuple[Tuple[str, Scorer, Explainer], ...] = (
    ("subject_expertise", score_subject_expertise, explain_subject_expertise),
    ("rating", score_rating, explain_rating),
    ("success_metrics", score_success_metrics, explain_success_metrics),
    ("availability", score_availability, explain_availability),
    ("value", score_value, explain_value),
    ("experience", score_experience, explain_experience),
)


class TutorRankingEngine:
    """Score and order tutor candidates against a learner's criteria.

    Parameters
    ----------
    max_workers:
        When greater than one, candidates are scored on a thread pool.
        Scoring is independent per candidate; the only synchronisation
        point is the final sort.
    """

    def __init__(self, max_workers: int = 1) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be positive")
        self.max_workers = int(max_workers)

    def score_candidate(self, candidate: TutorCandidate, criteria: RankingCriteria) -> RankedTutor:
        points: Dict[str, int] = {}
        reasoning: List[str] = []
        for name, scorer, explainer in SUB_SCORES:
            points[name] = scorer(candidate, criteria)
            reasoning.extend(explainer(candidate, criteria))
        breakdown = ScoreBreakdown(**points)
        return RankedTutor(
            tutor_id=candidate.tutor_id,
            score=round(float(breakdown.total), 1),
            breakdown=breakdown,
            reasoning=reasoning,
        )

    def _score_or_skip(
        self, candidate: TutorCandidate, criteria: RankingCriteria
    ) -> Optional[RankedTutor]:
        try:
            return self.score_candidate(candidate, criteria)
        except Exception:
            logger.exception("Failed to score tutor %s; skipping", candidate.tutor_id)
            return None

    def rank_tutors(
        self,
        candidates: Sequence[TutorCandidate],
        criteria: Optional[RankingCriteria] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[RankedTutor]:
        """Return candidates ordered by descending score; ties keep input order."""
        if not candidates:
            return []
        criteria = criteria or RankingCriteria()

        if self.max_workers > 1 and len(candidates) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                scored = list(pool.map(lambda c: self._score_or_skip(c, criteria), candidates))
        else:
            scored = [self._score_or_skip(c, criteria) for c in candidates]

        ranked = sorted((r for r in scored if r is not None), key=lambda r: r.score, reverse=True)
        logger.debug("Ranked %d of %d tutor candidates", len(ranked), len(candidates))
        if limit is not None:
            return ranked[: max(0, limit)]
        return ranked
