"""Escalation from the study assistant to a human tutor.

Rules live in :data:`ESCALATION_RULES`, an ordered tuple of
``(trigger_type, rule)`` pairs. :meth:`EscalationEngine.should_escalate`
walks it once and returns the first decision that escalates, so rule
priority is the tuple order and nothing else.

The integrity guard (:func:`detect_integrity_risk`) sits outside the chain:
callers check it before normal chat handling and short-circuit on a hit.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

from engines.mastery import LearnerProgressRecord, calculate_mastery_score

logger = logging.getLogger(__name__)


def _keyword_patterns(*keywords: str) -> Tuple[re.Pattern, ...]:
    """Compile whole-word patterns; keywords may carry their own suffix groups."""
    return tuple(re.compile(rf"\b{keyword}\b", re.IGNORECASE) for keyword in keywords)


ASSIGNMENT_KEYWORDS = _keyword_patterns(
    r"assignments?",
    r"homework",
    r"projects?",
    r"do my",
    r"solve this for me",
    r"give me the answer",
    r"complete this",
)

COMPLEX_KEYWORDS = _keyword_patterns(
    r"advanced",
    r"graduate level",
    r"research",
    r"thesis",
    r"don't understand at all",
    r"completely lost",
    r"confused",
)

COMPLEX_TOPIC_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bthesis\b",
        r"\bdissertation\b",
        r"research methodology",
        r"advanced.*algorithm",
        r"machine learning",
        r"quantum",
        r"graduate level",
    )
)

TUTOR_REQUEST_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"recommend.*tutor",
        r"find.*tutor",
        r"need.*tutor",
        r"book.*tutor",
        r"get.*tutor",
        r"tutor.*help",
        r"human.*help",
        r"real.*teacher",
    )
)

INTEGRITY_RISK_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"solve.*for me",
        r"do my.*(?:homework|assignment|project)",
        r"give me.*answer",
        r"complete.*(?:homework|assignment)",
        r"write.*(?:essay|paper|report).*for me",
        r"just tell me.*answer",
        r"plagiarism",
        r"cheat",
    )
)

PRICING_KEYWORDS = _keyword_patterns(
    r"how much",
    r"costs?",
    r"prices?",
    r"pricing",
    r"expensive",
    r"cheap(?:er)?",
    r"afford(?:able)?",
    r"rates?",
    r"fees?",
)

COMPARISON_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"ai.*(?:vs|versus|compared to).*tutor",
        r"tutor.*(?:vs|versus|compared to).*ai",
        r"difference.*between.*ai.*tutor",
        r"should i.*tutor.*or.*ai",
        r"why.*tutor.*instead.*ai",
    )
)

CTA_BUTTONS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "high": (("View Recommended Tutors", "view_tutors"), ("Continue with AI", "dismiss")),
    "medium": (("Browse Tutors", "view_tutors"), ("Maybe Later", "dismiss")),
    "low": (("Explore Tutors", "view_tutors"), ("No Thanks", "dismiss")),
}

LONG_CONVERSATION_LENGTH = 15


@dataclass(frozen=True)
class EscalationContext:
    message: str
    progress: Optional[LearnerProgressRecord] = None
    conversation_length: int = 0
    conversation_history: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EscalationDecision:
    should_escalate: bool
    priority: str = "low"
    reason: str = ""
    trigger_type: str = "none"
    suggested_subject: Optional[str] = None


NO_ESCALATION = EscalationDecision(should_escalate=False)


@dataclass(frozen=True)
class EscalationSuggestion:
    priority: str
    reason: str
    trigger_type: str
    message_key: str
    cta_buttons: Tuple[Tuple[str, str], ...]
    suggested_subject: Optional[str] = None


@dataclass
class EscalationEvent:
    """One learner interaction with an escalation banner."""

    user_id: str
    trigger_type: str
    priority: str
    user_action: str  # viewed | clicked_view_tutors | dismissed | booked_tutor
    timestamp: datetime
    conversation_id: Optional[str] = None
    tutor_id: Optional[str] = None


Rule = Callable[[EscalationContext, Optional[datetime]], EscalationDecision]


def _matches_any(message: str, patterns: Sequence[re.Pattern]) -> bool:
    return any(pattern.search(message) for pattern in patterns)


def _subject(progress: Optional[LearnerProgressRecord]) -> Optional[str]:
    if progress is None:
        return None
    return progress.subject_id or None


def check_assignment_help(context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
    if not _matches_any(context.message, ASSIGNMENT_KEYWORDS):
        return NO_ESCALATION
    return EscalationDecision(
        should_escalate=True,
        priority="high",
        reason=(
            "I can't complete assignments for you, but I can help you understand the concepts! "
            "A tutor can guide you through problem-solving while maintaining academic integrity."
        ),
        trigger_type="assignment_help",
    )


def check_repeated_failure(context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
    progress = context.progress
    if progress is None or progress.consecutive_incorrect < 3:
        return NO_ESCALATION
    return EscalationDecision(
        should_escalate=True,
        priority="high",
        reason=(
            f"You've struggled with {progress.consecutive_incorrect} consecutive quizzes. "
            "A tutor can provide personalized guidance to help you understand these concepts better."
        ),
        trigger_type="repeated_failure",
        suggested_subject=_subject(progress),
    )


def check_low_mastery_plateau(context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
    progress = context.progress
    if progress is None:
        return NO_ESCALATION
    mastery = calculate_mastery_score(progress, now)
    if mastery < 40 and progress.total_attempts >= 5:
        return EscalationDecision(
            should_escalate=True,
            priority="medium",
            reason=(
                f"After {progress.total_attempts} attempts, your mastery is still at {mastery}%. "
                "A tutor can help you break through this learning plateau with personalized strategies."
            ),
            trigger_type="low_mastery",
            suggested_subject=_subject(progress),
        )
    if 40 <= mastery < 60 and progress.total_attempts >= 10:
        return EscalationDecision(
            should_escalate=True,
            priority="low",
            reason="You've been working hard! A tutor could help you master this topic faster and more efficiently.",
            trigger_type="low_mastery",
            suggested_subject=_subject(progress),
        )
    return NO_ESCALATION


def check_complex_topic(context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
    if _matches_any(context.message, COMPLEX_KEYWORDS):
        reason = (
            "This is an advanced topic! While I can provide general guidance, a specialized tutor can "
            "offer deeper insights, real-world examples, and personalized strategies."
        )
    elif _matches_any(context.message, COMPLEX_TOPIC_PATTERNS):
        reason = "This topic requires advanced expertise. A tutor with specialized knowledge can provide the depth you need."
    else:
        return NO_ESCALATION
    return EscalationDecision(should_escalate=True, priority="medium", reason=reason, trigger_type="complex_topic")


def check_long_conversation(context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
    if context.conversation_length < LONG_CONVERSATION_LENGTH:
        return NO_ESCALATION
    progress = context.progress
    if progress is None:
        return EscalationDecision(
            should_escalate=True,
            priority="low",
            reason=(
                "We've covered a lot together! If you'd like more interactive practice and immediate "
                "feedback, consider booking a session with one of our tutors."
            ),
            trigger_type="long_conversation",
        )
    if calculate_mastery_score(progress, now) < 50:
        return EscalationDecision(
            should_escalate=True,
            priority="low",
            reason=(
                "We've had a great conversation, but sometimes a different teaching approach can help. "
                "Would you like to try working with a tutor for a more interactive learning experience?"
            ),
            trigger_type="long_conversation",
            suggested_subject=_subject(progress),
        )
    return NO_ESCALATION


def check_explicit_tutor_request(context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
    if not _matches_any(context.message, TUTOR_REQUEST_PATTERNS):
        return NO_ESCALATION
    return EscalationDecision(
        should_escalate=True,
        priority="medium",
        reason="Great idea! Our tutors are experienced educators who can provide personalized, one-on-one instruction.",
        trigger_type="user_request",
    )


ESCALATION_RULES: Tuple[Tuple[str, Rule], ...] = (
    ("assignment_help", check_assignment_help),
    ("repeated_failure", check_repeated_failure),
    ("low_mastery", check_low_mastery_plateau),
    ("complex_topic", check_complex_topic),
    ("long_conversation", check_long_conversation),
    ("user_request", check_explicit_tutor_request),
)


class EscalationEngine:
    """Evaluate the escalation rule chain for one finished assistant turn."""

    def __init__(self, rules: Sequence[Tuple[str, Rule]] = ESCALATION_RULES):
        self.rules = tuple(rules)

    def should_escalate(self, context: EscalationContext, now: Optional[datetime] = None) -> EscalationDecision:
        for name, rule in self.rules:
            decision = rule(context, now)
            if decision.should_escalate:
                logger.debug("Escalation rule %s fired (priority=%s)", name, decision.priority)
                return decision
        return NO_ESCALATION


def build_call_to_action(decision: EscalationDecision) -> EscalationSuggestion:
    """Hand-off payload for the text and tutor-recommendation collaborators."""
    if not decision.should_escalate:
        raise ValueError("Cannot build a tutor suggestion for a decision that does not escalate")
    return EscalationSuggestion(
        priority=decision.priority,
        reason=decision.reason,
        trigger_type=decision.trigger_type,
        message_key=decision.trigger_type,
        cta_buttons=CTA_BUTTONS[decision.priority],
        suggested_subject=decision.suggested_subject,
    )


def detect_integrity_risk(message: str) -> bool:
    """True for "do it for me" requests that bypass normal chat handling."""
    return _matches_any(message, INTEGRITY_RISK_PATTERNS)


def is_asking_about_pricing(message: str) -> bool:
    return _matches_any(message, PRICING_KEYWORDS)


def is_comparing_ai_vs_tutor(message: str) -> bool:
    return _matches_any(message, COMPARISON_PATTERNS)


def classify_boundary_intent(message: str) -> Optional[str]:
    """Response key for messages answered without the rule chain, if any."""
    if detect_integrity_risk(message):
        return "academic_integrity"
    if is_comparing_ai_vs_tutor(message):
        return "ai_vs_tutor"
    if is_asking_about_pricing(message):
        return "pricing"
    return None


def summarize_escalation_events(events: Sequence[EscalationEvent]) -> Dict[str, Any]:
    """View, click and booking rates plus the trigger that produced most bookings."""
    viewed = sum(1 for e in events if e.user_action == "viewed")
    clicked = sum(1 for e in events if e.user_action.startswith("clicked"))
    booked = [e for e in events if e.user_action == "booked_tutor"]

    bookings_by_trigger = Counter(e.trigger_type for e in booked)
    top_trigger = bookings_by_trigger.most_common(1)[0][0] if bookings_by_trigger else "none"

    return {
        "total_events": len(events),
        "view_rate": viewed / len(events) if events else 0.0,
        "click_rate": clicked / viewed if viewed else 0.0,
        "booking_rate": len(booked) / clicked if clicked else 0.0,
        "top_trigger": top_trigger,
    }
