from datetime import datetime, timezone

import pytest

from engines.escalation import (
    ESCALATION_RULES,
    NO_ESCALATION,
    EscalationContext,
    EscalationDecision,
    EscalationEngine,
    EscalationEvent,
    build_call_to_action,
    classify_boundary_intent,
    detect_integrity_risk,
    summarize_escalation_events,
)
from engines.mastery import LearnerProgressRecord

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _progress(**overrides) -> LearnerProgressRecord:
    values = dict(learner_id="alice", subject_id="math", topic_id="fractions")
    values.update(overrides)
    return LearnerProgressRecord(**values)


def _decide(message: str, progress=None, conversation_length: int = 0):
    context = EscalationContext(message=message, progress=progress, conversation_length=conversation_length)
    return EscalationEngine().should_escalate(context, NOW)


FAILING = dict(total_attempts=5, correct_answers=1, incorrect_answers=4, consecutive_incorrect=3)


@pytest.mark.parametrize(
    "message",
    [
        "hello",
        "I'm completely lost with quantum physics",
        "Can you help me find a tutor?",
        "",
    ],
)
def test_scenario_b_repeated_failure_wins(message):
    decision = _decide(message, _progress(**FAILING), conversation_length=20)
    assert decision.should_escalate is True
    assert decision.trigger_type == "repeated_failure"
    assert decision.priority == "high"
    assert decision.suggested_subject == "math"


@pytest.mark.parametrize("progress", [None, _progress(**FAILING)])
def test_scenario_e_homework_request(progress):
    decision = _decide("can you do my homework for me", progress)
    assert decision.trigger_type == "assignment_help"
    assert decision.priority == "high"


def test_low_mastery_plateau_medium():
    # mastery 25 after five attempts
    progress = _progress(total_attempts=5, correct_answers=1, incorrect_answers=4)
    decision = _decide("what next?", progress)
    assert decision.trigger_type == "low_mastery"
    assert decision.priority == "medium"
    assert "25%" in decision.reason


def test_low_mastery_plateau_low_variant():
    # mastery 48 after ten attempts
    progress = _progress(total_attempts=10, correct_answers=5, incorrect_answers=5)
    decision = _decide("what next?", progress)
    assert decision.trigger_type == "low_mastery"
    assert decision.priority == "low"


@pytest.mark.parametrize("message", ["I'm completely lost here", "Tell me about quantum computing"])
def test_complex_topic(message):
    decision = _decide(message)
    assert decision.trigger_type == "complex_topic"
    assert decision.priority == "medium"


def test_long_conversation_without_progress():
    decision = _decide("ok thanks", conversation_length=15)
    assert decision.trigger_type == "long_conversation"
    assert decision.priority == "low"


def test_long_conversation_with_good_mastery_does_not_escalate():
    progress = _progress(
        total_attempts=10, correct_answers=8, incorrect_answers=2, current_difficulty="medium", last_practiced_at=NOW
    )
    assert _decide("ok thanks", progress, conversation_length=30) == NO_ESCALATION


def test_explicit_tutor_request():
    decision = _decide("Can you help me find a tutor?")
    assert decision.trigger_type == "user_request"
    assert decision.priority == "medium"


def test_no_rule_matches():
    decision = _decide("What is photosynthesis?")
    assert decision.should_escalate is False
    assert decision.priority == "low"
    assert decision.reason == ""
    assert decision.trigger_type == "none"


@pytest.mark.parametrize(
    "message",
    [
        "Can you explain hypothesis testing?",
        "How does photosynthesis work?",
        "What is a projectile?",
        "Where do researchers publish?",
    ],
)
def test_keywords_match_whole_words_only(message):
    assert _decide(message).should_escalate is False


@pytest.mark.parametrize("message", ["My thesis is due soon", "I'm so CONFUSED", "Help with my assignments"])
def test_keywords_still_match_as_words(message):
    assert _decide(message).should_escalate is True


def test_rules_are_checked_in_fixed_order():
    assert [name for name, _ in ESCALATION_RULES] == [
        "assignment_help",
        "repeated_failure",
        "low_mastery",
        "complex_topic",
        "long_conversation",
        "user_request",
    ]


def test_rule_order_is_the_only_priority():
    context = EscalationContext(message="I need a tutor for my thesis")
    assert EscalationEngine().should_escalate(context, NOW).trigger_type == "complex_topic"
    reversed_engine = EscalationEngine(rules=tuple(reversed(ESCALATION_RULES)))
    assert reversed_engine.should_escalate(context, NOW).trigger_type == "user_request"


@pytest.mark.parametrize(
    "priority, labels",
    [
        ("high", ("View Recommended Tutors", "Continue with AI")),
        ("medium", ("Browse Tutors", "Maybe Later")),
        ("low", ("Explore Tutors", "No Thanks")),
    ],
)
def test_call_to_action_buttons_follow_priority(priority, labels):
    suggestion = build_call_to_action(
        EscalationDecision(should_escalate=True, priority=priority, reason="r", trigger_type="user_request")
    )
    assert tuple(label for label, _ in suggestion.cta_buttons) == labels
    assert [action for _, action in suggestion.cta_buttons] == ["view_tutors", "dismiss"]
    assert suggestion.message_key == "user_request"


def test_call_to_action_requires_escalation():
    with pytest.raises(ValueError):
        build_call_to_action(NO_ESCALATION)


def test_integrity_guard_and_boundary_intents():
    assert detect_integrity_risk("Please solve this equation for me")
    assert detect_integrity_risk("write my essay for me")
    assert not detect_integrity_risk("How do I factor a quadratic?")

    assert classify_boundary_intent("just tell me the answer") == "academic_integrity"
    assert classify_boundary_intent("Should I use a tutor or the AI?") == "ai_vs_tutor"
    assert classify_boundary_intent("How much does a tutor cost?") == "pricing"
    assert classify_boundary_intent("Explain photosynthesis") is None


@pytest.mark.parametrize(
    "message",
    ["How accurate is this?", "Generate a practice question", "I spilled coffee on my notes", "Give me feedback"],
)
def test_pricing_words_inside_other_words_are_ignored(message):
    assert classify_boundary_intent(message) is None


@pytest.mark.parametrize("message", ["What are the tutor fees?", "Is it affordable?", "What's the hourly rate?"])
def test_pricing_intent(message):
    assert classify_boundary_intent(message) == "pricing"


def _event(action: str, trigger: str = "low_mastery") -> EscalationEvent:
    return EscalationEvent(user_id="u1", trigger_type=trigger, priority="medium", user_action=action, timestamp=NOW)


def test_summarize_escalation_events():
    events = [_event("viewed") for _ in range(4)]
    events += [_event("clicked_view_tutors"), _event("clicked_view_tutors")]
    events.append(_event("booked_tutor", trigger="repeated_failure"))
    summary = summarize_escalation_events(events)
    assert summary["total_events"] == 7
    assert summary["view_rate"] == pytest.approx(4 / 7)
    assert summary["click_rate"] == pytest.approx(0.5)
    assert summary["booking_rate"] == pytest.approx(0.5)
    assert summary["top_trigger"] == "repeated_failure"


def test_summarize_without_events():
    assert summarize_escalation_events([]) == {
        "total_events": 0,
        "view_rate": 0.0,
        "click_rate": 0.0,
        "booking_rate": 0.0,
        "top_trigger": "none",
    }
