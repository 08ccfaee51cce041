"""Pure personalization engines: mastery, tutor ranking and escalation."""
