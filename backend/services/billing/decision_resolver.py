"""
InvoLex Billing Engine - Decision Resolver

Combines the rule intent, the AI confidence score and the auto-pilot policy into a
single routing action. Precedence, first match wins:

1. Rule says IGNORE -> IGNORE
2. Rule says AUTO_SYNC -> AUTO_SYNC
3. Auto-pilot on and confidence >= threshold -> AUTO_SYNC
4. Otherwise -> STANDARD
"""

from typing import Optional

from services.billing.models import AIPreview, RoutingAction


def meets_confidence_threshold(preview: AIPreview, confidence_threshold: float) -> bool:
    """Inclusive comparison: a score equal to the threshold qualifies."""
    if preview.confidence_score is None:
        return False
    return preview.confidence_score >= confidence_threshold


def resolve(
    rule_intent: Optional[RoutingAction],
    preview: AIPreview,
    autopilot_enabled: bool,
    confidence_threshold: float,
) -> RoutingAction:
    if rule_intent == RoutingAction.IGNORE:
        return RoutingAction.IGNORE
    if rule_intent == RoutingAction.AUTO_SYNC:
        return RoutingAction.AUTO_SYNC
    if autopilot_enabled and meets_confidence_threshold(preview, confidence_threshold):
        return RoutingAction.AUTO_SYNC
    return RoutingAction.STANDARD


def format_percent(value: float) -> str:
    return f"{round(value * 100)}%"
