"""
InvoLex Billing Engine - Rule Engine

Evaluates a matter's ordered billing rules against the emails behind one candidate
billable event, then applies the winning rule's action to the AI preview.

Matching semantics:
- A condition is satisfied when it matches at least one of the source emails
- A rule matches when every one of its conditions is satisfied
- Rules are evaluated in list order; the first match wins

Pure functions only. No I/O, no shared state.
"""

import math
import logging
from dataclasses import dataclass
from typing import Optional, List, Any

from services.billing.models import (
    AIPreview,
    BillingCondition,
    BillingRule,
    ConditionType,
    Email,
    Matter,
    RoutingAction,
    RuleActionType,
    find_matter,
)

logger = logging.getLogger(__name__)


@dataclass
class RuleApplication:
    """Preview after the matched rule ran, with the routing intent it implies."""
    preview: AIPreview
    intent: RoutingAction = RoutingAction.STANDARD
    rule: Optional[BillingRule] = None
    message: Optional[str] = None


# =============================================================================
# MATCHING
# =============================================================================

def condition_matches(condition: BillingCondition, email: Email) -> bool:
    value = (condition.value or "").lower()

    if condition.type == ConditionType.SENDER_DOMAIN_IS:
        return email.sender_domain == value
    if condition.type == ConditionType.SUBJECT_CONTAINS:
        return value in email.subject.lower()
    if condition.type == ConditionType.BODY_CONTAINS:
        return value in email.body.lower()
    return False


def rule_matches(rule: BillingRule, source_emails: List[Email]) -> bool:
    return all(
        any(condition_matches(condition, email) for email in source_emails)
        for condition in rule.conditions
    )


def evaluate(matter: Optional[Matter], source_emails: List[Email]) -> Optional[BillingRule]:
    """Return the first rule of the matter that matches the email group, or None."""
    if matter is None or not matter.billing_rules:
        return None
    for rule in matter.billing_rules:
        if rule_matches(rule, source_emails):
            return rule
    return None


# =============================================================================
# ACTIONS
# =============================================================================

def _to_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number:  # NaN
        return None
    return number


def _format_number(value: float) -> str:
    return f"{value:g}"


def round_up_hours(hours: float, increment: float) -> float:
    """Round hours up to the next multiple of increment (0.93 by 0.25 -> 1.0)."""
    # Round the quotient first so exact multiples survive float error (1.1 / 0.1)
    steps = math.ceil(round(hours / increment, 9))
    return round(steps * increment, 6)


def apply_rule(rule: BillingRule, preview: AIPreview) -> RuleApplication:
    """
    Apply one rule's action to a copy of the preview.

    Malformed numeric values leave the hours untouched. A message is attached to
    the preview justification only when the action had an effect.
    """
    modified = preview.copy()
    justification = dict(modified.justification or {"matter": "", "description": ""})
    intent = RoutingAction.STANDARD
    message = None

    if rule.action_type == RuleActionType.IGNORE_SENDER_DOMAIN:
        intent = RoutingAction.IGNORE
        message = f"Ignored based on domain rule: {rule.action_value}"

    elif rule.action_type == RuleActionType.ROUND_UP_HOURS:
        increment = _to_number(rule.action_value)
        if modified.suggested_hours and increment is not None and increment > 0:
            modified.suggested_hours = round_up_hours(modified.suggested_hours, increment)
            message = f"Hours rounded up to nearest {_format_number(increment)} by rule."

    elif rule.action_type == RuleActionType.SET_FIXED_HOURS:
        fixed = _to_number(rule.action_value)
        if fixed is not None and fixed > 0:
            modified.suggested_hours = fixed
            message = f"Hours set to {_format_number(fixed)} by rule."

    elif rule.action_type == RuleActionType.AUTO_APPROVE_SYNC:
        intent = RoutingAction.AUTO_SYNC
        message = "This entry will be automatically approved and synced based on your rules."

    if message:
        justification["rule_applied_message"] = message
    modified.justification = justification

    return RuleApplication(preview=modified, intent=intent, rule=rule, message=message)


def apply_billing_rules(
    preview: AIPreview,
    source_emails: List[Email],
    matters: List[Matter],
) -> RuleApplication:
    """Look up the suggested matter, evaluate its rules and apply the winner."""
    matter = find_matter(matters, preview.suggested_matter)
    rule = evaluate(matter, source_emails)
    if rule is None:
        return RuleApplication(preview=preview)

    application = apply_rule(rule, preview)
    logger.debug(
        "Rule %s (%s) matched matter '%s' -> %s",
        rule.id, rule.action_type.value, matter.name, application.intent.value
    )
    return application
