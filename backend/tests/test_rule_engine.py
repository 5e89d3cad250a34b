"""
Unit tests for the billing rule engine.

Matching is existential over the email group per condition and conjunctive over
the conditions of a rule; the first matching rule of a matter wins.
"""
import pytest

from services.billing.models import (
    AIPreview,
    BillingCondition,
    BillingRule,
    ConditionType,
    Email,
    Matter,
    RoutingAction,
    RuleActionType,
)
from services.billing.rule_engine import (
    apply_billing_rules,
    apply_rule,
    condition_matches,
    evaluate,
    round_up_hours,
)


def _rule(rule_id, conditions, action_type, action_value=None):
    return BillingRule(
        id=rule_id,
        conditions=[BillingCondition(t, v) for t, v in conditions],
        action_type=action_type,
        action_value=action_value,
    )


def _preview(hours=0.93, matter="Acme Corp"):
    return AIPreview(description="Reviewed offer.", suggested_matter=matter, suggested_hours=hours)


class TestConditionMatching:
    """Individual condition checks against one email."""

    def test_sender_domain_strips_angle_bracket(self):
        """'Name <a@b.com>' compares on the bare, lowercased domain."""
        email = Email(id="1", sender="Bob <Bob@RivalFirm.com>", subject="", body="")
        condition = BillingCondition(ConditionType.SENDER_DOMAIN_IS, "rivalfirm.com")
        assert condition_matches(condition, email) is True

    def test_sender_domain_is_exact(self):
        """A different domain that contains the value does not match."""
        email = Email(id="1", sender="bob@notrivalfirm.com", subject="", body="")
        condition = BillingCondition(ConditionType.SENDER_DOMAIN_IS, "rivalfirm.com")
        assert condition_matches(condition, email) is False

    def test_sender_without_at_sign(self):
        """A sender with no domain never matches a domain condition."""
        email = Email(id="1", sender="postmaster", subject="", body="")
        condition = BillingCondition(ConditionType.SENDER_DOMAIN_IS, "rivalfirm.com")
        assert condition_matches(condition, email) is False

    def test_subject_contains_is_case_insensitive(self):
        """Subject check is a lowercase substring test."""
        email = Email(id="1", sender="a@b.com", subject="RE: Settlement Offer", body="")
        condition = BillingCondition(ConditionType.SUBJECT_CONTAINS, "settlement")
        assert condition_matches(condition, email) is True

    def test_body_contains(self):
        """Body check is a lowercase substring test."""
        email = Email(id="1", sender="a@b.com", subject="", body="Please see the NDA attached")
        assert condition_matches(BillingCondition(ConditionType.BODY_CONTAINS, "nda"), email) is True
        assert condition_matches(BillingCondition(ConditionType.BODY_CONTAINS, "lease"), email) is False


class TestEvaluate:
    """Rule selection for a matter and an email group."""

    def test_no_matter_returns_none(self):
        """Unknown matters have no rules to apply."""
        email = Email(id="1", sender="a@b.com", subject="x", body="y")
        assert evaluate(None, [email]) is None

    def test_matter_without_rules_returns_none(self):
        """A matter with no rules short-circuits."""
        email = Email(id="1", sender="a@b.com", subject="x", body="y")
        assert evaluate(Matter(name="Acme Corp"), [email]) is None

    def test_first_matching_rule_wins(self):
        """List order decides between two matching rules."""
        round_rule = _rule("r1", [(ConditionType.SUBJECT_CONTAINS, "offer")], RuleActionType.ROUND_UP_HOURS, "0.5")
        auto_rule = _rule("r2", [(ConditionType.SUBJECT_CONTAINS, "offer")], RuleActionType.AUTO_APPROVE_SYNC, "true")
        matter = Matter(name="Acme Corp", billing_rules=[round_rule, auto_rule])
        email = Email(id="1", sender="a@b.com", subject="Offer", body="")

        assert evaluate(matter, [email]) is round_rule

    def test_condition_is_existential_over_group(self):
        """One email of two containing the subject is enough."""
        rule = _rule("r1", [(ConditionType.SUBJECT_CONTAINS, "settlement")], RuleActionType.ROUND_UP_HOURS, "0.25")
        matter = Matter(name="Acme Corp", billing_rules=[rule])
        emails = [
            Email(id="1", sender="a@b.com", subject="Settlement offer", body=""),
            Email(id="2", sender="a@b.com", subject="Lunch", body=""),
        ]
        assert evaluate(matter, emails) is rule

    def test_conditions_are_conjunctive(self):
        """A rule with two conditions needs both satisfied across the group."""
        rule = _rule(
            "r1",
            [(ConditionType.SUBJECT_CONTAINS, "settlement"), (ConditionType.SENDER_DOMAIN_IS, "globex.com")],
            RuleActionType.AUTO_APPROVE_SYNC,
            "true",
        )
        matter = Matter(name="Acme Corp", billing_rules=[rule])
        emails = [
            Email(id="1", sender="jane@acme.com", subject="Settlement offer", body=""),
            Email(id="2", sender="jane@acme.com", subject="Lunch", body=""),
        ]
        assert evaluate(matter, emails) is None

    def test_conditions_may_be_satisfied_by_different_emails(self):
        """Each condition only needs some email of the group."""
        rule = _rule(
            "r1",
            [(ConditionType.SUBJECT_CONTAINS, "settlement"), (ConditionType.SENDER_DOMAIN_IS, "globex.com")],
            RuleActionType.AUTO_APPROVE_SYNC,
            "true",
        )
        matter = Matter(name="Acme Corp", billing_rules=[rule])
        emails = [
            Email(id="1", sender="jane@acme.com", subject="Settlement offer", body=""),
            Email(id="2", sender="ops@globex.com", subject="Lunch", body=""),
        ]
        assert evaluate(matter, emails) is rule


class TestApplyRule:
    """Action application on a preview copy."""

    def test_round_up_to_quarter_hour(self):
        """0.93h rounded up by 0.25 is exactly 1.0."""
        rule = _rule("r1", [], RuleActionType.ROUND_UP_HOURS, "0.25")
        application = apply_rule(rule, _preview(hours=0.93))

        assert application.preview.suggested_hours == 1.0
        assert application.intent == RoutingAction.STANDARD
        assert application.message == "Hours rounded up to nearest 0.25 by rule."
        assert application.preview.rule_applied_message == application.message

    def test_round_up_is_idempotent_on_multiples(self):
        """1.0h stays 1.0 with a 0.25 increment."""
        rule = _rule("r1", [], RuleActionType.ROUND_UP_HOURS, 0.25)
        assert apply_rule(rule, _preview(hours=1.0)).preview.suggested_hours == 1.0

    @pytest.mark.parametrize("hours,increment,expected", [
        (1.1, 0.1, 1.1),
        (0.01, 0.1, 0.1),
        (0.6, 0.2, 0.6),
        (2.05, 0.5, 2.5),
    ])
    def test_round_up_hours_values(self, hours, increment, expected):
        """Float error never pushes an exact multiple to the next step."""
        assert round_up_hours(hours, increment) == pytest.approx(expected)

    @pytest.mark.parametrize("increment", ["0", "-0.5", "abc", None])
    def test_round_up_with_bad_increment_is_noop(self, increment):
        """Non-positive or malformed increments leave hours untouched."""
        rule = _rule("r1", [], RuleActionType.ROUND_UP_HOURS, increment)
        application = apply_rule(rule, _preview(hours=0.93))

        assert application.preview.suggested_hours == 0.93
        assert application.message is None
        assert application.intent == RoutingAction.STANDARD

    def test_round_up_without_hours_is_noop(self):
        """Missing hours are not invented."""
        rule = _rule("r1", [], RuleActionType.ROUND_UP_HOURS, "0.25")
        application = apply_rule(rule, _preview(hours=None))
        assert application.preview.suggested_hours is None
        assert application.message is None

    def test_set_fixed_hours(self):
        """Positive fixed hours replace the estimate."""
        rule = _rule("r1", [], RuleActionType.SET_FIXED_HOURS, "1.5")
        application = apply_rule(rule, _preview(hours=0.3))

        assert application.preview.suggested_hours == 1.5
        assert application.message == "Hours set to 1.5 by rule."
        assert application.intent == RoutingAction.STANDARD

    def test_set_fixed_hours_requires_positive_value(self):
        """Zero fixed hours is a no-op."""
        rule = _rule("r1", [], RuleActionType.SET_FIXED_HOURS, "0")
        assert apply_rule(rule, _preview(hours=0.3)).preview.suggested_hours == 0.3

    def test_ignore_sender_domain(self):
        """IGNORE rules carry the domain in the message."""
        rule = _rule("r1", [], RuleActionType.IGNORE_SENDER_DOMAIN, "rivalfirm.com")
        application = apply_rule(rule, _preview())

        assert application.intent == RoutingAction.IGNORE
        assert application.message == "Ignored based on domain rule: rivalfirm.com"

    def test_auto_approve_sync(self):
        """AUTO_APPROVE_SYNC resolves to AUTO_SYNC intent."""
        rule = _rule("r1", [], RuleActionType.AUTO_APPROVE_SYNC, "true")
        application = apply_rule(rule, _preview())

        assert application.intent == RoutingAction.AUTO_SYNC
        assert application.message == "This entry will be automatically approved and synced based on your rules."

    def test_input_preview_is_not_mutated(self):
        """The engine works on a copy of the AI preview."""
        preview = _preview(hours=0.93)
        apply_rule(_rule("r1", [], RuleActionType.ROUND_UP_HOURS, "0.25"), preview)

        assert preview.suggested_hours == 0.93
        assert preview.justification is None

    def test_existing_justification_is_kept(self):
        """The rule message is added next to the AI justification."""
        preview = _preview()
        preview.justification = {"matter": "Sender is Acme counsel", "description": "Offer review"}
        application = apply_rule(_rule("r1", [], RuleActionType.SET_FIXED_HOURS, "2"), preview)

        assert application.preview.justification["matter"] == "Sender is Acme counsel"
        assert application.preview.justification["rule_applied_message"] == "Hours set to 2 by rule."


class TestApplyBillingRules:
    """Matter lookup plus evaluation."""

    def test_uses_suggested_matter_rules(self):
        """Only the suggested matter's rules are considered."""
        rule = _rule("r1", [(ConditionType.SUBJECT_CONTAINS, "offer")], RuleActionType.ROUND_UP_HOURS, "0.25")
        matters = [Matter(name="Acme Corp", billing_rules=[rule]), Matter(name="Globex Litigation")]
        emails = [Email(id="1", sender="a@b.com", subject="Offer", body="")]

        acme = apply_billing_rules(_preview(matter="Acme Corp"), emails, matters)
        globex = apply_billing_rules(_preview(matter="Globex Litigation"), emails, matters)

        assert acme.preview.suggested_hours == 1.0
        assert acme.rule is rule
        assert globex.preview.suggested_hours == 0.93
        assert globex.rule is None

    def test_unknown_matter_is_standard(self):
        """An unrecognized matter name yields the preview unchanged."""
        preview = _preview(matter="Nobody LLC")
        application = apply_billing_rules(preview, [], [Matter(name="Acme Corp")])

        assert application.intent == RoutingAction.STANDARD
        assert application.preview is preview
