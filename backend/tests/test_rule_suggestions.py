"""
Tests for personalization rule suggestions.
"""
import pytest

from services.billing.ai_collaborator import RuleSuggestion
from services.billing.models import (
    BillingCondition,
    BillingRule,
    ConditionType,
    Correction,
    RuleActionType,
)
from services.billing.rule_suggestions import RuleSuggester


def _corrections(count):
    return [
        Correction(f"Reviewed email {i}.", f"Reviewed correspondence from opposing counsel {i}.", f"body {i}")
        for i in range(count)
    ]


def _suggestion(domain="rivalfirm.com"):
    rule = BillingRule(
        id="rule-suggested",
        conditions=[BillingCondition(ConditionType.SENDER_DOMAIN_IS, domain)],
        action_type=RuleActionType.ROUND_UP_HOURS,
        action_value="0.25",
    )
    return RuleSuggestion(
        justification=f"You always round up emails from {domain}.",
        rule=rule,
        target_matter_name="Globex Litigation",
    )


class TestRuleSuggester:
    """Threshold, error handling and repeat suppression."""

    @pytest.mark.asyncio
    async def test_below_minimum_skips_ai(self, ai, matters):
        """Two corrections are not enough to look for a pattern."""
        result = await RuleSuggester(ai).check(_corrections(2), matters)

        assert result is None
        ai.suggest_billing_rule.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_returns_suggestion_with_existing_rules(self, ai, matters, ignore_rivalfirm_rule):
        """The AI sees every existing rule so it does not repeat one."""
        matters[1].billing_rules.append(ignore_rivalfirm_rule)
        ai.suggest_billing_rule.return_value = _suggestion()

        result = await RuleSuggester(ai).check(_corrections(3), matters)

        assert result.target_matter_name == "Globex Litigation"
        args = ai.suggest_billing_rule.await_args.args
        assert args[1] == [ignore_rivalfirm_rule]

    @pytest.mark.asyncio
    async def test_same_suggestion_not_repeated(self, ai, matters):
        """An identical rule is offered only once in a row."""
        ai.suggest_billing_rule.return_value = _suggestion()
        suggester = RuleSuggester(ai)

        first = await suggester.check(_corrections(3), matters)
        second = await suggester.check(_corrections(4), matters)

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_different_suggestion_is_offered(self, ai, matters):
        """A new rule after a previous one comes through."""
        suggester = RuleSuggester(ai)
        ai.suggest_billing_rule.return_value = _suggestion("rivalfirm.com")
        await suggester.check(_corrections(3), matters)

        ai.suggest_billing_rule.return_value = _suggestion("globex.com")
        result = await suggester.check(_corrections(3), matters)

        assert result.rule.conditions[0].value == "globex.com"

    @pytest.mark.asyncio
    async def test_ai_error_returns_none(self, ai, matters):
        """A failing AI call never breaks the save flow."""
        ai.suggest_billing_rule.side_effect = RuntimeError("quota")
        assert await RuleSuggester(ai).check(_corrections(5), matters) is None

    @pytest.mark.asyncio
    async def test_no_pattern(self, ai, matters):
        """A null suggestion is passed through as None."""
        assert await RuleSuggester(ai).check(_corrections(3), matters) is None
