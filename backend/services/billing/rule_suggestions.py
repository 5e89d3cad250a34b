"""
InvoLex Billing Engine - Rule Suggestions

Looks at the user's recent description corrections and asks the AI for one
automation rule. Needs at least three corrections; the same suggestion is never
offered twice in a row.
"""

import json
import logging
from typing import List, Optional

from services.billing.ai_collaborator import BillingAI, RuleSuggestion
from services.billing.config import RULE_SUGGESTION_MIN_CORRECTIONS
from services.billing.models import Correction, Matter

logger = logging.getLogger(__name__)


class RuleSuggester:
    def __init__(self, ai: BillingAI, min_corrections: int = RULE_SUGGESTION_MIN_CORRECTIONS):
        self.ai = ai
        self.min_corrections = min_corrections
        self._last_key: Optional[str] = None

    async def check(self, corrections: List[Correction], matters: List[Matter]) -> Optional[RuleSuggestion]:
        if len(corrections) < self.min_corrections:
            return None

        existing_rules = [rule for matter in matters for rule in matter.billing_rules]
        try:
            suggestion = await self.ai.suggest_billing_rule(corrections, existing_rules, matters)
        except Exception as e:
            logger.error("Rule suggestion failed: %s", e)
            return None
        if suggestion is None:
            return None

        key = json.dumps(suggestion.rule.to_dict(), sort_keys=True)
        if key == self._last_key:
            logger.debug("Suppressing repeated rule suggestion %s", suggestion.rule.id)
            return None
        self._last_key = key
        logger.info("New billing rule suggested for matter '%s'", suggestion.target_matter_name)
        return suggestion
