"""
InvoLex Billing Engine - AI Collaborator

Turns raw email text into structured billing previews. The engine only depends on
the BillingAI contract; GeminiBillingAI implements it with google-genai and JSON
responses.

Calls:
- group_and_summarize: batch scan, partitions emails into billable groups
- triage_email: single email, BILLABLE / NOT_BILLABLE / DUPLICATE_SUSPECTED
- generate_live_preview: quick preview while a reply or new email is drafted
- suggest_billing_rule: proposes one rule from recent description corrections
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any, List

from google import genai
from google.genai import types

from services.billing.config import (
    BILLING_AI_MODEL,
    GEMINI_API_KEY,
    GROUPING_BODY_CHARS,
    MAX_CORRECTION_EXAMPLES,
    MAX_STORED_CORRECTIONS,
)
from services.billing.models import (
    AIPreview,
    BillableEntry,
    BillingRule,
    Correction,
    Email,
    Matter,
    TriageStatus,
)

logger = logging.getLogger(__name__)

CLASSIFIER_STATUSES = (
    TriageStatus.BILLABLE,
    TriageStatus.NOT_BILLABLE,
    TriageStatus.DUPLICATE_SUSPECTED,
)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class GroupSummary:
    """One candidate billable event: the emails behind it and their preview."""
    email_ids: List[str]
    preview: AIPreview

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GroupSummary":
        return cls(
            email_ids=[str(i) for i in data.get("email_ids") or []],
            preview=AIPreview.from_dict(data.get("preview") or {}),
        )


@dataclass
class TriageClassification:
    status: TriageStatus
    reason: Optional[str] = None
    preview: Optional[AIPreview] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TriageClassification":
        """
        Validate the classifier payload.

        Raises ValueError for an unknown decision, a BILLABLE decision without a
        preview, or a non-billable decision without a reason.
        """
        status = TriageStatus(data.get("decision"))
        if status not in CLASSIFIER_STATUSES:
            raise ValueError(f"Unexpected triage decision: {status.value}")
        reason = data.get("reason")
        preview_data = data.get("preview")

        if status == TriageStatus.BILLABLE:
            if not preview_data:
                raise ValueError("BILLABLE decision returned without a preview")
            return cls(status=status, reason=reason, preview=AIPreview.from_dict(preview_data))
        if not reason:
            raise ValueError(f"{status.value} decision returned without a reason")
        return cls(status=status, reason=reason)


@dataclass
class RuleSuggestion:
    justification: str
    rule: BillingRule
    target_matter_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "justification": self.justification,
            "rule": self.rule.to_dict(),
            "target_matter_name": self.target_matter_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleSuggestion":
        return cls(
            justification=data.get("justification", ""),
            rule=BillingRule.from_dict(data["rule"]),
            target_matter_name=data.get("target_matter_name", ""),
        )


# =============================================================================
# PROMPT HELPERS
# =============================================================================

def format_correction_examples(corrections: List[Correction]) -> str:
    if not corrections:
        return "No examples provided."
    blocks = []
    for c in corrections[:MAX_CORRECTION_EXAMPLES]:
        blocks.append(
            "---\n"
            f"EMAIL CONTEXT: \"{c.email_body[:200]}...\"\n"
            f"ORIGINAL SUGGESTION: \"{c.original_description}\"\n"
            f"PREFERRED WORDING: \"{c.corrected_description}\"\n"
            "---"
        )
    return "\n".join(blocks)


def _format_date(value: str) -> str:
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
    except (AttributeError, ValueError):
        return value


def format_external_entries(entries: List[BillableEntry]) -> str:
    if not entries:
        return "No recent external entries."
    return "\n".join(
        f"- On {_format_date(e.date)}, billed {e.hours}h to \"{e.matter}\" for: \"{e.description}\""
        for e in entries
    )


def matter_names(matters: List[Matter]) -> str:
    return ", ".join(m.name for m in matters)


PREVIEW_SCHEMA = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "suggested_matter": {"type": "string"},
        "suggested_hours": {"type": "number"},
        "action_items": {"type": "array", "items": {"type": "string"}},
        "detailed_breakdown": {"type": "array", "items": {"type": "string"}},
        "justification": {
            "type": "object",
            "properties": {
                "matter": {"type": "string"},
                "description": {"type": "string"},
            },
            "required": ["matter", "description"],
        },
        "confidence_score": {"type": "number"},
        "confidence_justification": {"type": "string"},
    },
    "required": ["description", "suggested_matter"],
}


# =============================================================================
# CONTRACT
# =============================================================================

class BillingAI(ABC):
    @abstractmethod
    async def group_and_summarize(
        self,
        emails: List[Email],
        matters: List[Matter],
        corrections: List[Correction],
        external_entries: List[BillableEntry],
    ) -> List[GroupSummary]:
        """Partition emails into billable groups. No ordering guarantee."""

    @abstractmethod
    async def triage_email(
        self,
        email_body: str,
        matters: List[Matter],
        corrections: List[Correction],
        external_entries: List[BillableEntry],
    ) -> TriageClassification:
        ...

    @abstractmethod
    async def generate_live_preview(
        self,
        original_email_body: Optional[str],
        draft: str,
        matters: List[Matter],
    ) -> AIPreview:
        ...

    @abstractmethod
    async def suggest_billing_rule(
        self,
        corrections: List[Correction],
        existing_rules: List[BillingRule],
        matters: List[Matter],
    ) -> Optional[RuleSuggestion]:
        ...


# =============================================================================
# GEMINI IMPLEMENTATION
# =============================================================================

class GeminiBillingAI(BillingAI):
    """google-genai backed collaborator."""

    def __init__(self, api_key: Optional[str] = None, model: str = BILLING_AI_MODEL, client=None):
        self.api_key = api_key or GEMINI_API_KEY
        self.model = model
        self._client = client or genai.Client(api_key=self.api_key)

    async def _generate_json(self, prompt: str, schema: Dict[str, Any], temperature: float,
                             thinking_budget: Optional[int] = None) -> Any:
        options: Dict[str, Any] = {
            "temperature": temperature,
            "response_mime_type": "application/json",
            "response_schema": schema,
        }
        if thinking_budget is not None:
            # Live preview trades reasoning for latency
            options["thinking_config"] = types.ThinkingConfig(thinking_budget=thinking_budget)

        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(**options),
        )
        text = (response.text or "").strip()
        if not text:
            raise ValueError("Empty response from Gemini")
        return json.loads(text)

    async def group_and_summarize(self, emails, matters, corrections, external_entries):
        if not emails:
            return []

        email_payload = [
            {"id": e.id, "subject": e.subject, "body": f"\"\"\"{e.body[:GROUPING_BODY_CHARS]}...\"\"\""}
            for e in emails
        ]
        prompt = f"""You are a legal billing assistant. Group the emails below into conversation threads or tasks and write one consolidated billable entry per group.

Grouping:
- Emails sharing a subject (including "Re:" and "Fwd:") belong together.
- Emails about the same concrete task belong together even when subjects differ.
- A standalone billable email is a group of one. Never merge unrelated emails.
- Leave out non-billable emails (scheduling, newsletters, spam).
- Leave out work that already appears in the recent external billings.

For each group:
- description: one concise past-tense sentence covering the whole group.
- suggested_matter: the best matter from the list.
- suggested_hours: realistic total time for the group.
- action_items / detailed_breakdown: merged from every email in the group.
- confidence_score: 0.0 to 1.0 for the consolidated entry.
- confidence_justification: one short sentence.

User corrections (match this style):
{format_correction_examples(corrections)}

Recent external billings:
{format_external_entries(external_entries)}

Available matters: {matter_names(matters)}

Emails (JSON):
{json.dumps(email_payload, indent=2)}

Return a JSON array. Each item has 'email_ids' (every email id in the group) and 'preview'."""

        schema = {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "email_ids": {"type": "array", "items": {"type": "string"}},
                    "preview": PREVIEW_SCHEMA,
                },
                "required": ["email_ids", "preview"],
            },
        }
        result = await self._generate_json(prompt, schema, temperature=0.2)
        groups = [GroupSummary.from_dict(item) for item in result or []]
        logger.info("Gemini grouped %d emails into %d groups", len(emails), len(groups))
        return groups

    async def triage_email(self, email_body, matters, corrections, external_entries):
        prompt = f"""You are a legal billing assistant. Decide whether the email below contains substantive billable legal work and, if it does, draft a billable entry.

Triage:
- Billable: legal analysis, strategy, drafting or reviewing documents, substantive communication with clients, counsel or experts.
- Not billable: scheduling, confirmations, administration, newsletters, spam, personal messages.
- Duplicate suspected: the work appears to be logged already in the recent external billings for the same matter and day.
- Always give a short reason.

Entry (only when billable):
- description: one past-tense sentence starting with an action verb.
- suggested_matter: the most relevant matter from the list.
- detailed_breakdown: the sub-tasks covered.
- action_items: concrete follow-up tasks.
- suggested_hours: e.g. 0.1, 0.2, 0.5.
- confidence_score: 0.0 to 1.0; 0.9+ only when matter and work are obvious.
- confidence_justification: one short sentence.

User corrections (match this style):
{format_correction_examples(corrections)}

Recent external billings:
{format_external_entries(external_entries)}

Available matters: {matter_names(matters)}

Email:
\"\"\"
{email_body}
\"\"\"

Return one JSON object with 'decision' (BILLABLE, NOT_BILLABLE or DUPLICATE_SUSPECTED), 'reason', and 'preview' when the decision is BILLABLE."""

        schema = {
            "type": "object",
            "properties": {
                "decision": {"type": "string", "enum": [s.value for s in CLASSIFIER_STATUSES]},
                "reason": {"type": "string"},
                "preview": PREVIEW_SCHEMA,
            },
            "required": ["decision", "reason"],
        }
        result = await self._generate_json(prompt, schema, temperature=0.1)
        return TriageClassification.from_dict(result)

    async def generate_live_preview(self, original_email_body, draft, matters):
        context = f"{original_email_body[:300]}..." if original_email_body else "N/A (new email)"
        prompt = f"""You are a fast legal billing assistant. Produce a billable entry for the email a lawyer is drafting right now. Be brief.

Original email (when replying): "{context}"
Draft: "{draft}"

- description: one past-tense sentence starting with an action verb ("Drafted response to ...").
- suggested_matter: the most likely matter from the list.
- suggested_hours: start at 0.1 and grow with the draft; a long detailed reply is 0.3 to 0.5.

Available matters: {matter_names(matters)}

Return one JSON object and nothing else."""

        schema = {
            "type": "object",
            "properties": {
                "description": {"type": "string"},
                "suggested_matter": {"type": "string"},
                "suggested_hours": {"type": "number"},
            },
            "required": ["description", "suggested_matter", "suggested_hours"],
        }
        result = await self._generate_json(prompt, schema, temperature=0.2, thinking_budget=0)
        return AIPreview.from_dict(result)

    async def suggest_billing_rule(self, corrections, existing_rules, matters):
        prompt = f"""You look for automation opportunities in a lawyer's billing corrections. Suggest at most ONE new billing rule.

- Find a clear recurring pattern: a sender domain always moved to one matter, a keyword that always changes the matter or the hours, or a sender whose entries are always marked non-billable.
- Condition types: SENDER_DOMAIN_IS, SUBJECT_CONTAINS, BODY_CONTAINS.
- Action types: IGNORE_SENDER_DOMAIN, ROUND_UP_HOURS, SET_FIXED_HOURS, AUTO_APPROVE_SYNC.
- Return action_value as a string, e.g. "0.25", "true", "example.com".
- Do not repeat an existing rule.
- Pick target_matter_name from the available matters.
- Explain the suggestion in one friendly sentence.
- When no strong pattern exists, return null for 'suggestion'.

Corrections (newest first):
{json.dumps([c.to_dict() for c in corrections[:MAX_STORED_CORRECTIONS]], indent=2)}

Existing rules:
{json.dumps([r.to_dict() for r in existing_rules], indent=2)}

Available matters: {matter_names(matters)}

Return one JSON object whose root property is 'suggestion'."""

        schema = {
            "type": "object",
            "properties": {
                "suggestion": {
                    "type": "object",
                    "nullable": True,
                    "properties": {
                        "justification": {"type": "string"},
                        "target_matter_name": {"type": "string"},
                        "rule": {
                            "type": "object",
                            "properties": {
                                "id": {"type": "string"},
                                "action_type": {"type": "string"},
                                "action_value": {"type": "string"},
                                "conditions": {
                                    "type": "array",
                                    "items": {
                                        "type": "object",
                                        "properties": {
                                            "type": {"type": "string"},
                                            "value": {"type": "string"},
                                        },
                                        "required": ["type", "value"],
                                    },
                                },
                            },
                            "required": ["id", "action_type", "action_value", "conditions"],
                        },
                    },
                    "required": ["justification", "rule", "target_matter_name"],
                },
            },
        }
        result = await self._generate_json(prompt, schema, temperature=0.1)
        suggestion = (result or {}).get("suggestion")
        if not suggestion:
            return None
        try:
            return RuleSuggestion.from_dict(suggestion)
        except (KeyError, ValueError) as e:
            logger.warning("Discarding malformed rule suggestion: %s", e)
            return None
