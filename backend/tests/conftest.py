"""
Shared fixtures for the billing engine tests.

The AI collaborator is an AsyncMock with the BillingAI spec; the store is the
in-memory store with a mock transport that never fails.
"""
import pytest
from unittest.mock import AsyncMock

from services.billing.ai_collaborator import BillingAI, GroupSummary, TriageClassification
from services.billing.engine import BillingEngine
from services.billing.models import (
    AIPreview,
    BillingCondition,
    BillingRule,
    BillingSettings,
    ConditionType,
    Email,
    Matter,
    RuleActionType,
    TriageStatus,
)
from services.billing.store import InMemoryBillingStore
from services.billing.sync_transport import MockSyncTransport

OWNER_ID = "lawyer-1"


@pytest.fixture
def emails():
    return [
        Email(id="e1", sender="Jane Client <jane@acme.com>", subject="Settlement offer",
              body="Please review the attached settlement offer before Friday.",
              timestamp="2026-03-02T09:00:00+00:00"),
        Email(id="e2", sender="jane@acme.com", subject="Re: Settlement offer",
              body="Following up on the settlement offer, the other side wants an answer.",
              timestamp="2026-03-02T10:00:00+00:00"),
        Email(id="e3", sender="Bob Rival <bob@rivalfirm.com>", subject="Discovery requests",
              body="Attached are our first set of discovery requests.",
              timestamp="2026-03-02T11:00:00+00:00"),
        Email(id="e4", sender="digest@legalweekly.com", subject="Weekly digest",
              body="Top stories in legal news this week.",
              timestamp="2026-03-02T12:00:00+00:00"),
    ]


@pytest.fixture
def matters():
    return [
        Matter(name="Acme Corp", rate=400.0),
        Matter(name="Globex Litigation", rate=450.0),
    ]


@pytest.fixture
def ignore_rivalfirm_rule():
    return BillingRule(
        id="rule-ignore-rival",
        conditions=[BillingCondition(ConditionType.SENDER_DOMAIN_IS, "rivalfirm.com")],
        action_type=RuleActionType.IGNORE_SENDER_DOMAIN,
        action_value="rivalfirm.com",
    )


@pytest.fixture
def auto_sync_settlement_rule():
    return BillingRule(
        id="rule-auto-settlement",
        conditions=[BillingCondition(ConditionType.SUBJECT_CONTAINS, "settlement")],
        action_type=RuleActionType.AUTO_APPROVE_SYNC,
        action_value="true",
    )


@pytest.fixture
def make_preview():
    def _make(matter="Acme Corp", hours=0.5, confidence=None, description="Reviewed settlement offer."):
        return AIPreview(
            description=description,
            suggested_matter=matter,
            suggested_hours=hours,
            action_items=["Reply to client"],
            detailed_breakdown=["Reviewed offer terms"],
            confidence_score=confidence,
        )
    return _make


@pytest.fixture
def make_group(make_preview):
    def _make(email_ids, **preview_kwargs):
        return GroupSummary(email_ids=list(email_ids), preview=make_preview(**preview_kwargs))
    return _make


@pytest.fixture
def billable(make_preview):
    def _make(**preview_kwargs):
        return TriageClassification(status=TriageStatus.BILLABLE, reason="Substantive work",
                                    preview=make_preview(**preview_kwargs))
    return _make


@pytest.fixture
def ai():
    mock = AsyncMock(spec=BillingAI)
    mock.group_and_summarize.return_value = []
    mock.suggest_billing_rule.return_value = None
    return mock


@pytest.fixture
def store():
    return InMemoryBillingStore(transport=MockSyncTransport(failure_rate=0.0))


@pytest.fixture
def settings():
    return BillingSettings(
        owner_id=OWNER_ID,
        active_integration="Clio",
        autopilot_enabled=False,
        auto_sync_threshold=0.95,
        default_rate=350.0,
        personalization_enabled=True,
    )


@pytest.fixture
def engine(store, ai, settings, emails, matters):
    billing_engine = BillingEngine(store, ai, settings, autopilot_interval_seconds=0.01)
    billing_engine.set_inbox(emails)
    billing_engine.set_matters(matters)
    return billing_engine
