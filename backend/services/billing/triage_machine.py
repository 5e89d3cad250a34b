"""
InvoLex Billing Engine - Single-Email Triage

Reactive analysis of the email the user opens. The session is a small state
machine over five explicit outcomes:

    ANALYZING -> BILLABLE | NOT_BILLABLE | DUPLICATE_SUSPECTED
    BILLABLE  -> AUTO_PROCESSED (rule or confidence auto-sync)
    BILLABLE  -> NOT_BILLABLE   (IGNORE rule)
    NOT_BILLABLE | DUPLICATE_SUSPECTED -> BILLABLE (user override)

Selecting a different email, or entering reply/compose mode, cancels the pending
classification. A result that arrives for a superseded selection is discarded.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple, Union, Any

from services.billing.ai_collaborator import TriageClassification
from services.billing.config import TRIAGE_FALLBACK_HOURS
from services.billing.decision_resolver import resolve, format_percent
from services.billing.errors import (
    DuplicateEntryError,
    IntegrationNotConfiguredError,
    InvalidTransitionError,
)
from services.billing.models import (
    AIPreview,
    BillableEntry,
    Email,
    EntryForm,
    RoutingAction,
    SuggestedEntry,
    TriageStatus,
)
from services.billing.rule_engine import RuleApplication, apply_billing_rules

logger = logging.getLogger(__name__)

ANALYSIS_FAILED_REASON = "An error occurred during analysis."


class TriageEvent(str, Enum):
    SELECT = "SELECT"
    REVIEW_SUGGESTION = "REVIEW_SUGGESTION"
    CLASSIFIED_BILLABLE = "CLASSIFIED_BILLABLE"
    CLASSIFIED_NOT_BILLABLE = "CLASSIFIED_NOT_BILLABLE"
    CLASSIFIED_DUPLICATE = "CLASSIFIED_DUPLICATE"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    RULE_IGNORED = "RULE_IGNORED"
    AUTO_SYNCED = "AUTO_SYNCED"
    OVERRIDE = "OVERRIDE"


# Allowed transitions: current status -> {event: next status}
TRIAGE_TRANSITIONS: Dict[Optional[str], Dict[str, str]] = {
    None: {
        TriageEvent.SELECT.value: TriageStatus.ANALYZING.value,
        TriageEvent.REVIEW_SUGGESTION.value: TriageStatus.BILLABLE.value,
    },
    TriageStatus.ANALYZING.value: {
        TriageEvent.CLASSIFIED_BILLABLE.value: TriageStatus.BILLABLE.value,
        TriageEvent.CLASSIFIED_NOT_BILLABLE.value: TriageStatus.NOT_BILLABLE.value,
        TriageEvent.CLASSIFIED_DUPLICATE.value: TriageStatus.DUPLICATE_SUSPECTED.value,
        TriageEvent.ANALYSIS_FAILED.value: TriageStatus.NOT_BILLABLE.value,
    },
    TriageStatus.BILLABLE.value: {
        TriageEvent.AUTO_SYNCED.value: TriageStatus.AUTO_PROCESSED.value,
        TriageEvent.RULE_IGNORED.value: TriageStatus.NOT_BILLABLE.value,
    },
    TriageStatus.NOT_BILLABLE.value: {
        TriageEvent.OVERRIDE.value: TriageStatus.BILLABLE.value,
    },
    TriageStatus.DUPLICATE_SUSPECTED.value: {
        TriageEvent.OVERRIDE.value: TriageStatus.BILLABLE.value,
    },
    TriageStatus.AUTO_PROCESSED.value: {},
}


# =============================================================================
# OUTCOMES
# =============================================================================

@dataclass(frozen=True)
class Analyzing:
    status: ClassVar[TriageStatus] = TriageStatus.ANALYZING
    email_id: str


@dataclass(frozen=True)
class Billable:
    """Editable draft. The preview may already carry a rule's adjustments."""
    status: ClassVar[TriageStatus] = TriageStatus.BILLABLE
    email_id: str
    preview: AIPreview
    email_ids: Tuple[str, ...] = ()
    from_suggestion: bool = False

    @property
    def source_email_ids(self) -> List[str]:
        return list(self.email_ids) if self.email_ids else [self.email_id]


@dataclass(frozen=True)
class NotBillable:
    status: ClassVar[TriageStatus] = TriageStatus.NOT_BILLABLE
    email_id: str
    reason: str


@dataclass(frozen=True)
class DuplicateSuspected:
    status: ClassVar[TriageStatus] = TriageStatus.DUPLICATE_SUSPECTED
    email_id: str
    reason: str


@dataclass(frozen=True)
class AutoProcessed:
    status: ClassVar[TriageStatus] = TriageStatus.AUTO_PROCESSED
    email_id: str
    reason: str
    entry: BillableEntry
    next_email: Optional[Email] = None


TriageOutcome = Union[Analyzing, Billable, NotBillable, DuplicateSuspected, AutoProcessed]


def outcome_to_dict(outcome: TriageOutcome) -> Dict[str, Any]:
    if isinstance(outcome, Analyzing):
        return {"status": outcome.status.value, "email_id": outcome.email_id}
    if isinstance(outcome, Billable):
        return {
            "status": outcome.status.value,
            "email_id": outcome.email_id,
            "email_ids": outcome.source_email_ids,
            "preview": outcome.preview.to_dict(),
            "from_suggestion": outcome.from_suggestion,
        }
    if isinstance(outcome, (NotBillable, DuplicateSuspected)):
        return {"status": outcome.status.value, "email_id": outcome.email_id, "reason": outcome.reason}
    if isinstance(outcome, AutoProcessed):
        return {
            "status": outcome.status.value,
            "email_id": outcome.email_id,
            "reason": outcome.reason,
            "entry": outcome.entry.to_dict(),
            "next_email": outcome.next_email.to_dict() if outcome.next_email else None,
        }
    raise TypeError(f"Unhandled triage outcome: {outcome!r}")


class TriageHistoryEntry:
    """One recorded transition."""

    def __init__(self, from_status: Optional[str], to_status: str, event: str, email_id: str):
        self.timestamp = datetime.now(timezone.utc).isoformat()
        self.from_status = from_status
        self.to_status = to_status
        self.event = event
        self.email_id = email_id

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "event": self.event,
            "email_id": self.email_id,
        }


def can_transition(current_status: Optional[TriageStatus], event: TriageEvent) -> Tuple[bool, Optional[str]]:
    current_key = current_status.value if isinstance(current_status, TriageStatus) else current_status
    event_key = event.value if isinstance(event, TriageEvent) else event
    next_status = TRIAGE_TRANSITIONS.get(current_key, {}).get(event_key)
    return next_status is not None, next_status


# =============================================================================
# SESSION
# =============================================================================

class TriageSession:
    """
    Triage state for one user's open email.

    Bound to a BillingEngine, which provides the shared processed tracker, the
    inbox, matters, personalization context and entry creation.
    """

    def __init__(self, engine):
        self.engine = engine
        self.selected_email: Optional[Email] = None
        self.state: Optional[TriageOutcome] = None
        self.replying_to: Optional[Email] = None
        self.composing = False
        self.history: List[Dict] = []
        self._pending: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def status(self) -> Optional[TriageStatus]:
        return self.state.status if self.state is not None else None

    @property
    def is_analyzing(self) -> bool:
        return isinstance(self.state, Analyzing)

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _transition(self, event: TriageEvent, outcome: TriageOutcome) -> TriageOutcome:
        current = self.status
        allowed, next_status = can_transition(current, event)
        if not allowed:
            raise InvalidTransitionError(current, event)
        self.history.append(
            TriageHistoryEntry(
                current.value if current else None, next_status, event.value, outcome.email_id
            ).to_dict()
        )
        self.state = outcome
        return outcome

    def _supersede(self) -> int:
        """Invalidate any in-flight classification and clear the state."""
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._generation += 1
        self.state = None
        return self._generation

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    async def select_email(self, email: Email) -> Optional[TriageOutcome]:
        """
        Open an email and triage it.

        Returns the resulting outcome, or None when the email already has an entry
        or the selection was superseded before the classifier answered.
        """
        generation = self._supersede()
        self.selected_email = email
        self.replying_to = None
        self.composing = False

        if self.engine.tracker.has_entry_for([email.id]):
            logger.debug("Email %s already has an entry, skipping triage", email.id)
            return None

        self._transition(TriageEvent.SELECT, Analyzing(email.id))
        task = asyncio.create_task(self._classify(email))
        self._pending = task
        try:
            classification = await task
        except asyncio.CancelledError:
            if task.cancelled() and generation != self._generation:
                logger.debug("Triage of %s cancelled by a newer selection", email.id)
                return None
            raise
        finally:
            if self._pending is task:
                self._pending = None

        if generation != self._generation:
            logger.warning("Discarding late triage result for %s", email.id)
            return None

        return await self._apply_classification(email, classification, generation)

    async def _classify(self, email: Email) -> Optional[TriageClassification]:
        engine = self.engine
        try:
            return await engine.ai.triage_email(
                email.body, engine.matters, engine.personalization_corrections(), engine.external_entries
            )
        except Exception as e:
            logger.error("Triage classification failed for %s: %s", email.id, e)
            return None

    async def _apply_classification(
        self,
        email: Email,
        classification: Optional[TriageClassification],
        generation: int,
    ) -> TriageOutcome:
        if classification is None:
            return self._transition(TriageEvent.ANALYSIS_FAILED, NotBillable(email.id, ANALYSIS_FAILED_REASON))

        if classification.status == TriageStatus.NOT_BILLABLE:
            return self._transition(
                TriageEvent.CLASSIFIED_NOT_BILLABLE, NotBillable(email.id, classification.reason or "")
            )
        if classification.status == TriageStatus.DUPLICATE_SUSPECTED:
            return self._transition(
                TriageEvent.CLASSIFIED_DUPLICATE, DuplicateSuspected(email.id, classification.reason or "")
            )

        settings = self.engine.settings
        application = apply_billing_rules(classification.preview, [email], self.engine.matters)
        billable = self._transition(TriageEvent.CLASSIFIED_BILLABLE, Billable(email.id, application.preview))
        action = resolve(
            application.intent, application.preview, settings.autopilot_enabled, settings.auto_sync_threshold
        )

        if action == RoutingAction.IGNORE:
            self.engine.tracker.mark_dismissed([email.id])
            return self._transition(
                TriageEvent.RULE_IGNORED, NotBillable(email.id, f"Ignored by rule: {application.message}")
            )
        if action == RoutingAction.AUTO_SYNC:
            return await self._auto_process(email, application, generation, billable)
        return billable

    async def _auto_process(
        self,
        email: Email,
        application: RuleApplication,
        generation: int,
        billable: Billable,
    ) -> TriageOutcome:
        form = EntryForm.from_preview([email.id], application.preview, TRIAGE_FALLBACK_HOURS)
        try:
            entry, _ = await self.engine.create_and_sync_entry(form, auto_generated=True)
        except (DuplicateEntryError, IntegrationNotConfiguredError) as e:
            logger.warning("Auto-sync of %s skipped: %s", email.id, e)
            return billable

        if application.intent == RoutingAction.AUTO_SYNC:
            reason = f"Entry auto-synced by rule: {application.message}"
        else:
            reason = (
                f"Entry auto-synced by AI confidence "
                f"({format_percent(application.preview.confidence_score)} >= "
                f"{format_percent(self.engine.settings.auto_sync_threshold)})."
            )

        if generation != self._generation:
            # The user moved on while the entry was being created
            return AutoProcessed(email.id, reason, entry)

        next_email = self._advance(email.id)
        self.selected_email = next_email
        return self._transition(TriageEvent.AUTO_SYNCED, AutoProcessed(email.id, reason, entry, next_email))

    def review_suggestion(self, suggestion: SuggestedEntry) -> Billable:
        """Open a scan suggestion as an editable draft without calling the classifier."""
        self._supersede()
        self.replying_to = None
        self.composing = False
        self.selected_email = suggestion.emails[0] if suggestion.emails else None
        first_id = suggestion.email_ids[0] if suggestion.email_ids else ""
        outcome = Billable(first_id, suggestion.preview, tuple(suggestion.email_ids), from_suggestion=True)
        return self._transition(TriageEvent.REVIEW_SUGGESTION, outcome)

    def override(self) -> Billable:
        """Force a manual billable draft after a not-billable or duplicate verdict."""
        if self.state is None:
            raise InvalidTransitionError(None, TriageEvent.OVERRIDE)
        matters = self.engine.matters
        preview = AIPreview(
            description="",
            suggested_matter=matters[0].name if matters else "",
            suggested_hours=TRIAGE_FALLBACK_HOURS,
        )
        return self._transition(TriageEvent.OVERRIDE, Billable(self.state.email_id, preview))

    # -------------------------------------------------------------------------
    # Reply / compose
    # -------------------------------------------------------------------------

    def start_reply(self, email: Email):
        self._supersede()
        self.selected_email = email
        self.replying_to = email
        self.composing = False

    def finish_reply(self):
        self.replying_to = None

    def start_compose(self):
        self._supersede()
        self.selected_email = None
        self.replying_to = None
        self.composing = True

    def finish_compose(self):
        self.composing = False

    # -------------------------------------------------------------------------
    # Advancing
    # -------------------------------------------------------------------------

    def _advance(self, email_id: str) -> Optional[Email]:
        tracker = self.engine.tracker
        tracker.mark_processed([email_id])
        next_email = tracker.next_eligible(self.engine.emails, email_id)
        if next_email is None:
            logger.info("Inbox processed!")
        return next_email

    def mark_processed_and_next(self, email_id: str) -> Optional[Email]:
        """Mark the email done and move selection to the next eligible one."""
        self._supersede()
        next_email = self._advance(email_id)
        self.selected_email = next_email
        return next_email
