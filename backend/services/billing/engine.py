"""
InvoLex Billing Engine - Application Facade

BillingEngine wires one processed tracker, one sync orchestrator, the scan
pipeline and the auto-pilot scheduler around a store and an AI collaborator.
Routes and the triage session talk to the engine, never to the parts directly.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from services.billing.ai_collaborator import BillingAI, RuleSuggestion
from services.billing.autopilot import AutopilotScheduler
from services.billing.config import (
    AUTOPILOT_INTERVAL_SECONDS,
    DEFAULT_PRACTICE_TOOL,
    SCAN_FALLBACK_HOURS,
    UNCATEGORIZED_MATTER,
    clamp_threshold,
)
from services.billing.errors import DuplicateEntryError, IntegrationNotConfiguredError
from services.billing.live_preview import LivePreviewDebouncer
from services.billing.models import (
    BillableEntry,
    BillingSettings,
    Correction,
    Email,
    EntryForm,
    EntryStatus,
    Matter,
    SuggestedEntry,
)
from services.billing.processed_tracker import ProcessedTracker
from services.billing.rule_suggestions import RuleSuggester
from services.billing.scan_pipeline import GroupingScanPipeline, ScanResult, rate_for_matter
from services.billing.store import BillingStore
from services.billing.sync_orchestrator import SyncOrchestrator, SyncReport
from services.billing.triage_machine import TriageSession

logger = logging.getLogger(__name__)


class BillingEngine:
    def __init__(
        self,
        store: BillingStore,
        ai: BillingAI,
        settings: BillingSettings,
        autopilot_interval_seconds: float = AUTOPILOT_INTERVAL_SECONDS,
    ):
        self.store = store
        self.ai = ai
        self.settings = settings

        self.emails: List[Email] = []
        self.matters: List[Matter] = []
        self.corrections: List[Correction] = []
        self.external_entries: List[BillableEntry] = []

        self.tracker = ProcessedTracker()
        self.orchestrator = SyncOrchestrator(store, settings)
        self.pipeline = GroupingScanPipeline(ai, store, self.tracker, self.orchestrator, settings)
        self.rule_suggester = RuleSuggester(ai)
        self.autopilot = AutopilotScheduler(self._autopilot_scan, autopilot_interval_seconds)
        self.triage = TriageSession(self)
        self._processing_suggestion: Optional[str] = None

    @property
    def owner_id(self) -> str:
        return self.settings.owner_id

    @property
    def suggestions(self) -> List[SuggestedEntry]:
        return self.tracker.suggestions

    def personalization_corrections(self) -> List[Correction]:
        return self.corrections if self.settings.personalization_enabled else []

    def rate_for_matter(self, matter_name: Optional[str]) -> float:
        return rate_for_matter(self.matters, matter_name, self.settings.default_rate)

    def find_email(self, email_id: str) -> Optional[Email]:
        for email in self.emails:
            if email.id == email_id:
                return email
        return None

    # =========================================================================
    # LOADING
    # =========================================================================

    async def load(self):
        """Fetch inbox, matters, entries, corrections and external context; seed the tracker."""
        owner_id = self.owner_id
        self.emails = await self.store.get_inbox_emails(owner_id)
        self.matters = await self.store.get_matters(owner_id)
        self.corrections = await self.store.get_corrections(owner_id)
        self.external_entries = await self.store.fetch_external_entries(owner_id, self.settings.active_integration)
        entries = await self.store.get_billable_entries(owner_id)
        self.tracker.load_entries(entries + self.external_entries)
        logger.info(
            "Billing engine loaded for %s: %d emails, %d matters, %d entries",
            owner_id, len(self.emails), len(self.matters), len(entries)
        )

    def set_inbox(self, emails: List[Email]):
        self.emails = list(emails)

    def set_matters(self, matters: List[Matter]):
        self.matters = list(matters)

    # =========================================================================
    # SCANNING
    # =========================================================================

    async def scan_now(self) -> ScanResult:
        result = await self.pipeline.scan(
            self.emails,
            self.matters,
            self.personalization_corrections(),
            self.external_entries,
            self.settings.autopilot_enabled,
            self.settings.auto_sync_threshold,
        )
        if result.is_empty and not result.notifications:
            result.notifications.append("No new billable email suggestions found.")
        return result

    async def _autopilot_scan(self) -> ScanResult:
        return await self.scan_now()

    async def set_autopilot(self, enabled: bool):
        self.settings.autopilot_enabled = enabled
        if enabled:
            self.autopilot.start()
        else:
            await self.autopilot.stop()

    def set_threshold(self, value) -> float:
        self.settings.auto_sync_threshold = clamp_threshold(value)
        return self.settings.auto_sync_threshold

    # =========================================================================
    # ENTRIES
    # =========================================================================

    async def create_entry_from_form(
        self,
        form: EntryForm,
        as_draft: bool = True,
        auto_generated: bool = False,
    ) -> BillableEntry:
        """
        Store an entry built from a draft form.

        Raises:
            DuplicateEntryError: a stored entry already references one of the email ids
        """
        async with self.tracker.lock:
            if self.tracker.has_entry_for(form.email_ids):
                raise DuplicateEntryError(form.email_ids or [])
            entry = await self.store.add_billable_entry(
                self.owner_id,
                form,
                self.rate_for_matter(form.matter),
                self.settings.active_integration or DEFAULT_PRACTICE_TOOL,
                auto_generated=auto_generated,
            )
            self.tracker.record_entry(entry)

        logger.info("Created %s entry %s for '%s'", "draft" if as_draft else "approved", entry.id, entry.matter)
        return entry

    async def create_and_sync_entry(
        self,
        form: EntryForm,
        auto_generated: bool = False,
    ) -> Tuple[BillableEntry, SyncReport]:
        if not self.settings.active_integration:
            raise IntegrationNotConfiguredError()
        entry = await self.create_entry_from_form(form, as_draft=False, auto_generated=auto_generated)
        report = await self.orchestrator.sync_many([entry.id])
        for synced in report.entries:
            if synced.id == entry.id:
                entry = synced
        return entry, report

    async def create_manual_entry(self, form: EntryForm) -> BillableEntry:
        form.email_ids = None
        return await self.create_entry_from_form(form)

    async def update_entry(
        self,
        original: BillableEntry,
        updated: BillableEntry,
    ) -> Tuple[BillableEntry, Optional[RuleSuggestion]]:
        """
        Save a user edit.

        A matter change re-resolves the rate. A description change is recorded as a
        correction and, with personalization on, may produce a rule suggestion.
        """
        if original.matter != updated.matter:
            updated.rate = self.rate_for_matter(updated.matter)

        email_body = None
        if updated.email_ids:
            source = self.find_email(updated.email_ids[0])
            email_body = source.body if source else None

        saved = await self.store.update_billable_entry(
            self.owner_id, updated, original_description=original.description, email_body=email_body
        )

        suggestion = None
        if original.description != saved.description and email_body:
            self.corrections = await self.store.get_corrections(self.owner_id)
            if self.settings.personalization_enabled:
                suggestion = await self.rule_suggester.check(self.corrections, self.matters)
        return saved, suggestion

    async def set_archive_status(self, entry_ids: List[str], archived: bool) -> List[BillableEntry]:
        return await self.store.set_archive_status(self.owner_id, entry_ids, archived)

    async def todays_billable_hours(self) -> float:
        today = datetime.now(timezone.utc).date().isoformat()
        entries = await self.store.get_billable_entries(self.owner_id)
        total = sum(
            e.hours for e in entries
            if e.status == EntryStatus.SYNCED and e.date[:10] == today
        )
        return round(total, 2)

    # =========================================================================
    # SUGGESTIONS
    # =========================================================================

    def dismiss_suggestion(self, email_ids: List[str]) -> List[SuggestedEntry]:
        removed = self.tracker.dismiss(email_ids)
        logger.info("Dismissed suggestion for %d emails", len(email_ids))
        return removed

    async def quick_add_suggestion(self, suggestion: SuggestedEntry) -> Optional[BillableEntry]:
        """
        Store a suggestion as a draft in one step.

        Returns None when another quick-add is still running.
        """
        if self._processing_suggestion is not None:
            logger.info("Quick add already in progress for %s, ignoring %s",
                        self._processing_suggestion, suggestion.key)
            return None

        self._processing_suggestion = suggestion.key
        try:
            preview = suggestion.preview
            fallback_matter = self.matters[0].name if self.matters else UNCATEGORIZED_MATTER
            form = EntryForm(
                description=preview.description,
                hours=preview.suggested_hours or SCAN_FALLBACK_HOURS,
                matter=preview.suggested_matter or fallback_matter,
                email_ids=list(suggestion.email_ids),
                action_items=list(preview.action_items),
                detailed_breakdown=list(preview.detailed_breakdown),
            )
            entry = await self.create_entry_from_form(form)
            self.dismiss_suggestion(suggestion.email_ids)
            return entry
        finally:
            self._processing_suggestion = None

    def find_suggestion(self, email_ids: List[str]) -> Optional[SuggestedEntry]:
        ids = set(email_ids)
        for suggestion in self.tracker.suggestions:
            if ids.intersection(suggestion.email_ids):
                return suggestion
        return None

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_entries(self, entry_ids: List[str]) -> SyncReport:
        return await self.orchestrator.sync_many(entry_ids)

    async def sync_all_pending(self) -> SyncReport:
        entries = await self.store.get_billable_entries(self.owner_id)
        pending = [e.id for e in entries if e.status == EntryStatus.PENDING]
        return await self.sync_entries(pending)

    async def sync_autopilot_pending(self) -> SyncReport:
        entries = await self.store.get_billable_entries(self.owner_id)
        pending = [e.id for e in entries if e.status == EntryStatus.PENDING and e.auto_generated]
        return await self.sync_entries(pending)

    # =========================================================================
    # SESSIONS
    # =========================================================================

    def new_triage_session(self) -> TriageSession:
        return TriageSession(self)

    def new_live_preview(self) -> LivePreviewDebouncer:
        return LivePreviewDebouncer(self.ai)

    async def shutdown(self):
        await self.autopilot.stop()
