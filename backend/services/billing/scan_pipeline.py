"""
InvoLex Billing Engine - Grouping Scan Pipeline

Batch scan used by "scan now" and by the auto-pilot timer:

1. Keep only emails the tracker still considers eligible
2. Ask the AI collaborator to group them and draft one preview per group
3. Per group: rule engine, then decision resolver
   - AUTO_SYNC: store the entry (sync happens in one batch at the end)
   - IGNORE: mark the ids dismissed
   - STANDARD: keep as a suggestion
4. Mark every handled group's ids processed
5. Submit all AUTO_SYNC entries to the sync orchestrator together

A failed AI call raises ScanFailedError before anything is mutated.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from services.billing.ai_collaborator import BillingAI
from services.billing.config import DEFAULT_PRACTICE_TOOL, SCAN_FALLBACK_HOURS
from services.billing.decision_resolver import resolve, format_percent
from services.billing.errors import ScanFailedError, IntegrationNotConfiguredError
from services.billing.models import (
    BillableEntry,
    BillingSettings,
    Correction,
    Email,
    EntryForm,
    Matter,
    RoutingAction,
    SuggestedEntry,
    find_matter,
)
from services.billing.processed_tracker import ProcessedTracker
from services.billing.rule_engine import apply_billing_rules
from services.billing.store import BillingStore
from services.billing.sync_orchestrator import SyncOrchestrator, SyncReport

logger = logging.getLogger(__name__)


def rate_for_matter(matters: List[Matter], matter_name: Optional[str], default_rate: float) -> float:
    matter = find_matter(matters, matter_name)
    return matter.rate if matter else default_rate


@dataclass
class ScanResult:
    created: List[BillableEntry] = field(default_factory=list)
    suggestions: List[SuggestedEntry] = field(default_factory=list)
    ignored_count: int = 0
    scanned_count: int = 0
    sync_report: Optional[SyncReport] = None
    notifications: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.created and not self.suggestions and not self.ignored_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": [e.to_dict() for e in self.created],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "ignored_count": self.ignored_count,
            "scanned_count": self.scanned_count,
            "sync_report": self.sync_report.to_dict() if self.sync_report else None,
            "notifications": list(self.notifications),
        }


class GroupingScanPipeline:
    def __init__(
        self,
        ai: BillingAI,
        store: BillingStore,
        tracker: ProcessedTracker,
        orchestrator: SyncOrchestrator,
        settings: BillingSettings,
    ):
        self.ai = ai
        self.store = store
        self.tracker = tracker
        self.orchestrator = orchestrator
        self.settings = settings

    async def scan(
        self,
        candidate_emails: List[Email],
        matters: List[Matter],
        corrections: List[Correction],
        external_entries: List[BillableEntry],
        autopilot_enabled: bool,
        confidence_threshold: float,
    ) -> ScanResult:
        eligible = self.tracker.filter_eligible(candidate_emails)
        if not eligible:
            logger.info("Scan skipped: no eligible emails among %d candidates", len(candidate_emails))
            return ScanResult()

        try:
            groups = await self.ai.group_and_summarize(eligible, matters, corrections, external_entries)
        except Exception as e:
            logger.error("Grouping scan failed for %d emails: %s", len(eligible), e)
            raise ScanFailedError(f"Failed to scan for suggestions: {e}", cause=e) from e

        result = ScanResult(scanned_count=len(eligible))
        by_id = {email.id: email for email in eligible}
        target_system = self.settings.active_integration or DEFAULT_PRACTICE_TOOL

        async with self.tracker.lock:
            for group in groups:
                # Ids can go stale while the AI call was in flight
                email_ids = [
                    email_id for email_id in dict.fromkeys(group.email_ids)
                    if email_id in by_id and self.tracker.is_eligible(email_id)
                ]
                if not email_ids:
                    logger.debug("Dropping group with no eligible ids: %s", group.email_ids)
                    continue

                source_emails = [by_id[email_id] for email_id in email_ids]
                application = apply_billing_rules(group.preview, source_emails, matters)
                action = resolve(application.intent, application.preview, autopilot_enabled, confidence_threshold)
                logger.debug("Group %s -> %s", email_ids, action.value)

                if action == RoutingAction.AUTO_SYNC:
                    form = EntryForm.from_preview(email_ids, application.preview, SCAN_FALLBACK_HOURS)
                    entry = await self.store.add_billable_entry(
                        self.settings.owner_id,
                        form,
                        rate_for_matter(matters, form.matter, self.settings.default_rate),
                        target_system,
                        auto_generated=True,
                    )
                    self.tracker.record_entry(entry)
                    result.created.append(entry)
                    if application.intent == RoutingAction.AUTO_SYNC:
                        result.notifications.append(f"Entry for \"{entry.matter}\" auto-synced by rule.")
                    else:
                        result.notifications.append(
                            f"Entry for \"{entry.matter}\" auto-synced by high AI confidence "
                            f"({format_percent(application.preview.confidence_score)})."
                        )
                elif action == RoutingAction.IGNORE:
                    self.tracker.mark_dismissed(email_ids)
                    result.ignored_count += 1
                else:
                    result.suggestions.append(SuggestedEntry(email_ids, source_emails, application.preview))

                self.tracker.mark_processed(email_ids)

            self.tracker.add_suggestions(result.suggestions)

        if result.suggestions:
            plural = "s" if len(result.suggestions) > 1 else ""
            result.notifications.append(f"Found {len(result.suggestions)} new suggestion group{plural}.")
        elif not result.created and not result.ignored_count:
            result.notifications.append("No new billable email suggestions found.")

        if result.created:
            try:
                result.sync_report = await self.orchestrator.sync_many([e.id for e in result.created])
            except IntegrationNotConfiguredError as e:
                logger.warning("Auto-sync skipped for %d entries: %s", len(result.created), e)
                result.notifications.append(str(e))
            else:
                refreshed = {e.id: e for e in result.sync_report.entries}
                result.created = [refreshed.get(e.id, e) for e in result.created]
                result.notifications.extend(result.sync_report.summary_messages(target_system))

        logger.info(
            "Scan of %d emails: %d created, %d suggestions, %d ignored",
            len(eligible), len(result.created), len(result.suggestions), result.ignored_count
        )
        return result
