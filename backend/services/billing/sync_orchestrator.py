"""
InvoLex Billing Engine - Sync Orchestrator

Submits approved entries to the practice management tool as one concurrent batch.

- Each targeted entry is marked `generating` before submission
- An entry already in flight is skipped, so at most one sync runs per entry
- Every entry resolves independently to `synced` or `error`; one failure never
  rolls back another entry's success
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Set

from services.billing.errors import EntryNotFoundError, IntegrationNotConfiguredError
from services.billing.models import BillableEntry, BillingSettings, EntryStatus, SyncDetails, utc_now_iso
from services.billing.store import BillingStore

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    succeeded: List[BillableEntry] = field(default_factory=list)
    failed: List[BillableEntry] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def entries(self) -> List[BillableEntry]:
        return self.succeeded + self.failed

    def summary_messages(self, target_system: str) -> List[str]:
        messages = []
        if self.succeeded:
            messages.append(f"{len(self.succeeded)} entries successfully synced to {target_system}.")
        if self.failed:
            messages.append(f"{len(self.failed)} entries failed to sync. Please review them.")
        return messages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": [e.to_dict() for e in self.succeeded],
            "failed": [e.to_dict() for e in self.failed],
            "skipped": list(self.skipped),
        }


class SyncOrchestrator:
    def __init__(self, store: BillingStore, settings: BillingSettings):
        self.store = store
        self.settings = settings
        self._in_flight: Set[str] = set()

    def is_in_flight(self, entry_id: str) -> bool:
        return entry_id in self._in_flight

    @property
    def in_flight(self) -> Set[str]:
        return set(self._in_flight)

    async def sync_many(self, entry_ids: List[str]) -> SyncReport:
        """
        Sync a batch of entries concurrently.

        Raises:
            IntegrationNotConfiguredError: no practice management tool is connected
        """
        target_system = self.settings.active_integration
        if not target_system:
            raise IntegrationNotConfiguredError()

        report = SyncReport()
        accepted: List[str] = []
        for entry_id in dict.fromkeys(entry_ids):
            if entry_id in self._in_flight:
                logger.warning("Sync already in progress for entry %s, skipping", entry_id)
                report.skipped.append(entry_id)
                continue
            self._in_flight.add(entry_id)
            accepted.append(entry_id)

        if not accepted:
            return report

        owner_id = self.settings.owner_id
        try:
            ready: List[BillableEntry] = []
            for entry_id in accepted:
                try:
                    entry = await self.store.get_entry(owner_id, entry_id)
                except EntryNotFoundError:
                    logger.warning("Cannot sync unknown entry %s", entry_id)
                    report.skipped.append(entry_id)
                    continue
                entry.status = EntryStatus.GENERATING
                await self.store.update_billable_entry(owner_id, entry)
                ready.append(entry)

            results = await asyncio.gather(
                *(self.store.sync_entry(owner_id, entry.id, target_system) for entry in ready),
                return_exceptions=True,
            )
            for entry, result in zip(ready, results):
                if isinstance(result, BaseException):
                    result = await self._record_failure(entry, target_system, result)
                if result.status == EntryStatus.SYNCED:
                    report.succeeded.append(result)
                else:
                    report.failed.append(result)
        finally:
            self._in_flight.difference_update(accepted)

        logger.info(
            "Sync to %s finished: %d succeeded, %d failed, %d skipped",
            target_system, len(report.succeeded), len(report.failed), len(report.skipped)
        )
        return report

    async def _record_failure(self, entry: BillableEntry, target_system: str, error: BaseException) -> BillableEntry:
        """Resolve an entry whose sync raised to `error`, even if the store write fails."""
        logger.error("Sync of entry %s raised: %s", entry.id, error)
        entry.status = EntryStatus.ERROR
        entry.sync_details = SyncDetails(
            synced_at=utc_now_iso(),
            target_system=target_system,
            error_message=str(error) or "Sync failed.",
        )
        try:
            return await self.store.update_billable_entry(self.settings.owner_id, entry)
        except Exception as e:
            logger.error("Could not record sync failure for entry %s: %s", entry.id, e)
            return entry
