"""
InvoLex Billing Engine - Billing Store

Persistence for billable entries, description corrections, matters and the inbox
snapshot the engine triages.

The BillingStore abstraction lets the engine run against MongoDB in the server and
against InMemoryBillingStore in development and tests.
"""

import uuid
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from services.billing.config import MAX_STORED_CORRECTIONS, TRIAGE_FALLBACK_HOURS
from services.billing.errors import EntryNotFoundError
from services.billing.models import (
    ActionItem,
    BillableEntry,
    Correction,
    Email,
    EntryForm,
    EntryStatus,
    Matter,
    SyncDetails,
    utc_now_iso,
)
from services.billing.sync_transport import PracticeSyncTransport, SyncOutcome, MockSyncTransport

logger = logging.getLogger(__name__)

EXTERNAL_ENTRY_CONTEXT_LIMIT = 20


# =============================================================================
# SHARED HELPERS
# =============================================================================

def build_entry(
    owner_id: str,
    data: EntryForm,
    rate: float,
    target_system: str,
    auto_generated: bool = False,
) -> BillableEntry:
    """New entries start pending; hours fall back to the triage default."""
    return BillableEntry(
        id=f"entry-{uuid.uuid4().hex[:12]}",
        owner_id=owner_id,
        description=data.description,
        hours=data.hours or TRIAGE_FALLBACK_HOURS,
        matter=data.matter,
        rate=rate,
        status=EntryStatus.PENDING,
        date=data.date or utc_now_iso(),
        target_system=target_system,
        email_ids=list(data.email_ids) if data.email_ids else None,
        auto_generated=auto_generated,
        action_items=[ActionItem(id=f"action-{uuid.uuid4().hex[:8]}", text=text) for text in data.action_items],
        detailed_breakdown=list(data.detailed_breakdown),
    )


def apply_sync_outcome(entry: BillableEntry, outcome: SyncOutcome, target_system: str) -> BillableEntry:
    if outcome.success:
        entry.status = EntryStatus.SYNCED
        entry.sync_details = SyncDetails(
            synced_at=outcome.timestamp,
            target_system=target_system,
            external_id=outcome.external_id,
            external_url=outcome.external_url,
        )
    else:
        entry.status = EntryStatus.ERROR
        entry.sync_details = SyncDetails(
            synced_at=outcome.timestamp,
            target_system=target_system,
            error_message=outcome.error or "Sync failed.",
        )
    return entry


def correction_for(
    original_description: Optional[str],
    entry: BillableEntry,
    email_body: Optional[str],
) -> Optional[Correction]:
    """A correction is recorded only when the description changed and a source body exists."""
    if original_description is None or not email_body:
        return None
    if original_description == entry.description:
        return None
    return Correction(
        original_description=original_description,
        corrected_description=entry.description,
        email_body=email_body,
    )


# =============================================================================
# ABSTRACT STORE
# =============================================================================

class BillingStore(ABC):
    """Data store contract used by the engine."""

    def __init__(self, transport: Optional[PracticeSyncTransport] = None):
        self.transport = transport or MockSyncTransport()

    @abstractmethod
    async def add_billable_entry(
        self,
        owner_id: str,
        data: EntryForm,
        rate: float,
        target_system: str,
        auto_generated: bool = False,
    ) -> BillableEntry:
        ...

    @abstractmethod
    async def update_billable_entry(
        self,
        owner_id: str,
        entry: BillableEntry,
        original_description: Optional[str] = None,
        email_body: Optional[str] = None,
    ) -> BillableEntry:
        ...

    @abstractmethod
    async def get_entry(self, owner_id: str, entry_id: str) -> BillableEntry:
        """Raises EntryNotFoundError when the id is unknown."""

    @abstractmethod
    async def get_billable_entries(self, owner_id: str) -> List[BillableEntry]:
        ...

    @abstractmethod
    async def set_archive_status(self, owner_id: str, entry_ids: List[str], archived: bool) -> List[BillableEntry]:
        ...

    @abstractmethod
    async def get_corrections(self, owner_id: str) -> List[Correction]:
        """Newest first."""

    @abstractmethod
    async def fetch_external_entries(self, owner_id: str, target_system: Optional[str]) -> List[BillableEntry]:
        """Recent entries already in the practice tool, used as AI context."""

    @abstractmethod
    async def get_matters(self, owner_id: str) -> List[Matter]:
        ...

    @abstractmethod
    async def get_inbox_emails(self, owner_id: str) -> List[Email]:
        ...

    async def sync_entry(self, owner_id: str, entry_id: str, target_system: str) -> BillableEntry:
        """Push one entry and persist the synced / error result."""
        entry = await self.get_entry(owner_id, entry_id)
        outcome = await self.transport.push(entry, target_system)
        apply_sync_outcome(entry, outcome, target_system)
        if not outcome.success:
            logger.warning("Sync of entry %s to %s failed: %s", entry_id, target_system, outcome.error)
        return await self.update_billable_entry(owner_id, entry)


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryBillingStore(BillingStore):
    """Dict-backed store for development and tests."""

    def __init__(self, transport: Optional[PracticeSyncTransport] = None):
        super().__init__(transport)
        self._entries: Dict[str, Dict[str, BillableEntry]] = {}
        self._corrections: Dict[str, List[Correction]] = {}
        self._external: Dict[str, List[BillableEntry]] = {}
        self._matters: Dict[str, List[Matter]] = {}
        self._inbox: Dict[str, List[Email]] = {}

    # Seeding helpers used by tests and local runs
    def set_matters(self, owner_id: str, matters: List[Matter]):
        self._matters[owner_id] = list(matters)

    def set_inbox(self, owner_id: str, emails: List[Email]):
        self._inbox[owner_id] = list(emails)

    def add_external_entry(self, owner_id: str, entry: BillableEntry):
        self._external.setdefault(owner_id, []).append(entry)

    def put_entry(self, entry: BillableEntry):
        self._entries.setdefault(entry.owner_id, {})[entry.id] = entry

    async def add_billable_entry(self, owner_id, data, rate, target_system, auto_generated=False):
        entry = build_entry(owner_id, data, rate, target_system, auto_generated)
        self._entries.setdefault(owner_id, {})[entry.id] = entry
        logger.info("Stored billable entry %s (%s, %.2fh)", entry.id, entry.matter, entry.hours)
        return entry

    async def update_billable_entry(self, owner_id, entry, original_description=None, email_body=None):
        entries = self._entries.setdefault(owner_id, {})
        if entry.id not in entries:
            raise EntryNotFoundError(entry.id)
        entries[entry.id] = entry

        correction = correction_for(original_description, entry, email_body)
        if correction:
            history = [correction] + self._corrections.get(owner_id, [])
            self._corrections[owner_id] = history[:MAX_STORED_CORRECTIONS]
        return entry

    async def get_entry(self, owner_id, entry_id):
        entry = self._entries.get(owner_id, {}).get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    async def get_billable_entries(self, owner_id):
        return sorted(self._entries.get(owner_id, {}).values(), key=lambda e: e.date, reverse=True)

    async def set_archive_status(self, owner_id, entry_ids, archived):
        updated = []
        for entry_id in entry_ids:
            entry = await self.get_entry(owner_id, entry_id)
            entry.is_archived = archived
            updated.append(entry)
        return updated

    async def get_corrections(self, owner_id):
        return list(self._corrections.get(owner_id, []))

    async def fetch_external_entries(self, owner_id, target_system):
        entries = [
            e for e in self._external.get(owner_id, [])
            if target_system is None or e.target_system == target_system
        ]
        return entries[:EXTERNAL_ENTRY_CONTEXT_LIMIT]

    async def get_matters(self, owner_id):
        return list(self._matters.get(owner_id, []))

    async def get_inbox_emails(self, owner_id):
        return list(self._inbox.get(owner_id, []))


# =============================================================================
# MONGO STORE
# =============================================================================

class MongoBillingStore(BillingStore):
    """
    motor-backed store.

    Collections:
        billable_entries     one document per entry, keyed by id
        billing_corrections  one document per owner with the newest corrections
        billing_matters      one document per matter
        inbox_emails         inbox snapshot per owner
        external_entries     entries already present in the practice tool
    """

    def __init__(self, db, transport: Optional[PracticeSyncTransport] = None):
        super().__init__(transport)
        self.db = db

    async def create_indexes(self):
        await self.db.billable_entries.create_index("id", unique=True)
        await self.db.billable_entries.create_index([("owner_id", 1), ("date", -1)])
        await self.db.billable_entries.create_index("email_ids")
        await self.db.billing_corrections.create_index("owner_id", unique=True)
        await self.db.billing_matters.create_index([("owner_id", 1), ("name", 1)])
        await self.db.inbox_emails.create_index([("owner_id", 1), ("timestamp", -1)])
        await self.db.external_entries.create_index([("owner_id", 1), ("target_system", 1)])

    async def add_billable_entry(self, owner_id, data, rate, target_system, auto_generated=False):
        entry = build_entry(owner_id, data, rate, target_system, auto_generated)
        await self.db.billable_entries.insert_one(entry.to_dict())
        logger.info("Stored billable entry %s (%s, %.2fh)", entry.id, entry.matter, entry.hours)
        return entry

    async def update_billable_entry(self, owner_id, entry, original_description=None, email_body=None):
        doc = entry.to_dict()
        doc["updated_utc"] = datetime.now(timezone.utc).isoformat()
        result = await self.db.billable_entries.update_one(
            {"id": entry.id, "owner_id": owner_id},
            {"$set": doc}
        )
        if result.matched_count == 0:
            raise EntryNotFoundError(entry.id)

        correction = correction_for(original_description, entry, email_body)
        if correction:
            await self.db.billing_corrections.update_one(
                {"owner_id": owner_id},
                {"$push": {"corrections": {
                    "$each": [correction.to_dict()],
                    "$position": 0,
                    "$slice": MAX_STORED_CORRECTIONS,
                }}},
                upsert=True
            )
        return entry

    async def get_entry(self, owner_id, entry_id):
        doc = await self.db.billable_entries.find_one({"id": entry_id, "owner_id": owner_id}, {"_id": 0})
        if not doc:
            raise EntryNotFoundError(entry_id)
        return BillableEntry.from_dict(doc)

    async def get_billable_entries(self, owner_id):
        docs = await self.db.billable_entries.find(
            {"owner_id": owner_id}, {"_id": 0}
        ).sort("date", -1).to_list(10000)
        return [BillableEntry.from_dict(d) for d in docs]

    async def set_archive_status(self, owner_id, entry_ids, archived):
        await self.db.billable_entries.update_many(
            {"owner_id": owner_id, "id": {"$in": list(entry_ids)}},
            {"$set": {"is_archived": archived}}
        )
        docs = await self.db.billable_entries.find(
            {"owner_id": owner_id, "id": {"$in": list(entry_ids)}}, {"_id": 0}
        ).to_list(len(entry_ids))
        return [BillableEntry.from_dict(d) for d in docs]

    async def get_corrections(self, owner_id):
        doc = await self.db.billing_corrections.find_one({"owner_id": owner_id}, {"_id": 0})
        if not doc:
            return []
        return [Correction.from_dict(c) for c in doc.get("corrections", [])]

    async def fetch_external_entries(self, owner_id, target_system):
        query: Dict[str, Any] = {"owner_id": owner_id}
        if target_system:
            query["target_system"] = target_system
        docs = await self.db.external_entries.find(query, {"_id": 0}).sort("date", -1).to_list(
            EXTERNAL_ENTRY_CONTEXT_LIMIT
        )
        return [BillableEntry.from_dict(d) for d in docs]

    async def get_matters(self, owner_id):
        docs = await self.db.billing_matters.find({"owner_id": owner_id}, {"_id": 0}).sort("name", 1).to_list(1000)
        return [Matter.from_dict(d) for d in docs]

    async def get_inbox_emails(self, owner_id):
        docs = await self.db.inbox_emails.find({"owner_id": owner_id}, {"_id": 0}).sort("timestamp", -1).to_list(500)
        return [Email.from_dict(d) for d in docs]
