"""
InvoLex Billing Engine - Billing Router

Scans, suggestions, entries and practice management sync.
"""

from fastapi import APIRouter, HTTPException
from typing import Optional, List
from pydantic import BaseModel, Field
import logging

from services.billing.errors import (
    BillingError,
    DuplicateEntryError,
    EntryNotFoundError,
    IntegrationNotConfiguredError,
    InvalidTransitionError,
    ScanFailedError,
)
from services.billing.models import BillableEntry, EntryForm

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])

# Billing engine - set by main app
engine = None

def set_dependencies(billing_engine):
    global engine
    engine = billing_engine


def billing_http_error(error: BillingError) -> HTTPException:
    """Map engine errors to HTTP status codes."""
    if isinstance(error, EntryNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (DuplicateEntryError, InvalidTransitionError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ScanFailedError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, IntegrationNotConfiguredError):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# ==================== MODELS ====================

class EntryFormRequest(BaseModel):
    description: str
    hours: Optional[float] = None
    matter: str
    email_ids: Optional[List[str]] = None
    action_items: List[str] = Field(default_factory=list)
    detailed_breakdown: List[str] = Field(default_factory=list)
    date: Optional[str] = None
    sync: bool = False

    def to_form(self) -> EntryForm:
        return EntryForm(
            description=self.description,
            hours=self.hours,
            matter=self.matter,
            email_ids=self.email_ids,
            action_items=list(self.action_items),
            detailed_breakdown=list(self.detailed_breakdown),
            date=self.date,
        )


class EntryUpdateRequest(BaseModel):
    description: Optional[str] = None
    hours: Optional[float] = None
    matter: Optional[str] = None
    detailed_breakdown: Optional[List[str]] = None


class EmailIdsRequest(BaseModel):
    email_ids: List[str]


class EntryIdsRequest(BaseModel):
    entry_ids: List[str]


class ArchiveRequest(BaseModel):
    entry_ids: List[str]
    archived: bool = True


# ==================== SCAN / SUGGESTIONS ====================

@router.post("/scan")
async def scan_now():
    """Scan the inbox for new billable work."""
    try:
        result = await engine.scan_now()
    except BillingError as e:
        raise billing_http_error(e)
    return result.to_dict()


@router.get("/suggestions")
async def get_suggestions():
    return {"suggestions": [s.to_dict() for s in engine.suggestions]}


@router.post("/suggestions/dismiss")
async def dismiss_suggestion(request: EmailIdsRequest):
    removed = engine.dismiss_suggestion(request.email_ids)
    return {"dismissed": len(removed), "email_ids": request.email_ids}


@router.post("/suggestions/quick-add")
async def quick_add_suggestion(request: EmailIdsRequest):
    """Store a suggestion as a draft entry in one step."""
    suggestion = engine.find_suggestion(request.email_ids)
    if not suggestion:
        raise HTTPException(status_code=404, detail="Suggestion not found")
    try:
        entry = await engine.quick_add_suggestion(suggestion)
    except BillingError as e:
        raise billing_http_error(e)
    if entry is None:
        raise HTTPException(status_code=409, detail="Another suggestion is being added")
    return {"entry": entry.to_dict()}


# ==================== ENTRIES ====================

@router.get("/entries")
async def get_entries(include_archived: bool = False):
    entries = await engine.store.get_billable_entries(engine.owner_id)
    if not include_archived:
        entries = [e for e in entries if not e.is_archived]
    return {"entries": [e.to_dict() for e in entries], "total": len(entries)}


@router.post("/entries")
async def create_entry(request: EntryFormRequest):
    """Create an entry from a draft form; optionally sync it right away."""
    form = request.to_form()
    try:
        if request.sync:
            entry, report = await engine.create_and_sync_entry(form)
            return {"entry": entry.to_dict(), "sync": report.to_dict()}
        if not form.email_ids:
            entry = await engine.create_manual_entry(form)
        else:
            entry = await engine.create_entry_from_form(form)
    except BillingError as e:
        raise billing_http_error(e)
    return {"entry": entry.to_dict()}


@router.put("/entries/{entry_id}")
async def update_entry(entry_id: str, request: EntryUpdateRequest):
    try:
        original = await engine.store.get_entry(engine.owner_id, entry_id)
    except BillingError as e:
        raise billing_http_error(e)

    updated = BillableEntry.from_dict(original.to_dict())
    for field_name, value in request.model_dump(exclude_none=True).items():
        setattr(updated, field_name, value)

    try:
        saved, suggestion = await engine.update_entry(original, updated)
    except BillingError as e:
        raise billing_http_error(e)
    return {
        "entry": saved.to_dict(),
        "rule_suggestion": suggestion.to_dict() if suggestion else None,
    }


@router.post("/entries/sync")
async def sync_entries(request: EntryIdsRequest):
    try:
        report = await engine.sync_entries(request.entry_ids)
    except BillingError as e:
        raise billing_http_error(e)
    return report.to_dict()


@router.post("/entries/sync-pending")
async def sync_pending(autopilot_only: bool = False):
    """Sync every pending entry, or only the auto-generated ones."""
    try:
        if autopilot_only:
            report = await engine.sync_autopilot_pending()
        else:
            report = await engine.sync_all_pending()
    except BillingError as e:
        raise billing_http_error(e)
    return report.to_dict()


@router.post("/entries/archive")
async def archive_entries(request: ArchiveRequest):
    try:
        entries = await engine.set_archive_status(request.entry_ids, request.archived)
    except BillingError as e:
        raise billing_http_error(e)
    return {"entries": [e.to_dict() for e in entries]}


@router.get("/hours/today")
async def todays_hours():
    return {"hours": await engine.todays_billable_hours()}
