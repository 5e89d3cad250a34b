"""
InvoLex Billing Engine

Decides, per email or per group of related emails, whether the content is billable
legal work, what the entry should contain, and whether it is created and synced
automatically, offered as a suggestion, or suppressed.

Components:
- rule_engine.py: per-matter ordered billing rules
- decision_resolver.py: rule intent + AI confidence + auto-pilot -> routing action
- processed_tracker.py: shared dedup state across all scan triggers
- scan_pipeline.py: batch grouping scan
- triage_machine.py: single-email triage session
- sync_orchestrator.py: concurrent practice management sync
- engine.py: BillingEngine facade used by the routes

Usage:
    from services.billing import BillingEngine, BillingSettings, InMemoryBillingStore

    engine = BillingEngine(store, ai, BillingSettings(owner_id="user-1"))
    await engine.load()
    result = await engine.scan_now()
"""

from .ai_collaborator import BillingAI, GeminiBillingAI
from .engine import BillingEngine
from .errors import (
    BillingError,
    DuplicateEntryError,
    EntryNotFoundError,
    IntegrationNotConfiguredError,
    InvalidTransitionError,
    ScanFailedError,
)
from .models import BillingSettings
from .store import BillingStore, InMemoryBillingStore, MongoBillingStore
from .sync_transport import get_sync_transport

__all__ = [
    'BillingAI',
    'GeminiBillingAI',
    'BillingEngine',
    'BillingSettings',
    'BillingStore',
    'InMemoryBillingStore',
    'MongoBillingStore',
    'get_sync_transport',
    'BillingError',
    'DuplicateEntryError',
    'EntryNotFoundError',
    'IntegrationNotConfiguredError',
    'InvalidTransitionError',
    'ScanFailedError',
]
