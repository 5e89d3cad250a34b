"""
InvoLex Billing Engine - Errors

Exceptions raised by the billing engine. Routes translate them into HTTP errors.
"""

from typing import List, Optional


class BillingError(Exception):
    """Base class for billing engine failures."""


class ScanFailedError(BillingError):
    """The AI grouping call failed; the scan made no changes."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class IntegrationNotConfiguredError(BillingError):
    """Sync was requested while no practice management tool is connected."""

    def __init__(self, message: str = "Please connect to a Practice Management software in Settings first."):
        super().__init__(message)


class DuplicateEntryError(BillingError):
    """A stored entry already references one of the email ids."""

    def __init__(self, email_ids: List[str], message: str = "An entry for one of these emails already exists."):
        super().__init__(message)
        self.email_ids = list(email_ids)


class EntryNotFoundError(BillingError):
    def __init__(self, entry_id: str):
        super().__init__(f"Billable entry not found: {entry_id}")
        self.entry_id = entry_id


class InvalidTransitionError(BillingError):
    """A triage event is not allowed from the session's current state."""

    def __init__(self, current_state, event):
        state_label = getattr(current_state, "value", current_state)
        event_label = getattr(event, "value", event)
        super().__init__(f"Cannot apply {event_label} while triage state is {state_label}")
        self.current_state = current_state
        self.event = event
