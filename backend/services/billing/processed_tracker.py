"""
InvoLex Billing Engine - Processed Tracker

Bookkeeping that keeps an email from being billed twice. One tracker is shared by
the on-demand scan, the auto-pilot timer and single-email triage.

An email is eligible for scanning only if it is in none of:
- processed ids (explicitly marked done)
- dismissed ids (suggestion rejected, or suppressed by an IGNORE rule)
- ids referenced by a stored BillableEntry

The tracker also holds the working set of unsaved suggestions. `lock` serializes
check-then-create sequences that span awaits; callers hold it while they commit.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Set, FrozenSet

from services.billing.models import BillableEntry, Email, SuggestedEntry

logger = logging.getLogger(__name__)


class ProcessedTracker:
    def __init__(self, entries: Optional[Iterable[BillableEntry]] = None):
        self._processed_ids: Set[str] = set()
        self._dismissed_ids: Set[str] = set()
        self._entry_email_ids: Set[str] = set()
        self._suggestions: List[SuggestedEntry] = []
        self.lock = asyncio.Lock()
        if entries:
            self.load_entries(entries)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    @property
    def processed_ids(self) -> FrozenSet[str]:
        return frozenset(self._processed_ids)

    @property
    def dismissed_ids(self) -> FrozenSet[str]:
        return frozenset(self._dismissed_ids)

    @property
    def entry_email_ids(self) -> FrozenSet[str]:
        return frozenset(self._entry_email_ids)

    @property
    def suggestions(self) -> List[SuggestedEntry]:
        return list(self._suggestions)

    # -------------------------------------------------------------------------
    # Eligibility
    # -------------------------------------------------------------------------

    def is_eligible(self, email_id: str) -> bool:
        return (
            email_id not in self._processed_ids
            and email_id not in self._dismissed_ids
            and email_id not in self._entry_email_ids
        )

    def filter_eligible(self, emails: Iterable[Email]) -> List[Email]:
        return [email for email in emails if self.is_eligible(email.id)]

    def has_entry_for(self, email_ids: Optional[Iterable[str]]) -> bool:
        """True if a stored entry already references any of these ids."""
        return any(email_id in self._entry_email_ids for email_id in email_ids or [])

    def next_eligible(self, emails: List[Email], current_id: Optional[str]) -> Optional[Email]:
        """
        Next eligible email after current_id, wrapping around to the start.

        Returns None once every email in the inbox is accounted for.
        """
        if not emails:
            return None
        start = 0
        for index, email in enumerate(emails):
            if email.id == current_id:
                start = index + 1
                break
        ordered = emails[start:] + emails[:start]
        for email in ordered:
            if email.id != current_id and self.is_eligible(email.id):
                return email
        return None

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def mark_processed(self, email_ids: Iterable[str]) -> None:
        self._processed_ids.update(email_ids)

    def mark_dismissed(self, email_ids: Iterable[str]) -> None:
        self._dismissed_ids.update(email_ids)

    def record_entry(self, entry: BillableEntry) -> None:
        """Fold a newly stored entry's email ids into eligibility immediately."""
        if entry.email_ids:
            self._entry_email_ids.update(entry.email_ids)
            self.remove_suggestions(entry.email_ids)

    def load_entries(self, entries: Iterable[BillableEntry]) -> None:
        self._entry_email_ids = set()
        for entry in entries:
            if entry.email_ids:
                self._entry_email_ids.update(entry.email_ids)
        logger.debug("Tracker seeded with %d entry email ids", len(self._entry_email_ids))

    def add_suggestions(self, suggestions: List[SuggestedEntry]) -> None:
        """Newest suggestions go first."""
        self._suggestions = list(suggestions) + self._suggestions

    def remove_suggestions(self, email_ids: Iterable[str]) -> List[SuggestedEntry]:
        """Drop every suggestion that shares an id with email_ids; returns what was dropped."""
        ids = set(email_ids)
        removed = [s for s in self._suggestions if ids.intersection(s.email_ids)]
        if removed:
            self._suggestions = [s for s in self._suggestions if not ids.intersection(s.email_ids)]
        return removed

    def dismiss(self, email_ids: Iterable[str]) -> List[SuggestedEntry]:
        ids = list(email_ids)
        removed = self.remove_suggestions(ids)
        self.mark_dismissed(ids)
        return removed
