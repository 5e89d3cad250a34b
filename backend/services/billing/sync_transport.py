"""
InvoLex Billing Engine - Practice Management Sync Transport

Pushes an approved entry to the connected practice management tool (Clio,
PracticePanther, MyCase). The engine only relies on the outcome contract:
success with an external reference, or a human-readable failure reason.

Current implementation: MockSyncTransport unless PRACTICE_SYNC_API_URL is set,
in which case entries are POSTed over HTTP.
"""

import random
import uuid
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

import httpx

from services.billing.config import (
    PRACTICE_SYNC_API_URL,
    PRACTICE_SYNC_API_TOKEN,
    PRACTICE_SYNC_TIMEOUT,
)
from services.billing.models import BillableEntry

logger = logging.getLogger(__name__)

MOCK_FAILURE_MESSAGE = "Could not connect to the practice management server."


@dataclass
class SyncOutcome:
    """Result of pushing one entry."""
    success: bool
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PracticeSyncTransport(ABC):
    @abstractmethod
    async def push(self, entry: BillableEntry, target_system: str) -> SyncOutcome:
        """Push one entry. Failures are reported in the outcome, not raised."""


class MockSyncTransport(PracticeSyncTransport):
    """
    Mock transport for development and testing.

    Succeeds with a generated external id; fails with probability failure_rate.
    Keeps every pushed entry id for verification.
    """

    def __init__(self, failure_rate: float = 0.1, rng: Optional[random.Random] = None):
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()
        self._pushed: List[Dict[str, Any]] = []

    async def push(self, entry: BillableEntry, target_system: str) -> SyncOutcome:
        failed = self._rng.random() < self.failure_rate
        self._pushed.append({"entry_id": entry.id, "target_system": target_system, "success": not failed})

        if failed:
            logger.info("[MOCK SYNC] %s -> %s failed", entry.id, target_system)
            return SyncOutcome(success=False, error=MOCK_FAILURE_MESSAGE)

        external_id = f"{target_system.lower().replace(' ', '-')}-{uuid.uuid4().hex[:8]}"
        logger.info("[MOCK SYNC] %s -> %s as %s", entry.id, target_system, external_id)
        return SyncOutcome(
            success=True,
            external_id=external_id,
            external_url=f"https://app.{target_system.lower().replace(' ', '')}.com/time_entries/{external_id}",
        )

    def get_pushed(self) -> List[Dict[str, Any]]:
        return self._pushed.copy()


class HttpSyncTransport(PracticeSyncTransport):
    """POSTs entries to a practice management bridge API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = PRACTICE_SYNC_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @staticmethod
    def _payload(entry: BillableEntry, target_system: str) -> Dict[str, Any]:
        return {
            "target_system": target_system,
            "entry_id": entry.id,
            "date": entry.date,
            "matter": entry.matter,
            "description": entry.description,
            "hours": entry.hours,
            "rate": entry.rate,
            "amount": entry.amount,
        }

    async def push(self, entry: BillableEntry, target_system: str) -> SyncOutcome:
        url = f"{self.base_url}/time-entries"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, headers=self._headers(), json=self._payload(entry, target_system))
        except httpx.TimeoutException:
            logger.warning("Practice sync timeout for entry %s", entry.id)
            return SyncOutcome(success=False, error=f"Timed out connecting to {target_system}.")
        except httpx.HTTPError as e:
            logger.error("Practice sync request failed for entry %s: %s", entry.id, e)
            return SyncOutcome(success=False, error=MOCK_FAILURE_MESSAGE)

        if resp.status_code in (200, 201):
            data = resp.json() if resp.content else {}
            return SyncOutcome(
                success=True,
                external_id=data.get("id"),
                external_url=data.get("url"),
            )

        logger.error("Practice sync rejected entry %s: %s - %s", entry.id, resp.status_code, resp.text[:200])
        return SyncOutcome(success=False, error=f"Sync failed: {resp.status_code} - {resp.text[:200]}")


def get_sync_transport() -> PracticeSyncTransport:
    """HTTP transport when a bridge URL is configured, otherwise the mock."""
    if PRACTICE_SYNC_API_URL:
        return HttpSyncTransport(PRACTICE_SYNC_API_URL, PRACTICE_SYNC_API_TOKEN or None)
    return MockSyncTransport()
