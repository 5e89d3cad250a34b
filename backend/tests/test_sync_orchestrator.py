"""
Tests for the sync orchestrator: batch submission, per-entry outcomes and the
in-flight guard.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock

from services.billing.errors import IntegrationNotConfiguredError
from services.billing.models import EntryForm, EntryStatus
from services.billing.sync_orchestrator import SyncOrchestrator, SyncReport
from services.billing.sync_transport import PracticeSyncTransport, SyncOutcome


class BlockingTransport(PracticeSyncTransport):
    """Holds every push until released."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.seen_statuses = []

    async def push(self, entry, target_system):
        self.seen_statuses.append(entry.status)
        self.started.set()
        await self.release.wait()
        return SyncOutcome(success=True, external_id=f"ext-{entry.id}")


async def _add_entries(store, settings, count):
    entries = []
    for i in range(count):
        form = EntryForm(description=f"Task {i}", hours=0.5, matter="Acme Corp", email_ids=[f"m{i}"])
        entries.append(await store.add_billable_entry(settings.owner_id, form, 400.0, "Clio"))
    return entries


class TestSyncMany:
    """Batch outcomes."""

    @pytest.mark.asyncio
    async def test_all_succeed(self, store, settings):
        """Every entry ends synced with external references."""
        entries = await _add_entries(store, settings, 3)
        orchestrator = SyncOrchestrator(store, settings)

        report = await orchestrator.sync_many([e.id for e in entries])

        assert len(report.succeeded) == 3
        assert report.failed == []
        for entry in report.succeeded:
            assert entry.status == EntryStatus.SYNCED
            assert entry.sync_details.target_system == "Clio"
            assert entry.sync_details.external_url
        assert report.summary_messages("Clio") == ["3 entries successfully synced to Clio."]

    @pytest.mark.asyncio
    async def test_partial_failure_is_independent(self, store, settings):
        """One failed push does not roll back the others."""
        entries = await _add_entries(store, settings, 3)
        failing_id = entries[1].id

        def push(entry, target_system):
            if entry.id == failing_id:
                return SyncOutcome(success=False, error="Matter is closed in Clio.")
            return SyncOutcome(success=True, external_id=f"ext-{entry.id}")

        store.transport = AsyncMock(spec=PracticeSyncTransport)
        store.transport.push.side_effect = push

        report = await SyncOrchestrator(store, settings).sync_many([e.id for e in entries])

        assert sorted(e.id for e in report.succeeded) == sorted([entries[0].id, entries[2].id])
        assert [e.id for e in report.failed] == [failing_id]
        failed = await store.get_entry(settings.owner_id, failing_id)
        assert failed.status == EntryStatus.ERROR
        assert failed.sync_details.error_message == "Matter is closed in Clio."
        assert report.summary_messages("Clio") == [
            "2 entries successfully synced to Clio.",
            "1 entries failed to sync. Please review them.",
        ]

    @pytest.mark.asyncio
    async def test_transport_exception_marks_error(self, store, settings):
        """A raising transport resolves the entry to error instead of propagating."""
        entries = await _add_entries(store, settings, 1)
        store.transport = AsyncMock(spec=PracticeSyncTransport)
        store.transport.push.side_effect = RuntimeError("socket closed")

        report = await SyncOrchestrator(store, settings).sync_many([entries[0].id])

        assert report.succeeded == []
        assert report.failed[0].status == EntryStatus.ERROR
        assert report.failed[0].sync_details.error_message == "socket closed"

    @pytest.mark.asyncio
    async def test_store_failure_during_sync_keeps_other_results(self, store, settings):
        """A store error for one entry still reports the entries that synced."""
        entries = await _add_entries(store, settings, 2)
        failing_id = entries[1].id
        original_get = store.get_entry

        async def get_entry(owner_id, entry_id):
            entry = await original_get(owner_id, entry_id)
            if entry_id == failing_id and entry.status == EntryStatus.GENERATING:
                raise RuntimeError("db down")
            return entry

        store.get_entry = get_entry

        report = await SyncOrchestrator(store, settings).sync_many([e.id for e in entries])

        assert [e.id for e in report.succeeded] == [entries[0].id]
        assert [e.id for e in report.failed] == [failing_id]
        failed = await original_get(settings.owner_id, failing_id)
        assert failed.status == EntryStatus.ERROR
        assert failed.sync_details.error_message == "db down"

    @pytest.mark.asyncio
    async def test_unrecordable_failure_still_reported(self, store, settings):
        """If the error write itself fails the entry is reported failed, not raised."""
        entries = await _add_entries(store, settings, 2)
        failing_id = entries[1].id

        def push(entry, target_system):
            if entry.id == failing_id:
                raise RuntimeError("transport down")
            return SyncOutcome(success=True, external_id=f"ext-{entry.id}")

        store.transport = AsyncMock(spec=PracticeSyncTransport)
        store.transport.push.side_effect = push
        original_update = store.update_billable_entry

        async def update_billable_entry(owner_id, entry, *args, **kwargs):
            if entry.status == EntryStatus.ERROR:
                raise RuntimeError("db down")
            return await original_update(owner_id, entry, *args, **kwargs)

        store.update_billable_entry = update_billable_entry
        orchestrator = SyncOrchestrator(store, settings)

        report = await orchestrator.sync_many([e.id for e in entries])

        assert [e.id for e in report.succeeded] == [entries[0].id]
        assert report.failed[0].id == failing_id
        assert report.failed[0].status == EntryStatus.ERROR
        assert report.failed[0].sync_details.error_message == "transport down"
        assert orchestrator.in_flight == set()

    @pytest.mark.asyncio
    async def test_unknown_entry_is_skipped(self, store, settings):
        """Missing ids are reported as skipped."""
        entries = await _add_entries(store, settings, 1)

        report = await SyncOrchestrator(store, settings).sync_many([entries[0].id, "entry-missing"])

        assert [e.id for e in report.succeeded] == [entries[0].id]
        assert report.skipped == ["entry-missing"]

    @pytest.mark.asyncio
    async def test_duplicate_ids_in_batch_sync_once(self, store, settings):
        """The same id twice in one call is pushed once."""
        entries = await _add_entries(store, settings, 1)

        report = await SyncOrchestrator(store, settings).sync_many([entries[0].id, entries[0].id])

        assert len(report.succeeded) == 1
        assert len(store.transport.get_pushed()) == 1

    @pytest.mark.asyncio
    async def test_no_integration_raises(self, store, settings):
        """Nothing is touched when no practice tool is connected."""
        entries = await _add_entries(store, settings, 1)
        settings.active_integration = None

        with pytest.raises(IntegrationNotConfiguredError):
            await SyncOrchestrator(store, settings).sync_many([entries[0].id])

        assert (await store.get_entry(settings.owner_id, entries[0].id)).status == EntryStatus.PENDING

    @pytest.mark.asyncio
    async def test_empty_batch(self, store, settings):
        """No ids gives an empty report."""
        report = await SyncOrchestrator(store, settings).sync_many([])
        assert report.entries == []
        assert report.summary_messages("Clio") == []


class TestInFlightGuard:
    """At most one sync per entry at a time."""

    @pytest.mark.asyncio
    async def test_entry_marked_generating_and_second_request_skipped(self, store, settings):
        """A concurrent sync for the same entry is skipped while the first is running."""
        entries = await _add_entries(store, settings, 1)
        entry_id = entries[0].id
        transport = BlockingTransport()
        store.transport = transport
        orchestrator = SyncOrchestrator(store, settings)

        first = asyncio.create_task(orchestrator.sync_many([entry_id]))
        await asyncio.wait_for(transport.started.wait(), timeout=1)

        assert orchestrator.is_in_flight(entry_id)
        assert transport.seen_statuses == [EntryStatus.GENERATING]
        second = await orchestrator.sync_many([entry_id])
        assert second.skipped == [entry_id]
        assert second.entries == []

        transport.release.set()
        report = await asyncio.wait_for(first, timeout=1)

        assert [e.id for e in report.succeeded] == [entry_id]
        assert orchestrator.in_flight == set()

    @pytest.mark.asyncio
    async def test_in_flight_cleared_after_failure(self, store, settings):
        """A failed batch does not leave ids stuck in flight."""
        entries = await _add_entries(store, settings, 1)
        store.transport = AsyncMock(spec=PracticeSyncTransport)
        store.transport.push.side_effect = RuntimeError("boom")
        orchestrator = SyncOrchestrator(store, settings)

        await orchestrator.sync_many([entries[0].id])

        assert orchestrator.is_in_flight(entries[0].id) is False


class TestSyncReport:
    def test_to_dict(self):
        """Empty report serializes to empty lists."""
        assert SyncReport().to_dict() == {"succeeded": [], "failed": [], "skipped": []}
