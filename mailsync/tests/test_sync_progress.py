"""
Unit tests for persisted sync progress.
"""

import pytest

from mailsync.providers.email.base import SyncStatus
from mailsync.providers.base import ProviderHTTPError
from mailsync.services.sync_failures import SyncFailureTracker
from mailsync.services.sync_progress import SyncProgressService


@pytest.fixture
def progress(store, clock):
    return SyncProgressService(store, clock=clock)


class TestSyncState:
    """Tests for state creation and updates."""

    @pytest.mark.asyncio
    async def test_initialize(self, progress):
        state = await progress.initialize_sync_state("acct", "gmail")
        assert state.status == SyncStatus.IDLE
        assert state.initial_sync_complete is False
        assert (await progress.get_state("acct")).provider == "gmail"

    @pytest.mark.asyncio
    async def test_update_requires_state(self, progress):
        with pytest.raises(KeyError):
            await progress.update_progress("missing", emails_synced=1)

    @pytest.mark.asyncio
    async def test_syncing_stamps_start_and_clears_errors(self, progress, clock):
        await progress.initialize_sync_state("acct", "gmail")
        await progress.update_progress("acct", status=SyncStatus.ERROR, error="boom")
        state = await progress.get_state("acct")
        assert state.error_count == 1
        assert state.last_error == "boom"

        state = await progress.update_progress("acct", status=SyncStatus.SYNCING)
        assert state.sync_started_at == clock.now
        assert state.error_count == 0
        assert state.last_error is None

    @pytest.mark.asyncio
    async def test_percentage_and_eta(self, progress, clock):
        await progress.initialize_sync_state("acct", "gmail")
        await progress.update_progress("acct", status=SyncStatus.SYNCING, total_emails_to_sync=1000)
        clock.advance(seconds=50)
        state = await progress.update_progress("acct", emails_synced=250)

        assert state.progress_percentage == 25.0
        assert state.average_sync_rate == 5.0
        assert state.estimated_time_remaining == 150

    @pytest.mark.asyncio
    async def test_percentage_is_capped(self, progress):
        await progress.initialize_sync_state("acct", "gmail")
        state = await progress.update_progress("acct", total_emails_to_sync=10, emails_synced=12)
        assert state.progress_percentage == 100.0

    @pytest.mark.asyncio
    async def test_mark_complete(self, progress, clock):
        await progress.initialize_sync_state("acct", "gmail")
        await progress.update_progress("acct", page_token="5", pending_cursor="99")
        state = await progress.mark_sync_complete("acct", sync_token="99")

        assert state.status == SyncStatus.IDLE
        assert state.initial_sync_complete is True
        assert state.sync_token == "99"
        assert state.page_token == ""
        assert state.pending_cursor == ""
        assert state.last_sync_at == clock.now

    @pytest.mark.asyncio
    async def test_reset_for_full_sync(self, progress):
        await progress.initialize_sync_state("acct", "gmail")
        await progress.mark_sync_complete("acct", sync_token="99")
        state = await progress.reset_for_full_sync("acct")
        assert state.sync_token == ""
        assert state.initial_sync_complete is False
        assert state.emails_synced == 0
        assert state.last_sync_at is None

    @pytest.mark.asyncio
    async def test_request_window(self, progress, clock):
        await progress.initialize_sync_state("acct", "gmail")
        await progress.record_request("acct")
        await progress.record_request("acct")
        state = await progress.get_state("acct")
        assert state.request_count == 2
        assert state.last_request_at == clock.now

    @pytest.mark.asyncio
    async def test_schedule_next_sync(self, progress, clock):
        await progress.initialize_sync_state("acct", "gmail")
        next_at = await progress.schedule_next_sync("acct", 60)
        assert (next_at - clock.now).total_seconds() == 60
        assert await progress.schedule_next_sync("missing", 60) is None

    @pytest.mark.asyncio
    async def test_resume_point(self, progress):
        await progress.initialize_sync_state("acct", "gmail")
        state = await progress.update_progress("acct", page_token="20", page_start_count=20, emails_synced=27)
        assert state.get_resume_point() == ("20", 20)


class TestProgressReporting:
    """Tests for UI progress snapshots."""

    @pytest.mark.asyncio
    async def test_progress_includes_failures(self, progress, store, clock):
        failures = SyncFailureTracker(store, clock=clock)
        await progress.initialize_sync_state("acct", "gmail")
        await failures.record_failure("gmail-1", "acct", "gmail", ProviderHTTPError("down", 503))

        snapshot = await progress.get_progress("acct", failures)
        assert snapshot.failures["pending_count"] == 1
        assert snapshot.to_dict()["status"] == "idle"

    @pytest.mark.asyncio
    async def test_all_progress(self, progress):
        await progress.initialize_sync_state("a", "gmail")
        await progress.initialize_sync_state("b", "outlook")
        assert {p.account_id for p in await progress.get_all_progress()} == {"a", "b"}
        assert await progress.get_progress("missing") is None

    @pytest.mark.asyncio
    async def test_delete_state(self, progress):
        await progress.initialize_sync_state("acct", "gmail")
        assert await progress.delete_state("acct") is True
        assert await progress.get_state("acct") is None
