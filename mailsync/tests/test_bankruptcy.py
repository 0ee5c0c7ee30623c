"""
Unit tests for sync bankruptcy detection.
"""

from datetime import timedelta

import pytest

from mailsync.services.adaptive_interval import AdaptiveIntervalService
from mailsync.services.bankruptcy import SyncBankruptcyDetector
from mailsync.services.sync_progress import SyncProgressService


@pytest.fixture
def progress(store, clock):
    return SyncProgressService(store, clock=clock)


@pytest.fixture
def adaptive(store, clock):
    return AdaptiveIntervalService(store, clock=clock)


@pytest.fixture
def detector(store, progress, adaptive, clock):
    return SyncBankruptcyDetector(store, progress, adaptive, clock=clock)


class TestBankruptcyDecision:
    """Tests for the staleness threshold."""

    def test_never_synced_is_not_bankrupt(self, detector):
        assert detector.should_declare_bankruptcy("acct", "gmail", None).bankrupt is False

    def test_within_threshold(self, detector, clock):
        last_sync = clock.now - timedelta(days=7)
        assert detector.should_declare_bankruptcy("acct", "gmail", last_sync).bankrupt is False

    def test_past_threshold(self, detector, clock):
        last_sync = clock.now - timedelta(days=8)
        decision = detector.should_declare_bankruptcy("acct", "gmail", last_sync)
        assert decision.bankrupt is True
        assert "Gmail" in decision.reason
        assert "8.0 days" in decision.reason

    def test_configurable_threshold(self, detector, clock):
        detector.set_threshold_days(1)
        last_sync = clock.now - timedelta(days=2)
        decision = detector.should_declare_bankruptcy("acct", "outlook", last_sync)
        assert decision.bankrupt is True
        assert "Outlook" in decision.reason

    def test_staleness(self, detector, clock):
        assert detector.get_staleness(clock.now - timedelta(hours=3)) == timedelta(hours=3)
        assert detector.get_staleness(None) is None


class TestFreshSyncReset:
    """Tests for performing the reset."""

    @pytest.mark.asyncio
    async def test_reset_clears_account_data(self, detector, store, progress, adaptive):
        emails = store.collection("emails")
        await emails.upsert({"id": "gmail-1", "account_id": "acct"})
        await emails.upsert({"id": "gmail-2", "account_id": "acct", "is_draft": True})
        await emails.upsert({"id": "gmail-3", "account_id": "other"})
        await progress.initialize_sync_state("acct", "gmail")
        await progress.mark_sync_complete("acct", sync_token="12345")
        await adaptive.record_sync_result("acct", True)

        events = []
        detector.events.subscribe(events.append)
        cleared = await detector.perform_fresh_sync_reset("acct", "gmail")

        assert cleared == 1
        assert await emails.get("gmail-2") is not None
        assert await emails.get("gmail-3") is not None

        state = await progress.get_state("acct")
        assert state.sync_token == ""
        assert state.initial_sync_complete is False
        assert adaptive.get_state("acct") is None

        assert events[0].account_id == "acct"
        assert events[0].emails_cleared == 1

    @pytest.mark.asyncio
    async def test_check_and_reset(self, detector, progress, clock):
        await progress.initialize_sync_state("acct", "outlook")
        assert await detector.check_and_reset("acct", "outlook", clock.now) is False
        assert await detector.check_and_reset("acct", "outlook", clock.now - timedelta(days=30)) is True
