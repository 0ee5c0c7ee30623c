"""
Tests for the sync orchestrator: scheduling, gating and entry points.

Timers run on the real event loop. Every first run is scheduled with no
delay and every later interval is long, so a short sleep followed by
wait_for_idle() settles the orchestrator deterministically.
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import MonotonicClock

from mailsync.core.events import EventChannel, SyncLifecycleStatus, UserActionEvent
from mailsync.providers.base import (
    AccountNotFoundError,
    CircuitOpenError,
    ProviderHTTPError,
    ProviderType,
    ReauthenticationRequiredError,
)
from mailsync.services.adaptive_interval import ACTIVE_INTERVAL, IDLE_3_INTERVAL, AdaptiveIntervalService
from mailsync.services.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from mailsync.workers.sync_orchestrator import SyncOrchestrator


@pytest.fixture
def adaptive(store, clock):
    return AdaptiveIntervalService(store, clock=clock)


@pytest.fixture
def breaker():
    return CircuitBreaker(CircuitBreakerConfig(), clock=MonotonicClock())


@pytest.fixture
def orchestrator(context, engine, breaker, adaptive):
    return SyncOrchestrator(
        {ProviderType.GMAIL: engine},
        context,
        circuit_breaker=breaker,
        adaptive_interval=adaptive,
        fixed_interval=3600,
    )


async def settle(orchestrator):
    await asyncio.sleep(0.01)
    await orchestrator.wait_for_idle()


class TestLifecycle:
    """Tests for start, stop and the reschedule loop."""

    @pytest.mark.asyncio
    async def test_start_syncs_known_accounts(self, orchestrator, context, store, clock):
        await context.progress.initialize_sync_state("acct", "gmail")

        await orchestrator.start()
        try:
            await settle(orchestrator)

            assert await store.collection("emails").count() == 25
            assert orchestrator.has_pending_timer("acct")
            state = await context.progress.get_state("acct")
            assert state.initial_sync_complete is True
            assert state.next_sync_at == clock.now + timedelta(seconds=ACTIVE_INTERVAL)
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_start_skips_accounts_without_engine(self, orchestrator, context):
        await context.progress.initialize_sync_state("gmail-acct", "gmail")
        await context.progress.initialize_sync_state("outlook-acct", "outlook")
        await context.progress.initialize_sync_state("other-acct", "yahoo")

        await orchestrator.start()
        try:
            assert orchestrator.list_accounts() == {"gmail-acct": ProviderType.GMAIL}
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_timers_and_subscriptions(self, orchestrator, network):
        await orchestrator.start()
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        await settle(orchestrator)

        await orchestrator.stop()

        assert orchestrator.is_running is False
        assert orchestrator.has_pending_timer("acct") is False
        assert network.listeners == []

    @pytest.mark.asyncio
    async def test_fixed_interval_when_adaptive_disabled(self, orchestrator, adaptive):
        await adaptive.set_enabled(False)
        assert orchestrator.next_interval("acct") == 3600


class TestAccounts:
    """Tests for adding and removing accounts."""

    @pytest.mark.asyncio
    async def test_add_account_while_running(self, orchestrator, store):
        await orchestrator.start()
        try:
            await orchestrator.add_account("acct", ProviderType.GMAIL)
            await settle(orchestrator)
            assert await store.collection("emails").count() == 25
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_add_account_without_engine(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.add_account("acct", ProviderType.OUTLOOK)

    @pytest.mark.asyncio
    async def test_remove_account_keeps_emails(self, orchestrator, context, store):
        await orchestrator.start()
        try:
            await orchestrator.add_account("acct", ProviderType.GMAIL)
            await settle(orchestrator)

            await orchestrator.remove_account("acct")

            assert orchestrator.list_accounts() == {}
            assert orchestrator.has_pending_timer("acct") is False
            assert await context.progress.get_state("acct") is None
            assert await store.collection("emails").count() == 25
        finally:
            await orchestrator.stop()


class TestGating:
    """Tests for offline and open-circuit gating."""

    @pytest.mark.asyncio
    async def test_offline_pauses_then_resumes(self, orchestrator, network, store):
        """An account skipped while offline syncs as soon as the network returns."""
        network.online = False
        await orchestrator.start()
        try:
            await orchestrator.add_account("acct", ProviderType.GMAIL)
            await settle(orchestrator)
            assert await store.collection("emails").count() == 0

            network.set_online(True)
            await settle(orchestrator)
            assert await store.collection("emails").count() == 25
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_trigger_offline_is_skipped(self, orchestrator, network):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        network.online = False
        assert await orchestrator.trigger_sync("acct") is None

    @pytest.mark.asyncio
    async def test_trigger_with_open_circuit(self, orchestrator, breaker, mailbox):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        for _ in range(3):
            breaker.record_failure("gmail")

        with pytest.raises(CircuitOpenError) as exc_info:
            await orchestrator.trigger_sync("acct")
        assert exc_info.value.cooldown_remaining == 60
        assert mailbox.list_calls == []

    @pytest.mark.asyncio
    async def test_failed_sync_counts_toward_circuit(self, orchestrator, breaker, mailbox):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        mailbox.list_error = ProviderHTTPError("Backend Error", 503)

        with pytest.raises(ProviderHTTPError):
            await orchestrator.trigger_sync("acct")
        assert breaker.get_status("gmail").failure_count == 1

    @pytest.mark.asyncio
    async def test_paused_trial_frees_probe_slot(self, orchestrator, breaker, network, mailbox):
        """A half-open trial that pauses lets the next attempt probe again."""
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        for _ in range(3):
            breaker.record_failure("gmail")
        breaker.force_probe("gmail")

        def drop_network(_message_id):
            network.online = False

        mailbox.on_fetch = drop_network
        result = await orchestrator.trigger_sync("acct")

        assert result.paused is True
        assert breaker.get_state("gmail") == CircuitState.HALF_OPEN
        assert breaker.can_execute("gmail") is True

    @pytest.mark.asyncio
    async def test_permanent_trial_failure_frees_probe_slot(self, orchestrator, breaker, credentials, mailbox):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        for _ in range(3):
            breaker.record_failure("gmail")
        breaker.force_probe("gmail")
        mailbox.accepted_token = "token-2"
        credentials.fail_refresh = True

        with pytest.raises(ReauthenticationRequiredError):
            await orchestrator.trigger_sync("acct")

        assert breaker.get_state("gmail") == CircuitState.HALF_OPEN
        assert breaker.can_execute("gmail") is True

    @pytest.mark.asyncio
    async def test_probe_success_closes_circuit(self, orchestrator, breaker):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        for _ in range(3):
            breaker.record_failure("gmail")
        breaker.force_probe("gmail")

        await orchestrator.trigger_sync("acct")

        assert breaker.get_state("gmail") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_failed_sync_counts_as_idle(self, orchestrator, adaptive, mailbox):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        mailbox.list_error = ProviderHTTPError("Backend Error", 503)

        for _ in range(3):
            with pytest.raises(ProviderHTTPError):
                await orchestrator.trigger_sync("acct")

        assert adaptive.get_interval("acct") == IDLE_3_INTERVAL

    @pytest.mark.asyncio
    async def test_success_closes_counters(self, orchestrator, breaker):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        breaker.record_failure("gmail")
        await orchestrator.trigger_sync("acct")
        assert breaker.get_status("gmail").consecutive_failures == 0


class TestEntryPoints:
    """Tests for manual triggers, account switches and user actions."""

    @pytest.mark.asyncio
    async def test_trigger_sync(self, orchestrator, context, store):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        statuses = []
        context.lifecycle_events.subscribe(lambda event: statuses.append(event.status))

        result = await orchestrator.trigger_sync("acct")

        assert result.new_messages == 25
        assert await store.collection("emails").count() == 25
        assert statuses[0] == SyncLifecycleStatus.QUEUED
        assert SyncLifecycleStatus.SYNCED in statuses

    @pytest.mark.asyncio
    async def test_trigger_unknown_account(self, orchestrator):
        with pytest.raises(AccountNotFoundError):
            await orchestrator.trigger_sync("nobody")

    @pytest.mark.asyncio
    async def test_account_switch_syncs_immediately(self, orchestrator, mailbox):
        await orchestrator.start()
        try:
            await orchestrator.add_account("acct", ProviderType.GMAIL)
            await settle(orchestrator)
            assert mailbox.delta_calls == []

            await orchestrator.on_account_switch("acct")

            assert len(mailbox.delta_calls) == 1
            assert orchestrator.has_pending_timer("acct")
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_user_action_resets_cadence(self, orchestrator, adaptive, context, clock):
        await orchestrator.start()
        try:
            await orchestrator.add_account("acct", ProviderType.GMAIL)
            await settle(orchestrator)
            for _ in range(3):
                await adaptive.record_sync_result("acct", False)
            assert adaptive.get_interval("acct") > ACTIVE_INTERVAL

            actions = EventChannel("user-actions")
            orchestrator.subscribe_to_action_events(actions)
            actions.publish(UserActionEvent(account_id="acct", action="archive"))
            await asyncio.sleep(0.01)

            assert adaptive.get_interval("acct") == ACTIVE_INTERVAL
            state = await context.progress.get_state("acct")
            assert state.next_sync_at == clock.now + timedelta(seconds=ACTIVE_INTERVAL)
        finally:
            await orchestrator.stop()

    @pytest.mark.asyncio
    async def test_other_actions_are_ignored(self, orchestrator, adaptive):
        await orchestrator.start()
        try:
            await orchestrator.add_account("acct", ProviderType.GMAIL)
            await settle(orchestrator)
            for _ in range(3):
                await adaptive.record_sync_result("acct", False)
            idle_interval = adaptive.get_interval("acct")

            actions = EventChannel("user-actions")
            orchestrator.subscribe_to_action_events(actions)
            actions.publish(UserActionEvent(account_id="acct", action="read"))
            await asyncio.sleep(0.01)

            assert adaptive.get_interval("acct") == idle_interval
        finally:
            await orchestrator.stop()


class TestQueries:
    """Tests for progress and failure queries."""

    @pytest.mark.asyncio
    async def test_progress(self, orchestrator):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        await orchestrator.trigger_sync("acct")

        progress = await orchestrator.get_progress("acct")
        assert progress.emails_synced == 25
        assert [p.account_id for p in await orchestrator.get_all_progress()] == ["acct"]

    @pytest.mark.asyncio
    async def test_progress_unknown_account(self, orchestrator):
        with pytest.raises(AccountNotFoundError):
            await orchestrator.get_progress("nobody")

    @pytest.mark.asyncio
    async def test_failure_stats(self, orchestrator, mailbox):
        await orchestrator.add_account("acct", ProviderType.GMAIL)
        mailbox.fail_fetch("m003", ProviderHTTPError("Not Found", 404))

        await orchestrator.trigger_sync("acct")

        stats = await orchestrator.get_failure_stats("acct")
        assert stats.permanent_count == 1
        sweep = await orchestrator.process_pending_retries("acct")
        assert sweep.processed == 0
