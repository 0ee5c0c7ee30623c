"""
Email Sync Orchestrator

Schedules sync runs for every account and coordinates the provider
engines with the circuit breaker, adaptive polling and network state.

Each account has its own reschedule loop: a cancelable timer fires one
sync (plus a retry sweep of due item failures), and only when that run
has finished is the next timer armed.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional

from mailsync.core.events import (
    EventChannel,
    SyncLifecycleEvent,
    SyncLifecycleStatus,
    UserActionEvent,
)
from mailsync.providers.base import (
    AccountNotFoundError,
    CircuitOpenError,
    ProviderType,
    SyncAlreadyInProgressError,
)
from mailsync.providers.email.base import BaseEmailSync, SyncContext, SyncProgress, SyncResult
from mailsync.services.adaptive_interval import AdaptiveIntervalService
from mailsync.services.circuit_breaker import CircuitBreaker
from mailsync.services.sync_failures import SyncFailureStats

logger = logging.getLogger(__name__)

DEFAULT_SYNC_INTERVAL = 180.0  # seconds

# Local actions that signal an active user
QUALIFYING_ACTIONS = {"send", "archive", "label"}


class SyncOrchestrator:
    """
    Runs periodic sync for all accounts.

    Handles:
    - One cancelable timer per account, never two overlapping runs
    - Offline and open-circuit gating before each attempt
    - Adaptive or fixed intervals between runs
    - Manual triggers, account switches and user-action cadence resets
    - Resuming paused accounts when the network comes back
    """

    def __init__(
        self,
        engines: Dict[ProviderType, BaseEmailSync],
        context: SyncContext,
        circuit_breaker: Optional[CircuitBreaker] = None,
        adaptive_interval: Optional[AdaptiveIntervalService] = None,
        fixed_interval: float = DEFAULT_SYNC_INTERVAL,
    ):
        self.engines = engines
        self.context = context
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.adaptive_interval = adaptive_interval
        self.fixed_interval = fixed_interval

        self._accounts: Dict[str, ProviderType] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._paused: set[str] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._running = False

    @property
    def lifecycle_events(self) -> EventChannel[SyncLifecycleEvent]:
        return self.context.lifecycle_events

    @property
    def is_running(self) -> bool:
        return self._running

    def list_accounts(self) -> Dict[str, ProviderType]:
        return dict(self._accounts)

    def has_pending_timer(self, account_id: str) -> bool:
        return account_id in self._timers

    def is_syncing(self, account_id: str) -> bool:
        return account_id in self._inflight

    # ==================== Lifecycle ====================

    async def start(self):
        """Load persisted state and start syncing every known account."""
        if self._running:
            logger.debug("Sync orchestrator already started")
            return

        self._running = True
        logger.info(f"Starting sync orchestrator (fixed interval {self.fixed_interval:.0f}s)")

        if self.adaptive_interval is not None:
            await self.adaptive_interval.load()
        await self.context.conflicts.load_preferences()

        for state in await self.context.progress.get_all_states():
            try:
                provider = ProviderType(state.provider)
            except ValueError:
                logger.warning(f"Skipping account {state.account_id} with unknown provider {state.provider}")
                continue
            if provider not in self.engines:
                logger.warning(f"No engine configured for {provider.value}, skipping {state.account_id}")
                continue
            self._accounts[state.account_id] = provider

        self._unsubscribers.append(self.context.network.subscribe(self._on_network_change))

        # First run is immediate; it also sweeps failures left over from the last process
        for account_id in self._accounts:
            self._schedule(account_id, 0)

    async def stop(self):
        """Cancel all timers and subscriptions, then let in-flight syncs reach a checkpoint."""
        if not self._running:
            return

        logger.info("Stopping sync orchestrator")
        self._running = False

        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

        for account_id in list(self._inflight):
            engine = self._engine_for(account_id)
            if engine is not None:
                engine.request_cancel(account_id)

        await self.wait_for_idle()
        self._inflight.clear()

    async def wait_for_idle(self):
        """Wait until every in-flight sync run has finished."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    # ==================== Accounts ====================

    async def add_account(self, account_id: str, provider: ProviderType):
        """Register an account and start syncing it."""
        if provider not in self.engines:
            raise ValueError(f"No engine configured for provider: {provider}")

        if await self.context.progress.get_state(account_id) is None:
            await self.context.progress.initialize_sync_state(account_id, provider.value)
        self._accounts[account_id] = provider
        logger.info(f"Added account {account_id} ({provider.value})")

        if self._running:
            self._schedule(account_id, 0)

    async def remove_account(self, account_id: str, delete_state: bool = True):
        """
        Stop syncing an account.

        The pending timer is cancelled immediately; an in-flight sync is asked
        to stop at its next checkpoint and awaited.
        """
        self._cancel_timer(account_id)
        engine = self._engine_for(account_id)
        self._accounts.pop(account_id, None)
        self._paused.discard(account_id)

        task = self._inflight.get(account_id)
        if task is not None:
            if engine is not None:
                engine.request_cancel(account_id)
            await asyncio.gather(task, return_exceptions=True)

        if delete_state:
            await self.context.progress.delete_state(account_id)
            await self.context.conflicts.discard_for_account(account_id)
            if self.adaptive_interval is not None:
                await self.adaptive_interval.reset(account_id)
        logger.info(f"Removed account {account_id}")

    def _engine_for(self, account_id: str) -> Optional[BaseEmailSync]:
        provider = self._accounts.get(account_id)
        return self.engines.get(provider) if provider else None

    def _require_engine(self, account_id: str) -> BaseEmailSync:
        engine = self._engine_for(account_id)
        if engine is None:
            raise AccountNotFoundError(account_id)
        return engine

    # ==================== Scheduling ====================

    def next_interval(self, account_id: str) -> float:
        if self.adaptive_interval is not None and self.adaptive_interval.is_enabled():
            return self.adaptive_interval.get_interval(account_id)
        return self.fixed_interval

    def _cancel_timer(self, account_id: str):
        handle = self._timers.pop(account_id, None)
        if handle is not None:
            handle.cancel()

    def _schedule(self, account_id: str, delay: float):
        if not self._running or account_id not in self._accounts:
            return
        self._cancel_timer(account_id)
        loop = asyncio.get_running_loop()
        self._timers[account_id] = loop.call_later(delay, self._fire, account_id)

    def _fire(self, account_id: str):
        self._timers.pop(account_id, None)
        if account_id in self._inflight:
            # The running sync re-arms the timer when it finishes
            return
        self._start_run(account_id)

    def _start_run(self, account_id: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._run_scheduled(account_id))
        self._inflight[account_id] = task
        return task

    async def _run_scheduled(self, account_id: str):
        try:
            await self._sync_account(account_id)
        except SyncAlreadyInProgressError:
            logger.debug(f"Scheduled sync for {account_id} skipped, a manual sync is running")
        except Exception as e:
            logger.error(f"Sync failed for {account_id}: {e}")
        finally:
            self._inflight.pop(account_id, None)

        await self._schedule_next(account_id)

    async def _schedule_next(self, account_id: str):
        if not self._running or account_id not in self._accounts:
            return
        interval = self.next_interval(account_id)
        await self.context.progress.schedule_next_sync(account_id, interval)
        self._schedule(account_id, interval)
        logger.debug(f"Next sync for {account_id} in {interval:.0f}s")

    async def _sync_account(self, account_id: str, raise_if_blocked: bool = False) -> Optional[SyncResult]:
        """
        One gated sync attempt followed by a retry sweep.

        Returns None when the attempt was skipped (offline or circuit open).
        """
        engine = self._require_engine(account_id)
        provider = engine.provider_type.value

        if not self.context.network.is_online():
            logger.debug(f"Offline, skipping sync for {account_id}")
            self._paused.add(account_id)
            return None

        if not self.circuit_breaker.can_execute(provider):
            remaining = self.circuit_breaker.get_cooldown_remaining(provider)
            logger.info(f"Circuit open for {provider}, skipping sync for {account_id}")
            if raise_if_blocked:
                raise CircuitOpenError(provider, remaining)
            return None

        self.lifecycle_events.publish(
            SyncLifecycleEvent(account_id=account_id, status=SyncLifecycleStatus.QUEUED)
        )

        try:
            result = await engine.start_sync(account_id)
        except SyncAlreadyInProgressError:
            raise
        except Exception as e:
            if self.circuit_breaker.record_error(provider, e):
                logger.warning(f"Recorded {provider} failure in circuit breaker: {e}")
            if self.adaptive_interval is not None:
                await self.adaptive_interval.record_sync_result(account_id, False)
            raise
        else:
            if not result.paused:
                self.circuit_breaker.record_success(provider)
        finally:
            # A paused or permanently failed trial leaves the circuit half-open
            self.circuit_breaker.release_probe(provider)

        if result.paused:
            self._paused.add(account_id)
            return result

        self._paused.discard(account_id)
        if self.adaptive_interval is not None:
            await self.adaptive_interval.record_sync_result(account_id, result.had_new_messages)

        sweep = await engine.process_pending_retries(account_id)
        if sweep.processed:
            stats = await self.context.failures.get_stats(account_id)
            result.retrying = stats.open_count
        return result

    # ==================== Entry points ====================

    async def trigger_sync(self, account_id: str) -> Optional[SyncResult]:
        """
        Run a sync right now, outside the schedule.

        Raises:
            AccountNotFoundError: If the account is not registered
            SyncAlreadyInProgressError: If the account is already syncing
            CircuitOpenError: If the provider's circuit is open
        """
        engine = self._require_engine(account_id)
        if engine.is_syncing(account_id):
            raise SyncAlreadyInProgressError(account_id)

        logger.info(f"Manual sync triggered for {account_id}")
        return await self._sync_account(account_id, raise_if_blocked=True)

    async def on_account_switch(self, account_id: str):
        """The user opened this account: drop the pending timer and sync immediately."""
        if not self._running:
            return
        self._require_engine(account_id)

        logger.info(f"Account switch, immediate sync for {account_id}")
        self._cancel_timer(account_id)
        task = self._inflight.get(account_id)
        if task is None:
            task = self._start_run(account_id)
        await asyncio.gather(task, return_exceptions=True)

    def subscribe_to_action_events(self, channel: EventChannel[UserActionEvent]) -> Callable[[], None]:
        """Reset polling cadence whenever the user sends, archives or labels."""
        unsubscribe = channel.subscribe(self._on_user_action)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    async def _on_user_action(self, event: UserActionEvent):
        if event.action not in QUALIFYING_ACTIONS or event.account_id not in self._accounts:
            return
        if self.adaptive_interval is not None:
            await self.adaptive_interval.record_user_action(event.account_id)
        if event.account_id not in self._inflight:
            await self._schedule_next(event.account_id)

    def _on_network_change(self, online: bool):
        if not online or not self._running:
            return
        paused = [a for a in self._paused if a in self._accounts]
        if paused:
            logger.info(f"Back online, resuming {len(paused)} paused account(s)")
        for account_id in paused:
            self._schedule(account_id, 0)

    # ==================== Queries ====================

    async def get_progress(self, account_id: str) -> SyncProgress:
        progress = await self.context.progress.get_progress(account_id, self.context.failures)
        if progress is None:
            raise AccountNotFoundError(account_id)
        return progress

    async def get_all_progress(self) -> List[SyncProgress]:
        return await self.context.progress.get_all_progress(self.context.failures)

    async def get_failure_stats(self, account_id: Optional[str] = None) -> SyncFailureStats:
        return await self.context.failures.get_stats(account_id)

    async def process_pending_retries(self, account_id: str):
        """Run a retry sweep for one account outside the schedule."""
        return await self._require_engine(account_id).process_pending_retries(account_id)
