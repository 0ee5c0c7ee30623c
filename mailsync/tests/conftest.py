"""
Test Configuration.

In-memory document store, fake provider adapter and the fixtures that wire
the sync services together without MongoDB or network access.
"""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from mailsync.core.database import DocumentCollection, DocumentStore
from mailsync.providers.base import (
    AuthenticationError,
    CredentialProvider,
    CursorExpiredError,
    DeltaPage,
    MessagePage,
    MessageRef,
    NetworkStatus,
    ProviderAdapter,
    ProviderHTTPError,
    ProviderType,
)
from mailsync.providers.email.base import BaseEmailSync, EmailRecord, EmailSyncConfig, SyncContext
from mailsync.services.adaptive_interval import AdaptiveIntervalService
from mailsync.services.bankruptcy import SyncBankruptcyDetector
from mailsync.services.conflict_manager import ConflictManager
from mailsync.services.rate_limiter import RateLimiter, RateLimiterConfig
from mailsync.services.retry_engine import RetryConfig
from mailsync.services.sync_failures import SyncFailureTracker
from mailsync.services.sync_progress import SyncProgressService

START_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


async def no_sleep(_seconds: float):
    return None


# ==================== Document store ====================

def _matches(doc: Dict[str, Any], filter: Dict[str, Any]) -> bool:
    for key, condition in filter.items():
        value = doc.get(key)
        if isinstance(condition, dict):
            for op, operand in condition.items():
                if op == "$in":
                    ok = value in operand
                elif op == "$ne":
                    ok = value != operand
                elif op == "$lt":
                    ok = value is not None and value < operand
                elif op == "$lte":
                    ok = value is not None and value <= operand
                else:
                    raise ValueError(f"Unsupported operator {op}")
                if not ok:
                    return False
        elif value != condition:
            return False
    return True


class InMemoryCollection(DocumentCollection):
    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}

    async def upsert(self, doc):
        self.docs[doc["id"]] = copy.deepcopy(doc)

    async def get(self, doc_id):
        doc = self.docs.get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, filter=None, sort=None, limit=None):
        docs = [copy.deepcopy(d) for d in self.docs.values() if _matches(d, filter or {})]
        for key, direction in reversed(sort or []):
            docs.sort(
                key=lambda d: (d.get(key) is not None, d.get(key)),
                reverse=direction < 0,
            )
        return docs[:limit] if limit else docs

    async def count(self, filter=None):
        return len([d for d in self.docs.values() if _matches(d, filter or {})])

    async def delete(self, doc_id):
        return self.docs.pop(doc_id, None) is not None

    async def delete_many(self, filter):
        ids = [i for i, d in self.docs.items() if _matches(d, filter)]
        for doc_id in ids:
            del self.docs[doc_id]
        return len(ids)


class InMemoryDocumentStore(DocumentStore):
    def __init__(self):
        self.collections: Dict[str, InMemoryCollection] = {}

    def collection(self, name):
        return self.collections.setdefault(name, InMemoryCollection())


# ==================== Clocks ====================

class MutableClock:
    """Aware UTC clock that only moves when told to."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class MonotonicClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


# ==================== Collaborators ====================

class FakeCredentials(CredentialProvider):
    def __init__(self, token: str = "token-1", refreshed_token: str = "token-2", fail_refresh: bool = False):
        self.token = token
        self.refreshed_token = refreshed_token
        self.fail_refresh = fail_refresh
        self.refresh_calls = 0

    async def get_valid_access_token(self, account_id):
        return self.token

    async def refresh(self, account_id):
        self.refresh_calls += 1
        if self.fail_refresh:
            raise AuthenticationError("invalid_grant", account_id)
        self.token = self.refreshed_token
        return self.token


class FakeNetwork(NetworkStatus):
    def __init__(self, online: bool = True):
        self.online = online
        self.listeners: List[Callable[[bool], Any]] = []

    def is_online(self):
        return self.online

    def subscribe(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def set_online(self, online: bool):
        self.online = online
        for listener in list(self.listeners):
            listener(online)


def make_message(native_id: str, **fields) -> Dict[str, Any]:
    """Raw payload understood by FakeAdapter.normalize."""
    message = {
        "id": native_id,
        "subject": f"Subject {native_id}",
        "body": f"Body of {native_id}",
        "labels": ["INBOX"],
        "read": False,
        "starred": False,
        "timestamp": START_TIME - timedelta(days=1),
    }
    message.update(fields)
    return message


class FakeMailbox:
    """
    Server-side state shared by every adapter an engine creates.

    fetch_failures maps a message id to a list of exceptions raised by its
    next fetches, one per call.
    """

    def __init__(self, messages: Optional[List[Dict[str, Any]]] = None, page_size: int = 100):
        self.messages: Dict[str, Dict[str, Any]] = {m["id"]: m for m in (messages or [])}
        self.page_size = page_size
        self.cursor = "cursor-1"
        self.delta_pages: List[DeltaPage] = []
        self.delta_cursor = "cursor-2"
        self.cursor_expired = False
        self.fetch_failures: Dict[str, List[Exception]] = {}
        self.accepted_token: Optional[str] = None
        self.fetch_calls: List[str] = []
        self.list_calls: List[Optional[str]] = []
        self.delta_calls: List[tuple] = []
        self.on_fetch: Optional[Callable[[str], None]] = None
        self.list_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    def fail_fetch(self, native_id: str, error: Exception, times: int = 1):
        self.fetch_failures.setdefault(native_id, []).extend([error] * times)


class FakeAdapter(ProviderAdapter):
    def __init__(self, account_id, credentials, mailbox: FakeMailbox, provider: ProviderType = ProviderType.GMAIL):
        super().__init__(account_id, credentials)
        self.mailbox = mailbox
        self._provider = provider
        self.closed = False

    @property
    def provider_type(self):
        return self._provider

    async def _check_token(self):
        token = await self.credentials.get_valid_access_token(self.account_id)
        if self.mailbox.accepted_token is not None and token != self.mailbox.accepted_token:
            raise ProviderHTTPError("Invalid Credentials", 401)

    async def list_page(self, page_token, since):
        await self._check_token()
        self.mailbox.list_calls.append(page_token)
        if self.mailbox.gate is not None:
            await self.mailbox.gate.wait()
        if self.mailbox.list_error is not None:
            raise self.mailbox.list_error
        ids = sorted(self.mailbox.messages)
        start = int(page_token or 0)
        end = start + self.mailbox.page_size
        return MessagePage(
            refs=[MessageRef(id=i) for i in ids[start:end]],
            next_page_token=str(end) if end < len(ids) else None,
            result_size_estimate=len(ids),
        )

    async def fetch_item(self, message_id):
        await self._check_token()
        self.mailbox.fetch_calls.append(message_id)
        if self.mailbox.on_fetch is not None:
            self.mailbox.on_fetch(message_id)
        pending = self.mailbox.fetch_failures.get(message_id)
        if pending:
            raise pending.pop(0)
        if message_id not in self.mailbox.messages:
            raise ProviderHTTPError("Requested entity was not found.", 404)
        return copy.deepcopy(self.mailbox.messages[message_id])

    def normalize(self, raw):
        return EmailRecord(
            id=self.namespaced_id(raw["id"]),
            account_id=self.account_id,
            provider=self._provider.value,
            native_id=raw["id"],
            subject=raw.get("subject", ""),
            body_text=raw.get("body", ""),
            timestamp=raw.get("timestamp"),
            server_updated_at=raw.get("updated_at"),
            labels=list(raw.get("labels", [])),
            read=raw.get("read", False),
            starred=raw.get("starred", False),
            is_draft=raw.get("is_draft", False),
        )

    async def get_current_cursor(self):
        await self._check_token()
        return self.mailbox.cursor

    async def fetch_delta(self, cursor, page_token=None):
        await self._check_token()
        self.mailbox.delta_calls.append((cursor, page_token))
        if self.mailbox.cursor_expired:
            raise CursorExpiredError("History id is too old", self.account_id)
        pages = self.mailbox.delta_pages or [DeltaPage()]
        index = int(page_token or 0)
        page = copy.deepcopy(pages[index])
        last = index + 1 >= len(pages)
        page.next_page_token = None if last else str(index + 1)
        page.cursor = self.mailbox.delta_cursor if last else None
        return page

    async def close(self):
        self.closed = True


class FakeEmailSync(BaseEmailSync):
    """Engine over a FakeMailbox with an effectively unlimited rate limiter."""

    def __init__(self, context, mailbox: FakeMailbox, config=None, provider_type=ProviderType.GMAIL):
        self.provider_type = provider_type
        self.mailbox = mailbox
        self.adapters: List[FakeAdapter] = []
        super().__init__(context, config)

    def build_adapter(self, account_id):
        adapter = FakeAdapter(account_id, self.context.credentials, self.mailbox, self.provider_type)
        self.adapters.append(adapter)
        return adapter

    def create_rate_limiter(self):
        return RateLimiter(RateLimiterConfig(max_tokens=100000, refill_rate=100000), sleep=no_sleep)

    def default_config(self):
        return EmailSyncConfig(page_size=100, checkpoint_interval=10, retry=RetryConfig())


# ==================== Fixtures ====================

@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def credentials():
    return FakeCredentials()


@pytest.fixture
def context(store, clock, network, credentials):
    """All sync services over one in-memory store and one clock."""
    progress = SyncProgressService(store, clock=clock)
    adaptive = AdaptiveIntervalService(store, clock=clock)
    return SyncContext(
        emails=store.collection("emails"),
        progress=progress,
        failures=SyncFailureTracker(store, RetryConfig(), clock=clock),
        conflicts=ConflictManager(store, clock=clock),
        credentials=credentials,
        network=network,
        bankruptcy=SyncBankruptcyDetector(store, progress, adaptive, clock=clock),
        sleep=AsyncMock(),
    )


@pytest.fixture
def mailbox():
    return FakeMailbox([make_message(f"m{i:03d}") for i in range(25)], page_size=10)


@pytest.fixture
def engine(context, mailbox):
    return FakeEmailSync(context, mailbox)
