"""
Unit tests for event channels and connectivity monitoring.
"""

import asyncio

import httpx
import pytest

from mailsync.core.events import EventChannel, SyncLifecycleEvent, SyncLifecycleStatus
from mailsync.core.network import ConnectivityMonitor


class TestEventChannel:
    """Test publish/subscribe delivery."""

    def test_publish_and_unsubscribe(self):
        channel = EventChannel("test")
        received = []
        unsubscribe = channel.subscribe(received.append)

        channel.publish(1)
        unsubscribe()
        channel.publish(2)

        assert received == [1]
        assert channel.subscriber_count == 0

    def test_listener_errors_are_isolated(self):
        channel = EventChannel("test")
        received = []

        def broken(_event):
            raise RuntimeError("listener failed")

        channel.subscribe(broken)
        channel.subscribe(received.append)
        channel.publish("event")

        assert received == ["event"]

    @pytest.mark.asyncio
    async def test_async_listeners(self):
        channel = EventChannel("test")
        received = []

        async def listener(event):
            received.append(event)

        async def broken(_event):
            raise RuntimeError("listener failed")

        channel.subscribe(broken)
        channel.subscribe(listener)
        channel.publish("event")
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert received == ["event"]

    def test_lifecycle_event_dict(self):
        event = SyncLifecycleEvent(account_id="acct", status=SyncLifecycleStatus.RETRY_SCHEDULED, email_id="gmail-1")
        data = event.to_dict()
        assert data["status"] == "retry-scheduled"
        assert data["email_id"] == "gmail-1"


def monitor_with(handler) -> ConnectivityMonitor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ConnectivityMonitor("https://connectivity.test/generate_204", interval=0.01, client=client)


class TestConnectivityMonitor:
    """Test online/offline detection."""

    @pytest.mark.asyncio
    async def test_any_response_is_online(self):
        monitor = monitor_with(lambda request: httpx.Response(503))
        assert await monitor.check() is True
        assert monitor.is_online() is True

    @pytest.mark.asyncio
    async def test_transport_error_is_offline(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        monitor = monitor_with(handler)
        changes = []
        monitor.subscribe(changes.append)

        assert await monitor.check() is False
        assert await monitor.check() is False
        assert monitor.is_online() is False
        assert changes == [False]

    @pytest.mark.asyncio
    async def test_background_polling(self):
        online = {"value": False}

        def handler(request):
            if not online["value"]:
                raise httpx.ConnectError("unreachable", request=request)
            return httpx.Response(204)

        monitor = monitor_with(handler)
        changes = []
        monitor.subscribe(changes.append)

        monitor.start()
        await asyncio.sleep(0.03)
        online["value"] = True
        await asyncio.sleep(0.03)
        await monitor.stop()

        assert changes == [False, True]
        assert monitor.events.subscriber_count == 0
