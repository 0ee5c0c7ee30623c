"""Connectivity monitoring for the sync scheduler."""

import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from mailsync.core.events import EventChannel
from mailsync.providers.base import NetworkStatus

logger = logging.getLogger(__name__)

DEFAULT_CHECK_URL = "https://www.gstatic.com/generate_204"


class ConnectivityMonitor(NetworkStatus):
    """
    Polls a lightweight URL and reports online/offline transitions.

    Any HTTP response counts as online; transport errors count as offline.
    """

    def __init__(
        self,
        check_url: str = DEFAULT_CHECK_URL,
        interval: float = 30.0,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.check_url = check_url
        self.interval = interval
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._online = True
        self._task: Optional[asyncio.Task] = None
        self.events: EventChannel[bool] = EventChannel("network")

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], Any]) -> Callable[[], None]:
        return self.events.subscribe(listener)

    def set_online(self, online: bool):
        if online == self._online:
            return
        self._online = online
        logger.info(f"Network is {'online' if online else 'offline'}")
        self.events.publish(online)

    async def check(self) -> bool:
        try:
            await self._client.head(self.check_url)
            online = True
        except httpx.TransportError as e:
            logger.debug(f"Connectivity check failed: {e}")
            online = False
        self.set_online(online)
        return online

    async def _run(self):
        while True:
            await self.check()
            await asyncio.sleep(self.interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self.events.clear()
        if self._owns_client:
            await self._client.aclose()
