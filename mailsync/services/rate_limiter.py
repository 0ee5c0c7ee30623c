"""
Token-bucket rate limiter with proactive throttling.

One limiter is shared per provider connection. Token accounting is
serialized with a lock so concurrent requests from several accounts of the
same provider never double-spend the bucket.
"""

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from mailsync.core.events import EventChannel

logger = logging.getLogger(__name__)

MIN_THROTTLE_DELAY = 0.05  # seconds
MAX_THROTTLE_DELAY = 0.5


class ThrottleStatus(str, Enum):
    """Load state of a rate limiter."""
    NORMAL = "normal"
    THROTTLED = "throttled"
    RATE_LIMITED = "rate-limited"


@dataclass
class RateLimiterConfig:
    """Token bucket configuration."""
    max_tokens: int
    refill_rate: float  # tokens per second
    tokens_per_request: int = 1
    throttle_threshold: float = 80.0  # percent of capacity consumed


@dataclass
class ThrottleChange:
    """Published when the throttle status actually changes."""
    status: ThrottleStatus
    usage_percent: float


@dataclass
class ThrottleResult:
    """Outcome of acquire_with_throttling."""
    delayed: bool
    delay_seconds: float


class RateLimiter:
    """
    Token bucket rate limiter.

    `acquire` never blocks: it either deducts tokens and returns 0.0, or
    returns the number of seconds until the request could be admitted.
    `acquire_and_wait` and `acquire_with_throttling` are the awaiting forms.
    """

    def __init__(
        self,
        config: RateLimiterConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "rate-limiter",
    ):
        self.config = config
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(config.max_tokens)
        self._last_refill = clock()
        self._lock = threading.Lock()
        self._last_status = self.get_throttle_status()
        self.throttle_events: EventChannel[ThrottleChange] = EventChannel(f"{name}:throttle")

    def _refill(self):
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(
                float(self.config.max_tokens),
                self._tokens + elapsed * self.config.refill_rate,
            )
        self._last_refill = now

    def acquire(self, tokens: Optional[int] = None) -> float:
        """
        Try to take tokens from the bucket.

        Returns:
            0.0 when admitted, otherwise seconds to wait before retrying
        """
        needed = tokens if tokens is not None else self.config.tokens_per_request
        with self._lock:
            self._refill()
            if self._tokens >= needed:
                self._tokens -= needed
                return 0.0
            shortfall = needed - self._tokens
            # Round up to whole milliseconds so a retry after the wait always succeeds
            return math.ceil(shortfall / self.config.refill_rate * 1000) / 1000

    async def acquire_and_wait(self, tokens: Optional[int] = None):
        """Wait until the requested tokens are available, then take them."""
        while True:
            wait = self.acquire(tokens)
            if wait <= 0:
                return
            logger.debug(f"{self.name}: waiting {wait:.3f}s for tokens")
            await self._sleep(wait)

    def get_available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens

    def reset(self):
        """Refill the bucket completely."""
        with self._lock:
            self._tokens = float(self.config.max_tokens)
            self._last_refill = self._clock()

    def get_current_usage(self) -> float:
        """Percentage of bucket capacity currently consumed (0-100)."""
        available = self.get_available_tokens()
        usage = (1 - available / self.config.max_tokens) * 100
        return round(max(0.0, min(100.0, usage)), 2)

    def get_throttle_status(self) -> ThrottleStatus:
        usage = self.get_current_usage()
        if usage >= 100:
            return ThrottleStatus.RATE_LIMITED
        if usage >= self.config.throttle_threshold:
            return ThrottleStatus.THROTTLED
        return ThrottleStatus.NORMAL

    def _throttle_delay(self, usage: float) -> float:
        """Artificial delay scaled between 50ms and 500ms across the throttled band."""
        threshold = self.config.throttle_threshold
        span = 100 - threshold
        ratio = (usage - threshold) / span if span > 0 else 1.0
        ratio = max(0.0, min(1.0, ratio))
        delay_ms = math.ceil(MIN_THROTTLE_DELAY * 1000 + ratio * (MAX_THROTTLE_DELAY - MIN_THROTTLE_DELAY) * 1000)
        return delay_ms / 1000

    async def acquire_with_throttling(self, tokens: Optional[int] = None) -> ThrottleResult:
        """
        Acquire tokens, backing off proactively once usage crosses the threshold.

        The proportional delay is applied in addition to any hard wait the
        bucket itself requires.
        """
        self._check_status_change()

        usage = self.get_current_usage()
        extra_delay = 0.0
        if usage >= self.config.throttle_threshold:
            extra_delay = self._throttle_delay(usage)
            await self._sleep(extra_delay)

        hard_wait = 0.0
        while True:
            wait = self.acquire(tokens)
            if wait <= 0:
                break
            hard_wait += wait
            await self._sleep(wait)

        self._check_status_change()

        total = extra_delay + hard_wait
        return ThrottleResult(delayed=total > 0, delay_seconds=round(total, 3))

    def _check_status_change(self):
        status = self.get_throttle_status()
        if status == self._last_status:
            return
        previous = self._last_status
        self._last_status = status
        logger.info(f"{self.name}: throttle status {previous.value} -> {status.value}")
        self.throttle_events.publish(ThrottleChange(status=status, usage_percent=self.get_current_usage()))

    def on_throttle_change(self, callback: Callable[[ThrottleChange], None]) -> Callable[[], None]:
        """
        Subscribe to throttle status transitions.

        The callback is told the current status once on registration and
        afterwards only when the status changes.
        """
        unsubscribe = self.throttle_events.subscribe(callback)
        status = self.get_throttle_status()
        try:
            callback(ThrottleChange(status=status, usage_percent=self.get_current_usage()))
        except Exception as e:
            logger.warning(f"Throttle callback error: {e}")
        return unsubscribe


def create_gmail_rate_limiter(config: Optional[RateLimiterConfig] = None, **kwargs) -> RateLimiter:
    """Gmail: 250 quota units per second, a message fetch costs 5 units."""
    config = config or RateLimiterConfig(max_tokens=250, refill_rate=250, tokens_per_request=5)
    return RateLimiter(config, name="gmail", **kwargs)


def create_outlook_rate_limiter(config: Optional[RateLimiterConfig] = None, **kwargs) -> RateLimiter:
    """Microsoft Graph: roughly 10 requests per second per mailbox."""
    config = config or RateLimiterConfig(max_tokens=10, refill_rate=10, tokens_per_request=1)
    return RateLimiter(config, name="outlook", **kwargs)
