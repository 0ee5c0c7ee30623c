"""
Exponential backoff retry engine.

delay(n) = min(base_delay * multiplier ** n, max_delay), with a
server-supplied Retry-After acting as a floor.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from mailsync.services.error_classification import classify_error, should_retry as should_retry_classified

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters (seconds)."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0


DEFAULT_RETRY_CONFIG = RetryConfig()


def calculate_retry_delay(retry_count: int, config: Optional[RetryConfig] = None) -> float:
    """Exponential delay for the given retry count, capped at max_delay."""
    config = config or DEFAULT_RETRY_CONFIG
    delay = config.base_delay * (config.multiplier ** retry_count)
    return min(delay, config.max_delay)


def calculate_retry_delay_with_header(
    retry_count: int,
    retry_after: Optional[float] = None,
    config: Optional[RetryConfig] = None,
) -> float:
    """Exponential delay, raised to the server's Retry-After hint when that is longer."""
    delay = calculate_retry_delay(retry_count, config)
    if retry_after is not None and retry_after > 0:
        return max(delay, retry_after)
    return delay


def get_next_retry_at(
    retry_count: int,
    retry_after: Optional[float] = None,
    config: Optional[RetryConfig] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Absolute time of the next attempt."""
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=calculate_retry_delay_with_header(retry_count, retry_after, config))


def is_retry_exhausted(retry_count: int, config: Optional[RetryConfig] = None) -> bool:
    config = config or DEFAULT_RETRY_CONFIG
    return retry_count >= config.max_retries


def get_remaining_retries(retry_count: int, config: Optional[RetryConfig] = None) -> int:
    config = config or DEFAULT_RETRY_CONFIG
    return max(0, config.max_retries - retry_count)


async def wait_for_retry(
    retry_count: int,
    retry_after: Optional[float] = None,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> float:
    """Sleep for the backoff delay of `retry_count`. Returns the delay used."""
    delay = calculate_retry_delay_with_header(retry_count, retry_after, config)
    await sleep(delay)
    return delay


async def execute_with_retry(
    func: Callable[[], Awaitable[T]],
    should_retry: Optional[Callable[[BaseException, int], bool]] = None,
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `func`, retrying failures with exponential backoff.

    Makes at most max_retries + 1 attempts. The default predicate classifies
    the error and stops on permanent failures; Retry-After hints are honoured.
    When retries run out the last error is re-raised unchanged.

    Args:
        func: Zero-argument coroutine function performing the work
        should_retry: Optional predicate (error, attempt) -> bool
        config: Backoff configuration
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Whatever `func` returns
    """
    config = config or DEFAULT_RETRY_CONFIG
    attempt = 0

    while True:
        try:
            return await func()
        except Exception as e:
            classification = classify_error(e)
            if should_retry is not None:
                retry = attempt < config.max_retries and should_retry(e, attempt)
            else:
                retry = should_retry_classified(classification, attempt, config.max_retries)

            if not retry:
                raise

            delay = calculate_retry_delay_with_header(attempt, classification.retry_after, config)
            logger.debug(
                f"Attempt {attempt + 1} failed ({classification.type.value}): {e}. "
                f"Retrying in {delay:.1f}s"
            )
            await sleep(delay)
            attempt += 1
