"""
Error classification for sync failures.

Maps raw failures (HTTP status codes, provider client exceptions, network
errors) onto transient / permanent / unknown so the retry engine and the
failure tracker can decide what to do next.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Mapping, Optional

import httpx
from googleapiclient.errors import HttpError

from mailsync.providers.base import (
    AuthenticationError,
    ProviderHTTPError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_CODES = frozenset({408, 429, 500, 502, 503, 504})
PERMANENT_HTTP_CODES = frozenset({400, 401, 403, 404, 410})

HTTP_ERROR_MESSAGES = {
    400: "Bad request. The email data may be malformed.",
    401: "Authentication failed. Please re-authenticate your account.",
    403: "Access denied. Check your account permissions.",
    404: "Email not found. It may have been deleted.",
    408: "Request timed out. Will retry automatically.",
    410: "Email no longer exists on the server.",
    429: "Rate limit exceeded. Will retry automatically.",
    500: "Server error. Will retry automatically.",
    502: "Server temporarily unavailable. Will retry automatically.",
    503: "Service unavailable. Will retry automatically.",
    504: "Gateway timeout. Will retry automatically.",
}


class ErrorType(str, Enum):
    """Retry-relevant classification of a failure."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class FailureStatus(str, Enum):
    """Lifecycle status of a persisted sync failure."""
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"
    PERMANENT = "permanent"
    DISMISSED = "dismissed"


@dataclass
class ClassifiedError:
    """Result of classifying a failure."""
    type: ErrorType
    message: str
    http_status: Optional[int] = None
    retry_after: Optional[float] = None  # seconds, from a Retry-After header
    original_error: Optional[BaseException] = None

    @property
    def is_transient(self) -> bool:
        return self.type == ErrorType.TRANSIENT

    @property
    def is_permanent(self) -> bool:
        return self.type == ErrorType.PERMANENT


def get_error_message(status: int) -> str:
    """Human-readable message for an HTTP status code."""
    return HTTP_ERROR_MESSAGES.get(status, f"Unexpected error (HTTP {status}).")


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Parse a Retry-After header value into seconds.

    Accepts either delta-seconds or an HTTP-date. Dates in the past yield 0.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (target - now).total_seconds())


def _header(headers: Optional[Mapping[str, Any]], name: str) -> Optional[str]:
    if not headers:
        return None
    for key, value in headers.items():
        if str(key).lower() == name.lower():
            return value
    return None


def classify_http_error(
    status: int,
    headers: Optional[Mapping[str, Any]] = None,
    original_error: Optional[BaseException] = None,
) -> ClassifiedError:
    """Classify an HTTP status code, honouring a Retry-After header."""
    retry_after = parse_retry_after(_header(headers, "retry-after"))

    if status in TRANSIENT_HTTP_CODES:
        error_type = ErrorType.TRANSIENT
    elif status in PERMANENT_HTTP_CODES:
        error_type = ErrorType.PERMANENT
    else:
        error_type = ErrorType.UNKNOWN

    return ClassifiedError(
        type=error_type,
        message=get_error_message(status),
        http_status=status,
        retry_after=retry_after,
        original_error=original_error,
    )


def _classify_message(error: BaseException) -> ClassifiedError:
    message = str(error) or error.__class__.__name__
    lowered = message.lower()

    if "quota exceeded" in lowered or "rate limit" in lowered:
        return ClassifiedError(ErrorType.TRANSIENT, get_error_message(429), 429, original_error=error)
    if "not found" in lowered or "does not exist" in lowered:
        return ClassifiedError(ErrorType.PERMANENT, get_error_message(404), 404, original_error=error)
    if "unauthorized" in lowered or "auth" in lowered or "token" in lowered:
        return ClassifiedError(ErrorType.PERMANENT, get_error_message(401), 401, original_error=error)
    if "forbidden" in lowered or "permission" in lowered:
        return ClassifiedError(ErrorType.PERMANENT, get_error_message(403), 403, original_error=error)

    return ClassifiedError(ErrorType.UNKNOWN, message, original_error=error)


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify any exception raised while talking to a provider.

    Args:
        error: The exception to classify

    Returns:
        ClassifiedError with type, status, retry hint and message
    """
    if isinstance(error, ProviderHTTPError):
        return classify_http_error(error.status_code, error.headers, error)

    if isinstance(error, RateLimitError):
        return ClassifiedError(
            type=ErrorType.TRANSIENT,
            message=get_error_message(429),
            http_status=429,
            retry_after=error.retry_after,
            original_error=error,
        )

    if isinstance(error, AuthenticationError):
        return ClassifiedError(ErrorType.PERMANENT, str(error), 401, original_error=error)

    if isinstance(error, httpx.HTTPStatusError):
        return classify_http_error(error.response.status_code, error.response.headers, error)

    if isinstance(error, HttpError):
        return classify_http_error(int(error.resp.status), error.resp, error)

    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return ClassifiedError(
            type=ErrorType.TRANSIENT,
            message="Network error. Will retry when connection is restored.",
            original_error=error,
        )

    return _classify_message(error)


def should_retry(classification: ClassifiedError, retry_count: int, max_retries: int) -> bool:
    """Permanent errors never retry; everything else retries until max_retries."""
    if classification.type == ErrorType.PERMANENT:
        return False
    return retry_count < max_retries


def get_failure_status(classification: ClassifiedError, retry_count: int, max_retries: int) -> FailureStatus:
    """Failure record status for a classification at a given retry count."""
    if classification.type == ErrorType.PERMANENT:
        return FailureStatus.PERMANENT
    if retry_count >= max_retries:
        return FailureStatus.EXHAUSTED
    return FailureStatus.PENDING
