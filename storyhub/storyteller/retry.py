"""
Retry policy for external calls.

classify_error() is the one place that decides whether a failure is
worth another attempt; with_retries() applies capped exponential
backoff around a single call.
"""

import asyncio
import re
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import openai

from storyhub.config import ConfigurationError
from storyhub.storyteller.parsing import StoryParseError
from storyhub.utils.logging import AppLogger, story_logger


T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 8.0

# SiliconFlow occasionally answers with this instead of a proper 5xx
VENDOR_TRANSIENT_MESSAGES = ("Request processing failed",)

_TRANSIENT_MESSAGE_PATTERNS = [
    re.compile(r"\b429\b"),
    re.compile(r"\b5\d\d\b"),
    re.compile(r"fetch failed", re.IGNORECASE),
    re.compile(r"ECONNRESET|ETIMEDOUT"),
    re.compile(r"connection (reset|refused|aborted)", re.IGNORECASE),
    re.compile(r"timed out", re.IGNORECASE),
]


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, openai.APIStatusError):
        return error.status_code
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def classify_error(error: BaseException, retry_on_parse_error: bool = True) -> ErrorClass:
    """
    Decide whether an error from an external call is worth retrying.

    Transient: HTTP 429 and 5xx, connection/timeout failures, the vendor's
    "Request processing failed" answer, and (by default) unparseable model
    output, since a fresh completion usually parses. Everything else,
    including missing configuration, is fatal.
    """
    if isinstance(error, ConfigurationError):
        return ErrorClass.FATAL

    if isinstance(error, StoryParseError):
        return ErrorClass.TRANSIENT if retry_on_parse_error else ErrorClass.FATAL

    message = str(error)
    if any(marker in message for marker in VENDOR_TRANSIENT_MESSAGES):
        return ErrorClass.TRANSIENT

    status = _status_code(error)
    if status is not None:
        if status == 429 or 500 <= status <= 599:
            return ErrorClass.TRANSIENT
        return ErrorClass.FATAL

    if isinstance(error, (
        openai.APIConnectionError,
        httpx.TransportError,
        ConnectionError,
        TimeoutError,
        asyncio.TimeoutError,
    )):
        return ErrorClass.TRANSIENT

    if any(pattern.search(message) for pattern in _TRANSIENT_MESSAGE_PATTERNS):
        return ErrorClass.TRANSIENT

    return ErrorClass.FATAL


def backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
) -> float:
    """Delay after the given (1-based) failed attempt: 1s, 2s, 4s, 8s, 8s..."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


async def with_retries(
    label: str,
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS,
    classify: Callable[[BaseException], ErrorClass] = classify_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    logger: AppLogger = story_logger,
) -> T:
    """
    Await fn(), retrying transient failures with capped exponential backoff.

    Fatal errors propagate immediately. After max_attempts the last error
    is re-raised unchanged.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if classify(e) is ErrorClass.FATAL or attempt >= max_attempts:
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} failed (attempt {attempt}/{max_attempts}), retrying in {delay:.1f}s",
                error=str(e)[:300]
            )
            await sleep(delay)
            attempt += 1
