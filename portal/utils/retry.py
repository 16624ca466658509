"""Retry with exponential backoff for transient store failures.

Three variants share one loop:

  - with_retry()            - retry every failure
  - with_retry_and_jitter() - same, plus uniform [0, base_delay] jitter so
                              concurrent callers do not retry in lock-step
  - with_smart_retry()      - retry only errors classified by
                              is_retryable_error(); anything else is raised
                              on the first attempt with no delay

Delay before retry ``n`` (0-based attempt index)::

    min(initial_delay_ms * backoff_multiplier ** n, max_delay_ms)

On exhaustion the last exception is re-raised unchanged. Intermediate
failures are only observable through ``RetryOptions.on_retry``.

Usage::

    rows = await with_smart_retry(
        lambda: store.select("api_keys", [eq("is_active", True)]),
        RetryOptions(max_retries=3, initial_delay_ms=100),
    )
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from portal.utils.sanitizer import sanitize_error

T = TypeVar("T")

# errno-style codes treated as transient (Node-style names kept: PostgREST
# and httpx surface these strings in `code` attributes)
RETRYABLE_ERROR_CODES: frozenset[str] = frozenset(
    {"ECONNREFUSED", "ECONNRESET", "ETIMEDOUT", "EHOSTUNREACH"}
)

_RETRYABLE_EXCEPTION_TYPES: tuple[type[BaseException], ...] = (
    ConnectionResetError,
    ConnectionRefusedError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.ConnectError,
)


@dataclass
class RetryOptions:
    """Retry configuration. Defaults match the store-access policy."""

    max_retries: int = 3
    initial_delay_ms: float = 100
    max_delay_ms: float = 5000
    backoff_multiplier: float = 2.0
    on_retry: Optional[Callable[[int, BaseException], None]] = None
    """Called as ``on_retry(retry_number, error)`` before each sleep (1-based)."""


def compute_delay_ms(options: RetryOptions, attempt: int) -> float:
    """Backoff delay (ms) after the failed 0-based ``attempt``."""
    return min(
        options.initial_delay_ms * (options.backoff_multiplier ** attempt),
        options.max_delay_ms,
    )


def _status_of(error: BaseException) -> Optional[int]:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """Return True if ``error`` looks transient.

    Transient: connection reset/refused, timeouts, unreachable host,
    HTTP 5xx, HTTP 429, or a message mentioning "connection"/"timeout".
    Everything else (validation errors, 4xx, constraint violations) is terminal.
    """
    if getattr(error, "code", None) in RETRYABLE_ERROR_CODES:
        return True

    if isinstance(error, _RETRYABLE_EXCEPTION_TYPES):
        return True

    status = _status_of(error)
    if status is not None and (500 <= status < 600 or status == 429):
        return True

    message = str(error).lower()
    if "connection" in message or "timeout" in message:
        return True

    return False


async def _run(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions],
    *,
    jitter: bool,
    retry_if: Optional[Callable[[BaseException], bool]],
) -> T:
    opts = options or RetryOptions()
    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if retry_if is not None and not retry_if(exc):
                raise
            if attempt >= opts.max_retries:
                raise

            delay_ms = compute_delay_ms(opts, attempt)
            if jitter:
                delay_ms += random.uniform(0, delay_ms)

            if opts.on_retry is not None:
                opts.on_retry(attempt + 1, exc)

            await asyncio.sleep(delay_ms / 1000)
            attempt += 1


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
) -> T:
    """Run ``operation`` retrying any exception up to ``max_retries`` times."""
    return await _run(operation, options, jitter=False, retry_if=None)


async def with_retry_and_jitter(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
) -> T:
    """Like with_retry(), with uniform random jitter in [0, base_delay] added."""
    return await _run(operation, options, jitter=True, retry_if=None)


async def with_smart_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
) -> T:
    """Retry only errors for which is_retryable_error() is True."""
    return await _run(operation, options, jitter=False, retry_if=is_retryable_error)


def log_retry(logger: Any, operation_name: str) -> Callable[[int, BaseException], None]:
    """Build an ``on_retry`` callback that logs a sanitized warning."""

    def _on_retry(attempt: int, error: BaseException) -> None:
        logger.warning(
            "store_retry",
            operation=operation_name,
            attempt=attempt,
            error=sanitize_error(error),
            error_type=type(error).__name__,
        )

    return _on_retry
