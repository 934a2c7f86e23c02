"""Exponential backoff with jitter for delivery partner calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504), timeouts and
connection errors.  Respects Retry-After headers.  Never retries other 4xx
responses: those are validation errors the caller must see immediately.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, TRANSIENT_ERRORS)


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.3,
) -> Callable:
    """Decorator: retry a function with exponential backoff + jitter.

    Args:
        max_attempts: Total attempts including the first call.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0). Adds randomness to prevent thundering herd.

    The last exception is re-raised unchanged once attempts are exhausted so
    the caller can classify it.
    """
    attempts = max(1, max_attempts)

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(attempts):
                try:
                    return fn(*args, **kwargs)
                except (httpx.HTTPStatusError, *TRANSIENT_ERRORS) as e:
                    if not is_retryable(e) or attempt == attempts - 1:
                        raise
                    if isinstance(e, httpx.HTTPStatusError):
                        delay = compute_delay(attempt, base_delay, max_delay, jitter, e.response)
                        reason = f"HTTP {e.response.status_code}"
                    else:
                        delay = compute_delay(attempt, base_delay, max_delay, jitter)
                        reason = f"connection error: {type(e).__name__}"
                    logger.warning(
                        "Retry %d/%d for %s (%s), waiting %.1fs",
                        attempt + 1,
                        attempts - 1,
                        fn.__name__,
                        reason,
                        delay,
                    )
                    time.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    if response is not None:
        retry_after = parse_retry_after(response)
        if retry_after is not None:
            return min(retry_after, max_delay)

    # Exponential backoff: base * 2^attempt
    delay = min(base_delay * (2**attempt), max_delay)

    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


def parse_retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None
