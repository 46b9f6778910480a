"""Generic exponential-backoff retry executor.

``execute_with_retry`` calls an async operation, and on failure retries it
up to ``max_retries`` times while the error stays retryable. The initial
call is attempt 0 and does not count against ``max_retries``. Delays follow
``retry_delay * backoff_factor ** (attempt - 1)`` and are awaited with
``asyncio.sleep`` so sibling tasks keep running.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import functools
import logging
from typing import Any, ParamSpec, TypeVar

from research_flow.errors import error_message, is_retryable_error

logger = logging.getLogger(__name__)

T = TypeVar("T")
P = ParamSpec("P")

RetryPredicate = Callable[[BaseException], bool]
RetryCallback = Callable[[int, BaseException, float], None]


def _default_on_retry(attempt: int, error: BaseException, delay: float) -> None:
    """Log a retry attempt at WARNING level."""
    logger.warning(
        "Retry attempt %d after error: %s. Retrying in %.3fs...",
        attempt,
        error_message(error),
        delay,
    )


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retryable_errors: RetryPredicate | None = None,
    on_retry: RetryCallback | None = None,
) -> T:
    """Execute *fn* with automatic retry for transient errors.

    Args:
        fn: Zero-argument async callable to execute.
        max_retries: Maximum number of retries after the initial call.
        retry_delay: Delay in seconds before the first retry.
        backoff_factor: Multiplier applied to the delay on each retry.
        retryable_errors: Predicate deciding whether an error is retryable.
            Defaults to ``error.retry is True`` on typed errors.
        on_retry: Called as ``on_retry(attempt, error, delay)`` before each
            retry sleep. Defaults to a WARNING log line.

    Returns:
        The value returned by the first successful call.

    Raises:
        Exception: The last error raised by *fn* once retries are exhausted
            or the error is not retryable.
    """
    is_retryable = retryable_errors or is_retryable_error
    notify = on_retry or _default_on_retry

    try:
        return await fn()
    except Exception as exc:
        if max_retries <= 0 or not is_retryable(exc):
            raise
        last_error: BaseException = exc

    attempt = 0
    while True:
        attempt += 1
        delay = retry_delay * backoff_factor ** (attempt - 1)
        notify(attempt, last_error, delay)
        await asyncio.sleep(delay)

        try:
            return await fn()
        except Exception as exc:
            last_error = exc
            if attempt >= max_retries or not is_retryable(exc):
                logger.debug(
                    "Not retrying after error: %s. Reason: %s",
                    error_message(exc),
                    "max retries reached"
                    if attempt >= max_retries
                    else "error is not retryable",
                )
                raise


def with_retry(
    **options: Any,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorate an async function so every call goes through ``execute_with_retry``.

    Args:
        **options: Keyword arguments forwarded to :func:`execute_with_retry`.

    Returns:
        A decorator producing the retrying function.
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await execute_with_retry(lambda: func(*args, **kwargs), **options)

        return wrapper

    return decorator
