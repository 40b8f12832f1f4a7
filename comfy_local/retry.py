"""
Comfy Local - Retry and Waiting Utilities
==========================================

Retry patterns built on the tenacity library.

Provides:
- Retry with exponential backoff for idempotent requests (image fetches)
- Fixed-interval waiting for a condition with a hard deadline
  (used for the server-became-reachable phase after a process start)

The completion poll loop does not use these helpers: it sleeps a
fixed interval and is bounded by its own deadline and cancellation token.

Usage:
    from comfy_local.retry import retry_with_backoff, wait_until

    @retry_with_backoff(max_attempts=3, exceptions=(ComfyUIConnectionError,))
    def fetch():
        ...

    url = wait_until(lambda: client.discover_base_url(), timeout=60, interval=2)
"""

from collections.abc import Callable
from typing import TypeVar, Union

import tenacity
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_fixed,
)

from .config import settings
from .exceptions import ComfyLocalError
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "retry_with_backoff",
    "wait_until",
    "RetryExhaustedError",
]

T = TypeVar("T")
ExceptionTypes = Union[type[Exception], tuple[type[Exception], ...]]


class RetryExhaustedError(ComfyLocalError):
    """A wait or retry loop ran out of time or attempts."""

    code = "RETRY_EXHAUSTED"
    default_message = "All retry attempts exhausted"
    default_user_message = "Operation failed after multiple attempts"
    default_eli5_message = "We tried several times but it didn't work"
    default_suggestions = ("Wait a moment and try again",)

    def __init__(
        self,
        message: str | None = None,
        attempts: int | None = None,
        last_error: Exception | None = None,
        **kwargs,
    ):
        super().__init__(message, attempts=attempts, cause=last_error, **kwargs)


def retry_with_backoff(
    max_attempts: int | None = None,
    backoff_base: float | None = None,
    backoff_max: float | None = None,
    exceptions: ExceptionTypes = Exception,
) -> Callable:
    """
    Decorator for retry with exponential backoff.

    The last exception is re-raised unchanged once attempts run out, so callers
    keep seeing the domain error (e.g. ComfyUIConnectionError).

    Args:
        max_attempts: Maximum number of attempts (default from settings)
        backoff_base: Multiplier for exponential backoff (default from settings)
        backoff_max: Maximum backoff time (default from settings)
        exceptions: Exception types to catch and retry

    Example:
        @retry_with_backoff(max_attempts=3, exceptions=(ComfyUIConnectionError,))
        def fetch_image():
            ...
    """
    _max_attempts = max_attempts or settings.retry.max_retries
    _backoff_base = backoff_base if backoff_base is not None else settings.retry.backoff_base
    _backoff_max = backoff_max or settings.retry.backoff_max

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        retrying = retry(
            stop=stop_after_attempt(_max_attempts),
            wait=wait_exponential(multiplier=_backoff_base, max=_backoff_max),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, log_level=10),  # DEBUG
            reraise=True,
        )
        return retrying(func)

    return decorator


def wait_until(
    probe: Callable[[], T | None],
    timeout: float,
    interval: float = 1.0,
) -> T:
    """
    Call probe at a fixed interval until it returns a truthy value.

    Exceptions raised by the probe count as "not yet".

    Args:
        probe: Zero-argument callable; a truthy return ends the wait
        timeout: Hard deadline in seconds
        interval: Seconds between probes

    Returns:
        The first truthy probe value

    Raises:
        RetryExhaustedError: If the deadline passes first
    """
    retrying = tenacity.Retrying(
        stop=stop_after_delay(timeout),
        wait=wait_fixed(interval),
        retry=retry_if_result(lambda value: not value) | retry_if_exception_type(Exception),
    )
    try:
        return retrying(probe)
    except tenacity.RetryError as e:
        last = e.last_attempt
        last_error = last.exception() if last is not None and last.failed else None
        raise RetryExhaustedError(
            message=f"Condition not met within {timeout}s",
            attempts=last.attempt_number if last is not None else None,
            last_error=last_error,
        )
