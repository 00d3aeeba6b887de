"""Retry logic and decorators using tenacity.

This module provides the retry policy wrapped around remote gallery calls:
bounded exponential backoff with jitter for network failures, server errors
and rate limits. Client errors (4xx other than 429) are never retried.
"""

from collections.abc import Awaitable, Callable
from functools import wraps
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from gallery_sync.client.exceptions import NetworkError, RateLimitError, ServerError
from gallery_sync.config import RetryConfig
from gallery_sync.utils.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])
T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[Exception], ...] = (NetworkError, ServerError, RateLimitError)


def _wait_with_retry_after(min_wait: float, max_wait: float) -> Callable[[RetryCallState], float]:
    """Build a wait strategy that honors Retry-After on 429 responses."""
    backoff = wait_random_exponential(multiplier=1, min=min_wait, max=max_wait)

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            error = outcome.exception()
            if isinstance(error, RateLimitError) and error.retry_after:
                return float(min(error.retry_after, max_wait))
        return backoff(retry_state)

    return _wait


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry_attempt",
        function=getattr(retry_state.fn, "__name__", "call"),
        attempt=retry_state.attempt_number,
        error=str(error) if error else None,
    )


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    retry_on_exceptions: tuple = TRANSIENT_ERRORS,
) -> Callable[[F], F]:
    """Retry decorator for coroutine functions, with exponential backoff and jitter.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        retry_on_exceptions: Tuple of exception types to retry on

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=_wait_with_retry_after(min_wait, max_wait),
                retry=retry_if_exception_type(retry_on_exceptions),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryConfig | None = None,
    **kwargs: Any,
) -> T:
    """Await ``func(*args, **kwargs)`` under a configurable retry policy.

    Args:
        func: Coroutine function to call
        *args: Positional arguments for func
        policy: Retry settings (defaults to RetryConfig())
        **kwargs: Keyword arguments for func

    Returns:
        The result of func

    Raises:
        The last exception once attempts are exhausted or on a non-transient error
    """
    policy = policy or RetryConfig()

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_wait_with_retry_after(policy.min_wait, policy.max_wait),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await func(*args, **kwargs)

    raise RuntimeError("Unexpected retry loop exit")


# Pre-configured decorator for one-off calls
retry_api_call_short = retry_with_backoff(max_attempts=3, min_wait=1, max_wait=10)
