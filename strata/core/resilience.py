"""
Strata Core - Resilience patterns.

Retry with exponential backoff for transient provider errors.
Terminal errors are raised on the first attempt.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable  # noqa: TC003
from dataclasses import dataclass
from functools import wraps
from typing import Any, TypeVar

from loguru import logger

from strata.core.exceptions import ProviderAPIError
from strata.core.metrics import get_registry
from strata.utils.logger import log_prefix

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration."""

    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.initial_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)


def is_transient(error: BaseException) -> bool:
    """True for provider errors that are safe to retry."""
    return isinstance(error, ProviderAPIError) and error.transient


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy | None = None,
    label: str | None = None,
    **kwargs: Any,
) -> T:
    """
    Call an async function, retrying transient provider errors.

    Args:
        func: Async function to call
        *args: Positional arguments
        policy: Retry policy (default: RetryPolicy())
        label: Name used in logs and metrics (default: function name)
        **kwargs: Keyword arguments

    Returns:
        Function result

    Raises:
        ProviderAPIError: Terminal error, or transient error after the last attempt
    """
    policy = policy or RetryPolicy()
    name = label or getattr(func, "__name__", "call")
    retries = get_registry().counter("strata_retry_attempts_total")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await func(*args, **kwargs)
        except ProviderAPIError as e:
            if not e.transient:
                raise
            if attempt == policy.max_attempts:
                logger.error(
                    f"{log_prefix('❌')} Retry exhausted after {policy.max_attempts} attempts: {name}"
                )
                raise

            retries.inc(function=name, attempt=str(attempt))
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{log_prefix('🔄')} Retry {attempt}/{policy.max_attempts} for {name} "
                f"after {delay:.1f}s: {e.reason}"
            )
            await asyncio.sleep(delay)

    raise RuntimeError("Retry logic error")


def retry(
    max_attempts: int = 5,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
) -> Callable:
    """
    Retry decorator with exponential backoff for transient provider errors.

    Example:
        @retry(max_attempts=3, initial_delay=0.5)
        async def describe(...):
            ...
    """
    policy = RetryPolicy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
    )

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await call_with_retry(func, *args, policy=policy, label=func.__name__, **kwargs)

        return wrapper

    return decorator
