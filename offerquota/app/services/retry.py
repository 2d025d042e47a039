"""Retry mechanism with exponential backoff for counter store writes.

This module provides a configurable retry policy and decorator that implements
exponential backoff for transient storage failures.
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from offerquota.app.core.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

RetryHook = Callable[[int, Exception], Awaitable[None]]


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of retry attempts after the first call (default: 3)
        base_delay: Initial delay between retries in seconds (default: 0.1)
        max_delay: Maximum delay between retries in seconds (default: 1.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        retryable_exceptions: Tuple of exception types that trigger a retry

    Example:
        >>> policy = RetryPolicy()
        >>> [policy.calculate_delay(a) for a in range(3)]
        [0.1, 0.2, 0.4]
    """

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 1.0
    exponential_base: float = 2.0
    retryable_exceptions: Tuple[Type[Exception], ...] = (
        SQLAlchemyError,
        OSError,
        asyncio.TimeoutError,
    )

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        from offerquota.app.core.config import settings

        return cls(
            max_retries=settings.rollback_max_retries,
            base_delay=settings.rollback_base_delay,
            max_delay=settings.rollback_max_delay,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt.

        Uses exponential backoff: delay = min(base_delay * (exponential_base ^ attempt), max_delay)

        Args:
            attempt: The current retry attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def is_retryable(self, exception: Exception) -> bool:
        """Check if an exception should trigger a retry."""
        return isinstance(exception, self.retryable_exceptions)


def with_retry(
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[RetryHook] = None,
) -> Callable[[F], F]:
    """Decorator that adds retry logic with exponential backoff.

    Args:
        policy: RetryPolicy configuration. Uses defaults if not provided.
        on_retry: Coroutine called with (attempt, exception) before waiting,
            e.g. to roll back a failed session transaction.

    Returns:
        Decorated function with retry logic

    Example:
        >>> @with_retry(policy=RetryPolicy(max_retries=3))
        ... async def decrement(session, subject):
        ...     return await apply_decrement(session, subject, period)
    """
    retry_policy = policy or RetryPolicy()

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(retry_policy.max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not retry_policy.is_retryable(e):
                        logger.debug(
                            f"Non-retryable exception in {func.__name__}: {type(e).__name__}: {e}"
                        )
                        raise

                    if attempt >= retry_policy.max_retries:
                        logger.warning(
                            f"Max retries ({retry_policy.max_retries}) exceeded for {func.__name__}: "
                            f"{type(e).__name__}: {e}"
                        )
                        raise

                    delay = retry_policy.calculate_delay(attempt)
                    logger.warning(
                        f"Retry {attempt + 1}/{retry_policy.max_retries} for {func.__name__} "
                        f"after {type(e).__name__}: {e}. Waiting {delay:.2f}s..."
                    )
                    if on_retry is not None:
                        await on_retry(attempt, e)

                    await asyncio.sleep(delay)

        return wrapper  # type: ignore

    return decorator
