"""
Bounded retry with exponential backoff.

Usage:
    from superpancake.retry import with_retry

    result = await with_retry(
        lambda: session.send("Page.navigate", {"url": url}),
        max_attempts=3,
        base_delay_ms=1000,
        operation="navigate",
    )
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from .config import RetryConfig
from .errors import RetryExhausted, ValidationError, describe_error
from .logger import PancakeLogger

T = TypeVar("T")

RetryPredicate = Callable[[BaseException], bool]


def _as_predicate(
    retry_on: RetryPredicate | type[BaseException] | tuple[type[BaseException], ...] | None,
) -> RetryPredicate:
    if retry_on is None:
        return lambda exc: isinstance(exc, Exception)
    if isinstance(retry_on, type) or isinstance(retry_on, tuple):
        return lambda exc: isinstance(exc, retry_on)
    return retry_on


def backoff_delay_ms(attempt: int, base_delay_ms: int, max_delay_ms: int | None = None) -> int:
    """Delay before the retry that follows failed attempt ``attempt`` (1-based)."""
    delay = base_delay_ms * (2 ** (attempt - 1))
    if max_delay_ms is not None:
        delay = min(delay, max_delay_ms)
    return delay


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
    max_delay_ms: int | None = None,
    operation: str = "operation",
    retry_on: RetryPredicate | type[BaseException] | tuple[type[BaseException], ...] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    logger: PancakeLogger | None = None,
) -> T:
    """
    Run ``fn`` until it succeeds or the attempt budget is spent.

    Args:
        fn: Zero-argument coroutine function performing one attempt
        max_attempts: Total attempts including the first (must be >= 1)
        base_delay_ms: Delay after the first failure; doubled per failure
        max_delay_ms: Optional cap on a single delay
        operation: Name used in logs and in RetryExhausted
        retry_on: Predicate or exception type(s) selecting retryable errors.
            Everything else propagates unchanged on first occurrence.
        sleep: Awaitable sleep, replaceable in tests
        logger: Optional logger

    Returns:
        Result of the first successful attempt

    Raises:
        RetryExhausted: When every attempt failed with a retryable error
    """
    if max_attempts < 1:
        raise ValidationError(f"max_attempts must be >= 1, got {max_attempts}")

    should_retry = _as_predicate(retry_on)
    last_error: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn()
        except Exception as e:
            if not should_retry(e):
                raise
            last_error = e
            if attempt == max_attempts:
                break
            delay_ms = backoff_delay_ms(attempt, base_delay_ms, max_delay_ms)
            if logger:
                logger.warning(
                    f"🔄 {operation} attempt {attempt}/{max_attempts} failed "
                    f"({describe_error(e)}), retrying in {delay_ms}ms"
                )
            await sleep(delay_ms / 1000)

    assert last_error is not None
    raise RetryExhausted(operation, max_attempts, last_error) from last_error


@dataclass
class RetryPolicy:
    """Reusable retry settings."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int | None = None

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_ms=config.base_delay_ms,
            max_delay_ms=config.max_delay_ms,
        )

    async def run(self, fn: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
        return await with_retry(
            fn,
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            **kwargs,
        )


def retrying(
    *,
    max_attempts: int = 3,
    base_delay_ms: int = 1000,
    max_delay_ms: int | None = None,
    retry_on: RetryPredicate | type[BaseException] | tuple[type[BaseException], ...] | None = None,
    logger: PancakeLogger | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """
    Decorator form of ``with_retry`` for coroutine functions.

    Example:
        >>> @retrying(max_attempts=5, retry_on=ChannelError)
        ... async def fetch_title(session):
        ...     return await session.send("Runtime.evaluate", {"expression": "document.title"})
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                base_delay_ms=base_delay_ms,
                max_delay_ms=max_delay_ms,
                operation=func.__name__,
                retry_on=retry_on,
                logger=logger,
            )

        return wrapper

    return decorator
