"""Exponential backoff retries for operations against the Hasura gateway.

The gateway sits in front of a database that is still being bulk-synced, so
schema applies and introspection routinely fail for a while after startup.
Every retried workflow in this package goes through ``retry_with_backoff``.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger()

T = TypeVar("T")

# (attempt_number, error, next_delay); next_delay is None on the final attempt
AttemptListener = Callable[[int, BaseException, Optional[float]], None]

DEFAULT_BACKOFF_FACTOR = 1.75
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_MIN_DELAY = 1.0  # seconds


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule and failure listener for one retried operation."""

    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    min_delay: float = DEFAULT_MIN_DELAY
    on_attempt_failure: Optional[AttemptListener] = None

    def __post_init__(self):
        if self.backoff_factor <= 1:
            raise ValueError(f"backoff_factor must be > 1, got {self.backoff_factor}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.min_delay < 0:
            raise ValueError(f"min_delay must be >= 0, got {self.min_delay}")

    @classmethod
    def from_settings(cls, settings, on_attempt_failure: Optional[AttemptListener] = None) -> "RetryPolicy":
        return cls(
            backoff_factor=settings.retry_backoff_factor,
            max_attempts=settings.retry_max_attempts,
            min_delay=settings.retry_min_delay,
            on_attempt_failure=on_attempt_failure,
        )

    def delay_for(self, attempt_number: int) -> float:
        """Delay in seconds after failed attempt ``attempt_number`` (1-based)."""
        return self.min_delay * self.backoff_factor ** (attempt_number - 1)

    def with_listener(self, listener: Optional[AttemptListener]) -> "RetryPolicy":
        return replace(self, on_attempt_failure=listener)


def on_failed_attempt_for(operation: str, log: Any = None) -> AttemptListener:
    """Build the standard attempt listener that logs progress of ``operation``.

    Args:
        operation: Human readable name of the retried workflow
        log: structlog logger to report through (defaults to module logger)

    Returns:
        Listener suitable for ``RetryPolicy.on_attempt_failure``
    """
    log = log or logger

    def _listener(attempt_number: int, error: BaseException, next_delay: Optional[float]) -> None:
        if next_delay is None:
            log.error(
                "retry_attempts_exhausted",
                operation=operation,
                attempt=attempt_number,
                error=str(error),
            )
            return
        log.warning(
            "retry_attempt_failed",
            operation=operation,
            attempt=attempt_number,
            next_delay_seconds=round(next_delay, 3),
            error=str(error),
        )

    return _listener


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    fatal: Tuple[Type[BaseException], ...] = (),
) -> T:
    """Run ``operation`` until it succeeds or ``policy.max_attempts`` is reached.

    The wait after failed attempt ``k`` is ``min_delay * backoff_factor ** (k - 1)``.
    The listener sees every retriable failure, the last one included. When
    attempts run out the last exception is re-raised as is.

    Args:
        operation: Zero-argument coroutine function to run
        policy: Backoff schedule and failure listener
        sleep: Awaitable used to wait between attempts
        fatal: Exception types raised immediately without further attempts

    Returns:
        Result of the first successful attempt
    """

    def _after(retry_state) -> None:
        if policy.on_attempt_failure is None:
            return
        attempt = retry_state.attempt_number
        next_delay = policy.delay_for(attempt) if attempt < policy.max_attempts else None
        policy.on_attempt_failure(attempt, retry_state.outcome.exception(), next_delay)

    retry_condition = retry_if_exception_type(Exception)
    if fatal:
        retry_condition = retry_condition & retry_if_not_exception_type(fatal)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_exponential(multiplier=policy.min_delay, exp_base=policy.backoff_factor),
        retry=retry_condition,
        after=_after,
        sleep=sleep,
        reraise=True,
    )

    # AsyncRetrying only awaits callables it recognises as coroutine functions
    async def _attempt() -> T:
        return await operation()

    return await retrying(_attempt)
