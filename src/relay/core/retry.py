"""Retry combinator for failable remote operations.

Wraps tenacity's AsyncRetrying with the pipeline's policy: bounded attempts,
linear backoff (``base_delay x attempt_number``) and no error-category
filtering. Every failure is retryable until attempts run out; the last
exception is re-raised unchanged.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ConfigDict, Field
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_incrementing
from tenacity.wait import wait_base

from src.relay.core.monitoring import retry_failures_total

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def linear_backoff(base_delay: float) -> wait_base:
    """Wait ``base_delay * attempt_number`` seconds after each failed attempt."""
    return wait_incrementing(start=base_delay, increment=base_delay)


async def retry_operation(
    action: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 5.0,
    operation: str | None = None,
    wait: wait_base | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
) -> T:
    """Run ``action`` until it succeeds or ``max_attempts`` is exhausted.

    Args:
        action: Zero-argument callable returning an awaitable.
        max_attempts: Total attempts including the first one.
        base_delay: Seconds multiplied by the attempt number between tries.
        operation: Label used in logs and metrics. Defaults to the
            callable's ``__name__``.
        wait: Optional tenacity wait strategy replacing linear backoff.
        sleep: Optional async sleep function (tests pass a no-op).

    Returns:
        Whatever ``action`` returns on its first successful attempt.

    Raises:
        Exception: The exception raised by the final attempt.
    """
    label = operation or getattr(action, "__name__", "operation")

    def _log_failed_attempt(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_failures_total.labels(operation=label).inc()
        logger.warning(
            "retry.attempt_failed",
            operation=label,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    # Iterate attempts explicitly: ``action`` is often a plain lambda returning
    # a coroutine, which AsyncRetrying.__call__ would not await.
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait if wait is not None else linear_backoff(base_delay),
        after=_log_failed_attempt,
        sleep=sleep or asyncio.sleep,
        reraise=True,
    ):
        with attempt:
            return await action()
    raise RuntimeError(f"{label}: retry loop ended without an attempt")


class RetryPolicy(BaseModel):
    """Attempt count and backoff base shared by every retried call."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=5.0, ge=0.0)

    async def run(
        self,
        action: Callable[[], Awaitable[T]],
        operation: str | None = None,
    ) -> T:
        """Run ``action`` under this policy."""
        return await retry_operation(
            action,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            operation=operation,
        )
