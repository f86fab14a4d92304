"""Bounded retry with exponential backoff, shared by provisioning, attach and install."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

T = TypeVar("T")

log = structlog.get_logger(__name__)


class RetryPolicy:
    """Retry an async operation while ``retryable(exc)`` holds, at most ``attempts`` times in total."""

    attempts: int
    base_delay: float
    max_delay: float

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 0.2,
        max_delay: float = 2.0,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.attempts = max(1, attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sleep_fn = sleep_fn or asyncio.sleep

    def backoff_seconds(self, attempt_index: int) -> float:
        return min(self.base_delay * (2 ** attempt_index), self.max_delay)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        retryable: Callable[[BaseException], bool],
        *,
        step: str = "operation",
    ) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                attempt += 1
                if attempt >= self.attempts or not retryable(exc):
                    raise
                delay = self.backoff_seconds(attempt - 1)
                log.warning("retrying", step=step, attempt=attempt, delay_s=delay, error=str(exc))
                await self.sleep_fn(delay)
