"""Explicit retry policy shared by the model transport and the change tracker."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from techne.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    delay(n) = min(base_delay * 2 ** (n - 1), max_delay), scaled into
    [50%, 100%] when jitter is on.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    @classmethod
    def for_compare_and_set(cls, settings: Settings) -> RetryPolicy:
        """Short backoff for lost compare-and-set races."""
        return cls(max_attempts=settings.cas_max_attempts, base_delay=0.005, max_delay=0.1)

    def delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Callable[[Exception], bool],
        retry_after: Callable[[Exception], float | None] | None = None,
        label: str = "operation",
    ) -> T:
        """Run operation, retrying while retry_on(exc) holds.

        The last exception propagates once attempts are exhausted.
        retry_after may supply a server-requested delay (e.g. Retry-After).
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except Exception as exc:
                if attempt >= self.max_attempts or not retry_on(exc):
                    raise
                wait = retry_after(exc) if retry_after else None
                if wait is None:
                    wait = self.delay(attempt)
                else:
                    wait = min(wait, self.max_delay)
                logger.warning(
                    "%s failed (attempt %d/%d): %s, retrying in %.2fs",
                    label,
                    attempt,
                    self.max_attempts,
                    exc,
                    wait,
                )
                if wait > 0:
                    await asyncio.sleep(wait)
                attempt += 1
