"""Exponential backoff with jitter around mail source calls."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from ..core.config import RetrySettings
from ..core.errors import RateLimited, TransientError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class Deadline:
    """Monotonic time budget for a single scheduler tick."""

    budget_seconds: float
    clock: Callable[[], float] = time.monotonic
    _started: float = field(init=False)

    def __post_init__(self) -> None:
        self._started = self.clock()

    def remaining(self) -> float:
        return self.budget_seconds - (self.clock() - self._started)

    def expired(self, margin: float = 0.0) -> bool:
        return self.remaining() <= margin


@dataclass(slots=True)
class RetryPolicy:
    """Backoff curve applied to ``TransientError`` and ``RateLimited``."""

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = time.sleep
    rng: Callable[[], float] = random.random

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Full-jitter delay for the given 1-based attempt."""
        ceiling = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        return ceiling * self.rng()

    def call(
        self,
        operation: Callable[[], T],
        *,
        description: str,
        deadline: Deadline | None = None,
    ) -> T:
        """Run ``operation``, retrying transient failures.

        Rate-limit waits do not count against ``max_attempts``; they are bounded
        by ``deadline`` instead. Errors escape once retries or time run out.
        """
        attempt = 0
        while True:
            try:
                return operation()
            except RateLimited as exc:
                delay = exc.retry_after if exc.retry_after is not None else self.max_delay
                if deadline is not None and deadline.remaining() <= delay:
                    raise
                LOGGER.info("%s rate limited; waiting %.1fs", description, delay)
                self.sleep(delay)
            except TransientError as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff(attempt)
                if deadline is not None and deadline.remaining() <= delay:
                    raise
                LOGGER.warning(
                    "%s failed (attempt %s/%s): %s; retrying in %.2fs",
                    description,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)


__all__ = ["Deadline", "RetryPolicy"]
