"""Bounded retry with exponential backoff for transient provider failures."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from .errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryPolicy(BaseModel):
    """How many times, and how patiently, to retry a transient failure."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry (one fewer than max_attempts)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            capped = min(delay, self.max_delay)
            yield capped + random.uniform(0, capped * self.jitter)
            delay *= self.multiplier

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        sleep: Callable[[float], None] = time.sleep,
        on_retry: Callable[[int, TransientError], None] | None = None,
        **kwargs: Any,
    ) -> T:
        """Call fn, retrying TransientError until attempts run out.

        The last TransientError propagates once the bound is reached; any
        other exception propagates immediately.
        """
        delays = self.delays()
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except TransientError as exc:
                wait = next(delays, None)
                if wait is None:
                    logger.debug("Giving up after %d attempt(s): %s", attempt, exc)
                    raise
                logger.warning("Attempt %d failed (%s); retrying in %.2fs", attempt, exc, wait)
                if on_retry is not None:
                    on_retry(attempt, exc)
                sleep(wait)
                attempt += 1
