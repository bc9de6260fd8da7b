"""
Retry policy — bounded attempts with exponential backoff and jitter.

delay(n) = min(base_delay * 2**(n-1), max_delay) + up to 30% jitter
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """How often and how patiently transient failures are retried.

    Args:
        max_attempts: Total attempts including the first one.
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on the backoff (before jitter).
        jitter: Fraction of the delay added at random.
        sleep: Sleep function; tests inject a recorder.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: float = 0.3
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        base = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return base + random.uniform(0, base * self.jitter)

    def should_retry(self, attempt: int) -> bool:
        """Whether another attempt is allowed after ``attempt`` attempts."""
        return attempt < self.max_attempts

    def wait(self, attempt: int, what: str = "") -> None:
        delay = self.delay(attempt)
        logger.info(
            "Retrying %s: attempt %d/%d in %.1fs",
            what or "operation",
            attempt + 1,
            self.max_attempts,
            delay,
        )
        self.sleep(delay)
