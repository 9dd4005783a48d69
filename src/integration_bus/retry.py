"""RetryPolicy: exponential backoff with a cap, gated by failure kind."""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING

from .classification import FailureClassifier, FailureKind

if TYPE_CHECKING:
    from .config import MessagingSettings

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0
DEFAULT_MAX_DELAY = 300.0


class RetryPolicy:
    """Decides whether a failed delivery is retried and how long to wait."""

    def __init__(
        self,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        jitter: bool = False,
        classifier: FailureClassifier | None = None,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_attempts: Highest attempt number after which a transient
                failure is still retried.
            base_delay: Delay in seconds before the first retry.
            max_delay: Cap on delay in seconds.
            jitter: If True, scale delays by a random factor in [0.5, 1.5]
                (still capped by max_delay).
            classifier: Failure classifier; defaults to the built-in rules.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.classifier = classifier or FailureClassifier()

    @classmethod
    def from_settings(
        cls,
        settings: MessagingSettings,
        classifier: FailureClassifier | None = None,
    ) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            max_delay=settings.max_delay_seconds,
            jitter=settings.retry_jitter,
            classifier=classifier,
        )

    def classify(self, exception: BaseException) -> FailureKind:
        return self.classifier.classify(exception)

    def should_retry(self, exception: BaseException, attempt_count: int) -> bool:
        """Return True if a failure on the 1-based *attempt_count* is retried."""
        if not 1 <= attempt_count <= self.max_attempts:
            return False
        return self.classify(exception) is FailureKind.TRANSIENT

    def calculate_retry_delay(self, attempt_count: int) -> float:
        """Return the delay in seconds after the given 1-based attempt.

        ``min(2 ** (attempt_count - 1) * base_delay, max_delay)``.
        """
        if attempt_count < 1:
            return 0.0
        # Avoid float overflow for absurd attempt counts.
        exponent = min(attempt_count - 1, 64)
        delay = min(self.base_delay * (2**exponent), self.max_delay)
        if self.jitter:
            delay = min(delay * (0.5 + random.random()), self.max_delay)  # noqa: S311
        return float(max(0.0, delay))

    async def wait_before_retry(self, attempt_count: int) -> None:
        """Sleep for the delay computed for *attempt_count*."""
        delay = self.calculate_retry_delay(attempt_count)
        if delay > 0:
            await asyncio.sleep(delay)
