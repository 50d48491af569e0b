"""
Retry policy and request accounting for the kintone REST client.

Provides:
- RetryPolicy: exponential backoff with symmetric jitter and a delay cap
- ApiStats: request/retry counters owned by the caller of a backup or restore run
"""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import asdict, dataclass

# Retry configuration defaults
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRY_DELAY = 32.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.2  # +/- 20%
DEFAULT_MAX_RETRY_AFTER = 300.0  # seconds, ceiling for server wait hints

# HTTP statuses worth retrying
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


@dataclass
class RetryPolicy:
    """
    Exponential backoff policy applied uniformly to every remote call.

    The delay before retry ``n`` (1-based) is
    ``min(initial_delay * multiplier ** (n - 1), max_delay)`` with a random
    jitter of up to ``jitter`` times that value added or subtracted.

    Attributes:
        max_retries: Number of retries after the first attempt
        initial_delay: Delay before the first retry, in seconds
        max_delay: Upper bound of the un-jittered delay, in seconds
        multiplier: Growth factor between consecutive retries
        jitter: Relative jitter applied symmetrically (0.2 = +/-20%)
        max_retry_after: Upper bound of a server-provided wait hint, in seconds
        rng: Source of uniform random numbers in [0, 1)

    Usage:
        policy = RetryPolicy(max_retries=3)
        for attempt in range(1, policy.max_retries + 1):
            time.sleep(policy.next_delay(attempt))
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    initial_delay: float = DEFAULT_INITIAL_RETRY_DELAY
    max_delay: float = DEFAULT_MAX_RETRY_DELAY
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: float = DEFAULT_JITTER
    max_retry_after: float = DEFAULT_MAX_RETRY_AFTER
    rng: Callable[[], float] = random.random

    def base_delay(self, attempt: int) -> float:
        """Return the un-jittered delay for a 1-based retry attempt."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        delay = self.initial_delay * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay)

    def next_delay(self, attempt: int, retry_after: float | None = None) -> float:
        """
        Compute how long to wait before a retry.

        Args:
            attempt: 1-based retry attempt number
            retry_after: Server-provided wait hint in seconds, if any (capped
                at max_retry_after, not max_delay)

        Returns:
            Seconds to sleep before issuing the retry
        """
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_retry_after)

        delay = self.base_delay(attempt)
        offset = delay * self.jitter * (self.rng() * 2 - 1)
        return max(delay + offset, 0.0)

    def is_retryable_status(self, status_code: int | None) -> bool:
        """Check whether an HTTP status should be retried."""
        return status_code in RETRYABLE_STATUS_CODES


@dataclass
class ApiStats:
    """
    Request accounting for one logical operation.

    A fresh instance is created by each backup or restore run and bound to
    the client for the duration of the run, so counters never leak between
    runs.
    """

    api_request_count: int = 0
    retry_count: int = 0

    def record_request(self, count: int = 1) -> None:
        self.api_request_count += count

    def record_retry(self) -> None:
        self.retry_count += 1

    def reset(self) -> None:
        self.api_request_count = 0
        self.retry_count = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)
