"""
Tezos Delegation Indexer - Backoff State

Tracks consecutive failures of the ingestion worker and decides how long to
wait before the next attempt. The default policy is a fixed interval
(multiplier 1.0); a multiplier above 1.0 turns it into capped exponential
backoff.

Usage:
    from indexer.workers.backoff import BackoffState

    backoff = BackoffState(base_delay=30.0)

    try:
        await fetch()
        backoff.record_success()
    except NetworkError:
        delay = backoff.record_failure()
        await sleep(delay)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional

DEFAULT_BACKOFF_SECONDS = 30.0
MAX_BACKOFF_SECONDS = 300.0


@dataclass
class BackoffState:
    """
    Failure bookkeeping for the ingestion loop.

    Attributes:
        base_delay: Delay after the first failure, in seconds
        multiplier: Growth factor per consecutive failure (1.0 = fixed)
        max_delay: Upper bound for the delay
        consecutive_failures: Failures since the last success
        total_failures: Failures since creation
        last_failure_time: Monotonic timestamp of the last failure
    """

    base_delay: float = DEFAULT_BACKOFF_SECONDS
    multiplier: float = 1.0
    max_delay: float = MAX_BACKOFF_SECONDS
    consecutive_failures: int = 0
    total_failures: int = 0
    last_failure_time: Optional[float] = None

    def __post_init__(self) -> None:
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def next_delay(self) -> float:
        """Delay for the current failure streak without recording anything."""
        if self.consecutive_failures == 0:
            return self.base_delay
        delay = self.base_delay * (self.multiplier ** (self.consecutive_failures - 1))
        return min(delay, max(self.max_delay, self.base_delay))

    def record_failure(self) -> float:
        """
        Record a failure and return the delay to wait before retrying.

        Returns:
            Delay in seconds
        """
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure_time = time.monotonic()
        return self.next_delay()

    def record_success(self) -> None:
        """Reset the failure streak. The total count is kept for diagnostics."""
        self.consecutive_failures = 0

    @property
    def time_since_last_failure(self) -> Optional[float]:
        """Seconds elapsed since the last failure, or None if there was none."""
        if self.last_failure_time is None:
            return None
        return time.monotonic() - self.last_failure_time
