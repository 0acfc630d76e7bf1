"""Retry with class-specific exponential backoff.

Only recoverable StoreErrors are retried, each category against its own
budget: lock timeouts get few attempts with long waits, checksum
mismatches get more attempts with short waits since a fresh read is
usually enough to recover.
"""

import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, TypeVar

from taskvault.errors import ErrorCategory, StoreError
from taskvault.logging import Loggers
from taskvault.policy import RetryPolicy

T = TypeVar("T")

logger = Loggers.engine()


@dataclass(frozen=True)
class RetryBudget:
    """Attempts and backoff for one error category."""

    max_attempts: int
    base_delay: float
    max_delay: float = 5.0
    exponential_base: float = 2.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay * (self.exponential_base**attempt), self.max_delay)


def budgets_from_policy(policy: RetryPolicy) -> dict[str, RetryBudget]:
    return {
        ErrorCategory.LOCK_TIMEOUT: RetryBudget(
            policy.lock_attempts, policy.lock_base_delay, policy.max_delay
        ),
        ErrorCategory.CHECKSUM_MISMATCH: RetryBudget(
            policy.checksum_attempts, policy.checksum_base_delay, policy.max_delay
        ),
    }


def call_with_retry(
    func: Callable[[], T],
    budgets: dict[str, RetryBudget],
    *,
    pinned_checksum: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func``, retrying recoverable errors within their budgets.

    Args:
        func: Zero-argument callable performing one complete attempt.
        budgets: Budget per error category; categories without one are
            never retried.
        pinned_checksum: The caller supplied the fingerprint of an earlier
            read. A checksum mismatch then means the caller's view is stale
            and re-reading would silently discard it, so it is not retried.
        sleep: Sleep function (replaced in tests).

    Raises:
        StoreError: The last error once its budget is exhausted, or any
            terminal error immediately.
    """
    attempts: dict[str, int] = defaultdict(int)
    while True:
        try:
            return func()
        except StoreError as e:
            if not e.recoverable:
                raise
            if e.category == ErrorCategory.CHECKSUM_MISMATCH and pinned_checksum:
                raise
            budget = budgets.get(e.category)
            if budget is None:
                raise
            attempt = attempts[e.category]
            attempts[e.category] += 1
            if attempts[e.category] >= budget.max_attempts:
                logger.warning("retry_exhausted", category=e.category, attempts=attempts[e.category])
                raise
            delay = budget.delay(attempt)
            logger.info("retrying", category=e.category, attempt=attempt + 1, delay=delay)
            sleep(delay)
