"""
Onboarding Saga — Step Retry with Backoff

Transient failures inside a durable step (a notification gateway
timing out, a provider returning 503) are retried here, inside the step
executor. Stage logic never sees them. Anything that is not transient
propagates on the first failure.

Usage:
    from saga.retry import RetryPolicy, call_with_retry

    result = call_with_retry(fn, RetryPolicy(max_attempts=3), step_name="itc-check")
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable

from saga.errors import StageTimeoutError, TerminatedError, TransientError

logger = logging.getLogger("saga.retry")


@dataclass
class RetryPolicy:
    """Configuration for step retry behaviour."""
    max_attempts: int = 3
    backoff_base: float = 1.0       # seconds; delay = base * 2^attempt + jitter
    backoff_max: float = 30.0
    jitter: float = 0.2             # ±20% randomization

    retryable_exceptions: tuple = (
        TransientError,
        ConnectionError,
        TimeoutError,
    )


DEFAULT_POLICY = RetryPolicy()


def _is_retryable(error: Exception, policy: RetryPolicy) -> bool:
    if isinstance(error, (TerminatedError, StageTimeoutError)):
        return False
    return isinstance(error, policy.retryable_exceptions)


def _calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Exponential backoff with jitter, capped at backoff_max."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    return max(0.0, capped + random.uniform(-jitter_range, jitter_range))


def call_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy | None = None,
    step_name: str = "",
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Call fn, retrying transient failures per policy.

    Raises the last error once attempts are exhausted, or immediately for
    non-retryable errors.
    """
    if policy is None:
        policy = DEFAULT_POLICY

    for attempt in range(policy.max_attempts):
        try:
            return fn()
        except Exception as e:
            if not _is_retryable(e, policy):
                raise
            if attempt >= policy.max_attempts - 1:
                logger.error(
                    "Step retries exhausted (step=%s, attempts=%d): %s",
                    step_name, policy.max_attempts, str(e)[:200],
                )
                raise
            delay = _calculate_backoff(attempt, policy)
            logger.warning(
                "Transient step failure (attempt %d/%d, step=%s, backoff=%.2fs): %s",
                attempt + 1, policy.max_attempts, step_name, delay, str(e)[:200],
            )
            sleep_fn(delay)
    raise RuntimeError("unreachable")  # max_attempts < 1
