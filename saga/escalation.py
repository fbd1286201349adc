"""
Onboarding Saga — Bounded Retry with Tiered Escalation

Generalizes "retry inside a wait loop" into one combinator parameterized
by (max_attempts, interval, on_attempt, tiers):

  attempt 1 fires immediately
  each attempt waits `interval` for the confirming event
  no event → next attempt, up to max_attempts
  exhausted → optional salvage wait, then RetryOutcome(resolved=False)

Escalation is tied to attempt numbers, not elapsed time. The SOP default:

  attempts 1-3   routine reminder
  attempt 4      tier 1: operator notified, manual follow-up contact required
  attempt 7      tier 2: flagged at risk of termination
  other          routine reminder

The loop owns no persistence. on_attempt and wait are expected to be
durable (memoized run steps and journaled waits), so when the saga is
replayed the loop fast-forwards through completed attempts and suspends
again at the first unresolved wait.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

logger = logging.getLogger("saga.escalation")


class EscalationTier(str, enum.Enum):
    ROUTINE = "routine"
    TIER_1 = "tier_1"
    TIER_2 = "tier_2"


SOP_TIERS: dict[int, EscalationTier] = {
    4: EscalationTier.TIER_1,
    7: EscalationTier.TIER_2,
}

TIER_ACTIONS = {
    EscalationTier.ROUTINE: "Routine reminder sent to applicant",
    EscalationTier.TIER_1: "Operator notified; manual follow-up contact required",
    EscalationTier.TIER_2: "Flagged at risk of termination",
}


def tier_for_attempt(
    attempt: int, tiers: dict[int, EscalationTier] | None = None,
) -> EscalationTier:
    """Escalation tier for a 1-based attempt number."""
    table = SOP_TIERS if tiers is None else tiers
    return table.get(attempt, EscalationTier.ROUTINE)


@dataclass
class RetryOutcome:
    resolved: bool
    attempts: int
    event: Any = None
    tier: EscalationTier = EscalationTier.ROUTINE
    salvaged: bool = False


OnAttempt = Callable[[int, EscalationTier], None]
WaitFn = Callable[[int, float], Optional[Any]]
SalvageFn = Callable[[float], Optional[Any]]


class RetryEscalationLoop:
    """
    Bounded retry-with-escalation.

    on_attempt(attempt, tier) performs the attempt's side effects.
    wait(attempt, interval) returns the confirming event or None on timeout.
    salvage(window) is only consulted when salvage_window > 0.
    """

    def __init__(
        self,
        max_attempts: int,
        interval: float,
        on_attempt: OnAttempt,
        wait: WaitFn,
        tiers: dict[int, EscalationTier] | None = None,
        salvage_window: float = 0.0,
        salvage: SalvageFn | None = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.interval = interval
        self.on_attempt = on_attempt
        self.wait = wait
        self.tiers = SOP_TIERS if tiers is None else tiers
        self.salvage_window = salvage_window
        self.salvage = salvage

    def run(self) -> RetryOutcome:
        tier = EscalationTier.ROUTINE
        for attempt in range(1, self.max_attempts + 1):
            tier = tier_for_attempt(attempt, self.tiers)
            self.on_attempt(attempt, tier)
            event = self.wait(attempt, self.interval)
            if event is not None:
                return RetryOutcome(True, attempt, event, tier)

        if self.salvage_window > 0 and self.salvage is not None:
            logger.info(
                "Retries exhausted after %d attempts; salvage window open for %.0fs",
                self.max_attempts, self.salvage_window,
            )
            event = self.salvage(self.salvage_window)
            if event is not None:
                return RetryOutcome(True, self.max_attempts, event, tier, salvaged=True)

        return RetryOutcome(False, self.max_attempts, None, tier)
