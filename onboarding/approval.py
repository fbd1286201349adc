"""
Onboarding Saga — Two-Factor Approval Gate

Stage 6 completes only when the Risk Manager and the Account Manager have
both sent APPROVED. The two signals are independent and may arrive in
either order; each is durable in the inbox the moment it is received, and
is written to the instance row as soon as the gate consumes it.

  REJECTED from either role  → kill switch citing the rejecting role
  deadline passes first      → StageTimeoutError (status timeout, not killed)

One deadline is shared by both roles. It is fixed when the gate first opens
and journaled, so replays and restarts never extend it.
"""

from __future__ import annotations

import logging
from typing import Any

from onboarding.store import OnboardingStore
from onboarding.types import APPROVAL_EVENTS, ApprovalRole, Stage
from saga.errors import StageTimeoutError
from saga.kill_switch import KillSwitch, KillSwitchReason
from saga.steps import Event, StepExecutor

logger = logging.getLogger("saga.approval")

ROLE_LABELS = {
    ApprovalRole.RISK_MANAGER: "Risk Manager",
    ApprovalRole.ACCOUNT_MANAGER: "Account Manager",
}

_EVENT_ROLES = {event: role for role, event in APPROVAL_EVENTS.items()}


def role_for_event(event_name: str) -> ApprovalRole:
    return _EVENT_ROLES[event_name]


class TwoFactorApprovalGate:
    """Merges two independent approval signals into one completion condition."""

    ROLES = (ApprovalRole.RISK_MANAGER, ApprovalRole.ACCOUNT_MANAGER)

    def __init__(
        self,
        executor: StepExecutor,
        store: OnboardingStore,
        kill_switch: KillSwitch,
        timeout: float,
    ):
        self.executor = executor
        self.store = store
        self.kill_switch = kill_switch
        self.timeout = timeout
        self.workflow_id = executor.workflow_id

    def run(self) -> dict[str, dict[str, Any]]:
        """Return {role: decision} once both roles approved."""
        opened = self.executor.run(
            "approval-gate-open",
            lambda: {"deadline": self.executor.now() + self.timeout},
        )
        deadline = opened["deadline"]

        decisions: dict[str, dict[str, Any]] = {}
        for n in range(1, len(self.ROLES) + 1):
            remaining = [r for r in self.ROLES if r.value not in decisions]
            step_id = f"wait-final-approval-{n}"
            event = self.executor.wait_for_any(
                step_id,
                [APPROVAL_EVENTS[r] for r in remaining],
                max(0.0, deadline - self.executor.now()),
            )
            if event is None:
                missing = " and ".join(ROLE_LABELS[r] for r in remaining)
                raise StageTimeoutError(
                    Stage.FINAL_APPROVAL.value, f"{missing} approval timeout", step_id,
                )

            role, decision = self._consume(event)
            decisions[role.value] = decision

        logger.info("Two-factor approval complete for %s", self.workflow_id)
        return decisions

    def _consume(self, event: Event) -> tuple[ApprovalRole, dict[str, Any]]:
        role = role_for_event(event.name)
        payload = event.payload
        decision = {
            "decision": payload["decision"],
            "decided_by": payload["approved_by"],
            "timestamp": payload.get("timestamp") or event.received_at,
            "reason": payload.get("reason"),
        }

        self.executor.run(
            f"persist-{role.value}-approval",
            lambda: self.store.record_approval(self.workflow_id, role, decision).version,
        )

        if decision["decision"] == "REJECTED":
            label = ROLE_LABELS[role]
            notes = decision["reason"] or f"Rejected at final approval by {label}"
            self.kill_switch.terminate_step(
                self.executor, f"{role.value}-rejected-terminate",
                KillSwitchReason.APPROVAL_REJECTED, decision["decided_by"],
                f"{label}: {notes}",
            )

        return role, decision
