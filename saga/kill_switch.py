"""
Onboarding Saga — Kill Switch

Irrevocable per-instance termination.

  guard(workflow_id, step_name)
      Reads the persisted terminal flag and raises TerminatedError if set.
      First action of every stage-boundary step, so a stale or late write
      never proceeds past it.

  execute(workflow_id, reason, decided_by, notes)
      One transactional read-modify-write on the instance row (status,
      termination reason, KillSwitchRecord, one audit event), then a push
      broadcast on the CancellationChannel so outstanding waits are
      interrupted immediately instead of at the next guard.

Usage:
    from saga.kill_switch import KillSwitch, KillSwitchReason

    ks = KillSwitch(store, channel)
    ks.guard(wf_id, "stage-3-start")
    ks.execute(wf_id, KillSwitchReason.PROCUREMENT_DENIED, "risk_manager_7", "Supplier blacklisted")
"""

from __future__ import annotations

import abc
import enum
import logging
import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any, Callable, NoReturn

from saga.cancellation import CancellationChannel
from saga.errors import TerminatedError

if TYPE_CHECKING:
    from saga.steps import StepExecutor

logger = logging.getLogger("saga.kill_switch")


class KillSwitchReason(str, enum.Enum):
    MANUAL_TERMINATION = "manual_termination"
    PROCUREMENT_DENIED = "procurement_denied"
    COMPLIANCE_VIOLATION = "compliance_violation"
    MAX_RETRIES = "max_retries"
    APPROVAL_REJECTED = "approval_rejected"


@dataclass
class KillSwitchRecord:
    """Terminal, irreversible once written."""
    workflow_id: str
    reason: str
    decided_by: str
    notes: str
    terminated_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class KillSwitchStore(abc.ABC):
    """The narrow second writer on the instance row."""

    @abc.abstractmethod
    def is_terminated(self, workflow_id: str) -> bool: ...

    @abc.abstractmethod
    def terminate(
        self,
        workflow_id: str,
        reason: str,
        decided_by: str,
        notes: str,
        terminated_at: float,
    ) -> tuple[KillSwitchRecord, bool] | None:
        """
        Atomically mark the instance terminated.

        Returns (record, True) when this call wrote the record,
        (existing_record, False) when the instance was already terminated,
        and None when the instance is completed and cannot be killed.
        """


def termination_reason(reason: str, notes: str = "") -> str:
    """Human-readable reason stored on the instance row."""
    return f"{reason}: {notes}" if notes else reason


class KillSwitch:
    """Guard + executor for instance termination."""

    def __init__(
        self,
        store: KillSwitchStore,
        channel: CancellationChannel | None = None,
        event_sink: Callable[[str, dict], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.channel = channel or CancellationChannel()
        self.event_sink = event_sink
        self.clock = clock

    def is_terminated(self, workflow_id: str) -> bool:
        return self.store.is_terminated(workflow_id)

    def guard(self, workflow_id: str, step_name: str):
        """Raise TerminatedError if the instance has been killed."""
        if self.store.is_terminated(workflow_id):
            raise TerminatedError(workflow_id, step_name)

    def execute(
        self,
        workflow_id: str,
        reason: KillSwitchReason | str,
        decided_by: str,
        notes: str = "",
    ) -> KillSwitchRecord | None:
        """
        Terminate the instance. Idempotent: a repeat call returns the
        original record and writes nothing. Returns None if the instance
        already completed.
        """
        reason_value = reason.value if isinstance(reason, KillSwitchReason) else str(reason)
        outcome = self.store.terminate(
            workflow_id, reason_value, decided_by, notes, self.clock(),
        )
        if outcome is None:
            logger.warning(
                "Kill switch refused for %s: instance already completed", workflow_id,
            )
            return None

        record, created = outcome
        if not created:
            logger.info("Kill switch already executed for %s (%s)", workflow_id, record.reason)
            return record

        logger.warning(
            "KILL SWITCH: workflow %s TERMINATED (%s) by %s: %s",
            workflow_id, record.reason, decided_by, notes,
        )
        self.channel.publish(workflow_id, {
            "reason": record.reason,
            "decided_by": decided_by,
            "notes": notes,
        })
        if self.event_sink is not None:
            self.event_sink("workflow/terminated", {
                "workflow_id": workflow_id,
                "reason": record.reason,
                "decided_by": decided_by,
                "terminated_at": record.terminated_at,
            })
        return record

    def terminate_step(
        self,
        executor: StepExecutor,
        step_id: str,
        reason: KillSwitchReason | str,
        decided_by: str,
        notes: str = "",
        then: Callable[[], None] | None = None,
    ) -> NoReturn:
        """
        Execute the kill switch as a durable step of a running saga, then
        stop the saga with TerminatedError. `then` runs inside the same step.
        """
        def _kill():
            record = self.execute(executor.workflow_id, reason, decided_by, notes)
            if then is not None:
                then()
            return record.to_dict() if record else None

        executor.run(step_id, _kill)
        raise TerminatedError(executor.workflow_id, step_id, notes or getattr(reason, "value", reason))
