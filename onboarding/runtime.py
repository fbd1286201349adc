"""
Onboarding Saga — Orchestrator Runtime

Owns instance lifecycle. Every external entry point ends in a drive:

  start_workflow   create the row, then drive from the top
  signal           validate, persist in the inbox, then drive
  tick             drive every instance whose pending wait deadline passed
  resume           drive one instance again (after a process restart)
  kill             kill switch; outstanding waits are cancelled by push

A drive re-executes the saga function against the step journal. Completed
steps are memoized, so a drive only does new work past the last journaled
step, then either suspends at a wait, halts (timeout / failed), completes,
or stops on the kill switch. Drives of one instance are serialized.

This is the only place that turns exceptions into persisted outcomes.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable

from onboarding.collaborators import Collaborators
from onboarding.events import validate_signal
from onboarding.feedback import record_feedback as _record_feedback
from onboarding.stages import SagaContext, SagaOutcome, StageController
from onboarding.store import OnboardingStore
from onboarding.types import STAGE_NAMES, WorkflowInstance, WorkflowStatus
from saga.cancellation import CancellationChannel
from saga.config import SagaSettings, load_settings
from saga.errors import (
    IllegalTransition,
    TerminatedError,
    ValidationError,
    WaitPending,
)
from saga.kill_switch import KillSwitch, KillSwitchReason
from saga.logging import SagaLogger
from saga.steps import DurableStepExecutor

logger = logging.getLogger("saga.runtime")


class SagaOrchestrator:
    """In-process runtime for onboarding sagas."""

    def __init__(
        self,
        db_path: str | Path = "onboarding.db",
        settings: SagaSettings | None = None,
        collaborators: Collaborators | None = None,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], None] = time.sleep,
        config: dict[str, Any] | None = None,
        store: OnboardingStore | None = None,
    ):
        if settings is None:
            settings = load_settings(config or {})
        self.settings = settings
        self.collab = collaborators or Collaborators()
        self.clock = clock
        self.sleep_fn = sleep_fn

        self.store = store or OnboardingStore(db_path, clock=clock)
        self.channel = CancellationChannel()
        # Push cancellation: waits journaled as pending are cancelled the
        # moment the kill switch fires, not at the next guard.
        self.channel.subscribe_all(self._on_cancelled)
        self.kill_switch = KillSwitch(
            self.store, self.channel,
            event_sink=self.collab.events.send_event,
            clock=clock,
        )

        self._locks_guard = threading.Lock()
        self._drive_locks: dict[str, threading.Lock] = {}

    def _on_cancelled(self, workflow_id: str, details: dict[str, Any]):
        cancelled = self.store.cancel_waits(workflow_id)
        if cancelled:
            logger.info("Cancelled %d pending wait(s) for %s", cancelled, workflow_id)

    def _drive_lock(self, workflow_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._drive_locks.get(workflow_id)
            if lock is None:
                lock = self._drive_locks[workflow_id] = threading.Lock()
            return lock

    # ─── Lifecycle ───────────────────────────────────────────────────

    def start_workflow(
        self, applicant_id: str, applicant: dict[str, Any] | None = None,
    ) -> str:
        """Create an instance for the applicant and drive it to its first wait."""
        if not str(applicant_id or "").strip():
            raise ValidationError("workflow/start", ["applicant_id: required"])
        if applicant is not None:
            self.store.save_applicant(applicant_id, applicant)

        inst = self.store.create_workflow(WorkflowInstance.create(applicant_id, self.clock()))
        SagaLogger(inst.workflow_id, inst.applicant_id).on_workflow_start()
        logger.info("Started workflow %s for applicant %s", inst.workflow_id, applicant_id)

        self._drive(inst.workflow_id)
        return inst.workflow_id

    def signal(self, workflow_id: str, event_name: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Deliver an external event. Invalid payloads are rejected before
        anything is written; signals to a terminated instance are refused.
        Signals that arrive before the saga reaches the matching wait stay
        in the inbox until it does.
        """
        inst = self.store.require_workflow(workflow_id)
        clean = validate_signal(event_name, payload)
        if inst.status == WorkflowStatus.TERMINATED:
            raise TerminatedError(workflow_id, event_name, inst.termination_reason or "")

        self.store.add_inbox_event(workflow_id, event_name, clean)
        logger.info("Signal %s received for %s", event_name, workflow_id)

        if not inst.is_terminal:
            self._drive(workflow_id)
        return self.get_status(workflow_id)

    def tick(self) -> list[str]:
        """Timer sweep: drive every instance with an overdue wait."""
        due = self.store.due_workflows(self.clock())
        for workflow_id in due:
            self._drive(workflow_id)
        if due:
            logger.info("Tick drove %d workflow(s)", len(due))
        return due

    def resume(self, workflow_id: str) -> SagaOutcome:
        """Replay an instance from its journal."""
        self.store.require_workflow(workflow_id)
        return self._drive(workflow_id)

    def resume_all(self) -> list[str]:
        """Resume every non-terminal instance. Used on process start."""
        pending = [
            inst.workflow_id
            for status in (WorkflowStatus.PENDING, WorkflowStatus.PROCESSING,
                           WorkflowStatus.AWAITING_HUMAN)
            for inst in self.store.list_workflows(status=status, limit=None)
        ]
        for workflow_id in pending:
            self._drive(workflow_id)
        return pending

    def kill(
        self,
        workflow_id: str,
        reason: str = KillSwitchReason.MANUAL_TERMINATION.value,
        decided_by: str = "",
        notes: str = "",
    ) -> dict[str, Any]:
        """Manual kill switch. Idempotent; refused on a completed instance."""
        self.store.require_workflow(workflow_id)
        try:
            reason_enum = KillSwitchReason(reason)
        except ValueError:
            allowed = ", ".join(r.value for r in KillSwitchReason)
            raise ValidationError("workflow/kill", [f"reason: must be one of {allowed}"])
        if not decided_by:
            raise ValidationError("workflow/kill", ["decided_by: required"])

        record = self.kill_switch.execute(workflow_id, reason_enum, decided_by, notes)
        if record is None:
            raise IllegalTransition(f"Workflow {workflow_id} is completed and cannot be killed")
        SagaLogger(workflow_id).on_kill_switch(record.reason, record.decided_by)
        return record.to_dict()

    # ─── Drive ───────────────────────────────────────────────────────

    def _drive(self, workflow_id: str) -> SagaOutcome:
        with self._drive_lock(workflow_id):
            inst = self.store.require_workflow(workflow_id)
            if inst.is_terminal:
                return self._outcome_of(inst)

            slog = SagaLogger(workflow_id, inst.applicant_id)
            token = self.channel.token(workflow_id)
            executor = DurableStepExecutor(
                self.store, workflow_id,
                clock=self.clock,
                token=token,
                retry_policy=self.settings.step_retry,
                sleep_fn=self.sleep_fn,
                slog=slog,
                event_sink=self.collab.events.send_event,
            )
            ctx = SagaContext(
                workflow_id=workflow_id,
                applicant_id=inst.applicant_id,
                executor=executor,
                store=self.store,
                kill_switch=self.kill_switch,
                collab=self.collab,
                settings=self.settings,
                slog=slog,
            )

            try:
                outcome = StageController(ctx).run()
            except WaitPending as e:
                current = self.store.require_workflow(workflow_id)
                return SagaOutcome(current.status.value, current.stage, details={
                    "step_id": e.step_id, "waiting_on": e.events, "deadline": e.deadline,
                })
            except TerminatedError as e:
                current = self.store.require_workflow(workflow_id)
                outcome = SagaOutcome(
                    WorkflowStatus.TERMINATED.value, current.stage,
                    current.termination_reason or e.reason,
                )
            except Exception as e:
                logger.exception("Workflow %s failed", workflow_id)
                outcome = self._fail(workflow_id, f"{type(e).__name__}: {e}")
            finally:
                self.channel.release(token)

            slog.on_workflow_end(outcome.status, outcome.stage, outcome.reason)
            return outcome

    def _fail(self, workflow_id: str, reason: str) -> SagaOutcome:
        try:
            inst = self.store.transition(workflow_id, WorkflowStatus.FAILED, reason=reason)
        except TerminatedError:
            inst = self.store.require_workflow(workflow_id)
        return self._outcome_of(inst)

    def _outcome_of(self, inst: WorkflowInstance) -> SagaOutcome:
        return SagaOutcome(inst.status.value, inst.stage, self._reason(inst))

    @staticmethod
    def _reason(inst: WorkflowInstance) -> str:
        if inst.status == WorkflowStatus.TERMINATED:
            return inst.termination_reason or ""
        return inst.halt_reason or ""

    # ─── Queries ─────────────────────────────────────────────────────

    def get_status(self, workflow_id: str) -> dict[str, Any]:
        inst = self.store.require_workflow(workflow_id)
        waiting_on = sorted({
            name for rec in self.store.pending_waits(workflow_id) for name in rec.events
        })
        return {
            "workflow_id": inst.workflow_id,
            "applicant_id": inst.applicant_id,
            "stage": inst.stage,
            "stage_name": STAGE_NAMES.get(inst.stage, ""),
            "status": inst.status.value,
            "approvals": inst.approvals(),
            "mandate_retry_count": inst.mandate_retry_count,
            "reason": self._reason(inst),
            "waiting_on": waiting_on,
            "ai_outcome": inst.ai_outcome,
            "ai_confidence": inst.ai_confidence,
        }

    def list_workflows(self, status: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        status_enum = WorkflowStatus(status) if status else None
        return [i.to_dict() for i in self.store.list_workflows(status=status_enum, limit=limit)]

    def record_feedback(
        self,
        workflow_id: str,
        human_outcome: str,
        override_category: str,
        decided_by: str,
        override_subcategory: str | None = None,
        override_details: str | None = None,
        decision_ref: str | None = None,
    ) -> dict[str, Any]:
        """Score a human decision against the stored AI snapshot."""
        return _record_feedback(
            self.store, self.collab.events, workflow_id,
            human_outcome=human_outcome,
            override_category=override_category,
            decided_by=decided_by,
            override_subcategory=override_subcategory,
            override_details=override_details,
            decision_ref=decision_ref,
        )

    def get_events(self, workflow_id: str, event_type: str | None = None) -> list[dict[str, Any]]:
        self.store.require_workflow(workflow_id)
        return [e.to_dict() for e in self.store.get_events(workflow_id, event_type)]

    def verify_audit_chain(self, workflow_id: str) -> dict[str, Any]:
        self.store.require_workflow(workflow_id)
        valid, message = self.store.verify_events(workflow_id)
        return {"workflow_id": workflow_id, "valid": valid, "message": message}

    def close(self):
        self.store.close()
