"""
Onboarding Saga — Error Taxonomy

Four failure modes with distinct propagation rules:

  StageTimeoutError  no event within the wait window. Non-fatal. Raised by
                     stage logic, caught exactly at the stage boundary and
                     converted into status=timeout. Never retried outside
                     the explicit mandate retry loop.
  TerminatedError    kill switch fired. Fatal, non-retriable. Stage logic
                     never catches it; the instance never resumes.
  TransientError     underlying I/O of a step failed. Retried inside the
                     step executor, invisible to stage logic.
  ValidationError    malformed signal payload. Rejected at the ingress
                     boundary with workflow state untouched.

WaitPending is not an error: it is the control signal a wait raises when
the instance has to suspend until an event arrives or its deadline passes.
"""

from __future__ import annotations

from typing import Any


class SagaError(Exception):
    """Base class for all saga engine errors."""


class StageTimeoutError(SagaError, TimeoutError):
    """A human/external event did not arrive before the wait deadline."""

    def __init__(self, stage: int, reason: str, step_id: str = ""):
        self.stage = stage
        self.reason = reason
        self.step_id = step_id
        super().__init__(f"Stage {stage} timed out: {reason}")


class TerminatedError(SagaError):
    """Raised when the kill switch has fired for a workflow. Non-retriable."""

    retriable = False

    def __init__(self, workflow_id: str, step_name: str = "", reason: str = ""):
        self.workflow_id = workflow_id
        self.step_name = step_name
        self.reason = reason
        msg = f"Workflow {workflow_id} terminated"
        if step_name:
            msg += f" - stopping {step_name}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class TransientError(SagaError):
    """Step I/O failed in a way that is safe to retry."""

    retriable = True


class ValidationError(SagaError):
    """A signal payload failed schema validation at the ingress boundary."""

    def __init__(self, event_name: str, errors: list[str]):
        self.event_name = event_name
        self.errors = errors
        super().__init__(
            f"Invalid payload for '{event_name}': " + "; ".join(errors)
        )


class IllegalTransition(SagaError):
    """Attempted stage regression or status change out of a terminal state."""


class WorkflowNotFound(SagaError, KeyError):
    """No workflow instance with the given id."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow not found: {workflow_id}")

    def __str__(self) -> str:
        return f"Workflow not found: {self.workflow_id}"


class WaitPending(Exception):
    """
    Suspension signal. The instance parks at a wait step until a matching
    event is signalled or the timer sweep finds the deadline has passed.
    """

    def __init__(self, step_id: str, events: list[str], deadline: float,
                 details: dict[str, Any] | None = None):
        self.step_id = step_id
        self.events = events
        self.deadline = deadline
        self.details = details or {}
        super().__init__(
            f"Waiting at '{step_id}' for {', '.join(events)} until {deadline:.0f}"
        )
