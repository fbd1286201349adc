"""
Onboarding Saga — Durable Step Executor

A saga function is re-executed from the top every time its instance is
driven (start, signal, timer sweep, restart). Side effects live only
inside named steps; each step id is journaled once, so a replay gets the
stored result back instead of running the step again.

Two primitives:

  run(step_id, fn)
      Execute fn once per (workflow_id, step_id). Transient failures are
      retried per RetryPolicy. The JSON-normalized result is journaled and
      returned; replays return the journaled value.

  wait_for_event(step_id, event, timeout) / wait_for_any(step_id, events, timeout)
      Resolve to the first matching inbox event, or None once the deadline
      recorded on first arrival has passed. Never raises on timeout.
      Otherwise raises WaitPending and the instance suspends: no thread is
      held and nothing polls. The instance is driven again only when a
      matching signal arrives or the timer sweep finds the deadline passed.

The journal is an abstract StepJournal; onboarding.store.OnboardingStore
is the SQLite implementation.
"""

from __future__ import annotations

import abc
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from saga.cancellation import CancellationToken
from saga.errors import TerminatedError, WaitPending
from saga.logging import SagaLogger
from saga.retry import RetryPolicy, call_with_retry

logger = logging.getLogger("saga.steps")


class StepStatus:
    COMPLETED = "completed"
    WAITING = "waiting"
    CANCELLED = "cancelled"


@dataclass
class Event:
    """A signal delivered to a workflow instance."""
    name: str
    payload: dict[str, Any]
    workflow_id: str
    received_at: float
    event_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "payload": self.payload,
            "workflow_id": self.workflow_id,
            "received_at": self.received_at,
            "event_id": self.event_id,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Event:
        return Event(
            name=d["name"],
            payload=d.get("payload", {}),
            workflow_id=d["workflow_id"],
            received_at=d.get("received_at", 0.0),
            event_id=d.get("event_id", 0),
        )


@dataclass
class StepRecord:
    """Journal entry for one named step of one instance."""
    workflow_id: str
    step_id: str
    status: str
    result: Any = None
    events: list[str] = field(default_factory=list)
    deadline: float | None = None
    created_at: float = 0.0
    completed_at: float | None = None


class StepJournal(abc.ABC):
    """Durable storage for step results, pending waits and the event inbox."""

    @abc.abstractmethod
    def get_step(self, workflow_id: str, step_id: str) -> StepRecord | None: ...

    @abc.abstractmethod
    def complete_step(self, workflow_id: str, step_id: str, result: Any) -> None:
        """Journal a completed run() step."""

    @abc.abstractmethod
    def open_wait(
        self, workflow_id: str, step_id: str, events: list[str], deadline: float,
    ) -> StepRecord:
        """Create a waiting record if absent; return the stored record."""

    @abc.abstractmethod
    def claim_event(
        self, workflow_id: str, step_id: str, events: list[str],
    ) -> Event | None:
        """
        Atomically consume the oldest unconsumed inbox event named in
        `events` and complete the waiting step with it. Returns None if
        there is no such event or the step is no longer waiting.
        """

    @abc.abstractmethod
    def expire_wait(self, workflow_id: str, step_id: str) -> bool:
        """Complete a waiting step with no event. False if it was not waiting."""


class StepExecutor(abc.ABC):
    """Contract the stage controller is written against."""

    workflow_id: str

    @abc.abstractmethod
    def run(self, step_id: str, fn: Callable[[], Any]) -> Any: ...

    @abc.abstractmethod
    def wait_for_any(
        self, step_id: str, events: list[str], timeout: float, match: str | None = None,
    ) -> Event | None: ...

    def wait_for_event(
        self, step_id: str, event: str, timeout: float, match: str | None = None,
    ) -> Event | None:
        return self.wait_for_any(step_id, [event], timeout, match)

    @abc.abstractmethod
    def send_event(self, name: str, payload: dict[str, Any]) -> None:
        """Emit an outbound event. Call inside run() so replays do not resend."""

    @abc.abstractmethod
    def now(self) -> float: ...


EventSinkFn = Callable[[str, dict], None]


def _normalize(result: Any) -> Any:
    """Round-trip through JSON so first runs and replays see the same shape."""
    return json.loads(json.dumps(result, default=str))


class DurableStepExecutor(StepExecutor):
    """Journal-backed executor for one drive of one workflow instance."""

    def __init__(
        self,
        journal: StepJournal,
        workflow_id: str,
        clock: Callable[[], float] = time.time,
        token: CancellationToken | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        slog: SagaLogger | None = None,
        event_sink: EventSinkFn | None = None,
    ):
        self.journal = journal
        self.workflow_id = workflow_id
        self.clock = clock
        self.token = token
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep_fn = sleep_fn
        self.slog = slog or SagaLogger(workflow_id)
        self.event_sink = event_sink
        self.steps_executed: list[str] = []

    def now(self) -> float:
        return self.clock()

    def send_event(self, name: str, payload: dict[str, Any]) -> None:
        if self.event_sink is None:
            logger.debug("No event sink; dropping %s for %s", name, self.workflow_id)
            return
        self.event_sink(name, {"workflow_id": self.workflow_id, **payload})

    def _check_cancelled(self, step_id: str):
        if self.token is not None and self.token.cancelled:
            raise TerminatedError(self.workflow_id, step_id, self.token.reason)

    def run(self, step_id: str, fn: Callable[[], Any]) -> Any:
        rec = self.journal.get_step(self.workflow_id, step_id)
        if rec is not None:
            if rec.status == StepStatus.COMPLETED:
                self.slog.on_step_complete(step_id, replayed=True)
                return rec.result
            raise RuntimeError(
                f"Step id '{step_id}' is journaled as a {rec.status} wait, not a run step"
            )

        self._check_cancelled(step_id)
        result = _normalize(call_with_retry(
            fn, self.retry_policy, step_name=step_id, sleep_fn=self.sleep_fn,
        ))
        self.journal.complete_step(self.workflow_id, step_id, result)
        self.steps_executed.append(step_id)
        self.slog.on_step_complete(step_id)
        return result

    def wait_for_any(
        self, step_id: str, events: list[str], timeout: float, match: str | None = None,
    ) -> Event | None:
        key = match or self.workflow_id
        rec = self.journal.get_step(key, step_id)

        if rec is not None and rec.status == StepStatus.COMPLETED:
            return Event.from_dict(rec.result) if rec.result else None
        if rec is not None and rec.status == StepStatus.CANCELLED:
            raise TerminatedError(self.workflow_id, step_id, "wait cancelled by kill switch")

        if rec is None:
            self._check_cancelled(step_id)
            rec = self.journal.open_wait(key, step_id, list(events), self.clock() + timeout)
        deadline = rec.deadline if rec.deadline is not None else self.clock() + timeout

        event = self.journal.claim_event(key, step_id, list(events))
        if event is not None:
            self.slog.on_wait_resolved(step_id, event.name)
            return event

        if self.clock() >= deadline:
            if self.journal.expire_wait(key, step_id):
                self.slog.on_wait_resolved(step_id, None)
                return None

        # Either still within the window, or the step left WAITING under us.
        current = self.journal.get_step(key, step_id)
        if current is not None and current.status == StepStatus.CANCELLED:
            raise TerminatedError(self.workflow_id, step_id, "wait cancelled by kill switch")
        if current is not None and current.status == StepStatus.COMPLETED:
            return Event.from_dict(current.result) if current.result else None
        self._check_cancelled(step_id)

        self.slog.on_wait_suspended(step_id, list(events), deadline)
        raise WaitPending(step_id, list(events), deadline)
