"""
Onboarding Saga — Structured Logging

JSON log lines for every saga event, keyed by workflow id so a single
onboarding can be reconstructed from the log stream across weeks of
suspensions and restarts.

Usage:
    from saga.logging import SagaLogger, configure_logging

    configure_logging(level="INFO")
    slog = SagaLogger(workflow_id="wf_abc123", applicant_id="42")
    slog.on_stage_transition(2, "awaiting_human")
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any


class JSONFormatter(logging.Formatter):
    """Formats log records as single JSON lines."""

    def __init__(self, service_name: str = "onboarding_saga"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("SAGA_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "onboarding_saga",
) -> logging.Logger:
    """
    Configure the `saga` logger tree with JSON output.

    Child loggers (saga.kill_switch, saga.steps, ...) are reset to inherit
    from the root so reconfiguring in tests does not duplicate lines.
    """
    logger = logging.getLogger("saga")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith("saga."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the saga namespace."""
    if name:
        return logging.getLogger(f"saga.{name}")
    return logging.getLogger("saga")


class SagaLogger:
    """
    Structured event logger for one workflow instance.

    Every entry carries workflow_id and applicant_id; the workflow id is
    the correlation key used by the event log and the audit chain.
    """

    def __init__(self, workflow_id: str, applicant_id: str = ""):
        self.workflow_id = workflow_id
        self.applicant_id = applicant_id
        self._logger = get_logger("trace")

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {
            "workflow_id": self.workflow_id,
            "applicant_id": self.applicant_id,
            "action": action,
            **fields,
        }
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    def on_workflow_start(self) -> None:
        self._emit(logging.INFO, "workflow_start")

    def on_step_complete(self, step_id: str, replayed: bool = False) -> None:
        # Replays are noisy on long sagas; keep them at DEBUG.
        self._emit(
            logging.DEBUG if replayed else logging.INFO, "step_complete",
            step_id=step_id, replayed=replayed,
        )

    def on_wait_suspended(self, step_id: str, events: list[str], deadline: float) -> None:
        self._emit(
            logging.INFO, "wait_suspended",
            step_id=step_id, events=events, deadline=deadline,
        )

    def on_wait_resolved(self, step_id: str, event_name: str | None) -> None:
        self._emit(
            logging.INFO, "wait_resolved",
            step_id=step_id, event_name=event_name, timed_out=event_name is None,
        )

    def on_stage_transition(self, stage: int, status: str) -> None:
        self._emit(logging.INFO, "stage_transition", stage=stage, status=status)

    def on_escalation(self, attempt: int, tier: str) -> None:
        self._emit(logging.WARNING, "escalation", attempt=attempt, tier=tier)

    def on_kill_switch(self, reason: str, decided_by: str) -> None:
        self._emit(logging.WARNING, "kill_switch", reason=reason, decided_by=decided_by)

    def on_workflow_end(self, status: str, stage: int, reason: str = "") -> None:
        self._emit(
            logging.INFO, "workflow_end",
            status=status, stage=stage, reason=reason[:500],
        )
