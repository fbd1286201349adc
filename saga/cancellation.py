"""
Onboarding Saga — Cancellation Broadcast

Push-based cancellation scoped to a workflow id. The kill switch publishes
once; every subscriber for that workflow (and every global subscriber) is
called synchronously, so an outstanding wait is interrupted at the moment
of termination rather than discovered at the next guard check.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("saga.cancellation")

CancelCallback = Callable[[str, dict[str, Any]], None]


@dataclass
class CancellationToken:
    """In-memory cancellation flag for one running replay of an instance."""
    workflow_id: str
    _event: threading.Event = field(default_factory=threading.Event)
    reason: str = ""

    def cancel(self, reason: str = ""):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CancellationChannel:
    """Thread-safe per-workflow publish/subscribe channel."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[CancelCallback]] = defaultdict(list)
        self._global: list[CancelCallback] = []
        self._tokens: dict[str, list[CancellationToken]] = defaultdict(list)

    def subscribe(self, workflow_id: str, callback: CancelCallback) -> Callable[[], None]:
        """Subscribe to one workflow. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers[workflow_id].append(callback)

        def _unsubscribe():
            with self._lock:
                subs = self._subscribers.get(workflow_id, [])
                if callback in subs:
                    subs.remove(callback)
                if not subs:
                    self._subscribers.pop(workflow_id, None)
        return _unsubscribe

    def subscribe_all(self, callback: CancelCallback):
        with self._lock:
            self._global.append(callback)

    def token(self, workflow_id: str) -> CancellationToken:
        """Issue a token that is tripped when the workflow is cancelled."""
        tok = CancellationToken(workflow_id=workflow_id)
        with self._lock:
            self._tokens[workflow_id].append(tok)
        return tok

    def release(self, token: CancellationToken):
        with self._lock:
            toks = self._tokens.get(token.workflow_id, [])
            if token in toks:
                toks.remove(token)
            if not toks:
                self._tokens.pop(token.workflow_id, None)

    def publish(self, workflow_id: str, details: dict[str, Any] | None = None) -> int:
        """
        Broadcast cancellation for workflow_id. Returns the number of
        callbacks and tokens notified.
        """
        details = details or {}
        with self._lock:
            callbacks = list(self._global) + list(self._subscribers.get(workflow_id, []))
            tokens = list(self._tokens.get(workflow_id, []))

        reason = str(details.get("reason", ""))
        for tok in tokens:
            tok.cancel(reason)
        for cb in callbacks:
            cb(workflow_id, details)

        logger.info(
            "Cancellation broadcast for %s (%d subscribers, %d tokens)",
            workflow_id, len(callbacks), len(tokens),
        )
        return len(callbacks) + len(tokens)
