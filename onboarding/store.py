"""
Onboarding Saga — State Store

SQLite-backed persistence for workflow instances, the hash-chained event
log, the step journal, the signal inbox, feedback logs, kill switch
records and applicants. Supports replay/resume across process restarts.

The instance row has exactly two writers:
  transition()  normal progression (orchestrator)
  terminate()   kill switch
Both are read-modify-write inside BEGIN IMMEDIATE with a version bump, and
both append exactly one WorkflowEvent in the same transaction.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable

from onboarding.types import (
    ActorType,
    ApprovalRole,
    FeedbackLog,
    MAX_MANDATE_RETRIES,
    VALID_TRANSITIONS,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowStatus,
)
from saga.audit import GENESIS_HASH, compute_event_hash, verify_chain
from saga.errors import IllegalTransition, TerminatedError, WorkflowNotFound
from saga.kill_switch import KillSwitchRecord, KillSwitchStore, termination_reason
from saga.steps import Event, StepJournal, StepRecord, StepStatus

logger = logging.getLogger("saga.store")


class _Transaction:
    """
    SQLite transaction context manager.

    Holds the store lock for its whole extent. Nested use on the same
    thread joins the outer transaction; only the outermost block commits.
    """
    def __init__(self, conn, store):
        self.conn = conn
        self.store = store
        self._outer = False

    def __enter__(self):
        self.store._lock.acquire()
        self._outer = not self.store._in_transaction
        if self._outer:
            self.conn.execute("BEGIN IMMEDIATE")
            self.store._in_transaction = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if self._outer:
                self.store._in_transaction = False
                if exc_type is None:
                    self.conn.commit()
                else:
                    self.conn.rollback()
        finally:
            self.store._lock.release()
        return False


class OnboardingStore(StepJournal, KillSwitchStore):
    """SQLite-backed store for onboarding saga state."""

    def __init__(
        self,
        db_path: str | Path = "onboarding.db",
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = str(db_path)
        self.clock = clock
        # Stage 3 streams journal steps from pool threads.
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.RLock()
        self._in_transaction = False
        self._create_tables()

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self._in_transaction:
            self.conn.commit()

    def transaction(self):
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                inst = store.get_workflow(wf_id)
                ...
                # committed atomically, or rolled back
        """
        return _Transaction(self.conn, self)

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS workflows (
                    workflow_id TEXT PRIMARY KEY,
                    applicant_id TEXT NOT NULL,
                    stage INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL DEFAULT 'pending',
                    started_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    mandate_retry_count INTEGER NOT NULL DEFAULT 0,
                    risk_manager_approval TEXT,
                    account_manager_approval TEXT,
                    termination_reason TEXT,
                    halt_reason TEXT,
                    ai_outcome TEXT,
                    ai_confidence REAL,
                    version INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS workflow_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    actor_type TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    event_hash TEXT NOT NULL,
                    previous_hash TEXT NOT NULL,
                    UNIQUE(workflow_id, sequence)
                );

                CREATE TABLE IF NOT EXISTS steps (
                    workflow_id TEXT NOT NULL,
                    step_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    result TEXT,
                    event_names TEXT DEFAULT '[]',
                    deadline REAL,
                    created_at REAL NOT NULL,
                    completed_at REAL,
                    PRIMARY KEY (workflow_id, step_id)
                );

                CREATE TABLE IF NOT EXISTS inbox (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    event_name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    received_at REAL NOT NULL,
                    consumed_by_step TEXT
                );

                CREATE TABLE IF NOT EXISTS feedback_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    workflow_id TEXT NOT NULL,
                    applicant_id TEXT NOT NULL,
                    ai_outcome TEXT NOT NULL,
                    ai_confidence REAL,
                    ai_check_type TEXT NOT NULL,
                    human_outcome TEXT NOT NULL,
                    override_category TEXT NOT NULL,
                    override_subcategory TEXT,
                    override_details TEXT,
                    decided_by TEXT NOT NULL,
                    is_divergent INTEGER NOT NULL,
                    divergence_weight INTEGER NOT NULL,
                    divergence_type TEXT,
                    decision_ref TEXT NOT NULL UNIQUE,
                    created_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS kill_switch_records (
                    workflow_id TEXT PRIMARY KEY,
                    reason TEXT NOT NULL,
                    decided_by TEXT NOT NULL,
                    notes TEXT DEFAULT '',
                    terminated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS applicants (
                    applicant_id TEXT PRIMARY KEY,
                    data TEXT NOT NULL DEFAULT '{}'
                );

                CREATE INDEX IF NOT EXISTS idx_workflows_status ON workflows(status);
                CREATE INDEX IF NOT EXISTS idx_steps_waiting ON steps(status, deadline);
                CREATE INDEX IF NOT EXISTS idx_inbox_pending ON inbox(workflow_id, event_name, consumed_by_step);
                CREATE INDEX IF NOT EXISTS idx_feedback_workflow ON feedback_logs(workflow_id);
            """)
            self._commit()

    # ─── Instance Row ────────────────────────────────────────────────

    def create_workflow(self, inst: WorkflowInstance) -> WorkflowInstance:
        with self.transaction():
            self.conn.execute("""
                INSERT INTO workflows
                (workflow_id, applicant_id, stage, status, started_at, updated_at,
                 mandate_retry_count, version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                inst.workflow_id, inst.applicant_id, inst.stage, inst.status.value,
                inst.started_at, inst.updated_at, inst.mandate_retry_count, inst.version,
            ))
            self._append_event(
                inst.workflow_id, "workflow_started",
                {"applicant_id": inst.applicant_id, "stage": inst.stage},
            )
        return inst

    def get_workflow(self, workflow_id: str) -> WorkflowInstance | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM workflows WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_workflow(row)

    def require_workflow(self, workflow_id: str) -> WorkflowInstance:
        inst = self.get_workflow(workflow_id)
        if inst is None:
            raise WorkflowNotFound(workflow_id)
        return inst

    def list_workflows(
        self,
        status: WorkflowStatus | None = None,
        limit: int | None = 500,
    ) -> list[WorkflowInstance]:
        """Newest first. `limit=None` returns every match."""
        query = "SELECT * FROM workflows WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY started_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_workflow(r) for r in rows]

    def _row_to_workflow(self, row) -> WorkflowInstance:
        return WorkflowInstance(
            workflow_id=row["workflow_id"],
            applicant_id=row["applicant_id"],
            stage=row["stage"],
            status=WorkflowStatus(row["status"]),
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            mandate_retry_count=row["mandate_retry_count"],
            risk_manager_approval=json.loads(row["risk_manager_approval"])
            if row["risk_manager_approval"] else None,
            account_manager_approval=json.loads(row["account_manager_approval"])
            if row["account_manager_approval"] else None,
            termination_reason=row["termination_reason"],
            halt_reason=row["halt_reason"],
            ai_outcome=row["ai_outcome"],
            ai_confidence=row["ai_confidence"],
            version=row["version"],
        )

    def _locked_row(self, workflow_id: str, action: str) -> WorkflowInstance:
        """Read the row inside a transaction; refuse if terminated."""
        inst = self.get_workflow(workflow_id)
        if inst is None:
            raise WorkflowNotFound(workflow_id)
        if inst.status == WorkflowStatus.TERMINATED:
            raise TerminatedError(workflow_id, action, inst.termination_reason or "")
        return inst

    def _update_row(self, inst: WorkflowInstance, fields: dict[str, Any]):
        """Optimistic-locked UPDATE of selected columns plus version bump."""
        sets = ", ".join(f"{k} = ?" for k in fields)
        params = list(fields.values()) + [self.clock(), inst.workflow_id, inst.version]
        cur = self.conn.execute(
            f"UPDATE workflows SET {sets}, updated_at = ?, version = version + 1 "
            f"WHERE workflow_id = ? AND version = ?",
            params,
        )
        if cur.rowcount != 1:
            raise IllegalTransition(
                f"Concurrent modification of {inst.workflow_id} (version {inst.version})"
            )

    def transition(
        self,
        workflow_id: str,
        status: WorkflowStatus,
        stage: int | None = None,
        reason: str = "",
        actor_type: str = ActorType.SYSTEM.value,
        actor_id: str = "orchestrator",
    ) -> WorkflowInstance:
        """
        The progression write path. Rejects stage regression and any change
        once terminated. A no-op when the row already holds the target.
        """
        if status == WorkflowStatus.TERMINATED:
            raise IllegalTransition("Termination goes through the kill switch")

        with self.transaction():
            inst = self._locked_row(workflow_id, f"transition to {status.value}")
            target_stage = inst.stage if stage is None else stage

            if target_stage < inst.stage:
                raise IllegalTransition(
                    f"Stage regression {inst.stage} -> {target_stage} on {workflow_id}"
                )
            if inst.status == status and inst.stage == target_stage:
                return inst
            if status not in VALID_TRANSITIONS[inst.status]:
                raise IllegalTransition(
                    f"Invalid transition {inst.status.value} -> {status.value} on {workflow_id}"
                )

            fields: dict[str, Any] = {"status": status.value, "stage": target_stage}
            if status in (WorkflowStatus.TIMEOUT, WorkflowStatus.FAILED):
                fields["halt_reason"] = reason
            self._update_row(inst, fields)
            self._append_event(workflow_id, "stage_change", {
                "from_stage": inst.stage,
                "to_stage": target_stage,
                "from_status": inst.status.value,
                "to_status": status.value,
                "reason": reason,
            }, actor_type=actor_type, actor_id=actor_id)

        return self.require_workflow(workflow_id)

    def record_mandate_attempt(self, workflow_id: str, attempt: int, tier: str) -> WorkflowInstance:
        if not 0 <= attempt <= MAX_MANDATE_RETRIES:
            raise IllegalTransition(
                f"mandate_retry_count must be in [0, {MAX_MANDATE_RETRIES}], got {attempt}"
            )
        with self.transaction():
            inst = self._locked_row(workflow_id, f"mandate-attempt-{attempt}")
            self._update_row(inst, {"mandate_retry_count": attempt})
            self._append_event(workflow_id, "mandate_retry", {
                "retry_count": attempt,
                "max_retries": MAX_MANDATE_RETRIES,
                "tier": tier,
            })
        return self.require_workflow(workflow_id)

    def record_approval(
        self,
        workflow_id: str,
        role: ApprovalRole,
        decision: dict[str, Any],
    ) -> WorkflowInstance:
        column = (
            "risk_manager_approval" if role == ApprovalRole.RISK_MANAGER
            else "account_manager_approval"
        )
        with self.transaction():
            inst = self._locked_row(workflow_id, f"persist-{role.value}-approval")
            self._update_row(inst, {column: json.dumps(decision)})
            self._append_event(
                workflow_id, "approval_recorded", {"role": role.value, **decision},
                actor_type=ActorType.USER.value,
                actor_id=str(decision.get("decided_by", "")),
            )
        return self.require_workflow(workflow_id)

    def record_ai_snapshot(
        self,
        workflow_id: str,
        outcome: str,
        confidence: float | None,
        flags: list[str] | None = None,
    ) -> WorkflowInstance:
        with self.transaction():
            inst = self._locked_row(workflow_id, "run-ai-analysis")
            self._update_row(inst, {"ai_outcome": outcome, "ai_confidence": confidence})
            self._append_event(workflow_id, "ai_analysis_completed", {
                "recommendation": outcome,
                "confidence": confidence,
                "flags": flags or [],
            }, actor_type=ActorType.AGENT.value, actor_id="risk_analyzer")
        return self.require_workflow(workflow_id)

    # ─── Kill Switch Write Path ──────────────────────────────────────

    def is_terminated(self, workflow_id: str) -> bool:
        with self._lock:
            row = self.conn.execute(
                "SELECT status FROM workflows WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        if not row:
            raise WorkflowNotFound(workflow_id)
        return row["status"] == WorkflowStatus.TERMINATED.value

    def terminate(
        self,
        workflow_id: str,
        reason: str,
        decided_by: str,
        notes: str,
        terminated_at: float,
    ) -> tuple[KillSwitchRecord, bool] | None:
        with self.transaction():
            inst = self.get_workflow(workflow_id)
            if inst is None:
                raise WorkflowNotFound(workflow_id)
            if inst.status == WorkflowStatus.TERMINATED:
                existing = self.get_kill_switch_record(workflow_id)
                if existing is not None:
                    return existing, False
            if inst.status == WorkflowStatus.COMPLETED:
                return None

            self._update_row(inst, {
                "status": WorkflowStatus.TERMINATED.value,
                "termination_reason": termination_reason(reason, notes),
            })
            self.conn.execute("""
                INSERT INTO kill_switch_records
                (workflow_id, reason, decided_by, notes, terminated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (workflow_id, reason, decided_by, notes, terminated_at))
            actor = ActorType.SYSTEM if decided_by.startswith("system") else ActorType.USER
            self._append_event(workflow_id, "kill_switch_executed", {
                "reason": reason,
                "decided_by": decided_by,
                "notes": notes,
                "from_status": inst.status.value,
                "stage": inst.stage,
            }, actor_type=actor.value, actor_id=decided_by)

        return KillSwitchRecord(workflow_id, reason, decided_by, notes, terminated_at), True

    def get_kill_switch_record(self, workflow_id: str) -> KillSwitchRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM kill_switch_records WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        if not row:
            return None
        return KillSwitchRecord(
            workflow_id=row["workflow_id"],
            reason=row["reason"],
            decided_by=row["decided_by"],
            notes=row["notes"],
            terminated_at=row["terminated_at"],
        )

    def count_kill_switch_records(self, workflow_id: str) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM kill_switch_records WHERE workflow_id = ?", (workflow_id,)
            ).fetchone()
        return row[0]

    def cancel_waits(self, workflow_id: str) -> int:
        """Mark every outstanding wait of an instance cancelled."""
        with self.transaction():
            cur = self.conn.execute(
                "UPDATE steps SET status = ?, completed_at = ? "
                "WHERE workflow_id = ? AND status = ?",
                (StepStatus.CANCELLED, self.clock(), workflow_id, StepStatus.WAITING),
            )
        return cur.rowcount

    # ─── Event Log ───────────────────────────────────────────────────

    def _append_event(
        self,
        workflow_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor_type: str = ActorType.SYSTEM.value,
        actor_id: str = "orchestrator",
    ) -> WorkflowEvent:
        last = self.conn.execute(
            "SELECT sequence, event_hash FROM workflow_events "
            "WHERE workflow_id = ? ORDER BY sequence DESC LIMIT 1",
            (workflow_id,),
        ).fetchone()
        sequence = (last["sequence"] + 1) if last else 1
        previous_hash = last["event_hash"] if last else GENESIS_HASH
        ts = self.clock()
        payload_json = json.dumps(payload, sort_keys=True, default=str)
        event_hash = compute_event_hash(
            previous_hash, workflow_id, sequence, event_type,
            actor_type, actor_id, ts, payload_json,
        )
        self.conn.execute("""
            INSERT INTO workflow_events
            (workflow_id, sequence, event_type, payload, actor_type, actor_id,
             timestamp, event_hash, previous_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            workflow_id, sequence, event_type, payload_json, actor_type, actor_id,
            ts, event_hash, previous_hash,
        ))
        return WorkflowEvent(
            workflow_id=workflow_id, sequence=sequence, event_type=event_type,
            payload=json.loads(payload_json), actor_type=actor_type, actor_id=actor_id,
            timestamp=ts, event_hash=event_hash, previous_hash=previous_hash,
        )

    def append_event(
        self,
        workflow_id: str,
        event_type: str,
        payload: dict[str, Any] | None = None,
        actor_type: str = ActorType.SYSTEM.value,
        actor_id: str = "orchestrator",
    ) -> WorkflowEvent:
        """Append a non-transition audit entry (checks, notifications, emits)."""
        with self.transaction():
            return self._append_event(workflow_id, event_type, payload or {}, actor_type, actor_id)

    def get_events(self, workflow_id: str, event_type: str | None = None) -> list[WorkflowEvent]:
        query = "SELECT * FROM workflow_events WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if event_type:
            query += " AND event_type = ?"
            params.append(event_type)
        query += " ORDER BY sequence ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            WorkflowEvent(
                workflow_id=r["workflow_id"],
                sequence=r["sequence"],
                event_type=r["event_type"],
                payload=json.loads(r["payload"]),
                actor_type=r["actor_type"],
                actor_id=r["actor_id"],
                timestamp=r["timestamp"],
                event_hash=r["event_hash"],
                previous_hash=r["previous_hash"],
            )
            for r in rows
        ]

    def verify_events(self, workflow_id: str) -> tuple[bool, str]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM workflow_events WHERE workflow_id = ? ORDER BY sequence ASC",
                (workflow_id,),
            ).fetchall()
        return verify_chain(dict(r) for r in rows)

    # ─── Step Journal ────────────────────────────────────────────────

    def _row_to_step(self, row) -> StepRecord:
        return StepRecord(
            workflow_id=row["workflow_id"],
            step_id=row["step_id"],
            status=row["status"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            events=json.loads(row["event_names"] or "[]"),
            deadline=row["deadline"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    def get_step(self, workflow_id: str, step_id: str) -> StepRecord | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM steps WHERE workflow_id = ? AND step_id = ?",
                (workflow_id, step_id),
            ).fetchone()
        return self._row_to_step(row) if row else None

    def complete_step(self, workflow_id: str, step_id: str, result: Any) -> None:
        now = self.clock()
        with self.transaction():
            self.conn.execute("""
                INSERT OR IGNORE INTO steps
                (workflow_id, step_id, status, result, created_at, completed_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (workflow_id, step_id, StepStatus.COMPLETED, json.dumps(result), now, now))

    def open_wait(
        self, workflow_id: str, step_id: str, events: list[str], deadline: float,
    ) -> StepRecord:
        with self.transaction():
            self.conn.execute("""
                INSERT OR IGNORE INTO steps
                (workflow_id, step_id, status, event_names, deadline, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                workflow_id, step_id, StepStatus.WAITING, json.dumps(events),
                deadline, self.clock(),
            ))
            rec = self.get_step(workflow_id, step_id)
        return rec

    def claim_event(
        self, workflow_id: str, step_id: str, events: list[str],
    ) -> Event | None:
        if not events:
            return None
        placeholders = ", ".join("?" for _ in events)
        with self.transaction():
            step = self.get_step(workflow_id, step_id)
            if step is None or step.status != StepStatus.WAITING:
                return None
            row = self.conn.execute(
                f"SELECT * FROM inbox WHERE workflow_id = ? AND consumed_by_step IS NULL "
                f"AND event_name IN ({placeholders}) ORDER BY id ASC LIMIT 1",
                [workflow_id, *events],
            ).fetchone()
            if row is None:
                return None
            event = Event(
                name=row["event_name"],
                payload=json.loads(row["payload"]),
                workflow_id=row["workflow_id"],
                received_at=row["received_at"],
                event_id=row["id"],
            )
            self.conn.execute(
                "UPDATE inbox SET consumed_by_step = ? WHERE id = ?", (step_id, row["id"]),
            )
            self.conn.execute(
                "UPDATE steps SET status = ?, result = ?, completed_at = ? "
                "WHERE workflow_id = ? AND step_id = ?",
                (StepStatus.COMPLETED, json.dumps(event.to_dict()), self.clock(),
                 workflow_id, step_id),
            )
        return event

    def expire_wait(self, workflow_id: str, step_id: str) -> bool:
        with self.transaction():
            cur = self.conn.execute(
                "UPDATE steps SET status = ?, result = NULL, completed_at = ? "
                "WHERE workflow_id = ? AND step_id = ? AND status = ?",
                (StepStatus.COMPLETED, self.clock(), workflow_id, step_id, StepStatus.WAITING),
            )
        return cur.rowcount == 1

    def pending_waits(self, workflow_id: str) -> list[StepRecord]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM steps WHERE workflow_id = ? AND status = ? ORDER BY created_at",
                (workflow_id, StepStatus.WAITING),
            ).fetchall()
        return [self._row_to_step(r) for r in rows]

    def due_workflows(self, now: float) -> list[str]:
        """Non-terminal instances with a wait whose deadline has passed."""
        with self._lock:
            rows = self.conn.execute("""
                SELECT DISTINCT s.workflow_id FROM steps s
                JOIN workflows w ON w.workflow_id = s.workflow_id
                WHERE s.status = ? AND s.deadline <= ?
                  AND w.status IN (?, ?, ?)
                ORDER BY s.deadline ASC
            """, (
                StepStatus.WAITING, now,
                WorkflowStatus.PENDING.value, WorkflowStatus.PROCESSING.value,
                WorkflowStatus.AWAITING_HUMAN.value,
            )).fetchall()
        return [r["workflow_id"] for r in rows]

    # ─── Inbox ───────────────────────────────────────────────────────

    def add_inbox_event(self, workflow_id: str, event_name: str, payload: dict[str, Any]) -> int:
        with self.transaction():
            cur = self.conn.execute("""
                INSERT INTO inbox (workflow_id, event_name, payload, received_at)
                VALUES (?, ?, ?, ?)
            """, (workflow_id, event_name, json.dumps(payload, default=str), self.clock()))
        return cur.lastrowid

    def list_inbox(self, workflow_id: str, unconsumed_only: bool = False) -> list[dict[str, Any]]:
        query = "SELECT * FROM inbox WHERE workflow_id = ?"
        if unconsumed_only:
            query += " AND consumed_by_step IS NULL"
        query += " ORDER BY id ASC"
        with self._lock:
            rows = self.conn.execute(query, (workflow_id,)).fetchall()
        return [
            {**dict(r), "payload": json.loads(r["payload"])}
            for r in rows
        ]

    # ─── Feedback Logs ───────────────────────────────────────────────

    def save_feedback(self, log: FeedbackLog) -> tuple[FeedbackLog, bool]:
        """
        Insert a feedback log. A repeat decision_ref returns the stored row
        and False instead of inserting twice.
        """
        with self.transaction():
            existing = self.get_feedback_by_ref(log.decision_ref)
            if existing is not None:
                return existing, False
            cur = self.conn.execute("""
                INSERT INTO feedback_logs
                (workflow_id, applicant_id, ai_outcome, ai_confidence, ai_check_type,
                 human_outcome, override_category, override_subcategory, override_details,
                 decided_by, is_divergent, divergence_weight, divergence_type,
                 decision_ref, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                log.workflow_id, log.applicant_id, log.ai_outcome, log.ai_confidence,
                log.ai_check_type, log.human_outcome, log.override_category,
                log.override_subcategory, log.override_details, log.decided_by,
                int(log.is_divergent), log.divergence_weight, log.divergence_type,
                log.decision_ref, log.created_at,
            ))
            log.feedback_id = cur.lastrowid
            self._append_event(log.workflow_id, "feedback_recorded", {
                "feedback_id": log.feedback_id,
                "human_outcome": log.human_outcome,
                "override_category": log.override_category,
                "is_divergent": log.is_divergent,
                "divergence_weight": log.divergence_weight,
                "divergence_type": log.divergence_type,
            }, actor_type=ActorType.USER.value, actor_id=log.decided_by)
        return log, True

    def _row_to_feedback(self, row) -> FeedbackLog:
        return FeedbackLog(
            workflow_id=row["workflow_id"],
            applicant_id=row["applicant_id"],
            ai_outcome=row["ai_outcome"],
            ai_confidence=row["ai_confidence"],
            ai_check_type=row["ai_check_type"],
            human_outcome=row["human_outcome"],
            override_category=row["override_category"],
            override_subcategory=row["override_subcategory"],
            override_details=row["override_details"],
            decided_by=row["decided_by"],
            is_divergent=bool(row["is_divergent"]),
            divergence_weight=row["divergence_weight"],
            divergence_type=row["divergence_type"],
            decision_ref=row["decision_ref"],
            created_at=row["created_at"],
            feedback_id=row["id"],
        )

    def get_feedback_by_ref(self, decision_ref: str) -> FeedbackLog | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM feedback_logs WHERE decision_ref = ?", (decision_ref,)
            ).fetchone()
        return self._row_to_feedback(row) if row else None

    def get_feedback(self, workflow_id: str) -> list[FeedbackLog]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM feedback_logs WHERE workflow_id = ? ORDER BY id", (workflow_id,)
            ).fetchall()
        return [self._row_to_feedback(r) for r in rows]

    # ─── Applicants ──────────────────────────────────────────────────

    def save_applicant(self, applicant_id: str, data: dict[str, Any]):
        with self.transaction():
            self.conn.execute(
                "INSERT OR REPLACE INTO applicants (applicant_id, data) VALUES (?, ?)",
                (str(applicant_id), json.dumps(data, default=str)),
            )

    def get_applicant(self, applicant_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT data FROM applicants WHERE applicant_id = ?", (str(applicant_id),)
            ).fetchone()
        return json.loads(row["data"]) if row else None

    # ─── Housekeeping ────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        with self._lock:
            by_status = {
                r["status"]: r["n"] for r in self.conn.execute(
                    "SELECT status, COUNT(*) AS n FROM workflows GROUP BY status"
                ).fetchall()
            }
            waiting = self.conn.execute(
                "SELECT COUNT(*) FROM steps WHERE status = ?", (StepStatus.WAITING,)
            ).fetchone()[0]
            events = self.conn.execute("SELECT COUNT(*) FROM workflow_events").fetchone()[0]
        return {"workflows": by_status, "pending_waits": waiting, "events": events}

    def close(self):
        with self._lock:
            self.conn.close()
