"""
Onboarding Saga — Domain Type Definitions

Workflow instances, the append-only event log, feedback logs, approvals
and applicants.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any


# ─── Instance Lifecycle ─────────────────────────────────────────────

class WorkflowStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    AWAITING_HUMAN = "awaiting_human"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    TERMINATED = "terminated"


TERMINAL_STATUSES = {
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.TIMEOUT,
    WorkflowStatus.TERMINATED,
}

_ACTIVE = {
    WorkflowStatus.PROCESSING,
    WorkflowStatus.AWAITING_HUMAN,
    WorkflowStatus.COMPLETED,
    WorkflowStatus.FAILED,
    WorkflowStatus.TIMEOUT,
}

# Normal progression only. TERMINATED is reachable solely through the
# kill switch write path.
VALID_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.PENDING: _ACTIVE,
    WorkflowStatus.PROCESSING: _ACTIVE,
    WorkflowStatus.AWAITING_HUMAN: _ACTIVE,
    WorkflowStatus.COMPLETED: set(),
    WorkflowStatus.FAILED: set(),
    WorkflowStatus.TIMEOUT: set(),
    WorkflowStatus.TERMINATED: set(),
}


class Stage(int, enum.Enum):
    LEAD_CAPTURE = 1
    FACILITY_AND_QUOTE = 2
    PROCUREMENT_AND_AI = 3
    RISK_REVIEW = 4
    CONTRACT = 5
    FINAL_APPROVAL = 6


STAGE_NAMES = {
    Stage.LEAD_CAPTURE: "Lead Capture & ITC",
    Stage.FACILITY_AND_QUOTE: "Facility & Quote",
    Stage.PROCUREMENT_AND_AI: "Procurement & AI",
    Stage.RISK_REVIEW: "Risk Review",
    Stage.CONTRACT: "Contract",
    Stage.FINAL_APPROVAL: "Final Approval",
}


class ActorType(str, enum.Enum):
    SYSTEM = "system"
    USER = "user"
    AGENT = "agent"
    PLATFORM = "platform"


class ApprovalRole(str, enum.Enum):
    RISK_MANAGER = "risk_manager"
    ACCOUNT_MANAGER = "account_manager"


APPROVAL_EVENTS = {
    ApprovalRole.RISK_MANAGER: "approval/risk-manager.received",
    ApprovalRole.ACCOUNT_MANAGER: "approval/account-manager.received",
}

MAX_MANDATE_RETRIES = 8


@dataclass
class WorkflowInstance:
    """
    One onboarding saga. Written by the orchestrator's progression path
    and by the kill switch, both as transactional read-modify-write.
    """
    workflow_id: str
    applicant_id: str
    stage: int
    status: WorkflowStatus
    started_at: float
    updated_at: float

    mandate_retry_count: int = 0
    risk_manager_approval: dict[str, Any] | None = None
    account_manager_approval: dict[str, Any] | None = None
    termination_reason: str | None = None
    halt_reason: str | None = None

    # Snapshot of the stage-3 automated recommendation
    ai_outcome: str | None = None
    ai_confidence: float | None = None

    version: int = 0

    @staticmethod
    def create(applicant_id: str, now: float | None = None) -> WorkflowInstance:
        ts = time.time() if now is None else now
        return WorkflowInstance(
            workflow_id=f"wf_{uuid.uuid4().hex[:12]}",
            applicant_id=str(applicant_id),
            stage=Stage.LEAD_CAPTURE.value,
            status=WorkflowStatus.PENDING,
            started_at=ts,
            updated_at=ts,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def approvals(self) -> dict[str, Any]:
        return {
            ApprovalRole.RISK_MANAGER.value: self.risk_manager_approval,
            ApprovalRole.ACCOUNT_MANAGER.value: self.account_manager_approval,
        }

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class WorkflowEvent:
    """Append-only audit entry. No update or delete path exists."""
    workflow_id: str
    sequence: int
    event_type: str
    payload: dict[str, Any]
    actor_type: str
    actor_id: str
    timestamp: float
    event_hash: str = ""
    previous_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FeedbackLog:
    """One row per human decision. Insert-only."""
    workflow_id: str
    applicant_id: str
    ai_outcome: str
    ai_confidence: float | None
    human_outcome: str
    override_category: str
    decided_by: str
    is_divergent: bool
    divergence_weight: int
    divergence_type: str | None
    decision_ref: str
    ai_check_type: str = "aggregated"
    override_subcategory: str | None = None
    override_details: str | None = None
    created_at: float = field(default_factory=time.time)
    feedback_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Applicant:
    """Applicant attributes read by the stage steps."""
    applicant_id: str
    company_name: str = ""
    contact_name: str = ""
    email: str = ""
    risk_level: str = "green"          # green | amber | red
    product_type: str = "standard"
    entity_type: str = ""
    industry: str = ""
    attributes: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(applicant_id: str, data: dict[str, Any] | None) -> Applicant:
        data = dict(data or {})
        data.pop("applicant_id", None)
        known = {
            k: data.pop(k) for k in (
                "company_name", "contact_name", "email", "risk_level",
                "product_type", "entity_type", "industry",
            ) if k in data
        }
        extra = data.pop("attributes", {}) or {}
        extra.update(data)
        return Applicant(applicant_id=str(applicant_id), attributes=extra, **known)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
