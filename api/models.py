"""
Onboarding Saga — API Models

Request/response dataclasses for the API server.
No FastAPI dependency — used by server, CLI-adjacent tooling and tests.

Signal payloads are not modelled here: they are validated by the pydantic
schemas in onboarding.events at the orchestrator boundary.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any

from saga.divergence import validate_override
from saga.kill_switch import KillSwitchReason


@dataclass
class WorkflowStart:
    """POST /v1/workflows request body."""
    applicant_id: str
    applicant: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> list[str]:
        """Return list of validation errors (empty = valid)."""
        errors = []
        if not self.applicant_id or not isinstance(self.applicant_id, str):
            errors.append("applicant_id is required and must be a string")
        if not isinstance(self.applicant, dict):
            errors.append("applicant must be an object")
        elif self.applicant.get("risk_level") not in (None, "green", "amber", "red"):
            errors.append("applicant.risk_level must be one of green, amber, red")
        return errors


@dataclass
class WorkflowStarted:
    """POST /v1/workflows response."""
    workflow_id: str
    applicant_id: str
    status: str
    stage: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KillRequest:
    """POST /v1/workflows/{id}/kill body."""
    decided_by: str
    reason: str = KillSwitchReason.MANUAL_TERMINATION.value
    notes: str = ""

    def validate(self) -> list[str]:
        errors = []
        if not self.decided_by or not isinstance(self.decided_by, str):
            errors.append("decided_by is required and must be a string")
        if self.reason not in {r.value for r in KillSwitchReason}:
            errors.append(f"reason must be one of {', '.join(r.value for r in KillSwitchReason)}")
        return errors


@dataclass
class FeedbackRequest:
    """POST /v1/workflows/{id}/feedback body."""
    human_outcome: str
    override_category: str
    decided_by: str
    override_subcategory: str | None = None
    override_details: str | None = None
    decision_ref: str | None = None

    def validate(self) -> list[str]:
        errors = []
        if not self.human_outcome or not isinstance(self.human_outcome, str):
            errors.append("human_outcome is required and must be a string")
        if not self.decided_by or not isinstance(self.decided_by, str):
            errors.append("decided_by is required and must be a string")
        if not isinstance(self.override_category, str):
            errors.append("override_category is required and must be a string")
        else:
            errors.extend(validate_override(self.override_category, self.override_subcategory))
        return errors


@dataclass
class AuditChainStatus:
    """GET /v1/workflows/{id}/events response."""
    workflow_id: str
    valid: bool
    message: str
    events: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
