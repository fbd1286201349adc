"""
Onboarding Saga — Signal Schemas

One tagged payload model per inbound event name. Every signal is validated
here, at the ingress boundary, before anything is persisted; a malformed
payload raises ValidationError and leaves workflow state untouched.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from saga.divergence import OverrideCategory, validate_override
from saga.errors import ValidationError


class Decision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class RiskOutcome(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REQUEST_MORE_INFO = "REQUEST_MORE_INFO"


class ProcurementOutcome(str, Enum):
    CLEARED = "CLEARED"
    DENIED = "DENIED"


# ---------------------------------------------------------------------------
# Stage 2: facility, quote, mandate
# ---------------------------------------------------------------------------

class FacilityFormData(BaseModel):
    model_config = ConfigDict(extra="allow")

    mandate_type: str = Field(default="MIXED", description="EFT, DEBIT_ORDER, CASH or MIXED")
    mandate_volume: Optional[int] = Field(default=None, ge=0, description="Expected monthly volume in cents")
    business_type: Optional[str] = Field(default=None, description="Declared business type")


class FacilitySubmitted(BaseModel):
    form_data: FacilityFormData = Field(default_factory=FacilityFormData)
    submitted_by: Optional[str] = None


class QuoteApproved(BaseModel):
    decision: Decision = Field(default=Decision.APPROVED, description="Manager decision on the quote")
    approved_by: str = Field(min_length=1, description="Manager who reviewed the quote")
    reason: Optional[str] = None
    quote_id: Optional[str] = None


class QuoteSigned(BaseModel):
    signed_by: str = Field(min_length=1)
    signed_at: Optional[str] = None


class MandateSubmitted(BaseModel):
    document_ids: list[str] = Field(default_factory=list)
    mandate_type: Optional[str] = None


# ---------------------------------------------------------------------------
# Stage 3: procurement and FICA
# ---------------------------------------------------------------------------

class ProcurementDecision(BaseModel):
    outcome: ProcurementOutcome
    decided_by: str = Field(min_length=1)
    reason: Optional[str] = None


class ProcurementCompleted(BaseModel):
    decision: ProcurementDecision


class FicaReceived(BaseModel):
    document_ids: list[str] = Field(default_factory=list)
    document_types: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Stage 4: risk review
# ---------------------------------------------------------------------------

class RiskDecision(BaseModel):
    outcome: RiskOutcome
    decided_by: str = Field(min_length=1)
    reason: Optional[str] = None
    override_category: Optional[OverrideCategory] = Field(
        default=None, description="Why the decision differs from the AI recommendation",
    )
    override_subcategory: Optional[str] = None
    override_details: Optional[str] = None

    @model_validator(mode="after")
    def _check_override_pair(self) -> "RiskDecision":
        if self.override_category is not None:
            errors = validate_override(self.override_category.value, self.override_subcategory)
            if errors:
                raise ValueError("; ".join(errors))
        return self


class RiskDecisionReceived(BaseModel):
    decision: RiskDecision


class FinancialStatementsConfirmed(BaseModel):
    confirmed_by: str = Field(min_length=1)
    confirmed_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Stage 5: contract
# ---------------------------------------------------------------------------

class ContractDraftReviewed(BaseModel):
    reviewed_by: str = Field(min_length=1)
    changes: dict[str, Any] = Field(default_factory=dict)


class ContractSigned(BaseModel):
    signed_by: str = Field(min_length=1)
    signed_at: Optional[str] = None


class AbsaFormCompleted(BaseModel):
    submission_id: Optional[str] = None
    completed_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Stage 6: two-factor approval
# ---------------------------------------------------------------------------

class FinalApproval(BaseModel):
    decision: Decision
    approved_by: str = Field(min_length=1)
    reason: Optional[str] = None
    timestamp: Optional[str] = None


SIGNAL_SCHEMAS: dict[str, Type[BaseModel]] = {
    "form/facility.submitted": FacilitySubmitted,
    "quote/approved": QuoteApproved,
    "quote/signed": QuoteSigned,
    "document/mandate.submitted": MandateSubmitted,
    "risk/procurement.completed": ProcurementCompleted,
    "upload/fica.received": FicaReceived,
    "risk/decision.received": RiskDecisionReceived,
    "risk/financial-statements.confirmed": FinancialStatementsConfirmed,
    "contract/draft.reviewed": ContractDraftReviewed,
    "contract/signed": ContractSigned,
    "form/absa-6995.completed": AbsaFormCompleted,
    "approval/risk-manager.received": FinalApproval,
    "approval/account-manager.received": FinalApproval,
}


def _format_errors(exc: PydanticValidationError) -> list[str]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "payload"
        errors.append(f"{loc}: {err.get('msg', 'invalid')}")
    return errors


def validate_signal(event_name: str, payload: dict[str, Any] | None) -> dict[str, Any]:
    """
    Validate a signal payload against its schema.

    Returns the normalized payload (JSON-compatible). Raises ValidationError
    for unknown event names or schema violations.
    """
    schema = SIGNAL_SCHEMAS.get(event_name)
    if schema is None:
        raise ValidationError(event_name, [f"Unknown event: {event_name}"])
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError(event_name, ["payload: must be an object"])
    try:
        model = schema.model_validate(payload or {})
    except PydanticValidationError as e:
        raise ValidationError(event_name, _format_errors(e)) from e
    return model.model_dump(mode="json")
