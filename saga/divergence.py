"""
Onboarding Saga — Divergence Scorer

Quantifies disagreement between the automated risk recommendation and the
human decision. Every divergence is a prioritized retraining signal.

  false_positive     AI approved, human rejected (most dangerous)
  false_negative     AI rejected, human approved (over-conservative)
  severity_mismatch  one side said review, the other approve/reject

Weight scale 0-10: base weight by type, +2 when the AI was confident
(>= 80) on a call the human overturned, capped at 10.

compute_divergence is pure. Persistence of FeedbackLog rows lives in the
store; this module only scores and validates.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass
from typing import Any, Optional


class DivergenceType(str, enum.Enum):
    FALSE_POSITIVE = "false_positive"
    FALSE_NEGATIVE = "false_negative"
    SEVERITY_MISMATCH = "severity_mismatch"


class AiCheckType(str, enum.Enum):
    IDENTITY_VERIFICATION = "identity_verification"
    DOCUMENT_ANALYSIS = "document_analysis"
    RISK_SCREENING = "risk_screening"
    AGGREGATED = "aggregated"


@dataclass(frozen=True)
class DivergenceResult:
    is_divergent: bool
    divergence_weight: int
    divergence_type: Optional[str]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_BASE_WEIGHTS = {
    ("approve", "reject"): (8, DivergenceType.FALSE_POSITIVE),
    ("reject", "approve"): (5, DivergenceType.FALSE_NEGATIVE),
}
_MISMATCH = (2, DivergenceType.SEVERITY_MISMATCH)
_CONFIDENCE_BONUS_THRESHOLD = 80
_CONFIDENCE_BONUS = 2
_MAX_WEIGHT = 10


def normalize_outcome(outcome: str | None) -> str:
    """Collapse a free-form outcome string into approve | reject | review."""
    upper = (outcome or "").upper()
    if "APPROVE" in upper or "CLEARED" in upper:
        return "approve"
    if "REJECT" in upper or "DECLINE" in upper or "DENIED" in upper:
        return "reject"
    return "review"


def compute_divergence(
    ai_outcome: str | None,
    human_outcome: str | None,
    ai_confidence: float | None,
) -> DivergenceResult:
    ai = normalize_outcome(ai_outcome)
    human = normalize_outcome(human_outcome)

    if ai == human:
        return DivergenceResult(False, 0, None)

    base, kind = _BASE_WEIGHTS.get((ai, human), _MISMATCH)
    bonus = (
        _CONFIDENCE_BONUS
        if ai_confidence is not None and ai_confidence >= _CONFIDENCE_BONUS_THRESHOLD
        else 0
    )
    return DivergenceResult(True, min(_MAX_WEIGHT, base + bonus), kind.value)


# ═══════════════════════════════════════════════════════════════════
# Override Taxonomy
# ═══════════════════════════════════════════════════════════════════

class OverrideCategory(str, enum.Enum):
    AI_ALIGNED = "AI_ALIGNED"
    MISSING_CONTEXT = "MISSING_CONTEXT"
    INCORRECT_RISK_SCORING = "INCORRECT_RISK_SCORING"
    FALSE_POSITIVE_FLAG = "FALSE_POSITIVE_FLAG"
    FALSE_NEGATIVE_MISS = "FALSE_NEGATIVE_MISS"
    POLICY_EXCEPTION = "POLICY_EXCEPTION"
    DATA_QUALITY_ISSUE = "DATA_QUALITY_ISSUE"
    OTHER = "OTHER"


OVERRIDE_CATEGORY_LABELS = {
    OverrideCategory.AI_ALIGNED: "AI Decision Aligned",
    OverrideCategory.MISSING_CONTEXT: "Missing Context",
    OverrideCategory.INCORRECT_RISK_SCORING: "Incorrect Risk Scoring",
    OverrideCategory.FALSE_POSITIVE_FLAG: "False Positive Flag",
    OverrideCategory.FALSE_NEGATIVE_MISS: "False Negative Miss",
    OverrideCategory.POLICY_EXCEPTION: "Policy Exception",
    OverrideCategory.DATA_QUALITY_ISSUE: "Data Quality Issue",
    OverrideCategory.OTHER: "Other",
}

OVERRIDE_SUBCATEGORIES: dict[OverrideCategory, dict[str, str]] = {
    OverrideCategory.MISSING_CONTEXT: {
        "additional_docs_provided": "Additional Documents Provided",
        "verbal_confirmation": "Verbal Confirmation Received",
        "historical_relationship": "Historical Relationship Known",
        "external_verification": "External Verification Done",
    },
    OverrideCategory.INCORRECT_RISK_SCORING: {
        "score_too_high": "Score Too High",
        "score_too_low": "Score Too Low",
        "wrong_risk_factors": "Wrong Risk Factors Weighted",
        "outdated_model": "Outdated Model Data",
    },
    OverrideCategory.FALSE_POSITIVE_FLAG: {
        "name_collision": "Name Collision (Not Same Entity)",
        "resolved_issue": "Issue Previously Resolved",
        "incorrect_match": "Incorrect Data Match",
        "legitimate_activity": "Legitimate Business Activity",
    },
    OverrideCategory.FALSE_NEGATIVE_MISS: {
        "hidden_risk": "Hidden Risk Factor",
        "pattern_not_detected": "Pattern Not Detected",
        "new_risk_type": "New/Emerging Risk Type",
        "cross_reference_miss": "Cross-reference Not Found",
    },
    OverrideCategory.POLICY_EXCEPTION: {
        "management_override": "Management Override",
        "regulatory_change": "New Regulatory Guidance",
        "client_tier_exception": "Client Tier Exception",
    },
    OverrideCategory.DATA_QUALITY_ISSUE: {
        "stale_data": "Stale/Outdated Data",
        "incorrect_data": "Incorrect Data Source",
        "missing_fields": "Missing Required Fields",
    },
}


def validate_override(category: str, subcategory: str | None = None) -> list[str]:
    """Return validation errors for an override category/subcategory pair."""
    errors = []
    try:
        cat = OverrideCategory(category)
    except ValueError:
        return [f"Unknown override category: {category!r}"]

    if subcategory:
        allowed = OVERRIDE_SUBCATEGORIES.get(cat)
        if allowed is not None and subcategory not in allowed:
            errors.append(
                f"Subcategory {subcategory!r} is not valid for {cat.value} "
                f"(expected one of: {', '.join(sorted(allowed))})"
            )
    return errors


def format_subcategory_label(category: str, subcategory: str) -> str:
    """Display label for a subcategory; title-cases unknown values."""
    try:
        labels = OVERRIDE_SUBCATEGORIES.get(OverrideCategory(category), {})
    except ValueError:
        labels = {}
    if subcategory in labels:
        return labels[subcategory]
    return " ".join(w.capitalize() for w in subcategory.split("_"))
