"""
Onboarding Saga — Feedback Recording

Turns a human decision into a FeedbackLog row scored against the stored
AI snapshot. Divergent decisions are emitted as
`ai/feedback.divergence_detected` for the retraining pipeline.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from onboarding.collaborators import EventSink
from onboarding.store import OnboardingStore
from onboarding.types import FeedbackLog
from saga.divergence import AiCheckType, compute_divergence, validate_override
from saga.errors import ValidationError

logger = logging.getLogger("saga.feedback")

# Used when no automated analysis exists for the instance yet.
DEFAULT_AI_OUTCOME = "MANUAL_REVIEW"


def record_feedback(
    store: OnboardingStore,
    sink: EventSink,
    workflow_id: str,
    human_outcome: str,
    override_category: str,
    decided_by: str,
    override_subcategory: Optional[str] = None,
    override_details: Optional[str] = None,
    decision_ref: Optional[str] = None,
) -> dict[str, Any]:
    inst = store.require_workflow(workflow_id)

    errors = validate_override(override_category, override_subcategory)
    if not human_outcome:
        errors.append("human_outcome: required")
    if errors:
        raise ValidationError("feedback", errors)

    ai_outcome = inst.ai_outcome or DEFAULT_AI_OUTCOME
    divergence = compute_divergence(ai_outcome, human_outcome, inst.ai_confidence)

    log = FeedbackLog(
        workflow_id=workflow_id,
        applicant_id=inst.applicant_id,
        ai_outcome=ai_outcome,
        ai_confidence=inst.ai_confidence,
        ai_check_type=AiCheckType.AGGREGATED.value,
        human_outcome=human_outcome,
        override_category=override_category,
        override_subcategory=override_subcategory,
        override_details=override_details,
        decided_by=decided_by,
        is_divergent=divergence.is_divergent,
        divergence_weight=divergence.divergence_weight,
        divergence_type=divergence.divergence_type,
        decision_ref=decision_ref or f"{workflow_id}:{uuid.uuid4().hex[:12]}",
        created_at=store.clock(),
    )
    saved, created = store.save_feedback(log)

    if created and saved.is_divergent:
        logger.info(
            "Divergence on %s: %s weight=%d (ai=%s human=%s)",
            workflow_id, saved.divergence_type, saved.divergence_weight,
            ai_outcome, human_outcome,
        )
        sink.send_event("ai/feedback.divergence_detected", {
            "workflow_id": workflow_id,
            "applicant_id": inst.applicant_id,
            "feedback_id": saved.feedback_id,
            "divergence_type": saved.divergence_type,
            "divergence_weight": saved.divergence_weight,
            "override_category": saved.override_category,
            "override_subcategory": saved.override_subcategory,
            "ai_outcome": ai_outcome,
            "human_outcome": human_outcome,
        })

    return {
        "feedback_id": saved.feedback_id,
        "is_divergent": saved.is_divergent,
        "divergence_weight": saved.divergence_weight,
        "divergence_type": saved.divergence_type,
    }
