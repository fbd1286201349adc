"""
Onboarding Saga — Stage Controller

The 6-stage SOP as one saga function. Every stage is a sequence of
guarded steps, notifications and waits:

  1 Lead Capture & ITC      ITC credit check
  2 Facility & Quote        facility form → mandate → quote → manager gate →
                            signed quote → mandate collection (7d retry, max 8)
  3 Procurement & AI        parallel: procurement check (always reviewed) +
                            FICA request → procurement decision → FICA docs →
                            AI analysis
  4 Risk Review             always manual; red-risk applicants also confirm
                            financial statements
  5 Contract                draft review → contract + ABSA form → signatures
  6 Final Approval          two-factor gate

Rules:
  - every stage-boundary step calls the kill switch guard first
  - a missing event raises StageTimeoutError, caught once in run() and
    recorded as status=timeout at that stage (never retried, except the
    mandate retry loop)
  - REJECTED / DENIED at any human gate fires the kill switch
  - TerminatedError is never caught here

Side effects happen only inside executor.run() steps, so the function can
be replayed from the top on every drive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from onboarding.approval import TwoFactorApprovalGate
from onboarding.collaborators import (
    Collaborators,
    determine_business_type,
    get_document_requirements,
    resolve_business_type,
)
from onboarding.feedback import record_feedback
from onboarding.store import OnboardingStore
from onboarding.types import Applicant, Stage, WorkflowStatus
from saga.config import SagaSettings
from saga.divergence import OverrideCategory, normalize_outcome
from saga.errors import SagaError, StageTimeoutError, TerminatedError
from saga.escalation import EscalationTier, RetryEscalationLoop, TIER_ACTIONS
from saga.kill_switch import KillSwitch, KillSwitchReason
from saga.logging import SagaLogger
from saga.parallel import fan_out
from saga.steps import Event, StepExecutor

logger = logging.getLogger("saga.stages")


class StageFailed(SagaError):
    """A step produced a business failure that halts the instance as failed."""

    def __init__(self, stage: int, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Stage {stage} failed: {reason}")


@dataclass
class SagaContext:
    workflow_id: str
    applicant_id: str
    executor: StepExecutor
    store: OnboardingStore
    kill_switch: KillSwitch
    collab: Collaborators
    settings: SagaSettings
    slog: SagaLogger


@dataclass
class SagaOutcome:
    status: str
    stage: int
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "stage": self.stage,
            "reason": self.reason,
            "details": self.details,
        }


class StageController:
    """Drives one onboarding instance through the SOP."""

    def __init__(self, ctx: SagaContext):
        self.ctx = ctx
        self.wf = ctx.workflow_id
        self.ex = ctx.executor
        self.store = ctx.store
        self.ks = ctx.kill_switch
        self.collab = ctx.collab
        self.settings = ctx.settings
        # Results carried between stages within one drive.
        self._mandate: dict[str, Any] = {}
        self._analysis: dict[str, Any] = {}

    # ═══════════════════════════════════════════════════════════════
    # Entry point
    # ═══════════════════════════════════════════════════════════════

    def run(self) -> SagaOutcome:
        stages: list[tuple[Stage, Callable[[], None]]] = [
            (Stage.LEAD_CAPTURE, self.stage_1_lead_capture),
            (Stage.FACILITY_AND_QUOTE, self.stage_2_facility_and_quote),
            (Stage.PROCUREMENT_AND_AI, self.stage_3_procurement_and_ai),
            (Stage.RISK_REVIEW, self.stage_4_risk_review),
            (Stage.CONTRACT, self.stage_5_contract),
            (Stage.FINAL_APPROVAL, self.stage_6_final_approval),
        ]
        for stage, body in stages:
            try:
                body()
            except StageTimeoutError as e:
                return self._halt(f"stage-{e.stage}-timeout", WorkflowStatus.TIMEOUT, e.stage, e.reason)
            except StageFailed as e:
                return self._halt(f"stage-{e.stage}-failed", WorkflowStatus.FAILED, e.stage, e.reason)

        return SagaOutcome(WorkflowStatus.COMPLETED.value, Stage.FINAL_APPROVAL.value)

    def _halt(self, step_id: str, status: WorkflowStatus, stage: int, reason: str) -> SagaOutcome:
        self._set_status(step_id, status, stage, reason)
        logger.info("Workflow %s halted: %s at stage %d (%s)", self.wf, status.value, stage, reason)
        return SagaOutcome(status.value, stage, reason)

    # ─── Step helpers ───────────────────────────────────────────────

    def _step(self, step_id: str, fn: Callable[[], Any]) -> Any:
        return self.ex.run(step_id, fn)

    def _guarded(self, step_id: str, fn: Callable[[], Any]) -> Any:
        """A step whose first action is the kill switch guard."""
        def _body():
            self.ks.guard(self.wf, step_id)
            return fn()
        return self.ex.run(step_id, _body)

    def _set_status(self, step_id: str, status: WorkflowStatus, stage: int, reason: str = ""):
        def _body():
            self.ks.guard(self.wf, step_id)
            inst = self.store.transition(self.wf, status, stage, reason=reason)
            self.ctx.slog.on_stage_transition(inst.stage, inst.status.value)
            return {"stage": inst.stage, "status": inst.status.value}
        self.ex.run(step_id, _body)

    def _notify(self, step_id: str, type: str, title: str, message: str, actionable: bool = False):
        self._step(step_id, lambda: self.collab.notifier.notify(
            self.wf, self.ctx.applicant_id, type, title, message, actionable,
        ))

    def _await(self, step_id: str, event: str, timeout: float, stage: int, reason: str) -> Event:
        received = self.ex.wait_for_event(step_id, event, timeout)
        if received is None:
            raise StageTimeoutError(stage, reason, step_id)
        return received

    def _send(self, name: str, payload: dict[str, Any]):
        self.ex.send_event(name, {"applicant_id": self.ctx.applicant_id, **payload})

    def _log(self, event_type: str, payload: dict[str, Any]):
        self.store.append_event(self.wf, event_type, payload)

    def _applicant(self) -> Applicant:
        return Applicant.from_dict(self.ctx.applicant_id, self.store.get_applicant(self.ctx.applicant_id))

    # ═══════════════════════════════════════════════════════════════
    # Stage 1: Lead Capture & ITC
    # ═══════════════════════════════════════════════════════════════

    def stage_1_lead_capture(self):
        self._set_status("stage-1-start", WorkflowStatus.PROCESSING, 1)

        def _itc():
            result = self.collab.credit.check(self._applicant())
            self._log("itc_check_completed", result)
            return result

        self._guarded("initial-checks", _itc)

    # ═══════════════════════════════════════════════════════════════
    # Stage 2: Facility & Quote
    # ═══════════════════════════════════════════════════════════════

    def stage_2_facility_and_quote(self):
        s = self.settings
        self._set_status("stage-2-start", WorkflowStatus.PROCESSING, 2)
        self._guarded("send-facility-application", lambda: self.collab.notifier.notify(
            self.wf, self.ctx.applicant_id, "awaiting", "Facility Application Sent",
            "Waiting for applicant to complete facility application form", False,
        ))
        self._set_status("stage-2-awaiting-facility-application", WorkflowStatus.AWAITING_HUMAN, 2)

        facility = self._await(
            "wait-facility-app", "form/facility.submitted", s.stage_timeout, 2,
            "Facility application timeout",
        )
        mandate = self._guarded("determine-mandate", lambda: self._determine_mandate(facility))
        self._mandate = mandate

        quote = self._guarded("ai-generate-quote", lambda: self._generate_quote(mandate))
        if not quote["success"]:
            raise StageFailed(2, quote["error"] or "Quote generation failed")

        amount = quote["quote"]["amount"]
        # Same gate for every amount; overlimit only changes the notification.
        title = (
            "OVERLIMIT: Quote Requires Special Approval" if quote["is_overlimit"]
            else "Quote Ready for Approval"
        )
        self._notify(
            "notify-manager-quote", "warning" if quote["is_overlimit"] else "awaiting", title,
            f"Quote for R{amount / 100:.2f} ready for review. "
            f"You can adjust, request updates, or approve.",
            actionable=True,
        )
        self._set_status("stage-2-awaiting-quote-approval", WorkflowStatus.AWAITING_HUMAN, 2)

        approval = self._await(
            "wait-quote-approval", "quote/approved", s.workflow_timeout, 2,
            "Quote approval timeout",
        )
        if approval.payload["decision"] == "REJECTED":
            self.ks.terminate_step(
                self.ex, "quote-rejected-terminate", KillSwitchReason.APPROVAL_REJECTED,
                approval.payload["approved_by"],
                approval.payload.get("reason") or "Quote rejected by manager",
            )

        self._guarded("send-quote-to-applicant", lambda: self.collab.notifier.notify(
            self.wf, self.ctx.applicant_id, "awaiting", "Quote Sent for Signature",
            "Waiting for applicant to sign the quotation", False,
        ))
        self._set_status("stage-2-awaiting-quote-signature", WorkflowStatus.AWAITING_HUMAN, 2)
        self._await(
            "wait-quote-signed", "quote/signed", s.workflow_timeout, 2, "Quote signature timeout",
        )

        self._collect_mandate(mandate)

    def _determine_mandate(self, facility: Event) -> dict[str, Any]:
        form = facility.payload.get("form_data", {})
        applicant = self._applicant()
        business_type = resolve_business_type(applicant.entity_type, determine_business_type(form))
        docs = get_document_requirements(business_type, applicant.industry or None)
        required = [d.to_dict() for d in docs if d.required]
        result = {
            "business_type": business_type,
            "mandate_type": form.get("mandate_type", "MIXED"),
            "mandate_volume": form.get("mandate_volume"),
            "required_documents": required,
        }
        self._log("mandate_determined", {
            "business_type": business_type,
            "mandate_type": result["mandate_type"],
            "required_documents": [d["id"] for d in required],
        })
        return result

    def _generate_quote(self, mandate: dict[str, Any]) -> dict[str, Any]:
        result = self.collab.quotes.generate(self._applicant(), mandate)
        if not (result.get("success") and result.get("quote")):
            self.collab.notifier.notify(
                self.wf, self.ctx.applicant_id, "error", "Quote Generation Failed",
                result.get("error") or "Failed to generate quotation", True,
            )
            return {"success": False, "quote": None, "is_overlimit": False,
                    "error": result.get("error")}

        q = result["quote"]
        is_overlimit = q["amount"] > self.settings.overlimit_threshold_cents
        self._log("quote_generated", {
            "quote_id": q["quote_id"], "amount": q["amount"], "is_overlimit": is_overlimit,
        })
        return {"success": True, "quote": q, "is_overlimit": is_overlimit, "error": None}

    # ─── Mandate collection ─────────────────────────────────────────

    def _collect_mandate(self, mandate: dict[str, Any]):
        s = self.settings
        event_name = "document/mandate.submitted"

        def on_attempt(attempt: int, tier: EscalationTier):
            self._guarded(
                f"mandate-attempt-{attempt}",
                lambda: self._mandate_attempt(attempt, tier, mandate),
            )
            if attempt == 1:
                self._set_status("stage-2-awaiting-mandates", WorkflowStatus.AWAITING_HUMAN, 2)

        def wait(attempt: int, interval: float):
            step_id = "wait-mandate-docs" if attempt == 1 else f"wait-mandate-docs-retry-{attempt}"
            return self.ex.wait_for_event(step_id, event_name, interval)

        def salvage(window: float):
            return self.ex.wait_for_event("wait-mandate-salvage", event_name, window)

        outcome = RetryEscalationLoop(
            max_attempts=s.max_mandate_retries,
            interval=s.mandate_retry_interval,
            on_attempt=on_attempt,
            wait=wait,
            salvage_window=s.mandate_salvage_window,
            salvage=salvage,
        ).run()

        if not outcome.resolved:
            self.ks.terminate_step(
                self.ex, "mandate-exhausted-terminate", KillSwitchReason.MAX_RETRIES,
                "system_mandate_timeout",
                f"Mandate collection exhausted after {outcome.attempts} retries",
                then=lambda: self._send("mandate/collection.expired", {
                    "retry_count": outcome.attempts,
                    "reason": KillSwitchReason.MAX_RETRIES.value,
                    "expired_at": self.ex.now(),
                }),
            )

        def _verified():
            self._send("mandate/verified", {
                "mandate_type": mandate.get("mandate_type") or "MIXED",
                "retry_count": outcome.attempts,
                "verified_at": self.ex.now(),
            })
            self._log("mandate_verified", {
                "retry_count": outcome.attempts,
                "mandate_type": mandate.get("mandate_type"),
                "salvaged": outcome.salvaged,
            })
        self._step("mandate-verified", _verified)

    def _mandate_attempt(self, attempt: int, tier: EscalationTier, mandate: dict[str, Any]):
        max_retries = self.settings.max_mandate_retries
        self.store.record_mandate_attempt(self.wf, attempt, tier.value)
        notify = self.collab.notifier.notify

        if attempt == 1:
            notify(
                self.wf, self.ctx.applicant_id, "awaiting",
                "Commercial Mandate Documents Required",
                f"Please upload required documents for {mandate['business_type']} application",
                True,
            )
            self._send("document/conditional-request.sent", {
                "business_type": mandate["business_type"],
                "documents_requested": [d["id"] for d in mandate["required_documents"]],
                "sent_at": self.ex.now(),
            })
        else:
            notify(
                self.wf, self.ctx.applicant_id, "warning" if attempt >= 6 else "info",
                f"Mandate Reminder {attempt}/{max_retries}",
                f"Mandate documents still outstanding after {attempt} requests. "
                f"{max_retries - attempt} reminders remaining before termination.",
                False,
            )

        if tier == EscalationTier.TIER_1:
            self.ctx.slog.on_escalation(attempt, tier.value)
            notify(
                self.wf, self.ctx.applicant_id, "warning",
                "Mandate Escalation: Manual Follow-up Required",
                f"{TIER_ACTIONS[tier]}. Contact the applicant directly.", True,
            )
        elif tier == EscalationTier.TIER_2:
            self.ctx.slog.on_escalation(attempt, tier.value)
            notify(
                self.wf, self.ctx.applicant_id, "error",
                "Mandate Collection At Risk of Termination",
                f"{TIER_ACTIONS[tier]}. {max_retries - attempt} attempt(s) left.", True,
            )
        return {"attempt": attempt, "tier": tier.value}

    # ═══════════════════════════════════════════════════════════════
    # Stage 3: Procurement & AI (parallel)
    # ═══════════════════════════════════════════════════════════════

    def stage_3_procurement_and_ai(self):
        s = self.settings
        self._set_status("stage-3-start", WorkflowStatus.PROCESSING, 3)

        mandate = self._mandate
        self._step("emit-business-type-event", lambda: self._send(
            "onboarding/business-type.determined", {
                "business_type": mandate["business_type"],
                "required_documents": [d["id"] for d in mandate["required_documents"]],
            },
        ))

        streams = fan_out({
            "procurement": lambda: self.ex.run("stream-a-procurement", self._procurement_stream),
            "documents": lambda: self.ex.run("stream-b-fica-request", self._document_stream),
        })
        procurement = streams["procurement"]
        if procurement["kill_switch_triggered"]:
            raise TerminatedError(self.wf, "stream-a-procurement", procurement.get("reason", ""))

        if procurement["requires_review"]:
            self._set_status(
                "stage-3-awaiting-procurement-review", WorkflowStatus.AWAITING_HUMAN, 3,
            )
            decision = self._await(
                "wait-procurement-decision", "risk/procurement.completed", s.review_timeout, 3,
                "Procurement review timeout",
            ).payload["decision"]
            if decision["outcome"] == "DENIED":
                self.ks.terminate_step(
                    self.ex, "procurement-denied-terminate", KillSwitchReason.PROCUREMENT_DENIED,
                    decision["decided_by"],
                    decision.get("reason") or "Procurement denied by Risk Manager",
                )
            self._step("log-procurement-cleared", lambda: self._log(
                "procurement_cleared", {"decided_by": decision["decided_by"]},
            ))

        self._await(
            "wait-fica-docs", "upload/fica.received", s.stage_timeout, 3,
            "FICA document upload timeout",
        )

        analysis = self._guarded("run-ai-analysis", lambda: self._ai_analysis(mandate))
        self._analysis = analysis
        if analysis["is_blocked"]:
            self.ks.terminate_step(
                self.ex, "sanctions-blocked-terminate", KillSwitchReason.COMPLIANCE_VIOLATION,
                "ai_sanctions_agent",
                "Blocked by sanctions check: " + (", ".join(analysis["flags"]) or "no flags"),
            )

    def _procurement_stream(self) -> dict[str, Any]:
        if self.ks.is_terminated(self.wf):
            return {"cleared": False, "requires_review": False,
                    "kill_switch_triggered": True, "reason": "Workflow terminated"}

        result = self.collab.procurement.check(self._applicant())
        self._log("procurement_check_completed", result)
        anomalies = ", ".join(result.get("anomalies") or []) or "None"
        # Always a manual Risk Manager gate, whatever the automated recommendation.
        self.collab.notifier.notify(
            self.wf, self.ctx.applicant_id, "warning", "Procurement Review Required",
            f"Procurement score: {result.get('risk_score')}. "
            f"Action: {result.get('recommended_action')}. Anomalies: {anomalies}",
            True,
        )
        return {"cleared": False, "requires_review": True,
                "kill_switch_triggered": False, "result": result}

    def _document_stream(self) -> dict[str, Any]:
        if self.ks.is_terminated(self.wf):
            return {"requested": False, "reason": "Workflow terminated"}
        self.collab.notifier.notify(
            self.wf, self.ctx.applicant_id, "awaiting", "FICA Documents Required",
            "Please upload bank statements and accountant letter for AI verification", True,
        )
        return {"requested": True}

    def _ai_analysis(self, mandate: dict[str, Any]) -> dict[str, Any]:
        applicant = self._applicant()
        result = self.collab.risk.analyze({
            **applicant.to_dict(),
            "requested_amount": mandate.get("mandate_volume"),
            "business_type": mandate.get("business_type"),
        })
        analysis = {
            "recommendation": result.get("recommendation") or "MANUAL_REVIEW",
            "confidence_score": result.get("confidence_score"),
            "flags": list(result.get("flags") or []),
            "is_blocked": bool(result.get("is_blocked")),
        }
        self.store.record_ai_snapshot(
            self.wf, analysis["recommendation"], analysis["confidence_score"], analysis["flags"],
        )
        self._send("agent/analysis.aggregated", analysis)
        return analysis

    # ═══════════════════════════════════════════════════════════════
    # Stage 4: Risk Review
    # ═══════════════════════════════════════════════════════════════

    def stage_4_risk_review(self):
        s = self.settings
        self._set_status("stage-4-start", WorkflowStatus.PROCESSING, 4)

        analysis = self._analysis
        self._notify(
            "notify-final-review", "warning", "Risk Manager Review Required",
            f"AI confidence: {analysis['confidence_score']}. "
            f"Recommendation: {analysis['recommendation']}. "
            f"Flags: {', '.join(analysis['flags']) or 'None'}",
            actionable=True,
        )
        self._set_status("stage-4-awaiting-review", WorkflowStatus.AWAITING_HUMAN, 4)

        received = self._await(
            "wait-risk-decision", "risk/decision.received", s.review_timeout, 4,
            "Risk review timeout",
        )
        decision = received.payload["decision"]
        self._step("record-risk-feedback", lambda: self._risk_feedback(received, analysis))

        if decision["outcome"] == "REJECTED":
            self.ks.terminate_step(
                self.ex, "risk-rejected-terminate", KillSwitchReason.APPROVAL_REJECTED,
                decision["decided_by"], decision.get("reason") or "Rejected by Risk Manager",
            )

        high_risk = self._step("check-high-risk", lambda: self._applicant().risk_level == "red")
        if not high_risk:
            return

        self._notify(
            "notify-financial-statements-required", "warning",
            "Financial Statements Required (High-Risk)",
            "This is a high-risk applicant. Confirm that financial statements have been "
            "sent and received before proceeding.",
            actionable=True,
        )
        self._set_status(
            "stage-4-awaiting-financial-statements", WorkflowStatus.AWAITING_HUMAN, 4,
        )
        confirmed = self._await(
            "wait-financial-statements", "risk/financial-statements.confirmed",
            s.stage_timeout, 4, "Financial statements confirmation timeout (high-risk)",
        )
        self._step("log-financial-statements-confirmed", lambda: self._log(
            "financial_statements_confirmed", {
                "confirmed_by": confirmed.payload["confirmed_by"],
                "confirmed_at": confirmed.payload.get("confirmed_at"),
            },
        ))

    def _risk_feedback(self, received: Event, analysis: dict[str, Any]) -> dict[str, Any]:
        decision = received.payload["decision"]
        category = decision.get("override_category")
        if not category:
            agreed = (
                normalize_outcome(analysis["recommendation"])
                == normalize_outcome(decision["outcome"])
            )
            category = (OverrideCategory.AI_ALIGNED if agreed else OverrideCategory.OTHER).value
        return record_feedback(
            self.store, self.collab.events, self.wf,
            human_outcome=decision["outcome"],
            override_category=category,
            decided_by=decision["decided_by"],
            override_subcategory=decision.get("override_subcategory"),
            override_details=decision.get("override_details") or decision.get("reason"),
            decision_ref=f"{self.wf}:risk-decision:{received.event_id}",
        )

    # ═══════════════════════════════════════════════════════════════
    # Stage 5: Contract
    # ═══════════════════════════════════════════════════════════════

    def stage_5_contract(self):
        s = self.settings
        self._set_status("stage-5-start", WorkflowStatus.PROCESSING, 5)
        self._notify(
            "notify-contract-review", "awaiting", "Contract Draft Ready for Review",
            "Please review and edit the AI-generated contract before sending to client.",
            actionable=True,
        )
        self._set_status("stage-5-awaiting-contract-review", WorkflowStatus.AWAITING_HUMAN, 5)
        self._await(
            "wait-contract-reviewed", "contract/draft.reviewed", s.review_timeout, 5,
            "Contract review timeout",
        )

        self._guarded("send-final-docs", lambda: self.collab.notifier.notify(
            self.wf, self.ctx.applicant_id, "awaiting", "Contract & ABSA Form Sent",
            "Please sign the contract and complete the ABSA bank form", False,
        ))
        self._set_status("stage-5-awaiting-docs", WorkflowStatus.AWAITING_HUMAN, 5)
        self._await(
            "wait-contract-signed", "contract/signed", s.review_timeout, 5,
            "Contract signature timeout",
        )
        self._await(
            "wait-absa-completed", "form/absa-6995.completed", s.review_timeout, 5,
            "ABSA 6995 form timeout",
        )

    # ═══════════════════════════════════════════════════════════════
    # Stage 6: Final Approval (two-factor)
    # ═══════════════════════════════════════════════════════════════

    def stage_6_final_approval(self):
        self._set_status("stage-6-start", WorkflowStatus.PROCESSING, 6)
        self._notify(
            "notify-two-factor-approval", "awaiting", "Two-Factor Final Approval Required",
            "Both Risk Manager and Account Manager must approve to complete onboarding.",
            actionable=True,
        )
        self._set_status("stage-6-awaiting-approvals", WorkflowStatus.AWAITING_HUMAN, 6)

        approvals = TwoFactorApprovalGate(
            self.ex, self.store, self.ks, self.settings.review_timeout,
        ).run()

        self._step("emit-final-approval", lambda: self._send(
            "onboarding/final-approval.received", {
                "risk_manager_approval": approvals["risk_manager"],
                "account_manager_approval": approvals["account_manager"],
                "contract_signed": True,
                "absa_form_complete": True,
            },
        ))

        def _complete():
            self.ks.guard(self.wf, "workflow-complete")
            self.store.transition(self.wf, WorkflowStatus.COMPLETED, 6)
            self.ctx.slog.on_stage_transition(6, WorkflowStatus.COMPLETED.value)
            self.collab.notifier.notify(
                self.wf, self.ctx.applicant_id, "success", "Onboarding Complete",
                "Client onboarding has been successfully completed with two-factor approval.",
                False,
            )
            self._log("workflow_completed", {
                "risk_manager_approval": approvals["risk_manager"]["decided_by"],
                "account_manager_approval": approvals["account_manager"]["decided_by"],
            })
        self._step("workflow-complete", _complete)
