"""
Onboarding Saga — End-to-End Scenario Tests

Drives full instances through the orchestrator with a fake clock and the
in-memory collaborators. Time-based behaviour (mandate retries, stage
timeouts) is exercised by advancing the clock and calling tick().

Tests:
  - happy path to completion, stage never regresses, audit chain valid
  - mandate retry loop: 8 failed cycles terminate, partial cycles recover
  - two-factor gate in either order, rejection kills
  - overlimit quotes, red-risk sub-gate, quote engine failure
  - kill switch from every gate: AI block, procurement denial, rejection
  - manual kill is idempotent and cancels pending waits
  - a kill seen by the procurement stream aborts stage 3
  - crash and resume replays without repeating side effects
  - divergence feedback from the risk review
"""

import os
import sys
import tempfile
import unittest
from unittest import mock

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from onboarding.collaborators import (
    Collaborators,
    InMemoryEventSink,
    StaticProcurementChecker,
    StaticQuoteEngine,
    StaticRiskAnalyzer,
)
from onboarding.runtime import SagaOrchestrator
from onboarding.types import WorkflowStatus
from saga.errors import (
    IllegalTransition,
    TerminatedError,
    ValidationError,
    WorkflowNotFound,
)
from saga.steps import StepStatus

DAY = 86400

HAPPY_PATH = [
    ("form/facility.submitted", {"form_data": {"mandate_type": "EFT", "business_type": "pty_ltd"}}),
    ("quote/approved", {"approved_by": "mgr_1"}),
    ("quote/signed", {"signed_by": "client"}),
    ("document/mandate.submitted", {}),
    ("risk/procurement.completed", {"decision": {"outcome": "CLEARED", "decided_by": "rm_1"}}),
    ("upload/fica.received", {}),
    ("risk/decision.received", {"decision": {"outcome": "APPROVED", "decided_by": "rm_1"}}),
    ("contract/draft.reviewed", {"reviewed_by": "legal"}),
    ("contract/signed", {"signed_by": "client"}),
    ("form/absa-6995.completed", {}),
    ("approval/risk-manager.received", {"decision": "APPROVED", "approved_by": "rm_1"}),
    ("approval/account-manager.received", {"decision": "APPROVED", "approved_by": "am_1"}),
]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class SagaTestCase(unittest.TestCase):

    def setUp(self):
        self.db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self.db.close()
        self.clock = FakeClock()
        self.collab = Collaborators()
        self.orch = self.make_orchestrator(self.collab)

    def tearDown(self):
        self.orch.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.db.name + suffix):
                os.unlink(self.db.name + suffix)

    def make_orchestrator(self, collab):
        return SagaOrchestrator(
            self.db.name, collaborators=collab, clock=self.clock, sleep_fn=lambda s: None,
        )

    def use(self, **collaborators):
        """Swap in collaborators before any instance starts."""
        self.orch.close()
        self.collab = Collaborators(**collaborators)
        self.orch = self.make_orchestrator(self.collab)

    def send_until(self, wf, stop=None, orch=None):
        """Signal the happy path in order, stopping before `stop`."""
        orch = orch or self.orch
        status = orch.get_status(wf)
        for event, payload in HAPPY_PATH:
            if event == stop:
                break
            status = orch.signal(wf, event, payload)
        return status

    def titles(self, wf):
        return self.collab.notifier.titles(wf)


class TestHappyPath(SagaTestCase):

    def test_start_waits_for_facility_form(self):
        wf = self.orch.start_workflow("app_1", {"company_name": "Acme", "risk_level": "green"})
        status = self.orch.get_status(wf)
        self.assertEqual(status["stage"], 2)
        self.assertEqual(status["status"], "awaiting_human")
        self.assertEqual(status["waiting_on"], ["form/facility.submitted"])
        self.assertEqual(self.collab.credit.calls, 1)
        self.assertIn("Facility Application Sent", self.titles(wf))

    def test_full_completion(self):
        wf = self.orch.start_workflow("app_1", {"company_name": "Acme"})
        status = self.send_until(wf)

        self.assertEqual(status["status"], "completed")
        self.assertEqual(status["stage"], 6)
        self.assertEqual(status["waiting_on"], [])
        self.assertEqual(status["approvals"]["risk_manager"]["decided_by"], "rm_1")
        self.assertEqual(status["approvals"]["account_manager"]["decided_by"], "am_1")
        self.assertEqual(status["mandate_retry_count"], 1)
        self.assertIn("Onboarding Complete", self.titles(wf))

        sent = self.collab.events.names()
        for name in ("document/conditional-request.sent", "mandate/verified",
                     "onboarding/business-type.determined", "agent/analysis.aggregated",
                     "onboarding/final-approval.received"):
            self.assertIn(name, sent)

    def test_stage_never_regresses(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf)
        changes = self.orch.get_events(wf, "stage_change")
        stages = [e["payload"]["to_stage"] for e in changes]
        self.assertEqual(stages, sorted(stages))
        self.assertEqual(stages[-1], 6)
        for e in changes:
            self.assertGreaterEqual(e["payload"]["to_stage"], e["payload"]["from_stage"])

    def test_audit_chain_verifies(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf)
        result = self.orch.verify_audit_chain(wf)
        self.assertTrue(result["valid"], result["message"])

    def test_early_signal_waits_in_inbox(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="risk/procurement.completed")
        # FICA upload arrives before the procurement decision
        status = self.orch.signal(wf, "upload/fica.received", {})
        self.assertEqual(status["waiting_on"], ["risk/procurement.completed"])

        status = self.orch.signal(wf, "risk/procurement.completed", {
            "decision": {"outcome": "CLEARED", "decided_by": "rm_1"},
        })
        self.assertEqual(status["stage"], 4)
        self.assertEqual(status["waiting_on"], ["risk/decision.received"])

    def test_resume_of_completed_instance_is_noop(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf)
        outcome = self.orch.resume(wf)
        self.assertEqual(outcome.status, "completed")


class TestMandateRetryLoop(SagaTestCase):

    def setUp(self):
        super().setUp()
        self.wf = self.orch.start_workflow("app_1")
        self.send_until(self.wf, stop="document/mandate.submitted")

    def expire_cycles(self, n):
        for _ in range(n):
            self.clock.advance(7 * DAY + 1)
            self.assertEqual(self.orch.tick(), [self.wf])

    def test_waiting_for_mandates(self):
        status = self.orch.get_status(self.wf)
        self.assertEqual(status["mandate_retry_count"], 1)
        self.assertEqual(status["waiting_on"], ["document/mandate.submitted"])
        self.assertIn("Commercial Mandate Documents Required", self.titles(self.wf))

    def test_tick_before_deadline_does_nothing(self):
        self.clock.advance(7 * DAY - 60)
        self.assertEqual(self.orch.tick(), [])
        self.assertEqual(self.orch.get_status(self.wf)["mandate_retry_count"], 1)

    def test_eight_failed_cycles_terminate(self):
        self.expire_cycles(8)
        status = self.orch.get_status(self.wf)
        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["mandate_retry_count"], 8)
        self.assertTrue(status["reason"].startswith("max_retries"))

        record = self.orch.store.get_kill_switch_record(self.wf)
        self.assertEqual(record.decided_by, "system_mandate_timeout")
        self.assertIn("mandate/collection.expired", self.collab.events.names())
        self.assertIn("Mandate Escalation: Manual Follow-up Required", self.titles(self.wf))
        self.assertIn("Mandate Collection At Risk of Termination", self.titles(self.wf))

        retries = self.orch.get_events(self.wf, "mandate_retry")
        self.assertEqual([e["payload"]["retry_count"] for e in retries], list(range(1, 9)))

    def test_recovery_after_three_cycles(self):
        self.expire_cycles(3)
        status = self.orch.get_status(self.wf)
        self.assertEqual(status["status"], "awaiting_human")
        self.assertEqual(status["mandate_retry_count"], 4)
        self.assertIn("Mandate Escalation: Manual Follow-up Required", self.titles(self.wf))

        status = self.orch.signal(self.wf, "document/mandate.submitted", {})
        self.assertEqual(status["stage"], 3)
        self.assertEqual(status["mandate_retry_count"], 4)
        self.assertEqual(status["waiting_on"], ["risk/procurement.completed"])
        verified = self.orch.get_events(self.wf, "mandate_verified")
        self.assertEqual(verified[0]["payload"]["retry_count"], 4)


class TestTwoFactorApproval(SagaTestCase):

    def setUp(self):
        super().setUp()
        self.wf = self.orch.start_workflow("app_1")
        self.send_until(self.wf, stop="approval/risk-manager.received")

    def test_waiting_on_both(self):
        status = self.orch.get_status(self.wf)
        self.assertEqual(status["stage"], 6)
        self.assertEqual(status["waiting_on"], [
            "approval/account-manager.received", "approval/risk-manager.received",
        ])

    def test_account_manager_first(self):
        status = self.orch.signal(self.wf, "approval/account-manager.received",
                                  {"decision": "APPROVED", "approved_by": "am_1"})
        self.assertEqual(status["status"], "awaiting_human")
        self.assertEqual(status["approvals"]["account_manager"]["decided_by"], "am_1")
        self.assertIsNone(status["approvals"]["risk_manager"])

        status = self.orch.signal(self.wf, "approval/risk-manager.received",
                                  {"decision": "APPROVED", "approved_by": "rm_1"})
        self.assertEqual(status["status"], "completed")

    def test_rejection_after_approval_terminates(self):
        self.orch.signal(self.wf, "approval/risk-manager.received",
                         {"decision": "APPROVED", "approved_by": "rm_1"})
        status = self.orch.signal(self.wf, "approval/account-manager.received", {
            "decision": "REJECTED", "approved_by": "am_1", "reason": "Pricing concerns",
        })
        self.assertEqual(status["status"], "terminated")
        self.assertIn("approval_rejected", status["reason"])
        self.assertEqual(status["approvals"]["risk_manager"]["decision"], "APPROVED")
        self.assertEqual(status["approvals"]["account_manager"]["decision"], "REJECTED")
        self.assertNotIn("Onboarding Complete", self.titles(self.wf))

    def test_approval_timeout(self):
        self.orch.signal(self.wf, "approval/risk-manager.received",
                         {"decision": "APPROVED", "approved_by": "rm_1"})
        self.clock.advance(7 * DAY + 1)
        self.orch.tick()
        status = self.orch.get_status(self.wf)
        self.assertEqual(status["status"], "timeout")
        self.assertEqual(status["stage"], 6)
        self.assertIn("Account Manager", status["reason"])


class TestStageGates(SagaTestCase):

    def test_overlimit_quote_same_gate(self):
        wf = self.orch.start_workflow("app_1")
        status = self.orch.signal(wf, "form/facility.submitted",
                                  {"form_data": {"mandate_volume": 60_000_000}})
        self.assertIn("OVERLIMIT: Quote Requires Special Approval", self.titles(wf))
        self.assertEqual(status["waiting_on"], ["quote/approved"])
        quote = self.orch.get_events(wf, "quote_generated")[0]["payload"]
        self.assertTrue(quote["is_overlimit"])
        self.assertEqual(quote["amount"], 60_000_000)

    def test_standard_quote(self):
        wf = self.orch.start_workflow("app_1")
        self.orch.signal(wf, *HAPPY_PATH[0])
        self.assertIn("Quote Ready for Approval", self.titles(wf))
        self.assertFalse(self.orch.get_events(wf, "quote_generated")[0]["payload"]["is_overlimit"])

    def test_quote_engine_failure_fails_instance(self):
        self.use(quotes=StaticQuoteEngine(fail=True))
        wf = self.orch.start_workflow("app_1")
        status = self.orch.signal(wf, *HAPPY_PATH[0])
        self.assertEqual(status["status"], "failed")
        self.assertEqual(status["stage"], 2)
        self.assertIn("Quote Generation Failed", self.titles(wf))

    def test_quote_rejected_terminates(self):
        wf = self.orch.start_workflow("app_1")
        self.orch.signal(wf, *HAPPY_PATH[0])
        status = self.orch.signal(wf, "quote/approved", {
            "decision": "REJECTED", "approved_by": "mgr_1", "reason": "Margin too thin",
        })
        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["reason"], "approval_rejected: Margin too thin")

    def test_procurement_always_reviewed(self):
        wf = self.orch.start_workflow("app_1")
        status = self.send_until(wf, stop="risk/procurement.completed")
        self.assertEqual(status["stage"], 3)
        self.assertEqual(status["waiting_on"], ["risk/procurement.completed"])
        self.assertIn("Procurement Review Required", self.titles(wf))
        self.assertIn("FICA Documents Required", self.titles(wf))

    def test_procurement_denied_terminates(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="risk/procurement.completed")
        status = self.orch.signal(wf, "risk/procurement.completed", {
            "decision": {"outcome": "DENIED", "decided_by": "rm_1"},
        })
        self.assertEqual(status["status"], "terminated")
        self.assertTrue(status["reason"].startswith("procurement_denied"))
        self.assertEqual(self.collab.risk.calls, 0)

    def test_ai_block_terminates(self):
        self.use(risk=StaticRiskAnalyzer(
            recommendation="REJECT", confidence_score=95, flags=["sanctions_hit"], is_blocked=True,
        ))
        wf = self.orch.start_workflow("app_1")
        status = self.send_until(wf, stop="risk/decision.received")
        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["stage"], 3)
        self.assertTrue(status["reason"].startswith("compliance_violation"))
        self.assertIn("sanctions_hit", status["reason"])
        record = self.orch.store.get_kill_switch_record(wf)
        self.assertEqual(record.decided_by, "ai_sanctions_agent")

    def test_risk_rejected_terminates(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="risk/decision.received")
        status = self.orch.signal(wf, "risk/decision.received", {
            "decision": {"outcome": "REJECTED", "decided_by": "rm_1", "reason": "Adverse media"},
        })
        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["stage"], 4)
        self.assertIn("Adverse media", status["reason"])

    def test_red_risk_requires_financial_statements(self):
        wf = self.orch.start_workflow("app_1", {"risk_level": "red"})
        status = self.send_until(wf, stop="contract/draft.reviewed")
        self.assertEqual(status["stage"], 4)
        self.assertEqual(status["waiting_on"], ["risk/financial-statements.confirmed"])
        self.assertIn("Financial Statements Required (High-Risk)", self.titles(wf))

        status = self.orch.signal(wf, "risk/financial-statements.confirmed",
                                  {"confirmed_by": "rm_1"})
        self.assertEqual(status["stage"], 5)
        self.assertEqual(status["waiting_on"], ["contract/draft.reviewed"])

    def test_green_risk_skips_financial_statements(self):
        wf = self.orch.start_workflow("app_1", {"risk_level": "green"})
        status = self.send_until(wf, stop="contract/draft.reviewed")
        self.assertEqual(status["stage"], 5)

    def test_request_more_info_proceeds(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="risk/decision.received")
        status = self.orch.signal(wf, "risk/decision.received", {
            "decision": {"outcome": "REQUEST_MORE_INFO", "decided_by": "rm_1"},
        })
        self.assertEqual(status["stage"], 5)


class TestTimeouts(SagaTestCase):

    def test_facility_form_timeout(self):
        wf = self.orch.start_workflow("app_1")
        self.clock.advance(14 * DAY + 1)
        self.assertEqual(self.orch.tick(), [wf])
        status = self.orch.get_status(wf)
        self.assertEqual(status["status"], "timeout")
        self.assertEqual(status["stage"], 2)
        self.assertEqual(status["reason"], "Facility application timeout")
        self.assertEqual(status["waiting_on"], [])
        # Halted instances are not picked up again
        self.clock.advance(30 * DAY)
        self.assertEqual(self.orch.tick(), [])

    def test_procurement_review_timeout(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="risk/procurement.completed")
        self.clock.advance(7 * DAY + 1)
        self.orch.tick()
        status = self.orch.get_status(wf)
        self.assertEqual(status["status"], "timeout")
        self.assertEqual(status["stage"], 3)
        self.assertIsNone(self.orch.store.get_kill_switch_record(wf))


class TestKillSwitch(SagaTestCase):

    def setUp(self):
        super().setUp()
        self.wf = self.orch.start_workflow("app_1")
        self.orch.signal(self.wf, *HAPPY_PATH[0])

    def test_manual_kill_idempotent(self):
        first = self.orch.kill(self.wf, decided_by="ops_1", notes="Fraud suspected")
        second = self.orch.kill(self.wf, decided_by="ops_2", notes="again")
        self.assertEqual(first, second)
        self.assertEqual(first["reason"], "manual_termination")
        self.assertEqual(self.orch.store.count_kill_switch_records(self.wf), 1)
        self.assertEqual(len(self.orch.get_events(self.wf, "kill_switch_executed")), 1)
        self.assertEqual(self.collab.events.names().count("workflow/terminated"), 1)

    def test_kill_cancels_pending_waits(self):
        self.orch.kill(self.wf, decided_by="ops_1")
        status = self.orch.get_status(self.wf)
        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["waiting_on"], [])

        self.clock.advance(60 * DAY)
        self.assertEqual(self.orch.tick(), [])

    def test_signal_after_kill_refused(self):
        self.orch.kill(self.wf, decided_by="ops_1")
        with self.assertRaises(TerminatedError):
            self.orch.signal(self.wf, "quote/approved", {"approved_by": "mgr_1"})
        self.assertEqual(self.orch.store.list_inbox(self.wf, unconsumed_only=True), [])

    def test_resume_after_kill_stays_terminated(self):
        self.orch.kill(self.wf, decided_by="ops_1")
        outcome = self.orch.resume(self.wf)
        self.assertEqual(outcome.status, "terminated")
        self.assertNotIn("Quote Sent for Signature", self.titles(self.wf))

    def test_kill_validation(self):
        with self.assertRaises(ValidationError):
            self.orch.kill(self.wf, reason="bored", decided_by="ops_1")
        with self.assertRaises(ValidationError):
            self.orch.kill(self.wf, decided_by="")
        with self.assertRaises(WorkflowNotFound):
            self.orch.kill("wf_missing", decided_by="ops_1")

    def test_completed_instance_cannot_be_killed(self):
        wf = self.orch.start_workflow("app_2")
        self.send_until(wf)
        with self.assertRaises(IllegalTransition):
            self.orch.kill(wf, decided_by="ops_1")
        self.assertEqual(self.orch.get_status(wf)["status"], "completed")


class KillOnEventSink(InMemoryEventSink):
    """Runs `on_send(workflow_id)` when the named event goes out."""

    def __init__(self, event_name):
        super().__init__()
        self.event_name = event_name
        self.on_send = None

    def send_event(self, name, payload):
        super().send_event(name, payload)
        if name == self.event_name and self.on_send is not None:
            self.on_send(payload["workflow_id"])


class KillDuringCheck(StaticProcurementChecker):
    """Procurement checker whose check triggers a kill before answering."""

    def __init__(self):
        super().__init__()
        self.on_check = None

    def check(self, applicant):
        if self.on_check is not None:
            self.on_check()
        return super().check(applicant)


class TestParallelStreamAbort(SagaTestCase):

    def test_kill_from_other_process_aborts_stage_three(self):
        sink = KillOnEventSink("onboarding/business-type.determined")
        self.use(events=sink)
        peer = self.make_orchestrator(Collaborators())
        self.addCleanup(peer.close)
        sink.on_send = lambda wf: peer.kill(wf, decided_by="ops_2", notes="Fraud ring match")

        wf = self.orch.start_workflow("app_1")
        status = self.send_until(wf, stop="risk/procurement.completed")

        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["stage"], 3)
        self.assertEqual(status["waiting_on"], [])

        stream_a = self.orch.store.get_step(wf, "stream-a-procurement")
        self.assertTrue(stream_a.result["kill_switch_triggered"])
        stream_b = self.orch.store.get_step(wf, "stream-b-fica-request")
        self.assertEqual(stream_b.status, StepStatus.COMPLETED)
        self.assertFalse(stream_b.result["requested"])

        self.assertIsNone(self.orch.store.get_step(wf, "wait-procurement-decision"))
        self.assertEqual(self.collab.procurement.calls, 0)
        self.assertNotIn("Procurement Review Required", self.titles(wf))
        self.assertEqual(self.orch.store.count_kill_switch_records(wf), 1)

    def test_kill_while_stream_a_running(self):
        checker = KillDuringCheck()
        self.use(procurement=checker)
        wf = self.orch.start_workflow("app_1")
        checker.on_check = lambda: self.orch.kill(wf, decided_by="ops_1", notes="Fraud suspected")

        status = self.send_until(wf, stop="risk/procurement.completed")

        self.assertEqual(status["status"], "terminated")
        self.assertEqual(status["stage"], 3)
        self.assertEqual(status["reason"], "manual_termination")
        self.assertNotIn("risk/procurement.completed", status["waiting_on"])
        self.assertIsNone(self.orch.store.get_step(wf, "wait-procurement-decision"))
        self.assertEqual(checker.calls, 1)

        # a late procurement decision is refused and not queued
        with self.assertRaises(TerminatedError):
            self.orch.signal(wf, *HAPPY_PATH[4])
        self.assertEqual(self.orch.store.list_inbox(wf, unconsumed_only=True), [])


class TestSignalValidation(SagaTestCase):

    def test_invalid_payload_leaves_state_untouched(self):
        wf = self.orch.start_workflow("app_1")
        self.orch.signal(wf, *HAPPY_PATH[0])
        before = self.orch.get_status(wf)
        with self.assertRaises(ValidationError):
            self.orch.signal(wf, "quote/approved", {"decision": "APPROVED"})
        self.assertEqual(self.orch.store.list_inbox(wf, unconsumed_only=True), [])
        self.assertEqual(self.orch.get_status(wf), before)

    def test_mismatched_override_subcategory_refused_at_risk_gate(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="risk/decision.received")
        before = self.orch.get_status(wf)
        self.assertIn("risk/decision.received", before["waiting_on"])

        with self.assertRaises(ValidationError):
            self.orch.signal(wf, "risk/decision.received", {"decision": {
                "outcome": "REJECTED", "decided_by": "rm_1",
                "override_category": "MISSING_CONTEXT",
                "override_subcategory": "not_a_subcategory",
            }})
        self.assertEqual(self.orch.store.list_inbox(wf, unconsumed_only=True), [])
        self.assertEqual(self.orch.get_status(wf), before)
        self.assertEqual(self.orch.store.get_feedback(wf), [])

    def test_unknown_workflow(self):
        with self.assertRaises(WorkflowNotFound):
            self.orch.signal("wf_missing", "quote/signed", {"signed_by": "x"})

    def test_empty_applicant_id(self):
        with self.assertRaises(ValidationError):
            self.orch.start_workflow("  ")


class TestCrashRecovery(SagaTestCase):

    def test_resume_replays_without_side_effects(self):
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="document/mandate.submitted")
        self.orch.close()

        fresh = Collaborators()
        self.collab = fresh
        self.orch = self.make_orchestrator(fresh)
        outcome = self.orch.resume(wf)

        self.assertEqual(outcome.status, "awaiting_human")
        self.assertEqual(outcome.details["waiting_on"], ["document/mandate.submitted"])
        self.assertEqual(fresh.credit.calls, 0)
        self.assertEqual(fresh.quotes.calls, 0)
        self.assertEqual(fresh.notifier.sent, [])
        self.assertEqual(fresh.events.sent, [])

        for event, payload in HAPPY_PATH[3:]:
            status = self.orch.signal(wf, event, payload)
        self.assertEqual(status["status"], "completed")
        self.assertEqual(fresh.credit.calls, 0)
        self.assertEqual(fresh.procurement.calls, 1)

    def test_resume_all(self):
        a = self.orch.start_workflow("app_1")
        b = self.orch.start_workflow("app_2")
        self.orch.kill(b, decided_by="ops_1")
        self.assertEqual(self.orch.resume_all(), [a])

    def test_resume_all_is_not_capped_by_listing_page(self):
        started = {self.orch.start_workflow(f"app_{n}") for n in range(5)}
        store = self.orch.store
        list_workflows = store.list_workflows

        def small_pages(status=None, limit=2):
            return list_workflows(status=status, limit=limit)

        with mock.patch.object(store, "list_workflows", side_effect=small_pages):
            self.assertEqual(len(store.list_workflows(status=WorkflowStatus.AWAITING_HUMAN)), 2)
            self.assertEqual(set(self.orch.resume_all()), started)


class TestDivergenceFeedback(SagaTestCase):

    def test_risk_review_emits_divergence(self):
        # Default analyzer recommends MANUAL_REVIEW; an approval is a severity mismatch
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="contract/draft.reviewed")
        logs = self.orch.store.get_feedback(wf)
        self.assertEqual(len(logs), 1)
        self.assertTrue(logs[0].is_divergent)
        self.assertEqual(logs[0].divergence_type, "severity_mismatch")
        self.assertEqual(logs[0].override_category, "OTHER")
        self.assertTrue(logs[0].decision_ref.startswith(f"{wf}:risk-decision:"))
        self.assertIn("ai/feedback.divergence_detected", self.collab.events.names())

    def test_aligned_decision_not_divergent(self):
        self.use(risk=StaticRiskAnalyzer(recommendation="APPROVE", confidence_score=90))
        wf = self.orch.start_workflow("app_1")
        self.send_until(wf, stop="contract/draft.reviewed")
        log = self.orch.store.get_feedback(wf)[0]
        self.assertFalse(log.is_divergent)
        self.assertEqual(log.override_category, "AI_ALIGNED")
        self.assertNotIn("ai/feedback.divergence_detected", self.collab.events.names())

    def test_record_feedback(self):
        wf = self.orch.start_workflow("app_1")
        self.orch.store.record_ai_snapshot(wf, "APPROVE", 90, [])
        result = self.orch.record_feedback(
            wf, "REJECT", "FALSE_NEGATIVE_MISS", "rm_1",
            override_subcategory="hidden_risk", decision_ref="ref-1",
        )
        self.assertTrue(result["is_divergent"])
        self.assertEqual(result["divergence_weight"], 10)
        self.assertEqual(result["divergence_type"], "false_positive")

        again = self.orch.record_feedback(
            wf, "REJECT", "FALSE_NEGATIVE_MISS", "rm_1", decision_ref="ref-1",
        )
        self.assertEqual(again["feedback_id"], result["feedback_id"])
        self.assertEqual(len(self.orch.store.get_feedback(wf)), 1)
        self.assertEqual(self.collab.events.names().count("ai/feedback.divergence_detected"), 1)

    def test_record_feedback_invalid_category(self):
        wf = self.orch.start_workflow("app_1")
        with self.assertRaises(ValidationError):
            self.orch.record_feedback(wf, "APPROVE", "VIBES", "rm_1")


if __name__ == "__main__":
    unittest.main()
