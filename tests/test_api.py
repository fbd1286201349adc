"""
Onboarding Saga — API Tests

Model validation runs without FastAPI. Endpoint tests go through
TestClient against a temp-database orchestrator and skip when FastAPI is
not installed.
"""

import os
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from api.models import FeedbackRequest, KillRequest, WorkflowStart, WorkflowStarted


# ═════════════════════════════════════════════════════════════════
# Request Models
# ═════════════════════════════════════════════════════════════════

class TestModels(unittest.TestCase):

    def test_workflow_start(self):
        self.assertEqual(WorkflowStart("app_1", {"risk_level": "amber"}).validate(), [])
        self.assertTrue(WorkflowStart("").validate())
        self.assertTrue(WorkflowStart("app_1", {"risk_level": "purple"}).validate())
        self.assertTrue(WorkflowStart("app_1", ["not", "a", "dict"]).validate())

    def test_workflow_started_to_dict(self):
        d = WorkflowStarted("wf_1", "app_1", "awaiting_human", 2).to_dict()
        self.assertEqual(d["stage"], 2)

    def test_kill_request(self):
        self.assertEqual(KillRequest("ops_1").validate(), [])
        self.assertTrue(KillRequest("").validate())
        self.assertTrue(KillRequest("ops_1", reason="bored").validate())

    def test_feedback_request(self):
        ok = FeedbackRequest("APPROVE", "FALSE_POSITIVE_FLAG", "rm_1", "name_collision")
        self.assertEqual(ok.validate(), [])
        bad_sub = FeedbackRequest("APPROVE", "FALSE_POSITIVE_FLAG", "rm_1", "score_too_high")
        self.assertEqual(len(bad_sub.validate()), 1)
        self.assertTrue(FeedbackRequest("", "OTHER", "").validate())
        self.assertTrue(FeedbackRequest("APPROVE", "VIBES", "rm_1").validate())


# ═════════════════════════════════════════════════════════════════
# Endpoints
# ═════════════════════════════════════════════════════════════════

class TestEndpoints(unittest.TestCase):

    def setUp(self):
        try:
            from fastapi.testclient import TestClient
        except ImportError:
            self.skipTest("fastapi not installed")

        from api.server import create_app
        from onboarding.runtime import SagaOrchestrator

        self.db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self.db.close()
        self.orch = SagaOrchestrator(self.db.name, sleep_fn=lambda s: None)
        self.client = TestClient(create_app(orchestrator=self.orch))

    def tearDown(self):
        self.orch.close()
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.db.name + suffix):
                os.unlink(self.db.name + suffix)

    def start(self, applicant_id="app_1"):
        resp = self.client.post("/v1/workflows", json={"applicant_id": applicant_id})
        self.assertEqual(resp.status_code, 201)
        return resp.json()["workflow_id"]

    def test_handlers_take_the_raw_request(self):
        import inspect

        from fastapi import Request
        from fastapi.routing import APIRoute

        posts = [r for r in self.client.app.routes
                 if isinstance(r, APIRoute) and "POST" in r.methods and r.path != "/v1/tick"]
        self.assertTrue(posts)
        for route in posts:
            params = inspect.signature(route.endpoint).parameters
            self.assertIs(params["request"].annotation, Request, route.path)

    def test_start(self):
        resp = self.client.post("/v1/workflows", json={
            "applicant_id": "app_1", "applicant": {"company_name": "Acme", "risk_level": "red"},
        })
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["applicant_id"], "app_1")
        self.assertEqual(body["stage"], 2)
        self.assertEqual(body["status"], "awaiting_human")

    def test_start_invalid(self):
        resp = self.client.post("/v1/workflows", json={"applicant_id": ""})
        self.assertEqual(resp.status_code, 422)
        resp = self.client.post("/v1/workflows", json=["app_1"])
        self.assertEqual(resp.status_code, 400)

    def test_status_and_not_found(self):
        wf = self.start()
        resp = self.client.get(f"/v1/workflows/{wf}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["waiting_on"], ["form/facility.submitted"])
        self.assertEqual(self.client.get("/v1/workflows/wf_missing").status_code, 404)

    def test_signal_with_slashed_event_name(self):
        wf = self.start()
        resp = self.client.post(
            f"/v1/workflows/{wf}/signals/form/facility.submitted",
            json={"form_data": {"mandate_type": "EFT"}},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["waiting_on"], ["quote/approved"])

    def test_signal_validation_error(self):
        wf = self.start()
        resp = self.client.post(f"/v1/workflows/{wf}/signals/quote/approved", json={})
        self.assertEqual(resp.status_code, 422)
        body = resp.json()
        self.assertEqual(body["event"], "quote/approved")
        self.assertTrue(any(e.startswith("approved_by") for e in body["errors"]))

        resp = self.client.post(f"/v1/workflows/{wf}/signals/quote/teleported", json={})
        self.assertEqual(resp.status_code, 422)

    def test_kill_then_signal_conflict(self):
        wf = self.start()
        resp = self.client.post(f"/v1/workflows/{wf}/kill",
                                json={"decided_by": "ops_1", "notes": "duplicate application"})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["reason"], "manual_termination")

        resp = self.client.post(f"/v1/workflows/{wf}/signals/form/facility.submitted", json={})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["workflow_id"], wf)

        resp = self.client.post(f"/v1/workflows/{wf}/kill", json={"decided_by": ""})
        self.assertEqual(resp.status_code, 422)

    def test_events_with_chain_check(self):
        wf = self.start()
        resp = self.client.get(f"/v1/workflows/{wf}/events")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["valid"])
        types = [e["event_type"] for e in body["events"]]
        self.assertIn("workflow_started", types)

        resp = self.client.get(f"/v1/workflows/{wf}/events", params={"event_type": "stage_change"})
        self.assertTrue(all(e["event_type"] == "stage_change" for e in resp.json()["events"]))

    def test_feedback(self):
        wf = self.start()
        resp = self.client.post(f"/v1/workflows/{wf}/feedback", json={
            "human_outcome": "REJECT", "override_category": "MISSING_CONTEXT",
            "decided_by": "rm_1", "decision_ref": "ref-1",
        })
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.json()["is_divergent"])

        resp = self.client.post(f"/v1/workflows/{wf}/feedback", json={
            "human_outcome": "REJECT", "override_category": "VIBES", "decided_by": "rm_1",
        })
        self.assertEqual(resp.status_code, 422)

    def test_tick(self):
        self.start()
        resp = self.client.post("/v1/tick")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"driven": [], "count": 0})

    def test_health_and_ready(self):
        self.assertEqual(self.client.get("/health").json()["status"], "ok")
        resp = self.client.get("/ready")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")


if __name__ == "__main__":
    unittest.main()
