"""
Onboarding Saga — SOP domain.

Six-stage onboarding of a financial-services client, built on the
primitives in `saga`:

    from onboarding import SagaOrchestrator

    orch = SagaOrchestrator(db_path="onboarding.db")
    wf_id = orch.start_workflow("app_42", {"company_name": "Acme (Pty) Ltd"})
    orch.signal(wf_id, "form/facility.submitted", {"form_data": {...}})
    orch.get_status(wf_id)
"""

from onboarding.runtime import SagaOrchestrator
from onboarding.types import Stage, WorkflowStatus

__all__ = ["SagaOrchestrator", "Stage", "WorkflowStatus"]
