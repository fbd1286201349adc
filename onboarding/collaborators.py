"""
Onboarding Saga — External Collaborators

Contracts for everything the saga consumes but does not own: notification
delivery, outbound events, ITC credit checks, quote generation, the
procurement check and the AI risk analyzer. Concrete providers are out of
scope; the in-memory implementations here are deterministic and record
every call so tests can assert on them.

Collaborator I/O failures should surface as TransientError (or
ConnectionError / TimeoutError); the step executor retries those.
"""

from __future__ import annotations

import abc
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from onboarding.types import Applicant


# ─── Notifications & Events ─────────────────────────────────────────

class Notifier(abc.ABC):
    @abc.abstractmethod
    def notify(
        self,
        workflow_id: str,
        applicant_id: str,
        type: str,
        title: str,
        message: str,
        actionable: bool = False,
    ) -> None: ...


class EventSink(abc.ABC):
    @abc.abstractmethod
    def send_event(self, name: str, payload: dict[str, Any]) -> None: ...


@dataclass
class Notification:
    workflow_id: str
    applicant_id: str
    type: str
    title: str
    message: str
    actionable: bool
    created_at: float = field(default_factory=time.time)


class InMemoryNotifier(Notifier):
    def __init__(self):
        self._lock = threading.Lock()
        self.sent: list[Notification] = []

    def notify(self, workflow_id, applicant_id, type, title, message, actionable=False):
        with self._lock:
            self.sent.append(Notification(
                workflow_id, applicant_id, type, title, message, actionable,
            ))

    def titles(self, workflow_id: str | None = None) -> list[str]:
        return [n.title for n in self.sent if workflow_id in (None, n.workflow_id)]


class InMemoryEventSink(EventSink):
    def __init__(self):
        self._lock = threading.Lock()
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def send_event(self, name: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self.sent.append((name, dict(payload)))

    def names(self) -> list[str]:
        return [name for name, _ in self.sent]


# ─── Checks & Analysis ──────────────────────────────────────────────

class CreditChecker(abc.ABC):
    @abc.abstractmethod
    def check(self, applicant: Applicant) -> dict[str, Any]:
        """Return {credit_score, recommendation, passed}."""


class QuoteEngine(abc.ABC):
    @abc.abstractmethod
    def generate(self, applicant: Applicant, mandate: dict[str, Any]) -> dict[str, Any]:
        """Return {success, quote: {quote_id, amount, terms} | None, error}."""


class ProcurementChecker(abc.ABC):
    @abc.abstractmethod
    def check(self, applicant: Applicant) -> dict[str, Any]:
        """Return {risk_score, anomalies, recommended_action}."""


class RiskAnalyzer(abc.ABC):
    @abc.abstractmethod
    def analyze(self, applicant_data: dict[str, Any]) -> dict[str, Any]:
        """
        Return {recommendation, confidence_score, flags, is_blocked}.

        Only the shape matters; provider identity is irrelevant.
        """


class StaticCreditChecker(CreditChecker):
    def __init__(self, credit_score: int = 720, threshold: int = 600):
        self.credit_score = credit_score
        self.threshold = threshold
        self.calls = 0

    def check(self, applicant: Applicant) -> dict[str, Any]:
        self.calls += 1
        passed = self.credit_score >= self.threshold
        return {
            "credit_score": self.credit_score,
            "recommendation": "APPROVE" if passed else "MANUAL_REVIEW",
            "passed": passed,
        }


class StaticQuoteEngine(QuoteEngine):
    """
    Quotes the declared mandate volume, or `amount` when no volume was
    given. fail=True simulates a provider that cannot price the facility.
    """

    def __init__(self, amount: int = 15_000_000, fail: bool = False, error: str = ""):
        self.amount = amount
        self.fail = fail
        self.error = error or "Quote engine could not price this facility"
        self.calls = 0

    def generate(self, applicant: Applicant, mandate: dict[str, Any]) -> dict[str, Any]:
        self.calls += 1
        if self.fail:
            return {"success": False, "quote": None, "error": self.error}
        amount = mandate.get("mandate_volume") or self.amount
        return {
            "success": True,
            "quote": {
                "quote_id": f"q_{uuid.uuid4().hex[:10]}",
                "amount": int(amount),
                "terms": f"{mandate.get('mandate_type', 'MIXED')} collection facility, 12 months",
            },
            "error": None,
        }


class StaticProcurementChecker(ProcurementChecker):
    def __init__(self, risk_score: int = 35, anomalies: list[str] | None = None,
                 recommended_action: str = "CLEAR"):
        self.risk_score = risk_score
        self.anomalies = anomalies or []
        self.recommended_action = recommended_action
        self.calls = 0

    def check(self, applicant: Applicant) -> dict[str, Any]:
        self.calls += 1
        return {
            "risk_score": self.risk_score,
            "anomalies": list(self.anomalies),
            "recommended_action": self.recommended_action,
        }


class StaticRiskAnalyzer(RiskAnalyzer):
    def __init__(self, recommendation: str = "MANUAL_REVIEW", confidence_score: float = 65,
                 flags: list[str] | None = None, is_blocked: bool = False):
        self.recommendation = recommendation
        self.confidence_score = confidence_score
        self.flags = flags or []
        self.is_blocked = is_blocked
        self.calls = 0

    def analyze(self, applicant_data: dict[str, Any]) -> dict[str, Any]:
        self.calls += 1
        return {
            "recommendation": self.recommendation,
            "confidence_score": self.confidence_score,
            "flags": list(self.flags),
            "is_blocked": self.is_blocked,
        }


# ─── Document Requirements ──────────────────────────────────────────

@dataclass(frozen=True)
class DocumentRequirement:
    id: str
    name: str
    description: str
    required: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "name": self.name,
            "description": self.description, "required": self.required,
        }


_COMMON_DOCS = [
    DocumentRequirement("bank_statements", "Bank Statements", "Last 3 months of bank statements"),
    DocumentRequirement("proof_of_address", "Proof of Address", "Not older than 3 months"),
    DocumentRequirement("director_ids", "Director IDs", "Certified ID copies of all directors"),
]

_BUSINESS_DOCS: dict[str, list[DocumentRequirement]] = {
    "company": [
        DocumentRequirement("cipc_registration", "CIPC Registration", "Company registration certificate"),
        DocumentRequirement("share_register", "Share Register", "Current shareholding", required=False),
    ],
    "sole_proprietor": [
        DocumentRequirement("owner_id", "Owner ID", "Certified ID of the proprietor"),
    ],
    "partnership": [
        DocumentRequirement("partnership_agreement", "Partnership Agreement", "Signed agreement"),
    ],
    "trust": [
        DocumentRequirement("trust_deed", "Trust Deed", "Registered trust deed"),
        DocumentRequirement("letters_of_authority", "Letters of Authority", "Master's letters of authority"),
    ],
    "npo": [
        DocumentRequirement("npo_certificate", "NPO Certificate", "NPO registration certificate"),
        DocumentRequirement("constitution", "Constitution", "Signed constitution"),
    ],
}

_REGULATED_INDUSTRIES = {"financial_services", "gambling", "crypto"}

_ENTITY_TYPE_MAP = {
    "pty_ltd": "company", "ltd": "company", "company": "company", "cc": "company",
    "sole_prop": "sole_proprietor", "sole_proprietor": "sole_proprietor",
    "partnership": "partnership", "trust": "trust", "npo": "npo",
}


def determine_business_type(form_data: dict[str, Any]) -> str:
    """Business type declared on the facility application."""
    declared = str(form_data.get("business_type") or "").lower().strip()
    return _ENTITY_TYPE_MAP.get(declared, "company")


def resolve_business_type(entity_type: str | None, declared: str) -> str:
    """Registered entity type wins over the declared business type."""
    if entity_type:
        mapped = _ENTITY_TYPE_MAP.get(entity_type.lower().strip())
        if mapped:
            return mapped
    return declared


def get_document_requirements(business_type: str, industry: str | None = None) -> list[DocumentRequirement]:
    docs = list(_COMMON_DOCS) + list(_BUSINESS_DOCS.get(business_type, _BUSINESS_DOCS["company"]))
    if industry and industry.lower() in _REGULATED_INDUSTRIES:
        docs.append(DocumentRequirement(
            "regulator_license", "Regulator License", f"Operating license for {industry}",
        ))
    return docs


# ─── Bundle ─────────────────────────────────────────────────────────

@dataclass
class Collaborators:
    notifier: Notifier = field(default_factory=InMemoryNotifier)
    events: EventSink = field(default_factory=InMemoryEventSink)
    credit: CreditChecker = field(default_factory=StaticCreditChecker)
    quotes: QuoteEngine = field(default_factory=StaticQuoteEngine)
    procurement: ProcurementChecker = field(default_factory=StaticProcurementChecker)
    risk: RiskAnalyzer = field(default_factory=StaticRiskAnalyzer)
