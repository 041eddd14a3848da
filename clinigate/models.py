"""
Core data models for the CliniGate AI safety gateway.

The deterministic rule engine's output (``ExplainabilityRecord``) is the
ground truth every model response is measured against.  The model's text is
never allowed to change a ``Priority``; it is only ever scored, redacted, or
blocked.

DISCLAIMER: This module defines data structures for decision-support
workflows only.  It does not perform clinical assessment.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Priority(str, enum.Enum):
    """Triage priority computed by the external rule engine.

    * ``RED``     -- emergency; urgent referral.
    * ``YELLOW``  -- urgent; treatment and follow-up.
    * ``GREEN``   -- routine; home care.
    * ``UNKNOWN`` -- the engine produced no classification.
    """

    RED = "red"
    YELLOW = "yellow"
    GREEN = "green"
    UNKNOWN = "unknown"


class RiskLevel(str, enum.Enum):
    """Reporting tier for a risk score (used for UI badges)."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class ContradictionType(str, enum.Enum):
    PRIORITY_MISMATCH = "priority_mismatch"
    ACTION_CONFLICT = "action_conflict"
    DATA_INCONSISTENCY = "data_inconsistency"
    SCOPE_VIOLATION = "scope_violation"
    CLINICAL_ERROR = "clinical_error"


class Severity(str, enum.Enum):
    """Severity of a detected contradiction."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(str, enum.Enum):
    PROVIDER = "provider"
    VALIDATION = "validation"
    SAFETY = "safety"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


class ErrorSeverity(str, enum.Enum):
    """Operational severity of a classified failure, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(str, enum.Enum):
    RETRY = "retry"
    FALLBACK = "fallback"
    DEGRADE = "degrade"
    ABORT = "abort"


class PipelineState(str, enum.Enum):
    """Lifecycle states of a single gateway request.

    Terminal states: ``REJECTED``, ``CACHE_HIT``, ``ALLOWED``, ``BLOCKED``,
    ``FAILED``, ``STALE_SERVED`` and ``CANCELLED``.  Each terminal state
    produces exactly one audit record.
    """

    RECEIVED = "RECEIVED"
    SANITIZED = "SANITIZED"
    ADMITTED = "ADMITTED"
    REJECTED = "REJECTED"
    CACHE_HIT = "CACHE_HIT"
    GUARDED = "GUARDED"
    PROVIDER_CALLED = "PROVIDER_CALLED"
    VALIDATED = "VALIDATED"
    SCORED = "SCORED"
    ALLOWED = "ALLOWED"
    BLOCKED = "BLOCKED"
    FAILED = "FAILED"
    STALE_SERVED = "STALE_SERVED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({
    PipelineState.REJECTED,
    PipelineState.CACHE_HIT,
    PipelineState.ALLOWED,
    PipelineState.BLOCKED,
    PipelineState.FAILED,
    PipelineState.STALE_SERVED,
    PipelineState.CANCELLED,
})


class Role(str, enum.Enum):
    """Clinical and administrative roles known to the gateway.

    Role strings arriving from the auth layer that are not listed here are
    still accepted; they simply receive default quotas and no task rights.
    """

    NURSE = "nurse"
    SENIOR_NURSE = "senior-nurse"
    CLINICIAN = "clinician"
    DOCTOR = "doctor"
    RADIOLOGIST = "radiologist"
    DERMATOLOGIST = "dermatologist"
    MANAGER = "manager"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Rule engine output (read-only input)
# ---------------------------------------------------------------------------

class Trigger(BaseModel):
    """A single finding that drove the engine's classification."""

    field_id: str = Field(validation_alias=AliasChoices("field_id", "fieldId"))
    value: Any = None
    clinical_meaning: str = Field(
        default="",
        validation_alias=AliasChoices("clinical_meaning", "clinicalMeaning"),
    )


class RecommendedAction(BaseModel):
    code: str
    justification: str = ""


class ExplainabilityRecord(BaseModel):
    """Deterministic rule-engine output used as ground truth.

    Accepts both the flat shape (``priority``, ``triggers``,
    ``recommended_actions``) and the engine's nested shape
    (``classification.priority``, ``reasoning.triggers``, ``recommendedActions``
    and camelCase trigger keys).
    """

    model_config = {"frozen": True}

    priority: Priority = Field(
        default=Priority.UNKNOWN,
        description="Priority computed by the rule engine.",
    )
    triggers: list[Trigger] = Field(
        default_factory=list,
        description="Ordered findings that produced the priority.",
    )
    recommended_actions: list[RecommendedAction] = Field(
        default_factory=list,
        description="Action codes the engine recommends (e.g. urgent_referral).",
    )

    @model_validator(mode="before")
    @classmethod
    def lift_nested_payload(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        classification = data.pop("classification", None)
        if isinstance(classification, dict) and "priority" not in data:
            data["priority"] = classification.get("priority", Priority.UNKNOWN.value)
        reasoning = data.pop("reasoning", None)
        if isinstance(reasoning, dict) and "triggers" not in data:
            data["triggers"] = reasoning.get("triggers", [])
        for key in ("recommendedActions", "actions"):
            if key in data and "recommended_actions" not in data:
                data["recommended_actions"] = data.pop(key)
        if isinstance(data.get("priority"), str):
            value = data["priority"].lower()
            data["priority"] = value if value in {p.value for p in Priority} else Priority.UNKNOWN.value
        return data

    def action_codes(self) -> set[str]:
        return {action.code for action in self.recommended_actions}


# ---------------------------------------------------------------------------
# Detection and scoring results
# ---------------------------------------------------------------------------

class Contradiction(BaseModel):
    type: ContradictionType
    severity: Severity
    description: str
    resolution: Optional[str] = None


class RiskScore(BaseModel):
    """Weighted risk score for one model response.

    ``level`` is the reporting tier; ``should_block`` and ``should_warn``
    come from the separately configured gate thresholds.
    """

    total: int = Field(default=0, ge=0)
    breakdown: dict[str, int] = Field(default_factory=dict)
    level: RiskLevel = RiskLevel.GREEN
    label: str = "Low Risk"
    should_block: bool = False
    should_warn: bool = False
    factors: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Gateway request / response
# ---------------------------------------------------------------------------

class Principal(BaseModel):
    """Authenticated caller identity supplied by the upstream auth layer."""

    user_id: str
    role: str


class GatewayRequest(BaseModel):
    task: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def resolved_session_id(self) -> Optional[str]:
        session = self.session_id or self.context.get("session_id") or self.context.get("sessionId")
        return str(session) if session else None

    def patient_id(self) -> Optional[str]:
        patient = self.context.get("patient_id") or self.context.get("patientId")
        return str(patient) if patient else None


class ResponseMetadata(BaseModel):
    latency_ms: int = 0
    warnings: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    risk_score: Optional[RiskScore] = None
    contradictions: list[Contradiction] = Field(default_factory=list)
    was_modified: bool = False
    hallucination_flags: list[str] = Field(default_factory=list)
    from_cache: bool = False
    stale: bool = False
    model: Optional[str] = None
    prompt_version: Optional[str] = None
    state: PipelineState = PipelineState.RECEIVED
    session_escalated: bool = False
    session_warning_count: int = 0


class GatewayResult(BaseModel):
    """Terminal outcome of one pipeline run, shaped for the UI contract."""

    success: bool
    request_id: str
    state: PipelineState
    response: Optional[str] = None
    blocked: bool = False
    message: Optional[str] = None
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)
    error: Optional[dict[str, Any]] = None
    status_code: int = 200
    headers: dict[str, str] = Field(default_factory=dict)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.success,
            "response": self.response,
            "request_id": self.request_id,
            "blocked": self.blocked,
            "metadata": self.metadata.model_dump(mode="json"),
        }
        if self.message is not None:
            body["message"] = self.message
        if self.error is not None:
            body["error"] = self.error
        return body
