"""
Gateway Policy -- Configurable Safety Rule Tables for CliniGate.

Every heuristic the gateway applies (deny/warning phrase tables, priority
keyword sets, injection and PHI patterns, risk weights, rate limits, cache
TTLs, alert thresholds, recovery strategies) is expressed as a validated
policy object rather than a hard-coded constant.  Clinical safety teams can
tighten or relax a rule table by editing a YAML document; no code changes
or redeploys are required.

Two layers of configuration exist:

* ``GatewayPolicy`` -- the safety and governance rule tables, loaded from
  YAML via ``load_policy_from_yaml()`` and merged over ``DEFAULT_POLICY``.
* ``Settings`` -- process-level settings (provider URL, log format, policy
  path) read from ``CLINIGATE_*`` environment variables.

DISCLAIMER: This module configures decision-support safety policies only.
It does not define clinical protocols or diagnostic criteria.
"""

from __future__ import annotations

import copy
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clinigate.models import ErrorCategory, RecoveryStrategy, Severity


def _check_patterns(patterns: list[str]) -> list[str]:
    for pattern in patterns:
        try:
            re.compile(pattern)
        except re.error as exc:
            raise ValueError(f"Invalid regular expression {pattern!r}: {exc}") from exc
    return patterns


# ---------------------------------------------------------------------------
# Input sanitizer policy
# ---------------------------------------------------------------------------

class SanitizerPolicy(BaseModel):
    """Patterns stripped or redacted from clinician free text."""

    max_length: int = Field(default=2000, gt=0)
    removed_placeholder: str = "[REMOVED]"
    redaction_marker: str = "[REDACTED]"
    injection_patterns: list[str] = Field(
        default_factory=lambda: [
            r"ignore\s+(all\s+)?(previous|prior|above)\s+instructions?",
            r"forget\s+(all\s+)?(previous|prior|above)\s+instructions?",
            r"disregard\s+(all\s+)?(previous|prior|above)\s+instructions?",
            r"you\s+are\s+now\s+",
            r"act\s+as\s+(if\s+)?",
            r"pretend\s+(to\s+be|you\s+are)",
            r"\b(system|assistant|user)\s*:",
            r"\[(SYSTEM|ADMIN|OVERRIDE)\]",
            r"new\s+instructions?\s*:",
            r"(print|show|repeat|output)\s+(your\s+)?(system\s+)?prompt",
            r"<\|.*?\|>",
            r"\{\{.*?\}\}",
            r"<%.*?%>",
        ],
        description="Prompt-injection patterns (role overrides, delimiters, template tokens).",
    )
    phi_patterns: dict[str, str] = Field(
        default_factory=lambda: {
            "name": r"\b[A-Z][a-z]+\s+[A-Z][a-z]+\b",
            "dob": r"(?i:\b(DOB|date\s+of\s+birth)\s*:?\s*)\d{1,4}[-/]\d{1,2}[-/]\d{1,4}\b",
            "date": r"\b\d{1,2}[-/]\d{1,2}[-/]\d{2,4}\b",
            "phone": r"\b(\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b",
            "email": r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
            "mrn": r"(?i:\b(MRN|medical\s+record(\s+number)?)\s*[:#]?\s*)[A-Z0-9-]{4,}\b",
            "ssn": r"\b\d{3}-\d{2}-\d{4}\b",
            "address": r"\b\d+\s+[A-Za-z]+\s+(Street|St|Avenue|Ave|Road|Rd|Lane|Ln|Drive|Dr)\b",
        },
        description="Likely-PHI patterns, case-sensitive where capitalization matters.",
    )
    markup_patterns: list[str] = Field(
        default_factory=lambda: [
            r"<script\b[^>]*>.*?</script\s*>",
            r"<iframe\b[^>]*>.*?</iframe\s*>",
            r"<(script|iframe)\b[^>]*>",
            r"javascript\s*:",
            r"\bon\w+\s*=",
        ],
    )

    @field_validator("injection_patterns", "markup_patterns")
    @classmethod
    def patterns_compile(cls, v: list[str]) -> list[str]:
        return _check_patterns(v)

    @field_validator("phi_patterns")
    @classmethod
    def phi_patterns_compile(cls, v: dict[str, str]) -> dict[str, str]:
        _check_patterns(list(v.values()))
        return v


# ---------------------------------------------------------------------------
# Task configuration
# ---------------------------------------------------------------------------

class TaskConfig(BaseModel):
    """Per-task prompt and provider parameters.

    ``template`` placeholders use ``{{key}}`` syntax and are filled from the
    request context; keys missing from the context render as
    "not recorded".
    """

    description: str
    max_tokens: int = Field(default=500, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)
    max_words: int = Field(default=250, gt=0)
    prompt_version: str = "v1"
    clinical: bool = False
    template: str = (
        "Task: {{task_description}}\n"
        "Triage priority (computed by the rule engine): {{priority}}\n"
        "Patient age (months): {{age_months}}\n"
        "Recorded findings: {{findings}}"
    )


def _default_tasks() -> dict[str, TaskConfig]:
    return {
        "explain_triage": TaskConfig(
            description="Explain triage classification to nurse",
            max_tokens=500, temperature=0.2, max_words=250, clinical=True,
            template=(
                "Explain, in plain language for a nurse, why the rule engine "
                "classified this child as {{priority}}.\n"
                "Patient age (months): {{age_months}}\n"
                "Recorded findings: {{findings}}\n"
                "Recommended actions: {{actions}}"
            ),
        ),
        "review_treatment": TaskConfig(
            description="Review treatment plan for completeness",
            max_tokens=600, temperature=0.2, max_words=300, clinical=True,
        ),
        "imci_classification": TaskConfig(
            description="Summarize the IMCI classification outcome",
            max_tokens=400, temperature=0.1, max_words=200,
        ),
        "clinical_assistance": TaskConfig(
            description="General clinical documentation assistance",
            max_tokens=500, temperature=0.3, max_words=250,
        ),
        "emergency_assessment": TaskConfig(
            description="Summarize emergency findings for immediate handover",
            max_tokens=400, temperature=0.1, max_words=200, clinical=True,
        ),
        "critical_alert": TaskConfig(
            description="Draft a critical alert message for the care team",
            max_tokens=200, temperature=0.1, max_words=100, clinical=True,
        ),
        "caregiver_summary": TaskConfig(
            description="Generate plain-language summary for caregivers",
            max_tokens=400, temperature=0.3, max_words=200,
        ),
        "symptom_checklist": TaskConfig(
            description="Generate symptom checklist based on chief complaint",
            max_tokens=300, temperature=0.2, max_words=150,
        ),
        "clinical_summary": TaskConfig(
            description="Generate clinical summary",
            max_tokens=600, temperature=0.3, max_words=300,
        ),
        "handoff_report": TaskConfig(
            description="Generate SBAR-style handoff report",
            max_tokens=700, temperature=0.3, max_words=350,
        ),
    }


def _default_role_tasks() -> dict[str, list[str]]:
    nurse = ["explain_triage", "caregiver_summary", "symptom_checklist",
             "imci_classification", "clinical_assistance", "critical_alert"]
    return {
        "nurse": nurse,
        "senior-nurse": nurse + ["review_treatment"],
        "clinician": nurse + ["review_treatment", "clinical_summary"],
        "doctor": ["explain_triage", "review_treatment", "clinical_summary",
                   "handoff_report", "emergency_assessment", "critical_alert",
                   "clinical_assistance"],
        "manager": [],
        "admin": [],
    }


# ---------------------------------------------------------------------------
# Rate limit policy
# ---------------------------------------------------------------------------

class RateLimitPolicy(BaseModel):
    """Fixed-window admission limits.

    Task limits are per user per minute; quotas are per user per day and
    depend on role; the global limit is shared by all callers per minute.
    """

    task_limits: dict[str, int] = Field(
        default_factory=lambda: {
            "explain_triage": 30,
            "review_treatment": 20,
            "imci_classification": 40,
            "clinical_assistance": 30,
        },
    )
    default_task_limit: int = Field(default=20, ge=0)
    role_quotas: dict[str, int] = Field(
        default_factory=lambda: {
            "doctor": 500,
            "nurse": 300,
            "senior-nurse": 400,
            "clinician": 400,
            "admin": 100,
        },
    )
    default_quota: int = Field(default=100, ge=0)
    global_limit: int = Field(default=200, ge=0)
    minute_ttl_seconds: int = Field(default=120, gt=0)
    day_ttl_seconds: int = Field(default=86400, gt=0)


# ---------------------------------------------------------------------------
# Cache policy
# ---------------------------------------------------------------------------

class CachePolicy(BaseModel):
    prefix: str = "ai_response:"
    default_ttl_seconds: int = Field(default=3600, gt=0)
    task_ttls: dict[str, int] = Field(
        default_factory=lambda: {
            "explain_triage": 1800,
            "review_treatment": 3600,
            "imci_classification": 7200,
            "clinical_assistance": 1800,
        },
    )
    non_cacheable_tasks: list[str] = Field(
        default_factory=lambda: ["emergency_assessment", "critical_alert"],
        description="Tasks never served from or written to the cache.",
    )
    volatile_fields: list[str] = Field(
        default_factory=lambda: ["timestamp", "request_id", "session_id", "user_id", "_token"],
        description="Context keys excluded from the cache key.",
    )
    version_ttl_seconds: int = Field(default=30 * 86400, gt=0)
    stale_grace_seconds: int = Field(
        default=900,
        ge=0,
        description="How long past expiry an entry may still be served when the provider is down.",
    )


# ---------------------------------------------------------------------------
# Output validator policy
# ---------------------------------------------------------------------------

class OutputPolicy(BaseModel):
    deny_phrases: list[str] = Field(
        default_factory=lambda: [
            "diagnose", "prescribe", "dosage", "replace doctor",
            "definitive treatment", "discharge patient", "you should",
            "you must", "I recommend", "the treatment is",
            "take this medication", "stop taking",
        ],
        description="Directive or clinical-decision phrases that are redacted and invalidate the output.",
    )
    warning_phrases: list[str] = Field(
        default_factory=lambda: [
            "consider", "may indicate", "possible", "suggestive of",
            "could be", "might be",
        ],
    )
    hallucination_patterns: dict[str, str] = Field(
        default_factory=lambda: {
            "specific_dosage": r"specific\s+dosage\s+of\s+\d+",
            "exact_quantity": r"exactly\s+\d+\s*(mg|ml|tablets?)",
            "overconfident_recommendation": r"\bI\s+(definitely|certainly|absolutely)\s+(recommend|prescribe|diagnose)",
            "definitive_diagnosis": r"the\s+(patient|child)\s+(definitely|certainly)\s+has",
            "fabricated_reference": r"according\s+to\s+(study|research|guidelines)\s+\d{4}",
            "absolute_certainty": r"\b(definitely|certainly)\b",
        },
    )
    redaction_marker: str = "[REDACTED]"
    modification_note: str = (
        "[Note: This response was modified by the safety system. "
        "Please verify all clinical decisions with appropriate medical staff.]"
    )
    framing_header: str = "**Clinical Decision Support - {description}**"
    framing_footer: str = (
        "---\n*This is clinical decision support information. "
        "All decisions should be verified by qualified medical staff.*"
    )
    block_on_deny_match: bool = True
    non_clinical_roles: list[str] = Field(default_factory=lambda: ["manager"])
    clinical_terms: list[str] = Field(
        default_factory=lambda: ["diagnosis", "treatment", "medication", "dose", "triage"],
        description="Terms a non-clinical role must never receive.",
    )

    @field_validator("hallucination_patterns")
    @classmethod
    def hallucination_patterns_compile(cls, v: dict[str, str]) -> dict[str, str]:
        _check_patterns(list(v.values()))
        return v


# ---------------------------------------------------------------------------
# Contradiction policy
# ---------------------------------------------------------------------------

class ActionConflictRule(BaseModel):
    """Model narrative that conflicts with an engine action code."""

    action_keywords: list[str] = Field(
        ..., description="Substrings matched against lower-cased action codes."
    )
    output_pattern: str
    severity: Severity
    description: str
    resolution: str = ""

    @field_validator("output_pattern")
    @classmethod
    def pattern_compiles(cls, v: str) -> str:
        _check_patterns([v])
        return v


class FindingDenialRule(BaseModel):
    """Model asserting absence of a finding the engine recorded as present."""

    field_keywords: list[str]
    denial_patterns: list[str]
    severity: Severity
    description: str
    resolution: str = ""

    @field_validator("denial_patterns")
    @classmethod
    def patterns_compile(cls, v: list[str]) -> list[str]:
        return _check_patterns(v)


class ContradictionPolicy(BaseModel):
    priority_keywords: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "red": [
                r"\b(red|emergency|critical|immediate|urgent\s+referral|life-threatening)\b",
                r"\bsevere\s+\w+\s+(requiring|needs?)\s+(immediate|urgent)\b",
                r"\bimmediate\s+(referral|action|attention)\s+required\b",
                r"\bthis\s+is\s+an?\s+emergency\b",
            ],
            "yellow": [
                r"\b(yellow|urgent|prompt|moderate)\b",
                r"\brequires?\s+(prompt|urgent)\s+(attention|follow-up)\b",
                r"\bshould\s+be\s+seen\s+(soon|promptly)\b",
                r"\bfollow-up\s+(in\s+)?\d+\s+days?\b",
            ],
            "green": [
                r"\b(green|non-urgent|mild|minor|stable)\b",
                r"\bhome\s+care\b",
                r"\bcan\s+be\s+managed\s+at\s+home\b",
                r"\bno\s+urgent\s+(action|intervention)\s+(needed|required)\b",
                r"\bself-limiting\b",
            ],
        },
        description="Keyword tables checked in order red, yellow, green; first match wins.",
    )
    priority_resolution: str = "Trust the system-calculated priority based on WHO IMCI rules"
    action_rules: list[ActionConflictRule] = Field(
        default_factory=lambda: [
            ActionConflictRule(
                action_keywords=["urgent_referral"],
                output_pattern=r"\b(home\s+care|can\s+go\s+home|discharge|no\s+referral)\b",
                severity=Severity.CRITICAL,
                description="AI suggests home care but system recommends urgent referral",
                resolution="Follow system recommendation for urgent referral",
            ),
            ActionConflictRule(
                action_keywords=["antibiotic", "first_dose"],
                output_pattern=r"\bno\s+(need\s+for\s+)?antibiotics?\b",
                severity=Severity.ERROR,
                description="AI suggests no antibiotics but system recommends them",
                resolution="Follow system recommendation based on WHO IMCI guidelines",
            ),
            ActionConflictRule(
                action_keywords=["follow_up"],
                output_pattern=r"\bno\s+(need\s+for\s+)?follow-?up\b",
                severity=Severity.WARNING,
                description="AI suggests no follow-up but system recommends it",
                resolution="Follow system recommendation for follow-up",
            ),
        ],
    )
    finding_rules: list[FindingDenialRule] = Field(
        default_factory=lambda: [
            FindingDenialRule(
                field_keywords=["cyanosis"],
                denial_patterns=[
                    r"\bno\s+cyanosis\b",
                    r"\bcyanosis\s+(is\s+)?(absent|not\s+(present|observed))\b",
                ],
                severity=Severity.ERROR,
                description="AI states no cyanosis but it was observed in assessment",
                resolution="Review assessment data - cyanosis was recorded as present",
            ),
            FindingDenialRule(
                field_keywords=["distress", "retraction"],
                denial_patterns=[
                    r"\bno\s+(respiratory\s+)?distress\b",
                    r"\b(retractions?|indrawing)\s+(is\s+)?(absent|not\s+(present|observed))\b",
                ],
                severity=Severity.ERROR,
                description="AI states no respiratory distress but it was observed",
                resolution="Review assessment data - respiratory distress was recorded",
            ),
            FindingDenialRule(
                field_keywords=["danger", "lethargic", "unconscious"],
                denial_patterns=[r"\bno\s+danger\s+signs?\b"],
                severity=Severity.CRITICAL,
                description="AI states no danger signs but they were observed",
                resolution="Review assessment data - danger signs were recorded",
            ),
        ],
    )
    present_values: list[str] = Field(default_factory=lambda: ["present", "true", "yes"])
    diagnosis_patterns: list[str] = Field(
        default_factory=lambda: [
            r"\bdiagnosis\s+(is|confirmed|shows)\s*:",
            r"\bthe\s+(child|patient)\s+has\s+\w+\s+(infection|disease|condition)\b",
            r"\bconfirmed\s+diagnosis\s+of\b",
        ],
    )
    prescription_patterns: list[str] = Field(
        default_factory=lambda: [
            r"\bprescribe\s+\w+",
            r"\bgive\s+\d+\s?mg\b",
            r"\bdosage\s+(of|is)\s+\d+",
        ],
    )
    respiratory_rate_pattern: str = (
        r"\b(respiratory\s+rate|breathing)\s+(of|above|over)\s+(\d+)\s+(is\s+)?normal\b"
    )
    respiratory_rate_upper_normal: int = Field(default=40, gt=0)

    @field_validator("diagnosis_patterns", "prescription_patterns")
    @classmethod
    def patterns_compile(cls, v: list[str]) -> list[str]:
        return _check_patterns(v)

    @field_validator("priority_keywords")
    @classmethod
    def keywords_compile(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for patterns in v.values():
            _check_patterns(patterns)
        return v


# ---------------------------------------------------------------------------
# Risk scoring policy
# ---------------------------------------------------------------------------

class RiskPolicy(BaseModel):
    """Weights and thresholds for the risk scorer.

    The reporting tier (``green_max``/``yellow_max``) and the gate
    (``warn_threshold``/``block_threshold``) are independent.  Tuning badge
    colours never changes what gets blocked.
    """

    weights: dict[str, int] = Field(
        default_factory=lambda: {
            "rule_conflict": 5,
            "critical_conflict": 3,
            "dosage_mention": 5,
            "diagnosis_claim": 3,
            "treatment_recommendation": 4,
            "override_attempt": 5,
            "absolutes": 2,
            "missing_data": 1,
        },
    )
    patterns: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "dosage_mention": [
                r"\b\d+\s?(mg|ml|kg|g|mcg|units?|IU)\b",
                r"\b\d+\s?(milligrams?|milliliters?|kilograms?|grams?|micrograms?)\b",
                r"dosage\s+(of|is|should be)\s+\d+",
                r"give\s+\d+\s?(mg|ml|kg)",
                r"\d+\s?(mg|ml)/kg",
            ],
            "diagnosis_claim": [
                r"\bdiagnosis\s+(is|indicates|shows|confirms)\b",
                r"\bpatient\s+(has|is\s+suffering\s+from)\s+\w+",
                r"\bthis\s+is\s+(a|an)\s+\w+\s+(infection|disease|condition)\b",
                r"\bconfirmed\s+\w+\s+(infection|disease|diagnosis)\b",
                r"\bthe\s+child\s+has\s+\w+",
            ],
            "treatment_recommendation": [
                r"\bshould\s+(take|be\s+given|receive)\b",
                r"\bmust\s+(take|be\s+given|receive)\b",
                r"\bneeds?\s+to\s+take\b",
                r"\bI\s+recommend\s+(giving|prescribing|starting)\b",
                r"\bstart\s+(on|treatment\s+with)\b",
                r"\bprescribe\s+\w+",
            ],
            "override_attempt": [
                r"\bchange\s+(the\s+)?triage\b",
                r"\boverride\s+(the\s+)?(classification|priority|triage)\b",
                r"\bignore\s+(the\s+)?(system|rule|classification)\b",
                r"\bdifferent\s+(priority|classification)\s+(than|then)\b",
                r"\bshould\s+be\s+(red|yellow|green)\s+instead\b",
            ],
            "absolutes": [
                r"\bwill\s+(die|not\s+survive|definitely)\b",
                r"\bdefinitely\b",
                r"\bcertainly\b",
                r"\bguaranteed\b",
                r"\bno\s+risk\b",
                r"\b100%\s+(sure|certain|safe)",
                r"\balways\s+(safe|dangerous|fatal)\b",
                r"\bnever\s+(safe|dangerous|fatal)\b",
            ],
            "missing_data": [
                r"\bI\s+don't\s+have\s+(enough|sufficient|complete)\b",
                r"\bmissing\s+(data|information|details)\b",
                r"\bincomplete\s+(assessment|data|information)\b",
                r"\bunable\s+to\s+determine\b",
                r"\bcannot\s+(determine|assess|evaluate)\b",
                r"\binsufficient\s+(data|information)\b",
            ],
        },
    )
    green_max: int = Field(default=2, ge=0)
    yellow_max: int = Field(default=5, ge=0)
    warn_threshold: int = Field(default=3, ge=0)
    block_threshold: int = Field(default=7, ge=0)

    @field_validator("weights")
    @classmethod
    def weights_non_negative(cls, v: dict[str, int]) -> dict[str, int]:
        for name, weight in v.items():
            if weight < 0:
                raise ValueError(f"Weight for '{name}' must be >= 0, got {weight}")
        return v

    @field_validator("patterns")
    @classmethod
    def patterns_compile(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for patterns in v.values():
            _check_patterns(patterns)
        return v

    @field_validator("yellow_max")
    @classmethod
    def yellow_above_green(cls, v: int, info) -> int:
        green = info.data.get("green_max")
        if green is not None and v < green:
            raise ValueError(f"yellow_max ({v}) must be >= green_max ({green})")
        return v

    @field_validator("block_threshold")
    @classmethod
    def block_above_warn(cls, v: int, info) -> int:
        warn = info.data.get("warn_threshold")
        if warn is not None and v < warn:
            raise ValueError(f"block_threshold ({v}) must be >= warn_threshold ({warn})")
        return v


# ---------------------------------------------------------------------------
# Error recovery policy
# ---------------------------------------------------------------------------

class RecoveryRule(BaseModel):
    strategy: RecoveryStrategy
    max_retries: int = Field(default=0, ge=0)
    retry_after_seconds: int = Field(default=1, ge=0)


class ErrorPolicy(BaseModel):
    clinical_tasks: list[str] = Field(
        default_factory=lambda: [
            "explain_triage", "review_treatment", "emergency_assessment", "critical_alert",
        ],
    )
    recovery: dict[ErrorCategory, RecoveryRule] = Field(
        default_factory=lambda: {
            ErrorCategory.TIMEOUT: RecoveryRule(strategy=RecoveryStrategy.RETRY, max_retries=3, retry_after_seconds=5),
            ErrorCategory.PROVIDER: RecoveryRule(strategy=RecoveryStrategy.FALLBACK, max_retries=3, retry_after_seconds=10),
            ErrorCategory.RATE_LIMIT: RecoveryRule(strategy=RecoveryStrategy.DEGRADE, max_retries=0, retry_after_seconds=60),
            ErrorCategory.SAFETY: RecoveryRule(strategy=RecoveryStrategy.ABORT, max_retries=0, retry_after_seconds=0),
            ErrorCategory.CONFIGURATION: RecoveryRule(strategy=RecoveryStrategy.FALLBACK, max_retries=0, retry_after_seconds=1),
            ErrorCategory.VALIDATION: RecoveryRule(strategy=RecoveryStrategy.RETRY, max_retries=1, retry_after_seconds=1),
            ErrorCategory.UNKNOWN: RecoveryRule(strategy=RecoveryStrategy.RETRY, max_retries=1, retry_after_seconds=1),
        },
    )
    user_messages: dict[ErrorCategory, str] = Field(
        default_factory=lambda: {
            ErrorCategory.PROVIDER: "The AI service is temporarily unavailable. Please try again.",
            ErrorCategory.TIMEOUT: "The AI request took too long to process. Please try again.",
            ErrorCategory.RATE_LIMIT: "Too many AI requests. Please wait a moment and try again.",
            ErrorCategory.VALIDATION: "The AI response could not be processed. Please try again.",
            ErrorCategory.SAFETY: "The AI response was blocked for safety reasons. Please review your input.",
            ErrorCategory.CONFIGURATION: "The AI service is not properly configured. Please contact support.",
            ErrorCategory.UNKNOWN: "An unexpected error occurred. Please try again.",
        },
    )


# ---------------------------------------------------------------------------
# Monitor policy
# ---------------------------------------------------------------------------

class AlertThreshold(BaseModel):
    warning: float = Field(..., ge=0)
    critical: float = Field(..., ge=0)

    @model_validator(mode="after")
    def critical_above_warning(self) -> AlertThreshold:
        if self.critical < self.warning:
            raise ValueError(
                f"critical ({self.critical}) must be >= warning ({self.warning})"
            )
        return self


class MonitorPolicy(BaseModel):
    latency_ms: AlertThreshold = Field(default_factory=lambda: AlertThreshold(warning=5000, critical=10000))
    error_rate: AlertThreshold = Field(default_factory=lambda: AlertThreshold(warning=0.05, critical=0.15))
    validation_failure_rate: AlertThreshold = Field(
        default_factory=lambda: AlertThreshold(warning=0.02, critical=0.05),
    )
    daily_requests: AlertThreshold = Field(default_factory=lambda: AlertThreshold(warning=1000, critical=2000))
    recent_alert_limit: int = Field(default=100, gt=0)


# ---------------------------------------------------------------------------
# Gateway policy
# ---------------------------------------------------------------------------

class GatewayPolicy(BaseModel):
    """Complete safety and governance policy for one gateway deployment."""

    policy_id: str = Field(default="default", description="Identifier recorded in audit exports.")
    sanitizer: SanitizerPolicy = Field(default_factory=SanitizerPolicy)
    tasks: dict[str, TaskConfig] = Field(default_factory=_default_tasks)
    role_tasks: dict[str, list[str]] = Field(
        default_factory=_default_role_tasks,
        description="Which AI tasks each role may request.",
    )
    rate_limits: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    cache: CachePolicy = Field(default_factory=CachePolicy)
    output: OutputPolicy = Field(default_factory=OutputPolicy)
    contradictions: ContradictionPolicy = Field(default_factory=ContradictionPolicy)
    risk: RiskPolicy = Field(default_factory=RiskPolicy)
    errors: ErrorPolicy = Field(default_factory=ErrorPolicy)
    monitor: MonitorPolicy = Field(default_factory=MonitorPolicy)
    session_warning_threshold: int = Field(
        default=3,
        gt=0,
        description="Delivered warnings after which a session is escalated.",
    )
    guardrail_constraints: list[str] = Field(
        default_factory=lambda: [
            "diagnose any condition",
            "prescribe medication",
            "recommend specific dosages",
            "change triage classification",
            "override WHO IMCI rules",
        ],
    )
    missing_data_instruction: str = (
        "If information is missing, state that you are unable to determine "
        "the answer from the available data."
    )
    fallback_message: str = (
        "AI guidance is unavailable for this request. Follow the system "
        "classification and recommended actions, and consult a senior clinician "
        "if unsure."
    )

    @model_validator(mode="after")
    def role_tasks_are_configured(self) -> GatewayPolicy:
        for role, tasks in self.role_tasks.items():
            unknown = [t for t in tasks if t not in self.tasks]
            if unknown:
                raise ValueError(f"Role '{role}' references unconfigured tasks: {unknown}")
        return self


DEFAULT_POLICY = GatewayPolicy()
"""Default policy used when no YAML policy file is configured.

Constants mirror the clinical safety team's reviewed baseline.  Deployments
override individual tables via ``load_policy_from_yaml()``.
"""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def _deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_policy_from_yaml(
    path: str | Path,
    base: Optional[GatewayPolicy] = None,
) -> GatewayPolicy:
    """Load a gateway policy from a YAML file.

    Keys present in the document override the corresponding defaults;
    nested mappings are merged, lists are replaced wholesale.

    Expected YAML structure::

        policy_id: district_hospital
        rate_limits:
          global_limit: 120
          task_limits:
            explain_triage: 10
        output:
          deny_phrases: ["diagnose", "prescribe"]

    Args:
        path: Path to the YAML policy file.
        base: Policy to merge over.  Defaults to ``DEFAULT_POLICY``.

    Returns:
        The validated ``GatewayPolicy``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML document is not a mapping.
        pydantic.ValidationError: If the merged policy is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("YAML policy file must contain a mapping at the top level.")

    base_data = (base or DEFAULT_POLICY).model_dump(mode="json")
    return GatewayPolicy.model_validate(_deep_merge(base_data, data))


# ---------------------------------------------------------------------------
# Process settings
# ---------------------------------------------------------------------------

class Settings(BaseSettings):
    """Process-level settings loaded from ``CLINIGATE_*`` environment variables."""

    environment: str = "development"
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "console"

    provider_base_url: str = "http://localhost:11434"
    provider_model: str = "gemma3:4b"
    provider_timeout_seconds: float = Field(default=60.0, gt=0)
    fallback_model: Optional[str] = None

    policy_path: Optional[Path] = None
    retry_backoff_seconds: float = Field(default=0.5, ge=0)
    store_max_entries: int = Field(default=100_000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CLINIGATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def load_policy(self) -> GatewayPolicy:
        if self.policy_path is None:
            return DEFAULT_POLICY.model_copy(deep=True)
        return load_policy_from_yaml(self.policy_path)


@lru_cache
def get_settings() -> Settings:
    """Return cached process settings."""
    return Settings()
