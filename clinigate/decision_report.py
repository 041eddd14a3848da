"""
AI Decision Report Generator.

Builds a structured report from an audited AI request for clinician
review: the terminal state, a timeline of pipeline transitions, every
contradiction with the rule engine, the risk breakdown, and a plain
reasoning chain explaining why the response was delivered or withheld.

Reports never include the raw model response; only the delivered (safe)
output appears, and only when the request was not blocked.

DISCLAIMER: Decision reports are decision-support summaries for clinician
review.  They do not constitute clinical assessments, diagnoses, or
treatment recommendations.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from clinigate.audit import AiRequestRecord
from clinigate.models import PipelineState, Severity

_STATE_DESCRIPTIONS: dict[PipelineState, str] = {
    PipelineState.RECEIVED: "Request received.",
    PipelineState.SANITIZED: "Input sanitized.",
    PipelineState.ADMITTED: "Admitted by the rate limiter.",
    PipelineState.REJECTED: "Rejected by the rate limiter.",
    PipelineState.CACHE_HIT: "Served from the response cache.",
    PipelineState.GUARDED: "Guardrail prompt built.",
    PipelineState.PROVIDER_CALLED: "AI provider returned a response.",
    PipelineState.VALIDATED: "Response validated against the phrase tables.",
    PipelineState.SCORED: "Response scored for risk.",
    PipelineState.ALLOWED: "Response delivered.",
    PipelineState.BLOCKED: "Response withheld by the safety system.",
    PipelineState.FAILED: "Request failed after recovery attempts.",
    PipelineState.STALE_SERVED: "Provider unavailable; a recent cached response was served.",
    PipelineState.CANCELLED: "Stream cancelled by the caller.",
}


class DecisionReport:
    """A structured AI decision report for clinician review."""

    def __init__(
        self,
        request_id: str,
        task: str,
        final_state: str,
        timeline: list[dict[str, str]],
        contradictions: list[dict[str, Any]],
        risk: dict[str, Any],
        reasoning_chain: list[str],
        delivered_output: str | None,
        generated_at: str,
    ) -> None:
        self.request_id = request_id
        self.task = task
        self.final_state = final_state
        self.timeline = timeline
        self.contradictions = contradictions
        self.risk = risk
        self.reasoning_chain = reasoning_chain
        self.delivered_output = delivered_output
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "AI Decision Report",
            "disclaimer": (
                "This report is a decision-support summary for clinician review. "
                "It does not constitute a clinical assessment or diagnosis."
            ),
            "request_id": self.request_id,
            "task": self.task,
            "final_state": self.final_state,
            "timeline": self.timeline,
            "contradictions": self.contradictions,
            "risk": self.risk,
            "reasoning_chain": self.reasoning_chain,
            "delivered_output": self.delivered_output,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return f"DecisionReport(request_id={self.request_id}, state={self.final_state})"


def generate_decision_report(record: AiRequestRecord) -> DecisionReport:
    """Generate a decision report from an audited AI request."""
    delivered = record.final_state in (
        PipelineState.ALLOWED,
        PipelineState.CACHE_HIT,
        PipelineState.STALE_SERVED,
    )
    risk: dict[str, Any] = {"total": None, "level": None, "breakdown": {}, "factors": []}
    if record.risk_score is not None:
        risk = {
            "total": record.risk_score.total,
            "level": record.risk_score.level.value,
            "label": record.risk_score.label,
            "should_block": record.risk_score.should_block,
            "should_warn": record.risk_score.should_warn,
            "breakdown": dict(record.risk_score.breakdown),
            "factors": list(record.risk_score.factors),
        }

    return DecisionReport(
        request_id=record.request_id,
        task=record.task,
        final_state=record.final_state.value,
        timeline=_build_timeline(record),
        contradictions=[c.model_dump(mode="json") for c in record.contradictions],
        risk=risk,
        reasoning_chain=_reasoning_chain(record),
        delivered_output=record.safe_output if delivered else None,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )


def _build_timeline(record: AiRequestRecord) -> list[dict[str, str]]:
    return [
        {
            "state": step.state.value,
            "timestamp": step.at.isoformat(),
            "description": _STATE_DESCRIPTIONS[step.state],
        }
        for step in record.state_history
    ]


def _reasoning_chain(record: AiRequestRecord) -> list[str]:
    chain: list[str] = []
    critical = [c for c in record.contradictions if c.severity == Severity.CRITICAL]
    if critical:
        chain.append(
            f"{len(critical)} critical contradiction(s) with the rule engine: "
            + "; ".join(c.description for c in critical)
        )
    elif record.contradictions:
        chain.append(f"{len(record.contradictions)} non-critical contradiction(s) with the rule engine.")

    if record.blocked_phrases:
        chain.append("Deny-listed phrasing was redacted: " + ", ".join(record.blocked_phrases))

    if record.risk_score is not None:
        score = record.risk_score
        chain.append(f"Risk score {score.total} ({score.label}).")
        if score.should_block:
            chain.append("Risk score reached the block threshold.")
        elif score.should_warn:
            chain.append("Risk score reached the warning threshold.")

    for flag in record.risk_flags:
        chain.append(f"Risk flag raised: {flag}")

    chain.append(_STATE_DESCRIPTIONS[record.final_state])
    return chain
