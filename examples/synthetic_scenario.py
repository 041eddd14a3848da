"""
Synthetic Scenario: Triage Explanation Through the Safety Gateway
=================================================================

This script demonstrates the full CliniGate request lifecycle using
entirely synthetic data and a scripted model.  No real patient data, PHI,
or PII is used, and no model server is required.

The scenario simulates a nurse at a district clinic asking the assistant
to explain a RED triage classification produced by the rule engine.

Steps demonstrated:
  1. Load the gateway policy from YAML
  2. Deliver a clean explanation, then serve the repeat from cache
  3. Block a response that downplays a RED classification
  4. Escalate a session after repeated safety warnings, then reset it
  5. Fail safely when the model is unavailable
  6. Generate an AI Decision Report for the blocked request
  7. Export the audit log for governance review

DISCLAIMER: This is a synthetic demonstration.  This software is decision
support only; it does not diagnose, prescribe, or change triage
classifications, and all outputs require review by qualified staff.

Usage:
    python -m examples.synthetic_scenario
    # or: python examples/synthetic_scenario.py
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

# Ensure the project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from clinigate.config import DEFAULT_POLICY, load_policy_from_yaml
from clinigate.errors import ProviderUnavailableError
from clinigate.models import GatewayRequest, GatewayResult, Principal
from clinigate.orchestrator import SafetyOrchestrator
from clinigate.provider import ScriptedProvider
from clinigate.store import InMemoryStore

CLEAN_EXPLANATION = (
    "The rule engine classified this child as RED because lethargy is a "
    "danger sign. Urgent referral is required by the classification."
)
DOWNPLAYING = "This is a mild case, home care is fine."
OVERCONFIDENT = (
    "The rule engine classified this child as RED. Referral is definitely "
    "the priority for this child."
)

RED_CASE = {
    "patient_id": "synthetic-child-001",
    "age_months": 18,
    "findings": ["lethargic", "fast breathing"],
    "explainability": {
        "priority": "red",
        "triggers": [
            {"field_id": "danger_sign_lethargic", "value": "present",
             "clinical_meaning": "General danger sign"},
        ],
        "recommended_actions": [{"code": "urgent_referral"}],
    },
    "question": "Why was this child classified as an emergency?",
}


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def _summary(result: GatewayResult) -> None:
    print(f"  state:     {result.state.value}")
    print(f"  success:   {result.success}   blocked: {result.blocked}")
    if result.response:
        print(f"  response:  {result.response.splitlines()[2]}")
    if result.message:
        print(f"  message:   {result.message}")
    for warning in result.metadata.warnings:
        print(f"  warning:   {warning}")
    if result.metadata.risk_score is not None:
        score = result.metadata.risk_score
        print(f"  risk:      {score.total} ({score.label})")


async def main() -> None:
    _banner("CliniGate Synthetic Scenario: Triage Explanation")
    print("DISCLAIMER: All data in this demo is entirely synthetic.")
    print("This software is decision support only.\n")

    # ------------------------------------------------------------------
    # Step 1: Load gateway policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Gateway Policy")

    sample_yaml = Path(__file__).parent / "gateway_policy.yaml"
    if sample_yaml.exists():
        policy = load_policy_from_yaml(sample_yaml)
    else:
        policy = DEFAULT_POLICY.model_copy(deep=True)
    print(f"Loaded policy: {policy.policy_id}")
    print(f"  Block threshold: {policy.risk.block_threshold}")
    print(f"  Session escalation after: {policy.session_warning_threshold} warnings")
    print(f"  Non-cacheable tasks: {policy.cache.non_cacheable_tasks}")

    provider = ScriptedProvider(
        [
            CLEAN_EXPLANATION,
            DOWNPLAYING,
            OVERCONFIDENT,
            OVERCONFIDENT,
            OVERCONFIDENT,
        ]
        + [ProviderUnavailableError("connection refused")] * 4,
        model="scripted-demo",
    )
    gateway = SafetyOrchestrator(policy, provider, InMemoryStore(), retry_backoff_seconds=0)

    nurse = Principal(user_id="nurse-synthetic-01", role="nurse")
    senior = Principal(user_id="senior-synthetic-01", role="senior-nurse")
    manager = Principal(user_id="manager-synthetic-01", role="manager")
    admin = Principal(user_id="admin-synthetic-01", role="admin")

    # ------------------------------------------------------------------
    # Step 2: Clean explanation, then a cache hit
    # ------------------------------------------------------------------
    _banner("Step 2: Clean Explanation and Cache Hit")

    first = await gateway.process(GatewayRequest(task="explain_triage", context=RED_CASE), nurse)
    _summary(first)

    repeat_context = {**RED_CASE, "timestamp": "2024-01-01T09:00:00Z"}
    repeat = await gateway.process(GatewayRequest(task="explain_triage", context=repeat_context), nurse)
    print()
    _summary(repeat)
    print(f"  from_cache: {repeat.metadata.from_cache} (provider calls so far: {len(provider.calls)})")

    # ------------------------------------------------------------------
    # Step 3: Blocked response
    # ------------------------------------------------------------------
    _banner("Step 3: Response Contradicting the Rule Engine")

    blocked_case = {**RED_CASE, "question": "Can this child be managed at home?"}
    blocked = await gateway.process(GatewayRequest(task="explain_triage", context=blocked_case), nurse)
    _summary(blocked)
    for contradiction in blocked.metadata.contradictions:
        print(f"  contradiction: [{contradiction.severity.value}] {contradiction.description}")

    # ------------------------------------------------------------------
    # Step 4: Session escalation
    # ------------------------------------------------------------------
    _banner("Step 4: Session Escalation")

    session_id = "synthetic-session-01"
    for turn in range(1, 4):
        context = {**RED_CASE, "question": f"Summarize the classification (turn {turn})."}
        result = await gateway.process(
            GatewayRequest(task="explain_triage", context=context, session_id=session_id),
            nurse,
        )
        print(
            f"  turn {turn}: {result.state.value}, "
            f"warnings in session = {result.metadata.session_warning_count}, "
            f"escalated = {result.metadata.session_escalated}"
        )

    status = await gateway.reset_session(senior, session_id)
    print(f"\n  Reset by {senior.role}: warnings = {status.warning_count}, escalated = {status.escalated}")

    # ------------------------------------------------------------------
    # Step 5: Provider outage
    # ------------------------------------------------------------------
    _banner("Step 5: Provider Outage on a Non-Cacheable Task")

    alert = await gateway.process(GatewayRequest(task="critical_alert", context=RED_CASE), nurse)
    _summary(alert)
    if alert.error:
        print(f"  error:     {alert.error['category']} -> HTTP {alert.error['status_code']}")
        print(f"  recovery:  {alert.error['recovery']['strategy']}")

    # ------------------------------------------------------------------
    # Step 6: Decision report
    # ------------------------------------------------------------------
    _banner("Step 6: AI Decision Report (Blocked Request)")

    report = gateway.decision_report(senior, blocked.request_id)
    print(json.dumps(report.to_dict(), indent=2, default=str))

    # ------------------------------------------------------------------
    # Step 7: Audit export and dashboard
    # ------------------------------------------------------------------
    _banner("Step 7: Audit Export")

    export = gateway.export_audit(admin)
    meta = export["export_metadata"]
    print(f"Chain integrity: {meta['chain_integrity']}")
    print(f"Entries exported: {meta['entry_count']}")
    for entry in export["entries"]:
        if entry["kind"] == "ai_request":
            print(f"  [request] {entry['task']:<16} {entry['final_state']}")
        else:
            print(f"  [event]   {entry['event_type']}")

    dashboard = await gateway.dashboard(manager)
    hour = dashboard["metrics"]["hour"]
    print(f"\nHealth: {hour['health']['status']} (score {hour['health']['score']})")
    print(f"Requests this hour: {hour['requests']['total']}")
    print(f"Cache: {dashboard['cache']['hits']} hit(s), {dashboard['cache']['writes']} write(s)")

    await gateway.aclose()
    _banner("Scenario Complete")
    print("All data was synthetic.  No real patient information was used.")


if __name__ == "__main__":
    asyncio.run(main())
