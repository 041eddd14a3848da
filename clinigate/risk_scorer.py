"""
Risk Scorer -- additive weighted scoring of a model response.

Each signal category contributes its configured weight once when present:
rule conflicts (plus an extra weight when any conflict is critical),
dosage patterns, diagnosis claims, treatment recommendations, attempts to
override the triage result, absolute language and admissions of missing
data.

The score is stateless and deterministic.  Two independent threshold sets
are applied to the total: the reporting tier (green/yellow/red, for badges)
and the gate (``should_warn``/``should_block``).
"""

from __future__ import annotations

import re
from typing import Any, Optional, Sequence

from clinigate.config import RiskPolicy
from clinigate.models import Contradiction, RiskLevel, RiskScore, Severity

_LABELS = {
    RiskLevel.GREEN: "Low Risk",
    RiskLevel.YELLOW: "Medium Risk",
    RiskLevel.RED: "High Risk",
}

_FACTOR_NAMES = {
    "dosage_mention": "Dosage mention",
    "diagnosis_claim": "Diagnosis claim",
    "treatment_recommendation": "Treatment recommendation",
    "override_attempt": "Override attempt",
    "absolutes": "Absolute language",
    "missing_data": "Missing data reference",
}


class RiskScorer:
    def __init__(self, policy: Optional[RiskPolicy] = None) -> None:
        self._policy = policy or RiskPolicy()
        self._patterns = {
            category: [re.compile(p, re.IGNORECASE) for p in patterns]
            for category, patterns in self._policy.patterns.items()
        }

    def weight(self, category: str) -> int:
        return self._policy.weights.get(category, 0)

    def level_for(self, total: int) -> RiskLevel:
        if total <= self._policy.green_max:
            return RiskLevel.GREEN
        if total <= self._policy.yellow_max:
            return RiskLevel.YELLOW
        return RiskLevel.RED

    def _matches(self, category: str, output: str) -> list[str]:
        found: list[str] = []
        for pattern in self._patterns.get(category, []):
            match = pattern.search(output)
            if match and match.group(0) not in found:
                found.append(match.group(0))
        return found

    def score(
        self,
        output: str,
        contradictions: Sequence[Contradiction | str] = (),
        context: Optional[dict[str, Any]] = None,
    ) -> RiskScore:
        """Score one response.

        Args:
            output: Raw model text (before redaction, so signals are not
                hidden by the redaction marker).
            contradictions: Contradictions found for this response; plain
                description strings are accepted and count as non-critical.
            context: Request context.  Accepted for interface symmetry with
                the detector; scoring depends only on the text and the
                contradictions.

        Returns:
            A ``RiskScore`` with per-category breakdown and factor strings.
        """
        output = output or ""
        breakdown: dict[str, int] = {}
        factors: list[str] = []

        if contradictions:
            breakdown["rule_conflict"] = self.weight("rule_conflict")
            factors.append(f"Rule conflict detected: {len(contradictions)} contradiction(s)")
            critical = [
                c for c in contradictions
                if isinstance(c, Contradiction) and c.severity == Severity.CRITICAL
            ]
            if critical:
                breakdown["critical_conflict"] = self.weight("critical_conflict")
                factors.append(f"Critical conflict: {len(critical)} critical contradiction(s)")

        for category, label in _FACTOR_NAMES.items():
            found = self._matches(category, output)
            if found:
                breakdown[category] = self.weight(category)
                quoted = '", "'.join(found)
                factors.append(f'{label}: "{quoted}"')

        total = sum(breakdown.values())
        level = self.level_for(total)
        return RiskScore(
            total=total,
            breakdown=breakdown,
            level=level,
            label=_LABELS[level],
            should_block=total >= self._policy.block_threshold,
            should_warn=total >= self._policy.warn_threshold,
            factors=factors,
        )
