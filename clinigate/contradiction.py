"""
Contradiction Detector -- compares model text to the rule engine's result.

The deterministic engine's ``ExplainabilityRecord`` is ground truth.  Five
families of checks run against the model's free text:

* **priority mismatch** -- the priority the text implies vs. the engine's.
  Downplaying a RED case is critical; escalating to RED is a warning; a
  GREEN/YELLOW disagreement is an error.  Asserting any priority when the
  engine could not classify is a warning.
* **action conflicts** -- narrative that contradicts a recommended action
  code (home care vs. ``urgent_referral`` and similar).
* **data inconsistencies** -- the text denies a finding the engine
  recorded as present.
* **scope violations** -- diagnosis or prescription language, always an
  error regardless of triage outcome.
* **clinical errors** -- narrow absolute statements that are clinically
  wrong (an elevated respiratory rate declared normal).

All keyword and pattern tables come from ``ContradictionPolicy``.
"""

from __future__ import annotations

import re
from typing import Any, Optional

from pydantic import BaseModel, Field

from clinigate.config import ContradictionPolicy
from clinigate.models import (
    Contradiction,
    ContradictionType,
    ExplainabilityRecord,
    Priority,
    Severity,
)

_PRIORITY_ORDER = [Priority.RED, Priority.YELLOW, Priority.GREEN]


class DetectionResult(BaseModel):
    contradictions: list[Contradiction] = Field(default_factory=list)
    has_critical: bool = False
    has_errors: bool = False
    summary: str = "No contradictions detected"


def summarize(contradictions: list[Contradiction]) -> str:
    if not contradictions:
        return "No contradictions detected"
    counts = {severity: 0 for severity in Severity}
    for contradiction in contradictions:
        counts[contradiction.severity] += 1
    parts = []
    if counts[Severity.CRITICAL]:
        parts.append(f"{counts[Severity.CRITICAL]} critical")
    if counts[Severity.ERROR]:
        parts.append(f"{counts[Severity.ERROR]} error(s)")
    if counts[Severity.WARNING]:
        parts.append(f"{counts[Severity.WARNING]} warning(s)")
    if counts[Severity.INFO]:
        parts.append(f"{counts[Severity.INFO]} info")
    return "Detected: " + ", ".join(parts)


class ContradictionDetector:
    def __init__(self, policy: Optional[ContradictionPolicy] = None) -> None:
        self._policy = policy or ContradictionPolicy()
        flags = re.IGNORECASE
        self._priority_patterns = {
            Priority(name): [re.compile(p, flags) for p in patterns]
            for name, patterns in self._policy.priority_keywords.items()
            if name in {p.value for p in _PRIORITY_ORDER}
        }
        self._action_rules = [
            (rule, re.compile(rule.output_pattern, flags)) for rule in self._policy.action_rules
        ]
        self._finding_rules = [
            (rule, [re.compile(p, flags) for p in rule.denial_patterns])
            for rule in self._policy.finding_rules
        ]
        self._diagnosis = [re.compile(p, flags) for p in self._policy.diagnosis_patterns]
        self._prescription = [re.compile(p, flags) for p in self._policy.prescription_patterns]
        self._respiratory_rate = re.compile(self._policy.respiratory_rate_pattern, flags)
        self._present_values = {v.lower() for v in self._policy.present_values}

    def extract_priority(self, text: str) -> Optional[Priority]:
        """Return the most severe priority the text implies, if any."""
        for priority in _PRIORITY_ORDER:
            if any(p.search(text) for p in self._priority_patterns.get(priority, [])):
                return priority
        return None

    def _priority_mismatch(self, text: str, system: Priority) -> list[Contradiction]:
        implied = self.extract_priority(text)
        if implied is None or implied == system:
            return []
        if system == Priority.RED:
            severity = Severity.CRITICAL
        elif implied == Priority.RED or system == Priority.UNKNOWN:
            severity = Severity.WARNING
        else:
            severity = Severity.ERROR
        return [Contradiction(
            type=ContradictionType.PRIORITY_MISMATCH,
            severity=severity,
            description=(
                f"AI text implies {implied.value.upper()} priority but the system "
                f"classified {system.value.upper()}"
            ),
            resolution=self._policy.priority_resolution,
        )]

    def _action_conflicts(self, text: str, record: ExplainabilityRecord) -> list[Contradiction]:
        codes = [code.lower() for code in record.action_codes()]
        found = []
        for rule, pattern in self._action_rules:
            has_action = any(keyword in code for code in codes for keyword in rule.action_keywords)
            if has_action and pattern.search(text):
                found.append(Contradiction(
                    type=ContradictionType.ACTION_CONFLICT,
                    severity=rule.severity,
                    description=rule.description,
                    resolution=rule.resolution or None,
                ))
        return found

    def _data_inconsistencies(self, text: str, record: ExplainabilityRecord) -> list[Contradiction]:
        found = []
        for rule, patterns in self._finding_rules:
            present = any(
                any(keyword in trigger.field_id.lower() for keyword in rule.field_keywords)
                and str(trigger.value).lower() in self._present_values
                for trigger in record.triggers
            )
            if present and any(p.search(text) for p in patterns):
                found.append(Contradiction(
                    type=ContradictionType.DATA_INCONSISTENCY,
                    severity=rule.severity,
                    description=rule.description,
                    resolution=rule.resolution or None,
                ))
        return found

    def _scope_violations(self, text: str) -> list[Contradiction]:
        found = []
        if any(p.search(text) for p in self._diagnosis):
            found.append(Contradiction(
                type=ContradictionType.SCOPE_VIOLATION,
                severity=Severity.ERROR,
                description="AI output makes a diagnosis claim",
                resolution="AI is advisory only and must not diagnose",
            ))
        if any(p.search(text) for p in self._prescription):
            found.append(Contradiction(
                type=ContradictionType.SCOPE_VIOLATION,
                severity=Severity.ERROR,
                description="AI output prescribes medication or dosing",
                resolution="AI is advisory only and must not prescribe or dose",
            ))
        return found

    def _clinical_errors(self, text: str) -> list[Contradiction]:
        found = []
        for match in self._respiratory_rate.finditer(text):
            rate = int(match.group(3))
            if rate > self._policy.respiratory_rate_upper_normal:
                found.append(Contradiction(
                    type=ContradictionType.CLINICAL_ERROR,
                    severity=Severity.ERROR,
                    description=f"AI describes a respiratory rate of {rate} as normal",
                    resolution="Elevated respiratory rate indicates fast breathing per IMCI",
                ))
        return found

    def detect(
        self,
        ai_output: str,
        explainability: Optional[ExplainabilityRecord | dict[str, Any]] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> DetectionResult:
        """Run every check and return the combined result.

        The engine record may also be passed as ``context["explainability"]``.
        Without one only the scope and clinical-error checks run.
        """
        text = ai_output or ""
        if explainability is None and context:
            explainability = context.get("explainability")
        if isinstance(explainability, dict):
            explainability = ExplainabilityRecord.model_validate(explainability)

        contradictions: list[Contradiction] = []
        if explainability is not None:
            contradictions += self._priority_mismatch(text, explainability.priority)
            contradictions += self._action_conflicts(text, explainability)
            contradictions += self._data_inconsistencies(text, explainability)
        contradictions += self._scope_violations(text)
        contradictions += self._clinical_errors(text)

        return DetectionResult(
            contradictions=contradictions,
            has_critical=any(c.severity == Severity.CRITICAL for c in contradictions),
            has_errors=any(c.severity == Severity.ERROR for c in contradictions),
            summary=summarize(contradictions),
        )
