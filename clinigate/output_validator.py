"""
Output Validator -- guardrail enforcement on model responses.

Two phrase tables drive validation:

* **deny** phrases (diagnosis, prescription, dosage, directive language)
  are replaced with a visible redaction marker, recorded in ``blocked`` and
  make the response invalid.
* **warning** phrases (hedging language) are recorded in ``warnings`` and
  leave validity unchanged.

A separate hallucination heuristic flags overconfident absolutes, exact
numeric dosing and fabricated citations.  It is advisory only.

Every deliverable response is wrapped in a fixed safety-framing header and
footer that identify it as decision support requiring verification.
"""

from __future__ import annotations

import re
from typing import Optional

from pydantic import BaseModel, Field

from clinigate.config import OutputPolicy, TaskConfig


class ValidationResult(BaseModel):
    valid: bool
    output: str
    warnings: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    redactions: int = 0


class HallucinationCheck(BaseModel):
    has_risk: bool
    indicators: list[str] = Field(default_factory=list)


class RoleCheck(BaseModel):
    valid: bool
    reason: Optional[str] = None


class FullValidation(BaseModel):
    valid: bool
    output: str
    warnings: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)
    redactions: int = 0
    risk_flags: list[str] = Field(default_factory=list)
    role_check: RoleCheck = Field(default_factory=lambda: RoleCheck(valid=True))


def _phrase_pattern(phrases: list[str]) -> Optional[re.Pattern]:
    if not phrases:
        return None
    # Longest first so overlapping phrases are redacted once; inflections match by prefix.
    ordered = sorted(phrases, key=len, reverse=True)
    return re.compile("|".join(rf"\b{re.escape(p)}" for p in ordered), re.IGNORECASE)


class OutputValidator:
    def __init__(
        self,
        policy: Optional[OutputPolicy] = None,
        tasks: Optional[dict[str, TaskConfig]] = None,
    ) -> None:
        self._policy = policy or OutputPolicy()
        self._tasks = tasks or {}
        self._deny = _phrase_pattern(self._policy.deny_phrases)
        self._deny_lookup = {p.lower(): p for p in self._policy.deny_phrases}
        self._warn = _phrase_pattern(self._policy.warning_phrases)
        self._warn_lookup = {p.lower(): p for p in self._policy.warning_phrases}
        self._hallucination = {
            name: re.compile(pattern, re.IGNORECASE)
            for name, pattern in self._policy.hallucination_patterns.items()
        }
        self._clinical_terms = _phrase_pattern(self._policy.clinical_terms)

    @property
    def redaction_marker(self) -> str:
        return self._policy.redaction_marker

    def redact(self, text: str) -> tuple[str, list[str], int]:
        """Replace every deny-phrase occurrence with the redaction marker.

        Returns:
            ``(redacted_text, matched_phrases, occurrence_count)`` where
            matched phrases are the configured spellings, de-duplicated.
        """
        if self._deny is None or not text:
            return text, [], 0
        matched: list[str] = []

        def _mark(match: re.Match) -> str:
            phrase = self._deny_lookup.get(match.group(0).lower(), match.group(0))
            if phrase not in matched:
                matched.append(phrase)
            return self._policy.redaction_marker

        redacted, count = self._deny.subn(_mark, text)
        return redacted, matched, count

    def warning_matches(self, text: str) -> list[str]:
        if self._warn is None or not text:
            return []
        found: list[str] = []
        for match in self._warn.finditer(text):
            phrase = self._warn_lookup.get(match.group(0).lower(), match.group(0))
            if phrase not in found:
                found.append(phrase)
        return found

    def validate(self, text: str, task: Optional[str] = None) -> ValidationResult:
        text = text or ""
        output, blocked, count = self.redact(text)
        warnings = [f"Response contains hedging phrase: '{p}'" for p in self.warning_matches(text)]
        return ValidationResult(
            valid=not blocked,
            output=output,
            warnings=warnings,
            blocked=blocked,
            redactions=count,
        )

    def check_hallucination_risk(self, text: str) -> HallucinationCheck:
        indicators = [name for name, pattern in self._hallucination.items() if pattern.search(text or "")]
        return HallucinationCheck(has_risk=bool(indicators), indicators=indicators)

    def validate_for_role(self, text: str, role: Optional[str]) -> RoleCheck:
        """Non-clinical roles (e.g. managers) never receive clinical phrasing."""
        if role not in self._policy.non_clinical_roles or self._clinical_terms is None:
            return RoleCheck(valid=True)
        if self._clinical_terms.search(text or ""):
            return RoleCheck(valid=False, reason=f"Clinical content is not available to role '{role}'")
        return RoleCheck(valid=True)

    def add_safety_framing(self, text: str, task: Optional[str] = None) -> str:
        """Wrap ``text`` in the decision-support header and footer (idempotent)."""
        config = self._tasks.get(task or "")
        description = config.description if config else "AI Assistance"
        header = self._policy.framing_header.format(description=description)
        footer = self._policy.framing_footer
        if text.startswith(header) and text.rstrip().endswith(footer):
            return text
        return f"{header}\n\n{text.strip()}\n\n{footer}"

    def full_validation(self, text: str, task: Optional[str] = None, role: Optional[str] = None) -> FullValidation:
        """Validate, check hallucination risk and role fitness, then frame.

        Redacted output is still framed and carries the modification note;
        whether it is delivered is the orchestrator's decision.
        """
        result = self.validate(text, task)
        hallucination = self.check_hallucination_risk(text)
        role_check = self.validate_for_role(text, role)

        output = result.output
        if result.blocked:
            output = f"{output.strip()}\n\n{self._policy.modification_note}"
        output = self.add_safety_framing(output, task)

        risk_flags = [f"hallucination:{name}" for name in hallucination.indicators]
        if not role_check.valid:
            risk_flags.append("role:clinical_content_restricted")

        return FullValidation(
            valid=result.valid and role_check.valid,
            output=output,
            warnings=result.warnings,
            blocked=result.blocked,
            redactions=result.redactions,
            risk_flags=risk_flags,
            role_check=role_check,
        )
