"""
Input Sanitizer -- cleans clinician free text before it reaches the model.

Stages, in order:

1. Strip prompt-injection patterns (replaced with a neutral placeholder).
2. Redact likely PHI (names, dates of birth, phone numbers, emails, record
   numbers, SSNs, street addresses).
3. Remove dangerous markup, then HTML-entity-escape the remainder with
   bleach.
4. Normalize whitespace.
5. Enforce the maximum length, preferring a sentence boundary.

``sanitize()`` is pure and never raises: content that matches no pattern
passes through unchanged. ``sanitize_context()`` applies it to every string
in a request context, since any context key can be interpolated into a
prompt template.
"""

from __future__ import annotations

import re
from typing import Any, Optional

import bleach
from pydantic import BaseModel, Field

from clinigate.config import SanitizerPolicy


class SanitizeOptions(BaseModel):
    max_length: Optional[int] = Field(default=None, gt=0)
    strip_injections: bool = True
    redact_phi: bool = True
    escape_markup: bool = True


class SanitizationResult(BaseModel):
    sanitized: str
    removed: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    was_modified: bool = False


_INJECTION_WARNING = "Potential prompt injection patterns were removed"
_PHI_WARNING = "Potential PHI was redacted"
_MARKUP_WARNING = "Potentially dangerous markup was removed"

# Fraction of the window that must precede a sentence boundary for it to be used.
_BOUNDARY_WINDOW = 0.8


class InputSanitizer:
    """Pattern-based sanitizer driven by a ``SanitizerPolicy``."""

    def __init__(self, policy: Optional[SanitizerPolicy] = None) -> None:
        self._policy = policy or SanitizerPolicy()
        flags = re.IGNORECASE | re.DOTALL
        self._injections = [re.compile(p, flags) for p in self._policy.injection_patterns]
        self._phi = {name: re.compile(p) for name, p in self._policy.phi_patterns.items()}
        self._markup = [re.compile(p, flags) for p in self._policy.markup_patterns]

    def sanitize(self, text: Any, options: Optional[SanitizeOptions] = None) -> SanitizationResult:
        options = options or SanitizeOptions()
        max_length = options.max_length or self._policy.max_length
        value = "" if text is None else str(text)

        removed: list[str] = []
        warnings: list[str] = []

        if options.strip_injections:
            value, found = self._replace_all(value, self._injections, self._policy.removed_placeholder)
            if found:
                removed.extend(found)
                warnings.append(_INJECTION_WARNING)

        if options.redact_phi:
            value, found = self._replace_all(value, self._phi.values(), self._policy.redaction_marker)
            if found:
                removed.extend(found)
                warnings.append(_PHI_WARNING)

        if options.escape_markup:
            value, found = self._replace_all(value, self._markup, "")
            if found:
                removed.extend(found)
                warnings.append(_MARKUP_WARNING)
            value = escape_markup(value)

        value = normalize_whitespace(value)

        truncated = False
        if len(value) > max_length:
            value = truncate_at_sentence(value, max_length)
            truncated = True
            warnings.append(f"Input was truncated to {max_length} characters")

        return SanitizationResult(
            sanitized=value,
            removed=removed,
            warnings=warnings,
            was_modified=bool(removed) or truncated,
        )

    def sanitize_context(self, context: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
        """Sanitize every string value of a request context.

        Nested dicts and lists are walked; numbers, booleans and ``None`` are
        kept as they are. Keys are not rewritten.

        Returns:
            A new context with all string values sanitized, and the
            de-duplicated warnings produced along the way.
        """
        warnings: list[str] = []

        def clean(value: Any) -> Any:
            if isinstance(value, str):
                result = self.sanitize(value)
                for warning in result.warnings:
                    if warning not in warnings:
                        warnings.append(warning)
                return result.sanitized
            if isinstance(value, dict):
                return {key: clean(item) for key, item in value.items()}
            if isinstance(value, (list, tuple)):
                return [clean(item) for item in value]
            return value

        return clean(dict(context)), warnings

    def has_injection_attempt(self, text: str) -> bool:
        return any(p.search(text or "") for p in self._injections)

    def has_phi(self, text: str) -> bool:
        return any(p.search(text or "") for p in self._phi.values())

    def quick_sanitize(self, text: str) -> str:
        """Injection stripping and markup escaping only, for trusted short strings."""
        options = SanitizeOptions(redact_phi=False)
        return self.sanitize(text, options).sanitized

    @staticmethod
    def _replace_all(value: str, patterns, replacement: str) -> tuple[str, list[str]]:
        found: list[str] = []
        for pattern in patterns:
            matches = [m.group(0) for m in pattern.finditer(value)]
            if matches:
                found.extend(matches)
                value = pattern.sub(replacement, value)
        return value, found


def escape_markup(text: str) -> str:
    """Entity-escape every tag left in ``text``; no markup is allowed through."""
    return bleach.clean(text, tags=[], attributes={}, strip=False)


def normalize_whitespace(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", "  ")
    text = re.sub(r" {3,}", "  ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate_at_sentence(text: str, max_length: int) -> str:
    """Cut ``text`` to ``max_length``, ending on a sentence if one is close.

    The last ``.``, ``?`` or ``!`` is used only when it falls in the final
    20% of the window; otherwise the text is hard-cut and an ellipsis added.
    """
    window = text[:max_length]
    boundary = max(window.rfind("."), window.rfind("?"), window.rfind("!"))
    if boundary > max_length * _BOUNDARY_WINDOW:
        return window[: boundary + 1]
    return window + "..."
