"""
Error taxonomy and recovery policy for the gateway.

Failures are classified into seven categories (provider, validation, safety,
timeout, rate_limit, configuration, unknown).  Each classification carries
a severity, a namespaced error code for log correlation, a recovery
strategy, and a generic user-facing message.

Raw exception text (stack traces, SQL errors, provider bodies) is kept in
``metadata`` for internal diagnostics only.  ``user_message`` is always one
of the pre-approved strings in ``ErrorPolicy.user_messages``.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import traceback
from typing import Any, Optional

import httpx
import pydantic

from clinigate.config import ErrorPolicy, RecoveryRule
from clinigate.logging_config import get_logger
from clinigate.models import ErrorCategory, ErrorSeverity, RecoveryStrategy

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class GatewayError(Exception):
    """Base class for classified gateway failures."""

    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})


class ProviderUnavailableError(GatewayError):
    category = ErrorCategory.PROVIDER


class ProviderTimeoutError(GatewayError):
    category = ErrorCategory.TIMEOUT


class SafetyViolationError(GatewayError):
    category = ErrorCategory.SAFETY


class OutputValidationError(GatewayError):
    category = ErrorCategory.VALIDATION


class RateLimitExceededError(GatewayError):
    category = ErrorCategory.RATE_LIMIT


class ConfigurationError(GatewayError):
    category = ErrorCategory.CONFIGURATION


class UnknownTaskError(ConfigurationError):
    """Raised when a request names a task that is not configured."""

    def __init__(self, task: str) -> None:
        super().__init__(f"Task '{task}' is not configured", {"task": task})
        self.task = task


class UnknownRequestError(LookupError):
    """Raised when a request id has no audit record."""

    def __init__(self, request_id: str) -> None:
        super().__init__(f"No audited AI request with id '{request_id}'.")
        self.request_id = request_id


class TaskNotPermittedError(PermissionError):
    """Raised when a role requests a task it is not permitted to run."""

    def __init__(self, role: str, task: str) -> None:
        super().__init__(f"Role '{role}' is not permitted to run AI task '{task}'.")
        self.role = role
        self.task = task


_EXCEPTION_CLASSES: dict[ErrorCategory, type[GatewayError]] = {
    ErrorCategory.PROVIDER: ProviderUnavailableError,
    ErrorCategory.TIMEOUT: ProviderTimeoutError,
    ErrorCategory.SAFETY: SafetyViolationError,
    ErrorCategory.VALIDATION: OutputValidationError,
    ErrorCategory.RATE_LIMIT: RateLimitExceededError,
    ErrorCategory.CONFIGURATION: ConfigurationError,
    ErrorCategory.UNKNOWN: GatewayError,
}


# ---------------------------------------------------------------------------
# Classification tables
# ---------------------------------------------------------------------------

# Checked in order; the first matching substring wins.
_MESSAGE_PATTERNS: list[tuple[tuple[str, ...], ErrorCategory]] = [
    (("timeout", "timed out"), ErrorCategory.TIMEOUT),
    (("rate limit", "too many requests"), ErrorCategory.RATE_LIMIT),
    (("safety", "validation failed"), ErrorCategory.SAFETY),
    (("config", "not configured"), ErrorCategory.CONFIGURATION),
]

_BASE_SEVERITY: dict[ErrorCategory, ErrorSeverity] = {
    ErrorCategory.SAFETY: ErrorSeverity.CRITICAL,
    ErrorCategory.CONFIGURATION: ErrorSeverity.HIGH,
    ErrorCategory.TIMEOUT: ErrorSeverity.MEDIUM,
    ErrorCategory.PROVIDER: ErrorSeverity.MEDIUM,
    ErrorCategory.RATE_LIMIT: ErrorSeverity.LOW,
    ErrorCategory.VALIDATION: ErrorSeverity.LOW,
    ErrorCategory.UNKNOWN: ErrorSeverity.LOW,
}

_SEVERITY_ORDER = [ErrorSeverity.LOW, ErrorSeverity.MEDIUM, ErrorSeverity.HIGH, ErrorSeverity.CRITICAL]

_STATUS_CODES: dict[ErrorCategory, int] = {
    ErrorCategory.PROVIDER: 503,
    ErrorCategory.TIMEOUT: 503,
    ErrorCategory.CONFIGURATION: 503,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.VALIDATION: 502,
    ErrorCategory.SAFETY: 422,
    ErrorCategory.UNKNOWN: 500,
}

_SUMMARIES: dict[ErrorCategory, str] = {
    ErrorCategory.PROVIDER: "AI provider request failed",
    ErrorCategory.TIMEOUT: "AI provider request timed out",
    ErrorCategory.RATE_LIMIT: "AI request rate limit reached",
    ErrorCategory.VALIDATION: "AI response failed validation",
    ErrorCategory.SAFETY: "AI response violated safety policy",
    ErrorCategory.CONFIGURATION: "AI gateway configuration error",
    ErrorCategory.UNKNOWN: "Unclassified AI gateway error",
}

_SUGGESTIONS: dict[ErrorCategory, list[str]] = {
    ErrorCategory.PROVIDER: ["Check that the AI provider is running", "Retry the request"],
    ErrorCategory.TIMEOUT: ["Retry the request", "Shorten the clinical question"],
    ErrorCategory.RATE_LIMIT: ["Wait before sending another request"],
    ErrorCategory.VALIDATION: ["Retry the request"],
    ErrorCategory.SAFETY: ["Review the input", "Follow the system classification"],
    ErrorCategory.CONFIGURATION: ["Contact support to verify the AI configuration"],
    ErrorCategory.UNKNOWN: ["Retry the request", "Contact support if the problem persists"],
}

_CLINICAL_SUGGESTION = "Clinical context: Consider manual review if AI is unavailable"


def _category_from_class(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, GatewayError):
        return exc.category
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, (httpx.TransportError, httpx.HTTPStatusError, ConnectionError)):
        return ErrorCategory.PROVIDER
    if isinstance(exc, (json.JSONDecodeError, pydantic.ValidationError, ValueError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


# ---------------------------------------------------------------------------
# Error handler
# ---------------------------------------------------------------------------

class ErrorHandler:
    """Classifies exceptions and selects a recovery strategy."""

    def __init__(self, policy: Optional[ErrorPolicy] = None) -> None:
        self._policy = policy or ErrorPolicy()

    def categorize(self, exc: BaseException) -> ErrorCategory:
        message = str(exc).lower()
        for needles, category in _MESSAGE_PATTERNS:
            if any(needle in message for needle in needles):
                return category
        return _category_from_class(exc)

    def is_clinical(self, task: Optional[str]) -> bool:
        return task is not None and task in self._policy.clinical_tasks

    def severity(self, category: ErrorCategory, task: Optional[str] = None) -> ErrorSeverity:
        base = _BASE_SEVERITY.get(category, ErrorSeverity.LOW)
        if not self.is_clinical(task):
            return base
        index = min(_SEVERITY_ORDER.index(base) + 1, len(_SEVERITY_ORDER) - 1)
        return _SEVERITY_ORDER[index]

    @staticmethod
    def error_code(exc: BaseException, category: ErrorCategory) -> str:
        digest = hashlib.md5(f"{type(exc).__name__}{exc}".encode("utf-8")).hexdigest()
        return f"AI_{category.value[:3].upper()}_{digest[:6].upper()}"

    def recovery_rule(self, category: ErrorCategory) -> RecoveryRule:
        rule = self._policy.recovery.get(category)
        if rule is None:
            rule = self._policy.recovery.get(
                ErrorCategory.UNKNOWN, RecoveryRule(strategy=RecoveryStrategy.ABORT)
            )
        return rule

    def recovery(self, category: ErrorCategory, task: Optional[str] = None) -> dict[str, Any]:
        rule = self.recovery_rule(category)
        suggestions = list(_SUGGESTIONS.get(category, []))
        if self.is_clinical(task):
            suggestions.append(_CLINICAL_SUGGESTION)
        return {
            "strategy": rule.strategy.value,
            "max_retries": rule.max_retries,
            "retry_after_seconds": rule.retry_after_seconds,
            "suggestions": suggestions,
        }

    def user_message(self, category: ErrorCategory) -> str:
        return self._policy.user_messages.get(
            category, self._policy.user_messages[ErrorCategory.UNKNOWN]
        )

    def handle(
        self,
        exc: BaseException,
        context: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Classify ``exc`` into a structured, user-safe error response.

        Args:
            exc: The exception raised anywhere in the pipeline.
            context: Optional request context; ``task`` and ``request_id``
                are read from it.

        Returns:
            ``{"success": False, "error": {...}, "metadata": {...}}``.
            Only ``metadata`` carries raw exception details.
        """
        context = dict(context or {})
        if isinstance(exc, GatewayError):
            context = {**exc.context, **context}
        task = context.get("task")
        category = self.categorize(exc)
        severity = self.severity(category, task)
        code = self.error_code(exc, category)

        error: dict[str, Any] = {
            "code": code,
            "category": category.value,
            "severity": severity.value,
            "message": _SUMMARIES[category],
            "user_message": self.user_message(category),
            "recovery": self.recovery(category, task),
            "status_code": _STATUS_CODES[category],
        }
        if context.get("request_id"):
            error["request_id"] = context["request_id"]

        log = logger.error if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL) else logger.warning
        log(
            "ai_error",
            code=code,
            category=category.value,
            severity=severity.value,
            exception_class=type(exc).__name__,
            ai_task=task,
        )

        return {
            "success": False,
            "error": error,
            "metadata": {
                "exception_class": type(exc).__name__,
                "detail": str(exc),
                "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
                "task": task,
                "clinical_task": self.is_clinical(task),
            },
        }

    @staticmethod
    def create_exception(
        category: ErrorCategory,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ) -> GatewayError:
        return _EXCEPTION_CLASSES[category](message, context)


def is_gateway_error(exc: BaseException) -> bool:
    return isinstance(exc, GatewayError)
