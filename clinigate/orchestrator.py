"""
Safety Orchestrator -- one request lifecycle as an explicit state machine.

**State machine:**

    RECEIVED -> SANITIZED -> ADMITTED -> GUARDED -> PROVIDER_CALLED
             -> VALIDATED -> SCORED -> ALLOWED | BLOCKED

With short-circuit paths:

    SANITIZED -> REJECTED          (rate limit)
    ADMITTED  -> CACHE_HIT         (clean cached response)
    GUARDED   -> STALE_SERVED      (provider down, stale cache entry)
    any       -> FAILED            (unrecoverable error)
    any       -> CANCELLED         (caller went away mid-request)

Every terminal state writes exactly one ``AiRequestRecord``.  States cannot
be skipped; ``InvalidTransitionError`` is raised if a stage tries.

**Safety gates enforced in code:**

* A response is BLOCKED when a deny phrase matched, the risk score reached
  the block threshold, a contradiction with the rule engine is critical,
  or the caller's role may not receive clinical phrasing.
* Blocked responses are never returned, never cached, and are replaced by
  the pre-approved fallback message.
* Detection and scoring always run on the raw model text.
* Rate-limit capacity is committed at dispatch; cache hits cost nothing and
  a cancelled request keeps the capacity it consumed.
* Each delivered response carrying a safety warning counts once toward the
  session's escalation threshold.

DISCLAIMER: This module mediates decision-support output only.  The rule
engine's classification is authoritative; model text is advisory.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import re
import time
from datetime import datetime
from typing import Any, AsyncIterator, Optional

from clinigate.audit import AiRequestRecord, AuditEvent, AuditEventType, AuditLog, StateTransition
from clinigate.cache import ResponseCache
from clinigate.config import GatewayPolicy, RateLimitPolicy, Settings, get_settings
from clinigate.contradiction import ContradictionDetector, DetectionResult
from clinigate.decision_report import DecisionReport, generate_decision_report
from clinigate.errors import (
    ErrorHandler,
    GatewayError,
    ProviderTimeoutError,
    RateLimitExceededError,
    UnknownRequestError,
    UnknownTaskError,
)
from clinigate.escalation import EscalationStatus, SessionEscalationTracker
from clinigate.feedback import AiFeedback, FeedbackRecorder
from clinigate.guardrails import GuardedPrompt, GuardrailBuilder, truncate_to_words
from clinigate.logging_config import bind_request_context, clear_request_context, get_logger
from clinigate.models import (
    TERMINAL_STATES,
    ErrorCategory,
    GatewayRequest,
    GatewayResult,
    PipelineState,
    Principal,
    ResponseMetadata,
    RiskScore,
    Severity,
)
from clinigate.monitor import Monitor
from clinigate.output_validator import FullValidation, OutputValidator
from clinigate.provider import AiProvider, Completion, OllamaProvider
from clinigate.rate_limiter import Clock, RateLimitDecision, RateLimiter, utc_now
from clinigate.rbac import check_task_permission, require_permission
from clinigate.risk_scorer import RiskScorer
from clinigate.sanitizer import InputSanitizer
from clinigate.store import CounterStore, InMemoryStore

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Valid state transitions
# ---------------------------------------------------------------------------

_FORWARD: dict[PipelineState, set[PipelineState]] = {
    PipelineState.RECEIVED: {PipelineState.SANITIZED},
    PipelineState.SANITIZED: {PipelineState.ADMITTED, PipelineState.REJECTED},
    PipelineState.ADMITTED: {PipelineState.CACHE_HIT, PipelineState.GUARDED},
    PipelineState.GUARDED: {PipelineState.PROVIDER_CALLED, PipelineState.STALE_SERVED},
    PipelineState.PROVIDER_CALLED: {PipelineState.VALIDATED},
    PipelineState.VALIDATED: {PipelineState.SCORED},
    PipelineState.SCORED: {PipelineState.ALLOWED, PipelineState.BLOCKED},
}

_VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    state: targets | {PipelineState.FAILED, PipelineState.CANCELLED}
    for state, targets in _FORWARD.items()
}
_VALID_TRANSITIONS.update({state: set() for state in TERMINAL_STATES})

_RETRYABLE = {ErrorCategory.PROVIDER, ErrorCategory.TIMEOUT}

_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+")


class InvalidTransitionError(Exception):
    """Raised when a pipeline stage attempts a transition that is not permitted."""
    pass


def _bind(request: GatewayRequest, principal: Principal) -> None:
    bind_request_context(
        request.request_id,
        request.task,
        principal.user_id,
        request.resolved_session_id(),
        role=principal.role,
    )


def split_sentences(buffer: str) -> tuple[str, str]:
    """Split ``buffer`` into complete sentences and the unfinished remainder."""
    last = None
    for last in _SENTENCE_BREAK.finditer(buffer):
        pass
    if last is None:
        return "", buffer
    return buffer[: last.end()], buffer[last.end():]


# ---------------------------------------------------------------------------
# Pipeline run
# ---------------------------------------------------------------------------

class PipelineRun:
    """Mutable context threaded through the stages of one request."""

    def __init__(self, request: GatewayRequest, principal: Principal, now: datetime) -> None:
        self.request = request
        self.principal = principal
        self.state = PipelineState.RECEIVED
        self.history: list[StateTransition] = [StateTransition(state=self.state, at=now)]
        self.context: dict[str, Any] = dict(request.context)
        self.input_hash = ""
        self.warnings: list[str] = []
        self.has_safety_warning = False
        self.risk_flags: list[str] = []
        self.headers: dict[str, str] = {}
        self.prompt: Optional[GuardedPrompt] = None
        self.dispatched = False
        self.raw_response: Optional[str] = None
        self.safe_output: Optional[str] = None
        self.model: Optional[str] = None
        self.provider_model: Optional[str] = None
        self.validation: Optional[FullValidation] = None
        self.detection: Optional[DetectionResult] = None
        self.risk: Optional[RiskScore] = None
        self.was_modified = False
        self.was_overridden = False
        self.from_cache = False
        self.stale = False
        self.error_code: Optional[str] = None
        self._started = time.perf_counter()

    @property
    def task(self) -> str:
        return self.request.task

    @property
    def latency_ms(self) -> int:
        return int((time.perf_counter() - self._started) * 1000)

    def add_warning(self, warning: str, safety: bool = False) -> None:
        if warning not in self.warnings:
            self.warnings.append(warning)
        if safety:
            self.has_safety_warning = True


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class SafetyOrchestrator:
    """Composes every gateway stage into one audited request lifecycle.

    Args:
        policy: Safety and governance policy.
        provider: Primary AI provider.
        store: Shared counter store for rate limits, cache, monitor and
            session escalation.
        audit_log: Append-only audit log.  A fresh one is created if omitted.
        fallback_provider: Optional secondary provider tried once after the
            primary exhausts its retries.
        clock: UTC clock used for time buckets and state timestamps.
        provider_timeout_seconds: Upper bound on one provider call.
        retry_backoff_seconds: Base delay of the exponential retry backoff.
    """

    def __init__(
        self,
        policy: GatewayPolicy,
        provider: AiProvider,
        store: CounterStore,
        audit_log: Optional[AuditLog] = None,
        *,
        fallback_provider: Optional[AiProvider] = None,
        clock: Clock = utc_now,
        provider_timeout_seconds: float = 60.0,
        retry_backoff_seconds: float = 0.5,
    ) -> None:
        self._policy = policy
        self._provider = provider
        self._fallback_provider = fallback_provider
        self._clock = clock
        self._provider_timeout = provider_timeout_seconds
        self._retry_backoff = retry_backoff_seconds

        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._sanitizer = InputSanitizer(policy.sanitizer)
        self._guardrails = GuardrailBuilder(policy)
        self._rate_limiter = RateLimiter(store, policy.rate_limits, clock)
        self._cache = ResponseCache(store, policy.cache, clock)
        self._validator = OutputValidator(policy.output, policy.tasks)
        self._detector = ContradictionDetector(policy.contradictions)
        self._scorer = RiskScorer(policy.risk)
        self._errors = ErrorHandler(policy.errors)
        self._monitor = Monitor(store, policy.monitor, policy.tasks.keys(), clock)
        self._escalation = SessionEscalationTracker(
            store, self._audit_log, policy.session_warning_threshold
        )
        self._feedback = FeedbackRecorder(self._audit_log)

    @classmethod
    def build(
        cls,
        policy: Optional[GatewayPolicy] = None,
        settings: Optional[Settings] = None,
        provider: Optional[AiProvider] = None,
        fallback_provider: Optional[AiProvider] = None,
        store: Optional[CounterStore] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Clock = utc_now,
    ) -> SafetyOrchestrator:
        """Wire an orchestrator from process settings.

        Without an explicit provider, an ``OllamaProvider`` is created from
        settings, plus a fallback provider when ``fallback_model`` is set.
        """
        settings = settings or get_settings()
        policy = policy or settings.load_policy()
        if provider is None:
            provider = OllamaProvider.from_settings(settings)
            if fallback_provider is None and settings.fallback_model:
                fallback_provider = OllamaProvider.from_settings(settings, model=settings.fallback_model)
        return cls(
            policy,
            provider,
            store or InMemoryStore(maxsize=settings.store_max_entries),
            audit_log,
            fallback_provider=fallback_provider,
            clock=clock,
            provider_timeout_seconds=settings.provider_timeout_seconds,
            retry_backoff_seconds=settings.retry_backoff_seconds,
        )

    # -- components --

    @property
    def policy(self) -> GatewayPolicy:
        return self._policy

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def monitor(self) -> Monitor:
        return self._monitor

    @property
    def escalation(self) -> SessionEscalationTracker:
        return self._escalation

    @property
    def error_handler(self) -> ErrorHandler:
        return self._errors

    # -----------------------------------------------------------------------
    # Request lifecycle
    # -----------------------------------------------------------------------

    def authorize(self, request: GatewayRequest, principal: Principal) -> None:
        """Reject unknown tasks and tasks the caller's role may not run.

        Raises:
            UnknownTaskError: If the task is not configured.
            TaskNotPermittedError: If the role may not request the task.
        """
        if request.task not in self._policy.tasks:
            logger.warning("unknown_task", ai_task=request.task, role=principal.role)
            raise UnknownTaskError(request.task)
        try:
            check_task_permission(self._policy, principal.role, request.task)
        except PermissionError:
            logger.warning("task_not_permitted", ai_task=request.task, role=principal.role)
            raise

    async def process(self, request: GatewayRequest, principal: Principal) -> GatewayResult:
        """Run one request to a terminal state and return the UI-facing result."""
        self.authorize(request, principal)
        run = self._start(request, principal)
        try:
            return await self._execute(run)
        except asyncio.CancelledError:
            if run.state not in TERMINAL_STATES:
                self._cancel(run)
            raise
        except Exception as exc:
            # Unclassified failures still end in one audited FAILED result.
            if run.state in TERMINAL_STATES:
                raise
            return await self._fail(run, exc)
        finally:
            clear_request_context()

    async def stream(self, request: GatewayRequest, principal: Principal) -> AsyncIterator[dict[str, Any]]:
        """Stream a response as ``chunk`` events followed by one terminal event.

        Chunks are sentence-buffered and deny-phrase redacted.  The terminal
        ``final`` (or ``error``) event carries the same body as ``process()``
        and is authoritative: a blocked response arrives with
        ``response=None`` even though chunks were already sent.

        Streams are not retried.  Closing the generator early cancels the
        provider stream, audits the request as CANCELLED and skips the cache.

        Admission is reported first: either an ``admitted`` event carrying the
        rate-limit headers, or an ``error`` event carrying the HTTP
        ``status_code`` and headers of the rejection, so a transport can pick
        its status before any provider I/O happens.
        """
        self.authorize(request, principal)
        run = self._start(request, principal)
        try:
            self._sanitize(run)
            rejected = await self._admit(run)
            if rejected is not None:
                yield {
                    "event": "error",
                    "data": rejected.to_body(),
                    "status_code": rejected.status_code,
                    "headers": rejected.headers,
                }
                return
            yield {"event": "admitted", "headers": dict(run.headers)}
            # The consumer may resume this generator from another task.
            _bind(request, principal)

            cached = await self._from_cache(run)
            if cached is not None:
                yield {"event": "chunk", "data": {"text": cached.response}}
                yield {"event": "final", "data": cached.to_body()}
                return

            self._guard(run)
            await self._dispatch(run)

            parts: list[str] = []
            try:
                async with contextlib.aclosing(self._stream_chunks(run, parts)) as chunks:
                    async for text in chunks:
                        yield {"event": "chunk", "data": {"text": text}}
            except GatewayError as exc:
                result = await self._recover_or_fail(run, exc)
                if result.success:
                    yield {"event": "final", "data": result.to_body()}
                else:
                    yield {"event": "error", "data": result.to_body(), "status_code": result.status_code}
                return

            result = await self._evaluate(run, "".join(parts), self._provider.model)
            yield {"event": "final", "data": result.to_body()}
        except Exception as exc:
            if run.state in TERMINAL_STATES:
                raise
            result = await self._fail(run, exc)
            yield {"event": "error", "data": result.to_body(), "status_code": result.status_code}
        finally:
            if run.state not in TERMINAL_STATES:
                self._cancel(run)
            clear_request_context()

    # -- stages --

    def _start(self, request: GatewayRequest, principal: Principal) -> PipelineRun:
        _bind(request, principal)
        logger.info("request_received")
        return PipelineRun(request, principal, self._clock())

    def _advance(self, run: PipelineRun, state: PipelineState) -> None:
        if state not in _VALID_TRANSITIONS.get(run.state, set()):
            raise InvalidTransitionError(
                f"Cannot transition from {run.state.value} to {state.value}."
            )
        previous = run.state
        run.state = state
        run.history.append(StateTransition(state=state, at=self._clock()))
        logger.info("pipeline_transition", from_state=previous.value, to_state=state.value)

    async def _execute(self, run: PipelineRun) -> GatewayResult:
        self._sanitize(run)
        rejected = await self._admit(run)
        if rejected is not None:
            return rejected

        cached = await self._from_cache(run)
        if cached is not None:
            return cached

        self._guard(run)
        await self._dispatch(run)
        try:
            completion = await self._complete_with_recovery(run)
        except GatewayError as exc:
            return await self._recover_or_fail(run, exc)
        return await self._evaluate(run, completion.text, completion.model)

    def _sanitize(self, run: PipelineRun) -> None:
        run.context, warnings = self._sanitizer.sanitize_context(run.request.context)
        for warning in warnings:
            run.add_warning(warning, safety=True)
        canonical = json.dumps(run.context, sort_keys=True, default=str)
        run.input_hash = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        self._advance(run, PipelineState.SANITIZED)

    async def _admit(self, run: PipelineRun) -> Optional[GatewayResult]:
        decision = await self._rate_limiter.check(run.task, run.principal.user_id, run.principal.role)
        run.headers = decision.headers()
        if decision.allowed:
            self._advance(run, PipelineState.ADMITTED)
            return None

        exc = RateLimitExceededError(
            f"AI request rate limit reached: {decision.reason.value}",
            {"reason": decision.reason.value},
        )
        handled = self._errors.handle(exc, {"task": run.task, "request_id": run.request.request_id})
        error = {
            **handled["error"],
            "reason": decision.reason.value,
            "retry_after": decision.retry_after,
        }
        run.error_code = error["code"]
        await self._finish(run, PipelineState.REJECTED)
        return await self._result(
            run,
            success=False,
            message=error["user_message"],
            error=error,
            status_code=error["status_code"],
        )

    def _cache_params(self, run: PipelineRun) -> dict[str, Any]:
        config = self._policy.tasks[run.task]
        return {
            "model": run.provider_model or self._provider.model,
            "temperature": config.temperature,
            "prompt_version": config.prompt_version,
        }

    async def _from_cache(self, run: PipelineRun) -> Optional[GatewayResult]:
        payload = await self._cache.get(run.task, run.context, **self._cache_params(run))
        if payload is None:
            return None
        self._load_payload(run, payload)
        run.from_cache = True
        await self._finish(run, PipelineState.CACHE_HIT, success=True)
        return await self._result(run, success=True, response=run.safe_output)

    @staticmethod
    def _load_payload(run: PipelineRun, payload: dict[str, Any]) -> None:
        metadata = payload.get("metadata") or {}
        run.safe_output = payload.get("response")
        run.model = metadata.get("model")
        for warning in metadata.get("warnings", []):
            run.add_warning(warning)
        if metadata.get("risk_score"):
            run.risk = RiskScore.model_validate(metadata["risk_score"])

    def _guard(self, run: PipelineRun) -> None:
        question = run.context.get("question")
        run.prompt = self._guardrails.build(
            run.task,
            run.context,
            question if isinstance(question, str) else None,
        )
        self._advance(run, PipelineState.GUARDED)

    async def _dispatch(self, run: PipelineRun) -> None:
        user_id, role = run.principal.user_id, run.principal.role
        await self._rate_limiter.record_dispatch(run.task, user_id)
        run.dispatched = True
        usage = await self._rate_limiter.get_remaining(run.task, user_id, role)
        run.headers = RateLimitDecision(allowed=True, limits=usage).headers()

    # -- provider calls --

    async def _call_once(self, provider: AiProvider, prompt: GuardedPrompt) -> Completion:
        try:
            async with asyncio.timeout(self._provider_timeout):
                return await provider.complete(
                    prompt.prompt,
                    temperature=prompt.temperature,
                    max_tokens=prompt.max_tokens,
                )
        except TimeoutError as exc:
            raise ProviderTimeoutError(
                "AI provider request timed out",
                {"timeout_seconds": self._provider_timeout, "model": provider.model},
            ) from exc

    async def _call_with_retries(self, provider: AiProvider, prompt: GuardedPrompt) -> Completion:
        attempt = 0
        while True:
            try:
                return await self._call_once(provider, prompt)
            except GatewayError as exc:
                rule = self._errors.recovery_rule(exc.category)
                if exc.category not in _RETRYABLE or attempt >= rule.max_retries:
                    raise
                delay = self._retry_backoff * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "provider_retry",
                    attempt=attempt,
                    category=exc.category.value,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)

    async def _complete_with_recovery(self, run: PipelineRun) -> Completion:
        try:
            return await self._call_with_retries(self._provider, run.prompt)
        except GatewayError as exc:
            if self._fallback_provider is None or exc.category not in _RETRYABLE:
                raise
            logger.warning("provider_fallback", category=exc.category.value, model=self._fallback_provider.model)
            completion = await self._call_once(self._fallback_provider, run.prompt)
            run.provider_model = self._fallback_provider.model
            return completion

    async def _stream_chunks(self, run: PipelineRun, parts: list[str]) -> AsyncIterator[str]:
        prompt = run.prompt
        tokens = self._provider.stream(
            prompt.prompt,
            temperature=prompt.temperature,
            max_tokens=prompt.max_tokens,
        )
        deadline = asyncio.get_running_loop().time() + self._provider_timeout
        pending = ""
        async with contextlib.aclosing(tokens):
            while True:
                try:
                    async with asyncio.timeout_at(deadline):
                        token = await anext(tokens)
                except StopAsyncIteration:
                    break
                except TimeoutError as exc:
                    raise ProviderTimeoutError(
                        "AI provider stream timed out",
                        {"timeout_seconds": self._provider_timeout},
                    ) from exc
                parts.append(token)
                ready, pending = split_sentences(pending + token)
                if ready:
                    yield self._validator.redact(ready)[0]
        if pending:
            yield self._validator.redact(pending)[0]

    async def _recover_or_fail(self, run: PipelineRun, exc: GatewayError) -> GatewayResult:
        logger.warning("provider_error", category=exc.category.value, exception_class=type(exc).__name__)
        stale = await self._cache.get_stale(run.task, run.context, **self._cache_params(run))
        if stale is None:
            return await self._fail(run, exc)

        self._load_payload(run, stale)
        run.from_cache = True
        run.stale = True
        run.add_warning(
            f"AI provider unavailable; showing a response cached at {stale['cached_at']}"
        )
        await self._finish(run, PipelineState.STALE_SERVED, success=False)
        return await self._result(run, success=True, response=run.safe_output)

    # -- evaluation --

    async def _evaluate(self, run: PipelineRun, raw_text: str, model: Optional[str]) -> GatewayResult:
        run.raw_response = raw_text
        run.model = model
        self._advance(run, PipelineState.PROVIDER_CALLED)

        text, truncated = truncate_to_words(raw_text, run.prompt.max_words)
        if truncated:
            run.add_warning(f"Response was truncated to {run.prompt.max_words} words")
        validation = self._validator.full_validation(text, run.task, run.principal.role)
        run.validation = validation
        run.was_modified = truncated or bool(validation.blocked)
        for warning in validation.warnings:
            run.add_warning(warning)
        for flag in validation.risk_flags:
            run.risk_flags.append(flag)
            if flag.startswith("hallucination:"):
                run.add_warning(f"Possible hallucination: {flag.split(':', 1)[1]}", safety=True)
        self._advance(run, PipelineState.VALIDATED)

        # Rule-engine ground truth is read from the caller's context; the
        # sanitized copy only feeds the prompt and the cache key.
        detection = self._detector.detect(raw_text, context=run.request.context)
        risk = self._scorer.score(raw_text, detection.contradictions, run.request.context)
        run.detection, run.risk = detection, risk
        for contradiction in detection.contradictions:
            run.risk_flags.append(f"contradiction:{contradiction.type.value}:{contradiction.severity.value}")
            run.add_warning(
                f"Contradiction with rule engine ({contradiction.severity.value}): {contradiction.description}",
                safety=True,
            )
        if risk.should_warn:
            run.risk_flags.append(f"risk:{risk.level.value}")
            run.add_warning(f"Elevated risk score: {risk.total} ({risk.label})", safety=True)
        self._advance(run, PipelineState.SCORED)

        reasons = self._block_reasons(validation, detection, risk)
        run.was_overridden = bool(reasons) or bool(validation.blocked)
        if reasons:
            return await self._block(run, reasons)
        return await self._allow(run)

    def _block_reasons(
        self,
        validation: FullValidation,
        detection: DetectionResult,
        risk: RiskScore,
    ) -> list[str]:
        reasons = []
        if validation.blocked and self._policy.output.block_on_deny_match:
            reasons.append("deny_phrase")
        if not validation.role_check.valid:
            reasons.append("role_restricted")
        if detection.has_critical:
            reasons.append("critical_contradiction")
        if risk.should_block:
            reasons.append("risk_threshold")
        return reasons

    async def _block(self, run: PipelineRun, reasons: list[str]) -> GatewayResult:
        logger.warning(
            "response_blocked",
            reasons=reasons,
            risk_total=run.risk.total,
            critical_contradictions=sum(
                1 for c in run.detection.contradictions if c.severity == Severity.CRITICAL
            ),
        )
        await self._finish(run, PipelineState.BLOCKED, success=True)
        return await self._result(
            run,
            success=False,
            blocked=True,
            message=self._policy.fallback_message,
        )

    async def _allow(self, run: PipelineRun) -> GatewayResult:
        run.safe_output = run.validation.output
        await self._finish(run, PipelineState.ALLOWED, success=True)

        if run.has_safety_warning:
            session_id = run.request.resolved_session_id()
            if session_id:
                await self._escalation.record_warning(session_id, run.request.request_id)

        if not run.was_modified and not run.has_safety_warning:
            await self._cache.put(
                run.task,
                run.context,
                {
                    "response": run.safe_output,
                    "was_modified": False,
                    "metadata": {
                        "warnings": list(run.warnings),
                        "risk_score": run.risk.model_dump(mode="json"),
                        "model": run.model,
                        "prompt_version": run.prompt.prompt_version,
                    },
                },
                **self._cache_params(run),
            )
        return await self._result(run, success=True, response=run.safe_output)

    # -- terminal handling --

    async def _fail(self, run: PipelineRun, exc: BaseException) -> GatewayResult:
        handled = self._errors.handle(exc, {"task": run.task, "request_id": run.request.request_id})
        error = handled["error"]
        run.error_code = error["code"]
        await self._finish(run, PipelineState.FAILED, success=False)
        return await self._result(
            run,
            success=False,
            message=error["user_message"],
            error=error,
            status_code=error["status_code"],
        )

    def _cancel(self, run: PipelineRun) -> None:
        logger.info("request_cancelled", state=run.state.value)
        self._advance(run, PipelineState.CANCELLED)
        self._audit(run)

    async def _finish(self, run: PipelineRun, state: PipelineState, success: Optional[bool] = None) -> None:
        """Enter a terminal state, audit it, and count it in the metrics.

        ``success=None`` leaves the request out of the monitor (rejections).
        """
        self._advance(run, state)
        self._audit(run)
        if success is None:
            return
        await self._monitor.record_request(run.task, success, run.latency_ms, run.was_overridden)
        if run.dispatched:
            await self._rate_limiter.record_outcome(run.task, success)

    def _audit(self, run: PipelineRun) -> AiRequestRecord:
        request, prompt = run.request, run.prompt
        return self._audit_log.append(AiRequestRecord(
            request_id=request.request_id,
            session_id=request.resolved_session_id(),
            user_id=run.principal.user_id,
            role=run.principal.role,
            patient_id=request.patient_id(),
            task=run.task,
            prompt_version=prompt.prompt_version if prompt else None,
            input_hash=run.input_hash,
            prompt=prompt.prompt if prompt else None,
            raw_response=run.raw_response,
            safe_output=run.safe_output,
            model=run.model,
            latency_ms=run.latency_ms,
            was_overridden=run.was_overridden,
            risk_flags=list(run.risk_flags),
            blocked_phrases=list(run.validation.blocked) if run.validation else [],
            warnings=list(run.warnings),
            final_state=run.state,
            state_history=list(run.history),
            risk_score=run.risk,
            contradictions=list(run.detection.contradictions) if run.detection else [],
            error_code=run.error_code,
            requested_at=request.received_at,
        ))

    async def _result(self, run: PipelineRun, success: bool, **fields: Any) -> GatewayResult:
        escalation = EscalationStatus(session_id="", threshold=self._escalation.threshold)
        session_id = run.request.resolved_session_id()
        if session_id:
            escalation = await self._escalation.status(session_id)

        validation = run.validation
        metadata = ResponseMetadata(
            latency_ms=run.latency_ms,
            warnings=list(run.warnings),
            blocked=list(validation.blocked) if validation else [],
            risk_score=run.risk,
            contradictions=list(run.detection.contradictions) if run.detection else [],
            was_modified=run.was_modified,
            hallucination_flags=[
                flag.split(":", 1)[1] for flag in run.risk_flags if flag.startswith("hallucination:")
            ],
            from_cache=run.from_cache,
            stale=run.stale,
            model=run.model,
            prompt_version=run.prompt.prompt_version if run.prompt else None,
            state=run.state,
            session_escalated=escalation.escalated,
            session_warning_count=escalation.warning_count,
        )
        return GatewayResult(
            success=success,
            request_id=run.request.request_id,
            state=run.state,
            metadata=metadata,
            headers=dict(run.headers),
            **fields,
        )

    # -----------------------------------------------------------------------
    # Governance operations
    # -----------------------------------------------------------------------

    def _record_event(
        self,
        actor: Principal,
        event_type: AuditEventType,
        target: str,
        metadata: dict[str, Any],
    ) -> AuditEvent:
        return self._audit_log.append(AuditEvent(
            actor_id=actor.user_id,
            actor_role=actor.role,
            event_type=event_type,
            target_entity=target,
            metadata=metadata,
        ))

    async def session_status(self, actor: Principal, session_id: str) -> EscalationStatus:
        require_permission(actor.role, "view_escalation")
        return await self._escalation.status(session_id)

    async def reset_session(self, actor: Principal, session_id: str) -> EscalationStatus:
        require_permission(actor.role, "reset_escalation")
        return await self._escalation.reset(session_id, actor.user_id, actor.role)

    def update_limits(self, actor: Principal, **limits: Any) -> RateLimitPolicy:
        require_permission(actor.role, "manage_limits")
        policy = self._rate_limiter.update_limits(**limits)
        changes = {name: value for name, value in limits.items() if value is not None}
        self._record_event(actor, AuditEventType.RATE_LIMITS_UPDATED, "rate_limits", changes)
        return policy

    async def reset_user_limits(self, actor: Principal, user_id: str) -> int:
        require_permission(actor.role, "manage_limits")
        cleared = await self._rate_limiter.reset_for_user(user_id)
        self._record_event(actor, AuditEventType.RATE_LIMITS_RESET, user_id, {"keys_cleared": cleared})
        return cleared

    async def clear_cache(self, actor: Principal) -> int:
        require_permission(actor.role, "manage_cache")
        cleared = await self._cache.clear_all()
        self._record_event(actor, AuditEventType.CACHE_CLEARED, "response_cache", {"keys_cleared": cleared})
        return cleared

    async def invalidate_cache(
        self,
        actor: Principal,
        patient_id: Optional[str] = None,
        task: Optional[str] = None,
    ) -> dict[str, int]:
        """Bump the patient and/or task cache version.

        Raises:
            ValueError: If neither ``patient_id`` nor ``task`` is given.
        """
        require_permission(actor.role, "manage_cache")
        if not patient_id and not task:
            raise ValueError("Provide a patient_id or a task to invalidate.")
        versions: dict[str, int] = {}
        if patient_id:
            versions["patient_version"] = await self._cache.invalidate_patient(patient_id)
        if task:
            versions["task_version"] = await self._cache.invalidate_task(task)
        self._record_event(
            actor,
            AuditEventType.CACHE_INVALIDATED,
            task or "patient",
            {"patient_id": patient_id, "task": task, **versions},
        )
        return versions

    def submit_feedback(self, actor: Principal, feedback: AiFeedback) -> AuditEvent:
        require_permission(actor.role, "submit_feedback")
        return self._feedback.submit(feedback, actor.user_id, actor.role)

    def decision_report(self, actor: Principal, request_id: str) -> DecisionReport:
        require_permission(actor.role, "view_audit")
        record = self._audit_log.get_request(request_id)
        if record is None:
            raise UnknownRequestError(request_id)
        return generate_decision_report(record)

    def export_audit(self, actor: Principal) -> dict[str, Any]:
        require_permission(actor.role, "view_audit")
        bundle = self._audit_log.export_for_review()
        self._record_event(
            actor,
            AuditEventType.AUDIT_EXPORTED,
            "audit_log",
            {"entry_count": bundle["export_metadata"]["entry_count"]},
        )
        return bundle

    async def metrics(self, actor: Principal, period: str = "hour") -> dict[str, Any]:
        require_permission(actor.role, "view_metrics")
        return await self._monitor.get_metrics(period)

    async def dashboard(self, actor: Principal) -> dict[str, Any]:
        require_permission(actor.role, "view_metrics")
        dashboard = await self._monitor.get_dashboard()
        chain_valid, broken_at = self._audit_log.verify_chain()
        dashboard["cache"] = await self._cache.get_stats()
        dashboard["rate_limits"] = {
            task: await self._rate_limiter.get_stats(task) for task in sorted(self._policy.tasks)
        }
        dashboard["feedback"] = self._feedback.summary()
        dashboard["audit"] = {
            "entries": len(self._audit_log),
            "chain_valid": chain_valid,
            "broken_at": broken_at,
        }
        return dashboard

    async def health(self) -> dict[str, Any]:
        metrics = await self._monitor.get_metrics("hour")
        chain_valid, _ = self._audit_log.verify_chain()
        return {
            "status": metrics["health"]["status"],
            "score": metrics["health"]["score"],
            "provider_available": await self._provider.is_available(),
            "audit_chain_valid": chain_valid,
        }

    async def aclose(self) -> None:
        await self._provider.aclose()
        if self._fallback_provider is not None:
            await self._fallback_provider.aclose()
