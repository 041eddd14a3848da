"""
CliniGate HTTP API.

Thin FastAPI layer over ``SafetyOrchestrator``.  Identity arrives from the
upstream auth layer in the ``X-User-Id`` and ``X-User-Role`` headers; a
request without both is rejected with 401.  Every error body has the same
shape::

    {"success": false, "error": {"category", "severity", "status_code",
                                 "message", "user_message", ...}}

and never contains raw exception text.

Routes:

* ``POST /api/ai``                              -- one AI request
* ``POST /api/ai/stream``                       -- the same, as server-sent events;
  rejections are answered before streaming with their usual status
  and headers
* ``POST /api/ai/feedback``                     -- clinician feedback
* ``GET  /api/ai/metrics``, ``/api/ai/dashboard`` -- monitoring
* ``GET|DELETE /api/ai/sessions/{id}/escalation`` -- session escalation
* ``GET  /api/ai/requests/{id}/report``         -- decision report
* ``GET  /api/ai/audit/export``                 -- PHI-redacted audit export
* ``PUT|DELETE /api/ai/admin/limits``           -- rate-limit administration
* ``POST /api/ai/admin/cache/clear|invalidate`` -- cache administration
* ``GET  /health``
"""

from __future__ import annotations

import json
import time
from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from clinigate import __version__
from clinigate.config import Settings, get_settings
from clinigate.errors import (
    GatewayError,
    TaskNotPermittedError,
    UnknownRequestError,
    UnknownTaskError,
)
from clinigate.feedback import AiFeedback
from clinigate.logging_config import configure_logging, get_logger
from clinigate.models import GatewayRequest, Principal
from clinigate.orchestrator import SafetyOrchestrator

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class AiRequestBody(BaseModel):
    task: str = Field(..., min_length=1)
    context: dict[str, Any] = Field(default_factory=dict)
    session_id: Optional[str] = None


class LimitsUpdateBody(BaseModel):
    task_limits: Optional[dict[str, int]] = None
    role_quotas: Optional[dict[str, int]] = None
    global_limit: Optional[int] = Field(default=None, ge=0)
    default_task_limit: Optional[int] = Field(default=None, ge=0)
    default_quota: Optional[int] = Field(default=None, ge=0)


class CacheInvalidateBody(BaseModel):
    patient_id: Optional[str] = None
    task: Optional[str] = None


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------

def error_body(
    status_code: int,
    category: str,
    message: str,
    severity: str = "low",
    **extra: Any,
) -> dict[str, Any]:
    return {
        "success": False,
        "error": {
            "category": category,
            "severity": severity,
            "status_code": status_code,
            "message": message,
            "user_message": message,
            **extra,
        },
    }


def _error_response(status_code: int, category: str, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=error_body(status_code, category, message, **extra))


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_orchestrator(request: Request) -> SafetyOrchestrator:
    return request.app.state.orchestrator


def get_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Principal:
    """Read the caller identity set by the upstream auth layer."""
    if not x_user_id or not x_user_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return Principal(user_id=x_user_id, role=x_user_role.strip().lower())


def _sse(event: dict[str, Any]) -> str:
    return f"event: {event['event']}\ndata: {json.dumps(event['data'], default=str)}\n\n"


async def _event_stream(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async with aclosing(events):
        async for event in events:
            yield _sse(event)


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app(
    orchestrator: Optional[SafetyOrchestrator] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        orchestrator: Pre-built orchestrator (tests inject one with a
            scripted provider).  Built from settings when omitted.
        settings: Optional settings override.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or get_settings()
    configure_logging(settings)
    orchestrator = orchestrator or SafetyOrchestrator.build(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "application_starting",
            environment=settings.environment,
            policy_id=orchestrator.policy.policy_id,
        )
        yield
        await orchestrator.aclose()
        logger.info("application_stopped")

    app = FastAPI(
        title="CliniGate AI Safety Gateway",
        description=__doc__,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        processing_time = int((time.perf_counter() - start_time) * 1000)
        response.headers["X-Processing-Time-Ms"] = str(processing_time)
        logger.info(
            "http_request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            processing_time_ms=processing_time,
        )
        return response

    register_exception_handlers(app)
    register_routes(app)
    return app


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        category = "authentication" if exc.status_code == 401 else "request"
        return _error_response(exc.status_code, category, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err["loc"][1:]) for err in exc.errors()]
        return _error_response(400, "invalid_request", "Invalid request body", fields=fields)

    @app.exception_handler(UnknownTaskError)
    async def unknown_task_handler(request: Request, exc: UnknownTaskError):
        return _error_response(400, "invalid_request", f"Unknown AI task '{exc.task}'")

    @app.exception_handler(TaskNotPermittedError)
    async def task_not_permitted_handler(request: Request, exc: TaskNotPermittedError):
        return _error_response(403, "authorization", f"Your role may not request AI task '{exc.task}'")

    @app.exception_handler(PermissionError)
    async def permission_handler(request: Request, exc: PermissionError):
        return _error_response(403, "authorization", "Your role is not permitted to perform this action")

    @app.exception_handler(UnknownRequestError)
    async def unknown_request_handler(request: Request, exc: UnknownRequestError):
        return _error_response(404, "not_found", f"No audited AI request with id '{exc.request_id}'")

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        handled = request.app.state.orchestrator.error_handler.handle(exc)
        return JSONResponse(
            status_code=handled["error"]["status_code"],
            content={"success": False, "error": handled["error"]},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", exception_class=type(exc).__name__)
        return _error_response(500, "unknown", "An unexpected error occurred. Please try again.", severity="high")


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""

    # -- AI requests --

    @app.post("/api/ai", tags=["AI"])
    async def ai_request(
        body: AiRequestBody,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> JSONResponse:
        request = GatewayRequest(task=body.task, context=body.context, session_id=body.session_id)
        result = await orchestrator.process(request, principal)
        return JSONResponse(status_code=result.status_code, content=result.to_body(), headers=result.headers)

    @app.post("/api/ai/stream", tags=["AI"])
    async def ai_stream(
        body: AiRequestBody,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> Response:
        request = GatewayRequest(task=body.task, context=body.context, session_id=body.session_id)
        orchestrator.authorize(request, principal)
        events = orchestrator.stream(request, principal)
        # Admission is settled before the response starts, so rejections keep
        # their status code and rate-limit headers.
        admission = await anext(events)
        if admission["event"] == "error":
            await events.aclose()
            return JSONResponse(
                status_code=admission.get("status_code", 500),
                content=admission["data"],
                headers=admission.get("headers"),
            )
        return StreamingResponse(
            _event_stream(events),
            media_type="text/event-stream",
            headers={
                **admission.get("headers", {}),
                "Cache-Control": "no-cache",
                "X-Request-ID": request.request_id,
            },
        )

    @app.post("/api/ai/feedback", status_code=201, tags=["AI"])
    async def ai_feedback(
        feedback: AiFeedback,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        event = orchestrator.submit_feedback(principal, feedback)
        return {"success": True, "feedback_id": event.entry_id}

    # -- monitoring --

    @app.get("/api/ai/metrics", tags=["Monitoring"])
    async def ai_metrics(
        period: str = "hour",
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        try:
            return await orchestrator.metrics(principal, period)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/api/ai/dashboard", tags=["Monitoring"])
    async def ai_dashboard(
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return await orchestrator.dashboard(principal)

    # -- sessions and audit --

    @app.get("/api/ai/sessions/{session_id}/escalation", tags=["Sessions"])
    async def session_escalation(
        session_id: str,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return (await orchestrator.session_status(principal, session_id)).model_dump()

    @app.delete("/api/ai/sessions/{session_id}/escalation", tags=["Sessions"])
    async def reset_session_escalation(
        session_id: str,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return (await orchestrator.reset_session(principal, session_id)).model_dump()

    @app.get("/api/ai/requests/{request_id}/report", tags=["Audit"])
    async def decision_report(
        request_id: str,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return orchestrator.decision_report(principal, request_id).to_dict()

    @app.get("/api/ai/audit/export", tags=["Audit"])
    async def audit_export(
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        return orchestrator.export_audit(principal)

    # -- administration --

    @app.put("/api/ai/admin/limits", tags=["Admin"])
    async def update_limits(
        body: LimitsUpdateBody,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        policy = orchestrator.update_limits(principal, **body.model_dump())
        return {"success": True, "limits": policy.model_dump()}

    @app.delete("/api/ai/admin/limits/{user_id}", tags=["Admin"])
    async def reset_user_limits(
        user_id: str,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        cleared = await orchestrator.reset_user_limits(principal, user_id)
        return {"success": True, "keys_cleared": cleared}

    @app.post("/api/ai/admin/cache/clear", tags=["Admin"])
    async def clear_cache(
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        cleared = await orchestrator.clear_cache(principal)
        return {"success": True, "keys_cleared": cleared}

    @app.post("/api/ai/admin/cache/invalidate", tags=["Admin"])
    async def invalidate_cache(
        body: CacheInvalidateBody,
        principal: Principal = Depends(get_principal),
        orchestrator: SafetyOrchestrator = Depends(get_orchestrator),
    ) -> dict[str, Any]:
        try:
            versions = await orchestrator.invalidate_cache(principal, body.patient_id, body.task)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, **versions}

    # -- health --

    @app.get("/health", tags=["Health"])
    async def health_check(orchestrator: SafetyOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
        return {"version": __version__, **(await orchestrator.health())}
