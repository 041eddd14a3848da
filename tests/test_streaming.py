"""
Tests for SafetyOrchestrator.stream -- sentence-buffered streaming.

Covers: chunk events followed by an authoritative final event, redaction
inside chunks, blocked finals after chunks were sent, cached streams,
rejected streams, provider errors with and without a stale entry, and
early close leading to a CANCELLED audit record with no cache write.
"""

from __future__ import annotations

import contextlib

import pytest

from clinigate.errors import ProviderUnavailableError
from clinigate.models import GatewayRequest, PipelineState
from clinigate.orchestrator import SafetyOrchestrator
from clinigate.provider import ScriptedProvider

from conftest import make_red_context

CLEAN_EXPLANATION = (
    "The rule engine classified this child as RED because lethargy is a "
    "danger sign. Urgent referral is required by the classification."
)


def _make_orchestrator(policy, store, clock, responses=()):
    provider = ScriptedProvider(responses)
    return SafetyOrchestrator(policy, provider, store, clock=clock, retry_backoff_seconds=0), provider


async def _collect(orchestrator, request, principal) -> list[dict]:
    """Events after admission; the admitted marker is checked separately."""
    return [
        event async for event in orchestrator.stream(request, principal)
        if event["event"] != "admitted"
    ]


def _request(**kwargs) -> GatewayRequest:
    kwargs.setdefault("context", make_red_context())
    return GatewayRequest(task="explain_triage", **kwargs)


class TestStreaming:
    @pytest.mark.asyncio
    async def test_chunks_then_final(self, policy, store, clock, nurse):
        orch, provider = _make_orchestrator(policy, store, clock, [CLEAN_EXPLANATION])
        events = await _collect(orch, _request(), nurse)

        chunks = [e["data"]["text"] for e in events if e["event"] == "chunk"]
        assert len(chunks) == 2
        assert "".join(chunks) == CLEAN_EXPLANATION
        assert events[-1]["event"] == "final"
        final = events[-1]["data"]
        assert final["success"] is True
        assert final["metadata"]["state"] == "ALLOWED"
        assert "lethargy" in final["response"]
        assert provider.calls[0]["stream"] is True
        assert provider.streams_closed == 1

    @pytest.mark.asyncio
    async def test_admission_reported_before_chunks(self, policy, store, clock, nurse):
        orch, _ = _make_orchestrator(policy, store, clock, [CLEAN_EXPLANATION])
        events = [event async for event in orch.stream(_request(), nurse)]
        assert [e["event"] for e in events][:2] == ["admitted", "chunk"]
        assert events[0]["headers"]["X-RateLimit-Limit"] == "30"

    @pytest.mark.asyncio
    async def test_chunks_are_redacted(self, policy, store, clock, nurse):
        orch, _ = _make_orchestrator(policy, store, clock, ["Refer now. You should discharge patient later."])
        events = await _collect(orch, _request(), nurse)
        streamed = "".join(e["data"]["text"] for e in events if e["event"] == "chunk")
        assert "discharge patient" not in streamed
        assert "[REDACTED]" in streamed

    @pytest.mark.asyncio
    async def test_blocked_final_after_chunks(self, policy, store, clock, nurse):
        orch, _ = _make_orchestrator(policy, store, clock, ["This is a mild case, home care is fine."])
        events = await _collect(orch, _request(), nurse)
        assert any(e["event"] == "chunk" for e in events)
        final = events[-1]["data"]
        assert events[-1]["event"] == "final"
        assert final["blocked"] is True
        assert final["response"] is None
        assert final["message"] == policy.fallback_message

    @pytest.mark.asyncio
    async def test_cached_response_streamed_as_one_chunk(self, policy, store, clock, nurse):
        orch, provider = _make_orchestrator(policy, store, clock, [CLEAN_EXPLANATION])
        first = await orch.process(_request(), nurse)
        events = await _collect(orch, _request(), nurse)
        assert [e["event"] for e in events] == ["chunk", "final"]
        assert events[0]["data"]["text"] == first.response
        assert events[1]["data"]["metadata"]["from_cache"] is True
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_rejected_stream_yields_error(self, policy, store, clock, nurse):
        policy.rate_limits.task_limits["explain_triage"] = 0
        orch, provider = _make_orchestrator(policy, store, clock)
        events = await _collect(orch, _request(), nurse)
        assert [e["event"] for e in events] == ["error"]
        assert events[0]["data"]["error"]["status_code"] == 429
        assert events[0]["status_code"] == 429
        assert events[0]["headers"]["Retry-After"] == "60"
        assert provider.calls == []


class TestStreamFailures:
    @pytest.mark.asyncio
    async def test_provider_error_is_not_retried(self, policy, store, clock, nurse):
        orch, provider = _make_orchestrator(
            policy, store, clock, [ProviderUnavailableError("refused"), CLEAN_EXPLANATION]
        )
        events = await _collect(orch, _request(), nurse)
        assert [e["event"] for e in events] == ["error"]
        assert events[0]["data"]["error"]["category"] == "provider"
        assert len(provider.calls) == 1
        record = orch.audit_log.query_requests()[0]
        assert record.final_state == PipelineState.FAILED

    @pytest.mark.asyncio
    async def test_provider_error_serves_stale_entry(self, policy, store, clock, nurse):
        orch, _ = _make_orchestrator(
            policy, store, clock, [CLEAN_EXPLANATION, ProviderUnavailableError("refused")]
        )
        await orch.process(_request(), nurse)
        clock.advance(1900)
        events = await _collect(orch, _request(), nurse)
        assert events[-1]["event"] == "final"
        assert events[-1]["data"]["metadata"]["stale"] is True

    @pytest.mark.asyncio
    async def test_early_close_cancels_and_audits(self, policy, store, clock, nurse):
        orch, provider = _make_orchestrator(policy, store, clock, [CLEAN_EXPLANATION])
        request = _request()

        async with contextlib.aclosing(orch.stream(request, nurse)) as events:
            async for event in events:
                if event["event"] == "chunk":
                    break

        assert provider.streams_closed == 1
        record = orch.audit_log.get_request(request.request_id)
        assert record.final_state == PipelineState.CANCELLED
        assert (await orch.cache.get_stats())["writes"] == 0
        assert (await orch.monitor.get_metrics("hour"))["requests"]["total"] == 0
