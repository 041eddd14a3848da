"""
Tests for clinigate.cache -- response caching.

Covers: round trip across volatile-field differences, misses on
non-volatile differences, non-cacheable tasks, dirty payload rejection,
TTL expiry and the stale grace copy, patient and task invalidation, key
parameters, statistics and flushing.
"""

from __future__ import annotations

import hashlib

import pytest

from clinigate.cache import ResponseCache
from clinigate.config import CachePolicy

from conftest import make_red_context

_PARAMS = {"model": "m1", "temperature": 0.2, "prompt_version": "v1"}


def _make_cache(store, clock, **overrides) -> ResponseCache:
    return ResponseCache(store, CachePolicy(**overrides), clock)


def _make_payload(text: str = "Follow the system classification.") -> dict:
    return {"response": text, "was_modified": False, "metadata": {"warnings": []}}


# ---------------------------------------------------------------------------
# 1. Keys and round trips
# ---------------------------------------------------------------------------

class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_volatile_fields_share_an_entry(self, store, clock):
        cache = _make_cache(store, clock)
        first = make_red_context(timestamp="2024-03-01T10:00:00Z", user_id="u1")
        second = make_red_context(timestamp="2024-03-01T10:05:00Z", user_id="u2", request_id="r2")
        assert await cache.put("explain_triage", first, _make_payload(), **_PARAMS) is True
        cached = await cache.get("explain_triage", second, **_PARAMS)
        assert cached["response"] == "Follow the system classification."
        assert cached["cached_at"] == clock.now.isoformat()

    @pytest.mark.asyncio
    async def test_non_volatile_difference_misses(self, store, clock):
        cache = _make_cache(store, clock)
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        assert await cache.get("explain_triage", make_red_context(patient_id="other"), **_PARAMS) is None
        assert await cache.get("explain_triage", make_red_context(findings=["cough"]), **_PARAMS) is None

    @pytest.mark.asyncio
    async def test_key_includes_model_temperature_and_prompt_version(self, store, clock):
        cache = _make_cache(store, clock)
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        for change in ({"model": "m2"}, {"temperature": 0.7}, {"prompt_version": "v2"}):
            params = {**_PARAMS, **change}
            assert await cache.get("explain_triage", make_red_context(), **params) is None

    def test_context_hash_ignores_key_order_and_nested_volatile(self, store, clock):
        cache = _make_cache(store, clock)
        a = {"x": 1, "nested": {"timestamp": "t1", "y": 2}}
        b = {"nested": {"y": 2, "timestamp": "t2"}, "x": 1}
        assert cache.context_hash(a) == cache.context_hash(b)

    def test_context_hash_is_sha256_of_normalized_json(self, store, clock):
        cache = _make_cache(store, clock)
        expected = hashlib.sha256(b'{"x": 1}').hexdigest()
        assert cache.context_hash({"x": 1, "request_id": "r-1"}) == expected


# ---------------------------------------------------------------------------
# 2. Eligibility
# ---------------------------------------------------------------------------

class TestEligibility:
    @pytest.mark.asyncio
    async def test_non_cacheable_task_never_stored(self, store, clock):
        cache = _make_cache(store, clock)
        assert await cache.put("critical_alert", make_red_context(), _make_payload(), **_PARAMS) is False
        assert await cache.get("critical_alert", make_red_context(), **_PARAMS) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"response": "x", "was_modified": True},
        {"response": "x", "was_overridden": True},
        {"response": "x", "success": False},
        {"response": "x", "metadata": {"was_modified": True}},
    ])
    async def test_dirty_payloads_rejected(self, store, clock, payload):
        cache = _make_cache(store, clock)
        assert await cache.put("explain_triage", make_red_context(), payload, **_PARAMS) is False
        assert (await cache.get_stats())["rejected"] == 1


# ---------------------------------------------------------------------------
# 3. Expiry and stale entries
# ---------------------------------------------------------------------------

class TestExpiry:
    @pytest.mark.asyncio
    async def test_task_ttl_then_stale_grace(self, store, clock):
        cache = _make_cache(store, clock)
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        clock.advance(1801)
        assert await cache.get("explain_triage", make_red_context(), **_PARAMS) is None
        stale = await cache.get_stale("explain_triage", make_red_context(), **_PARAMS)
        assert stale["response"] == "Follow the system classification."
        clock.advance(900)
        assert await cache.get_stale("explain_triage", make_red_context(), **_PARAMS) is None

    @pytest.mark.asyncio
    async def test_no_stale_copy_without_grace(self, store, clock):
        cache = _make_cache(store, clock, stale_grace_seconds=0)
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        assert await cache.get_stale("explain_triage", make_red_context(), **_PARAMS) is None


# ---------------------------------------------------------------------------
# 4. Invalidation
# ---------------------------------------------------------------------------

class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_patient(self, store, clock):
        cache = _make_cache(store, clock)
        other = make_red_context(patient_id="synthetic-002")
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        await cache.put("explain_triage", other, _make_payload(), **_PARAMS)
        assert await cache.invalidate_patient("synthetic-001") == 1
        assert await cache.get("explain_triage", make_red_context(), **_PARAMS) is None
        assert await cache.get("explain_triage", other, **_PARAMS) is not None

    @pytest.mark.asyncio
    async def test_invalidate_task(self, store, clock):
        cache = _make_cache(store, clock)
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        await cache.put("review_treatment", make_red_context(), _make_payload(), **_PARAMS)
        await cache.invalidate_task("explain_triage")
        assert await cache.get("explain_triage", make_red_context(), **_PARAMS) is None
        assert await cache.get("review_treatment", make_red_context(), **_PARAMS) is not None

    @pytest.mark.asyncio
    async def test_clear_all_and_stats(self, store, clock):
        cache = _make_cache(store, clock)
        await cache.put("explain_triage", make_red_context(), _make_payload(), **_PARAMS)
        await cache.get("explain_triage", make_red_context(), **_PARAMS)
        await cache.get("explain_triage", make_red_context(patient_id="x"), **_PARAMS)
        stats = await cache.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["writes"] == 1
        assert stats["hit_rate"] == 0.5

        assert await cache.clear_all() > 0
        assert await cache.get("explain_triage", make_red_context(), **_PARAMS) is None
