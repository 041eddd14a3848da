"""
Tests for clinigate.audit -- the hash-chained AI request audit log.

Covers: append + chain verification, tamper detection, duplicate request
records, copies handed out instead of stored entries, request and event
queries, time-window export, PHI redaction and empty log verification.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clinigate.audit import (
    AiRequestRecord,
    AuditEvent,
    AuditEventType,
    AuditLog,
    StateTransition,
    redact_phi_from_metadata,
    redact_phi_text,
)
from clinigate.models import PipelineState

_T0 = datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc)


def _make_record(
    request_id: str = "req-1",
    final_state: PipelineState = PipelineState.ALLOWED,
    session_id: str | None = "sess-1",
    user_id: str = "nurse-1",
    task: str = "explain_triage",
    **fields,
) -> AiRequestRecord:
    return AiRequestRecord(
        request_id=request_id,
        session_id=session_id,
        user_id=user_id,
        role="nurse",
        task=task,
        input_hash="0" * 64,
        final_state=final_state,
        state_history=[
            StateTransition(state=PipelineState.RECEIVED, at=_T0),
            StateTransition(state=final_state, at=_T0 + timedelta(seconds=1)),
        ],
        requested_at=_T0,
        **fields,
    )


def _make_event(
    event_type: AuditEventType = AuditEventType.CACHE_CLEARED,
    actor_id: str = "admin-1",
    target_entity: str = "response_cache",
    metadata: dict | None = None,
) -> AuditEvent:
    return AuditEvent(
        actor_id=actor_id,
        actor_role="admin",
        event_type=event_type,
        target_entity=target_entity,
        metadata=metadata or {},
    )


# ---------------------------------------------------------------------------
# 1. Append + chain verification
# ---------------------------------------------------------------------------

class TestAppendAndChainVerification:
    def test_first_entry_has_empty_previous_hash(self):
        log = AuditLog()
        appended = log.append(_make_record())
        assert appended.previous_hash == ""
        assert len(log) == 1

    def test_records_and_events_share_one_chain(self):
        log = AuditLog()
        e1 = log.append(_make_record("req-1"))
        e2 = log.append(_make_event())
        e3 = log.append(_make_record("req-2"))
        assert e2.previous_hash == e1.compute_hash()
        assert e3.previous_hash == e2.compute_hash()
        assert log.verify_chain() == (True, None)

    def test_duplicate_request_record_rejected(self):
        log = AuditLog()
        log.append(_make_record("req-1"))
        with pytest.raises(ValueError):
            log.append(_make_record("req-1", final_state=PipelineState.BLOCKED))
        assert len(log) == 1

    def test_append_stores_a_copy(self):
        log = AuditLog()
        record = _make_record()
        log.append(record)
        record.warnings.append("changed after append")
        assert log.verify_chain() == (True, None)
        assert log.get_request("req-1").warnings == []


# ---------------------------------------------------------------------------
# 2. Tamper detection
# ---------------------------------------------------------------------------

class TestTamperDetection:
    def test_modified_entry_breaks_chain(self):
        log = AuditLog()
        for i in range(3):
            log.append(_make_record(f"req-{i}"))

        log._entries[1].safe_output = "tampered"

        valid, broken_at = log.verify_chain()
        assert valid is False
        assert broken_at in (1, 2)

    def test_modified_first_entry_detected(self):
        log = AuditLog()
        log.append(_make_event())
        log.append(_make_event())
        log._entries[0].actor_id = "TAMPERED"
        assert log.verify_chain()[0] is False

    def test_export_reports_broken_chain(self):
        log = AuditLog()
        log.append(_make_record("req-1"))
        log.append(_make_record("req-2"))
        log._entries[0].final_state = PipelineState.BLOCKED
        assert log.export_for_review()["export_metadata"]["chain_integrity"].startswith("BROKEN_AT_INDEX_")


# ---------------------------------------------------------------------------
# 3. Empty log verification
# ---------------------------------------------------------------------------

class TestEmptyLog:
    def test_empty_log_is_valid(self):
        assert AuditLog().verify_chain() == (True, None)

    def test_empty_log_length_is_zero(self):
        log = AuditLog()
        assert len(log) == 0
        assert log.length == 0


# ---------------------------------------------------------------------------
# 4. Lookups and queries
# ---------------------------------------------------------------------------

class TestQueries:
    def test_get_request(self):
        log = AuditLog()
        log.append(_make_record("req-1"))
        assert log.has_request("req-1")
        assert log.get_request("req-1").request_id == "req-1"
        assert log.get_request("missing") is None

    def test_get_request_returns_copy(self):
        log = AuditLog()
        log.append(_make_record("req-1"))
        log.get_request("req-1").risk_flags.append("edited")
        assert log.get_request("req-1").risk_flags == []

    def test_query_requests_filters(self):
        log = AuditLog()
        log.append(_make_record("r1", session_id="s1"))
        log.append(_make_record("r2", session_id="s2", final_state=PipelineState.BLOCKED))
        log.append(_make_record("r3", session_id="s1", task="critical_alert"))
        log.append(_make_event())

        assert [r.request_id for r in log.query_requests(session_id="s1")] == ["r1", "r3"]
        assert [r.request_id for r in log.query_requests(final_state=PipelineState.BLOCKED)] == ["r2"]
        assert [r.request_id for r in log.query_requests(task="critical_alert")] == ["r3"]
        assert len(log.query_requests(user_id="nobody")) == 0

    def test_query_by_time_range(self):
        log = AuditLog()
        now = datetime.now(timezone.utc)
        old = _make_record("old")
        old.timestamp = now - timedelta(hours=2)
        log.append(old)
        log.append(_make_record("new"))
        recent = log.query_requests(time_start=now - timedelta(minutes=5))
        assert [r.request_id for r in recent] == ["new"]

    def test_query_events(self):
        log = AuditLog()
        log.append(_make_event(AuditEventType.CACHE_CLEARED))
        log.append(_make_event(AuditEventType.SESSION_RESET, actor_id="senior-1", target_entity="s1"))
        log.append(_make_record())
        assert len(log.query_events()) == 2
        assert len(log.query_events(event_type=AuditEventType.SESSION_RESET)) == 1
        assert len(log.query_events(actor_id="senior-1")) == 1
        assert len(log.query_events(target_entity="s1")) == 1


# ---------------------------------------------------------------------------
# 5. Export and PHI redaction
# ---------------------------------------------------------------------------

class TestExport:
    def test_export_format(self):
        log = AuditLog()
        log.append(_make_record())
        log.append(_make_event())
        export = log.export_for_review()
        meta = export["export_metadata"]
        assert meta["entry_count"] == 2
        assert meta["chain_integrity"] == "VALID"
        assert "WORM" in meta["scope_note"]
        assert export["entries"][0]["kind"] == "ai_request"
        assert export["entries"][1]["kind"] == "event"

    def test_export_redacts_prompt_and_metadata(self):
        log = AuditLog()
        log.append(_make_record(prompt="Call the parent at 555-123-4567"))
        log.append(_make_event(metadata={"patient_name": "Synthetic Name", "note": "mail a@b.org"}))
        entries = log.export_for_review()["entries"]
        assert "555-123-4567" not in entries[0]["prompt"]
        assert "[REDACTED-PHONE]" in entries[0]["prompt"]
        assert entries[1]["metadata"]["patient_name"] == "[REDACTED]"
        assert entries[1]["metadata"]["note"] == "mail [REDACTED-EMAIL]"

    def test_export_time_window(self):
        log = AuditLog()
        now = datetime.now(timezone.utc)
        old = _make_event()
        old.timestamp = now - timedelta(days=2)
        log.append(old)
        log.append(_make_event())
        export = log.export_for_review(time_start=now - timedelta(hours=1))
        assert export["export_metadata"]["entry_count"] == 1

    def test_redact_nested_metadata(self):
        redacted = redact_phi_from_metadata({
            "context": {"dob": "2019-04-02", "findings": ["ssn 123-45-6789", 3]},
            "count": 2,
        })
        assert redacted["context"]["dob"] == "[REDACTED]"
        assert redacted["context"]["findings"] == ["ssn [REDACTED-SSN]", 3]
        assert redacted["count"] == 2

    def test_redact_text_leaves_clinical_text(self):
        assert redact_phi_text("Respiratory rate 52, lethargic") == "Respiratory rate 52, lethargic"
