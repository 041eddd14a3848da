"""
Append-Only, Tamper-Evident Audit Log (Hash-Chained).

Every terminal pipeline outcome -- allowed, blocked, rejected, cached,
failed, cancelled -- is persisted as exactly one ``AiRequestRecord``.
Governance actions (session escalation and reset, rate-limit changes,
cache flushes, clinician feedback) are persisted as ``AuditEvent`` entries
in the same chain.  Each entry stores the SHA-256 hash of its predecessor;
``verify_chain()`` detects any entry modified after the fact.

**Honest scope note:**  The hash chain provides structural tamper evidence
suitable for audit review.  A production deployment would back this log
with WORM storage or an external trust anchor.

Queries and exports return copies; stored entries are never handed out.
Exports apply PHI redaction to prompts, responses and metadata.

DISCLAIMER: This module supports governance and audit workflows only.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from clinigate.models import Contradiction, PipelineState, RiskScore


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    """Governance actions recorded alongside AI request records."""

    SESSION_ESCALATED = "SESSION_ESCALATED"
    SESSION_RESET = "SESSION_RESET"
    RATE_LIMITS_UPDATED = "RATE_LIMITS_UPDATED"
    RATE_LIMITS_RESET = "RATE_LIMITS_RESET"
    CACHE_CLEARED = "CACHE_CLEARED"
    CACHE_INVALIDATED = "CACHE_INVALIDATED"
    FEEDBACK_SUBMITTED = "FEEDBACK_SUBMITTED"
    AUDIT_EXPORTED = "AUDIT_EXPORTED"


# ---------------------------------------------------------------------------
# Entry models
# ---------------------------------------------------------------------------

class ChainedEntry(BaseModel):
    """Fields and hashing shared by every entry in the chain."""

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique identifier for this audit entry (UUID).",
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="UTC timestamp at which the entry was written.",
    )
    previous_hash: str = Field(
        default="",
        description=(
            "SHA-256 hash of the previous entry's canonical representation. "
            "Empty string for the first entry in the chain."
        ),
    )

    def canonical_bytes(self) -> bytes:
        """Return a deterministic byte representation for hashing."""
        return json.dumps(self.model_dump(mode="json"), sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


class StateTransition(BaseModel):
    state: PipelineState
    at: datetime


class AiRequestRecord(ChainedEntry):
    """One completed pipeline run, including blocked and rejected runs."""

    kind: Literal["ai_request"] = "ai_request"
    request_id: str
    session_id: Optional[str] = None
    user_id: str
    role: str
    patient_id: Optional[str] = None
    task: str
    prompt_version: Optional[str] = None
    input_hash: str = Field(..., description="SHA-256 of the sanitized input and context.")
    prompt: Optional[str] = None
    raw_response: Optional[str] = None
    safe_output: Optional[str] = None
    model: Optional[str] = None
    latency_ms: int = 0
    was_overridden: bool = False
    risk_flags: list[str] = Field(default_factory=list)
    blocked_phrases: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    final_state: PipelineState
    state_history: list[StateTransition] = Field(default_factory=list)
    risk_score: Optional[RiskScore] = None
    contradictions: list[Contradiction] = Field(default_factory=list)
    error_code: Optional[str] = None
    requested_at: datetime


class AuditEvent(ChainedEntry):
    """A governance action taken by a user or by the gateway itself."""

    kind: Literal["event"] = "event"
    actor_id: str
    actor_role: str
    event_type: AuditEventType
    target_entity: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


AuditEntry = Union[AiRequestRecord, AuditEvent]


# ---------------------------------------------------------------------------
# PHI redaction
# ---------------------------------------------------------------------------

_PHI_PATTERNS: dict[str, re.Pattern] = {
    "ssn": re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),
    "dob": re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    "phone": re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PHI_KEYS = {"name", "full_name", "first_name", "last_name", "patient_name", "dob",
             "date_of_birth", "ssn", "email", "phone", "address", "mrn"}


def redact_phi_text(value: str) -> str:
    for pattern_name, pattern in _PHI_PATTERNS.items():
        value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
    return value


def redact_phi_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace PHI-bearing keys and PHI-shaped strings before export.

    Args:
        metadata: The original metadata dictionary.

    Returns:
        A new dictionary with PHI-matching fields redacted.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PHI_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, str):
            redacted[key] = redact_phi_text(value)
        elif isinstance(value, dict):
            redacted[key] = redact_phi_from_metadata(value)
        elif isinstance(value, list):
            redacted[key] = [
                redact_phi_from_metadata(v) if isinstance(v, dict)
                else redact_phi_text(v) if isinstance(v, str) else v
                for v in value
            ]
        else:
            redacted[key] = value
    return redacted


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only audit store with SHA-256 hash chaining.

    * No ``update()`` or ``delete()`` -- entries cannot be modified through
      this interface.
    * ``verify_chain()`` walks the log and reports the first broken link.
    * ``export_for_review()`` redacts PHI before anything leaves the log.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._request_index: dict[str, int] = {}

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append an entry, linking it to the previous entry's hash.

        Raises:
            ValueError: If an ``AiRequestRecord`` with the same request id
                was already written.
        """
        if isinstance(entry, AiRequestRecord) and entry.request_id in self._request_index:
            raise ValueError(f"Request '{entry.request_id}' already has an audit record.")

        entry = entry.model_copy(deep=True)
        entry.previous_hash = self._hashes[-1] if self._hashes else ""

        self._entries.append(entry)
        self._hashes.append(entry.compute_hash())
        if isinstance(entry, AiRequestRecord):
            self._request_index[entry.request_id] = len(self._entries) - 1
        return entry.model_copy(deep=True)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None if the chain is intact.
        """
        for i, entry in enumerate(self._entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != self._entries[i - 1].compute_hash():
                return (False, i)

            if self._hashes[i] != entry.compute_hash():
                return (False, i)

        return (True, None)

    def get_request(self, request_id: str) -> Optional[AiRequestRecord]:
        index = self._request_index.get(request_id)
        if index is None:
            return None
        return self._entries[index].model_copy(deep=True)

    def has_request(self, request_id: str) -> bool:
        return request_id in self._request_index

    def query_requests(
        self,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
        task: Optional[str] = None,
        final_state: Optional[PipelineState] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> list[AiRequestRecord]:
        results = []
        for entry in self._entries:
            if not isinstance(entry, AiRequestRecord):
                continue
            if session_id is not None and entry.session_id != session_id:
                continue
            if user_id is not None and entry.user_id != user_id:
                continue
            if task is not None and entry.task != task:
                continue
            if final_state is not None and entry.final_state != final_state:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def query_events(
        self,
        event_type: Optional[AuditEventType] = None,
        actor_id: Optional[str] = None,
        target_entity: Optional[str] = None,
    ) -> list[AuditEvent]:
        results = []
        for entry in self._entries:
            if not isinstance(entry, AuditEvent):
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if actor_id is not None and entry.actor_id != actor_id:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, PHI-redacted export bundle.

        Args:
            time_start: Optional start of the export window.
            time_end: Optional end of the export window.

        Returns:
            A dictionary with the redacted entries and chain integrity.
        """
        exported = []
        for entry in self._entries:
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            exported.append(redact_phi_from_metadata(entry.model_dump(mode="json")))

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(exported),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
                "scope_note": (
                    "This export uses SHA-256 hash chaining for structural tamper "
                    "evidence. Production deployment would use WORM storage or an "
                    "external trust anchor."
                ),
            },
            "entries": exported,
        }

    @property
    def length(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
