"""
Session Escalation Tracker.

Each delivered response that carries a safety warning increments its
session's warning counter.  When the counter reaches the configured
threshold (3 by default) the session is **escalated**: the calling layer
must surface that state (disable AI suggestions, show a banner) until a
user or administrator resets it explicitly.

**Human gates enforced in code:**

* Counters never expire on their own; only ``reset()`` clears them.
* ``reset()`` requires the actor's ID and role, and is audited.
* The transition into the escalated state is audited exactly once, by the
  increment that crosses the threshold.

Counters are single atomic increments against the shared ``CounterStore``,
so concurrent requests in the same session never lose an update.

DISCLAIMER: This module orchestrates decision-support workflows under
clinician oversight.  It does not make clinical decisions.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from clinigate.audit import AuditEvent, AuditEventType, AuditLog
from clinigate.logging_config import get_logger
from clinigate.store import CounterStore

logger = get_logger(__name__)


class EscalationStatus(BaseModel):
    session_id: str
    warning_count: int = 0
    threshold: int
    escalated: bool = False


class SessionEscalationTracker:
    """Per-session warning counter with an explicit-reset escalation gate.

    Args:
        store: Shared counter store.
        audit_log: Log receiving ``SESSION_ESCALATED`` and ``SESSION_RESET``.
        threshold: Warning count at which a session is escalated.
        prefix: Store key prefix.
    """

    def __init__(
        self,
        store: CounterStore,
        audit_log: Optional[AuditLog] = None,
        threshold: int = 3,
        prefix: str = "ai_session:",
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self._store = store
        self._audit_log = audit_log
        self._threshold = threshold
        self._prefix = prefix

    @property
    def threshold(self) -> int:
        return self._threshold

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}{session_id}:warnings"

    def _status(self, session_id: str, count: int) -> EscalationStatus:
        return EscalationStatus(
            session_id=session_id,
            warning_count=count,
            threshold=self._threshold,
            escalated=count >= self._threshold,
        )

    async def record_warning(self, session_id: str, request_id: Optional[str] = None) -> EscalationStatus:
        """Count one delivered warning for ``session_id``."""
        count = int(await self._store.incr(self._key(session_id)))
        status = self._status(session_id, count)

        if count == self._threshold:
            logger.warning("session_escalated", session_id=session_id, warning_count=count)
            if self._audit_log is not None:
                self._audit_log.append(AuditEvent(
                    actor_id="system",
                    actor_role="system",
                    event_type=AuditEventType.SESSION_ESCALATED,
                    target_entity=session_id,
                    metadata={"warning_count": count, "request_id": request_id},
                ))
        return status

    async def status(self, session_id: str) -> EscalationStatus:
        count = int(await self._store.get(self._key(session_id), 0))
        return self._status(session_id, count)

    async def is_escalated(self, session_id: str) -> bool:
        return (await self.status(session_id)).escalated

    async def reset(self, session_id: str, actor_id: str, actor_role: str) -> EscalationStatus:
        """Clear a session's warnings.

        Raises:
            ValueError: If ``actor_id`` is empty.
        """
        if not actor_id:
            raise ValueError("Resetting a session escalation requires an actor ID.")

        previous = await self.status(session_id)
        await self._store.delete(self._key(session_id))
        logger.info(
            "session_reset",
            session_id=session_id,
            previous_count=previous.warning_count,
            actor_role=actor_role,
        )
        if self._audit_log is not None:
            self._audit_log.append(AuditEvent(
                actor_id=actor_id,
                actor_role=actor_role,
                event_type=AuditEventType.SESSION_RESET,
                target_entity=session_id,
                metadata={
                    "previous_count": previous.warning_count,
                    "was_escalated": previous.escalated,
                },
            ))
        return self._status(session_id, 0)
