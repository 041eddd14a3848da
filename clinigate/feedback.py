"""
Clinician feedback on AI responses.

Feedback is attached to an audited request id and stored as a
``FEEDBACK_SUBMITTED`` event in the audit chain, so the review trail of a
response and the opinions about it live in one tamper-evident place.
A low rating in the ``safety`` category is logged as a warning for the
clinical safety team.
"""

from __future__ import annotations

import enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from clinigate.audit import AuditEvent, AuditEventType, AuditLog
from clinigate.errors import UnknownRequestError
from clinigate.logging_config import get_logger

logger = get_logger(__name__)

# Safety ratings at or below this value are flagged.
_LOW_SAFETY_RATING = 2


class FeedbackCategory(str, enum.Enum):
    ACCURACY = "accuracy"
    RELEVANCE = "relevance"
    CLARITY = "clarity"
    SAFETY = "safety"
    HELPFULNESS = "helpfulness"
    COMPLETENESS = "completeness"


class AiFeedback(BaseModel):
    request_id: str = Field(..., min_length=1)
    category: FeedbackCategory
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=1000)
    suggestions: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("comment", "suggestions")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value


class FeedbackRecorder:
    def __init__(self, audit_log: AuditLog) -> None:
        self._audit_log = audit_log

    def submit(self, feedback: AiFeedback, actor_id: str, actor_role: str) -> AuditEvent:
        """Record feedback for an audited request.

        Raises:
            UnknownRequestError: If ``feedback.request_id`` was never audited.
        """
        record = self._audit_log.get_request(feedback.request_id)
        if record is None:
            raise UnknownRequestError(feedback.request_id)

        if feedback.category == FeedbackCategory.SAFETY and feedback.rating <= _LOW_SAFETY_RATING:
            logger.warning(
                "low_safety_feedback",
                request_id=feedback.request_id,
                ai_task=record.task,
                rating=feedback.rating,
            )

        return self._audit_log.append(AuditEvent(
            actor_id=actor_id,
            actor_role=actor_role,
            event_type=AuditEventType.FEEDBACK_SUBMITTED,
            target_entity=feedback.request_id,
            metadata={**feedback.model_dump(mode="json"), "ai_task": record.task},
        ))

    def summary(self) -> dict[str, Any]:
        """Average rating and count per category across all feedback."""
        totals: dict[str, list[int]] = {}
        for event in self._audit_log.query_events(event_type=AuditEventType.FEEDBACK_SUBMITTED):
            totals.setdefault(event.metadata["category"], []).append(event.metadata["rating"])
        return {
            category: {"count": len(ratings), "average_rating": round(sum(ratings) / len(ratings), 2)}
            for category, ratings in sorted(totals.items())
        }
