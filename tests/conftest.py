"""
Shared test fixtures: a controllable clock, an in-memory store that expires
keys on that clock, a mutable copy of the default policy, and caller
principals for each role.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clinigate.audit import AuditLog
from clinigate.config import DEFAULT_POLICY, GatewayPolicy
from clinigate.models import Principal
from clinigate.store import InMemoryStore


class FakeClock:
    """UTC wall clock and monotonic timer that only move when advanced."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.elapsed += seconds


RED_EXPLAINABILITY = {
    "priority": "red",
    "triggers": [
        {"field_id": "danger_sign_lethargic", "value": "present", "clinical_meaning": "General danger sign"},
    ],
    "recommended_actions": [{"code": "urgent_referral", "justification": "Danger sign present"}],
}


def make_red_context(**overrides) -> dict:
    context = {
        "patient_id": "synthetic-001",
        "age_months": 18,
        "findings": ["lethargic"],
        "explainability": RED_EXPLAINABILITY,
    }
    context.update(overrides)
    return context


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    return InMemoryStore(timer=clock.monotonic)


@pytest.fixture
def policy() -> GatewayPolicy:
    return DEFAULT_POLICY.model_copy(deep=True)


@pytest.fixture
def audit_log() -> AuditLog:
    return AuditLog()


@pytest.fixture
def nurse() -> Principal:
    return Principal(user_id="nurse-1", role="nurse")


@pytest.fixture
def doctor() -> Principal:
    return Principal(user_id="doctor-1", role="doctor")


@pytest.fixture
def manager() -> Principal:
    return Principal(user_id="manager-1", role="manager")


@pytest.fixture
def admin() -> Principal:
    return Principal(user_id="admin-1", role="admin")
