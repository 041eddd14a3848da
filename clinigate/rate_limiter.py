"""
Rate Limiter -- admission control over three fixed windows.

* **task**   -- per user, per task, per minute (task-specific limit).
* **global** -- all callers, per minute (single ceiling).
* **quota**  -- per user, per day (role-specific limit).

Admission checks the windows in the order task, global, quota and stops at
the first one that is full.  Counters are committed at dispatch time
(``record_dispatch``), never by ``check`` alone, so a request that is
admitted and later cancelled still counts, and a cache hit costs nothing.

All counter writes are single atomic ``incr`` calls against the injected
``CounterStore``.  Time buckets come from an injected UTC clock.
"""

from __future__ import annotations

import enum
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from clinigate.config import RateLimitPolicy
from clinigate.logging_config import get_logger
from clinigate.store import CounterStore

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitReason(str, enum.Enum):
    TASK_LIMIT_EXCEEDED = "task_limit_exceeded"
    GLOBAL_LIMIT_EXCEEDED = "global_limit_exceeded"
    QUOTA_EXCEEDED = "quota_exceeded"


class WindowUsage(BaseModel):
    limit: int
    used: int
    remaining: int = Field(..., ge=0)
    reset_at: datetime


class RateLimitDecision(BaseModel):
    allowed: bool
    reason: Optional[RateLimitReason] = None
    retry_after: Optional[int] = None
    limits: dict[str, WindowUsage] = Field(default_factory=dict)

    def headers(self) -> dict[str, str]:
        """Build rate-limit response headers from the window usage."""
        headers: dict[str, str] = {}
        task = self.limits.get("task")
        if task is not None:
            headers["X-RateLimit-Limit"] = str(task.limit)
            headers["X-RateLimit-Remaining"] = str(task.remaining)
            headers["X-RateLimit-Reset"] = str(int(task.reset_at.timestamp()))
        quota = self.limits.get("quota")
        if quota is not None:
            headers["X-DailyQuota-Limit"] = str(quota.limit)
            headers["X-DailyQuota-Remaining"] = str(quota.remaining)
            headers["X-DailyQuota-Reset"] = str(int(quota.reset_at.timestamp()))
        if self.retry_after is not None:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window rate limiter backed by a ``CounterStore``."""

    def __init__(
        self,
        store: CounterStore,
        policy: Optional[RateLimitPolicy] = None,
        clock: Clock = utc_now,
        prefix: str = "ai_rate:",
    ) -> None:
        self._store = store
        self._policy = policy or RateLimitPolicy()
        self._clock = clock
        self._prefix = prefix

    @property
    def policy(self) -> RateLimitPolicy:
        return self._policy.model_copy(deep=True)

    # -- limits --

    def task_limit(self, task: str) -> int:
        return self._policy.task_limits.get(task, self._policy.default_task_limit)

    def quota_limit(self, role: Optional[str]) -> int:
        return self._policy.role_quotas.get(role or "", self._policy.default_quota)

    # -- keys --

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    @staticmethod
    def _minute_bucket(now: datetime) -> str:
        return now.strftime("%Y-%m-%d %H:%M")

    @staticmethod
    def _day_bucket(now: datetime) -> str:
        return now.strftime("%Y-%m-%d")

    def _global_key(self, now: datetime) -> str:
        return f"{self._prefix}global:{self._minute_bucket(now)}"

    def _task_key(self, task: str, user_id: str, now: datetime) -> str:
        return f"{self._prefix}user:{user_id}:task:{task}:{self._minute_bucket(now)}"

    def _quota_key(self, user_id: str, now: datetime) -> str:
        return f"{self._prefix}user:{user_id}:quota:{self._day_bucket(now)}"

    def _outcome_key(self, outcome: str, task: str, now: datetime) -> str:
        return f"{self._prefix}{outcome}:{task}:{self._day_bucket(now)}"

    @staticmethod
    def _next_minute(now: datetime) -> datetime:
        return now.replace(second=0, microsecond=0) + timedelta(minutes=1)

    @staticmethod
    def _next_day(now: datetime) -> datetime:
        return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)

    # -- queries --

    async def get_remaining(self, task: str, user_id: str, role: Optional[str]) -> dict[str, WindowUsage]:
        """Return ``{limit, used, remaining, reset_at}`` for each window.

        ``remaining`` is floored at zero even if a window was overrun.
        """
        now = self._now()
        windows = {
            "task": (self.task_limit(task), self._task_key(task, user_id, now), self._next_minute(now)),
            "global": (self._policy.global_limit, self._global_key(now), self._next_minute(now)),
            "quota": (self.quota_limit(role), self._quota_key(user_id, now), self._next_day(now)),
        }
        usage: dict[str, WindowUsage] = {}
        for name, (limit, key, reset_at) in windows.items():
            used = int(await self._store.get(key, 0))
            usage[name] = WindowUsage(
                limit=limit,
                used=used,
                remaining=max(0, limit - used),
                reset_at=reset_at,
            )
        return usage

    async def check(self, task: str, user_id: str, role: Optional[str]) -> RateLimitDecision:
        """Decide admission without consuming any capacity."""
        usage = await self.get_remaining(task, user_id, role)
        now = self._now()
        for window, reason in (
            ("task", RateLimitReason.TASK_LIMIT_EXCEEDED),
            ("global", RateLimitReason.GLOBAL_LIMIT_EXCEEDED),
            ("quota", RateLimitReason.QUOTA_EXCEEDED),
        ):
            if usage[window].used >= usage[window].limit:
                retry_after = max(1, math.ceil((usage[window].reset_at - now).total_seconds()))
                logger.warning(
                    "rate_limit_rejected",
                    reason=reason.value,
                    ai_task=task,
                    limit=usage[window].limit,
                    retry_after=retry_after,
                )
                return RateLimitDecision(
                    allowed=False,
                    reason=reason,
                    retry_after=retry_after,
                    limits=usage,
                )
        return RateLimitDecision(allowed=True, limits=usage)

    # -- recording --

    async def record_dispatch(self, task: str, user_id: str) -> None:
        """Commit admission: count the request against all three windows."""
        now = self._now()
        minute_ttl = self._policy.minute_ttl_seconds
        await self._store.incr(self._global_key(now), ttl=minute_ttl)
        await self._store.incr(self._task_key(task, user_id, now), ttl=minute_ttl)
        await self._store.incr(self._quota_key(user_id, now), ttl=self._policy.day_ttl_seconds)

    async def record_outcome(self, task: str, success: bool) -> None:
        outcome = "success" if success else "failure"
        await self._store.incr(
            self._outcome_key(outcome, task, self._now()),
            ttl=self._policy.day_ttl_seconds,
        )

    async def record(self, task: str, user_id: str, success: bool = True) -> None:
        await self.record_dispatch(task, user_id)
        await self.record_outcome(task, success)

    async def attempt(self, task: str, user_id: str, role: Optional[str]) -> RateLimitDecision:
        """Check and, when admitted, immediately commit the dispatch."""
        decision = await self.check(task, user_id, role)
        if decision.allowed:
            await self.record_dispatch(task, user_id)
            decision.limits = await self.get_remaining(task, user_id, role)
        return decision

    async def get_stats(self, task: str) -> dict[str, Any]:
        now = self._now()
        success = int(await self._store.get(self._outcome_key("success", task, now), 0))
        failure = int(await self._store.get(self._outcome_key("failure", task, now), 0))
        total = success + failure
        return {
            "task": task,
            "date": self._day_bucket(now),
            "success": success,
            "failure": failure,
            "total": total,
            "success_rate": round(success / total, 4) if total else None,
        }

    # -- administration --

    async def reset_for_user(self, user_id: str) -> int:
        """Clear every task and quota window held for ``user_id``."""
        cleared = await self._store.delete_prefix(f"{self._prefix}user:{user_id}:")
        logger.info("rate_limits_reset", target_user=user_id, keys_cleared=cleared)
        return cleared

    def update_limits(
        self,
        task_limits: Optional[dict[str, int]] = None,
        role_quotas: Optional[dict[str, int]] = None,
        global_limit: Optional[int] = None,
        default_task_limit: Optional[int] = None,
        default_quota: Optional[int] = None,
    ) -> RateLimitPolicy:
        """Merge new limits into the running policy without a restart."""
        data = self._policy.model_dump()
        if task_limits:
            data["task_limits"].update(task_limits)
        if role_quotas:
            data["role_quotas"].update(role_quotas)
        if global_limit is not None:
            data["global_limit"] = global_limit
        if default_task_limit is not None:
            data["default_task_limit"] = default_task_limit
        if default_quota is not None:
            data["default_quota"] = default_quota
        self._policy = RateLimitPolicy.model_validate(data)
        logger.info("rate_limits_updated", global_limit=self._policy.global_limit)
        return self.policy
