"""
Monitor -- rolling request metrics, health score and alerts.

Every request is counted into minute, hour and day buckets: totals,
success/failure, safety-overridden responses, and per-task latency
(min/max/sum/count).  All writes are atomic store operations.

Health starts at 100 and loses points when the error rate or the
validation-failure (override) rate crosses its warning or critical
threshold.  Alerts are debounced to one per type per minute.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from clinigate.config import AlertThreshold, MonitorPolicy
from clinigate.logging_config import get_logger
from clinigate.rate_limiter import Clock, utc_now
from clinigate.store import CounterStore

logger = get_logger(__name__)

_PERIODS: dict[str, tuple[str, int]] = {
    "minute": ("%Y-%m-%d %H:%M", 120),
    "hour": ("%Y-%m-%d %H", 7200),
    "day": ("%Y-%m-%d", 172800),
}

UNKNOWN_TASK = "unknown"

# Requests needed in the hour window before rate-based alerts fire.
_MIN_SAMPLE = 10


class Alert(BaseModel):
    type: str
    level: str
    message: str
    value: float
    threshold: float
    raised_at: datetime


class HealthStatus(BaseModel):
    score: int
    status: str
    issues: list[str] = Field(default_factory=list)


def health_status(score: int) -> str:
    if score >= 80:
        return "healthy"
    if score >= 60:
        return "degraded"
    if score >= 40:
        return "unhealthy"
    return "critical"


class Monitor:
    def __init__(
        self,
        store: CounterStore,
        policy: Optional[MonitorPolicy] = None,
        tasks: Iterable[str] = (),
        clock: Clock = utc_now,
        prefix: str = "ai_monitor:",
    ) -> None:
        self._store = store
        self._policy = policy or MonitorPolicy()
        self._tasks = set(tasks)
        self._clock = clock
        self._prefix = prefix
        self._alerts: deque[Alert] = deque(maxlen=self._policy.recent_alert_limit)

    def _key(self, period: str, bucket: str, metric: str) -> str:
        return f"{self._prefix}{period}:{bucket}:{metric}"

    def _bucket(self, period: str, now: Optional[datetime] = None) -> str:
        fmt, _ = _PERIODS[period]
        return (now or self._clock()).strftime(fmt)

    def _task_name(self, task: Optional[str]) -> str:
        if not task or (self._tasks and task not in self._tasks):
            return UNKNOWN_TASK
        return task

    # -- recording --

    async def record_request(
        self,
        task: Optional[str] = None,
        success: bool = True,
        latency_ms: Optional[float] = None,
        was_overridden: bool = False,
    ) -> None:
        """Count one completed request into every period bucket."""
        task = self._task_name(task)
        now = self._clock()
        outcome = "success" if success else "failure"

        for period, (_, ttl) in _PERIODS.items():
            bucket = self._bucket(period, now)
            await self._store.incr(self._key(period, bucket, "total"), ttl=ttl)
            await self._store.incr(self._key(period, bucket, outcome), ttl=ttl)
            await self._store.incr(self._key(period, bucket, f"task:{task}:total"), ttl=ttl)
            if not success:
                await self._store.incr(self._key(period, bucket, f"task:{task}:failure"), ttl=ttl)
            if was_overridden:
                await self._store.incr(self._key(period, bucket, "overridden"), ttl=ttl)
            if latency_ms is not None:
                for scope in ("all", f"task:{task}"):
                    await self._store.incr(self._key(period, bucket, f"{scope}:latency_sum"), latency_ms, ttl=ttl)
                    await self._store.incr(self._key(period, bucket, f"{scope}:latency_count"), ttl=ttl)
                    await self._store.set_min(self._key(period, bucket, f"{scope}:latency_min"), latency_ms, ttl=ttl)
                    await self._store.set_max(self._key(period, bucket, f"{scope}:latency_max"), latency_ms, ttl=ttl)

        await self._check_alerts(latency_ms, now)

    # -- alerts --

    async def _raise_alert(
        self,
        alert_type: str,
        level: str,
        message: str,
        value: float,
        threshold: float,
        now: datetime,
    ) -> Optional[Alert]:
        debounce = f"{self._prefix}alert:{alert_type}:{self._bucket('minute', now)}"
        if await self._store.incr(debounce, ttl=_PERIODS["minute"][1]) > 1:
            return None
        alert = Alert(
            type=alert_type,
            level=level,
            message=message,
            value=value,
            threshold=threshold,
            raised_at=now,
        )
        self._alerts.append(alert)
        log = logger.error if level == "critical" else logger.warning
        log("monitor_alert", alert_type=alert_type, level=level, value=value, threshold=threshold)
        return alert

    @staticmethod
    def _level(value: float, threshold: AlertThreshold) -> Optional[str]:
        if value > threshold.critical:
            return "critical"
        if value > threshold.warning:
            return "warning"
        return None

    async def _check_alerts(self, latency_ms: Optional[float], now: datetime) -> None:
        if latency_ms is not None:
            level = self._level(latency_ms, self._policy.latency_ms)
            if level:
                threshold = getattr(self._policy.latency_ms, level)
                await self._raise_alert(
                    "latency", level, f"AI latency {latency_ms:.0f}ms exceeds {threshold:.0f}ms",
                    latency_ms, threshold, now,
                )

        hour = self._bucket("hour", now)
        total = int(await self._store.get(self._key("hour", hour, "total"), 0))
        if total >= _MIN_SAMPLE:
            failures = int(await self._store.get(self._key("hour", hour, "failure"), 0))
            error_rate = failures / total
            level = self._level(error_rate, self._policy.error_rate)
            if level:
                threshold = getattr(self._policy.error_rate, level)
                await self._raise_alert(
                    "error_rate", level, f"AI error rate {error_rate:.1%} exceeds {threshold:.1%}",
                    error_rate, threshold, now,
                )

        day_total = int(await self._store.get(self._key("day", self._bucket("day", now), "total"), 0))
        level = self._level(day_total, self._policy.daily_requests)
        if level:
            threshold = getattr(self._policy.daily_requests, level)
            await self._raise_alert(
                "daily_requests", level, f"{day_total} AI requests today exceeds {threshold:.0f}",
                day_total, threshold, now,
            )

    def get_recent_alerts(self, limit: int = 20) -> list[Alert]:
        return list(self._alerts)[-limit:][::-1]

    # -- reads --

    async def _latency(self, period: str, bucket: str, scope: str) -> dict[str, Any]:
        count = int(await self._store.get(self._key(period, bucket, f"{scope}:latency_count"), 0))
        if not count:
            return {"count": 0, "avg_ms": None, "min_ms": None, "max_ms": None}
        total = float(await self._store.get(self._key(period, bucket, f"{scope}:latency_sum"), 0))
        return {
            "count": count,
            "avg_ms": round(total / count, 2),
            "min_ms": await self._store.get(self._key(period, bucket, f"{scope}:latency_min")),
            "max_ms": await self._store.get(self._key(period, bucket, f"{scope}:latency_max")),
        }

    def health(self, error_rate: float, validation_failure_rate: float) -> HealthStatus:
        score = 100
        issues: list[str] = []
        if error_rate > self._policy.error_rate.critical:
            score -= 40
            issues.append(f"Critical error rate: {error_rate:.1%}")
        elif error_rate > self._policy.error_rate.warning:
            score -= 20
            issues.append(f"Elevated error rate: {error_rate:.1%}")
        if validation_failure_rate > self._policy.validation_failure_rate.critical:
            score -= 30
            issues.append(f"Critical validation failure rate: {validation_failure_rate:.1%}")
        elif validation_failure_rate > self._policy.validation_failure_rate.warning:
            score -= 15
            issues.append(f"Elevated validation failure rate: {validation_failure_rate:.1%}")
        score = max(0, score)
        return HealthStatus(score=score, status=health_status(score), issues=issues)

    async def get_metrics(self, period: str = "hour") -> dict[str, Any]:
        """Aggregate metrics for the current bucket of ``period``.

        Raises:
            ValueError: If ``period`` is not minute, hour or day.
        """
        if period not in _PERIODS:
            raise ValueError(f"Unknown period '{period}'. Expected one of {sorted(_PERIODS)}.")
        bucket = self._bucket(period)

        async def count(metric: str) -> int:
            return int(await self._store.get(self._key(period, bucket, metric), 0))

        total = await count("total")
        success = await count("success")
        failure = await count("failure")
        overridden = await count("overridden")
        error_rate = failure / total if total else 0.0
        validation_failure_rate = overridden / total if total else 0.0

        by_task: dict[str, Any] = {}
        for task in sorted(self._tasks | {UNKNOWN_TASK}):
            requests = await count(f"task:{task}:total")
            if not requests:
                continue
            by_task[task] = {
                "requests": requests,
                "failures": await count(f"task:{task}:failure"),
                "latency": await self._latency(period, bucket, f"task:{task}"),
            }

        return {
            "period": period,
            "bucket": bucket,
            "requests": {
                "total": total,
                "success": success,
                "failure": failure,
                "error_rate": round(error_rate, 4),
            },
            "validation": {
                "overridden": overridden,
                "failure_rate": round(validation_failure_rate, 4),
            },
            "latency": await self._latency(period, bucket, "all"),
            "by_task": by_task,
            "health": self.health(error_rate, validation_failure_rate).model_dump(),
        }

    async def get_dashboard(self) -> dict[str, Any]:
        return {
            "metrics": {period: await self.get_metrics(period) for period in _PERIODS},
            "alerts": [alert.model_dump(mode="json") for alert in self.get_recent_alerts()],
            "thresholds": self._policy.model_dump(),
        }

    def configure_thresholds(self, **thresholds: dict[str, float]) -> MonitorPolicy:
        """Update alert thresholds, e.g. ``configure_thresholds(latency_ms={"warning": 3000})``."""
        data = self._policy.model_dump()
        for name, values in thresholds.items():
            if name not in data or not isinstance(data[name], dict):
                raise ValueError(f"Unknown threshold '{name}'")
            data[name].update(values)
        self._policy = MonitorPolicy.model_validate(data)
        return self._policy.model_copy(deep=True)
