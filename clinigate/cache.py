"""
Response Cache -- memoizes clean, validated model output.

Keys are built from the task name, the current task and patient version
tags, the prompt version, model and temperature, and a SHA-256 hash of the
request context with volatile fields removed and keys sorted.  Requests
that differ only in volatile fields (timestamps, user id, request id) share
an entry.

Invalidation is lazy: ``invalidate_patient()`` and ``invalidate_task()``
bump a version counter, so every key built afterwards differs from the keys
of existing entries and those entries are simply never read again.

A stale shadow copy of every entry outlives it by ``stale_grace_seconds``
and is only read by ``get_stale()`` when the provider is unreachable.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from clinigate.config import CachePolicy
from clinigate.logging_config import get_logger
from clinigate.rate_limiter import Clock, utc_now
from clinigate.store import CounterStore

logger = get_logger(__name__)


class CacheEntry(BaseModel):
    key: str
    task: str
    payload: dict[str, Any]
    ttl_seconds: int
    created_at: datetime
    task_version: int = 0
    patient_version: int = 0
    patient_id: Optional[str] = None


class ResponseCache:
    def __init__(
        self,
        store: CounterStore,
        policy: Optional[CachePolicy] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._policy = policy or CachePolicy()
        self._clock = clock
        self._volatile = set(self._policy.volatile_fields)

    # -- eligibility --

    def is_cacheable(self, task: str) -> bool:
        return task not in self._policy.non_cacheable_tasks

    def ttl_for(self, task: str) -> int:
        return self._policy.task_ttls.get(task, self._policy.default_ttl_seconds)

    @staticmethod
    def _is_clean(payload: dict[str, Any]) -> bool:
        if payload.get("success") is False:
            return False
        if payload.get("was_overridden") or payload.get("was_modified"):
            return False
        metadata = payload.get("metadata") or {}
        return not (metadata.get("was_modified") or metadata.get("was_overridden"))

    # -- key construction --

    def normalize_context(self, context: Any) -> Any:
        """Drop volatile fields at every level; key order is fixed at hashing."""
        if isinstance(context, dict):
            return {
                str(k): self.normalize_context(v)
                for k, v in context.items()
                if k not in self._volatile
            }
        if isinstance(context, (list, tuple)):
            return [self.normalize_context(v) for v in context]
        return context

    def context_hash(self, context: dict[str, Any]) -> str:
        normalized = json.dumps(self.normalize_context(context), sort_keys=True, default=str)
        return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

    @staticmethod
    def patient_id(context: dict[str, Any]) -> Optional[str]:
        patient = context.get("patient_id") or context.get("patientId")
        return str(patient) if patient else None

    def _task_version_key(self, task: str) -> str:
        return f"{self._policy.prefix}task_version:{task}"

    def _patient_version_key(self, patient_id: str) -> str:
        return f"{self._policy.prefix}patient_version:{patient_id}"

    def _stats_key(self, name: str) -> str:
        return f"{self._policy.prefix}stats:{name}"

    async def _versions(self, task: str, patient_id: Optional[str]) -> tuple[int, int]:
        task_version = int(await self._store.get(self._task_version_key(task), 0))
        patient_version = 0
        if patient_id:
            patient_version = int(await self._store.get(self._patient_version_key(patient_id), 0))
        return task_version, patient_version

    async def build_key(
        self,
        task: str,
        context: dict[str, Any],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        prompt_version: Optional[str] = None,
    ) -> str:
        patient_id = self.patient_id(context)
        task_version, patient_version = await self._versions(task, patient_id)
        parts = [
            task,
            f"v{task_version}",
            f"p{patient_version}",
            f"pv{prompt_version or 'default'}",
            f"m{model or 'default'}",
            f"t{temperature if temperature is not None else 'default'}",
            f"h{self.context_hash(context)}",
        ]
        if patient_id:
            parts.append(f"patient:{patient_id}")
        return self._policy.prefix + ":".join(parts)

    # -- reads / writes --

    async def _read(self, key: str) -> Optional[dict[str, Any]]:
        raw = await self._store.get(key)
        if raw is None:
            return None
        entry = CacheEntry.model_validate(raw)
        payload = dict(entry.payload)
        payload["cached_at"] = entry.created_at.isoformat()
        return payload

    async def get(self, task: str, context: dict[str, Any], **params: Any) -> Optional[dict[str, Any]]:
        """Return the cached payload, or None on a miss or an uncacheable task."""
        if not self.is_cacheable(task):
            return None
        key = await self.build_key(task, context, **params)
        payload = await self._read(key)
        if payload is None:
            await self._store.incr(self._stats_key("misses"))
            return None
        await self._store.incr(self._stats_key("hits"))
        logger.debug("cache_hit", ai_task=task, key=key[-12:])
        return payload

    async def get_stale(self, task: str, context: dict[str, Any], **params: Any) -> Optional[dict[str, Any]]:
        """Return an entry that may have expired but is within the grace period."""
        if not self.is_cacheable(task) or self._policy.stale_grace_seconds <= 0:
            return None
        key = await self.build_key(task, context, **params)
        payload = await self._read(f"{key}:stale")
        if payload is not None:
            await self._store.incr(self._stats_key("stale_hits"))
        return payload

    async def put(
        self,
        task: str,
        context: dict[str, Any],
        payload: dict[str, Any],
        **params: Any,
    ) -> bool:
        """Cache ``payload`` if the task and payload are eligible.

        Returns:
            True if written; False for uncacheable tasks, error payloads, or
            payloads that were modified by the safety system.
        """
        if not self.is_cacheable(task) or not self._is_clean(payload):
            await self._store.incr(self._stats_key("rejected"))
            return False

        patient_id = self.patient_id(context)
        task_version, patient_version = await self._versions(task, patient_id)
        key = await self.build_key(task, context, **params)
        ttl = self.ttl_for(task)
        entry = CacheEntry(
            key=key,
            task=task,
            payload=payload,
            ttl_seconds=ttl,
            created_at=self._clock(),
            task_version=task_version,
            patient_version=patient_version,
            patient_id=patient_id,
        )
        raw = entry.model_dump(mode="json")
        await self._store.set(key, raw, ttl=ttl)
        if self._policy.stale_grace_seconds > 0:
            await self._store.set(f"{key}:stale", raw, ttl=ttl + self._policy.stale_grace_seconds)
        await self._store.incr(self._stats_key("writes"))
        return True

    # -- invalidation --

    async def invalidate_patient(self, patient_id: str) -> int:
        version = await self._store.incr(
            self._patient_version_key(patient_id), ttl=self._policy.version_ttl_seconds
        )
        logger.info("cache_invalidated", scope="patient", version=version)
        return int(version)

    async def invalidate_task(self, task: str) -> int:
        version = await self._store.incr(
            self._task_version_key(task), ttl=self._policy.version_ttl_seconds
        )
        logger.info("cache_invalidated", scope="task", ai_task=task, version=version)
        return int(version)

    async def clear_all(self) -> int:
        """Flush every cache entry and version tag."""
        cleared = await self._store.delete_prefix(self._policy.prefix)
        logger.info("cache_cleared", keys_cleared=cleared)
        return cleared

    async def get_stats(self) -> dict[str, Any]:
        stats = {
            name: int(await self._store.get(self._stats_key(name), 0))
            for name in ("hits", "misses", "writes", "rejected", "stale_hits")
        }
        lookups = stats["hits"] + stats["misses"]
        stats["hit_rate"] = round(stats["hits"] / lookups, 4) if lookups else None
        stats["non_cacheable_tasks"] = list(self._policy.non_cacheable_tasks)
        return stats
