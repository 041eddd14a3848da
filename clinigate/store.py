"""
Counter/Cache Store -- the only coordination primitive in the gateway.

Rate-limit windows, cache entries, cache version tags, monitor counters and
session escalation counters all live in a ``CounterStore``.  Every mutation
is a single store operation (``incr``, ``set_max``, ``set_min``), so the
pipeline never performs read-modify-write on shared state and stays correct
whether the store is in-process or remote.

``InMemoryStore`` is the in-process implementation.  Each coroutine runs to
completion without awaiting, which makes every operation atomic on the
event loop.  A remote implementation maps ``incr`` to ``INCRBY`` plus
``EXPIRE NX`` and ``set_max``/``set_min`` to a server-side script.
"""

from __future__ import annotations

import abc
import math
import time
from typing import Any, Callable, NamedTuple, Optional

from cachetools import TLRUCache


class CounterStore(abc.ABC):
    """Key-value store with TTL and atomic numeric updates.

    ``ttl`` is in seconds; ``None`` means the key never expires.  Numeric
    updates keep an existing key's expiry and apply ``ttl`` only when they
    create the key.
    """

    @abc.abstractmethod
    async def get(self, key: str, default: Any = None) -> Any: ...

    @abc.abstractmethod
    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None: ...

    @abc.abstractmethod
    async def incr(self, key: str, amount: int | float = 1, ttl: Optional[float] = None) -> int | float:
        """Atomically add ``amount`` and return the new value."""

    @abc.abstractmethod
    async def set_max(self, key: str, value: float, ttl: Optional[float] = None) -> float:
        """Atomically store ``max(current, value)`` and return it."""

    @abc.abstractmethod
    async def set_min(self, key: str, value: float, ttl: Optional[float] = None) -> float:
        """Atomically store ``min(current, value)`` and return it."""

    @abc.abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abc.abstractmethod
    async def delete_prefix(self, prefix: str) -> int: ...

    @abc.abstractmethod
    async def clear(self) -> None: ...


class _Slot(NamedTuple):
    value: Any
    expires_at: float


def _time_to_use(_key: str, slot: _Slot, _now: float) -> float:
    return slot.expires_at


class InMemoryStore(CounterStore):
    """In-process store backed by a cachetools ``TLRUCache``.

    Args:
        maxsize: Maximum number of live keys; the soonest-expiring keys are
            evicted first when full.
        timer: Monotonic clock in seconds.  Tests inject a fake clock to
            expire keys deterministically.
    """

    def __init__(
        self,
        maxsize: int = 100_000,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._timer = timer
        self._data: TLRUCache = TLRUCache(maxsize=maxsize, ttu=_time_to_use, timer=timer)

    def _expiry(self, ttl: Optional[float]) -> float:
        return math.inf if ttl is None else self._timer() + ttl

    def _current(self, key: str) -> Optional[_Slot]:
        return self._data.get(key)

    async def get(self, key: str, default: Any = None) -> Any:
        slot = self._current(key)
        return default if slot is None else slot.value

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        self._data[key] = _Slot(value, self._expiry(ttl))

    async def incr(self, key: str, amount: int | float = 1, ttl: Optional[float] = None) -> int | float:
        slot = self._current(key)
        if slot is None:
            slot = _Slot(amount, self._expiry(ttl))
        else:
            slot = _Slot(slot.value + amount, slot.expires_at)
        self._data[key] = slot
        return slot.value

    async def set_max(self, key: str, value: float, ttl: Optional[float] = None) -> float:
        slot = self._current(key)
        if slot is None:
            slot = _Slot(value, self._expiry(ttl))
        elif value > slot.value:
            slot = _Slot(value, slot.expires_at)
        self._data[key] = slot
        return slot.value

    async def set_min(self, key: str, value: float, ttl: Optional[float] = None) -> float:
        slot = self._current(key)
        if slot is None:
            slot = _Slot(value, self._expiry(ttl))
        elif value < slot.value:
            slot = _Slot(value, slot.expires_at)
        self._data[key] = slot
        return slot.value

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def delete_prefix(self, prefix: str) -> int:
        self._data.expire()
        doomed = [key for key in list(self._data.keys()) if key.startswith(prefix)]
        for key in doomed:
            self._data.pop(key, None)
        return len(doomed)

    async def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        self._data.expire()
        return len(self._data)
