"""Shared key-value store used as message bus, agent registry and task ledger.

The team only depends on the ``SharedStore`` protocol. ``InMemoryStore`` is
the single-process implementation: string values, sorted sets and lists with
lazily enforced TTLs, mirroring the subset of Redis semantics the team needs.
"""
from __future__ import annotations

import asyncio
import bisect
import fnmatch
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple


class SharedStore(Protocol):
    """Interface of the external store the core coordinates through."""

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def keys(self, pattern: str) -> List[str]: ...

    async def expire(self, key: str, ttl: float) -> bool: ...

    async def zadd(self, key: str, score: float, member: str) -> None: ...

    async def zrange(self, key: str, start: int, stop: int, desc: bool = False) -> List[str]: ...

    async def zrem(self, key: str, member: str) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def lpush(self, key: str, value: str) -> int: ...

    async def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def ltrim(self, key: str, start: int, stop: int) -> None: ...


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: Optional[float] = None


class WrongTypeError(TypeError):
    """Operation against a key holding the wrong kind of value."""


class InMemoryStore:
    """Async in-memory store with Redis-like TTL, sorted-set and list operations."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            return self._typed(key, entry, str)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        async with self._lock:
            self._data[key] = _Entry(value=value, expires_at=self._deadline(ttl))

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    async def keys(self, pattern: str) -> List[str]:
        async with self._lock:
            return sorted(
                key
                for key in list(self._data)
                if self._live(key) is not None and fnmatch.fnmatchcase(key, pattern)
            )

    async def expire(self, key: str, ttl: float) -> bool:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            entry.expires_at = self._deadline(ttl)
            return True

    async def zadd(self, key: str, score: float, member: str) -> None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = self._data[key] = _Entry(value=[])
            items: List[Tuple[float, str]] = self._typed(key, entry, list)
            for index, (_, existing) in enumerate(items):
                if existing == member:
                    del items[index]
                    break
            bisect.insort(items, (float(score), member))

    async def zrange(self, key: str, start: int, stop: int, desc: bool = False) -> List[str]:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return []
            items: List[Tuple[float, str]] = self._typed(key, entry, list)
            members = [member for _, member in items]
            if desc:
                members.reverse()
            return _slice(members, start, stop)

    async def zrem(self, key: str, member: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0
            items: List[Tuple[float, str]] = self._typed(key, entry, list)
            for index, (_, existing) in enumerate(items):
                if existing == member:
                    del items[index]
                    if not items:
                        del self._data[key]
                    return 1
            return 0

    async def zcard(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return 0
            return len(self._typed(key, entry, list))

    async def lpush(self, key: str, value: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = self._data[key] = _Entry(value=_ListValue())
            values: _ListValue = self._typed(key, entry, _ListValue)
            values.insert(0, value)
            return len(values)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return []
            return _slice(list(self._typed(key, entry, _ListValue)), start, stop)

    async def ltrim(self, key: str, start: int, stop: int) -> None:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return
            values: _ListValue = self._typed(key, entry, _ListValue)
            entry.value = _ListValue(_slice(list(values), start, stop))

    def _deadline(self, ttl: Optional[float]) -> Optional[float]:
        if ttl is None:
            return None
        return self._clock() + ttl

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    @staticmethod
    def _typed(key: str, entry: _Entry, expected: type) -> Any:
        # Sorted sets are plain lists, lists use the dedicated subclass.
        value = entry.value
        if expected is list and isinstance(value, _ListValue):
            raise WrongTypeError(f"Key {key!r} holds a list, not a sorted set")
        if not isinstance(value, expected):
            raise WrongTypeError(f"Key {key!r} holds {type(value).__name__}, not {expected.__name__}")
        return value


class _ListValue(list):
    """Marker type for list values."""


def _slice(values: List[str], start: int, stop: int) -> List[str]:
    """Inclusive range with Redis-style negative indices."""
    length = len(values)
    if start < 0:
        start = max(length + start, 0)
    if stop < 0:
        stop = length + stop
    if start > stop or start >= length:
        return []
    return values[start : stop + 1]
