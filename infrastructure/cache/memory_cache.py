"""In-memory cache (single-process stand-in for Redis).

Useful for local development and tests. Instances created through
``sibling()`` share one backing store, which models several service
instances talking to the same cache. Lock ownership lives in the token
returned to each holder, not in the instance.
"""
from __future__ import annotations

import asyncio
import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: Optional[float] = None


@dataclass
class _Store:
    entries: Dict[str, _Entry] = field(default_factory=dict)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class InMemoryCache:
    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        default_ttl: Optional[float] = None,
        _store: Optional[_Store] = None,
    ) -> None:
        self._clock = clock
        self._default_ttl = default_ttl
        self._store = _store or _Store()

    def sibling(self) -> "InMemoryCache":
        """Another client of the same store (a separate service instance)."""
        return InMemoryCache(clock=self._clock, default_ttl=self._default_ttl, _store=self._store)

    def _live(self, key: str) -> Optional[_Entry]:
        entry = self._store.entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._store.entries[key]
            return None
        return entry

    def _expiry(self, ttl: Optional[float]) -> Optional[float]:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl and ttl > 0:
            return self._clock() + ttl
        return None

    async def get(self, key: str) -> Any:
        entry = self._live(key)
        return copy.deepcopy(entry.value) if entry else None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        self._store.entries[key] = _Entry(copy.deepcopy(value), self._expiry(ttl))
        return True

    async def delete(self, key: str) -> bool:
        return self._store.entries.pop(key, None) is not None

    async def incr(self, key: str, amount: int = 1) -> int:
        async with self._store.lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(0)
                self._store.entries[key] = entry
            entry.value = int(entry.value) + amount
            return entry.value

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        async with self._store.lock:
            if self._live(key) is not None:
                return None
            token = uuid.uuid4().hex
            self._store.entries[key] = _Entry(token, self._clock() + ttl)
            return token

    async def release_lock(self, key: str, token: str) -> None:
        async with self._store.lock:
            entry = self._live(key)
            if entry is None:
                return
            if entry.value == token:
                del self._store.entries[key]
            else:
                logger.warning("lock_release_not_owned", key=key)

    async def extend_lock(self, key: str, token: str, ttl: float) -> bool:
        async with self._store.lock:
            entry = self._live(key)
            if entry is None or entry.value != token:
                return False
            entry.expires_at = self._clock() + ttl
            return True

    async def is_rate_limited(self, key: str, limit: int, window: float) -> Tuple[bool, float]:
        now = self._clock()
        bucket = int(now // window)
        window_key = f"{key}:{bucket}"
        async with self._store.lock:
            entry = self._live(window_key)
            if entry is None:
                entry = _Entry(0, now + window)
                self._store.entries[window_key] = entry
            entry.value += 1
            count = entry.value
            remaining = entry.expires_at - now
        if count <= limit:
            return False, 0.0
        return True, max(remaining, 0.001)

    async def close(self) -> None:
        self._store.entries.clear()
