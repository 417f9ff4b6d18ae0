"""
Cache port: shared remote cache used for locking, rate limiting and
read-through caching.

Every instance of the service must reach the same backing store, otherwise
the lock and rate-limit guarantees only hold per process.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, Tuple, runtime_checkable


class CacheUnavailableError(Exception):
    """Backing store unreachable or timed out.

    Lock and rate-limit callers treat this as a denial (fail closed);
    best-effort reads treat it as a miss (fail open).
    """


@runtime_checkable
class Cache(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool: ...

    async def delete(self, key: str) -> bool: ...

    async def incr(self, key: str, amount: int = 1) -> int: ...

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        """Atomic test-and-set.

        Returns a holder token for the caller that now owns the key, None when
        the key is held. Release and extend must present that token.
        """
        ...

    async def release_lock(self, key: str, token: str) -> None:
        """Idempotent; only deletes the key while it still carries token."""
        ...

    async def extend_lock(self, key: str, token: str, ttl: float) -> bool: ...

    async def is_rate_limited(self, key: str, limit: int, window: float) -> Tuple[bool, float]:
        """Count one hit in the current window for key.

        Returns (limited, retry_after_seconds). retry_after is 0 when admitted.
        """
        ...

    async def close(self) -> None: ...
