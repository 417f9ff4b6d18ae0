"""
跨实例分布式锁（基于 Cache 端口）

用法::

    async with lock.hold(f"payment-lock:{payment_id}", ttl=30) as lease:
        ...  # 同一时刻全系统只有一个持有者
        lease.ensure_held()  # 写回结果前确认锁仍在手中

拿不到锁立即失败（AlreadyInProgressException），不排队等待。
所有权由获取时返回的 token 表示，同一进程内的多个持有者互不干扰。
"""
from __future__ import annotations

import asyncio
import contextlib
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from application.ports.cache import Cache, CacheUnavailableError
from core.logging_config import get_logger
from domain.common.exceptions import InternalServiceException
from domain.payment.exceptions import AlreadyInProgressException

logger = get_logger(__name__)


def payment_lock_key(payment_id: str) -> str:
    return f"payment-lock:{payment_id}"


def create_lock_key(merchant_id: str, order_id: str) -> str:
    return f"payment-create:{merchant_id}:{order_id}"


@dataclass
class LockLease:
    """一次成功获取的锁"""

    key: str
    token: str
    lost: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_lost(self) -> bool:
        return self.lost.is_set()

    def ensure_held(self) -> None:
        """续期失败后锁可能已被他人持有，此时拒绝写回"""
        if self.lost.is_set():
            logger.error("lock_lost_before_write", key=self.key)
            raise InternalServiceException("Lock lost before the result was persisted", details={"key": self.key})


class DistributedLock:
    def __init__(
        self,
        cache: Cache,
        *,
        auto_renew: bool = False,
        interval_ratio: float = 0.6,
        jitter_ratio: float = 0.1,
        on_busy: Optional[Callable[[str], Exception]] = None,
    ) -> None:
        self._cache = cache
        self._auto_renew = auto_renew
        self._interval_ratio = interval_ratio
        self._jitter_ratio = jitter_ratio
        self._on_busy = on_busy or (lambda key: AlreadyInProgressException(key.split(":", 1)[-1]))

    async def try_acquire(self, key: str, ttl: float) -> Optional[str]:
        """获取锁并返回持有者 token；被占用返回 None；缓存不可用时拒绝（fail closed）"""
        try:
            return await self._cache.acquire_lock(key, ttl)
        except CacheUnavailableError as e:
            logger.error("lock_backend_unavailable", key=key, error=str(e))
            raise InternalServiceException("Lock service unavailable", details={"key": key}) from e

    async def release(self, key: str, token: str) -> None:
        try:
            await self._cache.release_lock(key, token)
        except CacheUnavailableError as e:
            # 释放失败时锁依赖 TTL 过期
            logger.error("lock_release_failed", key=key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: str, ttl: float, *, auto_renew: Optional[bool] = None) -> AsyncIterator[LockLease]:
        token = await self.try_acquire(key, ttl)
        if token is None:
            logger.info("lock_busy", key=key)
            raise self._on_busy(key)

        lease = LockLease(key=key, token=token)
        renew = self._auto_renew if auto_renew is None else auto_renew
        heartbeat: Optional[asyncio.Task] = None
        if renew:
            heartbeat = asyncio.create_task(self._heartbeat(lease, ttl))
        try:
            yield lease
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            await self.release(key, token)

    def _next_interval(self, ttl: float) -> float:
        base = ttl * self._interval_ratio
        jitter = base * self._jitter_ratio
        return max(base + random.uniform(-jitter, jitter), 0.001)

    async def _heartbeat(self, lease: LockLease, ttl: float) -> None:
        while True:
            await asyncio.sleep(self._next_interval(ttl))
            try:
                extended = await self._cache.extend_lock(lease.key, lease.token, ttl)
            except CacheUnavailableError as e:
                logger.warning("lock_extend_failed", key=lease.key, error=str(e))
                continue
            if not extended:
                logger.warning("lock_lost", key=lease.key)
                lease.lost.set()
                return
            logger.debug("lock_extended", key=lease.key, ttl=ttl)
