"""Redis缓存实现 - 读缓存、分布式锁与固定窗口限流"""
from __future__ import annotations

import asyncio
import json
import socket
import time
import uuid
from typing import Any, Callable, Dict, Optional, Tuple

from redis import asyncio as aioredis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError, RedisError

from application.ports.cache import CacheUnavailableError
from core.config import settings
from core.logging_config import get_logger

logger = get_logger(__name__)


# KEYS[1] = 当前窗口计数键
# ARGV[1] = 窗口长度（毫秒）
# 返回: {count, pttl}
RATE_LIMIT_LUA_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
return {current, ttl}
"""


def _json_dumps(value: Any) -> str:
    """将任意对象序列化为JSON字符串"""
    return json.dumps(value, default=str, ensure_ascii=False)


def _json_loads(value: Optional[str]) -> Any:
    """将JSON字符串反序列化为对象"""
    if value is None:
        return None
    return json.loads(value)


class RedisCache:
    """基于Redis的缓存实现

    失败语义：
    - get/set/delete 为尽力而为（fail open），出错记录日志后按未命中处理
    - incr/锁/限流 出错抛出 CacheUnavailableError（fail closed）
    """

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        default_ttl: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._namespace = namespace.strip(":")
        self._default_ttl = settings.redis.default_ttl if default_ttl is None else default_ttl
        self._clock = clock
        # 持有者 token -> Lock；同一进程内的多个持有者互不覆盖
        self._locks: Dict[str, Lock] = {}
        self._rate_limit_script = client.register_script(RATE_LIMIT_LUA_SCRIPT)

    def _format_key(self, key: str) -> str:
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    # ============= 读缓存 =============

    async def get(self, key: str) -> Any:
        formatted_key = self._format_key(key)
        try:
            value = await self._client.get(formatted_key)
        except RedisError as e:
            logger.warning("cache_get_failed", key=formatted_key, error=str(e))
            return None
        if value is None:
            return None
        try:
            return _json_loads(value)
        except ValueError:
            logger.warning("cache_value_corrupted", key=formatted_key)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        formatted_key = self._format_key(key)
        expire = self._default_ttl if ttl is None else ttl
        try:
            if expire and expire > 0:
                await self._client.set(formatted_key, _json_dumps(value), px=int(expire * 1000))
            else:
                await self._client.set(formatted_key, _json_dumps(value))
        except RedisError as e:
            logger.warning("cache_set_failed", key=formatted_key, error=str(e))
            return False
        return True

    async def delete(self, key: str) -> bool:
        formatted_key = self._format_key(key)
        try:
            return bool(await self._client.delete(formatted_key))
        except RedisError as e:
            logger.warning("cache_delete_failed", key=formatted_key, error=str(e))
            return False

    async def incr(self, key: str, amount: int = 1) -> int:
        formatted_key = self._format_key(key)
        try:
            return int(await self._client.incrby(formatted_key, amount))
        except RedisError as e:
            raise CacheUnavailableError(f"incr failed for {formatted_key}") from e

    # ============= 分布式锁 =============

    async def acquire_lock(self, key: str, ttl: float) -> Optional[str]:
        """SET NX PX 原子获取；不等待，拿不到直接返回 None"""
        lock_key = self._format_key(key)
        token = uuid.uuid4().hex
        lock = self._client.lock(
            lock_key,
            timeout=ttl,
            blocking=False,
            thread_local=False,
        )
        try:
            acquired = await lock.acquire(blocking=False, token=token)
        except RedisError as e:
            raise CacheUnavailableError(f"acquire lock failed for {lock_key}") from e
        if not acquired:
            return None
        self._locks[token] = lock
        logger.debug("lock_acquired", key=lock_key, ttl=ttl)
        return token

    async def release_lock(self, key: str, token: str) -> None:
        lock = self._locks.pop(token, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockError as e:
            # 锁已过期或已被其他持有者获取：不删除他人的锁
            logger.warning("lock_release_not_owned", key=self._format_key(key), error=str(e))
        except RedisError as e:
            raise CacheUnavailableError(f"release lock failed for {self._format_key(key)}") from e

    async def extend_lock(self, key: str, token: str, ttl: float) -> bool:
        lock = self._locks.get(token)
        if lock is None:
            return False
        try:
            return bool(await lock.extend(ttl, replace_ttl=True))
        except LockError as e:
            logger.warning("lock_extend_not_owned", key=self._format_key(key), error=str(e))
            return False
        except RedisError as e:
            raise CacheUnavailableError(f"extend lock failed for {self._format_key(key)}") from e

    # ============= 限流 =============

    async def is_rate_limited(self, key: str, limit: int, window: float) -> Tuple[bool, float]:
        """固定窗口计数：rate_limit:{subject}:{floor(now / window)}"""
        bucket = int(self._clock() // window)
        window_key = self._format_key(f"{key}:{bucket}")
        window_ms = max(int(window * 1000), 1)
        try:
            count, pttl = await self._rate_limit_script(keys=[window_key], args=[window_ms])
        except RedisError as e:
            raise CacheUnavailableError(f"rate limit check failed for {window_key}") from e
        count = int(count)
        if count <= limit:
            return False, 0.0
        pttl = int(pttl)
        retry_after = pttl / 1000.0 if pttl > 0 else float(window)
        return True, retry_after

    async def close(self) -> None:
        await self._client.close()


_redis_client: Optional[aioredis.Redis] = None
_cache_instance: Optional[RedisCache] = None
_lock = asyncio.Lock()


def _keepalive_options() -> dict:
    # 构建跨平台 keepalive 选项（若可用）
    if hasattr(socket, "TCP_KEEPIDLE") and hasattr(socket, "TCP_KEEPINTVL") and hasattr(socket, "TCP_KEEPCNT"):
        return {
            socket.TCP_KEEPIDLE: 1,
            socket.TCP_KEEPINTVL: 1,
            socket.TCP_KEEPCNT: 3,
        }
    return {}


async def init_redis_cache(namespace: Optional[str] = None) -> RedisCache:
    """初始化Redis缓存实例"""
    global _redis_client, _cache_instance

    if _cache_instance is not None:
        return _cache_instance

    async with _lock:
        if _cache_instance is not None:
            return _cache_instance

        redis_settings = settings.redis
        if not redis_settings.url:
            raise RuntimeError("REDIS__URL 未配置，无法初始化Redis缓存")

        client = aioredis.from_url(
            redis_settings.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=redis_settings.max_connections,
            socket_timeout=redis_settings.socket_timeout,
            socket_connect_timeout=redis_settings.socket_connect_timeout,
            socket_keepalive=True,
            socket_keepalive_options=_keepalive_options(),
        )
        await client.ping()

        _redis_client = client
        _cache_instance = RedisCache(
            client=client,
            namespace=namespace or redis_settings.namespace,
        )
        logger.info("redis_cache_initialized", namespace=namespace or redis_settings.namespace)
        return _cache_instance


async def shutdown_redis_cache() -> None:
    """关闭Redis连接"""
    global _redis_client, _cache_instance

    if _redis_client is not None:
        try:
            await _redis_client.close()
            logger.info("redis_cache_closed")
        except RedisError as e:
            logger.error("redis_cache_close_failed", error=str(e))
        finally:
            _redis_client = None
            _cache_instance = None
