"""
固定窗口限流

计数键：rate_limit:{subject}:{floor(now / window)}。
窗口边界两侧最多可放行约 2 倍 limit 的请求，这是固定窗口的已知近似。
"""
from __future__ import annotations

from application.ports.cache import Cache, CacheUnavailableError
from core.logging_config import get_logger
from domain.common.exceptions import InternalServiceException, RateLimitedException

logger = get_logger(__name__)


def merchant_subject(merchant_id: str) -> str:
    return f"merchant:{merchant_id}"


class RateLimiter:
    def __init__(self, cache: Cache, *, limit: int, window_seconds: float) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self._cache = cache
        self.limit = limit
        self.window_seconds = window_seconds

    async def check(self, subject: str) -> None:
        """记一次访问；超限抛出 RateLimitedException(retry_after)"""
        key = f"rate_limit:{subject}"
        try:
            limited, retry_after = await self._cache.is_rate_limited(key, self.limit, self.window_seconds)
        except CacheUnavailableError as e:
            logger.error("rate_limit_backend_unavailable", subject=subject, error=str(e))
            raise InternalServiceException("Rate limiter unavailable", details={"subject": subject}) from e
        if limited:
            retry_after = retry_after if retry_after > 0 else self.window_seconds
            logger.info("rate_limited", subject=subject, retry_after=retry_after)
            raise RateLimitedException(retry_after, subject=subject)
