"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Environment variables use the ``PAYMENT__`` prefix, e.g.
``PAYMENT__LOCK__TTL_SECONDS=45`` or ``PAYMENT__RATE_LIMIT__LIMIT=20``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, model_validator


class LockSettings(BaseModel):
    # 处理锁 TTL 必须大于处理方超时，否则锁可能在调用返回前过期
    ttl_seconds: float = Field(default=30.0, gt=0)
    create_ttl_seconds: float = Field(default=5.0, gt=0)
    auto_renew: bool = False
    auto_renew_interval_ratio: float = Field(default=0.6, gt=0, lt=1)
    auto_renew_jitter_ratio: float = Field(default=0.1, ge=0, lt=1)


class RateLimitSettings(BaseModel):
    limit: int = Field(default=10, ge=1)
    window_seconds: float = Field(default=1.0, gt=0)


class ProcessorSettings(BaseModel):
    timeout_seconds: float = Field(default=20.0, gt=0)


class ReadCacheSettings(BaseModel):
    enabled: bool = True
    ttl_seconds: int = Field(default=60, ge=1)


class NotifierSettings(BaseModel):
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0
    max_attempts: int = Field(default=3, ge=1)
    base_backoff: float = 0.2


class PaymentSettings(BaseSettings):
    lock: LockSettings = Field(default_factory=LockSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    processor: ProcessorSettings = Field(default_factory=ProcessorSettings)
    read_cache: ReadCacheSettings = Field(default_factory=ReadCacheSettings)
    notifier: NotifierSettings = Field(default_factory=NotifierSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _lock_outlives_processor(self):
        if self.lock.ttl_seconds <= self.processor.timeout_seconds:
            raise ValueError(
                f"lock.ttl_seconds ({self.lock.ttl_seconds}) 必须大于 "
                f"processor.timeout_seconds ({self.processor.timeout_seconds})"
            )
        return self


payment_settings = PaymentSettings()
