"""
支付核心组合根 - 组装仓储、缓存、处理方路由与通知器

传输层（HTTP/gRPC）不在本仓库内，只需在启动时调用 `payment_core()` 并持有返回的 PaymentService。
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Mapping, Optional

from application.ports.cache import Cache
from application.ports.notifier import Notifier
from application.ports.payment_processor import PaymentProcessor
from application.services.payment_service import PaymentService
from application.services.processor_router import ProcessorRouter
from core.config import settings
from core.logging_config import configure_logging, get_logger
from core.settings import PaymentSettings, payment_settings
from domain.payment.entity import PaymentMethod
from domain.payment.repository import PaymentRepository
from infrastructure.cache import InMemoryCache, init_redis_cache, shutdown_redis_cache
from infrastructure.database import create_tables, dispose_database, init_database
from infrastructure.external.notifications import LoggingNotifier, WebhookNotifier
from infrastructure.repositories.memory_repository import InMemoryPaymentRepository
from infrastructure.repositories.payment_repository import SQLAlchemyPaymentRepository


configure_logging()
logger = get_logger(__name__)


def build_notifier(cfg: PaymentSettings) -> Notifier:
    if cfg.notifier.webhook_url:
        return WebhookNotifier(
            cfg.notifier.webhook_url,
            timeout=cfg.notifier.timeout_seconds,
            max_attempts=cfg.notifier.max_attempts,
            base_backoff=cfg.notifier.base_backoff,
        )
    return LoggingNotifier()


@asynccontextmanager
async def payment_core(
    processors: Mapping[PaymentMethod, PaymentProcessor],
    *,
    cfg: Optional[PaymentSettings] = None,
    in_memory: bool = False,
) -> AsyncIterator[PaymentService]:
    """启动并在退出时关闭支付核心

    in_memory=True 时使用内存仓储与内存缓存（单进程开发/测试）。
    """
    cfg = cfg or payment_settings
    cache: Cache
    repository: PaymentRepository

    if in_memory:
        cache = InMemoryCache()
        repository = InMemoryPaymentRepository()
        logger.info("payment_core_backend", backend="memory")
    else:
        session_factory = init_database()
        if settings.DEBUG:
            # 开发环境自动建表，生产环境使用迁移
            await create_tables()
            logger.info("database_initialized", message="Database tables created (development)")
        repository = SQLAlchemyPaymentRepository(session_factory)
        cache = await init_redis_cache()
        logger.info("payment_core_backend", backend="redis+sql")

    router = ProcessorRouter(processors, timeout_seconds=cfg.processor.timeout_seconds)
    service = PaymentService(repository, cache, router, build_notifier(cfg), settings=cfg)
    logger.info(
        "payment_core_started",
        methods=sorted(m.value for m in router.methods),
        lock_ttl=cfg.lock.ttl_seconds,
        processor_timeout=cfg.processor.timeout_seconds,
    )
    try:
        yield service
    finally:
        await service.aclose()
        if in_memory:
            await cache.close()
        else:
            await shutdown_redis_cache()
            await dispose_database()
        logger.info("payment_core_stopped")
