"""
数据库配置和连接管理
"""
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from core.config import settings
from infrastructure.models import Base


def _build_async_url(database_url: str) -> str:
    """确保数据库URL使用异步驱动"""
    url = make_url(database_url)
    drivername = url.drivername

    if "+" in drivername:
        return database_url

    driver_map = {
        "postgresql": "postgresql+asyncpg",
        "postgres": "postgresql+asyncpg",
        "mysql": "mysql+aiomysql",
        "sqlite": "sqlite+aiosqlite",
    }

    if drivername not in driver_map:
        raise ValueError(f"不支持的数据库驱动: {drivername}. 请使用 async 驱动或更新 DATABASE__URL")

    async_driver = driver_map[drivername]
    return url.set(drivername=async_driver).render_as_string(hide_password=False)


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(database_url: Optional[str] = None) -> AsyncEngine:
    """按配置创建异步引擎（sqlite 不支持连接池参数）"""
    url = _build_async_url(database_url or settings.database.url)
    kwargs = {"echo": settings.database.echo}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database.pool_size,
            max_overflow=settings.database.max_overflow,
            pool_pre_ping=True,
        )
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


def init_database(database_url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """初始化全局引擎与会话工厂（幂等）"""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_engine(database_url)
        _session_factory = create_session_factory(_engine)
    return _session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        return init_database()
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话（不自动提交，由调用方控制事务）"""
    async with get_session_factory()() as session:
        yield session


async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    创建所有表

    根据models中定义的所有模型创建对应的数据库表
    """
    target = engine or _engine
    if target is None:
        init_database()
        target = _engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    删除所有表

    警告：仅用于测试环境，会删除所有数据！
    """
    target = engine or _engine
    if target is None:
        return
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def dispose_database() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
