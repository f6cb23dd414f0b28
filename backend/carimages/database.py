from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy import event

# Base：规范库（vehicle_records / cache_entries）
# LegacyBase：旧库，只读；单独一份 metadata，避免 create_all 时把旧表建到规范库里
Base = declarative_base()
LegacyBase = declarative_base()


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """按 URL 创建异步引擎（SQLite / PostgreSQL 通用）。

    针对 SQLite 做一些“更像生产”的默认优化：
    - busy_timeout：降低并发写入下的 “database is locked”
    - WAL：提升并发读写能力（尤其是后台迁移 + 前台查询并行）
    """
    is_sqlite = str(database_url or "").startswith("sqlite")
    is_memory = ":memory:" in str(database_url or "")
    connect_args = {"timeout": 30} if is_sqlite else {}

    engine = create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        future=True,
        connect_args=connect_args,
    )

    # 内存库不支持 WAL，且每个连接都是独立库，不做 PRAGMA
    if is_sqlite and not is_memory:
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, _connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA busy_timeout=30000;")
            cursor.close()

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_db(engine: AsyncEngine):
    """Initialize canonical database tables"""
    # 确保所有模型都已被导入，从而注册到 Base.metadata
    from . import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

