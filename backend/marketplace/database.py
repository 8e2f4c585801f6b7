"""
数据库连接和会话管理

应用、SLA worker 和测试共用同一套建引擎 / 建表逻辑，
测试只是换成内存库。
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from marketplace.config import get_settings

settings = get_settings()


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def is_memory_sqlite(url: str) -> bool:
    return is_sqlite(url) and (url.endswith("://") or ":memory:" in url)


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    创建异步引擎

    - 文件型 SQLite：worker 巡检和请求会并发写同一张售后单表，加大锁等待时间
    - 内存 SQLite：所有会话必须共用一个连接，否则每个连接看到的是各自的空库
    """
    kwargs = {"echo": echo}
    if is_memory_sqlite(database_url):
        kwargs["connect_args"] = {"check_same_thread": False}
        kwargs["poolclass"] = StaticPool
    elif is_sqlite(database_url):
        kwargs["connect_args"] = {"timeout": 60}
    return create_async_engine(database_url, **kwargs)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    # 提交后不过期：接口层在提交之后还要序列化售后单
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url, echo=settings.sqlalchemy_echo)
async_session_maker = build_session_maker(engine)


class Base(DeclarativeBase):
    """SQLAlchemy 模型基类"""
    pass


async def get_db() -> AsyncSession:
    """获取数据库会话（依赖注入）"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def create_schema(bind: AsyncEngine):
    """建表（含售后单的部分唯一索引）"""
    url = str(bind.url)
    async with bind.begin() as conn:
        # WAL 会持久化到 DB 文件，设置一次即可；内存库不需要
        if is_sqlite(url) and not is_memory_sqlite(url):
            await conn.execute(text("PRAGMA journal_mode=WAL;"))
            await conn.execute(text("PRAGMA synchronous=NORMAL;"))
            await conn.execute(text("PRAGMA busy_timeout=60000;"))
        await conn.run_sync(Base.metadata.create_all)


async def init_db():
    """初始化数据库表"""
    await create_schema(engine)
