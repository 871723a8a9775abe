import sys

from uuid import uuid4

from sqlalchemy import URL
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from energy_backend.common.log import log
from energy_backend.common.model import MappedBase
from energy_backend.core.conf import settings


def create_database_url() -> URL:
    """创建数据库链接"""
    if settings.DATABASE_TYPE == 'sqlite':
        return URL.create(drivername='sqlite+aiosqlite', database=settings.DATABASE_SQLITE_PATH)
    return URL.create(
        drivername='postgresql+asyncpg',
        username=settings.DATABASE_USER,
        password=settings.DATABASE_PASSWORD,
        host=settings.DATABASE_HOST,
        port=settings.DATABASE_PORT,
        database=settings.DATABASE_SCHEMA,
    )


def create_async_engine_and_session(url: str | URL) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    创建数据库引擎和 Session

    :param url: 数据库连接 URL
    :return:
    """
    is_sqlite = str(url).startswith('sqlite')
    engine_kwargs = {
        'echo': settings.DATABASE_ECHO,
        'echo_pool': settings.DATABASE_POOL_ECHO,
        'future': True,
    }
    if not is_sqlite:
        engine_kwargs.update(
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_recycle=3600,
            pool_pre_ping=True,
            pool_use_lifo=False,
            connect_args={
                'timeout': settings.DATABASE_CONNECT_TIMEOUT_SECONDS,
                'command_timeout': settings.DATABASE_COMMAND_TIMEOUT_SECONDS,
            },
        )
    try:
        engine = create_async_engine(url, **engine_kwargs)
    except Exception as e:
        log.error('❌ 数据库链接失败 %s', e)
        sys.exit()
    else:
        db_session = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            autoflush=False,  # 禁用自动刷新
            expire_on_commit=False,  # 禁用提交时过期
        )
        return engine, db_session



async def create_tables(engine: AsyncEngine | None = None) -> None:
    """创建数据库表"""
    # models must be imported so their tables register on the metadata
    import energy_backend.src.billing.domain  # noqa: F401

    async with (engine or async_engine).begin() as coon:
        await coon.run_sync(MappedBase.metadata.create_all)


async def drop_tables(engine: AsyncEngine | None = None) -> None:
    """删除数据库表"""
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(MappedBase.metadata.drop_all)


def uuid4_str() -> str:
    """数据库引擎 UUID 类型兼容性解决方案"""
    return str(uuid4())


# SQLA 数据库链接
SQLALCHEMY_DATABASE_URL = create_database_url()

# SALA 异步引擎和会话
async_engine, async_db_session = create_async_engine_and_session(SQLALCHEMY_DATABASE_URL)
