from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from viewsync.config import settings


def _build_url() -> str:
    return (
        f"postgresql+asyncpg://{settings.postgres_user}:{settings.postgres_password}"
        f"@{settings.postgres_host}:{settings.postgres_port}/{settings.postgres_db}"
    )


engine = create_async_engine(_build_url(), echo=False, pool_pre_ping=True)

AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_pg() -> None:
    # Import all models so they are registered with Base.metadata
    from viewsync.models import etl_source, sync_log, synced_column, synced_view  # noqa: F401

    from viewsync.services.sql_renderer import SqlRenderer

    create_schema = SqlRenderer(engine.dialect.name, settings.etl_schema_name).create_schema()
    async with engine.begin() as conn:
        if create_schema:
            await conn.execute(text(create_schema))
        await conn.run_sync(Base.metadata.create_all)
