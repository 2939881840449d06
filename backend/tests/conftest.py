import asyncio
import os
import re
from typing import Optional

# Set env vars before any viewsync module is imported so pydantic-settings
# never picks up a developer's .env values during tests.
_test_env = {
    "POSTGRES_HOST": "localhost",
    "POSTGRES_DB": "warehouse_test",
    "MSSQL_DRIVER": "ODBC Driver 18 for SQL Server",
    "SOURCE_DATABASES": "[]",
    "ALLOWED_VIEWS": '["vw_stock", "vw_clientes"]',
    "CORS_ORIGINS": '["http://localhost:5173"]',
}

for key, value in _test_env.items():
    os.environ.setdefault(key, value)

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from viewsync.models import etl_source, sync_log, synced_column, synced_view  # noqa: E402,F401
from viewsync.pg_database import Base  # noqa: E402
from viewsync.services.sql_renderer import SqlRenderer  # noqa: E402
from viewsync.services.sync_service import ViewSyncService  # noqa: E402

ALLOWED_VIEWS = ["vw_stock", "vw_clientes", "vw_pedidos"]

_SOURCE_SELECT_RE = re.compile(r"FROM \[(\w+)\]\.\[(\w+)\]")


class FakeSource:
    """
    In-memory stand-in for ``SourceRegistry``.

    Views are declared with ``define``; introspection answers from the declared
    columns and full reads yield the declared rows in batches.
    """

    def __init__(self, names=("inventario",)):
        self.names = list(names)
        self.views: dict[tuple[str, str], dict] = {}
        self.queries: list[str] = []
        # When set, introspection parks until the event fires
        self.hold: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    def define(self, view, columns, rows=(), schema="dbo", fail_after=None):
        """``columns`` is a list of ``(name, type)`` or ``(name, type, nullable)``."""
        self.views[(schema, view)] = {
            "columns": [c if len(c) == 3 else (c[0], c[1], True) for c in columns],
            "rows": list(rows),
            "fail_after": fail_after,
        }

    def registered_names(self):
        return list(self.names)

    def is_registered(self, name):
        return name in self.names

    async def execute_query(self, name, query, params=()):
        self.queries.append(query)
        if self.hold is not None:
            self.entered.set()
            await self.hold.wait()
        schema, view = params
        declared = self.views.get((schema, view))
        if declared is None:
            return []
        return [
            {
                "column_name": col_name,
                "data_type": col_type,
                "max_length": None,
                "is_nullable": "YES" if nullable else "NO",
                "ordinal_position": i,
            }
            for i, (col_name, col_type, nullable) in enumerate(declared["columns"], start=1)
        ]

    async def stream_query(self, name, query, params=(), batch_size=5_000):
        self.queries.append(query)
        schema, view = _SOURCE_SELECT_RE.search(query).groups()
        declared = self.views[(schema, view)]
        rows = declared["rows"]
        for start in range(0, len(rows), batch_size):
            if declared["fail_after"] is not None and start >= declared["fail_after"]:
                raise RuntimeError("Connection reset by peer")
            yield rows[start:start + batch_size]

    async def test_connection(self, name):
        return {"ok": True, "latency_ms": 1}


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine shared by every session and connection of a test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def service(engine, session_factory, source):
    return ViewSyncService(
        session_factory,
        engine,
        source,
        allowed_views=ALLOWED_VIEWS,
        renderer=SqlRenderer("sqlite", None),
        batch_size=2,
    )
