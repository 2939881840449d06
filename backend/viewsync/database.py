"""
SQL Server source connections.

Sources are registered by name and connected lazily with pyodbc. Every
blocking driver call runs in a worker thread so the event loop stays free.
"""
import asyncio
import logging
import struct
import time
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional

from pydantic import ValidationError
from pydantic_settings import BaseSettings

from viewsync.config import settings
from viewsync.exceptions import SourceConnectionError

logger = logging.getLogger(__name__)

# ODBC type code SQL Server reports for DATETIMEOFFSET
_SQL_SS_TIMESTAMPOFFSET = -155


class SourceConfig(BaseSettings):
    """Connection parameters for one source, read from ``DB_<NAME>_*`` variables."""

    server: str
    database: str
    user: str
    password: str
    port: int = 1433

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def connection_string(self, driver: str) -> str:
        return (
            f"DRIVER={{{driver}}};"
            f"SERVER={self.server},{self.port};"
            f"DATABASE={self.database};"
            f"UID={self.user};"
            f"PWD={self.password};"
            f"Encrypt=yes;"
            f"TrustServerCertificate=yes;"
        )


def _datetimeoffset_to_datetime(value: bytes) -> Optional[datetime]:
    if value is None:
        return None
    year, month, day, hour, minute, second, fraction, tz_hour, tz_minute = struct.unpack("<6hI2h", value)
    return datetime(
        year, month, day, hour, minute, second, fraction // 1000,
        timezone(timedelta(hours=tz_hour, minutes=tz_minute)),
    )


class SourceRegistry:
    def __init__(self, driver: str = settings.mssql_driver, connect_timeout: int = settings.mssql_connect_timeout):
        self.driver = driver
        self.connect_timeout = connect_timeout
        self._configs: dict[str, SourceConfig] = {}

    def register(self, name: str, config: SourceConfig) -> None:
        self._configs[name] = config
        logger.info('Registered source database "%s" -> %s/%s', name, config.server, config.database)

    def register_from_env(self, names: list[str]) -> None:
        for name in names:
            prefix = f"DB_{name.upper()}_"
            try:
                config = SourceConfig(_env_prefix=prefix)
            except ValidationError as e:
                missing = ", ".join(f"{prefix}{err['loc'][0].upper()}" for err in e.errors())
                logger.warning('Skipping source database "%s": missing env vars (%s)', name, missing)
                continue
            self.register(name.lower(), config)

    def registered_names(self) -> list[str]:
        return list(self._configs)

    def is_registered(self, name: str) -> bool:
        return name in self._configs

    def _connect(self, name: str):
        config = self._configs.get(name)
        if config is None:
            raise SourceConnectionError(
                f'Database "{name}" is not registered. Available: [{", ".join(self._configs)}]',
                details={"db": name},
            )

        import pyodbc  # needs the unixODBC runtime, so loaded on first use

        try:
            conn = pyodbc.connect(config.connection_string(self.driver), timeout=self.connect_timeout)
        except pyodbc.Error as e:
            raise SourceConnectionError(
                f'Failed to connect to database "{name}": {e}', details={"db": name}
            ) from e
        conn.add_output_converter(_SQL_SS_TIMESTAMPOFFSET, _datetimeoffset_to_datetime)
        return conn

    def _execute_query_sync(self, name: str, query: str, params: tuple) -> list[dict[str, Any]]:
        conn = self._connect(name)
        try:
            cursor = conn.cursor()
            cursor.execute(query, params)
            columns = [col[0] for col in cursor.description]
            rows = cursor.fetchall()
            return [dict(zip(columns, row)) for row in rows]
        finally:
            conn.close()

    async def execute_query(self, name: str, query: str, params: tuple = ()) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._execute_query_sync, name, query, params)

    async def stream_query(
        self, name: str, query: str, params: tuple = (), batch_size: int = settings.sync_batch_size
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield the result of ``query`` in lists of at most ``batch_size`` rows."""
        conn = await asyncio.to_thread(self._connect, name)
        try:
            cursor = conn.cursor()
            await asyncio.to_thread(cursor.execute, query, params)
            columns = [col[0] for col in cursor.description]
            while True:
                rows = await asyncio.to_thread(cursor.fetchmany, batch_size)
                if not rows:
                    break
                yield [dict(zip(columns, row)) for row in rows]
        finally:
            await asyncio.to_thread(conn.close)

    async def test_connection(self, name: str) -> dict[str, Any]:
        start = time.monotonic()
        try:
            await self.execute_query(name, "SELECT 1 AS ping")
            return {"ok": True, "latency_ms": int((time.monotonic() - start) * 1000), "error": None}
        except Exception as e:
            return {"ok": False, "latency_ms": int((time.monotonic() - start) * 1000), "error": str(e)}


source_registry = SourceRegistry()
