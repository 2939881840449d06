"""
View sync orchestration: SQL Server view -> PostgreSQL table, full reload.

One run walks PENDING -> INTROSPECTING -> EVOLVING_SCHEMA -> LOADING ->
COMPLETED, or drops to FAILED from any of them. Schema DDL commits before the
load starts; the truncate and every batch insert share one destination
transaction, so a failed load leaves the previous rows in place.
"""
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Sequence

from sqlalchemy import DateTime, bindparam, delete, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from viewsync.exceptions import (
    DataLoadError,
    SourceConnectionError,
    SyncedViewNotFoundError,
    ViewNotAllowedError,
    ViewSyncError,
)
from viewsync.models.etl_source import EtlSource
from viewsync.models.sync_log import SyncLog, SyncLogStatus
from viewsync.models.synced_column import SyncedColumn
from viewsync.models.synced_view import SyncedView, SyncStatus
from viewsync.services.conflict_guard import ConflictGuard, SyncLease
from viewsync.services.dynamic_table import DynamicTableManager, SchemaDiff
from viewsync.services.identifiers import generate_table_name
from viewsync.services.introspector import introspect
from viewsync.services.sql_renderer import (
    SYNCED_AT_PARAM,
    ColumnSpec,
    SqlRenderer,
    render_source_select,
    row_params,
)

logger = logging.getLogger(__name__)


class SyncStage(str, Enum):
    PENDING = "PENDING"
    INTROSPECTING = "INTROSPECTING"
    EVOLVING_SCHEMA = "EVOLVING_SCHEMA"
    LOADING = "LOADING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SyncResult:
    rows_synced: int
    duration_ms: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def view_key(binding: str, schema: str, view: str) -> str:
    return f"{binding}::{schema}::{view}"


class ViewSyncService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: AsyncEngine,
        sources,
        *,
        allowed_views: Iterable[str],
        renderer: Optional[SqlRenderer] = None,
        default_schema: str = "dbo",
        batch_size: int = 5_000,
        stale_after: timedelta = timedelta(hours=1),
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.sources = sources
        self.allowed_views = list(allowed_views)
        self.renderer = renderer or SqlRenderer(engine.dialect.name)
        self.default_schema = default_schema
        self.batch_size = batch_size
        self.guard = ConflictGuard(session_factory, stale_after)
        self.tables = DynamicTableManager(engine, self.renderer)

    # -- allow-list --------------------------------------------------------

    def is_allowed(self, view: str) -> bool:
        return view in self.allowed_views

    def ensure_allowed(self, schema: str, view: str) -> None:
        if not self.is_allowed(view):
            raise ViewNotAllowedError(schema, view)

    def ensure_registered(self, binding: str) -> None:
        if not self.sources.is_registered(binding):
            raise SourceConnectionError(f'Database "{binding}" is not registered', details={"db": binding})

    # -- TriggerSync -------------------------------------------------------

    async def trigger_sync(self, binding: str, schema: Optional[str], view: str) -> SyncResult:
        """Run one full sync of ``schema.view`` from source ``binding``."""
        schema = schema or self.default_schema
        self.ensure_allowed(schema, view)
        self.ensure_registered(binding)
        key = view_key(binding, schema, view)
        dest_table = generate_table_name(binding, schema, view)

        view_id = await self._get_or_create_view(binding, schema, view, dest_table)
        lease = await self.guard.acquire(view_id, key)

        started = time.monotonic()
        stage = SyncStage.PENDING
        log_id: Optional[int] = None
        try:
            log_id = await self._start_log(view_id)
            logger.info("ETL %s: sync started (table %s)", key, dest_table)

            stage = SyncStage.INTROSPECTING
            source_columns = await introspect(self.sources, binding, schema, view)
            columns = [ColumnSpec.from_source(c) for c in source_columns]

            stage = SyncStage.EVOLVING_SCHEMA
            known = await self._live_columns(view_id)
            retired = await self._retired_columns(view_id)
            diff = await self.tables.ensure_table(dest_table, columns, known, retired)
            await self._record_schema(view_id, log_id, columns, diff)

            stage = SyncStage.LOADING
            rows_synced = await self._reload(binding, schema, view, dest_table, columns, diff.columns)

            duration_ms = int((time.monotonic() - started) * 1000)
            await self._finish_success(lease, log_id, rows_synced, duration_ms)
            logger.info("ETL %s: sync completed, %d rows in %dms", key, rows_synced, duration_ms)
            return SyncResult(rows_synced=rows_synced, duration_ms=duration_ms)

        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error("ETL %s: sync failed during %s: %s", key, stage.value, e)
            await self._finish_failure(lease, log_id, e, duration_ms)
            raise
        finally:
            await self.guard.release(lease)

    async def _find_view(self, db, binding: str, schema: str, view: str) -> Optional[SyncedView]:
        result = await db.execute(
            select(SyncedView)
            .join(EtlSource, SyncedView.source_id == EtlSource.id)
            .where(
                EtlSource.db_name == binding,
                SyncedView.source_schema == schema,
                SyncedView.source_view == view,
            )
        )
        return result.scalar_one_or_none()

    async def _get_or_create_view(self, binding: str, schema: str, view: str, dest_table: str) -> int:
        async with self.session_factory() as db:
            synced = await self._find_view(db, binding, schema, view)
            if synced is not None:
                return synced.id

            try:
                source = (await db.execute(select(EtlSource).where(EtlSource.db_name == binding))).scalar_one_or_none()
                if source is None:
                    source = EtlSource(db_name=binding)
                    db.add(source)
                    await db.flush()
                synced = SyncedView(
                    source_id=source.id,
                    source_schema=schema,
                    source_view=view,
                    dest_table=dest_table,
                    status=SyncStatus.PENDING.value,
                )
                db.add(synced)
                await db.commit()
                return synced.id
            except IntegrityError:
                # A concurrent first sync inserted the same rows; use theirs
                await db.rollback()
                synced = await self._find_view(db, binding, schema, view)
                if synced is None:
                    raise
                return synced.id

    async def _start_log(self, view_id: int) -> int:
        async with self.session_factory() as db:
            log = SyncLog(synced_view_id=view_id, status=SyncLogStatus.RUNNING.value, started_at=_utcnow())
            db.add(log)
            await db.commit()
            return log.id

    async def _live_columns(self, view_id: int) -> list[SyncedColumn]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncedColumn)
                .where(SyncedColumn.synced_view_id == view_id, SyncedColumn.removed_in_version.is_(None))
                .order_by(SyncedColumn.ordinal_position)
            )
            return list(result.scalars().all())

    async def _retired_columns(self, view_id: int) -> list[SyncedColumn]:
        """Latest tombstoned row per column name."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(SyncedColumn)
                .where(SyncedColumn.synced_view_id == view_id, SyncedColumn.removed_in_version.is_not(None))
                .order_by(SyncedColumn.removed_in_version, SyncedColumn.id)
            )
            latest = {c.column_name.lower(): c for c in result.scalars().all()}
        return list(latest.values())

    async def _record_schema(
        self, view_id: int, log_id: int, columns: Sequence[ColumnSpec], diff: SchemaDiff
    ) -> int:
        """
        Persist column metadata for this run's schema. Commits on its own, so
        the schema version matches the already-committed DDL even if the load fails.
        """
        async with self.session_factory() as db:
            synced = await db.get(SyncedView, view_id)
            version = synced.schema_version + 1 if diff.is_evolution else synced.schema_version

            for spec in diff.added:
                db.add(
                    SyncedColumn(
                        synced_view_id=view_id,
                        # Physical spelling, which reads of the table must use
                        column_name=spec.identifier,
                        source_type=spec.source_type,
                        dest_type=spec.dest_type,
                        is_nullable=spec.nullable,
                        ordinal_position=spec.ordinal_position,
                        added_in_version=version,
                    )
                )
            if diff.removed:
                await db.execute(
                    update(SyncedColumn)
                    .where(SyncedColumn.id.in_([k.id for k in diff.removed]))
                    .values(removed_in_version=version)
                    .execution_options(synchronize_session=False)
                )

            # Keep live ordinals aligned with the latest introspection
            by_name = {spec.name.lower(): spec for spec in columns}
            live = await db.execute(
                select(SyncedColumn).where(
                    SyncedColumn.synced_view_id == view_id, SyncedColumn.removed_in_version.is_(None)
                )
            )
            for col in live.scalars().all():
                spec = by_name.get(col.column_name.lower())
                if spec is not None:
                    col.ordinal_position = spec.ordinal_position
                    col.is_nullable = spec.nullable

            changes = diff.changes()
            if diff.is_evolution:
                synced.schema_version = version
                logger.info(
                    "ETL %s: schema v%d, +%d cols, -%d cols",
                    synced.dest_table, version, len(diff.added), len(diff.removed),
                )
            if changes:
                log = await db.get(SyncLog, log_id)
                log.schema_changes = [c.to_dict() for c in changes]
            await db.commit()
            return version

    async def _reload(
        self,
        binding: str,
        schema: str,
        view: str,
        dest_table: str,
        columns: Sequence[ColumnSpec],
        dest_columns: Optional[Sequence[ColumnSpec]] = None,
    ) -> int:
        """
        ``columns`` drive the source SELECT; ``dest_columns`` are the same
        columns spelled as they exist in the destination table.
        """
        synced_at = _utcnow()
        insert_sql = text(self.renderer.insert(dest_table, dest_columns or columns)).bindparams(
            bindparam(SYNCED_AT_PARAM, type_=DateTime(timezone=True))
        )
        source_sql = render_source_select(schema, view, columns)
        total = 0
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text(self.renderer.truncate(dest_table)))
                async with aclosing(self.sources.stream_query(binding, source_sql, (), self.batch_size)) as batches:
                    async for batch in batches:
                        params = []
                        for row in batch:
                            values = row_params(columns, row)
                            values[SYNCED_AT_PARAM] = synced_at
                            params.append(values)
                        await conn.execute(insert_sql, params)
                        total += len(batch)
                        logger.debug("ETL %s: %d rows so far", dest_table, total)
        except ViewSyncError:
            raise
        except Exception as e:
            raise DataLoadError(
                f"Loading {schema}.{view} into {dest_table} failed after {total} rows: {e}",
                details={"table": dest_table, "rows_before_failure": total},
            ) from e
        return total

    @staticmethod
    def _held_by(lease: SyncLease):
        """Update on the view row that only applies while ``lease`` is still the current one."""
        return (
            update(SyncedView)
            .where(
                SyncedView.id == lease.view_id,
                SyncedView.status == SyncStatus.SYNCING.value,
                SyncedView.sync_started_at == lease.acquired_at,
            )
            .execution_options(synchronize_session=False)
        )

    async def _finish_success(self, lease: SyncLease, log_id: int, rows_synced: int, duration_ms: int) -> None:
        now = _utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                self._held_by(lease).values(
                    status=SyncStatus.SYNCED.value,
                    sync_started_at=None,
                    last_sync_at=now,
                    last_sync_rows=rows_synced,
                    last_sync_duration_ms=duration_ms,
                    last_error=None,
                )
            )
            if result.rowcount != 1:
                logger.warning("ETL %s: sync lease was taken over, view status left untouched", lease.key)

            log = await db.get(SyncLog, log_id)
            log.status = SyncLogStatus.COMPLETED.value
            log.rows_synced = rows_synced
            log.duration_ms = duration_ms
            log.completed_at = now
            await db.commit()

    async def _finish_failure(
        self, lease: SyncLease, log_id: Optional[int], error: Exception, duration_ms: int
    ) -> None:
        message = str(error) or type(error).__name__
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    self._held_by(lease).values(
                        status=SyncStatus.FAILED.value,
                        sync_started_at=None,
                        last_error=message,
                        last_sync_duration_ms=duration_ms,
                    )
                )
                if result.rowcount != 1:
                    logger.warning("ETL %s: sync lease was taken over, view status left untouched", lease.key)
                if log_id is not None:
                    log = await db.get(SyncLog, log_id)
                    if log is not None:
                        log.status = SyncLogStatus.FAILED.value
                        log.error = message
                        log.duration_ms = duration_ms
                        log.completed_at = _utcnow()
                await db.commit()
        except Exception as e:
            # The lease release still marks the view FAILED
            logger.error("Could not record failure for view id=%d: %s", lease.view_id, e)


    # -- GetStatus / GetLogs / DeleteSyncedView ------------------------------

    async def _load_view(self, db, view_id: int) -> SyncedView:
        synced = await db.get(SyncedView, view_id)
        if synced is None or not self.is_allowed(synced.source_view):
            raise SyncedViewNotFoundError(view_id)
        return synced

    async def list_views(self) -> list[SyncedView]:
        async with self.session_factory() as db:
            result = await db.execute(select(SyncedView).order_by(SyncedView.updated_at.desc(), SyncedView.id.desc()))
            return [v for v in result.scalars().all() if self.is_allowed(v.source_view)]

    async def get_view(self, view_id: int) -> SyncedView:
        async with self.session_factory() as db:
            return await self._load_view(db, view_id)

    async def get_live_columns(self, view_id: int) -> list[SyncedColumn]:
        async with self.session_factory() as db:
            await self._load_view(db, view_id)
        return await self._live_columns(view_id)

    async def get_status(self, view_id: Optional[int] = None, include_columns: bool = False):
        """
        Snapshot of one view (with its live columns if asked) or of every allowed view.
        Returns ``(view, columns)`` for a single view, else a list of views.
        """
        if view_id is None:
            return await self.list_views()
        synced = await self.get_view(view_id)
        columns = await self._live_columns(view_id) if include_columns else None
        return synced, columns

    async def get_logs(self, view_id: int, limit: int = 50) -> list[SyncLog]:
        async with self.session_factory() as db:
            await self._load_view(db, view_id)
            result = await db.execute(
                select(SyncLog)
                .where(SyncLog.synced_view_id == view_id)
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def delete_synced_view(self, view_id: int) -> SyncedView:
        """Drop the destination table and every metadata row of the view."""
        async with self.session_factory() as db:
            synced = await self._load_view(db, view_id)
        key = view_key(synced.source.db_name, synced.source_schema, synced.source_view)
        # Holding the lease keeps a sync from starting while the table goes away
        lease = await self.guard.acquire(view_id, key)
        try:
            await self.tables.drop_table(synced.dest_table)
            async with self.session_factory() as db:
                await db.execute(delete(SyncLog).where(SyncLog.synced_view_id == view_id))
                await db.execute(delete(SyncedColumn).where(SyncedColumn.synced_view_id == view_id))
                await db.execute(delete(SyncedView).where(SyncedView.id == view_id))
                await db.commit()
        except Exception:
            await self.guard.release(lease)
            raise
        logger.info("Deleted synced view %s (table %s)", key, synced.dest_table)
        return synced
