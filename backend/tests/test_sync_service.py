import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select, text, update

from viewsync.exceptions import (
    DataLoadError,
    SchemaChangeError,
    SchemaIntrospectionError,
    SourceConnectionError,
    SyncConflictError,
    SyncedViewNotFoundError,
    ViewNotAllowedError,
)
from viewsync.models.sync_log import SyncLog, SyncLogStatus
from viewsync.models.synced_column import SyncedColumn
from viewsync.models.synced_view import SyncedView, SyncStatus

TABLE = "inventario__dbo__vw_stock"

STOCK_COLUMNS = [("id", "int", False), ("producto", "nvarchar"), ("cantidad", "int")]
STOCK_ROWS = [
    {"id": 1, "producto": "Tornillo", "cantidad": 120},
    {"id": 2, "producto": "Tuerca", "cantidad": 80},
    {"id": 3, "producto": "Arandela", "cantidad": None},
]


async def _rows(engine, table=TABLE):
    async with engine.connect() as conn:
        result = await conn.execute(text(f'SELECT * FROM "{table}" ORDER BY "_etl_id"'))
        return [dict(r) for r in result.mappings().all()]


async def _only_view(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(SyncedView))).scalar_one()


async def _logs(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(SyncLog).order_by(SyncLog.id))).scalars().all()


async def _columns(session_factory):
    async with session_factory() as db:
        return (await db.execute(select(SyncedColumn).order_by(SyncedColumn.id))).scalars().all()


@pytest.mark.asyncio
async def test_first_sync_creates_table_and_loads_rows(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)

    result = await service.trigger_sync("inventario", None, "vw_stock")

    assert result.rows_synced == 3
    rows = await _rows(engine)
    assert [r["producto"] for r in rows] == ["Tornillo", "Tuerca", "Arandela"]
    assert all(r["_etl_synced_at"] is not None for r in rows)

    synced = await _only_view(session_factory)
    assert synced.dest_table == TABLE
    assert synced.status == SyncStatus.SYNCED.value
    assert synced.last_sync_rows == 3
    assert synced.schema_version == 1
    assert synced.sync_started_at is None

    (log,) = await _logs(session_factory)
    assert log.status == SyncLogStatus.COMPLETED.value
    assert log.rows_synced == 3
    assert [c["change"] for c in log.schema_changes] == ["created"] * 3

    columns = await _columns(session_factory)
    assert [(c.column_name, c.dest_type, c.is_nullable) for c in columns] == [
        ("id", "INTEGER", False),
        ("producto", "TEXT", True),
        ("cantidad", "INTEGER", True),
    ]


@pytest.mark.asyncio
async def test_resync_replaces_rows_and_keeps_version(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS[:1])
    result = await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert result.rows_synced == 1
    rows = await _rows(engine)
    assert len(rows) == 1
    assert (await _only_view(session_factory)).schema_version == 1
    logs = await _logs(session_factory)
    assert logs[-1].schema_changes is None


@pytest.mark.asyncio
async def test_removed_and_added_columns_bump_schema_version(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    evolved = [("id", "int", False), ("producto", "nvarchar"), ("ubicacion", "varchar")]
    source.define("vw_stock", evolved, [{"id": 9, "producto": "Clavo", "ubicacion": "A-1"}])
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    synced = await _only_view(session_factory)
    assert synced.schema_version == 2

    by_name = {c.column_name: c for c in await _columns(session_factory)}
    assert by_name["cantidad"].removed_in_version == 2
    assert by_name["ubicacion"].added_in_version == 2
    assert by_name["ubicacion"].removed_in_version is None

    (row,) = await _rows(engine)
    # Tombstoned column survives physically and is left empty
    assert row["cantidad"] is None
    assert row["ubicacion"] == "A-1"

    changes = (await _logs(session_factory))[-1].schema_changes
    assert {(c["change"], c["column"]) for c in changes} == {("added", "ubicacion"), ("removed", "cantidad")}

    live = await service.get_live_columns(synced.id)
    assert [c.column_name for c in live] == ["id", "producto", "ubicacion"]


@pytest.mark.asyncio
async def test_tombstoned_column_can_return(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    source.define("vw_stock", STOCK_COLUMNS[:2], STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)

    await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert (await _only_view(session_factory)).schema_version == 3
    cantidad = [c for c in await _columns(session_factory) if c.column_name == "cantidad"]
    assert [(c.added_in_version, c.removed_in_version) for c in cantidad] == [(1, 2), (3, None)]
    assert [r["cantidad"] for r in await _rows(engine)] == [120, 80, None]


@pytest.mark.asyncio
async def test_type_change_fails_without_touching_data(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    source.define("vw_stock", [("id", "int", False), ("producto", "nvarchar"), ("cantidad", "varchar")], [])
    with pytest.raises(SchemaChangeError):
        await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert len(await _rows(engine)) == 3
    synced = await _only_view(session_factory)
    assert synced.status == SyncStatus.FAILED.value
    assert synced.schema_version == 1
    assert "cantidad" in synced.last_error
    assert (await _logs(session_factory))[-1].status == SyncLogStatus.FAILED.value


@pytest.mark.asyncio
async def test_load_failure_keeps_previous_rows_and_new_schema(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    evolved = STOCK_COLUMNS + [("ubicacion", "varchar")]
    source.define("vw_stock", evolved, STOCK_ROWS * 2, fail_after=2)
    with pytest.raises(DataLoadError) as exc:
        await service.trigger_sync("inventario", "dbo", "vw_stock")
    assert exc.value.details["rows_before_failure"] == 2

    rows = await _rows(engine)
    assert [r["producto"] for r in rows] == ["Tornillo", "Tuerca", "Arandela"]
    assert "ubicacion" in rows[0]

    synced = await _only_view(session_factory)
    assert synced.status == SyncStatus.FAILED.value
    assert synced.schema_version == 2
    assert synced.last_sync_rows == 3


@pytest.mark.asyncio
async def test_concurrent_sync_is_rejected_before_any_work(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)
    await service.guard.acquire(synced.id, "other-worker")
    source.queries.clear()

    with pytest.raises(SyncConflictError):
        await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert source.queries == []
    assert len(await _logs(session_factory)) == 1
    assert (await _only_view(session_factory)).status == SyncStatus.SYNCING.value


@pytest.mark.asyncio
async def test_stale_syncing_view_is_taken_over(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)
    async with session_factory() as db:
        await db.execute(
            update(SyncedView)
            .where(SyncedView.id == synced.id)
            .values(
                status=SyncStatus.SYNCING.value,
                sync_started_at=datetime.now(timezone.utc) - timedelta(hours=3),
            )
        )
        await db.commit()

    result = await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert result.rows_synced == 3
    assert (await _only_view(session_factory)).status == SyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_view_outside_allow_list_is_not_found(service, source, session_factory):
    source.define("vw_secret", STOCK_COLUMNS, STOCK_ROWS)

    with pytest.raises(ViewNotAllowedError) as exc:
        await service.trigger_sync("inventario", "dbo", "vw_secret")

    assert exc.value.status_code == 404
    assert source.queries == []
    async with session_factory() as db:
        assert (await db.execute(select(SyncedView))).first() is None


@pytest.mark.asyncio
async def test_unregistered_binding(service, session_factory):
    with pytest.raises(SourceConnectionError):
        await service.trigger_sync("contabilidad", "dbo", "vw_stock")

    async with session_factory() as db:
        assert (await db.execute(select(SyncedView))).first() is None


@pytest.mark.asyncio
async def test_missing_source_view_records_failure(service, session_factory):
    with pytest.raises(SchemaIntrospectionError):
        await service.trigger_sync("inventario", "dbo", "vw_clientes")

    synced = await _only_view(session_factory)
    assert synced.status == SyncStatus.FAILED.value
    (log,) = await _logs(session_factory)
    assert log.status == SyncLogStatus.FAILED.value
    assert "vw_clientes" in log.error


@pytest.mark.asyncio
async def test_status_and_logs(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)

    views = await service.get_status()
    assert [v.id for v in views] == [synced.id]

    view, columns = await service.get_status(synced.id, include_columns=True)
    assert view.source.db_name == "inventario"
    assert len(columns) == 3

    logs = await service.get_logs(synced.id, limit=1)
    assert len(logs) == 1
    assert logs[0].id == max(log.id for log in await _logs(session_factory))

    with pytest.raises(SyncedViewNotFoundError):
        await service.get_logs(9999)


@pytest.mark.asyncio
async def test_views_dropped_from_allow_list_are_hidden(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)

    service.allowed_views = ["vw_clientes"]

    assert await service.get_status() == []
    with pytest.raises(SyncedViewNotFoundError):
        await service.get_view(synced.id)


@pytest.mark.asyncio
async def test_delete_drops_table_and_metadata(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)

    deleted = await service.delete_synced_view(synced.id)

    assert deleted.dest_table == TABLE
    assert not await service.tables.table_exists(TABLE)
    assert await _logs(session_factory) == []
    assert await _columns(session_factory) == []
    with pytest.raises(SyncedViewNotFoundError):
        await service.get_view(synced.id)


@pytest.mark.asyncio
async def test_delete_while_syncing_conflicts(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)
    await service.guard.acquire(synced.id, "other-worker")

    with pytest.raises(SyncConflictError):
        await service.delete_synced_view(synced.id)

    assert await service.tables.table_exists(TABLE)


@pytest.mark.asyncio
async def test_two_concurrent_syncs_one_wins(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    source.hold = asyncio.Event()

    async def second_call():
        await source.entered.wait()
        try:
            return await service.trigger_sync("inventario", "dbo", "vw_stock")
        finally:
            source.hold.set()

    results = await asyncio.wait_for(
        asyncio.gather(
            service.trigger_sync("inventario", "dbo", "vw_stock"),
            second_call(),
            return_exceptions=True,
        ),
        timeout=5,
    )

    assert results[0].rows_synced == 3
    assert isinstance(results[1], SyncConflictError)
    # Only the winner introspected and read the view
    assert len(source.queries) == 2
    (log,) = await _logs(session_factory)
    assert log.status == SyncLogStatus.COMPLETED.value
    assert (await _only_view(session_factory)).status == SyncStatus.SYNCED.value


@pytest.mark.asyncio
async def test_run_whose_lease_was_taken_over_leaves_view_alone(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)
    source.hold = asyncio.Event()

    slow = asyncio.create_task(service.trigger_sync("inventario", "dbo", "vw_stock"))
    await asyncio.wait_for(source.entered.wait(), timeout=5)
    async with session_factory() as db:
        await db.execute(
            update(SyncedView)
            .where(SyncedView.id == synced.id)
            .values(sync_started_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await db.commit()
    await service.guard.acquire(synced.id, "other-worker")
    source.hold.set()

    result = await asyncio.wait_for(slow, timeout=5)

    assert result.rows_synced == 3
    view = await _only_view(session_factory)
    assert view.status == SyncStatus.SYNCING.value
    assert view.sync_started_at is not None
    with pytest.raises(SyncConflictError):
        await service.guard.acquire(synced.id, "third-worker")


@pytest.mark.asyncio
async def test_failed_run_whose_lease_was_taken_over_leaves_view_alone(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)
    lease = await service.guard.acquire(synced.id, "inventario::dbo::vw_stock")
    async with session_factory() as db:
        await db.execute(
            update(SyncedView)
            .where(SyncedView.id == synced.id)
            .values(sync_started_at=datetime.now(timezone.utc) - timedelta(hours=2))
        )
        await db.commit()
    await service.guard.acquire(synced.id, "other-worker")

    await service._finish_failure(lease, None, RuntimeError("boom"), 10)
    await service.guard.release(lease)

    view = await _only_view(session_factory)
    assert view.status == SyncStatus.SYNCING.value
    assert view.last_error is None


@pytest.mark.asyncio
async def test_returning_column_with_new_type_is_a_schema_change(service, source, engine, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    source.define("vw_stock", STOCK_COLUMNS[:2], STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    source.define("vw_stock", STOCK_COLUMNS[:2] + [("cantidad", "varchar")], STOCK_ROWS)
    with pytest.raises(SchemaChangeError) as exc:
        await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert exc.value.details["changes"][0]["previous_type"] == "int"
    synced = await _only_view(session_factory)
    assert synced.status == SyncStatus.FAILED.value
    assert synced.schema_version == 2
    assert len(await _rows(engine)) == 3


@pytest.mark.asyncio
async def test_case_only_rename_loads_into_existing_column(service, source, engine, session_factory):
    columns = [("id", "int", False), ("Cantidad", "int")]
    source.define("vw_stock", columns, [{"id": 1, "Cantidad": 5}])
    await service.trigger_sync("inventario", "dbo", "vw_stock")

    source.define("vw_stock", [("id", "int", False), ("cantidad", "int")], [{"id": 1, "cantidad": 7}])
    result = await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert result.rows_synced == 1
    (row,) = await _rows(engine)
    assert row["Cantidad"] == 7
    assert (await _only_view(session_factory)).schema_version == 1


@pytest.mark.asyncio
async def test_delete_releases_lease_when_metadata_cleanup_fails(service, source, session_factory):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    await service.trigger_sync("inventario", "dbo", "vw_stock")
    synced = await _only_view(session_factory)

    with patch("viewsync.services.sync_service.delete", side_effect=RuntimeError("catalog unavailable")):
        with pytest.raises(RuntimeError):
            await service.delete_synced_view(synced.id)

    view = await _only_view(session_factory)
    assert view.status == SyncStatus.FAILED.value
    assert view.sync_started_at is None
    # A later sync can take the lease again
    result = await service.trigger_sync("inventario", "dbo", "vw_stock")
    assert result.rows_synced == 3


@pytest.mark.asyncio
async def test_failed_insert_closes_the_source_stream(service, source):
    source.define("vw_stock", STOCK_COLUMNS, STOCK_ROWS)
    closed = []

    async def stream_query(name, query, params=(), batch_size=5_000):
        try:
            # sqlite3 cannot bind an arbitrary object, so the first insert fails
            yield [{"id": 1, "producto": object(), "cantidad": 1}]
            yield STOCK_ROWS
        finally:
            closed.append(query)

    source.stream_query = stream_query

    with pytest.raises(DataLoadError):
        await service.trigger_sync("inventario", "dbo", "vw_stock")

    assert len(closed) == 1
