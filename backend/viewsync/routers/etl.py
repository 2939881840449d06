import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from viewsync.config import settings
from viewsync.exceptions import ViewSyncError
from viewsync.models.sync_log import SyncLog
from viewsync.models.synced_column import SyncedColumn
from viewsync.models.synced_view import SyncedView
from viewsync.schemas.etl import SyncRequest
from viewsync.services.multi_view import iter_sync_all
from viewsync.services.synced_data import MAX_PAGE_SIZE, read_synced_data
from viewsync.services.sync_service import ViewSyncService

logger = logging.getLogger(__name__)
router = APIRouter()


def get_sync_service(request: Request) -> ViewSyncService:
    return request.app.state.sync_service


def _http_error(e: ViewSyncError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"error": e.error_code, "message": e.message, **e.details})


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_view(v: SyncedView) -> dict[str, Any]:
    return {
        "id": v.id,
        "db": v.source.db_name if v.source else None,
        "schema": v.source_schema,
        "view": v.source_view,
        "dest_table": v.dest_table,
        "status": v.status,
        "last_sync_at": _iso(v.last_sync_at),
        "last_sync_rows": v.last_sync_rows,
        "last_sync_duration_ms": v.last_sync_duration_ms,
        "last_error": v.last_error,
        "schema_version": v.schema_version,
        "created_at": _iso(v.created_at),
        "updated_at": _iso(v.updated_at),
    }


def _serialize_column(c: SyncedColumn) -> dict[str, Any]:
    return {
        "name": c.column_name,
        "source_type": c.source_type,
        "dest_type": c.dest_type,
        "nullable": c.is_nullable,
        "ordinal_position": c.ordinal_position,
        "added_in_version": c.added_in_version,
    }


def _serialize_log(log: SyncLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "status": log.status,
        "rows_synced": log.rows_synced,
        "duration_ms": log.duration_ms,
        "error": log.error,
        "schema_changes": log.schema_changes,
        "started_at": _iso(log.started_at),
        "completed_at": _iso(log.completed_at),
    }


@router.post("/etl/sync")
async def sync_view(body: SyncRequest, service: ViewSyncService = Depends(get_sync_service)) -> dict:
    try:
        result = await service.trigger_sync(body.db, body.schema_name, body.view)
    except ViewSyncError as e:
        raise _http_error(e)
    return {
        "success": True,
        "db": body.db,
        "view": body.view,
        "rows_synced": result.rows_synced,
        "duration_ms": result.duration_ms,
    }


@router.get("/etl/sync-all")
async def sync_all(
    db: str = Query(..., description="Registered source database"),
    service: ViewSyncService = Depends(get_sync_service),
) -> StreamingResponse:
    """Sync every allowed view of ``db`` one after another, streaming progress as SSE."""
    if not service.sources.is_registered(db):
        raise HTTPException(status_code=503, detail=f'Database "{db}" is not registered')

    async def event_stream():
        async for event in iter_sync_all(service, db):
            yield f"data: {json.dumps(event.to_payload())}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


@router.get("/etl/status")
async def list_status(service: ViewSyncService = Depends(get_sync_service)) -> list[dict]:
    views = await service.get_status()
    return [_serialize_view(v) for v in views]


@router.get("/etl/status/{view_id}")
async def view_status(view_id: int, service: ViewSyncService = Depends(get_sync_service)) -> dict:
    try:
        synced, columns = await service.get_status(view_id, include_columns=True)
    except ViewSyncError as e:
        raise _http_error(e)
    return {**_serialize_view(synced), "columns": [_serialize_column(c) for c in columns]}


@router.get("/etl/status/{view_id}/logs")
async def view_logs(
    view_id: int,
    limit: int = Query(settings.sync_log_limit, ge=1, le=500),
    service: ViewSyncService = Depends(get_sync_service),
) -> list[dict]:
    try:
        logs = await service.get_logs(view_id, limit=limit)
    except ViewSyncError as e:
        raise _http_error(e)
    return [_serialize_log(log) for log in logs]


@router.delete("/etl/sync/{view_id}")
async def delete_view(view_id: int, service: ViewSyncService = Depends(get_sync_service)) -> dict:
    try:
        synced = await service.delete_synced_view(view_id)
    except ViewSyncError as e:
        raise _http_error(e)
    return {"success": True, "deleted_table": synced.dest_table}


@router.get("/etl/data/{view_id}")
async def view_data(
    view_id: int,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    sort_by: Optional[str] = None,
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    search: Optional[str] = None,
    service: ViewSyncService = Depends(get_sync_service),
) -> dict:
    try:
        return await read_synced_data(
            service, view_id, page=page, page_size=page_size, sort_by=sort_by, sort_order=sort_order, search=search
        )
    except ViewSyncError as e:
        raise _http_error(e)
