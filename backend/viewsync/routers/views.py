import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from viewsync.exceptions import ViewSyncError
from viewsync.routers.etl import _http_error, _iso, get_sync_service
from viewsync.services.source_browser import (
    get_source_columns,
    get_view_definition,
    list_source_views,
    list_warehouse_tables,
    read_source_data,
)
from viewsync.services.synced_data import MAX_PAGE_SIZE
from viewsync.services.sync_service import ViewSyncService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/views")
async def list_views(
    db: str = Query(..., description="Registered source database"),
    service: ViewSyncService = Depends(get_sync_service),
) -> dict:
    try:
        return await list_source_views(service, db)
    except ViewSyncError as e:
        raise _http_error(e)


@router.get("/views/columns")
async def view_columns(
    db: str,
    view: str,
    schema: Optional[str] = None,
    service: ViewSyncService = Depends(get_sync_service),
) -> dict:
    try:
        return await get_source_columns(service, db, schema, view)
    except ViewSyncError as e:
        raise _http_error(e)


@router.get("/views/definition")
async def view_definition(
    db: str,
    view: str,
    schema: Optional[str] = None,
    service: ViewSyncService = Depends(get_sync_service),
) -> dict:
    try:
        return await get_view_definition(service, db, schema, view)
    except ViewSyncError as e:
        raise _http_error(e)


@router.get("/views/data")
async def view_data(
    db: str,
    view: str,
    schema: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    sort_by: Optional[str] = None,
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    search: Optional[str] = None,
    service: ViewSyncService = Depends(get_sync_service),
) -> dict:
    try:
        return await read_source_data(
            service,
            db,
            schema,
            view,
            page=page,
            page_size=page_size,
            sort_by=sort_by,
            sort_order=sort_order,
            search=search,
        )
    except ViewSyncError as e:
        logger.warning("Source read of %s.%s on %s failed: %s", schema, view, db, e.message)
        raise _http_error(e)


@router.get("/warehouse/tables")
async def warehouse_tables(service: ViewSyncService = Depends(get_sync_service)) -> dict:
    views = await list_warehouse_tables(service)
    return {
        "tables": [
            {
                "id": v.id,
                "db": v.source.db_name if v.source else None,
                "schema": v.source_schema,
                "view": v.source_view,
                "dest_table": v.dest_table,
                "last_sync_at": _iso(v.last_sync_at),
                "last_sync_rows": v.last_sync_rows,
            }
            for v in views
        ],
        "count": len(views),
    }
