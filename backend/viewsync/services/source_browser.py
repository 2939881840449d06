"""
Read-only browsing of allow-listed source views, straight from SQL Server.

Every entry point checks the allow-list and the source registration before a
query is sent. Names reach SQL only through the identifier sanitizer; values
are always positional parameters.
"""
import logging
import math
from typing import Optional

from viewsync.exceptions import IdentifierError, SchemaIntrospectionError, ViewNotAllowedError, ViewSyncError
from viewsync.models.synced_view import SyncStatus
from viewsync.services.introspector import introspect
from viewsync.services.sql_renderer import ColumnSpec, render_source_count, render_source_page
from viewsync.services.synced_data import MAX_PAGE_SIZE, jsonable
from viewsync.services.sync_service import ViewSyncService
from viewsync.services.type_mapper import normalize_type

logger = logging.getLogger(__name__)

# Source types searched with LIKE
SEARCHABLE_SOURCE_TYPES = {"varchar", "nvarchar", "char", "nchar", "text", "ntext"}

_LIST_VIEWS_QUERY = (
    "SELECT TABLE_SCHEMA AS [schema], TABLE_NAME AS [name], IS_UPDATABLE AS is_updatable"
    " FROM INFORMATION_SCHEMA.VIEWS ORDER BY TABLE_SCHEMA, TABLE_NAME"
)

_VIEW_DEFINITION_QUERY = (
    "SELECT TABLE_SCHEMA AS [schema], TABLE_NAME AS [name], VIEW_DEFINITION AS definition,"
    " CHECK_OPTION AS check_option, IS_UPDATABLE AS is_updatable"
    " FROM INFORMATION_SCHEMA.VIEWS WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?"
)


async def _query(service: ViewSyncService, binding: str, query: str, params: tuple = ()) -> list[dict]:
    try:
        return await service.sources.execute_query(binding, query, params)
    except ViewSyncError:
        raise
    except Exception as e:
        raise SchemaIntrospectionError(f"Query against {binding} failed: {e}", details={"db": binding}) from e


def _check(service: ViewSyncService, binding: str, schema: Optional[str], view: str) -> str:
    schema = schema or service.default_schema
    service.ensure_allowed(schema, view)
    service.ensure_registered(binding)
    return schema


async def list_source_views(service: ViewSyncService, binding: str) -> dict:
    """Allow-listed views that exist on ``binding``."""
    service.ensure_registered(binding)
    rows = await _query(service, binding, _LIST_VIEWS_QUERY)
    views = [r for r in rows if service.is_allowed(r["name"])]
    return {"db": binding, "views": views, "count": len(views)}


async def get_source_columns(service: ViewSyncService, binding: str, schema: Optional[str], view: str) -> dict:
    schema = _check(service, binding, schema, view)
    columns = await introspect(service.sources, binding, schema, view)
    return {
        "db": binding,
        "schema": schema,
        "view": view,
        "columns": [
            {
                "name": c.name,
                "type": c.source_type,
                "max_length": c.max_length,
                "nullable": c.nullable,
                "ordinal_position": c.ordinal_position,
            }
            for c in columns
        ],
        "count": len(columns),
    }


async def get_view_definition(service: ViewSyncService, binding: str, schema: Optional[str], view: str) -> dict:
    schema = _check(service, binding, schema, view)
    rows = await _query(service, binding, _VIEW_DEFINITION_QUERY, (schema, view))
    if not rows:
        raise ViewNotAllowedError(schema, view)
    return {"db": binding, "view": rows[0]}


async def read_source_data(
    service: ViewSyncService,
    binding: str,
    schema: Optional[str],
    view: str,
    page: int = 1,
    page_size: int = 50,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    search: Optional[str] = None,
) -> dict:
    """
    Paginated, searchable, sortable read of a live source view.

    ``sort_by`` must name one of the view's columns exactly. ``search`` is
    matched with LIKE across the view's character columns.
    """
    schema = _check(service, binding, schema, view)
    columns = [ColumnSpec.from_source(c) for c in await introspect(service.sources, binding, schema, view)]

    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

    sort_column = None
    if sort_by:
        sort_column = next((c for c in columns if c.name == sort_by), None)
        if sort_column is None:
            raise IdentifierError(
                f"Unknown sort column: {sort_by}",
                details={"sort_by": sort_by, "available": [c.name for c in columns]},
            )

    search = search.strip() if search else None
    search_columns = (
        [c for c in columns if normalize_type(c.source_type) in SEARCHABLE_SOURCE_TYPES] if search else []
    )
    search_params = tuple(f"%{search}%" for _ in search_columns)

    count_rows = await _query(service, binding, render_source_count(schema, view, search_columns), search_params)
    total_rows = int(count_rows[0]["total"]) if count_rows else 0
    rows = await _query(
        service,
        binding,
        render_source_page(
            schema,
            view,
            columns,
            sort_by=sort_column,
            descending=sort_order.lower() == "desc",
            search_columns=search_columns,
        ),
        search_params + ((page - 1) * page_size, page_size),
    )
    logger.debug("Read %d rows of %s.%s on %s (page %d)", len(rows), schema, view, binding, page)

    return {
        "db": binding,
        "schema": schema,
        "view": view,
        "columns": [{"name": c.name, "type": c.source_type} for c in columns],
        "data": [{k: jsonable(v) for k, v in row.items()} for row in rows],
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total_rows": total_rows,
            "total_pages": math.ceil(total_rows / page_size) if total_rows else 0,
        },
    }


async def list_warehouse_tables(service: ViewSyncService) -> list:
    """Allow-listed views whose destination table holds a completed load."""
    views = await service.list_views()
    synced = [v for v in views if v.status == SyncStatus.SYNCED.value]
    synced.sort(key=lambda v: (v.source_view, v.id))
    return synced
