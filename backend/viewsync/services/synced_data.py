"""Paginated read-back of a synced table, restricted to its live columns."""
import logging
import math
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import text

from viewsync.exceptions import IdentifierError
from viewsync.services.sql_renderer import ETL_SYNCED_AT_COLUMN, ColumnSpec
from viewsync.services.sync_service import ViewSyncService

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


def jsonable(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


async def read_synced_data(
    service: ViewSyncService,
    view_id: int,
    page: int = 1,
    page_size: int = 50,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    search: Optional[str] = None,
) -> dict:
    synced = await service.get_view(view_id)
    live = await service.get_live_columns(view_id)
    columns = [
        ColumnSpec(
            name=c.column_name,
            identifier=c.column_name,
            source_type=c.source_type,
            dest_type=c.dest_type,
            nullable=c.is_nullable,
            ordinal_position=c.ordinal_position,
        )
        for c in live
    ]

    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)

    sort_column = None
    if sort_by:
        sort_column = next((c for c in columns if c.name.lower() == sort_by.lower()), None)
        if sort_column is None:
            raise IdentifierError(f"Unknown sort column: {sort_by}", details={"sort_by": sort_by})

    search_columns = [c for c in columns if c.is_text] if search else []
    params: dict = {}
    if search_columns:
        params["search"] = f"%{search}%"

    renderer = service.renderer
    if not await service.tables.table_exists(synced.dest_table):
        # Registered but never loaded, e.g. first sync failed before DDL
        total_rows, rows = 0, []
    else:
        async with service.engine.connect() as conn:
            total_rows = (await conn.execute(text(renderer.count(synced.dest_table, search_columns)), params)).scalar_one()
            result = await conn.execute(
                text(
                    renderer.select_page(
                        synced.dest_table,
                        columns,
                        sort_by=sort_column,
                        descending=sort_order.lower() == "desc",
                        search_columns=search_columns,
                    )
                ),
                {**params, "limit": page_size, "offset": (page - 1) * page_size},
            )
            rows = [dict(r) for r in result.mappings().all()]

    return {
        "columns": [ETL_SYNCED_AT_COLUMN] + [c.name for c in columns],
        "data": [{k: jsonable(v) for k, v in row.items()} for row in rows],
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total_rows": total_rows,
            "total_pages": math.ceil(total_rows / page_size) if total_rows else 0,
        },
    }
