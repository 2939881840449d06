import logging
from dataclasses import dataclass
from typing import Optional

from viewsync.exceptions import SchemaIntrospectionError, ViewSyncError

logger = logging.getLogger(__name__)

# Joining VIEWS restricts the lookup to views; tables of the same name never match
_VIEW_COLUMNS_QUERY = (
    "SELECT c.COLUMN_NAME AS column_name, c.DATA_TYPE AS data_type,"
    " c.CHARACTER_MAXIMUM_LENGTH AS max_length, c.IS_NULLABLE AS is_nullable,"
    " c.ORDINAL_POSITION AS ordinal_position"
    " FROM INFORMATION_SCHEMA.COLUMNS c"
    " INNER JOIN INFORMATION_SCHEMA.VIEWS v"
    " ON v.TABLE_SCHEMA = c.TABLE_SCHEMA AND v.TABLE_NAME = c.TABLE_NAME"
    " WHERE c.TABLE_SCHEMA = ? AND c.TABLE_NAME = ?"
    " ORDER BY c.ORDINAL_POSITION"
)


@dataclass(frozen=True)
class SourceColumn:
    name: str
    source_type: str
    nullable: bool
    ordinal_position: int
    max_length: Optional[int] = None


async def introspect(sources, binding: str, schema: str, view: str) -> list[SourceColumn]:
    """
    Read a source view's columns from INFORMATION_SCHEMA, ordered by ordinal position.

    SQL Server hides catalog rows the login may not see, so "missing" and
    "not permitted" are indistinguishable and both raise ``SchemaIntrospectionError``.
    """
    try:
        rows = await sources.execute_query(binding, _VIEW_COLUMNS_QUERY, (schema, view))
    except ViewSyncError:
        raise
    except Exception as e:
        raise SchemaIntrospectionError(
            f'Failed to read columns of view "{schema}.{view}": {e}',
            details={"db": binding, "schema": schema, "view": view},
        ) from e

    if not rows:
        raise SchemaIntrospectionError(
            f'View "{schema}.{view}" has no columns or does not exist',
            details={"db": binding, "schema": schema, "view": view},
        )

    columns = [
        SourceColumn(
            name=r["column_name"],
            source_type=r["data_type"],
            nullable=str(r["is_nullable"]).upper() == "YES",
            ordinal_position=int(r["ordinal_position"]),
            max_length=r.get("max_length"),
        )
        for r in rows
    ]
    columns.sort(key=lambda c: c.ordinal_position)
    logger.debug("Introspected %s.%s on %s: %d columns", schema, view, binding, len(columns))
    return columns
