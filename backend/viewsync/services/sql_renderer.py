"""
Rendering of every SQL statement the sync engine builds at runtime.

Column lists travel as ``ColumnSpec`` values whose identifiers were sanitized
when the ColumnSpec was built; the renderer quotes them again on the way out, so no
raw name ever reaches a statement. Values are always bound parameters.
"""
from dataclasses import dataclass
from typing import Optional, Sequence

from viewsync.services.identifiers import quote, quote_mssql, sanitize
from viewsync.services.type_mapper import FALLBACK_TYPE, is_mapped, map_type, normalize_type

ETL_ID_COLUMN = "_etl_id"
ETL_SYNCED_AT_COLUMN = "_etl_synced_at"
SYNCED_AT_PARAM = "etl_synced_at"

_SPATIAL_TYPES = {"geography", "geometry"}


@dataclass(frozen=True)
class ColumnSpec:
    name: str
    identifier: str
    source_type: str
    dest_type: str
    nullable: bool
    ordinal_position: int

    @classmethod
    def from_source(cls, column) -> "ColumnSpec":
        """Build a spec from an introspected column. Raises ``IdentifierError``."""
        return cls(
            name=column.name,
            identifier=sanitize(column.name),
            source_type=column.source_type,
            dest_type=map_type(column.source_type),
            nullable=column.nullable,
            ordinal_position=column.ordinal_position,
        )

    @property
    def is_text(self) -> bool:
        return self.dest_type == FALLBACK_TYPE


def _param(index: int) -> str:
    return f"p{index}"


def row_params(columns: Sequence[ColumnSpec], row: dict) -> dict:
    """Bind-parameter dict for ``SqlRenderer.insert`` from one source row."""
    return {_param(i): row.get(col.name) for i, col in enumerate(columns)}


class SqlRenderer:
    """Renders destination DDL/DML for ``postgresql`` (production) and ``sqlite``."""

    def __init__(self, dialect: str = "postgresql", schema: Optional[str] = "etl"):
        if dialect not in ("postgresql", "sqlite"):
            raise ValueError(f"Unsupported destination dialect: {dialect}")
        self.dialect = dialect
        # SQLite has no schemas beyond attached databases
        self.schema = sanitize(schema) if schema and dialect == "postgresql" else None

    @property
    def is_postgres(self) -> bool:
        return self.dialect == "postgresql"

    def table(self, name: str) -> str:
        if self.schema:
            return f"{quote(self.schema)}.{quote(name)}"
        return quote(name)

    # -- DDL ---------------------------------------------------------------

    def create_schema(self) -> Optional[str]:
        if not self.schema:
            return None
        return f"CREATE SCHEMA IF NOT EXISTS {quote(self.schema)}"

    def create_table(self, name: str, columns: Sequence[ColumnSpec]) -> str:
        if self.is_postgres:
            internal = [
                f'"{ETL_ID_COLUMN}" BIGINT GENERATED ALWAYS AS IDENTITY PRIMARY KEY',
                f'"{ETL_SYNCED_AT_COLUMN}" TIMESTAMPTZ NOT NULL DEFAULT NOW()',
            ]
        else:
            internal = [
                f'"{ETL_ID_COLUMN}" INTEGER PRIMARY KEY AUTOINCREMENT',
                f'"{ETL_SYNCED_AT_COLUMN}" TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP',
            ]
        # Business columns are always nullable: a column tombstoned later must
        # not block inserts that no longer carry it.
        business = [f"{quote(col.identifier)} {col.dest_type}" for col in columns]
        body = ",\n    ".join(internal + business)
        return f"CREATE TABLE IF NOT EXISTS {self.table(name)} (\n    {body}\n)"

    def add_column(self, name: str, column: ColumnSpec) -> str:
        if_not_exists = " IF NOT EXISTS" if self.is_postgres else ""
        return (
            f"ALTER TABLE {self.table(name)} ADD COLUMN{if_not_exists} "
            f"{quote(column.identifier)} {column.dest_type}"
        )

    def truncate(self, name: str) -> str:
        if self.is_postgres:
            return f"TRUNCATE TABLE {self.table(name)} RESTART IDENTITY"
        return f"DELETE FROM {self.table(name)}"

    def drop_table(self, name: str) -> str:
        cascade = " CASCADE" if self.is_postgres else ""
        return f"DROP TABLE IF EXISTS {self.table(name)}{cascade}"

    # -- DML ---------------------------------------------------------------

    def insert(self, name: str, columns: Sequence[ColumnSpec]) -> str:
        names = [quote(col.identifier) for col in columns] + [f'"{ETL_SYNCED_AT_COLUMN}"']
        values = [f":{_param(i)}" for i in range(len(columns))] + [f":{SYNCED_AT_PARAM}"]
        return f"INSERT INTO {self.table(name)} ({', '.join(names)}) VALUES ({', '.join(values)})"

    def _search_clause(self, search_columns: Sequence[ColumnSpec]) -> str:
        if not search_columns:
            return ""
        like = "ILIKE" if self.is_postgres else "LIKE"
        conditions = " OR ".join(f"CAST({quote(col.identifier)} AS TEXT) {like} :search" for col in search_columns)
        return f" WHERE ({conditions})"

    def count(self, name: str, search_columns: Sequence[ColumnSpec] = ()) -> str:
        return f"SELECT COUNT(*) FROM {self.table(name)}{self._search_clause(search_columns)}"

    def select_page(
        self,
        name: str,
        columns: Sequence[ColumnSpec],
        sort_by: Optional[ColumnSpec] = None,
        descending: bool = False,
        search_columns: Sequence[ColumnSpec] = (),
    ) -> str:
        selected = ", ".join([f'"{ETL_SYNCED_AT_COLUMN}"'] + [quote(col.identifier) for col in columns])
        direction = "DESC" if descending else "ASC"
        order = quote(sort_by.identifier) if sort_by else f'"{ETL_ID_COLUMN}"'
        return (
            f"SELECT {selected} FROM {self.table(name)}{self._search_clause(search_columns)}"
            f' ORDER BY {order} {direction}, "{ETL_ID_COLUMN}" ASC'
            " LIMIT :limit OFFSET :offset"
        )


def _source_expression(column: ColumnSpec) -> str:
    ident = quote_mssql(column.identifier)
    source_type = normalize_type(column.source_type)
    if source_type in _SPATIAL_TYPES:
        return f"{ident}.STAsText() AS {ident}"
    if not is_mapped(column.source_type):
        # Exotic types are shipped as text; the driver cannot decode most of them
        return f"CONVERT(NVARCHAR(MAX), {ident}) AS {ident}"
    return ident


def render_source_select(schema: str, view: str, columns: Sequence[ColumnSpec]) -> str:
    """Full read of a source view, one column per ColumnSpec, in list order."""
    selected = ", ".join(_source_expression(col) for col in columns)
    return f"SELECT {selected} FROM {quote_mssql(schema)}.{quote_mssql(view)}"


def _source_search_clause(search_columns: Sequence[ColumnSpec]) -> str:
    if not search_columns:
        return ""
    conditions = " OR ".join(f"{quote_mssql(col.identifier)} LIKE ?" for col in search_columns)
    return f" WHERE ({conditions})"


def render_source_count(schema: str, view: str, search_columns: Sequence[ColumnSpec] = ()) -> str:
    return (
        f"SELECT COUNT(*) AS total FROM {quote_mssql(schema)}.{quote_mssql(view)}"
        f"{_source_search_clause(search_columns)}"
    )


def render_source_page(
    schema: str,
    view: str,
    columns: Sequence[ColumnSpec],
    sort_by: Optional[ColumnSpec] = None,
    descending: bool = False,
    search_columns: Sequence[ColumnSpec] = (),
) -> str:
    """
    One page of a source view. Positional parameters: one search pattern per
    search column, then the offset and the page size.
    """
    selected = ", ".join(_source_expression(col) for col in columns)
    if sort_by is not None:
        order = f"{quote_mssql(sort_by.identifier)} {'DESC' if descending else 'ASC'}"
    else:
        order = "(SELECT NULL)"
    return (
        f"SELECT {selected} FROM {quote_mssql(schema)}.{quote_mssql(view)}"
        f"{_source_search_clause(search_columns)}"
        f" ORDER BY {order} OFFSET ? ROWS FETCH NEXT ? ROWS ONLY"
    )
