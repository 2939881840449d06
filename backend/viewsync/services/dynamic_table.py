"""
Dynamic table manager.

Creates and evolves the destination table of a synced view from an
introspected column list. Evolution is forward-only: new columns are added,
vanished columns are tombstoned in metadata and kept physically, and a type
change on a live column stops the sync for an operator to resolve.
"""
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Optional, Sequence

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from viewsync.exceptions import SchemaChangeError, SchemaEvolutionError
from viewsync.services.identifiers import sanitize
from viewsync.services.sql_renderer import ColumnSpec, SqlRenderer
from viewsync.services.type_mapper import normalize_type

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchemaChange:
    change: str  # "created" | "added" | "removed" | "type_changed"
    column: str
    source_type: Optional[str] = None
    dest_type: Optional[str] = None
    previous_type: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class SchemaDiff:
    """Difference between the introspected columns and the live metadata columns."""

    added: list[ColumnSpec] = field(default_factory=list)
    removed: list = field(default_factory=list)
    type_changed: list[tuple] = field(default_factory=list)
    # True when nothing was known yet, i.e. the first sync of the view
    initial: bool = False
    table_created: bool = False
    # Introspected columns, identifiers spelled as they exist in the table
    columns: list[ColumnSpec] = field(default_factory=list)

    @property
    def is_evolution(self) -> bool:
        """A change of the live column set of an already-synced view."""
        return not self.initial and bool(self.added or self.removed)

    def changes(self) -> list[SchemaChange]:
        kind = "created" if self.initial else "added"
        result = [SchemaChange(kind, c.name, c.source_type, c.dest_type) for c in self.added]
        result += [SchemaChange("removed", k.column_name, k.source_type, k.dest_type) for k in self.removed]
        result += [
            SchemaChange("type_changed", spec.name, spec.source_type, spec.dest_type, known.source_type)
            for known, spec in self.type_changed
        ]
        return result


def diff_columns(current: Sequence[ColumnSpec], known: Sequence, retired: Sequence = ()) -> SchemaDiff:
    """
    Compare ``current`` specs against ``known`` live ``SyncedColumn`` rows.

    ``retired`` holds the latest tombstoned row per column name. A column that
    comes back must fit the physical column it left behind, so its destination
    type is checked against the tombstone.

    Names compare case-insensitively, matching SQL Server's default collation.
    """
    known_by_name = {k.column_name.lower(): k for k in known}
    retired_by_name = {r.column_name.lower(): r for r in retired}
    current_names = {c.name.lower() for c in current}

    diff = SchemaDiff(initial=not known)
    for spec in current:
        previous = known_by_name.get(spec.name.lower())
        if previous is None:
            tombstone = retired_by_name.get(spec.name.lower())
            if tombstone is not None and tombstone.dest_type != spec.dest_type:
                diff.type_changed.append((tombstone, spec))
            else:
                diff.added.append(spec)
        elif normalize_type(previous.source_type) != normalize_type(spec.source_type):
            diff.type_changed.append((previous, spec))
    diff.removed = [k for k in known if k.column_name.lower() not in current_names]
    return diff


class DynamicTableManager:
    def __init__(self, engine: AsyncEngine, renderer: SqlRenderer):
        self.engine = engine
        self.renderer = renderer

    async def _physical_columns(self, conn, name: str) -> Optional[dict[str, str]]:
        """Lower-cased name -> name as spelled in the table, or None if there is no table."""
        schema = self.renderer.schema

        def _inspect(sync_conn) -> Optional[dict[str, str]]:
            inspector = inspect(sync_conn)
            if not inspector.has_table(name, schema=schema):
                return None
            return {c["name"].lower(): c["name"] for c in inspector.get_columns(name, schema=schema)}

        return await conn.run_sync(_inspect)

    async def table_exists(self, name: str) -> bool:
        async with self.engine.connect() as conn:
            return await self._physical_columns(conn, sanitize(name)) is not None

    async def ensure_table(
        self, name: str, columns: Sequence[ColumnSpec], known_columns: Sequence = (), retired_columns: Sequence = ()
    ) -> SchemaDiff:
        """
        Create or evolve the destination table so it holds every column in ``columns``.

        Physical DDL is driven by the table's actual columns, so a column that
        was tombstoned and later reappears upstream is not added twice, and a
        column whose name only changed case upstream keeps its existing
        spelling (see ``SchemaDiff.columns``). All DDL commits in one
        transaction before this returns.
        """
        name = sanitize(name)
        diff = diff_columns(columns, known_columns, retired_columns)
        if diff.type_changed:
            described = ", ".join(
                f"{spec.name} ({known.source_type} -> {spec.source_type})" for known, spec in diff.type_changed
            )
            raise SchemaChangeError(
                f"Source type changed for column(s) of {name}: {described}. Resolve manually before resyncing",
                details={"table": name, "changes": [c.to_dict() for c in diff.changes() if c.change == "type_changed"]},
            )

        try:
            async with self.engine.begin() as conn:
                physical = await self._physical_columns(conn, name)
                if physical is None:
                    if known_columns:
                        logger.warning("Destination table %s is missing, recreating it", name)
                    logger.info("Creating ETL table %s with %d columns", self.renderer.table(name), len(columns))
                    await conn.execute(text(self.renderer.create_table(name, columns)))
                    diff.table_created = True
                    physical = {}
                else:
                    for col in columns:
                        if col.identifier.lower() in physical:
                            continue
                        logger.info(
                            "Adding column to %s: %s (%s)", self.renderer.table(name), col.identifier, col.dest_type
                        )
                        await conn.execute(text(self.renderer.add_column(name, col)))
        except SQLAlchemyError as e:
            raise SchemaEvolutionError(
                f"Could not create or alter {self.renderer.table(name)}: {e}", details={"table": name}
            ) from e

        resolved = {}
        for col in columns:
            existing = physical.get(col.identifier.lower())
            if existing is not None and existing != col.identifier:
                logger.info("Column %s of %s is stored as %s", col.identifier, name, existing)
                col = replace(col, identifier=existing)
            resolved[col.name.lower()] = col
        diff.columns = list(resolved.values())
        diff.added = [resolved[c.name.lower()] for c in diff.added]

        if diff.removed:
            logger.info(
                "Columns gone from the source of %s, kept in place: %s",
                name, ", ".join(k.column_name for k in diff.removed),
            )
        return diff

    async def drop_table(self, name: str) -> None:
        logger.info("Dropping ETL table %s", self.renderer.table(name))
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text(self.renderer.drop_table(name)))
        except SQLAlchemyError as e:
            raise SchemaEvolutionError(
                f"Could not drop {self.renderer.table(name)}: {e}", details={"table": name}
            ) from e
