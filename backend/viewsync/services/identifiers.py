"""
Identifier sanitizer.

Table and column names cannot be bound as query parameters, so every name that
ends up inside generated SQL goes through ``sanitize`` first. Only plain ASCII
letters, digits and underscores are accepted; nothing is rewritten.
"""
import re

from viewsync.exceptions import IdentifierError

# PostgreSQL truncates identifiers beyond NAMEDATALEN - 1 bytes
MAX_IDENTIFIER_LENGTH = 63

# Prefixes owned by the catalog or by the engine's own bookkeeping columns
RESERVED_PREFIXES = ("pg_", "_etl_")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")


def sanitize(name: str) -> str:
    """Return ``name`` unchanged if it is safe to quote into SQL, else raise ``IdentifierError``."""
    if not isinstance(name, str) or not name:
        raise IdentifierError("Identifier must be a non-empty string", details={"identifier": name})
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise IdentifierError(
            f"Identifier is longer than {MAX_IDENTIFIER_LENGTH} characters",
            details={"identifier": name[:80], "length": len(name)},
        )
    if not _IDENTIFIER_RE.match(name):
        raise IdentifierError(
            f"Identifier {name!r} may only contain ASCII letters, digits and underscores",
            details={"identifier": name},
        )
    if name.lower().startswith(RESERVED_PREFIXES):
        raise IdentifierError(
            f"Identifier {name!r} uses a reserved prefix",
            details={"identifier": name},
        )
    return name


def quote(name: str) -> str:
    """Sanitize and double-quote an identifier for PostgreSQL / SQLite."""
    return f'"{sanitize(name)}"'


def quote_mssql(name: str) -> str:
    """Sanitize and bracket-quote an identifier for SQL Server."""
    return f"[{sanitize(name)}]"


def generate_table_name(db_name: str, schema: str, view: str) -> str:
    """
    Deterministic destination table name: ``{db}__{schema}__{view}``, lower-cased.

    Each part is validated on its own and the joined name again, so an
    over-long combination fails instead of being silently truncated.
    """
    parts = [sanitize(part).lower() for part in (db_name, schema, view)]
    return sanitize("__".join(parts))
