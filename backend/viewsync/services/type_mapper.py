"""SQL Server -> PostgreSQL column type mapping for synced tables."""
import logging
import re

from viewsync.exceptions import UnsupportedTypeError

logger = logging.getLogger(__name__)

FALLBACK_TYPE = "TEXT"

_TYPE_MAP = {
    # exact numerics
    "tinyint": "SMALLINT",
    "smallint": "SMALLINT",
    "int": "INTEGER",
    "integer": "INTEGER",
    "bigint": "BIGINT",
    "decimal": "NUMERIC",
    "numeric": "NUMERIC",
    "money": "NUMERIC(19,4)",
    "smallmoney": "NUMERIC(10,4)",
    # approximate numerics
    "float": "DOUBLE PRECISION",
    "real": "REAL",
    # character, identifier and xml families are all stored as text
    "char": "TEXT",
    "nchar": "TEXT",
    "varchar": "TEXT",
    "nvarchar": "TEXT",
    "text": "TEXT",
    "ntext": "TEXT",
    "sysname": "TEXT",
    "uniqueidentifier": "TEXT",
    "xml": "TEXT",
    # boolean
    "bit": "BOOLEAN",
    # date / time
    "date": "DATE",
    "time": "TIME",
    "datetime": "TIMESTAMP",
    "datetime2": "TIMESTAMP",
    "smalldatetime": "TIMESTAMP",
    "datetimeoffset": "TIMESTAMPTZ",
    # binary
    "binary": "BYTEA",
    "varbinary": "BYTEA",
    "image": "BYTEA",
    "timestamp": "BYTEA",  # SQL Server's rowversion, not a point in time
    "rowversion": "BYTEA",
}

_TYPE_ARGS_RE = re.compile(r"\s*\(.*\)\s*$")


def normalize_type(source_type: str) -> str:
    """``NVARCHAR(50)`` -> ``nvarchar``."""
    return _TYPE_ARGS_RE.sub("", source_type or "").strip().lower()


def lookup_type(source_type: str) -> str:
    try:
        return _TYPE_MAP[normalize_type(source_type)]
    except KeyError:
        raise UnsupportedTypeError(
            f"No PostgreSQL mapping for source type {source_type!r}",
            details={"source_type": source_type},
        ) from None


def is_mapped(source_type: str) -> bool:
    return normalize_type(source_type) in _TYPE_MAP


def map_type(source_type: str) -> str:
    """Map a source column type to its destination type; unknown types become TEXT."""
    try:
        return lookup_type(source_type)
    except UnsupportedTypeError as e:
        logger.warning("%s, falling back to %s", e.message, FALLBACK_TYPE)
        return FALLBACK_TYPE
