"""
Error taxonomy for the view-sync engine.

Every error carries a machine-readable ``error_code`` and the HTTP status the
API layer answers with, so routers can translate any of them uniformly.
"""
from typing import Any, Dict, Optional


class ViewSyncError(Exception):
    """Base class for every error raised by the sync engine."""

    status_code = 500
    error_code = "VIEW_SYNC_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class SourceConnectionError(ViewSyncError):
    """A source or the destination could not be reached. Never retried here."""

    status_code = 503
    error_code = "CONNECTION_ERROR"


class SchemaIntrospectionError(ViewSyncError):
    """The source view does not exist or its catalog cannot be read."""

    status_code = 502
    error_code = "SCHEMA_INTROSPECTION_ERROR"


class UnsupportedTypeError(ViewSyncError):
    """A source type has no mapping. Callers fall back to text and carry on."""

    status_code = 422
    error_code = "UNSUPPORTED_TYPE"


class IdentifierError(ViewSyncError):
    """A table or column name is not safe to interpolate into SQL."""

    status_code = 400
    error_code = "INVALID_IDENTIFIER"


class SyncConflictError(ViewSyncError):
    """Another sync already holds the lease for this view."""

    status_code = 409
    error_code = "SYNC_CONFLICT"


class SchemaChangeError(ViewSyncError):
    """A live column changed its source type; needs an operator decision."""

    status_code = 409
    error_code = "BREAKING_SCHEMA_CHANGE"


class DataLoadError(ViewSyncError):
    """The bulk transfer failed. The evolved schema stays, the rows are stale."""

    status_code = 500
    error_code = "DATA_LOAD_ERROR"


class ViewNotAllowedError(ViewSyncError):
    status_code = 404
    error_code = "VIEW_NOT_FOUND"

    def __init__(self, schema: str, view: str):
        super().__init__(
            f'View "{schema}.{view}" not found',
            details={"schema": schema, "view": view},
        )


class SyncedViewNotFoundError(ViewSyncError):
    status_code = 404
    error_code = "SYNCED_VIEW_NOT_FOUND"

    def __init__(self, view_id: int):
        super().__init__("Synced view not found", details={"id": view_id})


class SchemaEvolutionError(ViewSyncError):
    """Destination DDL failed. Nothing was loaded."""

    status_code = 500
    error_code = "SCHEMA_EVOLUTION_ERROR"
