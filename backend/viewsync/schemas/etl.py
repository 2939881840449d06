from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    db: str
    # "schema" shadows a BaseModel attribute, so it only lives on the wire
    schema_name: Optional[str] = Field(None, alias="schema")
    view: str

    model_config = {"populate_by_name": True}


class SyncProgressEvent(BaseModel):
    type: Literal["start", "progress", "complete"]
    total: int
    current: Optional[int] = None
    view: Optional[str] = None
    views: Optional[List[str]] = None
    status: Optional[Literal["syncing", "success", "failed"]] = None
    rows_synced: Optional[int] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    success_count: Optional[int] = None
    fail_count: Optional[int] = None

    def to_payload(self) -> dict:
        return self.model_dump(exclude_none=True)
