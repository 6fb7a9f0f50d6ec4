from datetime import datetime

from pydantic import BaseModel, Field


class ImportRecord(BaseModel):
    """Bookkeeping for a host transcript file that was ingested."""

    source_path: str
    content_digest: str
    imported_at: datetime
    event_count: int = Field(default=0, ge=0)


class StoreStats(BaseModel):
    """Row counts and time bounds of the datastore."""

    session_count: int = 0
    event_count: int = 0
    message_count: int = 0
    import_count: int = 0
    compiled_count: int = 0
    oldest_record: datetime | None = None
    newest_record: datetime | None = None
