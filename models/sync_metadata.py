"""Key/value table for process-wide sync flags."""

from __future__ import annotations

from datetime import datetime

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


LAST_SYNC_TIME = "lastSyncTime"
SYNC_IN_PROGRESS = "syncInProgress"
SCHEMA_VERSION = "schemaVersion"


class SyncMetadata(SQLModel, table=True):
    __tablename__ = "sync_metadata"

    key: str = Field(primary_key=True)
    value: str = "null"
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["LAST_SYNC_TIME", "SCHEMA_VERSION", "SYNC_IN_PROGRESS", "SyncMetadata"]
