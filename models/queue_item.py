"""SQLModel tables for the offline mutation queues."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Type

from sqlmodel import Field, SQLModel

from datetime_utils import ensure_utc, utc_now
from models.operations import ATTACHMENT_QUEUE, ENTITY_QUEUE, SESSION_QUEUE


class QueueRecordBase(SQLModel):
    key: str = Field(primary_key=True)
    operation: str = Field(index=True)
    payload: str = "{}"
    enqueued_at: datetime = Field(default_factory=utc_now, index=True)
    retry_count: int = Field(default=0, index=True)
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None


class SessionQueueRecord(QueueRecordBase, table=True):
    """LMRA session waiting to be created or updated remotely."""

    __tablename__ = "session_queue"


class EntityQueueRecord(QueueRecordBase, table=True):
    """Project change (including membership changes) waiting to sync."""

    __tablename__ = "entity_queue"

    temp_id: Optional[str] = None


class AttachmentQueueRecord(QueueRecordBase, table=True):
    """Photo waiting to be uploaded for an LMRA session."""

    __tablename__ = "attachment_queue"

    session_id: Optional[str] = Field(default=None, index=True)
    content: bytes = b""


QUEUE_TABLES: Dict[str, Type[QueueRecordBase]] = {
    SESSION_QUEUE: SessionQueueRecord,
    ENTITY_QUEUE: EntityQueueRecord,
    ATTACHMENT_QUEUE: AttachmentQueueRecord,
}


def record_type(queue_name: str) -> Type[QueueRecordBase]:
    try:
        return QUEUE_TABLES[queue_name]
    except KeyError:
        raise ValueError(f"Unknown queue: {queue_name}") from None


@dataclass
class QueueItem:
    """A pending mutation as seen by the sync engine.

    ``payload`` is the JSON document sent to the API. For photos it carries the
    form fields (``sessionId``, ``filename``, ``category``, ``caption``) while
    the binary itself lives in ``content``.
    """

    key: str
    operation: str
    payload: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: datetime = field(default_factory=utc_now)
    retry_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    content: Optional[bytes] = None
    temp_id: Optional[str] = None

    def is_exhausted(self, ceiling: int) -> bool:
        return self.retry_count >= ceiling

    def to_record(self, queue_name: str) -> QueueRecordBase:
        model = record_type(queue_name)
        record = model(
            key=self.key,
            operation=self.operation,
            payload=json.dumps(self.payload, ensure_ascii=False, default=str),
            enqueued_at=self.enqueued_at,
            retry_count=self.retry_count,
            last_error=self.last_error,
            next_attempt_at=self.next_attempt_at,
        )
        if isinstance(record, EntityQueueRecord):
            record.temp_id = self.temp_id
        elif isinstance(record, AttachmentQueueRecord):
            record.session_id = self.payload.get("sessionId")
            record.content = self.content or b""
        return record

    @classmethod
    def from_record(cls, record: QueueRecordBase) -> "QueueItem":
        try:
            payload = json.loads(record.payload or "{}")
        except json.JSONDecodeError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        return cls(
            key=record.key,
            operation=record.operation,
            payload=payload,
            enqueued_at=ensure_utc(record.enqueued_at),
            retry_count=record.retry_count,
            last_error=record.last_error,
            next_attempt_at=ensure_utc(record.next_attempt_at),
            content=getattr(record, "content", None),
            temp_id=getattr(record, "temp_id", None),
        )


__all__ = [
    "AttachmentQueueRecord",
    "EntityQueueRecord",
    "QUEUE_TABLES",
    "QueueItem",
    "QueueRecordBase",
    "SessionQueueRecord",
    "record_type",
]
