"""ORM models exposed by the offline sync layer."""
from .queue_item import (
    AttachmentQueueRecord,
    EntityQueueRecord,
    QueueItem,
    SessionQueueRecord,
)
from .sync_metadata import SyncMetadata

__all__ = [
    "AttachmentQueueRecord",
    "EntityQueueRecord",
    "QueueItem",
    "SessionQueueRecord",
    "SyncMetadata",
]
