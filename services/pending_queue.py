from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from core.errors import ItemNotFound
from core.settings import SYNC
from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.operations import STATUS_FAILED, STATUS_PENDING, validate_operation
from models.queue_item import QueueItem, record_type
from storage.db import DurableStore


def _next_try(attempts: int, base: float, ceiling: float) -> Optional[datetime]:
    if base <= 0:
        return None
    delay = min(ceiling, base * 2 ** max(attempts - 1, 0))
    return utc_now() + timedelta(seconds=delay)


class PendingQueue:
    """Operations on one named queue of the durable store."""

    def __init__(
        self,
        store: DurableStore,
        name: str,
        *,
        max_retries: int = SYNC.max_retries,
        backoff_sec: float = SYNC.retry_backoff_sec,
        max_backoff_sec: float = SYNC.max_backoff_sec,
    ) -> None:
        record_type(name)
        self.store = store
        self.name = name
        self.max_retries = max_retries
        self.backoff_sec = backoff_sec
        self.max_backoff_sec = max_backoff_sec

    def enqueue(self, item: QueueItem) -> None:
        validate_operation(self.name, item.operation)
        self.store.put(self.name, item)

    def get(self, key: str) -> Optional[QueueItem]:
        return self.store.get(self.name, key)

    def items(self) -> List[QueueItem]:
        return self.store.get_all(self.name)

    def due(self, now: Optional[datetime] = None) -> List[QueueItem]:
        """Items a sync pass should attempt: below the ceiling and not backing off."""

        moment = ensure_utc(now) or utc_now()
        result: List[QueueItem] = []
        for item in self.items():
            if item.is_exhausted(self.max_retries):
                continue
            if item.next_attempt_at and item.next_attempt_at > moment:
                continue
            result.append(item)
        return result

    def failed(self) -> List[QueueItem]:
        return self.store.get_all(self.name, min_retries=self.max_retries)

    def mark_failed(self, item: QueueItem, error: str) -> Optional[QueueItem]:
        """Record a failed attempt; None if the key was re-enqueued meanwhile."""

        item.retry_count += 1
        item.last_error = error[:1000]
        item.next_attempt_at = _next_try(item.retry_count, self.backoff_sec, self.max_backoff_sec)
        if item.is_exhausted(self.max_retries):
            item.payload = {
                **item.payload,
                "syncStatus": STATUS_FAILED,
                "syncError": item.last_error,
            }
            item.next_attempt_at = None
        if not self.store.put_if_unchanged(self.name, item):
            return None
        return item

    def reset(self, key: str) -> QueueItem:
        item = self.get(key)
        if item is None:
            raise ItemNotFound(self.name, key)
        payload = {k: v for k, v in item.payload.items() if k != "syncError"}
        if "syncStatus" in payload:
            payload["syncStatus"] = STATUS_PENDING
        item.payload = payload
        item.retry_count = 0
        item.last_error = None
        item.next_attempt_at = None
        self.store.put(self.name, item)
        return item

    def settle(self, item: QueueItem) -> bool:
        """Drop a synced item unless a newer mutation replaced it meanwhile."""

        return self.store.delete_if(self.name, item.key, item.enqueued_at)

    def count(self) -> int:
        return self.store.count(self.name)

    def clear(self) -> None:
        self.store.clear(self.name)

    def describe_failures(self) -> List[dict]:
        return [
            {
                "key": item.key,
                "error": item.last_error or "Unknown error",
                "retryCount": item.retry_count,
                "enqueuedAt": to_rfc3339_utc(item.enqueued_at),
            }
            for item in self.failed()
        ]


__all__ = ["PendingQueue"]
