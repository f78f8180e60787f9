"""Read-only sync status for the UI layer."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from datetime_utils import parse_rfc3339, to_rfc3339_utc
from models.operations import ATTACHMENT_QUEUE, ENTITY_QUEUE, SESSION_QUEUE, SYNC_ORDER
from models.sync_metadata import LAST_SYNC_TIME
from storage.db import DurableStore


# camelCase suffixes the web dashboard already consumes
_LEGACY_NAMES = {
    SESSION_QUEUE: "Sessions",
    ENTITY_QUEUE: "Projects",
    ATTACHMENT_QUEUE: "Photos",
}


@dataclass(frozen=True)
class QueueStats:
    pending: int = 0
    failed: int = 0


@dataclass(frozen=True)
class SyncStats:
    queues: Dict[str, QueueStats] = field(default_factory=dict)
    last_sync_time: Optional[datetime] = None
    sync_in_progress: bool = False

    def pending(self, queue_name: str) -> int:
        return self.queues.get(queue_name, QueueStats()).pending

    def failed(self, queue_name: str) -> int:
        return self.queues.get(queue_name, QueueStats()).failed

    @property
    def total_pending(self) -> int:
        return sum(q.pending for q in self.queues.values())

    @property
    def total_failed(self) -> int:
        return sum(q.failed for q in self.queues.values())

    def to_dict(self) -> dict:
        data: dict = {}
        for name in SYNC_ORDER:
            suffix = _LEGACY_NAMES[name]
            data[f"pending{suffix}"] = self.pending(name)
            data[f"failed{suffix}"] = self.failed(name)
        data["lastSyncTime"] = to_rfc3339_utc(self.last_sync_time)
        data["syncInProgress"] = self.sync_in_progress
        return data


def collect_stats(
    store: DurableStore,
    max_retries: int,
    *,
    sync_in_progress: bool = False,
) -> SyncStats:
    """Count pending and failed items per queue. No side effects.

    ``sync_in_progress`` comes from the running process; the persisted flag may
    be a leftover from a crash and is not consulted.
    """

    queues: Dict[str, QueueStats] = {}
    for name in SYNC_ORDER:
        queues[name] = QueueStats(
            pending=store.count(name),
            failed=store.count_failed(name, max_retries),
        )
    raw_last = store.get_meta(LAST_SYNC_TIME)
    return SyncStats(
        queues=queues,
        last_sync_time=parse_rfc3339(raw_last) if isinstance(raw_last, str) else None,
        sync_in_progress=sync_in_progress,
    )


def _plural(count: int, one: str, many: str) -> str:
    return f"{count} {one if count == 1 else many}"


def offline_status_message(stats: SyncStats) -> str:
    """Dutch summary shown in the field-worker offline indicator."""

    sessions = stats.pending(SESSION_QUEUE)
    photos = stats.pending(ATTACHMENT_QUEUE)
    projects = stats.pending(ENTITY_QUEUE)
    total = sessions + photos + projects
    if total == 0:
        return "Alle gegevens zijn gesynchroniseerd"

    parts = []
    if sessions:
        parts.append(_plural(sessions, "LMRA", "LMRA's"))
    if photos:
        parts.append(_plural(photos, "foto", "foto's"))
    if projects:
        parts.append(_plural(projects, "project", "projecten"))
    verb = "wacht" if total == 1 else "wachten"
    return f"{', '.join(parts)} {verb} op synchronisatie"


__all__ = ["QueueStats", "SyncStats", "collect_stats", "offline_status_message"]
