from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from core.errors import NetworkUnavailable, RemoteRejected, StorageUnavailable
from core.settings import STORE_DB_PATH, SYNC, SYNC_LOG_PATH, SyncSettings
from datetime_utils import to_rfc3339_utc, utc_now
from models.operations import (
    ATTACHMENT_QUEUE,
    ENTITY_QUEUE,
    SESSION_QUEUE,
    STATUS_PENDING,
    SYNC_ORDER,
)
from models.queue_item import QueueItem
from models.sync_metadata import LAST_SYNC_TIME, SYNC_IN_PROGRESS
from services.api_client import RemoteApi
from services.connectivity import NetworkState
from services.pending_queue import PendingQueue
from services.status import SyncStats, collect_stats
from storage.db import DurableStore


SKIP_OFFLINE = "offline"
SKIP_IN_PROGRESS = "in_progress"


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("safework.sync")
    if not logger.handlers:
        Path(SYNC_LOG_PATH).parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


@dataclass
class SyncReport:
    """Outcome of one ``sync_now`` call."""

    skipped: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    synced: Dict[str, int] = field(default_factory=dict)
    failed: Dict[str, int] = field(default_factory=dict)

    @property
    def ran(self) -> bool:
        return self.skipped is None

    def tally(self, bucket: Dict[str, int], queue_name: str) -> None:
        bucket[queue_name] = bucket.get(queue_name, 0) + 1


class OfflineSyncService:
    """Durable offline queue for LMRA sessions, projects and photos.

    Mutations are written to the local store first and pushed to the API by
    :meth:`sync_now`. A pass drains sessions, then projects, then photos. At
    most one pass runs per process; the in-memory ``running`` flag is the
    authority, the persisted ``syncInProgress`` value only mirrors it.
    """

    def __init__(
        self,
        store: DurableStore,
        api: RemoteApi,
        network: NetworkState,
        *,
        settings: SyncSettings = SYNC,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.api = api
        self.network = network
        self.settings = settings
        self.logger = logger or _ensure_logger()
        self.queues: Dict[str, PendingQueue] = {
            name: PendingQueue(
                store,
                name,
                max_retries=settings.max_retries,
                backoff_sec=settings.retry_backoff_sec,
                max_backoff_sec=settings.max_backoff_sec,
            )
            for name in SYNC_ORDER
        }
        self._running = False
        self._initialized = False
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    def initialize(self) -> None:
        if self._initialized:
            return
        self.store.initialize()
        if self.store.get_meta(SYNC_IN_PROGRESS, False):
            # left behind by a process that died mid-pass
            self.logger.warning("Clearing stale syncInProgress flag from a previous run")
            self.store.set_meta(SYNC_IN_PROGRESS, False)
        self._initialized = True

    async def aclose(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def state(self) -> str:
        return "running" if self._running else "idle"

    def queue(self, queue_name: str) -> PendingQueue:
        try:
            return self.queues[queue_name]
        except KeyError:
            raise ValueError(f"Unknown queue: {queue_name}") from None

    # ------------------------------------------------------------------
    # Enqueueing
    async def enqueue(self, queue_name: str, item: QueueItem, *, sync: bool = True) -> None:
        """Persist ``item``; if online, start a background pass."""

        self.initialize()
        self.queue(queue_name).enqueue(item)
        self.logger.info("Queued %s %s (%s)", queue_name, item.key, item.operation)
        if sync and self.network.online:
            self._schedule_sync()

    async def queue_session(
        self,
        session_id: str,
        session_data: dict,
        operation: str,
        *,
        sync: bool = True,
    ) -> QueueItem:
        payload = {
            **session_data,
            "syncStatus": STATUS_PENDING,
            "offlineCreatedAt": to_rfc3339_utc(utc_now()),
        }
        item = QueueItem(key=session_id, operation=operation, payload=payload)
        await self.enqueue(SESSION_QUEUE, item, sync=sync)
        return item

    async def queue_attachment(
        self,
        photo_id: str,
        session_id: str,
        content: bytes,
        filename: str,
        category: str,
        caption: Optional[str] = None,
        *,
        content_type: Optional[str] = None,
        sync: bool = True,
    ) -> QueueItem:
        payload = {"sessionId": session_id, "filename": filename, "category": category}
        if caption:
            payload["caption"] = caption
        if content_type:
            payload["contentType"] = content_type
        item = QueueItem(key=photo_id, operation="upload", payload=payload, content=content)
        await self.enqueue(ATTACHMENT_QUEUE, item, sync=sync)
        return item

    async def queue_entity(
        self,
        project_id: str,
        project_data: Optional[dict],
        operation: str,
        temp_id: Optional[str] = None,
        *,
        sync: bool = True,
    ) -> QueueItem:
        item = QueueItem(
            key=project_id,
            operation=operation,
            payload=dict(project_data or {}),
            temp_id=temp_id,
        )
        await self.enqueue(ENTITY_QUEUE, item, sync=sync)
        return item

    def _schedule_sync(self) -> None:
        task = asyncio.get_running_loop().create_task(self.sync_now())
        self._background.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error("Background sync failed: %s", exc)

    async def wait_for_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Sync pass
    async def sync_now(self) -> SyncReport:
        if self._running:
            self.logger.info("Sync already in progress")
            return SyncReport(skipped=SKIP_IN_PROGRESS)
        if not self.network.online:
            self.logger.info("Cannot sync while offline")
            return SyncReport(skipped=SKIP_OFFLINE)

        self._running = True
        report = SyncReport()
        try:
            self.initialize()
            self.store.set_meta(SYNC_IN_PROGRESS, True)
            self.logger.info("Starting sync")
            for name in SYNC_ORDER:
                await self._sync_queue(self.queues[name], report)
            report.finished_at = utc_now()
            self.store.set_meta(LAST_SYNC_TIME, to_rfc3339_utc(report.finished_at))
            self.logger.info(
                "Sync completed: %d synced, %d failed",
                sum(report.synced.values()),
                sum(report.failed.values()),
            )
        finally:
            self._running = False
            if self.store.ready:
                try:
                    self.store.set_meta(SYNC_IN_PROGRESS, False)
                except StorageUnavailable as exc:
                    self.logger.error("Could not clear syncInProgress: %s", exc)
        return report

    async def _sync_queue(self, queue: PendingQueue, report: SyncReport) -> None:
        items = queue.due()
        self.logger.info("Syncing %d items from %s", len(items), queue.name)
        for item in items:
            try:
                await self._send(queue.name, item)
            except (RemoteRejected, NetworkUnavailable) as exc:
                self._record_failure(queue, item, str(exc), report)
                continue
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Sync of %s %s crashed", queue.name, item.key)
                self._record_failure(queue, item, str(exc) or type(exc).__name__, report)
                continue
            report.tally(report.synced, queue.name)
            self.logger.info("Synced %s %s (%s)", queue.name, item.key, item.operation)
            if not queue.settle(item):
                self.logger.info("%s %s changed during sync, keeping the newer version", queue.name, item.key)

    async def _send(self, queue_name: str, item: QueueItem) -> None:
        try:
            await asyncio.wait_for(
                self.api.send(queue_name, item),
                timeout=self.settings.request_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise NetworkUnavailable(
                f"No answer within {self.settings.request_timeout_sec}s"
            ) from exc

    def _record_failure(
        self,
        queue: PendingQueue,
        item: QueueItem,
        error: str,
        report: SyncReport,
    ) -> None:
        stored = queue.mark_failed(item, error)
        report.tally(report.failed, queue.name)
        if stored is None:
            self.logger.warning(
                "Failed to sync %s %s: %s (superseded by a newer mutation)",
                queue.name,
                item.key,
                error,
            )
            return
        if item.is_exhausted(queue.max_retries):
            self.logger.error(
                "%s %s failed after %d retries: %s",
                queue.name,
                item.key,
                item.retry_count,
                error,
            )
        else:
            self.logger.warning(
                "Failed to sync %s %s (attempt %d): %s",
                queue.name,
                item.key,
                item.retry_count,
                error,
            )

    # ------------------------------------------------------------------
    # Operator actions and status
    async def retry(self, queue_name: str, key: str) -> Optional[SyncReport]:
        """Reset retry state for one item and try to sync it again."""

        self.initialize()
        self.queue(queue_name).reset(key)
        self.logger.info("Manual retry requested for %s %s", queue_name, key)
        if self.network.online:
            return await self.sync_now()
        return None

    def clear_all(self) -> None:
        self.initialize()
        for queue in self.queues.values():
            queue.clear()
        self.logger.info("All queues cleared")

    def get_stats(self) -> SyncStats:
        self.initialize()
        return collect_stats(
            self.store,
            self.settings.max_retries,
            sync_in_progress=self._running,
        )

    def failed_items(self) -> Dict[str, List[dict]]:
        self.initialize()
        return {name: queue.describe_failures() for name, queue in self.queues.items()}


def create_service(
    settings: SyncSettings = SYNC,
    *,
    db_path: Path | str = STORE_DB_PATH,
    network: Optional[NetworkState] = None,
    api: Optional[RemoteApi] = None,
) -> OfflineSyncService:
    """Wire a service from settings; the caller owns and closes it."""

    store = DurableStore(db_path, schema_version=settings.store_version)
    api = api or RemoteApi(
        settings.api_base_url,
        timeout=settings.request_timeout_sec,
        health_path=settings.health_path,
    )
    return OfflineSyncService(store, api, network or NetworkState(), settings=settings)


__all__ = ["OfflineSyncService", "SKIP_IN_PROGRESS", "SKIP_OFFLINE", "SyncReport", "create_service"]
