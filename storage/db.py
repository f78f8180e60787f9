"""SQLite-backed durable store for the offline mutation queues."""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from core.errors import StorageUnavailable
from core.settings import STORE_DB_PATH, SYNC
from datetime_utils import ensure_utc, utc_now
from models.queue_item import QUEUE_TABLES, QueueItem, record_type
from models.sync_metadata import SCHEMA_VERSION, SyncMetadata
from storage import migrations


STORE_TABLES = [model.__table__ for model in QUEUE_TABLES.values()] + [SyncMetadata.__table__]

logger = logging.getLogger("safework.sync.store")


class DurableStore:
    """Transactional persistence for the three queues plus sync metadata.

    Every public method opens its own session, so each call is one
    transaction. Until :meth:`initialize` has succeeded every operation raises
    :class:`StorageUnavailable`.
    """

    def __init__(
        self,
        db_path: Path | str = STORE_DB_PATH,
        *,
        schema_version: int = SYNC.store_version,
        echo: bool = False,
    ):
        self.db_path = Path(db_path)
        self.schema_version = schema_version
        self._echo = echo
        self._engine: Optional[Engine] = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._engine is not None

    def initialize(self) -> None:
        if self._engine is not None:
            return
        with self._lock:
            if self._engine is not None:
                return
            engine = None
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                engine = create_engine(f"sqlite:///{self.db_path.as_posix()}", echo=self._echo)
                SQLModel.metadata.create_all(engine, tables=STORE_TABLES)
                migrations.run_all(engine)
                with Session(engine) as session:
                    _write_meta(session, SCHEMA_VERSION, self.schema_version)
                    session.commit()
            except (OSError, SQLAlchemyError) as exc:
                if engine is not None:
                    engine.dispose()
                logger.error("Cannot open offline store %s: %s", self.db_path, exc)
                raise StorageUnavailable(f"Cannot open offline store {self.db_path}: {exc}") from exc
            self._engine = engine
            logger.info("Offline store ready at %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None

    def _session(self) -> Session:
        if self._engine is None:
            raise StorageUnavailable("Offline store is not initialized")
        return Session(self._engine)

    # ----- queues -----
    def put(self, queue_name: str, item: QueueItem) -> None:
        if not item.key:
            raise ValueError("Queue items require a key")
        record = item.to_record(queue_name)
        try:
            with self._session() as session:
                session.merge(record)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def get(self, queue_name: str, key: str) -> Optional[QueueItem]:
        model = record_type(queue_name)
        try:
            with self._session() as session:
                record = session.get(model, key)
                return QueueItem.from_record(record) if record else None
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def put_if_unchanged(self, queue_name: str, item: QueueItem) -> bool:
        """Write ``item`` back only if the stored record is the one it was read from.

        A key re-enqueued since ``item`` was loaded carries a newer
        ``enqueued_at``; that record is left alone and False is returned.
        """

        model = record_type(queue_name)
        record = item.to_record(queue_name)
        try:
            with self._session() as session:
                current = session.get(model, item.key)
                if current is None or ensure_utc(current.enqueued_at) != ensure_utc(item.enqueued_at):
                    return False
                session.merge(record)
                session.commit()
                return True
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def delete_if(self, queue_name: str, key: str, enqueued_at: datetime) -> bool:
        """Delete ``key`` only while its record still has ``enqueued_at``."""

        model = record_type(queue_name)
        try:
            with self._session() as session:
                current = session.get(model, key)
                if current is None or ensure_utc(current.enqueued_at) != ensure_utc(enqueued_at):
                    return False
                session.delete(current)
                session.commit()
                return True
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def delete(self, queue_name: str, key: str) -> None:
        model = record_type(queue_name)
        try:
            with self._session() as session:
                record = session.get(model, key)
                if record:
                    session.delete(record)
                    session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def get_all(self, queue_name: str, *, min_retries: Optional[int] = None) -> List[QueueItem]:
        model = record_type(queue_name)
        try:
            with self._session() as session:
                stmt = select(model)
                if min_retries is not None:
                    stmt = stmt.where(model.retry_count >= min_retries)
                stmt = stmt.order_by(model.enqueued_at.asc())
                return [QueueItem.from_record(row) for row in session.exec(stmt)]
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def count(self, queue_name: str) -> int:
        model = record_type(queue_name)
        try:
            with self._session() as session:
                return int(session.exec(select(func.count()).select_from(model)).one())
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def count_failed(self, queue_name: str, ceiling: int) -> int:
        model = record_type(queue_name)
        try:
            with self._session() as session:
                stmt = select(func.count()).select_from(model).where(model.retry_count >= ceiling)
                return int(session.exec(stmt).one())
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    def clear(self, queue_name: str) -> None:
        model = record_type(queue_name)
        try:
            with self._session() as session:
                for record in session.exec(select(model)).all():
                    session.delete(record)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc

    # ----- metadata -----
    def get_meta(self, key: str, default: Any = None) -> Any:
        try:
            with self._session() as session:
                row = session.get(SyncMetadata, key)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc
        if row is None:
            return default
        try:
            return json.loads(row.value)
        except json.JSONDecodeError:
            return default

    def set_meta(self, key: str, value: Any) -> None:
        try:
            with self._session() as session:
                _write_meta(session, key, value)
                session.commit()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(str(exc)) from exc


def _write_meta(session: Session, key: str, value: Any) -> None:
    row = session.get(SyncMetadata, key)
    if row is None:
        row = SyncMetadata(key=key)
    row.value = json.dumps(value, default=str)
    row.updated_at = utc_now()
    session.add(row)


__all__ = ["DurableStore", "STORE_TABLES"]
