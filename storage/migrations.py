"""Ad-hoc schema upkeep for offline stores created by older releases."""

from __future__ import annotations

from sqlalchemy import text


_QUEUE_TABLES = ("session_queue", "entity_queue", "attachment_queue")


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_backoff_column(conn) -> None:
    # version 1 stores predate retry backoff
    for table in _QUEUE_TABLES:
        if not _column_exists(conn, table, "next_attempt_at"):
            conn.execute(text(f"ALTER TABLE {table} ADD COLUMN next_attempt_at DATETIME"))


def ensure_entity_temp_id(conn) -> None:
    if not _column_exists(conn, "entity_queue", "temp_id"):
        conn.execute(text("ALTER TABLE entity_queue ADD COLUMN temp_id VARCHAR"))


def ensure_queue_indexes(conn) -> None:
    for table in _QUEUE_TABLES:
        conn.execute(
            text(f"CREATE INDEX IF NOT EXISTS ix_{table}_enqueued_at ON {table} (enqueued_at)")
        )
        conn.execute(
            text(f"CREATE INDEX IF NOT EXISTS ix_{table}_retry_count ON {table} (retry_count)")
        )
    conn.execute(
        text("CREATE INDEX IF NOT EXISTS ix_entity_queue_operation ON entity_queue (operation)")
    )
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_attachment_queue_session_id
            ON attachment_queue (session_id)
            """
        )
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_backoff_column(conn)
        ensure_entity_temp_id(conn)
        # SQLModel creates fresh tables with these, legacy stores may lack them
        ensure_queue_indexes(conn)


__all__ = ["run_all"]
