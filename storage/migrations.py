"""Ad-hoc database migrations for the offline queue."""

from __future__ import annotations

from sqlalchemy import text


def _column_exists(conn, table: str, column: str) -> bool:
    result = conn.execute(text(f"PRAGMA table_info('{table}')"))
    return any(row[1] == column for row in result)


def ensure_queue_columns(conn) -> None:
    """Databases created before FIFO tie-breaking lack ``seq``."""
    columns = {
        "last_error": "TEXT",
        "seq": "INTEGER NOT NULL DEFAULT 0",
    }
    for name, ddl_type in columns.items():
        if not _column_exists(conn, "queueitem", name):
            conn.execute(text(f"ALTER TABLE queueitem ADD COLUMN {name} {ddl_type}"))

    conn.execute(
        text(
            """
            UPDATE queueitem
            SET seq = rowid
            WHERE seq = 0
            """
        )
    )


def ensure_queue_indexes(conn) -> None:
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_queueitem_dequeue
            ON queueitem (status, priority DESC, created_at, seq)
            """
        )
    )


def run_all(engine) -> None:
    with engine.begin() as conn:
        ensure_queue_columns(conn)
        ensure_queue_indexes(conn)


__all__ = ["run_all"]
