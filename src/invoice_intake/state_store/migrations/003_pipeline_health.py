"""
Migration 003: Pipeline health tracking.

Adds poll health columns to connections, pipeline status columns to
tenants, and the append-only pipeline_alerts table.
"""

import sqlite3

VERSION = 3
NAME = "pipeline_health"

CONNECTION_COLUMNS = {
    "last_poll_at": "TEXT",
    "last_poll_status": "TEXT",
    "last_poll_error": "TEXT",
    "consecutive_failures": "INTEGER NOT NULL DEFAULT 0",
    "poll_error_count": "INTEGER NOT NULL DEFAULT 0",
}

TENANT_COLUMNS = {
    "pipeline_status": "TEXT NOT NULL DEFAULT 'unknown'",
    "pipeline_status_updated_at": "TEXT",
    "last_successful_poll": "TEXT",
    "last_successful_process": "TEXT",
}


def _add_missing_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]) -> None:
    cursor = conn.execute(f"PRAGMA table_info({table})")
    existing = {row[1] for row in cursor.fetchall()}
    for name, ddl in columns.items():
        if name not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}")


def upgrade(conn: sqlite3.Connection) -> None:
    """Add health columns and create pipeline_alerts."""
    _add_missing_columns(conn, "connections", CONNECTION_COLUMNS)
    _add_missing_columns(conn, "tenants", TENANT_COLUMNS)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS pipeline_alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER,
            connection_id INTEGER,

            alert_type TEXT NOT NULL CHECK (alert_type IN (
                'poll_failure', 'process_failure', 'high_error_rate', 'orphaned_emails',
                'connection_expired', 'dead_letter_threshold', 'pipeline_down',
                'pipeline_recovered'
            )),
            severity TEXT NOT NULL CHECK (severity IN ('info', 'warning', 'critical')),
            message TEXT NOT NULL,
            details_json TEXT,

            acknowledged INTEGER NOT NULL DEFAULT 0,
            acknowledged_by TEXT,
            acknowledged_at TEXT,

            created_at TEXT NOT NULL,

            FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE,
            FOREIGN KEY (connection_id) REFERENCES connections(id) ON DELETE SET NULL
        )
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_pipeline_alerts_recent
        ON pipeline_alerts (acknowledged, created_at DESC)
    """)

    conn.commit()
