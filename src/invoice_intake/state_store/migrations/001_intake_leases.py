"""
Migration 001: Intake lease table.

One row per source item per polling connection. The UNIQUE constraint on
(connection_id, source_item_id) is what makes concurrent claims collapse
onto a single lease.

Statuses: polled, processing, processed, failed, dead_letter
"""

import sqlite3

VERSION = 1
NAME = "intake_leases"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the intake_leases table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS intake_leases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL,
            connection_id INTEGER NOT NULL,
            source_item_id TEXT NOT NULL,

            status TEXT NOT NULL DEFAULT 'polled'
                CHECK (status IN ('polled', 'processing', 'processed', 'failed', 'dead_letter')),
            attempt_count INTEGER NOT NULL DEFAULT 1,
            max_attempts INTEGER NOT NULL DEFAULT 5,
            expires_at TEXT NOT NULL,
            last_error TEXT,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            processed_at TEXT,

            UNIQUE (connection_id, source_item_id),
            FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE,
            FOREIGN KEY (connection_id) REFERENCES connections(id) ON DELETE CASCADE
        )
    """)

    # Orphan sweep: live statuses past their expiry
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_intake_leases_expiry
        ON intake_leases (status, expires_at)
    """)

    # Per-tenant queue depth and dead-letter counts
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_intake_leases_tenant_status
        ON intake_leases (tenant_id, status)
    """)

    conn.commit()
