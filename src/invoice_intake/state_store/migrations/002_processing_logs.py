"""
Migration 002: Processing log (audit trail) table.

One row per pipeline run, updated in place as the run advances.
- step: last successfully completed step
- failed_step: the step that was in flight when the run failed
"""

import sqlite3

VERSION = 2
NAME = "processing_logs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the processing_logs table."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS processing_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            tenant_id INTEGER NOT NULL,
            lease_id INTEGER,
            invoice_id INTEGER,

            status TEXT NOT NULL CHECK (status IN ('started', 'success', 'error')),
            step TEXT NOT NULL,
            failed_step TEXT,

            input_json TEXT,
            output_json TEXT,
            error_message TEXT,
            duration_ms INTEGER,

            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,

            FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE,
            FOREIGN KEY (lease_id) REFERENCES intake_leases(id) ON DELETE SET NULL,
            FOREIGN KEY (invoice_id) REFERENCES invoices(id) ON DELETE SET NULL
        )
    """)

    # Error-rate window queries
    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_processing_logs_created
        ON processing_logs (created_at)
    """)

    cursor.execute("""
        CREATE INDEX IF NOT EXISTS idx_processing_logs_tenant_status
        ON processing_logs (tenant_id, status, created_at)
    """)

    conn.commit()
