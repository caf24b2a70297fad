"""
Migration runner for versioned database schema changes.

Migration modules live next to this file and are named {version}_{name}.py,
e.g. 001_intake_leases.py. Each one defines:
- VERSION: int
- NAME: str
- upgrade(conn: Connection) -> None

Migrations only move forward.
"""

import importlib
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "invoice_intake.state_store.migrations"


@dataclass
class Migration:
    """A loaded migration module."""

    version: int
    name: str
    upgrade: Callable[[sqlite3.Connection], None]

    @property
    def label(self) -> str:
        return f"{self.version:03d}_{self.name}"


def get_all_migrations() -> list[Migration]:
    """
    Load all migration modules, sorted by version.

    A module that fails to import is a broken install, so the error propagates.
    """
    migrations = []
    for py_file in sorted(Path(__file__).parent.glob("[0-9][0-9][0-9]_*.py")):
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{py_file.stem}")
        migrations.append(
            Migration(
                version=module.VERSION,
                name=module.NAME,
                upgrade=module.upgrade,
            )
        )

    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise RuntimeError(f"Duplicate migration versions: {versions}")

    return sorted(migrations, key=lambda m: m.version)


class MigrationRunner:
    """
    Applies pending migrations in version order.

    Applied versions are recorded in a `migrations` table.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TEXT NOT NULL
            )
        """
        )
        self.conn.commit()

    def get_applied_versions(self) -> set[int]:
        cursor = self.conn.execute("SELECT version FROM migrations")
        return {row[0] for row in cursor.fetchall()}

    def pending(self) -> list[Migration]:
        applied = self.get_applied_versions()
        return [m for m in get_all_migrations() if m.version not in applied]

    def apply(self, migration: Migration) -> None:
        """Apply one migration and record it; roll back on failure."""
        logger.info("Applying migration %s", migration.label)
        try:
            migration.upgrade(self.conn)
            applied_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            self.conn.execute(
                "INSERT INTO migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, applied_at),
            )
            self.conn.commit()
        except Exception as e:
            self.conn.rollback()
            logger.error(f"Migration {migration.label} failed: {e}")
            raise

    def run_pending(self) -> list[int]:
        """
        Apply every pending migration.

        Returns:
            Versions applied by this call
        """
        applied_versions = []
        for migration in self.pending():
            self.apply(migration)
            applied_versions.append(migration.version)

        if applied_versions:
            logger.info(f"Applied {len(applied_versions)} migrations: {applied_versions}")
        else:
            logger.debug("No pending migrations")

        return applied_versions
