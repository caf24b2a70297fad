"""
SQLite-based state store implementation.

Tables:
- tenants: Tenants and their pipeline health status
- connections: Polling connections (one intake source each) and poll health
- vendors: Vendors per tenant, keyed by normalized name
- invoices: Persisted invoice/expense records
- intake_leases: Per-source-item lease state (migration 001)
- processing_logs: Audit trail, one row per pipeline run (migration 002)
- pipeline_alerts: Append-only alert log (migration 003)

Every query on a multi-tenant table filters by tenant_id when it is
scoped to one tenant. Timestamps are UTC ISO-8601 strings with a Z suffix
and fixed microsecond precision so they compare correctly as text.
"""

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Format a datetime as a sortable UTC timestamp string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal_or_none(value: Any) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _json_or_default(value: str | None, default: Any) -> Any:
    return json.loads(value) if value else default


class LeaseStatus(str, Enum):
    """Status of an intake lease."""

    POLLED = "polled"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


# Statuses that hold the item while their lease is unexpired
LIVE_STATUSES = (LeaseStatus.POLLED.value, LeaseStatus.PROCESSING.value)


class LogStatus(str, Enum):
    """Status of a processing log (audit trail) record."""

    STARTED = "started"
    SUCCESS = "success"
    ERROR = "error"


class PipelineStatus(str, Enum):
    """Per-tenant pipeline health."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class AlertType(str, Enum):
    POLL_FAILURE = "poll_failure"
    PROCESS_FAILURE = "process_failure"
    HIGH_ERROR_RATE = "high_error_rate"
    ORPHANED_EMAILS = "orphaned_emails"
    CONNECTION_EXPIRED = "connection_expired"
    DEAD_LETTER_THRESHOLD = "dead_letter_threshold"
    PIPELINE_DOWN = "pipeline_down"
    PIPELINE_RECOVERED = "pipeline_recovered"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class InvoiceStatus(str, Enum):
    """Status of a persisted invoice record."""

    PENDING = "pending"  # passed validation, awaiting approval
    FLAGGED = "flagged"  # validation errors, needs review
    APPROVED = "approved"
    REJECTED = "rejected"
    SYNCED = "synced"
    ERROR = "error"
    DELETED = "deleted"


@dataclass
class TenantRecord:
    """A tenant and its pipeline health."""

    id: int
    name: str
    slug: str
    is_active: bool
    pipeline_status: PipelineStatus
    pipeline_status_updated_at: str | None
    last_successful_poll: str | None
    last_successful_process: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TenantRecord":
        return cls(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            is_active=bool(row["is_active"]),
            pipeline_status=PipelineStatus(row["pipeline_status"]),
            pipeline_status_updated_at=row["pipeline_status_updated_at"],
            last_successful_poll=row["last_successful_poll"],
            last_successful_process=row["last_successful_process"],
            created_at=row["created_at"],
        )


@dataclass
class ConnectionRecord:
    """A polling connection and its poll health."""

    id: int
    tenant_id: int
    name: str
    source_type: str
    source_uri: str
    is_active: bool
    last_poll_at: str | None
    last_poll_status: str | None
    last_poll_error: str | None
    consecutive_failures: int
    poll_error_count: int
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ConnectionRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            source_type=row["source_type"],
            source_uri=row["source_uri"],
            is_active=bool(row["is_active"]),
            last_poll_at=row["last_poll_at"],
            last_poll_status=row["last_poll_status"],
            last_poll_error=row["last_poll_error"],
            consecutive_failures=row["consecutive_failures"],
            poll_error_count=row["poll_error_count"],
            created_at=row["created_at"],
        )


VENDOR_CONTACT_COLUMNS = (
    "email",
    "phone",
    "address_line1",
    "address_line2",
    "city",
    "state",
    "postal_code",
    "country",
    "website",
    "tax_id",
)


@dataclass
class VendorRecord:
    """A vendor within one tenant."""

    id: int
    tenant_id: int
    name: str
    normalized_name: str
    default_category: str | None
    contact: dict[str, str | None] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "VendorRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            normalized_name=row["normalized_name"],
            default_category=row["default_category"],
            contact={col: row[col] for col in VENDOR_CONTACT_COLUMNS},
        )


@dataclass
class InvoiceRecord:
    """A persisted invoice or expense."""

    id: int
    tenant_id: int
    vendor_id: int | None
    document_type: str
    invoice_number: str | None
    invoice_date: str | None
    due_date: str | None
    currency: str | None
    subtotal: Decimal | None
    tax: Decimal | None
    total: Decimal | None
    line_items: list[dict]
    category: str | None
    status: InvoiceStatus
    is_valid: bool
    validation_errors: list[str]
    validation_warnings: list[str]
    duplicate_of: int | None
    duplicate_confidence: float | None
    source_item_id: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "InvoiceRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            vendor_id=row["vendor_id"],
            document_type=row["document_type"],
            invoice_number=row["invoice_number"],
            invoice_date=row["invoice_date"],
            due_date=row["due_date"],
            currency=row["currency"],
            subtotal=_decimal_or_none(row["subtotal"]),
            tax=_decimal_or_none(row["tax"]),
            total=_decimal_or_none(row["total"]),
            line_items=_json_or_default(row["line_items"], []),
            category=row["category"],
            status=InvoiceStatus(row["status"]),
            is_valid=bool(row["is_valid"]),
            validation_errors=_json_or_default(row["validation_errors"], []),
            validation_warnings=_json_or_default(row["validation_warnings"], []),
            duplicate_of=row["duplicate_of"],
            duplicate_confidence=row["duplicate_confidence"],
            source_item_id=row["source_item_id"],
            created_at=row["created_at"],
        )


@dataclass
class LeaseRecord:
    """Intake lease for one source item on one connection."""

    id: int
    tenant_id: int
    connection_id: int
    source_item_id: str
    status: LeaseStatus
    attempt_count: int
    max_attempts: int
    expires_at: str
    last_error: str | None
    created_at: str
    updated_at: str
    processed_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LeaseRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            connection_id=row["connection_id"],
            source_item_id=row["source_item_id"],
            status=LeaseStatus(row["status"]),
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            expires_at=row["expires_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            processed_at=row["processed_at"],
        )

    @property
    def is_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts

    def is_claimable(self, now: datetime | None = None) -> bool:
        """Whether a poller may try to acquire this item again."""
        return self.status != LeaseStatus.DEAD_LETTER and not self.is_live(now)

    def is_live(self, now: datetime | None = None) -> bool:
        """Whether this lease currently blocks a new claim."""
        if self.status == LeaseStatus.PROCESSED:
            return True
        if self.status.value in LIVE_STATUSES:
            return self.expires_at > to_iso(now or utc_now())
        return False


@dataclass
class ProcessingLogRecord:
    """Audit trail record of one pipeline run."""

    id: int
    tenant_id: int
    lease_id: int | None
    invoice_id: int | None
    status: LogStatus
    step: str
    failed_step: str | None
    input: dict[str, Any] | None
    output: dict[str, Any] | None
    error_message: str | None
    duration_ms: int | None
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ProcessingLogRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            lease_id=row["lease_id"],
            invoice_id=row["invoice_id"],
            status=LogStatus(row["status"]),
            step=row["step"],
            failed_step=row["failed_step"],
            input=_json_or_default(row["input_json"], None),
            output=_json_or_default(row["output_json"], None),
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class AlertRecord:
    """Entry in the pipeline alert log."""

    id: int
    tenant_id: int | None
    connection_id: int | None
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: dict[str, Any]
    acknowledged: bool
    acknowledged_by: str | None
    acknowledged_at: str | None
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AlertRecord":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            connection_id=row["connection_id"],
            alert_type=AlertType(row["alert_type"]),
            severity=AlertSeverity(row["severity"]),
            message=row["message"],
            details=_json_or_default(row["details_json"], {}),
            acknowledged=bool(row["acknowledged"]),
            acknowledged_by=row["acknowledged_by"],
            acknowledged_at=row["acknowledged_at"],
            created_at=row["created_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "connection_id": self.connection_id,
            "alert_type": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "acknowledged": self.acknowledged,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at,
            "created_at": self.created_at,
        }


class StateStore:
    """
    SQLite-based state store for the intake pipeline.

    Provides persistent tracking of:
    - Tenants, connections and their health
    - Vendors and invoices
    - Intake leases
    - Processing logs (audit trail)
    - Pipeline alerts

    Every call opens its own connection, so the store can be shared between
    the poller and the health monitor. Each mutation is a single statement
    or a short transaction guarded by a uniqueness constraint or a status
    condition in its WHERE clause.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize base schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tenants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    source_type TEXT NOT NULL,
                    source_uri TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS vendors (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    normalized_name TEXT NOT NULL,
                    default_category TEXT,
                    email TEXT,
                    phone TEXT,
                    address_line1 TEXT,
                    address_line2 TEXT,
                    city TEXT,
                    state TEXT,
                    postal_code TEXT,
                    country TEXT,
                    website TEXT,
                    tax_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (tenant_id, normalized_name),
                    FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS invoices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id INTEGER NOT NULL,
                    vendor_id INTEGER,
                    document_type TEXT NOT NULL DEFAULT 'invoice'
                        CHECK (document_type IN ('invoice', 'expense')),

                    -- Source info
                    source_item_id TEXT,
                    source_subject TEXT,
                    source_from TEXT,

                    -- Extracted data
                    invoice_number TEXT,
                    invoice_date TEXT,
                    due_date TEXT,
                    currency TEXT,
                    subtotal TEXT,  -- Decimal as string
                    tax TEXT,
                    total TEXT,
                    line_items TEXT,  -- JSON array
                    category TEXT,
                    raw_text TEXT,

                    -- Classification
                    confidence REAL,
                    signals TEXT,  -- JSON array

                    -- Validation
                    is_valid INTEGER NOT NULL DEFAULT 0,
                    validation_errors TEXT,  -- JSON array
                    validation_warnings TEXT,  -- JSON array

                    -- Duplicate tracking
                    duplicate_of INTEGER,
                    duplicate_confidence REAL,

                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending', 'flagged', 'approved', 'rejected',
                                          'synced', 'error', 'deleted')),
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (tenant_id) REFERENCES tenants(id) ON DELETE CASCADE,
                    FOREIGN KEY (vendor_id) REFERENCES vendors(id),
                    FOREIGN KEY (duplicate_of) REFERENCES invoices(id)
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_connections_tenant ON connections(tenant_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_invoices_tenant_number "
                "ON invoices(tenant_id, invoice_number)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_invoices_duplicate_lookup "
                "ON invoices(tenant_id, vendor_id, invoice_date)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # Tenant methods

    def create_tenant(self, name: str, slug: str | None = None) -> int:
        """Create a tenant. Returns the tenant ID."""
        now = to_iso(utc_now())
        slug = slug or "-".join(name.lower().split())

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO tenants (name, slug, created_at, updated_at)
                VALUES (?, ?, ?, ?)
            """,
                (name, slug, now, now),
            )
            return cursor.lastrowid or 0

    def get_tenant(self, tenant_id: int) -> TenantRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
            return TenantRecord.from_row(row) if row else None

    def list_tenants(self, active_only: bool = True) -> list[TenantRecord]:
        query = "SELECT * FROM tenants"
        if active_only:
            query += " WHERE is_active = 1"
        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id").fetchall()
            return [TenantRecord.from_row(row) for row in rows]

    def list_tenants_with_active_connections(self) -> list[TenantRecord]:
        """Active tenants that own at least one active connection."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM tenants t
                WHERE t.is_active = 1
                  AND EXISTS (
                      SELECT 1 FROM connections c
                      WHERE c.tenant_id = t.id AND c.is_active = 1
                  )
                ORDER BY t.id
            """
            ).fetchall()
            return [TenantRecord.from_row(row) for row in rows]

    def update_tenant_pipeline_status(
        self, tenant_id: int, status: PipelineStatus, now: datetime | None = None
    ) -> bool:
        """
        Set the tenant's pipeline status if it differs from the stored one.

        Returns True only when the status actually changed.
        """
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE tenants
                SET pipeline_status = ?, pipeline_status_updated_at = ?, updated_at = ?
                WHERE id = ? AND pipeline_status != ?
            """,
                (status.value, stamp, stamp, tenant_id, status.value),
            )
            return cursor.rowcount > 0

    def record_tenant_poll_success(self, tenant_id: int, now: datetime | None = None) -> None:
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                "UPDATE tenants SET last_successful_poll = ?, updated_at = ? WHERE id = ?",
                (stamp, stamp, tenant_id),
            )

    def record_tenant_process_success(self, tenant_id: int, now: datetime | None = None) -> None:
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                "UPDATE tenants SET last_successful_process = ?, updated_at = ? WHERE id = ?",
                (stamp, stamp, tenant_id),
            )

    # Connection methods

    def create_connection(
        self,
        tenant_id: int,
        name: str,
        source_type: str,
        source_uri: str,
    ) -> int:
        """Create a polling connection. Returns the connection ID."""
        now = to_iso(utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO connections (tenant_id, name, source_type, source_uri, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (tenant_id, name, source_type, source_uri, now),
            )
            return cursor.lastrowid or 0

    def get_connection(self, connection_id: int) -> ConnectionRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM connections WHERE id = ?", (connection_id,)
            ).fetchone()
            return ConnectionRecord.from_row(row) if row else None

    def list_connections(
        self, tenant_id: int | None = None, active_only: bool = True
    ) -> list[ConnectionRecord]:
        clauses = []
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if active_only:
            clauses.append("is_active = 1")
        query = "SELECT * FROM connections"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)

        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [ConnectionRecord.from_row(row) for row in rows]

    def set_connection_active(self, connection_id: int, is_active: bool) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE connections SET is_active = ? WHERE id = ?",
                (1 if is_active else 0, connection_id),
            )
            return cursor.rowcount > 0

    def record_poll_success(self, connection_id: int, now: datetime | None = None) -> None:
        """Mark a successful poll: resets the consecutive failure counter."""
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE connections
                SET last_poll_at = ?, last_poll_status = 'success',
                    last_poll_error = NULL, consecutive_failures = 0
                WHERE id = ?
            """,
                (stamp, connection_id),
            )

    def record_poll_failure(
        self, connection_id: int, error: str, now: datetime | None = None
    ) -> None:
        """Mark a failed poll: increments failure counters."""
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE connections
                SET last_poll_at = ?, last_poll_status = 'error', last_poll_error = ?,
                    consecutive_failures = consecutive_failures + 1,
                    poll_error_count = poll_error_count + 1
                WHERE id = ?
            """,
                (stamp, error, connection_id),
            )

    def list_failing_connections(self, threshold: int) -> list[ConnectionRecord]:
        """Active connections with more than `threshold` consecutive failures."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM connections
                WHERE is_active = 1 AND consecutive_failures > ?
                ORDER BY id
            """,
                (threshold,),
            ).fetchall()
            return [ConnectionRecord.from_row(row) for row in rows]

    # Vendor methods

    def find_vendor(self, tenant_id: int, normalized_name: str) -> VendorRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM vendors WHERE tenant_id = ? AND normalized_name = ?",
                (tenant_id, normalized_name),
            ).fetchone()
            return VendorRecord.from_row(row) if row else None

    def upsert_vendor(
        self,
        tenant_id: int,
        name: str,
        normalized_name: str,
        contact: dict[str, str | None] | None = None,
        default_category: str | None = None,
    ) -> int:
        """
        Insert a vendor or fill in missing contact details on the existing one.

        Known contact values are never overwritten with NULL. Returns the
        vendor ID.
        """
        now = to_iso(utc_now())
        contact = contact or {}
        values = [contact.get(col) for col in VENDOR_CONTACT_COLUMNS]
        columns = ", ".join(VENDOR_CONTACT_COLUMNS)
        placeholders = ", ".join("?" for _ in VENDOR_CONTACT_COLUMNS)
        updates = ", ".join(
            f"{col} = COALESCE(excluded.{col}, vendors.{col})" for col in VENDOR_CONTACT_COLUMNS
        )

        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO vendors
                (tenant_id, name, normalized_name, default_category, {columns},
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, {placeholders}, ?, ?)
                ON CONFLICT(tenant_id, normalized_name) DO UPDATE SET
                    {updates},
                    default_category = COALESCE(vendors.default_category,
                                                excluded.default_category),
                    updated_at = excluded.updated_at
            """,
                (tenant_id, name, normalized_name, default_category, *values, now, now),
            )
            row = conn.execute(
                "SELECT id FROM vendors WHERE tenant_id = ? AND normalized_name = ?",
                (tenant_id, normalized_name),
            ).fetchone()
            return row["id"]

    def set_vendor_default_category(
        self, tenant_id: int, vendor_id: int, category: str | None
    ) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE vendors SET default_category = ? WHERE tenant_id = ? AND id = ?",
                (category, tenant_id, vendor_id),
            )
            return cursor.rowcount > 0

    # Invoice methods

    def insert_invoice(
        self,
        tenant_id: int,
        *,
        vendor_id: int | None,
        document_type: str,
        status: InvoiceStatus,
        invoice_number: str | None = None,
        invoice_date: str | None = None,
        due_date: str | None = None,
        currency: str | None = None,
        subtotal: Decimal | None = None,
        tax: Decimal | None = None,
        total: Decimal | None = None,
        line_items: list[dict] | None = None,
        category: str | None = None,
        source_item_id: str | None = None,
        source_subject: str | None = None,
        source_from: str | None = None,
        raw_text: str | None = None,
        confidence: float | None = None,
        signals: list[str] | None = None,
        is_valid: bool = False,
        validation_errors: list[str] | None = None,
        validation_warnings: list[str] | None = None,
        duplicate_of: int | None = None,
        duplicate_confidence: float | None = None,
    ) -> int:
        """Persist an invoice record. Returns the invoice ID."""
        now = to_iso(utc_now())

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO invoices
                (tenant_id, vendor_id, document_type, source_item_id, source_subject,
                 source_from, invoice_number, invoice_date, due_date, currency, subtotal,
                 tax, total, line_items, category, raw_text, confidence, signals, is_valid,
                 validation_errors, validation_warnings, duplicate_of, duplicate_confidence,
                 status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?,
                        ?, ?, ?)
            """,
                (
                    tenant_id,
                    vendor_id,
                    document_type,
                    source_item_id,
                    source_subject,
                    source_from,
                    invoice_number,
                    invoice_date,
                    due_date,
                    currency,
                    str(subtotal) if subtotal is not None else None,
                    str(tax) if tax is not None else None,
                    str(total) if total is not None else None,
                    json.dumps(line_items or []),
                    category,
                    raw_text,
                    confidence,
                    json.dumps(signals or []),
                    1 if is_valid else 0,
                    json.dumps(validation_errors or []),
                    json.dumps(validation_warnings or []),
                    duplicate_of,
                    duplicate_confidence,
                    status.value,
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def get_invoice(self, tenant_id: int, invoice_id: int) -> InvoiceRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM invoices WHERE tenant_id = ? AND id = ?",
                (tenant_id, invoice_id),
            ).fetchone()
            return InvoiceRecord.from_row(row) if row else None

    def list_invoices(self, tenant_id: int, limit: int = 50) -> list[InvoiceRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM invoices WHERE tenant_id = ? ORDER BY id DESC LIMIT ?",
                (tenant_id, limit),
            ).fetchall()
            return [InvoiceRecord.from_row(row) for row in rows]

    def find_invoices_by_number(
        self, tenant_id: int, invoice_number: str, vendor_id: int | None = None
    ) -> list[InvoiceRecord]:
        """Non-deleted invoices with this exact number (optionally for one vendor)."""
        query = """
            SELECT * FROM invoices
            WHERE tenant_id = ? AND invoice_number = ? AND status != 'deleted'
        """
        params: list[Any] = [tenant_id, invoice_number]
        if vendor_id is not None:
            query += " AND vendor_id = ?"
            params.append(vendor_id)

        with self._transaction() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [InvoiceRecord.from_row(row) for row in rows]

    def find_invoices_in_window(
        self, tenant_id: int, vendor_id: int, start_date: str, end_date: str
    ) -> list[InvoiceRecord]:
        """Non-deleted invoices for a vendor dated within [start_date, end_date]."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM invoices
                WHERE tenant_id = ? AND vendor_id = ? AND status != 'deleted'
                  AND invoice_date IS NOT NULL
                  AND invoice_date >= ? AND invoice_date <= ?
                ORDER BY id
            """,
                (tenant_id, vendor_id, start_date, end_date),
            ).fetchall()
            return [InvoiceRecord.from_row(row) for row in rows]

    def invoice_number_exists(self, tenant_id: int, invoice_number: str) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM invoices
                WHERE tenant_id = ? AND invoice_number = ? AND status != 'deleted'
                LIMIT 1
            """,
                (tenant_id, invoice_number),
            ).fetchone()
            return row is not None

    # Intake lease methods

    def get_lease(self, lease_id: int) -> LeaseRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM intake_leases WHERE id = ?", (lease_id,)).fetchone()
            return LeaseRecord.from_row(row) if row else None

    def get_lease_by_item(self, connection_id: int, source_item_id: str) -> LeaseRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM intake_leases WHERE connection_id = ? AND source_item_id = ?",
                (connection_id, source_item_id),
            ).fetchone()
            return LeaseRecord.from_row(row) if row else None

    def get_leases_for_items(
        self, connection_id: int, source_item_ids: Iterable[str]
    ) -> dict[str, LeaseRecord]:
        """Existing leases for the given items, keyed by source item ID."""
        ids = list(dict.fromkeys(source_item_ids))
        if not ids:
            return {}

        result: dict[str, LeaseRecord] = {}
        with self._transaction() as conn:
            # Stay well below SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"""
                    SELECT * FROM intake_leases
                    WHERE connection_id = ? AND source_item_id IN ({placeholders})
                """,
                    (connection_id, *chunk),
                ).fetchall()
                for row in rows:
                    result[row["source_item_id"]] = LeaseRecord.from_row(row)
        return result

    def acquire_lease(
        self,
        tenant_id: int,
        connection_id: int,
        source_item_id: str,
        lease_minutes: int,
        max_attempts: int,
        now: datetime | None = None,
    ) -> LeaseRecord:
        """
        Claim a source item (atomic upsert on (connection_id, source_item_id)).

        - no row: insert polled, attempt_count=1
        - failed/dead_letter or expired polled/processing, budget left:
          attempt_count + 1, back to polled with a fresh expiry
        - failed or expired, budget exhausted: dead_letter, not claimed
        - live polled/processing: expiry refreshed only
        - processed: untouched

        Each branch is a single conditional statement; whichever poller
        commits first wins and the loser's statement matches no row.
        """
        current = now or utc_now()
        stamp = to_iso(current)
        expires = to_iso(current + timedelta(minutes=lease_minutes))
        key = (connection_id, source_item_id)

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO intake_leases
                (tenant_id, connection_id, source_item_id, status, attempt_count,
                 max_attempts, expires_at, created_at, updated_at)
                VALUES (?, ?, ?, 'polled', 1, ?, ?, ?, ?)
                ON CONFLICT(connection_id, source_item_id) DO NOTHING
            """,
                (tenant_id, connection_id, source_item_id, max_attempts, expires, stamp, stamp),
            )

            if cursor.rowcount == 0:
                retried = conn.execute(
                    """
                    UPDATE intake_leases
                    SET status = 'polled', attempt_count = attempt_count + 1,
                        last_error = NULL, expires_at = ?, updated_at = ?
                    WHERE connection_id = ? AND source_item_id = ?
                      AND attempt_count < max_attempts
                      AND (status IN ('failed', 'dead_letter')
                           OR (status IN ('polled', 'processing') AND expires_at <= ?))
                """,
                    (expires, stamp, *key, stamp),
                ).rowcount

                if retried == 0:
                    exhausted = conn.execute(
                        """
                        UPDATE intake_leases
                        SET status = 'dead_letter',
                            last_error = COALESCE(last_error, 'exceeded max attempts'),
                            updated_at = ?
                        WHERE connection_id = ? AND source_item_id = ?
                          AND attempt_count >= max_attempts
                          AND (status = 'failed'
                               OR (status IN ('polled', 'processing') AND expires_at <= ?))
                    """,
                        (stamp, *key, stamp),
                    ).rowcount

                    if exhausted == 0:
                        conn.execute(
                            """
                            UPDATE intake_leases
                            SET expires_at = ?, updated_at = ?
                            WHERE connection_id = ? AND source_item_id = ?
                              AND status IN ('polled', 'processing') AND expires_at > ?
                        """,
                            (expires, stamp, *key, stamp),
                        )

            row = conn.execute(
                "SELECT * FROM intake_leases WHERE connection_id = ? AND source_item_id = ?",
                key,
            ).fetchone()
            return LeaseRecord.from_row(row)

    def start_lease_processing(
        self, lease_id: int, lease_minutes: int, now: datetime | None = None
    ) -> bool:
        """
        Move a live polled lease to processing.

        Conditional on the row still being polled and unexpired, so exactly
        one of several concurrent callers gets True.
        """
        current = now or utc_now()
        stamp = to_iso(current)
        expires = to_iso(current + timedelta(minutes=lease_minutes))
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE intake_leases
                SET status = 'processing', expires_at = ?, updated_at = ?
                WHERE id = ? AND status = 'polled' AND expires_at > ?
            """,
                (expires, stamp, lease_id, stamp),
            )
            return cursor.rowcount > 0

    def mark_lease_processed(self, lease_id: int, now: datetime | None = None) -> bool:
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE intake_leases
                SET status = 'processed', last_error = NULL, processed_at = ?, updated_at = ?
                WHERE id = ? AND status != 'processed'
            """,
                (stamp, stamp, lease_id),
            )
            return cursor.rowcount > 0

    def mark_lease_failed(self, lease_id: int, error: str, now: datetime | None = None) -> bool:
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE intake_leases
                SET status = 'failed', last_error = ?, updated_at = ?
                WHERE id = ? AND status IN ('polled', 'processing')
            """,
                (error, stamp, lease_id),
            )
            return cursor.rowcount > 0

    def reset_leases(
        self,
        lease_ids: list[int],
        lease_minutes: int,
        tenant_id: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Reset failed/dead_letter leases to polled with a fresh attempt budget."""
        if not lease_ids:
            return 0

        current = now or utc_now()
        stamp = to_iso(current)
        expires = to_iso(current + timedelta(minutes=lease_minutes))
        placeholders = ", ".join("?" for _ in lease_ids)
        query = f"""
            UPDATE intake_leases
            SET status = 'polled', attempt_count = 1, last_error = NULL,
                expires_at = ?, updated_at = ?
            WHERE id IN ({placeholders}) AND status IN ('dead_letter', 'failed')
        """
        params: list[Any] = [expires, stamp, *lease_ids]
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)

        with self._transaction() as conn:
            return conn.execute(query, params).rowcount

    def reset_tenant_dead_letters(
        self,
        tenant_id: int,
        limit: int,
        lease_minutes: int,
        now: datetime | None = None,
    ) -> int:
        """Reset up to `limit` of a tenant's oldest dead-lettered leases."""
        current = now or utc_now()
        stamp = to_iso(current)
        expires = to_iso(current + timedelta(minutes=lease_minutes))
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE intake_leases
                SET status = 'polled', attempt_count = 1, last_error = NULL,
                    expires_at = ?, updated_at = ?
                WHERE id IN (
                    SELECT id FROM intake_leases
                    WHERE tenant_id = ? AND status = 'dead_letter'
                    ORDER BY updated_at ASC, id ASC
                    LIMIT ?
                )
            """,
                (expires, stamp, tenant_id, limit),
            )
            return cursor.rowcount

    def list_leases(
        self,
        tenant_id: int | None = None,
        status: LeaseStatus | None = None,
        limit: int = 100,
    ) -> list[LeaseRecord]:
        clauses = []
        params: list[Any] = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        query = "SELECT * FROM intake_leases"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY updated_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [LeaseRecord.from_row(row) for row in rows]

    def list_expired_leases(self, now: datetime | None = None) -> list[LeaseRecord]:
        """Polled/processing leases whose expiry has passed (orphans)."""
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM intake_leases
                WHERE status IN ('polled', 'processing') AND expires_at < ?
                ORDER BY expires_at ASC
            """,
                (stamp,),
            ).fetchall()
            return [LeaseRecord.from_row(row) for row in rows]

    def reclaim_lease(
        self,
        lease_id: int,
        new_status: LeaseStatus,
        last_error: str,
        now: datetime | None = None,
    ) -> bool:
        """
        Move an orphaned lease to failed or dead_letter.

        Only applies while the row is still live-status and expired, so a
        lease refreshed or finished since it was listed is left alone.
        """
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE intake_leases
                SET status = ?, last_error = ?, updated_at = ?
                WHERE id = ? AND status IN ('polled', 'processing') AND expires_at < ?
            """,
                (new_status.value, last_error, stamp, lease_id, stamp),
            )
            return cursor.rowcount > 0

    def promote_exhausted_failed_leases(
        self, last_error: str, now: datetime | None = None
    ) -> int:
        """Dead-letter failed leases that have used up their attempt budget."""
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE intake_leases
                SET status = 'dead_letter', last_error = ?, updated_at = ?
                WHERE status = 'failed' AND attempt_count >= max_attempts
            """,
                (last_error, stamp),
            )
            return cursor.rowcount

    def count_leases_by_tenant(self, statuses: Iterable[LeaseStatus]) -> dict[int, int]:
        values = [s.value for s in statuses]
        placeholders = ", ".join("?" for _ in values)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT tenant_id, COUNT(*) AS n FROM intake_leases
                WHERE status IN ({placeholders})
                GROUP BY tenant_id
            """,
                values,
            ).fetchall()
            return {row["tenant_id"]: row["n"] for row in rows}

    # Processing log methods

    def create_processing_log(
        self,
        tenant_id: int,
        input_data: dict[str, Any],
        lease_id: int | None = None,
        step: str = "started",
    ) -> int:
        """Open the audit record for a pipeline run. Returns the log ID."""
        now = to_iso(utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO processing_logs
                (tenant_id, lease_id, status, step, input_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    tenant_id,
                    lease_id,
                    LogStatus.STARTED.value,
                    step,
                    json.dumps(input_data, default=str),
                    now,
                    now,
                ),
            )
            return cursor.lastrowid or 0

    def update_processing_log(
        self,
        log_id: int,
        *,
        step: str | None = None,
        status: LogStatus | None = None,
        output: dict[str, Any] | None = None,
        failed_step: str | None = None,
        error_message: str | None = None,
        duration_ms: int | None = None,
        invoice_id: int | None = None,
    ) -> bool:
        """Update the given fields of an audit record in place."""
        fields: dict[str, Any] = {"updated_at": to_iso(utc_now())}
        if step is not None:
            fields["step"] = step
        if status is not None:
            fields["status"] = status.value
        if output is not None:
            fields["output_json"] = json.dumps(output, default=str)
        if failed_step is not None:
            fields["failed_step"] = failed_step
        if error_message is not None:
            fields["error_message"] = error_message
        if duration_ms is not None:
            fields["duration_ms"] = duration_ms
        if invoice_id is not None:
            fields["invoice_id"] = invoice_id

        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE processing_logs SET {assignments} WHERE id = ?",
                (*fields.values(), log_id),
            )
            return cursor.rowcount > 0

    def get_processing_log(self, log_id: int) -> ProcessingLogRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM processing_logs WHERE id = ?", (log_id,)
            ).fetchone()
            return ProcessingLogRecord.from_row(row) if row else None

    def list_processing_logs(
        self, tenant_id: int | None = None, limit: int = 50
    ) -> list[ProcessingLogRecord]:
        query = "SELECT * FROM processing_logs"
        params: list[Any] = []
        if tenant_id is not None:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [ProcessingLogRecord.from_row(row) for row in rows]

    def count_processing_logs_since(self, since: datetime) -> tuple[int, int]:
        """Total and errored pipeline runs created since `since`."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN status = 'error' THEN 1 ELSE 0 END), 0) AS errors
                FROM processing_logs
                WHERE created_at >= ?
            """,
                (to_iso(since),),
            ).fetchone()
            return row["total"], row["errors"]

    def count_errors_by_tenant_since(self, since: datetime) -> dict[int, int]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT tenant_id, COUNT(*) AS n FROM processing_logs
                WHERE status = 'error' AND created_at >= ?
                GROUP BY tenant_id
            """,
                (to_iso(since),),
            ).fetchall()
            return {row["tenant_id"]: row["n"] for row in rows}

    # Alert methods

    def insert_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        tenant_id: int | None = None,
        connection_id: int | None = None,
        details: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> int:
        """Append an alert. Returns the alert ID."""
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pipeline_alerts
                (tenant_id, connection_id, alert_type, severity, message, details_json,
                 created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    tenant_id,
                    connection_id,
                    alert_type.value,
                    severity.value,
                    message,
                    json.dumps(details or {}, default=str),
                    stamp,
                ),
            )
            return cursor.lastrowid or 0

    def get_alert(self, alert_id: int) -> AlertRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pipeline_alerts WHERE id = ?", (alert_id,)
            ).fetchone()
            return AlertRecord.from_row(row) if row else None

    def acknowledge_alert(
        self, alert_id: int, acknowledged_by: str, now: datetime | None = None
    ) -> bool:
        """Acknowledge an alert. Returns False if missing or already acknowledged."""
        stamp = to_iso(now or utc_now())
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE pipeline_alerts
                SET acknowledged = 1, acknowledged_by = ?, acknowledged_at = ?
                WHERE id = ? AND acknowledged = 0
            """,
                (acknowledged_by, stamp, alert_id),
            )
            return cursor.rowcount > 0

    def list_recent_alerts(
        self, tenant_id: int | None = None, limit: int = 50
    ) -> list[AlertRecord]:
        """Most recent alerts, unacknowledged first."""
        query = "SELECT * FROM pipeline_alerts"
        params: list[Any] = []
        if tenant_id is not None:
            query += " WHERE tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY acknowledged ASC, created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            return [AlertRecord.from_row(row) for row in rows]

    def count_alerts(self, alert_type: AlertType | None = None) -> int:
        query = "SELECT COUNT(*) FROM pipeline_alerts"
        params: list[Any] = []
        if alert_type is not None:
            query += " WHERE alert_type = ?"
            params.append(alert_type.value)
        with self._transaction() as conn:
            return conn.execute(query, params).fetchone()[0]
