"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- Tenants, polling connections and their health
- Vendors and persisted invoices
- Intake leases (exactly-once claims)
- Processing logs (audit trail)
- Pipeline alerts

Enforces uniqueness on (connection_id, source_item_id) and
(tenant_id, normalized vendor name).
"""

from .sqlite_store import (
    AlertRecord,
    AlertSeverity,
    AlertType,
    ConnectionRecord,
    InvoiceRecord,
    InvoiceStatus,
    LeaseRecord,
    LeaseStatus,
    LogStatus,
    PipelineStatus,
    ProcessingLogRecord,
    StateStore,
    TenantRecord,
    VendorRecord,
    parse_iso,
    to_iso,
    utc_now,
)

__all__ = [
    "AlertRecord",
    "AlertSeverity",
    "AlertType",
    "ConnectionRecord",
    "InvoiceRecord",
    "InvoiceStatus",
    "LeaseRecord",
    "LeaseStatus",
    "LogStatus",
    "PipelineStatus",
    "ProcessingLogRecord",
    "StateStore",
    "TenantRecord",
    "VendorRecord",
    "parse_iso",
    "to_iso",
    "utc_now",
]
