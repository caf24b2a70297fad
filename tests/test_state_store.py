"""Tests for state store."""

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from invoice_intake.state_store import (
    AlertSeverity,
    AlertType,
    InvoiceStatus,
    LogStatus,
    PipelineStatus,
    StateStore,
    parse_iso,
    to_iso,
)
from invoice_intake.state_store.migrations import MigrationRunner, get_all_migrations


class TestTimestamps:
    """Tests for timestamp helpers."""

    def test_to_iso_fixed_precision(self):
        stamp = to_iso(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        assert stamp == "2024-01-02T03:04:05.000000Z"

    def test_to_iso_naive_is_utc(self):
        assert to_iso(datetime(2024, 1, 2)) == "2024-01-02T00:00:00.000000Z"

    def test_to_iso_converts_offsets(self):
        plus_ten = timezone(timedelta(hours=10))
        assert to_iso(datetime(2024, 1, 2, 10, tzinfo=plus_ten)) == "2024-01-02T00:00:00.000000Z"

    def test_round_trip(self, now):
        assert parse_iso(to_iso(now)) == now
        assert parse_iso(None) is None

    def test_strings_sort_chronologically(self, now):
        earlier = to_iso(now)
        later = to_iso(now + timedelta(microseconds=1))
        assert earlier < later


class TestMigrations:
    """Tests for schema migrations."""

    def test_all_migrations_applied(self, store):
        conn = sqlite3.connect(store.db_path)
        try:
            runner = MigrationRunner(conn)
            assert runner.get_applied_versions() == {m.version for m in get_all_migrations()}
            assert runner.pending() == []
        finally:
            conn.close()

    def test_run_pending_noop_when_current(self, store):
        conn = sqlite3.connect(store.db_path)
        try:
            runner = MigrationRunner(conn)
            assert runner.run_pending() == []
        finally:
            conn.close()

    def test_versions_are_ordered(self):
        versions = [m.version for m in get_all_migrations()]
        assert versions == sorted(versions)
        assert versions[:3] == [1, 2, 3]

    def test_reopen_is_idempotent(self, temp_db):
        StateStore(temp_db)
        store = StateStore(temp_db)
        assert store.create_tenant("Reopened") > 0


class TestTenantsAndConnections:
    """Tests for tenant and connection records."""

    def test_create_tenant(self, store):
        tenant_id = store.create_tenant("Harbour Accounting")
        tenant = store.get_tenant(tenant_id)
        assert tenant.slug == "harbour-accounting"
        assert tenant.pipeline_status == PipelineStatus.UNKNOWN
        assert tenant.last_successful_poll is None

    def test_duplicate_slug_rejected(self, store):
        store.create_tenant("Acme", slug="acme")
        with pytest.raises(sqlite3.IntegrityError):
            store.create_tenant("Acme Two", slug="acme")

    def test_pipeline_status_only_changes_once(self, store, tenant_id, now):
        assert store.update_tenant_pipeline_status(tenant_id, PipelineStatus.HEALTHY, now)
        assert not store.update_tenant_pipeline_status(tenant_id, PipelineStatus.HEALTHY, now)
        tenant = store.get_tenant(tenant_id)
        assert tenant.pipeline_status == PipelineStatus.HEALTHY
        assert tenant.pipeline_status_updated_at == to_iso(now)

    def test_tenants_with_active_connections(self, store, tenant_id, connection_id):
        idle = store.create_tenant("Idle Books")
        assert [t.id for t in store.list_tenants_with_active_connections()] == [tenant_id]
        store.set_connection_active(connection_id, False)
        assert store.list_tenants_with_active_connections() == []
        assert {t.id for t in store.list_tenants()} == {tenant_id, idle}

    def test_poll_failure_counters(self, store, connection_id, now):
        store.record_poll_failure(connection_id, "auth expired", now)
        store.record_poll_failure(connection_id, "auth expired", now)
        conn = store.get_connection(connection_id)
        assert conn.consecutive_failures == 2
        assert conn.poll_error_count == 2
        assert conn.last_poll_status == "error"
        assert conn.last_poll_error == "auth expired"

        store.record_poll_success(connection_id, now)
        conn = store.get_connection(connection_id)
        assert conn.consecutive_failures == 0
        assert conn.poll_error_count == 2
        assert conn.last_poll_error is None

    def test_failing_connections_strictly_above_threshold(self, store, connection_id, now):
        for _ in range(5):
            store.record_poll_failure(connection_id, "boom", now)
        assert store.list_failing_connections(5) == []
        store.record_poll_failure(connection_id, "boom", now)
        assert [c.id for c in store.list_failing_connections(5)] == [connection_id]


class TestVendorsAndInvoices:
    """Tests for vendor and invoice persistence."""

    def test_upsert_vendor_keeps_known_contact(self, store, tenant_id):
        first = store.upsert_vendor(tenant_id, "Acme", "acme", contact={"email": "a@acme.example"})
        second = store.upsert_vendor(
            tenant_id, "ACME Pty Ltd", "acme", contact={"email": None, "phone": "555-0100"}
        )
        vendor = store.find_vendor(tenant_id, "acme")
        assert first == second == vendor.id
        assert vendor.name == "Acme"
        assert vendor.contact["email"] == "a@acme.example"
        assert vendor.contact["phone"] == "555-0100"

    def test_vendors_scoped_per_tenant(self, store, tenant_id):
        other = store.create_tenant("Other Books")
        assert store.upsert_vendor(tenant_id, "Acme", "acme") != store.upsert_vendor(
            other, "Acme", "acme"
        )

    def test_default_category_not_overwritten(self, store, tenant_id):
        vendor_id = store.upsert_vendor(tenant_id, "Acme", "acme", default_category="Consulting")
        store.upsert_vendor(tenant_id, "Acme", "acme", default_category="Travel")
        assert store.find_vendor(tenant_id, "acme").default_category == "Consulting"
        assert store.set_vendor_default_category(tenant_id, vendor_id, "Software")
        assert store.find_vendor(tenant_id, "acme").default_category == "Software"

    def test_invoice_round_trip(self, store, tenant_id):
        vendor_id = store.upsert_vendor(tenant_id, "Acme", "acme")
        invoice_id = store.insert_invoice(
            tenant_id,
            vendor_id=vendor_id,
            document_type="invoice",
            status=InvoiceStatus.FLAGGED,
            invoice_number="INV-1",
            subtotal=Decimal("90.00"),
            tax=Decimal("9.00"),
            total=Decimal("99.00"),
            line_items=[{"description": "Widget", "total": "90.00"}],
            validation_errors=["currency is required"],
        )
        record = store.get_invoice(tenant_id, invoice_id)
        assert record.total == Decimal("99.00")
        assert record.status == InvoiceStatus.FLAGGED
        assert record.line_items == [{"description": "Widget", "total": "90.00"}]
        assert record.validation_errors == ["currency is required"]
        assert record.is_valid is False

    def test_invoice_lookup_is_tenant_scoped(self, store, tenant_id):
        other = store.create_tenant("Other Books")
        invoice_id = store.insert_invoice(
            other,
            vendor_id=None,
            document_type="invoice",
            status=InvoiceStatus.PENDING,
            invoice_number="INV-1",
        )
        assert store.get_invoice(tenant_id, invoice_id) is None
        assert not store.invoice_number_exists(tenant_id, "INV-1")
        assert store.invoice_number_exists(other, "INV-1")

    def test_document_type_constrained(self, store, tenant_id):
        with pytest.raises(sqlite3.IntegrityError):
            store.insert_invoice(
                tenant_id, vendor_id=None, document_type="other", status=InvoiceStatus.PENDING
            )


class TestProcessingLogs:
    """Tests for the audit trail."""

    def test_create_and_update(self, store, tenant_id):
        log_id = store.create_processing_log(tenant_id, {"email_subject": "Invoice"})
        log = store.get_processing_log(log_id)
        assert log.status == LogStatus.STARTED
        assert log.step == "started"
        assert log.input == {"email_subject": "Invoice"}
        assert log.output is None

        store.update_processing_log(
            log_id,
            step="extract_done",
            status=LogStatus.ERROR,
            failed_step="verify",
            error_message="timed out",
            output={"total": Decimal("10.00")},
            duration_ms=1200,
        )
        log = store.get_processing_log(log_id)
        assert log.step == "extract_done"
        assert log.failed_step == "verify"
        assert log.error_message == "timed out"
        assert log.output == {"total": "10.00"}
        assert log.duration_ms == 1200

    def test_partial_update_keeps_other_fields(self, store, tenant_id):
        log_id = store.create_processing_log(tenant_id, {})
        store.update_processing_log(log_id, output={"a": 1})
        store.update_processing_log(log_id, step="classify")
        log = store.get_processing_log(log_id)
        assert log.output == {"a": 1}
        assert log.step == "classify"

    def test_count_since(self, store, tenant_id):
        since = datetime.now(timezone.utc) - timedelta(minutes=5)
        for status in (LogStatus.SUCCESS, LogStatus.ERROR, LogStatus.ERROR):
            log_id = store.create_processing_log(tenant_id, {})
            store.update_processing_log(log_id, status=status)
        assert store.count_processing_logs_since(since) == (3, 2)
        assert store.count_errors_by_tenant_since(since) == {tenant_id: 2}
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        assert store.count_processing_logs_since(future) == (0, 0)


class TestAlerts:
    """Tests for the alert log."""

    def test_insert_and_acknowledge(self, store, tenant_id, now):
        alert_id = store.insert_alert(
            AlertType.PIPELINE_DOWN,
            AlertSeverity.CRITICAL,
            "Harbour Accounting: No successful poll in 150 minutes",
            tenant_id=tenant_id,
            details={"minutes": 150},
            now=now,
        )
        alert = store.get_alert(alert_id)
        assert alert.acknowledged is False
        assert alert.details == {"minutes": 150}
        assert alert.created_at == to_iso(now)

        assert store.acknowledge_alert(alert_id, "ops", now)
        assert not store.acknowledge_alert(alert_id, "ops", now)
        alert = store.get_alert(alert_id)
        assert alert.acknowledged_by == "ops"

    def test_recent_alerts_unacknowledged_first(self, store, tenant_id, now):
        first = store.insert_alert(
            AlertType.POLL_FAILURE, AlertSeverity.WARNING, "old", tenant_id=tenant_id, now=now
        )
        second = store.insert_alert(
            AlertType.POLL_FAILURE,
            AlertSeverity.WARNING,
            "new",
            tenant_id=tenant_id,
            now=now + timedelta(minutes=1),
        )
        store.acknowledge_alert(second, "ops", now)
        assert [a.id for a in store.list_recent_alerts(tenant_id)] == [first, second]
        assert store.count_alerts(AlertType.POLL_FAILURE) == 2
        assert store.count_alerts(AlertType.PIPELINE_DOWN) == 0
