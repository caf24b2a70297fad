"""Tests for duplicate detection."""

from decimal import Decimal

import pytest

from invoice_intake.duplicates import DuplicateDetector
from invoice_intake.run_cache import RunCache
from invoice_intake.schemas import ExtractedInvoice
from invoice_intake.state_store import InvoiceStatus


def candidate(**fields) -> ExtractedInvoice:
    values = {"vendor_name": "Acme", "currency": "AUD"}
    values.update(fields)
    if isinstance(values.get("total"), str):
        values["total"] = Decimal(values["total"])
    return ExtractedInvoice(**values)


class TestDuplicateDetector:
    """Tests for DuplicateDetector.find_duplicates."""

    @pytest.fixture
    def detector(self, store, config):
        return DuplicateDetector(store, config)

    def test_no_records(self, detector, tenant_id):
        result = detector.find_duplicates(
            tenant_id, candidate(invoice_number="INV-1", total="100.00", invoice_date="2024-01-10")
        )
        assert result.is_duplicate is False
        assert result.confidence == 0.0
        assert result.matches == []
        assert result.vendor_id is None

    def test_exact_reference_same_vendor(self, detector, store, tenant_id, save_invoice):
        existing = save_invoice(tenant_id, "Acme", "INV-1", "100.00", "2024-01-10")

        result = detector.find_duplicates(
            tenant_id, candidate(invoice_number="INV-1", total="100.00", invoice_date="2024-01-10")
        )

        assert result.is_duplicate is True
        assert result.confidence == 1.0
        assert result.is_definite
        assert result.strongest.record_id == existing
        # Tier 2 skips the record already matched by reference
        assert len(result.matches) == 1

    def test_same_total_three_days_apart(self, detector, store, tenant_id, save_invoice):
        existing = save_invoice(tenant_id, "Acme", None, "250.00", "2024-03-04")

        result = detector.find_duplicates(
            tenant_id, candidate(total="250.00", invoice_date="2024-03-01")
        )

        assert result.is_duplicate is True
        assert result.confidence == 0.80
        assert not result.is_definite
        assert result.reason == "Same vendor and total, dates 3 days apart"
        assert result.strongest.record_id == existing

    def test_same_total_same_date(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "250.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(total="250.00", invoice_date="2024-03-01")
        )
        assert result.confidence == 0.95

    def test_total_within_one_percent(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "1000.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(total="1009.00", invoice_date="2024-03-20")
        )
        assert result.confidence == 0.60
        assert result.is_duplicate is True

    def test_total_beyond_one_percent(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "1000.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(total="1011.00", invoice_date="2024-03-01")
        )
        assert result.is_duplicate is False

    def test_outside_window(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "250.00", "2024-01-01")
        result = detector.find_duplicates(
            tenant_id, candidate(total="250.00", invoice_date="2024-03-01")
        )
        assert result.matches == []

    def test_vendor_normalization(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "ACME Pty Ltd", None, "250.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(vendor_name="Acme, Inc.", total="250.00", invoice_date="2024-03-01")
        )
        assert result.confidence == 0.95

    def test_other_vendor_no_fuzzy_match(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Globex", None, "250.00", "2024-03-01")
        save_invoice(tenant_id, "Acme", None, "10.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(total="250.00", invoice_date="2024-03-01")
        )
        assert result.is_duplicate is False

    def test_unresolved_vendor_matches_tenant_wide(self, detector, store, tenant_id, save_invoice):
        existing = save_invoice(tenant_id, "Globex", "INV-9", "10.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(vendor_name="Initech", invoice_number="INV-9")
        )
        assert result.vendor_id is None
        assert result.confidence == 1.0
        assert result.reason == "Exact invoice number match"
        assert result.strongest.record_id == existing

    def test_unresolved_vendor_confidence_configurable(self, store, config, tenant_id, save_invoice):
        config.duplicates.unresolved_reference_confidence = 0.9
        save_invoice(tenant_id, "Globex", "INV-9", "10.00", "2024-03-01")
        result = DuplicateDetector(store, config).find_duplicates(
            tenant_id, candidate(vendor_name=None, invoice_number="INV-9")
        )
        assert result.confidence == 0.9
        assert result.is_duplicate is True
        assert not result.is_definite

    def test_same_reference_other_vendor_not_tier1(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "5.00", "2023-01-01")
        save_invoice(tenant_id, "Globex", "INV-1", "100.00", "2024-01-10")
        result = detector.find_duplicates(
            tenant_id, candidate(invoice_number="INV-1", total="100.00", invoice_date="2024-01-10")
        )
        assert result.is_duplicate is False

    def test_tenant_isolation(self, detector, store, tenant_id, save_invoice):
        other = store.create_tenant("Other Books")
        save_invoice(other, "Acme", "INV-1", "100.00", "2024-01-10")
        result = detector.find_duplicates(
            tenant_id, candidate(invoice_number="INV-1", total="100.00", invoice_date="2024-01-10")
        )
        assert result.matches == []

    def test_deleted_records_ignored(self, detector, store, tenant_id, save_invoice):
        vendor_id = store.upsert_vendor(tenant_id, "Acme", "acme")
        store.insert_invoice(
            tenant_id,
            vendor_id=vendor_id,
            document_type="invoice",
            status=InvoiceStatus.DELETED,
            invoice_number="INV-1",
            invoice_date="2024-01-10",
            total=Decimal("100.00"),
        )
        result = detector.find_duplicates(tenant_id, candidate(invoice_number="INV-1"))
        assert result.matches == []

    def test_adding_reference_never_lowers_confidence(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", "INV-1", "250.00", "2024-03-04")
        without_ref = detector.find_duplicates(
            tenant_id, candidate(total="250.00", invoice_date="2024-03-01")
        )
        with_ref = detector.find_duplicates(
            tenant_id, candidate(invoice_number="INV-1", total="250.00", invoice_date="2024-03-01")
        )
        assert without_ref.confidence == 0.80
        assert with_ref.confidence == 1.0

    def test_matches_sorted_and_summarized(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "250.00", "2024-03-04")
        save_invoice(tenant_id, "Acme", None, "250.00", "2024-03-01")
        result = detector.find_duplicates(
            tenant_id, candidate(total="250.00", invoice_date="2024-03-01")
        )
        assert [m.confidence for m in result.matches] == [0.95, 0.80]
        assert result.reason.startswith("2 potential matches found. Strongest:")

    def test_uses_run_cache(self, detector, store, tenant_id, save_invoice):
        save_invoice(tenant_id, "Acme", None, "250.00", "2024-03-01")
        cache = RunCache(store)
        invoice = candidate(total="250.00", invoice_date="2024-03-01")

        detector.find_duplicates(tenant_id, invoice, cache)
        detector.find_duplicates(tenant_id, invoice, cache)

        assert cache.misses == 1
        assert cache.hits == 1
