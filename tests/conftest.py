"""Test fixtures and utilities."""

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from invoice_intake.config import Config
from invoice_intake.lease_queue import LeaseQueue
from invoice_intake.poller import EML_DIRECTORY
from invoice_intake.schemas import (
    Classification,
    DocumentType,
    ExtractedInvoice,
    IntakeDocument,
    LineItem,
    Verification,
    VerificationStatus,
    normalize_vendor_name,
)
from invoice_intake.state_store import InvoiceStatus, StateStore

SAMPLE_EMAIL_BODY = """
Hi,

Please find attached invoice INV-1042 for October consulting.

Acme Pty Ltd
12 Harbour St, Sydney NSW 2000
ABN: 12 345 678 901
"""

SAMPLE_ATTACHMENT_TEXT = """
ACME PTY LTD                                   TAX INVOICE
Invoice #: INV-1042
Date: 2024-10-31        Due: 2024-11-30

Description                   Qty   Unit     Total
Consulting (October)          10    90.00    900.00

                                 Subtotal:   900.00
                                 GST 10%:     90.00
                                 Total AUD:  990.00
"""

SAMPLE_EML = b"""From: Acme Billing <billing@acme.example>
To: ap@tenant.example
Subject: Invoice INV-1042
Message-ID: <inv-1042@acme.example>
MIME-Version: 1.0
Content-Type: multipart/mixed; boundary="XYZ"

--XYZ
Content-Type: text/plain; charset="utf-8"

Please find attached invoice INV-1042.

--XYZ
Content-Type: application/pdf
Content-Disposition: attachment; filename="INV-1042.pdf"
Content-Transfer-Encoding: base64

JVBERi0xLjQKJcTl8uXrCg==

--XYZ--
"""


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def config(temp_db) -> Config:
    """Default configuration pointing at the temp database."""
    cfg = Config()
    cfg.state_db_path = temp_db
    cfg.extraction.api_key = "test-key"
    return cfg


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def now() -> datetime:
    """Fixed reference time."""
    return datetime(2024, 11, 20, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def tenant_id(store) -> int:
    return store.create_tenant("Harbour Accounting")


@pytest.fixture
def mailbox_dir(tmp_path) -> Path:
    path = tmp_path / "mailbox"
    path.mkdir()
    return path


@pytest.fixture
def connection_id(store, tenant_id, mailbox_dir) -> int:
    return store.create_connection(tenant_id, "ap@tenant.example", EML_DIRECTORY, str(mailbox_dir))


@pytest.fixture
def lease_queue(store, config) -> LeaseQueue:
    return LeaseQueue(store, config)


@pytest.fixture
def sample_document() -> IntakeDocument:
    """Invoice email with pre-extracted attachment text."""
    return IntakeDocument(
        subject="Invoice INV-1042",
        sender="billing@acme.example",
        body=SAMPLE_EMAIL_BODY,
        attachment_text=SAMPLE_ATTACHMENT_TEXT,
        source_item_id="inv-1042.eml",
    )


@pytest.fixture
def sample_eml() -> bytes:
    return SAMPLE_EML


@pytest.fixture
def sample_extraction() -> ExtractedInvoice:
    """Consistent extraction of the sample invoice."""
    return ExtractedInvoice(
        vendor_name="Acme Pty Ltd",
        invoice_number="INV-1042",
        invoice_date="2024-10-31",
        due_date="2024-11-30",
        currency="AUD",
        subtotal=Decimal("900.00"),
        tax=Decimal("90.00"),
        total=Decimal("990.00"),
        line_items=[
            LineItem(
                description="Consulting (October)",
                quantity=Decimal("10"),
                unit_price=Decimal("90.00"),
                total=Decimal("900.00"),
            )
        ],
    )


@pytest.fixture
def invoice_classification() -> Classification:
    return Classification(
        is_invoice=True,
        document_type=DocumentType.INVOICE,
        confidence=0.95,
        vendor_name="Acme Pty Ltd",
        signals=["invoice number", "amount due"],
    )


@pytest.fixture
def extraction_client(invoice_classification, sample_extraction) -> MagicMock:
    """Extraction client double returning the sample invoice."""
    client = MagicMock()
    client.check_size.return_value = None
    client.classify.return_value = invoice_classification
    client.extract.return_value = sample_extraction
    client.verify.return_value = Verification(status=VerificationStatus.VERIFIED)
    return client


@pytest.fixture
def save_invoice(store):
    """Insert a stored invoice (and its vendor) directly."""

    def _save(
        tenant_id: int,
        vendor_name: str,
        invoice_number: str | None,
        total: str,
        invoice_date: str,
    ) -> int:
        vendor_id = store.upsert_vendor(tenant_id, vendor_name, normalize_vendor_name(vendor_name))
        return store.insert_invoice(
            tenant_id,
            vendor_id=vendor_id,
            document_type="invoice",
            status=InvoiceStatus.PENDING,
            invoice_number=invoice_number,
            invoice_date=invoice_date,
            currency="AUD",
            total=Decimal(total),
        )

    return _save
