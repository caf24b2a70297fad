"""
Step schemas (SSOT).

One typed shape per pipeline step input/output. Anything coming back from
the extraction service is parsed here; a wrong shape raises
SchemaValidationError, which is a permanent failure and never retried.
"""

from .intake import IntakeDocument
from .invoice import (
    Classification,
    DocumentType,
    ExtractedInvoice,
    LineItem,
    SchemaValidationError,
    VendorContact,
    Verification,
    VerificationStatus,
)
from .normalize import normalize_vendor_name

__all__ = [
    "Classification",
    "DocumentType",
    "ExtractedInvoice",
    "IntakeDocument",
    "LineItem",
    "SchemaValidationError",
    "VendorContact",
    "Verification",
    "VerificationStatus",
    "normalize_vendor_name",
]
