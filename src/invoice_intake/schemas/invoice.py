"""
Typed shapes for the extraction service's step outputs.

- Classification: output of the classify step
- ExtractedInvoice: output of the extract step (and the verify step's data)
- Verification: output of the verify step

Monetary values are Decimal; dates are YYYY-MM-DD strings.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional


class SchemaValidationError(ValueError):
    """A step input/output does not have the expected shape.

    Permanent: retrying the same call with the same input cannot fix it.
    """

    retryable = False

    def __init__(self, step: str, message: str):
        self.step = step
        super().__init__(f"{step}: {message}")


class DocumentType(str, Enum):
    """Classified document type."""

    INVOICE = "invoice"
    EXPENSE = "expense"
    OTHER = "other"


class VerificationStatus(str, Enum):
    """Outcome of the verify pass."""

    VERIFIED = "VERIFIED"
    CORRECTED = "CORRECTED"


def _require_mapping(step: str, data: Any) -> dict:
    if not isinstance(data, dict):
        raise SchemaValidationError(step, f"expected a JSON object, got {type(data).__name__}")
    return data


def _to_decimal(step: str, name: str, value: Any) -> Optional[Decimal]:
    """Parse a monetary/numeric field. Empty values become None."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise SchemaValidationError(step, f"{name} must be a number")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            raise SchemaValidationError(step, f"{name} is not a number: {value!r}") from None
    raise SchemaValidationError(step, f"{name} must be a number")


def _to_str(step: str, name: str, value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise SchemaValidationError(step, f"{name} must be a string")
    value = value.strip()
    return value or None


def _to_date(step: str, name: str, value: Any) -> Optional[str]:
    text = _to_str(step, name, value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        raise SchemaValidationError(step, f"{name} is not a YYYY-MM-DD date: {text!r}") from None


def _decimal_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


@dataclass
class Classification:
    """Result of the classify step."""

    is_invoice: bool
    document_type: DocumentType
    confidence: float
    vendor_name: Optional[str] = None
    signals: list[str] = field(default_factory=list)

    @property
    def is_target(self) -> bool:
        """Whether the document should continue through the pipeline."""
        return self.is_invoice and self.document_type != DocumentType.OTHER

    @classmethod
    def from_dict(cls, data: Any) -> "Classification":
        """Parse the classify response."""
        data = _require_mapping("classify", data)

        is_invoice = data.get("is_invoice")
        if not isinstance(is_invoice, bool):
            raise SchemaValidationError("classify", "is_invoice must be a boolean")

        raw_type = data.get("document_type")
        if raw_type is None:
            doc_type = DocumentType.INVOICE if is_invoice else DocumentType.OTHER
        else:
            try:
                doc_type = DocumentType(str(raw_type).lower())
            except ValueError:
                raise SchemaValidationError(
                    "classify", f"unknown document_type {raw_type!r}"
                ) from None

        confidence = data.get("confidence", 0.0)
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            raise SchemaValidationError("classify", "confidence must be a number")
        if not 0.0 <= float(confidence) <= 1.0:
            raise SchemaValidationError("classify", "confidence must be within [0, 1]")

        signals = data.get("signals") or []
        if not isinstance(signals, list):
            raise SchemaValidationError("classify", "signals must be a list")

        return cls(
            is_invoice=is_invoice,
            document_type=doc_type,
            confidence=float(confidence),
            vendor_name=_to_str("classify", "vendor_name", data.get("vendor_name")),
            signals=[str(s) for s in signals],
        )

    def to_dict(self) -> dict:
        """Serialize for the audit trail."""
        return {
            "is_invoice": self.is_invoice,
            "document_type": self.document_type.value,
            "confidence": self.confidence,
            "vendor_name": self.vendor_name,
            "signals": self.signals,
        }


@dataclass
class LineItem:
    """Individual line item from an invoice/receipt."""

    description: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None
    total: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Any, step: str = "extract") -> "LineItem":
        data = _require_mapping(step, data)
        return cls(
            description=_to_str(step, "line_items.description", data.get("description")),
            quantity=_to_decimal(step, "line_items.quantity", data.get("quantity")),
            unit_price=_to_decimal(step, "line_items.unit_price", data.get("unit_price")),
            total=_to_decimal(step, "line_items.total", data.get("total")),
        )

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "quantity": _decimal_str(self.quantity),
            "unit_price": _decimal_str(self.unit_price),
            "total": _decimal_str(self.total),
        }


# Flat response keys for vendor contact details
CONTACT_FIELDS = (
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
class VendorContact:
    """Optional vendor contact details read from the document."""

    email: Optional[str] = None
    phone: Optional[str] = None
    address_line1: Optional[str] = None
    address_line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    website: Optional[str] = None
    tax_id: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in CONTACT_FIELDS}


@dataclass
class ExtractedInvoice:
    """Structured record produced by the extract step."""

    vendor_name: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None  # YYYY-MM-DD
    due_date: Optional[str] = None  # YYYY-MM-DD
    currency: Optional[str] = None
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None
    line_items: list[LineItem] = field(default_factory=list)
    contact: VendorContact = field(default_factory=VendorContact)

    def line_items_total(self) -> Optional[Decimal]:
        """Sum of line item totals, or None when no item carries a total."""
        totals = [item.total for item in self.line_items if item.total is not None]
        if not totals:
            return None
        return sum(totals, Decimal("0"))

    @classmethod
    def from_dict(cls, data: Any, step: str = "extract") -> "ExtractedInvoice":
        """Parse an extraction payload (flat vendor_* contact keys)."""
        data = _require_mapping(step, data)

        raw_items = data.get("line_items") or []
        if not isinstance(raw_items, list):
            raise SchemaValidationError(step, "line_items must be a list")

        currency = _to_str(step, "currency", data.get("currency"))

        contact = VendorContact(
            **{
                name: _to_str(step, f"vendor_{name}", data.get(f"vendor_{name}"))
                for name in CONTACT_FIELDS
            }
        )

        return cls(
            vendor_name=_to_str(step, "vendor_name", data.get("vendor_name")),
            invoice_number=_to_str(step, "invoice_number", data.get("invoice_number")),
            invoice_date=_to_date(step, "invoice_date", data.get("invoice_date")),
            due_date=_to_date(step, "due_date", data.get("due_date")),
            currency=currency.upper() if currency else None,
            subtotal=_to_decimal(step, "subtotal", data.get("subtotal")),
            tax=_to_decimal(step, "tax", data.get("tax")),
            total=_to_decimal(step, "total", data.get("total")),
            line_items=[LineItem.from_dict(item, step) for item in raw_items],
            contact=contact,
        )

    def to_dict(self) -> dict:
        """Serialize to the flat payload shape (JSON-safe)."""
        result: dict[str, Any] = {
            "vendor_name": self.vendor_name,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date,
            "due_date": self.due_date,
            "currency": self.currency,
            "subtotal": _decimal_str(self.subtotal),
            "tax": _decimal_str(self.tax),
            "total": _decimal_str(self.total),
            "line_items": [item.to_dict() for item in self.line_items],
        }
        for name, value in self.contact.to_dict().items():
            result[f"vendor_{name}"] = value
        return result


@dataclass
class Verification:
    """Result of the verify step."""

    status: VerificationStatus
    corrections: list[str] = field(default_factory=list)
    data: Optional[ExtractedInvoice] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Verification":
        data = _require_mapping("verify", data)

        raw_status = str(data.get("status", "")).upper()
        try:
            status = VerificationStatus(raw_status)
        except ValueError:
            raise SchemaValidationError(
                "verify", f"status must be VERIFIED or CORRECTED, got {raw_status!r}"
            ) from None

        corrections = data.get("corrections") or []
        if not isinstance(corrections, list):
            raise SchemaValidationError("verify", "corrections must be a list")

        payload = data.get("data")
        return cls(
            status=status,
            corrections=[str(c) for c in corrections],
            data=ExtractedInvoice.from_dict(payload, "verify") if payload else None,
        )

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "corrections": self.corrections,
            "data": self.data.to_dict() if self.data else None,
        }
