"""
Invoice validation.

Findings are split into:
- errors: block auto-approval; the record is saved as flagged
- warnings: informational; the record can still be pending

Validation never raises for bad data. A record that fails every check is
still persisted, flagged, with each finding spelled out.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import TYPE_CHECKING

from ..schemas import ExtractedInvoice

if TYPE_CHECKING:
    from ..duplicates import DuplicateCheckResult

DEFAULT_TOLERANCE = Decimal("0.01")

# Currency codes are ISO 4217 alpha-3
CURRENCY_CODE_LENGTH = 3


@dataclass
class ValidationResult:
    """Validation findings for one record."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {"is_valid": self.is_valid, "errors": self.errors, "warnings": self.warnings}


def _tolerance(value: float | Decimal | None) -> Decimal:
    if value is None:
        return DEFAULT_TOLERANCE
    return Decimal(str(value))


def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def validate_invoice(
    invoice: ExtractedInvoice,
    reference_exists: bool = False,
    tolerance: float | Decimal | None = None,
) -> ValidationResult:
    """
    Validate an extracted invoice.

    Args:
        invoice: The (verified) record
        reference_exists: Whether the tenant already has a record with the
            same invoice number
        tolerance: Allowed difference for the arithmetic checks

    Returns:
        ValidationResult with categorized findings
    """
    tol = _tolerance(tolerance)
    result = ValidationResult()

    # Errors
    if not invoice.vendor_name:
        result.errors.append("vendor_name is required")

    if not invoice.currency:
        result.errors.append("currency is required")
    elif len(invoice.currency) != CURRENCY_CODE_LENGTH or not invoice.currency.isalpha():
        result.errors.append("currency must be a valid ISO 4217 code (3 characters)")

    if invoice.total is None or invoice.total <= 0:
        result.errors.append("total must be greater than 0")

    if invoice.invoice_number and reference_exists:
        result.errors.append(f'invoice_number "{invoice.invoice_number}" already exists (duplicate)')

    if invoice.subtotal is not None and invoice.total is not None:
        tax = invoice.tax if invoice.tax is not None else Decimal("0")
        expected = invoice.subtotal + tax
        if abs(expected - invoice.total) > tol:
            result.errors.append(
                f"Math validation failed: subtotal ({invoice.subtotal}) + tax ({tax}) = "
                f"{expected}, but total is {invoice.total}"
            )

    # Warnings
    if not invoice.invoice_number:
        result.warnings.append("invoice_number is empty")

    if not invoice.due_date:
        result.warnings.append("due_date is not specified")

    if invoice.subtotal is None:
        result.warnings.append("subtotal is not specified; arithmetic not checked")

    if not invoice.line_items:
        result.warnings.append("No line items present")
    else:
        line_total = invoice.line_items_total()
        if line_total is not None:
            off_subtotal = invoice.subtotal is None or abs(line_total - invoice.subtotal) > tol
            off_total = invoice.total is None or abs(line_total - invoice.total) > tol
            if off_subtotal and off_total:
                result.warnings.append(
                    f"Line items total ({_money(line_total)}) does not match "
                    f"subtotal ({invoice.subtotal}) or total ({invoice.total})"
                )

    return result


def duplicate_warning(check: "DuplicateCheckResult") -> str | None:
    """Warning text for a probable (not definite) duplicate, else None."""
    if not check.is_duplicate or check.is_definite:
        return None
    return (
        f"Potential duplicate detected ({round(check.confidence * 100)}% confidence): "
        f"{check.reason}"
    )


def check_arithmetic(
    invoice: ExtractedInvoice,
    tolerance: float | Decimal | None = None,
) -> tuple[ExtractedInvoice, list[str]]:
    """
    Re-check the record's arithmetic and fix clear errors.

    Only two corrections are considered clear:
    - tax missing while total exceeds subtotal: tax = total - subtotal
    - subtotal disagrees with the line items while line items + tax equal
      the total: subtotal = line items total

    A record whose subtotal + tax already matches the total within tolerance
    is returned unchanged with no corrections.

    Returns:
        (possibly corrected invoice, human-readable corrections)
    """
    tol = _tolerance(tolerance)
    corrections: list[str] = []

    if invoice.total is None or invoice.subtotal is None:
        return invoice, corrections

    invoice = replace(invoice)

    if invoice.tax is None:
        derived = invoice.total - invoice.subtotal
        if derived > tol:
            corrections.append(
                f"tax set to {derived} (total {invoice.total} - subtotal {invoice.subtotal})"
            )
            invoice.tax = derived

    tax = invoice.tax if invoice.tax is not None else Decimal("0")
    if abs(invoice.subtotal + tax - invoice.total) <= tol:
        return invoice, corrections

    line_total = invoice.line_items_total()
    if line_total is not None and abs(line_total + tax - invoice.total) <= tol:
        corrections.append(
            f"subtotal corrected from {invoice.subtotal} to {line_total} to match line items"
        )
        invoice.subtotal = line_total

    return invoice, corrections
