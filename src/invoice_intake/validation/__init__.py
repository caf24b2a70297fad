"""Record validation and arithmetic checks."""

from .validator import (
    ValidationResult,
    check_arithmetic,
    duplicate_warning,
    validate_invoice,
)

__all__ = [
    "ValidationResult",
    "check_arithmetic",
    "duplicate_warning",
    "validate_invoice",
]
