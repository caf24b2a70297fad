"""Duplicate detection for extracted invoices.

Tiers:
- Tier 1, exact reference: same invoice number within the tenant (and the
  same vendor when the vendor resolves). Confidence 1.0.
- Tier 2, fuzzy: only with a resolved vendor and an invoice date. Records
  in a +/- window_days window are scored by the first matching rule:
    same total, same date             -> 0.95
    same total, within 7 days         -> 0.80
    total within 1%, within 30 days   -> 0.60
  Records already matched in Tier 1 are skipped.

The detector only scores. What to do with a score is the pipeline's call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from ..schemas import ExtractedInvoice, normalize_vendor_name

if TYPE_CHECKING:
    from ..config import Config
    from ..run_cache import RunCache
    from ..state_store import InvoiceRecord, StateStore

logger = logging.getLogger(__name__)

EXACT_REFERENCE_CONFIDENCE = 1.0
SAME_TOTAL_SAME_DATE_CONFIDENCE = 0.95
SAME_TOTAL_NEAR_DATE_CONFIDENCE = 0.80
NEAR_TOTAL_CONFIDENCE = 0.60

NEAR_DATE_DAYS = 7
NEAR_TOTAL_FRACTION = Decimal("0.01")

# Lowest confidence that counts as a duplicate
DUPLICATE_THRESHOLD = 0.60


@dataclass
class CandidateMatch:
    """A stored record that may duplicate the candidate."""

    record_id: int
    confidence: float
    reason: str

    def to_dict(self) -> dict:
        return {"record_id": self.record_id, "confidence": self.confidence, "reason": self.reason}


@dataclass
class DuplicateCheckResult:
    """Outcome of a duplicate check."""

    is_duplicate: bool
    confidence: float
    matches: list[CandidateMatch] = field(default_factory=list)
    reason: str = "No duplicate matches found"
    vendor_id: int | None = None

    @property
    def is_definite(self) -> bool:
        """Exact-reference duplicate: persistence must be skipped."""
        return self.confidence >= EXACT_REFERENCE_CONFIDENCE

    @property
    def strongest(self) -> CandidateMatch | None:
        return self.matches[0] if self.matches else None

    def to_dict(self) -> dict:
        return {
            "is_duplicate": self.is_duplicate,
            "confidence": self.confidence,
            "matches": [m.to_dict() for m in self.matches],
            "reason": self.reason,
            "vendor_id": self.vendor_id,
        }


def _days_apart(a: str, b: str) -> int:
    return abs((date.fromisoformat(a) - date.fromisoformat(b)).days)


def _amount_fraction(existing: Decimal, candidate: Decimal) -> Decimal:
    """Relative difference of the candidate total against the stored total."""
    if existing > 0:
        return abs(existing - candidate) / existing
    return Decimal("0") if candidate == 0 else Decimal("1")


class DuplicateDetector:
    """Scores a candidate invoice against a tenant's stored invoices."""

    def __init__(self, state_store: StateStore, config: Config) -> None:
        """Initialize the detector.

        Args:
            state_store: State store for invoice and vendor lookups.
            config: Application configuration.
        """
        self.store = state_store
        self.config = config

    def resolve_vendor_id(
        self, tenant_id: int, vendor_name: str | None, cache: RunCache | None = None
    ) -> int | None:
        """Look up the vendor by normalized name within the tenant."""
        normalized = normalize_vendor_name(vendor_name)
        if not normalized:
            return None
        if cache is not None:
            cached = cache.get_vendor(tenant_id, normalized)
            return cached.vendor_id if cached else None
        vendor = self.store.find_vendor(tenant_id, normalized)
        return vendor.id if vendor else None

    def find_duplicates(
        self,
        tenant_id: int,
        candidate: ExtractedInvoice,
        cache: RunCache | None = None,
    ) -> DuplicateCheckResult:
        """Score the candidate against stored records of the same tenant.

        Args:
            tenant_id: Tenant scope for every lookup.
            candidate: The (possibly corrected) extracted invoice.
            cache: Per-run cache for vendor resolution.

        Returns:
            DuplicateCheckResult with matches sorted by confidence, highest first.
        """
        vendor_id = self.resolve_vendor_id(tenant_id, candidate.vendor_name, cache)
        matches: list[CandidateMatch] = []

        if candidate.invoice_number:
            matches.extend(self._exact_reference_matches(tenant_id, candidate, vendor_id))

        if vendor_id is not None and candidate.invoice_date and candidate.total is not None:
            seen = {m.record_id for m in matches}
            matches.extend(self._fuzzy_matches(tenant_id, candidate, vendor_id, seen))

        matches.sort(key=lambda m: m.confidence, reverse=True)
        confidence = matches[0].confidence if matches else 0.0

        if not matches:
            reason = "No duplicate matches found"
        elif len(matches) == 1:
            reason = matches[0].reason
        else:
            reason = f"{len(matches)} potential matches found. Strongest: {matches[0].reason}"

        result = DuplicateCheckResult(
            is_duplicate=confidence >= DUPLICATE_THRESHOLD,
            confidence=confidence,
            matches=matches,
            reason=reason,
            vendor_id=vendor_id,
        )
        if result.is_duplicate:
            logger.info(
                f"Tenant {tenant_id}: potential duplicate of #{matches[0].record_id} "
                f"({confidence:.0%}): {reason}"
            )
        return result

    def _exact_reference_matches(
        self, tenant_id: int, candidate: ExtractedInvoice, vendor_id: int | None
    ) -> list[CandidateMatch]:
        assert candidate.invoice_number is not None
        records = self.store.find_invoices_by_number(
            tenant_id, candidate.invoice_number, vendor_id=vendor_id
        )
        if vendor_id is not None:
            confidence = EXACT_REFERENCE_CONFIDENCE
            reason = "Exact invoice number match from same vendor"
        else:
            confidence = self.config.duplicates.unresolved_reference_confidence
            reason = "Exact invoice number match"
        return [CandidateMatch(record.id, confidence, reason) for record in records]

    def _fuzzy_matches(
        self,
        tenant_id: int,
        candidate: ExtractedInvoice,
        vendor_id: int,
        skip_ids: set[int],
    ) -> list[CandidateMatch]:
        assert candidate.invoice_date is not None and candidate.total is not None
        window = self.config.duplicates.window_days
        anchor = date.fromisoformat(candidate.invoice_date)
        records = self.store.find_invoices_in_window(
            tenant_id,
            vendor_id,
            (anchor - timedelta(days=window)).isoformat(),
            (anchor + timedelta(days=window)).isoformat(),
        )

        matches = []
        for record in records:
            if record.id in skip_ids:
                continue
            match = self._score(record, candidate, window)
            if match is not None:
                matches.append(match)
        return matches

    def _score(
        self, record: InvoiceRecord, candidate: ExtractedInvoice, window: int
    ) -> CandidateMatch | None:
        if record.total is None or record.invoice_date is None:
            return None
        assert candidate.total is not None and candidate.invoice_date is not None

        days = _days_apart(record.invoice_date, candidate.invoice_date)
        same_total = record.total == candidate.total

        if same_total and days == 0:
            return CandidateMatch(
                record.id,
                SAME_TOTAL_SAME_DATE_CONFIDENCE,
                "Same vendor, same total, and same invoice date",
            )
        if same_total and days <= NEAR_DATE_DAYS:
            return CandidateMatch(
                record.id,
                SAME_TOTAL_NEAR_DATE_CONFIDENCE,
                f"Same vendor and total, dates {days} days apart",
            )
        if _amount_fraction(record.total, candidate.total) <= NEAR_TOTAL_FRACTION and days <= window:
            return CandidateMatch(
                record.id,
                NEAR_TOTAL_CONFIDENCE,
                f"Same vendor, total within 1%, dates {days} days apart",
            )
        return None
