"""
Processing pipeline (one audited run per document).

Every state change is written to the run's processing log before the
step's work starts, so the log alone shows how far a run got. On an
uncaught error the log is finalized with status=error, `step` set to the
last completed step, and `failed_step` set to the step in flight; the
caller gets a generic failure carrying only the log ID.

The lease (when the run was driven by the lease queue) is marked
processed on terminal success and otherwise left for the health monitor.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ..duplicates import DuplicateCheckResult, DuplicateDetector
from ..lease_queue import LeaseQueue
from ..notify import NullNotifier, build_invoice_message
from ..retry import RetryOptions, execute
from ..run_cache import RunCache
from ..schemas import (
    Classification,
    ExtractedInvoice,
    IntakeDocument,
    VerificationStatus,
    normalize_vendor_name,
)
from ..state_store import InvoiceStatus, LogStatus
from ..validation import ValidationResult, check_arithmetic, duplicate_warning, validate_invoice
from .states import PipelineEvent, PipelineState, is_in_flight, last_completed, transition

if TYPE_CHECKING:
    from ..config import Config
    from ..extraction_client import ExtractionClient
    from ..notify import Notifier
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR = "Unknown Vendor"
GENERIC_FAILURE = "Processing failed"


@dataclass
class PipelineResult:
    """Outcome of one run as returned to the caller."""

    status: str  # completed | skipped | duplicate | error
    log_id: int | None
    invoice_id: int | None = None
    invoice_status: str | None = None
    reason: str | None = None
    duplicate_of: int | None = None
    validation: dict[str, Any] | None = None
    duplicate_check: dict[str, Any] | None = None
    corrections: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != "error"

    def to_dict(self) -> dict[str, Any]:
        if self.status == "error":
            return {"status": "error", "error": GENERIC_FAILURE, "log_id": self.log_id}
        if self.status == "skipped":
            return {"status": "skipped", "reason": self.reason, "log_id": self.log_id}
        if self.status == "duplicate":
            return {
                "status": "duplicate",
                "duplicate_of": self.duplicate_of,
                "reason": self.reason,
                "duplicate_check": self.duplicate_check,
                "log_id": self.log_id,
            }
        return {
            "status": "completed",
            "invoice_id": self.invoice_id,
            "log_id": self.log_id,
            "invoice_status": self.invoice_status,
            "validation": self.validation,
            "duplicate_check": self.duplicate_check,
            "corrections": self.corrections,
        }


class _RunAudit:
    """Tracks the state of one run and mirrors it to the processing log."""

    def __init__(self, store: StateStore, log_id: int):
        self.store = store
        self.log_id = log_id
        self.state = PipelineState.STARTED
        self.output: dict[str, Any] = {}
        self.started = time.monotonic()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def fire(self, event: PipelineEvent, **output: Any) -> PipelineState:
        """Apply an event and persist the new state (and any new output)."""
        new_state = transition(self.state, event)
        self.output.update(output)
        self.store.update_processing_log(
            self.log_id,
            step=new_state.value,
            output=self.output if output else None,
        )
        self.state = new_state
        return new_state

    def finish(self, event: PipelineEvent, invoice_id: int | None = None, **output: Any) -> None:
        """Apply the event leading to a terminal state and close the record."""
        new_state = transition(self.state, event)
        self.output.update(output)
        self.store.update_processing_log(
            self.log_id,
            step=new_state.value,
            status=LogStatus.SUCCESS,
            output=self.output,
            duration_ms=self.elapsed_ms(),
            invoice_id=invoice_id,
        )
        self.state = new_state

    def fail(self, error: BaseException) -> None:
        """Finalize as error at the last completed step."""
        self.store.update_processing_log(
            self.log_id,
            step=last_completed(self.state).value,
            status=LogStatus.ERROR,
            failed_step=self.state.value if is_in_flight(self.state) else None,
            error_message=str(error) or type(error).__name__,
            duration_ms=self.elapsed_ms(),
        )


class ProcessingPipeline:
    """
    Runs documents through classify -> extract -> verify -> duplicate check
    -> validate -> save -> notify.

    Collaborators are injected so tests can swap the extraction client,
    the notifier and the sleep used for retry backoff.
    """

    def __init__(
        self,
        state_store: StateStore,
        extraction_client: ExtractionClient,
        config: Config,
        notifier: Notifier | None = None,
        lease_queue: LeaseQueue | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the pipeline.

        Args:
            state_store: State store for audit records and persistence
            extraction_client: Client for classify/extract/verify
            config: Application configuration
            notifier: Notification channel (None disables notification)
            lease_queue: Lease queue used to release leases on success
            sleep: Sleep function for retry backoff
        """
        self.store = state_store
        self.client = extraction_client
        self.config = config
        self.notifier = notifier or NullNotifier()
        self.lease_queue = lease_queue or LeaseQueue(state_store, config)
        self.detector = DuplicateDetector(state_store, config)
        self._sleep = sleep
        self._retry = RetryOptions.from_config(config.retry)

    def _call(self, operation: Callable[[], Any]) -> Any:
        return execute(operation, self._retry, sleep=self._sleep)

    def run(
        self,
        tenant_id: int,
        document: IntakeDocument,
        lease_id: int | None = None,
    ) -> PipelineResult:
        """
        Process one document for a tenant.

        Never raises for processing failures; those are recorded in the
        processing log and reported as a generic error result.
        """
        try:
            log_id = self.store.create_processing_log(tenant_id, document.to_dict(), lease_id)
        except sqlite3.Error:
            logger.exception(f"Tenant {tenant_id}: could not open processing log")
            return PipelineResult(status="error", log_id=None)

        audit = _RunAudit(self.store, log_id)
        cache = RunCache(self.store)
        try:
            result = self._run_steps(tenant_id, document, audit, cache)
        except Exception as e:
            logger.error(
                f"Run #{log_id} for tenant {tenant_id} failed at {audit.state.value}: {e}"
            )
            try:
                audit.fail(e)
            except sqlite3.Error:
                logger.exception(f"Run #{log_id}: could not record failure")
            return PipelineResult(status="error", log_id=log_id)
        finally:
            cache.clear()

        # The run is already audited; an unreleased lease expires and is reclaimed
        try:
            if lease_id is not None:
                self.lease_queue.mark_processed(lease_id)
            self.store.record_tenant_process_success(tenant_id)
        except sqlite3.Error:
            logger.exception(f"Run #{log_id}: could not release lease {lease_id}")
        return result

    def _run_steps(
        self,
        tenant_id: int,
        document: IntakeDocument,
        audit: _RunAudit,
        cache: RunCache,
    ) -> PipelineResult:
        log_id = audit.log_id

        # Classify
        audit.fire(PipelineEvent.ADVANCE)
        self.client.check_size(document)
        classification: Classification = self._call(lambda: self.client.classify(document))

        if not classification.is_target:
            audit.finish(PipelineEvent.NOT_INVOICE, classification=classification.to_dict())
            logger.info(f"Run #{log_id}: not a target document, skipping")
            return PipelineResult(status="skipped", log_id=log_id, reason="not_invoice")

        audit.fire(PipelineEvent.STEP_OK, classification=classification.to_dict())

        # Extract
        audit.fire(PipelineEvent.ADVANCE)
        extraction: ExtractedInvoice = self._call(lambda: self.client.extract(document))
        audit.fire(PipelineEvent.STEP_OK, extraction_raw=extraction.to_dict())

        # Verify
        audit.fire(PipelineEvent.ADVANCE)
        invoice, verification_status, corrections = self._verify(extraction, document)
        audit.fire(
            PipelineEvent.STEP_OK,
            verification={"status": verification_status, "corrections": corrections},
            extraction=invoice.to_dict(),
        )

        # Duplicate check
        audit.fire(PipelineEvent.ADVANCE)
        check = self.detector.find_duplicates(tenant_id, invoice, cache)
        if check.is_definite:
            audit.finish(
                PipelineEvent.EXACT_DUPLICATE,
                duplicate=check.to_dict(),
                result="duplicate",
            )
            strongest = check.strongest
            logger.info(f"Run #{log_id}: exact duplicate, not saved ({check.reason})")
            return PipelineResult(
                status="duplicate",
                log_id=log_id,
                reason=check.reason,
                duplicate_of=strongest.record_id if strongest else None,
                duplicate_check=check.to_dict(),
            )
        audit.fire(PipelineEvent.STEP_OK, duplicate=check.to_dict())

        # Validate
        audit.fire(PipelineEvent.ADVANCE)
        validation = self._validate(tenant_id, invoice, check)
        audit.fire(PipelineEvent.STEP_OK, validation=validation.to_dict())

        # Save
        audit.fire(PipelineEvent.ADVANCE)
        invoice_id, invoice_status = self._save(
            tenant_id, document, classification, invoice, validation, check, cache
        )
        self.store.update_processing_log(log_id, invoice_id=invoice_id)
        audit.fire(PipelineEvent.STEP_OK, invoice_id=invoice_id)

        # Notify
        if self.notifier.enabled:
            audit.fire(PipelineEvent.ADVANCE)
            delivered = self._notify(invoice, invoice_id, classification, validation, check)
            audit.finish(PipelineEvent.STEP_OK, invoice_id=invoice_id, notified=delivered)
        else:
            audit.finish(PipelineEvent.SKIP, invoice_id=invoice_id, notified=False)

        logger.info(
            f"Run #{log_id}: saved invoice #{invoice_id} as {invoice_status.value} "
            f"({len(validation.errors)} errors, {len(validation.warnings)} warnings)"
        )
        return PipelineResult(
            status="completed",
            log_id=log_id,
            invoice_id=invoice_id,
            invoice_status=invoice_status.value,
            validation=validation.to_dict(),
            duplicate_check=check.to_dict(),
            corrections=corrections,
        )

    def _verify(
        self, extraction: ExtractedInvoice, document: IntakeDocument
    ) -> tuple[ExtractedInvoice, str, list[str]]:
        """
        Service cross-check plus a local arithmetic check.

        The service's corrections are taken as-is; the local check never
        trusts the service's arithmetic and adds its own corrections.
        """
        verification = self._call(
            lambda: self.client.verify(extraction, document.document_text())
        )

        invoice = extraction
        corrections = list(verification.corrections)
        if verification.status == VerificationStatus.CORRECTED and verification.data:
            invoice = verification.data

        invoice, local = check_arithmetic(invoice, self.config.validation.math_tolerance)
        corrections.extend(local)

        status = verification.status.value
        if local:
            status = VerificationStatus.CORRECTED.value
        if corrections:
            logger.info(f"Verification applied {len(corrections)} corrections")
        return invoice, status, corrections

    def _validate(
        self, tenant_id: int, invoice: ExtractedInvoice, check: DuplicateCheckResult
    ) -> ValidationResult:
        reference_exists = bool(invoice.invoice_number) and self.store.invoice_number_exists(
            tenant_id, invoice.invoice_number or ""
        )
        validation = validate_invoice(
            invoice,
            reference_exists=reference_exists,
            tolerance=self.config.validation.math_tolerance,
        )
        warning = duplicate_warning(check)
        if warning:
            validation.warnings.append(warning)
        return validation

    def _resolve_vendor(
        self,
        tenant_id: int,
        name: str,
        invoice: ExtractedInvoice,
        cache: RunCache,
    ) -> tuple[int, str | None]:
        """Upsert the vendor by normalized name. Returns (vendor_id, default_category)."""
        normalized = normalize_vendor_name(name) or normalize_vendor_name(UNKNOWN_VENDOR)
        cached = cache.get_vendor(tenant_id, normalized)
        category = cached.default_category if cached else None

        try:
            vendor_id = self.store.upsert_vendor(
                tenant_id, name, normalized, contact=invoice.contact.to_dict()
            )
        except sqlite3.IntegrityError as e:
            logger.warning(f"Vendor upsert failed, trying lookup: {e}")
            existing = self.store.find_vendor(tenant_id, normalized)
            if existing is None:
                raise
            vendor_id = existing.id
            category = existing.default_category

        cache.remember_vendor(tenant_id, normalized, vendor_id, category)
        return vendor_id, category

    def _save(
        self,
        tenant_id: int,
        document: IntakeDocument,
        classification: Classification,
        invoice: ExtractedInvoice,
        validation: ValidationResult,
        check: DuplicateCheckResult,
        cache: RunCache,
    ) -> tuple[int, InvoiceStatus]:
        vendor_name = invoice.vendor_name or classification.vendor_name or UNKNOWN_VENDOR
        vendor_id, category = self._resolve_vendor(tenant_id, vendor_name, invoice, cache)

        status = InvoiceStatus.PENDING if validation.is_valid else InvoiceStatus.FLAGGED
        strongest = check.strongest if check.is_duplicate else None

        invoice_id = self.store.insert_invoice(
            tenant_id,
            vendor_id=vendor_id,
            document_type=classification.document_type.value,
            status=status,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.invoice_date,
            due_date=invoice.due_date,
            currency=invoice.currency,
            subtotal=invoice.subtotal,
            tax=invoice.tax,
            total=invoice.total,
            line_items=[item.to_dict() for item in invoice.line_items],
            category=category,
            source_item_id=document.source_item_id,
            source_subject=document.subject,
            source_from=document.sender,
            raw_text=document.document_text(),
            confidence=classification.confidence,
            signals=classification.signals,
            is_valid=validation.is_valid,
            validation_errors=validation.errors,
            validation_warnings=validation.warnings,
            duplicate_of=strongest.record_id if strongest else None,
            duplicate_confidence=check.confidence if strongest else None,
        )
        return invoice_id, status

    def _notify(
        self,
        invoice: ExtractedInvoice,
        invoice_id: int,
        classification: Classification,
        validation: ValidationResult,
        check: DuplicateCheckResult,
    ) -> bool:
        """Best effort: failures are logged by the notifier and never raised."""
        try:
            payload = build_invoice_message(
                invoice,
                invoice_id,
                classification.confidence,
                validation=validation,
                duplicate_warning=duplicate_warning(check),
                document_type=classification.document_type.value,
            )
        except (ValueError, TypeError) as e:
            logger.warning(f"Could not build notification for invoice #{invoice_id}: {e}")
            return False

        options = RetryOptions.from_config(
            self.config.retry, max_retries=self.config.notification.max_retries
        )
        return self.notifier.notify(payload, options=options, sleep=self._sleep)
