"""
Submission orchestrator: drives an invoice from draft to submitted or failed.

This service orchestrates:
- XML rendering
- Validation (blocking; no network call on failure)
- Registry submission
- Response handling
- Audit logging

Usage:
    from apps.einvoicing.services import build_default_services

    services = build_default_services()
    result = services.orchestrator.submit(invoice.id)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from django.db.models import F, Q
from django.utils import timezone

from .audit import AuditAction, AuditRecorder
from .client import (
    AuthenticationError,
    DocumentSubmission,
    RegistryClient,
    RegistryClientError,
    RegistryErrorCode,
    SubmitResponse,
)
from .credentials import CredentialProvider, CredentialUnavailableError
from .metrics import RegistryMetrics
from .metrics import metrics as default_metrics
from .models import Invoice
from .settings import registry_settings
from .status import LifecycleStatus, SignalSource
from .ubl_builder import DocumentBuildError, RenderedDocument, render_invoice
from .validator import RegistryValidator, ValidationResult

logger = logging.getLogger(__name__)


class SubmissionError(Exception):
    """Submission cannot be attempted for this invoice."""

    def __init__(self, message: str, code: RegistryErrorCode = RegistryErrorCode.INVALID_INVOICE_DATA):
        super().__init__(message)
        self.code = code


class InvalidInvoiceStateError(SubmissionError):
    """Invoice is unknown or no longer a draft."""


@dataclass
class SubmissionResult:
    """Result of one invoice submission."""

    success: bool
    registry_document_id: str = ""
    verification_reference: str = ""
    error: str = ""
    error_code: str = ""
    validation_errors: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def ok(cls, registry_document_id: str, verification_reference: str = "") -> SubmissionResult:
        return cls(
            success=True,
            registry_document_id=registry_document_id,
            verification_reference=verification_reference,
        )

    @classmethod
    def failure(
        cls,
        message: str,
        code: RegistryErrorCode | str,
        validation_errors: list[dict[str, str]] | None = None,
    ) -> SubmissionResult:
        return cls(success=False, error=message, error_code=str(code), validation_errors=validation_errors or [])

    @property
    def rule_codes(self) -> list[str]:
        return [e["code"] for e in self.validation_errors]


class SubmissionOrchestrator:
    """
    Render, validate and submit draft invoices.

    Every outcome writes exactly one audit event. A submitter first claims the
    draft (a token stored on the row, taken with a version check); while the
    claim is live any other submitter gets ``InvalidInvoiceStateError`` and
    draft edits are refused. Leaving draft requires still holding the claim,
    except that an acceptance by the registry is always recorded.
    """

    def __init__(
        self,
        client: RegistryClient,
        credentials: CredentialProvider,
        audit: AuditRecorder | None = None,
        validator: RegistryValidator | None = None,
        metrics: RegistryMetrics | None = None,
    ):
        self.client = client
        self.credentials = credentials
        self.audit = audit or AuditRecorder()
        self.validator = validator or RegistryValidator()
        self.metrics = metrics or default_metrics

    # --- Main Workflow ---

    def submit(self, invoice_id: int) -> SubmissionResult:
        """
        Submit a draft invoice to the registry.

        Raises:
            InvalidInvoiceStateError: Invoice does not exist, is not a draft,
                or another submitter holds its claim
        """
        invoice = self._claim(invoice_id)
        try:
            return self._submit_claimed(invoice)
        except Exception:
            self._release(invoice)
            raise

    def _submit_claimed(self, invoice: Invoice) -> SubmissionResult:
        kind = invoice.kind

        if not invoice.merchant.is_active:
            return self._abort(
                invoice,
                f"Merchant {invoice.merchant_id} is not active on the registry",
                RegistryErrorCode.MERCHANT_NOT_ACTIVE,
            )

        # Render
        try:
            document = render_invoice(invoice)
        except DocumentBuildError as e:
            logger.error(f"❌ [Submission] XML generation failed for invoice {invoice.invoice_number}: {e}")
            return self._fail(
                invoice,
                f"XML generation failed: {e}",
                RegistryErrorCode.XML_GENERATION_FAILED,
                outcome="build_failed",
            )

        # Validate
        validation = self.validator.validate(document.xml, kind)
        self.metrics.record_validation(validation.is_valid, validation.error_codes)
        if not validation.is_valid:
            return self._fail_validation(invoice, document, validation)

        # Submit
        try:
            credential = self.credentials.get_credential(invoice.merchant_id)
        except CredentialUnavailableError as e:
            return self._abort(invoice, str(e), RegistryErrorCode.INVALID_CREDENTIALS)

        try:
            response = self.client.submit_documents(credential, [DocumentSubmission(kind, document.xml)])
        except AuthenticationError as e:
            self.credentials.invalidate(invoice.merchant_id)
            logger.error(f"🔥 [Submission] Registry refused credential for invoice {invoice.invoice_number}: {e}")
            return self._fail(invoice, f"Authentication failed: {e}", e.code, document=document)
        except RegistryClientError as e:
            if e.transient:
                logger.warning(f"⚠️ [Submission] Registry unavailable for invoice {invoice.invoice_number}: {e}")
                return self._abort(invoice, f"Registry unavailable: {e}", e.code)
            logger.error(f"❌ [Submission] Registry rejected request for invoice {invoice.invoice_number}: {e}")
            return self._fail(invoice, f"Registry rejected request: {e}", e.code, document=document)

        return self._handle_response(invoice, document, response)

    # --- Response Handling ---

    def _handle_response(
        self, invoice: Invoice, document: RenderedDocument, response: SubmitResponse
    ) -> SubmissionResult:
        if response.valid_documents:
            accepted = response.valid_documents[0]
            recorded = self._record_acceptance(
                invoice,
                {
                    "registry_document_id": accepted.document_id,
                    "verification_reference": accepted.verification_link,
                    "registry_response": response.raw_response,
                    "rendered_document": document.xml,
                    "submitted_at": timezone.now(),
                    "last_signal_source": SignalSource.SUBMISSION.value,
                },
            )
            if not recorded:
                return self._duplicated(invoice, accepted.document_id, accepted.verification_link)
            self.audit.record(
                invoice.id,
                AuditAction.INVOICE_SUBMITTED,
                LifecycleStatus.DRAFT.value,
                LifecycleStatus.SUBMITTED.value,
                SignalSource.SUBMISSION.value,
                {
                    "registry_document_id": accepted.document_id,
                    "verification_reference": accepted.verification_link,
                    "document_sha256": document.sha256,
                },
            )
            self.metrics.record_submission("submitted", invoice.document_kind)
            logger.info(f"✅ [Submission] Invoice {invoice.invoice_number} submitted: {accepted.document_id}")
            return SubmissionResult.ok(accepted.document_id, accepted.verification_link)

        if response.failed_documents:
            reason = "; ".join(d.error_message for d in response.failed_documents)
            logger.warning(f"❌ [Submission] Registry rejected invoice {invoice.invoice_number}: {reason}")
            return self._fail(
                invoice,
                reason,
                RegistryErrorCode.REGISTRY_REJECTED,
                document=document,
                registry_response=response.raw_response,
            )

        # Registry classified nothing; the document's fate is unknown so it stays a draft
        logger.error(f"🔥 [Submission] Empty submission response for invoice {invoice.invoice_number}")
        return self._abort(
            invoice, "Registry response did not classify the document", RegistryErrorCode.REGISTRY_REJECTED
        )

    def _duplicated(self, invoice: Invoice, document_id: str, verification_link: str) -> SubmissionResult:
        """The registry accepted a second copy; the invoice keeps the first one."""
        current = Invoice.objects.filter(pk=invoice.pk).values("lifecycle_status", "registry_document_id").first()
        status = current["lifecycle_status"] if current else ""
        kept = current["registry_document_id"] if current else ""
        logger.error(
            f"🔥 [Submission] Registry accepted {document_id} for invoice {invoice.invoice_number}, "
            f"which is already {status} as {kept}"
        )
        self.audit.record(
            invoice.id,
            AuditAction.SUBMISSION_DUPLICATED,
            status,
            status,
            SignalSource.SUBMISSION.value,
            {
                "registry_document_id": document_id,
                "verification_reference": verification_link,
                "recorded_document_id": kept,
            },
        )
        self.metrics.record_submission("duplicated", invoice.document_kind)
        result = SubmissionResult.failure(
            f"Invoice {invoice.invoice_number} was already submitted as {kept}",
            RegistryErrorCode.RECONCILIATION_CONFLICT,
        )
        result.registry_document_id = document_id
        result.verification_reference = verification_link
        return result

    def _fail_validation(
        self, invoice: Invoice, document: RenderedDocument, validation: ValidationResult
    ) -> SubmissionResult:
        error_dicts = [e.to_dict() for e in validation.errors]
        codes = validation.error_codes
        logger.info(f"❌ [Submission] Invoice {invoice.invoice_number} failed validation: {', '.join(codes)}")
        return self._fail(
            invoice,
            f"XML validation failed: {', '.join(codes)}",
            RegistryErrorCode.XML_VALIDATION_FAILED,
            outcome="validation_failed",
            document=document,
            validation_errors=error_dicts,
        )

    # --- State Changes ---

    def _claim(self, invoice_id: int) -> Invoice:
        """Load the draft and take its submission claim; a second submitter is refused."""
        invoice = Invoice.objects.select_related("merchant").filter(pk=invoice_id).first()
        if invoice is None:
            raise InvalidInvoiceStateError(f"Invoice {invoice_id} not found", RegistryErrorCode.INVOICE_NOT_FOUND)
        if invoice.lifecycle_status != LifecycleStatus.DRAFT.value:
            raise InvalidInvoiceStateError(
                f"Invoice {invoice.invoice_number} is {invoice.lifecycle_status}, only drafts can be submitted",
                RegistryErrorCode.INVOICE_ALREADY_SUBMITTED,
            )

        now = timezone.now()
        if invoice.submission_in_progress(now):
            raise InvalidInvoiceStateError(
                f"Invoice {invoice.invoice_number} is already being submitted",
                RegistryErrorCode.INVOICE_ALREADY_SUBMITTED,
            )
        if invoice.submission_claim:
            logger.warning(
                f"⚠️ [Submission] Taking over stale claim on invoice {invoice.invoice_number} "
                f"(claimed {invoice.submission_claimed_at})"
            )

        token = uuid.uuid4().hex
        stale_before = now - timedelta(seconds=registry_settings.submission_claim_ttl_seconds)
        claimed = (
            Invoice.objects.filter(pk=invoice.pk, version=invoice.version, lifecycle_status=LifecycleStatus.DRAFT.value)
            .filter(Q(submission_claim="") | Q(submission_claimed_at__lt=stale_before))
            .update(submission_claim=token, submission_claimed_at=now, version=F("version") + 1, updated_at=now)
        )
        if not claimed:
            raise InvalidInvoiceStateError(
                f"Invoice {invoice.invoice_number} is being submitted concurrently",
                RegistryErrorCode.INVOICE_ALREADY_SUBMITTED,
            )
        invoice.submission_claim = token
        invoice.submission_claimed_at = now
        invoice.version += 1
        return invoice

    def _transition(self, invoice: Invoice, target: LifecycleStatus, **fields: Any) -> bool:
        """Leave draft for ``target`` while still holding the claim; releases it."""
        updated = Invoice.objects.filter(
            pk=invoice.pk,
            lifecycle_status=LifecycleStatus.DRAFT.value,
            submission_claim=invoice.submission_claim,
        ).update(
            lifecycle_status=target.value,
            version=F("version") + 1,
            updated_at=timezone.now(),
            submission_claim="",
            submission_claimed_at=None,
            **fields,
        )
        if not updated:
            return False
        invoice.lifecycle_status = target.value
        invoice.version += 1
        invoice.submission_claim = ""
        invoice.submission_claimed_at = None
        for name, value in fields.items():
            setattr(invoice, name, value)
        return True

    def _record_acceptance(self, invoice: Invoice, fields: dict[str, Any]) -> bool:
        """
        Store the registry's acceptance, even when the claim was taken over meanwhile.

        Returns False only when another submission already recorded a
        different registry document for this invoice.
        """
        if self._transition(invoice, LifecycleStatus.SUBMITTED, **fields):
            return True

        # The registry holds this document now; keep its id unless the invoice already has one
        adopted = Invoice.objects.filter(
            pk=invoice.pk,
            lifecycle_status=LifecycleStatus.DRAFT.value,
            registry_document_id__isnull=True,
        ).update(
            lifecycle_status=LifecycleStatus.SUBMITTED.value,
            version=F("version") + 1,
            updated_at=timezone.now(),
            submission_claim="",
            submission_claimed_at=None,
            **fields,
        )
        if adopted:
            logger.warning(
                f"⚠️ [Submission] Claim on invoice {invoice.invoice_number} was taken over; "
                f"recorded {fields['registry_document_id']} anyway"
            )
            invoice.refresh_from_db()
        return bool(adopted)

    def _release(self, invoice: Invoice) -> None:
        Invoice.objects.filter(pk=invoice.pk, submission_claim=invoice.submission_claim).update(
            submission_claim="", submission_claimed_at=None
        )
        invoice.submission_claim = ""
        invoice.submission_claimed_at = None

    def _fail(
        self,
        invoice: Invoice,
        message: str,
        code: RegistryErrorCode | str,
        *,
        outcome: str = "failed",
        document: RenderedDocument | None = None,
        validation_errors: list[dict[str, str]] | None = None,
        registry_response: dict[str, Any] | None = None,
    ) -> SubmissionResult:
        """Move the invoice to ``failed`` and keep the failure detail on it."""
        fields: dict[str, Any] = {"rejection_reason": message}
        if document is not None:
            fields["rendered_document"] = document.xml
        if validation_errors is not None:
            fields["validation_errors"] = validation_errors
        if registry_response is not None:
            fields["registry_response"] = registry_response
        if not self._transition(invoice, LifecycleStatus.FAILED, **fields):
            logger.error(
                f"🔥 [Submission] Invoice {invoice.invoice_number} changed during submission; failure not applied"
            )
            raise SubmissionError(
                f"Invoice {invoice.invoice_number} changed during submission",
                RegistryErrorCode.RECONCILIATION_CONFLICT,
            )

        detail: dict[str, Any] = {"error": message, "error_code": str(code)}
        if validation_errors:
            detail["rule_codes"] = [e["code"] for e in validation_errors]
        self.audit.record(
            invoice.id,
            AuditAction.SUBMISSION_FAILED,
            LifecycleStatus.DRAFT.value,
            LifecycleStatus.FAILED.value,
            SignalSource.SUBMISSION.value,
            detail,
        )
        self.metrics.record_submission(outcome, invoice.document_kind)
        return SubmissionResult.failure(message, code, validation_errors)

    def _abort(self, invoice: Invoice, message: str, code: RegistryErrorCode | str) -> SubmissionResult:
        """Give up this attempt and release the claim; the draft can be submitted again."""
        self._release(invoice)
        self.audit.record(
            invoice.id,
            AuditAction.SUBMISSION_FAILED,
            LifecycleStatus.DRAFT.value,
            LifecycleStatus.DRAFT.value,
            SignalSource.SUBMISSION.value,
            {"error": message, "error_code": str(code), "retryable": True},
        )
        self.metrics.record_submission("deferred", invoice.document_kind)
        logger.warning(f"⚠️ [Submission] Invoice {invoice.invoice_number} left in draft: {message}")
        return SubmissionResult.failure(message, code)
