"""
Status reconciliation engine.

Merges status signals from the webhook and polling channels into the local
lifecycle of each invoice. Both channels may report on the same invoice at
the same time and in any order, so every write is a compare-and-swap on
``Invoice.version``:

    read invoice -> decide (current status, mapped status) -> update where version unchanged

A signal is applied only when it names a valid transition from the current
lifecycle status. Anything else (unknown strings, regressions, repeats) is
logged and leaves the invoice exactly as it was.

Usage:
    engine = build_default_services().engine
    engine.apply_signal(StatusSignal("doc-123", "VALIDATED", SignalSource.WEBHOOK))
    engine.poll_tracked_invoices()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, ClassVar

from django.db.models import F
from django.utils import timezone

from .audit import AuditAction, AuditRecorder
from .client import AuthenticationError, DocumentDetail, PollDirection, RegistryClient, RegistryClientError
from .credentials import CredentialProvider, CredentialUnavailableError
from .incoming import register_incoming_document
from .metrics import RegistryMetrics
from .metrics import metrics as default_metrics
from .models import Invoice, Merchant
from .settings import registry_settings
from .status import Direction, LifecycleStatus, RegistryStatusMapper, SignalSource, can_transition

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """Status could not be observed or applied; the invoice is unchanged."""


class ReconciliationConflictError(ReconciliationError):
    """Version conflicts persisted through every compare-and-swap attempt."""

    def __init__(self, invoice_id: int, attempts: int):
        super().__init__(f"Invoice {invoice_id} kept changing; gave up after {attempts} attempts")
        self.invoice_id = invoice_id
        self.attempts = attempts


class ReconciliationOutcome(StrEnum):
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNMAPPED = "unmapped"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class StatusSignal:
    """One status report from either channel; consumed once, never stored."""

    external_document_id: str
    reported_status: str
    source: SignalSource
    observed_at: datetime = field(default_factory=timezone.now)
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    invoice_id: int | None = None
    previous_status: str = ""
    new_status: str = ""
    attempts: int = 0

    @property
    def changed(self) -> bool:
        return self.outcome == ReconciliationOutcome.APPLIED


@dataclass
class _Decision:
    outcome: ReconciliationOutcome
    target: LifecycleStatus | None = None


class StatusReconciliationEngine:
    """
    Single writer path for registry-driven lifecycle changes.

    Collaborators are passed in explicitly; see ``services.build_default_services``.
    """

    AUDIT_ACTIONS: ClassVar[dict[LifecycleStatus, AuditAction]] = {
        LifecycleStatus.ACCEPTED: AuditAction.INVOICE_ACCEPTED,
        LifecycleStatus.REJECTED: AuditAction.INVOICE_REJECTED,
        LifecycleStatus.SENT: AuditAction.INVOICE_SENT,
    }

    SENDABLE_STATUSES: ClassVar[frozenset[str]] = frozenset(
        {LifecycleStatus.VALIDATED.value, LifecycleStatus.ACCEPTED.value}
    )

    def __init__(
        self,
        client: RegistryClient,
        credentials: CredentialProvider,
        audit: AuditRecorder | None = None,
        metrics: RegistryMetrics | None = None,
        dedup_window_seconds: int | None = None,
        cas_max_attempts: int | None = None,
        now: Callable[[], datetime] = timezone.now,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.credentials = credentials
        self.audit = audit or AuditRecorder()
        self.metrics = metrics or default_metrics
        self.dedup_window = timedelta(
            seconds=dedup_window_seconds
            if dedup_window_seconds is not None
            else registry_settings.dedup_window_seconds
        )
        self.cas_max_attempts = max(1, cas_max_attempts or registry_settings.cas_max_attempts)
        self._now = now
        self._clock = clock

    # ===== Signal merging =====

    def apply_signal(self, signal: StatusSignal) -> ReconciliationResult:
        """
        Merge one status signal into the invoice it names.

        Raises:
            ReconciliationConflictError: Version conflicts on every attempt
        """

        def load() -> Invoice | None:
            return Invoice.objects.filter(registry_document_id=signal.external_document_id).first()

        return self._merge(signal, load, lambda invoice: self._decide(invoice, signal))

    def _decide(self, invoice: Invoice, signal: StatusSignal) -> _Decision:
        current = invoice.status
        target = RegistryStatusMapper.map(signal.reported_status, current)
        if target is None:
            logger.warning(
                f"⚠️ [Reconcile] Ignoring status {signal.reported_status!r} for invoice {invoice.id} "
                f"({signal.source}, currently {current})"
            )
            return _Decision(ReconciliationOutcome.UNMAPPED)

        if target == RegistryStatusMapper.target_of(invoice.registry_status) and self._is_repeat(invoice, signal):
            return _Decision(ReconciliationOutcome.DUPLICATE, target)

        if target == current:
            return _Decision(ReconciliationOutcome.CONFIRMED, target)

        if not can_transition(current, target):
            logger.info(
                f"ℹ️ [Reconcile] Invoice {invoice.id} stays {current}; "
                f"{signal.source} reported {signal.reported_status!r} ({target})"
            )
            return _Decision(ReconciliationOutcome.IGNORED, target)

        return _Decision(ReconciliationOutcome.APPLIED, target)

    def _is_repeat(self, invoice: Invoice, signal: StatusSignal) -> bool:
        """Same report from the same channel, or from the other channel inside the dedup window."""
        if signal.source == invoice.last_signal_source:
            return True
        if invoice.last_reconciled_at is None:
            return False
        return self._now() - invoice.last_reconciled_at < self.dedup_window

    def _merge(
        self,
        signal: StatusSignal,
        load: Callable[[], Invoice | None],
        decide: Callable[[Invoice], _Decision],
    ) -> ReconciliationResult:
        for attempt in range(1, self.cas_max_attempts + 1):
            invoice = load()
            if invoice is None:
                logger.warning(
                    f"⚠️ [Reconcile] No invoice for registry document {signal.external_document_id} ({signal.source})"
                )
                return self._finish(signal, ReconciliationOutcome.NOT_FOUND, attempts=attempt)

            decision = decide(invoice)
            previous = invoice.lifecycle_status
            if decision.outcome not in (ReconciliationOutcome.APPLIED, ReconciliationOutcome.CONFIRMED):
                return self._finish(
                    signal, decision.outcome, invoice.id, previous, previous, attempts=attempt
                )

            target = decision.target
            if not self._compare_and_swap(invoice, target, signal):
                self.metrics.record_cas_conflict(signal.source)
                logger.info(
                    f"🔁 [Reconcile] Version conflict on invoice {invoice.id} "
                    f"(attempt {attempt}/{self.cas_max_attempts})"
                )
                continue

            if decision.outcome == ReconciliationOutcome.APPLIED:
                self.audit.record(
                    invoice.id,
                    self.AUDIT_ACTIONS.get(target, AuditAction.STATUS_RECONCILED),
                    previous,
                    target.value,
                    signal.source,
                    {
                        "registry_document_id": signal.external_document_id,
                        "reported_status": signal.reported_status,
                        "observed_at": signal.observed_at.isoformat(),
                        "attempt": attempt,
                    },
                )
                logger.info(
                    f"✅ [Reconcile] Invoice {invoice.id} {previous} -> {target.value} "
                    f"({signal.source}: {signal.reported_status!r})"
                )
            return self._finish(signal, decision.outcome, invoice.id, previous, target.value, attempts=attempt)

        logger.error(
            f"🔥 [Reconcile] Gave up on document {signal.external_document_id} after "
            f"{self.cas_max_attempts} version conflicts"
        )
        self.metrics.record_reconciliation(signal.source, "conflict")
        invoice = load()
        raise ReconciliationConflictError(invoice.id if invoice else 0, self.cas_max_attempts)

    def _compare_and_swap(self, invoice: Invoice, target: LifecycleStatus, signal: StatusSignal) -> bool:
        now = self._now()
        fields: dict[str, Any] = {
            "lifecycle_status": target.value,
            "last_reconciled_at": now,
            "last_signal_source": signal.source,
            "version": F("version") + 1,
            "updated_at": now,
        }
        # Only the registry's own words go into registry_status
        if signal.source != SignalSource.USER:
            fields["registry_status"] = signal.reported_status
        if target == LifecycleStatus.REJECTED:
            reason = signal.raw_payload.get("reason") or signal.raw_payload.get("rejection_reason")
            if reason:
                fields["rejection_reason"] = str(reason)
        return bool(Invoice.objects.filter(pk=invoice.pk, version=invoice.version).update(**fields))

    def _finish(
        self,
        signal: StatusSignal,
        outcome: ReconciliationOutcome,
        invoice_id: int | None = None,
        previous: str = "",
        new: str = "",
        attempts: int = 0,
    ) -> ReconciliationResult:
        self.metrics.record_reconciliation(signal.source, outcome.value)
        return ReconciliationResult(
            outcome=outcome,
            invoice_id=invoice_id,
            previous_status=previous,
            new_status=new,
            attempts=attempts,
        )

    # ===== Polling =====

    def _credential(self, merchant_id: int) -> str:
        return self.credentials.get_credential(merchant_id)

    def _fetch_detail(self, merchant_id: int, credential: str, document_id: str) -> DocumentDetail:
        try:
            return self.client.get_document(credential, document_id)
        except AuthenticationError:
            self.credentials.invalidate(merchant_id)
            raise
        except RegistryClientError as e:
            if e.transient:
                raise ReconciliationError(f"Could not observe document {document_id}: {e}") from e
            raise

    def reconcile_invoice(self, invoice: Invoice) -> ReconciliationResult:
        """
        Fetch the registry's view of one tracked invoice and merge it.

        Raises:
            CredentialUnavailableError: No credential for the invoice's merchant
            ReconciliationError: Invoice is not awaiting registry signals, the
                registry is unreachable after retries, or version conflicts persisted
        """
        if not invoice.is_tracked:
            raise ReconciliationError(f"Invoice {invoice.id} is {invoice.lifecycle_status} and not tracked")
        credential = self._credential(invoice.merchant_id)
        detail = self._fetch_detail(invoice.merchant_id, credential, invoice.registry_document_id)
        return self.apply_signal(
            StatusSignal(
                external_document_id=invoice.registry_document_id,
                reported_status=detail.status,
                source=SignalSource.POLL,
                observed_at=self._now(),
                raw_payload=detail.raw_response,
            )
        )

    def poll_tracked_invoices(
        self,
        batch_size: int | None = None,
        budget_seconds: float | None = None,
        max_age_minutes: int | None = None,
    ) -> dict[str, Any]:
        """
        Reconcile a bounded batch of tracked invoices, least recently polled first.

        Each invoice is handled on its own; one failure never aborts the
        batch. Every invoice reached is stamped ``last_polled_at`` whatever
        the outcome, so invoices the registry keeps reporting unchanged
        rotate to the back. Invoices not reached within the wall-clock
        budget are left for the next run.
        """
        batch_size = batch_size or registry_settings.poll_batch_size
        budget = budget_seconds if budget_seconds is not None else registry_settings.poll_budget_seconds
        max_age = max_age_minutes if max_age_minutes is not None else registry_settings.poll_max_age_minutes

        results: dict[str, Any] = {"processed": 0, "updated": 0, "failed": 0, "deferred": 0, "errors": []}

        with self.metrics.time_poll_batch("tracked"):
            deadline = self._clock() + budget
            candidates = list(Invoice.get_tracked(max_age, now=self._now())[:batch_size])
            if not candidates:
                return results

            logger.info(f"🔄 [Reconcile] Polling {len(candidates)} tracked invoice(s)")
            unavailable: set[int] = set()

            for index, invoice in enumerate(candidates):
                if self._clock() >= deadline:
                    results["deferred"] = len(candidates) - index
                    logger.warning(f"⏱️ [Reconcile] Budget spent; deferring {results['deferred']} invoice(s)")
                    break

                # Outside the version check; only orders later runs
                Invoice.objects.filter(pk=invoice.pk).update(last_polled_at=self._now())

                if invoice.merchant_id in unavailable:
                    self._record_error(results, invoice, f"Credential unavailable for merchant {invoice.merchant_id}")
                    continue

                try:
                    result = self.reconcile_invoice(invoice)
                except CredentialUnavailableError as e:
                    unavailable.add(invoice.merchant_id)
                    self._record_error(results, invoice, str(e))
                except Exception as e:
                    logger.exception(f"🔥 [Reconcile] Failed to reconcile invoice {invoice.id}")
                    self._record_error(results, invoice, str(e))
                else:
                    results["processed"] += 1
                    if result.changed:
                        results["updated"] += 1

        logger.info(
            f"✅ [Reconcile] Poll batch: {results['processed']} processed, {results['updated']} updated, "
            f"{results['failed']} failed, {results['deferred']} deferred"
        )
        return results

    def _record_error(self, results: dict[str, Any], invoice: Invoice, error: str) -> None:
        results["failed"] += 1
        results["errors"].append(
            {"invoice_id": invoice.id, "document_id": invoice.registry_document_id, "error": error}
        )

    def poll_updates(self, merchant: Merchant, budget_seconds: float | None = None) -> dict[str, Any]:
        """
        Delta poll: merge every document the registry changed since the merchant's last sync.

        ``Merchant.last_synced_at`` only advances when every listed document
        was handled, so nothing is skipped by the next run.

        Raises:
            CredentialUnavailableError: No credential for the merchant
            ReconciliationError: The change list could not be fetched
        """
        budget = budget_seconds if budget_seconds is not None else registry_settings.poll_budget_seconds
        results: dict[str, Any] = {
            "processed": 0,
            "updated": 0,
            "received": 0,
            "failed": 0,
            "deferred": 0,
            "errors": [],
        }

        with self.metrics.time_poll_batch("delta"):
            deadline = self._clock() + budget
            credential = self._credential(merchant.id)
            sync_started = self._now()
            cursor = merchant.last_synced_at.isoformat() if merchant.last_synced_at else None

            try:
                documents = self.client.poll_updates(credential, cursor)
            except AuthenticationError:
                self.credentials.invalidate(merchant.id)
                raise
            except RegistryClientError as e:
                if e.transient:
                    raise ReconciliationError(f"Could not list updates for merchant {merchant.id}: {e}") from e
                raise

            for index, polled in enumerate(documents):
                if self._clock() >= deadline:
                    results["deferred"] = len(documents) - index
                    logger.warning(
                        f"⏱️ [Reconcile] Budget spent for merchant {merchant.id}; "
                        f"deferring {results['deferred']} document(s)"
                    )
                    break
                try:
                    detail = self._fetch_detail(merchant.id, credential, polled.document_id)
                    if polled.direction == PollDirection.RECEIVE and not Invoice.objects.filter(
                        registry_document_id=polled.document_id
                    ).exists():
                        _, created = register_incoming_document(merchant, detail, audit=self.audit)
                        if created:
                            results["received"] += 1
                        results["processed"] += 1
                        continue

                    result = self.apply_signal(
                        StatusSignal(
                            external_document_id=polled.document_id,
                            reported_status=detail.status,
                            source=SignalSource.POLL,
                            observed_at=self._now(),
                            raw_payload=detail.raw_response,
                        )
                    )
                except Exception as e:
                    logger.exception(f"🔥 [Reconcile] Failed to handle polled document {polled.document_id}")
                    results["failed"] += 1
                    results["errors"].append({"invoice_id": None, "document_id": polled.document_id, "error": str(e)})
                else:
                    results["processed"] += 1
                    if result.changed:
                        results["updated"] += 1

            if not results["deferred"] and not results["failed"]:
                merchant.last_synced_at = sync_started
                merchant.save(update_fields=["last_synced_at", "updated_at"])

        logger.info(
            f"✅ [Reconcile] Delta poll for merchant {merchant.id}: {len(documents)} changed, "
            f"{results['updated']} updated, {results['received']} received, {results['failed']} failed"
        )
        return results

    # ===== Incoming documents and user actions =====

    def receive_document(
        self, merchant: Merchant, document_id: str, source: SignalSource = SignalSource.WEBHOOK
    ) -> tuple[Invoice, bool]:
        """Register a document the registry delivered to ``merchant``."""
        credential = self._credential(merchant.id)
        detail = self._fetch_detail(merchant.id, credential, document_id)
        return register_incoming_document(merchant, detail, audit=self.audit, source=source.value)

    def _apply_local(
        self, invoice: Invoice, target: LifecycleStatus, reported: str, payload: dict[str, Any]
    ) -> ReconciliationResult:
        """Apply a transition the user drove through the registry, via the same version check."""
        signal = StatusSignal(
            external_document_id=invoice.registry_document_id or "",
            reported_status=reported,
            source=SignalSource.USER,
            observed_at=self._now(),
            raw_payload=payload,
        )

        def decide(current: Invoice) -> _Decision:
            if current.status == target:
                return _Decision(ReconciliationOutcome.DUPLICATE, target)
            if not can_transition(current.status, target):
                logger.warning(
                    f"⚠️ [Reconcile] Invoice {current.id} moved to {current.status} before {target} was applied"
                )
                return _Decision(ReconciliationOutcome.IGNORED, target)
            return _Decision(ReconciliationOutcome.APPLIED, target)

        return self._merge(signal, lambda: Invoice.objects.filter(pk=invoice.pk).first(), decide)

    def send_invoice(self, invoice_id: int) -> ReconciliationResult:
        """
        Deliver a validated or accepted outgoing invoice to its buyer.

        Raises:
            ReconciliationError: Invoice cannot be sent, or the registry is unreachable
        """
        invoice = Invoice.objects.filter(pk=invoice_id).first()
        if invoice is None or invoice.direction != Direction.OUTGOING.value or not invoice.registry_document_id:
            raise ReconciliationError(f"Invoice {invoice_id} is not a registered outgoing invoice")
        if invoice.lifecycle_status not in self.SENDABLE_STATUSES:
            raise ReconciliationError(f"Invoice {invoice_id} is {invoice.lifecycle_status} and cannot be sent")

        credential = self._credential(invoice.merchant_id)
        try:
            response = self.client.send_document(credential, [invoice.registry_document_id])
        except RegistryClientError as e:
            if isinstance(e, AuthenticationError):
                self.credentials.invalidate(invoice.merchant_id)
            raise ReconciliationError(f"Sending invoice {invoice_id} failed: {e}") from e

        return self._apply_local(invoice, LifecycleStatus.SENT, "sent", response)

    def respond_to_incoming(self, invoice_id: int, accept: bool, reason: str = "") -> ReconciliationResult:
        """
        Accept or reject a received document at the registry, then locally.

        Raises:
            ReconciliationError: Invoice is not a pending incoming document,
                a rejection has no reason, or the registry call failed
        """
        invoice = Invoice.objects.filter(pk=invoice_id).first()
        if invoice is None or invoice.direction != Direction.INCOMING.value:
            raise ReconciliationError(f"Invoice {invoice_id} is not an incoming document")
        if invoice.lifecycle_status != LifecycleStatus.RECEIVED.value:
            raise ReconciliationError(f"Invoice {invoice_id} is {invoice.lifecycle_status}, already answered")
        if not accept and not reason.strip():
            raise ReconciliationError("A rejection needs a reason")

        credential = self._credential(invoice.merchant_id)
        try:
            if accept:
                response = self.client.accept_document(credential, invoice.registry_document_id)
            else:
                response = self.client.reject_document(credential, invoice.registry_document_id, reason)
        except RegistryClientError as e:
            if isinstance(e, AuthenticationError):
                self.credentials.invalidate(invoice.merchant_id)
            raise ReconciliationError(f"Responding to invoice {invoice_id} failed: {e}") from e

        if accept:
            return self._apply_local(invoice, LifecycleStatus.ACCEPTED, "accepted", response)
        return self._apply_local(invoice, LifecycleStatus.REJECTED, "rejected", {**response, "reason": reason})
