"""
E-invoicing models tracking the registry lifecycle of each document.

- Merchant: issuer profile and registry connection
- Invoice: aggregate root, versioned for optimistic concurrency
- LineItem: ordered invoice lines with derived totals
- AuditEvent: immutable, append-only transition log
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, ClassVar

from django.db import models
from django.db.models import Q
from django.utils import timezone

from .settings import COUNTRY_CODE, DEFAULT_CURRENCY, DEFAULT_ENDPOINT_ID, TaxCategory, registry_settings
from .status import Direction, DocumentKind, LifecycleStatus, SignalSource


class ImmutableAuditEventError(Exception):
    """Raised when code attempts to change or remove an audit event."""


class Merchant(models.Model):
    """Business connected to the registry; the issuer of outgoing documents."""

    REGISTRATION_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("pending", "Pending"),
        ("active", "Active"),
        ("revoked", "Revoked"),
    )

    name = models.CharField(max_length=255)
    tax_id = models.CharField(max_length=50, help_text="Tax/company identifier (TIN)")
    endpoint_id = models.CharField(
        max_length=50,
        default=DEFAULT_ENDPOINT_ID,
        db_index=True,
        help_text="Registry endpoint identifier",
    )
    street = models.CharField(max_length=255, blank=True)
    city = models.CharField(max_length=100, blank=True)
    country = models.CharField(max_length=2, default=COUNTRY_CODE)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=50, blank=True)

    is_active = models.BooleanField(default=True, db_index=True)
    registration_status = models.CharField(max_length=20, choices=REGISTRATION_CHOICES, default="active")

    # Supplied by the external token collaborator; acquisition and refresh live elsewhere
    access_token = models.TextField(blank=True)
    last_synced_at = models.DateTimeField(null=True, blank=True, help_text="Cursor for delta polling")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "einvoicing_merchant"
        ordering: ClassVar[tuple[str, ...]] = ("name",)

    def __str__(self) -> str:
        return f"{self.name} ({self.endpoint_id})"

    def revoke(self) -> None:
        """Mark the merchant as disconnected from the registry."""
        self.is_active = False
        self.registration_status = "revoked"
        self.save(update_fields=["is_active", "registration_status", "updated_at"])


class Invoice(models.Model):
    """
    Invoice, credit note or debit note tracked against the registry.

    ``version`` is bumped on every accepted state-changing update and is the
    only concurrency control: writers update with ``filter(version=v)``.
    """

    id = models.BigAutoField(primary_key=True)
    uuid = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    merchant = models.ForeignKey(Merchant, on_delete=models.PROTECT, related_name="invoices")

    invoice_number = models.CharField(max_length=100, db_index=True)
    document_kind = models.CharField(
        max_length=20,
        choices=DocumentKind.choices(),
        default=DocumentKind.INVOICE.value,
    )
    direction = models.CharField(
        max_length=10,
        choices=Direction.choices(),
        default=Direction.OUTGOING.value,
    )
    lifecycle_status = models.CharField(
        max_length=20,
        choices=LifecycleStatus.choices(),
        default=LifecycleStatus.DRAFT.value,
        db_index=True,
    )
    registry_status = models.CharField(
        max_length=50,
        null=True,
        blank=True,
        help_text="Raw status string last reported by the registry",
    )

    # Monetary totals, whole units
    subtotal = models.DecimalField(max_digits=18, decimal_places=2, default=0)
    tax_total = models.DecimalField(max_digits=18, decimal_places=2, default=0)
    grand_total = models.DecimalField(max_digits=18, decimal_places=2, default=0)
    currency = models.CharField(max_length=3, default=DEFAULT_CURRENCY)

    issue_date = models.DateField()
    due_date = models.DateField(null=True, blank=True)

    # Counterparty (customer for outgoing, supplier for incoming)
    customer_name = models.CharField(max_length=255, blank=True)
    customer_tax_id = models.CharField(max_length=50, blank=True)
    customer_street = models.CharField(max_length=255, blank=True)
    customer_city = models.CharField(max_length=100, blank=True)
    customer_country = models.CharField(max_length=2, default=COUNTRY_CODE)
    customer_email = models.EmailField(blank=True)
    customer_phone = models.CharField(max_length=50, blank=True)
    customer_endpoint_id = models.CharField(max_length=50, blank=True)

    # Billing reference for credit/debit notes
    original_invoice = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="adjustments",
    )
    original_invoice_number = models.CharField(max_length=100, blank=True)
    original_invoice_uuid = models.CharField(max_length=36, blank=True)
    original_invoice_issue_date = models.DateField(null=True, blank=True)

    # Registry identifiers (set once on acceptance, never cleared)
    registry_document_id = models.CharField(max_length=100, null=True, blank=True, unique=True)
    verification_reference = models.CharField(max_length=500, blank=True)

    rendered_document = models.TextField(blank=True, help_text="Last rendered UBL XML")
    registry_response = models.JSONField(default=dict, blank=True)
    validation_errors = models.JSONField(default=list, blank=True)
    rejection_reason = models.TextField(blank=True)

    submitted_at = models.DateTimeField(null=True, blank=True)
    last_reconciled_at = models.DateTimeField(null=True, blank=True)
    last_polled_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Last time the poller fetched this document, whatever the outcome",
    )
    last_signal_source = models.CharField(max_length=20, choices=SignalSource.choices(), blank=True)

    version = models.PositiveIntegerField(default=0)

    # Held by one submitter between its claim and the registry outcome
    submission_claim = models.CharField(max_length=32, blank=True)
    submission_claimed_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "einvoicing_invoice"
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(
                fields=["lifecycle_status", "last_polled_at"],
                name="einv_tracked_idx",
                condition=Q(registry_document_id__isnull=False),
            ),
            models.Index(fields=["merchant", "direction"], name="einv_merchant_dir_idx"),
        )

    def __str__(self) -> str:
        return f"{self.get_document_kind_display()} {self.invoice_number} [{self.lifecycle_status}]"

    @property
    def status(self) -> LifecycleStatus:
        return LifecycleStatus(self.lifecycle_status)

    @property
    def kind(self) -> DocumentKind:
        return DocumentKind(self.document_kind)

    @property
    def is_tracked(self) -> bool:
        """Awaiting further registry signals."""
        if not self.registry_document_id or self.lifecycle_status not in LifecycleStatus.tracked_statuses():
            return False
        # Only outgoing documents move on from accepted (to sent)
        return not (
            self.direction == Direction.INCOMING.value and self.lifecycle_status == LifecycleStatus.ACCEPTED.value
        )

    def submission_in_progress(self, now: datetime | None = None) -> bool:
        """A submitter holds the claim and has not recorded an outcome yet."""
        if not self.submission_claim or self.submission_claimed_at is None:
            return False
        ttl = timedelta(seconds=registry_settings.submission_claim_ttl_seconds)
        return (now or timezone.now()) - self.submission_claimed_at < ttl

    @classmethod
    def get_tracked(
        cls, max_age_minutes: int | None = None, now: datetime | None = None
    ) -> models.QuerySet[Invoice]:
        """
        Invoices the poller should reconcile, least recently polled first.

        With ``max_age_minutes`` only invoices neither polled nor reconciled
        within that window are returned.
        """
        qs = cls.objects.filter(
            lifecycle_status__in=LifecycleStatus.tracked_statuses(),
            registry_document_id__isnull=False,
            merchant__is_active=True,
        ).exclude(direction=Direction.INCOMING.value, lifecycle_status=LifecycleStatus.ACCEPTED.value)
        if max_age_minutes is not None:
            cutoff = (now or timezone.now()) - timedelta(minutes=max_age_minutes)
            qs = qs.filter(
                Q(last_polled_at__isnull=True) | Q(last_polled_at__lt=cutoff),
                Q(last_reconciled_at__isnull=True) | Q(last_reconciled_at__lt=cutoff),
            )
        return qs.select_related("merchant").order_by(
            models.F("last_polled_at").asc(nulls_first=True),
            models.F("last_reconciled_at").asc(nulls_first=True),
            "id",
        )


class LineItem(models.Model):
    """Invoice line; totals are derived, never trusted from input."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="lines")
    line_number = models.PositiveIntegerField()
    item_name = models.CharField(max_length=255)
    item_description = models.TextField(blank=True)

    quantity = models.DecimalField(max_digits=18, decimal_places=4)
    unit_price = models.DecimalField(max_digits=18, decimal_places=2)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=0, help_text="Percent, e.g. 10")
    tax_category = models.CharField(
        max_length=2,
        choices=TaxCategory.choices(),
        default=TaxCategory.STANDARD.value,
    )

    line_total = models.DecimalField(max_digits=18, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=18, decimal_places=2, default=0)

    class Meta:
        db_table = "einvoicing_line_item"
        ordering: ClassVar[tuple[str, ...]] = ("line_number",)
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(fields=["invoice", "line_number"], name="unique_line_number_per_invoice"),
        )

    def __str__(self) -> str:
        return f"#{self.line_number} {self.item_name}"


class AuditEvent(models.Model):
    """Immutable audit log entry for an accepted invoice transition."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(Invoice, on_delete=models.PROTECT, related_name="audit_events")
    action = models.CharField(max_length=50, db_index=True)
    previous_status = models.CharField(max_length=20, blank=True)
    new_status = models.CharField(max_length=20, blank=True)
    source = models.CharField(max_length=20, choices=SignalSource.choices())
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)

    class Meta:
        db_table = "einvoicing_audit_event"
        ordering: ClassVar[tuple[str, ...]] = ("created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["invoice", "created_at"], name="einv_audit_invoice_idx"),
        )

    def __str__(self) -> str:
        return f"{self.action}: {self.previous_status or '-'} -> {self.new_status or '-'}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        if not self._state.adding:
            raise ImmutableAuditEventError(f"Audit event {self.pk} cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args: Any, **kwargs: Any) -> tuple[int, dict[str, int]]:
        raise ImmutableAuditEventError(f"Audit event {self.pk} cannot be deleted")
