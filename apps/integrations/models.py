import hashlib
import secrets
import uuid
from datetime import timedelta
from typing import Any, ClassVar

from django.core.validators import MinValueValidator
from django.db import models
from django.db.models.query import QuerySet
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

# Backoff between handling attempts of a failed delivery: 5m, 15m, 1h, 2h, 6h
RETRY_DELAYS_SECONDS: tuple[int, ...] = (300, 900, 3600, 7200, 21600)

# ===============================================================================
# WEBHOOK DEDUPLICATION SYSTEM
# ===============================================================================


class WebhookEvent(models.Model):
    """
    🔄 Inbound webhook delivery, deduplicated per source

    The registry retries deliveries and may send the same event more than
    once; (source, event_id) is unique so each event is handled once.
    Failed handling is kept with a retry schedule instead of being dropped.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("pending", _("⏳ Pending")),
        ("processed", _("✅ Processed")),
        ("failed", _("❌ Failed")),
        ("skipped", _("⏭️ Skipped")),  # Duplicate or irrelevant
    )

    SOURCE_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("registry", _("🧾 E-Invoicing Registry")),
        ("other", _("🔌 Other")),
    )

    # Core identification
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    source = models.CharField(
        max_length=50, choices=SOURCE_CHOICES, help_text=_("External service that sent the webhook")
    )
    event_id = models.CharField(max_length=255, help_text=_("Unique event ID derived from the delivery"))
    event_type = models.CharField(max_length=100, help_text=_("Type of event (e.g., 'DOCUMENT.VALIDATED')"))

    # Processing status
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default="pending")

    # Timing
    received_at = models.DateTimeField(default=timezone.now, help_text=_("When webhook was received by our system"))
    processed_at = models.DateTimeField(null=True, blank=True, help_text=_("When webhook processing completed"))

    # Data storage
    payload = models.JSONField(help_text=_("Complete webhook payload from external service"))
    signature_hash = models.CharField(
        max_length=64,
        blank=True,
        default="",
        help_text=_("SHA-256 hash of webhook signature for verification tracking"),
    )

    # Error handling
    error_message = models.TextField(blank=True, help_text=_("Error details if processing failed"))
    retry_count = models.PositiveIntegerField(
        default=0, validators=[MinValueValidator(0)], help_text=_("Number of processing attempts")
    )
    next_retry_at = models.DateTimeField(
        null=True, blank=True, help_text=_("When to retry processing (for failed webhooks)")
    )

    # Metadata
    ip_address = models.GenericIPAddressField(
        null=True, blank=True, help_text=_("IP address webhook was received from")
    )
    user_agent = models.TextField(blank=True, help_text=_("User agent of webhook sender"))
    headers = models.JSONField(default=dict, blank=True, help_text=_("HTTP headers from webhook request"))

    # Audit trail
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _("🔄 Webhook Event")
        verbose_name_plural = _("🔄 Webhook Events")

        # Prevent duplicate processing
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(fields=["source", "event_id"], name="unique_webhook_source_event"),
        )

        indexes: ClassVar[tuple[models.Index, ...]] = (
            # Query pending webhooks for processing
            models.Index(
                fields=["status", "received_at"], name="webhook_pending_idx", condition=models.Q(status="pending")
            ),
            # Query failed webhooks for retry
            models.Index(
                fields=["status", "next_retry_at"],
                name="webhook_retry_idx",
                condition=models.Q(status="failed", next_retry_at__isnull=False),
            ),
            # Query by source and event type
            models.Index(fields=["source", "event_type", "received_at"], name="webhook_source_type_idx"),
        )

        ordering: ClassVar[tuple[str, ...]] = ("-received_at",)

    def __str__(self) -> str:
        return f"🔄 {self.get_source_display()} | {self.event_type} | {self.status}"

    @property
    def processing_duration(self) -> Any | None:
        """⏱️ Time taken to process webhook"""
        if self.processed_at and self.received_at:
            return self.processed_at - self.received_at
        return None

    def set_signature(self, signature: str | None) -> None:
        """Store the signature hashed; empty/None -> empty hash string."""
        self.signature_hash = hashlib.sha256(signature.encode()).hexdigest() if signature else ""

    def mark_processed(self, save: bool = True) -> None:
        """✅ Mark webhook as successfully processed"""
        self.status = "processed"
        self.error_message = ""
        self.next_retry_at = None
        self.processed_at = timezone.now()
        if save:
            self.save(update_fields=["status", "error_message", "next_retry_at", "processed_at", "updated_at"])

    def mark_failed(self, error_message: str, save: bool = True) -> None:
        """❌ Mark webhook as failed and schedule the next attempt"""
        self.status = "failed"
        self.error_message = error_message
        self.retry_count += 1
        self.processed_at = timezone.now()

        if self.retry_count <= len(RETRY_DELAYS_SECONDS):
            base_delay = RETRY_DELAYS_SECONDS[self.retry_count - 1]
            # Jitter (80% - 120%) spreads retries of a burst of failures
            jitter_factor = secrets.SystemRandom().uniform(0.8, 1.2)
            self.next_retry_at = timezone.now() + timedelta(seconds=int(base_delay * jitter_factor))
        else:
            self.next_retry_at = None

        if save:
            self.save(
                update_fields=["status", "error_message", "retry_count", "processed_at", "next_retry_at", "updated_at"]
            )

    def mark_skipped(self, reason: str = "Duplicate or irrelevant", save: bool = True) -> None:
        """⏭️ Mark webhook as skipped (duplicate/irrelevant)"""
        self.status = "skipped"
        self.error_message = reason
        self.processed_at = timezone.now()
        if save:
            self.save(update_fields=["status", "error_message", "processed_at", "updated_at"])

    @classmethod
    def is_duplicate(cls, source: str, event_id: str) -> bool:
        """🔍 Check if webhook has already been received"""
        return cls.objects.filter(source=source, event_id=event_id).exists()

    @classmethod
    def get_pending_webhooks(cls, source: str | None = None, limit: int = 100) -> QuerySet["WebhookEvent"]:
        """📋 Get pending webhooks for processing"""
        queryset = cls.objects.filter(status="pending").order_by("received_at")
        if source:
            queryset = queryset.filter(source=source)
        return queryset[:limit]

    @classmethod
    def get_failed_webhooks_for_retry(cls, source: str | None = None) -> QuerySet["WebhookEvent"]:
        """🔄 Get failed webhooks ready for retry"""
        now = timezone.now()
        queryset = cls.objects.filter(status="failed", next_retry_at__isnull=False, next_retry_at__lte=now).order_by(
            "next_retry_at"
        )
        if source:
            queryset = queryset.filter(source=source)
        return queryset
