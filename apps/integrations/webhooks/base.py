import hashlib
import hmac
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from apps.common.types import Err, Ok, Result
from apps.integrations.models import WebhookEvent

logger = logging.getLogger(__name__)

# Failed deliveries older than this are abandoned
MAX_WEBHOOK_AGE_DAYS = 7
MAX_WEBHOOK_RETRIES = 5


# ===============================================================================
# WEBHOOK PROCESSING RESULT TYPES
# ===============================================================================


class WebhookErrorCode(StrEnum):
    """Why a delivery was not processed; the endpoint maps these to HTTP statuses."""

    INVALID_PAYLOAD = "invalid_payload"
    INVALID_SIGNATURE = "invalid_signature"
    DUPLICATE = "duplicate"
    PROCESSING_FAILED = "processing_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class WebhookError:
    code: WebhookErrorCode
    message: str


@dataclass(frozen=True)
class WebhookProcessingResult:
    """Result of webhook processing with success flag, message, and optional event."""

    success: bool
    message: str
    webhook_event: WebhookEvent | None = None
    error_code: WebhookErrorCode | None = None

    @classmethod
    def success_result(cls, message: str, event: WebhookEvent) -> "WebhookProcessingResult":
        return cls(success=True, message=message, webhook_event=event)

    @classmethod
    def error_result(
        cls,
        message: str,
        event: WebhookEvent | None = None,
        code: WebhookErrorCode = WebhookErrorCode.PROCESSING_FAILED,
    ) -> "WebhookProcessingResult":
        return cls(success=False, message=message, webhook_event=event, error_code=code)


@dataclass(frozen=True)
class WebhookContext:
    """Context for webhook event processing."""

    payload: dict[str, Any]
    raw_body: bytes
    signature: str
    headers: dict[str, str]
    ip_address: str | None
    user_agent: str | None
    event_info: dict[str, str]


@dataclass(frozen=True)
class WebhookRequestMetadata:
    """Metadata extracted from webhook request."""

    raw_body: bytes
    signature: str
    headers: dict[str, str]
    ip_address: str | None
    user_agent: str | None


# ===============================================================================
# BASE WEBHOOK PROCESSING
# ===============================================================================


class BaseWebhookProcessor:
    """
    🔧 Base class for webhook processing with deduplication

    Provides common functionality for all webhook sources:
    - Signature verification
    - Deduplication checking
    - Error handling and retry scheduling
    """

    source_name: str | None = None  # Override in subclasses

    def __init__(self) -> None:
        if not self.source_name:
            raise ValueError("source_name must be defined in subclass")

    def process_webhook(
        self,
        payload: dict[str, Any],
        raw_body: bytes = b"",
        signature: str = "",
        headers: dict[str, str] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> WebhookProcessingResult:
        """
        🔄 Main webhook processing pipeline

        Failures carry an ``error_code``; messages never include exception text.
        """
        headers = headers or {}

        try:
            metadata = WebhookRequestMetadata(raw_body, signature, headers, ip_address, user_agent)
            result = (
                self._validate_payload(payload)
                .and_then(lambda event_info: self._create_context(payload, metadata, event_info))
                .and_then(lambda context: self._verify_signature_with_context(context))
                .and_then(lambda context: self._check_duplicates(context))
                .and_then(lambda context: self._create_and_process_event(context))
            )

            match result:
                case Ok(processing_result):
                    return processing_result
                case Err(WebhookError(code=WebhookErrorCode.DUPLICATE, message=event_id)):
                    # Duplicates are a success from the sender's point of view
                    existing = WebhookEvent.objects.get(source=self.source_name, event_id=event_id)
                    return WebhookProcessingResult.success_result(f"⏭️ Duplicate webhook skipped: {event_id}", existing)
                case Err(WebhookError(code=code, message=message)):
                    return WebhookProcessingResult.error_result(message, code=code)
                case _:
                    return WebhookProcessingResult.error_result("Unknown result type", code=WebhookErrorCode.INTERNAL_ERROR)

        except Exception:
            logger.exception(f"💥 Critical error processing {self.source_name} webhook")
            # Never expose internal exception details to external callers
            return WebhookProcessingResult.error_result(
                "Critical error processing webhook", code=WebhookErrorCode.INTERNAL_ERROR
            )

    def _validate_payload(self, payload: dict[str, Any]) -> Result[dict[str, str], WebhookError]:
        """Step 1: Validate payload and extract event information."""
        if not isinstance(payload, dict):
            return Err(WebhookError(WebhookErrorCode.INVALID_PAYLOAD, "❌ Payload must be a JSON object"))

        event_id = self.extract_event_id(payload)
        event_type = self.extract_event_type(payload)

        if not event_id:
            return Err(WebhookError(WebhookErrorCode.INVALID_PAYLOAD, "❌ Missing event ID in payload"))

        if not event_type:
            return Err(WebhookError(WebhookErrorCode.INVALID_PAYLOAD, "❌ Missing event type in payload"))

        return Ok({"event_id": event_id, "event_type": event_type})

    def _create_context(
        self, payload: dict[str, Any], metadata: WebhookRequestMetadata, event_info: dict[str, str]
    ) -> Result[WebhookContext, WebhookError]:
        """Step 2: Create webhook processing context."""
        context = WebhookContext(
            payload=payload,
            raw_body=metadata.raw_body,
            signature=metadata.signature,
            headers=metadata.headers,
            ip_address=metadata.ip_address,
            user_agent=metadata.user_agent,
            event_info=event_info,
        )
        return Ok(context)

    def _verify_signature_with_context(self, context: WebhookContext) -> Result[WebhookContext, WebhookError]:
        """Step 3: Verify webhook signature using context."""
        if not self.verify_signature(context.raw_body, context.signature, context.headers):
            return Err(WebhookError(WebhookErrorCode.INVALID_SIGNATURE, "❌ Invalid webhook signature"))

        return Ok(context)

    def _check_duplicates(self, context: WebhookContext) -> Result[WebhookContext, WebhookError]:
        """Step 4: Check for duplicate webhook processing."""
        event_id = context.event_info["event_id"]

        if WebhookEvent.is_duplicate(self.source_name, event_id):
            logger.info(f"🔄 Duplicate webhook {self.source_name}:{event_id} - skipping")
            return Err(WebhookError(WebhookErrorCode.DUPLICATE, event_id))

        return Ok(context)

    def _create_and_process_event(self, context: WebhookContext) -> Result[WebhookProcessingResult, WebhookError]:
        """Step 5: Record the delivery, then handle it."""
        event_id = context.event_info["event_id"]
        event_type = context.event_info["event_type"]

        try:
            with transaction.atomic():
                webhook_event = WebhookEvent(
                    source=self.source_name,
                    event_id=event_id,
                    event_type=event_type,
                    payload=context.payload,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent or "",
                    headers=context.headers,
                    status="pending",
                )
                webhook_event.set_signature(context.signature)
                webhook_event.save()
        except IntegrityError:
            # Same delivery arriving concurrently
            logger.info(f"🔄 Concurrent duplicate webhook {self.source_name}:{event_id} - skipping")
            return Err(WebhookError(WebhookErrorCode.DUPLICATE, event_id))

        return Ok(self._handle_recorded_event(webhook_event))

    def _handle_recorded_event(self, webhook_event: WebhookEvent) -> WebhookProcessingResult:
        event_id = webhook_event.event_id
        try:
            success, message = self.handle_event(webhook_event)
        except Exception as e:
            logger.exception(f"💥 Exception processing {self.source_name} webhook {event_id}")
            # Stored for operators; the response carries only the generic message
            webhook_event.mark_failed(f"{type(e).__name__}: {e}")
            return WebhookProcessingResult.error_result("Processing error", webhook_event)

        if success:
            # Handlers may already have recorded the event as skipped
            if webhook_event.status != "skipped":
                webhook_event.mark_processed()
            logger.info(f"✅ Processed {self.source_name} webhook {event_id}: {message}")
            return WebhookProcessingResult.success_result(message, webhook_event)

        webhook_event.mark_failed(message)
        logger.error(f"❌ Failed {self.source_name} webhook {event_id}: {message}")
        return WebhookProcessingResult.error_result(message, webhook_event)

    def extract_event_id(self, payload: dict[str, Any]) -> str | None:
        """🔍 Extract unique event ID from payload - override in subclasses"""
        return payload.get("id")

    def extract_event_type(self, payload: dict[str, Any]) -> str | None:
        """🏷️ Extract event type from payload - override in subclasses"""
        return payload.get("type")

    def verify_signature(self, raw_body: bytes, signature: str, headers: dict[str, str]) -> bool:
        """🔐 Verify webhook signature - secure default is to fail and log an error."""
        logger.error("Signature verification not implemented for this processor")
        return False

    def handle_event(self, webhook_event: WebhookEvent) -> tuple[bool, str]:
        """
        🎯 Handle specific webhook event - override in subclasses

        Returns:
            (success: bool, message: str)
        """
        raise NotImplementedError("Subclasses must implement handle_event")


# ===============================================================================
# WEBHOOK SIGNATURE VERIFICATION UTILITIES
# ===============================================================================


def verify_hmac_signature(payload_body: bytes, signature: str, secret: str, algorithm: str = "sha256") -> bool:
    """
    🔐 Verify HMAC signature for webhook authenticity
    """
    if not signature or not secret:
        return False

    mac = hmac.new(secret.encode("utf-8"), payload_body, getattr(hashlib, algorithm))
    expected_signature = mac.hexdigest()

    # Compare signatures (timing-safe)
    return hmac.compare_digest(signature.strip().lower(), expected_signature)


# ===============================================================================
# WEBHOOK RETRY UTILITIES
# ===============================================================================


def should_retry_webhook(webhook_event: WebhookEvent, max_retries: int = MAX_WEBHOOK_RETRIES) -> bool:
    """
    🔄 Determine if webhook should be retried based on failure count and age
    """
    if webhook_event.status in ["processed", "skipped"]:
        return False

    if webhook_event.retry_count > max_retries:
        return False

    age_days = (timezone.now() - webhook_event.received_at).days
    return not age_days > MAX_WEBHOOK_AGE_DAYS


# ===============================================================================
# WEBHOOK PROCESSING QUEUE
# ===============================================================================


def reprocess_webhook_event(webhook_event: WebhookEvent) -> WebhookProcessingResult:
    """🔁 Run an already recorded delivery through its processor again"""
    processor = get_webhook_processor(webhook_event.source)
    if not processor:
        message = f"No processor found for source: {webhook_event.source}"
        webhook_event.mark_failed(message)
        return WebhookProcessingResult.error_result(message, webhook_event)
    return processor._handle_recorded_event(webhook_event)


def process_pending_webhooks(source: str | None = None, limit: int = 100) -> dict[str, int]:
    """
    🔄 Process pending webhooks in queue

    Returns stats: {processed: int, failed: int}
    """
    stats = {"processed": 0, "failed": 0}

    for webhook_event in WebhookEvent.get_pending_webhooks(source=source, limit=limit):
        if reprocess_webhook_event(webhook_event).success:
            stats["processed"] += 1
        else:
            stats["failed"] += 1

    return stats


def retry_failed_webhooks(source: str | None = None) -> dict[str, int]:
    """
    🔄 Retry failed webhooks that are ready for retry

    Returns stats: {retried: int, failed: int, abandoned: int}
    """
    stats = {"retried": 0, "failed": 0, "abandoned": 0}

    for webhook_event in WebhookEvent.get_failed_webhooks_for_retry(source=source):
        if not should_retry_webhook(webhook_event):
            webhook_event.mark_skipped("Max retries exceeded or too old")
            logger.warning(f"⚠️ Abandoned {webhook_event.source} webhook {webhook_event.event_id}")
            stats["abandoned"] += 1
            continue

        # Reset to pending for retry
        webhook_event.status = "pending"
        webhook_event.next_retry_at = None
        webhook_event.save(update_fields=["status", "next_retry_at", "updated_at"])

        if reprocess_webhook_event(webhook_event).success:
            stats["retried"] += 1
        else:
            stats["failed"] += 1

    return stats


def get_webhook_processor(source: str) -> BaseWebhookProcessor | None:
    """
    🏭 Factory function to get appropriate webhook processor
    """
    from .registry import RegistryWebhookProcessor  # Factory pattern avoids circular imports  # noqa: PLC0415

    processors: dict[str, type[BaseWebhookProcessor]] = {
        "registry": RegistryWebhookProcessor,
    }

    processor_class = processors.get(source)
    if processor_class:
        return processor_class()

    return None
