import hashlib
import logging
from typing import Any, ClassVar

from apps.einvoicing.models import Merchant
from apps.einvoicing.reconciliation import ReconciliationOutcome, StatusSignal
from apps.einvoicing.services import build_default_services
from apps.einvoicing.settings import registry_settings
from apps.einvoicing.status import SignalSource
from apps.integrations.models import WebhookEvent

from .base import BaseWebhookProcessor, verify_hmac_signature

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Registry-Signature"


# ===============================================================================
# E-INVOICING REGISTRY WEBHOOK PROCESSOR
# ===============================================================================


class RegistryWebhookProcessor(BaseWebhookProcessor):
    """
    🧾 E-invoicing registry webhook processor

    Handles registry events:
    - DOCUMENT.VALIDATED / VALIDATION_FAILED / ACCEPTED / REJECTED → status signal
    - DOCUMENT.STATUS_UPDATED → status signal carrying the payload status
    - DOCUMENT.DELIVERED → status signal (sent, while the invoice is still submitted)
    - DOCUMENT.RECEIVED → register the incoming document
    - ENTITY.REVOKED → deactivate the merchant

    The registry sends no delivery id, so one is derived from the event fields.
    """

    source_name = "registry"

    # Event type -> registry status string the engine understands
    STATUS_EVENTS: ClassVar[dict[str, str]] = {
        "DOCUMENT.VALIDATED": "validated",
        "DOCUMENT.VALIDATION_FAILED": "validation_failed",
        "DOCUMENT.ACCEPTED": "accepted",
        "DOCUMENT.REJECTED": "rejected",
        "DOCUMENT.DELIVERED": "delivered",
    }

    def extract_event_id(self, payload: dict[str, Any]) -> str | None:
        """🔍 Derive a stable event ID from the delivery fields"""
        event_type = self.extract_event_type(payload)
        if not event_type:
            return None
        parts = [
            event_type,
            str(payload.get("document_id") or ""),
            str(payload.get("endpoint_id") or ""),
            str(payload.get("status") or ""),
            str(payload.get("timestamp") or ""),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    def extract_event_type(self, payload: dict[str, Any]) -> str | None:
        """🏷️ Extract registry event type"""
        event_type = payload.get("type")
        return str(event_type).strip().upper() if event_type else None

    def verify_signature(self, raw_body: bytes, signature: str, headers: dict[str, str]) -> bool:
        """🔐 Verify registry HMAC-SHA256 signature over the raw body"""
        webhook_secret = registry_settings.webhook_secret
        if not webhook_secret:
            logger.error("🔥 [Webhook] REGISTRY_WEBHOOK_SECRET not configured - rejecting delivery")
            return False

        return verify_hmac_signature(raw_body, signature, webhook_secret)

    def handle_event(self, webhook_event: WebhookEvent) -> tuple[bool, str]:
        """🎯 Handle registry webhook event"""
        event_type = webhook_event.event_type
        payload = webhook_event.payload

        if event_type in self.STATUS_EVENTS:
            return self.handle_status_event(payload, self.STATUS_EVENTS[event_type])

        if event_type == "DOCUMENT.STATUS_UPDATED":
            status = payload.get("status")
            if not status:
                return False, "Missing status in DOCUMENT.STATUS_UPDATED payload"
            return self.handle_status_event(payload, str(status))

        if event_type == "DOCUMENT.RECEIVED":
            return self.handle_received_event(payload)

        if event_type == "ENTITY.REVOKED":
            return self.handle_revoked_event(payload)

        # Unknown event type - tolerate registry evolution
        logger.info(f"⏭️ [Webhook] Skipping unknown registry event type: {event_type}")
        webhook_event.mark_skipped(f"Unknown event type: {event_type}")
        return True, f"Skipped unknown event type: {event_type}"

    def handle_status_event(self, payload: dict[str, Any], reported_status: str) -> tuple[bool, str]:
        """📋 Feed a status report into the reconciliation engine"""
        document_id = payload.get("document_id")
        if not document_id:
            return False, "Missing document_id in status event"

        signal = StatusSignal(
            external_document_id=str(document_id),
            reported_status=reported_status,
            source=SignalSource.WEBHOOK,
            raw_payload=payload,
        )
        result = build_default_services().engine.apply_signal(signal)

        if result.outcome == ReconciliationOutcome.NOT_FOUND:
            # Documents issued outside this system are reported too
            logger.warning(f"⚠️ [Webhook] No invoice for registry document {document_id}")
            return True, f"Document not tracked locally: {document_id}"

        return True, f"Document {document_id}: {result.outcome} ({result.previous_status} -> {result.new_status})"

    def handle_received_event(self, payload: dict[str, Any]) -> tuple[bool, str]:
        """📥 Register a document another party sent to one of our merchants"""
        document_id = payload.get("document_id")
        endpoint_id = payload.get("endpoint_id")
        if not document_id or not endpoint_id:
            return False, "Missing document_id or endpoint_id in DOCUMENT.RECEIVED payload"

        merchant = Merchant.objects.filter(endpoint_id=endpoint_id, is_active=True).first()
        if merchant is None:
            logger.warning(f"⚠️ [Webhook] No active merchant for endpoint {endpoint_id}")
            return True, f"No active merchant for endpoint {endpoint_id}"

        invoice, created = build_default_services().engine.receive_document(merchant, str(document_id))
        if created:
            return True, f"Registered incoming document {document_id} as invoice {invoice.id}"
        return True, f"Incoming document {document_id} already registered"

    def handle_revoked_event(self, payload: dict[str, Any]) -> tuple[bool, str]:
        """🚫 Disconnect the merchant whose registry entity was revoked"""
        endpoint_id = payload.get("endpoint_id")
        if not endpoint_id:
            return False, "Missing endpoint_id in ENTITY.REVOKED payload"

        merchants = list(Merchant.objects.filter(endpoint_id=endpoint_id))
        if not merchants:
            logger.warning(f"⚠️ [Webhook] Revocation for unknown endpoint {endpoint_id}")
            return True, f"No merchant for endpoint {endpoint_id}"

        for merchant in merchants:
            merchant.revoke()
            logger.warning(f"🚫 [Webhook] Merchant {merchant.id} revoked by the registry")

        return True, f"Revoked {len(merchants)} merchant(s) for endpoint {endpoint_id}"
