import json
import logging
from typing import Any

from django.http import HttpRequest, JsonResponse
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods
from django_ratelimit.decorators import ratelimit  # type: ignore[import-untyped]

from apps.common.types import Err, Ok, Result

from .models import WebhookEvent
from .webhooks.base import WebhookErrorCode, get_webhook_processor, reprocess_webhook_event
from .webhooks.registry import SIGNATURE_HEADER

logger = logging.getLogger(__name__)

REJECTION_STATUS = {
    WebhookErrorCode.INVALID_SIGNATURE: 401,
    WebhookErrorCode.INTERNAL_ERROR: 500,
}


# ===============================================================================
# WEBHOOK ENDPOINT VIEWS
# ===============================================================================


@method_decorator(
    [
        csrf_exempt,
        ratelimit(key="ip", rate="120/m", method="POST", block=False),  # 120 webhooks per minute per IP
        ratelimit(key="ip", rate="5000/h", method="POST", block=False),  # 5000 webhooks per hour per IP
    ],
    name="dispatch",
)
class WebhookView(View):
    """
    🔄 Generic webhook endpoint with deduplication

    Subclasses name the source and where its signature travels:
    - POST /integrations/webhooks/registry/ → E-invoicing registry events
    """

    source_name: str | None = None  # Override in subclasses

    def post(self, request: Any) -> Any:
        """📨 Process incoming webhook using result pipeline"""
        if not self.source_name:
            return JsonResponse({"error": "Webhook source not configured"}, status=400)

        if getattr(request, "limited", False):
            logger.warning(
                f"🚨 [Security] Rate limit exceeded for {self.source_name} webhook from IP: {self.get_client_ip(request)}"
            )
            return JsonResponse(
                {"status": "rate_limited", "message": "Too many webhook requests. Please slow down."}, status=429
            )

        try:
            result = (
                self._parse_request(request)
                .and_then(lambda payload: self._extract_metadata(request, payload))
                .and_then(lambda context: self._get_processor(context))
                .and_then(lambda context: self._process_webhook(context))
            )

            if result.is_ok():
                return result.value
            return self._create_error_response(result.error)

        except Exception:
            logger.exception(f"💥 Critical error processing {self.source_name} webhook")
            # Never expose internal exception details to external callers
            return JsonResponse({"status": "error", "message": "Internal processing error"}, status=500)

    def _parse_request(self, request: Any) -> Result[dict[str, Any], str]:
        """Parse and validate the incoming request payload."""
        content_type = request.content_type or ""
        if not content_type.startswith("application/json"):
            return Err("Content-Type must be application/json")

        try:
            payload = json.loads(request.body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return Err("Invalid JSON payload")
        return Ok(payload)

    def _extract_metadata(self, request: Any, payload: dict[str, Any]) -> Result[dict[str, Any], str]:
        """Extract webhook metadata from the request; the raw body is kept for signature checks."""
        return Ok(
            {
                "payload": payload,
                "raw_body": request.body,
                "signature": self.extract_signature(request),
                "ip_address": self.get_client_ip(request),
                "user_agent": request.META.get("HTTP_USER_AGENT", ""),
                "headers": dict(request.headers),
            }
        )

    def _get_processor(self, context: dict[str, Any]) -> Result[dict[str, Any], str]:
        """Get the appropriate webhook processor for this source."""
        processor = get_webhook_processor(self.source_name)
        if not processor:
            return Err(f"No processor found for source: {self.source_name}")

        context["processor"] = processor
        return Ok(context)

    def _process_webhook(self, context: dict[str, Any]) -> Result[JsonResponse, str]:
        """Process the webhook and create the appropriate response."""
        processor = context["processor"]
        result = processor.process_webhook(
            payload=context["payload"],
            raw_body=context["raw_body"],
            signature=context["signature"],
            headers=context["headers"],
            ip_address=context["ip_address"],
            user_agent=context["user_agent"],
        )
        message, webhook_event = result.message, result.webhook_event

        webhook_id = str(webhook_event.id) if webhook_event else None

        if result.success:
            logger.info(f"✅ {self.source_name} webhook processed: {message}")
            return Ok(JsonResponse({"status": "success", "message": message, "webhook_id": webhook_id}))

        # Recorded deliveries are retried from our side; the sender need not resend
        if webhook_event is not None:
            logger.error(f"❌ {self.source_name} webhook {webhook_id} failed, queued for retry: {message}")
            return Ok(
                JsonResponse({"status": "accepted", "message": "Queued for retry", "webhook_id": webhook_id}, status=202)
            )

        logger.error(f"❌ {self.source_name} webhook rejected: {message}")
        status = REJECTION_STATUS.get(result.error_code, 400)
        return Ok(
            JsonResponse(
                {"status": "error", "code": result.error_code, "message": message, "webhook_id": None}, status=status
            )
        )

    def _create_error_response(self, error_message: str) -> JsonResponse:
        """Create a standardized error response."""
        if error_message.startswith("No processor found"):
            return JsonResponse({"status": "error", "message": error_message}, status=404)
        return JsonResponse({"status": "error", "message": error_message}, status=400)

    def extract_signature(self, request: Any) -> str:
        """🔐 Extract webhook signature from headers - override in subclasses"""
        return request.META.get("HTTP_X_SIGNATURE", "")

    def get_client_ip(self, request: Any) -> str | None:
        """🌐 Get client IP address"""
        x_forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR")
        return x_forwarded_for.split(",")[0].strip() if x_forwarded_for else request.META.get("REMOTE_ADDR")


class RegistryWebhookView(WebhookView):
    """🧾 E-invoicing registry webhook endpoint"""

    source_name = "registry"

    def extract_signature(self, request: Any) -> str:
        """🔐 Extract registry signature"""
        return request.headers.get(SIGNATURE_HEADER, "")


# ===============================================================================
# WEBHOOK MANAGEMENT API
# ===============================================================================


def webhook_status(request: HttpRequest) -> JsonResponse:
    """📊 Webhook processing status and statistics"""
    if not request.user.is_staff:
        return JsonResponse({"error": "Unauthorized"}, status=403)

    stats = {
        "total_webhooks": WebhookEvent.objects.count(),
        "pending": WebhookEvent.objects.filter(status="pending").count(),
        "processed": WebhookEvent.objects.filter(status="processed").count(),
        "failed": WebhookEvent.objects.filter(status="failed").count(),
        "skipped": WebhookEvent.objects.filter(status="skipped").count(),
    }

    recent_data = [
        {
            "id": str(webhook.id),
            "source": webhook.source,
            "event_type": webhook.event_type,
            "status": webhook.status,
            "received_at": webhook.received_at.isoformat(),
            "processed_at": webhook.processed_at.isoformat() if webhook.processed_at else None,
        }
        for webhook in WebhookEvent.objects.order_by("-received_at")[:10]
    ]

    return JsonResponse({"stats": stats, "recent_webhooks": recent_data})


@require_http_methods(["POST"])
def retry_webhook(request: HttpRequest, webhook_id: str) -> JsonResponse:
    """🔄 Manually retry a failed webhook"""
    if not request.user.is_staff:
        return JsonResponse({"error": "Unauthorized"}, status=403)

    webhook_event = WebhookEvent.objects.filter(id=webhook_id).first()
    if webhook_event is None:
        return JsonResponse({"error": "Webhook not found"}, status=404)
    if webhook_event.status != "failed":
        return JsonResponse({"error": f"Cannot retry webhook with status: {webhook_event.status}"}, status=400)

    result = reprocess_webhook_event(webhook_event)
    if result.success:
        return JsonResponse({"status": "success", "message": f"Webhook retried successfully: {result.message}"})
    return JsonResponse({"status": "error", "message": f"Webhook retry failed: {result.message}"}, status=400)
