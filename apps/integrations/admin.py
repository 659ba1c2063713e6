import json
from typing import Any

from django.contrib import admin
from django.utils.html import format_html
from django.utils.translation import gettext_lazy as _

from .models import WebhookEvent

# ===============================================================================
# WEBHOOK EVENT ADMINISTRATION
# ===============================================================================

STATUS_COLORS = {
    "pending": "#fbbf24",  # Yellow
    "processed": "#10b981",  # Green
    "failed": "#ef4444",  # Red
    "skipped": "#6b7280",  # Gray
}

STATUS_ICONS = {
    "pending": "⏳",
    "processed": "✅",
    "failed": "❌",
    "skipped": "⏭️",
}


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """🔄 Webhook event administration with deduplication tracking"""

    list_display = (
        "received_at",
        "source",
        "event_type_short",
        "status_display",
        "retry_count",
        "processing_time",
        "payload_size",
    )
    list_filter = ("source", "status", "event_type", "received_at")
    search_fields = ("event_id", "event_type", "error_message", "ip_address")
    readonly_fields = ("id", "signature_hash", "processing_duration", "created_at", "updated_at")
    date_hierarchy = "received_at"

    fieldsets = (
        (
            _("🔍 Event Information"),
            {"fields": ("id", "source", "event_id", "event_type", "status", "received_at", "processed_at")},
        ),
        (
            _("📋 Processing Details"),
            {
                "fields": ("retry_count", "next_retry_at", "error_message", "processing_duration"),
                "classes": ("collapse",),
            },
        ),
        (
            _("🌐 Request Information"),
            {"fields": ("ip_address", "user_agent", "signature_hash", "headers"), "classes": ("collapse",)},
        ),
        (_("📦 Payload Data"), {"fields": ("payload",), "classes": ("collapse",)}),
    )

    @admin.display(description=_("Event Type"))
    def event_type_short(self, obj: WebhookEvent) -> str:
        """📝 Shortened event type for display"""
        if len(obj.event_type) > 30:
            return f"{obj.event_type[:27]}..."
        return obj.event_type

    @admin.display(description=_("Status"))
    def status_display(self, obj: WebhookEvent) -> Any:
        """📊 Status with color indicators"""
        return format_html(
            '<span style="color: {};">{} {}</span>',
            STATUS_COLORS.get(obj.status, "#6b7280"),
            STATUS_ICONS.get(obj.status, "❓"),
            obj.get_status_display(),
        )

    @admin.display(description=_("Duration"))
    def processing_time(self, obj: WebhookEvent) -> str:
        """⏱️ Processing duration"""
        if obj.processing_duration:
            seconds = obj.processing_duration.total_seconds()
            if seconds < 1:
                return f"{int(seconds * 1000)}ms"
            return f"{seconds:.1f}s"
        return "-"

    @admin.display(description=_("Size"))
    def payload_size(self, obj: WebhookEvent) -> str:
        """📦 Payload size in KB"""
        size_bytes = len(json.dumps(obj.payload).encode("utf-8"))
        if size_bytes < 1024:
            return f"{size_bytes}B"
        return f"{size_bytes / 1024:.1f}KB"
