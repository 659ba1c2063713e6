from typing import Any

from django.contrib import admin
from django.http import HttpRequest

from .models import AuditEvent, Invoice, LineItem, Merchant


@admin.register(Merchant)
class MerchantAdmin(admin.ModelAdmin):
    list_display = ("name", "tax_id", "endpoint_id", "is_active", "registration_status", "last_synced_at")
    list_filter = ("is_active", "registration_status")
    search_fields = ("name", "tax_id", "endpoint_id")
    exclude = ("access_token",)


class LineItemInline(admin.TabularInline):
    model = LineItem
    extra = 0
    readonly_fields = ("line_total", "tax_amount")


class AuditEventInline(admin.TabularInline):
    """Read-only view of the transition log."""

    model = AuditEvent
    extra = 0
    can_delete = False
    readonly_fields = ("created_at", "action", "previous_status", "new_status", "source", "detail")

    def has_add_permission(self, request: HttpRequest, obj: Any = None) -> bool:
        return False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    """
    Lifecycle fields are read-only here: status changes go through the
    submission orchestrator and the reconciliation engine so the version
    check and the audit trail stay intact.
    """

    list_display = (
        "invoice_number",
        "merchant",
        "document_kind",
        "direction",
        "lifecycle_status",
        "registry_status",
        "grand_total",
        "last_reconciled_at",
    )
    list_filter = ("lifecycle_status", "document_kind", "direction", "last_signal_source")
    search_fields = ("invoice_number", "registry_document_id", "customer_name")
    readonly_fields = (
        "uuid",
        "lifecycle_status",
        "registry_status",
        "registry_document_id",
        "verification_reference",
        "subtotal",
        "tax_total",
        "grand_total",
        "validation_errors",
        "rejection_reason",
        "submitted_at",
        "last_reconciled_at",
        "last_signal_source",
        "version",
    )
    inlines = (LineItemInline, AuditEventInline)
