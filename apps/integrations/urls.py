from django.urls import path

from . import views

app_name = "integrations"

urlpatterns = [
    # ===============================================================================
    # WEBHOOK ENDPOINTS
    # ===============================================================================
    # E-invoicing registry webhooks
    path("webhooks/registry/", views.RegistryWebhookView.as_view(), name="registry_webhook"),
    # ===============================================================================
    # WEBHOOK MANAGEMENT API
    # ===============================================================================
    # Webhook status and statistics
    path("api/webhooks/status/", views.webhook_status, name="webhook_status"),
    # Manual webhook retry
    path("api/webhooks/<uuid:webhook_id>/retry/", views.retry_webhook, name="retry_webhook"),
]
