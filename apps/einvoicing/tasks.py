"""
Async tasks for e-invoicing operations.

These tasks are designed for use with Django-Q2:
- submit_invoice_task: Submit a single draft invoice
- poll_tracked_invoices_task: Reconcile a batch of tracked invoices
- poll_registry_updates_task: Delta poll every active merchant
- retry_failed_webhooks_task: Re-drive registry webhooks that failed handling

Usage:
    from django_q.tasks import async_task
    async_task("apps.einvoicing.tasks.submit_invoice_task", invoice_id)
"""

from __future__ import annotations

import logging
from typing import Any

from django.utils import timezone
from django_q.models import Schedule
from django_q.tasks import async_task

from .credentials import CredentialUnavailableError
from .models import Merchant
from .reconciliation import ReconciliationError
from .services import build_default_services
from .settings import registry_settings
from .submission import InvalidInvoiceStateError

logger = logging.getLogger(__name__)

# Task timeout in seconds
TASK_TIMEOUT = 300


def submit_invoice_task(invoice_id: int) -> dict[str, Any]:
    """
    Submit a single invoice to the registry.

    Returns:
        Dict with result status and details
    """
    logger.info(f"📤 [Task] Starting submission for invoice {invoice_id}")

    try:
        result = build_default_services().orchestrator.submit(int(invoice_id))
    except InvalidInvoiceStateError as e:
        logger.error(f"❌ [Task] Invoice {invoice_id} cannot be submitted: {e}")
        return {"success": False, "invoice_id": invoice_id, "error": str(e), "error_code": str(e.code)}

    if result.success:
        return {
            "success": True,
            "invoice_id": invoice_id,
            "registry_document_id": result.registry_document_id,
            "verification_reference": result.verification_reference,
        }
    logger.warning(f"⚠️ [Task] Submission of invoice {invoice_id} failed: {result.error}")
    return {
        "success": False,
        "invoice_id": invoice_id,
        "error": result.error,
        "error_code": result.error_code,
        "validation_errors": result.validation_errors,
    }


def poll_tracked_invoices_task() -> dict[str, Any]:
    """
    Reconcile tracked invoices that have not heard from the registry lately.

    Scheduled every ``REGISTRY_POLL_INTERVAL_MINUTES``.
    """
    if not registry_settings.enabled:
        return {"success": True, "skipped": "registry integration disabled"}

    results = build_default_services().engine.poll_tracked_invoices()
    logger.info(f"🔄 [Task] Tracked poll complete: {results}")
    return {
        "success": True,
        "timestamp": timezone.now().isoformat(),
        **results,
    }


def poll_registry_updates_task() -> dict[str, Any]:
    """
    Delta poll for every active merchant.

    One merchant's failure does not stop the others; its sync cursor simply
    stays where it was.
    """
    if not registry_settings.enabled:
        return {"success": True, "skipped": "registry integration disabled"}

    engine = build_default_services().engine
    summary: dict[str, Any] = {"merchants": 0, "updated": 0, "received": 0, "failed": 0, "errors": []}

    for merchant in Merchant.objects.filter(is_active=True):
        summary["merchants"] += 1
        try:
            results = engine.poll_updates(merchant)
        except (CredentialUnavailableError, ReconciliationError) as e:
            logger.warning(f"⚠️ [Task] Delta poll skipped for merchant {merchant.id}: {e}")
            summary["errors"].append({"merchant_id": merchant.id, "error": str(e)})
            continue
        except Exception as e:
            logger.exception(f"🔥 [Task] Delta poll failed for merchant {merchant.id}")
            summary["errors"].append({"merchant_id": merchant.id, "error": str(e)})
            continue
        summary["updated"] += results["updated"]
        summary["received"] += results["received"]
        summary["failed"] += results["failed"]
        summary["errors"].extend(results["errors"])

    logger.info(f"🔄 [Task] Delta poll complete: {summary['merchants']} merchant(s), {summary['updated']} updated")
    return {
        "success": True,
        "timestamp": timezone.now().isoformat(),
        **summary,
    }


def retry_failed_webhooks_task() -> dict[str, Any]:
    """Re-drive registry webhook deliveries whose handling failed."""
    from apps.integrations.webhooks.base import retry_failed_webhooks  # noqa: PLC0415

    results = retry_failed_webhooks(source="registry")
    logger.info(f"🔁 [Task] Webhook retries complete: {results}")
    return {
        "success": True,
        "timestamp": timezone.now().isoformat(),
        **results,
    }


# --- Task Scheduling Helpers ---


def schedule_einvoicing_tasks() -> None:
    """
    Schedule recurring e-invoicing tasks.

    Call this during deployment (``manage.py setup_einvoicing_schedules``).
    """
    interval = registry_settings.poll_interval_minutes

    Schedule.objects.update_or_create(
        name="einvoicing_poll_tracked",
        defaults={
            "func": "apps.einvoicing.tasks.poll_tracked_invoices_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": interval,
        },
    )

    Schedule.objects.update_or_create(
        name="einvoicing_poll_updates",
        defaults={
            "func": "apps.einvoicing.tasks.poll_registry_updates_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": interval,
        },
    )

    Schedule.objects.update_or_create(
        name="einvoicing_retry_webhooks",
        defaults={
            "func": "apps.einvoicing.tasks.retry_failed_webhooks_task",
            "schedule_type": Schedule.MINUTES,
            "minutes": 15,
        },
    )

    logger.info(f"✅ [Task] E-invoicing schedules configured (poll every {interval} min)")


# --- Async Task Helpers ---


def queue_invoice_submission(invoice_id: int) -> str:
    """
    Queue an invoice for submission.

    Returns:
        Task ID
    """
    task_id = async_task(
        "apps.einvoicing.tasks.submit_invoice_task",
        invoice_id,
        timeout=TASK_TIMEOUT,
    )
    logger.info(f"📤 [Task] Queued submission for invoice {invoice_id}: task {task_id}")
    return str(task_id)
