import logging
from datetime import timedelta
from typing import Any

from django.core.management.base import BaseCommand
from django.utils import timezone

from apps.integrations.models import WebhookEvent
from apps.integrations.webhooks.base import (
    process_pending_webhooks,
    retry_failed_webhooks,
)

logger = logging.getLogger(__name__)

CLEANUP_AFTER_DAYS = 30


class Command(BaseCommand):
    """
    🔄 Process webhook queue and retry failed webhooks

    Usage:
    python manage.py process_webhooks --pending --retry --source registry --limit 50

    Options:
    --pending: Process pending webhooks
    --retry: Retry failed webhooks
    --source: Filter by specific source (registry)
    --limit: Limit number of webhooks to process (default: 100)
    --cleanup: Clean up old processed webhooks (>30 days)
    --stats: Show webhook processing statistics
    """

    help = "🔄 Process webhook queue and retry failed webhooks"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument("--pending", action="store_true", help="Process pending webhooks")
        parser.add_argument("--retry", action="store_true", help="Retry failed webhooks")
        parser.add_argument("--source", type=str, help="Filter by webhook source (registry)")
        parser.add_argument(
            "--limit", type=int, default=100, help="Limit number of webhooks to process (default: 100)"
        )
        parser.add_argument("--cleanup", action="store_true", help="Clean up old processed webhooks (>30 days)")
        parser.add_argument("--stats", action="store_true", help="Show webhook processing statistics")

    def handle(self, *args: Any, **options: Any) -> None:
        """🎯 Main command handler"""
        self.stdout.write(self.style.SUCCESS("🔄 Starting webhook processing..."))

        source = options.get("source")
        limit = options.get("limit", 100)

        if options["stats"]:
            self.show_stats()

        if options["pending"]:
            self.process_pending(source, limit)

        if options["retry"]:
            self.retry_failed(source)

        if options["cleanup"]:
            self.cleanup_old_webhooks()

        if not any([options["pending"], options["retry"], options["cleanup"], options["stats"]]):
            # Default: process pending and retry failed
            self.process_pending(source, limit)
            self.retry_failed(source)

        self.stdout.write(self.style.SUCCESS("✅ Webhook processing completed!"))

    def process_pending(self, source: str | None = None, limit: int = 100) -> None:
        """📋 Process pending webhooks"""
        self.stdout.write(f"📋 Processing pending webhooks (source: {source or 'all'}, limit: {limit})")

        stats = process_pending_webhooks(source=source, limit=limit)

        self.stdout.write(f"  ✅ Processed: {stats['processed']}")
        self.stdout.write(f"  ❌ Failed: {stats['failed']}")

        if stats["failed"] > 0:
            self.stdout.write(self.style.WARNING(f"⚠️ {stats['failed']} webhooks failed - they will be retried later"))

    def retry_failed(self, source: str | None = None) -> None:
        """🔄 Retry failed webhooks"""
        self.stdout.write(f"🔄 Retrying failed webhooks (source: {source or 'all'})")

        stats = retry_failed_webhooks(source=source)

        self.stdout.write(f"  ✅ Retried successfully: {stats['retried']}")
        self.stdout.write(f"  ❌ Failed again: {stats['failed']}")
        self.stdout.write(f"  🗑️ Abandoned (too old/max retries): {stats['abandoned']}")

    def cleanup_old_webhooks(self) -> None:
        """🗑️ Clean up old processed webhooks"""
        self.stdout.write(f"🗑️ Cleaning up old processed webhooks (>{CLEANUP_AFTER_DAYS} days)")

        cutoff_date = timezone.now() - timedelta(days=CLEANUP_AFTER_DAYS)

        # Only delete processed/skipped webhooks, keep failed ones for analysis
        old_webhooks = WebhookEvent.objects.filter(status__in=["processed", "skipped"], processed_at__lt=cutoff_date)

        count, _ = old_webhooks.delete()
        if count:
            self.stdout.write(f"  🗑️ Deleted {count} old webhook records")
        else:
            self.stdout.write("  ℹ️ No old webhooks to clean up")

    def show_stats(self) -> None:
        """📊 Show webhook statistics"""
        self.stdout.write("📊 Webhook Processing Statistics")
        self.stdout.write("=" * 50)

        for label, status in (
            ("⏳ Pending", "pending"),
            ("✅ Processed", "processed"),
            ("❌ Failed", "failed"),
            ("⏭️ Skipped", "skipped"),
        ):
            self.stdout.write(f"{label}: {WebhookEvent.objects.filter(status=status).count()}")

        failed_ready_for_retry = WebhookEvent.objects.filter(status="failed", next_retry_at__lte=timezone.now()).count()
        if failed_ready_for_retry > 0:
            self.stdout.write(self.style.WARNING(f"\n⚠️ {failed_ready_for_retry} failed webhooks ready for retry"))
