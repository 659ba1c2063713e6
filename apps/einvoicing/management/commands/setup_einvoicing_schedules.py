from typing import Any

from django.core.management.base import BaseCommand

from apps.einvoicing.settings import registry_settings
from apps.einvoicing.tasks import schedule_einvoicing_tasks


class Command(BaseCommand):
    """
    ⏰ Register recurring e-invoicing tasks with Django-Q2

    Usage:
    python manage.py setup_einvoicing_schedules
    """

    help = "⏰ Register recurring e-invoicing polling and webhook retry schedules"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument(
            "--force", action="store_true", help="Register schedules even while the integration is disabled"
        )

    def handle(self, *args: Any, **options: Any) -> None:
        if not registry_settings.enabled and not options["force"]:
            self.stdout.write(self.style.WARNING("⚠️ REGISTRY_ENABLED is off - no schedules registered"))
            return

        for issue in registry_settings.validate_configuration():
            self.stdout.write(self.style.WARNING(f"⚠️ {issue}"))

        schedule_einvoicing_tasks()
        self.stdout.write(
            self.style.SUCCESS(
                f"✅ E-invoicing schedules registered (poll every {registry_settings.poll_interval_minutes} min)"
            )
        )
