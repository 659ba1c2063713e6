"""
Django app configuration for the e-invoicing app
"""

from django.apps import AppConfig


class EInvoicingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.einvoicing"
    verbose_name = "E-Invoicing"

    def ready(self) -> None:
        """Register system checks; schedules are set up by ``setup_einvoicing_schedules``."""
        from . import checks  # noqa: F401, PLC0415
