"""
System checks for the e-invoicing registry configuration.
"""

from typing import Any

from django.core.checks import Tags, register
from django.core.checks import Warning as DjangoWarning

from .settings import registry_settings


@register(Tags.compatibility)
def check_registry_configuration(app_configs: Any, **kwargs: Any) -> list[Any]:
    """Warn about missing registry credentials while the integration is enabled."""
    if not registry_settings.enabled:
        return []

    return [
        DjangoWarning(
            issue,
            hint="Set the REGISTRY_* settings (or environment variables) before going live",
            id=f"einvoicing.W{index:03d}",
        )
        for index, issue in enumerate(registry_settings.validate_configuration(), start=1)
    ]
