"""
E-invoicing registry settings.

All values are read from Django settings (``REGISTRY_*`` keys) with
sensible defaults. Domain constants fixed by the registry's document
format live at module level and are not configurable.

Usage:
    from apps.einvoicing.settings import registry_settings

    base_url = registry_settings.api_base_url
    window = registry_settings.dedup_window_seconds
"""

from __future__ import annotations

import logging
from decimal import Decimal
from enum import StrEnum
from typing import Any

from django.conf import settings as django_settings

logger = logging.getLogger(__name__)


# ===============================================================================
# CONSTANTS - Fixed by the registry's document format
# ===============================================================================

UBL_VERSION_ID = "2.1"

UBL_NAMESPACES = {
    "inv": "urn:oasis:names:specification:ubl:schema:xsd:Invoice-2",
    "cn": "urn:oasis:names:specification:ubl:schema:xsd:CreditNote-2",
    "dn": "urn:oasis:names:specification:ubl:schema:xsd:DebitNote-2",
    "cbc": "urn:oasis:names:specification:ubl:schema:xsd:CommonBasicComponents-2",
    "cac": "urn:oasis:names:specification:ubl:schema:xsd:CommonAggregateComponents-2",
}

# UN/ECE 1001 document type codes
DOCUMENT_TYPE_CODES = {
    "invoice": "388",
    "credit_note": "381",
    "debit_note": "383",
}
INVOICE_TYPE_CODE_LIST_ID = "UN/ECE 1001 Subset"

CREDIT_NOTE_CUSTOMIZATION_ID = "Cambodia E-Invoice Credit Note"
CREDIT_NOTE_PROFILE_ID = "Cambodia Tax Credit Note"
DEBIT_NOTE_CUSTOMIZATION_ID = "Cambodia E-Invoice Debit Note"
DEBIT_NOTE_PROFILE_ID = "Cambodia Tax Debit Note"

COUNTRY_CODE = "KH"
DEFAULT_CURRENCY = "KHR"
DEFAULT_ENDPOINT_ID = "KHUID00000000"

# Rendered in place of any required value that is missing from input
NOT_APPLICABLE = "N/A"

# Amounts are whole-unit denominated for this registry
AMOUNT_QUANTUM = Decimal("1")


class TaxCategory(StrEnum):
    """Tax category codes accepted by the registry."""

    STANDARD = "S"
    ZERO = "Z"
    EXEMPT = "E"
    NOT_SUBJECT = "O"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(c.value, c.name.replace("_", " ").title()) for c in cls]


class TaxScheme(StrEnum):
    """Tax schemes referenced from tax categories."""

    VAT = "VAT"
    GST = "GST"


STANDARD_TAX_RATE = Decimal("10")


class RegistryEnvironment(StrEnum):
    """Registry API environments."""

    SANDBOX = "sandbox"
    PRODUCTION = "production"

    @property
    def api_base_url(self) -> str:
        urls = {
            "sandbox": "https://sb-merchant.e-invoice.gov.kh",
            "production": "https://merchant.e-invoice.gov.kh",
        }
        return urls[self.value]


# ===============================================================================
# SETTING KEYS
# ===============================================================================


class RegistrySettingKeys:
    """Setting keys for registry configuration."""

    ENABLED = "registry.enabled"
    ENVIRONMENT = "registry.environment"
    API_BASE_URL = "registry.api_base_url"

    CLIENT_ID = "registry.client_id"
    CLIENT_SECRET = "registry.client_secret"  # noqa: S105
    SERVICE_PROVIDER_NAME = "registry.service_provider_name"

    # Transport
    API_TIMEOUT_SECONDS = "registry.api_timeout_seconds"
    API_MAX_RETRIES = "registry.api_max_retries"
    API_RETRY_DELAY_SECONDS = "registry.api_retry_delay_seconds"
    MAX_RETRY_AFTER_SECONDS = "registry.max_retry_after_seconds"

    # Polling
    POLL_BATCH_SIZE = "registry.poll_batch_size"
    POLL_BUDGET_SECONDS = "registry.poll_budget_seconds"
    POLL_MAX_AGE_MINUTES = "registry.poll_max_age_minutes"
    POLL_INTERVAL_MINUTES = "registry.poll_interval_minutes"

    # Reconciliation
    DEDUP_WINDOW_SECONDS = "registry.dedup_window_seconds"
    CAS_MAX_ATTEMPTS = "registry.cas_max_attempts"
    SUBMISSION_CLAIM_TTL_SECONDS = "registry.submission_claim_ttl_seconds"

    CREDENTIAL_TTL_SECONDS = "registry.credential_ttl_seconds"
    WEBHOOK_SECRET = "registry.webhook_secret"  # noqa: S105

    METRICS_ENABLED = "registry.metrics_enabled"
    METRICS_PREFIX = "registry.metrics_prefix"


REGISTRY_DEFAULTS: dict[str, Any] = {
    RegistrySettingKeys.ENABLED: True,
    RegistrySettingKeys.ENVIRONMENT: "sandbox",
    RegistrySettingKeys.API_BASE_URL: "",
    RegistrySettingKeys.CLIENT_ID: "",
    RegistrySettingKeys.CLIENT_SECRET: "",
    RegistrySettingKeys.SERVICE_PROVIDER_NAME: "einvoicing",
    RegistrySettingKeys.API_TIMEOUT_SECONDS: 30,
    RegistrySettingKeys.API_MAX_RETRIES: 3,
    RegistrySettingKeys.API_RETRY_DELAY_SECONDS: "1.0",
    RegistrySettingKeys.MAX_RETRY_AFTER_SECONDS: 60,
    RegistrySettingKeys.POLL_BATCH_SIZE: 10,
    RegistrySettingKeys.POLL_BUDGET_SECONDS: 120,
    RegistrySettingKeys.POLL_MAX_AGE_MINUTES: 60,
    RegistrySettingKeys.POLL_INTERVAL_MINUTES: 5,
    RegistrySettingKeys.DEDUP_WINDOW_SECONDS: 30,
    RegistrySettingKeys.CAS_MAX_ATTEMPTS: 5,
    RegistrySettingKeys.SUBMISSION_CLAIM_TTL_SECONDS: 900,
    RegistrySettingKeys.CREDENTIAL_TTL_SECONDS: 300,
    RegistrySettingKeys.WEBHOOK_SECRET: "",
    RegistrySettingKeys.METRICS_ENABLED: True,
    RegistrySettingKeys.METRICS_PREFIX: "einvoicing",
}


# ===============================================================================
# SETTINGS SERVICE
# ===============================================================================


class RegistrySettings:
    """
    Type-safe access to registry configuration.

    Each key maps to a Django setting (``registry.poll_batch_size`` ->
    ``REGISTRY_POLL_BATCH_SIZE``) and falls back to ``REGISTRY_DEFAULTS``.
    Values are read on every access so ``override_settings`` applies.
    """

    def _get_setting(self, key: str, default: Any = None) -> Any:
        django_key = key.replace(".", "_").upper()
        django_value = getattr(django_settings, django_key, None)
        if django_value is not None:
            return django_value
        return REGISTRY_DEFAULTS.get(key, default)

    def _get_string(self, key: str, default: str = "") -> str:
        value = self._get_setting(key, default)
        return str(value) if value is not None else default

    def _get_int(self, key: str, default: int = 0) -> int:
        value = self._get_setting(key, default)
        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning(f"⚠️ [Registry] Invalid integer for {key}: {value!r}, using {default}")
            return default

    def _get_float(self, key: str, default: float = 0.0) -> float:
        value = self._get_setting(key, default)
        try:
            return float(value)
        except (ValueError, TypeError):
            logger.warning(f"⚠️ [Registry] Invalid number for {key}: {value!r}, using {default}")
            return default

    def _get_bool(self, key: str, default: bool = False) -> bool:
        value = self._get_setting(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    # ===== General =====

    @property
    def enabled(self) -> bool:
        return self._get_bool(RegistrySettingKeys.ENABLED, True)

    @property
    def environment(self) -> RegistryEnvironment:
        env = self._get_string(RegistrySettingKeys.ENVIRONMENT, "sandbox")
        try:
            return RegistryEnvironment(env)
        except ValueError:
            return RegistryEnvironment.SANDBOX

    @property
    def api_base_url(self) -> str:
        """Explicit override, otherwise the environment's base URL."""
        override = self._get_string(RegistrySettingKeys.API_BASE_URL)
        return (override or self.environment.api_base_url).rstrip("/")

    @property
    def client_id(self) -> str:
        return self._get_string(RegistrySettingKeys.CLIENT_ID)

    @property
    def client_secret(self) -> str:
        return self._get_string(RegistrySettingKeys.CLIENT_SECRET)

    @property
    def service_provider_name(self) -> str:
        return self._get_string(RegistrySettingKeys.SERVICE_PROVIDER_NAME, "einvoicing")

    # ===== Transport =====

    @property
    def api_timeout_seconds(self) -> int:
        return self._get_int(RegistrySettingKeys.API_TIMEOUT_SECONDS, 30)

    @property
    def api_max_retries(self) -> int:
        return self._get_int(RegistrySettingKeys.API_MAX_RETRIES, 3)

    @property
    def api_retry_delay_seconds(self) -> float:
        return self._get_float(RegistrySettingKeys.API_RETRY_DELAY_SECONDS, 1.0)

    @property
    def max_retry_after_seconds(self) -> int:
        return self._get_int(RegistrySettingKeys.MAX_RETRY_AFTER_SECONDS, 60)

    # ===== Polling =====

    @property
    def poll_batch_size(self) -> int:
        return self._get_int(RegistrySettingKeys.POLL_BATCH_SIZE, 10)

    @property
    def poll_budget_seconds(self) -> int:
        return self._get_int(RegistrySettingKeys.POLL_BUDGET_SECONDS, 120)

    @property
    def poll_max_age_minutes(self) -> int:
        return self._get_int(RegistrySettingKeys.POLL_MAX_AGE_MINUTES, 60)

    @property
    def poll_interval_minutes(self) -> int:
        return self._get_int(RegistrySettingKeys.POLL_INTERVAL_MINUTES, 5)

    # ===== Reconciliation =====

    @property
    def dedup_window_seconds(self) -> int:
        """Seconds a second channel must wait before re-confirming the same status."""
        return self._get_int(RegistrySettingKeys.DEDUP_WINDOW_SECONDS, 30)

    @property
    def cas_max_attempts(self) -> int:
        return max(1, self._get_int(RegistrySettingKeys.CAS_MAX_ATTEMPTS, 5))

    @property
    def submission_claim_ttl_seconds(self) -> int:
        """Seconds after which an unfinished submission claim may be taken over."""
        return self._get_int(RegistrySettingKeys.SUBMISSION_CLAIM_TTL_SECONDS, 900)

    @property
    def credential_ttl_seconds(self) -> int:
        return self._get_int(RegistrySettingKeys.CREDENTIAL_TTL_SECONDS, 300)

    @property
    def webhook_secret(self) -> str:
        return self._get_string(RegistrySettingKeys.WEBHOOK_SECRET)

    # ===== Metrics =====

    @property
    def metrics_enabled(self) -> bool:
        return self._get_bool(RegistrySettingKeys.METRICS_ENABLED, True)

    @property
    def metrics_prefix(self) -> str:
        return self._get_string(RegistrySettingKeys.METRICS_PREFIX, "einvoicing")

    def validate_configuration(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []
        if not self.client_id:
            issues.append("Registry client ID is not configured")
        if not self.client_secret:
            issues.append("Registry client secret is not configured")
        if not self.webhook_secret:
            issues.append("Registry webhook secret is not configured")
        return issues


# Global settings instance
registry_settings = RegistrySettings()
