"""
Prometheus metrics for e-invoicing observability.

Tracks:
- Submission outcomes per document kind
- Validation results and failing rule codes
- Reconciliation outcomes per signal source, including CAS conflicts
- Registry API requests, retries and latency
- Poll batch duration

Metrics are only collected if enabled in settings; otherwise every metric
is a no-op object with the same interface.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from prometheus_client import Counter, Histogram

from .settings import registry_settings

logger = logging.getLogger(__name__)


class NoOpMetric:
    """Stand-in metric used while metrics are disabled."""

    def labels(self, *args: Any, **kwargs: Any) -> NoOpMetric:
        return self

    def inc(self, amount: float = 1) -> None:
        pass

    def observe(self, value: float) -> None:
        pass


def _create_counter(name: str, description: str, labels: list[str]) -> Any:
    if registry_settings.metrics_enabled:
        return Counter(f"{registry_settings.metrics_prefix}_{name}", description, labels)
    return NoOpMetric()


def _create_histogram(name: str, description: str, labels: list[str], buckets: tuple[float, ...] | None = None) -> Any:
    if registry_settings.metrics_enabled:
        prefix = registry_settings.metrics_prefix
        if buckets:
            return Histogram(f"{prefix}_{name}", description, labels, buckets=buckets)
        return Histogram(f"{prefix}_{name}", description, labels)
    return NoOpMetric()


class RegistryMetrics:
    """E-invoicing metrics, prefixed with ``REGISTRY_METRICS_PREFIX``."""

    def __init__(self) -> None:
        self.submissions_total = _create_counter(
            "submissions_total",
            "Total invoice submissions by outcome",
            ["outcome", "document_kind"],
        )
        self.validations_total = _create_counter(
            "validations_total",
            "Total document validations",
            ["result"],
        )
        self.validation_errors_total = _create_counter(
            "validation_errors_total",
            "Validation failures by rule code",
            ["rule_code"],
        )
        self.reconciliations_total = _create_counter(
            "reconciliations_total",
            "Status signals processed by outcome",
            ["source", "outcome"],
        )
        self.cas_conflicts_total = _create_counter(
            "cas_conflicts_total",
            "Version conflicts hit while applying status signals",
            ["source"],
        )
        self.api_requests_total = _create_counter(
            "api_requests_total",
            "Total registry API requests",
            ["endpoint", "status_code"],
        )
        self.api_request_duration_seconds = _create_histogram(
            "api_request_duration_seconds",
            "Registry API request duration",
            ["endpoint"],
            buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
        )
        self.api_retries_total = _create_counter(
            "api_retries_total",
            "Total registry API retry attempts",
            ["endpoint", "reason"],
        )
        self.poll_batch_duration_seconds = _create_histogram(
            "poll_batch_duration_seconds",
            "Time spent in one polling batch",
            ["mode"],
            buckets=(1, 5, 10, 30, 60, 120, 300),
        )

    # ===== Convenience Methods =====

    def record_submission(self, outcome: str, document_kind: str) -> None:
        self.submissions_total.labels(outcome=outcome, document_kind=document_kind).inc()

    def record_validation(self, is_valid: bool, error_codes: list[str] | None = None) -> None:
        self.validations_total.labels(result="valid" if is_valid else "invalid").inc()
        for code in error_codes or []:
            self.validation_errors_total.labels(rule_code=code).inc()

    def record_reconciliation(self, source: str, outcome: str) -> None:
        self.reconciliations_total.labels(source=source, outcome=outcome).inc()

    def record_cas_conflict(self, source: str) -> None:
        self.cas_conflicts_total.labels(source=source).inc()

    def record_api_request(self, endpoint: str, status_code: int, duration: float) -> None:
        self.api_requests_total.labels(endpoint=endpoint, status_code=str(status_code)).inc()
        self.api_request_duration_seconds.labels(endpoint=endpoint).observe(duration)

    def record_api_retry(self, endpoint: str, reason: str) -> None:
        self.api_retries_total.labels(endpoint=endpoint, reason=reason).inc()

    @contextmanager
    def time_poll_batch(self, mode: str) -> Generator[None]:
        start = time.monotonic()
        try:
            yield
        finally:
            duration = time.monotonic() - start
            self.poll_batch_duration_seconds.labels(mode=mode).observe(duration)
            logger.debug(f"[Metrics] poll batch ({mode}): {duration:.3f}s")


# Module-level metrics instance
metrics = RegistryMetrics()
