"""
Composition root for the e-invoicing core.

Components never reach for each other through module globals; they are
built here once per process (worker or web) and handed their collaborators.
Tests build their own with fakes instead of calling this.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from .audit import AuditRecorder
from .client import RegistryClient, RegistryConfig
from .counterparty import CounterpartyVerifier
from .credentials import CredentialProvider, fetch_stored_access_token
from .metrics import metrics
from .reconciliation import StatusReconciliationEngine
from .settings import registry_settings
from .submission import SubmissionOrchestrator
from .validator import RegistryValidator


@dataclass(frozen=True)
class EInvoicingServices:
    client: RegistryClient
    credentials: CredentialProvider
    audit: AuditRecorder
    orchestrator: SubmissionOrchestrator
    engine: StatusReconciliationEngine
    counterparty: CounterpartyVerifier


def build_services(
    client: RegistryClient | None = None,
    credentials: CredentialProvider | None = None,
    audit: AuditRecorder | None = None,
) -> EInvoicingServices:
    """Wire the components together, filling gaps from settings."""
    client = client or RegistryClient(RegistryConfig.from_settings(), metrics=metrics)
    credentials = credentials or CredentialProvider(
        fetch_stored_access_token, ttl_seconds=registry_settings.credential_ttl_seconds
    )
    audit = audit or AuditRecorder()
    return EInvoicingServices(
        client=client,
        credentials=credentials,
        audit=audit,
        orchestrator=SubmissionOrchestrator(
            client, credentials, audit=audit, validator=RegistryValidator(), metrics=metrics
        ),
        engine=StatusReconciliationEngine(
            client,
            credentials,
            audit=audit,
            metrics=metrics,
            dedup_window_seconds=registry_settings.dedup_window_seconds,
            cas_max_attempts=registry_settings.cas_max_attempts,
        ),
        counterparty=CounterpartyVerifier(client, credentials),
    )


@lru_cache(maxsize=1)
def build_default_services() -> EInvoicingServices:
    """
    Process-wide services; the credential cache lives as long as the process.

    Shared across threads of a threaded worker: the credential cache is
    lock-guarded and the client opens one HTTP session per thread.
    """
    return build_services()
