"""
Audit recording for invoice lifecycle transitions.

Every accepted transition appends one immutable AuditEvent. Recording is
fire-and-forget for callers: a failed write is logged (loudly for
submission, acceptance and rejection) but never raised, because the state
change it describes has already been committed.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any, ClassVar

from django.db import transaction

from .models import AuditEvent

logger = logging.getLogger(__name__)


class AuditAction(StrEnum):
    INVOICE_CREATED = "invoice_created"
    INVOICE_SUBMITTED = "invoice_submitted"
    SUBMISSION_FAILED = "submission_failed"
    SUBMISSION_DUPLICATED = "submission_duplicated"
    STATUS_RECONCILED = "status_reconciled"
    INVOICE_RECEIVED = "invoice_received"
    INVOICE_ACCEPTED = "invoice_accepted"
    INVOICE_REJECTED = "invoice_rejected"
    INVOICE_SENT = "invoice_sent"


class AuditRecorder:
    """
    Append-only sink for lifecycle audit events.

    Usage:
        recorder = AuditRecorder()
        recorder.record(invoice.id, AuditAction.INVOICE_SUBMITTED, "draft", "submitted", "submission")
    """

    HIGH_VALUE_STATUSES: ClassVar[frozenset[str]] = frozenset({"submitted", "accepted", "rejected"})
    HIGH_VALUE_ACTIONS: ClassVar[frozenset[str]] = frozenset(
        {
            AuditAction.INVOICE_SUBMITTED.value,
            AuditAction.SUBMISSION_DUPLICATED.value,
            AuditAction.INVOICE_ACCEPTED.value,
            AuditAction.INVOICE_REJECTED.value,
        }
    )

    def is_high_value(self, action: str, new_status: str) -> bool:
        return action in self.HIGH_VALUE_ACTIONS or new_status in self.HIGH_VALUE_STATUSES

    def record(
        self,
        invoice_id: int,
        action: AuditAction | str,
        previous_status: str,
        new_status: str,
        source: str,
        detail: dict[str, Any] | None = None,
    ) -> AuditEvent | None:
        """Write one audit event; returns None if the write failed."""
        action = str(action)
        try:
            # Savepoint keeps a failed insert from poisoning an enclosing transaction
            with transaction.atomic():
                event = AuditEvent.objects.create(
                    invoice_id=invoice_id,
                    action=action,
                    previous_status=previous_status or "",
                    new_status=new_status or "",
                    source=source,
                    detail=detail or {},
                )
        except Exception:
            if self.is_high_value(action, new_status):
                logger.exception(
                    f"🔥 [Audit] UNAUDITED {action} for invoice {invoice_id}: "
                    f"{previous_status} -> {new_status} ({source})"
                )
            else:
                logger.warning(
                    f"⚠️ [Audit] Failed to record {action} for invoice {invoice_id}: "
                    f"{previous_status} -> {new_status} ({source})",
                    exc_info=True,
                )
            return None

        logger.debug(f"📝 [Audit] {action} invoice={invoice_id} {previous_status} -> {new_status} ({source})")
        return event

    def history(self, invoice_id: int) -> list[AuditEvent]:
        return list(AuditEvent.objects.filter(invoice_id=invoice_id).order_by("created_at", "id"))
