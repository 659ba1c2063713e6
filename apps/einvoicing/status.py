"""
Invoice lifecycle states and registry status mapping.

The lifecycle is the locally owned status of an invoice:

    draft -> submitted -> validated | validation_failed -> accepted | rejected -> sent
    received -> accepted | rejected                      (incoming documents)
    draft | submitted -> failed | cancelled              (absorbing)

Registry status strings are mapped to lifecycle states in exactly one place,
``map_registry_status``. Transition validity, not display priority, decides
whether a mapped status may be applied.
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import ClassVar

logger = logging.getLogger(__name__)


class LifecycleStatus(StrEnum):
    """Locally owned invoice lifecycle status."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    VALIDATED = "validated"
    VALIDATION_FAILED = "validation_failed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    SENT = "sent"
    RECEIVED = "received"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(status.value, status.name.replace("_", " ").title()) for status in cls]

    @classmethod
    def terminal_statuses(cls) -> set[str]:
        """Statuses with no outgoing transition."""
        return {status.value for status in cls if not ALLOWED_TRANSITIONS.get(status)}

    @classmethod
    def tracked_statuses(cls) -> set[str]:
        """Statuses the poller keeps reconciling against the registry."""
        return {cls.SUBMITTED.value, cls.VALIDATED.value, cls.ACCEPTED.value, cls.RECEIVED.value}


class DocumentKind(StrEnum):
    """Structured document kinds understood by the registry."""

    INVOICE = "invoice"
    CREDIT_NOTE = "credit_note"
    DEBIT_NOTE = "debit_note"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(kind.value, kind.name.replace("_", " ").title()) for kind in cls]

    @property
    def registry_type(self) -> str:
        """Document type label used in the registry's submission envelope."""
        return self.value.upper()

    @property
    def is_reference_kind(self) -> bool:
        return self in (DocumentKind.CREDIT_NOTE, DocumentKind.DEBIT_NOTE)


class Direction(StrEnum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(d.value, d.name.title()) for d in cls]


class SignalSource(StrEnum):
    """Channel a status signal arrived on."""

    WEBHOOK = "webhook"
    POLL = "poll"
    SUBMISSION = "submission"
    USER = "user"

    @classmethod
    def choices(cls) -> list[tuple[str, str]]:
        return [(s.value, s.name.title()) for s in cls]


S = LifecycleStatus

ALLOWED_TRANSITIONS: dict[LifecycleStatus, frozenset[LifecycleStatus]] = {
    S.DRAFT: frozenset({S.SUBMITTED, S.FAILED, S.CANCELLED}),
    S.SUBMITTED: frozenset(
        {S.VALIDATED, S.VALIDATION_FAILED, S.ACCEPTED, S.REJECTED, S.SENT, S.FAILED, S.CANCELLED}
    ),
    S.VALIDATED: frozenset({S.ACCEPTED, S.REJECTED, S.SENT}),
    S.VALIDATION_FAILED: frozenset({S.ACCEPTED, S.REJECTED}),
    S.ACCEPTED: frozenset({S.SENT}),
    S.RECEIVED: frozenset({S.ACCEPTED, S.REJECTED}),
    S.REJECTED: frozenset(),
    S.SENT: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELLED: frozenset(),
}

# Human urgency order for dashboards. Never consulted when merging signals.
DISPLAY_PRIORITY: dict[str, int] = {
    S.FAILED.value: 10,
    S.REJECTED.value: 10,
    S.VALIDATION_FAILED.value: 10,
    S.RECEIVED.value: 9,
    "pending": 9,
    S.DRAFT.value: 8,
    S.SUBMITTED.value: 7,
    S.VALIDATED.value: 5,
    S.SENT.value: 2,
    S.ACCEPTED.value: 2,
    S.CANCELLED.value: 1,
}


def can_transition(current: LifecycleStatus | str, target: LifecycleStatus | str) -> bool:
    """Check whether ``current -> target`` is a valid lifecycle transition."""
    return LifecycleStatus(target) in ALLOWED_TRANSITIONS[LifecycleStatus(current)]


def display_priority(status: str) -> int:
    """Sort key for presenting invoices by urgency (higher first)."""
    return DISPLAY_PRIORITY.get(status.lower(), 0)


class RegistryStatusMapper:
    """Table-driven mapping from registry status strings to lifecycle states."""

    STATUS_TABLE: ClassVar[dict[str, LifecycleStatus]] = {
        "validated": S.VALIDATED,
        "valid": S.VALIDATED,
        "validation_failed": S.VALIDATION_FAILED,
        "invalid": S.VALIDATION_FAILED,
        "rejected": S.REJECTED,
        "accepted": S.ACCEPTED,
        "processing": S.SUBMITTED,
        "pending": S.SUBMITTED,
    }

    # Only meaningful while the document is still awaiting a registry verdict
    CONDITIONAL_TABLE: ClassVar[dict[str, tuple[LifecycleStatus, LifecycleStatus]]] = {
        "delivered": (S.SUBMITTED, S.SENT),
    }

    @classmethod
    def normalize(cls, raw_status: str | None) -> str:
        return (raw_status or "").strip().lower()

    @classmethod
    def is_known(cls, raw_status: str | None) -> bool:
        key = cls.normalize(raw_status)
        return key in cls.STATUS_TABLE or key in cls.CONDITIONAL_TABLE

    @classmethod
    def target_of(cls, raw_status: str | None) -> LifecycleStatus | None:
        """Status a string points at, ignoring conditions; silent for unknown strings."""
        key = cls.normalize(raw_status)
        if key in cls.STATUS_TABLE:
            return cls.STATUS_TABLE[key]
        if key in cls.CONDITIONAL_TABLE:
            return cls.CONDITIONAL_TABLE[key][1]
        return None

    @classmethod
    def map(cls, raw_status: str | None, current: LifecycleStatus | str | None = None) -> LifecycleStatus | None:
        """
        Map a registry status string to a lifecycle status.

        Returns None when the string is unrecognized or, for conditional
        statuses, when the current state does not qualify.
        """
        key = cls.normalize(raw_status)
        if key in cls.STATUS_TABLE:
            return cls.STATUS_TABLE[key]

        if key in cls.CONDITIONAL_TABLE:
            required, target = cls.CONDITIONAL_TABLE[key]
            if current is not None and LifecycleStatus(current) == required:
                return target
            logger.info(f"ℹ️ [Status] '{raw_status}' does not apply while invoice is {current}")
            return None

        logger.warning(f"⚠️ [Status] Unrecognized registry status: {raw_status!r}")
        return None


def map_registry_status(raw_status: str | None, current: LifecycleStatus | str | None = None) -> LifecycleStatus | None:
    return RegistryStatusMapper.map(raw_status, current)
