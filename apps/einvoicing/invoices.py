"""
Invoice creation and draft editing.

Line totals and tax amounts are always derived here from quantity, unit
price and tax rate; values supplied by callers are never trusted. A caller
that states a subtotal is held to it: a subtotal that differs from the
sum of the derived line totals is rejected before anything is stored.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from django.db import transaction

from .audit import AuditAction, AuditRecorder
from .models import Invoice, LineItem, Merchant
from .money import compute_line_amounts, quantize_amount, to_decimal
from .settings import COUNTRY_CODE, DEFAULT_CURRENCY, TaxCategory
from .status import Direction, DocumentKind, LifecycleStatus, SignalSource

if TYPE_CHECKING:
    from .counterparty import CounterpartyVerifier

logger = logging.getLogger(__name__)


class InvoiceDataError(Exception):
    """Invoice data is incomplete or inconsistent."""

    def __init__(self, message: str, field: str = ""):
        super().__init__(message)
        self.field = field


@dataclass
class LineInput:
    item_name: str
    quantity: Decimal | int | str
    unit_price: Decimal | int | str
    tax_rate: Decimal | int | str = Decimal("0")
    tax_category: str = TaxCategory.STANDARD.value
    item_description: str = ""


@dataclass
class InvoiceInput:
    invoice_number: str
    issue_date: date
    customer_name: str
    document_kind: str = DocumentKind.INVOICE.value
    due_date: date | None = None
    currency: str = DEFAULT_CURRENCY
    customer_tax_id: str = ""
    customer_street: str = ""
    customer_city: str = ""
    customer_country: str = COUNTRY_CODE
    customer_email: str = ""
    customer_phone: str = ""
    customer_endpoint_id: str = ""
    original_invoice: Invoice | None = None
    original_invoice_number: str = ""
    original_invoice_issue_date: date | None = None
    # When given, must equal the derived sum of line totals
    subtotal: Decimal | int | str | None = None


@dataclass
class _DerivedLine:
    line_number: int
    source: LineInput
    quantity: Decimal
    unit_price: Decimal
    tax_rate: Decimal
    line_total: Decimal
    tax_amount: Decimal


def _derive_lines(lines: Sequence[LineInput]) -> list[_DerivedLine]:
    if not lines:
        raise InvoiceDataError("Invoice must have at least one line item", field="lines")

    derived = []
    for number, line in enumerate(lines, start=1):
        if not (line.item_name or "").strip():
            raise InvoiceDataError(f"Line {number} has no item name", field=f"lines[{number}].item_name")
        try:
            quantity = to_decimal(line.quantity)
            unit_price = to_decimal(line.unit_price)
            tax_rate = to_decimal(line.tax_rate)
        except ValueError as e:
            raise InvoiceDataError(f"Line {number}: {e}", field=f"lines[{number}]") from e

        if quantity <= 0:
            raise InvoiceDataError(f"Line {number} quantity must be positive", field=f"lines[{number}].quantity")
        if unit_price < 0:
            raise InvoiceDataError(f"Line {number} unit price cannot be negative", field=f"lines[{number}].unit_price")
        if not Decimal("0") <= tax_rate <= Decimal("100"):
            raise InvoiceDataError(f"Line {number} tax rate out of range", field=f"lines[{number}].tax_rate")
        if line.tax_category not in {c.value for c in TaxCategory}:
            raise InvoiceDataError(f"Line {number} has unknown tax category {line.tax_category!r}")

        amounts = compute_line_amounts(quantity, unit_price, tax_rate)
        derived.append(
            _DerivedLine(
                line_number=number,
                source=line,
                quantity=quantity,
                unit_price=unit_price,
                tax_rate=tax_rate,
                line_total=amounts.line_total,
                tax_amount=amounts.tax_amount,
            )
        )
    return derived


def _totals(data: InvoiceInput, derived: list[_DerivedLine]) -> tuple[Decimal, Decimal, Decimal]:
    subtotal = sum((line.line_total for line in derived), Decimal("0"))
    tax_total = sum((line.tax_amount for line in derived), Decimal("0"))

    if data.subtotal is not None and quantize_amount(data.subtotal) != subtotal:
        raise InvoiceDataError(
            f"Subtotal {quantize_amount(data.subtotal)} does not match sum of line totals {subtotal}",
            field="subtotal",
        )
    return subtotal, tax_total, subtotal + tax_total


def _validate_header(data: InvoiceInput) -> DocumentKind:
    if not (data.invoice_number or "").strip():
        raise InvoiceDataError("Invoice number is required", field="invoice_number")
    if data.issue_date is None:
        raise InvoiceDataError("Issue date is required", field="issue_date")
    if data.due_date and data.due_date < data.issue_date:
        raise InvoiceDataError("Due date cannot precede issue date", field="due_date")
    if not (data.customer_name or "").strip():
        raise InvoiceDataError("Customer name is required", field="customer_name")
    if len(data.currency or "") != 3:
        raise InvoiceDataError("Currency must be an ISO 4217 code", field="currency")
    try:
        return DocumentKind(data.document_kind)
    except ValueError as e:
        raise InvoiceDataError(f"Unknown document kind {data.document_kind!r}", field="document_kind") from e


def _header_fields(data: InvoiceInput, kind: DocumentKind) -> dict[str, Any]:
    fields = {
        "invoice_number": data.invoice_number.strip(),
        "document_kind": kind.value,
        "issue_date": data.issue_date,
        "due_date": data.due_date,
        "currency": data.currency.upper(),
        "customer_name": data.customer_name.strip(),
        "customer_tax_id": data.customer_tax_id,
        "customer_street": data.customer_street,
        "customer_city": data.customer_city,
        "customer_country": data.customer_country or COUNTRY_CODE,
        "customer_email": data.customer_email,
        "customer_phone": data.customer_phone,
        "customer_endpoint_id": data.customer_endpoint_id,
        "original_invoice": None,
        "original_invoice_number": "",
        "original_invoice_uuid": "",
        "original_invoice_issue_date": None,
    }
    if kind.is_reference_kind:
        original = data.original_invoice
        if original is not None:
            fields.update(
                original_invoice=original,
                original_invoice_number=original.invoice_number,
                original_invoice_uuid=str(original.uuid),
                original_invoice_issue_date=original.issue_date,
            )
        else:
            fields.update(
                original_invoice_number=data.original_invoice_number,
                original_invoice_issue_date=data.original_invoice_issue_date,
            )
    return fields


def _store_lines(invoice: Invoice, derived: list[_DerivedLine]) -> None:
    LineItem.objects.bulk_create(
        [
            LineItem(
                invoice=invoice,
                line_number=line.line_number,
                item_name=line.source.item_name.strip(),
                item_description=line.source.item_description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                tax_rate=line.tax_rate,
                tax_category=line.source.tax_category,
                line_total=line.line_total,
                tax_amount=line.tax_amount,
            )
            for line in derived
        ]
    )


def create_invoice(
    merchant: Merchant,
    data: InvoiceInput,
    lines: Sequence[LineInput],
    audit: AuditRecorder | None = None,
    verifier: CounterpartyVerifier | None = None,
) -> Invoice:
    """
    Create an outgoing invoice in ``draft`` with derived lines and totals.

    With a ``verifier`` the customer is first checked against the
    registry's business directory, outside the database transaction.

    Raises:
        InvoiceDataError: If header or lines are invalid, the stated
            subtotal disagrees with the line totals, or the customer
            failed verification
    """
    if verifier is not None:
        data = verifier.verify_customer(merchant, data)
    return _create_invoice(merchant, data, lines, audit, verified=verifier is not None)


@transaction.atomic
def _create_invoice(
    merchant: Merchant,
    data: InvoiceInput,
    lines: Sequence[LineInput],
    audit: AuditRecorder | None,
    verified: bool,
) -> Invoice:
    kind = _validate_header(data)
    derived = _derive_lines(lines)
    subtotal, tax_total, grand_total = _totals(data, derived)

    invoice = Invoice.objects.create(
        merchant=merchant,
        direction=Direction.OUTGOING.value,
        lifecycle_status=LifecycleStatus.DRAFT.value,
        subtotal=subtotal,
        tax_total=tax_total,
        grand_total=grand_total,
        **_header_fields(data, kind),
    )
    _store_lines(invoice, derived)

    (audit or AuditRecorder()).record(
        invoice.id,
        AuditAction.INVOICE_CREATED,
        "",
        LifecycleStatus.DRAFT.value,
        SignalSource.USER.value,
        {"invoice_number": invoice.invoice_number, "grand_total": str(grand_total), "customer_verified": verified},
    )
    logger.info(f"✅ [Invoice] Created {kind.value} {invoice.invoice_number} total={grand_total} {invoice.currency}")
    return invoice


@transaction.atomic
def update_draft_invoice(invoice: Invoice, data: InvoiceInput, lines: Sequence[LineInput]) -> Invoice:
    """
    Replace header and lines of a draft invoice, re-deriving all totals.

    Raises:
        InvoiceDataError: If the invoice is no longer a draft or data is invalid
    """
    invoice = Invoice.objects.select_for_update().get(pk=invoice.pk)
    if invoice.lifecycle_status != LifecycleStatus.DRAFT.value:
        raise InvoiceDataError(f"Only draft invoices can be edited (status: {invoice.lifecycle_status})")
    if invoice.submission_in_progress():
        raise InvoiceDataError(f"Invoice {invoice.invoice_number} is being submitted and cannot be edited")

    kind = _validate_header(data)
    derived = _derive_lines(lines)
    subtotal, tax_total, grand_total = _totals(data, derived)

    for name, value in _header_fields(data, kind).items():
        setattr(invoice, name, value)
    invoice.subtotal = subtotal
    invoice.tax_total = tax_total
    invoice.grand_total = grand_total
    invoice.version += 1
    invoice.save()

    invoice.lines.all().delete()
    _store_lines(invoice, derived)
    logger.info(f"✅ [Invoice] Updated draft {invoice.invoice_number} total={grand_total}")
    return invoice


def check_monetary_invariant(invoice: Invoice) -> bool:
    """Sum of stored line totals equals the invoice subtotal."""
    line_sum = sum((quantize_amount(line.line_total) for line in invoice.lines.all()), Decimal("0"))
    return line_sum == quantize_amount(invoice.subtotal)
