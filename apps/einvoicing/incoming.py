"""
Registration of documents other businesses sent to a merchant.

The registry detail for a received document carries the supplier's UBL,
base64 encoded under ``document`` (or as plain text under ``xml``). The
supplier becomes the counterparty of the local record.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, ClassVar

from django.db import IntegrityError, transaction
from lxml import etree

from .audit import AuditAction, AuditRecorder
from .client import DocumentDetail
from .models import Invoice, LineItem, Merchant
from .money import to_decimal
from .settings import COUNTRY_CODE, DEFAULT_CURRENCY, UBL_NAMESPACES, TaxCategory
from .status import Direction, DocumentKind, LifecycleStatus, SignalSource
from .validator import RegistryValidator

logger = logging.getLogger(__name__)


class IncomingDocumentError(Exception):
    """Received document cannot be read."""


@dataclass
class IncomingLine:
    line_number: int
    item_name: str
    quantity: Decimal
    unit_price: Decimal
    line_total: Decimal
    tax_amount: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    tax_category: str = TaxCategory.STANDARD.value
    item_description: str = ""


@dataclass
class IncomingDocument:
    """Fields read from a supplier's UBL document."""

    kind: DocumentKind
    invoice_number: str
    issue_date: date
    currency: str = DEFAULT_CURRENCY
    due_date: date | None = None
    supplier_name: str = ""
    supplier_tax_id: str = ""
    supplier_street: str = ""
    supplier_city: str = ""
    supplier_country: str = COUNTRY_CODE
    supplier_email: str = ""
    supplier_phone: str = ""
    supplier_endpoint_id: str = ""
    subtotal: Decimal = Decimal("0")
    tax_total: Decimal = Decimal("0")
    grand_total: Decimal = Decimal("0")
    original_invoice_number: str = ""
    original_invoice_issue_date: date | None = None
    lines: list[IncomingLine] = field(default_factory=list)


class UBLDocumentReader:
    """Read the fields a local record needs out of a UBL Invoice, CreditNote or DebitNote."""

    NAMESPACES: ClassVar[dict[str, str]] = {"cbc": UBL_NAMESPACES["cbc"], "cac": UBL_NAMESPACES["cac"]}

    ROOT_KINDS: ClassVar[dict[str, DocumentKind]] = {
        "Invoice": DocumentKind.INVOICE,
        "CreditNote": DocumentKind.CREDIT_NOTE,
        "DebitNote": DocumentKind.DEBIT_NOTE,
    }

    LINE_TAGS: ClassVar[dict[DocumentKind, tuple[str, str]]] = {
        DocumentKind.INVOICE: ("cac:InvoiceLine", "cbc:InvoicedQuantity"),
        DocumentKind.CREDIT_NOTE: ("cac:CreditNoteLine", "cbc:CreditedQuantity"),
        DocumentKind.DEBIT_NOTE: ("cac:DebitNoteLine", "cbc:DebitedQuantity"),
    }

    SUPPLIER = "cac:AccountingSupplierParty/cac:Party"

    def _find(self, node: etree._Element, xpath: str) -> etree._Element | None:
        results = node.xpath(xpath, namespaces=self.NAMESPACES)
        return results[0] if results else None

    def _get_text(self, node: etree._Element, xpath: str) -> str:
        elem = self._find(node, xpath)
        text = (elem.text or "").strip() if elem is not None else ""
        # Filler text stands for an absent value
        return "" if text == "N/A" else text

    def _get_amount(self, node: etree._Element, xpath: str) -> Decimal:
        text = self._get_text(node, xpath)
        if not text:
            return Decimal("0")
        try:
            return to_decimal(text)
        except ValueError as e:
            raise IncomingDocumentError(f"Unreadable amount at {xpath}: {text!r}") from e

    def _get_date(self, node: etree._Element, xpath: str) -> date | None:
        text = self._get_text(node, xpath)
        if not text:
            return None
        try:
            return date.fromisoformat(text)
        except ValueError as e:
            raise IncomingDocumentError(f"Unreadable date at {xpath}: {text!r}") from e

    def read(self, xml_content: str) -> IncomingDocument:
        """
        Parse ``xml_content``.

        Raises:
            IncomingDocumentError: Not well-formed, not a known UBL root, or
                missing the document number or issue date
        """
        try:
            doc = etree.fromstring(xml_content.encode("utf-8"))
        except etree.XMLSyntaxError as e:
            raise IncomingDocumentError(f"Received document is not well-formed XML: {e}") from e

        kind = self.ROOT_KINDS.get(etree.QName(doc).localname)
        if kind is None:
            raise IncomingDocumentError(f"Unexpected root element {etree.QName(doc).localname!r}")

        invoice_number = self._get_text(doc, "cbc:ID")
        issue_date = self._get_date(doc, "cbc:IssueDate")
        if not invoice_number or issue_date is None:
            raise IncomingDocumentError("Received document has no number or issue date")

        totals = "cac:RequestedMonetaryTotal" if kind == DocumentKind.DEBIT_NOTE else "cac:LegalMonetaryTotal"
        supplier = self.SUPPLIER
        return IncomingDocument(
            kind=kind,
            invoice_number=invoice_number,
            issue_date=issue_date,
            due_date=self._get_date(doc, "cbc:DueDate"),
            currency=self._get_text(doc, "cbc:DocumentCurrencyCode") or DEFAULT_CURRENCY,
            supplier_name=(
                self._get_text(doc, f"{supplier}/cac:PartyLegalEntity/cbc:RegistrationName")
                or self._get_text(doc, f"{supplier}/cac:PartyName/cbc:Name")
            ),
            supplier_tax_id=(
                self._get_text(doc, f"{supplier}/cac:PartyTaxScheme/cbc:CompanyID")
                or self._get_text(doc, f"{supplier}/cac:PartyLegalEntity/cbc:CompanyID")
            ),
            supplier_street=self._get_text(doc, f"{supplier}/cac:PostalAddress/cbc:StreetName"),
            supplier_city=self._get_text(doc, f"{supplier}/cac:PostalAddress/cbc:CityName"),
            supplier_country=(
                self._get_text(doc, f"{supplier}/cac:PostalAddress/cac:Country/cbc:IdentificationCode")
                or COUNTRY_CODE
            ),
            supplier_email=self._get_text(doc, f"{supplier}/cac:Contact/cbc:ElectronicMail"),
            supplier_phone=self._get_text(doc, f"{supplier}/cac:Contact/cbc:Telephone"),
            supplier_endpoint_id=self._get_text(doc, f"{supplier}/cbc:EndpointID"),
            subtotal=self._get_amount(doc, f"{totals}/cbc:TaxExclusiveAmount"),
            tax_total=self._get_amount(doc, "cac:TaxTotal/cbc:TaxAmount"),
            grand_total=self._get_amount(doc, f"{totals}/cbc:PayableAmount"),
            original_invoice_number=self._get_text(doc, "cac:BillingReference/cac:InvoiceDocumentReference/cbc:ID"),
            original_invoice_issue_date=self._get_date(
                doc, "cac:BillingReference/cac:InvoiceDocumentReference/cbc:IssueDate"
            ),
            lines=self._read_lines(doc, kind),
        )

    def _read_lines(self, doc: etree._Element, kind: DocumentKind) -> list[IncomingLine]:
        line_tag, quantity_tag = self.LINE_TAGS[kind]
        lines = []
        for number, node in enumerate(doc.xpath(line_tag, namespaces=self.NAMESPACES), start=1):
            category = self._get_text(node, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:ID")
            lines.append(
                IncomingLine(
                    line_number=number,
                    item_name=self._get_text(node, "cac:Item/cbc:Name") or f"Line {number}",
                    item_description=self._get_text(node, "cac:Item/cbc:Description"),
                    quantity=self._get_amount(node, quantity_tag),
                    unit_price=self._get_amount(node, "cac:Price/cbc:PriceAmount"),
                    line_total=self._get_amount(node, "cbc:LineExtensionAmount"),
                    tax_amount=self._get_amount(node, "cac:TaxTotal/cbc:TaxAmount"),
                    tax_rate=self._get_amount(node, "cac:TaxTotal/cac:TaxSubtotal/cac:TaxCategory/cbc:Percent"),
                    tax_category=category if category in {c.value for c in TaxCategory} else TaxCategory.STANDARD.value,
                )
            )
        return lines


def document_xml(detail: DocumentDetail) -> str:
    """UBL text carried by a registry document detail."""
    raw: dict[str, Any] = detail.raw_response
    if raw.get("xml"):
        return str(raw["xml"])
    encoded = raw.get("document")
    if not encoded:
        raise IncomingDocumentError(f"Registry detail for {detail.document_id} carries no document")
    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise IncomingDocumentError(f"Registry document {detail.document_id} is not base64 UTF-8") from e


def register_incoming_document(
    merchant: Merchant,
    detail: DocumentDetail,
    audit: AuditRecorder | None = None,
    validator: RegistryValidator | None = None,
    source: str = SignalSource.POLL.value,
) -> tuple[Invoice, bool]:
    """
    Create the local ``received`` record for a document sent to ``merchant``.

    Returns:
        (invoice, created); an existing record for the registry id is
        returned unchanged

    Raises:
        IncomingDocumentError: If the document cannot be read
    """
    existing = Invoice.objects.filter(registry_document_id=detail.document_id).first()
    if existing is not None:
        logger.info(f"ℹ️ [Incoming] Document {detail.document_id} already registered as invoice {existing.id}")
        return existing, False

    xml_content = document_xml(detail)
    parsed = UBLDocumentReader().read(xml_content)

    # Stored for review; the registry has already accepted the document
    validation = (validator or RegistryValidator()).validate(xml_content, parsed.kind)
    if not validation.is_valid:
        logger.warning(
            f"⚠️ [Incoming] Document {detail.document_id} fails local rules: {', '.join(validation.error_codes)}"
        )

    try:
        with transaction.atomic():
            invoice = Invoice.objects.create(
                merchant=merchant,
                invoice_number=parsed.invoice_number,
                document_kind=parsed.kind.value,
                direction=Direction.INCOMING.value,
                lifecycle_status=LifecycleStatus.RECEIVED.value,
                registry_status=detail.status or None,
                registry_document_id=detail.document_id,
                subtotal=parsed.subtotal,
                tax_total=parsed.tax_total,
                grand_total=parsed.grand_total,
                currency=parsed.currency,
                issue_date=parsed.issue_date,
                due_date=parsed.due_date,
                customer_name=parsed.supplier_name,
                customer_tax_id=parsed.supplier_tax_id,
                customer_street=parsed.supplier_street,
                customer_city=parsed.supplier_city,
                customer_country=parsed.supplier_country,
                customer_email=parsed.supplier_email,
                customer_phone=parsed.supplier_phone,
                customer_endpoint_id=parsed.supplier_endpoint_id,
                original_invoice_number=parsed.original_invoice_number,
                original_invoice_issue_date=parsed.original_invoice_issue_date,
                rendered_document=xml_content,
                registry_response=detail.raw_response,
                validation_errors=[e.to_dict() for e in validation.errors],
                last_signal_source=source,
            )
            LineItem.objects.bulk_create(
                [
                    LineItem(
                        invoice=invoice,
                        line_number=line.line_number,
                        item_name=line.item_name,
                        item_description=line.item_description,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        tax_rate=line.tax_rate,
                        tax_category=line.tax_category,
                        line_total=line.line_total,
                        tax_amount=line.tax_amount,
                    )
                    for line in parsed.lines
                ]
            )
    except IntegrityError:
        # Webhook and poll registered the same document concurrently
        invoice = Invoice.objects.get(registry_document_id=detail.document_id)
        logger.info(f"ℹ️ [Incoming] Document {detail.document_id} registered concurrently")
        return invoice, False

    (audit or AuditRecorder()).record(
        invoice.id,
        AuditAction.INVOICE_RECEIVED,
        "",
        LifecycleStatus.RECEIVED.value,
        source,
        {
            "registry_document_id": detail.document_id,
            "supplier_name": parsed.supplier_name,
            "grand_total": str(parsed.grand_total),
        },
    )
    logger.info(
        f"✅ [Incoming] Registered {parsed.kind.value} {parsed.invoice_number} from {parsed.supplier_name} "
        f"for merchant {merchant.id}"
    )
    return invoice, True
