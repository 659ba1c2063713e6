"""
UBL 2.1 document builder for the e-invoicing registry.

Renders invoices, credit notes and debit notes. All three kinds share a
header, supplier and customer parties, a tax summary, a monetary summary
and an ordered list of lines; each kind supplies its own framing.

Rendering is a pure function of the invoice snapshot, its lines and the
issuer profile: no clock reads and no I/O, so the same input always
produces byte-identical XML.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, ClassVar

from lxml import etree

from .money import HUNDRED, compute_line_amounts, quantize_amount, to_decimal
from .settings import (
    COUNTRY_CODE,
    CREDIT_NOTE_CUSTOMIZATION_ID,
    CREDIT_NOTE_PROFILE_ID,
    DEBIT_NOTE_CUSTOMIZATION_ID,
    DEBIT_NOTE_PROFILE_ID,
    DEFAULT_CURRENCY,
    DEFAULT_ENDPOINT_ID,
    DOCUMENT_TYPE_CODES,
    INVOICE_TYPE_CODE_LIST_ID,
    NOT_APPLICABLE,
    UBL_NAMESPACES,
    UBL_VERSION_ID,
    TaxCategory,
    TaxScheme,
)
from .status import DocumentKind

if TYPE_CHECKING:
    from .models import Invoice, LineItem, Merchant

logger = logging.getLogger(__name__)

# Characters XML 1.0 cannot carry at all
_INVALID_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'


class DocumentBuildError(Exception):
    """Raised when invoice data cannot be rendered into a document."""


@dataclass(frozen=True)
class PartyInfo:
    """Issuer or counterparty identity rendered into a party block."""

    name: str
    tax_id: str = ""
    street: str = ""
    city: str = ""
    country_code: str = COUNTRY_CODE
    email: str = ""
    phone: str = ""
    endpoint_id: str = ""

    @property
    def has_address(self) -> bool:
        return bool(self.street.strip() or self.city.strip())

    @classmethod
    def from_merchant(cls, merchant: Merchant) -> PartyInfo:
        return cls(
            name=merchant.name,
            tax_id=merchant.tax_id,
            street=merchant.street,
            city=merchant.city,
            country_code=merchant.country or COUNTRY_CODE,
            email=merchant.email,
            phone=merchant.phone,
            endpoint_id=merchant.endpoint_id,
        )

    @classmethod
    def counterparty_of(cls, invoice: Invoice) -> PartyInfo:
        return cls(
            name=invoice.customer_name,
            tax_id=invoice.customer_tax_id,
            street=invoice.customer_street,
            city=invoice.customer_city,
            country_code=invoice.customer_country or COUNTRY_CODE,
            email=invoice.customer_email,
            phone=invoice.customer_phone,
            endpoint_id=invoice.customer_endpoint_id,
        )


@dataclass(frozen=True)
class RenderedDocument:
    """Codec output bound to one invoice snapshot."""

    xml: str
    kind: DocumentKind
    document_number: str

    @property
    def xml_bytes(self) -> bytes:
        return self.xml.encode("utf-8")

    @property
    def base64(self) -> str:
        return base64.b64encode(self.xml_bytes).decode("ascii")

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.xml_bytes).hexdigest()


class BaseUBLBuilder:
    """Shared structure for all registry document kinds."""

    kind: ClassVar[DocumentKind]
    root_tag: ClassVar[str]
    namespace: ClassVar[str]
    line_tag: ClassVar[str]
    quantity_tag: ClassVar[str]
    quantity_unit_code: ClassVar[str] = "EA"
    monetary_total_tag: ClassVar[str] = "LegalMonetaryTotal"

    def __init__(self, invoice: Invoice | Any, lines: Sequence[LineItem | Any], issuer: PartyInfo):
        self.invoice = invoice
        self.lines = sorted(lines, key=lambda line: line.line_number)
        self.issuer = issuer
        self.customer = PartyInfo.counterparty_of(invoice)
        self.currency = (getattr(invoice, "currency", "") or DEFAULT_CURRENCY).upper()
        self.root: etree._Element | None = None

    # ===== Element helpers =====

    def _cbc(self, tag: str) -> str:
        return f"{{{UBL_NAMESPACES['cbc']}}}{tag}"

    def _cac(self, tag: str) -> str:
        return f"{{{UBL_NAMESPACES['cac']}}}{tag}"

    def _text(self, value: Any) -> str:
        """Normalize a value for XML; blanks become the not-applicable filler."""
        if value is None:
            return NOT_APPLICABLE
        text = _INVALID_XML_CHARS.sub("", str(value)).strip()
        return text or NOT_APPLICABLE

    def _add_element(self, parent: etree._Element, tag: str, text: Any = None, **attribs: str) -> etree._Element:
        elem = etree.SubElement(parent, tag)
        if text is not None:
            elem.text = self._text(text)
        for key, value in attribs.items():
            elem.set(key, value)
        return elem

    def _add_cbc(self, parent: etree._Element, tag: str, text: Any, **attribs: str) -> etree._Element:
        # Every basic component carries text; empty elements are rejected by the registry
        return self._add_element(parent, self._cbc(tag), "" if text is None else text, **attribs)

    def _add_cac(self, parent: etree._Element, tag: str) -> etree._Element:
        return self._add_element(parent, self._cac(tag))

    def _add_amount(self, parent: etree._Element, tag: str, amount: Any) -> etree._Element:
        return self._add_cbc(parent, tag, self._format_amount(amount), currencyID=self.currency)

    def _format_date(self, value: date | None) -> str:
        if value is None:
            return ""
        return value.strftime("%Y-%m-%d")

    def _format_amount(self, amount: Decimal | int | float | str | None) -> str:
        """Whole-unit amount with no decimal places."""
        return f"{quantize_amount(amount):f}"

    def _format_quantity(self, quantity: Decimal | int | float | str) -> str:
        formatted = f"{to_decimal(quantity):.6f}".rstrip("0").rstrip(".")
        return formatted or "0"

    def _format_percent(self, percent: Decimal | int | float | str) -> str:
        return f"{quantize_amount(percent):f}"

    # ===== Build steps =====

    def build(self) -> RenderedDocument:
        """
        Render the document.

        Raises:
            DocumentBuildError: If lines are missing or totals disagree
        """
        self._check_input()
        self._create_root()
        self._add_header()
        self._add_billing_reference()
        self._add_supplier_party()
        self._add_customer_party()
        self._add_prepaid_payment()
        self._add_tax_total()
        self._add_monetary_total()
        self._add_lines()

        xml_body = etree.tostring(
            self.root,
            pretty_print=True,
            xml_declaration=False,
            encoding="UTF-8",
        ).decode("utf-8")
        return RenderedDocument(
            xml=f"{XML_DECLARATION}{xml_body.lstrip()}",
            kind=self.kind,
            document_number=str(self.invoice.invoice_number),
        )

    def _check_input(self) -> None:
        if not self.lines:
            raise DocumentBuildError("Document must have at least one line item")

        line_sum = sum((quantize_amount(line.line_total) for line in self.lines), Decimal("0"))
        subtotal = quantize_amount(self.invoice.subtotal)
        if line_sum != subtotal:
            raise DocumentBuildError(f"Subtotal {subtotal} does not match sum of line totals {line_sum}")

        for line in self.lines:
            expected = compute_line_amounts(line.quantity, line.unit_price, line.tax_rate)
            if quantize_amount(line.line_total) != expected.line_total:
                raise DocumentBuildError(
                    f"Line {line.line_number} total {line.line_total} != quantity x unit price {expected.line_total}"
                )

    def _create_root(self) -> None:
        nsmap = {
            None: self.namespace,
            "cac": UBL_NAMESPACES["cac"],
            "cbc": UBL_NAMESPACES["cbc"],
        }
        self.root = etree.Element(f"{{{self.namespace}}}{self.root_tag}", nsmap=nsmap)

    def _add_header(self) -> None:
        raise NotImplementedError

    def _add_billing_reference(self) -> None:
        """Credit and debit notes point back at the invoice they adjust."""

    def _add_prepaid_payment(self) -> None:
        """Only invoices declare a prepaid amount."""

    def _add_supplier_party(self) -> None:
        supplier_party = self._add_cac(self.root, "AccountingSupplierParty")
        party = self._add_cac(supplier_party, "Party")
        self._add_cbc(party, "EndpointID", self.issuer.endpoint_id or DEFAULT_ENDPOINT_ID)

        party_name = self._add_cac(party, "PartyName")
        self._add_cbc(party_name, "Name", self.issuer.name)

        self._add_postal_address(party, self.issuer)
        self._add_party_tax_scheme(party, self.issuer.tax_id)
        self._add_party_legal_entity(party, self.issuer.name, self.issuer.tax_id)
        self._add_contact(party, self.issuer)

    def _add_customer_party(self) -> None:
        customer_party = self._add_cac(self.root, "AccountingCustomerParty")
        party = self._add_cac(customer_party, "Party")
        customer = self.customer
        self._add_cbc(party, "EndpointID", customer.endpoint_id or customer.tax_id or DEFAULT_ENDPOINT_ID)

        party_name = self._add_cac(party, "PartyName")
        self._add_cbc(party_name, "Name", customer.name)

        # An unknown address is left out so the postal address rule reports it
        if customer.has_address:
            self._add_postal_address(party, customer)
        else:
            logger.info(f"ℹ️ [UBL] No postal address for customer of {self.invoice.invoice_number}")

        if customer.tax_id:
            self._add_party_tax_scheme(party, customer.tax_id)

        self._add_party_legal_entity(party, customer.name, customer.tax_id)

        if customer.email or customer.phone:
            self._add_contact(party, customer)

    def _add_postal_address(self, parent: etree._Element, company: PartyInfo) -> etree._Element:
        address = self._add_cac(parent, "PostalAddress")
        self._add_cbc(address, "StreetName", company.street)
        self._add_cbc(address, "CityName", company.city)
        country = self._add_cac(address, "Country")
        self._add_cbc(country, "IdentificationCode", company.country_code or COUNTRY_CODE)
        return address

    def _add_party_tax_scheme(self, parent: etree._Element, company_id: str) -> etree._Element:
        tax_scheme = self._add_cac(parent, "PartyTaxScheme")
        self._add_cbc(tax_scheme, "CompanyID", company_id)
        scheme = self._add_cac(tax_scheme, "TaxScheme")
        self._add_cbc(scheme, "ID", TaxScheme.VAT.value)
        return tax_scheme

    def _add_party_legal_entity(self, parent: etree._Element, name: str, company_id: str) -> etree._Element:
        legal = self._add_cac(parent, "PartyLegalEntity")
        self._add_cbc(legal, "RegistrationName", name)
        self._add_cbc(legal, "CompanyID", company_id)
        return legal

    def _add_contact(self, parent: etree._Element, company: PartyInfo) -> etree._Element:
        contact = self._add_cac(parent, "Contact")
        self._add_cbc(contact, "Telephone", company.phone)
        self._add_cbc(contact, "ElectronicMail", company.email)
        return contact

    def _summary_tax_category(self) -> str:
        return getattr(self.lines[0], "tax_category", "") or TaxCategory.STANDARD.value

    def _summary_percent(self) -> Decimal:
        subtotal = to_decimal(self.invoice.subtotal)
        tax_total = to_decimal(self.invoice.tax_total)
        if subtotal <= 0 or tax_total <= 0:
            return Decimal("0")
        return tax_total / subtotal * HUNDRED

    def _add_tax_total(self) -> None:
        tax_total = self._add_cac(self.root, "TaxTotal")
        self._add_amount(tax_total, "TaxAmount", self.invoice.tax_total)

        subtotal = self._add_cac(tax_total, "TaxSubtotal")
        self._add_amount(subtotal, "TaxableAmount", self.invoice.subtotal)
        self._add_amount(subtotal, "TaxAmount", self.invoice.tax_total)

        category = self._add_cac(subtotal, "TaxCategory")
        self._add_cbc(category, "ID", self._summary_tax_category())
        self._add_cbc(category, "Percent", self._format_percent(self._summary_percent()))
        scheme = self._add_cac(category, "TaxScheme")
        self._add_cbc(scheme, "ID", TaxScheme.VAT.value)

    def _add_monetary_total(self) -> None:
        totals = self._add_cac(self.root, self.monetary_total_tag)
        self._add_amount(totals, "LineExtensionAmount", self.invoice.subtotal)
        self._add_amount(totals, "TaxExclusiveAmount", self.invoice.subtotal)
        self._add_amount(totals, "TaxInclusiveAmount", self.invoice.grand_total)
        self._add_amount(totals, "PayableAmount", self.invoice.grand_total)

    def _add_lines(self) -> None:
        for line in self.lines:
            self._add_line(line)

    def _add_line(self, line: LineItem | Any) -> None:
        amounts = compute_line_amounts(line.quantity, line.unit_price, line.tax_rate)
        line_elem = self._add_cac(self.root, self.line_tag)
        self._add_cbc(line_elem, "ID", str(line.line_number))
        self._add_cbc(
            line_elem, self.quantity_tag, self._format_quantity(line.quantity), unitCode=self.quantity_unit_code
        )
        self._add_amount(line_elem, "LineExtensionAmount", amounts.line_total)

        tax_total = self._add_cac(line_elem, "TaxTotal")
        self._add_amount(tax_total, "TaxAmount", amounts.tax_amount)
        tax_subtotal = self._add_cac(tax_total, "TaxSubtotal")
        self._add_amount(tax_subtotal, "TaxAmount", amounts.tax_amount)
        category = self._add_cac(tax_subtotal, "TaxCategory")
        self._add_cbc(category, "ID", getattr(line, "tax_category", "") or TaxCategory.STANDARD.value)
        self._add_cbc(category, "Percent", self._format_percent(line.tax_rate))
        scheme = self._add_cac(category, "TaxScheme")
        self._add_cbc(scheme, "ID", TaxScheme.VAT.value)

        item = self._add_cac(line_elem, "Item")
        if getattr(line, "item_description", ""):
            self._add_cbc(item, "Description", line.item_description)
        self._add_cbc(item, "Name", line.item_name)

        price = self._add_cac(line_elem, "Price")
        self._add_amount(price, "PriceAmount", line.unit_price)


class UBLInvoiceBuilder(BaseUBLBuilder):
    """
    Build a UBL 2.1 Invoice.

    Usage:
        document = UBLInvoiceBuilder(invoice, lines, issuer).build()
    """

    kind = DocumentKind.INVOICE
    root_tag = "Invoice"
    namespace = UBL_NAMESPACES["inv"]
    line_tag = "InvoiceLine"
    quantity_tag = "InvoicedQuantity"
    quantity_unit_code = "none"

    def _add_header(self) -> None:
        self._add_cbc(self.root, "UBLVersionID", UBL_VERSION_ID)
        self._add_cbc(self.root, "ID", self.invoice.invoice_number)
        self._add_cbc(self.root, "IssueDate", self._format_date(self.invoice.issue_date))
        if self.invoice.due_date:
            self._add_cbc(self.root, "DueDate", self._format_date(self.invoice.due_date))
        self._add_cbc(
            self.root,
            "InvoiceTypeCode",
            DOCUMENT_TYPE_CODES["invoice"],
            listID=INVOICE_TYPE_CODE_LIST_ID,
        )
        self._add_cbc(self.root, "DocumentCurrencyCode", self.currency)

    def _add_prepaid_payment(self) -> None:
        prepaid = self._add_cac(self.root, "PrepaidPayment")
        self._add_amount(prepaid, "PaidAmount", 0)


class _AdjustmentNoteBuilder(BaseUBLBuilder):
    """Credit and debit notes: customization header plus billing reference."""

    customization_id: ClassVar[str]
    profile_id: ClassVar[str]
    type_code_tag: ClassVar[str]

    def _add_header(self) -> None:
        self._add_cbc(self.root, "UBLVersionID", UBL_VERSION_ID)
        self._add_cbc(self.root, "CustomizationID", self.customization_id)
        self._add_cbc(self.root, "ProfileID", self.profile_id)
        self._add_cbc(self.root, "ID", self.invoice.invoice_number)
        self._add_cbc(self.root, "IssueDate", self._format_date(self.invoice.issue_date))
        self._add_cbc(self.root, self.type_code_tag, DOCUMENT_TYPE_CODES[self.kind.value])
        self._add_cbc(self.root, "DocumentCurrencyCode", self.currency)

    def _original_reference(self) -> tuple[str, str, date | None]:
        """Original invoice number, UUID and issue date, preferring the linked record."""
        original = getattr(self.invoice, "original_invoice", None)
        if original is not None:
            return original.invoice_number, str(original.uuid), original.issue_date
        return (
            getattr(self.invoice, "original_invoice_number", "") or "",
            getattr(self.invoice, "original_invoice_uuid", "") or "",
            getattr(self.invoice, "original_invoice_issue_date", None),
        )

    def _add_billing_reference(self) -> None:
        number, original_uuid, issue_date = self._original_reference()
        if not number:
            logger.info(f"ℹ️ [UBL] {self.kind.value} {self.invoice.invoice_number} has no known original invoice")
            return

        reference = self._add_cac(self.root, "BillingReference")
        doc_ref = self._add_cac(reference, "InvoiceDocumentReference")
        self._add_cbc(doc_ref, "ID", number)
        if original_uuid:
            self._add_cbc(doc_ref, "UUID", original_uuid)
        if issue_date:
            self._add_cbc(doc_ref, "IssueDate", self._format_date(issue_date))


class UBLCreditNoteBuilder(_AdjustmentNoteBuilder):
    kind = DocumentKind.CREDIT_NOTE
    root_tag = "CreditNote"
    namespace = UBL_NAMESPACES["cn"]
    line_tag = "CreditNoteLine"
    quantity_tag = "CreditedQuantity"
    customization_id = CREDIT_NOTE_CUSTOMIZATION_ID
    profile_id = CREDIT_NOTE_PROFILE_ID
    type_code_tag = "CreditNoteTypeCode"


class UBLDebitNoteBuilder(_AdjustmentNoteBuilder):
    kind = DocumentKind.DEBIT_NOTE
    root_tag = "DebitNote"
    namespace = UBL_NAMESPACES["dn"]
    line_tag = "DebitNoteLine"
    quantity_tag = "DebitedQuantity"
    monetary_total_tag = "RequestedMonetaryTotal"
    customization_id = DEBIT_NOTE_CUSTOMIZATION_ID
    profile_id = DEBIT_NOTE_PROFILE_ID
    type_code_tag = "DebitNoteTypeCode"


BUILDERS: dict[DocumentKind, type[BaseUBLBuilder]] = {
    DocumentKind.INVOICE: UBLInvoiceBuilder,
    DocumentKind.CREDIT_NOTE: UBLCreditNoteBuilder,
    DocumentKind.DEBIT_NOTE: UBLDebitNoteBuilder,
}


def render(invoice: Invoice | Any, lines: Iterable[LineItem | Any], issuer: PartyInfo) -> RenderedDocument:
    """Render ``invoice`` with its kind's builder."""
    kind = DocumentKind(invoice.document_kind)
    return BUILDERS[kind](invoice, list(lines), issuer).build()


def render_invoice(invoice: Invoice) -> RenderedDocument:
    """Render a persisted invoice using its merchant as issuer."""
    return render(invoice, invoice.lines.all(), PartyInfo.from_merchant(invoice.merchant))
