"""
Registry rule validator for rendered UBL documents.

Checks run in three phases:
1. Structural - XML declaration, well-formedness, no empty elements
2. Schema conformance - namespace and root element for the declared kind
3. Business rules - numbered GDT rules, each fatal with a stable code

Only a document that cannot be parsed stops validation early; every other
failure is accumulated so callers see all codes at once. Validation never
mutates the document.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, ClassVar, cast

from lxml import etree

from .settings import UBL_NAMESPACES
from .status import DocumentKind

logger = logging.getLogger(__name__)

NAMESPACES = {
    "cbc": UBL_NAMESPACES["cbc"],
    "cac": UBL_NAMESPACES["cac"],
}

SEVERITY_FATAL = "fatal"
SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


@dataclass
class ValidationError:
    """Represents a single validation finding."""

    code: str
    message: str
    location: str = ""
    severity: str = SEVERITY_ERROR

    def __str__(self) -> str:
        location_str = f" at {self.location}" if self.location else ""
        return f"[{self.code}] {self.message}{location_str}"

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code,
            "message": self.message,
            "location": self.location,
            "severity": self.severity,
        }


@dataclass
class ValidationResult:
    """Result of document validation."""

    is_valid: bool = True
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)

    def __str__(self) -> str:
        if self.is_valid:
            return "Valid"
        return f"Invalid: {len(self.errors)} errors, {len(self.warnings)} warnings"

    @property
    def error_codes(self) -> list[str]:
        return [e.code for e in self.errors]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }

    def add_error(self, code: str, message: str, location: str = "", severity: str = SEVERITY_ERROR) -> None:
        self.errors.append(ValidationError(code=code, message=message, location=location, severity=severity))
        self.is_valid = False

    def add_warning(self, code: str, message: str, location: str = "") -> None:
        self.warnings.append(ValidationError(code=code, message=message, location=location, severity=SEVERITY_WARNING))


@dataclass(frozen=True)
class BusinessRule:
    code: str
    message: str
    # Any one of these paths (relative to the root) carrying text satisfies the rule
    paths: tuple[str, ...]
    # Rule is satisfied by element presence rather than text
    presence_only: bool = False


class RegistryValidator:
    """
    Validate rendered documents against the registry's rule set.

    Usage:
        result = RegistryValidator().validate(document.xml, DocumentKind.INVOICE)
        if not result.is_valid:
            codes = result.error_codes
    """

    ROOT_ELEMENTS: ClassVar[dict[DocumentKind, tuple[str, str]]] = {
        DocumentKind.INVOICE: ("Invoice", UBL_NAMESPACES["inv"]),
        DocumentKind.CREDIT_NOTE: ("CreditNote", UBL_NAMESPACES["cn"]),
        DocumentKind.DEBIT_NOTE: ("DebitNote", UBL_NAMESPACES["dn"]),
    }

    BUSINESS_RULES: ClassVar[tuple[BusinessRule, ...]] = (
        BusinessRule("GDT-01", "An Invoice shall have an Invoice number", ("cbc:ID",)),
        BusinessRule("GDT-02", "An Invoice shall have an Invoice issue date", ("cbc:IssueDate",)),
        BusinessRule(
            "GDT-03",
            "An Invoice shall contain the Seller name",
            (
                "cac:AccountingSupplierParty/cac:Party/cac:PartyLegalEntity/cbc:RegistrationName",
                "cac:AccountingSupplierParty/cac:Party/cac:PartyName/cbc:Name",
            ),
        ),
        BusinessRule(
            "GDT-04",
            "An Invoice shall contain the Buyer name",
            (
                "cac:AccountingCustomerParty/cac:Party/cac:PartyLegalEntity/cbc:RegistrationName",
                "cac:AccountingCustomerParty/cac:Party/cac:PartyName/cbc:Name",
            ),
        ),
        BusinessRule(
            "GDT-05",
            "An Invoice shall contain the Seller CompanyID or VAT Identification Number",
            (
                "cac:AccountingSupplierParty/cac:Party/cac:PartyLegalEntity/cbc:CompanyID",
                "cac:AccountingSupplierParty/cac:Party/cac:PartyTaxScheme/cbc:CompanyID",
            ),
        ),
        BusinessRule(
            "GDT-06",
            "An Invoice shall contain the Buyer CompanyID or VAT Identification Number",
            (
                "cac:AccountingCustomerParty/cac:Party/cac:PartyLegalEntity/cbc:CompanyID",
                "cac:AccountingCustomerParty/cac:Party/cac:PartyTaxScheme/cbc:CompanyID",
            ),
        ),
        BusinessRule(
            "GDT-07",
            "An Invoice shall contain the Seller postal address",
            ("cac:AccountingSupplierParty/cac:Party/cac:PostalAddress",),
            presence_only=True,
        ),
        BusinessRule(
            "GDT-08",
            "An Invoice shall contain the Buyer postal address",
            ("cac:AccountingCustomerParty/cac:Party/cac:PostalAddress",),
            presence_only=True,
        ),
        BusinessRule(
            "GDT-09",
            "An Invoice shall have at least one Invoice line",
            ("cac:InvoiceLine", "cac:CreditNoteLine", "cac:DebitNoteLine"),
            presence_only=True,
        ),
    )

    MONETARY_TOTAL_PATHS: ClassVar[tuple[str, ...]] = ("cac:LegalMonetaryTotal", "cac:RequestedMonetaryTotal")

    def validate(self, xml_content: str, document_kind: DocumentKind | str) -> ValidationResult:
        """
        Validate ``xml_content`` as a document of ``document_kind``.

        Returns:
            ValidationResult with every error found; parse failures short-circuit
        """
        kind = DocumentKind(document_kind)
        result = ValidationResult()

        doc = self._validate_structure(xml_content, result)
        if doc is None:
            return result

        self._validate_schema(doc, kind, result)
        self._validate_business_rules(doc, result)
        self._check_monetary_totals(doc, result)

        if result.is_valid:
            logger.debug(f"✅ [Validator] {kind.value} passed validation")
        else:
            logger.info(f"❌ [Validator] {kind.value} failed: {', '.join(result.error_codes)}")
        return result

    # ===== XPath helpers =====

    def _find(self, doc: etree._Element, xpath: str) -> etree._Element | None:
        found = doc.xpath(xpath, namespaces=NAMESPACES)
        if isinstance(found, list) and found:
            return cast(etree._Element, found[0])
        return None

    def _find_all(self, doc: etree._Element, xpath: str) -> list[etree._Element]:
        return cast(list[etree._Element], doc.xpath(xpath, namespaces=NAMESPACES))

    def _get_text(self, doc: etree._Element, xpath: str) -> str:
        elem = self._find(doc, xpath)
        return elem.text.strip() if elem is not None and elem.text else ""

    # ===== Phase 1: structure =====

    def _validate_structure(self, xml_content: str, result: ValidationResult) -> etree._Element | None:
        if not xml_content.lstrip().startswith("<?xml"):
            result.add_error("XML_DECLARATION_MISSING", "XML declaration is missing", severity=SEVERITY_FATAL)

        try:
            doc = etree.fromstring(xml_content.encode("utf-8"))
        except etree.XMLSyntaxError as e:
            result.add_error("XML_STRUCTURE_INVALID", f"XML parsing failed: {e}", severity=SEVERITY_FATAL)
            return None

        tree = doc.getroottree()
        for elem in doc.iter():
            if not isinstance(elem.tag, str):
                continue  # comments and processing instructions
            if len(elem) == 0 and not (elem.text or "").strip():
                result.add_error(
                    "CAMINV-01",
                    "Document MUST not contain empty elements",
                    location=tree.getpath(elem),
                    severity=SEVERITY_FATAL,
                )
        return doc

    # ===== Phase 2: schema conformance =====

    def _validate_schema(self, doc: etree._Element, kind: DocumentKind, result: ValidationResult) -> None:
        expected_root, expected_ns = self.ROOT_ELEMENTS[kind]
        qname = etree.QName(doc.tag)

        if qname.namespace != expected_ns:
            result.add_error("NAMESPACE_INVALID", f"Invalid namespace. Expected: {expected_ns}", location="/")
        if qname.localname != expected_root:
            result.add_error(
                "ROOT_ELEMENT_INVALID", f"Invalid root element. Expected: {expected_root}", location="/"
            )

    # ===== Phase 3: business rules =====

    def _rule_satisfied(self, doc: etree._Element, rule: BusinessRule) -> bool:
        for path in rule.paths:
            if rule.presence_only:
                if self._find(doc, path) is not None:
                    return True
            elif self._get_text(doc, path):
                return True
        return False

    def _validate_business_rules(self, doc: etree._Element, result: ValidationResult) -> None:
        for rule in self.BUSINESS_RULES:
            if not self._rule_satisfied(doc, rule):
                result.add_error(rule.code, rule.message, location=rule.paths[0], severity=SEVERITY_FATAL)

    def _check_monetary_totals(self, doc: etree._Element, result: ValidationResult) -> None:
        """Warn when payable amount differs from tax-exclusive amount plus tax."""
        totals = next((t for p in self.MONETARY_TOTAL_PATHS if (t := self._find(doc, p)) is not None), None)
        if totals is None:
            result.add_warning("TOTALS-MISSING", "Document has no monetary total block")
            return

        try:
            exclusive = Decimal(self._get_text(totals, "cbc:TaxExclusiveAmount") or "0")
            payable = Decimal(self._get_text(totals, "cbc:PayableAmount") or "0")
            tax = Decimal(self._get_text(doc, "cac:TaxTotal/cbc:TaxAmount") or "0")
        except InvalidOperation:
            result.add_warning("TOTALS-UNPARSEABLE", "Monetary totals are not numeric")
            return

        if exclusive + tax != payable:
            result.add_warning(
                "TOTALS-MISMATCH",
                f"PayableAmount {payable} != TaxExclusiveAmount {exclusive} + TaxAmount {tax}",
            )


def validate_document(xml_content: str, document_kind: DocumentKind | str) -> ValidationResult:
    return RegistryValidator().validate(xml_content, document_kind)
