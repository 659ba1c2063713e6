"""
Tests for the UBL document codec and the registry rule validator.
"""

from decimal import Decimal

from django.test import SimpleTestCase, TestCase
from lxml import etree

from apps.einvoicing.invoices import create_invoice
from apps.einvoicing.models import Invoice
from apps.einvoicing.settings import UBL_NAMESPACES
from apps.einvoicing.ubl_builder import DocumentBuildError, render_invoice
from apps.einvoicing.validator import RegistryValidator, validate_document
from tests.factories.einvoicing import (
    create_draft_invoice,
    create_merchant,
    invoice_input,
    standard_lines,
    supplier_invoice_xml,
)

NS = {'cbc': UBL_NAMESPACES['cbc'], 'cac': UBL_NAMESPACES['cac']}


def parse(xml: str) -> etree._Element:
    return etree.fromstring(xml.encode('utf-8'))


class UBLInvoiceBuilderTests(TestCase):
    """Rendering persisted invoices"""

    def setUp(self):
        self.merchant = create_merchant()

    def test_invoice_document_structure(self):
        """Invoice renders with header, parties, totals and ordered lines"""
        invoice = create_draft_invoice(self.merchant)
        document = render_invoice(invoice)
        doc = parse(document.xml)

        self.assertTrue(document.xml.startswith('<?xml version="1.0" encoding="UTF-8"?>'))
        self.assertEqual(etree.QName(doc).localname, 'Invoice')
        self.assertEqual(etree.QName(doc).namespace, UBL_NAMESPACES['inv'])
        self.assertEqual(doc.findtext('cbc:ID', namespaces=NS), 'INV-0001')
        self.assertEqual(doc.findtext('cbc:IssueDate', namespaces=NS), '2024-03-01')
        self.assertEqual(doc.findtext('cbc:DocumentCurrencyCode', namespaces=NS), 'KHR')
        self.assertEqual(
            doc.findtext('cac:AccountingSupplierParty/cac:Party/cbc:EndpointID', namespaces=NS),
            'KHUID00001234',
        )
        self.assertEqual(document.document_number, 'INV-0001')

    def test_monetary_totals(self):
        """Totals are whole units with a currency attribute"""
        doc = parse(render_invoice(create_draft_invoice(self.merchant)).xml)

        totals = doc.find('cac:LegalMonetaryTotal', namespaces=NS)
        line_extension = totals.find('cbc:LineExtensionAmount', namespaces=NS)
        self.assertEqual(line_extension.text, '100')
        self.assertEqual(line_extension.get('currencyID'), 'KHR')
        self.assertEqual(totals.findtext('cbc:TaxExclusiveAmount', namespaces=NS), '100')
        self.assertEqual(totals.findtext('cbc:TaxInclusiveAmount', namespaces=NS), '110')
        self.assertEqual(totals.findtext('cbc:PayableAmount', namespaces=NS), '110')
        self.assertEqual(doc.findtext('cac:TaxTotal/cbc:TaxAmount', namespaces=NS), '10')

    def test_lines_in_order(self):
        """One InvoiceLine per line, numbered in order"""
        doc = parse(render_invoice(create_draft_invoice(self.merchant)).xml)

        lines = doc.findall('cac:InvoiceLine', namespaces=NS)
        self.assertEqual([line.findtext('cbc:ID', namespaces=NS) for line in lines], ['1', '2'])
        quantity = lines[0].find('cbc:InvoicedQuantity', namespaces=NS)
        self.assertEqual(quantity.text, '1')
        self.assertEqual(quantity.get('unitCode'), 'none')
        self.assertEqual(lines[0].findtext('cac:Item/cbc:Name', namespaces=NS), 'Rice 25kg')
        self.assertEqual(lines[0].findtext('cac:Price/cbc:PriceAmount', namespaces=NS), '50')

    def test_rendering_is_deterministic(self):
        """Same snapshot renders byte-identical XML"""
        invoice = create_draft_invoice(self.merchant)
        first = render_invoice(invoice)
        second = render_invoice(Invoice.objects.get(pk=invoice.pk))

        self.assertEqual(first.xml, second.xml)
        self.assertEqual(first.sha256, second.sha256)

    def test_no_empty_elements(self):
        """Blank optional text becomes the not-applicable filler"""
        invoice = create_draft_invoice(self.merchant, customer_tax_id='')
        doc = parse(render_invoice(invoice).xml)

        for elem in doc.iter():
            if len(elem) == 0:
                self.assertTrue((elem.text or '').strip(), msg=f'empty element {elem.tag}')
        self.assertEqual(
            doc.findtext('cac:AccountingCustomerParty/cac:Party/cac:PartyLegalEntity/cbc:CompanyID', namespaces=NS),
            'N/A',
        )

    def test_unknown_customer_address_is_omitted(self):
        """Without street or city the customer gets no PostalAddress"""
        invoice = create_draft_invoice(self.merchant, customer_street='', customer_city='')
        doc = parse(render_invoice(invoice).xml)

        self.assertIsNone(doc.find('cac:AccountingCustomerParty/cac:Party/cac:PostalAddress', namespaces=NS))
        self.assertIsNotNone(doc.find('cac:AccountingSupplierParty/cac:Party/cac:PostalAddress', namespaces=NS))

    def test_credit_note_references_original(self):
        """Credit notes carry a billing reference to the original invoice"""
        original = create_draft_invoice(self.merchant, 'INV-0100')
        note = create_invoice(
            self.merchant,
            invoice_input('CN-0001', document_kind='credit_note', original_invoice=original),
            standard_lines(),
        )
        doc = parse(render_invoice(note).xml)

        self.assertEqual(etree.QName(doc).localname, 'CreditNote')
        ref = doc.find('cac:BillingReference/cac:InvoiceDocumentReference', namespaces=NS)
        self.assertEqual(ref.findtext('cbc:ID', namespaces=NS), 'INV-0100')
        self.assertEqual(ref.findtext('cbc:UUID', namespaces=NS), str(original.uuid))
        self.assertEqual(len(doc.findall('cac:CreditNoteLine', namespaces=NS)), 2)
        self.assertIsNotNone(doc.find('cac:CreditNoteLine/cbc:CreditedQuantity', namespaces=NS))

    def test_credit_note_without_known_original(self):
        """No billing reference is invented when the original is unknown"""
        note = create_invoice(self.merchant, invoice_input('CN-0002', document_kind='credit_note'), standard_lines())
        doc = parse(render_invoice(note).xml)

        self.assertIsNone(doc.find('cac:BillingReference', namespaces=NS))

    def test_debit_note_uses_requested_monetary_total(self):
        """Debit notes total under RequestedMonetaryTotal"""
        note = create_invoice(
            self.merchant,
            invoice_input('DN-0001', document_kind='debit_note', original_invoice_number='INV-0007'),
            standard_lines(),
        )
        doc = parse(render_invoice(note).xml)

        self.assertEqual(etree.QName(doc).localname, 'DebitNote')
        self.assertIsNotNone(doc.find('cac:RequestedMonetaryTotal', namespaces=NS))
        self.assertIsNone(doc.find('cac:LegalMonetaryTotal', namespaces=NS))
        self.assertEqual(
            doc.findtext('cac:BillingReference/cac:InvoiceDocumentReference/cbc:ID', namespaces=NS), 'INV-0007'
        )

    def test_inconsistent_totals_refuse_to_render(self):
        """A subtotal that drifted from its lines cannot be rendered"""
        invoice = create_draft_invoice(self.merchant)
        Invoice.objects.filter(pk=invoice.pk).update(subtotal=Decimal('90'))

        with self.assertRaises(DocumentBuildError):
            render_invoice(Invoice.objects.get(pk=invoice.pk))

    def test_base64_payload(self):
        """The base64 form decodes back to the XML bytes"""
        import base64  # noqa: PLC0415

        document = render_invoice(create_draft_invoice(self.merchant))
        self.assertEqual(base64.b64decode(document.base64), document.xml_bytes)


class RegistryValidatorTests(SimpleTestCase):
    """Local rule checks before submission"""

    def setUp(self):
        self.validator = RegistryValidator()
        self.valid_xml = supplier_invoice_xml()

    def test_rendered_invoice_is_valid(self):
        """A complete rendered invoice passes every rule"""
        result = self.validator.validate(self.valid_xml, 'invoice')

        self.assertTrue(result.is_valid, msg=str(result))
        self.assertEqual(result.error_codes, [])
        self.assertEqual(result.warnings, [])

    def test_missing_declaration(self):
        """Documents must start with an XML declaration"""
        body = self.valid_xml.split('\n', 1)[1]
        result = self.validator.validate(body, 'invoice')

        self.assertIn('XML_DECLARATION_MISSING', result.error_codes)

    def test_malformed_xml_short_circuits(self):
        """Unparseable input reports only structural errors"""
        result = validate_document('<?xml version="1.0"?><Invoice>', 'invoice')

        self.assertFalse(result.is_valid)
        self.assertEqual(result.error_codes, ['XML_STRUCTURE_INVALID'])

    def test_empty_element_rule(self):
        """Any empty leaf element violates CAMINV-01"""
        xml = self.valid_xml.replace('<cbc:Name>Dried fish</cbc:Name>', '<cbc:Name></cbc:Name>')
        result = self.validator.validate(xml, 'invoice')

        self.assertIn('CAMINV-01', result.error_codes)

    def test_wrong_kind(self):
        """An invoice validated as a credit note fails namespace and root checks"""
        result = self.validator.validate(self.valid_xml, 'credit_note')

        self.assertIn('NAMESPACE_INVALID', result.error_codes)
        self.assertIn('ROOT_ELEMENT_INVALID', result.error_codes)

    def test_missing_buyer_address(self):
        """A document without buyer PostalAddress fails GDT-08"""
        doc = parse(self.valid_xml)
        address = doc.find('cac:AccountingCustomerParty/cac:Party/cac:PostalAddress', namespaces=NS)
        address.getparent().remove(address)
        xml = '<?xml version="1.0" encoding="UTF-8"?>\n' + etree.tostring(doc, encoding='unicode')

        result = self.validator.validate(xml, 'invoice')

        self.assertEqual(result.error_codes, ['GDT-08'])

    def test_missing_lines(self):
        """A document with no lines fails GDT-09"""
        doc = parse(self.valid_xml)
        for line in doc.findall('cac:InvoiceLine', namespaces=NS):
            doc.remove(line)
        xml = '<?xml version="1.0" encoding="UTF-8"?>\n' + etree.tostring(doc, encoding='unicode')

        result = self.validator.validate(xml, 'invoice')

        self.assertIn('GDT-09', result.error_codes)

    def test_totals_mismatch_is_a_warning(self):
        """Payable != exclusive + tax warns without failing"""
        xml = self.valid_xml.replace(
            '<cbc:PayableAmount currencyID="KHR">220</cbc:PayableAmount>',
            '<cbc:PayableAmount currencyID="KHR">999</cbc:PayableAmount>',
        )
        result = self.validator.validate(xml, 'invoice')

        self.assertTrue(result.is_valid)
        self.assertEqual([w.code for w in result.warnings], ['TOTALS-MISMATCH'])

    def test_result_serializes(self):
        """to_dict lists errors with code and message"""
        result = validate_document('<?xml version="1.0"?><Invoice>', 'invoice')
        data = result.to_dict()

        self.assertFalse(data['is_valid'])
        self.assertEqual(data['errors'][0]['code'], 'XML_STRUCTURE_INVALID')
