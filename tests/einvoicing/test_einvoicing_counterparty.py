"""
Tests for customer verification against the registry's business directory.
"""

from unittest.mock import Mock

from django.test import TestCase

from apps.einvoicing.client import AuthenticationError, MemberDetail, RequestRejectedError, TransientRegistryError
from apps.einvoicing.counterparty import CounterpartyVerifier
from apps.einvoicing.invoices import InvoiceDataError, create_invoice
from apps.einvoicing.models import AuditEvent, Invoice
from tests.factories.einvoicing import create_merchant, fake_client, invoice_input, standard_lines

MEKONG = MemberDetail(
    endpoint_id='KHUID00005678',
    company_name_en='Mekong Supplies Ltd',
    tin='K002-100200300',
    country='KH',
)


class CounterpartyTestCase(TestCase):
    def setUp(self):
        self.merchant = create_merchant()
        self.client = fake_client()
        self.credentials = Mock()
        self.credentials.get_credential.return_value = 'tok'
        self.verifier = CounterpartyVerifier(self.client, self.credentials)


class MemberLookupTests(CounterpartyTestCase):
    """Directory lookups for a merchant"""

    def test_defaults_to_own_endpoint(self):
        """Without an endpoint ID the merchant's own entry is fetched"""
        self.client.get_member_detail.return_value = MemberDetail(endpoint_id='KHUID00001234')

        self.verifier.get_member_detail(self.merchant)

        self.client.get_member_detail.assert_called_once_with('tok', 'KHUID00001234')

    def test_refused_credential_is_invalidated(self):
        """An auth failure drops the cached credential and propagates"""
        self.client.validate_taxpayer.side_effect = AuthenticationError('expired', status_code=401)

        with self.assertRaises(AuthenticationError):
            self.verifier.validate_taxpayer(self.merchant, Mock(tin='T'))

        self.credentials.invalidate.assert_called_once_with(self.merchant.id)


class VerifyCustomerTests(CounterpartyTestCase):
    """Customer checks before an invoice is stored"""

    def test_registered_customer_fills_blanks(self):
        """A directory hit supplies the missing tax ID"""
        self.client.get_member_detail.return_value = MEKONG
        data = invoice_input(customer_endpoint_id='KHUID00005678', customer_tax_id='')

        checked = self.verifier.verify_customer(self.merchant, data)

        self.assertEqual(checked.customer_tax_id, 'K002-100200300')
        self.assertEqual(checked.customer_name, 'Mekong Supplies Ltd')
        self.assertEqual(data.customer_tax_id, '')

    def test_tin_compared_loosely(self):
        """Case and separators do not make a mismatch"""
        self.client.get_member_detail.return_value = MEKONG
        data = invoice_input(customer_endpoint_id='KHUID00005678', customer_tax_id='k002 100200300')

        checked = self.verifier.verify_customer(self.merchant, data)

        self.assertEqual(checked.customer_tax_id, 'k002 100200300')

    def test_tin_mismatch(self):
        """A tax ID other than the registered one is refused"""
        self.client.get_member_detail.return_value = MEKONG
        data = invoice_input(customer_endpoint_id='KHUID00005678', customer_tax_id='K009-999999999')

        with self.assertRaises(InvoiceDataError) as ctx:
            self.verifier.verify_customer(self.merchant, data)

        self.assertEqual(ctx.exception.field, 'customer_tax_id')

    def test_unregistered_customer(self):
        """An endpoint the registry does not know is refused"""
        self.client.get_member_detail.side_effect = RequestRejectedError('Member not found', status_code=404)

        with self.assertRaises(InvoiceDataError) as ctx:
            self.verifier.verify_customer(self.merchant, invoice_input(customer_endpoint_id='KHUID00009999'))

        self.assertEqual(ctx.exception.field, 'customer_endpoint_id')

    def test_malformed_endpoint_makes_no_call(self):
        """A malformed endpoint ID is a data error raised locally"""
        with self.assertRaises(InvoiceDataError):
            self.verifier.verify_customer(self.merchant, invoice_input(customer_endpoint_id='KH-5678'))

        self.client.get_member_detail.assert_not_called()

    def test_registry_outage_propagates(self):
        """Transient failures are not mistaken for an unknown customer"""
        self.client.get_member_detail.side_effect = TransientRegistryError('503', status_code=503)

        with self.assertRaises(TransientRegistryError):
            self.verifier.verify_customer(self.merchant, invoice_input(customer_endpoint_id='KHUID00005678'))

    def test_tax_id_only_is_validated(self):
        """Without an endpoint the TIN and name are validated"""
        self.client.validate_taxpayer.return_value = False

        with self.assertRaises(InvoiceDataError):
            self.verifier.verify_customer(self.merchant, invoice_input())

        query = self.client.validate_taxpayer.call_args.args[1]
        self.assertEqual((query.tin, query.company_name_en), ('K002-100200300', 'Mekong Supplies Ltd'))

    def test_anonymous_customer_is_not_checked(self):
        """Nothing to look up means no registry call"""
        data = invoice_input(customer_tax_id='')

        self.assertIs(self.verifier.verify_customer(self.merchant, data), data)
        self.client.validate_taxpayer.assert_not_called()
        self.client.get_member_detail.assert_not_called()


class VerifiedCreationTests(CounterpartyTestCase):
    """create_invoice with a verifier"""

    def test_verified_invoice_is_stored_with_directory_data(self):
        """The stored draft carries the filled-in tax ID and the audit says it was checked"""
        self.client.get_member_detail.return_value = MEKONG

        invoice = create_invoice(
            self.merchant,
            invoice_input(customer_endpoint_id='KHUID00005678', customer_tax_id=''),
            standard_lines(),
            verifier=self.verifier,
        )

        self.assertEqual(invoice.customer_tax_id, 'K002-100200300')
        event = AuditEvent.objects.get(invoice=invoice)
        self.assertTrue(event.detail['customer_verified'])

    def test_failed_verification_stores_nothing(self):
        """A refused customer leaves no draft behind"""
        self.client.get_member_detail.side_effect = RequestRejectedError('Member not found', status_code=404)

        with self.assertRaises(InvoiceDataError):
            create_invoice(
                self.merchant,
                invoice_input(customer_endpoint_id='KHUID00009999'),
                standard_lines(),
                verifier=self.verifier,
            )

        self.assertFalse(Invoice.objects.exists())
