"""
Tests for the submission orchestrator.
"""

import base64
from datetime import timedelta
from unittest.mock import Mock

from django.db.models import F
from django.test import TestCase, override_settings
from django.utils import timezone

from apps.einvoicing.audit import AuditRecorder
from apps.einvoicing.client import (
    AuthenticationError,
    RequestRejectedError,
    SubmitResponse,
    TransientRegistryError,
)
from apps.einvoicing.credentials import CredentialProvider
from apps.einvoicing.invoices import InvoiceDataError, update_draft_invoice
from apps.einvoicing.models import AuditEvent, Invoice
from apps.einvoicing.submission import InvalidInvoiceStateError, SubmissionOrchestrator
from tests.factories.einvoicing import (
    create_draft_invoice,
    create_merchant,
    fake_client,
    invoice_input,
    standard_lines,
    submit_response,
)


class SubmissionTestCase(TestCase):
    def setUp(self):
        self.merchant = create_merchant()
        self.client = fake_client()
        self.fetcher = Mock(return_value='test-token')
        self.credentials = CredentialProvider(self.fetcher, ttl_seconds=300)
        self.metrics = Mock()
        self.orchestrator = SubmissionOrchestrator(
            self.client, self.credentials, audit=AuditRecorder(), metrics=self.metrics
        )

    def submission_events(self, invoice):
        return list(AuditEvent.objects.filter(invoice=invoice).exclude(action='invoice_created'))


class SuccessfulSubmissionTests(SubmissionTestCase):
    """Draft -> submitted"""

    def test_submit_standard_invoice(self):
        """A valid draft is submitted once and audited once"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.return_value = submit_response('doc-0001')

        result = self.orchestrator.submit(invoice.id)

        self.assertTrue(result.success)
        self.assertEqual(result.registry_document_id, 'doc-0001')
        self.assertEqual(result.verification_reference, 'https://verify.example/doc-0001')

        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'submitted')
        self.assertEqual(invoice.registry_document_id, 'doc-0001')
        self.assertEqual(invoice.last_signal_source, 'submission')
        self.assertIsNotNone(invoice.submitted_at)
        self.assertEqual(invoice.version, 2)
        self.assertIn('<cbc:LineExtensionAmount currencyID="KHR">100</cbc:LineExtensionAmount>', invoice.rendered_document)

        events = self.submission_events(invoice)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].action, 'invoice_submitted')
        self.assertEqual((events[0].previous_status, events[0].new_status), ('draft', 'submitted'))
        self.assertEqual(events[0].detail['registry_document_id'], 'doc-0001')

    def test_submitted_document_is_the_rendered_xml(self):
        """The envelope carries the rendered XML under the invoice's credential"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.return_value = submit_response()

        self.orchestrator.submit(invoice.id)

        credential, documents = self.client.submit_documents.call_args.args
        self.assertEqual(credential, 'test-token')
        self.assertEqual(len(documents), 1)
        payload = documents[0].to_payload()
        self.assertEqual(payload['document_type'], 'INVOICE')
        invoice.refresh_from_db()
        self.assertEqual(base64.b64decode(payload['document']).decode('utf-8'), invoice.rendered_document)

    def test_only_drafts(self):
        """Submitting twice is refused without a second registry call"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.return_value = submit_response()
        self.orchestrator.submit(invoice.id)

        with self.assertRaises(InvalidInvoiceStateError):
            self.orchestrator.submit(invoice.id)
        self.assertEqual(self.client.submit_documents.call_count, 1)

    def test_unknown_invoice(self):
        """An unknown id raises with a not-found code"""
        with self.assertRaises(InvalidInvoiceStateError) as ctx:
            self.orchestrator.submit(424242)
        self.assertEqual(ctx.exception.code, 'INVOICE_NOT_FOUND')


class ValidationFailureTests(SubmissionTestCase):
    """Local validation blocks submission"""

    def test_missing_customer_address(self):
        """GDT-08 fails the invoice before any credential or network use"""
        invoice = create_draft_invoice(self.merchant, customer_street='', customer_city='')

        result = self.orchestrator.submit(invoice.id)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'XML_VALIDATION_FAILED')
        self.assertEqual(result.rule_codes, ['GDT-08'])
        self.client.submit_documents.assert_not_called()
        self.fetcher.assert_not_called()

        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'failed')
        self.assertEqual([e['code'] for e in invoice.validation_errors], ['GDT-08'])
        self.assertTrue(invoice.rendered_document)

        events = self.submission_events(invoice)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].action, 'submission_failed')
        self.assertEqual(events[0].new_status, 'failed')
        self.assertEqual(events[0].detail['rule_codes'], ['GDT-08'])


class RegistryRefusalTests(SubmissionTestCase):
    """Registry and credential failures"""

    def test_registry_rejects_document(self):
        """A failed document moves the invoice to failed with the registry's reason"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.return_value = SubmitResponse.from_dict(
            {'valid_documents': [], 'failed_documents': [{'error_message': 'Unknown buyer TIN'}]}
        )

        result = self.orchestrator.submit(invoice.id)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'REGISTRY_REJECTED')
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'failed')
        self.assertEqual(invoice.rejection_reason, 'Unknown buyer TIN')
        self.assertIsNone(invoice.registry_document_id)

    def test_authentication_failure(self):
        """A refused credential fails the invoice and is dropped from the cache"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.side_effect = AuthenticationError('expired', status_code=401)

        result = self.orchestrator.submit(invoice.id)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'UNAUTHORIZED')
        self.assertEqual(len(self.credentials), 0)
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'failed')

    def test_request_rejected(self):
        """A 4xx on the envelope fails the invoice"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.side_effect = RequestRejectedError('bad envelope', status_code=400)

        result = self.orchestrator.submit(invoice.id)

        self.assertEqual(result.error_code, 'REGISTRY_REJECTED')
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'failed')


class DeferredSubmissionTests(SubmissionTestCase):
    """Outcomes that leave the draft for another attempt"""

    def assert_left_in_draft(self, invoice, error_code):
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'draft')
        events = self.submission_events(invoice)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].action, 'submission_failed')
        self.assertEqual((events[0].previous_status, events[0].new_status), ('draft', 'draft'))
        self.assertTrue(events[0].detail['retryable'])
        self.assertEqual(events[0].detail['error_code'], error_code)

    def test_registry_unavailable(self):
        """Exhausted transient retries keep the draft"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.side_effect = TransientRegistryError('503', status_code=503)

        result = self.orchestrator.submit(invoice.id)

        self.assertFalse(result.success)
        self.assert_left_in_draft(invoice, 'NETWORK_ERROR')

    def test_draft_can_be_resubmitted(self):
        """After a transient failure the draft submits normally"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.side_effect = [TransientRegistryError('timeout'), submit_response()]

        self.assertFalse(self.orchestrator.submit(invoice.id).success)
        self.assertTrue(self.orchestrator.submit(invoice.id).success)

        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'submitted')

    def test_no_credential(self):
        """A merchant without a credential keeps the draft and makes no call"""
        invoice = create_draft_invoice(self.merchant)
        self.fetcher.return_value = None

        result = self.orchestrator.submit(invoice.id)

        self.assertEqual(result.error_code, 'INVALID_CREDENTIALS')
        self.client.submit_documents.assert_not_called()
        self.assert_left_in_draft(invoice, 'INVALID_CREDENTIALS')

    def test_inactive_merchant(self):
        """Disconnected merchants cannot submit"""
        invoice = create_draft_invoice(self.merchant)
        self.merchant.revoke()

        result = self.orchestrator.submit(invoice.id)

        self.assertEqual(result.error_code, 'MERCHANT_NOT_ACTIVE')
        self.client.submit_documents.assert_not_called()
        self.assert_left_in_draft(invoice, 'MERCHANT_NOT_ACTIVE')

    def test_unclassified_response(self):
        """A response naming no document keeps the draft"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.return_value = SubmitResponse.from_dict({})

        result = self.orchestrator.submit(invoice.id)

        self.assertFalse(result.success)
        self.assert_left_in_draft(invoice, 'REGISTRY_REJECTED')


class ConcurrentSubmissionTests(SubmissionTestCase):
    """Submission claims around the registry call"""

    def test_second_submitter_is_refused_while_first_is_in_flight(self):
        """A draft is sent to the registry once even if submitted twice at the same time"""
        invoice = create_draft_invoice(self.merchant)
        inner = []

        def submit_meanwhile(credential, documents):
            with self.assertRaises(InvalidInvoiceStateError) as ctx:
                self.orchestrator.submit(invoice.id)
            inner.append(ctx.exception.code)
            return submit_response('doc-A')

        self.client.submit_documents.side_effect = submit_meanwhile

        result = self.orchestrator.submit(invoice.id)

        self.assertTrue(result.success)
        self.assertEqual(inner, ['INVOICE_ALREADY_SUBMITTED'])
        self.assertEqual(self.client.submit_documents.call_count, 1)
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'submitted')
        self.assertEqual(invoice.registry_document_id, 'doc-A')
        self.assertEqual(invoice.submission_claim, '')
        self.assertIsNone(invoice.submission_claimed_at)

    def test_claimed_draft_cannot_be_edited(self):
        """Draft edits are refused while the registry call is in flight"""
        invoice = create_draft_invoice(self.merchant)

        def edit_meanwhile(credential, documents):
            with self.assertRaises(InvoiceDataError):
                update_draft_invoice(invoice, invoice_input(), standard_lines())
            return submit_response()

        self.client.submit_documents.side_effect = edit_meanwhile

        self.assertTrue(self.orchestrator.submit(invoice.id).success)

    def test_version_bump_does_not_drop_acceptance(self):
        """An unrelated write during the call does not lose the registry's document id"""
        invoice = create_draft_invoice(self.merchant)

        def touch_meanwhile(credential, documents):
            Invoice.objects.filter(pk=invoice.pk).update(version=F('version') + 1)
            return submit_response('doc-0001')

        self.client.submit_documents.side_effect = touch_meanwhile

        result = self.orchestrator.submit(invoice.id)

        self.assertTrue(result.success)
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'submitted')
        self.assertEqual(invoice.registry_document_id, 'doc-0001')

    def test_acceptance_recorded_after_claim_takeover(self):
        """If a stale claim was taken over meanwhile, the accepted id is still stored"""
        invoice = create_draft_invoice(self.merchant)

        def taken_over_meanwhile(credential, documents):
            Invoice.objects.filter(pk=invoice.pk).update(submission_claim='other-submitter')
            return submit_response('doc-A')

        self.client.submit_documents.side_effect = taken_over_meanwhile

        result = self.orchestrator.submit(invoice.id)

        self.assertTrue(result.success)
        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'submitted')
        self.assertEqual(invoice.registry_document_id, 'doc-A')
        self.assertEqual(invoice.submission_claim, '')
        self.assertEqual([e.action for e in self.submission_events(invoice)], ['invoice_submitted'])

    def test_second_acceptance_is_audited_not_dropped(self):
        """When another submission already recorded an id, the extra one is audited and returned"""
        invoice = create_draft_invoice(self.merchant)

        def recorded_meanwhile(credential, documents):
            Invoice.objects.filter(pk=invoice.pk).update(
                lifecycle_status='submitted', registry_document_id='doc-B', submission_claim=''
            )
            return submit_response('doc-A', 'https://verify.example/doc-A')

        self.client.submit_documents.side_effect = recorded_meanwhile

        result = self.orchestrator.submit(invoice.id)

        self.assertFalse(result.success)
        self.assertEqual(result.error_code, 'RECONCILIATION_CONFLICT')
        self.assertEqual(result.registry_document_id, 'doc-A')
        invoice.refresh_from_db()
        self.assertEqual(invoice.registry_document_id, 'doc-B')

        events = self.submission_events(invoice)
        self.assertEqual([e.action for e in events], ['submission_duplicated'])
        self.assertEqual(events[0].detail['registry_document_id'], 'doc-A')
        self.assertEqual(events[0].detail['recorded_document_id'], 'doc-B')

    def test_stale_claim_is_taken_over(self):
        """A claim left behind by a crashed worker expires"""
        invoice = create_draft_invoice(self.merchant)
        Invoice.objects.filter(pk=invoice.pk).update(
            submission_claim='crashed-worker',
            submission_claimed_at=timezone.now() - timedelta(hours=1),
        )
        self.client.submit_documents.return_value = submit_response()

        with override_settings(REGISTRY_SUBMISSION_CLAIM_TTL_SECONDS=900):
            result = self.orchestrator.submit(invoice.id)

        self.assertTrue(result.success)

    def test_deferral_releases_claim(self):
        """A draft left for another attempt is not left claimed"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.side_effect = TransientRegistryError('503', status_code=503)

        self.orchestrator.submit(invoice.id)

        invoice.refresh_from_db()
        self.assertEqual(invoice.submission_claim, '')
        self.assertFalse(invoice.submission_in_progress())

    def test_unexpected_error_releases_claim(self):
        """A crash inside the attempt releases the claim before propagating"""
        invoice = create_draft_invoice(self.merchant)
        self.client.submit_documents.side_effect = RuntimeError('boom')

        with self.assertRaises(RuntimeError):
            self.orchestrator.submit(invoice.id)

        invoice.refresh_from_db()
        self.assertEqual(invoice.lifecycle_status, 'draft')
        self.assertEqual(invoice.submission_claim, '')
