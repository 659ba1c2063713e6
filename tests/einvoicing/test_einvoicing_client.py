"""
Tests for the registry API client and the credential provider.
"""

import base64
import json
from typing import Any
import threading
from unittest.mock import Mock, patch

import requests
from django.test import SimpleTestCase, TestCase

from apps.einvoicing.client import (
    AuthenticationError,
    DocumentDetail,
    DocumentSubmission,
    PollDirection,
    PolledDocument,
    RateLimitError,
    RegistryClient,
    RegistryConfig,
    RequestRejectedError,
    SubmitResponse,
    TaxpayerQuery,
    TransientRegistryError,
)
from apps.einvoicing.credentials import (
    CredentialProvider,
    CredentialUnavailableError,
    fetch_stored_access_token,
)
from apps.einvoicing.status import DocumentKind
from tests.factories.einvoicing import create_merchant


def make_response(status: int, body: Any = None, headers: dict[str, str] | None = None) -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response.encoding = 'utf-8'
    response._content = json.dumps(body).encode('utf-8') if body is not None else b''
    response.headers.update(headers or {})
    return response


class RegistryClientTestCase(SimpleTestCase):
    def setUp(self):
        self.sleep = Mock()
        self.metrics = Mock()
        self.client = RegistryClient(
            RegistryConfig(base_url='https://registry.test', max_retries=3, retry_delay=1.0, max_retry_after=60),
            metrics=self.metrics,
            sleep=self.sleep,
        )
        self.session = Mock()
        patcher = patch('apps.einvoicing.client.requests.Session', return_value=self.session)
        self.session_factory = patcher.start()
        self.addCleanup(patcher.stop)


class SubmitDocumentsTests(RegistryClientTestCase):
    """POST /api/v1/document"""

    def test_envelope_and_response(self):
        """Documents go out base64 encoded with their registry type"""
        self.session.request.return_value = make_response(
            200,
            {
                'valid_documents': [{'document_id': 'doc-1', 'verification_link': 'https://v/doc-1'}],
                'failed_documents': [],
            },
        )

        result = self.client.submit_documents('tok', [DocumentSubmission(DocumentKind.CREDIT_NOTE, '<x/>')])

        method, url = self.session.request.call_args.args
        kwargs = self.session.request.call_args.kwargs
        self.assertEqual(method, 'POST')
        self.assertEqual(url, 'https://registry.test/api/v1/document')
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer tok')
        document = kwargs['json']['documents'][0]
        self.assertEqual(document['document_type'], 'CREDIT_NOTE')
        self.assertEqual(base64.b64decode(document['document']), b'<x/>')
        self.assertEqual(result.valid_documents[0].document_id, 'doc-1')
        self.assertEqual(result.valid_documents[0].verification_link, 'https://v/doc-1')

    def test_failed_documents(self):
        """Per-document rejections are reported, not raised"""
        self.session.request.return_value = make_response(
            200, {'valid_documents': [], 'failed_documents': [{'document_type': 'INVOICE', 'message': 'bad TIN'}]}
        )

        result = self.client.submit_documents('tok', [DocumentSubmission(DocumentKind.INVOICE, '<x/>')])

        self.assertEqual(result.valid_documents, [])
        self.assertEqual(result.failed_documents[0].error_message, 'bad TIN')

    def test_malformed_response(self):
        """Non-list document sections are a rejected response"""
        with self.assertRaises(RequestRejectedError):
            SubmitResponse.from_dict({'valid_documents': 'yes'})


class RetryPolicyTests(RegistryClientTestCase):
    """Only transient failures are retried"""

    def test_missing_credential_fails_before_any_request(self):
        """An empty credential never reaches the network"""
        with self.assertRaises(AuthenticationError):
            self.client.get_document('', 'doc-1')
        self.session.request.assert_not_called()

    def test_unauthorized_is_not_retried(self):
        """401 raises immediately"""
        self.session.request.return_value = make_response(401, {'message': 'token expired'})

        with self.assertRaises(AuthenticationError) as ctx:
            self.client.get_document('tok', 'doc-1')

        self.assertEqual(self.session.request.call_count, 1)
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertEqual(str(ctx.exception), 'token expired')
        self.sleep.assert_not_called()

    def test_client_errors_are_not_retried(self):
        """Other 4xx raise RequestRejectedError at once"""
        self.session.request.return_value = make_response(422, {'error': 'bad envelope'})

        with self.assertRaises(RequestRejectedError):
            self.client.get_document('tok', 'doc-1')
        self.assertEqual(self.session.request.call_count, 1)

    def test_server_errors_back_off_then_succeed(self):
        """5xx retries with exponential backoff"""
        self.session.request.side_effect = [
            make_response(503),
            make_response(502),
            make_response(200, {'document_id': 'doc-1', 'status': 'VALIDATED'}),
        ]

        detail = self.client.get_document('tok', 'doc-1')

        self.assertEqual(detail.status, 'VALIDATED')
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])
        self.assertEqual(self.metrics.record_api_retry.call_count, 2)

    def test_retries_exhausted(self):
        """Persistent server errors surface as a transient error after max attempts"""
        self.session.request.return_value = make_response(500)

        with self.assertRaises(TransientRegistryError) as ctx:
            self.client.get_document('tok', 'doc-1')

        self.assertTrue(ctx.exception.transient)
        self.assertEqual(self.session.request.call_count, 3)
        self.assertEqual(self.sleep.call_count, 2)

    def test_network_errors_are_retried(self):
        """Timeouts and connection errors retry"""
        self.session.request.side_effect = [
            requests.Timeout('slow'),
            requests.ConnectionError('reset'),
            make_response(200, {'document_id': 'doc-1', 'status': 'PROCESSING'}),
        ]

        detail = self.client.get_document('tok', 'doc-1')

        self.assertEqual(detail.status, 'PROCESSING')
        self.assertEqual(self.session.request.call_count, 3)

    def test_rate_limit_honours_retry_after(self):
        """429 waits for Retry-After, capped by configuration"""
        self.session.request.side_effect = [
            make_response(429, headers={'Retry-After': '7'}),
            make_response(429, headers={'Retry-After': '600'}),
            make_response(200, {'document_id': 'doc-1', 'status': 'ACCEPTED'}),
        ]

        self.client.get_document('tok', 'doc-1')

        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [7.0, 60.0])

    def test_rate_limit_exhausted(self):
        """A registry that keeps answering 429 raises RateLimitError"""
        self.session.request.return_value = make_response(429)

        with self.assertRaises(RateLimitError):
            self.client.get_document('tok', 'doc-1')


class ReadOperationsTests(RegistryClientTestCase):
    """Lookup, polling and follow-up actions"""

    def test_document_detail_unwraps_data(self):
        """Detail responses wrapped in data are unwrapped"""
        detail = DocumentDetail.from_dict({'data': {'id': 'doc-9', 'status': 'REJECTED'}})

        self.assertEqual(detail.document_id, 'doc-9')
        self.assertEqual(detail.status, 'REJECTED')
        self.assertEqual(detail.raw_response, {'id': 'doc-9', 'status': 'REJECTED'})

    def test_poll_updates(self):
        """Delta poll passes the cursor and reads directions"""
        self.session.request.return_value = make_response(
            200,
            {
                'documents': [
                    {'document_id': 'doc-1', 'updated_at': '2024-03-01T10:00:00Z', 'type': 'SEND'},
                    {'document_id': 'doc-2', 'type': 'receive'},
                    {'updated_at': 'no id'},
                ]
            },
        )

        documents = self.client.poll_updates('tok', '2024-03-01T00:00:00+00:00')

        self.assertEqual(self.session.request.call_args.kwargs['params'], {'last_synced_at': '2024-03-01T00:00:00+00:00'})
        self.assertEqual([d.document_id for d in documents], ['doc-1', 'doc-2'])
        self.assertEqual(documents[1].direction, PollDirection.RECEIVE)

    def test_poll_updates_accepts_bare_list(self):
        """A bare JSON list of documents is accepted too"""
        self.session.request.return_value = make_response(200, [{'document_id': 'doc-3'}])

        documents = self.client.poll_updates('tok')

        self.assertIsNone(self.session.request.call_args.kwargs['params'])
        self.assertEqual(documents[0].direction, PollDirection.SEND)

    def test_unknown_poll_direction_defaults_to_send(self):
        """Unrecognized directions are treated as outgoing"""
        self.assertEqual(PolledDocument.from_dict({'document_id': 'd', 'type': 'SIDEWAYS'}).direction, PollDirection.SEND)

    def test_reject_document_sends_reason(self):
        """Rejection posts the reason to the invoice endpoint"""
        self.session.request.return_value = make_response(200, {'status': 'REJECTED'})

        self.client.reject_document('tok', 'doc-5', 'wrong amount')

        method, url = self.session.request.call_args.args
        self.assertEqual(url, 'https://registry.test/api/v1/invoices/doc-5/reject')
        self.assertEqual(self.session.request.call_args.kwargs['json'], {'reason': 'wrong amount'})

    def test_send_document(self):
        """Send posts the document ids"""
        self.session.request.return_value = make_response(200, {'sent': ['doc-5']})

        response = self.client.send_document('tok', ['doc-5'])

        self.assertEqual(self.session.request.call_args.kwargs['json'], {'documents': ['doc-5']})
        self.assertEqual(response, {'sent': ['doc-5']})

    def test_non_json_body(self):
        """A success with a non-JSON body is a rejected response"""
        response = make_response(200)
        response._content = b'<html>oops</html>'
        self.session.request.return_value = response

        with self.assertRaises(RequestRejectedError):
            self.client.get_document('tok', 'doc-1')

    def test_context_manager_closes_session(self):
        """Leaving the context closes the HTTP session"""
        with self.client as client:
            self.assertIs(client, self.client)
            self.assertIs(client.session, self.session)
        self.session.close.assert_called_once()
        self.assertIsNone(getattr(self.client._local, 'session', None))

    def test_each_thread_gets_its_own_session(self):
        """Worker threads never share a requests session; close reaches all of them"""
        self.session_factory.side_effect = lambda: Mock()
        sessions = {}

        def grab(name):
            sessions[name] = self.client.session

        workers = [threading.Thread(target=grab, args=(name,)) for name in ('a', 'b')]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.assertIsNot(sessions['a'], sessions['b'])
        self.assertIs(self.client.session, self.client.session)

        self.client.close()
        sessions['a'].close.assert_called_once()
        sessions['b'].close.assert_called_once()


class BusinessDirectoryTests(RegistryClientTestCase):
    """Taxpayer validation and member lookup"""

    def test_validate_taxpayer_posts_identity(self):
        """The taxpayer identity goes out as JSON and is_valid comes back"""
        self.session.request.return_value = make_response(200, {'is_valid': True})
        query = TaxpayerQuery(single_id='S-1', tin='K002-100200300', company_name_en='Mekong Supplies Ltd')

        self.assertTrue(self.client.validate_taxpayer('tok', query))

        args, kwargs = self.session.request.call_args
        self.assertEqual(args, ('POST', 'https://registry.test/api/v1/business/validate'))
        self.assertEqual(
            kwargs['json'],
            {
                'single_id': 'S-1',
                'tin': 'K002-100200300',
                'company_name_en': 'Mekong Supplies Ltd',
                'company_name_kh': '',
            },
        )
        self.metrics.record_api_request.assert_called_once()
        self.assertEqual(self.metrics.record_api_request.call_args.args[0], 'validate_taxpayer')

    def test_validate_taxpayer_needs_explicit_true(self):
        """Anything but is_valid true counts as not valid"""
        self.session.request.return_value = make_response(200, {'is_valid': 'yes'})

        self.assertFalse(self.client.validate_taxpayer('tok', TaxpayerQuery('', 'T', 'Name')))

    def test_member_detail(self):
        """Member lookup reads every directory field"""
        self.session.request.return_value = make_response(
            200,
            {
                'endpoint_id': 'KHUID00005678',
                'company_name_en': 'Mekong Supplies Ltd',
                'company_name_kh': 'ក្រុមហ៊ុន',
                'entity_type': 'COMPANY',
                'entity_id': 'E-77',
                'tin': 'K002-100200300',
                'country': 'KH',
            },
        )

        member = self.client.get_member_detail('tok', 'KHUID00005678')

        self.assertEqual(self.session.request.call_args.args[1], 'https://registry.test/api/v1/business/KHUID00005678')
        self.assertEqual(member.tin, 'K002-100200300')
        self.assertEqual(member.entity_type, 'COMPANY')
        self.assertEqual(member.country, 'KH')

    def test_malformed_endpoint_id_is_not_sent(self):
        """Endpoint IDs are checked before any request is made"""
        for endpoint_id in ('', 'KHUID1234', 'khuid00001234', 'KHUID00001234/../x'):
            with self.subTest(endpoint_id=endpoint_id), self.assertRaises(RequestRejectedError):
                self.client.get_member_detail('tok', endpoint_id)

        self.session.request.assert_not_called()

    def test_unknown_member(self):
        """A 404 surfaces as a rejection with its status"""
        self.session.request.return_value = make_response(404, {'message': 'Member not found'})

        with self.assertRaises(RequestRejectedError) as ctx:
            self.client.get_member_detail('tok', 'KHUID00009999')

        self.assertEqual(ctx.exception.status_code, 404)


class CredentialProviderTests(SimpleTestCase):
    """TTL cache in front of the credential fetcher"""

    def setUp(self):
        self.now = 1000.0
        self.fetcher = Mock(return_value='token-a')
        self.provider = CredentialProvider(self.fetcher, ttl_seconds=60, clock=lambda: self.now)

    def test_caches_until_expiry(self):
        """The fetcher is consulted once per TTL"""
        self.assertEqual(self.provider.get_credential(1), 'token-a')
        self.assertEqual(self.provider.get_credential(1), 'token-a')
        self.assertEqual(self.fetcher.call_count, 1)

        self.now += 61
        self.fetcher.return_value = 'token-b'
        self.assertEqual(self.provider.get_credential(1), 'token-b')
        self.assertEqual(self.fetcher.call_count, 2)

    def test_unavailable(self):
        """No credential raises and caches nothing"""
        self.fetcher.return_value = None

        with self.assertRaises(CredentialUnavailableError) as ctx:
            self.provider.get_credential(7)

        self.assertEqual(ctx.exception.merchant_id, 7)
        self.assertEqual(len(self.provider), 0)

    def test_invalidate(self):
        """Invalidation forces a fresh fetch"""
        self.provider.get_credential(1)
        self.provider.invalidate(1)
        self.provider.get_credential(1)

        self.assertEqual(self.fetcher.call_count, 2)

    def test_bounded(self):
        """The least recently used entry is evicted past the bound"""
        provider = CredentialProvider(self.fetcher, ttl_seconds=60, max_entries=2, clock=lambda: self.now)
        provider.get_credential(1)
        provider.get_credential(2)
        provider.get_credential(1)
        provider.get_credential(3)

        self.assertEqual(len(provider), 2)
        provider.get_credential(1)
        self.assertEqual(self.fetcher.call_count, 3)

    def test_fetcher_runs_outside_the_cache_lock(self):
        """A slow or reentrant fetcher does not block other merchants"""
        provider = CredentialProvider(ttl_seconds=60, clock=lambda: self.now)

        def fetcher(merchant_id):
            provider.invalidate(merchant_id)
            return f'token-{merchant_id}'

        provider._fetcher = fetcher

        self.assertEqual(provider.get_credential(5), 'token-5')
        self.assertEqual(len(provider), 1)

    def test_shared_between_threads(self):
        """Concurrent expiry, refetch and invalidation never corrupt the cache"""
        provider = CredentialProvider(lambda merchant_id: f'token-{merchant_id}', ttl_seconds=0, max_entries=4)
        errors = []

        def hammer(offset):
            try:
                for i in range(500):
                    merchant_id = (i + offset) % 6
                    provider.get_credential(merchant_id)
                    provider.invalidate((merchant_id + 1) % 6)
            except Exception as e:
                errors.append(e)

        workers = [threading.Thread(target=hammer, args=(offset,)) for offset in range(8)]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join()

        self.assertEqual(errors, [])
        self.assertLessEqual(len(provider), 4)


class StoredTokenFetcherTests(TestCase):
    """Default fetcher reads the merchant's stored token"""

    def test_active_merchant_token(self):
        """Active merchants yield their token"""
        merchant = create_merchant(access_token='stored-xyz')
        self.assertEqual(fetch_stored_access_token(merchant.id), 'stored-xyz')

    def test_inactive_or_missing(self):
        """Inactive, tokenless and unknown merchants yield nothing"""
        inactive = create_merchant(endpoint_id='KHUID00000002', is_active=False)
        tokenless = create_merchant(endpoint_id='KHUID00000003', access_token='')

        self.assertIsNone(fetch_stored_access_token(inactive.id))
        self.assertIsNone(fetch_stored_access_token(tokenless.id))
        self.assertIsNone(fetch_stored_access_token(999999))
