"""
Counterparty checks against the registry's business directory.

Optional step before an invoice is stored: the customer named on the
invoice must be a registered business, and identifiers the caller left
blank are filled from the directory entry.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import TYPE_CHECKING

from .client import (
    ENDPOINT_ID_PATTERN,
    AuthenticationError,
    MemberDetail,
    RegistryClient,
    RequestRejectedError,
    TaxpayerQuery,
)
from .credentials import CredentialProvider
from .invoices import InvoiceDataError, InvoiceInput

if TYPE_CHECKING:
    from .models import Merchant

logger = logging.getLogger(__name__)


def _normalize_tin(value: str) -> str:
    return "".join(ch for ch in (value or "") if ch.isalnum()).upper()


class CounterpartyVerifier:
    """
    Customer lookups on behalf of a merchant.

    Usage:
        verifier = CounterpartyVerifier(client, credentials)
        data = verifier.verify_customer(merchant, data)
    """

    def __init__(self, client: RegistryClient, credentials: CredentialProvider):
        self.client = client
        self.credentials = credentials

    def validate_taxpayer(self, merchant: Merchant, query: TaxpayerQuery) -> bool:
        credential = self.credentials.get_credential(merchant.id)
        try:
            is_valid = self.client.validate_taxpayer(credential, query)
        except AuthenticationError:
            self.credentials.invalidate(merchant.id)
            raise
        logger.info(f"🔍 [Counterparty] Merchant {merchant.id} validated taxpayer {query.tin}: {is_valid}")
        return is_valid

    def get_member_detail(self, merchant: Merchant, endpoint_id: str = "") -> MemberDetail:
        """Directory entry for ``endpoint_id``, or the merchant's own when none is given."""
        target = endpoint_id or merchant.endpoint_id
        credential = self.credentials.get_credential(merchant.id)
        try:
            member = self.client.get_member_detail(credential, target)
        except AuthenticationError:
            self.credentials.invalidate(merchant.id)
            raise
        logger.info(f"🔍 [Counterparty] Merchant {merchant.id} retrieved member {target} ({member.company_name_en})")
        return member

    def verify_customer(self, merchant: Merchant, data: InvoiceInput) -> InvoiceInput:
        """
        Check the invoice's customer and return the input with blanks filled in.

        A customer with an endpoint ID is looked up in the directory; one
        with only a tax ID is validated by TIN and name.

        Raises:
            InvoiceDataError: Customer unknown to the registry, or its TIN
                disagrees with the directory
            RegistryClientError: Registry unreachable or credential refused
        """
        if data.customer_endpoint_id:
            if not ENDPOINT_ID_PATTERN.fullmatch(data.customer_endpoint_id):
                raise InvoiceDataError(
                    f"Malformed customer endpoint ID {data.customer_endpoint_id!r}", field="customer_endpoint_id"
                )
            try:
                member = self.get_member_detail(merchant, data.customer_endpoint_id)
            except RequestRejectedError as e:
                if e.status_code != 404:
                    raise
                raise InvoiceDataError(
                    f"Customer {data.customer_endpoint_id} is not a registered business",
                    field="customer_endpoint_id",
                ) from e

            if data.customer_tax_id and member.tin and _normalize_tin(data.customer_tax_id) != _normalize_tin(member.tin):
                raise InvoiceDataError(
                    f"Customer tax ID {data.customer_tax_id} does not match {member.tin} registered "
                    f"for {data.customer_endpoint_id}",
                    field="customer_tax_id",
                )
            return dataclasses.replace(
                data,
                customer_name=data.customer_name or member.company_name_en or member.company_name_kh,
                customer_tax_id=data.customer_tax_id or member.tin,
            )

        if data.customer_tax_id:
            query = TaxpayerQuery(single_id="", tin=data.customer_tax_id, company_name_en=data.customer_name)
            if not self.validate_taxpayer(merchant, query):
                raise InvoiceDataError(
                    f"Customer tax ID {data.customer_tax_id} is not registered to {data.customer_name}",
                    field="customer_tax_id",
                )

        return data
