"""
E-invoicing registry API client.

Thin transport wrapper around the registry's REST API:
- Document submission (base64 UBL in a JSON envelope)
- Document detail lookup
- Delta polling of changed documents
- Sending accepted documents to buyers
- Accepting or rejecting received documents
- Business directory lookups (taxpayer validation, member detail)

Every call takes a bearer credential supplied by the caller; obtaining
and refreshing that credential is not this client's concern.

Only transient failures (network errors, timeouts, 5xx, 429) are retried,
with exponential backoff. Authentication failures and other 4xx responses
raise immediately.
"""

from __future__ import annotations

import base64
import logging
import re
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

import requests

from .metrics import RegistryMetrics
from .metrics import metrics as default_metrics
from .settings import registry_settings
from .status import DocumentKind

logger = logging.getLogger(__name__)


class RegistryErrorCode(StrEnum):
    """Stable error codes surfaced to callers."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    UNAUTHORIZED = "UNAUTHORIZED"
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    INVALID_INVOICE_DATA = "INVALID_INVOICE_DATA"
    INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"
    INVOICE_ALREADY_SUBMITTED = "INVOICE_ALREADY_SUBMITTED"
    XML_GENERATION_FAILED = "XML_GENERATION_FAILED"
    XML_VALIDATION_FAILED = "XML_VALIDATION_FAILED"
    MERCHANT_NOT_FOUND = "MERCHANT_NOT_FOUND"
    MERCHANT_NOT_ACTIVE = "MERCHANT_NOT_ACTIVE"
    REGISTRY_REJECTED = "REGISTRY_REJECTED"
    RECONCILIATION_CONFLICT = "RECONCILIATION_CONFLICT"


# ===============================================================================
# EXCEPTIONS
# ===============================================================================


class RegistryClientError(Exception):
    """Base exception for registry client errors."""

    code: ClassVar[RegistryErrorCode] = RegistryErrorCode.NETWORK_ERROR
    transient: ClassVar[bool] = False

    def __init__(self, message: str, status_code: int | None = None, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class AuthenticationError(RegistryClientError):
    """Credential missing, expired or refused (401/403)."""

    code = RegistryErrorCode.UNAUTHORIZED


class RequestRejectedError(RegistryClientError):
    """Registry refused the request (4xx) or returned a malformed envelope."""

    code = RegistryErrorCode.REGISTRY_REJECTED


class TransientRegistryError(RegistryClientError):
    """Network failure, timeout or 5xx that persisted through all retries."""

    code = RegistryErrorCode.NETWORK_ERROR
    transient = True


class RateLimitError(TransientRegistryError):
    """Registry kept answering 429."""

    code = RegistryErrorCode.RATE_LIMIT_EXCEEDED


# ===============================================================================
# CONFIG & RESPONSE TYPES
# ===============================================================================


@dataclass
class RegistryConfig:
    """Configuration for the registry API client."""

    base_url: str
    service_provider_name: str = "einvoicing"
    timeout: int = 30
    max_retries: int = 3
    retry_delay: float = 1.0
    max_retry_after: int = 60

    @classmethod
    def from_settings(cls) -> RegistryConfig:
        return cls(
            base_url=registry_settings.api_base_url,
            service_provider_name=registry_settings.service_provider_name,
            timeout=registry_settings.api_timeout_seconds,
            max_retries=max(1, registry_settings.api_max_retries),
            retry_delay=registry_settings.api_retry_delay_seconds,
            max_retry_after=registry_settings.max_retry_after_seconds,
        )

    @property
    def user_agent(self) -> str:
        return f"{self.service_provider_name}/1.0"


@dataclass(frozen=True)
class DocumentSubmission:
    """One rendered document in a submission envelope."""

    kind: DocumentKind
    xml: str

    def to_payload(self) -> dict[str, str]:
        return {
            "document_type": self.kind.registry_type,
            "document": base64.b64encode(self.xml.encode("utf-8")).decode("ascii"),
        }


@dataclass
class SubmittedDocument:
    document_id: str
    verification_link: str = ""
    document_type: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmittedDocument:
        return cls(
            document_id=str(data.get("document_id", "")),
            verification_link=data.get("verification_link", "") or "",
            document_type=data.get("document_type", "") or "",
        )


@dataclass
class FailedDocument:
    document_type: str = ""
    error_message: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FailedDocument:
        message = data.get("error_message") or data.get("message") or "Rejected by registry"
        return cls(document_type=data.get("document_type", "") or "", error_message=str(message))


@dataclass
class SubmitResponse:
    """Batch submission result; each document is accepted or rejected independently."""

    valid_documents: list[SubmittedDocument] = field(default_factory=list)
    failed_documents: list[FailedDocument] = field(default_factory=list)
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SubmitResponse:
        valid = data.get("valid_documents") or []
        failed = data.get("failed_documents") or []
        if not isinstance(valid, list) or not isinstance(failed, list):
            raise RequestRejectedError("Malformed submission response", payload=data)
        return cls(
            valid_documents=[SubmittedDocument.from_dict(d) for d in valid if d.get("document_id")],
            failed_documents=[FailedDocument.from_dict(d) for d in failed],
            raw_response=data,
        )


@dataclass
class DocumentDetail:
    """Registry view of one document."""

    document_id: str
    status: str = ""
    document_type: str = ""
    raw_response: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any], document_id: str = "") -> DocumentDetail:
        # Some responses wrap the document in a "data" key
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        return cls(
            document_id=str(body.get("document_id") or body.get("id") or document_id),
            status=str(body.get("status", "") or ""),
            document_type=str(body.get("document_type", "") or ""),
            raw_response=body,
        )


class PollDirection(StrEnum):
    SEND = "SEND"
    RECEIVE = "RECEIVE"


@dataclass
class PolledDocument:
    document_id: str
    updated_at: str = ""
    direction: PollDirection = PollDirection.SEND

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PolledDocument:
        raw_direction = str(data.get("type") or data.get("direction") or "SEND").upper()
        try:
            direction = PollDirection(raw_direction)
        except ValueError:
            logger.warning(f"⚠️ [Registry] Unknown poll direction {raw_direction!r}, treating as SEND")
            direction = PollDirection.SEND
        return cls(
            document_id=str(data.get("document_id", "")),
            updated_at=str(data.get("updated_at", "") or ""),
            direction=direction,
        )


# Registry participant identifier, e.g. KHUID00001234
ENDPOINT_ID_PATTERN = re.compile(r"KHUID\d{8}")


@dataclass(frozen=True)
class TaxpayerQuery:
    """Taxpayer identity to check against the registry's business directory."""

    single_id: str
    tin: str
    company_name_en: str
    company_name_kh: str = ""

    def to_payload(self) -> dict[str, str]:
        return {
            "single_id": self.single_id,
            "tin": self.tin,
            "company_name_en": self.company_name_en,
            "company_name_kh": self.company_name_kh,
        }


@dataclass
class MemberDetail:
    """A registered business as the registry describes it."""

    endpoint_id: str
    company_name_en: str = ""
    company_name_kh: str = ""
    entity_type: str = ""
    entity_id: str = ""
    tin: str = ""
    country: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any], endpoint_id: str = "") -> MemberDetail:
        body = data.get("data") if isinstance(data.get("data"), dict) else data
        return cls(
            endpoint_id=str(body.get("endpoint_id") or endpoint_id),
            company_name_en=str(body.get("company_name_en", "") or ""),
            company_name_kh=str(body.get("company_name_kh", "") or ""),
            entity_type=str(body.get("entity_type", "") or ""),
            entity_id=str(body.get("entity_id", "") or ""),
            tin=str(body.get("tin", "") or ""),
            country=str(body.get("country", "") or ""),
        )


# ===============================================================================
# CLIENT
# ===============================================================================


class RegistryClient:
    """
    Client for the e-invoicing registry API.

    Usage:
        with RegistryClient() as client:
            response = client.submit_documents(credential, [DocumentSubmission(kind, xml)])
            detail = client.get_document(credential, response.valid_documents[0].document_id)
    """

    RETRYABLE_STATUS_CODES: ClassVar[frozenset[int]] = frozenset({500, 502, 503, 504})
    AUTH_STATUS_CODES: ClassVar[frozenset[int]] = frozenset({401, 403})

    def __init__(
        self,
        config: RegistryConfig | None = None,
        metrics: RegistryMetrics | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or RegistryConfig.from_settings()
        self.metrics = metrics or default_metrics
        self._sleep = sleep
        # requests.Session is not thread-safe; each worker thread gets its own
        self._local = threading.local()
        self._sessions: list[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        """Get or create this thread's HTTP session."""
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(
                {
                    "Accept": "application/json",
                    "User-Agent": self.config.user_agent,
                }
            )
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def close(self) -> None:
        """Close every session this client opened, in any thread."""
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()
        self._local = threading.local()

    def __enter__(self) -> RegistryClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # --- Document Operations ---

    def submit_documents(self, credential: str, documents: Sequence[DocumentSubmission]) -> SubmitResponse:
        """
        Submit rendered documents.

        Returns:
            SubmitResponse classifying each document as valid or failed

        Raises:
            AuthenticationError: Credential refused
            RequestRejectedError: Envelope refused or response malformed
            TransientRegistryError: Retries exhausted
        """
        payload = {"documents": [doc.to_payload() for doc in documents]}
        response = self._request_with_retry("POST", "/api/v1/document", credential, endpoint="submit", json=payload)
        result = SubmitResponse.from_dict(self._json(response))
        logger.info(
            f"✅ [Registry] Submitted {len(documents)} document(s): "
            f"{len(result.valid_documents)} valid, {len(result.failed_documents)} failed"
        )
        return result

    def get_document(self, credential: str, document_id: str) -> DocumentDetail:
        response = self._request_with_retry(
            "GET", f"/api/v1/document/{document_id}", credential, endpoint="get_document"
        )
        return DocumentDetail.from_dict(self._json(response), document_id=document_id)

    def poll_updates(self, credential: str, last_synced_at: str | None = None) -> list[PolledDocument]:
        """List documents updated since ``last_synced_at`` (ISO 8601), or all recent ones."""
        params = {"last_synced_at": last_synced_at} if last_synced_at else None
        response = self._request_with_retry(
            "GET", "/api/v1/document/poll", credential, endpoint="poll", params=params
        )
        data = self._json(response)
        documents = data.get("documents", []) if isinstance(data, dict) else data
        if not isinstance(documents, list):
            raise RequestRejectedError("Malformed poll response", payload={"body": data})
        return [PolledDocument.from_dict(d) for d in documents if d.get("document_id")]

    def send_document(self, credential: str, document_ids: Sequence[str]) -> dict[str, Any]:
        """Deliver accepted documents to their buyers."""
        response = self._request_with_retry(
            "POST",
            "/api/v1/document/send",
            credential,
            endpoint="send",
            json={"documents": list(document_ids)},
        )
        return self._json(response)

    def accept_document(self, credential: str, document_id: str) -> dict[str, Any]:
        response = self._request_with_retry(
            "POST", f"/api/v1/invoices/{document_id}/accept", credential, endpoint="accept"
        )
        return self._json(response)

    def reject_document(self, credential: str, document_id: str, reason: str) -> dict[str, Any]:
        response = self._request_with_retry(
            "POST",
            f"/api/v1/invoices/{document_id}/reject",
            credential,
            endpoint="reject",
            json={"reason": reason},
        )
        return self._json(response)

    # --- Business Directory ---

    def validate_taxpayer(self, credential: str, query: TaxpayerQuery) -> bool:
        """Whether the registry knows a taxpayer with exactly these identifiers."""
        response = self._request_with_retry(
            "POST", "/api/v1/business/validate", credential, endpoint="validate_taxpayer", json=query.to_payload()
        )
        is_valid = self._json(response).get("is_valid") is True
        logger.info(f"🔍 [Registry] Taxpayer {query.tin} {'valid' if is_valid else 'not valid'}")
        return is_valid

    def get_member_detail(self, credential: str, endpoint_id: str) -> MemberDetail:
        """
        Look up a registered business by endpoint ID.

        Raises:
            RequestRejectedError: Malformed endpoint ID (checked locally) or unknown member
        """
        if not ENDPOINT_ID_PATTERN.fullmatch(endpoint_id or ""):
            raise RequestRejectedError(f"Invalid endpoint ID {endpoint_id!r}", payload={"endpoint_id": endpoint_id})
        response = self._request_with_retry(
            "GET", f"/api/v1/business/{endpoint_id}", credential, endpoint="member_detail"
        )
        return MemberDetail.from_dict(self._json(response), endpoint_id=endpoint_id)

    # --- Internal Methods ---

    def _json(self, response: requests.Response) -> dict[str, Any]:
        if not response.text:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise RequestRejectedError(
                f"Registry returned non-JSON body: {response.text[:200]}", status_code=response.status_code
            ) from e
        return data if isinstance(data, dict) else {"documents": data}

    def _error_message(self, response: requests.Response) -> str:
        try:
            data = response.json() if response.text else {}
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        if isinstance(data, dict):
            for key in ("message", "error_description", "error"):
                if data.get(key):
                    return str(data[key])
        return f"HTTP {response.status_code}"

    def _retry_after_seconds(self, response: requests.Response, attempt: int) -> float:
        header = response.headers.get("Retry-After")
        try:
            delay = float(header) if header is not None else self.config.retry_delay * (2**attempt)
        except ValueError:
            delay = self.config.retry_delay * (2**attempt)
        return min(max(delay, 0.0), float(self.config.max_retry_after))

    def _request_with_retry(
        self,
        method: str,
        path: str,
        credential: str,
        *,
        endpoint: str,
        **kwargs: Any,
    ) -> requests.Response:
        """Make an authenticated request, retrying transient failures only."""
        if not credential:
            raise AuthenticationError("No registry credential supplied")

        url = f"{self.config.base_url}{path}"
        headers = {"Authorization": f"Bearer {credential}", **kwargs.pop("headers", {})}
        kwargs.setdefault("timeout", self.config.timeout)
        last_error: RegistryClientError | None = None

        for attempt in range(self.config.max_retries):
            start = time.monotonic()
            try:
                response = self.session.request(method, url, headers=headers, **kwargs)
            except requests.Timeout as e:
                last_error = TransientRegistryError(f"Request timeout: {e}")
                reason = "timeout"
                logger.warning(f"⚠️ [Registry] {endpoint} timeout (attempt {attempt + 1}/{self.config.max_retries})")
            except requests.ConnectionError as e:
                last_error = TransientRegistryError(f"Connection error: {e}")
                reason = "connection"
                logger.warning(
                    f"⚠️ [Registry] {endpoint} connection error (attempt {attempt + 1}/{self.config.max_retries})"
                )
            else:
                status = response.status_code
                self.metrics.record_api_request(endpoint, status, time.monotonic() - start)

                if status < 400:
                    return response

                message = self._error_message(response)
                if status in self.AUTH_STATUS_CODES:
                    logger.error(f"🔥 [Registry] {endpoint} unauthorized ({status}): {message}")
                    raise AuthenticationError(message, status_code=status)

                if status == 429:
                    last_error = RateLimitError(message, status_code=status)
                    if attempt < self.config.max_retries - 1:
                        retry_after = self._retry_after_seconds(response, attempt)
                        logger.warning(f"⚠️ [Registry] Rate limited on {endpoint}, waiting {retry_after}s")
                        self.metrics.record_api_retry(endpoint, "rate_limit")
                        self._sleep(retry_after)
                    continue

                if status in self.RETRYABLE_STATUS_CODES or status >= 500:
                    last_error = TransientRegistryError(message, status_code=status)
                    reason = f"http_{status}"
                    logger.warning(
                        f"⚠️ [Registry] {endpoint} server error {status} "
                        f"(attempt {attempt + 1}/{self.config.max_retries})"
                    )
                else:
                    logger.warning(f"❌ [Registry] {endpoint} rejected ({status}): {message}")
                    raise RequestRejectedError(message, status_code=status)

            # Wait before retry (exponential backoff)
            if attempt < self.config.max_retries - 1:
                self.metrics.record_api_retry(endpoint, reason)
                self._sleep(self.config.retry_delay * (2**attempt))

        logger.error(f"🔥 [Registry] {endpoint} failed after {self.config.max_retries} attempts: {last_error}")
        if last_error is None:
            raise TransientRegistryError(f"{endpoint} failed after {self.config.max_retries} attempts")
        raise last_error
