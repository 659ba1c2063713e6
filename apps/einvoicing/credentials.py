"""
Registry credential provider.

Hands out bearer credentials per merchant from a bounded TTL cache.
Expiry is checked when an entry is read; nothing runs in the background.
One provider may be shared by worker threads; the cache is lock-guarded.
Acquiring and refreshing tokens belongs to an external collaborator,
represented here by the ``fetcher`` callable.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from .settings import registry_settings

logger = logging.getLogger(__name__)

CredentialFetcher = Callable[[int], "str | None"]


class CredentialUnavailableError(Exception):
    """No usable credential exists for the merchant."""

    def __init__(self, merchant_id: int, reason: str = "no credential available"):
        super().__init__(f"Credential unavailable for merchant {merchant_id}: {reason}")
        self.merchant_id = merchant_id
        self.reason = reason


@dataclass
class _CacheEntry:
    credential: str
    expires_at: float


def fetch_stored_access_token(merchant_id: int) -> str | None:
    """Default fetcher: the active merchant's stored access token."""
    from .models import Merchant  # noqa: PLC0415

    merchant = Merchant.objects.filter(pk=merchant_id).only("access_token", "is_active").first()
    if merchant is None or not merchant.is_active:
        return None
    return merchant.access_token or None


class CredentialProvider:
    """
    TTL cache of merchant credentials in front of a fetcher.

    Usage:
        provider = CredentialProvider(fetch_stored_access_token, ttl_seconds=300)
        token = provider.get_credential(merchant.id)
    """

    def __init__(
        self,
        fetcher: CredentialFetcher = fetch_stored_access_token,
        ttl_seconds: int | None = None,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._ttl = ttl_seconds if ttl_seconds is not None else registry_settings.credential_ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._cache: OrderedDict[int, _CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    def get_credential(self, merchant_id: int) -> str:
        """
        Return a credential for ``merchant_id``.

        Raises:
            CredentialUnavailableError: If the fetcher has none
        """
        now = self._clock()
        with self._lock:
            entry = self._cache.get(merchant_id)
            if entry is not None:
                if entry.expires_at > now:
                    self._cache.move_to_end(merchant_id)
                    return entry.credential
                self._cache.pop(merchant_id, None)

        # Fetched outside the lock; two threads may both fetch, the last one is kept
        credential = self._fetcher(merchant_id)
        if not credential:
            logger.warning(f"⚠️ [Credentials] No credential for merchant {merchant_id}")
            raise CredentialUnavailableError(merchant_id)

        with self._lock:
            self._cache[merchant_id] = _CacheEntry(credential=credential, expires_at=now + self._ttl)
            self._cache.move_to_end(merchant_id)
            while len(self._cache) > self._max_entries:
                self._cache.popitem(last=False)
        return credential

    def invalidate(self, merchant_id: int) -> None:
        """Drop a cached credential, e.g. after the registry refused it."""
        with self._lock:
            self._cache.pop(merchant_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
