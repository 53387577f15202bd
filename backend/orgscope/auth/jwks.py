"""
JWKS cache for the identity provider's signing keys.

- Keys are cached for a short TTL (JWKS_CACHE_TTL_SECONDS, default 300)
- An unknown kid forces one refresh (key rotation)
- If a refresh fails and keys were fetched before, the stale keys are used
  and a warning is logged
- If keys were never fetched, ProviderUnavailable is raised; the caller
  must never treat that as authenticated
"""

import logging
import time
from threading import Lock
from typing import Callable, Optional

import httpx
from jwt import PyJWK, PyJWKSet
from jwt.exceptions import PyJWKSetError

from orgscope.auth.errors import ProviderUnavailable, Unauthenticated

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300
DEFAULT_TIMEOUT_SECONDS = 5.0


class JWKSCache:
    """Thread-safe TTL cache around a remote JWKS document."""

    def __init__(
        self,
        jwks_url: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_url = jwks_url
        self.ttl_seconds = ttl_seconds
        self._client = http_client or httpx.Client(timeout=httpx.Timeout(timeout, connect=timeout))
        self._clock = clock
        self._lock = Lock()
        self._key_set: Optional[PyJWKSet] = None
        self._fetched_at: float = 0.0

    @property
    def has_keys(self) -> bool:
        return self._key_set is not None

    def _is_fresh(self) -> bool:
        return self._key_set is not None and self._clock() - self._fetched_at < self.ttl_seconds

    def _fetch(self) -> PyJWKSet:
        response = self._client.get(self.jwks_url)
        response.raise_for_status()
        return PyJWKSet.from_dict(response.json())

    def _refresh_locked(self) -> PyJWKSet:
        try:
            key_set = self._fetch()
        except (httpx.HTTPError, ValueError, PyJWKSetError) as e:
            if self._key_set is not None:
                logger.warning(
                    "JWKS refresh failed, using stale keys",
                    extra={"jwks_url": self.jwks_url, "error": f"{type(e).__name__}: {e}"},
                )
                return self._key_set
            logger.error(
                "JWKS fetch failed with no cached keys",
                extra={"jwks_url": self.jwks_url, "error": f"{type(e).__name__}: {e}"},
            )
            raise ProviderUnavailable(f"Unable to fetch signing keys: {e}")

        self._key_set = key_set
        self._fetched_at = self._clock()
        logger.debug("Refreshed JWKS", extra={"jwks_url": self.jwks_url, "keys": len(key_set.keys)})
        return key_set

    def get_key_set(self, force_refresh: bool = False) -> PyJWKSet:
        with self._lock:
            if force_refresh or not self._is_fresh():
                return self._refresh_locked()
            return self._key_set

    def get_signing_key(self, kid: Optional[str]) -> PyJWK:
        """
        Signing key for a token's kid.

        Raises:
            Unauthenticated: kid unknown even after a refresh
            ProviderUnavailable: keys could never be fetched
        """
        key = self._find(self.get_key_set(), kid)
        if key is None:
            # Possibly a rotated key; refresh once before giving up
            key = self._find(self.get_key_set(force_refresh=True), kid)
        if key is None:
            raise Unauthenticated("Signing key not found", error_code="unknown_signing_key")
        return key

    @staticmethod
    def _find(key_set: PyJWKSet, kid: Optional[str]) -> Optional[PyJWK]:
        keys = list(key_set.keys)
        if kid is None:
            return keys[0] if len(keys) == 1 else None
        for key in keys:
            if key.key_id == kid:
                return key
        return None

    def clear(self) -> None:
        with self._lock:
            self._key_set = None
            self._fetched_at = 0.0
