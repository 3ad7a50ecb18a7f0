"""
JWKS fetching and caching.

The JWKS endpoint provides the public keys used to verify ID token
signatures. Keys are cached by key id for JWKS_CACHE_SECONDS and refreshed
on expiry or when a token names an unknown key id (key rotation).

Refreshes are single-flight: concurrent misses wait on one lock and only the
first performs the network fetch. The key map is replaced in one assignment,
so readers never see a partially updated key set.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx

from authgate.errors import ProviderUnavailable

logger = logging.getLogger(__name__)


class JWKSCache:
    """Process-wide cache of identity provider signing keys."""

    def __init__(
        self,
        jwks_url: str,
        http_client: httpx.AsyncClient,
        cache_seconds: int = 3600,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._jwks_url = jwks_url
        self._http = http_client
        self._cache_seconds = cache_seconds
        self._timeout_seconds = timeout_seconds
        self._clock = clock

        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at: Optional[float] = None
        self._generation = 0
        self._lock = asyncio.Lock()

    @property
    def generation(self) -> int:
        """Number of completed refreshes."""
        return self._generation

    def _is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return (self._clock() - self._fetched_at) >= self._cache_seconds

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """
        Return the JWK for `kid`, refreshing at most once.

        Args:
            kid: Key id from the token header

        Returns:
            Matching JWK dict, or None if the provider does not publish it

        Raises:
            ProviderUnavailable: If a needed refresh fails and `kid` is not
                in the previously fetched key set
        """
        cached_key = self._keys.get(kid)
        if cached_key is not None and not self._is_stale():
            return cached_key

        try:
            await self.refresh(seen_generation=self._generation)
        except ProviderUnavailable:
            if cached_key is None:
                raise
            logger.warning("JWKS refresh failed; using previously fetched key", extra={"kid": kid})
            return cached_key
        return self._keys.get(kid)

    async def refresh(self, seen_generation: Optional[int] = None) -> None:
        """
        Fetch the key set and swap it in.

        Args:
            seen_generation: Generation the caller observed before deciding to
                refresh. If another refresh completed since, this one is
                skipped.
        """
        async with self._lock:
            if seen_generation is not None and self._generation != seen_generation:
                logger.debug("JWKS refreshed by a concurrent request; skipping fetch")
                return

            keys = await self._fetch()
            self._keys = keys
            self._fetched_at = self._clock()
            self._generation += 1

            logger.info(
                "JWKS refreshed",
                extra={"key_count": len(keys), "generation": self._generation},
            )

    async def _fetch(self) -> Dict[str, Dict[str, Any]]:
        try:
            response = await self._http.get(self._jwks_url, timeout=self._timeout_seconds)
            response.raise_for_status()
            jwks_data = response.json()
        except httpx.TimeoutException as e:
            logger.error(f"JWKS fetch timed out: {self._jwks_url}")
            raise ProviderUnavailable("Timed out fetching signing keys") from e
        except httpx.HTTPError as e:
            logger.error(f"JWKS fetch failed: {e}")
            raise ProviderUnavailable("Unable to fetch signing keys") from e
        except ValueError as e:
            logger.error("JWKS response is not valid JSON")
            raise ProviderUnavailable("Invalid JWKS response") from e

        if not isinstance(jwks_data, dict) or not isinstance(jwks_data.get("keys"), list):
            logger.error("JWKS response is missing the 'keys' field")
            raise ProviderUnavailable("Invalid JWKS response: missing 'keys' field")

        keys: Dict[str, Dict[str, Any]] = {}
        for key in jwks_data["keys"]:
            if isinstance(key, dict) and key.get("kid"):
                keys[key["kid"]] = key
        return keys
