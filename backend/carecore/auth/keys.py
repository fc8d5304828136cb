"""
Signing key resolution against the identity provider's published JWKS.

Keys are cached by key id for a fixed TTL. A miss (or a stale entry) triggers
one refresh of the whole key set; concurrent misses for the same key id share
that refresh. All refreshes go through a global per-minute limit so crafted
key ids cannot be used to hammer the provider.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import httpx

from ..core.errors import KeyResolutionError
from ..core.singleflight import SingleFlight

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedKey:
    jwk: dict
    fetched_at: float


class RefreshRateLimiter:
    """Sliding one-minute window shared by all key ids."""

    def __init__(self, per_minute: int, clock: Callable[[], float] = time.monotonic):
        self.per_minute = per_minute
        self._clock = clock
        self._events: deque[float] = deque()

    def try_acquire(self) -> bool:
        now = self._clock()
        while self._events and now - self._events[0] >= 60:
            self._events.popleft()
        if len(self._events) >= self.per_minute:
            return False
        self._events.append(now)
        return True


class KeyResolver:
    def __init__(
        self,
        jwks_uri: str,
        http_client: httpx.AsyncClient,
        cache_ttl: float = 86400,
        requests_per_minute: int = 5,
        timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.jwks_uri = jwks_uri
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._http = http_client
        self._clock = clock
        self._cache: dict[str, CachedKey] = {}
        self._limiter = RefreshRateLimiter(requests_per_minute, clock)
        self._inflight = SingleFlight()

    async def get_signing_key(self, kid: str) -> dict:
        """
        Returns the JWK for ``kid``.
        Raises KeyResolutionError when the key is unknown, the refresh is rate
        limited, or the key set cannot be fetched.
        """
        if not kid:
            raise KeyResolutionError("Token header has no key id")

        cached = self._cache.get(kid)
        if cached and not self._is_stale(cached):
            return cached.jwk

        return await self._inflight.do(kid, lambda: self._refresh_for(kid))

    def _is_stale(self, entry: CachedKey) -> bool:
        return self._clock() - entry.fetched_at >= self.cache_ttl

    async def _refresh_for(self, kid: str) -> dict:
        # Another flight may have refreshed the set while this one was queued
        cached = self._cache.get(kid)
        if cached and not self._is_stale(cached):
            return cached.jwk

        if not self._limiter.try_acquire():
            logger.warning("JWKS refresh rate limit exceeded", extra={"kid": kid})
            raise KeyResolutionError("JWKS refresh rate limit exceeded")

        keys = await self._fetch_key_set()
        fetched_at = self._clock()
        # Replace the whole cache so keys rotated out by the provider stop validating
        self._cache = {
            key["kid"]: CachedKey(jwk=key, fetched_at=fetched_at)
            for key in keys
            if isinstance(key, dict) and key.get("kid")
        }

        entry = self._cache.get(kid)
        if entry is None:
            logger.warning("Signing key not found in JWKS", extra={"kid": kid})
            raise KeyResolutionError(f"Signing key {kid} not found")
        return entry.jwk

    async def _fetch_key_set(self) -> list:
        try:
            response = await self._http.get(self.jwks_uri, timeout=self.timeout)
            response.raise_for_status()
            keys = response.json().get("keys")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.error(
                "Failed to get signing keys from JWKS",
                extra={"jwks_uri": self.jwks_uri, "error": str(exc)},
            )
            raise KeyResolutionError("Failed to fetch JWKS") from exc

        if not isinstance(keys, list):
            logger.error("JWKS response has no key list", extra={"jwks_uri": self.jwks_uri})
            raise KeyResolutionError("Malformed JWKS response")

        logger.debug("Fetched JWKS", extra={"jwks_uri": self.jwks_uri, "key_count": len(keys)})
        return keys

    def cached_key_ids(self) -> list[str]:
        return sorted(self._cache)
