"""
Process-wide cache of the provider's verification keys.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from shared.circuit_breaker import get_circuit_breaker
from shared.errors import RemoteUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..oidc.discovery import ProviderDiscovery


@dataclass(frozen=True)
class KeySet:
    """An immutable snapshot of the provider's signing keys."""
    keys: Tuple[Dict[str, Any], ...]
    fetched_at_ms: int

    def find(self, kid: str) -> Optional[Dict[str, Any]]:
        for key in self.keys:
            if key.get("kid") == kid:
                return key
        return None

    def __len__(self) -> int:
        return len(self.keys)


class KeySetCache:
    """Fetches the provider's JWKS via discovery and caches it for ``ttl_seconds``.

    Readers never wait on a refresh when a previous key set exists: while one
    refresh is in flight, concurrent callers get the cached snapshot.
    """

    def __init__(
        self,
        discovery: ProviderDiscovery,
        http_client: httpx.AsyncClient,
        ttl_seconds: int = 3600,
        *,
        min_forced_refresh_interval: float = 30.0,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.discovery = discovery
        self.http_client = http_client
        self.ttl_seconds = ttl_seconds
        self.min_forced_refresh_interval = min_forced_refresh_interval
        self._clock = clock
        self.metrics = metrics
        self.logger = get_logger("federation.jwks")
        self.circuit_breaker = get_circuit_breaker("provider-jwks", failure_threshold=5)

        self._key_set: Optional[KeySet] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[KeySet]:
        return self._key_set

    def _age_seconds(self) -> float:
        if self._key_set is None:
            return float("inf")
        return self._clock() - self._key_set.fetched_at_ms / 1000.0

    async def get_verification_keys(self) -> KeySet:
        """Return the current key set, refreshing it once the TTL has passed.

        Raises ``RemoteUnavailable`` only when nothing has ever been cached.
        """
        if self._age_seconds() < self.ttl_seconds:
            return self._key_set

        if self._refresh_lock.locked() and self._key_set is not None:
            return self._key_set

        return await self._refresh(force=False)

    async def force_refresh(self) -> KeySet:
        """Refetch the key set regardless of its age."""
        return await self._refresh(force=True)

    async def get_key(self, kid: str) -> Optional[Dict[str, Any]]:
        """Find a key by id, refreshing once if it is unknown (key rotation)."""
        key_set = await self.get_verification_keys()
        key = key_set.find(kid)
        if key is not None:
            return key

        if self._age_seconds() < self.min_forced_refresh_interval:
            self.logger.warning("Key not found", kid=kid)
            return None

        key_set = await self.force_refresh()
        key = key_set.find(kid)
        if key is None:
            self.logger.warning("Key not found after refresh", kid=kid)
        return key

    async def _refresh(self, *, force: bool) -> KeySet:
        async with self._refresh_lock:
            # Another caller may have refreshed while we waited for the lock.
            if not force and self._age_seconds() < self.ttl_seconds:
                return self._key_set

            try:
                key_set = await self.circuit_breaker.call(self._fetch)
            except RemoteUnavailable as e:
                self._count("error")
                if self._key_set is not None:
                    self.logger.warning("Using stale key set due to fetch failure", error=e.message)
                    return self._key_set
                self.logger.error("Verification keys unavailable", error=e.message)
                raise

            self._key_set = key_set
            self._count("ok")
            self.logger.info("Key set refreshed", keys_count=len(key_set))
            return key_set

    async def _fetch(self) -> KeySet:
        jwks_uri = await self.discovery.require("jwks_uri")
        try:
            response = await self.http_client.get(jwks_uri)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise RemoteUnavailable("Key set request failed",
                                    status_code=e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            raise RemoteUnavailable("Key set unavailable", details={"error": str(e)}) from e

        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise RemoteUnavailable("Key set response missing 'keys' array")

        return KeySet(
            keys=tuple(key for key in keys if isinstance(key, dict)),
            fetched_at_ms=int(self._clock() * 1000),
        )

    def _count(self, status: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("key_set_fetch_total", status=status)

    def clear_cache(self) -> None:
        self._key_set = None
        self.logger.info("Key set cache cleared")
