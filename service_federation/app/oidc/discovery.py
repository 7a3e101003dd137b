"""
Provider discovery document client.
"""

import asyncio
import time
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from shared.circuit_breaker import get_circuit_breaker
from shared.errors import NotConfigured, RemoteUnavailable
from shared.logging import get_logger


class ProviderMetadata(BaseModel):
    """The parts of the discovery document the engine relies on."""

    model_config = ConfigDict(extra="ignore")

    issuer: Optional[str] = None
    token_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    userinfo_endpoint: Optional[str] = None


class ProviderDiscovery:
    """Fetches and caches the provider's discovery document."""

    def __init__(self, well_known_url: Optional[str], http_client: httpx.AsyncClient,
                 ttl_seconds: float = 3600, timeout_seconds: float = 10.0,
                 clock: Callable[[], float] = time.time):
        self.well_known_url = well_known_url
        self.http_client = http_client
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self.logger = get_logger("federation.oidc.discovery")
        self.circuit_breaker = get_circuit_breaker("provider-discovery", failure_threshold=5)

        self._metadata: Optional[ProviderMetadata] = None
        self._fetched_at: float = 0.0
        self._lock = asyncio.Lock()

    async def get_metadata(self) -> ProviderMetadata:
        """Return provider metadata, refetching after the TTL.

        A failed refetch keeps serving the previous document.
        """
        if not self.well_known_url:
            raise NotConfigured("OIDC discovery URL is not configured")

        if self._is_fresh():
            return self._metadata

        async with self._lock:
            if self._is_fresh():
                return self._metadata
            try:
                metadata = await self.circuit_breaker.call(self._fetch)
            except RemoteUnavailable as e:
                if self._metadata is not None:
                    self.logger.warning("Using stale discovery document", error=e.message)
                    return self._metadata
                raise

            self._metadata = metadata
            self._fetched_at = self._clock()
            return metadata

    def _is_fresh(self) -> bool:
        return (self._metadata is not None
                and self._clock() - self._fetched_at < self.ttl_seconds)

    async def _fetch(self) -> ProviderMetadata:
        try:
            response = await self.http_client.get(self.well_known_url, timeout=self.timeout_seconds)
            response.raise_for_status()
            return ProviderMetadata.model_validate(response.json())
        except httpx.HTTPStatusError as e:
            raise RemoteUnavailable("Discovery document request failed",
                                    status_code=e.response.status_code) from e
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            self.logger.error("Failed to fetch discovery document", error=str(e))
            raise RemoteUnavailable("Discovery document unavailable",
                                    details={"error": str(e)}) from e

    async def require(self, endpoint: str) -> str:
        """Return one endpoint URL from the metadata or raise NotConfigured."""
        metadata = await self.get_metadata()
        value = getattr(metadata, endpoint, None)
        if not value:
            raise NotConfigured(f"Provider discovery document has no {endpoint}")
        return value

    def clear(self) -> None:
        self._metadata = None
        self._fetched_at = 0.0
