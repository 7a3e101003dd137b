"""
Token lifecycle manager for provider access tokens.
"""

import time
from typing import Callable, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from shared.errors import (
    FederationException,
    NoLinkedAccount,
    NotConfigured,
    RemoteUnavailable,
    Unauthorized,
    ValidationFailed,
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..oidc.discovery import ProviderDiscovery
from ..persistence.models import ProviderCredential


DEFAULT_REFRESH_BUFFER_SECONDS = 300


class TokenGrant(BaseModel):
    """Token endpoint response to a refresh-token grant."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"


class TokenLifecycleManager:
    """Hands out a usable provider access token per user.

    The stored token is returned as-is unless it is within the refresh buffer
    of its expiry. A failed refresh never touches the stored credential and
    falls back to the stale token; downstream callers treat a rejection of
    that token like having no token at all.
    """

    def __init__(
        self,
        store,
        discovery: ProviderDiscovery,
        http_client: httpx.AsyncClient,
        *,
        provider: str = "oidc",
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        scopes: Sequence[str] = ("openid", "email", "profile", "offline_access"),
        buffer_seconds: int = DEFAULT_REFRESH_BUFFER_SECONDS,
        clock: Callable[[], float] = time.time,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.discovery = discovery
        self.http_client = http_client
        self.provider = provider
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = tuple(scopes)
        self.buffer_seconds = buffer_seconds
        self._clock = clock
        self.metrics = metrics
        self.logger = get_logger("federation.tokens")

    def is_near_expiry(self, credential: ProviderCredential, now: int) -> bool:
        """An unknown expiry (0) is never considered near."""
        return credential.expires_at > 0 and credential.expires_at - self.buffer_seconds <= now

    async def get_valid_access_token(self, user_id: int) -> Optional[str]:
        credential = await self.store.get_credential(user_id, self.provider)
        if credential is None or not credential.access_token:
            self.logger.info("No provider credential for user", user_id=user_id)
            return None

        now = int(self._clock())
        if not self.is_near_expiry(credential, now):
            return credential.access_token

        if not credential.refresh_token:
            self.logger.warning("Access token near expiry and no refresh token, returning stale token",
                                user_id=user_id, expires_at=credential.expires_at)
            self._count("no_refresh_token")
            return credential.access_token

        refreshed = await self.refresh(credential)
        if refreshed:
            return refreshed

        self.logger.warning("Token refresh failed, returning potentially expired token",
                            user_id=user_id, expires_at=credential.expires_at)
        return credential.access_token

    async def require_access_token(self, user_id: int) -> str:
        """Like ``get_valid_access_token`` but raises ``NoLinkedAccount``."""
        token = await self.get_valid_access_token(user_id)
        if not token:
            raise NoLinkedAccount(details={"user_id": user_id})
        return token

    async def refresh(self, credential: ProviderCredential) -> Optional[str]:
        """Run a refresh-token grant and persist the result.

        Returns the new access token, or ``None`` when the grant failed.
        """
        try:
            grant = await self._request_grant(credential.refresh_token)
        except FederationException as e:
            self.logger.error("Failed to refresh access token", user_id=credential.user_id,
                              code=e.code, error=e.message)
            self._count("failed")
            return None

        # Computed after the grant so the new expiry counts from when it was issued.
        expires_at = int(self._clock()) + grant.expires_in
        try:
            stored = await self.store.save_refreshed_credential(
                credential.user_id,
                self.provider,
                access_token=grant.access_token,
                expires_at=expires_at,
                refresh_token=grant.refresh_token,
            )
        except Exception as e:
            self.logger.error("Failed to persist refreshed token", user_id=credential.user_id,
                              error=str(e))
            self._count("persist_failed")
            return grant.access_token

        if not stored:
            self.logger.info("Newer credential already stored, keeping it",
                             user_id=credential.user_id)
        self.logger.info("Successfully refreshed access token", user_id=credential.user_id,
                         expires_at=expires_at, rotated=grant.refresh_token is not None)
        self._count("refreshed")
        return grant.access_token

    async def _request_grant(self, refresh_token: str) -> TokenGrant:
        if not self.client_id or not self.client_secret:
            raise NotConfigured("Missing OIDC client credentials for token refresh")

        token_endpoint = await self.discovery.require("token_endpoint")
        try:
            response = await self.http_client.post(
                token_endpoint,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "scope": " ".join(self.scopes),
                },
                auth=(self.client_id, self.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise RemoteUnavailable("Token endpoint unavailable", details={"error": str(e)}) from e

        if response.status_code >= 500:
            raise RemoteUnavailable("Token endpoint failed", status_code=response.status_code)
        if not response.is_success:
            raise Unauthorized("Refresh token rejected", details={"status_code": response.status_code})

        try:
            grant = TokenGrant.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise ValidationFailed("Malformed token endpoint response") from e
        if not grant.expires_in or grant.expires_in <= 0:
            raise ValidationFailed("Token endpoint response has no expiry")
        return grant

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("token_refresh_total", outcome=outcome)
