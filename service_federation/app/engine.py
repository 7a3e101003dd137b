"""
Federation engine: the entry points the HTTP layer calls.
"""

import base64
from dataclasses import asdict
from typing import Any, Dict, Mapping, Optional, Union

import httpx
from pydantic import BaseModel, Field

from shared.config import FederationConfig
from shared.errors import FederationException, NotConfigured, Unauthorized, ValidationFailed
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from .jwks.client import KeySetCache
from .oidc.discovery import ProviderDiscovery
from .oidc.userinfo import UserInfoClient
from .persistence.models import LocalUser, NewFederatedUser, OrganisationSettings, ProviderCredential
from .remote.client import RemoteResourceClient
from .suggestions.aggregator import RecipientSuggestionAggregator, SuggestionPage
from .sync.schema import SettingsPatch
from .sync.synchronizer import SettingsSynchronizer
from .tokens.manager import TokenLifecycleManager
from .validation.token_validator import JWTVerifier


DEFAULT_ORGANISATION_NAME = "Organisation"


class RemoteBranding(BaseModel):
    logo_url: Optional[str] = Field(default=None, serialization_alias="logoUrl")
    logo_base64: Optional[str] = Field(default=None, serialization_alias="logoBase64")
    logo_content_type: Optional[str] = Field(default=None, serialization_alias="logoContentType")
    organization_name: Optional[str] = Field(default=None, serialization_alias="organizationName")


def _strip_bearer(token: str) -> str:
    token = (token or "").strip()
    if token.startswith("Bearer "):
        token = token[7:].strip()
    return token


def _publishable(settings: OrganisationSettings) -> Dict[str, Any]:
    values = asdict(settings)
    values.pop("organisation_id")
    values.pop("branding_logo_derived")
    return values


class FederationEngine:
    """Session bootstrap, token access, settings sync and recipient search.

    Bootstrap rejects unverifiable identities with ``Unauthorized``. Every
    other entry point degrades to a soft result when the provider misbehaves.
    """

    def __init__(self, *, store, verifier: JWTVerifier, userinfo_client: UserInfoClient,
                 token_manager: TokenLifecycleManager, remote_client: RemoteResourceClient,
                 synchronizer: SettingsSynchronizer, aggregator: RecipientSuggestionAggregator,
                 provider: str = "oidc", configured: bool = True):
        self.store = store
        self.verifier = verifier
        self.userinfo_client = userinfo_client
        self.token_manager = token_manager
        self.remote_client = remote_client
        self.synchronizer = synchronizer
        self.aggregator = aggregator
        self.provider = provider
        self.configured = configured
        self.logger = get_logger("federation.engine")

    # Session bootstrap

    async def bootstrap_session_from_bearer_token(self, token: str) -> Dict[str, int]:
        """Verify an inbound JWT and resolve it to a local user, provisioning one if needed."""
        self._require_configured()
        claims = await self.verifier.verify(token)
        if claims is None:
            raise Unauthorized("Invalid or expired token")

        user = await self._find_or_provision(
            email=claims.email,
            name=claims.name or claims.preferred_username or claims.email.split("@")[0],
            subject=claims.sub or claims.email,
            access_token=_strip_bearer(token),
            expires_at=int(claims.exp or 0),
        )
        await self._pull_quietly(user.id)
        return {"userId": user.id}

    async def bootstrap_session_from_access_token(self, access_token: str) -> Dict[str, int]:
        """Resolve an opaque provider access token through the userinfo endpoint."""
        self._require_configured()
        access_token = _strip_bearer(access_token)
        if not access_token:
            raise Unauthorized("Empty access token")

        info = await self.userinfo_client.get_user_info(access_token)
        user = await self._find_or_provision(
            email=info.email,
            name=info.display_name,
            subject=info.sub,
            access_token=access_token,
            expires_at=0,
        )
        await self._pull_quietly(user.id)
        return {"userId": user.id}

    async def _find_or_provision(self, *, email: str, name: str, subject: str,
                                 access_token: str, expires_at: int) -> LocalUser:
        email = email.strip().lower()
        user = await self.store.find_user_by_email(email)

        if user is None:
            organisation_name = await self._remote_organisation_name(access_token)
            user = await self.store.create_federated_user(NewFederatedUser(
                email=email,
                name=name,
                provider=self.provider,
                provider_account_id=subject,
                access_token=access_token,
                expires_at=expires_at,
                organisation_name=organisation_name,
            ))
            self.logger.info("Provisioned federated user", user_id=user.id,
                             organisation_name=organisation_name)
            return user

        linked = await self.store.link_credential(ProviderCredential(
            user_id=user.id,
            provider=self.provider,
            access_token=access_token,
            expires_at=expires_at,
            provider_account_id=subject,
        ))
        self.logger.info("Federated login for existing user", user_id=user.id, newly_linked=linked)
        return user

    async def _remote_organisation_name(self, access_token: str) -> str:
        try:
            profile = await self.remote_client.get_current_user(access_token)
        except FederationException as e:
            self.logger.warning("Could not read remote organisation", code=e.code, error=e.message)
            return DEFAULT_ORGANISATION_NAME
        if profile is None or not profile.organization.name:
            return DEFAULT_ORGANISATION_NAME
        return profile.organization.name

    async def _pull_quietly(self, user_id: int) -> None:
        try:
            await self.synchronizer.pull(user_id)
        except Exception as e:
            self.logger.error("Settings pull after login failed", user_id=user_id, error=str(e))

    def _require_configured(self) -> None:
        if not self.configured:
            raise NotConfigured()

    # Tokens and settings

    async def get_valid_access_token(self, user_id: int) -> Optional[str]:
        return await self.token_manager.get_valid_access_token(user_id)

    async def pull_remote_settings(self, user_id: int) -> bool:
        set_user_context(user_id=user_id)
        return await self.synchronizer.pull(user_id)

    async def push_local_settings(self, user_id: int,
                                  settings_patch: Union[SettingsPatch, Mapping[str, Any]]) -> bool:
        """Publish the stored settings with ``settings_patch`` laid over them.

        The provider replaces the whole record, so the full settings are sent
        even for a one-field patch.
        """
        set_user_context(user_id=user_id)
        if isinstance(settings_patch, SettingsPatch):
            settings_patch = settings_patch.changes()

        current = await self.store.get_organisation_settings_for_user(user_id)
        if current is None:
            self.logger.warning("User has no organisation, nothing to push", user_id=user_id)
            return False

        values = _publishable(current)
        values.update(settings_patch)
        return await self.synchronizer.push(user_id, values)

    async def apply_local_settings_and_push(self, user_id: int, patch: SettingsPatch) -> bool:
        """Store an administrator edit locally, then publish the resulting settings."""
        set_user_context(user_id=user_id)
        changes = patch.changes()
        if "branding_logo" in changes:
            # An explicit logo is never replaced by a later pull.
            changes["branding_logo_derived"] = False

        updated = await self.store.apply_settings_patch(user_id, changes)
        if updated is None:
            raise ValidationFailed("User has no organisation", details={"user_id": user_id})

        return await self.synchronizer.push(user_id, _publishable(updated))

    # Recipients and branding

    async def search_recipients(self, user_id: int, team_id: Optional[int], query: str,
                                take: int = 10, skip: int = 0) -> SuggestionPage:
        return await self.aggregator.suggest(user_id, team_id, query, take=take, skip=skip)

    async def get_remote_branding(self, user_id: int) -> RemoteBranding:
        """Organisation logo and name as the provider knows them; failures give empty fields."""
        branding = RemoteBranding()
        access_token = await self.token_manager.get_valid_access_token(user_id)
        if not access_token:
            return branding

        try:
            profile = await self.remote_client.get_current_user(access_token)
        except FederationException as e:
            self.logger.warning("Remote branding unavailable", user_id=user_id, code=e.code)
            return branding
        if profile is None:
            return branding

        branding.organization_name = profile.organization.name
        branding.logo_url = profile.organization.logo_url
        if branding.logo_url:
            try:
                content, content_type = await self.remote_client.download_attachment(branding.logo_url)
            except FederationException as e:
                self.logger.warning("Organisation logo download failed", user_id=user_id,
                                    url=branding.logo_url, error=e.message)
            else:
                branding.logo_base64 = base64.b64encode(content).decode("ascii")
                branding.logo_content_type = content_type
        return branding


def build_engine(config: FederationConfig, store, http_client: httpx.AsyncClient,
                 metrics: Optional[MetricsCollector] = None) -> FederationEngine:
    """Wire the engine's components from configuration."""
    discovery = ProviderDiscovery(config.oidc_well_known_url, http_client,
                                  ttl_seconds=config.key_set_ttl_seconds,
                                  timeout_seconds=config.discovery_timeout_seconds)
    key_set_cache = KeySetCache(discovery, http_client, ttl_seconds=config.key_set_ttl_seconds,
                                metrics=metrics)
    token_manager = TokenLifecycleManager(
        store,
        discovery,
        http_client,
        provider=config.oidc_provider_id,
        client_id=config.oidc_client_id,
        client_secret=config.oidc_client_secret,
        scopes=config.scopes,
        buffer_seconds=config.token_refresh_buffer_seconds,
        metrics=metrics,
    )
    remote_client = RemoteResourceClient(config.provider_api_url, http_client,
                                         config_identifier=config.config_identifier,
                                         metrics=metrics)

    return FederationEngine(
        store=store,
        verifier=JWTVerifier(key_set_cache, metrics=metrics),
        userinfo_client=UserInfoClient(discovery, http_client),
        token_manager=token_manager,
        remote_client=remote_client,
        synchronizer=SettingsSynchronizer(token_manager, remote_client, store, metrics=metrics),
        aggregator=RecipientSuggestionAggregator(store, token_manager, remote_client, metrics=metrics),
        provider=config.oidc_provider_id,
        configured=config.is_configured,
    )
