"""
Shared configuration management for the Identity Federation service.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FederationConfig(BaseSettings):
    """Configuration for the federation engine and its HTTP boundary."""

    model_config = SettingsConfigDict(
        env_prefix="FEDERATION_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    service_name: str = "federation"
    host: str = "0.0.0.0"
    port: int = 8020

    # Relational store
    postgres_dsn: str = "postgres://localhost:5432/federation"

    # Identity provider (OpenID Connect)
    oidc_well_known_url: Optional[str] = None
    oidc_client_id: Optional[str] = None
    oidc_client_secret: Optional[str] = None
    oidc_provider_id: str = "oidc"
    oidc_scopes: str = "openid email profile offline_access"
    discovery_timeout_seconds: float = 10.0

    # Provider resource API
    provider_api_url: str = "http://localhost:5000/api/v1"
    provider_timeout_seconds: float = 30.0
    config_identifier: str = "settings-bundle"

    # Token and key handling
    key_set_ttl_seconds: int = Field(default=3600, ge=1)
    token_refresh_buffer_seconds: int = Field(default=300, ge=0)

    # Observability
    enable_metrics: bool = True

    @property
    def is_configured(self) -> bool:
        """Whether enough of the provider is configured to federate."""
        return bool(self.oidc_well_known_url and self.oidc_client_id)

    @property
    def scopes(self) -> list:
        return self.oidc_scopes.split()


def get_config(**overrides) -> FederationConfig:
    """Build the service configuration from the environment."""
    return FederationConfig(**overrides)
