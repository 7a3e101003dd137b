"""
Federation service: HTTP boundary for the identity federation engine.
"""

from typing import Any, Dict, Optional

import httpx
from fastapi import Query
from pydantic import BaseModel, ConfigDict, Field

from shared.base_service import BaseService
from shared.config import FederationConfig
from .engine import FederationEngine, build_engine
from .persistence.postgres import PostgresFederationStore
from .sync.schema import SettingsPatch


SYNC_WARNING = "Settings could not be synchronized with the identity provider"


class SsoTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    redirect_path: Optional[str] = Field(default=None, alias="redirectPath")


class SsoUserInfoRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    redirect_path: Optional[str] = Field(default=None, alias="redirectPath")


def safe_redirect_path(path: Optional[str]) -> str:
    """Only same-site absolute paths are honoured."""
    if not path or not path.startswith("/") or path.startswith("//") or "\\" in path:
        return "/"
    return path


def sync_result(success: bool) -> Dict[str, Any]:
    if success:
        return {"success": True}
    return {"success": False, "warning": SYNC_WARNING}


class FederationService(BaseService):
    """Federation service implementation."""

    def __init__(self, config: Optional[FederationConfig] = None):
        super().__init__(config)
        self.http_client: Optional[httpx.AsyncClient] = None
        self.store: Optional[PostgresFederationStore] = None
        self.engine: Optional[FederationEngine] = None

        self._setup_federation_routes()

    async def startup(self) -> None:
        if not self.config.is_configured:
            self.logger.warning("Identity provider not configured, federation is disabled")

        self.http_client = httpx.AsyncClient(timeout=self.config.provider_timeout_seconds)
        self.store = PostgresFederationStore(self.config.postgres_dsn)
        await self.store.start()
        self.engine = build_engine(self.config, self.store, self.http_client, metrics=self.metrics)
        self.logger.info("Federation service started", provider=self.config.oidc_provider_id)

    async def shutdown(self) -> None:
        if self.store:
            await self.store.stop()
        if self.http_client:
            await self.http_client.aclose()
        self.logger.info("Federation service stopped")

    def _setup_federation_routes(self):
        """Set up federation routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": self.service_name,
                "message": "Identity Federation Service",
                "version": "1.0.0",
            }

        @self.app.post("/sso/token")
        async def sso_token(request: SsoTokenRequest):
            """Start a session from a provider-issued JWT."""
            session = await self.engine.bootstrap_session_from_bearer_token(request.token)
            return {**session, "redirectPath": safe_redirect_path(request.redirect_path)}

        @self.app.post("/sso/userinfo")
        async def sso_userinfo(request: SsoUserInfoRequest):
            """Start a session from an opaque provider access token."""
            session = await self.engine.bootstrap_session_from_access_token(request.access_token)
            return {**session, "redirectPath": safe_redirect_path(request.redirect_path)}

        @self.app.post("/users/{user_id}/settings/pull")
        async def pull_settings(user_id: int):
            return sync_result(await self.engine.pull_remote_settings(user_id))

        @self.app.patch("/users/{user_id}/settings")
        async def update_settings(user_id: int, patch: SettingsPatch):
            return sync_result(await self.engine.apply_local_settings_and_push(user_id, patch))

        @self.app.get("/users/{user_id}/recipient-suggestions")
        async def recipient_suggestions(
            user_id: int,
            team_id: Optional[int] = Query(default=None, alias="teamId"),
            query: str = Query(default=""),
            take: int = Query(default=10, ge=1, le=50),
            cursor: int = Query(default=0, ge=0),
        ):
            page = await self.engine.search_recipients(user_id, team_id, query, take=take, skip=cursor)
            return {
                "results": [suggestion.model_dump(by_alias=True) for suggestion in page.suggestions],
                "hasMore": page.has_more,
                "nextCursor": page.next_skip,
            }

        @self.app.get("/users/{user_id}/branding")
        async def remote_branding(user_id: int):
            branding = await self.engine.get_remote_branding(user_id)
            return branding.model_dump(by_alias=True)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check federation dependencies."""
        dependencies = {
            "identity_provider": "configured" if self.config.is_configured else "not_configured",
        }
        if self.store is None:
            dependencies["postgres"] = "not_started"
        else:
            dependencies["postgres"] = "ok" if await self.store.ping() else "error"
        return dependencies


def create_app(config: Optional[FederationConfig] = None):
    """Create FastAPI application."""
    service = FederationService(config)
    return service.app


if __name__ == "__main__":
    service = FederationService()
    service.run()
