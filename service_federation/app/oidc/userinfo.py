"""
Userinfo endpoint client used to validate opaque provider access tokens.
"""

from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from shared.errors import RemoteUnavailable, Unauthorized, ValidationFailed
from shared.logging import get_logger
from .discovery import ProviderDiscovery


class UserInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sub: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    preferred_username: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.preferred_username or (self.email or "").split("@")[0]


class UserInfoClient:
    """Resolves an access token to the provider's view of its owner."""

    def __init__(self, discovery: ProviderDiscovery, http_client: httpx.AsyncClient):
        self.discovery = discovery
        self.http_client = http_client
        self.logger = get_logger("federation.oidc.userinfo")

    async def get_user_info(self, access_token: str) -> UserInfo:
        endpoint = await self.discovery.require("userinfo_endpoint")

        try:
            response = await self.http_client.get(
                endpoint, headers={"Authorization": f"Bearer {access_token}"}
            )
        except httpx.HTTPError as e:
            raise RemoteUnavailable("Userinfo endpoint unavailable", details={"error": str(e)}) from e

        if response.status_code >= 500:
            raise RemoteUnavailable("Userinfo endpoint failed", status_code=response.status_code)
        if not response.is_success:
            raise Unauthorized("Invalid or expired access token")

        info = UserInfo.model_validate(response.json())
        if not info.email or not info.sub:
            raise ValidationFailed("Token does not contain required user information")
        return info
