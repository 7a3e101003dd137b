"""
Remote resource client for the identity provider.

Every call is made with an already-resolved access token; this client never
looks tokens up itself.
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import ValidationError

from shared.circuit_breaker import get_circuit_breaker
from shared.errors import RemoteUnavailable, Unauthorized
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from .models import (
    RemoteConfigRecord,
    RemoteCurrentUser,
    RemoteUserListItem,
    RemoteUserPage,
    RemoteUserPreferences,
    SettingsBundle,
)


DEFAULT_USER_STATUSES = ("Active", "Pending")


class RemoteResourceClient:
    """Thin bearer-authenticated wrapper over the provider's resource endpoints.

    Failures are translated uniformly: 401/403 raise ``Unauthorized``, a 404
    on a single-resource read yields ``None`` and every other failure raises
    ``RemoteUnavailable``. Only network errors and 5xx count against the breaker.
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient, *,
                 config_identifier: str = "settings-bundle",
                 metrics: Optional[MetricsCollector] = None):
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.config_identifier = config_identifier
        self.metrics = metrics
        self.logger = get_logger("federation.remote")
        self.circuit_breaker = get_circuit_breaker("provider-api", failure_threshold=5,
                                                   recovery_timeout=30.0)

    async def _request(self, method: str, path: str, access_token: str, *,
                       params: Optional[Dict[str, Any]] = None,
                       json: Optional[Dict[str, Any]] = None,
                       allow_not_found: bool = False) -> Any:
        async def _send() -> httpx.Response:
            try:
                response = await self.http_client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=json,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                    },
                )
            except httpx.HTTPError as e:
                self.logger.error("Provider request failed", method=method, path=path, error=str(e))
                raise RemoteUnavailable("Identity provider unreachable", details={"path": path}) from e

            if response.status_code >= 500:
                self.logger.error("Provider API error", method=method, path=path,
                                  status=response.status_code, body=response.text[:500])
                raise RemoteUnavailable("Identity provider error", status_code=response.status_code,
                                        details={"path": path})
            return response

        if self.metrics:
            with self.metrics.time_operation("remote_call_duration_seconds", operation=f"{method} {path}"):
                response = await self.circuit_breaker.call(_send)
        else:
            response = await self.circuit_breaker.call(_send)

        status = response.status_code
        if status == 404 and allow_not_found:
            return None
        if status in (401, 403):
            self.logger.warning("Provider rejected access token", method=method, path=path, status=status)
            raise Unauthorized("Provider rejected access token", details={"status_code": status})
        if status >= 400:
            self.logger.error("Provider API error", method=method, path=path, status=status,
                              body=response.text[:500])
            raise RemoteUnavailable("Provider rejected request", status_code=status, details={"path": path})

        try:
            return response.json()
        except ValueError as e:
            raise RemoteUnavailable("Identity provider returned invalid JSON", details={"path": path}) from e

    def _parse(self, model, data: Any, what: str):
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise RemoteUnavailable(f"Unexpected {what} payload from provider",
                                    details={"error": str(e)}) from e

    # Auth API

    async def get_current_user(self, access_token: str) -> Optional[RemoteCurrentUser]:
        """``GET /auth/me``: the authenticated account with its organisation."""
        data = await self._request("GET", "/auth/me", access_token, allow_not_found=True)
        if data is None:
            return None
        return self._parse(RemoteCurrentUser, data, "current user")

    # User preferences API

    async def get_user_preferences(self, access_token: str) -> Optional[RemoteUserPreferences]:
        data = await self._request("GET", "/user-preferences", access_token, allow_not_found=True)
        if data is None:
            return None
        return self._parse(RemoteUserPreferences, data, "user preferences")

    async def get_user_locale(self, access_token: str) -> Optional[str]:
        preferences = await self.get_user_preferences(access_token)
        return preferences.preferences.locale if preferences else None

    # User directory API

    async def list_users(self, access_token: str, *, search: Optional[str] = None,
                         take: int = 20, skip: int = 0,
                         status: Sequence[str] = DEFAULT_USER_STATUSES) -> RemoteUserPage:
        params: Dict[str, Any] = {
            "take": take,
            "skip": skip,
            "status[]": list(status),
        }
        # An empty search must not be sent at all.
        if search:
            params["search"] = search

        data = await self._request("GET", "/users", access_token, params=params)
        if isinstance(data, list):
            data = {"data": data, "count": len(data)}
        return self._parse(RemoteUserPage, data, "user list")

    async def search_users(self, access_token: str, query: str, limit: int = 10) -> List[RemoteUserListItem]:
        page = await self.list_users(access_token, search=query, take=limit)
        self.logger.debug("Provider user search", query=query, count=len(page.data))
        return page.data

    # Config API

    async def list_config_records(self, access_token: str) -> List[RemoteConfigRecord]:
        """All settings-bundle records visible to the caller (own and inherited)."""
        data = await self._request("GET", "/configs", access_token,
                                   params={"identifier": self.config_identifier})
        if isinstance(data, dict):
            data = data.get("data") or []
        if not isinstance(data, list):
            raise RemoteUnavailable("Unexpected config list payload from provider")
        return [self._parse(RemoteConfigRecord, item, "config record") for item in data]

    async def upsert_config(self, access_token: str, bundle: SettingsBundle,
                            existing_id: Optional[int] = None) -> RemoteConfigRecord:
        """Create the caller's settings record, or update it when ``existing_id`` is given."""
        payload: Dict[str, Any] = {
            "identifier": self.config_identifier,
            "meta": bundle.to_payload(),
        }
        if existing_id is not None:
            payload["id"] = existing_id

        self.logger.info("Upserting settings bundle", config_id=existing_id,
                         sections=sorted(payload["meta"]))
        data = await self._request("POST", "/configs", access_token, json=payload)
        return self._parse(RemoteConfigRecord, data, "config record")

    # Attachments

    async def download_attachment(self, url: str) -> Tuple[bytes, str]:
        """Fetch an attachment such as an organisation logo."""
        try:
            response = await self.http_client.get(url)
        except httpx.HTTPError as e:
            raise RemoteUnavailable("Attachment unreachable", details={"url": url}) from e
        if not response.is_success:
            raise RemoteUnavailable("Attachment request failed", status_code=response.status_code,
                                    details={"url": url})
        return response.content, response.headers.get("content-type") or "image/png"


def find_config_for_read(records: Sequence[RemoteConfigRecord],
                         profile: RemoteCurrentUser) -> Optional[RemoteConfigRecord]:
    """The caller's own record, else its parent's, else the first visible one."""
    organization = profile.organization
    own = find_config_for_update(records, profile)
    if own is not None:
        return own
    if organization.parent_organization is not None:
        for record in records:
            if record.organization_id == organization.parent_organization.id:
                return record
    return records[0] if records else None


def find_config_for_update(records: Sequence[RemoteConfigRecord],
                           profile: RemoteCurrentUser) -> Optional[RemoteConfigRecord]:
    """Only the record owned by the caller's organisation; never an inherited one."""
    for record in records:
        if record.organization_id == profile.organization.id:
            return record
    return None


def find_inherited_config(records: Sequence[RemoteConfigRecord],
                          profile: RemoteCurrentUser) -> Optional[RemoteConfigRecord]:
    """The nearest record not owned by the caller's organisation."""
    organization = profile.organization
    foreign = [record for record in records if record.organization_id != organization.id]
    if organization.parent_organization is not None:
        for record in foreign:
            if record.organization_id == organization.parent_organization.id:
                return record
    return foreign[0] if foreign else None
