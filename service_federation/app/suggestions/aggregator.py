"""
Recipient suggestion aggregation.

Sources are consulted in priority order and merged in one pass; the first
source to surface an email owns it.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from pydantic import BaseModel, Field

from shared.errors import FederationException
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..remote.client import RemoteResourceClient
from ..tokens.manager import TokenLifecycleManager
from ..validation.email import is_valid_email


class RecipientSuggestion(BaseModel):
    email: str
    name: Optional[str] = None
    avatar_url: Optional[str] = Field(default=None, serialization_alias="avatarUrl")
    organization_name: Optional[str] = Field(default=None, serialization_alias="organizationName")


class SuggestionPage(BaseModel):
    suggestions: List[RecipientSuggestion] = Field(default_factory=list)
    has_more: bool = False
    next_skip: int = 0


@dataclass
class SuggestionRequest:
    user_id: int
    team_id: Optional[int]
    query: str
    take: int
    skip: int

    @property
    def wanted(self) -> int:
        return self.skip + self.take


SourceFetcher = Callable[[SuggestionRequest], Awaitable[Sequence[RecipientSuggestion]]]


@dataclass
class SuggestionSource:
    name: str
    fetch: SourceFetcher
    # A source may be skipped once enough suggestions were merged.
    only_when_short: bool = False


class RecipientSuggestionAggregator:
    """Merge suggestion sources into one deduplicated, paginated list."""

    def __init__(self, store, token_manager: Optional[TokenLifecycleManager] = None,
                 remote_client: Optional[RemoteResourceClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.token_manager = token_manager
        self.remote_client = remote_client
        self.metrics = metrics
        self.logger = get_logger("federation.suggestions")
        self.sources: List[SuggestionSource] = [
            SuggestionSource("provider_directory", self._from_provider_directory),
            SuggestionSource("recent_recipients", self._from_recent_recipients),
            SuggestionSource("team_members", self._from_team_members, only_when_short=True),
        ]

    async def suggest(self, user_id: int, team_id: Optional[int], query: str,
                      take: int = 10, skip: int = 0) -> SuggestionPage:
        request = SuggestionRequest(
            user_id=user_id,
            team_id=team_id,
            query=(query or "").strip(),
            take=max(take, 0),
            skip=max(skip, 0),
        )
        merged: List[RecipientSuggestion] = []
        seen = set()

        for source in self.sources:
            if source.only_when_short and len(merged) >= request.wanted:
                continue
            for suggestion in await self._run(source, request):
                key = suggestion.email.strip().lower()
                if key in seen or not is_valid_email(suggestion.email):
                    continue
                seen.add(key)
                merged.append(suggestion)

        page = SuggestionPage(
            suggestions=merged[request.skip:request.wanted],
            has_more=len(merged) > request.wanted,
            next_skip=request.wanted,
        )
        self.logger.debug("Recipient suggestions merged", user_id=user_id, team_id=team_id,
                          merged=len(merged), returned=len(page.suggestions))
        return page

    async def _run(self, source: SuggestionSource,
                   request: SuggestionRequest) -> Sequence[RecipientSuggestion]:
        try:
            return await source.fetch(request)
        except FederationException as e:
            self.logger.warning("Suggestion source failed", source=source.name, code=e.code,
                                error=e.message)
        except Exception as e:
            self.logger.error("Suggestion source failed", source=source.name, error=str(e))
        if self.metrics:
            self.metrics.increment_counter("suggestion_source_failures_total", source=source.name)
        return []

    async def _from_provider_directory(self, request: SuggestionRequest) -> List[RecipientSuggestion]:
        if self.token_manager is None or self.remote_client is None:
            return []
        access_token = await self.token_manager.get_valid_access_token(request.user_id)
        if not access_token:
            return []

        users = await self.remote_client.search_users(access_token, request.query,
                                                      limit=request.wanted + 1)
        return [
            RecipientSuggestion(
                email=user.email,
                name=user.user.display_name if user.user else None,
                avatar_url=user.user.avatar.href if user.user and user.user.avatar else None,
                organization_name=user.organization.name if user.organization else None,
            )
            for user in users
        ]

    async def _from_recent_recipients(self, request: SuggestionRequest) -> List[RecipientSuggestion]:
        if request.team_id is None:
            return []
        records = await self.store.find_recent_recipients(
            request.user_id, request.team_id, request.query, request.wanted + 10
        )
        return [RecipientSuggestion(email=record.email, name=record.name or None) for record in records]

    async def _from_team_members(self, request: SuggestionRequest) -> List[RecipientSuggestion]:
        if request.team_id is None:
            return []
        records = await self.store.find_team_members(
            request.user_id, request.team_id, request.query, request.wanted
        )
        return [RecipientSuggestion(email=record.email, name=record.name or None) for record in records]
