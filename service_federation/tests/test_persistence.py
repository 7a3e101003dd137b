"""
Tests for persistence helpers that do not need a database.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from service_federation.app.persistence.models import DocumentVisibility, OrganisationSettings
from service_federation.app.persistence.postgres import PostgresFederationStore, _like_pattern


def test_like_pattern_escapes_wildcards():
    assert _like_pattern("jo") == "%jo%"
    assert _like_pattern("50%_off") == "%50\\%\\_off%"
    assert _like_pattern("a\\b") == "%a\\\\b%"


def test_settings_from_row():
    settings = OrganisationSettings.from_row({
        "organisation_id": 5,
        "document_visibility": "ADMIN",
        "branding_logo_derived": True,
        "unrelated_column": "ignored",
    })

    assert settings.organisation_id == 5
    assert settings.document_visibility is DocumentVisibility.ADMIN
    assert settings.branding_logo_derived is True
    assert settings.document_language is None


class TestSettingsUpdateGuards:
    """Checks that run before any database round trip."""

    @pytest.fixture
    def store(self):
        return PostgresFederationStore("postgres://unused")

    @pytest.mark.asyncio
    async def test_unknown_columns_are_rejected(self, store):
        with pytest.raises(ValueError):
            await store.update_organisation_settings(5, {"theme": "dark"})

    @pytest.mark.asyncio
    async def test_empty_update_is_a_no_op(self, store):
        assert await store.update_organisation_settings(5, {}) is True

    @pytest.mark.asyncio
    async def test_patch_with_unknown_columns_is_rejected(self, store):
        with pytest.raises(ValueError):
            await store.apply_settings_patch(42, {"theme": "dark"})


class TestApplySettingsPatch:
    """The read and the write of a patch share one locked transaction."""

    @pytest.fixture
    def conn(self):
        conn = MagicMock()
        conn.fetchrow = AsyncMock(return_value={
            "organisation_id": 5,
            "document_language": "en",
            "branding_enabled": False,
        })
        conn.execute = AsyncMock(return_value="UPDATE 1")
        return conn

    @pytest.fixture
    def store(self, conn):
        store = PostgresFederationStore("postgres://unused")
        store.pool = MagicMock()
        store.pool.acquire.return_value.__aenter__.return_value = conn
        return store

    @pytest.mark.asyncio
    async def test_select_and_update_run_in_one_transaction(self, store, conn):
        settings = await store.apply_settings_patch(42, {"branding_enabled": True})

        store.pool.acquire.assert_called_once()
        conn.transaction.assert_called_once()
        assert "FOR UPDATE" in conn.fetchrow.await_args.args[0]
        sql, organisation_id, value = conn.execute.await_args.args
        assert sql.startswith("UPDATE organisation_settings SET branding_enabled = $2")
        assert (organisation_id, value) == (5, True)
        assert settings.organisation_id == 5
        assert settings.branding_enabled is True
        assert settings.document_language == "en"

    @pytest.mark.asyncio
    async def test_user_without_organisation(self, store, conn):
        conn.fetchrow.return_value = None

        assert await store.apply_settings_patch(42, {"branding_enabled": True}) is None
        conn.execute.assert_not_called()
