"""
Tests for bidirectional settings synchronization.
"""

from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from shared.errors import NoLinkedAccount, RemoteUnavailable, Unauthorized
from service_federation.app.persistence.models import DocumentVisibility, OrganisationSettings
from service_federation.app.remote.models import (
    RemoteConfigRecord,
    RemoteCurrentUser,
    RemoteUserPreferences,
    SettingsBundle,
)
from service_federation.app.sync.schema import (
    BRANDING_FIELDS,
    POLICY_FIELDS,
    SettingsPatch,
    build_outbound_bundle,
    parse_visibility,
    scope_for_role,
)
from service_federation.app.sync.synchronizer import SettingsSynchronizer, plan_pull_changes


ROOT_POLICY = {
    "documentDefaults": {
        "language": "de",
        "timezone": "Europe/Berlin",
        "dateFormat": "dd.MM.yyyy",
        "documentVisibility": "MANAGER_AND_ABOVE",
    },
    "signatureSettings": {
        "typedSignatureEnabled": True,
        "uploadSignatureEnabled": False,
        "drawSignatureEnabled": True,
    },
    "certificateSettings": {
        "includeSenderDetails": True,
        "includeSigningCertificate": False,
        "includeAuditLog": True,
    },
    "emailSettings": {"replyToEmail": "legal@example.com"},
}

FULL_LOCAL_VALUES = {
    "document_language": "en",
    "document_timezone": "UTC",
    "document_date_format": "yyyy-MM-dd",
    "document_visibility": DocumentVisibility.ADMIN,
    "typed_signature_enabled": True,
    "upload_signature_enabled": True,
    "draw_signature_enabled": False,
    "include_sender_details": False,
    "include_signing_certificate": True,
    "include_audit_log": True,
    "email_reply_to": "noreply@example.com",
    "branding_enabled": True,
    "branding_logo": "local-logo-ref",
    "branding_company_details": "Acme Ltd",
}


def make_profile(org_id=1, parent_id=None, logo=None, name="Acme"):
    organization = {"id": org_id, "name": name}
    if parent_id is not None:
        organization["parentOrganization"] = {"id": parent_id, "name": "Parent"}
    if logo:
        organization["logo"] = {"link": logo}
    return RemoteCurrentUser.model_validate({"id": 42, "email": "jane@example.com",
                                             "organization": organization})


def make_record(record_id, org_id, meta):
    return RemoteConfigRecord.model_validate({"id": record_id, "organizationId": org_id, "meta": meta})


def bundle(meta):
    return SettingsBundle.model_validate(meta)


class TestSettingsSchema:
    """Test cases for field scoping and bundle building."""

    def test_scope_for_non_root_is_branding_only(self):
        assert scope_for_role(False) == BRANDING_FIELDS

    def test_scope_for_root_includes_policy(self):
        assert scope_for_role(True) == BRANDING_FIELDS | POLICY_FIELDS
        assert "email_reply_to" in scope_for_role(True)

    def test_non_root_bundle_carries_only_branding(self):
        payload = build_outbound_bundle(FULL_LOCAL_VALUES, scope_for_role(False)).to_payload()

        assert payload == {
            "branding": {"enabled": True, "logo": "local-logo-ref", "companyName": "Acme Ltd"},
        }

    def test_root_bundle_carries_everything(self):
        payload = build_outbound_bundle(FULL_LOCAL_VALUES, scope_for_role(True)).to_payload()

        assert set(payload) == {"branding", "documentDefaults", "signatureSettings",
                                "certificateSettings", "emailSettings"}
        assert payload["documentDefaults"]["documentVisibility"] == "ADMIN"
        assert payload["signatureSettings"]["drawSignatureEnabled"] is False
        assert payload["emailSettings"] == {"replyToEmail": "noreply@example.com"}

    def test_undefined_values_are_omitted(self):
        payload = build_outbound_bundle({"branding_enabled": None, "document_language": "en"},
                                        scope_for_role(True)).to_payload()

        assert payload == {"documentDefaults": {"language": "en"}}

    def test_parse_visibility(self):
        assert parse_visibility("EVERYONE") is DocumentVisibility.EVERYONE
        assert parse_visibility("admin") is DocumentVisibility.ADMIN
        assert parse_visibility("SOMETHING_NEW") is None
        assert parse_visibility(None) is None

    def test_patch_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            SettingsPatch(theme="dark")

    def test_patch_rejects_invalid_reply_to(self):
        with pytest.raises(ValidationError):
            SettingsPatch(email_reply_to="not-an-email")

    def test_patch_changes_only_sent_fields(self):
        patch = SettingsPatch(branding_enabled=False, document_language="fr")

        assert patch.changes() == {"branding_enabled": False, "document_language": "fr"}


class TestPlanPullChanges:
    """Test cases for the pull diff."""

    def test_fills_unset_fields_only(self):
        current = OrganisationSettings(organisation_id=5, document_language="en",
                                       include_audit_log=False)

        changes = plan_pull_changes(current, make_profile().organization, None, bundle(ROOT_POLICY))

        assert "document_language" not in changes
        assert "include_audit_log" not in changes
        assert changes["document_timezone"] == "Europe/Berlin"
        assert changes["document_visibility"] is DocumentVisibility.MANAGER_AND_ABOVE
        assert changes["include_sender_details"] is True
        assert changes["email_reply_to"] == "legal@example.com"

    def test_never_overwrites_non_null_fields(self):
        """Every already-set field survives a pull."""
        current = OrganisationSettings(organisation_id=5, **FULL_LOCAL_VALUES)
        remote = bundle({**ROOT_POLICY, "branding": {"enabled": False, "logo": "remote-logo",
                                                     "companyName": "Remote"}})

        changes = plan_pull_changes(current, make_profile(logo="https://cdn.example.com/l.png").organization,
                                    remote, remote, locale="fr")

        assert changes == {}

    def test_organisation_logo_replaces_derived_logo(self):
        current = OrganisationSettings(organisation_id=5, branding_logo="https://old.example.com/l.png",
                                       branding_logo_derived=True, branding_enabled=True)

        changes = plan_pull_changes(current, make_profile(logo="https://cdn.example.com/new.png").organization,
                                    None, None)

        assert changes["branding_logo"] == "https://cdn.example.com/new.png"
        assert changes["branding_logo_derived"] is True
        assert "branding_enabled" not in changes

    def test_organisation_logo_sets_missing_logo_and_enables_branding(self):
        current = OrganisationSettings(organisation_id=5)

        changes = plan_pull_changes(current, make_profile(logo="https://cdn.example.com/l.png").organization,
                                    None, None)

        assert changes["branding_logo"] == "https://cdn.example.com/l.png"
        assert changes["branding_enabled"] is True
        assert changes["branding_company_details"] == "Acme"

    def test_remote_branding_flag_wins_over_logo_default(self):
        current = OrganisationSettings(organisation_id=5)
        remote = bundle({"branding": {"enabled": False}})

        changes = plan_pull_changes(current, make_profile(logo="https://cdn.example.com/l.png").organization,
                                    remote, None)

        assert changes["branding_enabled"] is False

    def test_locale_fills_language_when_bundle_has_none(self):
        current = OrganisationSettings(organisation_id=5)

        changes = plan_pull_changes(current, make_profile().organization, None, None, locale="fr")

        assert changes["document_language"] == "fr"

    def test_bundle_language_beats_locale(self):
        current = OrganisationSettings(organisation_id=5)

        changes = plan_pull_changes(current, make_profile().organization, None,
                                    bundle(ROOT_POLICY), locale="fr")

        assert changes["document_language"] == "de"

    def test_unknown_visibility_and_invalid_reply_to_are_ignored(self):
        current = OrganisationSettings(organisation_id=5)
        remote = bundle({"documentDefaults": {"documentVisibility": "PUBLIC"},
                         "emailSettings": {"replyToEmail": "nobody"}})

        changes = plan_pull_changes(current, make_profile().organization, None, remote)

        assert "document_visibility" not in changes
        assert "email_reply_to" not in changes

    def test_all_signatures_disabled_drops_signature_fields(self):
        """The three signature flags stay at their pre-pull values."""
        current = OrganisationSettings(organisation_id=5, typed_signature_enabled=False)
        remote = bundle({
            "signatureSettings": {"typedSignatureEnabled": False, "uploadSignatureEnabled": False,
                                  "drawSignatureEnabled": False},
            "documentDefaults": {"timezone": "UTC"},
        })

        changes = plan_pull_changes(current, make_profile().organization, None, remote)

        assert not {"typed_signature_enabled", "upload_signature_enabled",
                    "draw_signature_enabled"} & set(changes)
        assert changes["document_timezone"] == "UTC"

    def test_unset_signature_flags_count_as_disabled(self):
        """A fresh organisation never ends up with no enabled signature type."""
        current = OrganisationSettings(organisation_id=5)
        remote = bundle({"signatureSettings": {"typedSignatureEnabled": False,
                                               "uploadSignatureEnabled": False}})

        changes = plan_pull_changes(current, make_profile().organization, None, remote)

        assert not {"typed_signature_enabled", "upload_signature_enabled",
                    "draw_signature_enabled"} & set(changes)

    def test_organisation_logo_uses_stored_url(self):
        current = OrganisationSettings(organisation_id=5)
        organization = RemoteCurrentUser.model_validate({
            "id": 42,
            "email": "jane@example.com",
            "organization": {"id": 1, "name": "Acme",
                             "logo": {"url": "https://cdn.example.com/raw.png",
                                      "link": "https://cdn.example.com/public.png"}},
        }).organization

        changes = plan_pull_changes(current, organization, None, None)

        assert changes["branding_logo"] == "https://cdn.example.com/raw.png"

    def test_signature_change_kept_when_one_type_stays_enabled(self):
        current = OrganisationSettings(organisation_id=5, draw_signature_enabled=True)
        remote = bundle({"signatureSettings": {"typedSignatureEnabled": False,
                                               "uploadSignatureEnabled": False}})

        changes = plan_pull_changes(current, make_profile().organization, None, remote)

        assert changes["typed_signature_enabled"] is False
        assert changes["upload_signature_enabled"] is False


class TestSettingsSynchronizer:
    """Test cases for SettingsSynchronizer pull and push."""

    @pytest.fixture
    def token_manager(self):
        manager = AsyncMock()
        manager.require_access_token.return_value = "access-1"
        return manager

    @pytest.fixture
    def remote_client(self):
        client = AsyncMock()
        client.get_current_user.return_value = make_profile()
        client.get_user_preferences.return_value = RemoteUserPreferences.model_validate(
            {"preferences": {"locale": "en"}})
        client.list_config_records.return_value = []
        client.upsert_config.return_value = make_record(30, 1, {})
        return client

    @pytest.fixture
    def store(self):
        store = AsyncMock()
        store.get_organisation_settings_for_user.return_value = OrganisationSettings(organisation_id=5)
        store.update_organisation_settings.return_value = True
        return store

    @pytest.fixture
    def synchronizer(self, token_manager, remote_client, store):
        return SettingsSynchronizer(token_manager, remote_client, store)

    @pytest.mark.asyncio
    async def test_pull_writes_one_update(self, synchronizer, remote_client, store):
        remote_client.list_config_records.return_value = [make_record(9, 1, ROOT_POLICY)]

        assert await synchronizer.pull(42) is True

        store.update_organisation_settings.assert_awaited_once()
        organisation_id, changes = store.update_organisation_settings.await_args.args
        assert organisation_id == 5
        assert changes["document_language"] == "de"
        assert changes["branding_company_details"] == "Acme"

    @pytest.mark.asyncio
    async def test_non_root_pull_takes_policy_from_parent(self, synchronizer, remote_client, store):
        """A sub-organisation inherits policy; its own record only supplies branding."""
        remote_client.get_current_user.return_value = make_profile(org_id=3, parent_id=1)
        remote_client.list_config_records.return_value = [
            make_record(8, 3, {"branding": {"companyName": "Child Co"},
                               "documentDefaults": {"timezone": "Asia/Tokyo"}}),
            make_record(9, 1, ROOT_POLICY),
        ]

        assert await synchronizer.pull(42) is True

        _, changes = store.update_organisation_settings.await_args.args
        assert changes["branding_company_details"] == "Child Co"
        assert changes["document_timezone"] == "Europe/Berlin"

    @pytest.mark.asyncio
    async def test_root_pull_ignores_foreign_records_for_policy(self, synchronizer, remote_client, store):
        remote_client.list_config_records.return_value = [make_record(8, 77, ROOT_POLICY)]
        remote_client.get_user_preferences.return_value = None

        assert await synchronizer.pull(42) is True

        _, changes = store.update_organisation_settings.await_args.args
        assert "document_timezone" not in changes

    @pytest.mark.asyncio
    async def test_pull_without_linked_account(self, synchronizer, token_manager, store):
        token_manager.require_access_token.side_effect = NoLinkedAccount()

        assert await synchronizer.pull(42) is False
        store.update_organisation_settings.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [Unauthorized(), RemoteUnavailable()])
    async def test_pull_remote_failure_is_soft(self, synchronizer, remote_client, store, error):
        remote_client.list_config_records.side_effect = error

        assert await synchronizer.pull(42) is False
        store.update_organisation_settings.assert_not_called()

    @pytest.mark.asyncio
    async def test_pull_without_remote_user(self, synchronizer, remote_client, store):
        remote_client.get_current_user.return_value = None

        assert await synchronizer.pull(42) is False
        store.update_organisation_settings.assert_not_called()

    @pytest.mark.asyncio
    async def test_pull_without_membership(self, synchronizer, store):
        store.get_organisation_settings_for_user.return_value = None

        assert await synchronizer.pull(42) is False
        store.update_organisation_settings.assert_not_called()

    @pytest.mark.asyncio
    async def test_pull_store_failure_is_soft(self, synchronizer, store):
        store.update_organisation_settings.side_effect = RuntimeError("deadlock detected")

        assert await synchronizer.pull(42) is False

    @pytest.mark.asyncio
    async def test_pull_with_nothing_to_change(self, synchronizer, remote_client, store):
        store.get_organisation_settings_for_user.return_value = OrganisationSettings(
            organisation_id=5, **FULL_LOCAL_VALUES)

        assert await synchronizer.pull(42) is True
        store.update_organisation_settings.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_root_push_sends_branding_only(self, synchronizer, remote_client):
        remote_client.get_current_user.return_value = make_profile(org_id=3, parent_id=1)

        assert await synchronizer.push(42, FULL_LOCAL_VALUES) is True

        _, bundle_sent, existing_id = remote_client.upsert_config.await_args.args
        assert set(bundle_sent.to_payload()) == {"branding"}
        assert existing_id is None

    @pytest.mark.asyncio
    async def test_root_push_sends_all_groups(self, synchronizer, remote_client):
        assert await synchronizer.push(42, FULL_LOCAL_VALUES) is True

        _, bundle_sent, _ = remote_client.upsert_config.await_args.args
        assert set(bundle_sent.to_payload()) == {"branding", "documentDefaults", "signatureSettings",
                                                 "certificateSettings", "emailSettings"}

    @pytest.mark.asyncio
    async def test_push_updates_own_record_by_id(self, synchronizer, remote_client):
        remote_client.list_config_records.return_value = [make_record(9, 1, {})]

        await synchronizer.push(42, {"branding_enabled": True})

        _, _, existing_id = remote_client.upsert_config.await_args.args
        assert existing_id == 9

    @pytest.mark.asyncio
    async def test_push_never_writes_parent_record(self, synchronizer, remote_client):
        """An inherited record is never the write target."""
        remote_client.get_current_user.return_value = make_profile(org_id=3, parent_id=1)
        remote_client.list_config_records.return_value = [make_record(9, 1, ROOT_POLICY)]

        await synchronizer.push(42, {"branding_enabled": True})

        _, _, existing_id = remote_client.upsert_config.await_args.args
        assert existing_id is None

    @pytest.mark.asyncio
    async def test_push_prefers_organisation_logo(self, synchronizer, remote_client):
        remote_client.get_current_user.return_value = make_profile(logo="https://cdn.example.com/l.png")

        await synchronizer.push(42, {"branding_logo": "local-ref"})

        _, bundle_sent, _ = remote_client.upsert_config.await_args.args
        assert bundle_sent.branding.logo == "https://cdn.example.com/l.png"

    @pytest.mark.asyncio
    async def test_push_without_remote_user(self, synchronizer, remote_client):
        remote_client.get_current_user.return_value = None

        assert await synchronizer.push(42, FULL_LOCAL_VALUES) is False
        remote_client.upsert_config.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_without_linked_account(self, synchronizer, token_manager, remote_client):
        token_manager.require_access_token.side_effect = NoLinkedAccount()

        assert await synchronizer.push(42, FULL_LOCAL_VALUES) is False
        remote_client.get_current_user.assert_not_called()

    @pytest.mark.asyncio
    async def test_push_write_failure(self, synchronizer, remote_client):
        remote_client.upsert_config.side_effect = RemoteUnavailable(status_code=500)

        assert await synchronizer.push(42, FULL_LOCAL_VALUES) is False
