"""
Settings synchronizer between local organisations and the provider.

Pull fills local gaps from the provider's settings records; push publishes
local values to the organisation's own record, scoped by its place in the
organisation hierarchy.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional

from shared.errors import FederationException
from shared.logging import get_logger, set_user_context
from shared.metrics import MetricsCollector
from ..persistence.models import OrganisationSettings
from ..remote.client import (
    RemoteResourceClient,
    find_config_for_read,
    find_config_for_update,
    find_inherited_config,
)
from ..remote.models import BrandingSection, RemoteOrganization, SettingsBundle
from ..tokens.manager import TokenLifecycleManager
from ..validation.email import is_valid_email
from .schema import SIGNATURE_FIELDS, build_outbound_bundle, parse_bundle, parse_visibility, scope_for_role


logger = get_logger("federation.sync")


def plan_pull_changes(current: OrganisationSettings,
                      organization: RemoteOrganization,
                      branding_bundle: Optional[SettingsBundle],
                      policy_bundle: Optional[SettingsBundle],
                      locale: Optional[str] = None) -> Dict[str, Any]:
    """Compute the local fields a pull may set.

    A field is only proposed when the provider has a value for it and the
    local field is unset. The organisation logo may also replace a logo that
    an earlier pull derived.
    """
    changes: Dict[str, Any] = {}

    def offer(field: str, value: Any) -> None:
        if value is None or value == "" or field in changes:
            return
        if getattr(current, field) is None:
            changes[field] = value

    branding = (branding_bundle.branding if branding_bundle else None) or BrandingSection()

    logo = organization.logo_reference or branding.logo
    if logo and logo != current.branding_logo and (
            current.branding_logo is None or current.branding_logo_derived):
        changes["branding_logo"] = logo
        changes["branding_logo_derived"] = True

    offer("branding_enabled", branding.enabled)
    if "branding_logo" in changes:
        offer("branding_enabled", True)
    offer("branding_company_details", branding.company_name or organization.name)

    if policy_bundle is not None:
        defaults = policy_bundle.document_defaults
        if defaults is not None:
            offer("document_language", defaults.language)
            offer("document_timezone", defaults.timezone)
            offer("document_date_format", defaults.date_format)
            offer("document_visibility", parse_visibility(defaults.document_visibility))

        signatures = policy_bundle.signature_settings
        if signatures is not None:
            for field in SIGNATURE_FIELDS:
                offer(field, getattr(signatures, field))

        certificates = policy_bundle.certificate_settings
        if certificates is not None:
            offer("include_sender_details", certificates.include_sender_details)
            offer("include_signing_certificate", certificates.include_signing_certificate)
            offer("include_audit_log", certificates.include_audit_log)

        email = policy_bundle.email_settings
        if email is not None and is_valid_email(email.reply_to_email):
            offer("email_reply_to", email.reply_to_email)

    # The user's own locale only stands in when no language was published.
    offer("document_language", locale)

    if any(field in changes for field in SIGNATURE_FIELDS):
        resulting = [changes.get(field, getattr(current, field)) for field in SIGNATURE_FIELDS]
        # Unset flags count as disabled.
        if not any(value is True for value in resulting):
            logger.warning("Remote settings would disable every signature type, skipping signature fields",
                           organisation_id=current.organisation_id)
            for field in SIGNATURE_FIELDS:
                changes.pop(field, None)

    return changes


class SettingsSynchronizer:
    """Pull and push organisation settings; both report success as a bool."""

    def __init__(self, token_manager: TokenLifecycleManager, remote_client: RemoteResourceClient,
                 store, metrics: Optional[MetricsCollector] = None):
        self.token_manager = token_manager
        self.remote_client = remote_client
        self.store = store
        self.metrics = metrics
        self.logger = logger

    async def pull(self, user_id: int) -> bool:
        """Fill unset local settings from the provider."""
        try:
            access_token = await self.token_manager.require_access_token(user_id)
            profile, preferences, records = await asyncio.gather(
                self.remote_client.get_current_user(access_token),
                self.remote_client.get_user_preferences(access_token),
                self.remote_client.list_config_records(access_token),
            )
        except FederationException as e:
            self.logger.warning("Settings pull aborted", user_id=user_id, code=e.code, error=e.message)
            return self._done("pull", "failed")

        if profile is None:
            self.logger.warning("No remote user for settings pull", user_id=user_id)
            return self._done("pull", "failed")

        current = await self.store.get_organisation_settings_for_user(user_id)
        if current is None:
            self.logger.warning("User has no organisation membership", user_id=user_id)
            return self._done("pull", "failed")
        set_user_context(user_id=user_id, organisation_id=current.organisation_id)

        organization = profile.organization
        branding_record = find_config_for_read(records, profile)
        if organization.is_root:
            policy_record = find_config_for_update(records, profile)
        else:
            policy_record = find_inherited_config(records, profile)

        changes = plan_pull_changes(
            current,
            organization,
            parse_bundle(branding_record.meta) if branding_record else None,
            parse_bundle(policy_record.meta) if policy_record else None,
            locale=preferences.preferences.locale if preferences else None,
        )
        if not changes:
            self.logger.info("Local settings already up to date", user_id=user_id)
            return self._done("pull", "unchanged")

        try:
            await self.store.update_organisation_settings(current.organisation_id, changes)
        except Exception as e:
            self.logger.error("Failed to store pulled settings", user_id=user_id,
                              organisation_id=current.organisation_id, error=str(e))
            return self._done("pull", "failed")

        self.logger.info("Pulled remote settings", user_id=user_id,
                         organisation_id=current.organisation_id, fields=sorted(changes),
                         is_root=organization.is_root)
        return self._done("pull", "success")

    async def push(self, user_id: int, settings: Mapping[str, Any]) -> bool:
        """Publish local settings to the organisation's own record."""
        try:
            access_token = await self.token_manager.require_access_token(user_id)
            profile = await self.remote_client.get_current_user(access_token)
            if profile is None:
                self.logger.warning("No remote user for settings push", user_id=user_id)
                return self._done("push", "failed")

            organization = profile.organization
            values = dict(settings)
            values["branding_logo"] = organization.logo_reference or values.get("branding_logo")
            bundle = build_outbound_bundle(values, scope_for_role(organization.is_root))

            records = await self.remote_client.list_config_records(access_token)
            own_record = find_config_for_update(records, profile)
            record = await self.remote_client.upsert_config(
                access_token, bundle, own_record.id if own_record else None
            )
        except FederationException as e:
            self.logger.warning("Settings push failed", user_id=user_id, code=e.code, error=e.message)
            return self._done("push", "failed")

        self.logger.info("Pushed local settings", user_id=user_id, config_id=record.id,
                         created=own_record is None, is_root=organization.is_root)
        return self._done("push", "success")

    def _done(self, direction: str, outcome: str) -> bool:
        if self.metrics:
            self.metrics.increment_counter("settings_sync_total", direction=direction, outcome=outcome)
        return outcome != "failed"
