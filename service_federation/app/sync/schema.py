"""
Mapping between local organisation settings and the provider settings bundle.
"""

from typing import AbstractSet, Any, Dict, FrozenSet, Mapping, Optional

from pydantic import BaseModel, ConfigDict, EmailStr

from ..persistence.models import DocumentVisibility
from ..remote.models import (
    BrandingSection,
    CertificateSettingsSection,
    DocumentDefaultsSection,
    EmailSettingsSection,
    SettingsBundle,
    SignatureSettingsSection,
)


BRANDING_FIELDS: FrozenSet[str] = frozenset({
    "branding_enabled",
    "branding_logo",
    "branding_company_details",
})
DOCUMENT_DEFAULT_FIELDS: FrozenSet[str] = frozenset({
    "document_language",
    "document_timezone",
    "document_date_format",
    "document_visibility",
})
SIGNATURE_FIELDS = (
    "typed_signature_enabled",
    "upload_signature_enabled",
    "draw_signature_enabled",
)
CERTIFICATE_FIELDS: FrozenSet[str] = frozenset({
    "include_sender_details",
    "include_signing_certificate",
    "include_audit_log",
})
EMAIL_FIELDS: FrozenSet[str] = frozenset({"email_reply_to"})

POLICY_FIELDS: FrozenSet[str] = (
    DOCUMENT_DEFAULT_FIELDS | frozenset(SIGNATURE_FIELDS) | CERTIFICATE_FIELDS | EMAIL_FIELDS
)


def scope_for_role(is_root: bool) -> FrozenSet[str]:
    """Local fields an organisation may publish to its own settings record.

    Branding is always per-tenant. Document-wide policy belongs to the root
    organisation only.
    """
    if is_root:
        return BRANDING_FIELDS | POLICY_FIELDS
    return BRANDING_FIELDS


class SettingsPatch(BaseModel):
    """A local administrator edit of organisation settings."""

    model_config = ConfigDict(extra="forbid")

    document_language: Optional[str] = None
    document_timezone: Optional[str] = None
    document_date_format: Optional[str] = None
    document_visibility: Optional[DocumentVisibility] = None
    typed_signature_enabled: Optional[bool] = None
    upload_signature_enabled: Optional[bool] = None
    draw_signature_enabled: Optional[bool] = None
    include_sender_details: Optional[bool] = None
    include_signing_certificate: Optional[bool] = None
    include_audit_log: Optional[bool] = None
    email_reply_to: Optional[EmailStr] = None
    branding_enabled: Optional[bool] = None
    branding_logo: Optional[str] = None
    branding_company_details: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        """Only the fields the caller actually sent."""
        return self.model_dump(exclude_unset=True)


def parse_visibility(value: Any) -> Optional[DocumentVisibility]:
    """Map a remote visibility string, ignoring values we do not know."""
    if value is None:
        return None
    try:
        return DocumentVisibility(str(value).upper())
    except ValueError:
        return None


def _wire(value: Any) -> Any:
    return value.value if isinstance(value, DocumentVisibility) else value


def build_outbound_bundle(values: Mapping[str, Any], allowed: AbstractSet[str]) -> SettingsBundle:
    """Build the bundle to publish from local values, restricted to ``allowed`` fields."""
    scoped = {
        field: _wire(value)
        for field, value in values.items()
        if field in allowed and value is not None
    }

    def section(model, mapping: Dict[str, str]):
        data = {attr: scoped[field] for field, attr in mapping.items() if field in scoped}
        return model(**data) if data else None

    return SettingsBundle(
        branding=section(BrandingSection, {
            "branding_enabled": "enabled",
            "branding_logo": "logo",
            "branding_company_details": "company_name",
        }),
        document_defaults=section(DocumentDefaultsSection, {
            "document_language": "language",
            "document_timezone": "timezone",
            "document_date_format": "date_format",
            "document_visibility": "document_visibility",
        }),
        signature_settings=section(SignatureSettingsSection, {
            field: field for field in SIGNATURE_FIELDS
        }),
        certificate_settings=section(CertificateSettingsSection, {
            field: field for field in CERTIFICATE_FIELDS
        }),
        email_settings=section(EmailSettingsSection, {
            "email_reply_to": "reply_to_email",
        }),
    )


def parse_bundle(meta: Optional[Mapping[str, Any]]) -> Optional[SettingsBundle]:
    """Parse a record's ``meta``; anything unparseable counts as no bundle."""
    if not meta:
        return None
    try:
        return SettingsBundle.model_validate(meta)
    except ValueError:
        return None
