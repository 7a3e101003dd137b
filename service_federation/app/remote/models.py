"""
Wire models for the identity provider's resource API.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RemoteModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RemoteAttachment(RemoteModel):
    id: Optional[int] = None
    url: Optional[str] = None
    link: Optional[str] = None
    filename: Optional[str] = None

    @property
    def href(self) -> Optional[str]:
        """Download link, falling back to the stored url."""
        return self.link or self.url

    @property
    def reference(self) -> Optional[str]:
        """Stored url, the form kept in settings records."""
        return self.url or self.link


class RemoteOrganization(RemoteModel):
    id: int
    name: Optional[str] = None
    logo: Optional[RemoteAttachment] = None
    parent_organization: Optional["RemoteOrganization"] = Field(default=None, alias="parentOrganization")

    @property
    def is_root(self) -> bool:
        """A root organisation has no parent and owns document-wide policy."""
        return self.parent_organization is None

    @property
    def logo_url(self) -> Optional[str]:
        return self.logo.href if self.logo else None

    @property
    def logo_reference(self) -> Optional[str]:
        return self.logo.reference if self.logo else None


RemoteOrganization.model_rebuild()


class RemoteUserDetails(RemoteModel):
    id: Optional[int] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    full_name: Optional[str] = Field(default=None, alias="fullName")
    avatar: Optional[RemoteAttachment] = None

    @property
    def display_name(self) -> Optional[str]:
        if self.full_name:
            return self.full_name
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or None


class RemoteRole(RemoteModel):
    id: Optional[int] = None
    name: Optional[str] = None


class RemoteCurrentUser(RemoteModel):
    """Response of ``GET /auth/me``."""
    id: int
    email: str
    user: Optional[RemoteUserDetails] = None
    organization: RemoteOrganization
    role: Optional[RemoteRole] = None
    is_admin_user: Optional[bool] = Field(default=None, alias="isAdminUser")


class RemoteOrganizationRef(RemoteModel):
    id: Optional[int] = None
    name: Optional[str] = None


class RemoteUserListItem(RemoteModel):
    """One entry of ``GET /users``."""
    id: Optional[int] = None
    email: str
    status: Optional[str] = None
    user: Optional[RemoteUserDetails] = None
    organization: Optional[RemoteOrganizationRef] = None


class RemoteUserPage(RemoteModel):
    data: List[RemoteUserListItem] = Field(default_factory=list)
    count: int = 0


class PreferencesBody(BaseModel):
    model_config = ConfigDict(extra="allow")

    locale: Optional[str] = None


class RemoteUserPreferences(RemoteModel):
    """Response of ``GET /user-preferences``."""
    id: Optional[int] = None
    preferences: PreferencesBody = Field(default_factory=PreferencesBody)


# Settings bundle stored in the ``meta`` of a config record

class BrandingSection(RemoteModel):
    enabled: Optional[bool] = None
    logo: Optional[str] = None
    company_name: Optional[str] = Field(default=None, alias="companyName")


class DocumentDefaultsSection(RemoteModel):
    language: Optional[str] = None
    timezone: Optional[str] = None
    date_format: Optional[str] = Field(default=None, alias="dateFormat")
    document_visibility: Optional[str] = Field(default=None, alias="documentVisibility")


class SignatureSettingsSection(RemoteModel):
    typed_signature_enabled: Optional[bool] = Field(default=None, alias="typedSignatureEnabled")
    upload_signature_enabled: Optional[bool] = Field(default=None, alias="uploadSignatureEnabled")
    draw_signature_enabled: Optional[bool] = Field(default=None, alias="drawSignatureEnabled")


class CertificateSettingsSection(RemoteModel):
    include_sender_details: Optional[bool] = Field(default=None, alias="includeSenderDetails")
    include_signing_certificate: Optional[bool] = Field(default=None, alias="includeSigningCertificate")
    include_audit_log: Optional[bool] = Field(default=None, alias="includeAuditLog")


class EmailSettingsSection(RemoteModel):
    reply_to_email: Optional[str] = Field(default=None, alias="replyToEmail")


class SettingsBundle(RemoteModel):
    branding: Optional[BrandingSection] = None
    document_defaults: Optional[DocumentDefaultsSection] = Field(default=None, alias="documentDefaults")
    signature_settings: Optional[SignatureSettingsSection] = Field(default=None, alias="signatureSettings")
    certificate_settings: Optional[CertificateSettingsSection] = Field(default=None, alias="certificateSettings")
    email_settings: Optional[EmailSettingsSection] = Field(default=None, alias="emailSettings")

    def to_payload(self) -> Dict[str, Any]:
        """Serialize with provider field names, dropping undefined values and empty sections."""
        payload = self.model_dump(by_alias=True, exclude_none=True)
        return {section: values for section, values in payload.items() if values}


class RemoteConfigRecord(RemoteModel):
    """A ``/configs`` resource; ``meta`` holds the settings bundle."""
    id: int
    uuid: Optional[str] = None
    identifier: Optional[str] = None
    organization_id: Optional[int] = Field(default=None, alias="organizationId")
    meta: Optional[Dict[str, Any]] = None
