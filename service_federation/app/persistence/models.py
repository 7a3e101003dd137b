"""
Local data models for the federation engine.
"""

from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, Optional


class DocumentVisibility(str, Enum):
    """Who may see an organisation's documents by default."""
    EVERYONE = "EVERYONE"
    MANAGER_AND_ABOVE = "MANAGER_AND_ABOVE"
    ADMIN = "ADMIN"


@dataclass
class ProviderCredential:
    """Provider tokens linked to one local user.

    ``expires_at`` is epoch seconds; 0 means the provider did not say.
    """
    user_id: int
    provider: str
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: int = 0
    provider_account_id: Optional[str] = None


@dataclass
class LocalUser:
    id: int
    email: str
    name: Optional[str] = None


@dataclass
class OrganisationSettings:
    """Settings row of one local organisation.

    ``None`` means the field was never set locally.
    """
    organisation_id: int
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
    email_reply_to: Optional[str] = None
    branding_enabled: Optional[bool] = None
    branding_logo: Optional[str] = None
    branding_company_details: Optional[str] = None
    # True when branding_logo was filled in from the provider organisation.
    branding_logo_derived: bool = False

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OrganisationSettings":
        names = {f.name for f in fields(cls)}
        values = {key: row[key] for key in row.keys() if key in names}
        if values.get("document_visibility") is not None:
            values["document_visibility"] = DocumentVisibility(values["document_visibility"])
        return cls(**values)


@dataclass
class RecipientRecord:
    """A name/email pair drawn from local history or team membership."""
    email: str
    name: Optional[str] = None


@dataclass
class NewFederatedUser:
    """Everything needed to provision a local user on first federation login."""
    email: str
    name: str
    provider: str
    provider_account_id: str
    access_token: str
    expires_at: int = 0
    organisation_name: str = "Organisation"
