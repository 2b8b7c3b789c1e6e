"""Typed representations of provisioned workspaces and their members."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

MAX_LOGO_BYTES = 10 * 1024 * 1024
ALLOWED_LOGO_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp"})


class TenantRole(str, Enum):
    """Roles a member can hold inside a workspace."""

    ADMIN = "admin"
    BASIC_MEMBER = "basic_member"


class MemberSpec(BaseModel):
    """A member requested at checkout time."""

    email: EmailStr
    name: Optional[str] = None
    role: TenantRole = TenantRole.BASIC_MEMBER

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class Tenant(BaseModel):
    """Workspace created in the identity provider for a purchase."""

    tenant_id: str = Field(description="Identifier assigned by the identity provider.")
    name: str
    admin_email: EmailStr
    members: Tuple[MemberSpec, ...] = Field(default_factory=tuple)
    logo_ref: Optional[str] = None
    image_url: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class MemberInvitation(BaseModel):
    """An invitation to be sent for a freshly provisioned workspace."""

    email: EmailStr
    role: TenantRole
    name: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvitationResult(BaseModel):
    """Per-invitation outcome; a failed invitation never aborts the batch."""

    invitation: MemberInvitation
    succeeded: bool
    invitation_id: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class LogoFile(BaseModel):
    """Logo asset to attach to a workspace."""

    filename: str
    content_type: str
    content: bytes

    model_config = ConfigDict(frozen=True)

    @property
    def size(self) -> int:
        return len(self.content)

    def validation_error(self) -> Optional[str]:
        """Return a human readable reason the logo is unusable, if any."""

        if self.content_type not in ALLOWED_LOGO_TYPES:
            return f"unsupported logo type {self.content_type!r}"
        if self.size == 0:
            return "logo file is empty"
        if self.size > MAX_LOGO_BYTES:
            return "logo file exceeds 10MB"
        return None
