"""Domain models for verified payments and their checkout metadata."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from ..organizations.models import MemberSpec

PAID_STATUSES = frozenset({"paid"})

# Metadata keys read for each correlation field, first present wins; the
# browser flow writes camelCase keys. Anything else lands in ``extra``.
_CORRELATION_KEYS: Dict[str, Tuple[str, ...]] = {
    "workspace_name": ("workspace_name", "workspaceName", "name"),
    "admin_email": ("admin_email", "adminEmail"),
    "admin_name": ("admin_name", "adminName"),
    "logo_ref": ("logo_ref", "logoRef"),
    "workspace_id": ("clerk_workspace_id", "workspace_id", "workspaceId"),
}
_CONSUMED_KEYS = frozenset({"members"}.union(*_CORRELATION_KEYS.values()))


class LineItem(BaseModel):
    """A purchased price and its quantity."""

    price_id: str
    quantity: int = Field(default=1, ge=1)
    description: Optional[str] = None
    amount_total: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Discount(BaseModel):
    code: Optional[str] = None
    amount: int = Field(default=0, ge=0)

    model_config = ConfigDict(frozen=True)


class CorrelationPayload(BaseModel):
    """Caller supplied data attached to the checkout session.

    Carries the pending workspace name, the admin contact, the initial member
    list and an optional logo reference. Purchases for an existing workspace
    carry its id instead.
    """

    workspace_name: Optional[str] = Field(default=None, alias="name")
    admin_email: Optional[EmailStr] = None
    admin_name: Optional[str] = None
    members: Tuple[MemberSpec, ...] = Field(default_factory=tuple)
    logo_ref: Optional[str] = None
    workspace_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("workspace_name", "admin_name", "logo_ref", "workspace_id")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @model_validator(mode="after")
    def _unique_member_emails(self) -> "CorrelationPayload":
        seen = set()
        for member in self.members:
            email = member.email.lower()
            if email in seen:
                raise ValueError(f"duplicate member email {email}")
            seen.add(email)
        return self

    @classmethod
    def from_metadata(cls, metadata: Optional[Mapping[str, Any]]) -> "CorrelationPayload":
        """Parse checkout metadata, where nested values arrive JSON encoded.

        Raises ``ValueError`` (or a pydantic ``ValidationError``) for malformed input.
        """

        metadata = dict(metadata or {})
        members_raw = metadata.get("members")
        members: List[Any] = []
        if isinstance(members_raw, str) and members_raw.strip():
            try:
                members = json.loads(members_raw)
            except json.JSONDecodeError as exc:
                raise ValueError("members metadata is not valid JSON") from exc
        elif isinstance(members_raw, list):
            members = members_raw
        if not isinstance(members, list):
            raise ValueError("members metadata must be a list")

        extra: Dict[str, Any] = {}
        for key, value in metadata.items():
            if key in _CONSUMED_KEYS:
                continue
            extra[key] = _maybe_json(value)

        fields: Dict[str, Any] = {}
        for field_name, keys in _CORRELATION_KEYS.items():
            fields[field_name] = next((metadata[key] for key in keys if metadata.get(key)), None)
        return cls(members=tuple(members), extra=extra, **fields)


def _maybe_json(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if not stripped or stripped[0] not in "[{":
        return value
    try:
        return json.loads(stripped)
    except json.JSONDecodeError:
        return value


class PurchaseFact(BaseModel):
    """Immutable facts extracted from a verified, paid transaction."""

    transaction_id: str
    payment_status: str
    payer_email: Optional[str] = None
    payer_name: Optional[str] = None
    amount_total: int = Field(default=0, description="Total in the currency's minor unit.")
    currency: str
    line_items: Tuple[LineItem, ...] = Field(default_factory=tuple)
    discount: Optional[Discount] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None
    invoice_pdf_url: Optional[str] = None
    payment_date: Optional[datetime] = None
    subscription_metadata: Dict[str, str] = Field(default_factory=dict)
    payment_intent_id: Optional[str] = None
    payment_intent_metadata: Dict[str, str] = Field(default_factory=dict)
    correlation: CorrelationPayload = Field(default_factory=CorrelationPayload)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @property
    def amount_major(self) -> float:
        return self.amount_total / 100

    @property
    def primary_price_id(self) -> Optional[str]:
        return self.line_items[0].price_id if self.line_items else None

    @property
    def link_metadata(self) -> Dict[str, str]:
        """Cross-system join keys previously written back to the processor."""

        return {**self.payment_intent_metadata, **self.subscription_metadata}

    @property
    def admin_email(self) -> Optional[str]:
        return self.correlation.admin_email or self.payer_email
