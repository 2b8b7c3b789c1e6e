"""Identity provider client for the Clerk Backend API."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from ..app.organizations.models import LogoFile, TenantRole
from .http import JsonApiClient

_ROLE_NAMES = {
    TenantRole.ADMIN: "org:admin",
    TenantRole.BASIC_MEMBER: "org:member",
}


def _role_from_provider(value: Optional[str]) -> str:
    if value in {"org:admin", "admin"}:
        return TenantRole.ADMIN.value
    return TenantRole.BASIC_MEMBER.value


def _organization(payload: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": payload.get("id"),
        "name": payload.get("name"),
        "image_url": payload.get("image_url"),
        "max_allowed_memberships": payload.get("max_allowed_memberships"),
    }


class ClerkIdentityProvider(JsonApiClient):
    """Organizations, logos, invitations and memberships in Clerk."""

    service = "clerk"

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.clerk.com/v1",
        *,
        timeout: Optional[float] = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url,
            {"Authorization": f"Bearer {secret_key or ''}"},
            timeout=timeout,
            transport=transport,
        )

    async def create_organization(
        self, name: str, max_members: int, metadata: Mapping[str, Any]
    ) -> Mapping[str, Any]:
        payload = await self.request(
            "POST",
            "/organizations",
            json={
                "name": name,
                "max_allowed_memberships": max_members,
                "private_metadata": dict(metadata),
            },
        )
        return _organization(payload)

    async def get_organization(self, organization_id: str) -> Optional[Mapping[str, Any]]:
        payload = await self.request("GET", f"/organizations/{organization_id}", allow_not_found=True)
        if payload is None:
            return None
        return _organization(payload)

    async def upload_organization_logo(self, organization_id: str, logo: LogoFile) -> Mapping[str, Any]:
        payload = await self.request(
            "PUT",
            f"/organizations/{organization_id}/logo",
            files={"file": (logo.filename, logo.content, logo.content_type)},
        )
        return _organization(payload)

    async def create_membership_invitation(
        self, organization_id: str, email: str, role: TenantRole
    ) -> Mapping[str, Any]:
        payload = await self.request(
            "POST",
            f"/organizations/{organization_id}/invitations",
            json={"email_address": email, "role": _ROLE_NAMES[TenantRole(role)]},
        )
        return {"id": payload.get("id"), "status": payload.get("status")}

    async def get_organization_membership_list(self, organization_id: str) -> Sequence[Mapping[str, Any]]:
        payload = await self.request(
            "GET", f"/organizations/{organization_id}/memberships", params={"limit": 100}
        )
        memberships: List[Dict[str, Any]] = []
        for entry in payload.get("data") or []:
            user = entry.get("public_user_data") or {}
            memberships.append(
                {
                    "email": (user.get("identifier") or "").lower() or None,
                    "role": _role_from_provider(entry.get("role")),
                    "user_id": user.get("user_id"),
                }
            )
        return memberships
