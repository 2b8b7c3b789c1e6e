"""Provisioning of workspaces in the identity provider."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

from ...integrations.errors import IntegrationError
from ..checkout.calls import bounded, retry_idempotent
from ..checkout.exceptions import DuplicateTenantName, TenantCreationFailed, TenantNameInvalid
from ..checkout.models import StepFailure, WorkflowStep
from .models import InvitationResult, LogoFile, MemberInvitation, MemberSpec, Tenant, TenantRole

logger = logging.getLogger("organizations")

MAX_NAME_LENGTH = 256
CREATED_FROM = "self-serve"


class IdentityProvider(Protocol):
    """Organization operations offered by the identity provider."""

    async def create_organization(
        self, name: str, max_members: int, metadata: Mapping[str, Any]
    ) -> Mapping[str, Any]:
        """Create an organization and return ``{id, name, image_url}``."""

    async def get_organization(self, organization_id: str) -> Optional[Mapping[str, Any]]:
        ...

    async def upload_organization_logo(self, organization_id: str, logo: LogoFile) -> Mapping[str, Any]:
        ...

    async def create_membership_invitation(
        self, organization_id: str, email: str, role: TenantRole
    ) -> Mapping[str, Any]:
        ...

    async def get_organization_membership_list(self, organization_id: str) -> Sequence[Mapping[str, Any]]:
        """Return memberships as mappings carrying at least ``email`` and ``role``."""


class LogoStore(Protocol):
    """Resolves a logo reference from checkout metadata into file content."""

    async def fetch(self, logo_ref: str) -> LogoFile:
        ...


def validate_tenant_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise TenantNameInvalid(message="Workspace name is required")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise TenantNameInvalid(message=f"Workspace name must be at most {MAX_NAME_LENGTH} characters")
    if "<" in cleaned or ">" in cleaned:
        raise TenantNameInvalid(message="Workspace name cannot contain HTML tags")
    return cleaned


def plan_invitations(admin_email: str, members: Iterable[MemberSpec]) -> List[MemberInvitation]:
    """Admin first with the admin role, then every other member once."""

    invitations = [MemberInvitation(email=admin_email, role=TenantRole.ADMIN)]
    seen = {admin_email.lower()}
    for member in members:
        email = member.email.lower()
        if email in seen:
            continue
        seen.add(email)
        invitations.append(MemberInvitation(email=member.email, role=member.role, name=member.name))
    return invitations


@dataclass
class TenantProvisioner:
    """Creates a workspace, attaches its logo and invites its members.

    Workspace creation is a single call that is never retried, since a retry
    after an unobserved success would create a second workspace. Logo and
    invitations are best-effort and never raise.
    """

    identity: IdentityProvider
    logo_store: Optional[LogoStore] = None
    max_members: int = 100
    timeout: Optional[float] = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5

    async def create_tenant(
        self,
        name: Optional[str],
        admin_email: str,
        members: Sequence[MemberSpec] = (),
        logo_ref: Optional[str] = None,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Tenant:
        cleaned = validate_tenant_name(name)
        org_metadata = {"created_from": CREATED_FROM, **dict(metadata or {})}
        try:
            organization = await bounded(
                self.identity.create_organization(cleaned, self.max_members, org_metadata),
                self.timeout,
            )
        except IntegrationError as exc:
            if exc.is_conflict:
                raise DuplicateTenantName(detail={"name": cleaned}) from exc
            logger.error("Workspace creation failed: %s", exc.message, extra={"workspace_name": cleaned})
            raise TenantCreationFailed() from exc
        except asyncio.TimeoutError as exc:
            # The organization may still have been created; it is not retried.
            logger.error("Workspace creation timed out", extra={"workspace_name": cleaned})
            raise TenantCreationFailed(message="Workspace creation timed out") from exc

        tenant = Tenant(
            tenant_id=organization["id"],
            name=organization.get("name") or cleaned,
            admin_email=admin_email,
            members=tuple(members),
            logo_ref=logo_ref,
            image_url=organization.get("image_url"),
        )
        logger.info(
            "Workspace %s created",
            tenant.tenant_id,
            extra={"tenant_id": tenant.tenant_id, "transaction_id": org_metadata.get("checkout_session_id")},
        )
        return tenant

    async def attach_logo(self, tenant_id: str, logo: Union[LogoFile, str]) -> Optional[StepFailure]:
        try:
            if isinstance(logo, str):
                logo = await self._fetch_logo(logo)
            problem = logo.validation_error()
            if problem:
                return self._logo_failure(tenant_id, problem)
            await bounded(self.identity.upload_organization_logo(tenant_id, logo), self.timeout)
        except Exception as exc:
            return self._logo_failure(tenant_id, str(exc) or exc.__class__.__name__)
        return None

    async def invite_members(
        self, tenant_id: str, invitations: Sequence[MemberInvitation]
    ) -> List[InvitationResult]:
        existing = await self._existing_member_emails(tenant_id)
        results: List[InvitationResult] = []
        for invitation in invitations:
            if invitation.email.lower() in existing:
                results.append(InvitationResult(invitation=invitation, succeeded=True))
                continue
            try:
                response = await bounded(
                    self.identity.create_membership_invitation(tenant_id, invitation.email, invitation.role),
                    self.timeout,
                )
            except Exception as exc:
                logger.warning(
                    "Invitation failed for workspace %s",
                    tenant_id,
                    extra={"tenant_id": tenant_id, "step": WorkflowStep.INVITE_MEMBERS.value, "error": str(exc)},
                )
                results.append(
                    InvitationResult(invitation=invitation, succeeded=False, error=str(exc) or exc.__class__.__name__)
                )
                continue
            results.append(InvitationResult(invitation=invitation, succeeded=True, invitation_id=response.get("id")))
        return results

    async def lookup_tenant_name(self, tenant_id: str) -> Optional[str]:
        try:
            organization = await retry_idempotent(
                lambda: self.identity.get_organization(tenant_id),
                description="get_organization",
                logger=logger,
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                timeout=self.timeout,
            )
        except (IntegrationError, asyncio.TimeoutError):
            logger.warning("Could not fetch workspace details for %s", tenant_id, extra={"tenant_id": tenant_id})
            return None
        if not organization:
            return None
        return organization.get("name")

    async def _fetch_logo(self, logo_ref: str) -> LogoFile:
        if self.logo_store is None:
            raise LookupError("no logo store configured")
        return await retry_idempotent(
            lambda: self.logo_store.fetch(logo_ref),
            description="fetch_logo",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )

    async def _existing_member_emails(self, tenant_id: str) -> set:
        try:
            memberships = await retry_idempotent(
                lambda: self.identity.get_organization_membership_list(tenant_id),
                description="get_organization_membership_list",
                logger=logger,
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                timeout=self.timeout,
            )
        except (IntegrationError, asyncio.TimeoutError):
            return set()
        return {str(entry.get("email", "")).lower() for entry in memberships if entry.get("email")}

    def _logo_failure(self, tenant_id: str, message: str) -> StepFailure:
        logger.warning(
            "Logo upload failed for workspace %s: %s",
            tenant_id,
            message,
            extra={"tenant_id": tenant_id, "step": WorkflowStep.ATTACH_LOGO.value},
        )
        return StepFailure(step=WorkflowStep.ATTACH_LOGO, message=message)
