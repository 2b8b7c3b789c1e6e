from __future__ import annotations

import asyncio

import pytest

from backend.app.checkout.exceptions import DuplicateTenantName, TenantCreationFailed, TenantNameInvalid
from backend.app.checkout.models import WorkflowStep
from backend.app.organizations.models import LogoFile, MemberSpec, TenantRole
from backend.app.organizations.service import TenantProvisioner, plan_invitations, validate_tenant_name
from backend.integrations.errors import IntegrationError
from backend.tests.fakes import FakeIdentityProvider, FakeLogoStore

PNG = LogoFile(filename="logo.png", content_type="image/png", content=b"\x89PNG....")


@pytest.fixture
def provisioner_components():
    identity = FakeIdentityProvider()
    logos = FakeLogoStore()
    provisioner = TenantProvisioner(identity=identity, logo_store=logos, max_members=25, retry_backoff=0.0)
    return provisioner, identity, logos


@pytest.mark.parametrize("name", ["", "   ", "x" * 257, "<script>", "Acme > Co"])
def test_invalid_names_are_rejected(name):
    with pytest.raises(TenantNameInvalid):
        validate_tenant_name(name)


def test_name_is_trimmed_and_may_be_256_characters():
    assert validate_tenant_name("  Acme  ") == "Acme"
    assert validate_tenant_name("a" * 256) == "a" * 256


def test_admin_is_invited_first_and_only_once():
    members = [
        MemberSpec(email="ana@example.com"),
        MemberSpec(email="Owner@example.com"),
        MemberSpec(email="bo@example.com", role=TenantRole.ADMIN),
    ]

    invitations = plan_invitations("owner@example.com", members)

    assert [(inv.email, inv.role) for inv in invitations] == [
        ("owner@example.com", TenantRole.ADMIN),
        ("ana@example.com", TenantRole.BASIC_MEMBER),
        ("bo@example.com", TenantRole.ADMIN),
    ]


@pytest.mark.anyio
async def test_create_tenant_tags_origin_and_caps_members(provisioner_components):
    provisioner, identity, _ = provisioner_components

    tenant = await provisioner.create_tenant(
        " Acme Research ",
        "owner@example.com",
        [MemberSpec(email="ana@example.com")],
        "https://cdn.example.com/logo.png",
        metadata={"checkout_session_id": "cs_1"},
    )

    assert tenant.tenant_id == "org_1"
    assert tenant.name == "Acme Research"
    assert tenant.logo_ref == "https://cdn.example.com/logo.png"
    name, max_members, metadata = identity.created[0]
    assert (name, max_members) == ("Acme Research", 25)
    assert metadata == {"created_from": "self-serve", "checkout_session_id": "cs_1"}


@pytest.mark.anyio
async def test_duplicate_name_maps_to_conflict(provisioner_components):
    provisioner, identity, _ = provisioner_components
    await provisioner.create_tenant("Acme", "owner@example.com")

    with pytest.raises(DuplicateTenantName) as excinfo:
        await provisioner.create_tenant("Acme", "other@example.com")

    assert excinfo.value.status_code == 409
    assert len(identity.created) == 1


@pytest.mark.anyio
async def test_provider_failure_is_not_retried(provisioner_components):
    provisioner, identity, _ = provisioner_components
    identity.create_error = IntegrationError("clerk", "unavailable", status_code=503)

    with pytest.raises(TenantCreationFailed) as excinfo:
        await provisioner.create_tenant("Acme", "owner@example.com")

    assert excinfo.value.status_code == 500
    assert identity.created == []


@pytest.mark.anyio
async def test_slow_provider_times_out():
    class SlowIdentityProvider(FakeIdentityProvider):
        async def create_organization(self, name, max_members, metadata):
            await asyncio.sleep(1)
            return await super().create_organization(name, max_members, metadata)

    provisioner = TenantProvisioner(identity=SlowIdentityProvider(), timeout=0.01)

    with pytest.raises(TenantCreationFailed):
        await provisioner.create_tenant("Acme", "owner@example.com")


@pytest.mark.anyio
async def test_logo_is_fetched_and_uploaded(provisioner_components):
    provisioner, identity, logos = provisioner_components
    logos.logos["ref-1"] = PNG

    failure = await provisioner.attach_logo("org_1", "ref-1")

    assert failure is None
    assert identity.logos == [("org_1", PNG)]


@pytest.mark.parametrize(
    "logo",
    [
        LogoFile(filename="logo.svg", content_type="image/svg+xml", content=b"<svg/>"),
        LogoFile(filename="huge.png", content_type="image/png", content=b"0" * (10 * 1024 * 1024 + 1)),
        LogoFile(filename="empty.png", content_type="image/png", content=b""),
    ],
)
@pytest.mark.anyio
async def test_unusable_logo_is_a_step_failure(provisioner_components, logo):
    provisioner, identity, _ = provisioner_components

    failure = await provisioner.attach_logo("org_1", logo)

    assert failure is not None
    assert failure.step == WorkflowStep.ATTACH_LOGO
    assert failure.degraded is True
    assert identity.logos == []


@pytest.mark.anyio
async def test_missing_logo_reference_never_raises(provisioner_components):
    provisioner, _, _ = provisioner_components

    failure = await provisioner.attach_logo("org_1", "ref-missing")

    assert failure is not None
    assert "ref-missing" in failure.message


@pytest.mark.anyio
async def test_each_invitation_is_independent(provisioner_components):
    provisioner, identity, _ = provisioner_components
    identity.failing_invitations = {"ana@example.com"}
    invitations = plan_invitations(
        "owner@example.com", [MemberSpec(email="ana@example.com"), MemberSpec(email="bo@example.com")]
    )

    results = await provisioner.invite_members("org_1", invitations)

    assert [(result.invitation.email, result.succeeded) for result in results] == [
        ("owner@example.com", True),
        ("ana@example.com", False),
        ("bo@example.com", True),
    ]
    assert results[1].error
    assert [email for _, email, _ in identity.invitations] == ["owner@example.com", "bo@example.com"]


@pytest.mark.anyio
async def test_existing_members_are_not_invited_again(provisioner_components):
    provisioner, identity, _ = provisioner_components
    identity.memberships["org_1"] = [{"email": "owner@example.com", "role": "admin"}]

    results = await provisioner.invite_members(
        "org_1", plan_invitations("owner@example.com", [MemberSpec(email="ana@example.com")])
    )

    assert all(result.succeeded for result in results)
    assert [email for _, email, _ in identity.invitations] == ["ana@example.com"]


@pytest.mark.anyio
async def test_lookup_tenant_name(provisioner_components):
    provisioner, _, _ = provisioner_components
    tenant = await provisioner.create_tenant("Acme", "owner@example.com")

    assert await provisioner.lookup_tenant_name(tenant.tenant_id) == "Acme"
    assert await provisioner.lookup_tenant_name("org_unknown") is None
