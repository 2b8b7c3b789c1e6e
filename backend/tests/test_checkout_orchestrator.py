from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timezone

import pytest

from backend.app.checkout.models import OrchestratorState, WorkflowStatus, WorkflowStep
from backend.app.checkout.orchestrator import newly_activated
from backend.app.organizations.models import LogoFile, TenantRole
from backend.integrations.errors import IntegrationError
from backend.tests.fakes import build_harness, make_session


def _subscription(**overrides):
    subscription = {
        "id": "sub_9",
        "status": "active",
        "currency": "usd",
        "latest_invoice": "in_9",
        "metadata": {"clerk_workspace_id": "org_1"},
        "items": {"data": [{"price": {"id": "price_pro_cs_monthly"}}]},
    }
    subscription.update(overrides)
    return subscription


@pytest.mark.anyio
async def test_completed_checkout_provisions_an_entitled_workspace(harness):
    harness.gateway.add_session(make_session("cs_1"))

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.tenant_id == "org_1"
    assert outcome.workspace_name == "Acme Research"
    assert outcome.plan_key == "CLP-PRO-CS"
    assert outcome.replayed is False
    assert outcome.failed_steps == ()
    assert outcome.join_keys.subscription_id == "sub_1"
    assert outcome.join_keys.invoice_id == "in_1"
    assert outcome.trail == (
        OrchestratorState.IDLE,
        OrchestratorState.VERIFYING,
        OrchestratorState.PROVISIONING,
        OrchestratorState.SYNCING,
        OrchestratorState.FINALIZING,
        OrchestratorState.SUCCEEDED,
    )

    _, _, org_metadata = harness.identity.created[0]
    assert org_metadata["checkout_session_id"] == "cs_1"
    assert [(email, role) for _, email, role in harness.identity.invitations] == [
        ("owner@example.com", TenantRole.ADMIN),
        ("ana@example.com", TenantRole.BASIC_MEMBER),
    ]
    assert harness.gateway.subscriptions["sub_1"]["metadata"] == {
        "clerk_workspace_id": "org_1",
        "clerk_org_id": "org_1",
        "checkout_session_id": "cs_1",
        "entitlements_applied": "in_1",
    }
    assert harness.entitlements.names() == ["set_limits", "set_usage_cycle", "adjust_usage", "set_access"]
    assert harness.entitlements.access == {"org_1": True}
    assert outcome.crm_linkage.full_product is not None
    assert harness.crm.of("workspaces")[0]["values"]["entitlements_applied"] == "in_1"


@pytest.mark.anyio
async def test_logo_is_attached_when_referenced(harness):
    harness.logos.logos["ref-1"] = LogoFile(filename="logo.png", content_type="image/png", content=b"png")
    session = make_session("cs_1")
    session["metadata"]["logo_ref"] = "ref-1"
    harness.gateway.add_session(session)

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.is_success
    assert [tenant_id for tenant_id, _ in harness.identity.logos] == ["org_1"]


@pytest.mark.anyio
async def test_degraded_steps_become_warnings(harness):
    session = make_session("cs_1")
    session["metadata"]["logo_ref"] = "ref-missing"
    harness.gateway.add_session(session)
    harness.identity.failing_invitations = {"ana@example.com"}
    harness.crm.fail_on = "deals"

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert {failure.step for failure in outcome.warnings} == {
        WorkflowStep.ATTACH_LOGO,
        WorkflowStep.INVITE_MEMBERS,
        WorkflowStep.CRM_SYNC,
    }
    assert outcome.failed(WorkflowStep.INVITE_MEMBERS).sub_step == "ana@example.com"
    assert outcome.failed(WorkflowStep.CRM_SYNC).sub_step == "create_deal"
    assert outcome.crm_linkage.workspace.target_record_id == "workspaces_1"
    assert outcome.crm_linkage.deal is None
    assert harness.entitlements.access == {"org_1": True}
    assert harness.crm.of("workspaces")[0]["values"]["entitlements_applied"] == "in_1"


@pytest.mark.anyio
async def test_metadata_write_failure_does_not_fail_the_run(harness):
    harness.gateway.add_session(make_session("cs_1"))
    harness.gateway.metadata_failure = IntegrationError("stripe", "unavailable", status_code=503)

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.failed(WorkflowStep.LINK_SUBSCRIPTION) is not None
    assert outcome.failed(WorkflowStep.MARK_PROVISIONED) is not None


@pytest.mark.anyio
async def test_entitlement_failure_is_a_partial_failure(harness):
    harness.gateway.add_session(make_session("cs_1"))
    harness.entitlements.fail("set_limits")

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.PARTIALLY_FAILED
    assert outcome.tenant_id == "org_1"
    assert outcome.reason_code == "entitlement_apply_failed"
    assert "org_1" in outcome.reason
    failure = outcome.failed(WorkflowStep.ENTITLEMENT_APPLY)
    assert failure.degraded is False
    assert failure.sub_step == "set_limits"
    assert outcome.trail[-1] == OrchestratorState.PARTIALLY_FAILED
    assert "set_access" not in harness.entitlements.names()
    assert harness.entitlements.access == {}
    assert "entitlements_applied" not in harness.gateway.subscriptions["sub_1"]["metadata"]


@pytest.mark.parametrize(
    "session, reason_code, http_status",
    [
        (make_session("cs_x", payment_status="unpaid"), "payment_not_paid", 400),
        (make_session("cs_x", payment_status="no_payment_required"), "payment_not_paid", 400),
        (make_session("cs_x", price_id="price_unknown"), "unknown_plan", 400),
        (None, "payment_not_found", 404),
    ],
)
@pytest.mark.anyio
async def test_rejected_checkouts_have_no_side_effects(harness, session, reason_code, http_status):
    if session is not None:
        harness.gateway.add_session(session)

    outcome = await harness.orchestrator.run("cs_x")

    assert outcome.status == WorkflowStatus.REJECTED
    assert outcome.reason_code == reason_code
    assert outcome.http_status == http_status
    assert outcome.tenant_id is None
    assert outcome.trail == (OrchestratorState.IDLE, OrchestratorState.VERIFYING, OrchestratorState.REJECTED)
    assert harness.identity.created == []
    assert harness.entitlements.calls == []


@pytest.mark.anyio
async def test_duplicate_workspace_name_is_rejected(harness):
    harness.identity.organizations["org_0"] = {"id": "org_0", "name": "Acme Research"}
    harness.gateway.add_session(make_session("cs_1"))

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.REJECTED
    assert outcome.http_status == 409
    assert outcome.trail[-2:] == (OrchestratorState.PROVISIONING, OrchestratorState.REJECTED)
    assert harness.identity.created == []
    assert harness.entitlements.calls == []


@pytest.mark.anyio
async def test_replay_reuses_linked_workspace_without_granting_usage_again(harness):
    harness.gateway.add_session(make_session("cs_1"))
    await harness.orchestrator.run("cs_1")
    first_anchor = harness.entitlements.calls[1][2]["limitResetAnchor"]
    harness.entitlements.calls.clear()
    harness.orchestrator.clock = lambda: datetime(2024, 9, 1, tzinfo=timezone.utc)

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.replayed is True
    assert outcome.tenant_id == "org_1"
    assert outcome.workspace_name == "Acme Research"
    assert len(harness.identity.created) == 1
    assert harness.entitlements.names() == ["set_limits", "set_usage_cycle", "set_access"]
    assert harness.entitlements.calls[1][2]["limitResetAnchor"] == first_anchor
    assert outcome.trail == (
        OrchestratorState.IDLE,
        OrchestratorState.VERIFYING,
        OrchestratorState.FINALIZING,
        OrchestratorState.SUCCEEDED,
    )


@pytest.mark.anyio
async def test_replay_after_failed_grant_retries_usage(harness):
    harness.gateway.add_session(make_session("cs_1"))
    harness.entitlements.fail("set_access", times=2)
    first = await harness.orchestrator.run("cs_1")
    assert first.status == WorkflowStatus.PARTIALLY_FAILED
    harness.entitlements.calls.clear()

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.replayed is True
    assert harness.entitlements.names() == ["set_limits", "set_usage_cycle", "adjust_usage", "set_access"]
    assert harness.gateway.subscriptions["sub_1"]["metadata"]["entitlements_applied"] == "in_1"


@pytest.mark.anyio
async def test_one_time_purchase_replay_is_found_through_the_crm(harness):
    harness.gateway.add_session(make_session("cs_once", price_id="price_project_pack", subscription_id=None))
    await harness.orchestrator.run("cs_once")
    harness.entitlements.calls.clear()

    outcome = await harness.orchestrator.run("cs_once")

    assert outcome.replayed is True
    assert outcome.tenant_id == "org_1"
    assert len(harness.identity.created) == 1
    assert "adjust_usage" not in harness.entitlements.names()


@pytest.mark.anyio
async def test_crm_lookup_failure_does_not_block_provisioning(harness):
    harness.gateway.add_session(make_session("cs_1"))
    harness.crm.query_error = IntegrationError("attio", "unavailable", status_code=503)

    outcome = await harness.orchestrator.run("cs_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.tenant_id == "org_1"


@pytest.mark.anyio
async def test_purchase_for_existing_workspace_tops_up_usage(harness):
    harness.identity.organizations["org_9"] = {"id": "org_9", "name": "Existing Co"}
    harness.gateway.add_session(
        make_session(
            "cs_top",
            price_id="price_chat_pack",
            quantity=2,
            subscription_id=None,
            payment_intent_id="pi_1",
            metadata={"clerk_workspace_id": "org_9"},
        )
    )

    outcome = await harness.orchestrator.run("cs_top")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.tenant_id == "org_9"
    assert outcome.workspace_name == "Existing Co"
    assert harness.identity.created == []
    assert harness.entitlements.calls == [
        ("adjust_usage", "org_9", {"chatMessageUsage": {"delta": 100, "direction": "increment"}})
    ]
    assert harness.gateway.payment_intents["pi_1"]["metadata"] == {"entitlements_applied": "cs_top"}

    again = await harness.orchestrator.run("cs_top")

    assert again.replayed is True
    assert len(harness.entitlements.calls) == 1


@pytest.mark.anyio
async def test_subscription_activation_grants_plan(harness):
    subscription = _subscription()
    harness.gateway.subscriptions["sub_9"] = copy.deepcopy(subscription)

    outcome = await harness.orchestrator.activate_subscription(subscription, {"status": "trialing"}, event_id="evt_1")

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.tenant_id == "org_1"
    assert outcome.plan_key == "CLP-PRO-CS"
    assert outcome.join_keys.transaction_id == "in_9"
    assert harness.entitlements.names() == ["set_limits", "set_usage_cycle", "adjust_usage", "set_access"]
    assert harness.entitlements.calls[1][2]["limitResetPeriod"] == "year"
    assert harness.gateway.subscriptions["sub_9"]["metadata"]["entitlements_applied"] == "in_9"


@pytest.mark.anyio
async def test_redelivered_activation_does_not_grant_usage_twice(harness):
    subscription = _subscription()
    harness.gateway.subscriptions["sub_9"] = copy.deepcopy(subscription)
    await harness.orchestrator.activate_subscription(subscription, {"status": "trialing"})
    harness.entitlements.calls.clear()

    outcome = await harness.orchestrator.activate_subscription(subscription, {"status": "trialing"})

    assert outcome.replayed is True
    assert harness.entitlements.names() == ["set_limits", "set_usage_cycle", "set_access"]


@pytest.mark.anyio
async def test_activation_of_the_checkout_invoice_does_not_grant_usage_again(harness):
    harness.gateway.add_session(make_session("cs_1"))
    await harness.orchestrator.run("cs_1")
    harness.entitlements.calls.clear()
    subscription = _subscription(
        id="sub_1",
        latest_invoice="in_1",
        current_period_start=int(datetime(2024, 3, 1, tzinfo=timezone.utc).timestamp()),
    )

    outcome = await harness.orchestrator.activate_subscription(subscription, {"status": "incomplete"})

    assert outcome.status == WorkflowStatus.SUCCEEDED
    assert outcome.replayed is True
    assert "adjust_usage" not in harness.entitlements.names()
    assert harness.entitlements.calls[1][2]["limitResetAnchor"] == 1709251200000
    assert harness.gateway.subscriptions["sub_1"]["metadata"]["entitlements_applied"] == "in_1"


@pytest.mark.parametrize(
    "subscription, previous",
    [
        (_subscription(metadata={}), {"status": "trialing"}),
        (_subscription(items={"data": []}), {"status": "trialing"}),
        (_subscription(), {"status": "active"}),
        (_subscription(status="past_due"), {"status": "active"}),
    ],
)
@pytest.mark.anyio
async def test_unusable_activation_is_rejected(harness, subscription, previous):
    outcome = await harness.orchestrator.activate_subscription(subscription, previous)

    assert outcome.status == WorkflowStatus.REJECTED
    assert outcome.reason_code == "malformed_event"
    assert harness.entitlements.calls == []


@pytest.mark.anyio
async def test_concurrent_duplicates_share_one_run():
    harness = build_harness(dedupe_ttl=30.0)
    harness.gateway.add_session(make_session("cs_1"))

    first, second = await asyncio.gather(harness.orchestrator.run("cs_1"), harness.orchestrator.run("cs_1"))

    assert first == second
    assert harness.gateway.retrieve_calls == ["cs_1"]
    assert len(harness.identity.created) == 1


@pytest.mark.anyio
async def test_duplicate_within_window_reuses_last_outcome():
    harness = build_harness(dedupe_ttl=30.0)
    harness.gateway.add_session(make_session("cs_1"))

    first = await harness.orchestrator.run("cs_1")
    second = await harness.orchestrator.run("cs_1")

    assert second is first
    assert harness.gateway.retrieve_calls == ["cs_1"]


@pytest.mark.anyio
async def test_rejections_are_not_remembered():
    harness = build_harness(dedupe_ttl=30.0)

    await harness.orchestrator.run("cs_missing")
    await harness.orchestrator.run("cs_missing")

    assert harness.gateway.retrieve_calls == ["cs_missing", "cs_missing"]


@pytest.mark.parametrize(
    "status, previous, expected",
    [
        ("active", {"status": "trialing"}, True),
        ("active", {"status": "incomplete"}, True),
        ("active", {"status": "active"}, False),
        ("active", {}, False),
        ("active", None, False),
        ("canceled", {"status": "active"}, False),
    ],
)
def test_newly_activated(status, previous, expected):
    assert newly_activated({"status": status}, previous) is expected


@pytest.mark.anyio
async def test_project_pack_purchase_end_to_end(harness):
    harness.gateway.add_session(
        make_session(
            "tx_1",
            price_id="price_project_pack",
            subscription_id=None,
            payment_intent_id="pi_1",
            metadata={"name": "Acme", "adminEmail": "a@acme.com"},
        )
    )

    first = await harness.orchestrator.run("tx_1")
    replay = await harness.orchestrator.run("tx_1")

    assert first.status == WorkflowStatus.SUCCEEDED
    assert [name for name, _, _ in harness.identity.created] == ["Acme"]
    assert [object_type for object_type, _ in harness.crm.created] == [
        "companies",
        "workspaces",
        "deals",
        "products",
        "products",
    ]
    usage = next(payload for name, _, payload in harness.entitlements.calls if name == "adjust_usage")
    assert usage["projectUsage"] == {"delta": 1, "direction": "increment"}
    assert usage["chatMessageUsage"] == {"delta": 100, "direction": "increment"}
    assert harness.entitlements.access == {first.tenant_id: True}
    assert replay.tenant_id == first.tenant_id
    assert replay.replayed is True
    assert harness.entitlements.names().count("adjust_usage") == 1
