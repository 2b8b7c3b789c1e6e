from __future__ import annotations

import json

import pytest

from backend.app.billing.models import CorrelationPayload
from backend.app.billing.verifier import TRANSACTION_EXPANSIONS, PaymentVerifier
from backend.app.checkout.exceptions import (
    AmbiguousLineItems,
    InvalidCorrelationPayload,
    InvalidSignature,
    MissingTransactionId,
    PaymentLookupFailed,
    PaymentNotFound,
    PaymentNotPaid,
)
from backend.app.organizations.models import TenantRole
from backend.integrations.errors import IntegrationError
from backend.tests.fakes import VALID_SIGNATURE, FakePaymentGateway, make_session


@pytest.fixture
def verifier_components():
    gateway = FakePaymentGateway()
    verifier = PaymentVerifier(gateway=gateway, timeout=1.0, retry_attempts=3, retry_backoff=0.0)
    return verifier, gateway


@pytest.mark.anyio
async def test_paid_session_becomes_purchase_fact(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_1"))

    purchase = await verifier.verify("cs_1")

    assert purchase.transaction_id == "cs_1"
    assert purchase.currency == "USD"
    assert purchase.amount_total == 4900
    assert purchase.amount_major == 49.0
    assert purchase.payer_email == "payer@example.com"
    assert purchase.subscription_id == "sub_1"
    assert purchase.invoice_id == "in_1"
    assert purchase.invoice_pdf_url == "https://invoices.test/in_1.pdf"
    assert purchase.primary_price_id == "price_pro_cs_monthly"
    assert purchase.correlation.workspace_name == "Acme Research"
    assert purchase.admin_email == "owner@example.com"
    assert [member.email for member in purchase.correlation.members] == ["ana@example.com"]
    assert purchase.correlation.members[0].role == TenantRole.BASIC_MEMBER
    assert gateway.retrieve_calls == ["cs_1"]


@pytest.mark.anyio
async def test_no_payment_required_is_not_paid(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_free", payment_status="no_payment_required"))

    with pytest.raises(PaymentNotPaid) as excinfo:
        await verifier.verify("cs_free")

    assert excinfo.value.payload["payment_status"] == "no_payment_required"


@pytest.mark.parametrize("transaction_id", [None, "", "   "])
@pytest.mark.anyio
async def test_missing_transaction_id(verifier_components, transaction_id):
    verifier, gateway = verifier_components

    with pytest.raises(MissingTransactionId):
        await verifier.verify(transaction_id)
    assert gateway.retrieve_calls == []


@pytest.mark.anyio
async def test_unknown_transaction_is_not_found(verifier_components):
    verifier, _ = verifier_components

    with pytest.raises(PaymentNotFound) as excinfo:
        await verifier.verify("cs_missing")

    assert excinfo.value.status_code == 404
    assert excinfo.value.payload["transaction_id"] == "cs_missing"


@pytest.mark.anyio
async def test_unpaid_session_is_rejected(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_unpaid", payment_status="unpaid"))

    with pytest.raises(PaymentNotPaid) as excinfo:
        await verifier.verify("cs_unpaid")

    assert excinfo.value.payload["payment_status"] == "unpaid"


@pytest.mark.anyio
async def test_transient_lookup_failures_are_retried(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_1"))
    gateway.retrieve_failures = [IntegrationError("stripe", "unavailable", status_code=503)]

    purchase = await verifier.verify("cs_1")

    assert purchase.transaction_id == "cs_1"
    assert gateway.retrieve_calls == ["cs_1", "cs_1"]


@pytest.mark.anyio
async def test_exhausted_retries_fail_the_lookup(verifier_components):
    verifier, gateway = verifier_components
    gateway.retrieve_failures = [IntegrationError("stripe", "down", status_code=500) for _ in range(3)]

    with pytest.raises(PaymentLookupFailed) as excinfo:
        await verifier.verify("cs_1")

    assert excinfo.value.status_code == 500
    assert len(gateway.retrieve_calls) == 3


@pytest.mark.anyio
async def test_client_errors_are_not_retried(verifier_components):
    verifier, gateway = verifier_components
    gateway.retrieve_failures = [IntegrationError("stripe", "bad key", status_code=401)]

    with pytest.raises(PaymentLookupFailed):
        await verifier.verify("cs_1")

    assert len(gateway.retrieve_calls) == 1


@pytest.mark.anyio
async def test_single_item_expectation(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(
        make_session(
            "cs_multi",
            line_items=[
                {"price": {"id": "price_chat_pack"}, "quantity": 1},
                {"price": "price_grid_pack", "quantity": 2},
            ],
        )
    )

    purchase = await verifier.verify("cs_multi")
    assert [item.quantity for item in purchase.line_items] == [1, 2]

    with pytest.raises(AmbiguousLineItems) as excinfo:
        await verifier.verify("cs_multi", expect_single_item=True)
    assert excinfo.value.item_count == 2


@pytest.mark.anyio
async def test_session_without_items_is_ambiguous(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_empty", line_items=[]))

    with pytest.raises(AmbiguousLineItems):
        await verifier.verify("cs_empty")


@pytest.mark.parametrize(
    "metadata",
    [
        {"workspace_name": "Acme", "members": "not json"},
        {"workspace_name": "Acme", "members": json.dumps([{"email": "a@example.com"}, {"email": "A@example.com"}])},
        {"workspace_name": "Acme", "admin_email": "not-an-email"},
    ],
)
@pytest.mark.anyio
async def test_malformed_correlation_payload(verifier_components, metadata):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_bad", metadata=metadata))

    with pytest.raises(InvalidCorrelationPayload):
        await verifier.verify("cs_bad")


def test_correlation_payload_keeps_unknown_keys():
    payload = CorrelationPayload.from_metadata(
        {"name": "Acme", "clerk_workspace_id": "org_9", "items": json.dumps([{"price": "p", "quantity": 1}])}
    )

    assert payload.workspace_name == "Acme"
    assert payload.workspace_id == "org_9"
    assert payload.extra == {"items": [{"price": "p", "quantity": 1}]}


@pytest.mark.anyio
async def test_discount_is_extracted(verifier_components):
    verifier, gateway = verifier_components
    session = make_session("cs_discount")
    session["total_details"] = {"amount_discount": 500}
    session["discounts"] = [{"promotion_code": {"id": "promo_launch"}}]
    gateway.add_session(session)

    purchase = await verifier.verify("cs_discount")

    assert purchase.discount.code == "promo_launch"
    assert purchase.discount.amount == 500


@pytest.mark.anyio
async def test_expansions_requested():
    seen = {}

    class ExpansionRecordingGateway(FakePaymentGateway):
        async def retrieve_transaction(self, transaction_id, expand):
            seen["expand"] = tuple(expand)
            return await super().retrieve_transaction(transaction_id, expand)

    gateway = ExpansionRecordingGateway()
    gateway.add_session(make_session("cs_1"))
    await PaymentVerifier(gateway=gateway, retry_backoff=0.0).verify("cs_1")

    assert seen["expand"] == TRANSACTION_EXPANSIONS


def test_event_signature_is_required(verifier_components):
    verifier, _ = verifier_components

    with pytest.raises(InvalidSignature):
        verifier.verify_event_signature(b"{}", None)
    with pytest.raises(InvalidSignature):
        verifier.verify_event_signature(b"{}", "t=1,v1=forged")


def test_valid_signature_returns_event(verifier_components):
    verifier, _ = verifier_components

    event = verifier.verify_event_signature(b'{"id": "evt_1", "type": "ping"}', VALID_SIGNATURE)

    assert event["id"] == "evt_1"


@pytest.mark.anyio
async def test_annotate_prefers_subscription_then_payment_intent(verifier_components):
    verifier, gateway = verifier_components
    gateway.add_session(make_session("cs_sub"))
    gateway.add_session(make_session("cs_once", subscription_id=None, payment_intent_id="pi_1"))
    gateway.add_session(make_session("cs_bare", subscription_id=None))

    assert await verifier.annotate_purchase(await verifier.verify("cs_sub"), {"k": "v"}) is True
    assert await verifier.annotate_purchase(await verifier.verify("cs_once"), {"k": "v"}) is True
    assert await verifier.annotate_purchase(await verifier.verify("cs_bare"), {"k": "v"}) is False

    assert [(kind, target) for kind, target, _ in gateway.metadata_updates] == [
        ("subscription", "sub_1"),
        ("payment_intent", "pi_1"),
    ]
    assert gateway.payment_intents["pi_1"]["metadata"] == {"k": "v"}


def test_correlation_payload_accepts_camel_case_keys():
    payload = CorrelationPayload.from_metadata(
        {"workspaceName": "Acme", "adminEmail": "a@example.com", "logoRef": "ref-1", "workspaceId": "org_3"}
    )

    assert payload.workspace_name == "Acme"
    assert payload.admin_email == "a@example.com"
    assert payload.logo_ref == "ref-1"
    assert payload.workspace_id == "org_3"
    assert payload.extra == {}
