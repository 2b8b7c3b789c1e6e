"""API routes for self-serve checkout, its success redirect and processor webhooks."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..billing.checkout_sessions import CheckoutSessionService
from ..billing.verifier import PaymentVerifier
from ..checkout.exceptions import CheckoutError, MissingTransactionId
from ..checkout.models import WorkflowOutcome, WorkflowStatus
from ..checkout.orchestrator import CheckoutOrchestrator, newly_activated
from ..schemas.checkout import (
    CheckoutConfirmation,
    CheckoutStartRequest,
    CheckoutStartResponse,
    WebhookAck,
)
from ..services.checkout import (
    get_checkout_orchestrator,
    get_checkout_session_service,
    get_payment_verifier,
)

logger = logging.getLogger("checkout.routes")

PROCESSING_MESSAGE = (
    "Your purchase was received and your workspace is still being set up. "
    "If it is not ready shortly, please contact support."
)

router = APIRouter(tags=["checkout"])


def _rejection(outcome: WorkflowOutcome, *, status_code: Optional[int] = None) -> HTTPException:
    return HTTPException(
        status_code=status_code or outcome.http_status or status.HTTP_400_BAD_REQUEST,
        detail={"error": outcome.reason_code, "message": outcome.reason},
    )


@router.post("/self-serve/checkout", response_model=CheckoutStartResponse)
async def start_checkout(
    payload: CheckoutStartRequest,
    *,
    sessions: CheckoutSessionService = Depends(get_checkout_session_service),
) -> CheckoutStartResponse:
    try:
        started = await sessions.start(payload.items, payload.correlation(), currency=payload.currency)
    except CheckoutError as exc:
        raise exc.to_http_exception() from exc
    return CheckoutStartResponse.from_started(started)


@router.get("/self-serve/success", response_model=CheckoutConfirmation)
async def checkout_success(
    session_id: Optional[str] = Query(default=None),
    *,
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
) -> CheckoutConfirmation:
    if not session_id or not session_id.strip():
        raise MissingTransactionId().to_http_exception()

    outcome = await orchestrator.run(session_id)
    if outcome.status == WorkflowStatus.REJECTED:
        raise _rejection(outcome)
    if outcome.status == WorkflowStatus.PARTIALLY_FAILED:
        # Operators are alerted from the orchestrator log; the buyer only sees a holding message.
        return CheckoutConfirmation(
            tenant_id=outcome.tenant_id,
            workspace_name=outcome.workspace_name,
            status="processing",
            message=PROCESSING_MESSAGE,
        )
    return CheckoutConfirmation.from_outcome(outcome)


@router.post("/webhook", response_model=WebhookAck)
async def processor_webhook(
    request: Request,
    *,
    verifier: PaymentVerifier = Depends(get_payment_verifier),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator),
) -> WebhookAck:
    raw_body = await request.body()
    try:
        event = verifier.verify_event_signature(raw_body, request.headers.get("stripe-signature"))
    except CheckoutError as exc:
        raise exc.to_http_exception() from exc

    event_type = event.get("type")
    data = event.get("data") or {}
    obj = data.get("object") or {}
    logger.info("Webhook %s received", event_type, extra={"event_id": event.get("id"), "event_type": event_type})

    if event_type == "checkout.session.completed":
        outcome = await orchestrator.run(obj.get("id"))
    elif event_type == "customer.subscription.updated":
        previous = data.get("previous_attributes")
        if not newly_activated(obj, previous):
            return WebhookAck(processed=False)
        outcome = await orchestrator.activate_subscription(obj, previous, event_id=event.get("id"))
    else:
        return WebhookAck(processed=False)

    if outcome.status == WorkflowStatus.REJECTED:
        # Server-side failures are answered with 500 so the processor redelivers.
        failed_on_our_side = (outcome.http_status or 0) >= 500
        raise _rejection(
            outcome,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR if failed_on_our_side else status.HTTP_400_BAD_REQUEST,
        )
    if outcome.status == WorkflowStatus.PARTIALLY_FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": outcome.reason_code, "message": "Entitlements could not be applied"},
        )
    return WebhookAck(processed=True, organization_id=outcome.tenant_id, pricing_plan=outcome.plan_key)
