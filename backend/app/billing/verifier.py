"""Confirms checkout completions against the payment processor."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from ...integrations.errors import IntegrationError
from ..checkout.calls import bounded, retry_idempotent
from ..checkout.exceptions import (
    AmbiguousLineItems,
    InvalidCorrelationPayload,
    InvalidSignature,
    MissingTransactionId,
    PaymentLookupFailed,
    PaymentNotFound,
    PaymentNotPaid,
)
from .models import PAID_STATUSES, CorrelationPayload, Discount, LineItem, PurchaseFact

logger = logging.getLogger("billing.verifier")

TRANSACTION_EXPANSIONS = (
    "line_items",
    "line_items.data.price.product",
    "invoice",
    "subscription",
    "payment_intent",
    "total_details.breakdown",
)


class PaymentGateway(Protocol):
    """Operations consumed from the payment processor."""

    async def retrieve_transaction(
        self, transaction_id: str, expand: Sequence[str]
    ) -> Optional[Mapping[str, Any]]:
        """Return the checkout session, or ``None`` when it does not exist."""

    def construct_event(self, raw_body: bytes, signature: str) -> Mapping[str, Any]:
        """Verify the signature and return the event, raising :class:`InvalidSignature`."""

    async def retrieve_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        ...

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: Mapping[str, str]
    ) -> Mapping[str, Any]:
        ...

    async def update_payment_intent_metadata(
        self, payment_intent_id: str, metadata: Mapping[str, str]
    ) -> Mapping[str, Any]:
        ...

    async def create_checkout_session(
        self,
        *,
        line_items: Sequence[Mapping[str, Any]],
        metadata: Mapping[str, str],
        mode: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
    ) -> Mapping[str, Any]:
        ...


def _object_id(value: Any) -> Optional[str]:
    """Ids arrive as plain strings or as expanded objects."""

    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _metadata_of(value: Any) -> Dict[str, str]:
    if isinstance(value, Mapping):
        return dict(value.get("metadata") or {})
    return {}


def _line_items(session: Mapping[str, Any]) -> List[LineItem]:
    container = session.get("line_items") or {}
    items = []
    for raw in container.get("data") or []:
        price_id = _object_id(raw.get("price"))
        if not price_id:
            continue
        items.append(
            LineItem(
                price_id=price_id,
                quantity=raw.get("quantity") or 1,
                description=raw.get("description"),
                amount_total=raw.get("amount_total"),
            )
        )
    return items


def _discount(session: Mapping[str, Any]) -> Optional[Discount]:
    total_details = session.get("total_details") or {}
    amount = total_details.get("amount_discount") or 0
    code = None
    for entry in session.get("discounts") or []:
        code = _object_id(entry.get("promotion_code")) or _object_id(entry.get("coupon"))
        if code:
            break
    if not amount and not code:
        return None
    return Discount(code=code, amount=amount)


def purchase_from_session(
    session: Mapping[str, Any], correlation: CorrelationPayload
) -> PurchaseFact:
    """Project a processor checkout session onto :class:`PurchaseFact`."""

    customer = session.get("customer_details") or {}
    subscription = session.get("subscription")
    invoice = session.get("invoice")
    payment_intent = session.get("payment_intent")
    created = session.get("created")
    return PurchaseFact(
        transaction_id=session["id"],
        payment_status=session.get("payment_status") or "unknown",
        payer_email=customer.get("email") or session.get("customer_email"),
        payer_name=customer.get("name"),
        amount_total=session.get("amount_total") or 0,
        currency=session.get("currency") or "",
        line_items=tuple(_line_items(session)),
        discount=_discount(session),
        subscription_id=_object_id(subscription),
        invoice_id=_object_id(invoice),
        invoice_pdf_url=invoice.get("invoice_pdf") if isinstance(invoice, Mapping) else None,
        payment_date=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
        subscription_metadata=_metadata_of(subscription),
        payment_intent_id=_object_id(payment_intent),
        payment_intent_metadata=_metadata_of(payment_intent),
        correlation=correlation,
    )


@dataclass
class PaymentVerifier:
    """Confirms a completed checkout is a real, paid transaction.

    Retrieval is read-only so transient failures are retried with linear
    backoff; every call is bounded by ``timeout``.
    """

    gateway: PaymentGateway
    timeout: Optional[float] = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5

    async def verify(self, transaction_id: Optional[str], *, expect_single_item: bool = False) -> PurchaseFact:
        if not transaction_id or not transaction_id.strip():
            raise MissingTransactionId()
        transaction_id = transaction_id.strip()

        try:
            session = await retry_idempotent(
                lambda: self.gateway.retrieve_transaction(transaction_id, TRANSACTION_EXPANSIONS),
                description="retrieve_transaction",
                logger=logger,
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                timeout=self.timeout,
            )
        except (IntegrationError, asyncio.TimeoutError) as exc:
            logger.error(
                "Payment lookup failed for %s",
                transaction_id,
                extra={"transaction_id": transaction_id, "error": str(exc)},
            )
            raise PaymentLookupFailed() from exc

        if session is None:
            raise PaymentNotFound(transaction_id=transaction_id)

        payment_status = session.get("payment_status")
        if payment_status not in PAID_STATUSES:
            logger.info(
                "Checkout %s is not paid (status=%s)",
                transaction_id,
                payment_status,
                extra={"transaction_id": transaction_id},
            )
            raise PaymentNotPaid(transaction_id=transaction_id, payment_status=payment_status)

        try:
            correlation = CorrelationPayload.from_metadata(session.get("metadata"))
        except ValueError as exc:
            raise InvalidCorrelationPayload(detail={"reason": str(exc)}) from exc

        purchase = purchase_from_session(session, correlation)
        item_count = len(purchase.line_items)
        if item_count == 0 or (expect_single_item and item_count != 1):
            raise AmbiguousLineItems(item_count=item_count)
        return purchase

    def verify_event_signature(self, raw_body: bytes, signature_header: Optional[str]) -> Mapping[str, Any]:
        """Authenticate a webhook body before any of it is trusted."""

        if not signature_header:
            logger.warning("Rejected webhook without signature header")
            raise InvalidSignature()
        try:
            return self.gateway.construct_event(raw_body, signature_header)
        except InvalidSignature:
            logger.warning("Rejected webhook with invalid signature")
            raise

    async def retrieve_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        return await retry_idempotent(
            lambda: self.gateway.retrieve_subscription(subscription_id),
            description="retrieve_subscription",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )

    async def update_subscription_metadata(self, subscription_id: str, metadata: Mapping[str, str]) -> None:
        # Metadata writes are idempotent by key.
        await retry_idempotent(
            lambda: self.gateway.update_subscription_metadata(subscription_id, metadata),
            description="update_subscription_metadata",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )

    async def update_payment_intent_metadata(self, payment_intent_id: str, metadata: Mapping[str, str]) -> None:
        await retry_idempotent(
            lambda: self.gateway.update_payment_intent_metadata(payment_intent_id, metadata),
            description="update_payment_intent_metadata",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )

    async def annotate_purchase(self, purchase: PurchaseFact, metadata: Mapping[str, str]) -> bool:
        """Write join keys back onto the subscription, or the payment for one-time purchases."""

        if purchase.subscription_id:
            await self.update_subscription_metadata(purchase.subscription_id, metadata)
        elif purchase.payment_intent_id:
            await self.update_payment_intent_metadata(purchase.payment_intent_id, metadata)
        else:
            return False
        return True

    async def create_checkout_session(self, **kwargs: Any) -> Mapping[str, Any]:
        return await bounded(self.gateway.create_checkout_session(**kwargs), self.timeout)
