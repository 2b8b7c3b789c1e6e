"""Payment processor gateway backed by the Stripe SDK."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Sequence

import stripe

from ..app.checkout.exceptions import InvalidSignature, MalformedEvent
from .errors import IntegrationError

logger = logging.getLogger("integrations.stripe")


def _plain(obj: Any) -> Dict[str, Any]:
    """SDK objects as plain dictionaries, so callers never depend on the SDK types."""

    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


def _translate(exc: stripe.StripeError, action: str) -> IntegrationError:
    return IntegrationError(
        "stripe",
        f"{action} failed: {exc.user_message or exc.__class__.__name__}",
        status_code=exc.http_status,
        code=exc.code,
    )


class StripePaymentGateway:
    """Implements the payment gateway protocol with the async Stripe API."""

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str]) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    async def retrieve_transaction(
        self, transaction_id: str, expand: Sequence[str]
    ) -> Optional[Mapping[str, Any]]:
        try:
            session = await stripe.checkout.Session.retrieve_async(
                transaction_id, api_key=self._api_key, expand=list(expand)
            )
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                return None
            raise _translate(exc, "retrieve checkout session") from exc
        except stripe.StripeError as exc:
            raise _translate(exc, "retrieve checkout session") from exc
        return _plain(session)

    def construct_event(self, raw_body: bytes, signature: str) -> Mapping[str, Any]:
        if not self._webhook_secret:
            logger.warning("Webhook secret is not configured")
            raise InvalidSignature(message="Webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(
                payload=raw_body, sig_header=signature, secret=self._webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature() from exc
        except ValueError as exc:
            raise MalformedEvent(message="Webhook payload is not valid JSON") from exc
        return _plain(event)

    async def retrieve_subscription(self, subscription_id: str) -> Optional[Mapping[str, Any]]:
        try:
            subscription = await stripe.Subscription.retrieve_async(subscription_id, api_key=self._api_key)
        except stripe.InvalidRequestError as exc:
            if exc.code == "resource_missing":
                return None
            raise _translate(exc, "retrieve subscription") from exc
        except stripe.StripeError as exc:
            raise _translate(exc, "retrieve subscription") from exc
        return _plain(subscription)

    async def update_subscription_metadata(
        self, subscription_id: str, metadata: Mapping[str, str]
    ) -> Mapping[str, Any]:
        try:
            subscription = await stripe.Subscription.modify_async(
                subscription_id, api_key=self._api_key, metadata=dict(metadata)
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "update subscription metadata") from exc
        return _plain(subscription)

    async def update_payment_intent_metadata(
        self, payment_intent_id: str, metadata: Mapping[str, str]
    ) -> Mapping[str, Any]:
        try:
            intent = await stripe.PaymentIntent.modify_async(
                payment_intent_id, api_key=self._api_key, metadata=dict(metadata)
            )
        except stripe.StripeError as exc:
            raise _translate(exc, "update payment intent metadata") from exc
        return _plain(intent)

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
        params: Dict[str, Any] = {
            "line_items": [dict(item) for item in line_items],
            "metadata": dict(metadata),
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_email:
            params["customer_email"] = customer_email
        if mode == "subscription":
            params["subscription_data"] = {"metadata": dict(metadata)}
        else:
            params["payment_intent_data"] = {"metadata": dict(metadata)}
        try:
            session = await stripe.checkout.Session.create_async(api_key=self._api_key, **params)
        except stripe.StripeError as exc:
            raise _translate(exc, "create checkout session") from exc
        return _plain(session)
