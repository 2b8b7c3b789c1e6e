"""Starts hosted checkout sessions for catalog items."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from ...integrations.errors import IntegrationError
from ..checkout.exceptions import CheckoutSessionFailed, InvalidCheckoutSelection, UnknownPlan
from ..entitlements.catalog import DEFAULT_CURRENCY, PLAN_CATALOG, PlanDefinition
from ..entitlements.models import PlanKind
from .models import CorrelationPayload
from .verifier import PaymentVerifier

logger = logging.getLogger("billing.checkout_sessions")

SUCCESS_PATH = "/self-serve/success?session_id={CHECKOUT_SESSION_ID}"
CANCEL_PATH = "/self-serve"


class StartedCheckout(BaseModel):
    session_id: str
    checkout_url: str
    mode: str

    model_config = ConfigDict(frozen=True)


def correlation_metadata(correlation: CorrelationPayload) -> Dict[str, str]:
    """Flatten the correlation payload into string metadata the processor accepts."""

    metadata: Dict[str, str] = {}
    if correlation.workspace_name:
        metadata["workspace_name"] = correlation.workspace_name
    if correlation.admin_email:
        metadata["admin_email"] = str(correlation.admin_email)
    if correlation.admin_name:
        metadata["admin_name"] = correlation.admin_name
    if correlation.members:
        metadata["members"] = json.dumps(
            [member.model_dump(mode="json", exclude_none=True) for member in correlation.members]
        )
    if correlation.logo_ref:
        metadata["logo_ref"] = correlation.logo_ref
    if correlation.workspace_id:
        metadata["clerk_workspace_id"] = correlation.workspace_id
    return metadata


@dataclass
class CheckoutSessionService:
    """Validates a selection against the currency table and opens a checkout session."""

    verifier: PaymentVerifier
    app_base_url: str
    default_currency: str = DEFAULT_CURRENCY

    def _table(self, currency: Optional[str]) -> Mapping[str, PlanDefinition]:
        normalized = (currency or self.default_currency).strip().upper()
        if normalized not in PLAN_CATALOG:
            raise InvalidCheckoutSelection(message=f"Currency {normalized} is not offered", detail={"currency": normalized})
        return {plan.key: plan for plan in PLAN_CATALOG[normalized]}

    async def start(
        self,
        items: Mapping[str, int],
        correlation: CorrelationPayload,
        *,
        currency: Optional[str] = None,
    ) -> StartedCheckout:
        table = self._table(currency)
        line_items: List[Dict[str, object]] = []
        kinds = set()
        for plan_key, quantity in items.items():
            plan = table.get(plan_key)
            if plan is None:
                raise UnknownPlan(message=f"Unknown item {plan_key}", price_id=plan_key, currency=currency)
            if quantity is None or quantity <= 0:
                continue
            line_items.append({"price": plan.price_id, "quantity": int(quantity)})
            kinds.add(plan.kind)
        if not line_items:
            raise InvalidCheckoutSelection()

        mode = "subscription" if PlanKind.SUBSCRIPTION in kinds else "payment"
        metadata = correlation_metadata(correlation)
        metadata["items"] = json.dumps(line_items)

        try:
            session = await self.verifier.create_checkout_session(
                line_items=line_items,
                metadata=metadata,
                mode=mode,
                success_url=f"{self.app_base_url}{SUCCESS_PATH}",
                cancel_url=f"{self.app_base_url}{CANCEL_PATH}",
                customer_email=str(correlation.admin_email) if correlation.admin_email else None,
            )
        except (IntegrationError, asyncio.TimeoutError) as exc:
            logger.error("Checkout session creation failed: %s", exc, extra={"mode": mode})
            raise CheckoutSessionFailed() from exc

        if not session.get("id") or not session.get("url"):
            raise CheckoutSessionFailed(message="Checkout session has no redirect URL")
        logger.info(
            "Checkout session %s started",
            session["id"],
            extra={"transaction_id": session["id"], "mode": mode, "item_count": len(line_items)},
        )
        return StartedCheckout(session_id=session["id"], checkout_url=session["url"], mode=mode)
