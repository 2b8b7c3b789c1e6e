"""Maps purchased prices onto allowance deltas."""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..billing.models import LineItem
from ..checkout.exceptions import UnknownPlan
from .catalog import DEFAULT_CURRENCY, find_plan
from .models import EntitlementDelta

logger = logging.getLogger("entitlements.calculator")


def compute_deltas(
    price_id: str,
    currency: Optional[str],
    *,
    default_currency: str = DEFAULT_CURRENCY,
) -> EntitlementDelta:
    """Return the allowance changes granted by ``price_id`` in ``currency``.

    Currencies without a dedicated table use the default table; the returned
    delta has ``currency_fallback`` set so callers can tell.
    """

    plan, fallback = find_plan(price_id, currency, default_currency=default_currency)
    if fallback:
        logger.warning(
            "No plan table for currency %s, using %s",
            currency,
            default_currency,
            extra={"price_id": price_id, "currency": currency},
        )
    if plan is None:
        raise UnknownPlan(price_id=price_id, currency=currency)
    resolved_currency = default_currency if fallback else (currency or default_currency).upper()
    return plan.to_delta(resolved_currency, currency_fallback=fallback)


def compute_for_purchase(
    line_items: Iterable[LineItem],
    currency: Optional[str],
    *,
    default_currency: str = DEFAULT_CURRENCY,
) -> EntitlementDelta:
    """Sum the quantity-scaled deltas of every purchased line item."""

    total: Optional[EntitlementDelta] = None
    for item in line_items:
        delta = compute_deltas(item.price_id, currency, default_currency=default_currency).scaled(item.quantity)
        total = delta if total is None else total.merge(delta)
    if total is None:
        raise UnknownPlan(message="Purchase contains no line items", currency=currency)
    return total
