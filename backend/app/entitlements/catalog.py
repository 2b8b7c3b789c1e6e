"""Static catalog mapping purchasable prices to allowance changes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from .models import (
    Allowance,
    AllowanceAdjustment,
    EntitlementDelta,
    LimitResetPeriod,
    LimitResetPolicy,
    PlanKind,
)

DEFAULT_CURRENCY = "USD"


@dataclass(frozen=True)
class PlanDefinition:
    """Describes a purchasable price and the allowances it grants."""

    key: str
    display_name: str
    price_id: str
    kind: PlanKind
    allowances: Mapping[Allowance, int]
    reset_policy: LimitResetPolicy = LimitResetPolicy.NUMERIC
    cycle_period: LimitResetPeriod = LimitResetPeriod.MONTH
    benefits: Tuple[str, ...] = field(default_factory=tuple)

    def to_delta(self, currency: str, *, currency_fallback: bool = False) -> EntitlementDelta:
        return EntitlementDelta(
            adjustments={
                allowance: AllowanceAdjustment(delta=amount, reset_policy=self.reset_policy)
                for allowance, amount in self.allowances.items()
            },
            plan_key=self.key,
            currency=currency,
            currency_fallback=currency_fallback,
            cycle_period=self.cycle_period,
        )


PROJECT_PACK_ALLOWANCES = {
    Allowance.PROJECT: 1,
    Allowance.CHAT_MESSAGE: 100,
    Allowance.GRID_QUESTION: 100,
    Allowance.TRANSCRIPTION_HOUR: 50,
    Allowance.TRANSLATION_HOUR: 50,
}

PRO_ALLOWANCES = {
    Allowance.PROJECT: 15,
    Allowance.TRANSLATION_HOUR: 100,
    Allowance.TRANSCRIPTION_HOUR: 100,
    Allowance.GRID_QUESTION: 1000,
    Allowance.CHAT_MESSAGE: 1000,
}


def _pack(key: str, display_name: str, price_id: str, allowances: Mapping[Allowance, int], *benefits: str) -> PlanDefinition:
    return PlanDefinition(
        key=key,
        display_name=display_name,
        price_id=price_id,
        kind=PlanKind.CREDIT_PACK,
        allowances=dict(allowances),
        benefits=tuple(benefits),
    )


def _pro_plans(community_prices: Tuple[str, str], premium_prices: Tuple[str, str]) -> Tuple[PlanDefinition, ...]:
    plans = []
    for key, display_name, (trial_price, subscription_price) in (
        ("CLP-PRO-CS", "Pro with Community Support", community_prices),
        ("CLP-PRO-PS", "Pro with Premium Support", premium_prices),
    ):
        plans.append(
            PlanDefinition(
                key=f"{key}-TRIAL",
                display_name=f"{display_name} (trial)",
                price_id=trial_price,
                kind=PlanKind.TRIAL,
                allowances=dict(PRO_ALLOWANCES),
                reset_policy=LimitResetPolicy.UNLIMITED,
                cycle_period=LimitResetPeriod.MONTH,
            )
        )
        plans.append(
            PlanDefinition(
                key=key,
                display_name=display_name,
                price_id=subscription_price,
                kind=PlanKind.SUBSCRIPTION,
                allowances=dict(PRO_ALLOWANCES),
                cycle_period=LimitResetPeriod.YEAR,
            )
        )
    return tuple(plans)


def _currency_table(suffix: str) -> Tuple[PlanDefinition, ...]:
    tag = f"_{suffix}" if suffix else ""
    packs = (
        _pack("project-pack", "Project Pack", f"price_project_pack{tag}", PROJECT_PACK_ALLOWANCES,
              "50 Translation Hours", "50 Transcription Hours", "100 Analysis Grid Questions", "100 Chat Messages"),
        _pack("grid-pack", "Grid Pack", f"price_grid_pack{tag}", {Allowance.GRID_QUESTION: 50},
              "50 Analysis Grid Questions"),
        _pack("chat-pack", "Chat Pack", f"price_chat_pack{tag}", {Allowance.CHAT_MESSAGE: 50}, "50 Chat Messages"),
        _pack("translation-pack", "Translation Pack", f"price_translation_pack{tag}",
              {Allowance.TRANSLATION_HOUR: 50}, "50 Translation Hours"),
        _pack("transcription-pack", "Transcription Pack", f"price_transcription_pack{tag}",
              {Allowance.TRANSCRIPTION_HOUR: 50}, "50 Transcription Hours"),
        _pack("open-ends-pack-small", "Open Ends Pack (small)", f"price_open_ends_small{tag}",
              {Allowance.OPEN_END_LABEL: 1000}, "1,000 open-ended labels"),
        _pack("open-ends-pack-large", "Open Ends Pack (large)", f"price_open_ends_large{tag}",
              {Allowance.OPEN_END_LABEL: 10000}, "10,000 open-ended labels"),
    )
    plans = _pro_plans(
        (f"price_pro_cs_trial{tag}", f"price_pro_cs_monthly{tag}"),
        (f"price_pro_ps_trial{tag}", f"price_pro_ps_monthly{tag}"),
    )
    return packs + plans


PLAN_CATALOG: Dict[str, Tuple[PlanDefinition, ...]] = {
    "USD": _currency_table(""),
    "EUR": _currency_table("eur"),
    "GBP": _currency_table("gbp"),
}


def plans_for_currency(currency: Optional[str], *, default_currency: str = DEFAULT_CURRENCY) -> Tuple[Tuple[PlanDefinition, ...], bool]:
    """Return the currency table and whether the default table was substituted."""

    normalized = (currency or "").strip().upper()
    table = PLAN_CATALOG.get(normalized)
    if table is not None:
        return table, False
    return PLAN_CATALOG[default_currency], True


def find_plan(price_id: str, currency: Optional[str], *, default_currency: str = DEFAULT_CURRENCY) -> Tuple[Optional[PlanDefinition], bool]:
    table, fallback = plans_for_currency(currency, default_currency=default_currency)
    for plan in table:
        if plan.price_id == price_id:
            return plan, fallback
    return None, fallback


def find_plan_by_key(plan_key: str, currency: Optional[str]) -> Optional[PlanDefinition]:
    table, _ = plans_for_currency(currency)
    for plan in table:
        if plan.key == plan_key:
            return plan
    return None
