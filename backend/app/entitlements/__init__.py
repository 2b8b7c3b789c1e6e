"""Entitlements domain: plan catalog, delta computation and application."""

from .applier import EntitlementApplier, EntitlementsGateway
from .calculator import compute_deltas, compute_for_purchase
from .catalog import DEFAULT_CURRENCY, PLAN_CATALOG, PlanDefinition, find_plan, find_plan_by_key, plans_for_currency
from .models import (
    UNLIMITED,
    Allowance,
    AllowanceAdjustment,
    EntitlementDelta,
    LimitResetPeriod,
    LimitResetPolicy,
    PlanKind,
    UsageCycle,
)

__all__ = [
    "Allowance",
    "AllowanceAdjustment",
    "DEFAULT_CURRENCY",
    "EntitlementApplier",
    "EntitlementDelta",
    "EntitlementsGateway",
    "LimitResetPeriod",
    "LimitResetPolicy",
    "PLAN_CATALOG",
    "PlanDefinition",
    "PlanKind",
    "UNLIMITED",
    "UsageCycle",
    "compute_deltas",
    "compute_for_purchase",
    "find_plan",
    "find_plan_by_key",
    "plans_for_currency",
]
