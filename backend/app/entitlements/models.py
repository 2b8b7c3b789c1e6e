"""Domain models for usage allowances and entitlement computation."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNLIMITED = -1


class Allowance(str, Enum):
    """Named usage quotas tracked by the entitlements service."""

    PROJECT = "project"
    CHAT_MESSAGE = "chat_message"
    GRID_QUESTION = "grid_question"
    TRANSCRIPTION_HOUR = "transcription_hour"
    TRANSLATION_HOUR = "translation_hour"
    OPEN_END_LABEL = "open_end_label"

    @property
    def usage_key(self) -> str:
        return _USAGE_KEYS[self]

    @property
    def limit_key(self) -> Optional[str]:
        """Wire name of the resettable limit, ``None`` for non-cycling allowances."""

        return _LIMIT_KEYS.get(self)


_USAGE_KEYS: Dict[Allowance, str] = {
    Allowance.PROJECT: "projectUsage",
    Allowance.CHAT_MESSAGE: "chatMessageUsage",
    Allowance.GRID_QUESTION: "gridQuestionUsage",
    Allowance.TRANSCRIPTION_HOUR: "transcriptionUsage",
    Allowance.TRANSLATION_HOUR: "translationUsage",
    Allowance.OPEN_END_LABEL: "openEndLabelUsage",
}

_LIMIT_KEYS: Dict[Allowance, str] = {
    Allowance.PROJECT: "projectLimit",
    Allowance.CHAT_MESSAGE: "chatMessageLimit",
    Allowance.GRID_QUESTION: "gridQuestionLimit",
    Allowance.TRANSCRIPTION_HOUR: "transcriptionLimit",
    Allowance.TRANSLATION_HOUR: "translationLimit",
}


class LimitResetPolicy(str, Enum):
    """How a limit is reset at the start of each usage cycle."""

    UNLIMITED = "unlimited"
    NUMERIC = "numeric"


class LimitResetPeriod(str, Enum):
    """Length of a usage cycle."""

    MONTH = "month"
    YEAR = "year"


class PlanKind(str, Enum):
    """Type of purchasable catalog entry."""

    CREDIT_PACK = "credit_pack"
    TRIAL = "trial"
    SUBSCRIPTION = "subscription"


class AllowanceAdjustment(BaseModel):
    """A signed change to one allowance together with its reset policy."""

    delta: int
    reset_policy: LimitResetPolicy = LimitResetPolicy.NUMERIC

    model_config = ConfigDict(frozen=True)

    def scaled(self, quantity: int) -> "AllowanceAdjustment":
        return AllowanceAdjustment(delta=self.delta * quantity, reset_policy=self.reset_policy)

    def combine(self, other: "AllowanceAdjustment") -> "AllowanceAdjustment":
        policy = (
            LimitResetPolicy.UNLIMITED
            if LimitResetPolicy.UNLIMITED in {self.reset_policy, other.reset_policy}
            else LimitResetPolicy.NUMERIC
        )
        return AllowanceAdjustment(delta=self.delta + other.delta, reset_policy=policy)


class EntitlementDelta(BaseModel):
    """Allowance changes derived from a purchased plan.

    Every allowance is optional; an absent key means "no change".
    """

    adjustments: Dict[Allowance, AllowanceAdjustment] = Field(default_factory=dict)
    plan_key: Optional[str] = None
    currency: str = "USD"
    currency_fallback: bool = Field(
        default=False,
        description="True when the currency had no dedicated table and the default table was used.",
    )
    cycle_period: LimitResetPeriod = LimitResetPeriod.MONTH

    model_config = ConfigDict(frozen=True)

    def scaled(self, quantity: int) -> "EntitlementDelta":
        if quantity < 1:
            raise ValueError("quantity must be >= 1")
        return self.model_copy(
            update={
                "adjustments": {
                    allowance: adjustment.scaled(quantity)
                    for allowance, adjustment in self.adjustments.items()
                }
            }
        )

    def merge(self, other: "EntitlementDelta") -> "EntitlementDelta":
        merged = dict(self.adjustments)
        for allowance, adjustment in other.adjustments.items():
            existing = merged.get(allowance)
            merged[allowance] = existing.combine(adjustment) if existing else adjustment
        plan_key = self.plan_key if self.plan_key == other.plan_key else None
        cycle_period = (
            LimitResetPeriod.YEAR
            if LimitResetPeriod.YEAR in {self.cycle_period, other.cycle_period}
            else LimitResetPeriod.MONTH
        )
        return self.model_copy(
            update={
                "adjustments": merged,
                "plan_key": plan_key,
                "currency_fallback": self.currency_fallback or other.currency_fallback,
                "cycle_period": cycle_period,
            }
        )

    def limits_patch(self) -> Dict[str, Dict[str, int]]:
        """Limit resets for every cycling allowance named in the delta."""

        patch: Dict[str, Dict[str, int]] = {}
        for allowance, adjustment in self.adjustments.items():
            limit_key = allowance.limit_key
            if limit_key is None:
                continue
            if adjustment.reset_policy == LimitResetPolicy.UNLIMITED:
                patch[limit_key] = {"reset": UNLIMITED}
            else:
                patch[limit_key] = {"reset": max(adjustment.delta, 0)}
        return patch

    def usage_patch(self) -> Dict[str, Dict[str, object]]:
        """Usage adjustments in the entitlements service wire format."""

        patch: Dict[str, Dict[str, object]] = {}
        for allowance, adjustment in self.adjustments.items():
            if adjustment.delta == 0:
                continue
            direction = "increment" if adjustment.delta > 0 else "decrement"
            patch[allowance.usage_key] = {"delta": abs(adjustment.delta), "direction": direction}
        return patch


class UsageCycle(BaseModel):
    """Recurring period after which consumable allowances reset."""

    period: LimitResetPeriod
    anchor: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(frozen=True)

    @field_validator("anchor")
    @classmethod
    def _ensure_timezone(cls, value: datetime) -> datetime:
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def to_payload(self) -> Dict[str, object]:
        return {
            "limitResetPeriod": self.period.value,
            "limitResetAnchor": int(self.anchor.timestamp() * 1000),
        }
