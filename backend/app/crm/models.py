"""Typed CRM record payloads and the linkage graph built for a workspace."""
from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class CrmObjectType(str, Enum):
    """CRM objects mirrored for a self-serve purchase."""

    COMPANY = "companies"
    WORKSPACE = "workspaces"
    DEAL = "deals"
    PRODUCT = "products"
    INVOICE = "invoices"


class CrmSyncStep(str, Enum):
    """Ordered sub-steps of a CRM synchronization."""

    COMPANY = "create_company"
    WORKSPACE = "create_workspace"
    DEAL = "create_deal"
    TRIAL_PRODUCT = "create_trial_product"
    FULL_PRODUCT = "create_full_product"


class RecordReference(BaseModel):
    """Pointer to an existing CRM record, used for associations."""

    target_object: CrmObjectType
    target_record_id: str

    model_config = ConfigDict(frozen=True)

    def to_value(self) -> Dict[str, str]:
        return {"target_object": self.target_object.value, "target_record_id": self.target_record_id}


class CompanyFields(BaseModel):
    object_type: CrmObjectType = Field(default=CrmObjectType.COMPANY, frozen=True)
    name: str
    team: Tuple[str, ...] = Field(default_factory=tuple, description="Emails of people at the company.")

    model_config = ConfigDict(frozen=True)

    def to_values(self) -> Dict[str, Any]:
        return {"name": self.name, "team": list(self.team)}


class WorkspaceFields(BaseModel):
    object_type: CrmObjectType = Field(default=CrmObjectType.WORKSPACE, frozen=True)
    name: str
    workspace_id: str
    company: RecordReference
    access_granted: bool = True
    reset_limits_every: str = "Month"
    limit_reset_date: Optional[date] = None
    checkout_session_id: Optional[str] = None
    entitlements_applied: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def to_values(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "name": self.name,
            "workspace_id": self.workspace_id,
            "company": self.company.to_value(),
            "access_granted": ["Granted" if self.access_granted else "Revoked"],
            "reset_limits_every": self.reset_limits_every,
        }
        if self.limit_reset_date is not None:
            values["limit_reset_date"] = self.limit_reset_date.isoformat()
        if self.checkout_session_id:
            values["checkout_session_id"] = self.checkout_session_id
        if self.entitlements_applied:
            values["entitlements_applied"] = self.entitlements_applied
        return values


class DealFields(BaseModel):
    object_type: CrmObjectType = Field(default=CrmObjectType.DEAL, frozen=True)
    name: str
    associated_company: RecordReference
    stage: str = "Active trial"
    amount: float = 0.0
    duration_months: int = 1
    owner: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def to_values(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "name": self.name,
            "associated_company": self.associated_company.to_value(),
            "stage": self.stage,
            "value": self.amount,
            "duration_months": self.duration_months,
        }
        if self.owner:
            values["owner"] = self.owner
        return values


class ProductFields(BaseModel):
    """Trial or full product record attached to a deal."""

    object_type: CrmObjectType = Field(default=CrmObjectType.PRODUCT, frozen=True)
    name: Optional[str] = None
    is_trial: bool
    associated_deal: RecordReference
    associated_workspace: Optional[RecordReference] = None
    invoice_id: Optional[str] = None
    origin_of_purchase: str = "Self serve"
    start_date: Optional[date] = None
    duration_months: int = 12
    currency: Optional[str] = None
    revenue_type: Optional[str] = None
    subscription_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def to_values(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "associated_deal": self.associated_deal.to_value(),
            "is_trial": ["Trial" if self.is_trial else "Full"],
            "origin_of_purchase": [self.origin_of_purchase],
            "duration_months": self.duration_months,
        }
        if self.name:
            values["name"] = self.name
        if self.associated_workspace is not None:
            values["associated_workspace"] = self.associated_workspace.to_value()
        if self.invoice_id:
            values["associated_invoices"] = [
                {
                    "stripe_invoice_id": [{"value": self.invoice_id}],
                    "target_object": CrmObjectType.INVOICE.value,
                }
            ]
        if self.start_date is not None:
            values["start_date"] = self.start_date.isoformat()
        if self.currency:
            values["currency_type"] = [self.currency]
        if self.revenue_type:
            values["revenue_type"] = [self.revenue_type]
        if self.subscription_id:
            values["stripe_subscription_id"] = self.subscription_id
        return values


class CrmLinkage(BaseModel):
    """Records created for one workspace, in dependency order."""

    company: Optional[RecordReference] = None
    workspace: Optional[RecordReference] = None
    deal: Optional[RecordReference] = None
    trial_product: Optional[RecordReference] = None
    full_product: Optional[RecordReference] = None
    invoice_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def records(self) -> Tuple[RecordReference, ...]:
        return tuple(
            reference
            for reference in (self.company, self.workspace, self.deal, self.trial_product, self.full_product)
            if reference is not None
        )

    def edges(self) -> List[Tuple[str, str]]:
        """Directed association edges present in the graph, as ``(source, target)`` names."""

        edges: List[Tuple[str, str]] = []
        if self.workspace and self.company:
            edges.append(("workspace", "company"))
        if self.deal and self.company:
            edges.append(("deal", "company"))
        if self.trial_product and self.deal:
            edges.append(("trial_product", "deal"))
        if self.full_product:
            if self.deal:
                edges.append(("full_product", "deal"))
            if self.workspace:
                edges.append(("full_product", "workspace"))
            if self.invoice_id:
                edges.append(("full_product", "invoice"))
        return edges


class DealMeta(BaseModel):
    """Sales attributes for the deal created alongside a workspace."""

    owner: Optional[str] = None
    stage: str = "Active trial"
    duration_months: int = 1
    reset_limits_every: str = "Month"

    model_config = ConfigDict(frozen=True)


class WorkspaceMatch(BaseModel):
    """A workspace record found by its checkout session id."""

    record_id: str
    workspace_id: Optional[str] = None
    entitlements_applied: Optional[str] = None

    model_config = ConfigDict(frozen=True)
