"""API schemas for the self-serve checkout endpoints."""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ..billing.checkout_sessions import StartedCheckout
from ..billing.models import CorrelationPayload, PurchaseFact
from ..checkout.models import WorkflowOutcome
from ..organizations.models import MemberSpec


class CheckoutStartRequest(BaseModel):
    items: Dict[str, int] = Field(description="Catalog item keys mapped to quantities.")
    currency: Optional[str] = None
    workspace_name: Optional[str] = Field(alias="workspaceName", default=None)
    workspace_id: Optional[str] = Field(alias="workspaceId", default=None)
    admin_email: Optional[EmailStr] = Field(alias="adminEmail", default=None)
    admin_name: Optional[str] = Field(alias="adminName", default=None)
    members: List[MemberSpec] = Field(default_factory=list)
    logo_ref: Optional[str] = Field(alias="logoRef", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def correlation(self) -> CorrelationPayload:
        return CorrelationPayload(
            workspace_name=self.workspace_name,
            admin_email=self.admin_email,
            admin_name=self.admin_name,
            members=tuple(self.members),
            logo_ref=self.logo_ref,
            workspace_id=self.workspace_id,
        )


class CheckoutStartResponse(BaseModel):
    checkout_url: str = Field(alias="checkoutUrl")
    session_id: str = Field(alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_started(cls, started: StartedCheckout) -> "CheckoutStartResponse":
        return cls(checkout_url=started.checkout_url, session_id=started.session_id)


class PurchaseSummary(BaseModel):
    transaction_id: str = Field(alias="transactionId")
    amount_total: float = Field(alias="amountTotal")
    currency: str
    items: List[Dict[str, object]] = Field(default_factory=list)
    discount_code: Optional[str] = Field(alias="discountCode", default=None)
    invoice_url: Optional[str] = Field(alias="invoiceUrl", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_purchase(cls, purchase: PurchaseFact) -> "PurchaseSummary":
        return cls(
            transaction_id=purchase.transaction_id,
            amount_total=purchase.amount_major,
            currency=purchase.currency,
            items=[
                {"priceId": item.price_id, "quantity": item.quantity, "description": item.description}
                for item in purchase.line_items
            ],
            discount_code=purchase.discount.code if purchase.discount else None,
            invoice_url=purchase.invoice_pdf_url,
        )


class CheckoutConfirmation(BaseModel):
    tenant_id: Optional[str] = Field(alias="tenantId", default=None)
    workspace_name: Optional[str] = Field(alias="workspaceName", default=None)
    status: str
    message: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    purchase: Optional[PurchaseSummary] = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_outcome(cls, outcome: WorkflowOutcome) -> "CheckoutConfirmation":
        return cls(
            tenant_id=outcome.tenant_id,
            workspace_name=outcome.workspace_name,
            status=outcome.status.value,
            warnings=[failure.step.value for failure in outcome.warnings],
            purchase=PurchaseSummary.from_purchase(outcome.purchase) if outcome.purchase else None,
        )


class WebhookAck(BaseModel):
    received: bool = True
    processed: bool = False
    organization_id: Optional[str] = Field(alias="organizationId", default=None)
    pricing_plan: Optional[str] = Field(alias="pricingPlan", default=None)

    model_config = ConfigDict(populate_by_name=True)
