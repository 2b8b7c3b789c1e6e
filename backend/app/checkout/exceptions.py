"""Typed failures raised along the checkout-to-provisioning workflow."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class CheckoutError(Exception):
    """Represents a workflow failure that can be surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        base_detail.update(self._context())
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    def _context(self) -> Dict[str, Any]:
        return {}

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class MissingTransactionId(CheckoutError):
    code: str = "missing_transaction_id"
    message: str = "A checkout session id is required"


@dataclass
class PaymentNotFound(CheckoutError):
    code: str = "payment_not_found"
    message: str = "Payment transaction was not found"
    status_code: int = status.HTTP_404_NOT_FOUND
    transaction_id: Optional[str] = None

    def _context(self) -> Dict[str, Any]:
        return {"transaction_id": self.transaction_id}


@dataclass
class PaymentNotPaid(CheckoutError):
    code: str = "payment_not_paid"
    message: str = "Payment has not been completed"
    transaction_id: Optional[str] = None
    payment_status: Optional[str] = None

    def _context(self) -> Dict[str, Any]:
        return {"transaction_id": self.transaction_id, "payment_status": self.payment_status}


@dataclass
class AmbiguousLineItems(CheckoutError):
    code: str = "ambiguous_line_items"
    message: str = "Expected exactly one purchasable line item"
    item_count: int = 0

    def _context(self) -> Dict[str, Any]:
        return {"item_count": self.item_count}


@dataclass
class InvalidSignature(CheckoutError):
    code: str = "invalid_signature"
    message: str = "Webhook signature verification failed"
    status_code: int = status.HTTP_401_UNAUTHORIZED


@dataclass
class MalformedEvent(CheckoutError):
    code: str = "malformed_event"
    message: str = "Webhook event could not be processed"


@dataclass
class PaymentLookupFailed(CheckoutError):
    code: str = "payment_lookup_failed"
    message: str = "Failed to retrieve payment information"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass
class InvalidCorrelationPayload(CheckoutError):
    code: str = "invalid_correlation_payload"
    message: str = "Checkout metadata could not be parsed"


@dataclass
class UnknownPlan(CheckoutError):
    code: str = "unknown_plan"
    message: str = "No plan configuration matches the purchased price"
    price_id: Optional[str] = None
    currency: Optional[str] = None

    def _context(self) -> Dict[str, Any]:
        return {"price_id": self.price_id, "currency": self.currency}


@dataclass
class TenantNameInvalid(CheckoutError):
    code: str = "tenant_name_invalid"
    message: str = "Workspace name is invalid"


@dataclass
class DuplicateTenantName(CheckoutError):
    code: str = "duplicate_tenant_name"
    message: str = "A workspace with this name already exists"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class TenantCreationFailed(CheckoutError):
    code: str = "tenant_creation_failed"
    message: str = "Workspace could not be created"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR


@dataclass
class EntitlementApplyFailed(CheckoutError):
    """Tenant exists but its entitlements could not be established."""

    code: str = "entitlement_apply_failed"
    message: str = "Entitlements could not be applied"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    tenant_id: Optional[str] = None
    failed_call: Optional[str] = None

    def _context(self) -> Dict[str, Any]:
        return {"tenant_id": self.tenant_id, "failed_call": self.failed_call}


@dataclass
class CrmSyncFailed(CheckoutError):
    """Carries the CRM sub-step that failed and the records created before it."""

    code: str = "crm_sync_failed"
    message: str = "CRM synchronization failed"
    status_code: int = status.HTTP_502_BAD_GATEWAY
    sub_step: Optional[str] = None
    linkage: Optional[Any] = None

    def _context(self) -> Dict[str, Any]:
        return {"sub_step": self.sub_step}


@dataclass
class InvalidCheckoutSelection(CheckoutError):
    code: str = "invalid_checkout_selection"
    message: str = "No purchasable items were selected"


@dataclass
class CheckoutSessionFailed(CheckoutError):
    code: str = "checkout_session_failed"
    message: str = "Could not start a checkout session"
    status_code: int = status.HTTP_502_BAD_GATEWAY


__all__ = [
    "AmbiguousLineItems",
    "CheckoutError",
    "CheckoutSessionFailed",
    "CrmSyncFailed",
    "DuplicateTenantName",
    "EntitlementApplyFailed",
    "InvalidCheckoutSelection",
    "InvalidCorrelationPayload",
    "InvalidSignature",
    "MalformedEvent",
    "MissingTransactionId",
    "PaymentNotFound",
    "PaymentLookupFailed",
    "PaymentNotPaid",
    "TenantCreationFailed",
    "TenantNameInvalid",
    "UnknownPlan",
]
