"""Checkout-to-provisioning workflow: errors, state and de-duplication.

The orchestrator itself lives in :mod:`.orchestrator` and is imported from
there, since it depends on every other domain package.
"""

from .exceptions import (
    AmbiguousLineItems,
    CheckoutError,
    CheckoutSessionFailed,
    CrmSyncFailed,
    DuplicateTenantName,
    EntitlementApplyFailed,
    InvalidCheckoutSelection,
    InvalidCorrelationPayload,
    InvalidSignature,
    MalformedEvent,
    MissingTransactionId,
    PaymentLookupFailed,
    PaymentNotFound,
    PaymentNotPaid,
    TenantCreationFailed,
    TenantNameInvalid,
    UnknownPlan,
)
from .dedupe import DeduplicationWindow, InMemoryDeduplicationWindow
from .models import (
    JoinKeys,
    OrchestratorState,
    StepFailure,
    WorkflowOutcome,
    WorkflowStatus,
    WorkflowStep,
)

__all__ = [
    "AmbiguousLineItems",
    "CheckoutError",
    "CheckoutSessionFailed",
    "CrmSyncFailed",
    "DeduplicationWindow",
    "DuplicateTenantName",
    "EntitlementApplyFailed",
    "InMemoryDeduplicationWindow",
    "InvalidCheckoutSelection",
    "InvalidCorrelationPayload",
    "InvalidSignature",
    "JoinKeys",
    "MalformedEvent",
    "MissingTransactionId",
    "OrchestratorState",
    "PaymentLookupFailed",
    "PaymentNotFound",
    "PaymentNotPaid",
    "StepFailure",
    "TenantCreationFailed",
    "TenantNameInvalid",
    "UnknownPlan",
    "WorkflowOutcome",
    "WorkflowStatus",
    "WorkflowStep",
]
