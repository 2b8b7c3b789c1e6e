"""Workflow state, join keys and outcomes for a checkout run."""
from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..billing.models import PurchaseFact
from ..crm.models import CrmLinkage
from ..organizations.models import InvitationResult
from .exceptions import CheckoutError


class WorkflowStep(str, Enum):
    ATTACH_LOGO = "attach_logo"
    INVITE_MEMBERS = "invite_members"
    LINK_SUBSCRIPTION = "link_subscription"
    CRM_SYNC = "crm_sync"
    ENTITLEMENT_APPLY = "entitlement_apply"
    MARK_PROVISIONED = "mark_provisioned"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    PROVISIONING = "provisioning"
    SYNCING = "syncing"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    REJECTED = "rejected"


class WorkflowStatus(str, Enum):
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"
    REJECTED = "rejected"


class JoinKeys(BaseModel):
    """Identifiers that join one purchase across every system of record."""

    transaction_id: str
    tenant_id: Optional[str] = None
    subscription_id: Optional[str] = None
    invoice_id: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    def with_tenant(self, tenant_id: str) -> "JoinKeys":
        return self.model_copy(update={"tenant_id": tenant_id})

    def require_tenant(self) -> str:
        if not self.tenant_id:
            raise ValueError("join keys carry no tenant id yet")
        return self.tenant_id


class StepFailure(BaseModel):
    """A failed step; degraded failures are warnings, not outcome changes."""

    step: WorkflowStep
    message: str
    sub_step: Optional[str] = None
    degraded: bool = True

    model_config = ConfigDict(frozen=True)


class WorkflowOutcome(BaseModel):
    """Terminal result of one orchestration run."""

    status: WorkflowStatus
    tenant_id: Optional[str] = None
    join_keys: Optional[JoinKeys] = None
    failed_steps: Tuple[StepFailure, ...] = Field(default_factory=tuple)
    reason: Optional[str] = None
    reason_code: Optional[str] = None
    http_status: Optional[int] = None
    replayed: bool = False
    workspace_name: Optional[str] = None
    plan_key: Optional[str] = None
    currency_fallback: bool = False
    purchase: Optional[PurchaseFact] = None
    crm_linkage: Optional[CrmLinkage] = None
    invitations: Tuple[InvitationResult, ...] = Field(default_factory=tuple)
    trail: Tuple[OrchestratorState, ...] = Field(default_factory=tuple)

    model_config = ConfigDict(frozen=True)

    @property
    def warnings(self) -> Tuple[StepFailure, ...]:
        return tuple(failure for failure in self.failed_steps if failure.degraded)

    @property
    def is_success(self) -> bool:
        return self.status == WorkflowStatus.SUCCEEDED

    def failed(self, step: WorkflowStep) -> Optional[StepFailure]:
        for failure in self.failed_steps:
            if failure.step == step:
                return failure
        return None

    @classmethod
    def succeeded(cls, tenant_id: str, **fields) -> "WorkflowOutcome":
        return cls(status=WorkflowStatus.SUCCEEDED, tenant_id=tenant_id, **fields)

    @classmethod
    def partially_failed(cls, tenant_id: str, failed_steps, **fields) -> "WorkflowOutcome":
        return cls(
            status=WorkflowStatus.PARTIALLY_FAILED,
            tenant_id=tenant_id,
            failed_steps=tuple(failed_steps),
            **fields,
        )

    @classmethod
    def rejected(cls, error: CheckoutError, **fields) -> "WorkflowOutcome":
        return cls(
            status=WorkflowStatus.REJECTED,
            reason=error.message,
            reason_code=error.code,
            http_status=error.status_code,
            **fields,
        )
