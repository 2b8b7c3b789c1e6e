"""Mirrors provisioned workspaces into the sales CRM."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence, Union

from pydantic import ValidationError

from ...integrations.errors import IntegrationError
from ..billing.models import PurchaseFact
from ..checkout.calls import bounded, retry_idempotent
from ..checkout.exceptions import CrmSyncFailed
from ..organizations.models import Tenant
from .models import (
    CompanyFields,
    CrmLinkage,
    CrmObjectType,
    CrmSyncStep,
    DealFields,
    DealMeta,
    ProductFields,
    RecordReference,
    WorkspaceFields,
    WorkspaceMatch,
)

logger = logging.getLogger("crm")

CrmFields = Union[CompanyFields, WorkspaceFields, DealFields, ProductFields]


class CrmClient(Protocol):
    """Record operations offered by the CRM."""

    async def create_record(self, object_type: str, values: Mapping[str, Any]) -> Mapping[str, Any]:
        """Create a record and return ``{id, created_at}``."""

    async def update_record(self, object_type: str, record_id: str, values: Mapping[str, Any]) -> Mapping[str, Any]:
        ...

    async def query_records(
        self, object_type: str, filter: Mapping[str, Any], *, limit: int = 10
    ) -> Sequence[Mapping[str, Any]]:
        """Return matching records as ``{id, values}`` with single values unwrapped."""


@dataclass
class CrmSynchronizer:
    """Creates the company, workspace, deal and product records for a workspace.

    Records are created strictly in dependency order. A failure stops the
    remaining steps and leaves already-created records in place.
    """

    client: CrmClient
    default_deal_meta: DealMeta = field(default_factory=DealMeta)
    timeout: Optional[float] = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    clock: Optional[Callable[[], datetime]] = None

    def _today(self, purchase: PurchaseFact) -> date:
        if purchase.payment_date is not None:
            return purchase.payment_date.date()
        now = self.clock() if self.clock else datetime.now(timezone.utc)
        return now.date()

    async def sync_tenant(
        self,
        tenant: Tenant,
        purchase: PurchaseFact,
        deal_meta: Optional[DealMeta] = None,
    ) -> CrmLinkage:
        meta = deal_meta or self.default_deal_meta
        start = self._today(purchase)
        linkage = CrmLinkage(invoice_id=purchase.invoice_id)

        company = await self._create(
            CrmSyncStep.COMPANY,
            linkage,
            lambda: CompanyFields(name=tenant.name, team=(tenant.admin_email,)),
        )
        linkage = linkage.model_copy(update={"company": company})

        workspace = await self._create(
            CrmSyncStep.WORKSPACE,
            linkage,
            lambda: WorkspaceFields(
                name=tenant.name,
                workspace_id=tenant.tenant_id,
                company=company,
                reset_limits_every=meta.reset_limits_every,
                limit_reset_date=start,
                checkout_session_id=purchase.transaction_id,
            ),
        )
        linkage = linkage.model_copy(update={"workspace": workspace})

        deal = await self._create(
            CrmSyncStep.DEAL,
            linkage,
            lambda: DealFields(
                name=f"{tenant.name} Deal",
                associated_company=company,
                stage=meta.stage,
                amount=purchase.amount_major,
                duration_months=meta.duration_months,
                owner=meta.owner,
            ),
        )
        linkage = linkage.model_copy(update={"deal": deal})

        trial_product = await self._create(
            CrmSyncStep.TRIAL_PRODUCT,
            linkage,
            lambda: ProductFields(
                name=f"{tenant.name} Trial",
                is_trial=True,
                associated_deal=deal,
                start_date=start,
                subscription_id=purchase.subscription_id,
            ),
        )
        linkage = linkage.model_copy(update={"trial_product": trial_product})

        full_product = await self._create(
            CrmSyncStep.FULL_PRODUCT,
            linkage,
            lambda: ProductFields(
                is_trial=False,
                associated_deal=deal,
                associated_workspace=workspace,
                invoice_id=purchase.invoice_id,
                start_date=start,
                currency=purchase.currency,
                revenue_type="New",
            ),
        )
        linkage = linkage.model_copy(update={"full_product": full_product})

        logger.info(
            "CRM records created for workspace %s",
            tenant.tenant_id,
            extra={"tenant_id": tenant.tenant_id, "transaction_id": purchase.transaction_id},
        )
        return linkage

    async def find_workspace(self, transaction_id: str) -> Optional[WorkspaceMatch]:
        records = await retry_idempotent(
            lambda: self.client.query_records(
                CrmObjectType.WORKSPACE.value, {"checkout_session_id": transaction_id}, limit=1
            ),
            description="query_workspaces",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )
        for record in records:
            values = record.get("values") or {}
            return WorkspaceMatch(
                record_id=record["id"],
                workspace_id=values.get("workspace_id"),
                entitlements_applied=values.get("entitlements_applied"),
            )
        return None

    async def mark_entitlements_applied(self, workspace_record_id: str, transaction_id: str) -> None:
        await retry_idempotent(
            lambda: self.client.update_record(
                CrmObjectType.WORKSPACE.value,
                workspace_record_id,
                {"entitlements_applied": transaction_id},
            ),
            description="update_workspace",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )

    async def _create(
        self,
        step: CrmSyncStep,
        linkage: CrmLinkage,
        build: Callable[[], CrmFields],
    ) -> RecordReference:
        try:
            fields = build()
            created = await bounded(
                self.client.create_record(fields.object_type.value, fields.to_values()),
                self.timeout,
            )
            record_id = created.get("id")
            if not record_id:
                raise IntegrationError("crm", f"{step.value} returned no record id")
        except (IntegrationError, ValidationError, asyncio.TimeoutError) as exc:
            raise CrmSyncFailed(
                message=f"CRM step {step.value} failed: {exc}",
                sub_step=step.value,
                linkage=linkage,
            ) from exc
        return RecordReference(target_object=fields.object_type, target_record_id=record_id)
