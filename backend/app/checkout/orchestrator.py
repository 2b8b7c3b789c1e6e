"""State machine sequencing verification, provisioning, CRM sync and entitlements."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..billing.models import PurchaseFact
from ..billing.verifier import PaymentVerifier
from ..crm.models import CrmLinkage, DealMeta
from ..crm.service import CrmSynchronizer
from ..entitlements.applier import EntitlementApplier
from ..entitlements.calculator import compute_deltas, compute_for_purchase
from ..entitlements.catalog import DEFAULT_CURRENCY
from ..entitlements.models import EntitlementDelta, UsageCycle
from ..organizations.models import InvitationResult, Tenant
from ..organizations.service import TenantProvisioner, plan_invitations
from .dedupe import DeduplicationWindow
from .exceptions import (
    CheckoutError,
    EntitlementApplyFailed,
    InvalidCorrelationPayload,
    MalformedEvent,
)
from .models import (
    JoinKeys,
    OrchestratorState,
    StepFailure,
    WorkflowOutcome,
    WorkflowStatus,
    WorkflowStep,
)

logger = logging.getLogger("checkout")

# Metadata keys written back to the payment processor.
WORKSPACE_ID_KEY = "clerk_workspace_id"
LEGACY_WORKSPACE_ID_KEY = "clerk_org_id"
TRANSACTION_KEY = "checkout_session_id"
APPLIED_MARKER_KEY = "entitlements_applied"

DegradedStep = Tuple[WorkflowStep, Callable[[], Awaitable[Any]]]


def applied_marker(purchase: PurchaseFact) -> str:
    """The payment a grant is recorded against.

    Subscription payments are keyed by invoice so the activation webhook for
    the same invoice sees the grant made at checkout.
    """

    if purchase.subscription_id and purchase.invoice_id:
        return purchase.invoice_id
    return purchase.transaction_id


def _already_granted(marker: Optional[str], purchase: PurchaseFact) -> bool:
    return bool(marker) and marker in {purchase.transaction_id, applied_marker(purchase)}


def newly_activated(subscription: Mapping[str, Any], previous_attributes: Optional[Mapping[str, Any]]) -> bool:
    """True when a subscription update moved it into ``active`` from another status."""

    if subscription.get("status") != "active":
        return False
    previous_status = (previous_attributes or {}).get("status")
    return previous_status is not None and previous_status != "active"


@dataclass
class _Run:
    """Mutable bookkeeping for one orchestration run."""

    keys: JoinKeys
    trail: List[OrchestratorState] = field(default_factory=lambda: [OrchestratorState.IDLE])
    failures: List[StepFailure] = field(default_factory=list)
    purchase: Optional[PurchaseFact] = None
    workspace_name: Optional[str] = None
    plan_key: Optional[str] = None
    currency_fallback: bool = False
    linkage: Optional[CrmLinkage] = None
    workspace_record_id: Optional[str] = None
    invitations: List[InvitationResult] = field(default_factory=list)
    replayed: bool = False

    def enter(self, state: OrchestratorState) -> None:
        self.trail.append(state)

    def outcome_fields(self) -> Dict[str, Any]:
        return {
            "join_keys": self.keys,
            "replayed": self.replayed,
            "workspace_name": self.workspace_name,
            "plan_key": self.plan_key,
            "currency_fallback": self.currency_fallback,
            "purchase": self.purchase,
            "crm_linkage": self.linkage,
            "invitations": tuple(self.invitations),
            "trail": tuple(self.trail),
        }


@dataclass
class CheckoutOrchestrator:
    """Turns a completed checkout into a provisioned, entitled workspace.

    ``Idle -> Verifying -> Provisioning -> Syncing -> Finalizing`` ending in
    ``Succeeded``, ``PartiallyFailed`` or ``Rejected``. Workspace creation is
    the only non-idempotent action; it is gated on a lookup of a workspace
    already linked to the transaction. Two concurrent runs for the same
    transaction in different processes can still both create a workspace.
    """

    verifier: PaymentVerifier
    provisioner: TenantProvisioner
    crm: CrmSynchronizer
    applier: EntitlementApplier
    dedupe: DeduplicationWindow
    dedupe_ttl: float = 30.0
    default_currency: str = DEFAULT_CURRENCY
    deal_meta: Optional[DealMeta] = None
    clock: Optional[Callable[[], datetime]] = None
    _in_flight: Dict[str, "asyncio.Future[WorkflowOutcome]"] = field(default_factory=dict, init=False, repr=False)
    _recent: Dict[str, WorkflowOutcome] = field(default_factory=dict, init=False, repr=False)

    def _now(self) -> datetime:
        value = self.clock() if self.clock else datetime.now(timezone.utc)
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    # -- entry points -----------------------------------------------------

    async def run(self, transaction_id: Optional[str]) -> WorkflowOutcome:
        """Process a completed checkout signalled by a redirect or a webhook."""

        key = f"checkout:{(transaction_id or '').strip()}"
        return await self._deduplicated(key, lambda: self._run_checkout(transaction_id))

    async def activate_subscription(
        self,
        subscription: Mapping[str, Any],
        previous_attributes: Optional[Mapping[str, Any]] = None,
        *,
        event_id: Optional[str] = None,
    ) -> WorkflowOutcome:
        """Grant plan entitlements when a subscription has just become active.

        Callers filter with :func:`newly_activated`; updates that are not an
        activation are rejected without side effects.
        """

        if previous_attributes is not None and not newly_activated(subscription, previous_attributes):
            run = _Run(keys=JoinKeys(transaction_id=event_id or subscription.get("id") or ""))
            return self._reject(run, MalformedEvent(message="Subscription update is not an activation"))

        latest_invoice = subscription.get("latest_invoice")
        if isinstance(latest_invoice, Mapping):
            latest_invoice = latest_invoice.get("id")
        activation_key = latest_invoice or event_id or subscription.get("id") or ""
        key = f"activation:{subscription.get('id')}:{activation_key}"
        return await self._deduplicated(
            key, lambda: self._run_activation(subscription, activation_key, latest_invoice)
        )

    # -- de-duplication ---------------------------------------------------

    async def _deduplicated(
        self, key: str, factory: Callable[[], Awaitable[WorkflowOutcome]]
    ) -> WorkflowOutcome:
        self._forget_expired()
        pending = self._in_flight.get(key)
        if pending is not None:
            logger.info("Duplicate submission for %s joined the in-flight run", key, extra={"dedupe_key": key})
            return await asyncio.shield(pending)
        if self.dedupe.seen(key) and key in self._recent:
            logger.info("Duplicate submission for %s answered from the last run", key, extra={"dedupe_key": key})
            return self._recent[key]

        self.dedupe.mark(key, self.dedupe_ttl)
        task = asyncio.ensure_future(factory())
        self._in_flight[key] = task
        task.add_done_callback(lambda done, key=key: self._settle(key, done))
        return await asyncio.shield(task)

    def _settle(self, key: str, task: "asyncio.Future[WorkflowOutcome]") -> None:
        self._in_flight.pop(key, None)
        if task.cancelled() or task.exception() is not None:
            return
        outcome = task.result()
        # Rejections may be transient (e.g. payment lookup); let a retry run again.
        if outcome.status != WorkflowStatus.REJECTED:
            self._recent[key] = outcome

    def _forget_expired(self) -> None:
        for key in [key for key in self._recent if not self.dedupe.seen(key)]:
            self._recent.pop(key, None)

    # -- checkout completion ----------------------------------------------

    async def _run_checkout(self, transaction_id: Optional[str]) -> WorkflowOutcome:
        run = _Run(keys=JoinKeys(transaction_id=(transaction_id or "").strip()))

        run.enter(OrchestratorState.VERIFYING)
        try:
            purchase = await self.verifier.verify(transaction_id)
            delta = compute_for_purchase(
                purchase.line_items, purchase.currency, default_currency=self.default_currency
            )
        except CheckoutError as exc:
            return self._reject(run, exc)

        run.purchase = purchase
        run.plan_key = delta.plan_key
        run.currency_fallback = delta.currency_fallback
        run.keys = JoinKeys(
            transaction_id=purchase.transaction_id,
            subscription_id=purchase.subscription_id,
            invoice_id=purchase.invoice_id,
        )
        cycle = UsageCycle(period=delta.cycle_period, anchor=purchase.payment_date or self._now())

        existing_workspace = purchase.correlation.workspace_id
        if existing_workspace:
            return await self._credit_existing_workspace(run, existing_workspace, delta)

        linked = await self._find_linked_tenant(run, purchase)
        if linked is not None:
            tenant_id, marker = linked
            run.replayed = True
            run.keys = run.keys.with_tenant(tenant_id)
            run.workspace_name = purchase.correlation.workspace_name or await self.provisioner.lookup_tenant_name(
                tenant_id
            )
            logger.info(
                "Checkout %s already provisioned workspace %s",
                purchase.transaction_id,
                tenant_id,
                extra={"transaction_id": purchase.transaction_id, "tenant_id": tenant_id},
            )
            run.enter(OrchestratorState.FINALIZING)
            grant_usage = not _already_granted(marker, purchase)
            if await self._apply(run, delta, cycle, grant_usage=grant_usage) and grant_usage:
                await self._run_degraded(run, [(WorkflowStep.MARK_PROVISIONED, lambda: self._mark_provisioned(run))])
            return self._finish(run)

        run.enter(OrchestratorState.PROVISIONING)
        admin_email = purchase.admin_email
        if not admin_email:
            return self._reject(run, InvalidCorrelationPayload(message="An admin email is required"))
        try:
            tenant = await self.provisioner.create_tenant(
                purchase.correlation.workspace_name,
                admin_email,
                purchase.correlation.members,
                purchase.correlation.logo_ref,
                metadata={
                    TRANSACTION_KEY: purchase.transaction_id,
                    "subscription_id": purchase.subscription_id,
                },
            )
        except CheckoutError as exc:
            return self._reject(run, exc)

        run.keys = run.keys.with_tenant(tenant.tenant_id)
        run.workspace_name = tenant.name

        provisioning_steps: List[DegradedStep] = [
            (WorkflowStep.LINK_SUBSCRIPTION, lambda: self._link_purchase(run, purchase, tenant.tenant_id)),
        ]
        if tenant.logo_ref:
            provisioning_steps.append(
                (WorkflowStep.ATTACH_LOGO, lambda: self.provisioner.attach_logo(tenant.tenant_id, tenant.logo_ref))
            )
        provisioning_steps.append((WorkflowStep.INVITE_MEMBERS, lambda: self._invite(run, tenant)))
        await self._run_degraded(run, provisioning_steps)

        run.enter(OrchestratorState.SYNCING)
        applied, _ = await asyncio.gather(
            self._apply(run, delta, cycle, grant_usage=True),
            self._run_degraded(run, [(WorkflowStep.CRM_SYNC, lambda: self._sync_crm(run, tenant, purchase))]),
        )

        run.enter(OrchestratorState.FINALIZING)
        if applied:
            await self._run_degraded(run, [(WorkflowStep.MARK_PROVISIONED, lambda: self._mark_provisioned(run))])
        return self._finish(run)

    async def _credit_existing_workspace(
        self, run: _Run, tenant_id: str, delta: EntitlementDelta
    ) -> WorkflowOutcome:
        purchase = run.purchase
        run.keys = run.keys.with_tenant(tenant_id)
        run.workspace_name = await self.provisioner.lookup_tenant_name(tenant_id)
        run.enter(OrchestratorState.FINALIZING)
        if _already_granted(purchase.link_metadata.get(APPLIED_MARKER_KEY), purchase):
            run.replayed = True
            return self._finish(run)
        try:
            await self.applier.top_up(run.keys, delta)
        except EntitlementApplyFailed as exc:
            run.failures.append(self._apply_failure(exc))
            return self._finish(run)
        await self._run_degraded(run, [(WorkflowStep.MARK_PROVISIONED, lambda: self._mark_provisioned(run))])
        return self._finish(run)

    async def _find_linked_tenant(self, run: _Run, purchase: PurchaseFact) -> Optional[Tuple[str, Optional[str]]]:
        """Return ``(tenant_id, applied_marker)`` for a workspace already created for this purchase."""

        metadata = purchase.link_metadata
        tenant_id = metadata.get(WORKSPACE_ID_KEY) or metadata.get(LEGACY_WORKSPACE_ID_KEY)
        if tenant_id and metadata.get(TRANSACTION_KEY) == purchase.transaction_id:
            return tenant_id, metadata.get(APPLIED_MARKER_KEY)
        try:
            match = await self.crm.find_workspace(purchase.transaction_id)
        except Exception as exc:
            logger.warning(
                "CRM lookup for checkout %s failed; continuing without it",
                purchase.transaction_id,
                extra={"transaction_id": purchase.transaction_id, "error": str(exc)},
            )
            return None
        if match is None or not match.workspace_id:
            return None
        run.workspace_record_id = match.record_id
        return match.workspace_id, match.entitlements_applied or metadata.get(APPLIED_MARKER_KEY)

    # -- subscription activation ------------------------------------------

    async def _run_activation(
        self,
        subscription: Mapping[str, Any],
        activation_key: str,
        invoice_id: Optional[str],
    ) -> WorkflowOutcome:
        subscription_id = subscription.get("id") or ""
        run = _Run(keys=JoinKeys(transaction_id=activation_key, subscription_id=subscription_id, invoice_id=invoice_id))
        run.enter(OrchestratorState.VERIFYING)

        metadata = dict(subscription.get("metadata") or {})
        tenant_id = metadata.get(WORKSPACE_ID_KEY) or metadata.get(LEGACY_WORKSPACE_ID_KEY)
        if not tenant_id:
            return self._reject(run, MalformedEvent(message="Subscription carries no workspace id"))

        items = (subscription.get("items") or {}).get("data") or []
        price = items[0].get("price") if items else None
        price_id = price.get("id") if isinstance(price, Mapping) else price
        if not price_id:
            return self._reject(run, MalformedEvent(message="Subscription has no priced items"))
        try:
            delta = compute_deltas(price_id, subscription.get("currency"), default_currency=self.default_currency)
        except CheckoutError as exc:
            return self._reject(run, exc)

        run.keys = run.keys.with_tenant(tenant_id)
        run.plan_key = delta.plan_key
        run.currency_fallback = delta.currency_fallback

        # Event payloads can be stale on redelivery; the live record holds the marker.
        try:
            current = await self.verifier.retrieve_subscription(subscription_id) or subscription
        except Exception as exc:
            logger.warning(
                "Could not refresh subscription %s",
                subscription_id,
                extra={"subscription_id": subscription_id, "error": str(exc)},
            )
            current = subscription
        marker = (current.get("metadata") or {}).get(APPLIED_MARKER_KEY)
        grant_usage = marker != activation_key
        run.replayed = not grant_usage

        run.enter(OrchestratorState.FINALIZING)
        period_start = subscription.get("current_period_start")
        anchor = datetime.fromtimestamp(period_start, tz=timezone.utc) if period_start else self._now()
        cycle = UsageCycle(period=delta.cycle_period, anchor=anchor)
        if await self._apply(run, delta, cycle, grant_usage=grant_usage) and grant_usage:
            await self._run_degraded(
                run,
                [
                    (
                        WorkflowStep.MARK_PROVISIONED,
                        lambda: self.verifier.update_subscription_metadata(
                            subscription_id, {APPLIED_MARKER_KEY: activation_key}
                        ),
                    )
                ],
            )
        return self._finish(run)

    # -- steps ------------------------------------------------------------

    async def _apply(self, run: _Run, delta: EntitlementDelta, cycle: UsageCycle, *, grant_usage: bool) -> bool:
        try:
            await self.applier.apply(run.keys, delta, cycle, grant_usage=grant_usage)
        except EntitlementApplyFailed as exc:
            run.failures.append(self._apply_failure(exc))
            return False
        return True

    def _apply_failure(self, exc: EntitlementApplyFailed) -> StepFailure:
        return StepFailure(
            step=WorkflowStep.ENTITLEMENT_APPLY,
            message=exc.message,
            sub_step=exc.failed_call,
            degraded=False,
        )

    async def _link_purchase(self, run: _Run, purchase: PurchaseFact, tenant_id: str) -> None:
        await self.verifier.annotate_purchase(
            purchase,
            {
                WORKSPACE_ID_KEY: tenant_id,
                LEGACY_WORKSPACE_ID_KEY: tenant_id,
                TRANSACTION_KEY: purchase.transaction_id,
            },
        )

    async def _invite(self, run: _Run, tenant: Tenant) -> List[StepFailure]:
        invitations = plan_invitations(tenant.admin_email, tenant.members)
        results = await self.provisioner.invite_members(tenant.tenant_id, invitations)
        run.invitations.extend(results)
        return [
            StepFailure(step=WorkflowStep.INVITE_MEMBERS, message=result.error or "invitation failed", sub_step=result.invitation.email)
            for result in results
            if not result.succeeded
        ]

    async def _sync_crm(self, run: _Run, tenant: Tenant, purchase: PurchaseFact) -> None:
        try:
            run.linkage = await self.crm.sync_tenant(tenant, purchase, self.deal_meta)
        except CheckoutError as exc:
            run.linkage = getattr(exc, "linkage", None)
            raise

    async def _mark_provisioned(self, run: _Run) -> None:
        marker = applied_marker(run.purchase)
        await self.verifier.annotate_purchase(run.purchase, {APPLIED_MARKER_KEY: marker})
        record_id = run.workspace_record_id
        if run.linkage is not None and run.linkage.workspace is not None:
            record_id = run.linkage.workspace.target_record_id
        if record_id:
            await self.crm.mark_entitlements_applied(record_id, marker)

    async def _run_degraded(self, run: _Run, steps: Sequence[DegradedStep]) -> None:
        """Run best-effort steps; failures become warnings and never propagate."""

        for step, call in steps:
            try:
                result = await call()
            except Exception as exc:
                failure = StepFailure(
                    step=step,
                    message=str(exc) or exc.__class__.__name__,
                    sub_step=getattr(exc, "sub_step", None),
                )
                logger.warning(
                    "Step %s failed: %s",
                    step.value,
                    failure.message,
                    extra={
                        "step": step.value,
                        "sub_step": failure.sub_step,
                        "tenant_id": run.keys.tenant_id,
                        "transaction_id": run.keys.transaction_id,
                    },
                )
                run.failures.append(failure)
                continue
            if isinstance(result, StepFailure):
                run.failures.append(result)
            elif isinstance(result, list):
                run.failures.extend(item for item in result if isinstance(item, StepFailure))

    # -- outcomes ---------------------------------------------------------

    def _reject(self, run: _Run, error: CheckoutError) -> WorkflowOutcome:
        run.enter(OrchestratorState.REJECTED)
        logger.info(
            "Checkout %s rejected: %s",
            run.keys.transaction_id,
            error.code,
            extra={"transaction_id": run.keys.transaction_id, "reason_code": error.code},
        )
        fields = run.outcome_fields()
        fields.pop("replayed")
        return WorkflowOutcome.rejected(error, **fields)

    def _finish(self, run: _Run) -> WorkflowOutcome:
        tenant_id = run.keys.require_tenant()
        fatal = [failure for failure in run.failures if not failure.degraded]
        if fatal:
            run.enter(OrchestratorState.PARTIALLY_FAILED)
            logger.error(
                "Workspace %s exists but entitlements were not applied",
                tenant_id,
                extra={"tenant_id": tenant_id, "transaction_id": run.keys.transaction_id},
            )
            return WorkflowOutcome.partially_failed(
                tenant_id,
                run.failures,
                reason=f"Entitlements could not be applied for tenant {tenant_id}",
                reason_code=EntitlementApplyFailed.code,
                **run.outcome_fields(),
            )
        run.enter(OrchestratorState.SUCCEEDED)
        return WorkflowOutcome.succeeded(tenant_id, failed_steps=tuple(run.failures), **run.outcome_fields())
