"""Pushes computed entitlements into the internal entitlements service."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol

from ...integrations.errors import IntegrationError
from ..checkout.calls import bounded, retry_idempotent
from ..checkout.exceptions import EntitlementApplyFailed
from ..checkout.models import JoinKeys
from .models import EntitlementDelta, UsageCycle

logger = logging.getLogger("entitlements.applier")


class EntitlementsGateway(Protocol):
    """Per-tenant entitlement state owned by the internal service."""

    async def set_access(self, tenant_id: str, authorized: bool) -> None:
        ...

    async def set_limits(self, tenant_id: str, limits: Mapping[str, Any]) -> None:
        ...

    async def set_usage_cycle(self, tenant_id: str, cycle: Mapping[str, Any]) -> None:
        ...

    async def adjust_usage(self, tenant_id: str, adjustments: Mapping[str, Any]) -> None:
        ...

    async def get_usage(self, tenant_id: str) -> Mapping[str, Any]:
        ...


@dataclass
class EntitlementApplier:
    """Applies limits, the usage cycle and usage grants, then authorizes access.

    Access is only flipped once every preceding call succeeded. Setter calls
    are idempotent and retried; usage adjustments increment counters and are
    attempted once.
    """

    gateway: EntitlementsGateway
    timeout: Optional[float] = 10.0
    retry_attempts: int = 3
    retry_backoff: float = 0.5

    async def apply(
        self,
        join_keys: JoinKeys,
        delta: EntitlementDelta,
        cycle: UsageCycle,
        *,
        grant_usage: bool = True,
    ) -> None:
        tenant_id = join_keys.require_tenant()

        await self._call(join_keys, "set_limits", lambda: self.gateway.set_limits(tenant_id, delta.limits_patch()))
        await self._call(join_keys, "set_usage_cycle", lambda: self.gateway.set_usage_cycle(tenant_id, cycle.to_payload()))
        usage_patch = delta.usage_patch()
        if grant_usage and usage_patch:
            await self._call(
                join_keys,
                "adjust_usage",
                lambda: self.gateway.adjust_usage(tenant_id, usage_patch),
                idempotent=False,
            )
        await self._call(join_keys, "set_access", lambda: self.gateway.set_access(tenant_id, True))

        logger.info(
            "Entitlements applied for tenant %s",
            tenant_id,
            extra={
                "tenant_id": tenant_id,
                "transaction_id": join_keys.transaction_id,
                "plan_key": delta.plan_key,
                "usage_granted": bool(grant_usage and usage_patch),
            },
        )

    async def top_up(self, join_keys: JoinKeys, delta: EntitlementDelta) -> None:
        """Credit usage to an already provisioned workspace, leaving limits and access alone."""

        tenant_id = join_keys.require_tenant()
        usage_patch = delta.usage_patch()
        if not usage_patch:
            return
        await self._call(
            join_keys,
            "adjust_usage",
            lambda: self.gateway.adjust_usage(tenant_id, usage_patch),
            idempotent=False,
        )
        logger.info(
            "Usage credited to tenant %s",
            tenant_id,
            extra={"tenant_id": tenant_id, "transaction_id": join_keys.transaction_id, "plan_key": delta.plan_key},
        )

    async def get_usage(self, tenant_id: str) -> Mapping[str, Any]:
        return await retry_idempotent(
            lambda: self.gateway.get_usage(tenant_id),
            description="get_usage",
            logger=logger,
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            timeout=self.timeout,
        )

    async def _call(
        self,
        join_keys: JoinKeys,
        name: str,
        call: Callable[[], Awaitable[None]],
        *,
        idempotent: bool = True,
    ) -> None:
        try:
            if idempotent:
                await retry_idempotent(
                    call,
                    description=name,
                    logger=logger,
                    attempts=self.retry_attempts,
                    backoff=self.retry_backoff,
                    timeout=self.timeout,
                )
            else:
                await bounded(call(), self.timeout)
        except (IntegrationError, asyncio.TimeoutError) as exc:
            logger.error(
                "Entitlement call %s failed for tenant %s; manual remediation required",
                name,
                join_keys.tenant_id,
                extra={
                    "tenant_id": join_keys.tenant_id,
                    "transaction_id": join_keys.transaction_id,
                    "failed_call": name,
                    "error": str(exc),
                },
            )
            raise EntitlementApplyFailed(
                message=f"Entitlement call {name} failed for tenant {join_keys.tenant_id}",
                tenant_id=join_keys.tenant_id,
                failed_call=name,
            ) from exc
