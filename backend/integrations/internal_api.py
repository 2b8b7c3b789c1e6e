"""Client for the internal entitlements service."""
from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx

from .http import JsonApiClient


class InternalEntitlementsClient(JsonApiClient):
    """Organization access, limits, usage cycle and usage counters."""

    service = "internal_api"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        *,
        timeout: Optional[float] = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            f"{base_url.rstrip('/')}/api/internal",
            {"X-Internal-API-Key": api_key or ""},
            timeout=timeout,
            transport=transport,
        )

    async def set_access(self, tenant_id: str, authorized: bool) -> None:
        await self.request("POST", f"/organizations/{tenant_id}/access", json={"authorized": authorized})

    async def set_limits(self, tenant_id: str, limits: Mapping[str, Any]) -> None:
        await self.request("POST", f"/organizations/{tenant_id}/limits", json=dict(limits))

    async def set_usage_cycle(self, tenant_id: str, cycle: Mapping[str, Any]) -> None:
        await self.request("POST", f"/organizations/{tenant_id}/usage-cycle", json=dict(cycle))

    async def adjust_usage(self, tenant_id: str, adjustments: Mapping[str, Any]) -> None:
        await self.request("POST", f"/organizations/{tenant_id}/usage", json=dict(adjustments))

    async def get_usage(self, tenant_id: str) -> Mapping[str, Any]:
        return await self.request("GET", f"/organizations/{tenant_id}/usage")
