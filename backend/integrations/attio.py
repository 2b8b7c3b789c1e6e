"""CRM client for the Attio REST API."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from .errors import IntegrationError
from .http import JsonApiClient


def _unwrap(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Collapse Attio's attribute value lists to plain values.

    Single-valued attributes become the bare value; the value is read from
    ``value``, ``option.title`` or ``target_record_id`` depending on type.
    """

    plain: Dict[str, Any] = {}
    for attribute, entries in values.items():
        if not isinstance(entries, list):
            plain[attribute] = entries
            continue
        extracted = [_entry_value(entry) for entry in entries]
        if not extracted:
            plain[attribute] = None
        elif len(extracted) == 1:
            plain[attribute] = extracted[0]
        else:
            plain[attribute] = extracted
    return plain


def _entry_value(entry: Any) -> Any:
    if not isinstance(entry, Mapping):
        return entry
    if "value" in entry:
        return entry["value"]
    option = entry.get("option")
    if isinstance(option, Mapping):
        return option.get("title")
    if "target_record_id" in entry:
        return entry["target_record_id"]
    return dict(entry)


def _record(payload: Mapping[str, Any]) -> Dict[str, Any]:
    identifier = payload.get("id") or {}
    return {
        "id": identifier.get("record_id"),
        "created_at": payload.get("created_at"),
        "values": _unwrap(payload.get("values") or {}),
    }


class AttioCrmClient(JsonApiClient):
    """Create, update and query records on Attio objects."""

    service = "attio"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.attio.com/v2",
        *,
        timeout: Optional[float] = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(
            base_url,
            {"Authorization": f"Bearer {api_key or ''}"},
            timeout=timeout,
            transport=transport,
        )

    async def create_record(self, object_type: str, values: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = await self.request(
            "POST", f"/objects/{object_type}/records", json={"data": {"values": dict(values)}}
        )
        record = _record(payload.get("data") or {})
        if not record["id"]:
            raise IntegrationError(self.service, f"create {object_type} returned no record id")
        return record

    async def update_record(self, object_type: str, record_id: str, values: Mapping[str, Any]) -> Mapping[str, Any]:
        payload = await self.request(
            "PATCH",
            f"/objects/{object_type}/records/{record_id}",
            json={"data": {"values": dict(values)}},
        )
        return _record(payload.get("data") or {})

    async def query_records(
        self, object_type: str, filter: Mapping[str, Any], *, limit: int = 10
    ) -> Sequence[Mapping[str, Any]]:
        payload = await self.request(
            "POST",
            f"/objects/{object_type}/records/query",
            json={"filter": dict(filter), "limit": limit},
        )
        records: List[Dict[str, Any]] = [_record(entry) for entry in payload.get("data") or []]
        return records
