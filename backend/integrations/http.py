"""Shared JSON-over-HTTP plumbing for the outbound service clients."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import httpx

from .errors import IntegrationError

logger = logging.getLogger("integrations.http")


class JsonApiClient:
    """Issues authenticated JSON requests and maps failures onto :class:`IntegrationError`.

    A fresh ``httpx.AsyncClient`` is opened per request; tests pass a
    ``transport`` (for example ``httpx.MockTransport``) to intercept traffic.
    """

    service = "http"

    def __init__(
        self,
        base_url: str,
        headers: Optional[Mapping[str, str]] = None,
        *,
        timeout: Optional[float] = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._timeout = timeout or None
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        *,
        allow_not_found: bool = False,
        **kwargs: Any,
    ) -> Any:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise IntegrationError(self.service, f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise IntegrationError(self.service, f"{method} {path} failed: {exc}") from exc

        if allow_not_found and response.status_code == 404:
            return None
        if response.is_error:
            code, message = self._error_details(response)
            logger.info(
                "%s %s returned %s",
                method,
                path,
                response.status_code,
                extra={"service": self.service, "status_code": response.status_code, "code": code},
            )
            raise IntegrationError(self.service, message, status_code=response.status_code, code=code)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise IntegrationError(
                self.service, f"{method} {path} returned invalid JSON", status_code=response.status_code
            ) from exc

    def _error_details(self, response: httpx.Response):
        """Return ``(code, message)`` extracted from an error body when it is JSON."""

        fallback = f"HTTP {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            return None, fallback
        if not isinstance(body, Mapping):
            return None, fallback
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], Mapping):
            first = errors[0]
            return first.get("code"), first.get("long_message") or first.get("message") or fallback
        return body.get("code"), body.get("message") or body.get("error") or fallback
