"""Fetches workspace logos referenced from checkout metadata."""
from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

import httpx

from ..app.organizations.models import MAX_LOGO_BYTES, LogoFile
from .errors import IntegrationError


class HttpLogoStore:
    """Downloads a logo from the URL stored as the logo reference."""

    service = "logo_store"

    def __init__(
        self,
        *,
        timeout: Optional[float] = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._timeout = timeout or None
        self._transport = transport

    async def fetch(self, logo_ref: str) -> LogoFile:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(logo_ref, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise IntegrationError(self.service, f"logo download failed: {exc}") from exc
        if response.is_error:
            raise IntegrationError(
                self.service, f"logo download returned HTTP {response.status_code}", status_code=response.status_code
            )
        if len(response.content) > MAX_LOGO_BYTES:
            # Oversized content is not retryable.
            raise IntegrationError(self.service, "logo file exceeds 10MB", status_code=413)

        content_type = response.headers.get("content-type", "application/octet-stream").split(";")[0].strip()
        filename = urlparse(logo_ref).path.rsplit("/", 1)[-1] or "logo"
        return LogoFile(filename=filename, content_type=content_type, content=response.content)
