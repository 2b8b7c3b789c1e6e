"""Error raised by the outbound service clients."""
from __future__ import annotations

from typing import Optional


class IntegrationError(Exception):
    """A call to an external system failed or returned an unusable response."""

    def __init__(
        self,
        service: str,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service
        self.message = message
        self.status_code = status_code
        self.code = code

    @property
    def retryable(self) -> bool:
        """Transport failures, throttling and server errors may succeed on a second attempt."""

        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def is_conflict(self) -> bool:
        return self.status_code == 409 or (self.code or "").endswith("_exists")
