"""Short-lived de-duplication window for repeated checkout signals."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol


class DeduplicationWindow(Protocol):
    """Remembers keys for a bounded time to collapse rapid duplicate submissions."""

    def seen(self, key: str) -> bool:
        ...

    def mark(self, key: str, ttl_seconds: float) -> None:
        ...


@dataclass
class _WindowEntry:
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class InMemoryDeduplicationWindow:
    """Key to expiry map held per process; entries lapse after their ttl."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._entries: Dict[str, _WindowEntry] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def seen(self, key: str) -> bool:
        now = self._clock()
        entry = self._entries.get(key)
        if not entry:
            return False
        if entry.is_expired(now):
            self._entries.pop(key, None)
            return False
        return True

    def mark(self, key: str, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        now = self._clock()
        self._purge(now)
        self._entries[key] = _WindowEntry(expires_at=now + timedelta(seconds=ttl_seconds))

    def _purge(self, now: datetime) -> None:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
