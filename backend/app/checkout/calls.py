"""Helpers bounding outbound calls with timeouts and read retries."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ...integrations.errors import IntegrationError

T = TypeVar("T")

TRANSIENT_ERRORS: Tuple[Type[BaseException], ...] = (IntegrationError, asyncio.TimeoutError)


async def bounded(call: Awaitable[T], timeout: Optional[float]) -> T:
    """Await ``call`` and fail with :class:`asyncio.TimeoutError` after ``timeout`` seconds."""

    if timeout is None or timeout <= 0:
        return await call
    return await asyncio.wait_for(call, timeout)


async def retry_idempotent(
    call: Callable[[], Awaitable[T]],
    *,
    description: str,
    logger: logging.Logger,
    attempts: int = 3,
    backoff: float = 0.5,
    timeout: Optional[float] = None,
) -> T:
    """Run a read-only or idempotent call, retrying transient failures with linear backoff.

    Only use this for calls that are safe to repeat. Creates are never retried.
    """

    attempts = max(1, attempts)
    backoff = max(0.0, backoff)
    for attempt in range(1, attempts + 1):
        try:
            return await bounded(call(), timeout)
        except TRANSIENT_ERRORS as exc:
            if not getattr(exc, "retryable", True) or attempt >= attempts:
                raise
            logger.warning(
                "Transient failure during %s, retrying",
                description,
                extra={"call": description, "attempt": attempt, "attempts": attempts},
            )
            if backoff > 0:
                await asyncio.sleep(backoff * attempt)
    raise RuntimeError("unreachable")  # pragma: no cover
