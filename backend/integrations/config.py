"""Configuration for outbound integrations and the checkout workflow."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
import logging
import os

logger = logging.getLogger("integrations.config")

SUPPORTED_CURRENCIES = frozenset({"USD", "EUR", "GBP"})


@dataclass(frozen=True)
class IntegrationConfig:
    """Credentials, endpoints and call policy for every external system."""

    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    clerk_secret_key: Optional[str]
    clerk_api_url: str
    attio_api_key: Optional[str]
    attio_api_url: str
    internal_api_key: Optional[str]
    internal_api_url: str
    external_call_timeout: float
    read_retry_attempts: int
    read_retry_backoff: float
    deduplication_ttl: float
    tenant_max_members: int
    deal_owner_email: Optional[str]
    default_currency: str
    log_level: str
    app_base_url: str


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _default_currency(value: Optional[str]) -> str:
    currency = (value or "USD").strip().upper() or "USD"
    if currency not in SUPPORTED_CURRENCIES:
        logger.warning("Unsupported DEFAULT_CURRENCY %s, using USD", currency)
        return "USD"
    return currency


def load_integration_config(env: Optional[Mapping[str, str]] = None) -> IntegrationConfig:
    """Load :class:`IntegrationConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    timeout = _to_float(env_mapping.get("EXTERNAL_CALL_TIMEOUT"), default=10.0)
    # A zero timeout disables bounding; negative values are treated the same way.
    timeout = max(0.0, timeout)

    return IntegrationConfig(
        stripe_secret_key=env_mapping.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        clerk_secret_key=env_mapping.get("CLERK_SECRET_KEY") or None,
        clerk_api_url=(env_mapping.get("CLERK_API_URL") or "https://api.clerk.com/v1").rstrip("/"),
        attio_api_key=env_mapping.get("ATTIO_API_KEY") or None,
        attio_api_url=(env_mapping.get("ATTIO_API_URL") or "https://api.attio.com/v2").rstrip("/"),
        internal_api_key=env_mapping.get("PRIVATE_INTERNAL_API_KEY") or None,
        internal_api_url=(env_mapping.get("PRIVATE_INTERNAL_API_URL") or "http://localhost:3000").rstrip("/"),
        external_call_timeout=timeout,
        read_retry_attempts=max(1, _to_int(env_mapping.get("READ_RETRY_ATTEMPTS"), default=3)),
        read_retry_backoff=max(0.0, _to_float(env_mapping.get("READ_RETRY_BACKOFF"), default=0.5)),
        deduplication_ttl=max(0.0, _to_float(env_mapping.get("DEDUPLICATION_TTL"), default=30.0)),
        tenant_max_members=max(1, _to_int(env_mapping.get("TENANT_MAX_MEMBERS"), default=100)),
        deal_owner_email=env_mapping.get("DEAL_OWNER_EMAIL") or None,
        default_currency=_default_currency(env_mapping.get("DEFAULT_CURRENCY")),
        log_level=(env_mapping.get("LOG_LEVEL") or "INFO").strip().upper(),
        app_base_url=(env_mapping.get("APP_BASE_URL") or "http://localhost:5173").rstrip("/"),
    )
