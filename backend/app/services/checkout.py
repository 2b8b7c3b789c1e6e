"""Application wiring for the checkout workflow."""
from __future__ import annotations

import logging
from functools import lru_cache

from ...integrations.attio import AttioCrmClient
from ...integrations.clerk import ClerkIdentityProvider
from ...integrations.config import IntegrationConfig, load_integration_config
from ...integrations.internal_api import InternalEntitlementsClient
from ...integrations.logo_store import HttpLogoStore
from ...integrations.stripe_gateway import StripePaymentGateway
from ..billing.checkout_sessions import CheckoutSessionService
from ..billing.verifier import PaymentVerifier
from ..checkout.dedupe import InMemoryDeduplicationWindow
from ..checkout.orchestrator import CheckoutOrchestrator
from ..crm.models import DealMeta
from ..crm.service import CrmSynchronizer
from ..entitlements.applier import EntitlementApplier
from ..organizations.service import TenantProvisioner

logger = logging.getLogger("checkout")


@lru_cache(maxsize=1)
def get_integration_config() -> IntegrationConfig:
    return load_integration_config()


@lru_cache(maxsize=1)
def get_payment_verifier() -> PaymentVerifier:
    config = get_integration_config()
    if not config.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY is not set; payment lookups will fail")
    return PaymentVerifier(
        gateway=StripePaymentGateway(config.stripe_secret_key, config.stripe_webhook_secret),
        timeout=config.external_call_timeout,
        retry_attempts=config.read_retry_attempts,
        retry_backoff=config.read_retry_backoff,
    )


@lru_cache(maxsize=1)
def get_checkout_orchestrator() -> CheckoutOrchestrator:
    config = get_integration_config()
    policy = {
        "timeout": config.external_call_timeout,
        "retry_attempts": config.read_retry_attempts,
        "retry_backoff": config.read_retry_backoff,
    }
    provisioner = TenantProvisioner(
        identity=ClerkIdentityProvider(
            config.clerk_secret_key, config.clerk_api_url, timeout=config.external_call_timeout
        ),
        logo_store=HttpLogoStore(timeout=config.external_call_timeout),
        max_members=config.tenant_max_members,
        **policy,
    )
    crm = CrmSynchronizer(
        client=AttioCrmClient(config.attio_api_key, config.attio_api_url, timeout=config.external_call_timeout),
        default_deal_meta=DealMeta(owner=config.deal_owner_email),
        **policy,
    )
    applier = EntitlementApplier(
        gateway=InternalEntitlementsClient(
            config.internal_api_key, config.internal_api_url, timeout=config.external_call_timeout
        ),
        **policy,
    )
    return CheckoutOrchestrator(
        verifier=get_payment_verifier(),
        provisioner=provisioner,
        crm=crm,
        applier=applier,
        dedupe=InMemoryDeduplicationWindow(),
        dedupe_ttl=config.deduplication_ttl,
        default_currency=config.default_currency,
    )


@lru_cache(maxsize=1)
def get_checkout_session_service() -> CheckoutSessionService:
    config = get_integration_config()
    return CheckoutSessionService(
        verifier=get_payment_verifier(),
        app_base_url=config.app_base_url,
        default_currency=config.default_currency,
    )


__all__ = [
    "get_checkout_orchestrator",
    "get_checkout_session_service",
    "get_integration_config",
    "get_payment_verifier",
]
