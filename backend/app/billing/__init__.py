"""Billing domain package: verified purchases and the payment processor contract."""

from .models import CorrelationPayload, Discount, LineItem, PAID_STATUSES, PurchaseFact
from .verifier import TRANSACTION_EXPANSIONS, PaymentGateway, PaymentVerifier, purchase_from_session

__all__ = [
    "CorrelationPayload",
    "Discount",
    "LineItem",
    "PAID_STATUSES",
    "PaymentGateway",
    "PaymentVerifier",
    "PurchaseFact",
    "TRANSACTION_EXPANSIONS",
    "purchase_from_session",
]
