"""PIX payment provider adapters and session handling."""

from pizzeria.payments.base import (
    ChargeNotFoundError,
    PaymentProvider,
    PaymentProviderError,
    ProviderCharge,
    ProviderChargeStatus,
    ProviderRefund,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from pizzeria.payments.factory import get_payment_provider
from pizzeria.payments.mock import MockPixProvider
from pizzeria.payments.sessions import PaymentSessionManager
from pizzeria.payments.webhook import InvalidSignatureError, PixWebhookHandler, verify_signature

__all__ = [
    "ChargeNotFoundError",
    "PaymentProvider",
    "PaymentProviderError",
    "ProviderCharge",
    "ProviderChargeStatus",
    "ProviderRefund",
    "ProviderRejectedError",
    "ProviderUnavailableError",
    "get_payment_provider",
    "MockPixProvider",
    "PaymentSessionManager",
    "InvalidSignatureError",
    "PixWebhookHandler",
    "verify_signature",
]
