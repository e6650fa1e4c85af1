from __future__ import annotations

from pizzeria.config import Settings, get_settings
from pizzeria.payments.base import PaymentProvider
from pizzeria.payments.mock import MockPixProvider


def get_payment_provider(settings: Settings | None = None) -> PaymentProvider:
    """Select a provider adapter from settings.

    Defaults to the mock adapter so tests and local dev are deterministic unless explicitly
    configured otherwise.
    """

    settings = settings or get_settings()
    mode = settings.payment_provider.strip().lower()

    if mode == "mock":
        return MockPixProvider()

    if mode == "mercadopago":
        from pizzeria.payments.mercadopago import MercadoPagoPixProvider

        return MercadoPagoPixProvider.from_settings(settings)

    raise ValueError(f"Unknown PAYMENT_PROVIDER={mode!r}. Expected mock or mercadopago.")
