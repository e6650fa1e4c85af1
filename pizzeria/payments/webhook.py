"""Provider payment notifications."""

import hashlib
import hmac
from dataclasses import dataclass
from uuid import UUID

from pizzeria.errors import OrderNotFoundError
from pizzeria.models.order import Order
from pizzeria.payments.base import PaymentProvider, ProviderChargeStatus
from pizzeria.payments.sessions import PaymentSessionManager
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)


class InvalidSignatureError(Exception):
    """The notification is not signed with our webhook secret."""


def signature_manifest(data_id: str, request_id: str | None, ts: str) -> str:
    return f"id:{data_id};request-id:{request_id or ''};ts:{ts};"


def parse_signature_header(header: str) -> tuple[str, str]:
    """Split an ``x-signature`` header of the form ``ts=...,v1=...``."""
    parts: dict[str, str] = {}
    for chunk in header.split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    if "ts" not in parts or "v1" not in parts:
        raise InvalidSignatureError("signature header must carry ts and v1")
    return parts["ts"], parts["v1"]


def sign(secret: str, data_id: str, request_id: str | None, ts: str) -> str:
    manifest = signature_manifest(data_id, request_id, ts)
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def verify_signature(
    signature_header: str | None,
    request_id: str | None,
    data_id: str | None,
    secret: str,
) -> None:
    """Raise InvalidSignatureError unless the header signs this notification."""
    if not signature_header or not data_id:
        raise InvalidSignatureError("missing signature or data id")
    ts, received = parse_signature_header(signature_header)
    expected = sign(secret, data_id, request_id, ts)
    if not hmac.compare_digest(received, expected):
        raise InvalidSignatureError("signature mismatch")


@dataclass
class WebhookResult:
    charge_id: str
    handled: bool
    order: Order | None = None
    reason: str | None = None


class PixWebhookHandler:
    """Turns a verified notification into a payment confirmation.

    The notification body is only a hint: the charge is always re-read from
    the provider, and only an approved charge whose reference names a known
    order confirms anything.
    """

    def __init__(self, sessions: PaymentSessionManager, provider: PaymentProvider) -> None:
        self.sessions = sessions
        self.provider = provider

    async def handle(self, notification_type: str | None, charge_id: str) -> WebhookResult:
        if notification_type not in (None, "payment"):
            return WebhookResult(charge_id, handled=False, reason=f"ignored {notification_type}")

        charge = await self.provider.get_charge(charge_id)
        if charge.status != ProviderChargeStatus.APPROVED:
            logger.info(
                "webhook_charge_not_approved", charge_id=charge_id, status=charge.status.value
            )
            return WebhookResult(
                charge_id, handled=False, reason=f"charge is {charge.status.value}"
            )

        try:
            order_id = UUID(charge.reference)
        except ValueError:
            logger.warning(
                "webhook_unknown_reference", charge_id=charge_id, reference=charge.reference
            )
            return WebhookResult(charge_id, handled=False, reason="unknown reference")

        try:
            order = await self.sessions.confirm_payment(order_id, charge.charge_id)
        except OrderNotFoundError:
            logger.warning("webhook_order_missing", charge_id=charge_id, order_id=str(order_id))
            return WebhookResult(charge_id, handled=False, reason="order not found")

        return WebhookResult(charge_id, handled=True, order=order)
