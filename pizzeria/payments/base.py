"""Payment provider boundary for PIX charges."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol


class PaymentProviderError(Exception):
    """Base class for payment provider errors."""


class ProviderUnavailableError(PaymentProviderError):
    """Transport failure or 5xx; the call may be retried."""


class ProviderRejectedError(PaymentProviderError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"Provider rejected the request ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


class ChargeNotFoundError(PaymentProviderError):
    def __init__(self, charge_id: str) -> None:
        super().__init__(f"Charge {charge_id} not found at provider")
        self.charge_id = charge_id


class ProviderChargeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class ProviderCharge:
    charge_id: str
    status: ProviderChargeStatus
    amount: Decimal
    reference: str
    qr_code_payload: str = ""
    qr_code_image: str = ""
    ticket_url: str | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class ProviderRefund:
    refund_id: str
    charge_id: str
    amount: Decimal


class PaymentProvider(Protocol):
    name: str

    async def create_charge(
        self,
        amount: Decimal,
        reference: str,
        idempotency_key: str,
        expires_at: datetime,
        description: str,
    ) -> ProviderCharge: ...

    async def get_charge(self, charge_id: str) -> ProviderCharge: ...

    async def cancel_charge(self, charge_id: str) -> None: ...

    async def refund(
        self,
        charge_id: str,
        amount: Decimal | None,
        idempotency_key: str,
    ) -> ProviderRefund: ...

    async def close(self) -> None: ...
