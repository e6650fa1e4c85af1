from __future__ import annotations

import base64
import hashlib
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from uuid import uuid4

from pizzeria.payments.base import (
    ChargeNotFoundError,
    ProviderCharge,
    ProviderChargeStatus,
    ProviderRefund,
    ProviderRejectedError,
    ProviderUnavailableError,
)


class MockPixProvider:
    """In-process PIX provider for local development and tests.

    Charges are deterministic per idempotency key, so replaying a create
    returns the same charge instead of minting a second one.
    """

    name = "mock"

    def __init__(self) -> None:
        self.charges: dict[str, ProviderCharge] = {}
        self.refunds: dict[str, ProviderRefund] = {}
        self._charges_by_key: dict[str, str] = {}
        self.fail_creates = 0
        self.create_calls = 0
        self.refund_calls = 0

    def fail_next_create(self, times: int = 1) -> None:
        self.fail_creates = times

    def approve(self, charge_id: str) -> ProviderCharge:
        """Simulate the customer paying a charge."""
        charge = self._require(charge_id)
        charge = replace(charge, status=ProviderChargeStatus.APPROVED)
        self.charges[charge_id] = charge
        return charge

    def _require(self, charge_id: str) -> ProviderCharge:
        charge = self.charges.get(charge_id)
        if charge is None:
            raise ChargeNotFoundError(charge_id)
        return charge

    async def create_charge(
        self,
        amount: Decimal,
        reference: str,
        idempotency_key: str,
        expires_at: datetime,
        description: str,
    ) -> ProviderCharge:
        del description
        self.create_calls += 1

        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise ProviderUnavailableError("mock provider is unavailable")

        existing = self._charges_by_key.get(idempotency_key)
        if existing is not None:
            return self.charges[existing]

        digest = hashlib.sha256(idempotency_key.encode()).hexdigest()
        charge_id = f"mock_{digest[:12]}"
        payload = f"00020126580014br.gov.bcb.pix0136{digest[:36]}5204000053039865406{amount:.2f}"
        charge = ProviderCharge(
            charge_id=charge_id,
            status=ProviderChargeStatus.PENDING,
            amount=amount,
            reference=reference,
            qr_code_payload=payload,
            qr_code_image=base64.b64encode(payload.encode()).decode(),
            ticket_url=f"https://pix.example.test/pay/{charge_id}",
            expires_at=expires_at,
        )
        self.charges[charge_id] = charge
        self._charges_by_key[idempotency_key] = charge_id
        return charge

    async def get_charge(self, charge_id: str) -> ProviderCharge:
        return self._require(charge_id)

    async def cancel_charge(self, charge_id: str) -> None:
        charge = self._require(charge_id)
        if charge.status == ProviderChargeStatus.PENDING:
            self.charges[charge_id] = replace(charge, status=ProviderChargeStatus.CANCELLED)

    async def refund(
        self,
        charge_id: str,
        amount: Decimal | None,
        idempotency_key: str,
    ) -> ProviderRefund:
        self.refund_calls += 1

        existing = self.refunds.get(idempotency_key)
        if existing is not None:
            return existing

        charge = self._require(charge_id)
        if charge.status not in (ProviderChargeStatus.APPROVED, ProviderChargeStatus.REFUNDED):
            raise ProviderRejectedError(400, f"charge {charge_id} is {charge.status.value}")

        already = sum(
            (r.amount for r in self.refunds.values() if r.charge_id == charge_id), Decimal("0")
        )
        refund_amount = amount if amount is not None else charge.amount - already
        if refund_amount <= 0 or already + refund_amount > charge.amount:
            raise ProviderRejectedError(
                400, f"refund of {refund_amount} exceeds the refundable balance of {charge_id}"
            )

        refund = ProviderRefund(
            refund_id=f"mock_refund_{uuid4().hex[:10]}",
            charge_id=charge_id,
            amount=refund_amount,
        )
        self.refunds[idempotency_key] = refund
        if already + refund_amount == charge.amount:
            self.charges[charge_id] = replace(charge, status=ProviderChargeStatus.REFUNDED)
        return refund

    async def close(self) -> None:
        return None
