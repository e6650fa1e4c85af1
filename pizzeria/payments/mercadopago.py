"""Mercado Pago PIX adapter."""

from __future__ import annotations

import asyncio
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

from pizzeria.config import Settings
from pizzeria.payments.base import (
    ChargeNotFoundError,
    ProviderCharge,
    ProviderChargeStatus,
    ProviderRefund,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)

_STATUS_MAP = {
    "pending": ProviderChargeStatus.PENDING,
    "in_process": ProviderChargeStatus.PENDING,
    "authorized": ProviderChargeStatus.PENDING,
    "approved": ProviderChargeStatus.APPROVED,
    "cancelled": ProviderChargeStatus.CANCELLED,
    "expired": ProviderChargeStatus.EXPIRED,
    "refunded": ProviderChargeStatus.REFUNDED,
    "charged_back": ProviderChargeStatus.REFUNDED,
    "rejected": ProviderChargeStatus.REJECTED,
}


class MercadoPagoPixProvider:
    """Creates and settles PIX charges through the Mercado Pago payments API."""

    name = "mercadopago"

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mercadopago.com",
        notification_url: str | None = None,
        payer_email: str = "test@testuser.com",
        max_retries: int = 3,
        retry_delay: float = 0.5,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.notification_url = notification_url
        self.payer_email = payer_email
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "MercadoPagoPixProvider":
        if not settings.mercadopago_access_token:
            raise ValueError("MERCADOPAGO_ACCESS_TOKEN must be set for the mercadopago provider")
        return cls(
            access_token=settings.mercadopago_access_token,
            base_url=settings.mercadopago_base_url,
            notification_url=settings.payment_notification_url,
            payer_email=settings.payer_email,
            max_retries=settings.max_retries,
            retry_delay=settings.retry_delay,
            timeout=settings.request_timeout,
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        charge_id: str | None = None,
    ) -> dict[str, Any]:
        """Send a request with exponential backoff on transport errors and 5xx."""
        headers = {"X-Idempotency-Key": idempotency_key} if idempotency_key else None

        for attempt in range(self.max_retries):
            try:
                response = await self.client.request(method, path, json=json, headers=headers)
                if response.status_code >= 500:
                    raise ProviderUnavailableError(
                        f"Mercado Pago returned {response.status_code} for {method} {path}"
                    )
                if response.status_code == 404:
                    raise ChargeNotFoundError(charge_id or path)
                if response.status_code >= 400:
                    raise ProviderRejectedError(response.status_code, _error_detail(response))
                return response.json()

            except (httpx.TransportError, ProviderUnavailableError) as e:
                if attempt == self.max_retries - 1:
                    if isinstance(e, ProviderUnavailableError):
                        raise
                    raise ProviderUnavailableError(str(e)) from e

                # Exponential backoff
                wait_time = self.retry_delay * (2**attempt)
                logger.warning(
                    f"Provider call failed, retrying in {wait_time}s",
                    method=method,
                    path=path,
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    error=str(e),
                )
                await asyncio.sleep(wait_time)

        raise ProviderUnavailableError("Max retries exceeded")

    async def create_charge(
        self,
        amount: Decimal,
        reference: str,
        idempotency_key: str,
        expires_at: datetime,
        description: str,
    ) -> ProviderCharge:
        body: dict[str, Any] = {
            "transaction_amount": float(amount),
            "payment_method_id": "pix",
            "external_reference": reference,
            "description": description,
            "date_of_expiration": expires_at.isoformat(timespec="milliseconds"),
            "payer": {"email": self.payer_email},
        }
        if self.notification_url:
            body["notification_url"] = self.notification_url

        data = await self._request(
            "POST", "/v1/payments", json=body, idempotency_key=idempotency_key
        )
        logger.info("provider_charge_created", charge_id=str(data.get("id")), reference=reference)
        return _to_charge(data)

    async def get_charge(self, charge_id: str) -> ProviderCharge:
        data = await self._request("GET", f"/v1/payments/{charge_id}", charge_id=charge_id)
        return _to_charge(data)

    async def cancel_charge(self, charge_id: str) -> None:
        await self._request(
            "PUT", f"/v1/payments/{charge_id}", json={"status": "cancelled"}, charge_id=charge_id
        )
        logger.info("provider_charge_cancelled", charge_id=charge_id)

    async def refund(
        self,
        charge_id: str,
        amount: Decimal | None,
        idempotency_key: str,
    ) -> ProviderRefund:
        body = {"amount": float(amount)} if amount is not None else {}
        data = await self._request(
            "POST",
            f"/v1/payments/{charge_id}/refunds",
            json=body,
            idempotency_key=idempotency_key,
            charge_id=charge_id,
        )
        logger.info("provider_refund_created", charge_id=charge_id, refund_id=str(data.get("id")))
        return ProviderRefund(
            refund_id=str(data["id"]),
            charge_id=charge_id,
            amount=Decimal(str(data.get("amount", amount or 0))),
        )


def _error_detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("message", response.text))
    except ValueError:
        return response.text


def _to_charge(data: dict[str, Any]) -> ProviderCharge:
    transaction = (data.get("point_of_interaction") or {}).get("transaction_data") or {}
    expires_raw = data.get("date_of_expiration")
    return ProviderCharge(
        charge_id=str(data["id"]),
        status=_STATUS_MAP.get(data.get("status", ""), ProviderChargeStatus.PENDING),
        amount=Decimal(str(data.get("transaction_amount", "0"))),
        reference=str(data.get("external_reference") or ""),
        qr_code_payload=transaction.get("qr_code", ""),
        qr_code_image=transaction.get("qr_code_base64", ""),
        ticket_url=transaction.get("ticket_url"),
        expires_at=datetime.fromisoformat(expires_raw) if expires_raw else None,
    )
