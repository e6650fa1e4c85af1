"""Payment provider webhook endpoint."""

import json
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from pizzeria.api.routes import get_runtime, raise_http_error
from pizzeria.errors import OrderError
from pizzeria.payments.base import ChargeNotFoundError, PaymentProviderError
from pizzeria.payments.webhook import InvalidSignatureError, verify_signature
from pizzeria.runtime import Runtime
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.post("/webhooks/pix")
async def pix_webhook(
    request: Request,
    data_id: str | None = Query(default=None, alias="data.id"),
    x_signature: str | None = Header(default=None),
    x_request_id: str | None = Header(default=None),
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    Receive a payment notification.

    Only signed notifications are processed. The charge is re-read from the
    provider before anything changes, and replays are harmless.
    """
    secret = runtime.settings.payment_webhook_secret
    if not secret:
        logger.error("webhook_secret_missing")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        body = await request.json()
    except json.JSONDecodeError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    charge_id = data_id or str((body.get("data") or {}).get("id") or "") or None

    try:
        verify_signature(x_signature, x_request_id, charge_id, secret)
    except InvalidSignatureError as e:
        logger.warning("webhook_signature_rejected", charge_id=charge_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    try:
        result = await runtime.webhooks.handle(body.get("type"), charge_id)
    except ChargeNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except PaymentProviderError as e:
        # Non-2xx makes the provider redeliver later.
        logger.error("webhook_provider_error", charge_id=charge_id, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e
    except OrderError as e:
        raise_http_error(e)

    logger.info(
        "webhook_processed",
        charge_id=charge_id,
        handled=result.handled,
        reason=result.reason,
    )
    return {
        "status": "ok",
        "handled": result.handled,
        "order_id": str(result.order.id) if result.order else None,
    }
