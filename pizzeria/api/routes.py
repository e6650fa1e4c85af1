"""REST routes for customers and the admin console."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID, uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from pizzeria.errors import (
    ConflictError,
    IntegrityError,
    OrderError,
    OrderNotFoundError,
    PaymentError,
    TransitionError,
    ValidationError,
)
from pizzeria.models.checkout import (
    CartItem,
    CheckoutSubmission,
    extract_chatbot_action,
    parse_chatbot_action,
)
from pizzeria.models.order import (
    Order,
    OrderFilter,
    OrderStatus,
    OrderType,
    PaymentSession,
    PaymentStatus,
)
from pizzeria.runtime import Runtime
from pizzeria.services.checkout import CheckoutRequest, CheckoutState, CheckoutStateError
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()

# Payment errors that are the caller's fault rather than a conflict with current state.
_PAYMENT_INPUT_ERRORS = {"invalid_refund_amount"}


# Request/Response Models


class CheckoutRequestBody(BaseModel):
    """Checkout form submission plus the cart it pays for."""

    client_id: str | None = None
    user_id: str | None = None
    details: CheckoutSubmission
    cart: list[CartItem] = Field(default_factory=list)


class CheckoutResponse(BaseModel):
    client_id: str
    state: CheckoutState
    order: Order | None = None
    payment_session: PaymentSession | None = None
    error: dict[str, Any] | None = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    pickup_time_estimate: datetime | None = None


class PaymentStatusUpdateRequest(BaseModel):
    payment_status: PaymentStatus


class ReservationTimeRequest(BaseModel):
    reservation_time: str = Field(min_length=1)


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    idempotency_key: str | None = None


# Dependencies


def get_runtime(request: Request) -> Runtime:
    """Runtime created by the application lifespan."""
    return request.app.state.runtime


def raise_http_error(e: Exception) -> None:
    if isinstance(e, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(e), "errors": e.errors},
        ) from e

    if isinstance(e, OrderNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e

    if isinstance(e, TransitionError):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(e),
                "field": e.field,
                "from": e.from_value,
                "to": e.to_value,
                "allowed": e.allowed,
            },
        ) from e

    if isinstance(e, (ConflictError, CheckoutStateError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    if isinstance(e, IntegrityError):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": str(e), "needs_review": True},
        ) from e

    if isinstance(e, PaymentError):
        detail = {"message": str(e), "code": e.code, "retryable": e.retryable}
        if e.code == "provider_error":
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail) from e
        if e.code in _PAYMENT_INPUT_ERRORS:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail
            ) from e
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=detail) from e

    raise HTTPException(status_code=500, detail="Internal Server Error") from e


async def _run_checkout(
    runtime: Runtime,
    request: CheckoutRequest,
    cart: list[CartItem] | None,
    client_id: str | None,
    user_id: str | None,
) -> CheckoutResponse:
    client_id = client_id or uuid4().hex
    checkout = runtime.checkout(client_id, user_id=user_id)
    try:
        await checkout.submit(request, cart)
    except OrderError as e:
        raise_http_error(e)
    finally:
        # The customer follows the order over its websocket from here on.
        await checkout.close()

    error = None
    if checkout.error is not None:
        error = {
            "message": str(checkout.error),
            "code": checkout.error.code,
            "retryable": checkout.error.retryable,
        }

    return CheckoutResponse(
        client_id=client_id,
        state=checkout.state,
        order=checkout.order,
        payment_session=checkout.session,
        error=error,
    )


# Customer routes


@router.post("/orders", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    body: CheckoutRequestBody,
    runtime: Runtime = Depends(get_runtime),
) -> CheckoutResponse:
    """
    Submit a checkout.

    The order is always created when the details are valid. For PIX with
    pay-now the response carries the payment session, or an error the
    customer can recover from by retrying or paying later.
    """
    return await _run_checkout(runtime, body.details, body.cart, body.client_id, body.user_id)


@router.post(
    "/chatbot/actions", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED
)
async def submit_chatbot_action(
    payload: dict[str, Any],
    runtime: Runtime = Depends(get_runtime),
) -> CheckoutResponse:
    """Accept a tagged action, or an assistant reply carrying an action block."""
    try:
        if "text" in payload:
            action = extract_chatbot_action(str(payload["text"]))
            if action is None:
                raise ValidationError("The reply carries no action block")
        else:
            action = parse_chatbot_action(payload)
    except ValidationError as e:
        raise_http_error(e)

    return await _run_checkout(
        runtime, action, None, payload.get("client_id"), payload.get("user_id")
    )


@router.get("/orders", response_model=list[Order])
async def list_customer_orders(
    user_id: str,
    runtime: Runtime = Depends(get_runtime),
) -> list[Order]:
    """Orders placed by a signed-in customer, trash excluded."""
    return await runtime.orders.list_orders(
        OrderFilter(user_id=user_id, exclude_statuses={OrderStatus.DELETED})
    )


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(order_id: UUID, runtime: Runtime = Depends(get_runtime)) -> Order:
    try:
        return await runtime.orders.get_order(order_id)
    except OrderError as e:
        raise_http_error(e)


@router.post(
    "/orders/{order_id}/payment-session",
    response_model=PaymentSession,
    status_code=status.HTTP_201_CREATED,
)
async def create_payment_session(
    order_id: UUID, runtime: Runtime = Depends(get_runtime)
) -> PaymentSession:
    """Start, or retry, a PIX payment for an unpaid order."""
    try:
        return await runtime.sessions.create_session(order_id)
    except OrderError as e:
        raise_http_error(e)


@router.delete("/orders/{order_id}/payment-session", response_model=Order)
async def cancel_payment_session(
    order_id: UUID,
    charge_id: str | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> Order:
    try:
        return await runtime.sessions.cancel_session(order_id, charge_id)
    except OrderError as e:
        raise_http_error(e)


@router.post("/orders/{order_id}/pay-later", response_model=Order)
async def pay_later(order_id: UUID, runtime: Runtime = Depends(get_runtime)) -> Order:
    try:
        return await runtime.sessions.pay_later(order_id)
    except OrderError as e:
        raise_http_error(e)


# Admin routes


@router.get("/admin/orders", response_model=list[Order])
async def list_admin_orders(
    view: Literal["active", "trash", "all"] = "active",
    order_type: OrderType | None = None,
    search: str | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> list[Order]:
    """Orders for the admin console, newest first."""
    if view == "active":
        order_filter = OrderFilter.active(order_type=order_type, search=search)
    elif view == "trash":
        order_filter = OrderFilter.trash(order_type=order_type, search=search)
    else:
        order_filter = OrderFilter(order_type=order_type, search=search)
    return await runtime.orders.list_orders(order_filter)


@router.patch("/admin/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: UUID,
    body: StatusUpdateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Order:
    payload = {}
    if body.pickup_time_estimate is not None:
        payload["pickup_time_estimate"] = body.pickup_time_estimate
    try:
        return await runtime.orders.update_status(order_id, body.status, payload)
    except OrderError as e:
        raise_http_error(e)


@router.patch("/admin/orders/{order_id}/payment-status", response_model=Order)
async def update_payment_status(
    order_id: UUID,
    body: PaymentStatusUpdateRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Order:
    try:
        return await runtime.orders.update_payment_status(order_id, body.payment_status)
    except OrderError as e:
        raise_http_error(e)


@router.patch("/admin/orders/{order_id}/reservation-time", response_model=Order)
async def update_reservation_time(
    order_id: UUID,
    body: ReservationTimeRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Order:
    try:
        return await runtime.orders.update_reservation_time(order_id, body.reservation_time)
    except OrderError as e:
        raise_http_error(e)


@router.post("/admin/orders/{order_id}/trash", response_model=Order)
async def soft_delete_order(order_id: UUID, runtime: Runtime = Depends(get_runtime)) -> Order:
    """Move an order to the trash."""
    try:
        return await runtime.orders.soft_delete(order_id)
    except OrderError as e:
        raise_http_error(e)


@router.post("/admin/orders/{order_id}/restore", response_model=Order)
async def restore_order(order_id: UUID, runtime: Runtime = Depends(get_runtime)) -> Order:
    try:
        return await runtime.orders.restore(order_id)
    except OrderError as e:
        raise_http_error(e)


@router.delete("/admin/orders/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
async def permanently_delete_order(
    order_id: UUID, runtime: Runtime = Depends(get_runtime)
) -> None:
    """Purge an order that is already in the trash."""
    try:
        await runtime.orders.permanent_delete(order_id)
    except OrderError as e:
        raise_http_error(e)


@router.post("/admin/orders/{order_id}/refund", response_model=Order)
async def refund_order(
    order_id: UUID,
    body: RefundRequest,
    runtime: Runtime = Depends(get_runtime),
) -> Order:
    try:
        return await runtime.sessions.refund_charge(order_id, body.amount, body.idempotency_key)
    except OrderError as e:
        raise_http_error(e)
