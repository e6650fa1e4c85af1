"""Checkout orchestration: from cart submission to a confirmed order."""

import asyncio
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Protocol, Union
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from pizzeria.errors import OrderError, OrderNotFoundError, PaymentError, ValidationError
from pizzeria.models.checkout import (
    CartItem,
    CheckoutSubmission,
    CreateOrderAction,
    CreateReservationAction,
    validation_details,
)
from pizzeria.models.order import (
    CustomerInfo,
    Order,
    OrderDraft,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentSession,
    PaymentStatus,
    compute_total,
    utcnow,
)
from pizzeria.payments.sessions import PaymentSessionManager
from pizzeria.services.orders import OrderService
from pizzeria.state.manager import StateManager
from pizzeria.state.sync import OrderSynchronizer
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)

CheckoutRequest = Union[CheckoutSubmission, CreateOrderAction, CreateReservationAction]


class CheckoutState(str, Enum):
    DRAFT = "draft"
    SUBMITTING = "submitting"
    AWAITING_PIX_PAYMENT = "awaiting_pix_payment"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"


class CheckoutStateError(OrderError):
    """The requested step is not available in the current checkout state."""

    def __init__(self, action: str, state: CheckoutState) -> None:
        super().__init__(f"Cannot {action} while checkout is {state.value}")
        self.action = action
        self.state = state


class Cart:
    """Items the customer intends to buy."""

    def __init__(self, items: list[CartItem] | None = None):
        self.items: list[CartItem] = list(items or [])

    def add(self, item: CartItem) -> None:
        for index, existing in enumerate(self.items):
            if existing.product_id == item.product_id and existing.size == item.size:
                self.items[index] = existing.model_copy(
                    update={"quantity": existing.quantity + item.quantity}
                )
                return
        self.items.append(item)

    def remove(self, product_id: str, size: str = "") -> None:
        self.items = [
            item for item in self.items if not (item.product_id == product_id and item.size == size)
        ]

    def clear(self) -> None:
        self.items.clear()

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def subtotal(self) -> Decimal:
        return compute_total((item.to_order_item() for item in self.items), Decimal("0"))


class PendingOrderStorage(Protocol):
    """Remembers which order a client is still checking out."""

    async def save(self, client_id: str, order_id: UUID) -> None: ...

    async def load(self, client_id: str) -> UUID | None: ...

    async def clear(self, client_id: str) -> None: ...


class InMemoryPendingOrderStorage:
    def __init__(self) -> None:
        self._orders: dict[str, UUID] = {}

    async def save(self, client_id: str, order_id: UUID) -> None:
        self._orders[client_id] = order_id

    async def load(self, client_id: str) -> UUID | None:
        return self._orders.get(client_id)

    async def clear(self, client_id: str) -> None:
        self._orders.pop(client_id, None)


class RedisPendingOrderStorage:
    """Pending order references that outlive a restart, expiring after a TTL."""

    def __init__(self, state_manager: StateManager, ttl: int = 86400):
        self.state = state_manager
        self.ttl = ttl

    def _key(self, client_id: str) -> str:
        return f"checkout:pending:{client_id}"

    async def save(self, client_id: str, order_id: UUID) -> None:
        await self.state.set_text(self._key(client_id), str(order_id), ttl=self.ttl)

    async def load(self, client_id: str) -> UUID | None:
        value = await self.state.get_text(self._key(client_id))
        return UUID(value) if value else None

    async def clear(self, client_id: str) -> None:
        await self.state.delete(self._key(client_id))


def _reservation_draft(action: CreateReservationAction, user_id: str | None) -> OrderDraft:
    details = action.details
    customer = CustomerInfo(
        name=details.name,
        phone=details.phone,
        order_type=OrderType.LOCAL,
        reservation_date=details.reservation_date,
        reservation_time=details.reservation_time,
        number_of_people=details.number_of_people,
    )
    # Reservations are settled at the table.
    return OrderDraft(
        customer=customer,
        items=[],
        total=Decimal("0"),
        payment_method=PaymentMethod.CASH,
        notes=details.notes,
        user_id=user_id,
    )


def build_draft(
    request: CheckoutRequest,
    cart_items: list[CartItem] | None = None,
    user_id: str | None = None,
) -> OrderDraft:
    """Validate a checkout request and derive the order draft with its total."""
    if isinstance(request, CreateReservationAction):
        try:
            return _reservation_draft(request, user_id)
        except PydanticValidationError as e:
            raise ValidationError("Invalid reservation", validation_details(e)) from e

    if isinstance(request, CreateOrderAction):
        submission, cart_items = request.details, request.cart
    else:
        submission = request

    items = [item.to_order_item() for item in cart_items or []]
    order_type = submission.order_type
    if not items and order_type != OrderType.LOCAL:
        raise ValidationError(
            "Cart is empty", [{"loc": ["cart"], "msg": "cart is empty", "type": "value_error"}]
        )

    # A fee left over from switching order type is dropped rather than charged.
    delivery_fee = submission.delivery_fee if order_type == OrderType.DELIVERY else Decimal("0")

    try:
        customer = CustomerInfo(
            name=submission.name,
            phone=submission.phone,
            order_type=order_type,
            address=submission.resolved_address(),
            reservation_time=submission.reservation_time,
        )
        return OrderDraft(
            customer=customer,
            items=items,
            delivery_fee=delivery_fee,
            total=compute_total(items, delivery_fee),
            payment_method=submission.payment_method,
            change_needed=submission.change_needed,
            change_amount=submission.change_amount,
            notes=submission.notes,
            user_id=user_id,
        )
    except PydanticValidationError as e:
        raise ValidationError("Invalid checkout details", validation_details(e)) from e


def _wants_pix_now(request: CheckoutRequest) -> bool:
    if isinstance(request, CreateReservationAction):
        return False
    submission = request.details if isinstance(request, CreateOrderAction) else request
    return submission.payment_method == PaymentMethod.PIX and submission.pay_now


class CheckoutOrchestrator:
    """Drives one client's checkout.

    The order is persisted before any payment is attempted, so a provider
    failure never loses it. While a PIX payment is pending the orchestrator
    follows the order's snapshots; a confirmation that arrives after the local
    timer ran out is still honoured. The cart is cleared only on success.
    """

    OUTCOME_STATES = (CheckoutState.CONFIRMED, CheckoutState.FAILED, CheckoutState.EXPIRED)

    def __init__(
        self,
        client_id: str,
        orders: OrderService,
        sessions: PaymentSessionManager,
        synchronizer: OrderSynchronizer,
        storage: PendingOrderStorage,
        cart: Cart | None = None,
        user_id: str | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client_id = client_id
        self.orders = orders
        self.sessions = sessions
        self.synchronizer = synchronizer
        self.storage = storage
        self.cart = cart or Cart()
        self.user_id = user_id
        self.clock = clock

        self.state = CheckoutState.DRAFT
        self.order: Order | None = None
        self.session: PaymentSession | None = None
        self.error: PaymentError | None = None
        self.payment_deferred = False

        self._condition = asyncio.Condition()
        self._watch_task: asyncio.Task | None = None
        self._timer_task: asyncio.Task | None = None

    async def _set_state(self, state: CheckoutState) -> None:
        if self.state == CheckoutState.CONFIRMED and state != CheckoutState.CONFIRMED:
            # Confirmation is terminal.
            logger.warning(
                "checkout_state_change_ignored",
                client_id=self.client_id,
                order_id=str(self.order.id) if self.order else None,
                to_state=state.value,
            )
            return
        async with self._condition:
            previous, self.state = self.state, state
            self._condition.notify_all()
        logger.info(
            "checkout_state_changed",
            client_id=self.client_id,
            order_id=str(self.order.id) if self.order else None,
            from_state=previous.value,
            to_state=state.value,
        )

    async def wait_for_state(
        self, *states: CheckoutState, timeout: float | None = None
    ) -> CheckoutState:
        """Block until the checkout reaches one of ``states``."""
        async with self._condition:
            await asyncio.wait_for(
                self._condition.wait_for(lambda: self.state in states), timeout
            )
        return self.state

    async def wait_for_outcome(self, timeout: float | None = None) -> CheckoutState:
        return await self.wait_for_state(*self.OUTCOME_STATES, timeout=timeout)

    async def submit(
        self, request: CheckoutRequest, cart_items: list[CartItem] | None = None
    ) -> CheckoutState:
        """
        Validate, persist and, for PIX pay-now, start the payment.

        Args:
            request: Checkout form submission or a chatbot action
            cart_items: Items to order; defaults to this checkout's cart

        Returns:
            The checkout state after submission
        """
        if self.state != CheckoutState.DRAFT:
            raise CheckoutStateError("submit", self.state)

        items = cart_items if cart_items is not None else list(self.cart.items)
        draft = build_draft(request, items, self.user_id)

        await self._set_state(CheckoutState.SUBMITTING)
        try:
            self.order = await self.orders.create_order(draft)
        except OrderError:
            await self._set_state(CheckoutState.DRAFT)
            raise

        await self.storage.save(self.client_id, self.order.id)

        if _wants_pix_now(request):
            await self._start_payment()
        else:
            await self._confirm(self.order)
        return self.state

    async def _start_payment(self) -> None:
        try:
            self.session = await self.sessions.create_session(self.order.id)
        except PaymentError as e:
            self.error = e
            logger.warning(
                "checkout_payment_failed",
                client_id=self.client_id,
                order_id=str(self.order.id),
                code=e.code,
                error=str(e),
            )
            if e.code == "already_paid":
                await self._confirm(await self.orders.get_order(self.order.id))
                return
            await self._set_state(CheckoutState.FAILED)
            return

        self.error = None
        await self._set_state(CheckoutState.AWAITING_PIX_PAYMENT)
        self._ensure_watch()
        self._start_timer(self.session)

    def _ensure_watch(self) -> None:
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self._watch(self.order.id))

    async def _watch(self, order_id: UUID) -> None:
        try:
            async for snapshot in self.synchronizer.subscribe_order(order_id):
                self.order = snapshot
                if snapshot.payment_status == PaymentStatus.PAID_ONLINE:
                    await self._confirm(snapshot)
                    return
        except OrderNotFoundError:
            pass
        logger.warning("checkout_order_vanished", client_id=self.client_id, order_id=str(order_id))

    def _start_timer(self, session: PaymentSession) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
        self._timer_task = asyncio.create_task(self._expire_at(session))

    async def _expire_at(self, session: PaymentSession) -> None:
        # The loop timer may fire a hair before the wall-clock deadline.
        delay = (session.expires_at - self.clock()).total_seconds()
        while delay > 0:
            await asyncio.sleep(delay)
            delay = (session.expires_at - self.clock()).total_seconds()
        await self.expire(session)

    async def expire(self, session: PaymentSession | None = None) -> None:
        """Handle the local deadline of the current payment attempt."""
        session = session or self.session
        if self.state != CheckoutState.AWAITING_PIX_PAYMENT or session is not self.session:
            return
        order = await self.sessions.mark_expired(self.order.id)
        # The watcher may have moved on while the expiry was being written.
        if self.state != CheckoutState.AWAITING_PIX_PAYMENT or session is not self.session:
            return
        self.order = order
        if order.payment_status == PaymentStatus.PAID_ONLINE:
            await self._confirm(order)
            return
        await self._set_state(CheckoutState.EXPIRED)

    async def retry_payment(self) -> CheckoutState:
        """Start a new PIX attempt for the same order."""
        if self.state not in (CheckoutState.FAILED, CheckoutState.EXPIRED):
            raise CheckoutStateError("retry payment", self.state)
        await self._start_payment()
        return self.state

    async def pay_later(self) -> CheckoutState:
        """Keep the order as a normal pending order to be paid on fulfillment."""
        if self.state not in (
            CheckoutState.AWAITING_PIX_PAYMENT,
            CheckoutState.FAILED,
            CheckoutState.EXPIRED,
        ):
            raise CheckoutStateError("pay later", self.state)
        order = await self.sessions.pay_later(self.order.id)
        self.payment_deferred = order.payment_status == PaymentStatus.PENDING
        await self._confirm(order)
        return self.state

    async def resume(self) -> CheckoutState:
        """Rebuild the checkout from the stored pending order after a restart."""
        order_id = await self.storage.load(self.client_id)
        if order_id is None:
            return self.state

        try:
            order = await self.orders.get_order(order_id)
        except OrderNotFoundError:
            logger.info(
                "checkout_pending_order_gone", client_id=self.client_id, order_id=str(order_id)
            )
            await self.storage.clear(self.client_id)
            return self.state

        self.order = order
        if order.payment_status in (PaymentStatus.PAID_ONLINE, PaymentStatus.PAID):
            await self._confirm(order)
        elif order.status in (OrderStatus.CANCELLED, OrderStatus.DELETED):
            await self.storage.clear(self.client_id)
            self.order = None
        elif order.payment_method != PaymentMethod.PIX:
            await self._confirm(order)
        elif order.payment_session is not None and order.payment_session.is_active(self.clock()):
            self.session = order.payment_session
            await self._set_state(CheckoutState.AWAITING_PIX_PAYMENT)
            self._ensure_watch()
            self._start_timer(self.session)
        elif order.payment_session is not None or order.session_history:
            if order.payment_session is not None:
                self.order = await self.sessions.mark_expired(order.id)
            await self._set_state(CheckoutState.EXPIRED)
            self._ensure_watch()
        else:
            await self._set_state(CheckoutState.FAILED)
            self._ensure_watch()

        logger.info(
            "checkout_resumed",
            client_id=self.client_id,
            order_id=str(order_id),
            state=self.state.value,
        )
        return self.state

    async def _confirm(self, order: Order) -> None:
        if self.state == CheckoutState.CONFIRMED:
            return
        self.order = order
        if self._timer_task is not None and self._timer_task is not asyncio.current_task():
            self._timer_task.cancel()
        self.cart.clear()
        await self.storage.clear(self.client_id)
        await self._set_state(CheckoutState.CONFIRMED)
        if self._watch_task is not None and self._watch_task is not asyncio.current_task():
            self._watch_task.cancel()

    async def close(self) -> None:
        """Stop following the order; the order itself is left untouched."""
        for task in (self._watch_task, self._timer_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._watch_task = None
        self._timer_task = None
