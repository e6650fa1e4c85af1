"""Order state machine: legal status and payment-status transitions."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from pizzeria.errors import IntegrityError, TransitionError
from pizzeria.models.order import (
    Order,
    OrderStatus,
    OrderType,
    PaymentStatus,
    utcnow,
)


class Actor(str, Enum):
    """Who is asking for a change."""

    CUSTOMER = "customer"
    ADMIN = "admin"
    PROVIDER = "provider"
    SYSTEM = "system"


_FULFILLMENT_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.ACCEPTED, OrderStatus.CANCELLED],
    OrderStatus.ACCEPTED: [OrderStatus.READY, OrderStatus.CANCELLED],
    OrderStatus.READY: [OrderStatus.COMPLETED, OrderStatus.CANCELLED],
    OrderStatus.COMPLETED: [OrderStatus.DELETED],
    OrderStatus.CANCELLED: [OrderStatus.DELETED],
    OrderStatus.DELETED: [OrderStatus.COMPLETED],
    OrderStatus.AWAITING_PAYMENT: [OrderStatus.PENDING, OrderStatus.CANCELLED],
}

_RESERVATION_TRANSITIONS = {
    OrderStatus.PENDING: [OrderStatus.RESERVED, OrderStatus.CANCELLED],
    OrderStatus.RESERVED: [OrderStatus.COMPLETED, OrderStatus.CANCELLED],
    OrderStatus.COMPLETED: [OrderStatus.DELETED],
    OrderStatus.CANCELLED: [OrderStatus.DELETED],
    OrderStatus.DELETED: [OrderStatus.COMPLETED],
    OrderStatus.AWAITING_PAYMENT: [OrderStatus.PENDING, OrderStatus.CANCELLED],
}


class OrderTransitions:
    """Valid status transitions per order type."""

    TRANSITIONS = {
        OrderType.DELIVERY: _FULFILLMENT_TRANSITIONS,
        OrderType.PICKUP: _FULFILLMENT_TRANSITIONS,
        OrderType.LOCAL: _RESERVATION_TRANSITIONS,
    }

    # Payment statuses an admin may set by hand.
    ADMIN_PAYMENT_TARGETS = [
        PaymentStatus.PENDING,
        PaymentStatus.PAID,
        PaymentStatus.REFUNDED,
    ]

    @classmethod
    def allowed(cls, order_type: OrderType, from_state: OrderStatus) -> list[OrderStatus]:
        return list(cls.TRANSITIONS[order_type].get(from_state, []))

    @classmethod
    def can_transition(
        cls, order_type: OrderType, from_state: OrderStatus, to_state: OrderStatus
    ) -> bool:
        """Check if a state transition is valid."""
        return to_state in cls.TRANSITIONS[order_type].get(from_state, [])


def _values(states: list[Any]) -> list[str]:
    return [state.value for state in states]


class OrderStateMachine:
    """Single authority for which order changes are legal.

    Every method takes an order snapshot and returns a new one; the input is
    never mutated. Persisting the result is the caller's job.
    """

    def __init__(
        self,
        pickup_estimate_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pickup_estimate = timedelta(minutes=pickup_estimate_minutes)
        self.clock = clock

    def verify_integrity(self, order: Order) -> None:
        """Raise IntegrityError when the cached total drifted from its lines."""
        computed = order.computed_total()
        if computed != order.total:
            raise IntegrityError(order.id, order.total, computed)

    def guard(self, order: Order) -> None:
        """Refuse to touch an order whose total drifted or that awaits review."""
        self.verify_integrity(order)
        if order.needs_review:
            raise IntegrityError(order.id, order.total, order.computed_total())

    def apply_status_transition(
        self,
        order: Order,
        new_status: OrderStatus,
        payload: dict[str, Any] | None = None,
    ) -> Order:
        """Move an order along its type's transition table."""
        self.guard(order)
        payload = payload or {}
        order_type = order.customer.order_type

        if not OrderTransitions.can_transition(order_type, order.status, new_status):
            raise TransitionError(
                order.id,
                "status",
                order.status.value,
                new_status.value,
                _values(OrderTransitions.allowed(order_type, order.status)),
            )

        updates: dict[str, Any] = {"status": new_status}
        if order_type == OrderType.PICKUP and new_status in (
            OrderStatus.ACCEPTED,
            OrderStatus.READY,
        ):
            estimate = payload.get("pickup_time_estimate")
            if estimate is not None:
                updates["pickup_time_estimate"] = estimate
            elif new_status == OrderStatus.ACCEPTED:
                updates["pickup_time_estimate"] = self.clock() + self.pickup_estimate

        return order.model_copy(update=updates)

    def apply_payment_status_transition(
        self,
        order: Order,
        new_payment_status: PaymentStatus,
        actor: Actor = Actor.ADMIN,
    ) -> Order:
        """Change the payment axis without touching the fulfillment status."""
        current = order.payment_status

        if actor == Actor.PROVIDER:
            return self._apply_provider_confirmation(order, new_payment_status)

        self.guard(order)

        if actor == Actor.SYSTEM:
            # Refund bookkeeping after the provider accepted the refund.
            if new_payment_status != PaymentStatus.REFUNDED or current == PaymentStatus.PENDING:
                raise TransitionError(
                    order.id,
                    "payment_status",
                    current.value,
                    new_payment_status.value,
                    [PaymentStatus.REFUNDED.value] if current != PaymentStatus.PENDING else [],
                    reason="only a paid order can be refunded",
                )
            return order.model_copy(update={"payment_status": new_payment_status})

        if order.status in (OrderStatus.DELETED, OrderStatus.CANCELLED):
            raise TransitionError(
                order.id,
                "payment_status",
                current.value,
                new_payment_status.value,
                [],
                reason=f"order is {order.status.value}",
            )

        if new_payment_status == PaymentStatus.PAID_ONLINE:
            raise TransitionError(
                order.id,
                "payment_status",
                current.value,
                new_payment_status.value,
                _values(OrderTransitions.ADMIN_PAYMENT_TARGETS),
                reason="paid_online is set only by provider confirmation",
            )

        if current == PaymentStatus.PAID_ONLINE:
            raise TransitionError(
                order.id,
                "payment_status",
                current.value,
                new_payment_status.value,
                [],
                reason="online payments leave paid_online only through a refund",
            )

        return order.model_copy(update={"payment_status": new_payment_status})

    def _apply_provider_confirmation(
        self, order: Order, new_payment_status: PaymentStatus
    ) -> Order:
        # Accepted at any status: payment and fulfillment are independent axes.
        if new_payment_status != PaymentStatus.PAID_ONLINE:
            raise TransitionError(
                order.id,
                "payment_status",
                order.payment_status.value,
                new_payment_status.value,
                [PaymentStatus.PAID_ONLINE.value],
                reason="the provider only confirms payments",
            )
        if order.payment_status in (PaymentStatus.PAID_ONLINE, PaymentStatus.REFUNDED):
            return order
        return order.model_copy(update={"payment_status": PaymentStatus.PAID_ONLINE})

    def soft_delete(self, order: Order) -> Order:
        """Move an order to the trash from any status."""
        self.guard(order)
        if order.status == OrderStatus.DELETED:
            return order
        return order.model_copy(update={"status": OrderStatus.DELETED})

    def restore(self, order: Order) -> Order:
        """Bring a trashed order back; restored orders always land on completed."""
        self.guard(order)
        if order.status != OrderStatus.DELETED:
            raise TransitionError(
                order.id,
                "status",
                order.status.value,
                OrderStatus.COMPLETED.value,
                [],
                reason="only deleted orders can be restored",
            )
        return order.model_copy(update={"status": OrderStatus.COMPLETED})

    def check_permanent_delete(self, order: Order) -> None:
        self.guard(order)
        if order.status != OrderStatus.DELETED:
            raise TransitionError(
                order.id,
                "status",
                order.status.value,
                "purged",
                [],
                reason="move the order to the trash first",
            )

    def update_reservation_time(self, order: Order, reservation_time: str) -> Order:
        """Reschedule a local order."""
        self.guard(order)
        if order.customer.order_type != OrderType.LOCAL:
            raise TransitionError(
                order.id,
                "reservation_time",
                order.customer.reservation_time or "",
                reservation_time,
                [],
                reason="only local orders carry a reservation time",
            )
        if order.status in (OrderStatus.DELETED, OrderStatus.CANCELLED, OrderStatus.COMPLETED):
            raise TransitionError(
                order.id,
                "reservation_time",
                order.customer.reservation_time or "",
                reservation_time,
                [],
                reason=f"order is {order.status.value}",
            )
        customer = order.customer.model_copy(update={"reservation_time": reservation_time})
        return order.model_copy(update={"customer": customer})
