"""Tests for the order state machine."""

from datetime import timedelta
from decimal import Decimal

import pytest

from pizzeria.errors import IntegrityError, TransitionError
from pizzeria.models.order import OrderStatus, OrderType, PaymentStatus
from pizzeria.state.workflow import Actor, OrderTransitions

S = OrderStatus

EXPECTED_FULFILLMENT = {
    S.PENDING: {S.ACCEPTED, S.CANCELLED},
    S.ACCEPTED: {S.READY, S.CANCELLED},
    S.READY: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: {S.DELETED},
    S.CANCELLED: {S.DELETED},
    S.DELETED: {S.COMPLETED},
    S.AWAITING_PAYMENT: {S.PENDING, S.CANCELLED},
    S.RESERVED: set(),
}

EXPECTED_RESERVATION = {
    S.PENDING: {S.RESERVED, S.CANCELLED},
    S.RESERVED: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: {S.DELETED},
    S.CANCELLED: {S.DELETED},
    S.DELETED: {S.COMPLETED},
    S.AWAITING_PAYMENT: {S.PENDING, S.CANCELLED},
    S.ACCEPTED: set(),
    S.READY: set(),
}


@pytest.mark.parametrize(
    "order_type,expected",
    [
        (OrderType.DELIVERY, EXPECTED_FULFILLMENT),
        (OrderType.PICKUP, EXPECTED_FULFILLMENT),
        (OrderType.LOCAL, EXPECTED_RESERVATION),
    ],
)
def test_transition_tables(order_type, expected) -> None:
    """Test that every (from, to) pair follows the order type's table."""
    for from_state in OrderStatus:
        for to_state in OrderStatus:
            assert OrderTransitions.can_transition(order_type, from_state, to_state) == (
                to_state in expected[from_state]
            ), (order_type, from_state, to_state)


def test_legal_transition_returns_new_snapshot(machine, order_factory, delivery_draft) -> None:
    """Test that a transition returns a copy and leaves the input untouched."""
    order = order_factory(delivery_draft)

    accepted = machine.apply_status_transition(order, OrderStatus.ACCEPTED)

    assert accepted.status == OrderStatus.ACCEPTED
    assert order.status == OrderStatus.PENDING
    assert accepted.pickup_time_estimate is None


def test_illegal_transition_lists_allowed_targets(machine, order_factory, delivery_draft) -> None:
    """Test that skipping a step is rejected with the legal alternatives."""
    order = order_factory(delivery_draft)

    with pytest.raises(TransitionError) as exc_info:
        machine.apply_status_transition(order, OrderStatus.COMPLETED)

    error = exc_info.value
    assert error.field == "status"
    assert error.from_value == "pending"
    assert error.to_value == "completed"
    assert error.allowed == ["accepted", "cancelled"]


def test_reservation_uses_reserved_instead_of_accepted(
    machine, order_factory, reservation_draft
) -> None:
    """Test that local orders go pending -> reserved and cannot be accepted."""
    order = order_factory(reservation_draft)

    reserved = machine.apply_status_transition(order, OrderStatus.RESERVED)
    assert reserved.status == OrderStatus.RESERVED

    with pytest.raises(TransitionError):
        machine.apply_status_transition(order, OrderStatus.ACCEPTED)


def test_accepting_pickup_sets_default_estimate(machine, clock, order_factory, pix_draft) -> None:
    """Test that an accepted pickup order gets an estimate from the configured default."""
    order = order_factory(pix_draft)

    accepted = machine.apply_status_transition(order, OrderStatus.ACCEPTED)

    assert accepted.pickup_time_estimate == clock.now + timedelta(minutes=30)


def test_explicit_pickup_estimate_wins(machine, clock, order_factory, pix_draft) -> None:
    """Test that an estimate supplied with the transition is kept as given."""
    order = order_factory(pix_draft)
    estimate = clock.now + timedelta(minutes=45)

    accepted = machine.apply_status_transition(
        order, OrderStatus.ACCEPTED, {"pickup_time_estimate": estimate}
    )
    ready = machine.apply_status_transition(accepted, OrderStatus.READY)

    assert accepted.pickup_time_estimate == estimate
    assert ready.pickup_time_estimate == estimate


def test_awaiting_payment_moves_to_pending(machine, order_factory, pix_draft) -> None:
    """Test that an order awaiting payment can only become pending or cancelled."""
    order = order_factory(pix_draft, status=OrderStatus.AWAITING_PAYMENT)

    assert machine.apply_status_transition(order, OrderStatus.PENDING).status == S.PENDING
    with pytest.raises(TransitionError):
        machine.apply_status_transition(order, OrderStatus.ACCEPTED)


def test_admin_payment_changes(machine, order_factory, delivery_draft) -> None:
    """Test that an admin can mark cash orders paid and undo it."""
    order = order_factory(delivery_draft)

    paid = machine.apply_payment_status_transition(order, PaymentStatus.PAID)
    reverted = machine.apply_payment_status_transition(paid, PaymentStatus.PENDING)

    assert paid.payment_status == PaymentStatus.PAID
    assert paid.status == OrderStatus.PENDING
    assert reverted.payment_status == PaymentStatus.PENDING


def test_admin_cannot_set_paid_online(machine, order_factory, pix_draft) -> None:
    """Test that paid_online is reserved for provider confirmations."""
    order = order_factory(pix_draft)

    with pytest.raises(TransitionError) as exc_info:
        machine.apply_payment_status_transition(order, PaymentStatus.PAID_ONLINE)

    assert exc_info.value.field == "payment_status"


def test_admin_cannot_leave_paid_online(machine, order_factory, pix_draft) -> None:
    """Test that an online payment is not reverted by hand."""
    order = order_factory(pix_draft, payment_status=PaymentStatus.PAID_ONLINE)

    for target in (PaymentStatus.PENDING, PaymentStatus.PAID):
        with pytest.raises(TransitionError):
            machine.apply_payment_status_transition(order, target)


@pytest.mark.parametrize("status", [OrderStatus.DELETED, OrderStatus.CANCELLED])
def test_admin_payment_change_on_closed_order(
    machine, order_factory, delivery_draft, status
) -> None:
    """Test that payment status is frozen for admins on deleted or cancelled orders."""
    order = order_factory(delivery_draft, status=status)

    with pytest.raises(TransitionError):
        machine.apply_payment_status_transition(order, PaymentStatus.PAID)


@pytest.mark.parametrize("status", list(OrderStatus))
def test_provider_confirmation_at_any_status(machine, order_factory, pix_draft, status) -> None:
    """Test that provider confirmation is accepted whatever the fulfillment status."""
    order = order_factory(pix_draft, status=status)

    confirmed = machine.apply_payment_status_transition(
        order, PaymentStatus.PAID_ONLINE, Actor.PROVIDER
    )

    assert confirmed.payment_status == PaymentStatus.PAID_ONLINE
    assert confirmed.status == status


def test_provider_confirmation_is_idempotent(machine, order_factory, pix_draft) -> None:
    """Test that repeated or post-refund confirmations change nothing."""
    paid = order_factory(pix_draft, payment_status=PaymentStatus.PAID_ONLINE)
    refunded = order_factory(pix_draft, payment_status=PaymentStatus.REFUNDED)

    assert (
        machine.apply_payment_status_transition(paid, PaymentStatus.PAID_ONLINE, Actor.PROVIDER)
        is paid
    )
    assert (
        machine.apply_payment_status_transition(
            refunded, PaymentStatus.PAID_ONLINE, Actor.PROVIDER
        )
        is refunded
    )


def test_provider_only_confirms(machine, order_factory, pix_draft) -> None:
    """Test that the provider actor cannot set other payment statuses."""
    order = order_factory(pix_draft)

    with pytest.raises(TransitionError):
        machine.apply_payment_status_transition(order, PaymentStatus.PAID, Actor.PROVIDER)


def test_system_refund_requires_payment(machine, order_factory, pix_draft) -> None:
    """Test that refund bookkeeping is only allowed on paid orders."""
    unpaid = order_factory(pix_draft)
    paid = order_factory(pix_draft, payment_status=PaymentStatus.PAID_ONLINE)

    with pytest.raises(TransitionError):
        machine.apply_payment_status_transition(unpaid, PaymentStatus.REFUNDED, Actor.SYSTEM)

    refunded = machine.apply_payment_status_transition(paid, PaymentStatus.REFUNDED, Actor.SYSTEM)
    assert refunded.payment_status == PaymentStatus.REFUNDED


@pytest.mark.parametrize("status", [S.PENDING, S.ACCEPTED, S.READY, S.CANCELLED])
def test_soft_delete_from_any_status(machine, order_factory, delivery_draft, status) -> None:
    """Test that any order can be moved to the trash."""
    order = order_factory(delivery_draft, status=status)

    deleted = machine.soft_delete(order)

    assert deleted.status == OrderStatus.DELETED
    assert machine.soft_delete(deleted) is deleted


def test_restore_lands_on_completed(machine, order_factory, delivery_draft) -> None:
    """Test that a restored order is completed regardless of where it came from."""
    order = order_factory(delivery_draft)
    deleted = machine.soft_delete(order)

    assert machine.restore(deleted).status == OrderStatus.COMPLETED
    with pytest.raises(TransitionError):
        machine.restore(order)


def test_permanent_delete_requires_trash(machine, order_factory, delivery_draft) -> None:
    """Test that only trashed orders may be purged."""
    order = order_factory(delivery_draft)

    with pytest.raises(TransitionError):
        machine.check_permanent_delete(order)
    machine.check_permanent_delete(machine.soft_delete(order))


def test_update_reservation_time(machine, order_factory, reservation_draft, delivery_draft) -> None:
    """Test that only open local orders can be rescheduled."""
    reservation = order_factory(reservation_draft)
    delivery = order_factory(delivery_draft)
    completed = order_factory(reservation_draft, status=OrderStatus.COMPLETED)

    moved = machine.update_reservation_time(reservation, "21:00")

    assert moved.customer.reservation_time == "21:00"
    assert reservation.customer.reservation_time == "20:30"
    with pytest.raises(TransitionError):
        machine.update_reservation_time(delivery, "21:00")
    with pytest.raises(TransitionError):
        machine.update_reservation_time(completed, "21:00")


def test_total_drift_blocks_transitions(machine, order_factory, delivery_draft) -> None:
    """Test that an order whose total drifted from its lines is refused."""
    order = order_factory(delivery_draft, total=Decimal("99.00"))

    with pytest.raises(IntegrityError) as exc_info:
        machine.apply_status_transition(order, OrderStatus.ACCEPTED)

    assert exc_info.value.stored_total == Decimal("99.00")
    assert exc_info.value.computed_total == Decimal("110.00")


def test_needs_review_blocks_transitions(machine, order_factory, delivery_draft) -> None:
    """Test that a flagged order stays frozen even with a consistent total."""
    order = order_factory(delivery_draft, needs_review=True)

    machine.verify_integrity(order)
    with pytest.raises(IntegrityError):
        machine.apply_status_transition(order, OrderStatus.ACCEPTED)
    with pytest.raises(IntegrityError):
        machine.soft_delete(order)
    with pytest.raises(IntegrityError):
        machine.check_permanent_delete(order.model_copy(update={"status": OrderStatus.DELETED}))
