"""Tests for the checkout orchestrator."""

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from pizzeria.errors import ValidationError
from pizzeria.models.checkout import (
    CartItem,
    CheckoutSubmission,
    CreateReservationAction,
    ReservationDetails,
)
from pizzeria.models.order import (
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentStatus,
    SessionState,
    utcnow,
)
from pizzeria.payments.sessions import PaymentSessionManager
from pizzeria.services.checkout import (
    Cart,
    CheckoutOrchestrator,
    CheckoutState,
    CheckoutStateError,
    InMemoryPendingOrderStorage,
    build_draft,
)
from pizzeria.services.orders import OrderService
from pizzeria.state.store import InMemoryOrderStore
from pizzeria.state.sync import OrderSynchronizer

TIMEOUT = 2.0


class CheckoutEnv:
    """Real-clock services shared by the checkouts of one test."""

    def __init__(self, provider, synchronizer, orders) -> None:
        self.provider = provider
        self.synchronizer = synchronizer
        self.orders = orders
        self.storage = InMemoryPendingOrderStorage()
        self.checkouts: list[CheckoutOrchestrator] = []

    def sessions(self, ttl: float) -> PaymentSessionManager:
        return PaymentSessionManager(self.orders, self.provider, session_ttl_seconds=ttl)

    def checkout(
        self,
        cart_items: list[CartItem] | None = None,
        ttl: float = 300,
        client_id: str = "client-1",
    ) -> CheckoutOrchestrator:
        checkout = CheckoutOrchestrator(
            client_id=client_id,
            orders=self.orders,
            sessions=self.sessions(ttl),
            synchronizer=self.synchronizer,
            storage=self.storage,
            cart=Cart(cart_items),
        )
        self.checkouts.append(checkout)
        return checkout


@pytest_asyncio.fixture
async def env(provider) -> AsyncGenerator[CheckoutEnv, None]:
    store = InMemoryOrderStore()
    synchronizer = OrderSynchronizer(store)
    await synchronizer.start()
    environment = CheckoutEnv(provider, synchronizer, OrderService(store))
    yield environment
    for checkout in environment.checkouts:
        await checkout.close()
    await synchronizer.stop()


@pytest.fixture
def make_checkout(env, cart_items) -> Callable[..., CheckoutOrchestrator]:
    def build(**kwargs) -> CheckoutOrchestrator:
        return env.checkout(cart_items=list(cart_items), **kwargs)

    return build


@pytest.mark.asyncio
async def test_cash_checkout_confirms_immediately(
    make_checkout, env, delivery_submission
) -> None:
    """Test that a non-PIX order is confirmed and the cart cleared right away."""
    checkout = make_checkout()

    state = await checkout.submit(delivery_submission)

    assert state == CheckoutState.CONFIRMED
    assert checkout.cart.is_empty
    assert checkout.order.total == Decimal("110.00")
    assert checkout.order.status == OrderStatus.PENDING
    assert await env.storage.load("client-1") is None


@pytest.mark.asyncio
async def test_pix_checkout_confirmed_by_payment(make_checkout, env, pix_submission) -> None:
    """Test that a PIX checkout waits for the provider and then confirms."""
    checkout = make_checkout()

    state = await checkout.submit(pix_submission)

    assert state == CheckoutState.AWAITING_PIX_PAYMENT
    assert checkout.session.state == SessionState.ACTIVE
    assert not checkout.cart.is_empty
    assert await env.storage.load("client-1") == checkout.order.id

    charge_id = checkout.session.provider_charge_id
    env.provider.approve(charge_id)
    await checkout.sessions.confirm_payment(checkout.order.id, charge_id)

    assert await checkout.wait_for_outcome(timeout=TIMEOUT) == CheckoutState.CONFIRMED
    assert checkout.order.payment_status == PaymentStatus.PAID_ONLINE
    assert checkout.cart.is_empty
    assert await env.storage.load("client-1") is None


@pytest.mark.asyncio
async def test_provider_failure_keeps_order(make_checkout, env, pix_submission) -> None:
    """Test that a failed charge leaves the order stored and the cart intact."""
    env.provider.fail_next_create()
    checkout = make_checkout()

    state = await checkout.submit(pix_submission)

    assert state == CheckoutState.FAILED
    assert checkout.error.code == "provider_error"
    assert checkout.error.retryable
    assert not checkout.cart.is_empty
    stored = await env.orders.get_order(checkout.order.id)
    assert stored.payment_session is None

    assert await checkout.retry_payment() == CheckoutState.AWAITING_PIX_PAYMENT
    assert checkout.error is None


@pytest.mark.asyncio
async def test_pay_later_after_failure(make_checkout, env, pix_submission) -> None:
    """Test that paying later confirms the order with payment deferred."""
    env.provider.fail_next_create()
    checkout = make_checkout()
    await checkout.submit(pix_submission)

    state = await checkout.pay_later()

    assert state == CheckoutState.CONFIRMED
    assert checkout.payment_deferred
    assert checkout.cart.is_empty
    stored = await env.orders.get_order(checkout.order.id)
    assert stored.status == OrderStatus.PENDING
    assert stored.payment_status == PaymentStatus.PENDING
    assert stored.payment_method == PaymentMethod.PIX


@pytest.mark.asyncio
async def test_session_expiry_then_late_payment(make_checkout, env, pix_submission) -> None:
    """Test that the checkout expires locally but still honours a late payment."""
    checkout = make_checkout(ttl=0.05)
    await checkout.submit(pix_submission)
    charge_id = checkout.session.provider_charge_id

    assert await checkout.wait_for_outcome(timeout=TIMEOUT) == CheckoutState.EXPIRED
    assert not checkout.cart.is_empty
    assert checkout.order.session_history[-1].state == SessionState.EXPIRED

    env.provider.approve(charge_id)
    await checkout.sessions.confirm_payment(checkout.order.id, charge_id)

    assert (
        await checkout.wait_for_state(CheckoutState.CONFIRMED, timeout=TIMEOUT)
        == CheckoutState.CONFIRMED
    )
    assert checkout.order.payment_status == PaymentStatus.PAID_ONLINE
    assert checkout.cart.is_empty


@pytest.mark.asyncio
async def test_retry_after_expiry(make_checkout, env, pix_submission) -> None:
    """Test that a retry after expiry opens a fresh session on the same order."""
    checkout = make_checkout(ttl=0.05)
    await checkout.submit(pix_submission)
    first_charge = checkout.session.provider_charge_id
    await checkout.wait_for_outcome(timeout=TIMEOUT)

    checkout.sessions.session_ttl = timedelta(minutes=5)
    state = await checkout.retry_payment()

    assert state == CheckoutState.AWAITING_PIX_PAYMENT
    assert checkout.session.provider_charge_id != first_charge
    stored = await env.orders.get_order(checkout.order.id)
    assert len(stored.session_history) == 1


@pytest.mark.asyncio
async def test_resume_after_restart(make_checkout, env, pix_submission) -> None:
    """Test that a new checkout for the same client picks up the pending payment."""
    first = make_checkout()
    await first.submit(pix_submission)
    await first.close()

    resumed = make_checkout()
    state = await resumed.resume()

    assert state == CheckoutState.AWAITING_PIX_PAYMENT
    assert resumed.order.id == first.order.id
    assert resumed.session.provider_charge_id == first.session.provider_charge_id

    env.provider.approve(resumed.session.provider_charge_id)
    await resumed.sessions.confirm_payment(resumed.order.id, resumed.session.provider_charge_id)
    assert await resumed.wait_for_outcome(timeout=TIMEOUT) == CheckoutState.CONFIRMED


@pytest.mark.asyncio
async def test_resume_without_pending_order(make_checkout) -> None:
    """Test that resuming with nothing stored stays in draft."""
    checkout = make_checkout()

    assert await checkout.resume() == CheckoutState.DRAFT


@pytest.mark.asyncio
async def test_submit_only_once(make_checkout, delivery_submission) -> None:
    """Test that a checkout cannot be submitted twice."""
    checkout = make_checkout()
    await checkout.submit(delivery_submission)

    with pytest.raises(CheckoutStateError):
        await checkout.submit(delivery_submission)


@pytest.mark.asyncio
async def test_empty_cart_rejected(env, delivery_submission) -> None:
    """Test that a delivery checkout without items creates nothing."""
    checkout = env.checkout(cart_items=[])

    with pytest.raises(ValidationError):
        await checkout.submit(delivery_submission)

    assert checkout.state == CheckoutState.DRAFT
    assert await env.orders.list_orders() == []


@pytest.mark.asyncio
async def test_chatbot_reservation(env) -> None:
    """Test that a reservation action becomes a local order with no items."""
    checkout = env.checkout(cart_items=[])
    action = CreateReservationAction(
        details=ReservationDetails(
            name="Ana Lima",
            phone="11977776666",
            number_of_people=6,
            reservation_date="2024-06-01",
            reservation_time="20:00",
        )
    )

    state = await checkout.submit(action)

    assert state == CheckoutState.CONFIRMED
    assert checkout.order.order_type == OrderType.LOCAL
    assert checkout.order.items == []
    assert checkout.order.customer.number_of_people == 6
    assert checkout.order.payment_method == PaymentMethod.CASH


def test_build_draft_drops_stale_delivery_fee(cart_items) -> None:
    """Test that a fee left over from a delivery choice is not charged on pickup."""
    submission = CheckoutSubmission(
        name="João Souza",
        phone="11988887777",
        order_type=OrderType.PICKUP,
        payment_method=PaymentMethod.CASH,
        delivery_fee=Decimal("8.00"),
    )

    draft = build_draft(submission, cart_items)

    assert draft.delivery_fee == Decimal("0")
    assert draft.total == Decimal("102.00")


def test_build_draft_joins_split_address(cart_items) -> None:
    """Test that the chatbot's split address fields become one delivery address."""
    submission = CheckoutSubmission(
        name="Maria Silva",
        phone="11999990000",
        order_type=OrderType.DELIVERY,
        street="Rua das Flores",
        number="123",
        complement="apto 4",
        neighborhood="Centro",
        payment_method=PaymentMethod.PIX,
    )

    draft = build_draft(submission, cart_items)

    assert draft.customer.address == "Rua das Flores, 123 - apto 4, Centro"


def test_build_draft_requires_delivery_address(cart_items) -> None:
    """Test that a delivery without an address is a validation error."""
    submission = CheckoutSubmission(
        name="Maria Silva",
        phone="11999990000",
        order_type=OrderType.DELIVERY,
        payment_method=PaymentMethod.CASH,
    )

    with pytest.raises(ValidationError) as exc_info:
        build_draft(submission, cart_items)

    assert exc_info.value.errors


def test_cart_merges_same_product(cart_items) -> None:
    """Test that adding an item already in the cart bumps its quantity."""
    cart = Cart(cart_items)

    cart.add(cart_items[0].model_copy(update={"quantity": 1}))
    cart.remove("guarana-2l")

    assert len(cart.items) == 1
    assert cart.items[0].quantity == 3
    assert cart.subtotal == Decimal("135.00")


@pytest.mark.asyncio
async def test_expiry_overtaken_by_confirmation(make_checkout, env, pix_submission) -> None:
    """Test that a payment confirmed while the expiry is being written wins."""
    checkout = make_checkout()
    await checkout.submit(pix_submission)
    charge_id = checkout.session.provider_charge_id
    checkout.sessions.clock = lambda: utcnow() + timedelta(minutes=10)
    mark_expired = checkout.sessions.mark_expired

    async def expire_while_paying(order_id):
        expired = await mark_expired(order_id)
        env.provider.approve(charge_id)
        await checkout.sessions.confirm_payment(order_id, charge_id)
        await checkout.wait_for_state(CheckoutState.CONFIRMED, timeout=TIMEOUT)
        return expired

    checkout.sessions.mark_expired = expire_while_paying
    await checkout.expire()

    assert checkout.state == CheckoutState.CONFIRMED
    assert checkout.order.payment_status == PaymentStatus.PAID_ONLINE
    assert checkout.cart.is_empty


@pytest.mark.asyncio
async def test_delivery_pix_order_from_cart_to_completion(env) -> None:
    """Test a paid delivery order end to end: 2 x 40.00 + 15.00 plus a 5.00 fee."""
    checkout = env.checkout(
        cart_items=[
            CartItem(product_id="pizza-mussarela", name="Mussarela", size="G", price=Decimal("40.00"), quantity=2),
            CartItem(product_id="refri-2l", name="Refrigerante 2L", price=Decimal("15.00"), quantity=1),
        ]
    )
    submission = CheckoutSubmission(
        name="Carla Mendes",
        phone="11966665555",
        order_type=OrderType.DELIVERY,
        address="Av. Paulista, 1000",
        payment_method=PaymentMethod.PIX,
        delivery_fee=Decimal("5.00"),
        pay_now=True,
    )

    assert await checkout.submit(submission) == CheckoutState.AWAITING_PIX_PAYMENT
    assert checkout.order.total == Decimal("100.00")
    assert checkout.session.amount == Decimal("100.00")

    charge_id = checkout.session.provider_charge_id
    env.provider.approve(charge_id)
    await checkout.sessions.confirm_payment(checkout.order.id, charge_id)
    assert await checkout.wait_for_outcome(timeout=TIMEOUT) == CheckoutState.CONFIRMED

    order_id = checkout.order.id
    paid = await env.orders.get_order(order_id)
    assert paid.status == OrderStatus.PENDING
    assert paid.payment_status == PaymentStatus.PAID_ONLINE

    for status in (OrderStatus.ACCEPTED, OrderStatus.READY, OrderStatus.COMPLETED):
        await env.orders.update_status(order_id, status)

    done = await env.orders.get_order(order_id)
    assert done.status == OrderStatus.COMPLETED
    assert done.payment_status == PaymentStatus.PAID_ONLINE
    assert done.total == Decimal("100.00")
