"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable
from uuid import uuid4

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from pizzeria.models.checkout import CartItem, CheckoutSubmission
from pizzeria.models.order import (
    CustomerInfo,
    Order,
    OrderDraft,
    OrderItem,
    OrderType,
    PaymentMethod,
)
from pizzeria.payments.mock import MockPixProvider
from pizzeria.payments.sessions import PaymentSessionManager
from pizzeria.services.orders import OrderService
from pizzeria.state.manager import StateManager
from pizzeria.state.store import InMemoryOrderStore, RedisOrderStore
from pizzeria.state.sync import OrderSynchronizer
from pizzeria.state.workflow import OrderStateMachine


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 6, 1, 19, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store(clock: FixedClock) -> InMemoryOrderStore:
    return InMemoryOrderStore(clock=clock)


@pytest.fixture
def machine(clock: FixedClock) -> OrderStateMachine:
    return OrderStateMachine(pickup_estimate_minutes=30, clock=clock)


@pytest.fixture
def order_service(store: InMemoryOrderStore, machine: OrderStateMachine) -> OrderService:
    return OrderService(store, machine, max_retries=3)


@pytest.fixture
def provider() -> MockPixProvider:
    return MockPixProvider()


@pytest.fixture
def sessions(
    order_service: OrderService, provider: MockPixProvider, clock: FixedClock
) -> PaymentSessionManager:
    return PaymentSessionManager(order_service, provider, session_ttl_seconds=300, clock=clock)


@pytest_asyncio.fixture
async def synchronizer(store: InMemoryOrderStore) -> AsyncGenerator[OrderSynchronizer, None]:
    sync = OrderSynchronizer(store)
    await sync.start()
    yield sync
    await sync.stop()


@pytest_asyncio.fixture
async def state_manager() -> AsyncGenerator[StateManager, None]:
    """Connect to the test Redis database and leave it empty afterwards."""
    manager = StateManager(os.environ.get("REDIS_TEST_URL", "redis://localhost:6379/15"))
    await manager.connect()
    try:
        await manager.client.ping()
    except RedisConnectionError:
        await manager.disconnect()
        pytest.skip("Redis is not reachable")
    await manager.client.flushdb()
    yield manager
    await manager.connect()
    await manager.client.flushdb()
    await manager.disconnect()


@pytest_asyncio.fixture
async def redis_store(
    state_manager: StateManager, clock: FixedClock
) -> AsyncGenerator[RedisOrderStore, None]:
    order_store = RedisOrderStore(state_manager, clock=clock)
    await order_store.connect()
    yield order_store
    await order_store.close()


# Sample data fixtures


@pytest.fixture
def sample_items() -> list[OrderItem]:
    """Two large pizzas and a soda: 102.00."""
    return [
        OrderItem(
            product_id="pizza-calabresa",
            name="Calabresa",
            size="G",
            unit_price=Decimal("45.00"),
            quantity=2,
        ),
        OrderItem(product_id="guarana-2l", name="Guaraná 2L", unit_price=Decimal("12.00"), quantity=1),
    ]


@pytest.fixture
def delivery_draft(sample_items: list[OrderItem]) -> OrderDraft:
    return OrderDraft(
        customer=CustomerInfo(
            name="Maria Silva",
            phone="11999990000",
            order_type=OrderType.DELIVERY,
            address="Rua das Flores, 123",
        ),
        items=sample_items,
        delivery_fee=Decimal("8.00"),
        total=Decimal("110.00"),
        payment_method=PaymentMethod.CASH,
        change_needed=True,
        change_amount="150",
    )


@pytest.fixture
def pix_draft(sample_items: list[OrderItem]) -> OrderDraft:
    return OrderDraft(
        customer=CustomerInfo(name="João Souza", phone="11988887777", order_type=OrderType.PICKUP),
        items=sample_items,
        total=Decimal("102.00"),
        payment_method=PaymentMethod.PIX,
    )


@pytest.fixture
def reservation_draft() -> OrderDraft:
    return OrderDraft(
        customer=CustomerInfo(
            name="Ana Lima",
            phone="11977776666",
            order_type=OrderType.LOCAL,
            reservation_date="2024-06-01",
            reservation_time="20:30",
            number_of_people=4,
        ),
        items=[],
        total=Decimal("0"),
        payment_method=PaymentMethod.CASH,
    )


@pytest.fixture
def order_factory() -> Callable[..., Order]:
    """Build a stored-looking order from a draft without going through a store."""
    counter = iter(range(1, 10_000))

    def build(draft: OrderDraft, **overrides: Any) -> Order:
        data = draft.model_dump()
        data.update(id=uuid4(), order_number=next(counter))
        data.update(overrides)
        return Order.model_validate(data)

    return build


@pytest.fixture
def cart_items() -> list[CartItem]:
    return [
        CartItem(product_id="pizza-calabresa", name="Calabresa", size="G", price=Decimal("45.00"), quantity=2),
        CartItem(product_id="guarana-2l", name="Guaraná 2L", price=Decimal("12.00"), quantity=1),
    ]


@pytest.fixture
def delivery_submission() -> CheckoutSubmission:
    return CheckoutSubmission(
        name="Maria Silva",
        phone="11999990000",
        order_type=OrderType.DELIVERY,
        address="Rua das Flores, 123",
        payment_method=PaymentMethod.CASH,
        delivery_fee=Decimal("8.00"),
    )


@pytest.fixture
def pix_submission() -> CheckoutSubmission:
    return CheckoutSubmission(
        name="João Souza",
        phone="11988887777",
        order_type=OrderType.PICKUP,
        payment_method=PaymentMethod.PIX,
        pay_now=True,
    )
