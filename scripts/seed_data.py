"""Seed demo orders for the admin console."""

import asyncio
from decimal import Decimal

from pizzeria.config import get_settings
from pizzeria.models.order import (
    CustomerInfo,
    OrderDraft,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentMethod,
    compute_total,
)
from pizzeria.services.orders import OrderService
from pizzeria.state.manager import StateManager
from pizzeria.state.store import RedisOrderStore
from pizzeria.state.workflow import Actor, OrderStateMachine

MENU = {
    "calabresa": OrderItem(
        product_id="pizza-calabresa", name="Calabresa", size="G", unit_price=Decimal("45.00"), quantity=1
    ),
    "margherita": OrderItem(
        product_id="pizza-margherita", name="Margherita", size="M", unit_price=Decimal("38.00"), quantity=1
    ),
    "portuguesa": OrderItem(
        product_id="pizza-portuguesa", name="Portuguesa", size="G", unit_price=Decimal("48.00"), quantity=1
    ),
    "guarana": OrderItem(
        product_id="guarana-2l", name="Guaraná 2L", unit_price=Decimal("12.00"), quantity=1
    ),
}


def line(product: str, quantity: int = 1) -> OrderItem:
    return MENU[product].model_copy(update={"quantity": quantity})


def draft(
    customer: CustomerInfo,
    items: list[OrderItem],
    payment_method: PaymentMethod,
    delivery_fee: Decimal = Decimal("0"),
) -> OrderDraft:
    return OrderDraft(
        customer=customer,
        items=items,
        delivery_fee=delivery_fee,
        total=compute_total(items, delivery_fee),
        payment_method=payment_method,
    )


SAMPLE_ORDERS = [
    (
        draft(
            CustomerInfo(
                name="Maria Silva",
                phone="11999990000",
                order_type=OrderType.DELIVERY,
                address="Rua das Flores, 123 - Centro",
            ),
            [line("calabresa", 2), line("guarana")],
            PaymentMethod.CASH,
            delivery_fee=Decimal("8.00"),
        ),
        [],
    ),
    (
        draft(
            CustomerInfo(name="João Souza", phone="11988887777", order_type=OrderType.PICKUP),
            [line("margherita")],
            PaymentMethod.CREDIT,
        ),
        [OrderStatus.ACCEPTED],
    ),
    (
        draft(
            CustomerInfo(
                name="Carla Mendes",
                phone="11966665555",
                order_type=OrderType.DELIVERY,
                address="Av. Paulista, 1000 - apto 52",
            ),
            [line("portuguesa"), line("guarana", 2)],
            PaymentMethod.DEBIT,
            delivery_fee=Decimal("10.00"),
        ),
        [OrderStatus.ACCEPTED, OrderStatus.READY, OrderStatus.COMPLETED],
    ),
    (
        OrderDraft(
            customer=CustomerInfo(
                name="Ana Lima",
                phone="11977776666",
                order_type=OrderType.LOCAL,
                reservation_date="2024-06-01",
                reservation_time="20:30",
                number_of_people=4,
            ),
            total=Decimal("0"),
            payment_method=PaymentMethod.CASH,
        ),
        [OrderStatus.RESERVED],
    ),
]


async def seed_orders() -> None:
    """Create sample orders and walk some of them through the kitchen."""
    print("Seeding orders...")

    settings = get_settings()
    state_manager = StateManager(settings.redis_url)
    store = RedisOrderStore(state_manager)
    await store.connect()
    service = OrderService(
        store, OrderStateMachine(pickup_estimate_minutes=settings.pickup_estimate_minutes)
    )

    for order_draft, statuses in SAMPLE_ORDERS:
        order = await service.create_order(order_draft, actor=Actor.SYSTEM)
        for status in statuses:
            order = await service.update_status(order.id, status, actor=Actor.SYSTEM)
        print(
            f"  ✓ #{order.order_number} {order.customer.name} "
            f"({order.order_type.value}, {order.status.value}, R$ {order.total})"
        )

    await store.close()
    print("✓ Orders seeded successfully\n")


async def main() -> None:
    """Run all seed functions."""
    print("\n" + "=" * 50)
    print("  Seeding Pizzeria Orders")
    print("=" * 50 + "\n")

    await seed_orders()

    print("=" * 50)
    print("  ✓ All data seeded successfully!")
    print("=" * 50 + "\n")


if __name__ == "__main__":
    asyncio.run(main())
