"""Wiring of the store, provider and services for one running application."""

from dataclasses import dataclass

from pizzeria.config import Settings
from pizzeria.payments.base import PaymentProvider
from pizzeria.payments.factory import get_payment_provider
from pizzeria.payments.sessions import PaymentSessionManager
from pizzeria.payments.webhook import PixWebhookHandler
from pizzeria.services.checkout import (
    CheckoutOrchestrator,
    InMemoryPendingOrderStorage,
    PendingOrderStorage,
    RedisPendingOrderStorage,
)
from pizzeria.services.orders import OrderService
from pizzeria.state.manager import StateManager
from pizzeria.state.store import InMemoryOrderStore, OrderStore, RedisOrderStore
from pizzeria.state.sync import OrderSynchronizer
from pizzeria.state.workflow import OrderStateMachine
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Runtime:
    """Everything a request handler needs, created once per application."""

    settings: Settings
    store: OrderStore
    provider: PaymentProvider
    orders: OrderService
    sessions: PaymentSessionManager
    synchronizer: OrderSynchronizer
    webhooks: PixWebhookHandler
    pending_orders: PendingOrderStorage

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: OrderStore | None = None,
        provider: PaymentProvider | None = None,
    ) -> "Runtime":
        pending_orders: PendingOrderStorage
        if store is None and settings.store_backend == "redis":
            state_manager = StateManager(settings.redis_url)
            store = RedisOrderStore(state_manager)
            pending_orders = RedisPendingOrderStorage(state_manager, ttl=settings.pending_order_ttl)
        else:
            store = store or InMemoryOrderStore()
            pending_orders = InMemoryPendingOrderStorage()

        provider = provider or get_payment_provider(settings)
        machine = OrderStateMachine(pickup_estimate_minutes=settings.pickup_estimate_minutes)
        orders = OrderService(store, machine, max_retries=settings.max_retries)
        sessions = PaymentSessionManager(
            orders, provider, session_ttl_seconds=settings.pix_session_ttl_seconds
        )
        return cls(
            settings=settings,
            store=store,
            provider=provider,
            orders=orders,
            sessions=sessions,
            synchronizer=OrderSynchronizer(store),
            webhooks=PixWebhookHandler(sessions, provider),
            pending_orders=pending_orders,
        )

    def checkout(self, client_id: str, user_id: str | None = None) -> CheckoutOrchestrator:
        return CheckoutOrchestrator(
            client_id=client_id,
            orders=self.orders,
            sessions=self.sessions,
            synchronizer=self.synchronizer,
            storage=self.pending_orders,
            user_id=user_id,
        )

    async def start(self) -> None:
        await self.store.connect()
        await self.synchronizer.start()
        logger.info(
            "runtime_started",
            store=type(self.store).__name__,
            provider=self.provider.name,
        )

    async def stop(self) -> None:
        await self.synchronizer.stop()
        await self.store.close()
        await self.provider.close()
        logger.info("runtime_stopped")
