"""Order store: versioned order records with change notifications."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from redis.exceptions import WatchError

from pizzeria.errors import ConflictError, OrderNotFoundError
from pizzeria.models.order import Order, OrderDraft, OrderFilter, utcnow
from pizzeria.state.manager import StateManager
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)

# Fields the store assigns; callers may never overwrite them.
STORE_ASSIGNED_FIELDS = frozenset({"id", "order_number", "created_at", "updated_at", "version"})


@dataclass(frozen=True)
class OrderChange:
    """Notification that an order was written or purged."""

    order_id: UUID
    version: int
    deleted: bool = False

    def to_json(self) -> str:
        return json.dumps(
            {"order_id": str(self.order_id), "version": self.version, "deleted": self.deleted}
        )

    @classmethod
    def from_json(cls, raw: str) -> "OrderChange":
        data = json.loads(raw)
        return cls(
            order_id=UUID(data["order_id"]),
            version=int(data["version"]),
            deleted=bool(data.get("deleted", False)),
        )


ChangeListener = Callable[[OrderChange], Awaitable[None]]


def apply_fields(current: Order, fields: dict[str, Any], now: datetime) -> Order:
    """Build the next version of an order from a partial update."""
    illegal = STORE_ASSIGNED_FIELDS.intersection(fields)
    if illegal:
        raise ValueError(f"Fields assigned by the store cannot be updated: {sorted(illegal)}")
    unknown = set(fields) - set(Order.model_fields)
    if unknown:
        raise ValueError(f"Unknown order fields: {sorted(unknown)}")

    data = current.model_dump()
    data.update(fields)
    data["version"] = current.version + 1
    data["updated_at"] = now
    return Order.model_validate(data)


class OrderStore(ABC):
    """Single source of truth for orders.

    Writes to one order are linearized: ``update`` checks ``expected_version``
    and bumps ``version`` atomically. Listeners hear about every committed
    write, possibly more than once.
    """

    def __init__(self) -> None:
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, change: OrderChange) -> None:
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception as e:
                logger.error(
                    "order_listener_failed",
                    order_id=str(change.order_id),
                    version=change.version,
                    error=str(e),
                    exc_info=True,
                )

    async def connect(self) -> None:
        """Acquire backend resources."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def create(self, draft: OrderDraft) -> Order:
        """Persist a new order and assign id, number and timestamps."""

    @abstractmethod
    async def get(self, order_id: UUID) -> Order | None:
        """Fetch the current snapshot of an order."""

    async def get_or_raise(self, order_id: UUID) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    @abstractmethod
    async def list_orders(self, order_filter: OrderFilter | None = None) -> list[Order]:
        """List orders newest first."""

    @abstractmethod
    async def update(
        self,
        order_id: UUID,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> Order:
        """Atomically apply a partial update; raise ConflictError on a stale version."""

    @abstractmethod
    async def delete(self, order_id: UUID, expected_version: int | None = None) -> None:
        """Remove an order for good; raise ConflictError on a stale version."""


class InMemoryOrderStore(OrderStore):
    """Process-local store used for development and tests."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__()
        self.clock = clock
        self._orders: dict[UUID, Order] = {}
        self._counter = 0
        self._last_created: datetime | None = None
        self._lock = asyncio.Lock()

    def _next_created_at(self) -> datetime:
        now = self.clock()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    async def create(self, draft: OrderDraft) -> Order:
        async with self._lock:
            self._counter += 1
            created_at = self._next_created_at()
            order = Order(
                **draft.model_dump(),
                id=uuid4(),
                order_number=self._counter,
                created_at=created_at,
                updated_at=created_at,
            )
            self._orders[order.id] = order

        logger.info("order_stored", order_id=str(order.id), order_number=order.order_number)
        await self._notify(OrderChange(order.id, order.version))
        return order.model_copy(deep=True)

    async def get(self, order_id: UUID) -> Order | None:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def list_orders(self, order_filter: OrderFilter | None = None) -> list[Order]:
        orders = sorted(self._orders.values(), key=lambda o: o.created_at, reverse=True)
        if order_filter is not None:
            orders = [o for o in orders if order_filter.matches(o)]
        return [o.model_copy(deep=True) for o in orders]

    async def update(
        self,
        order_id: UUID,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> Order:
        async with self._lock:
            current = self._orders.get(order_id)
            if current is None:
                raise OrderNotFoundError(order_id)
            if expected_version is not None and current.version != expected_version:
                raise ConflictError(order_id, expected_version, current.version)
            updated = apply_fields(current, fields, self.clock())
            self._orders[order_id] = updated

        await self._notify(OrderChange(order_id, updated.version))
        return updated.model_copy(deep=True)

    async def delete(self, order_id: UUID, expected_version: int | None = None) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if expected_version is not None and order.version != expected_version:
                raise ConflictError(order_id, expected_version, order.version)
            del self._orders[order_id]

        await self._notify(OrderChange(order_id, order.version + 1, deleted=True))


class RedisOrderStore(OrderStore):
    """Redis-backed store; change notifications travel over pub/sub.

    Each order is one JSON document. Updates use WATCH/MULTI so a concurrent
    writer makes the transaction fail instead of being overwritten.
    """

    CHANNEL = "orders:changes"
    INDEX_KEY = "orders:index"
    COUNTER_KEY = "orders:counter"

    def __init__(self, state_manager: StateManager, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__()
        self.state = state_manager
        self.clock = clock
        self._listener_task: asyncio.Task | None = None
        self._pubsub = None

    def _order_key(self, order_id: UUID) -> str:
        return f"order:{order_id}"

    async def connect(self) -> None:
        await self.state.connect()
        if self._listener_task is None:
            self._pubsub = self.state.pubsub()
            await self._pubsub.subscribe(self.CHANNEL)
            # Subscription is live once the confirmation arrives.
            await self._pubsub.get_message(timeout=1.0)
            self._listener_task = asyncio.create_task(self._listen())
            logger.info("order_change_feed_started", channel=self.CHANNEL)

    async def close(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.CHANNEL)
            await self._pubsub.aclose()
            self._pubsub = None
        await self.state.disconnect()

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                change = OrderChange.from_json(message["data"])
            except (ValueError, KeyError, TypeError) as e:
                logger.warning("order_change_malformed", data=message.get("data"), error=str(e))
                continue
            await self._notify(change)

    async def _publish(self, change: OrderChange) -> None:
        await self.state.publish(self.CHANNEL, change.to_json())

    async def create(self, draft: OrderDraft) -> Order:
        order_number = await self.state.next_number(self.COUNTER_KEY)
        created_at = self.clock()
        order = Order(
            **draft.model_dump(),
            id=uuid4(),
            order_number=order_number,
            created_at=created_at,
            updated_at=created_at,
        )
        await self.state.set_text(self._order_key(order.id), order.model_dump_json())
        await self.state.index_add(self.INDEX_KEY, str(order.id), created_at.timestamp())

        logger.info("order_stored", order_id=str(order.id), order_number=order.order_number)
        await self._publish(OrderChange(order.id, order.version))
        return order

    async def get(self, order_id: UUID) -> Order | None:
        raw = await self.state.get_text(self._order_key(order_id))
        if raw is None:
            return None
        return Order.model_validate_json(raw)

    async def list_orders(self, order_filter: OrderFilter | None = None) -> list[Order]:
        ids = await self.state.index_members(self.INDEX_KEY)
        if not ids:
            return []
        raws = await self.state.client.mget([self._order_key(UUID(i)) for i in ids])
        orders = [Order.model_validate_json(raw) for raw in raws if raw is not None]
        if order_filter is not None:
            orders = [o for o in orders if order_filter.matches(o)]
        return orders

    async def update(
        self,
        order_id: UUID,
        fields: dict[str, Any],
        expected_version: int | None = None,
    ) -> Order:
        key = self._order_key(order_id)
        async with self.state.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise OrderNotFoundError(order_id)
                current = Order.model_validate_json(raw)
                if expected_version is not None and current.version != expected_version:
                    raise ConflictError(order_id, expected_version, current.version)
                updated = apply_fields(current, fields, self.clock())
                pipe.multi()
                pipe.set(key, updated.model_dump_json())
                await pipe.execute()
            except WatchError as e:
                raise ConflictError(order_id, expected_version, None) from e

        await self._publish(OrderChange(order_id, updated.version))
        return updated

    async def delete(self, order_id: UUID, expected_version: int | None = None) -> None:
        key = self._order_key(order_id)
        async with self.state.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is None:
                    raise OrderNotFoundError(order_id)
                order = Order.model_validate_json(raw)
                if expected_version is not None and order.version != expected_version:
                    raise ConflictError(order_id, expected_version, order.version)
                pipe.multi()
                pipe.delete(key)
                pipe.zrem(self.INDEX_KEY, str(order_id))
                await pipe.execute()
            except WatchError as e:
                raise ConflictError(order_id, expected_version, None) from e

        await self._publish(OrderChange(order_id, order.version + 1, deleted=True))
