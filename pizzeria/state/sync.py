"""Real-time synchronization of order snapshots to customer and admin sessions."""

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Generator
from uuid import UUID

from pizzeria.errors import OrderNotFoundError
from pizzeria.models.order import Order, OrderFilter, OrderStatus
from pizzeria.state.store import OrderChange, OrderStore
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)


class _Watch:
    """Wake-up flag for one live subscription."""

    def __init__(self, predicate: Callable[[OrderChange], bool]) -> None:
        self.predicate = predicate
        self.event = asyncio.Event()
        self.closed = False

    def offer(self, change: OrderChange) -> None:
        if self.predicate(change):
            self.event.set()

    def close(self) -> None:
        self.closed = True
        self.event.set()

    async def wait(self) -> None:
        await self.event.wait()
        self.event.clear()


class OrderSynchronizer:
    """Fans store changes out to subscribers as full snapshots.

    Subscribers re-read the store when woken, so a burst of writes collapses
    into one emission of the latest committed state. A subscriber that joins
    late gets the current snapshot first and never needs history.
    """

    def __init__(self, store: OrderStore) -> None:
        self.store = store
        self._watches: set[_Watch] = set()
        self._started = False

    async def start(self) -> None:
        if not self._started:
            self.store.add_listener(self._on_change)
            self._started = True
            logger.info("synchronizer_started")

    async def stop(self) -> None:
        if self._started:
            self.store.remove_listener(self._on_change)
            self._started = False
        for watch in list(self._watches):
            watch.close()
        logger.info("synchronizer_stopped")

    @property
    def subscriber_count(self) -> int:
        return len(self._watches)

    async def _on_change(self, change: OrderChange) -> None:
        for watch in list(self._watches):
            watch.offer(change)

    def _register(self, predicate: Callable[[OrderChange], bool]) -> _Watch:
        watch = _Watch(predicate)
        self._watches.add(watch)
        return watch

    def subscribe_order(self, order_id: UUID) -> "OrderSubscription":
        """Stream snapshots of one order; ends if the order is purged."""
        return OrderSubscription(self, order_id)

    def subscribe_orders(self, order_filter: OrderFilter | None = None) -> "OrderListSubscription":
        """Stream the full list of orders matching a filter."""
        return OrderListSubscription(self, order_filter)

    async def _order_stream(self, order_id: UUID) -> AsyncIterator[Order]:
        watch = self._register(lambda change: change.order_id == order_id)
        try:
            last_version = 0
            while True:
                order = await self.store.get(order_id)
                if order is None:
                    if last_version == 0:
                        raise OrderNotFoundError(order_id)
                    return
                if order.version > last_version:
                    last_version = order.version
                    yield order
                await watch.wait()
                if watch.closed:
                    return
        finally:
            self._watches.discard(watch)

    async def _list_stream(self, order_filter: OrderFilter | None) -> AsyncIterator[list[Order]]:
        watch = self._register(lambda change: True)
        try:
            last_signature: tuple[tuple[UUID, int], ...] | None = None
            while True:
                orders = await self.store.list_orders(order_filter)
                signature = tuple((order.id, order.version) for order in orders)
                if signature != last_signature:
                    last_signature = signature
                    yield orders
                await watch.wait()
                if watch.closed:
                    return
        finally:
            self._watches.discard(watch)


class OrderSubscription:
    """Lazy, restartable stream of one order's snapshots.

    Nothing is read until iteration starts; every new iteration begins again
    from the current snapshot.
    """

    def __init__(self, synchronizer: OrderSynchronizer, order_id: UUID) -> None:
        self.synchronizer = synchronizer
        self.order_id = order_id

    def __aiter__(self) -> AsyncIterator[Order]:
        return self.synchronizer._order_stream(self.order_id)


class OrderListSubscription:
    def __init__(self, synchronizer: OrderSynchronizer, order_filter: OrderFilter | None) -> None:
        self.synchronizer = synchronizer
        self.order_filter = order_filter

    def __aiter__(self) -> AsyncIterator[list[Order]]:
        return self.synchronizer._list_stream(self.order_filter)


@dataclass
class PendingEdit:
    """A local change not yet confirmed by a snapshot."""

    fields: dict[str, Any]
    base_version: int
    sequence: int


@dataclass
class Conflict:
    """A local edit that lost to an authoritative snapshot."""

    field: str
    local_value: Any
    authoritative_value: Any
    base_version: int
    snapshot_version: int


@dataclass
class _Overlay:
    edits: list[PendingEdit] = field(default_factory=list)

    def merged(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for edit in self.edits:
            merged.update(edit.fields)
        return merged


SideEffect = Callable[[Order, Order], None]


class OptimisticOrderView:
    """Local view of an order: authoritative snapshot plus unconfirmed edits.

    Edits are tagged with the snapshot version they were made against. Any
    snapshot with a higher version drops every pending edit; fields where the
    snapshot disagrees are kept in ``conflicts`` for display and are never
    written back.
    """

    def __init__(self, snapshot: Order) -> None:
        self.snapshot = snapshot
        self.conflicts: list[Conflict] = []
        self._overlay = _Overlay()
        self._side_effects: list[SideEffect] = []
        self._local_depth = 0
        self._sequence = 0

    @property
    def current(self) -> Order:
        merged = self._overlay.merged()
        if not merged:
            return self.snapshot
        return self.snapshot.model_copy(update=merged)

    @property
    def has_pending(self) -> bool:
        return bool(self._overlay.edits)

    @property
    def is_locally_driven(self) -> bool:
        return self._local_depth > 0

    def on_change(self, callback: SideEffect) -> None:
        """Register a side effect run with (new, previous) on snapshot changes."""
        self._side_effects.append(callback)

    def apply_local(self, **fields: Any) -> PendingEdit:
        self._sequence += 1
        edit = PendingEdit(
            fields=fields, base_version=self.snapshot.version, sequence=self._sequence
        )
        self._overlay.edits.append(edit)
        return edit

    def apply_snapshot(self, snapshot: Order) -> list[Conflict]:
        """Reconcile with an authoritative snapshot; returns new conflicts."""
        if snapshot.version <= self.snapshot.version:
            # Duplicate or out-of-order delivery.
            return []

        previous = self.current
        new_conflicts: list[Conflict] = []
        for edit in self._overlay.edits:
            for name, local_value in edit.fields.items():
                authoritative = getattr(snapshot, name)
                if authoritative != local_value:
                    new_conflicts.append(
                        Conflict(
                            field=name,
                            local_value=local_value,
                            authoritative_value=authoritative,
                            base_version=edit.base_version,
                            snapshot_version=snapshot.version,
                        )
                    )

        self._overlay = _Overlay()
        self.snapshot = snapshot
        self.conflicts.extend(new_conflicts)

        if new_conflicts:
            logger.info(
                "optimistic_edit_overridden",
                order_id=str(snapshot.id),
                fields=[c.field for c in new_conflicts],
                snapshot_version=snapshot.version,
            )

        if not self.is_locally_driven:
            for callback in list(self._side_effects):
                callback(self.current, previous)

        return new_conflicts

    def clear_conflicts(self) -> list[Conflict]:
        conflicts, self.conflicts = self.conflicts, []
        return conflicts

    @contextmanager
    def locally_driven(self) -> Generator[None, None, None]:
        """Apply inbound snapshots without firing side effects."""
        self._local_depth += 1
        try:
            yield
        finally:
            self._local_depth -= 1


class PendingOrderNotifier:
    """Admin console's new-order alert.

    Alerts once per pending order. Orders that become pending while the admin
    is driving the change are absorbed silently, so a dismissed alert is not
    reopened by the admin's own action.
    """

    def __init__(self, on_alert: Callable[[list[Order]], None] | None = None) -> None:
        self.on_alert = on_alert
        self.alert_open = False
        self._known: set[UUID] = set()
        self._local_depth = 0

    @property
    def pending_count(self) -> int:
        return len(self._known)

    def observe(self, orders: list[Order]) -> list[Order]:
        pending = [order for order in orders if order.status == OrderStatus.PENDING]
        fresh = [order for order in pending if order.id not in self._known]
        # Only orders still pending in the latest list are remembered.
        self._known = {order.id for order in pending}

        if not fresh or self._local_depth:
            return []

        self.alert_open = True
        if self.on_alert is not None:
            self.on_alert(fresh)
        return fresh

    def dismiss(self) -> None:
        self.alert_open = False

    @contextmanager
    def locally_driven(self) -> Generator[None, None, None]:
        self._local_depth += 1
        try:
            yield
        finally:
            self._local_depth -= 1
