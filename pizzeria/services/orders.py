"""Order service: read, validate through the state machine, commit."""

from typing import Any, Callable
from uuid import UUID

from pizzeria.errors import ConflictError, IntegrityError, TransitionError, ValidationError
from pizzeria.models.order import (
    Order,
    OrderDraft,
    OrderFilter,
    OrderStatus,
    PaymentStatus,
)
from pizzeria.state.store import STORE_ASSIGNED_FIELDS, OrderStore
from pizzeria.state.workflow import Actor, OrderStateMachine
from pizzeria.utils.logging import OrderLogger

OrderChangeFn = Callable[[Order], Order]

_TRACKED_FIELDS = ("status", "payment_status")


def order_diff(before: Order, after: Order) -> dict[str, Any]:
    """Fields that differ between two snapshots, excluding store-assigned ones."""
    return {
        name: getattr(after, name)
        for name in Order.model_fields
        if name not in STORE_ASSIGNED_FIELDS and getattr(after, name) != getattr(before, name)
    }


class OrderService:
    """Every order mutation goes through here.

    A mutation reads the latest snapshot, derives the next one through the
    state machine, then commits only the changed fields with the snapshot's
    version as ``expected_version``. A concurrent writer therefore turns into
    a ConflictError instead of a lost update.
    """

    def __init__(
        self,
        store: OrderStore,
        machine: OrderStateMachine | None = None,
        max_retries: int = 3,
    ):
        self.store = store
        self.machine = machine or OrderStateMachine()
        self.max_retries = max_retries
        self.logger = OrderLogger("order_service")

    async def create_order(self, draft: OrderDraft, actor: Actor = Actor.CUSTOMER) -> Order:
        """Persist a new order after checking its cached total."""
        computed = draft.computed_total()
        if draft.total != computed:
            raise ValidationError(
                f"Order total {draft.total} does not match items and delivery fee ({computed})",
                [{"loc": ["total"], "msg": "total mismatch", "type": "value_error"}],
            )

        order = await self.store.create(draft)

        self.logger.logger.info(
            "order_created",
            order_id=str(order.id),
            order_number=order.order_number,
            order_type=order.order_type.value,
            payment_method=order.payment_method.value,
            total=str(order.total),
            actor=actor.value,
        )
        return order

    async def get_order(self, order_id: UUID) -> Order:
        return await self.store.get_or_raise(order_id)

    async def list_orders(self, order_filter: OrderFilter | None = None) -> list[Order]:
        return await self.store.list_orders(order_filter)

    async def mutate(
        self,
        order_id: UUID,
        change: OrderChangeFn,
        actor: Actor,
        retry_on_conflict: bool = False,
    ) -> Order:
        """
        Apply a snapshot-to-snapshot change and commit it.

        Args:
            order_id: Order to change
            change: Pure function deriving the next snapshot; may raise
            actor: Who asked for the change, for the audit log
            retry_on_conflict: Re-read and re-apply on ConflictError, up to max_retries

        Returns:
            The committed snapshot, or the current one when nothing changed
        """
        attempts = self.max_retries if retry_on_conflict else 1

        for attempt in range(attempts):
            order = await self.store.get_or_raise(order_id)
            try:
                updated = change(order)
            except IntegrityError as e:
                await self._flag_for_review(order, e)
                raise
            except TransitionError as e:
                self.logger.log_rejected(
                    str(order_id),
                    str(e),
                    field=e.field,
                    from_value=e.from_value,
                    to_value=e.to_value,
                    actor=actor.value,
                )
                raise

            try:
                return await self._commit(order, updated, actor)
            except ConflictError:
                if attempt == attempts - 1:
                    raise

        raise ConflictError(order_id, None, None)

    async def _commit(self, before: Order, after: Order, actor: Actor) -> Order:
        fields = order_diff(before, after)
        if not fields:
            return before

        try:
            committed = await self.store.update(before.id, fields, expected_version=before.version)
        except ConflictError as e:
            self.logger.log_conflict(
                str(before.id), e.expected_version, e.actual_version, actor=actor.value
            )
            raise

        for name in _TRACKED_FIELDS:
            if name in fields:
                self.logger.log_transition(
                    str(before.id),
                    name,
                    getattr(before, name).value,
                    getattr(committed, name).value,
                    actor.value,
                    version=committed.version,
                )
        return committed

    async def _flag_for_review(self, order: Order, error: IntegrityError) -> None:
        self.logger.log_integrity_error(
            str(order.id), str(error.stored_total), str(error.computed_total)
        )
        if not order.needs_review:
            await self.store.update(order.id, {"needs_review": True})

    async def update_status(
        self,
        order_id: UUID,
        new_status: OrderStatus,
        payload: dict[str, Any] | None = None,
        actor: Actor = Actor.ADMIN,
    ) -> Order:
        return await self.mutate(
            order_id,
            lambda order: self.machine.apply_status_transition(order, new_status, payload),
            actor,
        )

    async def update_payment_status(
        self,
        order_id: UUID,
        new_payment_status: PaymentStatus,
        actor: Actor = Actor.ADMIN,
    ) -> Order:
        return await self.mutate(
            order_id,
            lambda order: self.machine.apply_payment_status_transition(
                order, new_payment_status, actor
            ),
            actor,
            retry_on_conflict=actor == Actor.PROVIDER,
        )

    async def update_reservation_time(
        self, order_id: UUID, reservation_time: str, actor: Actor = Actor.ADMIN
    ) -> Order:
        return await self.mutate(
            order_id,
            lambda order: self.machine.update_reservation_time(order, reservation_time),
            actor,
        )

    async def soft_delete(self, order_id: UUID, actor: Actor = Actor.ADMIN) -> Order:
        return await self.mutate(order_id, self.machine.soft_delete, actor)

    async def restore(self, order_id: UUID, actor: Actor = Actor.ADMIN) -> Order:
        return await self.mutate(order_id, self.machine.restore, actor)

    async def permanent_delete(self, order_id: UUID, actor: Actor = Actor.ADMIN) -> None:
        """Purge an order that is already in the trash."""
        order = await self.store.get_or_raise(order_id)
        try:
            self.machine.check_permanent_delete(order)
        except IntegrityError as e:
            await self._flag_for_review(order, e)
            raise
        except TransitionError as e:
            self.logger.log_rejected(str(order_id), str(e), actor=actor.value)
            raise

        try:
            await self.store.delete(order_id, expected_version=order.version)
        except ConflictError as e:
            self.logger.log_conflict(
                str(order_id), e.expected_version, e.actual_version, actor=actor.value
            )
            raise
        self.logger.logger.info(
            "order_purged",
            order_id=str(order_id),
            order_number=order.order_number,
            actor=actor.value,
        )
