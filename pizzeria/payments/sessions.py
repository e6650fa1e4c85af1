"""PIX payment sessions: one provider charge per payment attempt."""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable
from uuid import UUID

from pizzeria.errors import PaymentError
from pizzeria.models.order import (
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentSession,
    PaymentStatus,
    RefundRecord,
    SessionState,
    utcnow,
)
from pizzeria.payments.base import PaymentProvider, PaymentProviderError
from pizzeria.services.orders import OrderService
from pizzeria.state.workflow import Actor
from pizzeria.utils.logging import OrderLogger
from pizzeria.utils.tracing import PaymentTracer


def refund_key(charge_id: str, amount: Decimal | None) -> str:
    """Default idempotency key for a refund request."""
    return f"{charge_id}:refund:{amount if amount is not None else 'full'}"


class PaymentSessionManager:
    """Creates, expires, cancels, confirms and refunds PIX charges for orders.

    At most one session per order is active. Older attempts stay on the order
    in ``session_history`` with a terminal state, so a late webhook for any of
    them can still be matched.
    """

    def __init__(
        self,
        orders: OrderService,
        provider: PaymentProvider,
        session_ttl_seconds: float = 300,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.orders = orders
        self.provider = provider
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self.clock = clock
        self.logger = OrderLogger("payment_sessions")

    def _check_chargeable(self, order: Order) -> None:
        self.orders.machine.guard(order)
        if order.payment_method != PaymentMethod.PIX:
            raise PaymentError(
                order.id, "not_pix", f"Order {order.id} is paid with {order.payment_method.value}"
            )
        if order.payment_status != PaymentStatus.PENDING:
            raise PaymentError(
                order.id, "already_paid", f"Order {order.id} is {order.payment_status.value}"
            )
        if order.status in (OrderStatus.DELETED, OrderStatus.CANCELLED):
            raise PaymentError(
                order.id, "order_closed", f"Order {order.id} is {order.status.value}"
            )

    def _close(self, session: PaymentSession, state: SessionState, now: datetime) -> PaymentSession:
        if session.state != SessionState.ACTIVE:
            return session
        if state == SessionState.CANCELLED and now >= session.expires_at:
            state = SessionState.EXPIRED
        return session.model_copy(update={"state": state, "closed_at": now})

    def _retire_current(self, order: Order, state: SessionState, now: datetime) -> Order:
        """Move the current session, if any, into history."""
        if order.payment_session is None:
            return order
        closed = self._close(order.payment_session, state, now)
        return order.model_copy(
            update={
                "payment_session": None,
                "session_history": [*order.session_history, closed],
            }
        )

    async def _cancel_at_provider(self, order_id: UUID, charge_id: str) -> None:
        try:
            await self.provider.cancel_charge(charge_id)
        except PaymentProviderError as e:
            # The session is already dead on our side; the charge lapses on its own.
            self.logger.logger.warning(
                "provider_cancel_failed", order_id=str(order_id), charge_id=charge_id, error=str(e)
            )

    async def create_session(self, order_id: UUID) -> PaymentSession:
        """Mint a new PIX charge for an order that is still unpaid."""
        tracer = PaymentTracer(str(order_id), "create_session")
        order = await self.orders.get_order(order_id)
        self._check_chargeable(order)

        now = self.clock()
        current = order.payment_session
        if current is not None and current.is_active(now):
            raise PaymentError(order.id, "session_active", "A PIX payment is already in progress")

        attempt = len(order.session_history) + (2 if current is not None else 1)
        expires_at = now + self.session_ttl

        try:
            with tracer.span("create_charge", self.provider.name, attempt=attempt):
                charge = await self.provider.create_charge(
                    amount=order.total,
                    reference=str(order.id),
                    idempotency_key=f"{order.id}-{attempt}",
                    expires_at=expires_at,
                    description=f"Pedido #{order.order_number}",
                )
        except PaymentProviderError as e:
            self.logger.log_payment_event(
                "payment_session_failed", str(order_id), attempt=attempt, error=str(e)
            )
            raise PaymentError(
                order.id,
                "provider_error",
                "Could not create the PIX charge. Try again or pay later.",
                provider_detail=str(e),
            ) from e

        session = PaymentSession(
            provider_charge_id=charge.charge_id,
            amount=order.total,
            qr_code_payload=charge.qr_code_payload,
            qr_code_image=charge.qr_code_image,
            copy_paste_code=charge.qr_code_payload,
            deep_link=charge.ticket_url or f"pix:{charge.qr_code_payload}",
            ticket_url=charge.ticket_url,
            created_at=now,
            expires_at=expires_at,
        )

        def attach(latest: Order) -> Order:
            self._check_chargeable(latest)
            live = latest.payment_session
            if live is not None and live.provider_charge_id == session.provider_charge_id:
                return latest
            if live is not None and live.is_active(self.clock()):
                raise PaymentError(
                    latest.id, "session_active", "A PIX payment is already in progress"
                )
            retired = self._retire_current(latest, SessionState.EXPIRED, now)
            return retired.model_copy(update={"payment_session": session})

        try:
            with tracer.span("attach_session", "order_store"):
                committed = await self.orders.mutate(
                    order_id, attach, Actor.CUSTOMER, retry_on_conflict=True
                )
        except PaymentError:
            await self._cancel_at_provider(order.id, charge.charge_id)
            raise

        summary = tracer.summary()
        self.logger.log_payment_event(
            "payment_session_created",
            str(order_id),
            duration_ms=summary["duration_ms"],
            time_by_target_ms=summary["time_by_target_ms"],
            charge_id=charge.charge_id,
            attempt=attempt,
            expires_at=expires_at.isoformat(),
        )
        return committed.payment_session or session

    async def mark_expired(self, order_id: UUID) -> Order:
        """Retire the current session if its deadline has passed."""
        now = self.clock()

        def expire(latest: Order) -> Order:
            live = latest.payment_session
            if live is None or now < live.expires_at:
                return latest
            return self._retire_current(latest, SessionState.EXPIRED, now)

        order = await self.orders.mutate(order_id, expire, Actor.SYSTEM, retry_on_conflict=True)
        self.logger.log_payment_event("payment_session_expired_checked", str(order_id))
        return order

    async def cancel_session(self, order_id: UUID, charge_id: str | None = None) -> Order:
        """Invalidate the current session; a no-op if it is already gone."""
        now = self.clock()
        cancelled: list[str] = []

        def cancel(latest: Order) -> Order:
            cancelled.clear()
            live = latest.payment_session
            if live is None or (charge_id is not None and live.provider_charge_id != charge_id):
                return latest
            cancelled.append(live.provider_charge_id)
            return self._retire_current(latest, SessionState.CANCELLED, now)

        order = await self.orders.mutate(order_id, cancel, Actor.CUSTOMER, retry_on_conflict=True)
        for cancelled_id in cancelled:
            await self._cancel_at_provider(order_id, cancelled_id)
            self.logger.log_payment_event(
                "payment_session_cancelled", str(order_id), charge_id=cancelled_id
            )
        return order

    async def pay_later(self, order_id: UUID) -> Order:
        """Drop the PIX attempt and keep the order as a normal pending order."""
        now = self.clock()
        abandoned: list[str] = []

        def abandon(latest: Order) -> Order:
            abandoned.clear()
            if latest.payment_status != PaymentStatus.PENDING or latest.payment_session is None:
                return latest
            abandoned.append(latest.payment_session.provider_charge_id)
            return self._retire_current(latest, SessionState.ABANDONED, now)

        order = await self.orders.mutate(order_id, abandon, Actor.CUSTOMER, retry_on_conflict=True)
        for charge_id in abandoned:
            await self._cancel_at_provider(order_id, charge_id)
        self.logger.log_payment_event(
            "payment_deferred", str(order_id), payment_method=order.payment_method.value
        )
        return order

    async def confirm_payment(self, order_id: UUID, charge_id: str) -> Order:
        """Record a provider-confirmed payment.

        Always accepted, whatever the order's status, and idempotent. A charge
        from an expired attempt still counts; a different live attempt is then
        cancelled.
        """
        now = self.clock()
        superseded: list[str] = []

        def confirm(latest: Order) -> Order:
            superseded.clear()
            updated = self.orders.machine.apply_payment_status_transition(
                latest, PaymentStatus.PAID_ONLINE, Actor.PROVIDER
            )
            if updated is latest:
                return latest

            live = latest.payment_session
            history = list(latest.session_history)
            if live is not None and live.provider_charge_id == charge_id:
                history.append(
                    live.model_copy(update={"state": SessionState.CONFIRMED, "closed_at": now})
                )
            else:
                history = [
                    session.model_copy(
                        update={"state": SessionState.CONFIRMED, "closed_at": session.closed_at or now}
                    )
                    if session.provider_charge_id == charge_id
                    else session
                    for session in history
                ]
                if live is not None:
                    if live.state == SessionState.ACTIVE:
                        superseded.append(live.provider_charge_id)
                    history.append(self._close(live, SessionState.CANCELLED, now))

            return updated.model_copy(
                update={
                    "payment_session": None,
                    "session_history": history,
                    "paid_charge_id": charge_id,
                }
            )

        before = await self.orders.get_order(order_id)
        order = await self.orders.mutate(order_id, confirm, Actor.PROVIDER, retry_on_conflict=True)

        if order.paid_charge_id is not None and order.paid_charge_id != charge_id:
            self.logger.logger.warning(
                "duplicate_payment_received",
                order_id=str(order_id),
                charge_id=charge_id,
                paid_charge_id=order.paid_charge_id,
            )
        for superseded_id in superseded:
            await self._cancel_at_provider(order_id, superseded_id)

        self.logger.log_payment_event(
            "payment_confirmed",
            str(order_id),
            charge_id=charge_id,
            replay=before.payment_status == order.payment_status,
            status=order.status.value,
        )
        return order

    async def refund_charge(
        self,
        order_id: UUID,
        amount: Decimal | None = None,
        idempotency_key: str | None = None,
    ) -> Order:
        """Refund all or part of the confirmed charge.

        Idempotent per key: repeating a request returns the order unchanged and
        the provider sees the same key. Once the charge is fully refunded any
        further request is a no-op.
        """
        tracer = PaymentTracer(str(order_id), "refund")
        order = await self.orders.get_order(order_id)
        charge_id = order.paid_charge_id

        if charge_id is None or order.payment_status not in (
            PaymentStatus.PAID_ONLINE,
            PaymentStatus.REFUNDED,
        ):
            raise PaymentError(
                order.id, "not_refundable", f"Order {order.id} has no online payment to refund"
            )

        key = idempotency_key or refund_key(charge_id, amount)
        if any(refund.idempotency_key == key for refund in order.refunds):
            return order

        paid = order.find_session(charge_id)
        remaining = (paid.amount if paid else order.total) - order.refunded_amount
        if remaining <= 0:
            return order
        if amount is not None and (amount <= 0 or amount > remaining):
            raise PaymentError(
                order.id,
                "invalid_refund_amount",
                f"Refund amount must be between 0 and {remaining}",
            )

        try:
            with tracer.span("refund", self.provider.name, charge_id=charge_id):
                refund = await self.provider.refund(charge_id, amount, key)
        except PaymentProviderError as e:
            self.logger.log_payment_event(
                "refund_failed", str(order_id), charge_id=charge_id, error=str(e)
            )
            raise PaymentError(
                order.id, "provider_error", "The provider could not refund this payment",
                provider_detail=str(e),
            ) from e

        record = RefundRecord(
            refund_id=refund.refund_id,
            provider_charge_id=charge_id,
            amount=refund.amount,
            idempotency_key=key,
            created_at=self.clock(),
        )

        def book(latest: Order) -> Order:
            if any(r.idempotency_key == key for r in latest.refunds):
                return latest
            updated = self.orders.machine.apply_payment_status_transition(
                latest, PaymentStatus.REFUNDED, Actor.SYSTEM
            )
            return updated.model_copy(update={"refunds": [*latest.refunds, record]})

        committed = await self.orders.mutate(order_id, book, Actor.SYSTEM, retry_on_conflict=True)

        self.logger.log_payment_event(
            "payment_refunded",
            str(order_id),
            duration_ms=tracer.elapsed_ms,
            charge_id=charge_id,
            refund_id=refund.refund_id,
            amount=str(refund.amount),
            refunded_total=str(committed.refunded_amount),
        )
        return committed
