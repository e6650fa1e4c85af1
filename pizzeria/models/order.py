"""Order-related data models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderType(str, Enum):
    """How the customer receives the order."""

    DELIVERY = "delivery"
    PICKUP = "pickup"
    LOCAL = "local"


class OrderStatus(str, Enum):
    """Fulfillment status of an order."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    RESERVED = "reserved"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DELETED = "deleted"
    AWAITING_PAYMENT = "awaiting-payment"


class PaymentMethod(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"
    PIX = "pix"
    CASH = "cash"


class PaymentStatus(str, Enum):
    """Payment axis, orthogonal to the fulfillment status."""

    PENDING = "pending"
    PAID = "paid"
    PAID_ONLINE = "paid_online"
    REFUNDED = "refunded"


class SessionState(str, Enum):
    """Lifecycle of one PIX charge attempt."""

    ACTIVE = "active"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class OrderItem(BaseModel):
    """Individual line in an order."""

    product_id: str
    name: str
    size: str = ""
    unit_price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * Decimal(self.quantity)


def compute_total(items: Iterable[OrderItem], delivery_fee: Decimal) -> Decimal:
    """Derive an order total from its lines and delivery fee."""
    return sum((item.line_total for item in items), Decimal("0")) + delivery_fee


class CustomerInfo(BaseModel):
    """Customer contact and fulfillment details captured at checkout."""

    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    order_type: OrderType
    address: str | None = None
    reservation_date: str | None = None
    reservation_time: str | None = None
    number_of_people: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def check_address(self) -> "CustomerInfo":
        if self.order_type == OrderType.DELIVERY:
            if not self.address or not self.address.strip():
                raise ValueError("address is required for delivery orders")
        else:
            self.address = None
        return self


class PaymentSession(BaseModel):
    """A provider-hosted PIX charge tied to one payment attempt."""

    provider_charge_id: str
    amount: Decimal
    qr_code_payload: str
    qr_code_image: str
    copy_paste_code: str
    deep_link: str
    ticket_url: str | None = None
    created_at: datetime
    expires_at: datetime
    state: SessionState = SessionState.ACTIVE
    closed_at: datetime | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        """Whether this attempt can still be paid."""
        now = now or utcnow()
        return self.state == SessionState.ACTIVE and now < self.expires_at

    def seconds_remaining(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        return max(0, int((self.expires_at - now).total_seconds()))


class RefundRecord(BaseModel):
    """A refund accepted by the provider."""

    refund_id: str
    provider_charge_id: str
    amount: Decimal
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow)


class OrderDraft(BaseModel):
    """Everything a client supplies to create an order."""

    customer: CustomerInfo
    items: list[OrderItem] = Field(default_factory=list)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    total: Decimal = Field(ge=0)
    payment_method: PaymentMethod
    change_needed: bool = False
    change_amount: str = ""
    notes: str | None = None
    user_id: str | None = None

    @model_validator(mode="after")
    def check_consistency(self) -> "OrderDraft":
        order_type = self.customer.order_type
        if order_type != OrderType.DELIVERY and self.delivery_fee != 0:
            raise ValueError("delivery_fee applies only to delivery orders")
        if not self.items and order_type != OrderType.LOCAL:
            raise ValueError("items must not be empty")
        if self.payment_method != PaymentMethod.CASH:
            self.change_needed = False
            self.change_amount = ""
        return self

    def computed_total(self) -> Decimal:
        return compute_total(self.items, self.delivery_fee)


class Order(OrderDraft):
    """Complete order record as held by the order store."""

    id: UUID
    order_number: int
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING

    # Payment
    payment_session: PaymentSession | None = None
    session_history: list[PaymentSession] = Field(default_factory=list)
    paid_charge_id: str | None = None
    refunds: list[RefundRecord] = Field(default_factory=list)

    # Timing
    pickup_time_estimate: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    # Concurrency and review
    version: int = 1
    needs_review: bool = False

    @property
    def order_type(self) -> OrderType:
        return self.customer.order_type

    @property
    def refunded_amount(self) -> Decimal:
        return sum((refund.amount for refund in self.refunds), Decimal("0"))

    def find_session(self, charge_id: str) -> PaymentSession | None:
        """Find a session by provider charge id, current attempt first."""
        if self.payment_session and self.payment_session.provider_charge_id == charge_id:
            return self.payment_session
        for session in self.session_history:
            if session.provider_charge_id == charge_id:
                return session
        return None


class OrderFilter(BaseModel):
    """Selects which orders a listing or subscription sees."""

    statuses: set[OrderStatus] | None = None
    exclude_statuses: set[OrderStatus] = Field(default_factory=set)
    order_type: OrderType | None = None
    payment_method: PaymentMethod | None = None
    payment_status: PaymentStatus | None = None
    user_id: str | None = None
    search: str | None = None

    @classmethod
    def active(cls, **kwargs: object) -> "OrderFilter":
        """Orders the kitchen works on: everything outside the trash."""
        return cls(
            exclude_statuses={OrderStatus.DELETED, OrderStatus.AWAITING_PAYMENT},
            **kwargs,
        )

    @classmethod
    def trash(cls, **kwargs: object) -> "OrderFilter":
        return cls(statuses={OrderStatus.DELETED}, **kwargs)

    def matches(self, order: Order) -> bool:
        if self.statuses is not None and order.status not in self.statuses:
            return False
        if order.status in self.exclude_statuses:
            return False
        if self.order_type and order.customer.order_type != self.order_type:
            return False
        if self.payment_method and order.payment_method != self.payment_method:
            return False
        if self.payment_status and order.payment_status != self.payment_status:
            return False
        if self.user_id and order.user_id != self.user_id:
            return False
        if self.search:
            term = self.search.lower()
            haystack = [order.customer.name.lower(), order.customer.phone, str(order.order_number)]
            if not any(term in value for value in haystack):
                return False
        return True
