"""Data models for the ordering service."""

from pizzeria.models.checkout import (
    CartItem,
    ChatbotAction,
    CheckoutSubmission,
    CreateOrderAction,
    CreateReservationAction,
    ReservationDetails,
)
from pizzeria.models.order import (
    CustomerInfo,
    Order,
    OrderDraft,
    OrderFilter,
    OrderItem,
    OrderStatus,
    OrderType,
    PaymentMethod,
    PaymentSession,
    PaymentStatus,
    RefundRecord,
    SessionState,
)

__all__ = [
    # Checkout
    "CartItem",
    "ChatbotAction",
    "CheckoutSubmission",
    "CreateOrderAction",
    "CreateReservationAction",
    "ReservationDetails",
    # Order
    "CustomerInfo",
    "Order",
    "OrderDraft",
    "OrderFilter",
    "OrderItem",
    "OrderStatus",
    "OrderType",
    "PaymentMethod",
    "PaymentSession",
    "PaymentStatus",
    "RefundRecord",
    "SessionState",
]
