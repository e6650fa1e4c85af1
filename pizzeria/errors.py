"""Error taxonomy for the order lifecycle."""

from decimal import Decimal
from typing import Any


class OrderError(Exception):
    """Base class for order lifecycle errors."""


class ValidationError(OrderError):
    """A draft or inbound payload is malformed or incomplete."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class OrderNotFoundError(OrderError):
    def __init__(self, order_id: Any) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = str(order_id)


class TransitionError(OrderError):
    """An illegal status or payment-status change was attempted."""

    def __init__(
        self,
        order_id: Any,
        field: str,
        from_value: str,
        to_value: str,
        allowed: list[str],
        reason: str | None = None,
    ) -> None:
        message = f"Cannot change {field} of order {order_id} from {from_value!r} to {to_value!r}"
        if reason:
            message = f"{message}: {reason}"
        message = f"{message} (allowed: {', '.join(allowed) or 'none'})"
        super().__init__(message)
        self.order_id = str(order_id)
        self.field = field
        self.from_value = from_value
        self.to_value = to_value
        self.allowed = allowed
        self.reason = reason


class ConflictError(OrderError):
    """A concurrent write won the race for the same order."""

    def __init__(
        self,
        order_id: Any,
        expected_version: int | None,
        actual_version: int | None,
    ) -> None:
        super().__init__(
            f"Order {order_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version}). Refresh and retry."
        )
        self.order_id = str(order_id)
        self.expected_version = expected_version
        self.actual_version = actual_version


class IntegrityError(OrderError):
    """The cached total no longer matches the items and delivery fee."""

    def __init__(self, order_id: Any, stored_total: Decimal, computed_total: Decimal) -> None:
        super().__init__(
            f"Order {order_id} total mismatch: stored={stored_total} computed={computed_total}. "
            "Manual review required."
        )
        self.order_id = str(order_id)
        self.stored_total = stored_total
        self.computed_total = computed_total


class PaymentError(OrderError):
    """A provider call failed or a payment session is unusable.

    ``code`` tells the caller which recovery applies: ``provider_error`` and
    ``session_expired`` offer retry or pay-later, ``session_active`` means
    another attempt is still live, the rest are precondition failures.
    """

    def __init__(
        self,
        order_id: Any,
        code: str,
        message: str,
        provider_detail: str | None = None,
    ) -> None:
        super().__init__(message)
        self.order_id = str(order_id)
        self.code = code
        self.provider_detail = provider_detail

    @property
    def retryable(self) -> bool:
        return self.code in {"provider_error", "session_expired"}
