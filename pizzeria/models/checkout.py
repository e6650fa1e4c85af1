"""Inbound checkout and chatbot action contracts."""

import json
import re
from decimal import Decimal
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from pizzeria.errors import ValidationError
from pizzeria.models.order import OrderItem, OrderType, PaymentMethod


class _Contract(BaseModel):
    """Accepts both snake_case and the storefront's camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(_Contract):
    """An item in the customer's cart."""

    id: str | None = None
    product_id: str
    name: str
    size: str = ""
    price: Decimal = Field(ge=0)
    quantity: int = Field(ge=1)
    image_url: str | None = None

    def to_order_item(self) -> OrderItem:
        return OrderItem(
            product_id=self.product_id,
            name=self.name,
            size=self.size,
            unit_price=self.price,
            quantity=self.quantity,
        )


class CheckoutSubmission(_Contract):
    """Customer and payment details collected by the checkout form."""

    name: str
    phone: str
    order_type: OrderType
    address: str | None = None
    # Split address fields sent by the chatbot
    neighborhood: str | None = None
    street: str | None = None
    number: str | None = None
    complement: str | None = None
    reservation_time: str | None = None
    payment_method: PaymentMethod
    change_needed: bool = False
    change_amount: str = ""
    notes: str | None = None
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    pay_now: bool = True

    def resolved_address(self) -> str | None:
        if self.address and self.address.strip():
            return self.address.strip()
        if not self.street:
            return None
        line = self.street.strip()
        if self.number:
            line = f"{line}, {self.number.strip()}"
        if self.complement:
            line = f"{line} - {self.complement.strip()}"
        if self.neighborhood:
            line = f"{line}, {self.neighborhood.strip()}"
        return line


class ReservationDetails(_Contract):
    """Table reservation request."""

    name: str
    phone: str
    number_of_people: int = Field(ge=1)
    reservation_date: str
    reservation_time: str
    notes: str | None = None


class CreateOrderAction(_Contract):
    action: Literal["create_order"] = "create_order"
    details: CheckoutSubmission
    cart: list[CartItem] = Field(min_length=1)


class CreateReservationAction(_Contract):
    action: Literal["create_reservation"] = "create_reservation"
    details: ReservationDetails


ChatbotAction = Annotated[
    Union[CreateOrderAction, CreateReservationAction],
    Field(discriminator="action"),
]

_action_adapter: TypeAdapter[Any] = TypeAdapter(ChatbotAction)

_ACTION_BLOCKS = {
    "ACTION_CREATE_ORDER": "create_order",
    "ACTION_CREATE_RESERVATION": "create_reservation",
}
_ACTION_PATTERN = re.compile(
    r"<(ACTION_CREATE_ORDER|ACTION_CREATE_RESERVATION)>(.*?)</\1>", re.DOTALL
)


def validation_details(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
        for error in exc.errors()
    ]


def parse_chatbot_action(payload: dict[str, Any]) -> CreateOrderAction | CreateReservationAction:
    """Validate a tagged chatbot action payload."""
    try:
        return _action_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid chatbot action", validation_details(e)) from e


def extract_chatbot_action(text: str) -> CreateOrderAction | CreateReservationAction | None:
    """Pull the action block out of an assistant reply.

    Returns None when the reply carries no action. A block that is present but
    malformed raises ValidationError; it is never partially trusted.
    """
    match = _ACTION_PATTERN.search(text)
    if match is None:
        return None

    tag, body = match.group(1), match.group(2)
    try:
        payload = json.loads(body.strip())
    except json.JSONDecodeError as e:
        raise ValidationError(f"Malformed {tag} block: {e.msg}") from e

    if not isinstance(payload, dict):
        raise ValidationError(f"Malformed {tag} block: expected an object")

    payload["action"] = _ACTION_BLOCKS[tag]
    return parse_chatbot_action(payload)


def strip_action_blocks(text: str) -> str:
    """Remove action blocks so the reply can be shown to the customer."""
    return _ACTION_PATTERN.sub("", text).strip()
