"""WebSocket handlers that push order snapshots to customers and admins."""

import asyncio
import json
from typing import Any, Awaitable, Callable
from uuid import UUID, uuid4

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from pizzeria.errors import OrderNotFoundError
from pizzeria.models.order import Order, OrderFilter
from pizzeria.state.sync import OrderSynchronizer, PendingOrderNotifier
from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)


class WebSocketMessage(BaseModel):
    """Client-to-server message format."""

    type: str  # "ping", "dismiss_alert"
    metadata: dict[str, Any] = {}


class ConnectionManager:
    """Tracks open snapshot streams."""

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}

    async def connect(self, connection_id: str, websocket: WebSocket) -> None:
        """Accept and register a WebSocket connection."""
        await websocket.accept()
        self.active_connections[connection_id] = websocket
        logger.info("websocket_connected", connection_id=connection_id)

    def disconnect(self, connection_id: str) -> None:
        """Remove a WebSocket connection."""
        if connection_id in self.active_connections:
            del self.active_connections[connection_id]
            logger.info("websocket_disconnected", connection_id=connection_id)

    async def send_message(self, connection_id: str, message: dict[str, Any]) -> None:
        """Send a message to a specific connection."""
        if connection_id in self.active_connections:
            websocket = self.active_connections[connection_id]
            await websocket.send_json(message)


def _order_payload(order: Order) -> dict[str, Any]:
    return order.model_dump(mode="json")


async def _serve(
    websocket: WebSocket,
    manager: ConnectionManager,
    connection_id: str,
    pump: Callable[[], Awaitable[None]],
    on_message: Callable[[WebSocketMessage], Awaitable[None]] | None = None,
) -> None:
    """Run a snapshot pump alongside the client's receive loop."""
    pump_task = asyncio.create_task(pump())
    try:
        while True:
            data = await websocket.receive_text()
            try:
                ws_message = WebSocketMessage(**json.loads(data))
            except (ValidationError, json.JSONDecodeError, TypeError) as e:
                await websocket.send_json(
                    {"type": "error", "message": "Invalid message format", "details": str(e)}
                )
                continue

            if ws_message.type == "ping":
                await websocket.send_json({"type": "pong"})
            elif on_message is not None:
                await on_message(ws_message)

    except WebSocketDisconnect:
        logger.info("websocket_client_disconnected", connection_id=connection_id)

    finally:
        pump_task.cancel()
        try:
            await pump_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("websocket_pump_error", connection_id=connection_id, error=str(e))
        manager.disconnect(connection_id)


async def handle_order_stream(
    websocket: WebSocket,
    order_id: UUID,
    synchronizer: OrderSynchronizer,
    manager: ConnectionManager,
) -> None:
    """
    Stream one order's snapshots to a customer.

    Args:
        websocket: WebSocket connection
        order_id: Order being tracked
        synchronizer: Source of snapshots
        manager: Registry of open connections
    """
    if await synchronizer.store.get(order_id) is None:
        await websocket.close(code=1008, reason="Order not found")
        return

    connection_id = f"order:{order_id}:{uuid4().hex[:8]}"
    await manager.connect(connection_id, websocket)

    async def pump() -> None:
        try:
            async for order in synchronizer.subscribe_order(order_id):
                await manager.send_message(
                    connection_id, {"type": "snapshot", "order": _order_payload(order)}
                )
        except OrderNotFoundError:
            pass
        await manager.send_message(connection_id, {"type": "deleted", "order_id": str(order_id)})

    await _serve(websocket, manager, connection_id, pump)


async def handle_admin_stream(
    websocket: WebSocket,
    order_filter: OrderFilter,
    synchronizer: OrderSynchronizer,
    manager: ConnectionManager,
) -> None:
    """Stream the admin console's order list and new-order alerts."""
    connection_id = f"admin:{uuid4().hex[:8]}"
    await manager.connect(connection_id, websocket)

    async def alert(orders: list[Order]) -> None:
        await manager.send_message(
            connection_id,
            {"type": "new_orders", "order_ids": [str(order.id) for order in orders]},
        )

    notifier = PendingOrderNotifier()

    async def pump() -> None:
        async for orders in synchronizer.subscribe_orders(order_filter):
            await manager.send_message(
                connection_id,
                {"type": "orders", "orders": [_order_payload(order) for order in orders]},
            )
            fresh = notifier.observe(orders)
            if fresh:
                await alert(fresh)

    async def on_message(message: WebSocketMessage) -> None:
        if message.type == "dismiss_alert":
            notifier.dismiss()
            await manager.send_message(connection_id, {"type": "alert_dismissed"})

    await _serve(websocket, manager, connection_id, pump, on_message)
