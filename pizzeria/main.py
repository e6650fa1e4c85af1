"""HTTP and WebSocket entry point for the order service."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Literal
from uuid import UUID

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from pizzeria.api.routes import router
from pizzeria.api.webhooks import router as webhook_router
from pizzeria.api.websocket import ConnectionManager, handle_admin_stream, handle_order_stream
from pizzeria.config import Settings, get_settings
from pizzeria.models.order import OrderFilter
from pizzeria.payments.base import PaymentProvider
from pizzeria.runtime import Runtime
from pizzeria.state.store import OrderStore
from pizzeria.utils.logging import SERVICE_NAME, get_logger, setup_logging

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    store: OrderStore | None = None,
    provider: PaymentProvider | None = None,
) -> FastAPI:
    """Build the application; store and provider may be injected for tests."""
    settings = settings or get_settings()

    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the runtime on startup and stop it on shutdown."""
        logger.info("application_starting", environment=settings.environment)

        runtime = Runtime.build(settings, store=store, provider=provider)
        await runtime.start()
        app.state.runtime = runtime
        app.state.connections = ConnectionManager()

        yield

        logger.info("application_shutting_down")
        await runtime.stop()

    app = FastAPI(
        title="Pizzeria Orders",
        description="Order lifecycle and PIX payment orchestration",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy", "service": SERVICE_NAME}

    app.include_router(router, prefix="/api/v1", tags=["orders"])
    app.include_router(webhook_router, prefix="/api/v1", tags=["webhooks"])

    @app.websocket("/ws/orders/{order_id}")
    async def order_websocket(websocket: WebSocket, order_id: str) -> None:
        """Live snapshots of one order for the customer tracking it."""
        try:
            order_uuid = UUID(order_id)
        except ValueError:
            await websocket.close(code=1003, reason="Invalid order ID")
            return

        await handle_order_stream(
            websocket,
            order_uuid,
            app.state.runtime.synchronizer,
            app.state.connections,
        )

    @app.websocket("/ws/admin/orders")
    async def admin_websocket(
        websocket: WebSocket, view: Literal["active", "trash"] = "active"
    ) -> None:
        """Live order list for the admin console."""
        order_filter = OrderFilter.active() if view == "active" else OrderFilter.trash()
        await handle_admin_stream(
            websocket,
            order_filter,
            app.state.runtime.synchronizer,
            app.state.connections,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "pizzeria.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.environment == "development",
    )
