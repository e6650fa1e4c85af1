"""Structured logging for the ordering service."""

import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from pizzeria.config import Settings, get_settings

SERVICE_NAME = "pizzeria-orders"


def _add_service(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _stdlib_handler(settings: Settings) -> logging.Handler:
    """Handler for third-party loggers (uvicorn, httpx, redis)."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "asctime": "timestamp"},
            )
        )
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S")
        )
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Route stdlib and structlog output through one format and level."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level)

    root = logging.getLogger()
    root.handlers = [_stdlib_handler(settings)]
    root.setLevel(level)

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class OrderLogger:
    """Specialized logger for order lifecycle events."""

    def __init__(self, component: str):
        self.component = component
        self.logger = get_logger(component)

    def log_transition(
        self,
        order_id: str,
        field: str,
        from_value: str,
        to_value: str,
        actor: str,
        **kwargs: Any,
    ) -> None:
        """Log an accepted status or payment-status transition."""
        self.logger.info(
            "order_transition",
            component=self.component,
            order_id=order_id,
            field=field,
            from_value=from_value,
            to_value=to_value,
            actor=actor,
            **kwargs,
        )

    def log_rejected(
        self,
        order_id: str,
        reason: str,
        **kwargs: Any,
    ) -> None:
        """Log a rejected transition attempt."""
        self.logger.warning(
            "order_transition_rejected",
            component=self.component,
            order_id=order_id,
            reason=reason,
            **kwargs,
        )

    def log_payment_event(
        self,
        event: str,
        order_id: str,
        duration_ms: float | None = None,
        **kwargs: Any,
    ) -> None:
        """Log a payment session or provider event."""
        log_data: dict[str, Any] = {
            "component": self.component,
            "order_id": order_id,
        }

        if duration_ms is not None:
            log_data["duration_ms"] = duration_ms

        log_data.update(kwargs)
        self.logger.info(event, **log_data)

    def log_conflict(
        self,
        order_id: str,
        expected_version: int | None,
        actual_version: int | None,
        **kwargs: Any,
    ) -> None:
        """Log a lost optimistic-concurrency race."""
        self.logger.warning(
            "order_write_conflict",
            component=self.component,
            order_id=order_id,
            expected_version=expected_version,
            actual_version=actual_version,
            **kwargs,
        )

    def log_integrity_error(
        self,
        order_id: str,
        stored_total: str,
        computed_total: str,
        **kwargs: Any,
    ) -> None:
        """Log a total mismatch that needs manual review."""
        self.logger.error(
            "order_integrity_error",
            component=self.component,
            order_id=order_id,
            stored_total=stored_total,
            computed_total=computed_total,
            **kwargs,
        )
