"""Utility modules."""

from pizzeria.utils.logging import OrderLogger, get_logger, setup_logging
from pizzeria.utils.tracing import PaymentTracer

__all__ = ["setup_logging", "get_logger", "OrderLogger", "PaymentTracer"]
