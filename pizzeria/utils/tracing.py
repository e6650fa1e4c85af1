"""Timing of the provider calls and store commits behind one payment operation."""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator

from pizzeria.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Span:
    name: str
    target: str
    duration_ms: float
    ok: bool
    attributes: dict[str, Any] = field(default_factory=dict)


class PaymentTracer:
    """Collects spans for a single order's payment operation.

    A span covers one call to the provider or the order store; ``summary``
    rolls them up so the final log line can carry where the time went.
    """

    def __init__(self, order_id: str, operation: str):
        self.order_id = order_id
        self.operation = operation
        self.spans: list[Span] = []
        self._started = time.perf_counter()

    @contextmanager
    def span(self, name: str, target: str, **attributes: Any) -> Generator[None, None, None]:
        started = time.perf_counter()
        ok = False
        try:
            yield
            ok = True
        finally:
            recorded = Span(
                name=name,
                target=target,
                duration_ms=round((time.perf_counter() - started) * 1000, 3),
                ok=ok,
                attributes=attributes,
            )
            self.spans.append(recorded)
            logger.debug(
                "payment_span",
                order_id=self.order_id,
                operation=self.operation,
                span=name,
                target=target,
                duration_ms=recorded.duration_ms,
                ok=ok,
                **attributes,
            )

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self._started) * 1000, 3)

    def summary(self) -> dict[str, Any]:
        """Totals per target plus the failed spans, for the closing log line."""
        per_target: dict[str, float] = {}
        for span in self.spans:
            per_target[span.target] = per_target.get(span.target, 0.0) + span.duration_ms

        return {
            "duration_ms": self.elapsed_ms,
            "spans": len(self.spans),
            "time_by_target_ms": per_target,
            "failed_spans": [span.name for span in self.spans if not span.ok],
        }
