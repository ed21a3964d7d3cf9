from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Protocol


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LowStockEvent:
    product_id: int
    location_id: int
    quantity: int
    reorder_level: int
    occurred_at: datetime


class LowStockNotifier(Protocol):
    def notify(self, event: LowStockEvent) -> None:
        ...


class LoggingLowStockNotifier:
    def notify(self, event: LowStockEvent) -> None:
        logger.warning(
            "Low stock: product_id=%s location_id=%s quantity=%s reorder_level=%s",
            event.product_id,
            event.location_id,
            event.quantity,
            event.reorder_level,
        )


class CollectingLowStockNotifier:
    """Keeps every event in memory, for in-process consumers and tests."""

    def __init__(self):
        self.events: list[LowStockEvent] = []

    def notify(self, event: LowStockEvent) -> None:
        self.events.append(event)


default_notifier = LoggingLowStockNotifier()


def emit_low_stock(notifier: LowStockNotifier | None, event: LowStockEvent) -> None:
    """Best effort: a failing sink is logged and never reaches the caller."""
    sink = notifier or default_notifier
    try:
        sink.notify(event)
    except Exception:
        logger.exception(
            "Low-stock notification failed for product_id=%s location_id=%s",
            event.product_id,
            event.location_id,
        )
