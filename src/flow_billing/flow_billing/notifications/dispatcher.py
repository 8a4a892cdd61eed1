"""Outbound notifications for billing events.

Dispatch is fire-and-forget: a failing handler is logged and skipped, and the
billing operation that raised the event still succeeds.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Mapping, Protocol

logger = logging.getLogger(__name__)

INVOICE_CREATED = "invoice.created"
INVOICE_SENT = "invoice.sent"
INVOICE_PAID = "invoice.paid"
INVOICE_OVERDUE = "invoice.overdue"
INVOICE_CANCELLED = "invoice.cancelled"
PAYMENT_RECORDED = "payment.recorded"
PAYMENT_REVERSED = "payment.reversed"

Handler = Callable[[str, Mapping[str, Any]], None]


class NotificationDispatcher(Protocol):
    def dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotificationDispatcher(NotificationDispatcher):
    """Routes each event to the registered handlers, logging every dispatch."""

    def __init__(self):
        self._handlers: List[Handler] = []

    def register_handler(self, handler: Handler) -> None:
        self._handlers.append(handler)

    def dispatch(self, event: str, payload: Mapping[str, Any]) -> None:
        logger.info("Billing event %s %s", event, dict(payload))
        for handler in self._handlers:
            handler(event, payload)


def notify_safely(dispatcher: NotificationDispatcher, event: str, payload: Mapping[str, Any]) -> bool:
    try:
        dispatcher.dispatch(event, payload)
    except Exception:
        logger.exception("Notification %s failed", event)
        return False
    return True
