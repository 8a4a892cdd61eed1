from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    """Role used for permission checks."""

    ADMIN = "admin"
    STAFF = "staff"


class BillingCycle(str, Enum):
    """Recurrence interval governing when a service invoice is generated."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class ServiceStatus(str, Enum):
    """Service lifecycle. CANCELLED and COMPLETED are final; both carry an end date."""

    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"

    @property
    def is_final(self) -> bool:
        return self in (ServiceStatus.CANCELLED, ServiceStatus.COMPLETED)


class ChangeType(str, Enum):
    """Kind of change recorded in a service's history."""

    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"

    @property
    def is_line_item_change(self) -> bool:
        return self in (ChangeType.ADDED, ChangeType.MODIFIED, ChangeType.REMOVED)


class LineTag(str, Enum):
    REGULAR = "regular"
    NEW = "new"
    FINAL_PARTIAL = "final_partial"
    PRORATION = "proration"
    ADJUSTMENT = "adjustment"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle state. PAID and CANCELLED are terminal."""

    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED)


class InvoiceAction(str, Enum):
    SEND = "send"
    RECORD_PAYMENT = "record_payment"
    MARK_OVERDUE = "mark_overdue"
    CANCEL = "cancel"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CARD = "card"
    CHEQUE = "cheque"
    MOBILE = "mobile"
    OTHER = "other"
