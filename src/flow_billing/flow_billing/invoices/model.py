from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Tuple

from ..billing.model import BillingPeriod
from ..core.constants import (
    DEFAULT_CURRENCY,
    DEFAULT_INVOICE_PREFIX,
    DEFAULT_PAYMENT_TERMS_DAYS,
    DEFAULT_TAX_RATE,
    STANDARD_BILLING_PERIOD_DAYS,
)
from ..core.enums import InvoiceStatus, LineTag, PaymentMethod


@dataclass(frozen=True)
class InvoiceLineItem:
    """Snapshot of one charge at invoice time.

    ``base_amount`` is the full-period charge (unit price x quantity);
    ``amount`` is what is billed after pro-rata over ``pro_rata_days``.
    """

    item_order: int
    item_key: str
    description: str
    quantity: int
    unit_price: Decimal
    base_amount: Decimal
    amount: Decimal
    tag: LineTag
    pro_rata_days: int
    period_start: date
    period_end: date
    pro_rata_total_days: int = STANDARD_BILLING_PERIOD_DAYS
    line_id: Optional[int] = None


@dataclass(frozen=True)
class Invoice:
    invoice_id: int
    company_id: int
    service_id: int
    stakeholder_id: int
    invoice_number: str
    period_start: date
    period_end: date
    currency: str
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    status: InvoiceStatus
    invoice_date: date
    due_date: date
    line_items: Tuple[InvoiceLineItem, ...] = ()
    paid_amount: Decimal = Decimal("0.00")
    paid_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    sent_by: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None
    version: int = 1

    @property
    def outstanding_amount(self) -> Decimal:
        return max(self.total_amount - self.paid_amount, Decimal("0.00"))

    @property
    def is_settled(self) -> bool:
        return self.paid_amount >= self.total_amount


@dataclass(frozen=True)
class Payment:
    """Immutable once recorded; a reversal is a new negative payment."""

    payment_id: int
    invoice_id: int
    company_id: int
    amount: Decimal
    paid_at: datetime
    method: PaymentMethod
    reference: Optional[str] = None
    reverses_payment_id: Optional[int] = None
    created_by: Optional[int] = None


@dataclass(frozen=True)
class InvoiceSettings:
    company_id: int
    invoice_prefix: str = DEFAULT_INVOICE_PREFIX
    default_payment_terms_days: int = DEFAULT_PAYMENT_TERMS_DAYS
    default_currency: str = DEFAULT_CURRENCY
    default_tax_rate: Decimal = DEFAULT_TAX_RATE


@dataclass(frozen=True)
class InvoicePreview:
    service_id: int
    period: BillingPeriod
    currency: str
    tax_rate: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    line_items: Tuple[InvoiceLineItem, ...] = field(default_factory=tuple)

    @property
    def has_proration(self) -> bool:
        return any(li.tag != LineTag.REGULAR for li in self.line_items)


@dataclass(frozen=True)
class InvoiceSummary:
    total_invoices: int
    total_amount: Decimal
    paid_amount: Decimal
    outstanding_amount: Decimal
    overdue_count: int
