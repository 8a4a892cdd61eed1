from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Optional

from ..core.enums import BillingCycle, ChangeType, ServiceStatus


@dataclass(frozen=True)
class StakeholderService:
    """Domain entity: a recurring service billed to a stakeholder."""

    service_id: int
    company_id: int
    stakeholder_id: int
    service_name: str
    billing_cycle: BillingCycle
    billing_day: int
    currency: str
    tax_rate: Decimal
    status: ServiceStatus
    start_date: date
    end_date: Optional[date] = None
    last_billed_date: Optional[date] = None
    next_billing_date: Optional[date] = None
    version: int = 1


@dataclass(frozen=True)
class ServiceLineItem:
    """Priced component of a service over ``[effective_from, effective_to)``.

    ``amount`` is the unit price per billing period; the line total is
    ``amount * quantity``. Items sharing an ``item_key`` never overlap.
    """

    line_item_id: int
    service_id: int
    item_key: str
    description: str
    amount: Decimal
    quantity: int
    billing_cycle: BillingCycle
    effective_from: date
    effective_to: Optional[date] = None

    @property
    def line_total(self) -> Decimal:
        return self.amount * self.quantity

    def is_active_on(self, value: date) -> bool:
        return self.effective_from <= value and (self.effective_to is None or value < self.effective_to)


@dataclass(frozen=True)
class ChangeEvent:
    """Service history entry.

    Line-item changes carry ``item_key`` and the old/new amounts; service
    updates and status changes carry ``field_changed`` and the old/new values
    as text instead.
    """

    change_type: ChangeType
    item_key: Optional[str]
    effective_date: date
    change_id: Optional[int] = None
    old_amount: Optional[Decimal] = None
    new_amount: Optional[Decimal] = None
    changed_by: Optional[int] = None
    changed_at: Optional[datetime] = None
    field_changed: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None


@dataclass(frozen=True)
class NewLineItem:
    item_key: str
    description: str
    amount: Decimal
    quantity: int = 1


@dataclass(frozen=True)
class NewService:
    stakeholder_id: int
    service_name: str
    billing_cycle: BillingCycle
    billing_day: int
    start_date: date
    currency: str
    tax_rate: Decimal
    end_date: Optional[date] = None


@dataclass(frozen=True)
class ServiceSummary:
    """Service counts per status plus the monthly-equivalent recurring amount
    of active services, per currency."""

    total_services: int
    active_services: int
    paused_services: int
    ended_services: int
    monthly_recurring: Dict[str, Decimal]
