from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, Sequence

from ..core.enums import ChangeType
from .model import ChangeEvent, NewLineItem, NewService, ServiceLineItem, StakeholderService


class ServiceRepository(Protocol):
    def get_by_id(self, *, company_id: int, service_id: int) -> Optional[StakeholderService]:
        raise NotImplementedError

    def list_services(self, *, company_id: int, stakeholder_id: Optional[int] = None) -> Sequence[StakeholderService]:
        raise NotImplementedError

    def create(self, *, company_id: int, data: NewService, created_by: int) -> int:
        raise NotImplementedError

    def update(self, *, service: StakeholderService, values: Mapping[str, Any]) -> bool:
        """Compare-and-swap on ``service.version``; False when the row moved."""

        raise NotImplementedError

    def update_billing_dates(
        self,
        *,
        service: StakeholderService,
        last_billed_date: Optional[date],
        next_billing_date: Optional[date],
    ) -> bool:
        """Compare-and-swap on ``service.version``; False when the row moved."""

        raise NotImplementedError

    def touch(self, *, service: StakeholderService) -> bool:
        """Bump the version so concurrent line-item edits collide."""

        raise NotImplementedError

    def delete(self, *, service: StakeholderService) -> bool:
        """Remove the service with its line items and history."""

        raise NotImplementedError

    # Line items
    def list_line_items(self, *, company_id: int, service_id: int) -> Sequence[ServiceLineItem]:
        raise NotImplementedError

    def add_line_item(self, *, service: StakeholderService, item: NewLineItem, effective_from: date) -> int:
        raise NotImplementedError

    def close_line_item(self, *, line_item_id: int, effective_to: date) -> bool:
        raise NotImplementedError

    # History
    def list_changes(self, *, company_id: int, service_id: int) -> Sequence[ChangeEvent]:
        raise NotImplementedError

    def record_change(
        self,
        *,
        service: StakeholderService,
        change_type: ChangeType,
        item_key: Optional[str],
        effective_date: date,
        changed_by: int,
        changed_at: datetime,
        old_amount: Optional[Decimal] = None,
        new_amount: Optional[Decimal] = None,
        field_changed: Optional[str] = None,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
    ) -> int:
        raise NotImplementedError
