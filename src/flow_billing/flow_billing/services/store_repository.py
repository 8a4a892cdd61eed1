from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, Sequence

from ..common.datetime_utils import coerce_date
from ..core.enums import BillingCycle, ChangeType, ServiceStatus
from ..database.record_store import RecordStore, Row
from .model import ChangeEvent, NewLineItem, NewService, ServiceLineItem, StakeholderService
from .repository import ServiceRepository

SERVICES = "stakeholder_services"
LINE_ITEMS = "service_line_items"
CHANGES = "service_changes"


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _to_service(r: Row) -> StakeholderService:
    return StakeholderService(
        service_id=int(r["id"]),
        company_id=int(r["company_id"]),
        stakeholder_id=int(r["stakeholder_id"]),
        service_name=r["service_name"],
        billing_cycle=BillingCycle(r["billing_cycle"]),
        billing_day=int(r["billing_day"]),
        currency=r["currency"],
        tax_rate=_decimal(r.get("tax_rate")) or Decimal("0"),
        status=ServiceStatus(r["status"]),
        start_date=coerce_date(r["start_date"], "start_date"),
        end_date=coerce_date(r.get("end_date"), "end_date"),
        last_billed_date=coerce_date(r.get("last_billed_date"), "last_billed_date"),
        next_billing_date=coerce_date(r.get("next_billing_date"), "next_billing_date"),
        version=int(r.get("version") or 1),
    )


def _to_line_item(r: Row) -> ServiceLineItem:
    return ServiceLineItem(
        line_item_id=int(r["id"]),
        service_id=int(r["service_id"]),
        item_key=r["item_key"],
        description=r["description"],
        amount=_decimal(r["amount"]),
        quantity=int(r["quantity"]),
        billing_cycle=BillingCycle(r["billing_cycle"]),
        effective_from=coerce_date(r["effective_from"], "effective_from"),
        effective_to=coerce_date(r.get("effective_to"), "effective_to"),
    )


def _to_change(r: Row) -> ChangeEvent:
    return ChangeEvent(
        change_id=int(r["id"]),
        change_type=ChangeType(r["change_type"]),
        item_key=r["item_key"],
        effective_date=coerce_date(r["effective_date"], "effective_date"),
        old_amount=_decimal(r.get("old_amount")),
        new_amount=_decimal(r.get("new_amount")),
        changed_by=r.get("changed_by"),
        changed_at=r.get("changed_at"),
        field_changed=r.get("field_changed"),
        old_value=r.get("old_value"),
        new_value=r.get("new_value"),
    )


class StoreServiceRepository(ServiceRepository):
    def __init__(self, store: RecordStore):
        self._store = store

    def get_by_id(self, *, company_id: int, service_id: int) -> Optional[StakeholderService]:
        r = self._store.get(SERVICES, {"id": int(service_id), "company_id": int(company_id)})
        return _to_service(r) if r else None

    def list_services(self, *, company_id: int, stakeholder_id: Optional[int] = None) -> Sequence[StakeholderService]:
        filters = {"company_id": int(company_id)}
        if stakeholder_id is not None:
            filters["stakeholder_id"] = int(stakeholder_id)
        rows = self._store.select(SERVICES, filters, order_by=("service_name", "id"))
        return [_to_service(r) for r in rows]

    def create(self, *, company_id: int, data: NewService, created_by: int) -> int:
        return self._store.insert(
            SERVICES,
            {
                "company_id": int(company_id),
                "stakeholder_id": int(data.stakeholder_id),
                "service_name": data.service_name,
                "billing_cycle": data.billing_cycle.value,
                "billing_day": int(data.billing_day),
                "currency": data.currency,
                "tax_rate": data.tax_rate,
                "status": ServiceStatus.ACTIVE.value,
                "start_date": data.start_date,
                "end_date": data.end_date,
                "last_billed_date": None,
                "next_billing_date": data.start_date,
                "created_by": int(created_by),
                "version": 1,
            },
        )

    def update(self, *, service: StakeholderService, values: Mapping[str, Any]) -> bool:
        changed = self._store.update(
            SERVICES,
            dict(values),
            {"id": service.service_id, "company_id": service.company_id},
            expected_version=service.version,
        )
        return changed > 0

    def update_billing_dates(
        self,
        *,
        service: StakeholderService,
        last_billed_date: Optional[date],
        next_billing_date: Optional[date],
    ) -> bool:
        changed = self._store.update(
            SERVICES,
            {"last_billed_date": last_billed_date, "next_billing_date": next_billing_date},
            {"id": service.service_id, "company_id": service.company_id},
            expected_version=service.version,
        )
        return changed > 0

    def touch(self, *, service: StakeholderService) -> bool:
        changed = self._store.update(
            SERVICES,
            {},
            {"id": service.service_id, "company_id": service.company_id},
            expected_version=service.version,
        )
        return changed > 0

    def delete(self, *, service: StakeholderService) -> bool:
        if not self.touch(service=service):
            return False
        scope = {"company_id": service.company_id, "service_id": service.service_id}
        self._store.delete(CHANGES, scope)
        self._store.delete(LINE_ITEMS, scope)
        return self._store.delete(SERVICES, {"id": service.service_id, "company_id": service.company_id}) > 0

    def list_line_items(self, *, company_id: int, service_id: int) -> Sequence[ServiceLineItem]:
        rows = self._store.select(
            LINE_ITEMS,
            {"company_id": int(company_id), "service_id": int(service_id)},
            order_by=("effective_from", "id"),
        )
        return [_to_line_item(r) for r in rows]

    def add_line_item(self, *, service: StakeholderService, item: NewLineItem, effective_from: date) -> int:
        return self._store.insert(
            LINE_ITEMS,
            {
                "company_id": service.company_id,
                "service_id": service.service_id,
                "item_key": item.item_key,
                "description": item.description,
                "amount": item.amount,
                "quantity": int(item.quantity),
                "billing_cycle": service.billing_cycle.value,
                "effective_from": effective_from,
                "effective_to": None,
            },
        )

    def close_line_item(self, *, line_item_id: int, effective_to: date) -> bool:
        return self._store.update(LINE_ITEMS, {"effective_to": effective_to}, {"id": int(line_item_id)}) > 0

    def list_changes(self, *, company_id: int, service_id: int) -> Sequence[ChangeEvent]:
        rows = self._store.select(
            CHANGES,
            {"company_id": int(company_id), "service_id": int(service_id)},
            order_by=("id",),
        )
        return [_to_change(r) for r in rows]

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
        return self._store.insert(
            CHANGES,
            {
                "company_id": service.company_id,
                "service_id": service.service_id,
                "change_type": change_type.value,
                "item_key": item_key,
                "effective_date": effective_date,
                "old_amount": old_amount,
                "new_amount": new_amount,
                "changed_by": int(changed_by),
                "changed_at": changed_at,
                "field_changed": field_changed,
                "old_value": old_value,
                "new_value": new_value,
            },
        )
