from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ..billing.calculator.standard_calculator import round_money
from ..billing.date_math import cycle_months, parse_cycle
from ..common.datetime_utils import Clock, coerce_date, now_local
from ..common.validators import (
    require_billing_day,
    require_non_empty,
    require_non_negative,
    require_positive_int,
)
from ..core.context import BillingContext
from ..core.enums import BillingCycle, ChangeType, ServiceStatus
from ..core.exceptions import ConcurrentUpdateError, NotFoundError, UnsupportedCycleError, ValidationError
from ..unit_of_work import BillingRepositories, UnitOfWork
from .model import ChangeEvent, NewLineItem, NewService, ServiceLineItem, ServiceSummary, StakeholderService

logger = logging.getLogger(__name__)

_STATUS_MOVES = {
    ServiceStatus.ACTIVE: (ServiceStatus.PAUSED, ServiceStatus.CANCELLED, ServiceStatus.COMPLETED),
    ServiceStatus.PAUSED: (ServiceStatus.ACTIVE, ServiceStatus.CANCELLED, ServiceStatus.COMPLETED),
}


def _require_date(value: Union[date, str, None], field_name: str) -> date:
    parsed = coerce_date(value, field_name)
    if parsed is None:
        raise ValidationError(f"{field_name} is required")
    return parsed


def _new_line_item(data: Mapping[str, Any]) -> NewLineItem:
    return NewLineItem(
        item_key=require_non_empty(data.get("item_key"), "item_key"),
        description=require_non_empty(data.get("description"), "description"),
        amount=require_non_negative(data.get("amount"), "amount"),
        quantity=require_positive_int(data.get("quantity", 1), "quantity"),
    )


class ServiceCatalogService:
    """Stakeholder services and the line-item history invoices are built from.

    Every line-item mutation writes the line-item rows and the matching change
    event in one transaction, and bumps the service version so two concurrent
    edits of the same service cannot both land.
    """

    def __init__(self, uow: UnitOfWork, *, clock: Clock = now_local):
        self._uow = uow
        self._clock = clock

    @staticmethod
    def _load(repos: BillingRepositories, context: BillingContext, service_id: int) -> StakeholderService:
        service = repos.services.get_by_id(company_id=context.company_id, service_id=int(service_id))
        if not service:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    @staticmethod
    def _lock(repos: BillingRepositories, service: StakeholderService) -> None:
        if not repos.services.touch(service=service):
            raise ConcurrentUpdateError(f"Service {service.service_id} was changed by someone else, please retry")

    @staticmethod
    def _check_editable(service: StakeholderService, effective_date: date) -> None:
        if service.status.is_final:
            raise ValidationError(f"Service is {service.status.value} and can no longer change")
        if effective_date < service.start_date:
            raise ValidationError("effective_date cannot be before the service start date")
        if service.end_date is not None and effective_date >= service.end_date:
            raise ValidationError(f"effective_date must be before the service end date {service.end_date}")
        if service.last_billed_date and service.next_billing_date and effective_date < service.next_billing_date:
            raise ValidationError(
                f"effective_date falls in a period that is already invoiced (billed until {service.next_billing_date})"
            )

    @staticmethod
    def _open_item(items: Iterable[ServiceLineItem], item_key: str, effective_date: date) -> ServiceLineItem:
        for item in items:
            if item.item_key == item_key and item.effective_to is None and item.is_active_on(effective_date):
                return item
        raise NotFoundError(f"No active line item {item_key!r} on {effective_date}")

    # Services
    def create_service(
        self,
        *,
        context: BillingContext,
        stakeholder_id: int,
        service_name: str,
        billing_cycle: Union[BillingCycle, str],
        billing_day: int,
        start_date: Union[date, str],
        currency: Optional[str] = None,
        tax_rate: Any = None,
        end_date: Union[date, str, None] = None,
        line_items: Sequence[Mapping[str, Any]] = (),
    ) -> StakeholderService:
        context.require_admin()
        try:
            cycle = parse_cycle(billing_cycle)
        except UnsupportedCycleError as e:
            raise ValidationError(str(e))
        start = _require_date(start_date, "start_date")
        end = coerce_date(end_date, "end_date")
        if end is not None and end <= start:
            raise ValidationError("end_date must be after start_date")

        items = [_new_line_item(li) for li in line_items]
        keys = [li.item_key for li in items]
        if len(keys) != len(set(keys)):
            raise ValidationError("item_key must be unique within a service")

        with self._uow.begin() as repos:
            settings = repos.invoices.get_settings(company_id=context.company_id)
            data = NewService(
                stakeholder_id=require_positive_int(stakeholder_id, "stakeholder_id"),
                service_name=require_non_empty(service_name, "service_name"),
                billing_cycle=cycle,
                billing_day=require_billing_day(billing_day),
                start_date=start,
                end_date=end,
                currency=(currency or settings.default_currency).strip().upper(),
                tax_rate=settings.default_tax_rate if tax_rate is None else require_non_negative(tax_rate, "tax_rate"),
            )
            service_id = repos.services.create(company_id=context.company_id, data=data, created_by=context.user_id)
            service = self._load(repos, context, service_id)
            now = self._clock()
            for item in items:
                repos.services.add_line_item(service=service, item=item, effective_from=start)
                repos.services.record_change(
                    service=service,
                    change_type=ChangeType.ADDED,
                    item_key=item.item_key,
                    effective_date=start,
                    old_amount=None,
                    new_amount=item.amount,
                    changed_by=context.user_id,
                    changed_at=now,
                )

        logger.info("Created service %s for stakeholder %s (company %s)", service_id, data.stakeholder_id, context.company_id)
        return service

    def get_service(self, *, context: BillingContext, service_id: int) -> StakeholderService:
        return self._load(self._uow.repositories(), context, service_id)

    def list_services(
        self, *, context: BillingContext, stakeholder_id: Optional[int] = None
    ) -> Sequence[StakeholderService]:
        return self._uow.repositories().services.list_services(
            company_id=context.company_id, stakeholder_id=None if stakeholder_id is None else int(stakeholder_id)
        )

    @staticmethod
    def _save(repos: BillingRepositories, service: StakeholderService, values: Mapping[str, Any]) -> None:
        if not repos.services.update(service=service, values=values):
            raise ConcurrentUpdateError(f"Service {service.service_id} was changed by someone else, please retry")

    @staticmethod
    def _check_end_date(service: StakeholderService, end: date) -> None:
        if end < service.start_date:
            raise ValidationError("end_date cannot be before the service start date")
        if service.last_billed_date and service.next_billing_date and end < service.next_billing_date:
            raise ValidationError(
                f"end_date falls in a period that is already invoiced (billed until {service.next_billing_date})"
            )

    def update_service(
        self,
        *,
        context: BillingContext,
        service_id: int,
        service_name: Optional[str] = None,
        currency: Optional[str] = None,
        tax_rate: Any = None,
        billing_day: Any = None,
        end_date: Union[date, str, None] = None,
    ) -> StakeholderService:
        """Change service details; every changed field lands in the history.

        Currency and tax apply to invoices created afterwards. The billing day
        is fixed once the service has been invoiced.
        """
        context.require_admin()
        today = self._clock().date()

        with self._uow.begin() as repos:
            service = self._load(repos, context, service_id)
            if service.status.is_final:
                raise ValidationError(f"Service is {service.status.value} and can no longer change")

            changes = {}
            if service_name is not None:
                changes["service_name"] = require_non_empty(service_name, "service_name")
            if currency is not None:
                code = require_non_empty(currency, "currency").upper()
                if len(code) != 3 or not code.isalpha():
                    raise ValidationError("currency must be a three-letter code")
                changes["currency"] = code
            if tax_rate is not None:
                changes["tax_rate"] = require_non_negative(tax_rate, "tax_rate")
            if billing_day is not None:
                day = require_billing_day(billing_day)
                if day != service.billing_day and service.last_billed_date is not None:
                    raise ValidationError("billing_day cannot change once the service has been invoiced")
                changes["billing_day"] = day
            if end_date is not None:
                end = _require_date(end_date, "end_date")
                if end <= service.start_date:
                    raise ValidationError("end_date must be after start_date")
                self._check_end_date(service, end)
                changes["end_date"] = end

            changes = {k: v for k, v in changes.items() if getattr(service, k) != v}
            if not changes:
                return service

            self._save(repos, service, changes)
            now = self._clock()
            for field_name, value in changes.items():
                old = getattr(service, field_name)
                repos.services.record_change(
                    service=service,
                    change_type=ChangeType.UPDATED,
                    item_key=None,
                    effective_date=today,
                    field_changed=field_name,
                    old_value=None if old is None else str(old),
                    new_value=str(value),
                    changed_by=context.user_id,
                    changed_at=now,
                )
            updated = self._load(repos, context, service.service_id)

        logger.info("Service %s updated: %s", service.service_id, ", ".join(sorted(changes)))
        return updated

    def update_service_status(
        self,
        *,
        context: BillingContext,
        service_id: int,
        status: Union[ServiceStatus, str],
        effective_date: Union[date, str, None] = None,
    ) -> StakeholderService:
        """Pause, resume, cancel or complete a service.

        Cancelling or completing sets the end date to ``effective_date``
        (today by default) unless the service already ends earlier; the last
        period is then invoiced up to that date.
        """
        context.require_admin()
        try:
            target = ServiceStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown service status: {status!r}")
        effective = coerce_date(effective_date, "effective_date") or self._clock().date()

        with self._uow.begin() as repos:
            service = self._load(repos, context, service_id)
            if target not in _STATUS_MOVES.get(service.status, ()):
                raise ValidationError(f"Cannot move a {service.status.value} service to {target.value}")

            values: Dict[str, Any] = {"status": target.value}
            if target.is_final and (service.end_date is None or effective < service.end_date):
                self._check_end_date(service, effective)
                values["end_date"] = effective
            self._save(repos, service, values)
            repos.services.record_change(
                service=service,
                change_type=ChangeType.STATUS_CHANGED,
                item_key=None,
                effective_date=effective,
                field_changed="status",
                old_value=service.status.value,
                new_value=target.value,
                changed_by=context.user_id,
                changed_at=self._clock(),
            )
            updated = self._load(repos, context, service.service_id)

        logger.info(
            "Service %s: %s -> %s from %s", service.service_id, service.status.value, target.value, effective
        )
        return updated

    def delete_service(self, *, context: BillingContext, service_id: int) -> None:
        """Remove a service that was never invoiced, with its line items and history."""
        context.require_admin()
        with self._uow.begin() as repos:
            service = self._load(repos, context, service_id)
            invoices = repos.invoices.list_invoices(company_id=context.company_id, service_id=service.service_id)
            if invoices:
                raise ValidationError(
                    f"Service {service.service_id} has {len(invoices)} invoice(s); cancel or complete it instead"
                )
            if not repos.services.delete(service=service):
                raise ConcurrentUpdateError(f"Service {service.service_id} was changed by someone else, please retry")

        logger.info("Service %s deleted", service.service_id)

    def service_summary(
        self,
        *,
        context: BillingContext,
        stakeholder_id: Optional[int] = None,
        on: Union[date, str, None] = None,
    ) -> ServiceSummary:
        """Counts by status and the monthly recurring amount of active services.

        Quarterly and annual prices are spread evenly over their months.
        """
        day = coerce_date(on, "on") or self._clock().date()
        repos = self._uow.repositories()
        services = self.list_services(context=context, stakeholder_id=stakeholder_id)

        recurring: Dict[str, Decimal] = {}
        for service in services:
            if service.status != ServiceStatus.ACTIVE:
                continue
            if service.end_date is not None and day >= service.end_date:
                continue
            items = repos.services.list_line_items(company_id=context.company_id, service_id=service.service_id)
            monthly = sum(
                (i.line_total / cycle_months(service.billing_cycle) for i in items if i.is_active_on(day)),
                Decimal("0"),
            )
            recurring[service.currency] = recurring.get(service.currency, Decimal("0")) + monthly

        return ServiceSummary(
            total_services=len(services),
            active_services=sum(1 for s in services if s.status == ServiceStatus.ACTIVE),
            paused_services=sum(1 for s in services if s.status == ServiceStatus.PAUSED),
            ended_services=sum(1 for s in services if s.status.is_final),
            monthly_recurring={code: round_money(amount) for code, amount in sorted(recurring.items())},
        )

    # Line items
    def add_line_item(
        self,
        *,
        context: BillingContext,
        service_id: int,
        item_key: str,
        description: str,
        amount: Any,
        quantity: Any = 1,
        effective_date: Union[date, str],
    ) -> ServiceLineItem:
        context.require_admin()
        item = _new_line_item(
            {"item_key": item_key, "description": description, "amount": amount, "quantity": quantity}
        )
        effective = _require_date(effective_date, "effective_date")

        with self._uow.begin() as repos:
            service = self._load(repos, context, service_id)
            self._check_editable(service, effective)
            existing = repos.services.list_line_items(company_id=context.company_id, service_id=service.service_id)
            for other in existing:
                if other.item_key == item.item_key and (other.effective_to is None or other.effective_to > effective):
                    raise ValidationError(f"Line item {item.item_key!r} is already active on {effective}")
            self._lock(repos, service)

            line_item_id = repos.services.add_line_item(service=service, item=item, effective_from=effective)
            repos.services.record_change(
                service=service,
                change_type=ChangeType.ADDED,
                item_key=item.item_key,
                effective_date=effective,
                old_amount=None,
                new_amount=item.amount,
                changed_by=context.user_id,
                changed_at=self._clock(),
            )
            created = self._find(repos, context, service.service_id, line_item_id)

        logger.info("Service %s: added %r from %s", service.service_id, item.item_key, effective)
        return created

    def modify_line_item(
        self,
        *,
        context: BillingContext,
        service_id: int,
        item_key: str,
        amount: Any,
        effective_date: Union[date, str],
        quantity: Any = None,
        description: Optional[str] = None,
    ) -> ServiceLineItem:
        """Reprice an item from ``effective_date``: the old row closes, a new row opens."""
        context.require_admin()
        key = require_non_empty(item_key, "item_key")
        new_amount = require_non_negative(amount, "amount")
        effective = _require_date(effective_date, "effective_date")

        with self._uow.begin() as repos:
            service = self._load(repos, context, service_id)
            self._check_editable(service, effective)
            items = repos.services.list_line_items(company_id=context.company_id, service_id=service.service_id)
            current = self._open_item(items, key, effective)
            if effective == current.effective_from:
                raise ValidationError(f"Line item {key!r} starts on {effective}; change it from a later date")

            replacement = NewLineItem(
                item_key=key,
                description=(description or "").strip() or current.description,
                amount=new_amount,
                quantity=current.quantity if quantity is None else require_positive_int(quantity, "quantity"),
            )
            if replacement.amount == current.amount and replacement.quantity == current.quantity:
                raise ValidationError(f"Line item {key!r} already has that price")
            self._lock(repos, service)

            repos.services.close_line_item(line_item_id=current.line_item_id, effective_to=effective)
            line_item_id = repos.services.add_line_item(service=service, item=replacement, effective_from=effective)
            repos.services.record_change(
                service=service,
                change_type=ChangeType.MODIFIED,
                item_key=key,
                effective_date=effective,
                old_amount=current.amount,
                new_amount=replacement.amount,
                changed_by=context.user_id,
                changed_at=self._clock(),
            )
            updated = self._find(repos, context, service.service_id, line_item_id)

        logger.info(
            "Service %s: %r %s -> %s from %s", service.service_id, key, current.amount, replacement.amount, effective
        )
        return updated

    def remove_line_item(
        self,
        *,
        context: BillingContext,
        service_id: int,
        item_key: str,
        effective_date: Union[date, str],
    ) -> ServiceLineItem:
        context.require_admin()
        key = require_non_empty(item_key, "item_key")
        effective = _require_date(effective_date, "effective_date")

        with self._uow.begin() as repos:
            service = self._load(repos, context, service_id)
            self._check_editable(service, effective)
            items = repos.services.list_line_items(company_id=context.company_id, service_id=service.service_id)
            current = self._open_item(items, key, effective)
            if effective == current.effective_from:
                raise ValidationError(f"Line item {key!r} starts on {effective}; remove it from a later date")
            self._lock(repos, service)

            repos.services.close_line_item(line_item_id=current.line_item_id, effective_to=effective)
            repos.services.record_change(
                service=service,
                change_type=ChangeType.REMOVED,
                item_key=key,
                effective_date=effective,
                old_amount=current.amount,
                new_amount=None,
                changed_by=context.user_id,
                changed_at=self._clock(),
            )
            closed = self._find(repos, context, service.service_id, current.line_item_id)

        logger.info("Service %s: removed %r from %s", service.service_id, key, effective)
        return closed

    @staticmethod
    def _find(repos: BillingRepositories, context: BillingContext, service_id: int, line_item_id: int) -> ServiceLineItem:
        for item in repos.services.list_line_items(company_id=context.company_id, service_id=service_id):
            if item.line_item_id == line_item_id:
                return item
        raise NotFoundError(f"Line item {line_item_id} not found")

    def list_line_items(
        self,
        *,
        context: BillingContext,
        service_id: int,
        active_on: Union[date, str, None] = None,
    ) -> List[ServiceLineItem]:
        repos = self._uow.repositories()
        service = self._load(repos, context, service_id)
        items = repos.services.list_line_items(company_id=context.company_id, service_id=service.service_id)
        on = coerce_date(active_on, "active_on")
        if on is None:
            return list(items)
        return [i for i in items if i.is_active_on(on)]

    def list_changes(self, *, context: BillingContext, service_id: int) -> Sequence[ChangeEvent]:
        repos = self._uow.repositories()
        service = self._load(repos, context, service_id)
        return repos.services.list_changes(company_id=context.company_id, service_id=service.service_id)
