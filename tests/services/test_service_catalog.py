from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest

from src.flow_billing.flow_billing.container import build_container
from src.flow_billing.flow_billing.core.context import BillingContext
from src.flow_billing.flow_billing.core.enums import BillingCycle, ChangeType, LineTag, Role, ServiceStatus
from src.flow_billing.flow_billing.core.exceptions import AuthorizationError, NotFoundError, ValidationError

ADMIN = BillingContext(company_id=1, user_id=10, role=Role.ADMIN)
STAFF = BillingContext(company_id=1, user_id=11, role=Role.STAFF)
OTHER_COMPANY = BillingContext(company_id=2, user_id=20, role=Role.ADMIN)


@pytest.fixture()
def container():
    return build_container(store_backend="memory", clock=lambda: datetime(2024, 2, 1, 9, 0))


def _hosting_service(container, **overrides):
    data = dict(
        context=ADMIN,
        stakeholder_id=7,
        service_name="Managed hosting",
        billing_cycle="monthly",
        billing_day=1,
        start_date=date(2024, 2, 1),
        line_items=[{"item_key": "hosting", "description": "Hosting plan", "amount": "300"}],
    )
    data.update(overrides)
    return container.service_catalog.create_service(**data)


def test_create_service_records_initial_items(container):
    service = _hosting_service(container)

    assert service.status == ServiceStatus.ACTIVE
    assert service.billing_cycle == BillingCycle.MONTHLY
    assert service.currency == "BDT"
    assert service.tax_rate == Decimal("0")
    assert service.next_billing_date == date(2024, 2, 1)
    assert service.last_billed_date is None

    items = container.service_catalog.list_line_items(context=STAFF, service_id=service.service_id)
    assert [(i.item_key, i.amount, i.effective_from, i.effective_to) for i in items] == [
        ("hosting", Decimal("300"), date(2024, 2, 1), None)
    ]
    changes = container.service_catalog.list_changes(context=STAFF, service_id=service.service_id)
    assert [(c.change_type, c.item_key, c.effective_date) for c in changes] == [
        (ChangeType.ADDED, "hosting", date(2024, 2, 1))
    ]
    assert changes[0].changed_by == ADMIN.user_id


def test_staff_cannot_create_services(container):
    with pytest.raises(AuthorizationError):
        _hosting_service(container, context=STAFF)


@pytest.mark.parametrize(
    "overrides",
    [
        {"billing_day": 29},
        {"billing_day": 0},
        {"billing_cycle": "weekly"},
        {"service_name": "  "},
        {"start_date": "2024-02-30"},
        {"end_date": date(2024, 1, 1)},
        {"line_items": [{"item_key": "hosting", "description": "Hosting", "amount": "-1"}]},
        {"line_items": [{"item_key": "hosting", "description": "Hosting", "amount": "1", "quantity": 0}]},
        {
            "line_items": [
                {"item_key": "hosting", "description": "A", "amount": "1"},
                {"item_key": "hosting", "description": "B", "amount": "2"},
            ]
        },
    ],
)
def test_create_service_validates_input(container, overrides):
    with pytest.raises(ValidationError):
        _hosting_service(container, **overrides)


def test_services_are_scoped_to_the_company(container):
    service = _hosting_service(container)

    with pytest.raises(NotFoundError):
        container.service_catalog.get_service(context=OTHER_COMPANY, service_id=service.service_id)
    assert container.service_catalog.list_services(context=OTHER_COMPANY, stakeholder_id=7) == []
    assert [s.service_id for s in container.service_catalog.list_services(context=STAFF, stakeholder_id=7)] == [
        service.service_id
    ]


def test_modify_line_item_closes_old_row_and_opens_new(container):
    service = _hosting_service(container)

    updated = container.service_catalog.modify_line_item(
        context=ADMIN,
        service_id=service.service_id,
        item_key="hosting",
        amount="450",
        effective_date="2024-02-16",
    )

    assert updated.amount == Decimal("450")
    assert updated.effective_from == date(2024, 2, 16)
    assert updated.description == "Hosting plan"

    items = container.service_catalog.list_line_items(context=ADMIN, service_id=service.service_id)
    assert [(i.amount, i.effective_from, i.effective_to) for i in items] == [
        (Decimal("300"), date(2024, 2, 1), date(2024, 2, 16)),
        (Decimal("450"), date(2024, 2, 16), None),
    ]

    changes = container.service_catalog.list_changes(context=ADMIN, service_id=service.service_id)
    assert changes[-1].change_type == ChangeType.MODIFIED
    assert (changes[-1].old_amount, changes[-1].new_amount) == (Decimal("300"), Decimal("450"))

    assert container.service_catalog.get_service(context=ADMIN, service_id=service.service_id).version == 2


def test_modify_on_the_start_day_is_rejected(container):
    service = _hosting_service(container)

    with pytest.raises(ValidationError):
        container.service_catalog.modify_line_item(
            context=ADMIN,
            service_id=service.service_id,
            item_key="hosting",
            amount="450",
            effective_date=date(2024, 2, 1),
        )


def test_modify_unknown_item_is_not_found(container):
    service = _hosting_service(container)

    with pytest.raises(NotFoundError):
        container.service_catalog.modify_line_item(
            context=ADMIN,
            service_id=service.service_id,
            item_key="support",
            amount="10",
            effective_date=date(2024, 2, 10),
        )


def test_add_line_item_rejects_an_active_duplicate(container):
    service = _hosting_service(container)

    with pytest.raises(ValidationError):
        container.service_catalog.add_line_item(
            context=ADMIN,
            service_id=service.service_id,
            item_key="hosting",
            description="Second hosting",
            amount="10",
            effective_date=date(2024, 2, 10),
        )


def test_add_and_remove_line_items(container):
    service = _hosting_service(container)
    catalog = container.service_catalog

    support = catalog.add_line_item(
        context=ADMIN,
        service_id=service.service_id,
        item_key="support",
        description="Support hours",
        amount="20",
        quantity=3,
        effective_date=date(2024, 2, 11),
    )
    assert support.line_total == Decimal("60")

    removed = catalog.remove_line_item(
        context=ADMIN, service_id=service.service_id, item_key="support", effective_date=date(2024, 2, 21)
    )
    assert removed.effective_to == date(2024, 2, 21)

    active = catalog.list_line_items(context=ADMIN, service_id=service.service_id, active_on="2024-02-25")
    assert [i.item_key for i in active] == ["hosting"]
    assert [c.change_type for c in catalog.list_changes(context=ADMIN, service_id=service.service_id)] == [
        ChangeType.ADDED,
        ChangeType.ADDED,
        ChangeType.REMOVED,
    ]


def test_changes_before_the_service_start_are_rejected(container):
    service = _hosting_service(container)

    with pytest.raises(ValidationError):
        container.service_catalog.add_line_item(
            context=ADMIN,
            service_id=service.service_id,
            item_key="setup",
            description="Setup",
            amount="50",
            effective_date=date(2024, 1, 15),
        )


def test_changes_inside_an_invoiced_period_are_rejected(container):
    service = _hosting_service(container)
    container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)

    with pytest.raises(ValidationError):
        container.service_catalog.modify_line_item(
            context=ADMIN,
            service_id=service.service_id,
            item_key="hosting",
            amount="450",
            effective_date=date(2024, 2, 16),
        )

    # The next period is still open for changes.
    container.service_catalog.modify_line_item(
        context=ADMIN,
        service_id=service.service_id,
        item_key="hosting",
        amount="450",
        effective_date=date(2024, 3, 16),
    )


def test_staff_cannot_change_line_items(container):
    service = _hosting_service(container)

    with pytest.raises(AuthorizationError):
        container.service_catalog.remove_line_item(
            context=STAFF, service_id=service.service_id, item_key="hosting", effective_date=date(2024, 2, 10)
        )


def test_remove_and_readd_on_one_day_bills_as_a_repricing(container):
    service = _hosting_service(container)
    catalog = container.service_catalog

    catalog.remove_line_item(
        context=ADMIN, service_id=service.service_id, item_key="hosting", effective_date=date(2024, 3, 16)
    )
    catalog.add_line_item(
        context=ADMIN,
        service_id=service.service_id,
        item_key="hosting",
        description="Hosting plan",
        amount="450",
        effective_date=date(2024, 3, 16),
    )

    preview = container.invoice_service.preview_invoice(
        context=ADMIN, service_id=service.service_id, period_start=date(2024, 3, 1)
    )
    assert [li.amount for li in preview.line_items] == [Decimal("150.00"), Decimal("225.00")]
    assert [li.tag for li in preview.line_items] == [LineTag.PRORATION, LineTag.PRORATION]
    assert preview.total_amount == Decimal("375.00")


def test_update_service_records_each_changed_field(container):
    service = _hosting_service(container)

    updated = container.service_catalog.update_service(
        context=ADMIN,
        service_id=service.service_id,
        service_name="Managed hosting (EU)",
        tax_rate="7.5",
        currency="usd",
        end_date="2024-06-01",
    )

    assert updated.service_name == "Managed hosting (EU)"
    assert updated.tax_rate == Decimal("7.5")
    assert updated.currency == "USD"
    assert updated.end_date == date(2024, 6, 1)
    assert updated.version == service.version + 1

    changes = container.service_catalog.list_changes(context=ADMIN, service_id=service.service_id)
    updates = {c.field_changed: (c.old_value, c.new_value) for c in changes if c.change_type == ChangeType.UPDATED}
    assert updates == {
        "service_name": ("Managed hosting", "Managed hosting (EU)"),
        "tax_rate": ("0", "7.5"),
        "currency": ("BDT", "USD"),
        "end_date": (None, "2024-06-01"),
    }
    assert all(c.item_key is None for c in changes if c.change_type == ChangeType.UPDATED)


def test_update_service_without_changes_keeps_the_version(container):
    service = _hosting_service(container)

    same = container.service_catalog.update_service(
        context=ADMIN, service_id=service.service_id, service_name="Managed hosting"
    )

    assert same.version == service.version
    assert len(container.service_catalog.list_changes(context=ADMIN, service_id=service.service_id)) == 1


@pytest.mark.parametrize(
    "overrides",
    [
        {"service_name": " "},
        {"currency": "TAKA"},
        {"tax_rate": "-1"},
        {"billing_day": 30},
        {"end_date": "2024-02-01"},
    ],
)
def test_update_service_validates_input(container, overrides):
    service = _hosting_service(container)

    with pytest.raises(ValidationError):
        container.service_catalog.update_service(context=ADMIN, service_id=service.service_id, **overrides)


def test_billing_day_is_fixed_after_the_first_invoice(container):
    service = _hosting_service(container)
    container.service_catalog.update_service(context=ADMIN, service_id=service.service_id, billing_day=5)
    container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)

    with pytest.raises(ValidationError):
        container.service_catalog.update_service(context=ADMIN, service_id=service.service_id, billing_day=10)


def test_paused_services_are_not_invoiced_until_resumed(container):
    service = _hosting_service(container)
    catalog = container.service_catalog

    paused = catalog.update_service_status(context=ADMIN, service_id=service.service_id, status="paused")
    assert paused.status == ServiceStatus.PAUSED
    with pytest.raises(ValidationError):
        container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)

    resumed = catalog.update_service_status(context=ADMIN, service_id=service.service_id, status="active")
    assert resumed.status == ServiceStatus.ACTIVE
    container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)

    changes = catalog.list_changes(context=ADMIN, service_id=service.service_id)
    assert [(c.old_value, c.new_value) for c in changes if c.change_type == ChangeType.STATUS_CHANGED] == [
        ("active", "paused"),
        ("paused", "active"),
    ]


def test_completing_a_service_stops_billing_at_its_end_date(container):
    service = _hosting_service(container)
    catalog = container.service_catalog

    completed = catalog.update_service_status(
        context=ADMIN, service_id=service.service_id, status="completed", effective_date="2024-02-16"
    )
    assert completed.status == ServiceStatus.COMPLETED
    assert completed.end_date == date(2024, 2, 16)

    final = container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)
    assert [(li.amount, li.tag, li.period_end) for li in final.line_items] == [
        (Decimal("150.00"), LineTag.FINAL_PARTIAL, date(2024, 2, 16))
    ]

    with pytest.raises(ValidationError):
        container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)
    with pytest.raises(ValidationError):
        catalog.add_line_item(
            context=ADMIN,
            service_id=service.service_id,
            item_key="support",
            description="Support",
            amount="10",
            effective_date=date(2024, 2, 10),
        )


def test_end_date_stops_billing_for_an_active_service(container):
    service = _hosting_service(container, end_date=date(2024, 3, 11))
    invoices = container.invoice_service

    invoices.create_invoice(context=ADMIN, service_id=service.service_id)
    last = invoices.create_invoice(context=ADMIN, service_id=service.service_id)

    assert [(li.amount, li.tag) for li in last.line_items] == [(Decimal("100.00"), LineTag.FINAL_PARTIAL)]
    with pytest.raises(ValidationError):
        invoices.create_invoice(context=ADMIN, service_id=service.service_id)


@pytest.mark.parametrize(
    "first, second",
    [("completed", "active"), ("cancelled", "paused"), ("active", None)],
)
def test_illegal_status_moves_are_rejected(container, first, second):
    service = _hosting_service(container)
    catalog = container.service_catalog

    if second is None:
        with pytest.raises(ValidationError):
            catalog.update_service_status(context=ADMIN, service_id=service.service_id, status=first)
        return
    catalog.update_service_status(context=ADMIN, service_id=service.service_id, status=first)
    with pytest.raises(ValidationError):
        catalog.update_service_status(context=ADMIN, service_id=service.service_id, status=second)


def test_cancel_cannot_end_inside_an_invoiced_period(container):
    service = _hosting_service(container)
    container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)

    with pytest.raises(ValidationError):
        container.service_catalog.update_service_status(
            context=ADMIN, service_id=service.service_id, status="cancelled", effective_date="2024-02-20"
        )

    cancelled = container.service_catalog.update_service_status(
        context=ADMIN, service_id=service.service_id, status="cancelled", effective_date="2024-03-01"
    )
    assert cancelled.end_date == date(2024, 3, 1)


def test_staff_cannot_change_service_status(container):
    service = _hosting_service(container)

    with pytest.raises(AuthorizationError):
        container.service_catalog.update_service_status(context=STAFF, service_id=service.service_id, status="paused")


def test_delete_service_removes_its_history(container):
    service = _hosting_service(container)

    container.service_catalog.delete_service(context=ADMIN, service_id=service.service_id)

    with pytest.raises(NotFoundError):
        container.service_catalog.get_service(context=ADMIN, service_id=service.service_id)
    assert container.store.select("service_changes", {"service_id": service.service_id}) == []
    assert container.store.select("service_line_items", {"service_id": service.service_id}) == []


def test_invoiced_services_cannot_be_deleted(container):
    service = _hosting_service(container)
    container.invoice_service.create_invoice(context=ADMIN, service_id=service.service_id)

    with pytest.raises(ValidationError):
        container.service_catalog.delete_service(context=ADMIN, service_id=service.service_id)


def test_service_summary(container):
    catalog = container.service_catalog
    _hosting_service(container)
    _hosting_service(
        container,
        service_name="Backups",
        billing_cycle="quarterly",
        line_items=[{"item_key": "backup", "description": "Backups", "amount": "900"}],
    )
    paused = _hosting_service(container, service_name="Staging")
    catalog.update_service_status(context=ADMIN, service_id=paused.service_id, status="paused")
    _hosting_service(container, stakeholder_id=8, service_name="Other stakeholder")

    summary = catalog.service_summary(context=STAFF, stakeholder_id=7)

    assert summary.total_services == 3
    assert summary.active_services == 2
    assert summary.paused_services == 1
    assert summary.ended_services == 0
    assert summary.monthly_recurring == {"BDT": Decimal("600.00")}
    assert catalog.service_summary(context=STAFF).total_services == 4
