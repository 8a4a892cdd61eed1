"""Example: drive the billing services directly (no Flask).

Controllers are a thin layer; the billing rules live in the services. This
runs against the in-memory store, so no database is needed.
"""

from datetime import date, datetime

from src.flow_billing.flow_billing.container import build_container
from src.flow_billing.flow_billing.core.context import BillingContext
from src.flow_billing.flow_billing.core.enums import Role


def main():
    container = build_container(store_backend="memory", clock=lambda: datetime(2024, 3, 1, 9, 0))
    admin = BillingContext(company_id=1, user_id=1, role=Role.ADMIN)

    service = container.service_catalog.create_service(
        context=admin,
        stakeholder_id=7,
        service_name="Managed hosting",
        billing_cycle="monthly",
        billing_day=1,
        start_date=date(2024, 2, 1),
        line_items=[{"item_key": "hosting", "description": "Hosting plan", "amount": "300.00"}],
    )
    container.service_catalog.modify_line_item(
        context=admin,
        service_id=service.service_id,
        item_key="hosting",
        amount="450.00",
        effective_date=date(2024, 2, 16),
    )

    invoice = container.invoice_service.create_invoice(context=admin, service_id=service.service_id)
    print(invoice.invoice_number, invoice.total_amount)
    for line in invoice.line_items:
        print(f"  {line.tag.value:<10} {line.description} {line.pro_rata_days}/30 days -> {line.amount}")


if __name__ == "__main__":
    main()
