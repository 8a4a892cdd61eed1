from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Optional, Sequence

from ..common.datetime_utils import coerce_date
from ..core.enums import InvoiceStatus, LineTag, PaymentMethod
from ..core.exceptions import ConcurrentUpdateError
from ..database.record_store import RecordStore, Row
from .model import Invoice, InvoiceLineItem, InvoiceSettings, Payment
from .repository import InvoiceRepository

INVOICES = "service_invoices"
INVOICE_LINES = "invoice_line_items"
PAYMENTS = "invoice_payments"
SETTINGS = "company_invoice_settings"
SEQUENCES = "invoice_sequences"


def _money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _to_line(r: Row) -> InvoiceLineItem:
    return InvoiceLineItem(
        line_id=int(r["id"]),
        item_order=int(r["item_order"]),
        item_key=r["item_key"],
        description=r["description"],
        quantity=int(r["quantity"]),
        unit_price=_money(r["unit_price"]),
        base_amount=_money(r["base_amount"]),
        amount=_money(r["amount"]),
        tag=LineTag(r["tag"]),
        pro_rata_days=int(r["pro_rata_days"]),
        pro_rata_total_days=int(r["pro_rata_total_days"]),
        period_start=coerce_date(r["period_start"], "period_start"),
        period_end=coerce_date(r["period_end"], "period_end"),
    )


def _to_payment(r: Row) -> Payment:
    return Payment(
        payment_id=int(r["id"]),
        invoice_id=int(r["invoice_id"]),
        company_id=int(r["company_id"]),
        amount=_money(r["amount"]),
        paid_at=r["paid_at"],
        method=PaymentMethod(r["method"]),
        reference=r.get("reference"),
        reverses_payment_id=r.get("reverses_payment_id"),
        created_by=r.get("created_by"),
    )


class StoreInvoiceRepository(InvoiceRepository):
    def __init__(self, store: RecordStore):
        self._store = store

    def _to_invoice(self, r: Row) -> Invoice:
        rows = self._store.select(INVOICE_LINES, {"invoice_id": int(r["id"])}, order_by=("item_order",))
        lines = tuple(_to_line(x) for x in rows)
        return Invoice(
            invoice_id=int(r["id"]),
            company_id=int(r["company_id"]),
            service_id=int(r["service_id"]),
            stakeholder_id=int(r["stakeholder_id"]),
            invoice_number=r["invoice_number"],
            period_start=coerce_date(r["period_start"], "period_start"),
            period_end=coerce_date(r["period_end"], "period_end"),
            currency=r["currency"],
            subtotal=_money(r["subtotal"]),
            tax_rate=_money(r.get("tax_rate")),
            tax_amount=_money(r.get("tax_amount")),
            total_amount=_money(r["total_amount"]),
            paid_amount=_money(r.get("paid_amount")),
            status=InvoiceStatus(r["status"]),
            invoice_date=coerce_date(r["invoice_date"], "invoice_date"),
            due_date=coerce_date(r["due_date"], "due_date"),
            paid_at=r.get("paid_at"),
            sent_at=r.get("sent_at"),
            sent_by=r.get("sent_by"),
            cancelled_at=r.get("cancelled_at"),
            notes=r.get("notes"),
            line_items=lines,
            version=int(r.get("version") or 1),
        )

    def get_by_id(self, *, company_id: int, invoice_id: int) -> Optional[Invoice]:
        r = self._store.get(INVOICES, {"id": int(invoice_id), "company_id": int(company_id)})
        return self._to_invoice(r) if r else None

    def find_for_period(self, *, company_id: int, service_id: int, period_start: date) -> Optional[Invoice]:
        open_statuses = [s.value for s in InvoiceStatus if s != InvoiceStatus.CANCELLED]
        r = self._store.get(
            INVOICES,
            {
                "company_id": int(company_id),
                "service_id": int(service_id),
                "period_start": period_start,
                "status": open_statuses,
            },
        )
        return self._to_invoice(r) if r else None

    def list_invoices(
        self,
        *,
        company_id: int,
        service_id: Optional[int] = None,
        stakeholder_id: Optional[int] = None,
        statuses: Optional[Sequence[InvoiceStatus]] = None,
        limit: Optional[int] = None,
    ) -> Sequence[Invoice]:
        filters = {"company_id": int(company_id)}
        if service_id:
            filters["service_id"] = int(service_id)
        if stakeholder_id:
            filters["stakeholder_id"] = int(stakeholder_id)
        if statuses:
            filters["status"] = [s.value for s in statuses]
        rows = self._store.select(INVOICES, filters, order_by=("-invoice_date", "-id"), limit=limit)
        return [self._to_invoice(r) for r in rows]

    def create(self, *, invoice: Invoice, created_by: int) -> int:
        invoice_id = self._store.insert(
            INVOICES,
            {
                "company_id": invoice.company_id,
                "service_id": invoice.service_id,
                "stakeholder_id": invoice.stakeholder_id,
                "invoice_number": invoice.invoice_number,
                "period_start": invoice.period_start,
                "period_end": invoice.period_end,
                "currency": invoice.currency,
                "subtotal": invoice.subtotal,
                "tax_rate": invoice.tax_rate,
                "tax_amount": invoice.tax_amount,
                "total_amount": invoice.total_amount,
                "paid_amount": invoice.paid_amount,
                "status": invoice.status.value,
                "invoice_date": invoice.invoice_date,
                "due_date": invoice.due_date,
                "notes": invoice.notes,
                "created_by": int(created_by),
                "version": 1,
            },
        )
        for line in invoice.line_items:
            self._store.insert(
                INVOICE_LINES,
                {
                    "company_id": invoice.company_id,
                    "invoice_id": invoice_id,
                    "item_order": line.item_order,
                    "item_key": line.item_key,
                    "description": line.description,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                    "base_amount": line.base_amount,
                    "amount": line.amount,
                    "tag": line.tag.value,
                    "pro_rata_days": line.pro_rata_days,
                    "pro_rata_total_days": line.pro_rata_total_days,
                    "period_start": line.period_start,
                    "period_end": line.period_end,
                },
            )
        return invoice_id

    def save_state(self, *, invoice: Invoice, expected_version: int) -> bool:
        changed = self._store.update(
            INVOICES,
            {
                "status": invoice.status.value,
                "paid_amount": invoice.paid_amount,
                "paid_at": invoice.paid_at,
                "sent_at": invoice.sent_at,
                "sent_by": invoice.sent_by,
                "cancelled_at": invoice.cancelled_at,
            },
            {"id": invoice.invoice_id, "company_id": invoice.company_id},
            expected_version=expected_version,
        )
        return changed > 0

    def delete(self, *, invoice: Invoice) -> bool:
        self._store.delete(INVOICE_LINES, {"invoice_id": invoice.invoice_id})
        return self._store.delete(INVOICES, {"id": invoice.invoice_id, "company_id": invoice.company_id}) > 0

    def list_payments(self, *, company_id: int, invoice_id: int) -> Sequence[Payment]:
        rows = self._store.select(
            PAYMENTS,
            {"company_id": int(company_id), "invoice_id": int(invoice_id)},
            order_by=("paid_at", "id"),
        )
        return [_to_payment(r) for r in rows]

    def get_payment(self, *, company_id: int, payment_id: int) -> Optional[Payment]:
        r = self._store.get(PAYMENTS, {"id": int(payment_id), "company_id": int(company_id)})
        return _to_payment(r) if r else None

    def add_payment(self, *, payment: Payment) -> int:
        return self._store.insert(
            PAYMENTS,
            {
                "company_id": payment.company_id,
                "invoice_id": payment.invoice_id,
                "amount": payment.amount,
                "paid_at": payment.paid_at,
                "method": payment.method.value,
                "reference": payment.reference,
                "reverses_payment_id": payment.reverses_payment_id,
                "created_by": payment.created_by,
            },
        )

    def get_settings(self, *, company_id: int) -> InvoiceSettings:
        r = self._store.get(SETTINGS, {"company_id": int(company_id)})
        if not r:
            return InvoiceSettings(company_id=int(company_id))
        return InvoiceSettings(
            company_id=int(r["company_id"]),
            invoice_prefix=r["invoice_prefix"],
            default_payment_terms_days=int(r["default_payment_terms_days"]),
            default_currency=r["default_currency"],
            default_tax_rate=_money(r.get("default_tax_rate")),
        )

    def save_settings(self, *, settings: InvoiceSettings) -> InvoiceSettings:
        values = {
            "invoice_prefix": settings.invoice_prefix,
            "default_payment_terms_days": int(settings.default_payment_terms_days),
            "default_currency": settings.default_currency,
            "default_tax_rate": settings.default_tax_rate,
        }
        key = {"company_id": int(settings.company_id)}
        if self._store.get(SETTINGS, key):
            self._store.update(SETTINGS, values, key)
        else:
            self._store.insert(SETTINGS, {**key, **values})
        return self.get_settings(company_id=settings.company_id)

    def next_sequence(self, *, company_id: int, sequence_date: date) -> int:
        filters = {"company_id": int(company_id), "sequence_date": sequence_date}
        r = self._store.get(SEQUENCES, filters)
        if not r:
            self._store.insert(SEQUENCES, {**filters, "last_sequence": 1, "version": 1})
            return 1
        nxt = int(r["last_sequence"]) + 1
        if not self._store.update(SEQUENCES, {"last_sequence": nxt}, filters, expected_version=int(r["version"])):
            raise ConcurrentUpdateError("Invoice numbering moved, please retry")
        return nxt
