from __future__ import annotations

from datetime import date
from typing import Optional, Protocol, Sequence

from ..core.enums import InvoiceStatus
from .model import Invoice, InvoiceSettings, Payment


class InvoiceRepository(Protocol):
    def get_by_id(self, *, company_id: int, invoice_id: int) -> Optional[Invoice]:
        """Invoice with its line items, or None."""

        raise NotImplementedError

    def find_for_period(self, *, company_id: int, service_id: int, period_start: date) -> Optional[Invoice]:
        """The non-cancelled invoice billing ``period_start`` for a service, if any."""

        raise NotImplementedError

    def list_invoices(
        self,
        *,
        company_id: int,
        service_id: Optional[int] = None,
        stakeholder_id: Optional[int] = None,
        statuses: Optional[Sequence[InvoiceStatus]] = None,
        limit: Optional[int] = None,
    ) -> Sequence[Invoice]:
        raise NotImplementedError

    def create(self, *, invoice: Invoice, created_by: int) -> int:
        """Insert the invoice and its line items; ``invoice.invoice_id`` is ignored."""

        raise NotImplementedError

    def save_state(self, *, invoice: Invoice, expected_version: int) -> bool:
        """Persist status/payment fields with compare-and-swap on ``version``."""

        raise NotImplementedError

    def delete(self, *, invoice: Invoice) -> bool:
        raise NotImplementedError

    # Payments
    def list_payments(self, *, company_id: int, invoice_id: int) -> Sequence[Payment]:
        raise NotImplementedError

    def get_payment(self, *, company_id: int, payment_id: int) -> Optional[Payment]:
        raise NotImplementedError

    def add_payment(self, *, payment: Payment) -> int:
        raise NotImplementedError

    # Company settings & numbering
    def get_settings(self, *, company_id: int) -> InvoiceSettings:
        raise NotImplementedError

    def save_settings(self, *, settings: InvoiceSettings) -> InvoiceSettings:
        """Insert or update the company row."""

        raise NotImplementedError

    def next_sequence(self, *, company_id: int, sequence_date: date) -> int:
        raise NotImplementedError
