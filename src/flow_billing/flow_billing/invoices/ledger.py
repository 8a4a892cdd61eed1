"""Invoice state machine.

    draft -> sent -> paid
                  -> overdue -> paid
    draft -> paid                         (sent with nothing left to collect)
    draft | sent | overdue -> cancelled   (only while no payment is recorded)

Paid and cancelled are terminal. ``transition_invoice`` is pure: it returns a
new Invoice or raises a TransitionError subtype, and never coerces state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Optional, Sequence

from ..billing.calculator.standard_calculator import round_money
from ..core.enums import InvoiceAction, InvoiceStatus
from ..core.exceptions import CannotCancelPaidInvoiceError, InsufficientLineItemsError, TransitionError
from .model import Invoice, Payment


@dataclass(frozen=True)
class TransitionContext:
    now: datetime
    actor_id: Optional[int] = None
    payments: Sequence[Payment] = ()

    @property
    def paid_total(self) -> Decimal:
        return round_money(sum((p.amount for p in self.payments), Decimal("0")))


def is_overdue(invoice: Invoice, now: datetime) -> bool:
    return (
        invoice.status in (InvoiceStatus.SENT, InvoiceStatus.OVERDUE)
        and now.date() > invoice.due_date
        and not invoice.is_settled
    )


def _require(invoice: Invoice, action: InvoiceAction, *allowed: InvoiceStatus) -> None:
    if invoice.status not in allowed:
        final = " and final" if invoice.status.is_terminal else ""
        raise TransitionError(f"Cannot {action.value} an invoice that is {invoice.status.value}{final}")


def _send(invoice: Invoice, ctx: TransitionContext) -> Invoice:
    _require(invoice, InvoiceAction.SEND, InvoiceStatus.DRAFT)
    if not invoice.line_items:
        raise InsufficientLineItemsError("An invoice needs at least one line item before it is sent")
    sent = replace(invoice, status=InvoiceStatus.SENT, sent_at=ctx.now, sent_by=ctx.actor_id)
    if sent.is_settled:
        # Nothing to collect, e.g. a zero total after credits.
        return replace(sent, status=InvoiceStatus.PAID, paid_amount=ctx.paid_total, paid_at=ctx.now)
    return sent


def _record_payment(invoice: Invoice, ctx: TransitionContext) -> Invoice:
    _require(invoice, InvoiceAction.RECORD_PAYMENT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE)
    paid = ctx.paid_total
    if paid >= invoice.total_amount:
        return replace(invoice, status=InvoiceStatus.PAID, paid_amount=paid, paid_at=ctx.now)
    return replace(invoice, paid_amount=paid)


def _mark_overdue(invoice: Invoice, ctx: TransitionContext) -> Invoice:
    _require(invoice, InvoiceAction.MARK_OVERDUE, InvoiceStatus.SENT)
    if not is_overdue(invoice, ctx.now):
        raise TransitionError(f"Invoice {invoice.invoice_number} is not past its due date {invoice.due_date}")
    return replace(invoice, status=InvoiceStatus.OVERDUE)


def _cancel(invoice: Invoice, ctx: TransitionContext) -> Invoice:
    if invoice.status == InvoiceStatus.PAID:
        raise CannotCancelPaidInvoiceError(f"Invoice {invoice.invoice_number} is paid and cannot be cancelled")
    _require(invoice, InvoiceAction.CANCEL, InvoiceStatus.DRAFT, InvoiceStatus.SENT, InvoiceStatus.OVERDUE)
    if ctx.payments:
        raise CannotCancelPaidInvoiceError(
            f"Invoice {invoice.invoice_number} has {len(ctx.payments)} payment(s) recorded"
        )
    return replace(invoice, status=InvoiceStatus.CANCELLED, cancelled_at=ctx.now)


_HANDLERS: Dict[InvoiceAction, Callable[[Invoice, TransitionContext], Invoice]] = {
    InvoiceAction.SEND: _send,
    InvoiceAction.RECORD_PAYMENT: _record_payment,
    InvoiceAction.MARK_OVERDUE: _mark_overdue,
    InvoiceAction.CANCEL: _cancel,
}


def transition_invoice(invoice: Invoice, action: InvoiceAction | str, context: TransitionContext) -> Invoice:
    try:
        action = InvoiceAction(action)
    except ValueError:
        raise TransitionError(f"Unknown invoice action: {action!r}")
    return _HANDLERS[action](invoice, context)
