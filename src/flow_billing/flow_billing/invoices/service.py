from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from ..billing.calculator.standard_calculator import round_money
from ..billing.model import BillingPeriod
from ..common.datetime_utils import Clock, coerce_date, now_local
from ..common.validators import require_non_empty, require_non_negative
from ..core.constants import DEFAULT_LIST_LIMIT, INVOICE_SEQUENCE_WIDTH, MAX_INVOICE_PREFIX_LENGTH
from ..core.context import BillingContext
from ..core.enums import InvoiceAction, InvoiceStatus, PaymentMethod, ServiceStatus
from ..core.exceptions import (
    ConcurrentUpdateError,
    InsufficientLineItemsError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from ..notifications import dispatcher as events
from ..notifications.dispatcher import LoggingNotificationDispatcher, NotificationDispatcher, notify_safely
from ..services.model import StakeholderService
from ..unit_of_work import BillingRepositories, UnitOfWork
from .ledger import TransitionContext, is_overdue, transition_invoice
from .line_builder import ServiceInvoiceLineBuilder, adjustment_lines, clip_to_end_date, summarize_lines
from .model import Invoice, InvoicePreview, InvoiceSettings, InvoiceSummary, Payment

logger = logging.getLogger(__name__)


def format_invoice_number(prefix: str, invoice_date: date, sequence: int) -> str:
    return f"{prefix}-{invoice_date:%Y-%m-%d}-{sequence:0{INVOICE_SEQUENCE_WIDTH}d}"


def _parse_statuses(status: Union[str, InvoiceStatus, Iterable[Any], None]) -> Optional[List[InvoiceStatus]]:
    if status is None or status == "":
        return None
    values = [status] if isinstance(status, (str, InvoiceStatus)) else list(status)
    try:
        return [InvoiceStatus(v) for v in values]
    except ValueError:
        raise ValidationError(f"Unknown invoice status: {status!r}")


class InvoiceService:
    """Invoice generation and the invoice / payment lifecycle.

    Every state change goes through ``transition_invoice`` and is written back
    with a compare-and-swap on the invoice version. Notifications go out after
    the transaction commits and never fail the operation.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        *,
        clock: Clock = now_local,
        notifier: Optional[NotificationDispatcher] = None,
        line_builder: Optional[ServiceInvoiceLineBuilder] = None,
    ):
        self._uow = uow
        self._clock = clock
        self._notifier = notifier or LoggingNotificationDispatcher()
        self._line_builder = line_builder or ServiceInvoiceLineBuilder()

    # Loading
    @staticmethod
    def _load_service(repos: BillingRepositories, context: BillingContext, service_id: int) -> StakeholderService:
        service = repos.services.get_by_id(company_id=context.company_id, service_id=int(service_id))
        if not service:
            raise NotFoundError(f"Service {service_id} not found")
        return service

    @staticmethod
    def _load_invoice(repos: BillingRepositories, context: BillingContext, invoice_id: int) -> Invoice:
        invoice = repos.invoices.get_by_id(company_id=context.company_id, invoice_id=int(invoice_id))
        if not invoice:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        return invoice

    @staticmethod
    def _save(repos: BillingRepositories, before: Invoice, after: Invoice) -> None:
        if not repos.invoices.save_state(invoice=after, expected_version=before.version):
            raise ConcurrentUpdateError(f"Invoice {before.invoice_number} was changed by someone else, please retry")

    def _notify(self, event: str, invoice: Invoice, **extra: Any) -> None:
        payload = {
            "company_id": invoice.company_id,
            "invoice_id": invoice.invoice_id,
            "invoice_number": invoice.invoice_number,
            "stakeholder_id": invoice.stakeholder_id,
            "status": invoice.status.value,
            "total_amount": str(invoice.total_amount),
            **extra,
        }
        notify_safely(self._notifier, event, payload)

    @staticmethod
    def _next_period(service: StakeholderService, period_start: Optional[date]) -> BillingPeriod:
        if period_start is not None:
            return BillingPeriod.starting(period_start, service.billing_cycle)
        if service.last_billed_date is None or service.next_billing_date is None:
            return BillingPeriod.containing(service.start_date, service.billing_day, service.billing_cycle)
        return BillingPeriod.starting(service.next_billing_date, service.billing_cycle)

    def _preview(self, repos: BillingRepositories, service: StakeholderService, period: BillingPeriod) -> InvoicePreview:
        items = repos.services.list_line_items(company_id=service.company_id, service_id=service.service_id)
        changes = repos.services.list_changes(company_id=service.company_id, service_id=service.service_id)
        if service.end_date is not None:
            items, changes = clip_to_end_date(items, changes, service.end_date)
        lines = self._line_builder.build(items, changes, period)
        subtotal, tax_amount, total = summarize_lines(lines, service.tax_rate)
        return InvoicePreview(
            service_id=service.service_id,
            period=period,
            currency=service.currency,
            tax_rate=service.tax_rate,
            subtotal=subtotal,
            tax_amount=tax_amount,
            total_amount=total,
            line_items=tuple(lines),
        )

    @staticmethod
    def _rewind_billing_dates(repos: BillingRepositories, invoice: Invoice) -> None:
        """Give the period back to the service when its latest invoice goes away."""
        service = repos.services.get_by_id(company_id=invoice.company_id, service_id=invoice.service_id)
        if not service or service.next_billing_date != invoice.period_end:
            return
        earlier = [
            inv.period_start
            for inv in repos.invoices.list_invoices(company_id=invoice.company_id, service_id=invoice.service_id)
            if inv.invoice_id != invoice.invoice_id
            and inv.status != InvoiceStatus.CANCELLED
            and inv.period_start < invoice.period_start
        ]
        ok = repos.services.update_billing_dates(
            service=service,
            last_billed_date=max(earlier) if earlier else None,
            next_billing_date=invoice.period_start,
        )
        if not ok:
            raise ConcurrentUpdateError(f"Service {service.service_id} was changed by someone else, please retry")

    # Generation
    def preview_invoice(
        self,
        *,
        context: BillingContext,
        service_id: int,
        period_start: Union[date, str, None] = None,
    ) -> InvoicePreview:
        repos = self._uow.repositories()
        service = self._load_service(repos, context, service_id)
        period = self._next_period(service, coerce_date(period_start, "period_start"))
        return self._preview(repos, service, period)

    def create_invoice(
        self,
        *,
        context: BillingContext,
        service_id: int,
        period_start: Union[date, str, None] = None,
        invoice_date: Union[date, str, None] = None,
        payment_terms_days: Optional[int] = None,
        notes: Optional[str] = None,
        adjustments: Sequence[Mapping[str, Any]] = (),
    ) -> Invoice:
        """Draft invoice for the service's next (or the given) billing period.

        ``adjustments`` are one-off lines (``description``, ``amount``) added
        after the computed charges; a negative amount is a credit. Cancelled and
        completed services are still invoiced up to their end date.
        """
        context.require_admin()
        issued_on = coerce_date(invoice_date, "invoice_date") or self._clock().date()
        if payment_terms_days is not None and int(payment_terms_days) < 0:
            raise ValidationError("payment_terms_days cannot be negative")

        with self._uow.begin() as repos:
            service = self._load_service(repos, context, service_id)
            if service.status == ServiceStatus.PAUSED:
                raise ValidationError("Service is paused; resume it before invoicing")
            period = self._next_period(service, coerce_date(period_start, "period_start"))
            if service.end_date is not None and period.start >= service.end_date:
                raise ValidationError(f"Service ended on {service.end_date}; nothing to bill from {period.start}")

            existing = repos.invoices.find_for_period(
                company_id=context.company_id, service_id=service.service_id, period_start=period.start
            )
            if existing:
                raise ValidationError(
                    f"Service {service.service_id} already has invoice {existing.invoice_number} for {period.start}"
                )

            preview = self._preview(repos, service, period)
            if not preview.line_items:
                raise InsufficientLineItemsError(f"Nothing to bill for {period.start} - {period.end}")
            if adjustments:
                lines = preview.line_items + tuple(
                    adjustment_lines(adjustments, period, first_order=len(preview.line_items))
                )
                subtotal, tax_amount, total = summarize_lines(lines, service.tax_rate)
                if subtotal < 0:
                    raise ValidationError(f"Adjustments bring the subtotal below zero ({subtotal})")
                preview = replace(
                    preview, line_items=lines, subtotal=subtotal, tax_amount=tax_amount, total_amount=total
                )

            settings = repos.invoices.get_settings(company_id=context.company_id)
            terms = settings.default_payment_terms_days if payment_terms_days is None else int(payment_terms_days)
            sequence = repos.invoices.next_sequence(company_id=context.company_id, sequence_date=issued_on)
            draft = Invoice(
                invoice_id=0,
                company_id=context.company_id,
                service_id=service.service_id,
                stakeholder_id=service.stakeholder_id,
                invoice_number=format_invoice_number(settings.invoice_prefix, issued_on, sequence),
                period_start=period.start,
                period_end=period.end,
                currency=preview.currency,
                subtotal=preview.subtotal,
                tax_rate=preview.tax_rate,
                tax_amount=preview.tax_amount,
                total_amount=preview.total_amount,
                status=InvoiceStatus.DRAFT,
                invoice_date=issued_on,
                due_date=issued_on + timedelta(days=terms),
                line_items=preview.line_items,
                notes=(notes or "").strip() or None,
            )
            invoice_id = repos.invoices.create(invoice=draft, created_by=context.user_id)

            advances = service.next_billing_date is None or service.last_billed_date is None
            advances = advances or period.end > service.next_billing_date
            ok = repos.services.update_billing_dates(
                service=service,
                last_billed_date=period.start if advances else service.last_billed_date,
                next_billing_date=period.end if advances else service.next_billing_date,
            )
            if not ok:
                raise ConcurrentUpdateError(f"Service {service.service_id} was changed by someone else, please retry")
            invoice = self._load_invoice(repos, context, invoice_id)

        logger.info(
            "Created invoice %s for service %s (%s - %s, total %s)",
            invoice.invoice_number, service.service_id, period.start, period.end, invoice.total_amount,
        )
        self._notify(events.INVOICE_CREATED, invoice)
        return invoice

    # Queries
    def get_invoice(self, *, context: BillingContext, invoice_id: int) -> Invoice:
        return self._load_invoice(self._uow.repositories(), context, invoice_id)

    def list_invoices(
        self,
        *,
        context: BillingContext,
        service_id: Optional[int] = None,
        stakeholder_id: Optional[int] = None,
        status: Union[str, InvoiceStatus, Iterable[Any], None] = None,
        limit: Optional[int] = DEFAULT_LIST_LIMIT,
    ) -> Sequence[Invoice]:
        return self._uow.repositories().invoices.list_invoices(
            company_id=context.company_id,
            service_id=service_id,
            stakeholder_id=stakeholder_id,
            statuses=_parse_statuses(status),
            limit=limit,
        )

    def list_payments(self, *, context: BillingContext, invoice_id: int) -> Sequence[Payment]:
        repos = self._uow.repositories()
        invoice = self._load_invoice(repos, context, invoice_id)
        return repos.invoices.list_payments(company_id=context.company_id, invoice_id=invoice.invoice_id)

    def invoice_summary(
        self,
        *,
        context: BillingContext,
        service_id: Optional[int] = None,
        stakeholder_id: Optional[int] = None,
    ) -> InvoiceSummary:
        """Totals over non-cancelled invoices."""
        now = self._clock()
        invoices = [
            inv
            for inv in self._uow.repositories().invoices.list_invoices(
                company_id=context.company_id, service_id=service_id, stakeholder_id=stakeholder_id
            )
            if inv.status != InvoiceStatus.CANCELLED
        ]
        total = sum((inv.total_amount for inv in invoices), Decimal("0.00"))
        paid = sum((inv.paid_amount for inv in invoices), Decimal("0.00"))
        outstanding = sum((inv.outstanding_amount for inv in invoices), Decimal("0.00"))
        return InvoiceSummary(
            total_invoices=len(invoices),
            total_amount=round_money(total),
            paid_amount=round_money(paid),
            outstanding_amount=round_money(outstanding),
            overdue_count=sum(1 for inv in invoices if inv.status == InvoiceStatus.OVERDUE or is_overdue(inv, now)),
        )

    # Company settings
    def get_invoice_settings(self, *, context: BillingContext) -> InvoiceSettings:
        return self._uow.repositories().invoices.get_settings(company_id=context.company_id)

    def save_invoice_settings(
        self,
        *,
        context: BillingContext,
        invoice_prefix: Optional[str] = None,
        default_payment_terms_days: Any = None,
        default_currency: Optional[str] = None,
        default_tax_rate: Any = None,
    ) -> InvoiceSettings:
        """Update the given fields; anything left as None keeps its current value."""
        context.require_admin()
        with self._uow.begin() as repos:
            current = repos.invoices.get_settings(company_id=context.company_id)
            changes = {}
            if invoice_prefix is not None:
                prefix = require_non_empty(invoice_prefix, "invoice_prefix").upper()
                if len(prefix) > MAX_INVOICE_PREFIX_LENGTH or not prefix.isalnum():
                    raise ValidationError(
                        f"invoice_prefix must be 1-{MAX_INVOICE_PREFIX_LENGTH} letters or digits"
                    )
                changes["invoice_prefix"] = prefix
            if default_payment_terms_days is not None:
                try:
                    terms = int(default_payment_terms_days)
                except (TypeError, ValueError):
                    raise ValidationError("default_payment_terms_days must be a whole number")
                if terms < 0:
                    raise ValidationError("default_payment_terms_days cannot be negative")
                changes["default_payment_terms_days"] = terms
            if default_currency is not None:
                currency = require_non_empty(default_currency, "default_currency").upper()
                if len(currency) != 3 or not currency.isalpha():
                    raise ValidationError("default_currency must be a three-letter code")
                changes["default_currency"] = currency
            if default_tax_rate is not None:
                rate = require_non_negative(default_tax_rate, "default_tax_rate")
                if rate > 100:
                    raise ValidationError("default_tax_rate is a percentage between 0 and 100")
                changes["default_tax_rate"] = rate
            saved = repos.invoices.save_settings(settings=replace(current, **changes))

        logger.info("Invoice settings saved for company %s: %s", context.company_id, sorted(changes))
        return saved

    # Lifecycle
    def send_invoice(self, *, context: BillingContext, invoice_id: int) -> Invoice:
        context.require_admin()
        with self._uow.begin() as repos:
            invoice = self._load_invoice(repos, context, invoice_id)
            sent = transition_invoice(
                invoice, InvoiceAction.SEND, TransitionContext(now=self._clock(), actor_id=context.user_id)
            )
            self._save(repos, invoice, sent)
            sent = self._load_invoice(repos, context, invoice_id)

        logger.info("Invoice %s sent (%s)", sent.invoice_number, sent.status.value)
        self._notify(events.INVOICE_SENT, sent)
        if sent.status == InvoiceStatus.PAID:
            self._notify(events.INVOICE_PAID, sent)
        return sent

    def record_payment(
        self,
        *,
        context: BillingContext,
        invoice_id: int,
        amount: Any,
        method: Union[PaymentMethod, str] = PaymentMethod.CASH,
        paid_at: Optional[datetime] = None,
        reference: Optional[str] = None,
    ) -> Invoice:
        context.require_admin()
        value = round_money(require_non_negative(amount, "amount"))
        if value <= 0:
            raise ValidationError("amount must be greater than zero")
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise ValidationError(f"Unknown payment method: {method!r}")
        now = self._clock()

        with self._uow.begin() as repos:
            invoice = self._load_invoice(repos, context, invoice_id)
            payment = Payment(
                payment_id=0,
                invoice_id=invoice.invoice_id,
                company_id=context.company_id,
                amount=value,
                paid_at=paid_at or now,
                method=method,
                reference=(reference or "").strip() or None,
                created_by=context.user_id,
            )
            previous = repos.invoices.list_payments(company_id=context.company_id, invoice_id=invoice.invoice_id)
            updated = transition_invoice(
                invoice,
                InvoiceAction.RECORD_PAYMENT,
                TransitionContext(now=now, actor_id=context.user_id, payments=(*previous, payment)),
            )
            if value > invoice.outstanding_amount:
                raise ValidationError(f"Payment {value} exceeds the outstanding amount {invoice.outstanding_amount}")
            payment_id = repos.invoices.add_payment(payment=payment)
            self._save(repos, invoice, updated)
            updated = self._load_invoice(repos, context, invoice_id)

        logger.info(
            "Payment %s of %s recorded on invoice %s (%s)", payment_id, value, updated.invoice_number, updated.status.value
        )
        self._notify(events.PAYMENT_RECORDED, updated, payment_id=payment_id, amount=str(value))
        if updated.status == InvoiceStatus.PAID:
            self._notify(events.INVOICE_PAID, updated)
        return updated

    def reverse_payment(
        self,
        *,
        context: BillingContext,
        payment_id: int,
        reference: Optional[str] = None,
    ) -> Invoice:
        """Record a negative payment cancelling ``payment_id``; the original row stays."""
        context.require_admin()
        now = self._clock()

        with self._uow.begin() as repos:
            original = repos.invoices.get_payment(company_id=context.company_id, payment_id=int(payment_id))
            if not original:
                raise NotFoundError(f"Payment {payment_id} not found")
            if original.amount <= 0 or original.reverses_payment_id is not None:
                raise ValidationError("Only an original payment can be reversed")

            invoice = self._load_invoice(repos, context, original.invoice_id)
            previous = repos.invoices.list_payments(company_id=context.company_id, invoice_id=invoice.invoice_id)
            if any(p.reverses_payment_id == original.payment_id for p in previous):
                raise ValidationError(f"Payment {payment_id} is already reversed")

            reversal = replace(
                original,
                payment_id=0,
                amount=-original.amount,
                paid_at=now,
                reference=(reference or "").strip() or f"Reversal of payment {original.payment_id}",
                reverses_payment_id=original.payment_id,
                created_by=context.user_id,
            )
            updated = transition_invoice(
                invoice,
                InvoiceAction.RECORD_PAYMENT,
                TransitionContext(now=now, actor_id=context.user_id, payments=(*previous, reversal)),
            )
            reversal_id = repos.invoices.add_payment(payment=reversal)
            self._save(repos, invoice, updated)
            updated = self._load_invoice(repos, context, invoice.invoice_id)

        logger.info("Payment %s reversed by %s on invoice %s", payment_id, reversal_id, updated.invoice_number)
        self._notify(events.PAYMENT_REVERSED, updated, payment_id=reversal_id, reverses_payment_id=int(payment_id))
        return updated

    def cancel_invoice(self, *, context: BillingContext, invoice_id: int) -> Invoice:
        context.require_admin()
        with self._uow.begin() as repos:
            invoice = self._load_invoice(repos, context, invoice_id)
            payments = repos.invoices.list_payments(company_id=context.company_id, invoice_id=invoice.invoice_id)
            cancelled = transition_invoice(
                invoice,
                InvoiceAction.CANCEL,
                TransitionContext(now=self._clock(), actor_id=context.user_id, payments=payments),
            )
            self._save(repos, invoice, cancelled)
            self._rewind_billing_dates(repos, invoice)
            cancelled = self._load_invoice(repos, context, invoice_id)

        logger.info("Invoice %s cancelled", cancelled.invoice_number)
        self._notify(events.INVOICE_CANCELLED, cancelled)
        return cancelled

    def delete_draft_invoice(self, *, context: BillingContext, invoice_id: int) -> None:
        context.require_admin()
        with self._uow.begin() as repos:
            invoice = self._load_invoice(repos, context, invoice_id)
            if invoice.status != InvoiceStatus.DRAFT:
                raise TransitionError(f"Only draft invoices can be deleted; {invoice.invoice_number} is {invoice.status.value}")
            if not repos.invoices.delete(invoice=invoice):
                raise ConcurrentUpdateError(f"Invoice {invoice.invoice_number} was changed by someone else, please retry")
            self._rewind_billing_dates(repos, invoice)

        logger.info("Draft invoice %s deleted", invoice.invoice_number)

    def mark_overdue_invoices(self, *, context: BillingContext) -> List[Invoice]:
        """Move every sent invoice past its due date to overdue.

        Invoices that moved underneath us are skipped and picked up next run.
        """
        context.require_admin()
        now = self._clock()
        marked: List[Invoice] = []
        candidates = self._uow.repositories().invoices.list_invoices(
            company_id=context.company_id, statuses=[InvoiceStatus.SENT]
        )
        for candidate in candidates:
            if not is_overdue(candidate, now):
                continue
            try:
                with self._uow.begin() as repos:
                    invoice = self._load_invoice(repos, context, candidate.invoice_id)
                    overdue = transition_invoice(
                        invoice, InvoiceAction.MARK_OVERDUE, TransitionContext(now=now, actor_id=context.user_id)
                    )
                    self._save(repos, invoice, overdue)
                    marked.append(self._load_invoice(repos, context, candidate.invoice_id))
            except (ConcurrentUpdateError, TransitionError) as e:
                logger.warning("Skipped overdue check for invoice %s: %s", candidate.invoice_number, e)

        for invoice in marked:
            self._notify(events.INVOICE_OVERDUE, invoice)
        if marked:
            logger.info("Marked %d invoice(s) overdue for company %s", len(marked), context.company_id)
        return marked
