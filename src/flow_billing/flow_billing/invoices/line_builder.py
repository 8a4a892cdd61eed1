"""Turns a service's line-item history for one billing period into invoice lines.

The period is partitioned at each change event's effective date (sorted
ascending, ties kept in insertion order). Every line item is clamped to the
period: full coverage bills the full amount, partial coverage is prorated on
the 30-day axis of ``BillingPeriod.offset_of``. Each rate is rounded once per
line, so a repricing on day k bills ``A*k/30`` and ``B*(30-k)/30`` as two
separate lines instead of one blended rate.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..billing.calculator.base import ProRataCalculator
from ..billing.calculator.standard_calculator import StandardProRataCalculator, round_money
from ..billing.model import BillingPeriod
from ..common.validators import require_decimal, require_non_empty
from ..core.constants import STANDARD_BILLING_PERIOD_DAYS
from ..core.enums import ChangeType, LineTag
from ..core.exceptions import InconsistentBillingStateError, ValidationError
from ..services.model import ChangeEvent, ServiceLineItem
from .model import InvoiceLineItem

_EventIndex = Dict[Tuple[str, date], Tuple[int, ChangeEvent]]


class ServiceInvoiceLineBuilder:
    def __init__(self, calculator: Optional[ProRataCalculator] = None):
        self._calculator = calculator or StandardProRataCalculator()

    def build(
        self,
        service_line_items: Iterable[ServiceLineItem],
        change_events: Iterable[ChangeEvent],
        period: BillingPeriod,
    ) -> List[InvoiceLineItem]:
        items = list(service_line_items)
        self._check_items(items, period)
        events = self._index_events(change_events, period)
        self._check_events(items, events, period)

        drafts = []
        for position, item in enumerate(items):
            start = max(item.effective_from, period.start)
            end = period.end if item.effective_to is None else min(item.effective_to, period.end)
            if start >= end:
                continue

            start_offset = period.offset_of(start)
            days = period.offset_of(end) - start_offset
            if days <= 0:
                continue

            start_event = events.get((item.item_key, start)) if start > period.start else None
            end_event = events.get((item.item_key, end)) if end < period.end else None
            full = start == period.start and end == period.end

            details = self._calculator.compute(item.line_total, days)
            line = InvoiceLineItem(
                item_order=0,
                item_key=item.item_key,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.amount,
                base_amount=round_money(item.line_total),
                amount=details.prorated_amount,
                tag=LineTag.REGULAR if full else self._tag(start_event, end_event),
                pro_rata_days=details.days_active,
                pro_rata_total_days=details.period_length,
                period_start=start,
                period_end=end,
            )
            start_rank = start_event[0] if start_event else -1
            drafts.append(((start_offset, start_rank, position), line))

        drafts.sort(key=lambda d: d[0])
        return [replace(line, item_order=index) for index, (_, line) in enumerate(drafts)]

    @staticmethod
    def _tag(start_event: Optional[Tuple[int, ChangeEvent]], end_event: Optional[Tuple[int, ChangeEvent]]) -> LineTag:
        if start_event:
            return LineTag.NEW if start_event[1].change_type == ChangeType.ADDED else LineTag.PRORATION
        if end_event:
            return LineTag.FINAL_PARTIAL if end_event[1].change_type == ChangeType.REMOVED else LineTag.PRORATION
        return LineTag.PRORATION

    @staticmethod
    def _check_items(items: Sequence[ServiceLineItem], period: BillingPeriod) -> None:
        by_key: Dict[str, List[ServiceLineItem]] = defaultdict(list)
        for item in items:
            if item.effective_to is not None and item.effective_to < item.effective_from:
                raise InconsistentBillingStateError(
                    f"Line item {item.item_key!r} ends ({item.effective_to}) before it starts ({item.effective_from})"
                )
            if item.billing_cycle != period.cycle:
                raise InconsistentBillingStateError(
                    f"Line item {item.item_key!r} is billed {item.billing_cycle.value}, period is {period.cycle.value}"
                )
            by_key[item.item_key].append(item)

        for key, group in by_key.items():
            group = sorted(group, key=lambda i: i.effective_from)
            for before, after in zip(group, group[1:]):
                if before.effective_to is None or before.effective_to > after.effective_from:
                    raise InconsistentBillingStateError(
                        f"Line items for {key!r} overlap from {after.effective_from}"
                    )

    @staticmethod
    def _index_events(change_events: Iterable[ChangeEvent], period: BillingPeriod) -> _EventIndex:
        in_period = [
            e for e in change_events if e.change_type.is_line_item_change and period.contains(e.effective_date)
        ]
        # sorted() is stable, so same-day events keep their insertion order.
        in_period = sorted(in_period, key=lambda e: e.effective_date)

        index: _EventIndex = {}
        for rank, event in enumerate(in_period):
            slot = (event.item_key, event.effective_date)
            if slot not in index:
                index[slot] = (rank, event)
                continue
            first_rank, first = index[slot]
            if first.change_type == ChangeType.REMOVED and event.change_type == ChangeType.ADDED:
                # Removed and re-added on the same day reads as a repricing.
                index[slot] = (
                    first_rank,
                    replace(event, change_type=ChangeType.MODIFIED, old_amount=first.old_amount),
                )
                continue
            raise InconsistentBillingStateError(
                f"Conflicting changes for {event.item_key!r} on {event.effective_date}"
            )
        return index

    @staticmethod
    def _check_events(items: Sequence[ServiceLineItem], events: _EventIndex, period: BillingPeriod) -> None:
        starts = {(i.item_key, i.effective_from) for i in items}
        ends = {(i.item_key, i.effective_to) for i in items if i.effective_to is not None}

        expected = {
            ChangeType.ADDED: (True, False),
            ChangeType.REMOVED: (False, True),
            ChangeType.MODIFIED: (True, True),
        }
        for slot, (_, event) in events.items():
            if (slot in starts, slot in ends) != expected[event.change_type]:
                raise InconsistentBillingStateError(
                    f"Change {event.change_type.value!r} for {event.item_key!r} on {event.effective_date} "
                    "does not match the line item history"
                )

        for slot in starts | ends:
            boundary = slot[1]
            if period.start < boundary < period.end and slot not in events:
                raise InconsistentBillingStateError(
                    f"Line item {slot[0]!r} changes on {boundary} without a recorded change"
                )


def build_invoice_lines(
    service_line_items: Iterable[ServiceLineItem],
    change_events: Iterable[ChangeEvent],
    period: BillingPeriod,
) -> List[InvoiceLineItem]:
    return ServiceInvoiceLineBuilder().build(service_line_items, change_events, period)


def summarize_lines(lines: Iterable[InvoiceLineItem], tax_rate: Decimal) -> Tuple[Decimal, Decimal, Decimal]:
    """(subtotal, tax_amount, total_amount); tax is a percentage rounded once."""
    subtotal = round_money(sum((li.amount for li in lines), Decimal("0")))
    tax_amount = round_money(subtotal * Decimal(tax_rate) / 100)
    return subtotal, tax_amount, subtotal + tax_amount


def clip_to_end_date(
    service_line_items: Iterable[ServiceLineItem],
    change_events: Iterable[ChangeEvent],
    end_date: date,
) -> Tuple[List[ServiceLineItem], List[ChangeEvent]]:
    """History as if every item still open on ``end_date`` was removed that day.

    Rows starting on or after the end date and changes dated from it on are
    dropped, so a service with an end date bills a final partial period and
    nothing after it.
    """
    items: List[ServiceLineItem] = []
    events = [e for e in change_events if e.change_type.is_line_item_change and e.effective_date < end_date]
    for item in service_line_items:
        if item.effective_from >= end_date:
            continue
        if item.effective_to is None or item.effective_to >= end_date:
            item = replace(item, effective_to=end_date)
            events.append(
                ChangeEvent(
                    change_type=ChangeType.REMOVED,
                    item_key=item.item_key,
                    effective_date=end_date,
                    old_amount=item.amount,
                )
            )
        items.append(item)
    return items, events


def adjustment_lines(
    adjustments: Iterable[Mapping[str, Any]],
    period: BillingPeriod,
    *,
    first_order: int = 0,
) -> List[InvoiceLineItem]:
    """Manual one-off lines; a negative amount is a credit."""
    lines = []
    for n, data in enumerate(adjustments, start=1):
        amount = round_money(require_decimal(data.get("amount"), "adjustment amount"))
        if amount == 0:
            raise ValidationError("adjustment amount cannot be zero")
        lines.append(
            InvoiceLineItem(
                item_order=first_order + n - 1,
                item_key=f"adjustment-{n}",
                description=require_non_empty(data.get("description"), "adjustment description"),
                quantity=1,
                unit_price=amount,
                base_amount=amount,
                amount=amount,
                tag=LineTag.ADJUSTMENT,
                pro_rata_days=STANDARD_BILLING_PERIOD_DAYS,
                period_start=period.start,
                period_end=period.end,
            )
        )
    return lines
