from datetime import date
from decimal import Decimal

import pytest

from src.flow_billing.flow_billing.billing.model import BillingPeriod
from src.flow_billing.flow_billing.core.enums import BillingCycle, ChangeType, LineTag
from src.flow_billing.flow_billing.core.exceptions import InconsistentBillingStateError, ValidationError
from src.flow_billing.flow_billing.invoices.line_builder import (
    adjustment_lines,
    build_invoice_lines,
    clip_to_end_date,
    summarize_lines,
)
from src.flow_billing.flow_billing.services.model import ChangeEvent, ServiceLineItem

FEB = BillingPeriod.starting(date(2024, 2, 1))


def _item(key, amount, start, end=None, *, item_id=1, quantity=1, cycle=BillingCycle.MONTHLY):
    return ServiceLineItem(
        line_item_id=item_id,
        service_id=1,
        item_key=key,
        description=key.title(),
        amount=Decimal(amount),
        quantity=quantity,
        billing_cycle=cycle,
        effective_from=start,
        effective_to=end,
    )


def _event(change_type, key, on):
    return ChangeEvent(change_type=change_type, item_key=key, effective_date=on)


def test_full_period_is_one_regular_line():
    lines = build_invoice_lines(
        [_item("hosting", "300", date(2024, 1, 1))],
        [_event(ChangeType.ADDED, "hosting", date(2024, 1, 1))],
        FEB,
    )

    assert len(lines) == 1
    assert lines[0].tag == LineTag.REGULAR
    assert lines[0].amount == Decimal("300.00")
    assert lines[0].pro_rata_days == 30
    assert (lines[0].period_start, lines[0].period_end) == (FEB.start, FEB.end)


def test_price_change_on_day_15_bills_two_prorated_lines():
    change_day = date(2024, 2, 16)
    lines = build_invoice_lines(
        [
            _item("hosting", "300", date(2024, 1, 1), change_day, item_id=1),
            _item("hosting", "450", change_day, item_id=2),
        ],
        [
            _event(ChangeType.ADDED, "hosting", date(2024, 1, 1)),
            _event(ChangeType.MODIFIED, "hosting", change_day),
        ],
        FEB,
    )

    assert [li.amount for li in lines] == [Decimal("150.00"), Decimal("225.00")]
    assert [li.tag for li in lines] == [LineTag.PRORATION, LineTag.PRORATION]
    assert [li.pro_rata_days for li in lines] == [15, 15]
    assert [li.item_order for li in lines] == [0, 1]
    assert sum(li.amount for li in lines) == Decimal("375.00")


def test_item_added_mid_period_is_new():
    added = date(2024, 2, 11)
    lines = build_invoice_lines(
        [_item("hosting", "300", FEB.start, item_id=1), _item("support", "60", added, item_id=2)],
        [_event(ChangeType.ADDED, "hosting", FEB.start), _event(ChangeType.ADDED, "support", added)],
        FEB,
    )

    assert [li.item_key for li in lines] == ["hosting", "support"]
    support = lines[1]
    assert support.tag == LineTag.NEW
    assert support.pro_rata_days == 20
    assert support.amount == Decimal("40.00")
    assert support.period_start == added


def test_item_removed_mid_period_is_final_partial():
    removed = date(2024, 2, 21)
    lines = build_invoice_lines(
        [_item("hosting", "300", date(2024, 1, 1), removed)],
        [_event(ChangeType.ADDED, "hosting", date(2024, 1, 1)), _event(ChangeType.REMOVED, "hosting", removed)],
        FEB,
    )

    assert len(lines) == 1
    assert lines[0].tag == LineTag.FINAL_PARTIAL
    assert lines[0].amount == Decimal("200.00")
    assert lines[0].period_end == removed


def test_quantity_multiplies_the_base_amount():
    lines = build_invoice_lines([_item("seat", "25", date(2024, 1, 1), quantity=4)], [], FEB)

    assert lines[0].unit_price == Decimal("25")
    assert lines[0].base_amount == Decimal("100.00")
    assert lines[0].amount == Decimal("100.00")


def test_items_outside_the_period_are_skipped():
    lines = build_invoice_lines(
        [
            _item("old", "10", date(2023, 11, 1), date(2024, 2, 1), item_id=1),
            _item("future", "10", date(2024, 3, 1), item_id=2),
        ],
        [_event(ChangeType.REMOVED, "old", date(2024, 2, 1)), _event(ChangeType.ADDED, "future", date(2024, 3, 1))],
        FEB,
    )

    assert lines == []


def test_same_day_changes_keep_insertion_order():
    on = date(2024, 2, 11)
    lines = build_invoice_lines(
        [_item("zeta", "30", on, item_id=1), _item("alpha", "30", on, item_id=2)],
        [_event(ChangeType.ADDED, "zeta", on), _event(ChangeType.ADDED, "alpha", on)],
        FEB,
    )

    assert [li.item_key for li in lines] == ["zeta", "alpha"]


def test_overlapping_items_of_one_kind_are_rejected():
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines(
            [
                _item("hosting", "300", date(2024, 1, 1), item_id=1),
                _item("hosting", "450", date(2024, 2, 16), item_id=2),
            ],
            [_event(ChangeType.ADDED, "hosting", date(2024, 2, 16))],
            FEB,
        )


def test_end_before_start_is_rejected():
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines([_item("hosting", "300", date(2024, 2, 10), date(2024, 2, 5))], [], FEB)


def test_boundary_without_change_event_is_rejected():
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines([_item("hosting", "300", date(2024, 1, 1), date(2024, 2, 10))], [], FEB)


def test_event_that_does_not_match_history_is_rejected():
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines(
            [_item("hosting", "300", date(2024, 1, 1), date(2024, 2, 10))],
            [_event(ChangeType.MODIFIED, "hosting", date(2024, 2, 10))],
            FEB,
        )


def test_two_events_for_one_kind_and_date_are_rejected():
    on = date(2024, 2, 10)
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines(
            [_item("hosting", "300", on)],
            [_event(ChangeType.ADDED, "hosting", on), _event(ChangeType.ADDED, "hosting", on)],
            FEB,
        )


def test_cycle_mismatch_is_rejected():
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines([_item("hosting", "300", date(2024, 1, 1), cycle=BillingCycle.ANNUAL)], [], FEB)


def test_summarize_lines_rounds_tax_once():
    change_day = date(2024, 2, 16)
    lines = build_invoice_lines(
        [
            _item("hosting", "300", date(2024, 1, 1), change_day, item_id=1),
            _item("hosting", "450", change_day, item_id=2),
        ],
        [_event(ChangeType.MODIFIED, "hosting", change_day)],
        FEB,
    )

    assert summarize_lines(lines, Decimal("15")) == (Decimal("375.00"), Decimal("56.25"), Decimal("431.25"))


def test_remove_then_add_on_one_day_reads_as_a_repricing():
    on = date(2024, 2, 16)
    lines = build_invoice_lines(
        [
            _item("hosting", "300", date(2024, 1, 1), on, item_id=1),
            _item("hosting", "450", on, item_id=2),
        ],
        [
            _event(ChangeType.ADDED, "hosting", date(2024, 1, 1)),
            _event(ChangeType.REMOVED, "hosting", on),
            _event(ChangeType.ADDED, "hosting", on),
        ],
        FEB,
    )

    assert [li.amount for li in lines] == [Decimal("150.00"), Decimal("225.00")]
    assert [li.tag for li in lines] == [LineTag.PRORATION, LineTag.PRORATION]


def test_add_then_remove_on_one_day_is_still_rejected():
    on = date(2024, 2, 16)
    with pytest.raises(InconsistentBillingStateError):
        build_invoice_lines(
            [_item("hosting", "300", date(2024, 1, 1), on)],
            [
                _event(ChangeType.ADDED, "hosting", date(2024, 1, 1)),
                _event(ChangeType.ADDED, "hosting", on),
                _event(ChangeType.REMOVED, "hosting", on),
            ],
            FEB,
        )


def test_service_level_changes_do_not_affect_lines():
    on = date(2024, 2, 10)
    lines = build_invoice_lines(
        [_item("hosting", "300", date(2024, 1, 1))],
        [
            _event(ChangeType.ADDED, "hosting", date(2024, 1, 1)),
            ChangeEvent(change_type=ChangeType.UPDATED, item_key=None, effective_date=on, field_changed="tax_rate"),
            ChangeEvent(change_type=ChangeType.STATUS_CHANGED, item_key=None, effective_date=on, field_changed="status"),
        ],
        FEB,
    )

    assert [(li.tag, li.amount) for li in lines] == [(LineTag.REGULAR, Decimal("300.00"))]


def test_end_date_closes_open_items_with_a_final_partial():
    ends = date(2024, 2, 21)
    items, changes = clip_to_end_date(
        [_item("hosting", "300", date(2024, 1, 1), item_id=1), _item("backup", "30", date(2024, 3, 1), item_id=2)],
        [_event(ChangeType.ADDED, "hosting", date(2024, 1, 1)), _event(ChangeType.ADDED, "backup", date(2024, 3, 1))],
        ends,
    )

    assert [(i.item_key, i.effective_to) for i in items] == [("hosting", ends)]
    assert changes[-1].change_type == ChangeType.REMOVED

    lines = build_invoice_lines(items, changes, FEB)
    assert [(li.tag, li.pro_rata_days, li.amount) for li in lines] == [
        (LineTag.FINAL_PARTIAL, 20, Decimal("200.00"))
    ]


def test_adjustment_lines_cover_the_whole_period():
    lines = adjustment_lines(
        [{"description": "Setup fee", "amount": "49.999"}, {"description": "Credit", "amount": -10}],
        FEB,
        first_order=2,
    )

    assert [(li.item_order, li.item_key, li.amount) for li in lines] == [
        (2, "adjustment-1", Decimal("50.00")),
        (3, "adjustment-2", Decimal("-10.00")),
    ]
    assert all(li.tag == LineTag.ADJUSTMENT for li in lines)
    assert all((li.period_start, li.period_end) == (FEB.start, FEB.end) for li in lines)


def test_zero_adjustment_is_rejected():
    with pytest.raises(ValidationError):
        adjustment_lines([{"description": "Nothing", "amount": "0.001"}], FEB)
