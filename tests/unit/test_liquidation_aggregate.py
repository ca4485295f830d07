"""
Unit tests for backoffice/core/liquidation.py

Tests: create (cash advance checks, totals, receipts), edit (pending only,
       item replacement, receipt carry/remove/dangling), soft_delete and
       construction-time invariants.
"""

import uuid
from datetime import date

import pytest

from backoffice.core import approval
from backoffice.core import liquidation as domain
from backoffice.core.attachments import AttachmentBinding, AttachmentInstructions, NewFile
from backoffice.core.errors import (
    DanglingAttachment,
    InvalidState,
    ValidationError,
)
from backoffice.core.liquidation import (
    ItemInput,
    Liquidation,
    LiquidationStatus,
)

from conftest import APPROVER_ID, NOW, OWNER_ID


def _receipt(key: str, item_ref=None) -> NewFile:
    return NewFile(
        file_key=key,
        file_name=key.rsplit("/", 1)[-1],
        file_type="image/jpeg",
        file_size=4096,
        item_ref=item_ref,
    )


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


def test_create_underspent_returns_to_company(make_liquidation):
    liq = make_liquidation(500_000, items=[ItemInput(meals=200_000), ItemInput(gas=250_000)])

    assert liq.status is LiquidationStatus.PENDING
    assert liq.total_amount == 450_000
    assert liq.return_to_company == 50_000
    assert liq.reimbursement == 0


def test_create_overspent_is_reimbursed(make_liquidation):
    liq = make_liquidation(300_000, items=[ItemInput(lodging=345_000)])

    assert liq.total_amount == 345_000
    assert liq.reimbursement == 45_000
    assert liq.return_to_company == 0


def test_create_without_items_fails(make_cash_advance):
    with pytest.raises(ValidationError):
        domain.create(
            make_cash_advance(),
            user_id=OWNER_ID,
            store_id="STORE-01",
            liquidation_date=date(2026, 3, 1),
            items=[],
        )


def test_create_with_only_zero_rows_fails(make_liquidation):
    with pytest.raises(ValidationError):
        make_liquidation(items=[ItemInput(), ItemInput(remarks="nothing spent")])


@pytest.mark.parametrize(
    "overrides",
    [
        {"status": "pending"},
        {"type": "salary"},
        {"requested_by": APPROVER_ID},
    ],
)
def test_create_rejects_ineligible_cash_advance(make_cash_advance, overrides):
    with pytest.raises(ValidationError):
        domain.create(
            make_cash_advance(**overrides),
            user_id=OWNER_ID,
            store_id="STORE-01",
            liquidation_date=date(2026, 3, 1),
            items=[ItemInput(meals=1_000)],
        )


@pytest.mark.parametrize(
    "position, confidential",
    [("HR", True), ("accounting", True), (" Accounting ", True), ("Sales", False), (None, False)],
)
def test_create_marks_confidential_by_requester_position(make_liquidation, position, confidential):
    assert make_liquidation(requester_position=position).confidential is confidential


def test_create_binds_receipts_to_rows_by_ref(make_liquidation):
    liq = make_liquidation(
        items=[ItemInput(meals=1_000, ref="lunch"), ItemInput(gas=2_000, ref="fuel")],
        new_files=[_receipt("receipts/o/a.jpg", "fuel"), _receipt("receipts/o/b.jpg")],
    )

    fuel_row = liq.items[1]
    assert [a.file_key for a in liq.attachments_for_item(fuel_row.id)] == ["receipts/o/a.jpg"]
    assert [a.file_key for a in liq.general_attachments()] == ["receipts/o/b.jpg"]


def test_create_rejects_duplicate_item_refs(make_liquidation):
    with pytest.raises(ValidationError):
        make_liquidation(items=[ItemInput(meals=1, ref="x"), ItemInput(gas=1, ref="x")])


def test_status_has_no_setter(make_liquidation):
    liq = make_liquidation()
    with pytest.raises(AttributeError):
        liq.status = LiquidationStatus.APPROVED


def test_constructor_rejects_status_without_reviews(make_liquidation):
    liq = make_liquidation()
    with pytest.raises(InvalidState):
        Liquidation(
            id=liq.id,
            cash_advance_id=liq.cash_advance_id,
            cash_advance_amount_cents=liq.cash_advance_amount_cents,
            user_id=liq.user_id,
            store_id=liq.store_id,
            liquidation_date=liq.liquidation_date,
            items=liq.items,
            status=LiquidationStatus.APPROVED,
        )


# ---------------------------------------------------------------------------
# edit
# ---------------------------------------------------------------------------


def test_edit_replaces_items_and_recomputes(make_liquidation):
    liq = make_liquidation(500_000)
    old_ids = liq.item_ids

    result = domain.edit(
        liq,
        [ItemInput(meals=300_000), ItemInput(toll=250_000)],
        remarks="second pass",
        now=NOW,
    )

    assert result.liquidation is liq
    assert set(liq.item_ids).isdisjoint(old_ids)
    assert liq.total_amount == 550_000
    assert liq.reimbursement == 50_000
    assert liq.return_to_company == 0
    assert liq.remarks == "second pass"


def test_edit_keeps_header_fields_not_given(make_liquidation):
    liq = make_liquidation()
    domain.edit(liq, [ItemInput(meals=1_000)], now=NOW)
    assert liq.store_id == "STORE-01"
    assert liq.liquidation_date == date(2026, 3, 1)


def test_edit_rejects_blank_store(make_liquidation):
    liq = make_liquidation()
    with pytest.raises(ValidationError):
        domain.edit(liq, [ItemInput(meals=1_000)], store_id="", now=NOW)


def test_edit_rejects_cleared_date_and_changes_nothing(make_liquidation):
    liq = make_liquidation()
    items_before = liq.items

    with pytest.raises(ValidationError):
        domain.edit(liq, [ItemInput(meals=1_000)], liquidation_date=None, now=NOW)

    assert liq.liquidation_date == date(2026, 3, 1)
    assert liq.items == items_before
    assert liq.total_amount == 450_000


def test_edit_after_level1_is_invalid_state(make_liquidation):
    liq = make_liquidation()
    approval.decide(liq, 1, "approve", APPROVER_ID, now=NOW)

    with pytest.raises(InvalidState):
        domain.edit(liq, [ItemInput(meals=1_000)], now=NOW)


def test_edit_carries_receipt_to_replacing_row(make_liquidation):
    liq = make_liquidation(
        items=[ItemInput(meals=1_000, ref="r")],
        new_files=[_receipt("receipts/o/meal.jpg", "r")],
    )
    old_item = liq.items[0]
    receipt = liq.attachments[0]

    domain.edit(liq, [ItemInput(meals=1_500, replaces_item_id=old_item.id)], now=NOW)

    new_item = liq.items[0]
    assert new_item.id != old_item.id
    assert liq.attachments[0].id == receipt.id
    assert liq.attachments[0].binding == AttachmentBinding.item(new_item.id)


def test_edit_dangling_receipt_fails_and_leaves_liquidation_untouched(make_liquidation):
    liq = make_liquidation(
        items=[ItemInput(meals=1_000, ref="r")],
        new_files=[_receipt("receipts/o/meal.jpg", "r")],
    )
    items_before, attachments_before = liq.items, liq.attachments
    total_before = liq.total_amount

    with pytest.raises(DanglingAttachment):
        domain.edit(liq, [ItemInput(meals=9_000)], remarks="changed", now=NOW)

    assert liq.items == items_before
    assert liq.attachments == attachments_before
    assert liq.total_amount == total_before
    assert liq.remarks is None


def test_edit_removing_receipt_reports_it(make_liquidation):
    liq = make_liquidation(
        items=[ItemInput(meals=1_000, ref="r")],
        new_files=[_receipt("receipts/o/meal.jpg", "r")],
    )
    receipt = liq.attachments[0]

    result = domain.edit(
        liq,
        [ItemInput(meals=2_000)],
        AttachmentInstructions(remove_ids=frozenset({receipt.id})),
        now=NOW,
    )

    assert liq.attachments == ()
    assert result.ledger.removed == [receipt]


def test_edit_adds_receipt_for_new_row(make_liquidation):
    liq = make_liquidation()

    result = domain.edit(
        liq,
        [ItemInput(gas=2_000, ref="fuel")],
        AttachmentInstructions(new_files=(_receipt("receipts/o/fuel.jpg", "fuel"),)),
        now=NOW,
    )

    assert len(result.ledger.added) == 1
    assert liq.attachments_for_item(liq.items[0].id)[0].file_key == "receipts/o/fuel.jpg"


def test_edit_replacing_unknown_row_fails(make_liquidation):
    liq = make_liquidation()
    with pytest.raises(ValidationError):
        domain.edit(liq, [ItemInput(meals=1, replaces_item_id=uuid.uuid4())], now=NOW)


def test_edit_cannot_replace_same_row_twice(make_liquidation):
    liq = make_liquidation()
    old = liq.items[0].id
    with pytest.raises(ValidationError):
        domain.edit(
            liq,
            [ItemInput(meals=1, replaces_item_id=old), ItemInput(gas=1, replaces_item_id=old)],
            now=NOW,
        )


# ---------------------------------------------------------------------------
# soft_delete
# ---------------------------------------------------------------------------


def test_soft_delete_blocks_further_changes(make_liquidation):
    liq = make_liquidation()
    domain.soft_delete(liq, NOW)

    assert liq.is_deleted
    with pytest.raises(InvalidState):
        domain.edit(liq, [ItemInput(meals=1)], now=NOW)
    with pytest.raises(InvalidState):
        approval.decide(liq, 1, "approve", APPROVER_ID, now=NOW)
    with pytest.raises(InvalidState):
        domain.soft_delete(liq, NOW)
