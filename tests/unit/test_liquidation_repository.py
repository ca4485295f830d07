"""
Unit tests for backoffice/services/liquidation_repository.py

Session is a mock; tests cover the row <-> aggregate mapping, the duplicate
insert translation and the version check on save.
"""

import uuid
from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from backoffice.core import approval
from backoffice.core.attachments import AttachmentBinding, NewFile
from backoffice.core.errors import AlreadyLiquidated, Conflict
from backoffice.core.liquidation import ApprovalAction, ItemInput, LiquidationStatus
from backoffice.models.cash_advance import CashAdvance as CashAdvanceRow
from backoffice.models.liquidation import (
    Liquidation as LiquidationRow,
    LiquidationAttachment as AttachmentRow,
    LiquidationItem as ItemRow,
)
from backoffice.services.liquidation_repository import (
    LiquidationRepository,
    liquidation_from_row,
)

from conftest import APPROVER_ID, NOW, OWNER_ID


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.flush = AsyncMock()
    session.add = MagicMock()
    return session


def _receipt(key: str, item_ref=None) -> NewFile:
    return NewFile(file_key=key, file_name="r.jpg", file_type="image/jpeg", file_size=10, item_ref=item_ref)


def _make_row(rejected_level=None, status="pending") -> LiquidationRow:
    liq_id, item_id = uuid.uuid4(), uuid.uuid4()
    row = LiquidationRow(
        id=liq_id,
        cash_advance_id=uuid.uuid4(),
        user_id=uuid.UUID(OWNER_ID),
        store_id="STORE-01",
        liquidation_date=date(2026, 3, 1),
        status=status,
        rejected_level=rejected_level,
        version=3,
    )
    row.cash_advance = CashAdvanceRow(amount_cents=100_000, type="support", status="approved")
    row.items = [
        ItemRow(
            id=item_id,
            line_number=1,
            from_destination="Makati",
            to_destination="Pasig",
            jeep_cents=0, bus_cents=5_000, fx_van_cents=0, gas_cents=0,
            toll_cents=0, meals_cents=20_000, lodging_cents=0, others_cents=0,
            total_cents=25_000,
        )
    ]
    row.attachments = [
        AttachmentRow(
            id=uuid.uuid4(),
            liquidation_id=liq_id,
            liquidation_item_id=item_id,
            file_key="receipts/o/bus.jpg",
            file_name="bus.jpg",
            file_type="image/jpeg",
            file_size=321,
        ),
        AttachmentRow(
            id=uuid.uuid4(),
            liquidation_id=liq_id,
            liquidation_item_id=None,
            file_key="receipts/o/summary.pdf",
            file_name="summary.pdf",
            file_type="application/pdf",
            file_size=999,
        ),
    ]
    return row


# ---------------------------------------------------------------------------
# row -> aggregate
# ---------------------------------------------------------------------------


def test_row_maps_to_aggregate_with_recomputed_totals():
    row = _make_row()
    # Stored derived columns are ignored; totals come from the items
    row.total_amount_cents = 1

    liq = liquidation_from_row(row)

    assert liq.id == row.id
    assert liq.user_id == OWNER_ID
    assert liq.version == 3
    assert liq.total_amount == 25_000
    assert liq.return_to_company == 75_000
    item = liq.items[0]
    assert (item.bus, item.meals, item.from_destination) == (5_000, 20_000, "Makati")
    bound, general = liq.attachments
    assert bound.binding == AttachmentBinding.item(item.id)
    assert general.binding == AttachmentBinding.general(liq.id)


def test_row_of_hr_requester_is_confidential():
    row = _make_row()
    assert liquidation_from_row(row).confidential is False

    row.cash_advance.requester_position = "HR"
    assert liquidation_from_row(row).confidential is True


def test_row_with_level1_rejection_maps_review_action():
    row = _make_row(rejected_level=1, status="rejected")
    row.level1_approved_by = uuid.UUID(APPROVER_ID)
    row.level1_approved_at = NOW
    row.level1_reviewer_comment = "no receipts"

    liq = liquidation_from_row(row)

    assert liq.status is LiquidationStatus.REJECTED
    assert liq.level1_review.action is ApprovalAction.REJECT
    assert liq.level1_review.actor_id == APPROVER_ID
    assert liq.level2_review is None


# ---------------------------------------------------------------------------
# add
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_add_writes_items_attachments_and_derived_columns(make_liquidation):
    liq = make_liquidation(
        500_000,
        items=[ItemInput(meals=300_000, ref="m"), ItemInput(gas=100_000)],
        new_files=[_receipt("receipts/o/m.jpg", "m"), _receipt("receipts/o/all.pdf")],
    )
    session = _mock_session()

    await LiquidationRepository(session).add(liq)

    row = session.add.call_args.args[0]
    assert row.status == "pending"
    assert row.total_amount_cents == 400_000
    assert row.return_to_company_cents == 100_000
    assert row.reimbursement_cents == 0
    assert [i.line_number for i in row.items] == [1, 2]
    assert row.items[0].meals_cents == 300_000
    assert row.items[0].total_cents == 300_000
    by_key = {a.file_key: a for a in row.attachments}
    assert by_key["receipts/o/m.jpg"].item is row.items[0]
    assert by_key["receipts/o/all.pdf"].item is None


@pytest.mark.asyncio
async def test_add_duplicate_cash_advance_is_already_liquidated(make_liquidation):
    session = _mock_session()
    session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))

    with pytest.raises(AlreadyLiquidated):
        await LiquidationRepository(session).add(make_liquidation())


# ---------------------------------------------------------------------------
# save
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_save_writes_decision_fields():
    row = _make_row()
    session = _mock_session()
    repo = LiquidationRepository(session)
    repo._rows[row.id] = row
    liq = liquidation_from_row(row)

    approval.decide(liq, 1, "reject", APPROVER_ID, "wrong store", now=NOW)
    await repo.save(liq)

    assert row.status == "rejected"
    assert row.rejected_level == 1
    assert row.level1_approved_by == uuid.UUID(APPROVER_ID)
    assert row.level1_approved_at == NOW
    assert row.level1_reviewer_comment == "wrong store"
    assert row.level2_approved_by is None
    session.flush.assert_awaited_once()


@pytest.mark.asyncio
async def test_save_with_stale_version_is_conflict():
    row = _make_row()
    repo = LiquidationRepository(_mock_session())
    repo._rows[row.id] = row
    liq = liquidation_from_row(row)
    row.version = 4

    with pytest.raises(Conflict):
        await repo.save(liq)


@pytest.mark.asyncio
async def test_save_translates_stale_data_error():
    row = _make_row()
    session = _mock_session()
    session.flush.side_effect = StaleDataError("0 rows matched")
    repo = LiquidationRepository(session)
    repo._rows[row.id] = row

    with pytest.raises(Conflict):
        await repo.save(liquidation_from_row(row))
