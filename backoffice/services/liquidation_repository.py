"""
Persistence for the liquidation aggregate.

Header, items and attachment metadata are read and written as one unit inside
the caller's session (no commit here). Writes go through SQLAlchemy's
``version_id_col`` so a concurrent writer surfaces as Conflict.
"""

import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select, func, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
import structlog

from backoffice.core.attachments import Attachment, AttachmentBinding
from backoffice.core.errors import AlreadyLiquidated, Conflict, NotFound
from backoffice.core.liquidation import (
    ApprovalAction,
    ApprovalLevel,
    CashAdvance,
    LevelReview,
    Liquidation,
    LiquidationItem,
    LiquidationStatus,
    is_confidential_position,
)
from backoffice.core.money import EXPENSE_CATEGORIES
from backoffice.models.cash_advance import CashAdvance as CashAdvanceRow
from backoffice.models.liquidation import (
    Liquidation as LiquidationRow,
    LiquidationAttachment as AttachmentRow,
    LiquidationItem as ItemRow,
)

logger = structlog.get_logger()


@dataclass(frozen=True)
class LiquidationFilter:
    status: Optional[str] = None
    user_id: Optional[str] = None
    cash_advance_id: Optional[uuid.UUID] = None


def _uuid(value) -> Optional[uuid.UUID]:
    if value is None:
        return None
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


# ---------- row -> domain ----------


def cash_advance_from_row(row: CashAdvanceRow) -> CashAdvance:
    return CashAdvance(
        id=row.id,
        requested_by=str(row.requested_by),
        amount_cents=row.amount_cents,
        status=row.status,
        type=row.type,
        requester_position=row.requester_position,
    )


def _review(row: LiquidationRow, level: ApprovalLevel) -> Optional[LevelReview]:
    n = int(level)
    actor = getattr(row, f"level{n}_approved_by")
    if actor is None:
        return None
    return LevelReview(
        actor_id=str(actor),
        acted_at=getattr(row, f"level{n}_approved_at"),
        action=ApprovalAction.REJECT if row.rejected_level == n else ApprovalAction.APPROVE,
        comment=getattr(row, f"level{n}_reviewer_comment"),
    )


def item_from_row(row: ItemRow) -> LiquidationItem:
    return LiquidationItem(
        id=row.id,
        expense_date=row.expense_date,
        from_destination=row.from_destination or "",
        to_destination=row.to_destination or "",
        remarks=row.remarks or "",
        **{c: getattr(row, f"{c}_cents") for c in EXPENSE_CATEGORIES},
    )


def attachment_from_row(row: AttachmentRow) -> Attachment:
    if row.liquidation_item_id is not None:
        binding = AttachmentBinding.item(row.liquidation_item_id)
    else:
        binding = AttachmentBinding.general(row.liquidation_id)
    return Attachment(
        id=row.id,
        file_key=row.file_key,
        file_name=row.file_name,
        file_type=row.file_type,
        file_size=row.file_size,
        binding=binding,
        uploaded_by=str(row.uploaded_by) if row.uploaded_by else None,
        created_at=row.created_at,
    )


def liquidation_from_row(row: LiquidationRow) -> Liquidation:
    return Liquidation(
        id=row.id,
        cash_advance_id=row.cash_advance_id,
        cash_advance_amount_cents=row.cash_advance.amount_cents,
        user_id=str(row.user_id),
        store_id=row.store_id,
        ticket_id=row.ticket_id,
        liquidation_date=row.liquidation_date,
        remarks=row.remarks,
        items=[item_from_row(i) for i in row.items],
        attachments=[attachment_from_row(a) for a in row.attachments],
        status=LiquidationStatus(row.status),
        level1_review=_review(row, ApprovalLevel.LEVEL1),
        level2_review=_review(row, ApprovalLevel.LEVEL2),
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        confidential=is_confidential_position(row.cash_advance.requester_position),
    )


# ---------- domain -> row ----------


def _apply_header(row: LiquidationRow, liq: Liquidation) -> None:
    row.store_id = liq.store_id
    row.ticket_id = liq.ticket_id
    row.liquidation_date = liq.liquidation_date
    row.remarks = liq.remarks
    row.status = liq.status.value
    row.total_amount_cents = liq.total_amount
    row.return_to_company_cents = liq.return_to_company
    row.reimbursement_cents = liq.reimbursement
    for level in ApprovalLevel:
        n = int(level)
        review = liq.review(level)
        setattr(row, f"level{n}_approved_by", _uuid(review.actor_id) if review else None)
        setattr(row, f"level{n}_approved_at", review.acted_at if review else None)
        setattr(row, f"level{n}_reviewer_comment", review.comment if review else None)
    row.rejected_level = int(liq.rejected_level) if liq.rejected_level else None
    row.deleted_at = liq.deleted_at
    if liq.updated_at is not None:
        row.updated_at = liq.updated_at


def _apply_item(row: ItemRow, item: LiquidationItem, line_number: int) -> None:
    row.line_number = line_number
    row.expense_date = item.expense_date
    row.from_destination = item.from_destination
    row.to_destination = item.to_destination
    row.remarks = item.remarks
    for c in EXPENSE_CATEGORIES:
        setattr(row, f"{c}_cents", getattr(item, c))
    row.total_cents = item.total


def _new_attachment_row(liquidation_id: uuid.UUID, a: Attachment) -> AttachmentRow:
    row = AttachmentRow(
        id=a.id,
        liquidation_id=liquidation_id,
        file_key=a.file_key,
        file_name=a.file_name,
        file_type=a.file_type,
        file_size=a.file_size,
        uploaded_by=_uuid(a.uploaded_by),
    )
    if a.created_at is not None:
        row.created_at = a.created_at
    return row


class LiquidationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session
        self._rows: dict[uuid.UUID, LiquidationRow] = {}

    # ---------- cash advances ----------

    async def get_cash_advance(self, cash_advance_id) -> Optional[CashAdvance]:
        result = await self.session.execute(
            select(CashAdvanceRow).where(CashAdvanceRow.id == _uuid(cash_advance_id))
        )
        row = result.scalar_one_or_none()
        return cash_advance_from_row(row) if row else None

    async def is_liquidated(self, cash_advance_id) -> bool:
        result = await self.session.execute(
            select(
                exists().where(
                    LiquidationRow.cash_advance_id == _uuid(cash_advance_id),
                    LiquidationRow.deleted_at == None,  # noqa: E711
                )
            )
        )
        return bool(result.scalar())

    async def list_eligible_cash_advances(
        self, user_id: str, types: Iterable[str]
    ) -> list[CashAdvance]:
        """Approved advances of ``user_id`` that have no live liquidation."""
        live = select(LiquidationRow.cash_advance_id).where(
            LiquidationRow.deleted_at == None  # noqa: E711
        )
        result = await self.session.execute(
            select(CashAdvanceRow)
            .where(
                CashAdvanceRow.requested_by == _uuid(user_id),
                CashAdvanceRow.status == "approved",
                CashAdvanceRow.type.in_(list(types)),
                CashAdvanceRow.id.not_in(live),
            )
            .order_by(CashAdvanceRow.created_at.desc())
        )
        return [cash_advance_from_row(r) for r in result.scalars().all()]

    # ---------- liquidations ----------

    async def _load_row(self, liquidation_id, for_update: bool = False) -> Optional[LiquidationRow]:
        q = select(LiquidationRow).where(
            LiquidationRow.id == _uuid(liquidation_id),
            LiquidationRow.deleted_at == None,  # noqa: E711
        )
        if for_update:
            q = q.with_for_update(of=LiquidationRow).execution_options(populate_existing=True)
        result = await self.session.execute(q)
        row = result.scalar_one_or_none()
        if row is not None:
            self._rows[row.id] = row
        return row

    async def get(self, liquidation_id, *, for_update: bool = False) -> Optional[Liquidation]:
        row = await self._load_row(liquidation_id, for_update=for_update)
        return liquidation_from_row(row) if row else None

    async def add(self, liq: Liquidation) -> None:
        row = LiquidationRow(
            id=liq.id,
            cash_advance_id=liq.cash_advance_id,
            user_id=_uuid(liq.user_id),
        )
        if liq.created_at is not None:
            row.created_at = liq.created_at
        _apply_header(row, liq)

        item_rows = {}
        for n, item in enumerate(liq.items, start=1):
            item_row = ItemRow(id=item.id)
            _apply_item(item_row, item, n)
            item_rows[item.id] = item_row
        row.items = list(item_rows.values())

        attachment_rows = []
        for a in liq.attachments:
            a_row = _new_attachment_row(liq.id, a)
            a_row.item = item_rows.get(a.binding.target_id) if a.binding.is_item_level else None
            attachment_rows.append(a_row)
        row.attachments = attachment_rows

        self.session.add(row)
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "liquidation_insert_conflict",
                cash_advance_id=str(liq.cash_advance_id),
                error=str(e.orig),
            )
            raise AlreadyLiquidated(
                "A liquidation already exists for this cash advance",
                details={"cash_advance_id": str(liq.cash_advance_id)},
            )
        self._rows[row.id] = row
        liq.version = row.version

    async def save(self, liq: Liquidation) -> None:
        row = self._rows.get(liq.id)
        if row is None:
            row = await self._load_row(liq.id)
        if row is None:
            raise NotFound("Liquidation not found", details={"liquidation_id": str(liq.id)})
        if row.version != liq.version:
            raise Conflict(
                "Liquidation was modified by another request",
                details={"liquidation_id": str(liq.id)},
            )

        _apply_header(row, liq)

        existing_items = {i.id: i for i in row.items}
        item_rows: dict[uuid.UUID, ItemRow] = {}
        for n, item in enumerate(liq.items, start=1):
            item_row = existing_items.get(item.id) or ItemRow(id=item.id)
            _apply_item(item_row, item, n)
            item_rows[item.id] = item_row
        # delete-orphan drops the superseded rows
        row.items = list(item_rows.values())

        existing_attachments = {a.id: a for a in row.attachments}
        attachment_rows = []
        for a in liq.attachments:
            a_row = existing_attachments.get(a.id) or _new_attachment_row(liq.id, a)
            a_row.item = item_rows[a.binding.target_id] if a.binding.is_item_level else None
            attachment_rows.append(a_row)
        row.attachments = attachment_rows

        try:
            await self.session.flush()
        except StaleDataError:
            raise Conflict(
                "Liquidation was modified by another request",
                details={"liquidation_id": str(liq.id)},
            )
        liq.version = row.version

    async def list(
        self, filter: LiquidationFilter, page: int = 1, limit: int = 20
    ) -> tuple[list[Liquidation], int]:
        conditions = [LiquidationRow.deleted_at == None]  # noqa: E711
        if filter.status:
            conditions.append(LiquidationRow.status == filter.status)
        if filter.user_id:
            conditions.append(LiquidationRow.user_id == _uuid(filter.user_id))
        if filter.cash_advance_id:
            conditions.append(LiquidationRow.cash_advance_id == _uuid(filter.cash_advance_id))

        total = (
            await self.session.execute(
                select(func.count(LiquidationRow.id)).where(*conditions)
            )
        ).scalar() or 0
        result = await self.session.execute(
            select(LiquidationRow)
            .where(*conditions)
            .order_by(LiquidationRow.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [liquidation_from_row(r) for r in result.scalars().all()], total

    async def get_attachment(self, attachment_id) -> Optional[tuple[Attachment, Liquidation]]:
        result = await self.session.execute(
            select(AttachmentRow).where(AttachmentRow.id == _uuid(attachment_id))
        )
        a_row = result.scalar_one_or_none()
        if a_row is None:
            return None
        liq = await self.get(a_row.liquidation_id)
        if liq is None:
            return None
        return attachment_from_row(a_row), liq
