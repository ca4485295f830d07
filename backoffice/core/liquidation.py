"""
Liquidation aggregate: header, expense rows, receipts, approval state.

The aggregate validates on construction and after every mutation. Derived
money fields are never set from outside: ``recompute_derived`` rebuilds them
from the current items. ``status`` has no setter; only
``backoffice.core.approval.decide`` moves it.
"""

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Iterable, Optional, Sequence

from backoffice.core.attachments import (
    Attachment,
    AttachmentInstructions,
    LedgerResult,
    NewFile,
    check_bindings,
    reconcile,
    remap_for_replacement,
)
from backoffice.core.errors import InvalidState, ValidationError
from backoffice.core.money import (
    EXPENSE_CATEGORIES,
    Totals,
    compute_item_total,
    compute_totals,
    validate_category_amounts,
)

CASH_ADVANCE_APPROVED = "approved"
DEFAULT_ELIGIBLE_TYPES = frozenset({"support", "reimbursement"})
# Requester positions whose liquidations only the Managing Director may decide at level 2
CONFIDENTIAL_POSITIONS = frozenset({"hr", "accounting"})


class LiquidationStatus(str, Enum):
    PENDING = "pending"
    LEVEL1_APPROVED = "level1_approved"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (LiquidationStatus.APPROVED, LiquidationStatus.REJECTED)


class ApprovalLevel(IntEnum):
    LEVEL1 = 1
    LEVEL2 = 2


class ApprovalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class LevelReview:
    actor_id: str
    acted_at: datetime
    action: ApprovalAction
    comment: Optional[str] = None


@dataclass(frozen=True)
class CashAdvance:
    id: uuid.UUID
    requested_by: str
    amount_cents: int
    status: str
    type: str
    requester_position: Optional[str] = None

    @property
    def is_confidential(self) -> bool:
        return is_confidential_position(self.requester_position)


@dataclass(frozen=True)
class ItemInput:
    """One expense row as submitted by the filer.

    ``ref`` is a client label new receipts can point at; ``replaces_item_id``
    names the existing row this one supersedes so its receipts follow it.
    """

    expense_date: Optional[date] = None
    from_destination: str = ""
    to_destination: str = ""
    jeep: int = 0
    bus: int = 0
    fx_van: int = 0
    gas: int = 0
    toll: int = 0
    meals: int = 0
    lodging: int = 0
    others: int = 0
    remarks: str = ""
    ref: Optional[str] = None
    replaces_item_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class LiquidationItem:
    id: uuid.UUID
    expense_date: Optional[date]
    from_destination: str
    to_destination: str
    jeep: int
    bus: int
    fx_van: int
    gas: int
    toll: int
    meals: int
    lodging: int
    others: int
    remarks: str = ""

    @property
    def total(self) -> int:
        return compute_item_total(self)

    @classmethod
    def from_input(cls, data: ItemInput, item_id: Optional[uuid.UUID] = None) -> "LiquidationItem":
        return cls(
            id=item_id or uuid.uuid4(),
            expense_date=data.expense_date,
            from_destination=data.from_destination or "",
            to_destination=data.to_destination or "",
            remarks=data.remarks or "",
            **{c: getattr(data, c) for c in EXPENSE_CATEGORIES},
        )


@dataclass(frozen=True)
class EditResult:
    liquidation: "Liquidation"
    ledger: LedgerResult


UNSET = object()

# status -> (level 1 review action, level 2 review action) that must be on record
_EXPECTED_REVIEWS = {
    LiquidationStatus.PENDING: {(None, None)},
    LiquidationStatus.LEVEL1_APPROVED: {(ApprovalAction.APPROVE, None)},
    LiquidationStatus.APPROVED: {(ApprovalAction.APPROVE, ApprovalAction.APPROVE)},
    LiquidationStatus.REJECTED: {
        (ApprovalAction.REJECT, None),
        (ApprovalAction.APPROVE, ApprovalAction.REJECT),
    },
}


class Liquidation:
    def __init__(
        self,
        *,
        id: uuid.UUID,
        cash_advance_id: uuid.UUID,
        cash_advance_amount_cents: int,
        user_id: str,
        store_id: str,
        liquidation_date: date,
        items: Sequence[LiquidationItem],
        attachments: Iterable[Attachment] = (),
        ticket_id: Optional[int] = None,
        remarks: Optional[str] = None,
        status: LiquidationStatus = LiquidationStatus.PENDING,
        level1_review: Optional[LevelReview] = None,
        level2_review: Optional[LevelReview] = None,
        version: int = 1,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        deleted_at: Optional[datetime] = None,
        confidential: bool = False,
    ):
        self.id = id
        self.cash_advance_id = cash_advance_id
        self.cash_advance_amount_cents = cash_advance_amount_cents
        self.user_id = user_id
        self.store_id = store_id
        self.ticket_id = ticket_id
        self.liquidation_date = liquidation_date
        self.remarks = remarks
        self.confidential = confidential
        self.version = version
        self.created_at = created_at
        self.updated_at = updated_at
        self.deleted_at = deleted_at
        self._status = LiquidationStatus(status)
        self._reviews: dict[ApprovalLevel, Optional[LevelReview]] = {
            ApprovalLevel.LEVEL1: level1_review,
            ApprovalLevel.LEVEL2: level2_review,
        }
        self._items: tuple[LiquidationItem, ...] = tuple(items)
        self._attachments: tuple[Attachment, ...] = tuple(attachments)
        self._totals = Totals(0, 0, 0)

        _validate_items(self._items)
        self.recompute_derived()
        self.check_invariants()

    def __repr__(self) -> str:
        return f"<Liquidation {self.id} status={self._status.value} total={self.total_amount}>"

    # -- read side ---------------------------------------------------------

    @property
    def status(self) -> LiquidationStatus:
        return self._status

    @property
    def items(self) -> tuple[LiquidationItem, ...]:
        return self._items

    @property
    def item_ids(self) -> list[uuid.UUID]:
        return [i.id for i in self._items]

    @property
    def attachments(self) -> tuple[Attachment, ...]:
        return self._attachments

    @property
    def total_amount(self) -> int:
        return self._totals.total

    @property
    def return_to_company(self) -> int:
        return self._totals.return_to_company

    @property
    def reimbursement(self) -> int:
        return self._totals.reimbursement

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def level1_review(self) -> Optional[LevelReview]:
        return self._reviews[ApprovalLevel.LEVEL1]

    @property
    def level2_review(self) -> Optional[LevelReview]:
        return self._reviews[ApprovalLevel.LEVEL2]

    @property
    def rejected_level(self) -> Optional[ApprovalLevel]:
        for level, review in self._reviews.items():
            if review is not None and review.action is ApprovalAction.REJECT:
                return level
        return None

    def review(self, level: ApprovalLevel) -> Optional[LevelReview]:
        return self._reviews[ApprovalLevel(level)]

    def attachments_for_item(self, item_id: uuid.UUID) -> list[Attachment]:
        return [
            a for a in self._attachments
            if a.binding.is_item_level and a.binding.target_id == item_id
        ]

    def general_attachments(self) -> list[Attachment]:
        return [a for a in self._attachments if not a.binding.is_item_level]

    # -- invariants --------------------------------------------------------

    def recompute_derived(self) -> Totals:
        self._totals = compute_totals(self.cash_advance_amount_cents, self._items)
        return self._totals

    def check_invariants(self) -> None:
        if self._totals.return_to_company and self._totals.reimbursement:
            raise ValidationError("Return to company and reimbursement cannot both be set")

        level1, level2 = self.level1_review, self.level2_review
        if level2 is not None and level1 is None:
            raise InvalidState("Level 2 review recorded without a level 1 review")

        actions = (
            level1.action if level1 else None,
            level2.action if level2 else None,
        )
        if actions not in _EXPECTED_REVIEWS[self._status]:
            raise InvalidState(
                f"Review history does not match status '{self._status.value}'",
                details={"status": self._status.value},
            )

        check_bindings(self._attachments, self.id, self.item_ids)

    # -- mutation (only via module functions below and approval.decide) ----

    def _record_decision(
        self, level: ApprovalLevel, review: LevelReview, new_status: LiquidationStatus
    ) -> None:
        self._reviews[level] = review
        self._status = new_status
        self.updated_at = review.acted_at
        self.check_invariants()

    def _replace_contents(
        self, items: Sequence[LiquidationItem], attachments: Sequence[Attachment]
    ) -> None:
        self._items = tuple(items)
        self._attachments = tuple(attachments)
        self.recompute_derived()
        self.check_invariants()


def is_confidential_position(position: Optional[str]) -> bool:
    return (position or "").strip().lower() in CONFIDENTIAL_POSITIONS


def _validate_items(items: Sequence) -> None:
    if not items:
        raise ValidationError("At least one expense item is required")
    positive = False
    for item in items:
        validate_category_amounts(item)
        if compute_item_total(item) > 0:
            positive = True
    if not positive:
        raise ValidationError("At least one expense item must have an amount")


def _build_items(
    inputs: Sequence[ItemInput],
) -> tuple[list[LiquidationItem], dict[str, uuid.UUID]]:
    _validate_items(inputs)
    items: list[LiquidationItem] = []
    refs: dict[str, uuid.UUID] = {}
    for data in inputs:
        item = LiquidationItem.from_input(data)
        if data.ref is not None:
            if data.ref in refs:
                raise ValidationError(
                    "Expense item references must be unique",
                    details={"ref": data.ref},
                )
            refs[data.ref] = item.id
        items.append(item)
    return items, refs


def check_cash_advance(
    cash_advance: CashAdvance,
    user_id: Optional[str] = None,
    eligible_types: Iterable[str] = DEFAULT_ELIGIBLE_TYPES,
) -> None:
    if cash_advance.status != CASH_ADVANCE_APPROVED:
        raise ValidationError(
            "Cash advance must be approved before it can be liquidated",
            details={"cash_advance_status": cash_advance.status},
        )
    if cash_advance.type not in set(eligible_types):
        raise ValidationError(
            f"Cash advance of type '{cash_advance.type}' cannot be liquidated",
            details={"cash_advance_type": cash_advance.type},
        )
    if user_id is not None and str(cash_advance.requested_by) != str(user_id):
        raise ValidationError("Cash advance belongs to another employee")
    if cash_advance.amount_cents < 0:
        raise ValidationError("Cash advance amount cannot be negative")


def create(
    cash_advance: CashAdvance,
    user_id: str,
    store_id: str,
    liquidation_date: date,
    items: Sequence[ItemInput],
    remarks: Optional[str] = None,
    ticket_id: Optional[int] = None,
    new_files: Sequence[NewFile] = (),
    *,
    uploaded_by: Optional[str] = None,
    now: Optional[datetime] = None,
    eligible_types: Iterable[str] = DEFAULT_ELIGIBLE_TYPES,
    liquidation_id: Optional[uuid.UUID] = None,
) -> Liquidation:
    """File a new liquidation against an approved cash advance."""
    check_cash_advance(cash_advance, user_id, eligible_types)
    if not store_id:
        raise ValidationError("Store is required")

    built, refs = _build_items(items)
    liquidation_id = liquidation_id or uuid.uuid4()
    ledger = reconcile(
        (),
        (),
        (),
        new_files,
        liquidation_id=liquidation_id,
        item_ids=[i.id for i in built],
        item_refs=refs,
        uploaded_by=uploaded_by or user_id,
        now=now,
    )

    return Liquidation(
        id=liquidation_id,
        cash_advance_id=cash_advance.id,
        cash_advance_amount_cents=cash_advance.amount_cents,
        user_id=user_id,
        store_id=store_id,
        ticket_id=ticket_id,
        liquidation_date=liquidation_date,
        remarks=remarks,
        items=built,
        attachments=ledger.attachments,
        status=LiquidationStatus.PENDING,
        created_at=now,
        updated_at=now,
        confidential=cash_advance.is_confidential,
    )


def ensure_editable(liquidation: Liquidation) -> None:
    if liquidation.is_deleted:
        raise InvalidState("Liquidation has been deleted")
    if liquidation.status is not LiquidationStatus.PENDING:
        raise InvalidState(
            "Only pending liquidations can be edited",
            details={"status": liquidation.status.value},
        )


def edit(
    liquidation: Liquidation,
    new_items: Sequence[ItemInput],
    instructions: AttachmentInstructions = AttachmentInstructions(),
    remarks=UNSET,
    *,
    store_id=UNSET,
    ticket_id=UNSET,
    liquidation_date=UNSET,
    uploaded_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> EditResult:
    """
    Replace the whole item set and reconcile receipts against it.

    Nothing on ``liquidation`` changes unless every check passes.
    """
    ensure_editable(liquidation)

    built, refs = _build_items(new_items)
    new_ids = [i.id for i in built]
    current_ids = set(liquidation.item_ids)

    successors: dict[uuid.UUID, uuid.UUID] = {}
    for data, item in zip(new_items, built):
        if data.replaces_item_id is None:
            continue
        if data.replaces_item_id not in current_ids:
            raise ValidationError(
                "Expense item replaces a row that is not part of this liquidation",
                details={"replaces_item_id": str(data.replaces_item_id)},
            )
        if data.replaces_item_id in successors:
            raise ValidationError(
                "An expense row can only be replaced once",
                details={"replaces_item_id": str(data.replaces_item_id)},
            )
        successors[data.replaces_item_id] = item.id

    carried = remap_for_replacement(
        liquidation.attachments, successors, new_ids, instructions.remove_ids
    )
    ledger = reconcile(
        carried,
        instructions.keep_ids,
        instructions.remove_ids,
        instructions.new_files,
        liquidation_id=liquidation.id,
        item_ids=new_ids,
        item_refs=refs,
        uploaded_by=uploaded_by or liquidation.user_id,
        now=now,
    )

    if store_id is not UNSET and not store_id:
        raise ValidationError("Store is required")
    if liquidation_date is not UNSET and not liquidation_date:
        raise ValidationError("Liquidation date is required")

    liquidation._replace_contents(built, ledger.attachments)
    if remarks is not UNSET:
        liquidation.remarks = remarks
    if store_id is not UNSET:
        liquidation.store_id = store_id
    if ticket_id is not UNSET:
        liquidation.ticket_id = ticket_id
    if liquidation_date is not UNSET:
        liquidation.liquidation_date = liquidation_date
    liquidation.updated_at = now
    return EditResult(liquidation=liquidation, ledger=ledger)


def recompute_derived(liquidation: Liquidation) -> Totals:
    return liquidation.recompute_derived()


def soft_delete(liquidation: Liquidation, now: datetime) -> Liquidation:
    if liquidation.is_deleted:
        raise InvalidState("Liquidation has already been deleted")
    liquidation.deleted_at = now
    liquidation.updated_at = now
    return liquidation
