import uuid
from datetime import date
from decimal import Decimal
from typing import List, Optional
from pydantic import BaseModel, Field

from backoffice.core.attachments import NewFile
from backoffice.core.liquidation import ItemInput
from backoffice.core.money import EXPENSE_CATEGORIES, MAX_CATEGORY_CENTS, to_cents

MAX_CATEGORY_PESOS = Decimal(MAX_CATEGORY_CENTS) / 100


def _pesos():
    return Field(Decimal("0"), ge=0, le=MAX_CATEGORY_PESOS)


class LiquidationItemIn(BaseModel):
    """One expense row; amounts are pesos with at most two decimals."""

    ref: Optional[str] = Field(None, min_length=1, max_length=64)
    replaces_item_id: Optional[uuid.UUID] = None
    expense_date: Optional[date] = None
    from_destination: str = Field("", max_length=255)
    to_destination: str = Field("", max_length=255)
    jeep: Decimal = _pesos()
    bus: Decimal = _pesos()
    fx_van: Decimal = _pesos()
    gas: Decimal = _pesos()
    toll: Decimal = _pesos()
    meals: Decimal = _pesos()
    lodging: Decimal = _pesos()
    others: Decimal = _pesos()
    remarks: str = Field("", max_length=1000)

    def to_input(self) -> ItemInput:
        return ItemInput(
            expense_date=self.expense_date,
            from_destination=self.from_destination,
            to_destination=self.to_destination,
            remarks=self.remarks,
            ref=self.ref,
            replaces_item_id=self.replaces_item_id,
            **{c: to_cents(getattr(self, c)) for c in EXPENSE_CATEGORIES},
        )


class ReceiptFileIn(BaseModel):
    """A receipt already uploaded through /receipts/upload."""

    file_key: str = Field(..., min_length=1, max_length=512)
    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str = Field(..., min_length=1, max_length=100)
    file_size: int = Field(..., ge=0)
    item_ref: Optional[str] = Field(None, min_length=1, max_length=64)

    def to_new_file(self) -> NewFile:
        return NewFile(
            file_key=self.file_key,
            file_name=self.file_name,
            file_type=self.file_type,
            file_size=self.file_size,
            item_ref=self.item_ref,
        )


class LiquidationCreate(BaseModel):
    cash_advance_id: uuid.UUID
    store_id: str = Field(..., min_length=1, max_length=64)
    ticket_id: Optional[int] = None
    liquidation_date: date
    remarks: Optional[str] = Field(None, max_length=2000)
    items: List[LiquidationItemIn] = Field(default_factory=list, max_length=100)
    receipts: List[ReceiptFileIn] = Field(default_factory=list, max_length=50)


class LiquidationUpdate(BaseModel):
    """Full replacement of the expense rows plus receipt instructions.

    Header fields left out of the body keep their current value.
    """

    items: List[LiquidationItemIn] = Field(..., max_length=100)
    keep_attachment_ids: List[uuid.UUID] = Field(default_factory=list)
    remove_attachment_ids: List[uuid.UUID] = Field(default_factory=list)
    receipts: List[ReceiptFileIn] = Field(default_factory=list, max_length=50)
    store_id: Optional[str] = Field(None, min_length=1, max_length=64)
    ticket_id: Optional[int] = None
    liquidation_date: Optional[date] = None
    remarks: Optional[str] = Field(None, max_length=2000)


class DecisionRequest(BaseModel):
    level: int
    action: str
    comment: Optional[str] = Field(None, max_length=1000)


class LiquidationItemResponse(BaseModel):
    id: str
    line_number: int
    expense_date: Optional[str] = None
    from_destination: str
    to_destination: str
    jeep_cents: int
    bus_cents: int
    fx_van_cents: int
    gas_cents: int
    toll_cents: int
    meals_cents: int
    lodging_cents: int
    others_cents: int
    total_cents: int
    total_display: str
    remarks: str = ""


class AttachmentResponse(BaseModel):
    id: str
    file_key: str
    file_name: str
    file_type: str
    file_size: int
    binding: str
    liquidation_item_id: Optional[str] = None
    uploaded_by: Optional[str] = None
    created_at: Optional[str] = None


class ReviewResponse(BaseModel):
    actor_id: str
    acted_at: str
    action: str
    comment: Optional[str] = None


class LiquidationResponse(BaseModel):
    id: str
    cash_advance_id: str
    user_id: str
    store_id: str
    ticket_id: Optional[int] = None
    liquidation_date: str
    remarks: Optional[str] = None
    status: str
    confidential: bool = False
    currency: str
    cash_advance_amount_cents: int
    total_amount_cents: int
    return_to_company_cents: int
    reimbursement_cents: int
    total_amount_display: str
    return_to_company_display: str
    reimbursement_display: str
    level1_review: Optional[ReviewResponse] = None
    level2_review: Optional[ReviewResponse] = None
    rejected_level: Optional[int] = None
    version: int
    items: List[LiquidationItemResponse] = []
    attachments: List[AttachmentResponse] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class DecisionResponse(BaseModel):
    level: int
    action: str
    from_status: str
    to_status: str
    liquidation: LiquidationResponse


class CashAdvanceResponse(BaseModel):
    id: str
    type: str
    status: str
    amount_cents: int
    amount_display: str


class ReceiptUploadResponse(BaseModel):
    file_key: str
    file_name: str
    file_type: str
    file_size: int


class ReceiptUrlResponse(BaseModel):
    attachment_id: str
    file_name: str
    url: str
    expires_in: int
