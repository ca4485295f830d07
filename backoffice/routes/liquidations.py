import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from backoffice.core.attachments import Attachment, AttachmentInstructions
from backoffice.core.liquidation import CashAdvance, LevelReview, Liquidation
from backoffice.core.money import CURRENCY, EXPENSE_CATEGORIES, format_php
from backoffice.database import get_db
from backoffice.middleware.auth import get_current_user
from backoffice.middleware.authorization import get_permission_checker
from backoffice.schemas.common import PaginatedResponse, build_pagination
from backoffice.schemas.liquidation import (
    AttachmentResponse,
    CashAdvanceResponse,
    DecisionRequest,
    DecisionResponse,
    LiquidationCreate,
    LiquidationItemResponse,
    LiquidationResponse,
    LiquidationUpdate,
    ReviewResponse,
)
from backoffice.services.liquidation_service import UNSET, LiquidationService
from backoffice.services.permissions import PermissionChecker
from backoffice.services.storage import ReceiptStorage, get_storage

logger = structlog.get_logger()
router = APIRouter()


def get_liquidation_service(
    db: AsyncSession = Depends(get_db),
    permissions: PermissionChecker = Depends(get_permission_checker),
    storage: ReceiptStorage = Depends(get_storage),
) -> LiquidationService:
    return LiquidationService(db, permissions, storage)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _review_to_response(review: Optional[LevelReview]) -> Optional[ReviewResponse]:
    if review is None:
        return None
    return ReviewResponse(
        actor_id=review.actor_id,
        acted_at=review.acted_at.isoformat(),
        action=review.action.value,
        comment=review.comment,
    )


def attachment_to_response(a: Attachment) -> AttachmentResponse:
    return AttachmentResponse(
        id=str(a.id),
        file_key=a.file_key,
        file_name=a.file_name,
        file_type=a.file_type,
        file_size=a.file_size,
        binding=a.binding.kind.value,
        liquidation_item_id=str(a.binding.target_id) if a.binding.is_item_level else None,
        uploaded_by=a.uploaded_by,
        created_at=_iso(a.created_at),
    )


def _to_response(liq: Liquidation) -> LiquidationResponse:
    items = [
        LiquidationItemResponse(
            id=str(item.id),
            line_number=n,
            expense_date=_iso(item.expense_date),
            from_destination=item.from_destination,
            to_destination=item.to_destination,
            total_cents=item.total,
            total_display=format_php(item.total),
            remarks=item.remarks,
            **{f"{c}_cents": getattr(item, c) for c in EXPENSE_CATEGORIES},
        )
        for n, item in enumerate(liq.items, start=1)
    ]
    return LiquidationResponse(
        id=str(liq.id),
        cash_advance_id=str(liq.cash_advance_id),
        user_id=str(liq.user_id),
        store_id=liq.store_id,
        ticket_id=liq.ticket_id,
        liquidation_date=liq.liquidation_date.isoformat(),
        remarks=liq.remarks,
        status=liq.status.value,
        confidential=liq.confidential,
        currency=CURRENCY,
        cash_advance_amount_cents=liq.cash_advance_amount_cents,
        total_amount_cents=liq.total_amount,
        return_to_company_cents=liq.return_to_company,
        reimbursement_cents=liq.reimbursement,
        total_amount_display=format_php(liq.total_amount),
        return_to_company_display=format_php(liq.return_to_company),
        reimbursement_display=format_php(liq.reimbursement),
        level1_review=_review_to_response(liq.level1_review),
        level2_review=_review_to_response(liq.level2_review),
        rejected_level=int(liq.rejected_level) if liq.rejected_level else None,
        version=liq.version,
        items=items,
        attachments=[attachment_to_response(a) for a in liq.attachments],
        created_at=_iso(liq.created_at),
        updated_at=_iso(liq.updated_at),
    )


def _cash_advance_to_response(ca: CashAdvance) -> CashAdvanceResponse:
    return CashAdvanceResponse(
        id=str(ca.id),
        type=ca.type,
        status=ca.status,
        amount_cents=ca.amount_cents,
        amount_display=format_php(ca.amount_cents),
    )


@router.get("", response_model=PaginatedResponse[LiquidationResponse])
async def list_liquidations(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: Optional[str] = Query(None),
    mine: bool = Query(False),
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    result = await service.list_liquidations(
        current_user["user_id"],
        status=status_filter,
        user_id=user_id,
        mine=mine,
        page=page,
        limit=limit,
    )
    return PaginatedResponse(
        data=[_to_response(liq) for liq in result.liquidations],
        pagination=build_pagination(page, limit, result.total),
    )


@router.get("/eligible-cash-advances", response_model=list[CashAdvanceResponse])
async def list_eligible_cash_advances(
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    advances = await service.list_eligible_cash_advances(current_user["user_id"])
    return [_cash_advance_to_response(ca) for ca in advances]


@router.post("", response_model=LiquidationResponse, status_code=status.HTTP_201_CREATED)
async def file_liquidation(
    body: LiquidationCreate,
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    liq = await service.file_liquidation(
        current_user["user_id"],
        cash_advance_id=body.cash_advance_id,
        store_id=body.store_id,
        liquidation_date=body.liquidation_date,
        items=[i.to_input() for i in body.items],
        remarks=body.remarks,
        ticket_id=body.ticket_id,
        new_files=[r.to_new_file() for r in body.receipts],
        actor_email=current_user.get("email"),
    )
    return _to_response(liq)


@router.get("/{liquidation_id}", response_model=LiquidationResponse)
async def get_liquidation(
    liquidation_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    liq = await service.get_liquidation(current_user["user_id"], liquidation_id)
    return _to_response(liq)


@router.put("/{liquidation_id}", response_model=LiquidationResponse)
async def edit_liquidation(
    liquidation_id: uuid.UUID,
    body: LiquidationUpdate,
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    provided = body.model_fields_set
    header = {
        name: getattr(body, name) if name in provided else UNSET
        for name in ("remarks", "store_id", "ticket_id", "liquidation_date")
    }
    result = await service.edit_liquidation(
        current_user["user_id"],
        liquidation_id,
        items=[i.to_input() for i in body.items],
        instructions=AttachmentInstructions(
            keep_ids=frozenset(body.keep_attachment_ids),
            remove_ids=frozenset(body.remove_attachment_ids),
            new_files=tuple(r.to_new_file() for r in body.receipts),
        ),
        actor_email=current_user.get("email"),
        **header,
    )
    return _to_response(result.liquidation)


@router.post("/{liquidation_id}/decision", response_model=DecisionResponse)
async def decide_liquidation(
    liquidation_id: uuid.UUID,
    body: DecisionRequest,
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    decision = await service.decide_liquidation(
        current_user["user_id"],
        liquidation_id,
        level=body.level,
        action=body.action,
        comment=body.comment,
        actor_email=current_user.get("email"),
    )
    record = decision.audit
    return DecisionResponse(
        level=int(record.level),
        action=record.action.value,
        from_status=record.from_status.value,
        to_status=record.to_status.value,
        liquidation=_to_response(decision.liquidation),
    )


@router.delete("/{liquidation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_liquidation(
    liquidation_id: uuid.UUID,
    current_user: dict = Depends(get_current_user),
    service: LiquidationService = Depends(get_liquidation_service),
):
    await service.delete_liquidation(
        current_user["user_id"], liquidation_id, actor_email=current_user.get("email")
    )
