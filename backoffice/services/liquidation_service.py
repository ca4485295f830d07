"""
Liquidation service: filing, editing, approval, listing, deletion.

Each use case runs inside the caller's session and commits it before
returning. Edits and decisions lock the liquidation row and write it back with
a version check; a lost race raises Conflict and is retried once.
"""

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    retry,
    stop_after_attempt,
    retry_if_exception_type,
    before_sleep_log,
)
import structlog

from backoffice.config import settings
from backoffice.core import approval
from backoffice.core import liquidation as domain
from backoffice.core.attachments import Attachment, AttachmentInstructions, NewFile
from backoffice.core.errors import (
    AlreadyLiquidated,
    Conflict,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from backoffice.core.liquidation import (
    CashAdvance,
    EditResult,
    ItemInput,
    Liquidation,
    LiquidationStatus,
)
from backoffice.services import audit_service
from backoffice.services.audit_service import liquidation_snapshot
from backoffice.services.liquidation_repository import (
    LiquidationFilter,
    LiquidationRepository,
)
from backoffice.services.permissions import (
    APPROVE_CAPABILITY_BY_LEVEL,
    APPROVE_CONFIDENTIAL,
    APPROVE_LEVEL1,
    APPROVE_LEVEL2,
    MANAGE_LIQUIDATION,
    PermissionChecker,
)

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

UNSET = domain.UNSET

# Capabilities that allow seeing every liquidation, not only the caller's own
_REVIEW_CAPABILITIES = (MANAGE_LIQUIDATION, APPROVE_LEVEL1, APPROVE_LEVEL2)


@dataclass
class ReceiptUrl:
    attachment: Attachment
    url: str
    expires_in: int


@dataclass
class LiquidationPage:
    liquidations: list[Liquidation]
    total: int
    page: int
    limit: int


def retry_on_conflict(fn):
    """Roll back and run the use case one more time after a Conflict."""

    @retry(
        retry=retry_if_exception_type(Conflict),
        stop=stop_after_attempt(2),
        before_sleep=before_sleep_log(_std_logger, logging.WARNING),
        reraise=True,
    )
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except Conflict:
            await self.session.rollback()
            logger.warning("liquidation_conflict", operation=fn.__name__)
            raise

    return wrapper


class LiquidationService:
    def __init__(
        self,
        session: AsyncSession,
        permissions: PermissionChecker,
        storage,
        repository: Optional[LiquidationRepository] = None,
        eligible_types: Optional[frozenset[str]] = None,
    ):
        self.session = session
        self.permissions = permissions
        self.storage = storage
        self.repo = repository or LiquidationRepository(session)
        self.eligible_types = eligible_types or settings.eligible_cash_advance_types

    # ---------- helpers ----------

    async def _can(self, actor_id: str, capability: str) -> bool:
        return await self.permissions.has_capability(actor_id, capability)

    async def _require_owner_or(self, actor_id: str, owner_id: str, capability: str) -> None:
        if str(actor_id) == str(owner_id):
            return
        if not await self._can(actor_id, capability):
            raise PermissionDenied(
                "You do not have permission to modify this liquidation",
                details={"required": capability},
            )

    async def _can_review(self, actor_id: str) -> bool:
        for capability in _REVIEW_CAPABILITIES:
            if await self._can(actor_id, capability):
                return True
        return False

    async def _load(self, liquidation_id, *, for_update: bool = False) -> Liquidation:
        liq = await self.repo.get(liquidation_id, for_update=for_update)
        if liq is None:
            raise NotFound(
                "Liquidation not found",
                details={"liquidation_id": str(liquidation_id)},
            )
        return liq

    async def _check_uploaded(self, actor_id: str, new_files: Sequence[NewFile]) -> None:
        prefix = receipt_key_prefix(actor_id)
        for nf in new_files:
            if not nf.file_key.startswith(prefix):
                raise PermissionDenied(
                    "Receipt file was uploaded by another user",
                    details={"file_key": nf.file_key},
                )
            found = await asyncio.to_thread(self.storage.exists, nf.file_key)
            if not found:
                raise NotFound(
                    "Receipt file has not been uploaded",
                    details={"file_key": nf.file_key},
                )

    async def _delete_objects(self, removed: Sequence[Attachment]) -> None:
        """Storage cleanup after commit; a failure leaves an orphan object only."""
        for a in removed:
            try:
                await asyncio.to_thread(self.storage.delete_object, a.file_key)
            except Exception as e:
                logger.error("receipt_delete_failed", key=a.file_key, error=str(e))

    # ---------- use cases ----------

    async def file_liquidation(
        self,
        actor_id: str,
        cash_advance_id,
        store_id: str,
        liquidation_date: date,
        items: Sequence[ItemInput],
        remarks: Optional[str] = None,
        ticket_id: Optional[int] = None,
        new_files: Sequence[NewFile] = (),
        actor_email: Optional[str] = None,
    ) -> Liquidation:
        cash_advance = await self.repo.get_cash_advance(cash_advance_id)
        if cash_advance is None:
            raise NotFound(
                "Cash advance not found",
                details={"cash_advance_id": str(cash_advance_id)},
            )
        # Staff with manage_liquidation may file on the employee's behalf
        await self._require_owner_or(actor_id, cash_advance.requested_by, MANAGE_LIQUIDATION)

        if await self.repo.is_liquidated(cash_advance.id):
            raise AlreadyLiquidated(
                "This cash advance has already been liquidated",
                details={"cash_advance_id": str(cash_advance.id)},
            )

        await self._check_uploaded(actor_id, new_files)

        now = datetime.now(timezone.utc)
        liq = domain.create(
            cash_advance,
            user_id=cash_advance.requested_by,
            store_id=store_id,
            liquidation_date=liquidation_date,
            items=items,
            remarks=remarks,
            ticket_id=ticket_id,
            new_files=new_files,
            uploaded_by=actor_id,
            now=now,
            eligible_types=self.eligible_types,
        )
        await self.repo.add(liq)

        await audit_service.record_filed(self.session, liq, actor_id, actor_email)
        await self.session.commit()

        logger.info(
            "liquidation_filed",
            liquidation_id=str(liq.id),
            cash_advance_id=str(cash_advance.id),
            total_amount_cents=liq.total_amount,
            items=len(liq.items),
            attachments=len(liq.attachments),
        )
        return liq

    @retry_on_conflict
    async def edit_liquidation(
        self,
        actor_id: str,
        liquidation_id,
        items: Sequence[ItemInput],
        instructions: AttachmentInstructions = AttachmentInstructions(),
        remarks=UNSET,
        store_id=UNSET,
        ticket_id=UNSET,
        liquidation_date=UNSET,
        actor_email: Optional[str] = None,
    ) -> EditResult:
        liq = await self._load(liquidation_id, for_update=True)
        await self._require_owner_or(actor_id, liq.user_id, MANAGE_LIQUIDATION)
        domain.ensure_editable(liq)
        await self._check_uploaded(actor_id, instructions.new_files)

        before = liquidation_snapshot(liq)
        result = domain.edit(
            liq,
            items,
            instructions,
            remarks,
            store_id=store_id,
            ticket_id=ticket_id,
            liquidation_date=liquidation_date,
            uploaded_by=actor_id,
            now=datetime.now(timezone.utc),
        )
        await self.repo.save(liq)

        await audit_service.record_edited(self.session, result, before, actor_id, actor_email)
        await self.session.commit()
        await self._delete_objects(result.ledger.removed)

        logger.info(
            "liquidation_edited",
            liquidation_id=str(liq.id),
            total_amount_cents=liq.total_amount,
            items=len(liq.items),
            removed_attachments=len(result.ledger.removed),
            added_attachments=len(result.ledger.added),
        )
        return result

    @retry_on_conflict
    async def decide_liquidation(
        self,
        actor_id: str,
        liquidation_id,
        level,
        action,
        comment: Optional[str] = None,
        actor_email: Optional[str] = None,
    ) -> approval.Decision:
        level, action = approval.coerce_request(level, action)
        capability = APPROVE_CAPABILITY_BY_LEVEL[int(level)]
        if not await self._can(actor_id, capability):
            raise PermissionDenied(
                f"You do not have permission to act at Level {int(level)}",
                details={"required": capability},
            )

        liq = await self._load(liquidation_id, for_update=True)
        approval.check_transition(liq, level)
        if (
            level is approval.ApprovalLevel.LEVEL2
            and liq.confidential
            and not await self._can(actor_id, APPROVE_CONFIDENTIAL)
        ):
            raise PermissionDenied(
                "HR and Accounting liquidations can only be approved at Level 2 "
                "by the Managing Director",
                details={"required": APPROVE_CONFIDENTIAL},
            )

        before = liquidation_snapshot(liq)
        decision = approval.decide(
            liq, level, action, actor_id, comment, now=datetime.now(timezone.utc)
        )
        await self.repo.save(liq)

        await audit_service.record_decision(self.session, decision, before, actor_email)
        await self.session.commit()

        record = decision.audit
        logger.info(
            "liquidation_decided",
            liquidation_id=str(liq.id),
            level=int(record.level),
            action=record.action.value,
            from_status=record.from_status.value,
            to_status=record.to_status.value,
        )
        return decision

    async def list_liquidations(
        self,
        actor_id: str,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        mine: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> LiquidationPage:
        if status is not None:
            try:
                status = LiquidationStatus(status).value
            except ValueError:
                raise ValidationError(
                    f"Unknown status '{status}'",
                    details={"allowed": [s.value for s in LiquidationStatus]},
                )
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive")

        if mine or not await self._can_review(actor_id):
            user_id = str(actor_id)

        liquidations, total = await self.repo.list(
            LiquidationFilter(status=status, user_id=user_id), page=page, limit=limit
        )
        return LiquidationPage(liquidations=liquidations, total=total, page=page, limit=limit)

    async def get_liquidation(self, actor_id: str, liquidation_id) -> Liquidation:
        liq = await self._load(liquidation_id)
        if str(liq.user_id) != str(actor_id) and not await self._can_review(actor_id):
            raise PermissionDenied("You do not have permission to view this liquidation")
        return liq

    @retry_on_conflict
    async def delete_liquidation(
        self, actor_id: str, liquidation_id, actor_email: Optional[str] = None
    ) -> Liquidation:
        if not await self._can(actor_id, MANAGE_LIQUIDATION):
            raise PermissionDenied(
                "You do not have permission to delete liquidations",
                details={"required": MANAGE_LIQUIDATION},
            )
        liq = await self._load(liquidation_id, for_update=True)
        before = liquidation_snapshot(liq)
        domain.soft_delete(liq, datetime.now(timezone.utc))
        await self.repo.save(liq)

        await audit_service.record_deleted(self.session, liq, before, actor_id, actor_email)
        await self.session.commit()

        logger.info("liquidation_deleted", liquidation_id=str(liq.id))
        return liq

    async def get_receipt_url(self, actor_id: str, attachment_id) -> ReceiptUrl:
        found = await self.repo.get_attachment(attachment_id)
        if found is None:
            raise NotFound(
                "Receipt not found", details={"attachment_id": str(attachment_id)}
            )
        attachment, liq = found
        if str(liq.user_id) != str(actor_id) and not await self._can_review(actor_id):
            raise PermissionDenied("You do not have permission to view this receipt")

        expires_in = settings.RECEIPT_URL_EXPIRES_IN
        url = await asyncio.to_thread(
            self.storage.get_signed_url, attachment.file_key, expires_in
        )
        return ReceiptUrl(attachment=attachment, url=url, expires_in=expires_in)

    async def list_eligible_cash_advances(self, actor_id: str) -> list[CashAdvance]:
        return await self.repo.list_eligible_cash_advances(actor_id, self.eligible_types)


def receipt_key_prefix(user_id: str) -> str:
    return f"receipts/{user_id}/"


def new_receipt_key(user_id: str, filename: Optional[str]) -> str:
    """Storage key for a receipt uploaded by ``user_id``."""
    ext = filename.rsplit(".", 1)[-1].lower() if filename and "." in filename else "bin"
    return f"{receipt_key_prefix(user_id)}{uuid.uuid4()}.{ext}"
