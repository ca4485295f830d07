"""
Audit trail for liquidations.

One row per successful mutation: a flat snapshot of the liquidation before and
after, the fields that differ, and event details (receipts added/removed,
approval level and transition). Rows are flushed into the caller's
transaction and committed with the change they describe.
"""

from typing import Optional
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from backoffice.core.approval import Decision
from backoffice.core.liquidation import EditResult, Liquidation
from backoffice.models.audit_log import AuditLog

logger = structlog.get_logger()

ENTITY_TYPE = "LIQUIDATION"

FILED = "LIQUIDATION_FILED"
EDITED = "LIQUIDATION_EDITED"
DELETED = "LIQUIDATION_DELETED"


def liquidation_snapshot(liq: Liquidation) -> dict:
    """Flat view of a liquidation for audit before/after state."""
    return {
        "status": liq.status.value,
        "store_id": liq.store_id,
        "ticket_id": liq.ticket_id,
        "liquidation_date": liq.liquidation_date.isoformat() if liq.liquidation_date else None,
        "remarks": liq.remarks,
        "total_amount_cents": liq.total_amount,
        "return_to_company_cents": liq.return_to_company,
        "reimbursement_cents": liq.reimbursement,
        "item_count": len(liq.items),
        "attachment_ids": sorted(str(a.id) for a in liq.attachments),
        "rejected_level": int(liq.rejected_level) if liq.rejected_level else None,
        "deleted": liq.is_deleted,
    }


def changed_fields(before: Optional[dict], after: dict) -> Optional[list[str]]:
    if not before:
        return None
    changed = [k for k in sorted(set(before) | set(after)) if before.get(k) != after.get(k)]
    return changed or None


def _actor_uuid(actor_id: Optional[str]) -> Optional[uuid.UUID]:
    if actor_id is None:
        return None
    try:
        return uuid.UUID(str(actor_id))
    except ValueError:
        logger.warning("audit_invalid_actor_id", actor_id=str(actor_id))
        return None


async def _write(
    session: AsyncSession,
    liq: Liquidation,
    action: str,
    actor_id: Optional[str],
    before: Optional[dict],
    details: dict,
    actor_email: Optional[str],
) -> AuditLog:
    after = liquidation_snapshot(liq)
    audit = AuditLog(
        actor_id=_actor_uuid(actor_id),
        actor_email=actor_email,
        action=action,
        entity_type=ENTITY_TYPE,
        entity_id=liq.id,
        before_state=before,
        after_state=after,
        changed_fields=changed_fields(before, after),
        request_id=structlog.contextvars.get_contextvars().get("request_id"),
        extra_metadata=details,
    )
    session.add(audit)
    await session.flush()

    logger.info(
        "audit_log_created",
        action=action,
        liquidation_id=str(liq.id),
        actor_id=actor_id,
    )
    return audit


async def record_filed(
    session: AsyncSession,
    liq: Liquidation,
    actor_id: str,
    actor_email: Optional[str] = None,
) -> AuditLog:
    return await _write(
        session,
        liq,
        FILED,
        actor_id,
        None,
        {
            "cash_advance_id": str(liq.cash_advance_id),
            "added_attachments": [str(a.id) for a in liq.attachments],
        },
        actor_email,
    )


async def record_edited(
    session: AsyncSession,
    result: EditResult,
    before: dict,
    actor_id: str,
    actor_email: Optional[str] = None,
) -> AuditLog:
    ledger = result.ledger
    return await _write(
        session,
        result.liquidation,
        EDITED,
        actor_id,
        before,
        {
            "removed_attachments": [str(a.id) for a in ledger.removed],
            "removed_file_keys": [a.file_key for a in ledger.removed],
            "added_attachments": [str(a.id) for a in ledger.added],
        },
        actor_email,
    )


async def record_decision(
    session: AsyncSession,
    decision: Decision,
    before: dict,
    actor_email: Optional[str] = None,
) -> AuditLog:
    record = decision.audit
    return await _write(
        session,
        decision.liquidation,
        record.audit_action,
        record.actor_id,
        before,
        {
            "level": int(record.level),
            "from_status": record.from_status.value,
            "to_status": record.to_status.value,
            "comment": record.comment,
            "confidential": decision.liquidation.confidential,
        },
        actor_email,
    )


async def record_deleted(
    session: AsyncSession,
    liq: Liquidation,
    before: dict,
    actor_id: str,
    actor_email: Optional[str] = None,
) -> AuditLog:
    return await _write(session, liq, DELETED, actor_id, before, {}, actor_email)
