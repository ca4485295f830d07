"""
Unit tests for backoffice/services/audit_service.py

Session is a mock; each test inspects the AuditLog row handed to session.add.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from backoffice.core import approval
from backoffice.core import liquidation as domain
from backoffice.core.attachments import AttachmentInstructions, NewFile
from backoffice.core.liquidation import ItemInput
from backoffice.services import audit_service

from conftest import APPROVER_ID, NOW, OWNER_ID


def _mock_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


def _added(session):
    session.flush.assert_awaited()
    return session.add.call_args.args[0]


@pytest.mark.asyncio
async def test_filed_row_has_no_before_state(make_liquidation):
    liq = make_liquidation()
    session = _mock_session()

    await audit_service.record_filed(session, liq, OWNER_ID, "owner@example.com")

    row = _added(session)
    assert row.action == "LIQUIDATION_FILED"
    assert row.entity_type == "LIQUIDATION"
    assert row.entity_id == liq.id
    assert row.actor_id == uuid.UUID(OWNER_ID)
    assert row.before_state is None
    assert row.changed_fields is None
    assert row.after_state["total_amount_cents"] == 450_000
    assert row.extra_metadata["cash_advance_id"] == str(liq.cash_advance_id)


@pytest.mark.asyncio
async def test_edited_row_lists_changed_fields_and_receipts(make_liquidation):
    receipt = NewFile(
        file_key=f"receipts/{OWNER_ID}/old.jpg",
        file_name="old.jpg",
        file_type="image/jpeg",
        file_size=10,
    )
    liq = make_liquidation(new_files=[receipt])
    removed_id = liq.attachments[0].id
    before = audit_service.liquidation_snapshot(liq)

    result = domain.edit(
        liq,
        [ItemInput(meals=1_000)],
        AttachmentInstructions(remove_ids=frozenset({removed_id})),
        remarks="fixed",
        now=NOW,
    )
    session = _mock_session()
    await audit_service.record_edited(session, result, before, OWNER_ID)

    row = _added(session)
    assert row.action == "LIQUIDATION_EDITED"
    assert "total_amount_cents" in row.changed_fields
    assert "remarks" in row.changed_fields
    assert "status" not in row.changed_fields
    assert row.extra_metadata["removed_attachments"] == [str(removed_id)]
    assert row.extra_metadata["removed_file_keys"] == [f"receipts/{OWNER_ID}/old.jpg"]
    assert row.extra_metadata["added_attachments"] == []


@pytest.mark.asyncio
async def test_decision_row_uses_transition_action(make_liquidation):
    liq = make_liquidation(requester_position="HR")
    before = audit_service.liquidation_snapshot(liq)
    decision = approval.decide(liq, 1, "reject", APPROVER_ID, "no receipts", now=NOW)
    session = _mock_session()

    await audit_service.record_decision(session, decision, before)

    row = _added(session)
    assert row.action == "LIQUIDATION_REJECTED"
    assert row.actor_id == uuid.UUID(APPROVER_ID)
    assert row.changed_fields == ["rejected_level", "status"]
    assert row.extra_metadata == {
        "level": 1,
        "from_status": "pending",
        "to_status": "rejected",
        "comment": "no receipts",
        "confidential": True,
    }


@pytest.mark.asyncio
async def test_non_uuid_actor_is_stored_without_actor_id(make_liquidation):
    liq = make_liquidation()
    session = _mock_session()

    await audit_service.record_filed(session, liq, "system")

    assert _added(session).actor_id is None
