"""
Unit tests for backoffice/core/attachments.py

Tests: reconcile (keep/remove/new files), bind_to_item, check_bindings,
       remap_for_replacement (carry vs. dangling receipts).
"""

import uuid
from typing import Optional

import pytest

from backoffice.core.attachments import (
    Attachment,
    AttachmentBinding,
    NewFile,
    bind_to_item,
    check_bindings,
    reconcile,
    remap_for_replacement,
)
from backoffice.core.errors import (
    DanglingAttachment,
    InvalidBinding,
    NotFound,
    ValidationError,
)

LIQ_ID = uuid.uuid4()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_attachment(item_id: Optional[uuid.UUID] = None, key: Optional[str] = None) -> Attachment:
    binding = AttachmentBinding.item(item_id) if item_id else AttachmentBinding.general(LIQ_ID)
    return Attachment(
        id=uuid.uuid4(),
        file_key=key or f"receipts/u/{uuid.uuid4()}.png",
        file_name="receipt.png",
        file_type="image/png",
        file_size=2048,
        binding=binding,
    )


def _new_file(key: str = "receipts/u/new.pdf", item_ref: Optional[str] = None) -> NewFile:
    return NewFile(
        file_key=key,
        file_name="new.pdf",
        file_type="application/pdf",
        file_size=1024,
        item_ref=item_ref,
    )


# ---------------------------------------------------------------------------
# reconcile
# ---------------------------------------------------------------------------


def test_reconcile_removes_listed_and_keeps_untouched():
    item_id = uuid.uuid4()
    general = _make_attachment()
    bound = _make_attachment(item_id)
    doomed = _make_attachment()

    result = reconcile(
        [general, bound, doomed],
        keep_ids=[bound.id],
        remove_ids=[doomed.id],
        new_files=[],
        liquidation_id=LIQ_ID,
        item_ids=[item_id],
    )

    assert [a.id for a in result.attachments] == [general.id, bound.id]
    assert result.removed == [doomed]
    assert result.added == []


def test_reconcile_unknown_remove_id_is_not_found():
    with pytest.raises(NotFound):
        reconcile(
            [_make_attachment()],
            keep_ids=[],
            remove_ids=[uuid.uuid4()],
            new_files=[],
            liquidation_id=LIQ_ID,
            item_ids=[],
        )


def test_reconcile_unknown_keep_id_is_not_found():
    with pytest.raises(NotFound):
        reconcile(
            [],
            keep_ids=[uuid.uuid4()],
            remove_ids=[],
            new_files=[],
            liquidation_id=LIQ_ID,
            item_ids=[],
        )


def test_reconcile_keep_and_remove_same_id_is_rejected():
    a = _make_attachment()
    with pytest.raises(ValidationError):
        reconcile(
            [a],
            keep_ids=[a.id],
            remove_ids=[a.id],
            new_files=[],
            liquidation_id=LIQ_ID,
            item_ids=[],
        )


def test_reconcile_binds_new_files_by_item_ref():
    item_id = uuid.uuid4()
    result = reconcile(
        [],
        keep_ids=[],
        remove_ids=[],
        new_files=[_new_file("k1", item_ref="row-1"), _new_file("k2")],
        liquidation_id=LIQ_ID,
        item_ids=[item_id],
        item_refs={"row-1": item_id},
        uploaded_by="uploader",
    )

    by_key = {a.file_key: a for a in result.attachments}
    assert by_key["k1"].binding == AttachmentBinding.item(item_id)
    assert by_key["k2"].binding == AttachmentBinding.general(LIQ_ID)
    assert all(a.uploaded_by == "uploader" for a in result.added)
    assert len(result.added) == 2


def test_reconcile_unknown_item_ref_is_invalid_binding():
    with pytest.raises(InvalidBinding):
        reconcile(
            [],
            keep_ids=[],
            remove_ids=[],
            new_files=[_new_file(item_ref="missing")],
            liquidation_id=LIQ_ID,
            item_ids=[uuid.uuid4()],
            item_refs={},
        )


def test_reconcile_rejects_duplicate_file_key():
    existing = _make_attachment(key="receipts/u/same.png")
    with pytest.raises(ValidationError):
        reconcile(
            [existing],
            keep_ids=[],
            remove_ids=[],
            new_files=[_new_file("receipts/u/same.png")],
            liquidation_id=LIQ_ID,
            item_ids=[],
        )


def test_reconcile_allows_reusing_key_of_removed_attachment():
    existing = _make_attachment(key="receipts/u/same.png")
    result = reconcile(
        [existing],
        keep_ids=[],
        remove_ids=[existing.id],
        new_files=[_new_file("receipts/u/same.png")],
        liquidation_id=LIQ_ID,
        item_ids=[],
    )
    assert [a.file_key for a in result.attachments] == ["receipts/u/same.png"]
    assert result.removed == [existing]


# ---------------------------------------------------------------------------
# bind_to_item / check_bindings
# ---------------------------------------------------------------------------


def test_bind_to_item_outside_item_set_fails():
    with pytest.raises(InvalidBinding):
        bind_to_item(_make_attachment(), uuid.uuid4(), [uuid.uuid4()])


def test_bind_to_item_returns_rebound_copy():
    item_id = uuid.uuid4()
    original = _make_attachment()
    rebound = bind_to_item(original, item_id, [item_id])
    assert rebound.binding == AttachmentBinding.item(item_id)
    assert rebound.id == original.id
    assert original.binding.is_item_level is False


def test_check_bindings_rejects_foreign_liquidation():
    foreign = Attachment(
        id=uuid.uuid4(),
        file_key="k",
        file_name="f",
        file_type="image/png",
        file_size=1,
        binding=AttachmentBinding.general(uuid.uuid4()),
    )
    with pytest.raises(InvalidBinding):
        check_bindings([foreign], LIQ_ID, [])


# ---------------------------------------------------------------------------
# remap_for_replacement
# ---------------------------------------------------------------------------


def test_remap_carries_receipt_to_successor_item():
    old_item, new_item = uuid.uuid4(), uuid.uuid4()
    a = _make_attachment(old_item)

    carried = remap_for_replacement([a], {old_item: new_item}, [new_item])

    assert carried[0].id == a.id
    assert carried[0].binding == AttachmentBinding.item(new_item)


def test_remap_without_successor_is_dangling():
    old_item = uuid.uuid4()
    a = _make_attachment(old_item)
    general = _make_attachment()

    with pytest.raises(DanglingAttachment) as exc:
        remap_for_replacement([a, general], {}, [uuid.uuid4()])
    assert exc.value.details["attachment_ids"] == [str(a.id)]


def test_remap_lets_removed_receipts_through():
    old_item = uuid.uuid4()
    a = _make_attachment(old_item)

    carried = remap_for_replacement([a], {}, [uuid.uuid4()], remove_ids=[a.id])
    assert carried == [a]


def test_remap_leaves_general_receipts_alone():
    general = _make_attachment()
    assert remap_for_replacement([general], {}, []) == [general]
