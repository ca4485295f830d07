"""
Attachment ledger: which receipt belongs to which expense row.

A receipt is bound either to the liquidation as a whole (general) or to one
line item. Line items are replaced wholesale on every edit, so item-level
bindings have to be carried to the item that supersedes the old row, removed
explicitly by the caller, or the edit is refused with DanglingAttachment.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional

from backoffice.core.errors import (
    DanglingAttachment,
    InvalidBinding,
    NotFound,
    ValidationError,
)


class BindingKind(str, Enum):
    GENERAL = "general"
    ITEM = "item"


@dataclass(frozen=True)
class AttachmentBinding:
    kind: BindingKind
    target_id: uuid.UUID

    @classmethod
    def general(cls, liquidation_id: uuid.UUID) -> "AttachmentBinding":
        return cls(BindingKind.GENERAL, liquidation_id)

    @classmethod
    def item(cls, item_id: uuid.UUID) -> "AttachmentBinding":
        return cls(BindingKind.ITEM, item_id)

    @property
    def is_item_level(self) -> bool:
        return self.kind is BindingKind.ITEM


@dataclass(frozen=True)
class Attachment:
    id: uuid.UUID
    file_key: str
    file_name: str
    file_type: str
    file_size: int
    binding: AttachmentBinding
    uploaded_by: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class NewFile:
    """A receipt already stored under ``file_key``, waiting to be recorded.

    ``item_ref`` names the line item (by its client reference) the receipt
    belongs to; ``None`` makes it a general attachment.
    """

    file_key: str
    file_name: str
    file_type: str
    file_size: int
    item_ref: Optional[str] = None


@dataclass(frozen=True)
class AttachmentInstructions:
    keep_ids: frozenset[uuid.UUID] = frozenset()
    remove_ids: frozenset[uuid.UUID] = frozenset()
    new_files: tuple[NewFile, ...] = ()


@dataclass(frozen=True)
class LedgerResult:
    attachments: list[Attachment] = field(default_factory=list)
    removed: list[Attachment] = field(default_factory=list)
    added: list[Attachment] = field(default_factory=list)


def bind_to_item(
    attachment: Attachment, item_id: uuid.UUID, item_ids: Iterable[uuid.UUID]
) -> Attachment:
    if item_id not in set(item_ids):
        raise InvalidBinding(
            "Attachment cannot be bound to an item outside this liquidation",
            details={"attachment_id": str(attachment.id), "item_id": str(item_id)},
        )
    return replace(attachment, binding=AttachmentBinding.item(item_id))


def check_bindings(
    attachments: Iterable[Attachment],
    liquidation_id: uuid.UUID,
    item_ids: Iterable[uuid.UUID],
) -> None:
    """Every binding must point at this liquidation or one of its current items."""
    current = set(item_ids)
    for a in attachments:
        if a.binding.is_item_level:
            if a.binding.target_id not in current:
                raise InvalidBinding(
                    "Attachment is bound to an item that is not part of this liquidation",
                    details={"attachment_id": str(a.id), "item_id": str(a.binding.target_id)},
                )
        elif a.binding.target_id != liquidation_id:
            raise InvalidBinding(
                "Attachment belongs to another liquidation",
                details={"attachment_id": str(a.id)},
            )


def remap_for_replacement(
    current: Iterable[Attachment],
    successors: Mapping[uuid.UUID, uuid.UUID],
    new_item_ids: Iterable[uuid.UUID],
    remove_ids: Iterable[uuid.UUID] = (),
) -> list[Attachment]:
    """
    Carry item-level attachments across an item-set replacement.

    ``successors`` maps an old item id to the new item that replaces it.
    Attachments scheduled for removal are passed through unchanged; reconcile()
    drops them afterwards.
    """
    removing = set(remove_ids)
    new_ids = set(new_item_ids)
    carried: list[Attachment] = []
    dangling: list[str] = []

    for a in current:
        if not a.binding.is_item_level or a.id in removing:
            carried.append(a)
            continue
        if a.binding.target_id in new_ids:
            carried.append(a)
            continue
        successor = successors.get(a.binding.target_id)
        if successor is None:
            dangling.append(str(a.id))
            continue
        carried.append(bind_to_item(a, successor, new_ids))

    if dangling:
        raise DanglingAttachment(
            "Receipts are bound to expense rows that this edit removes; "
            "remove them or carry them to a replacing row",
            details={"attachment_ids": dangling},
        )
    return carried


def reconcile(
    current: Iterable[Attachment],
    keep_ids: Iterable[uuid.UUID],
    remove_ids: Iterable[uuid.UUID],
    new_files: Iterable[NewFile],
    *,
    liquidation_id: uuid.UUID,
    item_ids: Iterable[uuid.UUID],
    item_refs: Optional[Mapping[str, uuid.UUID]] = None,
    uploaded_by: Optional[str] = None,
    now: Optional[datetime] = None,
    new_id: Callable[[], uuid.UUID] = uuid.uuid4,
) -> LedgerResult:
    current = list(current)
    keep = set(keep_ids)
    remove = set(remove_ids)
    item_ids = list(item_ids)
    item_refs = item_refs or {}
    known = {a.id for a in current}

    overlap = keep & remove
    if overlap:
        raise ValidationError(
            "An attachment cannot be both kept and removed",
            details={"attachment_ids": sorted(str(i) for i in overlap)},
        )
    missing = (keep | remove) - known
    if missing:
        raise NotFound(
            "Attachment does not belong to this liquidation",
            details={"attachment_ids": sorted(str(i) for i in missing)},
        )

    kept = [a for a in current if a.id not in remove]
    removed = [a for a in current if a.id in remove]

    seen_keys = {a.file_key for a in kept}
    added: list[Attachment] = []
    for nf in new_files:
        if nf.file_key in seen_keys:
            raise ValidationError(
                "Receipt file is already attached",
                details={"file_key": nf.file_key},
            )
        seen_keys.add(nf.file_key)

        attachment = Attachment(
            id=new_id(),
            file_key=nf.file_key,
            file_name=nf.file_name,
            file_type=nf.file_type,
            file_size=nf.file_size,
            binding=AttachmentBinding.general(liquidation_id),
            uploaded_by=uploaded_by,
            created_at=now,
        )
        if nf.item_ref is not None:
            item_id = item_refs.get(nf.item_ref)
            if item_id is None:
                raise InvalidBinding(
                    "Receipt references an unknown expense row",
                    details={"item_ref": nf.item_ref},
                )
            attachment = bind_to_item(attachment, item_id, item_ids)
        added.append(attachment)

    final = kept + added
    check_bindings(final, liquidation_id, item_ids)
    return LedgerResult(attachments=final, removed=removed, added=added)
