import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    BigInteger,
    Integer,
    Date,
    DateTime,
    Text,
    ForeignKey,
    CheckConstraint,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backoffice.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Liquidation(Base):
    __tablename__ = "liquidations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    cash_advance_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cash_advances.id"), nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ticket_id: Mapped[Optional[int]] = mapped_column(BigInteger)
    liquidation_date: Mapped[date] = mapped_column(Date, nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(30), default="pending", nullable=False)

    # Derived; rewritten from the items on every save
    total_amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    return_to_company_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    reimbursement_cents: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    level1_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    level1_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    level1_reviewer_comment: Mapped[Optional[str]] = mapped_column(Text)
    level2_approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    level2_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    level2_reviewer_comment: Mapped[Optional[str]] = mapped_column(Text)
    rejected_level: Mapped[Optional[int]] = mapped_column(Integer)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    cash_advance: Mapped["CashAdvance"] = relationship(lazy="selectin")  # noqa: F821
    items: Mapped[list["LiquidationItem"]] = relationship(
        back_populates="liquidation",
        cascade="all, delete-orphan",
        order_by="LiquidationItem.line_number",
        lazy="selectin",
    )
    attachments: Mapped[list["LiquidationAttachment"]] = relationship(
        back_populates="liquidation",
        cascade="all, delete-orphan",
        order_by="LiquidationAttachment.created_at",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','level1_approved','approved','rejected')",
            name="chk_liquidation_status",
        ),
        CheckConstraint(
            "return_to_company_cents = 0 OR reimbursement_cents = 0",
            name="chk_liquidation_single_balance",
        ),
        CheckConstraint(
            "level2_approved_by IS NULL OR level1_approved_by IS NOT NULL",
            name="chk_liquidation_level_order",
        ),
        CheckConstraint(
            "rejected_level IS NULL OR rejected_level IN (1, 2)",
            name="chk_liquidation_rejected_level",
        ),
        # One live liquidation per cash advance
        Index(
            "uq_liquidations_cash_advance_live",
            "cash_advance_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
        Index("idx_liquidations_user", "user_id"),
        Index("idx_liquidations_status", "status"),
    )


class LiquidationItem(Base):
    __tablename__ = "liquidation_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    liquidation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("liquidations.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    expense_date: Mapped[Optional[date]] = mapped_column(Date)
    from_destination: Mapped[str] = mapped_column(String(255), default="")
    to_destination: Mapped[str] = mapped_column(String(255), default="")
    jeep_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    bus_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    fx_van_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    gas_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    toll_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    meals_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    lodging_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    others_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    total_cents: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    liquidation: Mapped["Liquidation"] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint(
            "jeep_cents >= 0 AND bus_cents >= 0 AND fx_van_cents >= 0 AND gas_cents >= 0 "
            "AND toll_cents >= 0 AND meals_cents >= 0 AND lodging_cents >= 0 AND others_cents >= 0",
            name="chk_liquidation_item_amounts",
        ),
        Index("idx_liquidation_items_liquidation", "liquidation_id"),
    )


class LiquidationAttachment(Base):
    __tablename__ = "liquidation_attachments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    liquidation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("liquidations.id", ondelete="CASCADE"),
        nullable=False,
    )
    # NULL for receipts attached to the liquidation as a whole
    liquidation_item_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("liquidation_items.id", ondelete="RESTRICT"),
    )
    file_key: Mapped[str] = mapped_column(String(512), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_type: Mapped[str] = mapped_column(String(100), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    liquidation: Mapped["Liquidation"] = relationship(back_populates="attachments")
    item: Mapped[Optional["LiquidationItem"]] = relationship(lazy="raise")

    __table_args__ = (
        CheckConstraint("file_size >= 0", name="chk_liquidation_attachment_size"),
        Index("idx_liquidation_attachments_liquidation", "liquidation_id"),
        Index("idx_liquidation_attachments_item", "liquidation_item_id"),
    )
