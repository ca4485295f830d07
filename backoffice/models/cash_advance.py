import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import String, BigInteger, Date, DateTime, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from backoffice.database import Base


class CashAdvance(Base):
    """Cash advances are owned by the cash-advance module; read-only here."""

    __tablename__ = "cash_advances"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    requested_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="PHP")
    type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)
    # Requester position at request time, e.g. "HR" or "Accounting"
    requester_position: Mapped[Optional[str]] = mapped_column(String(100))
    purpose: Mapped[Optional[str]] = mapped_column(Text)
    date_requested: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_cash_advances_requested_by", "requested_by"),
        Index("idx_cash_advances_status", "status"),
    )
