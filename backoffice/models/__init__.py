"""Central model registry: import all models so Alembic autodiscover works."""

from backoffice.database import Base  # noqa: F401

from backoffice.models.cash_advance import CashAdvance  # noqa: F401
from backoffice.models.liquidation import (  # noqa: F401
    Liquidation,
    LiquidationItem,
    LiquidationAttachment,
)
from backoffice.models.audit_log import AuditLog  # noqa: F401
