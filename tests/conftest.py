import uuid
from datetime import date, datetime, timezone
from typing import Optional

import pytest

from backoffice.core import liquidation as domain
from backoffice.core.liquidation import CashAdvance, ItemInput

OWNER_ID = "0b6f3f0e-6d1c-4a8e-9d55-1f2a3b4c5d01"
APPROVER_ID = "0b6f3f0e-6d1c-4a8e-9d55-1f2a3b4c5d02"
STRANGER_ID = "0b6f3f0e-6d1c-4a8e-9d55-1f2a3b4c5d03"
NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakePermissions:
    """Grants capabilities per actor id."""

    def __init__(self, grants: Optional[dict] = None):
        self.grants = {k: set(v) for k, v in (grants or {}).items()}

    async def has_capability(self, actor_id: str, capability: str) -> bool:
        return capability in self.grants.get(str(actor_id), set())


@pytest.fixture
def make_cash_advance():
    def _make(
        amount_cents: int = 500_000,
        status: str = "approved",
        type: str = "support",
        requested_by: str = OWNER_ID,
        requester_position: Optional[str] = None,
    ) -> CashAdvance:
        return CashAdvance(
            id=uuid.uuid4(),
            requested_by=requested_by,
            amount_cents=amount_cents,
            status=status,
            type=type,
            requester_position=requester_position,
        )

    return _make


@pytest.fixture
def make_liquidation(make_cash_advance):
    def _make(amount_cents: int = 500_000, items=None, new_files=(), requester_position=None):
        return domain.create(
            make_cash_advance(amount_cents=amount_cents, requester_position=requester_position),
            user_id=OWNER_ID,
            store_id="STORE-01",
            liquidation_date=date(2026, 3, 1),
            items=items or [ItemInput(meals=450_000)],
            new_files=new_files,
            now=NOW,
        )

    return _make
