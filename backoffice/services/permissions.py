"""
Capability checks for liquidation use cases.

Permission storage lives with the identity provider; a verified token carries
the actor's role and any capabilities granted to them individually.
"""

from typing import Iterable, Protocol

MANAGE_LIQUIDATION = "manage_liquidation"
APPROVE_LEVEL1 = "approve_liquidations_level1"
APPROVE_LEVEL2 = "approve_liquidations_level2"
# Level 2 on liquidations filed by HR or Accounting staff
APPROVE_CONFIDENTIAL = "approve_confidential_liquidations"

APPROVE_CAPABILITY_BY_LEVEL = {
    1: APPROVE_LEVEL1,
    2: APPROVE_LEVEL2,
}

ROLE_CAPABILITIES: dict[str, frozenset[str]] = {
    "admin": frozenset({MANAGE_LIQUIDATION, APPROVE_LEVEL1, APPROVE_LEVEL2}),
    "managing_director": frozenset({APPROVE_LEVEL1, APPROVE_LEVEL2, APPROVE_CONFIDENTIAL}),
    "operations_manager": frozenset({APPROVE_LEVEL1}),
    "accounting": frozenset({MANAGE_LIQUIDATION}),
    "employee": frozenset(),
}


class PermissionChecker(Protocol):
    async def has_capability(self, actor_id: str, capability: str) -> bool:
        ...


class ClaimsPermissionChecker:
    """Answers capability questions for the authenticated caller only."""

    def __init__(self, current_user: dict):
        self.user_id = str(current_user["user_id"])
        self.capabilities = capabilities_for(
            current_user.get("role", ""), current_user.get("capabilities") or ()
        )

    async def has_capability(self, actor_id: str, capability: str) -> bool:
        if str(actor_id) != self.user_id:
            return False
        return capability in self.capabilities


def capabilities_for(role: str, granted: Iterable[str] = ()) -> frozenset[str]:
    return ROLE_CAPABILITIES.get(role, frozenset()) | frozenset(granted)
