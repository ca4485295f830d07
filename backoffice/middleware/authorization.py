from fastapi import Depends

from backoffice.middleware.auth import get_current_user
from backoffice.services.permissions import ClaimsPermissionChecker, PermissionChecker


async def get_permission_checker(
    current_user: dict = Depends(get_current_user),
) -> PermissionChecker:
    """Capability lookups for the caller, resolved from role and token grants."""
    return ClaimsPermissionChecker(current_user)
