"""
Typed failures raised by the liquidation core.

Every error carries a stable ``code`` so callers can translate it into a
user-facing message. Nothing here logs; the HTTP layer maps these to
``{"error": {"code": ..., "message": ...}}``.
"""

from typing import Optional


class LiquidationError(Exception):
    code = "LIQUIDATION_ERROR"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LiquidationError):
    """Malformed or out-of-range input."""

    code = "VALIDATION_ERROR"


class InvalidState(LiquidationError):
    """Operation not legal for the liquidation's current status."""

    code = "INVALID_STATE"


class IllegalTransition(LiquidationError):
    """Wrong level/status pairing for an approval decision."""

    code = "ILLEGAL_TRANSITION"


class AlreadyDecided(LiquidationError):
    """The requested level has already acted on this liquidation."""

    code = "ALREADY_DECIDED"


class AlreadyLiquidated(LiquidationError):
    code = "ALREADY_LIQUIDATED"


class NotFound(LiquidationError):
    code = "NOT_FOUND"


class InvalidBinding(LiquidationError):
    """Attachment bound to an item outside the current item set."""

    code = "INVALID_BINDING"


class DanglingAttachment(LiquidationError):
    """Item-set replacement would leave an attachment without its item."""

    code = "DANGLING_ATTACHMENT"


class Conflict(LiquidationError):
    """Optimistic-concurrency collision; the only retryable failure."""

    code = "CONFLICT"


class PermissionDenied(LiquidationError):
    code = "PERMISSION_DENIED"
