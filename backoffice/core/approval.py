"""
Two-level approval state machine for liquidations.

    pending --L1 approve--> level1_approved --L2 approve--> approved
       |                          |
       +--L1 reject--+    +--L2 reject
                     v    v
                   rejected

``approved`` and ``rejected`` are absorbing. A request for a level that has
already acted fails with AlreadyDecided so duplicate submissions never record
a second review; every other illegal pairing is an IllegalTransition.
Money fields are never consulted here.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from backoffice.core.errors import (
    AlreadyDecided,
    IllegalTransition,
    InvalidState,
    ValidationError,
)
from backoffice.core.liquidation import (
    ApprovalAction,
    ApprovalLevel,
    LevelReview,
    Liquidation,
    LiquidationStatus,
)

__all__ = [
    "ApprovalAction",
    "ApprovalLevel",
    "Decision",
    "DecisionRecord",
    "REQUIRED_STATUS",
    "check_transition",
    "coerce_request",
    "decide",
    "next_status",
]

REQUIRED_STATUS = {
    ApprovalLevel.LEVEL1: LiquidationStatus.PENDING,
    ApprovalLevel.LEVEL2: LiquidationStatus.LEVEL1_APPROVED,
}

_APPROVED_STATUS = {
    ApprovalLevel.LEVEL1: LiquidationStatus.LEVEL1_APPROVED,
    ApprovalLevel.LEVEL2: LiquidationStatus.APPROVED,
}


@dataclass(frozen=True)
class DecisionRecord:
    liquidation_id: uuid.UUID
    level: ApprovalLevel
    action: ApprovalAction
    actor_id: str
    decided_at: datetime
    from_status: LiquidationStatus
    to_status: LiquidationStatus
    comment: Optional[str] = None

    @property
    def audit_action(self) -> str:
        if self.action is ApprovalAction.REJECT:
            return "LIQUIDATION_REJECTED"
        if self.to_status is LiquidationStatus.APPROVED:
            return "LIQUIDATION_APPROVED"
        return "LIQUIDATION_LEVEL1_APPROVED"


@dataclass(frozen=True)
class Decision:
    liquidation: Liquidation
    audit: DecisionRecord


def coerce_request(level, action) -> tuple[ApprovalLevel, ApprovalAction]:
    try:
        level = ApprovalLevel(int(level))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid approval level: {level!r}. Must be 1 or 2.")
    try:
        action = ApprovalAction(action)
    except ValueError:
        raise ValidationError(
            f"Invalid action: {action!r}. Must be 'approve' or 'reject'."
        )
    return level, action


def next_status(level: ApprovalLevel, action: ApprovalAction) -> LiquidationStatus:
    if action is ApprovalAction.REJECT:
        return LiquidationStatus.REJECTED
    return _APPROVED_STATUS[level]


def check_transition(liquidation: Liquidation, level: ApprovalLevel) -> None:
    """Raise unless ``level`` may act on the liquidation right now."""
    if liquidation.is_deleted:
        raise InvalidState("Liquidation has been deleted")

    required = REQUIRED_STATUS[level]
    if liquidation.status is required:
        return

    details = {"status": liquidation.status.value, "level": int(level)}
    if liquidation.review(level) is not None:
        raise AlreadyDecided(
            f"Level {int(level)} has already acted on this liquidation",
            details=details,
        )
    if level is ApprovalLevel.LEVEL2 and liquidation.status is LiquidationStatus.PENDING:
        raise IllegalTransition(
            "Liquidation must be approved at Level 1 first",
            details=details,
        )
    raise IllegalTransition(
        f"Liquidation cannot be processed at Level {int(level)}. "
        f"Current status: {liquidation.status.value}",
        details=details,
    )


def decide(
    liquidation: Liquidation,
    level: Union[ApprovalLevel, int],
    action: Union[ApprovalAction, str],
    actor_id: str,
    comment: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Decision:
    level, action = coerce_request(level, action)
    if not actor_id:
        raise ValidationError("Actor is required")
    check_transition(liquidation, level)

    decided_at = now or datetime.now(timezone.utc)
    from_status = liquidation.status
    to_status = next_status(level, action)

    liquidation._record_decision(
        level,
        LevelReview(
            actor_id=str(actor_id),
            acted_at=decided_at,
            action=action,
            comment=comment or None,
        ),
        to_status,
    )

    return Decision(
        liquidation=liquidation,
        audit=DecisionRecord(
            liquidation_id=liquidation.id,
            level=level,
            action=action,
            actor_id=str(actor_id),
            decided_at=decided_at,
            from_status=from_status,
            to_status=to_status,
            comment=comment or None,
        ),
    )
